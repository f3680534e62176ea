"""Enumeration definitions for the snapshot engine.

This module contains standard Enum classes used across the engine to ensure
consistency in typing and values for file actions, filtering policy and
change classification.
"""

from enum import Enum


class FileAction(str, Enum):
    """Describes how a file entry relates to the base snapshot.

    Attributes:
        CREATED: The file had no entry in the base snapshot.
        MODIFIED: The file existed in the base snapshot with different content.
        UNCHANGED: The file content matches the base snapshot.
    """

    CREATED = "created"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class BinaryHandling(str, Enum):
    """Defines how binary files are treated by the path filter.

    Attributes:
        EXCLUDE: Binary files never participate in a capture.
        INCLUDE: Binary files are captured like any other file.
        WARN: Binary files are captured, but a warning is logged.
    """

    EXCLUDE = "exclude"
    INCLUDE = "include"
    WARN = "warn"


class ChangeType(str, Enum):
    """Classifies a modification detected between two change states.

    Attributes:
        SIZE_INCREASED: The file grew.
        SIZE_DECREASED: The file shrank.
        CONTENT_CHANGED: Same size, different checksum.
        TIMESTAMP_CHANGED: Only the modification time differs.
    """

    SIZE_INCREASED = "size-increased"
    SIZE_DECREASED = "size-decreased"
    CONTENT_CHANGED = "content-changed"
    TIMESTAMP_CHANGED = "timestamp-changed"


class TriggerType(str, Enum):
    """Records what caused a snapshot to be taken.

    Attributes:
        MANUAL: Requested explicitly by a user.
        AUTOMATIC: Taken by a tool hook before a file-modifying operation.
        BACKUP: Safety snapshot taken right before a restore.
    """

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    BACKUP = "backup"
