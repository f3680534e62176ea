"""Data model for a single captured file.

A FileEntry describes one file inside a snapshot. Entries either carry the
file content themselves or point at the snapshot that owns identical content.
"""

from typing import Optional

from pydantic import ConfigDict, Field, model_validator

from snapshot_engine.models.base import ContentEncoding, ModelBase
from snapshot_engine.models.enums import FileAction


class FileEntry(ModelBase):
    """Represents one file's state inside a captured snapshot.

    Attributes:
        relative_path: POSIX-style path relative to the snapshot base path.
        checksum: SHA-256 hex digest of the raw file bytes.
        size: Byte length of the file.
        modified: ISO-8601 modification timestamp.
        permissions: Raw st_mode bits at capture time.
        content: Encoded file content, absent for deduplicated entries.
        encoding: How `content` encodes the raw bytes.
        action: Relation of this entry to the base snapshot.
        linked_snapshot_id: Snapshot owning the content of a deduplicated entry.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, use_enum_values=True)

    relative_path: str = Field(
        ..., min_length=1, description="POSIX-style path relative to the base path."
    )
    checksum: str = Field(
        ..., min_length=1, description="SHA-256 hex digest of the raw file bytes."
    )
    size: int = Field(..., ge=0, description="Byte length of the file.")
    modified: str = Field(..., description="ISO-8601 modification timestamp.")
    permissions: int = Field(default=0, description="Raw st_mode bits.")
    content: Optional[str] = Field(
        default=None,
        description="Encoded file content. An empty string is a zero-byte file.",
    )
    encoding: ContentEncoding = Field(
        default="utf-8", description="How the content encodes the raw bytes."
    )
    action: FileAction = Field(
        default=FileAction.CREATED,
        description="Relation of this entry to the base snapshot.",
    )
    linked_snapshot_id: Optional[str] = Field(
        default=None,
        description="Snapshot owning the authoritative content of this entry.",
    )

    @model_validator(mode="after")
    def _content_or_link(self) -> "FileEntry":
        if self.content is None and self.linked_snapshot_id is None:
            raise ValueError(
                f"Entry '{self.relative_path}' has neither content nor a linked snapshot"
            )
        if self.linked_snapshot_id is not None and self.action != FileAction.UNCHANGED:
            raise ValueError(
                f"Entry '{self.relative_path}' is linked but not marked unchanged"
            )
        return self

    @property
    def is_linked(self) -> bool:
        """Whether the content of this entry lives in another snapshot."""
        return self.content is None and self.linked_snapshot_id is not None
