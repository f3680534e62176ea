"""Data models for lightweight change detection.

A ChangeState records metadata (never content) for every file of a tree so
that two states can be compared to find what a file-modifying operation
actually touched.
"""

from typing import Optional

from pydantic import ConfigDict, Field, field_validator

from snapshot_engine.models.base import ModelBase
from snapshot_engine.models.enums import ChangeType
from snapshot_engine.utils import parse_size


DEFAULT_CHANGE_EXCLUSIONS: list[str] = [
    "node_modules",
    ".git",
    "*.log",
    "tmp",
    "temp",
    ".cache",
    "dist",
    "build",
    "logs",
    "__pycache__",
    ".venv",
]


class ChangeDetectionConfig(ModelBase):
    """Settings of the change classifier.

    Attributes:
        use_checksums: Compute checksums for files under checksum_size_limit.
        track_modification_time: Treat an mtime difference as a change.
        checksum_size_limit: Files at or above this size are not checksummed.
        max_file_size: Files above this size are skipped.
        exclude_patterns: Glob patterns of paths never scanned.
        minimum_change_size: Size delta that makes a modification significant.
        warn_on_unexpected_changes: Log mismatches between declared and
            actual tool behaviour.
    """

    use_checksums: bool = True
    track_modification_time: bool = True
    checksum_size_limit: int = Field(default=1024 * 1024, ge=0)
    max_file_size: int = Field(default=50 * 1024 * 1024, gt=0)
    exclude_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CHANGE_EXCLUSIONS)
    )
    minimum_change_size: int = Field(default=1, ge=0)
    warn_on_unexpected_changes: bool = True

    @field_validator("checksum_size_limit", "max_file_size", mode="before")
    @classmethod
    def _parse_size(cls, value):
        return parse_size(value) if isinstance(value, str) else value


class FileState(ModelBase):
    """Metadata of one file at a point in time.

    Attributes:
        size: Byte length.
        modified: Modification time (epoch seconds).
        created: Creation time when the platform reports it, else mtime.
        permissions: Raw st_mode bits.
        checksum: SHA-256 hex digest, only for files under the size ceiling.
    """

    size: int
    modified: float
    created: float
    permissions: int = 0
    checksum: Optional[str] = None


class ScanError(ModelBase):
    """A path that could not be scanned."""

    path: str
    error: str


class ScanStats(ModelBase):
    """Counters collected while scanning a tree."""

    total_files: int = 0
    total_size: int = 0
    directories: int = 0
    skipped_files: int = 0
    errors: list[ScanError] = Field(default_factory=list)


class ChangeState(ModelBase):
    """Lightweight snapshot of a directory tree.

    Attributes:
        base_path: Absolute root that was scanned.
        timestamp: ISO-8601 time the scan started.
        capture_time_ms: Duration of the scan.
        files: Mapping from relative path to file metadata.
        stats: Scan counters.
    """

    base_path: str
    timestamp: str
    capture_time_ms: float = 0.0
    files: dict[str, FileState] = Field(default_factory=dict)
    stats: ScanStats = Field(default_factory=ScanStats)


class FileChange(ModelBase):
    """A created, modified or deleted path between two states."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    path: str
    before: Optional[FileState] = None
    after: Optional[FileState] = None
    change_type: Optional[ChangeType] = None


class ChangeSet(ModelBase):
    """Paths grouped by how they changed."""

    created: list[FileChange] = Field(default_factory=list)
    modified: list[FileChange] = Field(default_factory=list)
    deleted: list[FileChange] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)


class ComparisonStats(ModelBase):
    """Counters of a state comparison."""

    created_files: int = 0
    modified_files: int = 0
    deleted_files: int = 0
    unchanged_files: int = 0
    total_files: int = 0


class StateComparison(ModelBase):
    """Result of comparing a before and after ChangeState.

    Attributes:
        changes: Paths grouped by change kind.
        has_changes: Whether anything was created, modified or deleted.
        change_count: Number of created, modified and deleted paths.
        stats: Per-kind counters.
    """

    changes: ChangeSet = Field(default_factory=ChangeSet)
    has_changes: bool = False
    change_count: int = 0
    stats: ComparisonStats = Field(default_factory=ComparisonStats)
