"""Data models for reporting capture and restore outcomes.

This module defines the structures returned by the content store and the
snapshot manager after capture, restore, preview and impact analysis.
"""

from typing import Optional

from pydantic import Field

from snapshot_engine.models.base import ModelBase
from snapshot_engine.models.file_entry import FileEntry
from snapshot_engine.models.snapshot import SnapshotStats


class FileError(ModelBase):
    """Failure affecting a single file.

    Attributes:
        path: Relative path of the file.
        code: Machine-readable error code (e.g., 'checksum_mismatch').
        detail: Human-readable explanation of the error.
    """

    path: str = Field(..., description="Relative path of the file.")
    code: str = Field(
        ..., description="Machine-readable error code (e.g., 'checksum_mismatch')."
    )
    detail: str = Field(..., description="Human-readable explanation of the error.")


class OperationError(ModelBase):
    """Failure affecting a whole operation.

    Attributes:
        code: Machine-readable error code (e.g., 'not_found').
        detail: Human-readable explanation of the error.
    """

    code: str = Field(..., description="Machine-readable error code (e.g., 'not_found').")
    detail: str = Field(..., description="Human-readable explanation of the error.")


class CaptureResult(ModelBase):
    """Snapshot-shaped output of a capture, before it is given an identity.

    Attributes:
        base_path: Absolute root the files were captured from.
        capture_time: ISO-8601 timestamp of the capture.
        files: Mapping from relative path to captured entry.
        stats: Capture statistics.
        errors: Files that could not be captured.
    """

    base_path: str
    capture_time: str
    files: dict[str, FileEntry] = Field(default_factory=dict)
    stats: SnapshotStats = Field(default_factory=SnapshotStats)
    errors: list[FileError] = Field(default_factory=list)


class RestoreResult(ModelBase):
    """The result of a restore attempt.

    Attributes:
        snapshot_id: The snapshot that was restored.
        restored: Files written to disk.
        skipped: Files already matching the snapshot.
        errors: Per-file failures. Other files are unaffected.
        backup_snapshot_id: Safety snapshot taken before restoring.
        error: Set when the whole operation failed before touching files.
    """

    snapshot_id: Optional[str] = None
    description: Optional[str] = None
    restored: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    errors: list[FileError] = Field(default_factory=list)
    backup_snapshot_id: Optional[str] = None
    error: Optional[OperationError] = None

    @property
    def success(self) -> bool:
        return self.error is None and not self.errors

    @classmethod
    def failure(
        cls, code: str, detail: str, snapshot_id: Optional[str] = None
    ) -> "RestoreResult":
        """Create a result for an operation that failed as a whole."""
        return cls(
            snapshot_id=snapshot_id,
            error=OperationError(code=code, detail=detail),
        )


class PreviewStats(ModelBase):
    """Counters of a restore preview."""

    total_files: int = 0
    to_create: int = 0
    to_modify: int = 0
    to_delete: int = 0
    unchanged: int = 0
    impacted_files: int = 0
    bytes_to_write: int = 0


class RestorePreview(ModelBase):
    """Dry-run classification of what a restore would do.

    Attributes:
        snapshot_id: The previewed snapshot.
        to_create: Files missing on disk.
        to_modify: Files whose live checksum differs.
        to_delete: Live files absent from the snapshot, when requested.
        unchanged: Files already matching the snapshot.
        errors: Files whose live state could not be read.
        stats: Preview counters.
    """

    snapshot_id: Optional[str] = None
    description: Optional[str] = None
    to_create: list[str] = Field(default_factory=list)
    to_modify: list[str] = Field(default_factory=list)
    to_delete: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    errors: list[FileError] = Field(default_factory=list)
    stats: PreviewStats = Field(default_factory=PreviewStats)


class RestoreConflict(ModelBase):
    """A file whose restore is considered risky."""

    path: str
    reason: str
    current_size: int
    snapshot_size: int


class RestoreImpact(ModelBase):
    """Assessment of what restoring a snapshot would affect.

    Attributes:
        files_affected: Files that would be created or overwritten.
        bytes_affected: Bytes that would be written.
        potential_data_loss: Whether any live file would shrink.
        conflicts: Files flagged as risky.
    """

    files_affected: int = 0
    bytes_affected: int = 0
    potential_data_loss: bool = False
    conflicts: list[RestoreConflict] = Field(default_factory=list)
