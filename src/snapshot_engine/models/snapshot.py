"""Data models for captured snapshots.

This module defines the schema for a complete, identified capture of a file
tree, its aggregate statistics, and the summary shape used for listings.
"""

from typing import Any, Optional

from pydantic import Field

from snapshot_engine.models.base import ModelBase
from snapshot_engine.models.file_entry import FileEntry


class SnapshotStats(ModelBase):
    """Aggregate counters describing a capture.

    Attributes:
        total_files: Number of files in the snapshot.
        total_size: Sum of file sizes in bytes.
        new_files: Files without an entry in the base snapshot.
        modified_files: Files whose checksum differs from the base snapshot.
        unchanged_files: Files whose checksum matches the base snapshot.
        linked_files: Unchanged files stored as a reference instead of content.
        differential_size: Bytes of content actually stored by this snapshot.
        capture_time_ms: Wall-clock duration of the capture.
    """

    total_files: int = Field(default=0, ge=0)
    total_size: int = Field(default=0, ge=0)
    new_files: int = Field(default=0, ge=0)
    modified_files: int = Field(default=0, ge=0)
    unchanged_files: int = Field(default=0, ge=0)
    linked_files: int = Field(default=0, ge=0)
    differential_size: int = Field(default=0, ge=0)
    capture_time_ms: float = Field(default=0.0, ge=0)


class Snapshot(ModelBase):
    """Represents an immutable capture of a file tree.

    Attributes:
        id: Unique identifier assigned at creation.
        description: Caller supplied free text.
        base_path: Absolute root the snapshot was captured from.
        capture_time: ISO-8601 timestamp of the capture.
        files: Mapping from relative path to file entry.
        stats: Aggregate capture statistics.
        metadata: Trigger information (trigger_type, tool_name, creator, ...).
    """

    id: str = Field(..., min_length=1, description="Unique snapshot identifier.")
    description: str = Field(default="", description="Caller supplied free text.")
    base_path: str = Field(..., description="Absolute root of the capture.")
    capture_time: str = Field(..., description="ISO-8601 capture timestamp.")
    files: dict[str, FileEntry] = Field(
        default_factory=dict,
        description="Mapping from relative path to file entry.",
    )
    stats: SnapshotStats = Field(default_factory=SnapshotStats)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def file_count(self) -> int:
        return len(self.files)

    @property
    def trigger_type(self) -> Optional[str]:
        return self.metadata.get("trigger_type")

    def linked_ids(self) -> set[str]:
        """Returns the ids of every snapshot this one links content into."""
        return {
            entry.linked_snapshot_id
            for entry in self.files.values()
            if entry.linked_snapshot_id is not None
        }

    def summary(self) -> "SnapshotSummary":
        """Builds the listing summary of this snapshot."""
        return SnapshotSummary(
            id=self.id,
            description=self.description,
            timestamp=self.capture_time,
            file_count=self.file_count,
            total_size=self.stats.total_size,
            trigger_type=self.trigger_type,
            base_path=self.base_path,
        )


class SnapshotSummary(ModelBase):
    """Lightweight view of a snapshot for listings.

    Attributes:
        id: Snapshot identifier.
        description: Snapshot description.
        timestamp: Capture timestamp.
        file_count: Number of captured files.
        total_size: Sum of captured file sizes in bytes.
        trigger_type: What caused the snapshot, if recorded.
        base_path: Root the snapshot was captured from.
    """

    id: str
    description: str = ""
    timestamp: str
    file_count: int = 0
    total_size: int = 0
    trigger_type: Optional[str] = None
    base_path: Optional[str] = None


class StorageStats(ModelBase):
    """Occupancy of a snapshot repository.

    Attributes:
        snapshot_count: Number of stored snapshots.
        memory_usage: Approximate bytes held by stored snapshot documents.
        max_snapshots: Retention limit on the snapshot count.
        max_memory_bytes: Retention limit on memory usage.
        utilization_percent: snapshot_count relative to max_snapshots.
    """

    snapshot_count: int = 0
    memory_usage: int = 0
    max_snapshots: int = 0
    max_memory_bytes: int = 0
    utilization_percent: float = 0.0
