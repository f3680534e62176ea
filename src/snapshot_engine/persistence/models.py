"""SQLAlchemy models for the persistence layer.

Each snapshot is stored as one row holding its JSON document, plus the
columns needed to list, filter and account for snapshots without loading
the document.
"""

from typing import Any, Optional

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class SnapshotRow(Base):
    """Represents a stored snapshot.

    Attributes:
        seq: Storage order. Eviction removes the lowest value first.
        id: Unique snapshot identifier.
        description: Caller supplied free text.
        base_path: Root the snapshot was captured from.
        capture_time: ISO-8601 capture timestamp.
        trigger_type: What caused the snapshot, if recorded.
        file_count: Number of captured files.
        total_size: Sum of captured file sizes in bytes.
        size_bytes: Length of the JSON document, used for the memory limit.
        document: The snapshot as produced by `Snapshot.model_dump(mode="json")`.
    """

    __tablename__ = "snapshots"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str] = mapped_column(String, default="")
    base_path: Mapped[str] = mapped_column(String, index=True)
    capture_time: Mapped[str] = mapped_column(String)
    trigger_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    file_count: Mapped[int] = mapped_column(Integer, default=0)
    total_size: Mapped[int] = mapped_column(Integer, default=0)
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, deferred=True)
