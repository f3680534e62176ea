"""In-memory implementation of the SnapshotRepository.

This module provides a thread-safe, ephemeral snapshot repository suitable
for testing and for sessions whose history does not need to outlive the
process.
"""

import threading
from typing import Optional

from snapshot_engine.errors import DuplicateSnapshotError, StorageLimitError
from snapshot_engine.models.snapshot import Snapshot, SnapshotSummary, StorageStats
from snapshot_engine.observability.logging import get_logger, log_fields
from snapshot_engine.persistence.repository import (
    DEFAULT_MAX_MEMORY_BYTES,
    DEFAULT_MAX_SNAPSHOTS,
    SnapshotRepository,
    check_links,
    document_size,
    rehome_links,
)

logger = get_logger(__name__)


class InMemorySnapshotRepository(SnapshotRepository):
    """In-memory implementation of the SnapshotRepository.

    Snapshots are kept in storage order. Every operation runs under a
    re-entrant lock, and snapshots are copied on the way in and out so callers
    can never mutate stored state.
    """

    def __init__(
        self,
        max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
    ):
        """Initializes the empty in-memory store."""
        super().__init__(max_snapshots, max_memory_bytes)
        self._snapshots: dict[str, Snapshot] = {}
        self._sizes: dict[str, int] = {}
        self._lock = threading.RLock()

    def _memory_usage(self) -> int:
        return sum(self._sizes.values())

    @staticmethod
    def _remove(
        snapshots: dict[str, Snapshot],
        sizes: dict[str, int],
        snapshot_id: str,
        pending: Optional[Snapshot] = None,
    ) -> Optional[Snapshot]:
        """Removes a snapshot from the given tables and rehomes content linked to it.

        Stored snapshots are never mutated, only replaced, so callers may pass
        shallow copies of the live tables and discard them on failure.

        Returns:
            The pending snapshot, rewritten if it linked to the removed one.
        """
        victim = snapshots.pop(snapshot_id)
        sizes.pop(snapshot_id)

        dependents = list(snapshots.values())
        if pending is not None:
            dependents.append(pending)
        for dependent_id, rewritten in rehome_links(victim, dependents).items():
            if pending is not None and dependent_id == pending.id:
                pending = rewritten
                continue
            snapshots[dependent_id] = rewritten
            sizes[dependent_id] = document_size(rewritten)
        return pending

    def store(self, snapshot: Snapshot) -> str:
        with self._lock:
            if snapshot.id in self._snapshots:
                raise DuplicateSnapshotError(f"Snapshot already exists: {snapshot.id}")
            check_links(snapshot, self._snapshots)

            # Evictions are planned on copies and only committed once the snapshot fits
            snapshots = dict(self._snapshots)
            sizes = dict(self._sizes)
            evicted: list[str] = []
            incoming = snapshot.model_copy(deep=True)
            size = document_size(incoming)
            while (
                len(snapshots) >= self.max_snapshots
                or sum(sizes.values()) + size > self.max_memory_bytes
            ):
                if size > self.max_memory_bytes or not snapshots:
                    raise StorageLimitError(
                        f"Snapshot {snapshot.id} ({size} bytes) exceeds the memory limit "
                        f"of {self.max_memory_bytes} bytes"
                    )
                oldest_id = next(iter(snapshots))
                incoming = self._remove(snapshots, sizes, oldest_id, pending=incoming)
                size = document_size(incoming)
                evicted.append(oldest_id)

            snapshots[incoming.id] = incoming
            sizes[incoming.id] = size
            self._snapshots = snapshots
            self._sizes = sizes

            for oldest_id in evicted:
                logger.info(
                    "Evicted oldest snapshot",
                    extra=log_fields(snapshot_id=oldest_id, incoming_id=snapshot.id),
                )
            logger.debug(
                "Snapshot stored",
                extra=log_fields(snapshot_id=incoming.id, size_bytes=size),
            )
            return incoming.id

    def retrieve(self, snapshot_id: str) -> Optional[Snapshot]:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
            return snapshot.model_copy(deep=True) if snapshot else None

    def delete(self, snapshot_id: str) -> bool:
        with self._lock:
            if snapshot_id not in self._snapshots:
                return False
            self._remove(self._snapshots, self._sizes, snapshot_id)
            logger.debug("Snapshot deleted", extra=log_fields(snapshot_id=snapshot_id))
            return True

    def storage_stats(self) -> StorageStats:
        with self._lock:
            count = len(self._snapshots)
            return StorageStats(
                snapshot_count=count,
                memory_usage=self._memory_usage(),
                max_snapshots=self.max_snapshots,
                max_memory_bytes=self.max_memory_bytes,
                utilization_percent=self._utilization(count),
            )

    def exists(self, snapshot_id: str) -> bool:
        with self._lock:
            return snapshot_id in self._snapshots

    def latest(self, base_path: Optional[str] = None) -> Optional[Snapshot]:
        with self._lock:
            for snapshot in reversed(self._snapshots.values()):
                if base_path is None or snapshot.base_path == base_path:
                    return snapshot.model_copy(deep=True)
            return None

    def clear(self) -> int:
        with self._lock:
            count = len(self._snapshots)
            self._snapshots.clear()
            self._sizes.clear()
            return count

    def list(
        self,
        *,
        limit: Optional[int] = None,
        description: Optional[str] = None,
        trigger_type: Optional[str] = None,
        ascending: bool = False,
    ) -> list[SnapshotSummary]:
        with self._lock:
            snapshots = list(self._snapshots.values())
        if not ascending:
            snapshots.reverse()

        needle = description.lower() if description else None
        summaries = [
            s.summary()
            for s in snapshots
            if (needle is None or needle in s.description.lower())
            and (trigger_type is None or s.trigger_type == trigger_type)
        ]
        return summaries[:limit] if limit is not None else summaries
