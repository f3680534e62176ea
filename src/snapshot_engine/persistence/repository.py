"""Persistence layer interfaces.

This module defines the abstract contract for snapshot storage, the link
resolution shared by every implementation, and the copy-on-delete helpers
used when a snapshot that owns linked content is deleted or evicted.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Optional

from snapshot_engine.errors import LinkResolutionError, SnapshotNotFoundError
from snapshot_engine.models.file_entry import FileEntry
from snapshot_engine.models.snapshot import Snapshot, SnapshotSummary, StorageStats
from snapshot_engine.observability.logging import get_logger, log_fields

logger = get_logger(__name__)

DEFAULT_MAX_SNAPSHOTS = 50
DEFAULT_MAX_MEMORY_BYTES = 100 * 1024 * 1024


def document_size(snapshot: Snapshot) -> int:
    """Approximate stored size of a snapshot: the length of its JSON document."""
    return len(snapshot.model_dump_json().encode("utf-8"))


def check_links(snapshot: Snapshot, stored_ids: Iterable[str]):
    """Raises LinkResolutionError if the snapshot links to unknown snapshots."""
    missing = sorted(snapshot.linked_ids() - set(stored_ids))
    if missing:
        raise LinkResolutionError(
            f"Snapshot {snapshot.id} links to snapshots that are not stored: "
            f"{', '.join(missing)}"
        )


def rehome_links(victim: Snapshot, dependents: Iterable[Snapshot]) -> dict[str, Snapshot]:
    """Moves content out of a snapshot that is about to disappear.

    For every path linked to the victim, the oldest dependent receives the
    victim's content and later dependents are re-pointed at it. If the
    victim's own entry is a link, dependents are re-pointed at its target.
    Links therefore stay one hop long and never dangle.

    Args:
        victim: The snapshot being deleted or evicted.
        dependents: Other snapshots, oldest first.

    Returns:
        The rewritten dependents, keyed by id. Untouched snapshots are omitted.
    """
    new_owner: dict[str, str] = {}
    updated: dict[str, Snapshot] = {}

    for dependent in dependents:
        if dependent.id == victim.id or victim.id not in dependent.linked_ids():
            continue

        files = dict(dependent.files)
        stats = dependent.stats.model_copy()
        for path, entry in dependent.files.items():
            if entry.linked_snapshot_id != victim.id:
                continue
            source = victim.files.get(path)
            if source is None:
                logger.warning(
                    "Linked entry has no counterpart in deleted snapshot",
                    extra=log_fields(
                        snapshot_id=dependent.id, path=path, victim_id=victim.id
                    ),
                )
                continue

            if source.is_linked:
                files[path] = entry.model_copy(
                    update={"linked_snapshot_id": source.linked_snapshot_id}
                )
            elif path in new_owner:
                files[path] = entry.model_copy(update={"linked_snapshot_id": new_owner[path]})
            else:
                files[path] = entry.model_copy(
                    update={
                        "content": source.content,
                        "encoding": source.encoding,
                        "linked_snapshot_id": None,
                    }
                )
                new_owner[path] = dependent.id
                stats.linked_files = max(stats.linked_files - 1, 0)
                stats.differential_size += entry.size

        updated[dependent.id] = dependent.model_copy(update={"files": files, "stats": stats})

    if updated:
        logger.debug(
            "Rehomed linked content",
            extra=log_fields(victim_id=victim.id, dependents=sorted(updated)),
        )
    return updated


class SnapshotRepository(ABC):
    """Abstract interface for storing snapshots.

    Implementations enforce retention (`max_snapshots`, `max_memory_bytes`)
    by evicting the oldest snapshot, and rehome linked content whenever a
    snapshot is deleted or evicted.
    """

    def __init__(
        self,
        max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
    ):
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be at least 1")
        if max_memory_bytes < 1:
            raise ValueError("max_memory_bytes must be at least 1")
        self.max_snapshots = max_snapshots
        self.max_memory_bytes = max_memory_bytes

    @abstractmethod
    def store(self, snapshot: Snapshot) -> str:
        """Persists a new snapshot, evicting the oldest ones if needed.

        Args:
            snapshot: The snapshot to store.

        Returns:
            The id of the stored snapshot.

        Raises:
            DuplicateSnapshotError: If the id is already stored.
            LinkResolutionError: If an entry links to a snapshot that is not stored.
            StorageLimitError: If the snapshot can never fit the limits.

        A failed store leaves the repository unchanged.
        """
        pass  # pragma: no cover

    @abstractmethod
    def retrieve(self, snapshot_id: str) -> Optional[Snapshot]:
        """Retrieves a snapshot by id.

        Returns:
            An independent copy of the snapshot, or None if it does not exist.
        """
        pass  # pragma: no cover

    @abstractmethod
    def list(
        self,
        *,
        limit: Optional[int] = None,
        description: Optional[str] = None,
        trigger_type: Optional[str] = None,
        ascending: bool = False,
    ) -> list[SnapshotSummary]:
        """Lists stored snapshots.

        Args:
            limit: Maximum number of summaries to return.
            description: Case-insensitive substring filter on descriptions.
            trigger_type: Only snapshots with this trigger type.
            ascending: Oldest first instead of newest first.

        Returns:
            Snapshot summaries in storage order.
        """
        pass  # pragma: no cover

    @abstractmethod
    def delete(self, snapshot_id: str) -> bool:
        """Deletes a snapshot, rehoming content other snapshots link to.

        Returns:
            True if the snapshot existed.
        """
        pass  # pragma: no cover

    @abstractmethod
    def storage_stats(self) -> StorageStats:
        pass  # pragma: no cover

    @abstractmethod
    def exists(self, snapshot_id: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def latest(self, base_path: Optional[str] = None) -> Optional[Snapshot]:
        """Retrieves the most recently stored snapshot.

        Args:
            base_path: Only consider snapshots captured from this root.

        Returns:
            The latest snapshot, or None if there is none.
        """
        pass  # pragma: no cover

    @abstractmethod
    def clear(self) -> int:
        """Deletes every snapshot.

        Returns:
            The number of deleted snapshots.
        """
        pass  # pragma: no cover

    def _utilization(self, count: int) -> float:
        return round(count / self.max_snapshots * 100, 2)

    def resolve_content(
        self, entry: FileEntry, _owners: Optional[dict[str, Snapshot]] = None
    ) -> FileEntry:
        """Returns the entry with its linked content filled in.

        Args:
            entry: An entry that may link to another snapshot.

        Returns:
            The entry itself if it carries content, else a copy with the
            owning snapshot's content.

        Raises:
            SnapshotNotFoundError: If a linked snapshot no longer exists.
            LinkResolutionError: If links form a cycle or the owner lacks the file.
        """
        owners = {} if _owners is None else _owners
        visited: set[str] = set()
        current = entry
        while current.content is None:
            link = current.linked_snapshot_id
            if link in visited:
                raise LinkResolutionError(
                    f"Link cycle detected while resolving {entry.relative_path}"
                )
            visited.add(link)

            owner = owners.get(link)
            if owner is None:
                owner = self.retrieve(link)
                if owner is None:
                    raise SnapshotNotFoundError(link)
                owners[link] = owner

            source = owner.files.get(entry.relative_path)
            if source is None:
                raise LinkResolutionError(
                    f"Linked snapshot {link} has no entry for {entry.relative_path}"
                )
            current = source

        if current is entry:
            return entry
        if current.checksum != entry.checksum:
            raise LinkResolutionError(
                f"Linked content of {entry.relative_path} does not match its checksum"
            )
        return entry.model_copy(update={"content": current.content, "encoding": current.encoding})
