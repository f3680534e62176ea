"""Snapshot orchestration.

The SnapshotManager is the entry point callers use. It coordinates the path
filter, the content store, the change classifier and the repository, and it
turns expected failures into result objects so that a failing restore never
crashes the host application.
"""

import asyncio
import os
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional, Union

from snapshot_engine.capture.content_store import ContentStore
from snapshot_engine.changes.classifier import ChangeClassifier
from snapshot_engine.config import EngineSettings, build_repository
from snapshot_engine.errors import (
    AmbiguousSnapshotIdError,
    LinkResolutionError,
    SnapshotEngineError,
    SnapshotNotFoundError,
    StructuralError,
)
from snapshot_engine.filtering.path_filter import PathFilter
from snapshot_engine.models.change_state import ChangeState, StateComparison
from snapshot_engine.models.enums import TriggerType
from snapshot_engine.models.file_entry import FileEntry
from snapshot_engine.models.results import FileError, RestoreImpact, RestorePreview, RestoreResult
from snapshot_engine.models.snapshot import Snapshot, SnapshotSummary
from snapshot_engine.observability.logging import get_logger, log_fields
from snapshot_engine.persistence.in_memory import InMemorySnapshotRepository
from snapshot_engine.persistence.repository import SnapshotRepository
from snapshot_engine.utils import Clock, utc_now

logger = get_logger(__name__)

PathLike = Union[str, Path]


def _creator() -> str:
    return os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"


class SnapshotManager:
    """Creates, lists, restores and deletes snapshots."""

    def __init__(
        self,
        repository: Optional[SnapshotRepository] = None,
        content_store: Optional[ContentStore] = None,
        classifier: Optional[ChangeClassifier] = None,
        *,
        create_backups: bool = True,
        default_base_path: Optional[PathLike] = None,
        clock: Clock = utc_now,
    ):
        """Initializes the manager.

        Args:
            repository: Snapshot storage. Defaults to an in-memory repository.
            content_store: Capture and restore engine. Its path filter is the
                one reported and reconfigured by the manager.
            classifier: Change detection component.
            create_backups: Take a safety snapshot before each restore by default.
            default_base_path: Root captured when create_snapshot gets no
                base_path. Defaults to the working directory at call time.
            clock: Source of capture timestamps for the default components.
        """
        self.repository = repository or InMemorySnapshotRepository()
        self.content_store = content_store or ContentStore(PathFilter(), clock=clock)
        self.classifier = classifier or ChangeClassifier(clock=clock)
        self.create_backups = create_backups
        self.default_base_path = default_base_path
        # Serializes base lookup, capture and store so concurrent creates never
        # link to a base another create has just evicted
        self._create_lock = asyncio.Lock()

    @property
    def path_filter(self) -> PathFilter:
        return self.content_store.path_filter

    @classmethod
    def from_settings(
        cls, settings: EngineSettings, repository: Optional[SnapshotRepository] = None
    ) -> "SnapshotManager":
        """Builds a manager and its components from EngineSettings."""
        content_store = ContentStore(
            PathFilter(settings.filtering),
            max_concurrent_files=settings.backup.max_concurrent_files,
            validate_checksums=settings.backup.validate_checksums,
            preserve_permissions=settings.backup.preserve_permissions,
        )
        return cls(
            repository=repository or build_repository(settings.storage),
            content_store=content_store,
            classifier=ChangeClassifier(settings.change_detection),
            create_backups=settings.backup.create_backups,
        )

    def _root(self, base_path: Optional[PathLike]) -> str:
        return os.path.abspath(os.fspath(base_path or self.default_base_path or os.getcwd()))

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_snapshot(
        self,
        description: str,
        *,
        base_path: Optional[PathLike] = None,
        specific_files: Optional[Iterable[str]] = None,
        trigger_type: Union[TriggerType, str] = TriggerType.MANUAL,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> SnapshotSummary:
        """Captures the files under base_path and stores a new snapshot.

        Unchanged files are linked to the latest snapshot of the same base path
        instead of being copied.

        Args:
            description: Non-empty free text describing the snapshot.
            base_path: Root to capture. Defaults to the manager's base path.
            specific_files: Restricts the capture to these relative paths.
            trigger_type: What caused the snapshot.
            metadata: Extra metadata stored with the snapshot.

        Returns:
            The summary of the stored snapshot.

        Raises:
            ValueError: If the description is empty or the trigger type unknown.
            NotADirectoryError: If base_path is not a directory.
            StorageLimitError: If the snapshot can never fit the repository limits.
        """
        if not isinstance(description, str) or not description.strip():
            raise ValueError("Snapshot description is required and must be a non-empty string")
        trigger = TriggerType(trigger_type).value

        root = self._root(base_path)
        specific = None if specific_files is None else list(specific_files)
        async with self._create_lock:
            snapshot, capture_errors = await self._capture_and_store(
                root, description, trigger, specific, metadata
            )

        logger.info(
            "Snapshot created",
            extra=log_fields(
                snapshot_id=snapshot.id,
                trigger_type=trigger,
                files=snapshot.file_count,
                linked_files=snapshot.stats.linked_files,
                capture_errors=capture_errors,
            ),
        )
        return snapshot.summary()

    async def _capture_and_store(
        self,
        root: str,
        description: str,
        trigger: str,
        specific_files: Optional[list[str]],
        metadata: Optional[Mapping[str, Any]],
    ) -> tuple[Snapshot, int]:
        """Captures against the latest snapshot of root and stores the result.

        A base deleted while the capture runs makes the store reject the
        dangling links. The capture is then repeated once against the new
        latest snapshot.
        """
        attempts = 2
        for attempt in range(1, attempts + 1):
            base_snapshot = self.repository.latest(base_path=root)
            capture = await self.content_store.capture_files(
                root, specific_files=specific_files, base_snapshot=base_snapshot
            )

            snapshot_metadata: dict[str, Any] = {
                "trigger_type": trigger,
                "creator": _creator(),
                **dict(metadata or {}),
            }
            if capture.errors:
                snapshot_metadata["capture_errors"] = [e.model_dump() for e in capture.errors]

            snapshot = Snapshot(
                id=str(uuid.uuid4()),
                description=description,
                base_path=capture.base_path,
                capture_time=capture.capture_time,
                files=capture.files,
                stats=capture.stats,
                metadata=snapshot_metadata,
            )
            try:
                self.repository.store(snapshot)
            except LinkResolutionError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Base snapshot removed during capture; capturing again",
                    extra=log_fields(
                        base_snapshot_id=base_snapshot.id if base_snapshot else None,
                        error=e.detail,
                    ),
                )
                continue
            return snapshot, len(capture.errors)

    async def create_backup_snapshot(
        self,
        tool_name: str,
        files: Optional[Iterable[str]] = None,
        *,
        base_path: Optional[PathLike] = None,
    ) -> SnapshotSummary:
        """Takes an automatic snapshot before a file-modifying tool runs.

        Args:
            tool_name: Name of the tool about to run.
            files: Files the tool will modify. All files when omitted or empty.
            base_path: Root to capture.
        """
        files = list(files or [])
        return await self.create_snapshot(
            f"Backup before {tool_name} execution",
            base_path=base_path,
            specific_files=files or None,
            trigger_type=TriggerType.AUTOMATIC,
            metadata={"tool_name": tool_name},
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def resolve_snapshot_id(self, partial_id: str) -> str:
        """Expands a unique id prefix to a full snapshot id.

        Raises:
            SnapshotNotFoundError: If no snapshot matches.
            AmbiguousSnapshotIdError: If several snapshots match.
        """
        if not partial_id:
            raise SnapshotNotFoundError(partial_id)
        if self.repository.exists(partial_id):
            return partial_id

        matches = [s.id for s in self.repository.list() if s.id.startswith(partial_id)]
        if not matches:
            raise SnapshotNotFoundError(partial_id)
        if len(matches) > 1:
            raise AmbiguousSnapshotIdError(partial_id, matches)
        return matches[0]

    def list_snapshots(
        self,
        *,
        limit: Optional[int] = None,
        description: Optional[str] = None,
        trigger_type: Optional[Union[TriggerType, str]] = None,
        ascending: bool = False,
    ) -> list[SnapshotSummary]:
        if trigger_type is not None:
            trigger_type = TriggerType(trigger_type).value
        return self.repository.list(
            limit=limit,
            description=description,
            trigger_type=trigger_type,
            ascending=ascending,
        )

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        """Retrieves a snapshot by full id or unique prefix, or None."""
        try:
            full_id = self.resolve_snapshot_id(snapshot_id)
        except (SnapshotNotFoundError, AmbiguousSnapshotIdError) as e:
            logger.debug("Snapshot lookup failed", extra=log_fields(snapshot_id=snapshot_id, error=e.detail))
            return None
        return self.repository.retrieve(full_id)

    def get_snapshot_details(self, snapshot_id: str) -> Optional[dict[str, Any]]:
        snapshot = self.get_snapshot(snapshot_id)
        if snapshot is None:
            return None
        return {
            "id": snapshot.id,
            "description": snapshot.description,
            "base_path": snapshot.base_path,
            "capture_time": snapshot.capture_time,
            "metadata": snapshot.metadata,
            "stats": snapshot.stats.model_dump(),
            "file_count": snapshot.file_count,
            "files": [
                {
                    "path": entry.relative_path,
                    "size": entry.size,
                    "modified": entry.modified,
                    "checksum": entry.checksum,
                    "action": entry.action,
                    "linked_snapshot_id": entry.linked_snapshot_id,
                }
                for entry in snapshot.files.values()
            ],
        }

    def delete_snapshot(self, snapshot_id: str) -> bool:
        """Deletes a snapshot by full id or unique prefix.

        Content other snapshots link to is moved to them first.

        Returns:
            False if no single snapshot matches.
        """
        try:
            full_id = self.resolve_snapshot_id(snapshot_id)
        except (SnapshotNotFoundError, AmbiguousSnapshotIdError) as e:
            logger.warning(
                "Snapshot not deleted", extra=log_fields(snapshot_id=snapshot_id, error=e.detail)
            )
            return False
        deleted = self.repository.delete(full_id)
        if deleted:
            logger.info("Snapshot deleted", extra=log_fields(snapshot_id=full_id))
        return deleted

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def _resolve_links(self, snapshot: Snapshot) -> tuple[Snapshot, list[FileError]]:
        """Fills in linked content. Entries whose link is broken are dropped."""
        owners: dict[str, Snapshot] = {}
        files: dict[str, FileEntry] = {}
        errors: list[FileError] = []
        for path, entry in snapshot.files.items():
            try:
                files[path] = self.repository.resolve_content(entry, owners)
            except (SnapshotNotFoundError, LinkResolutionError) as e:
                errors.append(FileError(path=path, code=e.code, detail=e.detail))
        return snapshot.model_copy(update={"files": files}), errors

    async def restore_snapshot(
        self,
        snapshot_id: str,
        *,
        preview: bool = False,
        create_backup: Optional[bool] = None,
        specific_files: Optional[Iterable[str]] = None,
        detect_deletions: bool = False,
    ) -> Union[RestoreResult, RestorePreview]:
        """Restores, or previews restoring, a snapshot.

        Restoration is best-effort. Unless disabled, a safety snapshot of the
        current state is taken first so the restore itself can be undone.

        Args:
            snapshot_id: Full id or unique prefix.
            preview: Only report what would change.
            create_backup: Take a safety snapshot first. Defaults to the
                manager setting.
            specific_files: Restricts the operation to these relative paths.
            detect_deletions: In preview mode, also list live files that the
                snapshot does not contain.

        Returns:
            A RestorePreview in preview mode, otherwise a RestoreResult. Failures
            of the whole operation are reported through RestoreResult.error.
        """
        try:
            full_id = self.resolve_snapshot_id(snapshot_id)
        except (SnapshotNotFoundError, AmbiguousSnapshotIdError) as e:
            logger.warning(
                "Restore failed", extra=log_fields(snapshot_id=snapshot_id, error=e.detail)
            )
            return RestoreResult.failure(e.code, e.detail, snapshot_id=snapshot_id)

        snapshot = self.repository.retrieve(full_id)
        if snapshot is None:
            error = SnapshotNotFoundError(full_id)
            return RestoreResult.failure(error.code, error.detail, snapshot_id=full_id)

        specific = None if specific_files is None else list(specific_files)
        try:
            if preview:
                return await self.content_store.preview_restore(
                    snapshot, specific_files=specific, detect_deletions=detect_deletions
                )
            self.content_store.validate_file_data(snapshot)
        except StructuralError as e:
            logger.warning(
                "Restore failed", extra=log_fields(snapshot_id=full_id, error=e.detail)
            )
            return RestoreResult.failure(e.code, e.detail, snapshot_id=full_id)

        # Content is materialized before the backup, which may evict the owners
        resolved, link_errors = self._resolve_links(snapshot)
        failed = {error.path for error in link_errors}
        if specific is None:
            targets = list(resolved.files)
        else:
            targets = [p for p in specific if p not in failed]
            link_errors = [e for e in link_errors if e.path in specific]

        backup_id = None
        if create_backup is None:
            create_backup = self.create_backups
        if create_backup:
            if os.path.isdir(snapshot.base_path):
                try:
                    backup = await self.create_snapshot(
                        f"Backup before restoring {full_id}",
                        base_path=snapshot.base_path,
                        trigger_type=TriggerType.BACKUP,
                        metadata={"restored_snapshot_id": full_id},
                    )
                except (SnapshotEngineError, OSError) as e:
                    logger.error(
                        "Backup before restore failed",
                        extra=log_fields(snapshot_id=full_id, error=str(e)),
                    )
                    return RestoreResult.failure(
                        "backup_failed", f"Backup before restore failed: {e}", snapshot_id=full_id
                    )
                backup_id = backup.id
            else:
                logger.info(
                    "Base path missing; restoring without backup",
                    extra=log_fields(snapshot_id=full_id, base_path=snapshot.base_path),
                )

        try:
            result = await self.content_store.restore_files(resolved, specific_files=targets)
        except StructuralError as e:
            return RestoreResult.failure(e.code, e.detail, snapshot_id=full_id)

        result.errors = link_errors + result.errors
        result.backup_snapshot_id = backup_id
        logger.info(
            "Snapshot restored",
            extra=log_fields(
                snapshot_id=full_id,
                restored=len(result.restored),
                skipped=len(result.skipped),
                errors=len(result.errors),
                backup_snapshot_id=backup_id,
            ),
        )
        return result

    async def calculate_restore_impact(self, snapshot_id: str) -> RestoreImpact:
        """Estimates what restoring a snapshot would overwrite.

        Raises:
            SnapshotNotFoundError: If no snapshot matches.
            AmbiguousSnapshotIdError: If several snapshots match.
        """
        full_id = self.resolve_snapshot_id(snapshot_id)
        snapshot = self.repository.retrieve(full_id)
        if snapshot is None:
            raise SnapshotNotFoundError(full_id)
        return await self.content_store.calculate_restore_impact(snapshot)

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    async def capture_change_state(self, base_path: Optional[PathLike] = None) -> ChangeState:
        return await asyncio.to_thread(self.classifier.capture_state, self._root(base_path))

    def compare_change_states(self, before: ChangeState, after: ChangeState) -> StateComparison:
        return self.classifier.compare_states(before, after)

    # ------------------------------------------------------------------
    # Configuration and statistics
    # ------------------------------------------------------------------

    def get_system_stats(self) -> dict[str, Any]:
        return {
            "storage": self.repository.storage_stats().model_dump(),
            "filtering": self.path_filter.get_filter_stats(),
            "change_detection": self.classifier.get_stats(),
            "configuration": {
                "create_backups": self.create_backups,
                "validate_checksums": self.content_store.validate_checksums,
                "preserve_permissions": self.content_store.preserve_permissions,
                "max_concurrent_files": self.content_store.max_concurrent_files,
            },
        }

    def update_configuration(self, new_config: Mapping[str, Any]):
        """Applies runtime configuration changes.

        Args:
            new_config: Any of the 'filtering', 'change_detection', 'backup'
                and 'storage' sections. Storage changes need a restart and
                are only logged.

        Raises:
            TypeError: If new_config or one of its sections is not a mapping.
        """
        if not isinstance(new_config, Mapping):
            raise TypeError(f"Configuration must be a mapping, got {type(new_config).__name__}")

        if "filtering" in new_config:
            self.path_filter.update_configuration(new_config["filtering"])
        if "change_detection" in new_config:
            self.classifier.update_configuration(new_config["change_detection"])
        if "backup" in new_config:
            backup = new_config["backup"]
            if not isinstance(backup, Mapping):
                raise TypeError("Backup configuration must be a mapping")
            if "create_backups" in backup:
                self.create_backups = bool(backup["create_backups"])
            if "validate_checksums" in backup:
                self.content_store.validate_checksums = bool(backup["validate_checksums"])
            if "preserve_permissions" in backup:
                self.content_store.preserve_permissions = bool(backup["preserve_permissions"])
            if "max_concurrent_files" in backup:
                value = int(backup["max_concurrent_files"])
                if value < 1:
                    raise ValueError("max_concurrent_files must be at least 1")
                self.content_store.max_concurrent_files = value
        if "storage" in new_config:
            logger.warning("Storage configuration changes require a restart")

        unknown = set(new_config) - {"filtering", "change_detection", "backup", "storage"}
        if unknown:
            logger.warning(
                "Ignoring unknown configuration sections", extra=log_fields(sections=sorted(unknown))
            )
        logger.debug("Configuration updated", extra=log_fields(sections=sorted(new_config)))
