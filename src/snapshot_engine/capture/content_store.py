"""File capture and restoration.

The ContentStore turns a directory tree into snapshot entries and writes
snapshot entries back to disk. Capture is differential: files whose checksum
matches the base snapshot are stored as links to the snapshot owning the
content instead of carrying a copy.
"""

import asyncio
import os
import stat
import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from snapshot_engine.capture.batching import DEFAULT_BATCH_SIZE, run_in_batches
from snapshot_engine.errors import (
    ChecksumMismatchError,
    ContentUnavailableError,
    FileOperationError,
    InvalidPathError,
    StructuralError,
)
from snapshot_engine.filtering.path_filter import PathFilter
from snapshot_engine.models.enums import FileAction
from snapshot_engine.models.file_entry import FileEntry
from snapshot_engine.models.results import (
    CaptureResult,
    FileError,
    PreviewStats,
    RestoreConflict,
    RestoreImpact,
    RestorePreview,
    RestoreResult,
)
from snapshot_engine.models.snapshot import Snapshot, SnapshotStats
from snapshot_engine.observability.logging import get_logger, log_fields
from snapshot_engine.utils import (
    Clock,
    compute_checksum,
    decode_content,
    encode_content,
    is_safe_relative_path,
    isoformat_timestamp,
    to_posix,
    utc_now,
)

logger = get_logger(__name__)

SnapshotInput = Union[Snapshot, Mapping[str, Any]]

_REQUIRED_SNAPSHOT_FIELDS = ("base_path", "files", "capture_time")


class _Candidate:
    __slots__ = ("relative_path", "absolute_path", "stats")

    def __init__(self, relative_path: str, absolute_path: str, stats: os.stat_result):
        self.relative_path = relative_path
        self.absolute_path = absolute_path
        self.stats = stats


def _is_symlinked_dir(path: str, stats: os.stat_result) -> bool:
    return stat.S_ISLNK(stats.st_mode) and os.path.isdir(path)


def _is_within(path: str, root: str) -> bool:
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False


def _read_live_checksum(path: str) -> Optional[tuple[str, int]]:
    """Returns (checksum, size) of a live file, or None if it does not exist."""
    if not os.path.isfile(path):
        return None
    data = Path(path).read_bytes()
    return compute_checksum(data), len(data)


def _file_error(path: str, error: BaseException) -> FileError:
    if isinstance(error, FileOperationError):
        return FileError(path=path, code=error.code, detail=error.detail)
    return FileError(path=path, code="io_error", detail=str(error))


class ContentStore:
    """Captures file trees into snapshot entries and restores them."""

    def __init__(
        self,
        path_filter: Optional[PathFilter] = None,
        *,
        max_concurrent_files: int = DEFAULT_BATCH_SIZE,
        validate_checksums: bool = True,
        preserve_permissions: bool = True,
        clock: Clock = utc_now,
    ):
        """Initializes the content store.

        Args:
            path_filter: Decides which files participate in a capture.
            max_concurrent_files: Size of each concurrent batch of file operations.
            validate_checksums: Default for re-reading restored files.
            preserve_permissions: Whether restored files get their captured mode bits.
            clock: Source of capture timestamps.
        """
        if max_concurrent_files < 1:
            raise ValueError("max_concurrent_files must be at least 1")
        self.path_filter = path_filter or PathFilter()
        self.max_concurrent_files = max_concurrent_files
        self.validate_checksums = validate_checksums
        self.preserve_permissions = preserve_permissions
        self._clock = clock

    # ------------------------------------------------------------------
    # Candidate discovery
    # ------------------------------------------------------------------

    def _walk(self, root: str, recursive: bool = True) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        pending = [root]
        while pending:
            current = pending.pop()
            try:
                with os.scandir(current) as entries:
                    children = sorted(entries, key=lambda e: e.name)
            except OSError as e:
                logger.warning(
                    "Failed to read directory",
                    extra=log_fields(path=current, error=str(e)),
                )
                continue

            for entry in children:
                relative = to_posix(os.path.relpath(entry.path, root))
                try:
                    is_dir = entry.is_dir(follow_symlinks=False)
                except OSError:
                    is_dir = False
                if is_dir:
                    if recursive and self.path_filter.should_include_directory(relative):
                        pending.append(entry.path)
                    continue
                try:
                    stats = entry.stat(follow_symlinks=False)
                except OSError as e:
                    logger.warning(
                        "Failed to get file stats",
                        extra=log_fields(path=relative, error=str(e)),
                    )
                    continue
                if _is_symlinked_dir(entry.path, stats):
                    # Symlinked directories are never descended into
                    logger.debug("Skipping symlinked directory", extra=log_fields(path=relative))
                    continue
                if self.path_filter.should_include_file(relative, stats):
                    candidates.append(_Candidate(relative, entry.path, stats))
        return candidates

    def _resolve_specific(self, root: str, specific_files: Iterable[str]) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        seen: set[str] = set()
        for raw in specific_files:
            absolute = os.path.normpath(os.path.join(root, raw))
            if not _is_within(absolute, root) or absolute == root:
                logger.warning(
                    "Skipping file outside base path", extra=log_fields(path=raw)
                )
                continue
            relative = to_posix(os.path.relpath(absolute, root))
            if relative in seen:
                continue
            try:
                stats = os.lstat(absolute)
            except OSError as e:
                logger.warning(
                    "Skipping missing file", extra=log_fields(path=raw, error=str(e))
                )
                continue
            if _is_symlinked_dir(absolute, stats):
                logger.warning(
                    "Skipping symlinked directory", extra=log_fields(path=raw)
                )
                continue
            if self.path_filter.should_include_file(relative, stats):
                seen.add(relative)
                candidates.append(_Candidate(relative, absolute, stats))
        return candidates

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture_files(
        self,
        base_path: Union[str, Path],
        *,
        specific_files: Optional[Iterable[str]] = None,
        recursive: bool = True,
        base_snapshot: Optional[Snapshot] = None,
    ) -> CaptureResult:
        """Captures the files under a base path.

        Args:
            base_path: Directory to capture.
            specific_files: Restricts the capture to these paths, relative to
                base_path. Paths escaping base_path or missing are skipped.
            recursive: Whether to descend into subdirectories.
            base_snapshot: Prior snapshot used for deduplication.

        Returns:
            The captured entries, statistics and per-file errors.

        Raises:
            NotADirectoryError: If base_path is not a directory.
        """
        started = time.perf_counter()
        root = os.path.abspath(os.fspath(base_path))
        if not os.path.isdir(root):
            raise NotADirectoryError(f"Base path is not a directory: {root}")

        capture_time = self._clock().isoformat()
        if specific_files is not None:
            candidates = await asyncio.to_thread(
                self._resolve_specific, root, list(specific_files)
            )
        else:
            candidates = await asyncio.to_thread(self._walk, root, recursive)

        logger.debug(
            "Capturing files",
            extra=log_fields(
                base_path=root,
                candidates=len(candidates),
                base_snapshot_id=base_snapshot.id if base_snapshot else None,
            ),
        )

        async def capture_one(candidate: _Candidate) -> FileEntry:
            return await asyncio.to_thread(self._capture_file, candidate, base_snapshot)

        files: dict[str, FileEntry] = {}
        errors: list[FileError] = []
        stats = SnapshotStats()
        for candidate, outcome in await run_in_batches(
            candidates, capture_one, self.max_concurrent_files
        ):
            if isinstance(outcome, (OSError, FileOperationError)):
                logger.warning(
                    "Failed to capture file",
                    extra=log_fields(path=candidate.relative_path, error=str(outcome)),
                )
                errors.append(_file_error(candidate.relative_path, outcome))
                continue
            if isinstance(outcome, BaseException):
                raise outcome

            files[outcome.relative_path] = outcome
            stats.total_files += 1
            stats.total_size += outcome.size
            if outcome.action == FileAction.UNCHANGED:
                stats.unchanged_files += 1
                if outcome.is_linked:
                    stats.linked_files += 1
            else:
                stats.differential_size += outcome.size
                if outcome.action == FileAction.CREATED:
                    stats.new_files += 1
                else:
                    stats.modified_files += 1

        stats.capture_time_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "Files captured",
            extra=log_fields(
                base_path=root,
                total_files=stats.total_files,
                linked_files=stats.linked_files,
                differential_size=stats.differential_size,
                errors=len(errors),
            ),
        )
        return CaptureResult(
            base_path=root,
            capture_time=capture_time,
            files=files,
            stats=stats,
            errors=errors,
        )

    def _capture_file(
        self, candidate: _Candidate, base_snapshot: Optional[Snapshot]
    ) -> FileEntry:
        data = Path(candidate.absolute_path).read_bytes()
        checksum = compute_checksum(data)
        relative = candidate.relative_path

        base_entry = base_snapshot.files.get(relative) if base_snapshot else None
        if base_entry is not None and base_entry.checksum == checksum:
            owner = base_entry.linked_snapshot_id if base_entry.is_linked else base_snapshot.id
            return FileEntry(
                relative_path=relative,
                checksum=checksum,
                size=len(data),
                modified=base_entry.modified,
                permissions=candidate.stats.st_mode,
                encoding=base_entry.encoding,
                action=FileAction.UNCHANGED,
                linked_snapshot_id=owner,
            )

        content, encoding = encode_content(data)
        return FileEntry(
            relative_path=relative,
            checksum=checksum,
            size=len(data),
            modified=isoformat_timestamp(candidate.stats.st_mtime),
            permissions=candidate.stats.st_mode,
            content=content,
            encoding=encoding,
            action=FileAction.CREATED if base_entry is None else FileAction.MODIFIED,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_file_data(self, snapshot: Any) -> bool:
        """Checks that snapshot data is structurally sound for a restore.

        Args:
            snapshot: A Snapshot or its dictionary form.

        Returns:
            True if the data is valid.

        Raises:
            StructuralError: On the first structural problem found.
        """
        if isinstance(snapshot, Snapshot):
            snapshot = snapshot.model_dump(mode="json")
        if not isinstance(snapshot, Mapping):
            raise StructuralError("Snapshot data must be a mapping")

        for field in _REQUIRED_SNAPSHOT_FIELDS:
            if snapshot.get(field) is None:
                raise StructuralError(f"Snapshot data is missing '{field}'")

        files = snapshot["files"]
        if not isinstance(files, Mapping):
            raise StructuralError("Snapshot 'files' must be a mapping")

        for relative_path, entry in files.items():
            if not isinstance(entry, Mapping):
                raise StructuralError(f"Entry '{relative_path}' must be a mapping")
            if not is_safe_relative_path(str(relative_path)):
                raise StructuralError(f"Entry '{relative_path}' escapes the base path")
            if not entry.get("checksum"):
                raise StructuralError(f"Entry '{relative_path}' is missing a checksum")
            if not isinstance(entry.get("content"), str) and not entry.get(
                "linked_snapshot_id"
            ):
                raise StructuralError(
                    f"Entry '{relative_path}' has no content and no linked snapshot"
                )
        return True

    def _coerce(self, snapshot: SnapshotInput) -> Snapshot:
        self.validate_file_data(snapshot)
        if isinstance(snapshot, Snapshot):
            return snapshot
        try:
            return Snapshot.model_validate(dict(snapshot))
        except ValidationError as e:
            raise StructuralError(f"Invalid snapshot data: {e}") from e

    @staticmethod
    def _select(
        snapshot: Snapshot, specific_files: Optional[Iterable[str]]
    ) -> tuple[list[FileEntry], list[FileError]]:
        if specific_files is None:
            return list(snapshot.files.values()), []
        entries: list[FileEntry] = []
        errors: list[FileError] = []
        for raw in dict.fromkeys(to_posix(p) for p in specific_files):
            entry = snapshot.files.get(raw)
            if entry is None:
                errors.append(
                    FileError(
                        path=raw,
                        code="not_in_snapshot",
                        detail=f"File not found in snapshot: {raw}",
                    )
                )
            else:
                entries.append(entry)
        return entries, errors

    @staticmethod
    def _target_path(root: str, relative_path: str) -> str:
        if not is_safe_relative_path(relative_path):
            raise InvalidPathError(
                relative_path, f"Path escapes the base directory: {relative_path}"
            )
        target = os.path.normpath(os.path.join(root, relative_path))
        real_root = os.path.realpath(root)
        if not _is_within(os.path.realpath(target), real_root):
            raise InvalidPathError(
                relative_path, f"Path resolves outside the base directory: {relative_path}"
            )
        return target

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_files(
        self,
        snapshot: SnapshotInput,
        *,
        validate_checksums: Optional[bool] = None,
        specific_files: Optional[Iterable[str]] = None,
    ) -> RestoreResult:
        """Writes snapshot entries back to their base path.

        Restoration is best-effort: every file's outcome is independent and
        files restored before a failure stay restored.

        Args:
            snapshot: The snapshot to restore. Linked entries must already have
                their content resolved.
            validate_checksums: Re-read written files and compare checksums.
                Defaults to the store setting.
            specific_files: Restricts the restore to these relative paths.

        Returns:
            The restored, skipped and failed files.

        Raises:
            StructuralError: If the snapshot data is malformed. Nothing is written.
        """
        snapshot = self._coerce(snapshot)
        validate = self.validate_checksums if validate_checksums is None else validate_checksums
        entries, selection_errors = self._select(snapshot, specific_files)
        root = os.path.abspath(snapshot.base_path)

        logger.debug(
            "Restoring files",
            extra=log_fields(snapshot_id=snapshot.id, files=len(entries), validate=validate),
        )

        async def restore_one(entry: FileEntry) -> bool:
            return await asyncio.to_thread(self._restore_file, root, entry, validate)

        result = RestoreResult(
            snapshot_id=snapshot.id,
            description=snapshot.description,
            errors=selection_errors,
        )
        for entry, outcome in await run_in_batches(
            entries, restore_one, self.max_concurrent_files
        ):
            if isinstance(outcome, (OSError, FileOperationError)):
                logger.warning(
                    "Failed to restore file",
                    extra=log_fields(path=entry.relative_path, error=str(outcome)),
                )
                result.errors.append(_file_error(entry.relative_path, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome:
                result.restored.append(entry.relative_path)
            else:
                result.skipped.append(entry.relative_path)

        logger.info(
            "Files restored",
            extra=log_fields(
                snapshot_id=snapshot.id,
                restored=len(result.restored),
                skipped=len(result.skipped),
                errors=len(result.errors),
            ),
        )
        return result

    def _restore_file(self, root: str, entry: FileEntry, validate: bool) -> bool:
        """Restores one entry. Returns False when the file already matched."""
        target = self._target_path(root, entry.relative_path)

        live = _read_live_checksum(target)
        if live is not None and live[0] == entry.checksum:
            return False

        if entry.content is None:
            raise ContentUnavailableError(
                entry.relative_path,
                f"Content unavailable for {entry.relative_path} "
                f"(linked to {entry.linked_snapshot_id})",
            )
        try:
            data = decode_content(entry.content, entry.encoding)
        except ValueError as e:
            raise FileOperationError(entry.relative_path, str(e), code="invalid_content") from e

        os.makedirs(os.path.dirname(target), exist_ok=True)
        Path(target).write_bytes(data)
        if self.preserve_permissions and entry.permissions:
            os.chmod(target, stat.S_IMODE(entry.permissions))

        if validate:
            written = compute_checksum(Path(target).read_bytes())
            if written != entry.checksum:
                raise ChecksumMismatchError(
                    entry.relative_path,
                    f"Checksum mismatch for {entry.relative_path}: "
                    f"expected {entry.checksum}, got {written}",
                )
        return True

    # ------------------------------------------------------------------
    # Preview and impact
    # ------------------------------------------------------------------

    async def _live_states(
        self, root: str, entries: list[FileEntry]
    ) -> list[tuple[FileEntry, Union[Optional[tuple[str, int]], BaseException]]]:
        async def inspect(entry: FileEntry) -> Optional[tuple[str, int]]:
            target = self._target_path(root, entry.relative_path)
            return await asyncio.to_thread(_read_live_checksum, target)

        return await run_in_batches(entries, inspect, self.max_concurrent_files)

    async def preview_restore(
        self,
        snapshot: SnapshotInput,
        *,
        specific_files: Optional[Iterable[str]] = None,
        detect_deletions: bool = False,
    ) -> RestorePreview:
        """Classifies what a restore would do without writing anything.

        Args:
            snapshot: The snapshot to preview.
            specific_files: Restricts the preview to these relative paths.
            detect_deletions: Also list live files absent from the snapshot.

        Returns:
            Files to create, modify, delete and leave unchanged.
        """
        snapshot = self._coerce(snapshot)
        specific = None if specific_files is None else [to_posix(p) for p in specific_files]
        entries, errors = self._select(snapshot, specific)
        root = os.path.abspath(snapshot.base_path)

        preview = RestorePreview(
            snapshot_id=snapshot.id, description=snapshot.description, errors=errors
        )
        for entry, outcome in await self._live_states(root, entries):
            if isinstance(outcome, (OSError, FileOperationError)):
                preview.errors.append(_file_error(entry.relative_path, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome is None:
                preview.to_create.append(entry.relative_path)
                preview.stats.bytes_to_write += entry.size
            elif outcome[0] != entry.checksum:
                preview.to_modify.append(entry.relative_path)
                preview.stats.bytes_to_write += entry.size
            else:
                preview.unchanged.append(entry.relative_path)

        if detect_deletions and os.path.isdir(root):
            live = await asyncio.to_thread(self._walk, root)
            absent = [c.relative_path for c in live if c.relative_path not in snapshot.files]
            if specific is not None:
                absent = [p for p in absent if p in specific]
            preview.to_delete = absent

        preview.stats = PreviewStats(
            total_files=len(entries),
            to_create=len(preview.to_create),
            to_modify=len(preview.to_modify),
            to_delete=len(preview.to_delete),
            unchanged=len(preview.unchanged),
            impacted_files=len(preview.to_create)
            + len(preview.to_modify)
            + len(preview.to_delete),
            bytes_to_write=preview.stats.bytes_to_write,
        )
        return preview

    async def calculate_restore_impact(self, snapshot: SnapshotInput) -> RestoreImpact:
        """Estimates what restoring a snapshot would overwrite.

        A live file larger than its snapshot version is reported as a
        conflict, since restoring it discards data.
        """
        snapshot = self._coerce(snapshot)
        root = os.path.abspath(snapshot.base_path)

        impact = RestoreImpact()
        for entry, outcome in await self._live_states(root, list(snapshot.files.values())):
            if isinstance(outcome, (OSError, FileOperationError)):
                logger.warning(
                    "Failed to inspect file for impact",
                    extra=log_fields(path=entry.relative_path, error=str(outcome)),
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is not None and outcome[0] == entry.checksum:
                continue

            impact.files_affected += 1
            impact.bytes_affected += entry.size
            if outcome is not None and outcome[1] > entry.size:
                impact.potential_data_loss = True
                impact.conflicts.append(
                    RestoreConflict(
                        path=entry.relative_path,
                        reason="Current file is larger than snapshot version",
                        current_size=outcome[1],
                        snapshot_size=entry.size,
                    )
                )
        return impact
