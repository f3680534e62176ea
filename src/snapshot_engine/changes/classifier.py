"""Detection of what changed on disk between two points in time.

The classifier scans file metadata (size, timestamps, mode and a checksum for
small files) without keeping content, and compares two scans. It never writes
to disk.
"""

import os
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional, Union

import pathspec

from snapshot_engine.models.change_state import (
    ChangeDetectionConfig,
    ChangeSet,
    ChangeState,
    ComparisonStats,
    FileChange,
    FileState,
    ScanError,
    ScanStats,
    StateComparison,
)
from snapshot_engine.models.enums import ChangeType
from snapshot_engine.observability.logging import get_logger, log_fields
from snapshot_engine.utils import Clock, compute_checksum, to_posix, utc_now

logger = get_logger(__name__)


class ChangeClassifier:
    """Captures lightweight file states and classifies differences."""

    def __init__(
        self, config: Optional[ChangeDetectionConfig] = None, clock: Clock = utc_now
    ):
        self.config = config.model_copy(deep=True) if config else ChangeDetectionConfig()
        self._clock = clock
        self._compile()
        logger.debug(
            "ChangeClassifier initialized",
            extra=log_fields(exclude_patterns=len(self.config.exclude_patterns)),
        )

    def _compile(self):
        self._exclude_spec = pathspec.PathSpec.from_lines(
            "gitignore", self.config.exclude_patterns
        )

    def _is_excluded(self, relative_path: str, is_dir: bool) -> bool:
        if self._exclude_spec.match_file(relative_path):
            return True
        return is_dir and self._exclude_spec.match_file(relative_path + "/")

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def capture_state(self, base_path: Union[str, Path]) -> ChangeState:
        """Records the metadata of every file under a directory.

        Args:
            base_path: Directory to scan.

        Returns:
            The captured state. Unreadable items are listed in stats.errors.
        """
        started = time.perf_counter()
        root = os.path.abspath(os.fspath(base_path))
        timestamp = self._clock().isoformat()

        files: dict[str, FileState] = {}
        stats = ScanStats()
        self._scan_directory(root, root, files, stats)

        state = ChangeState(
            base_path=root,
            timestamp=timestamp,
            capture_time_ms=(time.perf_counter() - started) * 1000,
            files=files,
            stats=stats,
        )
        logger.debug(
            "File state capture completed",
            extra=log_fields(
                files=stats.total_files,
                directories=stats.directories,
                size=stats.total_size,
                duration_ms=state.capture_time_ms,
            ),
        )
        return state

    def _scan_directory(
        self, directory: str, root: str, files: dict[str, FileState], stats: ScanStats
    ):
        try:
            with os.scandir(directory) as entries:
                items = sorted(entries, key=lambda e: e.name)
        except OSError as e:
            stats.errors.append(
                ScanError(path=to_posix(os.path.relpath(directory, root)), error=str(e))
            )
            logger.debug(
                "Error scanning directory", extra=log_fields(path=directory, error=str(e))
            )
            return
        stats.directories += 1

        for item in items:
            relative = to_posix(os.path.relpath(item.path, root))
            try:
                is_dir = item.is_dir(follow_symlinks=False)
                if self._is_excluded(relative, is_dir):
                    stats.skipped_files += 1
                    continue
                if is_dir:
                    self._scan_directory(item.path, root, files, stats)
                elif item.is_file(follow_symlinks=False):
                    state = self._capture_file_state(item.path, relative)
                    if state is None:
                        stats.skipped_files += 1
                    else:
                        files[relative] = state
                        stats.total_files += 1
                        stats.total_size += state.size
            except OSError as e:
                stats.errors.append(ScanError(path=relative, error=str(e)))
                logger.debug(
                    "Error processing item", extra=log_fields(path=relative, error=str(e))
                )

    def _capture_file_state(self, path: str, relative: str) -> Optional[FileState]:
        st = os.stat(path)
        if st.st_size > self.config.max_file_size:
            logger.debug(
                "Skipping large file", extra=log_fields(path=relative, size=st.st_size)
            )
            return None

        checksum = None
        if self.config.use_checksums and st.st_size < self.config.checksum_size_limit:
            try:
                checksum = compute_checksum(Path(path).read_bytes())
            except OSError as e:
                logger.debug(
                    "Could not generate checksum",
                    extra=log_fields(path=relative, error=str(e)),
                )

        return FileState(
            size=st.st_size,
            modified=st.st_mtime,
            created=getattr(st, "st_birthtime", st.st_mtime),
            permissions=st.st_mode,
            checksum=checksum,
        )

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def _files_differ(self, before: FileState, after: FileState) -> bool:
        if before.size != after.size:
            return True
        if self.config.track_modification_time and before.modified != after.modified:
            return True
        if self.config.use_checksums and before.checksum and after.checksum:
            return before.checksum != after.checksum
        return False

    @staticmethod
    def _change_type(before: FileState, after: FileState) -> Optional[ChangeType]:
        if before.size != after.size:
            return (
                ChangeType.SIZE_DECREASED
                if before.size > after.size
                else ChangeType.SIZE_INCREASED
            )
        if before.checksum and after.checksum and before.checksum != after.checksum:
            return ChangeType.CONTENT_CHANGED
        if before.modified != after.modified:
            return ChangeType.TIMESTAMP_CHANGED
        return None

    def compare_states(self, before: ChangeState, after: ChangeState) -> StateComparison:
        """Classifies the differences between two captured states.

        Args:
            before: State captured before an operation.
            after: State captured after it.

        Returns:
            Created, modified, deleted and unchanged paths with counters.
        """
        changes = ChangeSet()
        for path, state in before.files.items():
            if path not in after.files:
                changes.deleted.append(FileChange(path=path, before=state))

        for path, state in after.files.items():
            previous = before.files.get(path)
            if previous is None:
                changes.created.append(FileChange(path=path, after=state))
            elif self._files_differ(previous, state):
                changes.modified.append(
                    FileChange(
                        path=path,
                        before=previous,
                        after=state,
                        change_type=self._change_type(previous, state),
                    )
                )
            else:
                changes.unchanged.append(path)

        change_count = len(changes.created) + len(changes.modified) + len(changes.deleted)
        comparison = StateComparison(
            changes=changes,
            has_changes=change_count > 0,
            change_count=change_count,
            stats=ComparisonStats(
                created_files=len(changes.created),
                modified_files=len(changes.modified),
                deleted_files=len(changes.deleted),
                unchanged_files=len(changes.unchanged),
                total_files=len(after.files),
            ),
        )
        logger.debug(
            "File state comparison completed",
            extra=log_fields(**comparison.stats.model_dump()),
        )
        return comparison

    def get_modified_files(self, before: ChangeState, after: ChangeState) -> list[str]:
        """Returns modified and created paths."""
        comparison = self.compare_states(before, after)
        return [c.path for c in comparison.changes.modified] + [
            c.path for c in comparison.changes.created
        ]

    def warn_about_unexpected_changes(
        self, tool_name: str, declared_modifies: bool, comparison: StateComparison
    ) -> bool:
        """Logs a warning when a tool's declaration contradicts what it did.

        Args:
            tool_name: Name of the tool that ran.
            declared_modifies: Whether the tool declared it modifies files.
            comparison: What actually changed.

        Returns:
            True if the declaration and the observed changes disagree.
        """
        changes = comparison.changes
        if not declared_modifies and comparison.has_changes:
            if self.config.warn_on_unexpected_changes:
                logger.warning(
                    "Tool made unexpected file changes",
                    extra=log_fields(
                        tool_name=tool_name,
                        change_count=comparison.change_count,
                        modified_files=[c.path for c in changes.modified],
                        created_files=[c.path for c in changes.created],
                        deleted_files=[c.path for c in changes.deleted],
                    ),
                )
            return True
        if declared_modifies and not comparison.has_changes:
            if self.config.warn_on_unexpected_changes:
                logger.warning(
                    "Tool declared it would modify files but no changes detected",
                    extra=log_fields(tool_name=tool_name),
                )
            return True
        return False

    def should_create_snapshot(self, comparison: StateComparison) -> bool:
        if not comparison.has_changes:
            return False
        if comparison.changes.created or comparison.changes.deleted:
            return True
        for change in comparison.changes.modified:
            if change.change_type == ChangeType.CONTENT_CHANGED:
                return True
            if change.before and change.after:
                delta = abs(change.after.size - change.before.size)
                if delta >= self.config.minimum_change_size:
                    return True
        return False

    def update_configuration(self, new_config: Mapping[str, Any]):
        """Merges new settings into the configuration.

        Raises:
            TypeError: If new_config is not a mapping.
            pydantic.ValidationError: If the merged configuration is invalid.
        """
        if not isinstance(new_config, Mapping):
            raise TypeError(
                f"Change detection configuration must be a mapping, got {type(new_config).__name__}"
            )
        self.config = ChangeDetectionConfig.model_validate(
            {**self.config.model_dump(), **dict(new_config)}
        )
        self._compile()
        logger.debug(
            "ChangeClassifier configuration updated",
            extra=log_fields(keys=sorted(new_config)),
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "config": self.config.model_dump(),
            "exclude_patterns": len(self.config.exclude_patterns),
        }
