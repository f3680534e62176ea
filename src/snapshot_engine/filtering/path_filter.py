"""Path filtering for snapshot captures.

Decides which files and directories participate in a capture based on
gitignore-style glob patterns, a size ceiling and the binary-file policy.
Filtering fails closed: whenever a decision cannot be made reliably the path
is excluded.
"""

import os
import re
import stat
from collections.abc import Iterable, Mapping
from fnmatch import fnmatchcase
from typing import Any, Optional, Union

import pathspec

from snapshot_engine.errors import FilterError
from snapshot_engine.models.enums import BinaryHandling
from snapshot_engine.models.filter_config import BINARY_EXTENSIONS, FilterConfig
from snapshot_engine.observability.logging import get_logger, log_fields
from snapshot_engine.utils import to_posix

logger = get_logger(__name__)

_MOCK_FILE_SIZE = 1024


def _compile(patterns: Iterable[str]) -> tuple[pathspec.PathSpec, list[str]]:
    """Compiles glob patterns one by one so a bad pattern cannot hide the others.

    Returns:
        The compiled spec of valid patterns and the list of invalid ones.
    """
    valid: list[str] = []
    invalid: list[str] = []
    for pattern in patterns:
        try:
            _check_pattern(pattern)
        except FilterError:
            invalid.append(pattern)
            continue
        valid.append(pattern)
    return pathspec.PathSpec.from_lines("gitignore", valid), invalid


def _check_pattern(pattern: str):
    try:
        pathspec.PathSpec.from_lines("gitignore", [pattern])
    except (ValueError, re.error) as e:
        raise FilterError(f"Invalid pattern {pattern!r}: {e}") from e


class PathFilter:
    """Decides whether files and directories participate in a capture.

    Inclusion patterns override everything else. Exclusion patterns, the size
    ceiling and the binary policy are then applied in that order.
    """

    def __init__(self, config: Optional[FilterConfig] = None):
        """Initializes the filter.

        Args:
            config: Filtering policy. Defaults to FilterConfig().
        """
        self.config = config.model_copy(deep=True) if config else FilterConfig()
        self._rebuild()

        logger.debug(
            "PathFilter initialized",
            extra=log_fields(
                exclusion_patterns=len(self._exclusion_patterns),
                inclusion_patterns=len(self.config.custom_inclusions),
                max_file_size=self.config.max_file_size,
                binary_file_handling=self.config.binary_file_handling,
            ),
        )

    def _prepare(self, value: str) -> str:
        value = to_posix(value)
        return value if self.config.case_sensitive else value.lower()

    def _prepare_pattern(self, pattern: str) -> str:
        # Backslashes in patterns are escapes, not separators
        return pattern if self.config.case_sensitive else pattern.lower()

    def _rebuild(self):
        """Rebuilds the derived pattern lists and compiled specs."""
        self._exclusion_patterns = list(
            dict.fromkeys(self.config.default_exclusions + self.config.custom_exclusions)
        )
        self._exclusion_spec, self._invalid_exclusions = _compile(
            self._prepare_pattern(p) for p in self._exclusion_patterns
        )
        self._inclusion_spec, self._invalid_inclusions = _compile(
            self._prepare_pattern(p) for p in self.config.custom_inclusions
        )
        self._inclusion_prefixes = [
            self._prepare_pattern(p).lstrip("/")
            for p in self.config.custom_inclusions
            if self._prepare_pattern(p) not in self._invalid_inclusions
        ]

        for pattern in self._invalid_exclusions:
            logger.warning(
                "Invalid exclusion pattern; files not explicitly included will be excluded",
                extra=log_fields(pattern=pattern),
            )
        for pattern in self._invalid_inclusions:
            logger.warning(
                "Invalid inclusion pattern ignored", extra=log_fields(pattern=pattern)
            )

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _matches_inclusion(self, normalized: str, is_dir: bool = False) -> bool:
        if self._inclusion_spec.match_file(normalized):
            return True
        return is_dir and self._inclusion_spec.match_file(normalized.rstrip("/") + "/")

    def _matches_exclusion(self, normalized: str, is_dir: bool = False) -> bool:
        if self._invalid_exclusions:
            return True
        if self._exclusion_spec.match_file(normalized):
            return True
        return is_dir and self._exclusion_spec.match_file(normalized.rstrip("/") + "/")

    def _may_contain_included(self, normalized_dir: str) -> bool:
        """Whether an inclusion pattern could match something below a directory."""
        dir_parts = [part for part in normalized_dir.strip("/").split("/") if part]
        for pattern in self._inclusion_prefixes:
            trimmed = pattern.rstrip("/")
            if "/" not in trimmed:
                # Slash-free patterns match at any depth
                return True
            if self._prefix_matches(trimmed.split("/"), dir_parts):
                return True
        return False

    @staticmethod
    def _prefix_matches(pattern_parts: list[str], dir_parts: list[str]) -> bool:
        for index, dir_part in enumerate(dir_parts):
            if index >= len(pattern_parts):
                return False
            segment = pattern_parts[index]
            if segment == "**":
                return True
            if not fnmatchcase(dir_part, segment):
                return False
        return len(pattern_parts) > len(dir_parts)

    def is_included(self, path: str) -> bool:
        """Checks whether a path matches an inclusion pattern."""
        return self._matches_inclusion(self._prepare(path))

    def is_excluded(self, path: str) -> bool:
        """Checks whether a path matches an exclusion pattern.

        Args:
            path: Path relative to the capture root.

        Returns:
            True if the path should be excluded. Always True while an
            exclusion pattern is invalid.
        """
        return self._matches_exclusion(self._prepare(path))

    def is_binary_file(self, path: str) -> bool:
        """Classifies a file as binary by its extension."""
        name = to_posix(path).rsplit("/", 1)[-1]
        dot = name.rfind(".")
        if dot <= 0 or dot == len(name) - 1:
            return False
        return name[dot:].lower() in BINARY_EXTENSIONS

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def should_include_file(
        self, path: str, stats: Optional[os.stat_result] = None
    ) -> bool:
        """Checks if a file should be included in snapshots.

        Args:
            path: Path used for pattern matching, relative to the capture root.
            stats: Result of lstat/stat for the file. When omitted the path is
                stat-ed directly.

        Returns:
            True if the file should be included.
        """
        try:
            if stats is None:
                try:
                    stats = os.lstat(path)
                except OSError as e:
                    logger.warning(
                        "Failed to get file stats",
                        extra=log_fields(path=path, error=str(e)),
                    )
                    return False

            mode = stats.st_mode
            if stat.S_ISLNK(mode):
                if not self.config.follow_symlinks:
                    return False
            elif not stat.S_ISREG(mode):
                return False

            normalized = self._prepare(path)

            if self._matches_inclusion(normalized):
                return True

            if self._matches_exclusion(normalized):
                logger.debug("File excluded by pattern", extra=log_fields(path=path))
                return False

            if stats.st_size > self.config.max_file_size:
                logger.debug(
                    "File excluded due to size",
                    extra=log_fields(
                        path=path, size=stats.st_size, max_size=self.config.max_file_size
                    ),
                )
                return False

            if self.is_binary_file(normalized):
                policy = self.config.binary_file_handling
                if policy == BinaryHandling.EXCLUDE:
                    logger.debug("Binary file excluded", extra=log_fields(path=path))
                    return False
                if policy == BinaryHandling.WARN:
                    logger.warning("Including binary file", extra=log_fields(path=path))

            return True
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(
                "Error checking file inclusion; excluding",
                extra=log_fields(path=path, error=str(e)),
            )
            return False

    def should_include_directory(self, path: str) -> bool:
        """Checks if a directory subtree should be traversed.

        Args:
            path: Directory path relative to the capture root.

        Returns:
            True if the directory should be descended into.
        """
        try:
            normalized = self._prepare(path)
            if self._matches_inclusion(normalized, is_dir=True):
                return True
            if self._may_contain_included(normalized):
                return True
            if self._matches_exclusion(normalized, is_dir=True):
                logger.debug("Directory excluded by pattern", extra=log_fields(path=path))
                return False
            return True
        except (ValueError, TypeError) as e:
            logger.warning(
                "Error checking directory inclusion; excluding",
                extra=log_fields(path=path, error=str(e)),
            )
            return False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add_exclusion(self, pattern: str):
        """Adds a custom exclusion pattern. Adding a known pattern is a no-op."""
        if pattern in self.config.custom_exclusions or pattern in self._exclusion_patterns:
            return
        self.config.custom_exclusions = [*self.config.custom_exclusions, pattern]
        self._rebuild()
        logger.debug("Added exclusion pattern", extra=log_fields(pattern=pattern))

    def remove_exclusion(self, pattern: str):
        """Removes a custom exclusion pattern. Default exclusions are kept."""
        if pattern not in self.config.custom_exclusions:
            return
        self.config.custom_exclusions = [
            p for p in self.config.custom_exclusions if p != pattern
        ]
        self._rebuild()
        logger.debug("Removed exclusion pattern", extra=log_fields(pattern=pattern))

    def add_inclusion(self, pattern: str):
        """Adds an inclusion pattern. Adding a known pattern is a no-op."""
        if pattern in self.config.custom_inclusions:
            return
        self.config.custom_inclusions = [*self.config.custom_inclusions, pattern]
        self._rebuild()
        logger.debug("Added inclusion pattern", extra=log_fields(pattern=pattern))

    def remove_inclusion(self, pattern: str):
        if pattern not in self.config.custom_inclusions:
            return
        self.config.custom_inclusions = [
            p for p in self.config.custom_inclusions if p != pattern
        ]
        self._rebuild()
        logger.debug("Removed inclusion pattern", extra=log_fields(pattern=pattern))

    def update_configuration(self, new_config: Union[Mapping[str, Any], FilterConfig]):
        """Merges new settings into the current configuration.

        Args:
            new_config: A mapping of FilterConfig fields or a FilterConfig.

        Raises:
            TypeError: If new_config is neither a mapping nor a FilterConfig.
            pydantic.ValidationError: If the merged configuration is invalid.
        """
        if isinstance(new_config, FilterConfig):
            updates = new_config.model_dump(exclude_unset=True)
        elif isinstance(new_config, Mapping):
            updates = dict(new_config)
        else:
            raise TypeError(
                f"Filter configuration must be a mapping, got {type(new_config).__name__}"
            )

        merged = {**self.config.model_dump(), **updates}
        self.config = FilterConfig.model_validate(merged)
        self._rebuild()
        logger.debug(
            "PathFilter configuration updated", extra=log_fields(keys=sorted(updates))
        )

    def get_active_patterns(self) -> list[str]:
        """Returns every active exclusion pattern."""
        return list(self._exclusion_patterns)

    def get_filter_stats(self) -> dict[str, Any]:
        return {
            "total_patterns": len(self._exclusion_patterns),
            "default_patterns": len(self.config.default_exclusions),
            "custom_patterns": len(self.config.custom_exclusions),
            "inclusion_patterns": len(self.config.custom_inclusions),
            "invalid_patterns": len(self._invalid_exclusions) + len(self._invalid_inclusions),
            "max_file_size": self.config.max_file_size,
            "binary_file_handling": self.config.binary_file_handling,
            "follow_symlinks": self.config.follow_symlinks,
            "case_sensitive": self.config.case_sensitive,
            "binary_extensions": len(BINARY_EXTENSIONS),
        }

    def test_paths(self, paths: Iterable[str]) -> dict[str, list[str]]:
        """Classifies paths as if they were small regular files.

        Args:
            paths: Paths relative to the capture root.

        Returns:
            A dictionary with 'included' and 'excluded' path lists.
        """
        mock_stats = os.stat_result(
            (stat.S_IFREG | 0o644, 0, 0, 1, 0, 0, _MOCK_FILE_SIZE, 0, 0, 0)
        )
        results: dict[str, list[str]] = {"included": [], "excluded": []}
        for path in paths:
            key = "included" if self.should_include_file(path, mock_stats) else "excluded"
            results[key].append(path)
        return results
