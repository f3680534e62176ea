"""Engine settings.

Settings are plain pydantic models loaded from an optional YAML file and
overridden by environment variables. They are passed explicitly to the
components that need them.
"""

import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import Field

from snapshot_engine.capture.batching import DEFAULT_BATCH_SIZE
from snapshot_engine.models.base import ModelBase, StorageType
from snapshot_engine.models.change_state import ChangeDetectionConfig
from snapshot_engine.models.filter_config import FilterConfig
from snapshot_engine.persistence.db import DEFAULT_SQLITE_URL
from snapshot_engine.persistence.in_memory import InMemorySnapshotRepository
from snapshot_engine.persistence.repository import (
    DEFAULT_MAX_SNAPSHOTS,
    SnapshotRepository,
)
from snapshot_engine.persistence.sql_repository import SQLSnapshotRepository

ENV_STORAGE_TYPE = "SNAPSHOT_STORAGE_TYPE"
ENV_DATABASE_URL = "SNAPSHOT_DATABASE_URL"
ENV_MAX_SNAPSHOTS = "SNAPSHOT_MAX_SNAPSHOTS"


class StorageSettings(ModelBase):
    """Where snapshots live and how many are retained.

    Attributes:
        type: 'memory' for an ephemeral store, 'sql' for a database.
        database_url: SQLAlchemy URL used by the 'sql' store.
        max_snapshots: Oldest snapshots are evicted beyond this count.
        max_memory_mb: Oldest snapshots are evicted beyond this size.
    """

    type: StorageType = "memory"
    database_url: str = DEFAULT_SQLITE_URL
    max_snapshots: int = Field(default=DEFAULT_MAX_SNAPSHOTS, ge=1)
    max_memory_mb: int = Field(default=100, ge=1)

    @property
    def max_memory_bytes(self) -> int:
        return self.max_memory_mb * 1024 * 1024


class BackupSettings(ModelBase):
    """Restore behaviour.

    Attributes:
        create_backups: Take a safety snapshot before every restore.
        validate_checksums: Re-read restored files and compare checksums.
        preserve_permissions: Restore captured mode bits.
        max_concurrent_files: Size of each concurrent batch of file operations.
    """

    create_backups: bool = True
    validate_checksums: bool = True
    preserve_permissions: bool = True
    max_concurrent_files: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)


class EngineSettings(ModelBase):
    """All settings of the snapshot engine."""

    filtering: FilterConfig = Field(default_factory=FilterConfig)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    change_detection: ChangeDetectionConfig = Field(default_factory=ChangeDetectionConfig)


def _env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    storage = dict(data.get("storage") or {})
    if os.environ.get(ENV_STORAGE_TYPE):
        storage["type"] = os.environ[ENV_STORAGE_TYPE]
    if os.environ.get(ENV_DATABASE_URL):
        storage["database_url"] = os.environ[ENV_DATABASE_URL]
    if os.environ.get(ENV_MAX_SNAPSHOTS):
        storage["max_snapshots"] = os.environ[ENV_MAX_SNAPSHOTS]
    if storage:
        data["storage"] = storage
    return data


def load_settings(path: Optional[Union[str, Path]] = None) -> EngineSettings:
    """Loads settings from an optional YAML file and the environment.

    Args:
        path: YAML file with any subset of the settings sections.

    Returns:
        The validated settings.

    Raises:
        FileNotFoundError: If path is given but does not exist.
        ValueError: If the file does not contain a mapping.
        pydantic.ValidationError: If a value is invalid.
    """
    data: dict[str, Any] = {}
    if path is not None:
        with open(path, "r") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Settings file must contain a mapping: {path}")
        data = loaded or {}
    return EngineSettings.model_validate(_env_overrides(data))


def build_repository(storage: StorageSettings) -> SnapshotRepository:
    """Creates the repository selected by the storage settings."""
    if storage.type == "sql":
        return SQLSnapshotRepository(
            storage.database_url,
            max_snapshots=storage.max_snapshots,
            max_memory_bytes=storage.max_memory_bytes,
        )
    return InMemorySnapshotRepository(
        max_snapshots=storage.max_snapshots,
        max_memory_bytes=storage.max_memory_bytes,
    )
