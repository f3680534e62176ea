"""Exception hierarchy for the snapshot engine.

Every error carries a machine-readable `code` and a human-readable `detail`
so it can be turned into a FileError or OperationError record.
"""


class SnapshotEngineError(Exception):
    code = "snapshot_error"

    def __init__(self, detail: str, code: str | None = None):
        self.detail = detail
        if code is not None:
            self.code = code
        super().__init__(detail)


class StructuralError(SnapshotEngineError):
    """Snapshot data is malformed. Raised before any filesystem mutation."""

    code = "structural_error"


class FilterError(SnapshotEngineError):
    code = "filter_error"


class SnapshotNotFoundError(SnapshotEngineError):
    code = "not_found"

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot not found: {snapshot_id}")


class AmbiguousSnapshotIdError(SnapshotEngineError):
    code = "ambiguous_id"

    def __init__(self, partial_id: str, matches: list[str]):
        self.partial_id = partial_id
        self.matches = matches
        super().__init__(
            f"Ambiguous snapshot ID '{partial_id}'. "
            f"Multiple matches found: {', '.join(matches)}"
        )


class DuplicateSnapshotError(SnapshotEngineError):
    code = "duplicate_id"


class StorageLimitError(SnapshotEngineError):
    code = "storage_limit"


class LinkResolutionError(SnapshotEngineError):
    code = "link_resolution"


class FileOperationError(SnapshotEngineError):
    """Failure confined to a single file during capture or restore."""

    code = "file_error"

    def __init__(self, path: str, detail: str, code: str | None = None):
        self.path = path
        super().__init__(detail, code)


class ContentUnavailableError(FileOperationError):
    code = "content_unavailable"


class ChecksumMismatchError(FileOperationError):
    code = "checksum_mismatch"


class InvalidPathError(FileOperationError):
    code = "invalid_path"
