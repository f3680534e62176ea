"""Configuration model for the path filter."""

from pydantic import ConfigDict, Field, field_validator

from snapshot_engine.models.base import ModelBase
from snapshot_engine.models.enums import BinaryHandling
from snapshot_engine.utils import parse_size

DEFAULT_EXCLUSIONS: list[str] = [
    # Dependencies
    "node_modules",
    "node_modules/**",
    "**/node_modules/**",
    ".venv",
    ".venv/**",
    "venv",
    "venv/**",
    "vendor/**",
    "bower_components/**",
    "__pycache__",
    "*.pyc",
    # Build artifacts
    "dist/**",
    "build/**",
    "target/**",
    "out/**",
    ".next/**",
    ".nuxt/**",
    # Version control
    ".git",
    ".git/**",
    "**/.git/**",
    ".svn/**",
    ".hg/**",
    ".bzr/**",
    # IDE files
    ".vscode/**",
    ".idea/**",
    "*.swp",
    "*.swo",
    "*~",
    ".DS_Store",
    "Thumbs.db",
    # Temporary files
    "*.tmp",
    "*.temp",
    "*.log",
    "*.cache",
    "*.pid",
    "*.seed",
    "*.pid.lock",
    # Environment files
    ".env",
    ".env.*",
    # Coverage reports
    "coverage/**",
    ".nyc_output/**",
    ".coverage",
    "htmlcov/**",
    # Documentation builds
    "docs/_build/**",
    "site/**",
]

BINARY_EXTENSIONS: frozenset[str] = frozenset(
    {
        # Images
        ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".webp", ".ico",
        ".icns", ".svg",
        # Audio and video
        ".mp3", ".wav", ".flac", ".ogg", ".m4a", ".mp4", ".avi", ".mkv",
        ".mov", ".wmv", ".flv",
        # Executables and libraries
        ".exe", ".dll", ".so", ".dylib", ".app", ".bin", ".class", ".o",
        # Archives
        ".zip", ".rar", ".7z", ".tar", ".gz", ".bz2", ".xz",
        # Documents
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
        # Fonts
        ".woff", ".woff2", ".ttf", ".otf", ".eot",
    }
)

DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024


class FilterConfig(ModelBase):
    """Policy deciding which files participate in a capture.

    Attributes:
        default_exclusions: Built-in exclusion glob patterns.
        custom_exclusions: Caller supplied exclusion glob patterns.
        custom_inclusions: Glob patterns that override every exclusion.
        max_file_size: Files larger than this many bytes are excluded.
        binary_file_handling: Policy for files classified as binary.
        follow_symlinks: Whether symbolic links are captured.
        case_sensitive: Whether pattern matching is case sensitive.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True, use_enum_values=True)

    default_exclusions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUSIONS),
        description="Built-in exclusion glob patterns.",
    )
    custom_exclusions: list[str] = Field(
        default_factory=list, description="Caller supplied exclusion glob patterns."
    )
    custom_inclusions: list[str] = Field(
        default_factory=list,
        description="Glob patterns that override every exclusion rule.",
    )
    max_file_size: int = Field(
        default=DEFAULT_MAX_FILE_SIZE,
        gt=0,
        description="Files larger than this many bytes are excluded.",
    )
    binary_file_handling: BinaryHandling = Field(
        default=BinaryHandling.EXCLUDE,
        description="Policy for files classified as binary.",
    )
    follow_symlinks: bool = Field(
        default=False, description="Whether symbolic links are captured."
    )
    case_sensitive: bool = Field(
        default=False, description="Whether pattern matching is case sensitive."
    )

    @field_validator("max_file_size", mode="before")
    @classmethod
    def _parse_size(cls, value):
        return parse_size(value) if isinstance(value, str) else value
