"""Application settings and configuration management.

This module provides Pydantic-based settings management that loads
configuration from environment variables or a .env file. Settings include
the upload storage directory, the ordered list of DuckDB sources tried when
the SQL engine starts, the default feature limit, sampling depths for schema
inference and column analysis, insert batching, and render chunking.

Example:
    Settings can be accessed via the cached get_settings() function:
        >>> from vecgeo.core.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.feature_limit)

    Environment variables can override defaults:
        >>> FEATURE_LIMIT=0
        >>> DUCKDB_SOURCES='[":memory:"]'
        >>> MAX_UPLOAD_SIZE_BYTES=1073741824
"""

import functools
import pathlib

import pydantic_settings

MEMORY_SOURCE = ":memory:"


class Settings(pydantic_settings.BaseSettings):
    """Runtime configuration pulled from environment variables or defaults.

    All settings can be overridden via environment variables or .env file.
    Directory paths are automatically created on initialization via
    ensure_directories().

    Attributes:
        storage_dir: Directory for uploaded and downloaded source files.
        duckdb_sources: DuckDB databases tried in order when the engine
            starts; the first one that connects and answers a test query
            is adopted.
        allow_origins: List of allowed CORS origins (["*"] allows all).
        max_upload_size_bytes: Maximum file upload size (default 512MB).
        feature_limit: Maximum number of features displayed (0 = no limit).
        column_sample_size: Records sampled when classifying columns.
        schema_sample_size: Records sampled when inferring SQL types.
        insert_batch_size: Initial number of rows per INSERT statement.
        max_value_length: Maximum length of JSON-encoded nested values.
        max_logged_skips: Number of skipped rows reported in the log.
        render_chunk_size: Features drawn per render chunk.
        fetch_timeout_seconds: Timeout for remote loads (None = no timeout).
        export_product: Product name used in export filenames.
        log_level: Root logging level.

    Example:
        Create settings with custom values:
            >>> settings = Settings(
            ...     storage_dir=Path("/custom/uploads"),
            ...     duckdb_sources=[":memory:"],
            ...     feature_limit=5000,
            ... )
            >>> settings.ensure_directories()
    """

    storage_dir: pathlib.Path = pathlib.Path("/tmp/vecgeo/uploads")
    duckdb_sources: list[str] = ["/tmp/vecgeo/engine.duckdb", MEMORY_SOURCE]
    allow_origins: list[str] = ["*"]
    max_upload_size_bytes: int = 512 * 1024 * 1024
    feature_limit: int = 100_000
    column_sample_size: int = 100
    schema_sample_size: int = 1000
    insert_batch_size: int = 500
    max_value_length: int = 10_000
    max_logged_skips: int = 5
    render_chunk_size: int = 1000
    fetch_timeout_seconds: float | None = None
    export_product: str = "vecgeo-viewer"
    log_level: str = "INFO"

    model_config = pydantic_settings.SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def ensure_directories(self) -> None:
        """Create local directories for uploads and on-disk engine files.

        Creates storage_dir for uploaded files and the parent directory of
        every file-backed DuckDB source if they don't already exist.
        """
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        for source in self.duckdb_sources:
            if source != MEMORY_SOURCE:
                pathlib.Path(source).parent.mkdir(parents=True, exist_ok=True)


@functools.lru_cache
def get_settings() -> Settings:
    """Get cached settings instance with directories initialized.

    Settings are loaded from environment variables or .env file and cached
    for the lifetime of the application. Directories are created on first call.
    Subsequent calls return the same cached instance.

    Returns:
        Settings instance with all configuration values populated and
        directories ensured to exist.

    Example:
        The settings are cached, so multiple calls return the same instance:
            >>> settings1 = get_settings()
            >>> settings2 = get_settings()
            >>> assert settings1 is settings2  # Same instance
    """
    settings = Settings()
    settings.ensure_directories()
    return settings
