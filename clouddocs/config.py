import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_TRASH_RETENTION_DAYS = 30
DEFAULT_PURGE_INTERVAL_MINUTES = 60
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = 120
DEFAULT_MAX_UPLOAD_SIZE_MB = 100

logger = logging.getLogger("clouddocs.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.expanduser().resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default


class StorageConfig:
    """Filesystem roots and retention settings shared by every component.

    Built once at startup and passed into each component so tests can point
    everything at a temporary directory.
    """

    def __init__(
        self,
        storage_root: Path,
        legacy_uploads_root: Path,
        data_dir: Optional[Path] = None,
        logs_dir: Optional[Path] = None,
        *,
        trash_retention_days: int = DEFAULT_TRASH_RETENTION_DAYS,
        purge_interval_minutes: int = DEFAULT_PURGE_INTERVAL_MINUTES,
        download_rate_limit_per_minute: int = DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
        max_upload_size_mb: int = DEFAULT_MAX_UPLOAD_SIZE_MB,
    ) -> None:
        self.storage_root = Path(storage_root).expanduser().resolve()
        self.legacy_uploads_root = Path(legacy_uploads_root).expanduser().resolve()
        base = self.storage_root.parent
        self.data_dir = Path(data_dir).resolve() if data_dir else base / "data"
        self.logs_dir = Path(logs_dir).resolve() if logs_dir else base / "logs"
        self.trash_retention_days = trash_retention_days
        self.purge_interval_minutes = purge_interval_minutes
        self.download_rate_limit_per_minute = download_rate_limit_per_minute
        self.max_upload_size_mb = max_upload_size_mb

    @property
    def db_path(self) -> Path:
        return self.data_dir / "clouddocs.db"

    @classmethod
    def from_env(cls) -> "StorageConfig":
        base_dir = _resolve_env_path("CLOUDDOCS_BASE_DIR", Path.cwd())
        return cls(
            storage_root=_resolve_env_path("CLOUDDOCS_STORAGE_ROOT", base_dir / "storage"),
            legacy_uploads_root=_resolve_env_path(
                "CLOUDDOCS_UPLOADS_DIR", base_dir / "uploads"
            ),
            data_dir=_resolve_env_path("CLOUDDOCS_DATA_DIR", base_dir / "data"),
            logs_dir=_resolve_env_path("CLOUDDOCS_LOGS_DIR", base_dir / "logs"),
            trash_retention_days=_safe_int_env(
                "CLOUDDOCS_TRASH_RETENTION_DAYS", DEFAULT_TRASH_RETENTION_DAYS
            ),
            purge_interval_minutes=_safe_int_env(
                "CLOUDDOCS_PURGE_INTERVAL_MINUTES", DEFAULT_PURGE_INTERVAL_MINUTES
            ),
            download_rate_limit_per_minute=_safe_int_env(
                "CLOUDDOCS_DOWNLOAD_RATE_LIMIT_PER_MINUTE",
                DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
            ),
            max_upload_size_mb=_safe_int_env(
                "CLOUDDOCS_MAX_UPLOAD_SIZE_MB", DEFAULT_MAX_UPLOAD_SIZE_MB
            ),
        )

    def ensure_directories(self) -> None:
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.legacy_uploads_root.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return (
            f"StorageConfig(storage_root={self.storage_root!s}, "
            f"legacy_uploads_root={self.legacy_uploads_root!s})"
        )
