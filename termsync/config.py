"""Configuration management for termsync."""

import json
import logging
import logging.handlers
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_log_dir

__all__ = [
    "SyncSettings",
    "setup_logging",
    "DEFAULT_SYNC_INTERVAL_MINUTES",
    "SYNC_DEBOUNCE_SECONDS",
    "SYNC_FILE_NAME",
]

logger = logging.getLogger(__name__)

APP_NAME = "termsync"
APP_AUTHOR = "termsync"

# Remote blob name inside the app-private namespace
SYNC_FILE_NAME = "termsync-sync.json"

# Sync settings
DEFAULT_SYNC_INTERVAL_MINUTES = 5
MIN_SYNC_INTERVAL_MINUTES = 1
SYNC_DEBOUNCE_SECONDS = 5.0  # quiet window after the last local change


@dataclass
class SyncSettings:
    """Persisted sync state, kept outside the host config.

    Writing bookkeeping here instead of into the host config means recording
    a sync never looks like a local change that needs uploading.
    """

    enabled: bool = False
    auto_sync_on_change: bool = True
    auto_sync_on_startup: bool = True
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES

    # PBKDF2 verification hash of the master password (never the password)
    master_password_hash: Optional[str] = None
    master_password_salt: Optional[str] = None

    # Sync status
    last_sync_time: Optional[int] = None  # epoch ms
    last_sync_error: Optional[str] = None
    last_sync_host: Optional[str] = None

    remote_file_id: Optional[str] = None
    remote_url: Optional[str] = None
    host_config_path: Optional[str] = None
    debug_mode: bool = False

    config_file: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the default settings file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "SyncSettings":
        """Load settings from file, or return defaults."""
        config_file = Path(path) if path else cls.get_config_file()
        settings = cls()
        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                settings = cls._from_dict(data)
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Failed to load settings: {e}, using defaults")
        settings.config_file = str(config_file)
        return settings

    @classmethod
    def _from_dict(cls, data: dict) -> "SyncSettings":
        """Create settings from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)} - {"config_file"}
        settings = cls(**{k: v for k, v in data.items() if k in known})
        settings.sync_interval_minutes = max(
            MIN_SYNC_INTERVAL_MINUTES, int(settings.sync_interval_minutes)
        )
        return settings

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("config_file", None)
        return data

    def save(self) -> None:
        """Save settings to file."""
        config_file = Path(self.config_file) if self.config_file else self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Settings saved to {config_file}")

    @property
    def is_password_configured(self) -> bool:
        return bool(self.master_password_hash and self.master_password_salt)


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = SyncSettings.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "termsync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.handlers.RotatingFileHandler(
                log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
            ),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
