"""Local collaborators: the host config file and machine identity."""

import logging
import os
import platform
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional

import yaml

from .models import UNKNOWN_HOST
from .tree import ConfigTree, is_mapping

__all__ = [
    "ConfigStoreError",
    "YamlConfigStore",
    "current_hostname",
    "dump_config",
    "parse_config",
]

logger = logging.getLogger(__name__)


class ConfigStoreError(Exception):
    """Host config could not be read or parsed."""

    pass


def parse_config(text: str) -> ConfigTree:
    """Parse the host's YAML config text into a tree.

    Raises:
        ConfigStoreError: If the text is not YAML or not a mapping
    """
    try:
        data = yaml.safe_load(text) if text.strip() else {}
    except yaml.YAMLError as e:
        raise ConfigStoreError(f"Local config is not valid YAML: {e}") from e
    if data is None:
        return {}
    if not is_mapping(data):
        raise ConfigStoreError("Local config is not a mapping")
    return data


def dump_config(config: ConfigTree) -> str:
    """Serialize a config tree back to YAML."""
    return yaml.safe_dump(config, sort_keys=False, allow_unicode=True)


def current_hostname() -> str:
    """Best-effort machine name; never raises."""
    try:
        name = platform.node()
    except OSError:
        name = ""
    return name or UNKNOWN_HOST


class YamlConfigStore:
    """File-backed host configuration with change notification.

    ``write_raw`` notifies subscribers synchronously (the host's own save
    path does too); edits made by other processes are picked up by
    :meth:`poll_changes`.
    """

    def __init__(self, path: Path):
        """Initialize config store.

        Args:
            path: Path to the host's YAML config file
        """
        self.path = Path(path)
        self._subscribers: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._last_mtime: Optional[int] = self._mtime()

    def _mtime(self) -> Optional[int]:
        try:
            return self.path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def read_raw(self) -> str:
        """Read the config text; a missing file reads as empty."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise ConfigStoreError(f"Cannot read {self.path}: {e}") from e

    def write_raw(self, text: str) -> None:
        """Atomically replace the config file and notify subscribers."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".termsync-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise ConfigStoreError(f"Cannot write {self.path}: {e}") from e

        with self._lock:
            self._last_mtime = self._mtime()
        self._notify()

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a change callback; returns a function that unsubscribes."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def poll_changes(self) -> bool:
        """Notify subscribers if the file changed on disk since last seen.

        Returns:
            True if a change was detected
        """
        mtime = self._mtime()
        with self._lock:
            if mtime == self._last_mtime:
                return False
            self._last_mtime = mtime
        logger.debug(f"Detected external change to {self.path}")
        self._notify()
        return True

    def _notify(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback()
            except Exception as e:
                logger.error(f"Config change callback failed: {e}")
