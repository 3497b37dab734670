"""Portable path mapping between machines.

Absolute paths under the user's home directory are rewritten to a symbolic
``$SYNC_HOME/...`` form with forward slashes, so a background image picked
on Windows resolves under the home directory on macOS or Linux.
"""

import ntpath
import os
import posixpath
from pathlib import Path
from typing import Any, Optional

__all__ = ["PathMapper", "HOME_TOKEN", "to_portable", "to_local"]

HOME_TOKEN = "$SYNC_HOME"

PLATFORM_POSIX = "posix"
PLATFORM_WINDOWS = "windows"


class PathMapper:
    """Bidirectional mapper for one platform flavour and home directory."""

    def __init__(self, home: Optional[str] = None, platform: Optional[str] = None):
        """Initialize path mapper.

        Args:
            home: Home directory to map against (defaults to the current user's)
            platform: ``"posix"`` or ``"windows"`` (defaults to the running OS)
        """
        if platform is None:
            platform = PLATFORM_WINDOWS if os.name == "nt" else PLATFORM_POSIX
        if platform not in (PLATFORM_POSIX, PLATFORM_WINDOWS):
            raise ValueError(f"Unknown platform flavour: {platform}")

        self.platform = platform
        self._path = ntpath if platform == PLATFORM_WINDOWS else posixpath
        self.home = self._path.normpath(home if home is not None else str(Path.home()))

    @property
    def case_insensitive(self) -> bool:
        return self.platform == PLATFORM_WINDOWS

    def normalize(self, path: str) -> str:
        """Normalize ``path`` for this platform's separator conventions."""
        return self._path.normpath(path)

    def _relative_to_home(self, normalized: str) -> Optional[str]:
        home = self.home
        candidate = normalized
        if self.case_insensitive:
            home = home.lower()
            candidate = candidate.lower()

        if candidate == home:
            return ""
        prefix = home if home.endswith(self._path.sep) else home + self._path.sep
        if not candidate.startswith(prefix):
            return None
        return normalized[len(prefix):]

    def to_portable(self, local_path: Any) -> Any:
        """Convert a machine path to ``$SYNC_HOME/...`` when it lives under home.

        Non-string values and paths outside the home directory are returned
        unchanged.
        """
        if not isinstance(local_path, str) or not local_path:
            return local_path

        relative = self._relative_to_home(self.normalize(local_path))
        if relative is None:
            return local_path

        segments = [s for s in relative.split(self._path.sep) if s]
        return "/".join([HOME_TOKEN] + segments) if segments else f"{HOME_TOKEN}/"

    def to_local(self, portable_path: Any) -> Any:
        """Resolve a ``$SYNC_HOME/...`` path against this machine's home."""
        if not isinstance(portable_path, str):
            return portable_path
        if portable_path != HOME_TOKEN and not portable_path.startswith(HOME_TOKEN + "/"):
            return portable_path

        segments = [s for s in portable_path[len(HOME_TOKEN):].split("/") if s]
        if not segments:
            return self.home
        return self._path.join(self.home, *segments)


_default_mapper: Optional[PathMapper] = None


def _mapper() -> PathMapper:
    global _default_mapper
    if _default_mapper is None:
        _default_mapper = PathMapper()
    return _default_mapper


def to_portable(local_path: Any) -> Any:
    """Map a path on the running machine to its portable form."""
    return _mapper().to_portable(local_path)


def to_local(portable_path: Any) -> Any:
    """Map a portable path onto the running machine."""
    return _mapper().to_local(portable_path)
