"""termsync - Main entry point."""

import getpass
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir

from . import __version__
from .auth import KeychainManager
from .config import SyncSettings, setup_logging
from .sync import AutoSyncScheduler, HttpBlobStore, SyncOrchestrator, SyncPhase, YamlConfigStore

logger = logging.getLogger(__name__)

HOST_APP_NAME = "tabby"
HOST_CONFIG_FILE = "config.yaml"
PASSWORD_ENV_VAR = "TERMSYNC_MASTER_PASSWORD"


def default_host_config_path() -> Path:
    """Location of the terminal host's YAML config on this machine."""
    return Path(user_config_dir(HOST_APP_NAME, appauthor=False, roaming=True)) / HOST_CONFIG_FILE


def list_installed_extensions(host_config_dir: Path) -> list[str]:
    """Names of extension packages installed next to the host config."""
    modules_dir = Path(host_config_dir) / "plugins" / "node_modules"
    if not modules_dir.is_dir():
        return []

    names = []
    for entry in sorted(modules_dir.iterdir()):
        if not entry.is_dir() or entry.name.startswith("."):
            continue
        if entry.name.startswith("@"):
            names.extend(f"{entry.name}/{sub.name}" for sub in sorted(entry.iterdir()) if sub.is_dir())
        else:
            names.append(entry.name)
    return names


class TermSyncApp:
    """Headless sync daemon.

    Wires the stores, orchestrator and scheduler together and handles
    lifecycle (unlock, start, shutdown).
    """

    def __init__(self, settings: Optional[SyncSettings] = None):
        """Initialize the application."""
        self.settings = settings or SyncSettings.load()
        setup_logging(self.settings.debug_mode)

        logger.info(f"termsync {__version__} starting...")

        host_config = (
            Path(self.settings.host_config_path)
            if self.settings.host_config_path
            else default_host_config_path()
        )
        logger.info(f"Using host config: {host_config}")
        self.config_store = YamlConfigStore(host_config)

        self.keychain = KeychainManager()
        self.blob_store = self._connect()

        self.orchestrator = SyncOrchestrator(
            config_store=self.config_store,
            blob_store=self.blob_store,
            settings=self.settings,
            extension_lister=lambda: list_installed_extensions(host_config.parent),
        )
        self.orchestrator.add_listener(self._on_phase_change)
        self.scheduler = AutoSyncScheduler(self.orchestrator, self.config_store, self.settings)

        self._shutdown_event = threading.Event()
        self._shutdown_done = False

    def _connect(self) -> Optional[HttpBlobStore]:
        if not self.settings.remote_url:
            logger.warning("No remote store configured")
            return None
        tokens = self.keychain.load()
        if tokens is None:
            logger.warning("No remote store credentials found in keychain")
        return HttpBlobStore(
            self.settings.remote_url,
            token=tokens.access_token if tokens else None,
        )

    def _read_password(self) -> Optional[str]:
        password = os.environ.get(PASSWORD_ENV_VAR)
        if password:
            return password
        if not sys.stdin.isatty():
            return None
        prompt = "Master password: " if self.orchestrator.is_password_configured else "New master password: "
        return getpass.getpass(prompt)

    def _on_phase_change(self, phase: SyncPhase) -> None:
        if phase == SyncPhase.ERROR:
            logger.warning(f"Sync error: {self.settings.last_sync_error}")

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown_event.set()

    def run(self) -> int:
        """Run the daemon until a shutdown signal arrives.

        Returns:
            Process exit code
        """
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        password = self._read_password()
        if not password:
            logger.error(f"Master password required (set {PASSWORD_ENV_VAR} or run interactively)")
            return 1
        if not self.orchestrator.unlock(password):
            logger.error("Wrong master password")
            return 1
        del password

        if not self.settings.enabled:
            self.orchestrator.set_enabled(True)

        self.scheduler.start()
        logger.info("termsync running")

        while not self._shutdown_event.is_set():
            self._shutdown_event.wait(1.0)
        return 0

    # -- Lifecycle --------------------------------------------------------

    def _shutdown(self) -> None:
        """Shutdown the application. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        self.scheduler.stop()
        self.orchestrator.lock()
        if self.blob_store is not None:
            self.blob_store.close()

        logger.info("Shutdown complete")

    def __enter__(self) -> "TermSyncApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._shutdown()


def _lock_fd(fd: int) -> None:
    """Take a non-blocking exclusive lock on ``fd``; raises OSError if held."""
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_fd(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt

        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_UN)


class SingleInstanceLock:
    """Keeps a second daemon from syncing the same config concurrently.

    The lock file holds the owner's pid and is removed on release.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else SyncSettings.get_config_dir() / ".termsync.lock"
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """Try to take the lock without waiting.

        Returns:
            True if this process now owns the lock
        """
        if self.held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            _lock_fd(fd)
        except OSError:
            os.close(fd)
            logger.debug(f"Lock {self.path} is held by another process")
            return False

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        return True

    def release(self) -> None:
        """Drop the lock and delete the lock file."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            _unlock_fd(fd)
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.debug(f"Lock release: {e}")
        finally:
            os.close(fd)

    def __enter__(self) -> "SingleInstanceLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


def main() -> None:
    """Main entry point."""
    lock = SingleInstanceLock()
    if not lock.acquire():
        print("termsync is already running.")
        sys.exit(0)

    try:
        with TermSyncApp() as app:
            code = app.run()
    finally:
        lock.release()
    sys.exit(code)


if __name__ == "__main__":
    main()
