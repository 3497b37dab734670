"""Sync orchestrator - sequences sanitize/encrypt/merge/apply against the stores.

Upload:   read local -> sanitize -> encrypt -> upload
Download: download -> decrypt -> merge with local -> write local

Every operation returns a SyncResult. Failures are persisted to the sync
settings and the local config is never written unless the whole download
half-cycle succeeded.
"""

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from ..config import SYNC_FILE_NAME, SyncSettings
from .cipher import EncryptedEnvelope, decrypt_object, encrypt_object, hash_password, verify_password
from .http_client import BlobStoreTransientError
from .merge import apply_to_config, merge_payloads
from .models import (
    UNKNOWN_HOST,
    MergeResult,
    PayloadError,
    SyncAction,
    SyncPayload,
    SyncPhase,
    SyncResult,
    now_ms,
)
from .path_mapper import PathMapper
from .protocols import BlobStoreProtocol, BlobVersion, ConfigStoreProtocol
from .retry import RetryConfig, RetryExhausted, retry_with_backoff
from .sanitize import create_payload
from .secret import MasterPassword
from .stores import ConfigStoreError, current_hostname, dump_config, parse_config
from .tree import ConfigTree

__all__ = ["SyncOrchestrator"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Remote transfers: 3 attempts, 1s then 2s between them
DEFAULT_RETRY_CONFIG = RetryConfig(max_attempts=3, base_delay=1.0, exponential_base=2.0)

RETRYABLE_ERRORS = (BlobStoreTransientError, OSError)

ERROR_NO_PASSWORD = "Master password not set"
ERROR_NOT_CONNECTED = "Not connected to remote store"
ERROR_CORRUPTED = "Remote sync file is corrupted (invalid JSON)"
ERROR_DECRYPT = "Failed to decrypt remote data - wrong password or corrupted data"


class SyncOrchestrator:
    """Runs sync cycles one at a time and owns the unlocked session."""

    def __init__(
        self,
        config_store: ConfigStoreProtocol,
        blob_store: Optional[BlobStoreProtocol],
        settings: SyncSettings,
        hostname_provider: Callable[[], str] = current_hostname,
        extension_lister: Optional[Callable[[], list[str]]] = None,
        mapper: Optional[PathMapper] = None,
        retry_config: Optional[RetryConfig] = None,
        blob_name: str = SYNC_FILE_NAME,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize orchestrator.

        Args:
            config_store: Host config store
            blob_store: Remote store, or None while not connected
            settings: Persisted sync settings and bookkeeping
            hostname_provider: Returns this machine's name
            extension_lister: Returns installed extension names
            mapper: Path mapper (defaults to this machine)
            retry_config: Backoff for remote transfers
            blob_name: Name of the remote sync file
            sleep: Sleep function used between retries
        """
        self.config_store = config_store
        self.blob_store = blob_store
        self.settings = settings
        self.mapper = mapper
        self.blob_name = blob_name
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._hostname_provider = hostname_provider
        self._extension_lister = extension_lister
        self._sleep = sleep

        self._password: Optional[MasterPassword] = None

        # Single state cell: phase, busy flag and the coalesced follow-up
        self._state_lock = threading.Lock()
        self._phase = SyncPhase.IDLE if settings.enabled else SyncPhase.DISABLED
        self._busy = False
        self._queued: Optional[Callable[[], SyncResult]] = None
        self._listeners: list[Callable[[SyncPhase], None]] = []

    # -- State ------------------------------------------------------------

    @property
    def phase(self) -> SyncPhase:
        with self._state_lock:
            return self._phase

    @property
    def is_busy(self) -> bool:
        with self._state_lock:
            return self._busy

    @property
    def is_applying_remote(self) -> bool:
        """True while merged state is being written to the local config."""
        return self.phase == SyncPhase.WRITING_LOCAL

    def add_listener(self, callback: Callable[[SyncPhase], None]) -> None:
        """Register a callback for phase changes."""
        with self._state_lock:
            self._listeners.append(callback)

    def _set_phase(self, phase: SyncPhase) -> None:
        with self._state_lock:
            if self._phase == phase:
                return
            self._phase = phase
            listeners = list(self._listeners)
        logger.debug(f"Sync phase -> {phase.value}")
        for callback in listeners:
            try:
                callback(phase)
            except Exception as e:
                logger.error(f"Phase listener failed: {e}")

    def _idle_phase(self) -> SyncPhase:
        return SyncPhase.IDLE if self.settings.enabled else SyncPhase.DISABLED

    def set_enabled(self, enabled: bool) -> None:
        """Enable or disable sync and persist the choice."""
        self.settings.enabled = enabled
        self._save_settings()
        if not self.is_busy:
            self._set_phase(self._idle_phase())
        logger.info(f"Sync {'enabled' if enabled else 'disabled'}")

    def get_status(self) -> dict:
        """Get current sync status."""
        return {
            "phase": self.phase.value,
            "enabled": self.settings.enabled,
            "unlocked": self.is_unlocked,
            "password_configured": self.is_password_configured,
            "connected": self.blob_store is not None,
            "last_sync_time": self.settings.last_sync_time,
            "last_sync_error": self.settings.last_sync_error,
            "last_sync_host": self.settings.last_sync_host,
        }

    # -- Master password --------------------------------------------------

    @property
    def is_unlocked(self) -> bool:
        return self._password is not None and not self._password.is_wiped

    @property
    def is_password_configured(self) -> bool:
        return self.settings.is_password_configured

    def setup_master_password(self, password: str) -> None:
        """Set a new master password (first-time setup or change)."""
        password_hash, salt = hash_password(password)
        self.settings.master_password_hash = password_hash
        self.settings.master_password_salt = salt
        self._save_settings()
        self._replace_password(MasterPassword(password))
        logger.info("Master password configured")

    def unlock(self, password: str) -> bool:
        """Unlock the session with the master password.

        Verifies against the stored hash; with no hash stored yet the
        password becomes the new master password.

        Returns:
            True if the session is now unlocked
        """
        if not self.is_password_configured:
            self.setup_master_password(password)
            return True

        if not verify_password(
            password, self.settings.master_password_hash, self.settings.master_password_salt
        ):
            logger.warning("Invalid master password")
            return False

        self._replace_password(MasterPassword(password))
        logger.info("Session unlocked")
        return True

    def lock(self) -> None:
        """Wipe the master password from memory."""
        self._replace_password(None)
        logger.info("Session locked")

    def _replace_password(self, password: Optional[MasterPassword]) -> None:
        old, self._password = self._password, password
        if old is not None:
            old.wipe()

    # -- Public operations ------------------------------------------------

    def sync_to_remote(self) -> SyncResult:
        """Upload the sanitized local config."""
        return self._exclusive(self._upload)

    def sync_from_remote(self) -> SyncResult:
        """Download, merge and apply the remote config."""
        return self._exclusive(self._download)

    def full_sync(self) -> SyncResult:
        """Download and merge first, then upload the merged result."""
        return self._exclusive(self._full_sync)

    def restore_version(self, version_id: str) -> SyncResult:
        """Merge a historical revision of the remote file into local config."""
        return self._exclusive(lambda: self._restore(version_id))

    def list_versions(self) -> list[BlobVersion]:
        """List remote revisions; empty when unavailable."""
        if self.blob_store is None:
            return []
        try:
            return self._with_retry(
                lambda: self.blob_store.list_versions(self.blob_name), "Listing versions"
            )
        except Exception as e:
            logger.error(f"Failed to list versions: {e}")
            return []

    # -- Cycle control ----------------------------------------------------

    def _exclusive(self, operation: Callable[[], SyncResult]) -> SyncResult:
        """Run ``operation`` unless a cycle is active; then coalesce it.

        A request arriving mid-cycle replaces any earlier queued request and
        runs once after the active cycle finishes.
        """
        with self._state_lock:
            if self._busy:
                self._queued = operation
                logger.info("Sync already in progress - request coalesced")
                return SyncResult(success=True, action=SyncAction.NONE)
            self._busy = True

        try:
            result = operation()
            while True:
                with self._state_lock:
                    follow_up, self._queued = self._queued, None
                    if follow_up is None:
                        self._busy = False
                        break
                logger.info("Running coalesced sync request")
                follow_up()
            return result
        except BaseException:
            with self._state_lock:
                self._busy = False
                self._queued = None
            raise

    def _check_ready(self) -> Optional[SyncResult]:
        if not self.is_unlocked:
            return SyncResult.failed(SyncAction.NONE, ERROR_NO_PASSWORD)
        if self.blob_store is None:
            return SyncResult.failed(SyncAction.NONE, ERROR_NOT_CONNECTED)
        return None

    def _with_retry(self, func: Callable[[], T], description: str) -> T:
        return retry_with_backoff(
            func,
            config=self.retry_config,
            retryable_exceptions=RETRYABLE_ERRORS,
            description=description,
            sleep=self._sleep,
        )

    # -- Cycles -----------------------------------------------------------

    def _upload(self) -> SyncResult:
        not_ready = self._check_ready()
        if not_ready:
            return not_ready

        logger.info("Starting sync to remote")
        try:
            self._set_phase(SyncPhase.SANITIZING)
            raw = self._read_local()
            hostname = self._hostname()
            payload = create_payload(raw, hostname, self._installed_plugins(), self.mapper)

            self._set_phase(SyncPhase.ENCRYPTING)
            envelope = encrypt_object(payload.to_dict(), self._password.reveal())
            body = envelope.to_json().encode("utf-8")

            self._set_phase(SyncPhase.UPLOADING)
            self._with_retry(lambda: self.blob_store.upload(self.blob_name, body), "Upload")
        except Exception as e:
            return self._fail(SyncAction.UPLOAD, e)

        timestamp = self._record_success(hostname)
        logger.info(f"Sync to remote completed ({len(payload.profiles)} profiles)")
        return SyncResult(success=True, action=SyncAction.UPLOAD, timestamp=timestamp)

    def _download(self) -> SyncResult:
        not_ready = self._check_ready()
        if not_ready:
            return not_ready

        logger.info("Starting sync from remote")
        try:
            self._set_phase(SyncPhase.DOWNLOADING)
            data = self._with_retry(lambda: self.blob_store.download(self.blob_name), "Download")
        except Exception as e:
            return self._fail(SyncAction.DOWNLOAD, e)

        if data is None:
            logger.info("No remote sync file found")
            self._set_phase(self._idle_phase())
            return SyncResult(success=True, action=SyncAction.NONE)

        return self._merge_and_apply(data, SyncAction.MERGE, SyncAction.DOWNLOAD)

    def _restore(self, version_id: str) -> SyncResult:
        not_ready = self._check_ready()
        if not_ready:
            return not_ready

        logger.info(f"Restoring remote version {version_id}")
        try:
            self._set_phase(SyncPhase.DOWNLOADING)
            data = self._with_retry(
                lambda: self.blob_store.download_version(self.blob_name, version_id),
                "Version download",
            )
        except Exception as e:
            return self._fail(SyncAction.RESTORE, e)

        return self._merge_and_apply(data, SyncAction.RESTORE, SyncAction.RESTORE)

    def _full_sync(self) -> SyncResult:
        logger.info("Performing full sync")
        downloaded = self._download()
        if not downloaded.success:
            return downloaded

        uploaded = self._upload()
        uploaded.conflicts_resolved = downloaded.conflicts_resolved
        uploaded.added_profiles = downloaded.added_profiles
        uploaded.missing_plugins = downloaded.missing_plugins
        return uploaded

    def _merge_and_apply(
        self, data: bytes, success_action: SyncAction, failure_action: SyncAction
    ) -> SyncResult:
        try:
            self._set_phase(SyncPhase.DECRYPTING)
            remote = self._decode(data)

            self._set_phase(SyncPhase.MERGING)
            raw = self._read_local()
            hostname = self._hostname()
            installed = self._installed_plugins()
            local = create_payload(raw, hostname, installed, self.mapper)
            merge = merge_payloads(local, remote, raw, self.mapper)
            updated = apply_to_config(raw, merge.merged_payload, self.mapper)
            text = dump_config(updated)
            missing = self._missing_plugins(remote, installed)

            self._set_phase(SyncPhase.WRITING_LOCAL)
            self.config_store.write_raw(text)
        except Exception as e:
            return self._fail(failure_action, e)

        timestamp = self._record_success(hostname)
        self._log_merge(merge)
        return SyncResult(
            success=True,
            action=success_action,
            timestamp=timestamp,
            conflicts_resolved=len(merge.conflicts),
            added_profiles=list(merge.added_profiles),
            missing_plugins=missing,
        )

    # -- Helpers ----------------------------------------------------------

    def _decode(self, data: bytes) -> SyncPayload:
        """Turn the remote file body into a validated payload.

        Raises:
            PayloadError: If the file is corrupted, cannot be decrypted or
                has an invalid structure
        """
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PayloadError(ERROR_CORRUPTED) from e

        envelope = EncryptedEnvelope.from_json(text)
        if envelope is None:
            raise PayloadError(ERROR_CORRUPTED)

        decrypted = decrypt_object(envelope, self._password.reveal())
        if decrypted is None:
            raise PayloadError(ERROR_DECRYPT)

        return SyncPayload.from_dict(decrypted)

    def _read_local(self) -> ConfigTree:
        return parse_config(self.config_store.read_raw())

    def _hostname(self) -> str:
        try:
            return self._hostname_provider() or UNKNOWN_HOST
        except Exception as e:
            logger.debug(f"Hostname lookup failed: {e}")
            return UNKNOWN_HOST

    def _installed_plugins(self) -> list[str]:
        if self._extension_lister is None:
            return []
        try:
            return list(self._extension_lister())
        except Exception as e:
            logger.warning(f"Could not list installed extensions: {e}")
            return []

    def _missing_plugins(self, remote: SyncPayload, installed: list[str]) -> list[str]:
        remote_plugins = remote.settings.get("installedPlugins")
        if not isinstance(remote_plugins, list):
            return []
        local = set(installed)
        missing = sorted({p for p in remote_plugins if isinstance(p, str) and p not in local})
        if missing:
            logger.warning(
                f"Extensions installed on {remote.source_host} but missing here: "
                f"{', '.join(missing)}"
            )
        return missing

    @staticmethod
    def _log_merge(merge: MergeResult) -> None:
        logger.info(
            f"Merge complete: {len(merge.added_profiles)} profiles added, "
            f"{len(merge.added_groups)} groups added, "
            f"{len(merge.conflicts)} conflicts resolved"
        )
        for conflict in merge.conflicts:
            logger.debug(f"Profile {conflict.profile_id}: kept {conflict.resolution} version")

    def _record_success(self, hostname: str) -> int:
        timestamp = now_ms()
        self.settings.last_sync_time = timestamp
        self.settings.last_sync_error = None
        self.settings.last_sync_host = hostname
        self._save_settings()
        self._set_phase(self._idle_phase())
        return timestamp

    def _fail(self, action: SyncAction, error: Exception) -> SyncResult:
        if isinstance(error, RetryExhausted) and error.last_error is not None:
            message = f"{error.last_error} (after {error.attempts} attempts)"
        elif isinstance(error, (PayloadError, ConfigStoreError)):
            message = str(error)
        else:
            message = str(error) or error.__class__.__name__

        logger.error(f"Sync ({action.value}) failed: {message}")
        self.settings.last_sync_error = message
        self._save_settings()
        self._set_phase(SyncPhase.ERROR)
        return SyncResult.failed(action, message)

    def _save_settings(self) -> None:
        try:
            self.settings.save()
        except OSError as e:
            logger.error(f"Failed to save sync settings: {e}")
