"""Sync module - sanitizes, encrypts, merges and applies terminal config."""

from .cipher import EncryptedEnvelope, decrypt, decrypt_object, encrypt, encrypt_object
from .http_client import BlobStoreAuthError, BlobStoreError, HttpBlobStore
from .merge import apply_to_config, merge_payloads
from .models import MergeResult, PayloadError, SyncAction, SyncPayload, SyncPhase, SyncResult
from .orchestrator import SyncOrchestrator
from .path_mapper import PathMapper
from .protocols import BlobStoreProtocol, BlobVersion, ConfigStoreProtocol
from .retry import RetryConfig, retry_with_backoff
from .sanitize import create_payload, sanitize_profile, sanitize_settings
from .scheduler import AutoSyncScheduler
from .stores import ConfigStoreError, YamlConfigStore

__all__ = [
    "AutoSyncScheduler",
    "BlobStoreAuthError",
    "BlobStoreError",
    "BlobStoreProtocol",
    "BlobVersion",
    "ConfigStoreError",
    "ConfigStoreProtocol",
    "EncryptedEnvelope",
    "HttpBlobStore",
    "MergeResult",
    "PathMapper",
    "PayloadError",
    "RetryConfig",
    "SyncAction",
    "SyncOrchestrator",
    "SyncPayload",
    "SyncPhase",
    "SyncResult",
    "YamlConfigStore",
    "apply_to_config",
    "create_payload",
    "decrypt",
    "decrypt_object",
    "encrypt",
    "encrypt_object",
    "merge_payloads",
    "retry_with_backoff",
    "sanitize_profile",
    "sanitize_settings",
]
