"""Data structures exchanged between the sync components."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, TypedDict

from .tree import deep_copy, is_mapping

__all__ = [
    "PAYLOAD_VERSION",
    "MergeConflict",
    "MergeResult",
    "PayloadError",
    "SyncAction",
    "SyncPayload",
    "SyncPhase",
    "SyncResult",
    "SyncableGroup",
    "SyncableProfile",
    "VaultBlob",
    "now_ms",
]

PAYLOAD_VERSION = 1
UNKNOWN_HOST = "unknown-host"


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class PayloadError(Exception):
    """Remote payload is structurally invalid."""

    pass


class SyncableProfile(TypedDict, total=False):
    """Connection profile as it travels between machines."""

    id: str
    name: str
    type: str
    group: str
    icon: str
    color: str
    weight: int
    disableDynamicTitle: bool
    behaviorOnSessionEnd: str
    options: dict


class SyncableGroup(TypedDict, total=False):
    """Profile group as it travels between machines."""

    id: str
    name: str
    collapsed: bool


@dataclass
class VaultBlob:
    """The host's own encrypted vault, handled as one opaque unit."""

    contents: str
    iv: Optional[str] = None
    key_salt: Optional[str] = None
    version: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["VaultBlob"]:
        """Build from a raw vault block; empty vaults count as absent."""
        if not is_mapping(data):
            return None
        contents = data.get("contents")
        if not isinstance(contents, str) or not contents:
            return None
        iv = data.get("iv")
        key_salt = data.get("keySalt")
        version = data.get("version")
        return cls(
            contents=contents,
            iv=iv if isinstance(iv, str) else None,
            key_salt=key_salt if isinstance(key_salt, str) else None,
            version=version if isinstance(version, int) and not isinstance(version, bool) else None,
        )

    def to_dict(self) -> dict:
        data = {
            "version": self.version,
            "contents": self.contents,
            "keySalt": self.key_salt,
            "iv": self.iv,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class SyncPayload:
    """The unit stored (encrypted) in the remote blob."""

    version: int
    last_updated: int  # epoch ms
    source_host: str
    profiles: list[SyncableProfile] = field(default_factory=list)
    groups: list[SyncableGroup] = field(default_factory=list)
    settings: dict = field(default_factory=dict)
    vault: Optional[VaultBlob] = None

    def profile_ids(self) -> list[str]:
        return [p["id"] for p in self.profiles]

    def to_dict(self) -> dict:
        data = {
            "version": self.version,
            "lastUpdated": self.last_updated,
            "sourceHost": self.source_host,
            "profiles": deep_copy(self.profiles),
            "groups": deep_copy(self.groups),
            "settings": deep_copy(self.settings),
        }
        if self.vault is not None:
            data["vault"] = self.vault.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "SyncPayload":
        """Validate and build a payload from decrypted JSON.

        Raises:
            PayloadError: If version, timestamp or profile list are missing
                or malformed, or profile ids are not unique
        """
        if not is_mapping(data):
            raise PayloadError("Remote sync file has invalid structure")

        version = data.get("version")
        last_updated = data.get("lastUpdated")
        profiles = data.get("profiles")
        if not _is_positive_number(version) or not _is_positive_number(last_updated):
            raise PayloadError("Remote sync file has invalid structure")
        if not isinstance(profiles, list):
            raise PayloadError("Remote sync file has invalid structure")

        seen: set[str] = set()
        for profile in profiles:
            if not is_mapping(profile) or not isinstance(profile.get("id"), str):
                raise PayloadError("Remote sync file contains a profile without id")
            if profile["id"] in seen:
                raise PayloadError(f"Remote sync file has duplicate profile id {profile['id']}")
            seen.add(profile["id"])

        groups = data.get("groups")
        settings = data.get("settings")
        source_host = data.get("sourceHost")
        return cls(
            version=int(version),
            last_updated=int(last_updated),
            source_host=source_host if isinstance(source_host, str) else UNKNOWN_HOST,
            profiles=deep_copy(profiles),
            groups=[deep_copy(g) for g in groups if is_mapping(g) and "id" in g]
            if isinstance(groups, list)
            else [],
            settings=deep_copy(settings) if is_mapping(settings) else {},
            vault=VaultBlob.from_dict(data.get("vault")),
        )


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


@dataclass
class MergeConflict:
    """A profile that differed between local and remote."""

    profile_id: str
    local_profile: SyncableProfile
    remote_profile: SyncableProfile
    resolution: str  # "local" | "remote"


@dataclass
class MergeResult:
    """Outcome of reconciling a local and a remote payload."""

    merged_payload: SyncPayload
    conflicts: list[MergeConflict] = field(default_factory=list)
    added_profiles: list[str] = field(default_factory=list)
    updated_profiles: list[str] = field(default_factory=list)
    added_groups: list[str] = field(default_factory=list)


class SyncAction(str, Enum):
    """What a sync operation ended up doing."""

    UPLOAD = "upload"
    DOWNLOAD = "download"
    MERGE = "merge"
    RESTORE = "restore"
    NONE = "none"


class SyncPhase(str, Enum):
    """States of the sync cycle."""

    IDLE = "idle"
    DISABLED = "disabled"
    DOWNLOADING = "downloading"
    DECRYPTING = "decrypting"
    MERGING = "merging"
    WRITING_LOCAL = "writing_local"
    SANITIZING = "sanitizing"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    action: SyncAction
    timestamp: int = field(default_factory=now_ms)
    error: Optional[str] = None
    conflicts_resolved: int = 0
    added_profiles: list[str] = field(default_factory=list)
    missing_plugins: list[str] = field(default_factory=list)

    @classmethod
    def failed(cls, action: SyncAction, error: str) -> "SyncResult":
        return cls(success=False, action=action, error=error)
