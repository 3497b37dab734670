"""Protocol types for SyncOrchestrator collaborators.

Defines the interfaces the orchestrator requires from the host config
store and the remote blob store, enabling easier testing and looser
coupling.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, runtime_checkable


@dataclass
class BlobVersion:
    """One stored revision of a remote blob."""

    id: str
    modified_time: Optional[datetime] = None
    size: Optional[int] = None


@runtime_checkable
class ConfigStoreProtocol(Protocol):
    """Interface to the host application's configuration file."""

    def read_raw(self) -> str: ...

    def write_raw(self, text: str) -> None: ...

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]: ...


@runtime_checkable
class BlobStoreProtocol(Protocol):
    """Interface to the remote versioned blob store."""

    def download(self, name: str) -> Optional[bytes]: ...

    def upload(self, name: str, data: bytes) -> None: ...

    def list_versions(self, name: str) -> list[BlobVersion]: ...

    def download_version(self, name: str, version_id: str) -> bytes: ...
