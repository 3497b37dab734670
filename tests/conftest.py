"""Shared test fixtures for termsync."""

from pathlib import Path
from typing import Callable, Optional

import pytest
import yaml

from termsync.config import SyncSettings
from termsync.sync.protocols import BlobVersion


class FakeConfigStore:
    """In-memory host config that notifies subscribers on write."""

    def __init__(self, config: Optional[dict] = None):
        self.text = yaml.safe_dump(config) if config is not None else ""
        self.writes: list[str] = []
        self._subscribers: list[Callable[[], None]] = []

    @property
    def config(self) -> dict:
        return yaml.safe_load(self.text) or {}

    def read_raw(self) -> str:
        return self.text

    def write_raw(self, text: str) -> None:
        self.text = text
        self.writes.append(text)
        for callback in list(self._subscribers):
            callback()

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)


class FakeBlobStore:
    """In-memory versioned blob store."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.history: list[bytes] = []

    def download(self, name: str) -> Optional[bytes]:
        return self.blobs.get(name)

    def upload(self, name: str, data: bytes) -> None:
        self.blobs[name] = data
        self.history.append(data)

    def list_versions(self, name: str) -> list[BlobVersion]:
        return [BlobVersion(id=str(i), size=len(d)) for i, d in enumerate(self.history)]

    def download_version(self, name: str, version_id: str) -> bytes:
        return self.history[int(version_id)]


@pytest.fixture
def settings(tmp_path: Path) -> SyncSettings:
    """Enabled sync settings persisted under a temporary directory."""
    return SyncSettings(enabled=True, config_file=str(tmp_path / "config.json"))


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()
