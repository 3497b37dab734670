"""HTTP blob store client for the remote sync file."""

import logging
from datetime import datetime
from typing import Optional
from urllib.parse import quote

import requests

from .. import __version__
from .protocols import BlobVersion

__all__ = [
    "HttpBlobStore",
    "BlobStoreError",
    "BlobStoreAuthError",
    "BlobStoreTransientError",
    "DEFAULT_NAMESPACE",
]

logger = logging.getLogger(__name__)

# Application-private namespace, not visible when browsing normal files
DEFAULT_NAMESPACE = "appdata"


class BlobStoreError(Exception):
    """Blob store error."""

    pass


class BlobStoreAuthError(BlobStoreError):
    """Authentication error."""

    pass


class BlobStoreTransientError(BlobStoreError):
    """Network failure or server-side error worth retrying."""

    pass


class HttpBlobStore:
    """Client for a simple versioned object store over HTTP.

    Layout:
    - ``GET/PUT {base}/{namespace}/{name}`` - current blob
    - ``GET {base}/{namespace}/{name}/versions`` - revision list
    - ``GET {base}/{namespace}/{name}/versions/{id}`` - one revision

    Retries are left to the caller; transient failures are raised as
    :class:`BlobStoreTransientError` so they can be told apart.
    """

    USER_AGENT = f"termsync/{__version__}"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        namespace: str = DEFAULT_NAMESPACE,
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ):
        """Initialize blob store client.

        Args:
            base_url: Store base URL
            token: Bearer token for authentication
            namespace: Application-private namespace
            timeout: Request timeout in seconds
            session: Optional requests session (for dependency injection/testing)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.namespace = namespace
        self.timeout = timeout
        self._session = session or requests.Session()
        self._owns_session = session is None

    def _url(self, name: str, *parts: str) -> str:
        segments = [self.namespace, name, *parts]
        return "/".join([self.base_url] + [quote(s, safe="") for s in segments])

    def _get_headers(self) -> dict:
        headers = {"User-Agent": self.USER_AGENT}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request and classify failures.

        Raises:
            BlobStoreAuthError: For 401/403 responses
            BlobStoreTransientError: For connection errors, timeouts, 429 and 5xx
            BlobStoreError: For other error responses
        """
        headers = self._get_headers()
        headers.update(kwargs.pop("headers", {}))
        try:
            response = self._session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.exceptions.ConnectionError as e:
            raise BlobStoreTransientError("Cannot connect to blob store") from e
        except requests.exceptions.Timeout as e:
            raise BlobStoreTransientError("Request timed out") from e

        if response.status_code in (401, 403):
            raise BlobStoreAuthError("Not authorized to access the blob store")
        if response.status_code == 429 or response.status_code >= 500:
            raise BlobStoreTransientError(f"Server error: {response.status_code}")
        return response

    def download(self, name: str) -> Optional[bytes]:
        """Download the current blob, or None if it does not exist."""
        response = self._request("GET", self._url(name))
        if response.status_code == 404:
            logger.info(f"Remote blob {name} not found")
            return None
        if not response.ok:
            raise BlobStoreError(f"Download failed ({response.status_code})")
        return response.content

    def upload(self, name: str, data: bytes) -> None:
        """Create or replace the blob."""
        response = self._request(
            "PUT",
            self._url(name),
            data=data,
            headers={"Content-Type": "application/json"},
        )
        if not response.ok:
            raise BlobStoreError(f"Upload failed ({response.status_code})")
        logger.debug(f"Uploaded {len(data)} bytes to {name}")

    def list_versions(self, name: str) -> list[BlobVersion]:
        """List stored revisions of the blob, oldest first."""
        response = self._request("GET", self._url(name, "versions"))
        if response.status_code == 404:
            return []
        if not response.ok:
            raise BlobStoreError(f"Listing versions failed ({response.status_code})")

        try:
            items = response.json().get("versions", [])
        except (ValueError, AttributeError) as e:
            raise BlobStoreError("Invalid version list response") from e

        versions = []
        for item in items:
            if not isinstance(item, dict) or "id" not in item:
                continue
            versions.append(
                BlobVersion(
                    id=str(item["id"]),
                    modified_time=_parse_time(item.get("modifiedTime")),
                    size=int(item["size"]) if item.get("size") is not None else None,
                )
            )
        return versions

    def download_version(self, name: str, version_id: str) -> bytes:
        """Download one historical revision of the blob."""
        response = self._request("GET", self._url(name, "versions", version_id))
        if not response.ok:
            raise BlobStoreError(f"Version {version_id} unavailable ({response.status_code})")
        return response.content

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "HttpBlobStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
