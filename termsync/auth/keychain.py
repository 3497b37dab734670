"""Secure storage of remote store tokens using the system keychain."""

import json
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = ["KeychainManager", "StoredTokens"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "termsync"
ACCOUNT_NAME = "remote_tokens"


@dataclass
class StoredTokens:
    """Tokens for the remote blob store, kept in the keychain."""

    access_token: str
    refresh_token: Optional[str] = None
    expiry_date: Optional[int] = None  # epoch ms

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, data: str) -> "StoredTokens":
        parsed = json.loads(data)
        return cls(
            access_token=parsed["access_token"],
            refresh_token=parsed.get("refresh_token"),
            expiry_date=parsed.get("expiry_date"),
        )


class KeychainManager:
    """Manages token storage in the OS keychain."""

    def __init__(self, service_name: str = SERVICE_NAME):
        """Initialize keychain manager.

        Args:
            service_name: Service name for keychain entries
        """
        self.service_name = service_name

    def store(self, tokens: StoredTokens) -> bool:
        """Store tokens in keychain.

        Returns:
            True if stored successfully
        """
        try:
            keyring.set_password(self.service_name, ACCOUNT_NAME, tokens.to_json())
            logger.info("Remote store tokens saved")
            return True
        except KeyringError as e:
            logger.error(f"Failed to store tokens: {e}")
            return False

    def load(self) -> Optional[StoredTokens]:
        """Load tokens from keychain.

        Returns:
            StoredTokens if found, None otherwise
        """
        try:
            data = keyring.get_password(self.service_name, ACCOUNT_NAME)
            if data:
                return StoredTokens.from_json(data)
            return None
        except KeyringError as e:
            logger.error(f"Failed to load tokens: {e}")
            return None
        except (ValueError, KeyError) as e:
            logger.error(f"Invalid token format: {e}")
            return None

    def delete(self) -> bool:
        """Delete stored tokens.

        Returns:
            True if deleted (or didn't exist)
        """
        try:
            keyring.delete_password(self.service_name, ACCOUNT_NAME)
            logger.info("Remote store tokens deleted")
            return True
        except PasswordDeleteError:
            return True
        except KeyringError as e:
            logger.error(f"Failed to delete tokens: {e}")
            return False

    def has_tokens(self) -> bool:
        """Check if tokens are stored."""
        return self.load() is not None
