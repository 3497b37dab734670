"""Authenticated encryption of sync payloads under the master password.

AES-256-GCM with a key derived per call by PBKDF2-HMAC-SHA512. Every
encryption draws a fresh IV and salt. Decryption failures of any kind come
back as ``None`` and are logged without saying why.
"""

import base64
import binascii
import hmac
import json
import logging
import secrets
from dataclasses import asdict, dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

__all__ = [
    "ENVELOPE_VERSION",
    "EncryptedEnvelope",
    "decrypt",
    "decrypt_object",
    "encrypt",
    "encrypt_object",
    "hash_password",
    "verify_password",
]

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 1
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
SALT_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
VERIFY_HASH_LENGTH = 64


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Encrypted data as stored remotely; binary fields are base64."""

    version: int
    iv: str
    salt: str
    authTag: str
    ciphertext: str

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> Optional["EncryptedEnvelope"]:
        """Build from parsed JSON; None if any field is missing or mistyped."""
        if not isinstance(data, dict):
            return None
        version = data.get("version")
        if not isinstance(version, int) or isinstance(version, bool):
            return None
        fields = {}
        for name in ("iv", "salt", "authTag", "ciphertext"):
            value = data.get(name)
            if not isinstance(value, str):
                return None
            fields[name] = value
        return cls(version=version, **fields)

    @classmethod
    def from_json(cls, text: str) -> Optional["EncryptedEnvelope"]:
        try:
            return cls.from_dict(json.loads(text))
        except (TypeError, ValueError):
            return None


def _derive(password: str, salt: bytes, length: int = KEY_LENGTH) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=length,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password.encode("utf-8"))


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def encrypt(plaintext: str, password: str) -> EncryptedEnvelope:
    """Encrypt a string under ``password``.

    Args:
        plaintext: Text to encrypt
        password: Master password

    Returns:
        Envelope with fresh IV and salt
    """
    iv = secrets.token_bytes(IV_LENGTH)
    salt = secrets.token_bytes(SALT_LENGTH)
    key = _derive(password, salt)

    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

    logger.debug("Data encrypted")
    return EncryptedEnvelope(
        version=ENVELOPE_VERSION,
        iv=_b64(iv),
        salt=_b64(salt),
        authTag=_b64(tag),
        ciphertext=_b64(ciphertext),
    )


def decrypt(envelope: Any, password: str) -> Optional[str]:
    """Decrypt an envelope produced by :func:`encrypt`.

    The tag is verified before any plaintext is released. Unknown version,
    malformed fields, wrong password and tampering all yield None.
    """
    try:
        if not isinstance(envelope, EncryptedEnvelope):
            envelope = EncryptedEnvelope.from_dict(envelope)
        if envelope is None or envelope.version != ENVELOPE_VERSION:
            raise ValueError

        iv = _unb64(envelope.iv)
        salt = _unb64(envelope.salt)
        tag = _unb64(envelope.authTag)
        ciphertext = _unb64(envelope.ciphertext)
        if len(iv) != IV_LENGTH or len(tag) != AUTH_TAG_LENGTH or not salt:
            raise ValueError

        key = _derive(password, salt)
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, ValueError, TypeError, binascii.Error, UnicodeDecodeError):
        logger.error("Decryption failed")
        return None


def encrypt_object(obj: Any, password: str) -> EncryptedEnvelope:
    """Serialize ``obj`` as JSON and encrypt it."""
    return encrypt(json.dumps(obj, separators=(",", ":")), password)


def decrypt_object(envelope: Any, password: str) -> Optional[Any]:
    """Decrypt and parse JSON; any failure yields None."""
    text = decrypt(envelope, password)
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        logger.error("Decryption failed")
        return None


def hash_password(password: str) -> tuple[str, str]:
    """Create a verification hash for the master password.

    Returns:
        ``(hash, salt)`` as base64 strings
    """
    salt = secrets.token_bytes(SALT_LENGTH)
    digest = _derive(password, salt, VERIFY_HASH_LENGTH)
    return _b64(digest), _b64(salt)


def verify_password(password: str, stored_hash: str, stored_salt: str) -> bool:
    """Check ``password`` against a stored hash in constant time."""
    try:
        salt = _unb64(stored_salt)
        expected = _unb64(stored_hash)
    except (ValueError, TypeError, binascii.Error, AttributeError):
        logger.warning("Stored password hash is malformed")
        return False
    digest = _derive(password, salt, VERIFY_HASH_LENGTH)
    return hmac.compare_digest(digest, expected)
