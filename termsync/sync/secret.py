"""In-memory holder for the master password."""

import logging
from typing import Optional

__all__ = ["MasterPassword"]

logger = logging.getLogger(__name__)


class MasterPassword:
    """Owns the unlocked master password for one session.

    The bytes live in a mutable buffer so :meth:`wipe` can overwrite them
    instead of leaving the value for the garbage collector. Never persisted.
    """

    def __init__(self, password: str):
        self._buffer: Optional[bytearray] = bytearray(password.encode("utf-8"))

    @property
    def is_wiped(self) -> bool:
        return self._buffer is None

    def reveal(self) -> str:
        """Return the password for a single crypto call.

        Raises:
            RuntimeError: If the secret has already been wiped
        """
        if self._buffer is None:
            raise RuntimeError("Master password has been cleared")
        return self._buffer.decode("utf-8")

    def wipe(self) -> None:
        """Overwrite and release the password. Safe to call twice."""
        if self._buffer is None:
            return
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._buffer = None
        logger.debug("Master password cleared from memory")

    def __enter__(self) -> "MasterPassword":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "MasterPassword(<wiped>)" if self._buffer is None else "MasterPassword(<set>)"
