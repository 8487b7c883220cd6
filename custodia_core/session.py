"""
In-memory custody of the decrypted signing key.

``SigningIdentity`` owns the raw private key in a private ``bytearray`` that
can be overwritten in place.  It refuses to be pickled or copied and its
``repr`` shows only the address, so the key cannot leak through a
serialisation or logging path.

``SessionKeyStore`` holds zero or one identity for the life of the process.
Replacing, clearing and lending the identity all happen under a single
``asyncio.Lock`` so a signing operation can never observe a half-replaced
identity.  The lock is held only while the identity is being touched, never
across network I/O.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from eth_account import Account

from custodia_core.crypto_utils import derive_address, is_valid_private_key, wipe
from custodia_core.errors import NoIdentityLoaded

logger = logging.getLogger("custodia_session")

T = TypeVar("T")


class SigningIdentity:
    """A decrypted private key and its checksummed address."""

    __slots__ = ("_key", "_address")

    def __init__(self, private_key: bytearray, address: str | None = None):
        if not isinstance(private_key, bytearray):
            raise TypeError("private key must be supplied as a bytearray")
        if not is_valid_private_key(private_key):
            raise ValueError("private key is not a valid secp256k1 scalar")
        # Ownership of the buffer moves here; the caller must not reuse it.
        self._key = private_key
        self._address = address or derive_address(private_key)

    @property
    def address(self) -> str:
        return self._address

    @property
    def wiped(self) -> bool:
        return not any(self._key)

    def sign_transaction(self, tx: dict[str, Any]) -> Any:
        """Sign *tx* and return eth-account's ``SignedTransaction``."""
        if self.wiped:
            raise NoIdentityLoaded("Signing identity has been cleared")
        return Account.sign_transaction(tx, bytes(self._key))

    def wipe(self) -> None:
        wipe(self._key)

    def holds(self, value: object) -> bool:
        """True if *value* is this identity or contains its key bytes."""
        if value is self:
            return True
        if isinstance(value, (bytes, bytearray, memoryview)) and not self.wiped:
            return bytes(self._key) in bytes(value)
        return False

    def __repr__(self) -> str:
        return f"SigningIdentity({self._address})"

    def __reduce__(self):
        raise TypeError("SigningIdentity cannot be serialised")

    def __reduce_ex__(self, protocol):
        raise TypeError("SigningIdentity cannot be serialised")

    def __copy__(self):
        raise TypeError("SigningIdentity cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("SigningIdentity cannot be copied")


class SessionKeyStore:
    """Holds at most one ``SigningIdentity`` behind a mutual-exclusion guard."""

    def __init__(self) -> None:
        self._identity: SigningIdentity | None = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._identity is not None

    async def set(self, identity: SigningIdentity) -> None:
        async with self._lock:
            previous = self._identity
            self._identity = identity
            if previous is not None and previous is not identity:
                previous.wipe()
                logger.info(f"Replaced wallet {previous.address} with {identity.address}")
            else:
                logger.info(f"Loaded wallet {identity.address}")

    async def current_address(self) -> str | None:
        async with self._lock:
            return self._identity.address if self._identity else None

    async def with_identity(self, fn: Callable[[SigningIdentity], T]) -> T:
        """
        Lend the identity to *fn* for exactly one synchronous call.

        The result of *fn* is handed back to the caller, but never the
        identity itself or its key bytes.
        """
        async with self._lock:
            identity = self._identity
            if identity is None:
                raise NoIdentityLoaded()
            result = fn(identity)
            if identity.holds(result):
                raise TypeError("with_identity callbacks must not return key material")
            return result

    async def clear(self) -> None:
        async with self._lock:
            if self._identity is not None:
                self._identity.wipe()
                logger.info(f"Cleared wallet {self._identity.address}")
            self._identity = None
