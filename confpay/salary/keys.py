"""
Key derivation for the symmetric salary path.

Two key sources:
    PIN:    SHA-256(UTF-8 PIN) — deterministic, unsalted. The PIN plus
            knowledge of the worker identity is the whole security boundary.
    Wallet: SHA-256(signature over SIGNING_MESSAGE) — requires one signing
            prompt, cached in a KeySession until cleared.

A signing capability is any object with an ``address`` attribute and a
``sign_message(message: bytes)`` method (sync or async) returning signature
bytes. Ledger keypairs and browser-wallet bridges both qualify.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any

from confpay import SIGNING_MESSAGE

logger = logging.getLogger(__name__)

PIN_SOURCE = "pin"
WALLET_SOURCE = "wallet"


class KeyDerivationError(Exception):
    """Required key material is unavailable. Callers degrade, not fail."""


@dataclass(frozen=True)
class SymmetricKey:
    """A derived AES-256 key and the source it came from."""

    material: bytes
    source: str

    def __repr__(self) -> str:
        return f"SymmetricKey(source={self.source!r})"


def derive_from_pin(pin: str | None) -> SymmetricKey:
    """Derive a key from a numeric PIN.

    Raises KeyDerivationError if no PIN is given.
    """
    if not pin:
        raise KeyDerivationError("No PIN supplied")
    digest = hashlib.sha256(pin.encode("utf-8")).digest()
    return SymmetricKey(material=digest, source=PIN_SOURCE)


def derive_from_signature(signature: bytes) -> SymmetricKey:
    """Derive a key from the bytes of a wallet signature."""
    if not signature:
        raise KeyDerivationError("Empty signature")
    digest = hashlib.sha256(bytes(signature)).digest()
    return SymmetricKey(material=digest, source=WALLET_SOURCE)


def signer_address(wallet: Any) -> str:
    """Stable identity of a signing capability, as a string."""
    address = getattr(wallet, "address", None)
    if address is None:
        address = getattr(wallet, "public_key", None)
    return str(address) if address is not None else ""


def can_sign(wallet: Any) -> bool:
    """True if the object exposes a callable sign_message."""
    return wallet is not None and callable(getattr(wallet, "sign_message", None))


async def request_signature(wallet: Any, message: bytes) -> bytes:
    """Ask a signing capability to sign a message. Suspends on user approval.

    Raises KeyDerivationError if the wallet cannot sign or the signature
    request fails (e.g. the user rejected the prompt).
    """
    if not can_sign(wallet):
        raise KeyDerivationError("Wallet does not support message signing")
    try:
        result = wallet.sign_message(message)
        if inspect.isawaitable(result):
            result = await result
    except Exception as e:
        raise KeyDerivationError(f"Signature request failed: {e}") from e
    if not result:
        raise KeyDerivationError("Wallet returned an empty signature")
    return bytes(result)


class KeySession:
    """Session-scoped cache of wallet-derived keys.

    One signing prompt per wallet per session. Concurrent callers wait on the
    same prompt instead of opening a second one.

    Usage:
        session = KeySession()
        key = await session.wallet_key(wallet)
        ...
        session.clear()   # on disconnect / logout
    """

    def __init__(self, message: str = SIGNING_MESSAGE) -> None:
        self._message = message.encode("utf-8")
        self._keys: dict[str, SymmetricKey] = {}
        self._lock = asyncio.Lock()

    def cached(self, wallet: Any) -> SymmetricKey | None:
        return self._keys.get(signer_address(wallet))

    async def wallet_key(self, wallet: Any) -> SymmetricKey:
        """Return the wallet's symmetric key, prompting for a signature once."""
        key = self.cached(wallet)
        if key is not None:
            return key

        address = signer_address(wallet)
        async with self._lock:
            key = self._keys.get(address)
            if key is not None:
                return key
            signature = await request_signature(wallet, self._message)
            key = derive_from_signature(signature)
            self._keys[address] = key
            logger.debug("Derived wallet key for %s", address[:8] or "<anonymous>")
            return key

    def clear(self) -> None:
        """Forget every cached key."""
        self._keys.clear()
