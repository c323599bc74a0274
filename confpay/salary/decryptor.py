"""
Batch salary decryption — fast local recovery first, attested path last.

Per batch:
    1. Derive every available symmetric key once (PIN, wallet)
    2. Probe each key against each block of each envelope; a wrong key is an
       expected miss, never an error
    3. Send every still-unresolved item to the FHE network in ONE attested
       call (at most one signing prompt per batch)
    4. Keep symmetric results even if the attested call fails wholesale

Key material is a tagged variant: a SymmetricKey is probed locally, a Viewer
(identity + signing capability) is the external capability. Both follow the
same "try, None on mismatch" contract.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from confpay._format import EnvelopeReader
from confpay.fhe import Viewer, normalize_handle
from confpay.salary.crypto import open_bytes
from confpay.salary.keys import (
    KeyDerivationError,
    KeySession,
    SymmetricKey,
    derive_from_pin,
)
from confpay.units import from_subunits, parse_positive_subunits, to_subunits

logger = logging.getLogger(__name__)


def parse_block_plaintext(text: str) -> float | None:
    """Turn a decrypted block plaintext into a display amount.

    Integer strings are subunits. Strings with a decimal point or exponent
    are legacy blocks that stored display units directly. A legacy
    whole-number amount (e.g. "2") is indistinguishable from a subunit count
    and is read as subunits; only legacy values with a fraction are recovered.
    """
    text = text.strip()
    if not text:
        return None
    try:
        if "." in text or "e" in text.lower():
            value = Decimal(text)
            if not value.is_finite():
                return None
            return from_subunits(to_subunits(value))
        return from_subunits(int(text))
    except (InvalidOperation, ValueError):
        return None


def probe_blocks(blocks: Sequence[bytes], keys: Sequence[SymmetricKey]) -> float | None:
    """Try every key against every block in order. First success wins."""
    for block in blocks:
        for key in keys:
            try:
                plaintext = open_bytes(block, key.material)
            except ValueError:
                continue
            try:
                amount = parse_block_plaintext(plaintext.decode("utf-8"))
            except UnicodeDecodeError:
                amount = None
            if amount is not None:
                return amount
    return None


class SalaryDecryptor:
    """Resolve envelopes to plaintext amounts.

    Usage:
        dec = SalaryDecryptor(fhe=FheClient.from_env(), session=session)
        amounts = await dec.decrypt_batch(ciphertexts, Viewer(addr, wallet), pin="4321")
    """

    def __init__(self, fhe: Any = None, session: KeySession | None = None) -> None:
        self._fhe = fhe
        self._session = session if session is not None else KeySession()

    @property
    def session(self) -> KeySession:
        return self._session

    async def _wallet_key(self, viewer: Viewer | None) -> SymmetricKey | None:
        if viewer is None or not viewer.can_sign:
            return None
        return await self._session.wallet_key(viewer.signer)

    async def _pin_key(self, pin: str | None) -> SymmetricKey | None:
        if not pin:
            return None
        return derive_from_pin(pin)

    async def collect_keys(self, viewer: Viewer | None, pin: str | None) -> list[SymmetricKey]:
        """Derive all available symmetric keys. Unavailable keys are skipped."""
        outcomes = await asyncio.gather(
            self._pin_key(pin), self._wallet_key(viewer), return_exceptions=True
        )
        keys: list[SymmetricKey] = []
        for outcome in outcomes:
            if isinstance(outcome, SymmetricKey):
                keys.append(outcome)
            elif isinstance(outcome, KeyDerivationError):
                logger.warning("Key unavailable: %s", outcome)
            elif isinstance(outcome, BaseException):
                logger.warning("Key derivation failed: %r", outcome)
        return keys

    async def decrypt_batch(
        self,
        envelopes: Sequence[bytes | bytearray | list[int] | None],
        viewer: Viewer | None = None,
        pin: str | None = None,
    ) -> list[float | None]:
        """Resolve each envelope to an amount or None, preserving order."""
        results: list[float | None] = [None] * len(envelopes)
        keys = await self.collect_keys(viewer, pin)

        pending_idx: list[int] = []
        pending_handles: list[str] = []

        for i, raw in enumerate(envelopes):
            if not raw:
                continue
            envelope = EnvelopeReader.unpack(raw)

            if envelope.is_envelope:
                if envelope.truncated:
                    logger.debug("Envelope %d truncated after %d block(s)", i, envelope.block_count)
                if keys and envelope.blocks:
                    amount = probe_blocks(envelope.blocks, keys)
                    if amount is not None:
                        results[i] = amount
                        continue

            if envelope.has_external:
                pending_idx.append(i)
                pending_handles.append(normalize_handle(envelope.external_blob))

        if pending_idx:
            await self._resolve_external(pending_idx, pending_handles, viewer, results)

        return results

    async def _resolve_external(
        self,
        indices: list[int],
        handles: list[str],
        viewer: Viewer | None,
        results: list[float | None],
    ) -> None:
        if self._fhe is None or viewer is None or not viewer.can_sign:
            logger.debug("%d item(s) need the attested path but it is unavailable", len(indices))
            return

        logger.info("Attested decryption for %d item(s)", len(indices))
        try:
            plaintexts = await self._fhe.attested_decrypt(handles, viewer)
        except Exception:
            logger.exception("Batch attested decryption failed; keeping symmetric results")
            return

        for pos, original in enumerate(indices):
            raw = plaintexts[pos] if pos < len(plaintexts) else None
            subunits = parse_positive_subunits(raw)
            results[original] = from_subunits(subunits) if subunits is not None else None

    async def decrypt(
        self,
        envelope: bytes | bytearray | list[int] | None,
        viewer: Viewer | None = None,
        pin: str | None = None,
    ) -> float | None:
        """Single-item convenience wrapper around decrypt_batch."""
        results = await self.decrypt_batch([envelope], viewer, pin)
        return results[0]
