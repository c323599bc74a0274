"""
Salary encryption — turns a plaintext amount into stored envelope bytes.

Three independent paths, any of which may fail without failing the call:
    1. External:  FHE handle of the u64 subunit amount (cross-user viewing)
    2. PIN:       AES-GCM block keyed by SHA-256(PIN) (worker recovery)
    3. Wallet:    AES-GCM block keyed by the employer's signature (owner recovery)

Symmetric blocks are preferred over the external handle when the envelope
would exceed the 256-byte ceiling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from confpay import INPUT_TYPE_U64
from confpay._format import EnvelopeWriter, MAX_ENVELOPE_SIZE
from confpay.fhe import handle_to_bytes
from confpay.salary.crypto import seal_bytes
from confpay.salary.keys import KeySession, can_sign, derive_from_pin
from confpay.units import to_subunits

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Every encryption path failed for a salary."""


@dataclass(frozen=True)
class EncryptedSalary:
    """Bytes ready for the employee account ciphertext field."""

    ciphertext: bytes
    input_type: int = INPUT_TYPE_U64

    def to_list(self) -> list[int]:
        return list(self.ciphertext)


class SalaryEncryptor:
    """Encrypt salaries along every available path.

    Usage:
        enc = SalaryEncryptor(fhe=FheClient.from_env(), session=KeySession())
        out = await enc.encrypt(2.5, worker_address, pin="4321", wallet=employer)
    """

    def __init__(self, fhe: Any = None, session: KeySession | None = None) -> None:
        self._fhe = fhe
        self._session = session if session is not None else KeySession()

    @property
    def session(self) -> KeySession:
        return self._session

    async def _external_blob(self, subunits: int) -> bytes:
        if self._fhe is None:
            return b""
        try:
            handle = await self._fhe.encrypt_value(subunits)
            return handle_to_bytes(handle)
        except Exception as e:
            logger.warning("External encryption failed, continuing with symmetric paths: %s", e)
            return b""

    async def encrypt(
        self,
        amount: float,
        recipient: str,
        pin: str | None = None,
        wallet: Any = None,
    ) -> EncryptedSalary:
        """Encrypt an amount for a recipient.

        Raises EncryptionError if no path succeeded, or if only an external
        handle exists and it exceeds the storage ceiling.
        """
        try:
            subunits = to_subunits(amount)
        except ValueError as e:
            raise EncryptionError(str(e)) from e
        plaintext = str(subunits).encode("utf-8")

        external = await self._external_blob(subunits)

        blocks: list[bytes] = []
        if pin:
            try:
                key = derive_from_pin(pin)
                blocks.append(seal_bytes(plaintext, key.material))
            except Exception as e:
                logger.warning("PIN block encryption failed: %s", e)

        if can_sign(wallet):
            try:
                key = await self._session.wallet_key(wallet)
                blocks.append(seal_bytes(plaintext, key.material))
            except Exception as e:
                logger.warning("Wallet block encryption failed: %s", e)

        if blocks:
            if external and not EnvelopeWriter.fits(blocks, external):
                logger.warning(
                    "Envelope for %s needs %d bytes (ceiling %d); dropping external handle",
                    recipient[:8], EnvelopeWriter.packed_size(blocks, external),
                    MAX_ENVELOPE_SIZE,
                )
            ciphertext = EnvelopeWriter.pack(blocks, external)
            logger.debug("Encrypted salary for %s: %d block(s), %d bytes",
                         recipient[:8], len(blocks), len(ciphertext))
            return EncryptedSalary(ciphertext=ciphertext)

        if not external:
            raise EncryptionError("Both external and symmetric encryption failed")
        if len(external) > MAX_ENVELOPE_SIZE:
            raise EncryptionError(
                f"External ciphertext is {len(external)} bytes "
                f"(ceiling {MAX_ENVELOPE_SIZE}) and no symmetric block is available"
            )
        return EncryptedSalary(ciphertext=external)
