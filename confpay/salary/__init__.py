"""
Confidential salary primitives.

Provides:
    - seal / open_sealed — AES-256-GCM symmetric blocks (requires `cryptography`)
    - derive_from_pin / derive_from_signature / KeySession — symmetric key sources
    - SalaryEncryptor (confpay.salary.encryptor) — amount -> envelope bytes
    - SalaryDecryptor (confpay.salary.decryptor) — envelopes -> amounts, batched

The encryptor and decryptor depend on the FHE client and are imported from
their own modules.
"""

from confpay.salary.crypto import SealedBlock, seal, open_sealed
from confpay.salary.keys import (
    KeyDerivationError,
    KeySession,
    SymmetricKey,
    derive_from_pin,
    derive_from_signature,
)

__all__ = [
    "SealedBlock",
    "seal",
    "open_sealed",
    "KeyDerivationError",
    "KeySession",
    "SymmetricKey",
    "derive_from_pin",
    "derive_from_signature",
]
