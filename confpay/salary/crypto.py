"""
Symmetric block encryption for salary envelopes.

- Encryption: AES-256-GCM (requires `cryptography` package)
- Block layout: nonce (12) + ciphertext + tag (16)

The `cryptography` package is lazily imported — missing dependency produces
a clear error message.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from confpay import AES_KEY_SIZE, AES_NONCE_SIZE, AES_TAG_SIZE


def _import_cryptography():
    """Lazily import the AES-GCM primitive.

    Raises ImportError with a helpful message if not installed.
    """
    try:
        from cryptography.hazmat.primitives.ciphers.aead import AESGCM

        return AESGCM
    except ImportError:
        raise ImportError(
            "cryptography is required for salary encryption. "
            "Install with: pip install confpay"
        )


@dataclass(frozen=True)
class SealedBlock:
    """One AES-256-GCM encrypted copy of a salary plaintext.

    Attributes:
        nonce: The 12-byte nonce used for encryption.
        ciphertext: The encrypted data including GCM auth tag.
    """

    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        """Serialize to bytes: nonce(12) + ciphertext."""
        return self.nonce + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> SealedBlock:
        """Deserialize from bytes."""
        if len(data) < AES_NONCE_SIZE + AES_TAG_SIZE:
            raise ValueError("Sealed block too short")
        return cls(nonce=bytes(data[:AES_NONCE_SIZE]), ciphertext=bytes(data[AES_NONCE_SIZE:]))


def seal(plaintext: bytes, key: bytes) -> SealedBlock:
    """Encrypt data with a raw 32-byte key and a fresh random nonce."""
    AESGCM = _import_cryptography()

    if len(key) != AES_KEY_SIZE:
        raise ValueError(f"Key must be {AES_KEY_SIZE} bytes")

    nonce = os.urandom(AES_NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, None)
    return SealedBlock(nonce=nonce, ciphertext=ciphertext)


def open_sealed(block: SealedBlock, key: bytes) -> bytes:
    """Decrypt a sealed block.

    Raises:
        ValueError: If decryption fails (wrong key or tampered data).
    """
    AESGCM = _import_cryptography()

    if len(key) != AES_KEY_SIZE:
        raise ValueError(f"Key must be {AES_KEY_SIZE} bytes")

    try:
        return AESGCM(key).decrypt(block.nonce, block.ciphertext, None)
    except Exception:
        raise ValueError("Decryption failed — wrong key or tampered ciphertext")


def seal_bytes(plaintext: bytes, key: bytes) -> bytes:
    """Encrypt and serialize in one step (envelope block form)."""
    return seal(plaintext, key).to_bytes()


def open_bytes(data: bytes, key: bytes) -> bytes:
    """Deserialize and decrypt an envelope block. Raises ValueError on failure."""
    return open_sealed(SealedBlock.from_bytes(data), key)
