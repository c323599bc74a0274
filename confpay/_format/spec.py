"""
Salary envelope specification v1.

Layout:
    CA FE BA BE                  <- Magic (4 bytes), marks a dual-format envelope
    NN                           <- Block count (1 byte, 0-255)
    LL <LL bytes>                <- Symmetric block: length (1 byte) + AES-GCM data
    ...                          <- Repeated NN times
    <remaining bytes>            <- External (FHE) ciphertext handle, may be empty

Symmetric block data:
    nonce (12 bytes) + AES-256-GCM ciphertext + tag (16 bytes)

Size ceiling:
    The whole envelope must fit in 256 bytes. When symmetric blocks plus the
    external handle do not fit, the external handle is dropped and only the
    symmetric blocks are kept.

Backward compatibility:
    Input that does not start with the magic is a raw single-format external
    ciphertext and is handed to the external decryption service as-is.
"""

from confpay import (
    ENVELOPE_MAGIC,
    ENVELOPE_MAX_SIZE,
    ENVELOPE_MAX_BLOCKS,
    ENVELOPE_MAX_BLOCK_LEN,
)

MAGIC = ENVELOPE_MAGIC
MAGIC_SIZE = len(MAGIC)
COUNT_SIZE = 1
HEADER_SIZE = MAGIC_SIZE + COUNT_SIZE
LENGTH_PREFIX_SIZE = 1

MAX_ENVELOPE_SIZE = ENVELOPE_MAX_SIZE
MAX_BLOCKS = ENVELOPE_MAX_BLOCKS
MAX_BLOCK_LEN = ENVELOPE_MAX_BLOCK_LEN


class EncodingError(ValueError):
    """Envelope cannot be packed from the given input."""


def has_magic(data: bytes) -> bool:
    """Fast check whether bytes start with the envelope magic."""
    return len(data) >= HEADER_SIZE and data[:MAGIC_SIZE] == MAGIC
