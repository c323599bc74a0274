"""
Writer — packs symmetric blocks and an external handle into an envelope.

Single pass:
  1. Validate block count and lengths (programmer errors raise EncodingError)
  2. Write magic + count + length-prefixed blocks
  3. Append the external handle only if the result stays within the ceiling
"""

from __future__ import annotations

import io
from typing import Sequence

from confpay._format.spec import (
    MAGIC,
    HEADER_SIZE,
    LENGTH_PREFIX_SIZE,
    MAX_BLOCKS,
    MAX_BLOCK_LEN,
    MAX_ENVELOPE_SIZE,
    EncodingError,
)


class EnvelopeWriter:

    @staticmethod
    def symmetric_size(blocks: Sequence[bytes]) -> int:
        """Size of header plus length-prefixed blocks, without the external handle."""
        return HEADER_SIZE + sum(LENGTH_PREFIX_SIZE + len(b) for b in blocks)

    @staticmethod
    def packed_size(blocks: Sequence[bytes], external_blob: bytes = b"") -> int:
        """Unconstrained envelope size (may exceed the ceiling)."""
        return EnvelopeWriter.symmetric_size(blocks) + len(external_blob)

    @staticmethod
    def fits(blocks: Sequence[bytes], external_blob: bytes = b"") -> bool:
        """True if blocks and handle together fit within the ceiling."""
        return EnvelopeWriter.packed_size(blocks, external_blob) <= MAX_ENVELOPE_SIZE

    @staticmethod
    def pack(blocks: Sequence[bytes], external_blob: bytes = b"") -> bytes:
        """Pack blocks and an optional external handle. Pure.

        The external handle is omitted when it would push the envelope past
        the ceiling; this is lossy by design, not an error.

        Raises EncodingError for more than 255 blocks, a block longer than
        255 bytes, or symmetric blocks that alone exceed the ceiling.
        """
        if len(blocks) > MAX_BLOCKS:
            raise EncodingError(
                f"Too many blocks: {len(blocks)} (max {MAX_BLOCKS})"
            )
        for i, block in enumerate(blocks):
            if len(block) > MAX_BLOCK_LEN:
                raise EncodingError(
                    f"Block {i} is {len(block)} bytes (max {MAX_BLOCK_LEN})"
                )

        if EnvelopeWriter.symmetric_size(blocks) > MAX_ENVELOPE_SIZE:
            raise EncodingError(
                f"Symmetric blocks need {EnvelopeWriter.symmetric_size(blocks)} bytes "
                f"(ceiling {MAX_ENVELOPE_SIZE})"
            )

        out = io.BytesIO()
        out.write(MAGIC)
        out.write(bytes([len(blocks)]))
        for block in blocks:
            out.write(bytes([len(block)]))
            out.write(block)

        if external_blob and EnvelopeWriter.fits(blocks, external_blob):
            out.write(external_blob)

        return out.getvalue()
