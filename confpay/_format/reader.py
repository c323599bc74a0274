"""
Reader — tolerant parser for salary envelopes.

Parsing features:
  - Magic check on the first 4 bytes (instant format identification)
  - Non-envelope input is returned whole as a raw external ciphertext
  - A block length that overruns the buffer stops parsing and keeps the
    blocks read so far, so malformed or legacy data degrades to partial
    recovery instead of raising
"""

from __future__ import annotations

from confpay._format.spec import HEADER_SIZE, MAGIC_SIZE, LENGTH_PREFIX_SIZE, has_magic
from confpay._format.envelope import Envelope


class EnvelopeReader:

    @staticmethod
    def is_envelope(data: bytes) -> bool:
        """Fast check if bytes are a dual-format envelope."""
        return has_magic(bytes(data))

    @staticmethod
    def unpack(data: bytes | bytearray | list[int]) -> Envelope:
        """Parse bytes into an Envelope. Never raises on malformed input."""
        raw = bytes(data)

        if not EnvelopeReader.is_envelope(raw):
            return Envelope(is_envelope=False, blocks=(), external_blob=raw)

        count = raw[MAGIC_SIZE]
        offset = HEADER_SIZE
        blocks: list[bytes] = []

        for _ in range(count):
            if offset >= len(raw):
                return Envelope(is_envelope=True, blocks=tuple(blocks), truncated=True)
            block_len = raw[offset]
            block_end = offset + LENGTH_PREFIX_SIZE + block_len
            if block_end > len(raw):
                return Envelope(is_envelope=True, blocks=tuple(blocks), truncated=True)
            blocks.append(raw[offset + LENGTH_PREFIX_SIZE:block_end])
            offset = block_end

        return Envelope(
            is_envelope=True,
            blocks=tuple(blocks),
            external_blob=raw[offset:],
        )
