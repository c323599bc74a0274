"""
Envelope — parsed view of a stored salary ciphertext.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Envelope:
    """A parsed salary envelope.

    Attributes:
        is_envelope: True if the input carried the dual-format magic.
        blocks: Symmetric blocks in stored order (one per key source).
        external_blob: External ciphertext handle bytes, empty if absent.
        truncated: True if a declared block length overran the buffer.
    """

    is_envelope: bool
    blocks: tuple[bytes, ...] = field(default_factory=tuple)
    external_blob: bytes = b""
    truncated: bool = False

    @property
    def block_count(self) -> int:
        return len(self.blocks)

    @property
    def has_external(self) -> bool:
        return len(self.external_blob) > 0
