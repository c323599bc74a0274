"""
Ledger keys and addresses.

- Base58 (Bitcoin alphabet) for 32-byte account addresses
- Ed25519 on-curve test, needed to derive program addresses
- Program-derived addresses: SHA-256(seeds || bump || program_id ||
  "ProgramDerivedAddress"), searching bump 255 -> 0 for an off-curve result
- Keypair: Ed25519 signing key (requires `cryptography`), stored as the
  usual 64-integer JSON array (32-byte seed + 32-byte public key)
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path
from typing import Sequence

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {c: i for i, c in enumerate(_B58_ALPHABET)}

_PDA_MARKER = b"ProgramDerivedAddress"
MAX_SEED_LEN = 32
MAX_SEEDS = 16

# Curve25519 field prime and Edwards d constant
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


def b58encode(data: bytes) -> str:
    """Encode bytes as base58."""
    data = bytes(data)
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, rem = divmod(n, 58)
        out.append(_B58_ALPHABET[rem])
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + "".join(reversed(out))


def b58decode(text: str) -> bytes:
    """Decode base58 text. Raises ValueError on invalid characters."""
    n = 0
    for c in text:
        if c not in _B58_INDEX:
            raise ValueError(f"Invalid base58 character: {c!r}")
        n = n * 58 + _B58_INDEX[c]
    body = n.to_bytes((n.bit_length() + 7) // 8, "big") if n else b""
    pad = len(text) - len(text.lstrip("1"))
    return b"\x00" * pad + body


def address_bytes(address: str | bytes) -> bytes:
    """Decode an address to its 32 raw bytes. Raises ValueError if malformed."""
    raw = bytes(address) if isinstance(address, (bytes, bytearray)) else b58decode(address)
    if len(raw) != 32:
        raise ValueError(f"Address must be 32 bytes, got {len(raw)}")
    return raw


def is_valid_address(address: str) -> bool:
    try:
        address_bytes(address)
        return True
    except (ValueError, TypeError):
        return False


def is_on_curve(point: bytes) -> bool:
    """True if 32 bytes decompress to a point on the Ed25519 curve."""
    if len(point) != 32:
        return False
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    y %= _P
    u = (y * y - 1) % _P
    v = (_D * y * y + 1) % _P
    if v == 0:
        return False
    x2 = (u * pow(v, _P - 2, _P)) % _P
    if x2 == 0:
        return True
    # Euler's criterion: x2 must be a quadratic residue for a square root to exist
    return pow(x2, (_P - 1) // 2, _P) == 1


def create_program_address(seeds: Sequence[bytes], program_id: str | bytes) -> bytes:
    """Hash seeds into a program address. Raises ValueError if it lands on the curve."""
    if len(seeds) > MAX_SEEDS:
        raise ValueError(f"Too many seeds: {len(seeds)} (max {MAX_SEEDS})")
    h = hashlib.sha256()
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise ValueError(f"Seed longer than {MAX_SEED_LEN} bytes")
        h.update(seed)
    h.update(address_bytes(program_id))
    h.update(_PDA_MARKER)
    digest = h.digest()
    if is_on_curve(digest):
        raise ValueError("Derived address is on the curve")
    return digest


def find_program_address(
    seeds: Sequence[bytes], program_id: str | bytes
) -> tuple[str, int]:
    """Find the canonical program-derived address for seeds.

    Returns (base58 address, bump seed).
    """
    for bump in range(255, -1, -1):
        try:
            raw = create_program_address([*seeds, bytes([bump])], program_id)
        except ValueError:
            continue
        return b58encode(raw), bump
    raise ValueError("Unable to find a viable program address bump seed")


def _import_ed25519():
    """Lazily import the Ed25519 primitives.

    Raises ImportError with a helpful message if not installed.
    """
    try:
        from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
        from cryptography.hazmat.primitives import serialization

        return Ed25519PrivateKey, serialization
    except ImportError:
        raise ImportError(
            "cryptography is required for ledger signing. "
            "Install with: pip install confpay"
        )


class Keypair:
    """Ed25519 ledger keypair. Also a signing capability for key derivation.

    Usage:
        kp = Keypair.generate()
        kp.save(path)
        kp = Keypair.load(path)
        sig = kp.sign(message)
    """

    def __init__(self, seed: bytes) -> None:
        if len(seed) != 32:
            raise ValueError("Keypair seed must be 32 bytes")
        Ed25519PrivateKey, serialization = _import_ed25519()
        self._seed = bytes(seed)
        self._key = Ed25519PrivateKey.from_private_bytes(self._seed)
        self._public = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @classmethod
    def generate(cls) -> Keypair:
        return cls(os.urandom(32))

    @classmethod
    def from_secret_key(cls, secret: bytes | Sequence[int]) -> Keypair:
        """Build from the 64-byte secret form (seed + public key)."""
        raw = bytes(secret)
        if len(raw) != 64:
            raise ValueError(f"Secret key must be 64 bytes, got {len(raw)}")
        kp = cls(raw[:32])
        if kp.public_key != raw[32:]:
            raise ValueError("Secret key public half does not match its seed")
        return kp

    @classmethod
    def load(cls, path: str | Path) -> Keypair:
        """Load a JSON key file (array of 64 integers)."""
        data = json.loads(Path(path).read_text())
        if not isinstance(data, list):
            raise ValueError(f"Invalid key file: {path}")
        return cls.from_secret_key(data)

    def save(self, path: str | Path) -> None:
        """Write the key file with mode 600."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(list(self.secret_key)))
        try:
            path.chmod(0o600)
        except OSError:
            pass  # Windows may not support chmod 600

    @property
    def secret_key(self) -> bytes:
        return self._seed + self._public

    @property
    def public_key(self) -> bytes:
        return self._public

    @property
    def address(self) -> str:
        return b58encode(self._public)

    def sign(self, message: bytes) -> bytes:
        """Ed25519 signature (64 bytes)."""
        return self._key.sign(bytes(message))

    async def sign_message(self, message: bytes) -> bytes:
        return self.sign(message)

    def __repr__(self) -> str:
        return f"Keypair({self.address})"
