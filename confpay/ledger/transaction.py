"""
Legacy ledger transactions.

Wire format:
    compact-u16 signature count + 64-byte signatures
    message:
        header            num_required_signatures (u8)
                          num_readonly_signed     (u8)
                          num_readonly_unsigned   (u8)
        account keys      compact-u16 count + 32-byte keys
        recent blockhash  32 bytes
        instructions      compact-u16 count +
                          [program index (u8), compact account indices, compact data]

Account keys are ordered: fee payer first, then signer-writable,
signer-readonly, writable, readonly. Duplicate metas merge by OR-ing their
flags.
"""

from __future__ import annotations

import base64
import struct
from dataclasses import dataclass, field
from typing import Sequence

from confpay import SYSTEM_PROGRAM_ID
from confpay.ledger.keys import address_bytes, b58encode

_SYSTEM_TRANSFER = 2
SIGNATURE_SIZE = 64


def encode_compact_u16(value: int) -> bytes:
    """Variable-length little-endian u16 (7 bits per byte)."""
    if value < 0 or value > 0xFFFF:
        raise ValueError(f"compact-u16 out of range: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_compact_u16(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Returns (value, new offset)."""
    value = 0
    for i in range(3):
        if offset + i >= len(data):
            raise ValueError("Truncated compact-u16")
        byte = data[offset + i]
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value, offset + i + 1
    raise ValueError("compact-u16 longer than 3 bytes")


@dataclass(frozen=True)
class AccountMeta:
    address: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: tuple[AccountMeta, ...]
    data: bytes = b""


@dataclass
class Message:
    """A compiled legacy message."""

    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int
    account_keys: list[str]
    recent_blockhash: str
    instructions: list[tuple[int, list[int], bytes]] = field(default_factory=list)

    @classmethod
    def compile(
        cls,
        instructions: Sequence[Instruction],
        fee_payer: str,
        recent_blockhash: str,
    ) -> Message:
        # address -> [is_signer, is_writable], insertion ordered
        metas: dict[str, list[bool]] = {fee_payer: [True, True]}
        for ix in instructions:
            for meta in ix.accounts:
                entry = metas.setdefault(meta.address, [False, False])
                entry[0] = entry[0] or meta.is_signer
                entry[1] = entry[1] or meta.is_writable
            metas.setdefault(ix.program_id, [False, False])

        def group(signer: bool, writable: bool) -> list[str]:
            return [
                addr for addr, (s, w) in metas.items()
                if addr != fee_payer and s == signer and w == writable
            ]

        signed_writable = [fee_payer] + group(True, True)
        signed_readonly = group(True, False)
        unsigned_writable = group(False, True)
        unsigned_readonly = group(False, False)
        keys = signed_writable + signed_readonly + unsigned_writable + unsigned_readonly
        index = {addr: i for i, addr in enumerate(keys)}

        compiled = [
            (
                index[ix.program_id],
                [index[m.address] for m in ix.accounts],
                bytes(ix.data),
            )
            for ix in instructions
        ]
        return cls(
            num_required_signatures=len(signed_writable) + len(signed_readonly),
            num_readonly_signed=len(signed_readonly),
            num_readonly_unsigned=len(unsigned_readonly),
            account_keys=keys,
            recent_blockhash=recent_blockhash,
            instructions=compiled,
        )

    def serialize(self) -> bytes:
        out = bytearray([
            self.num_required_signatures,
            self.num_readonly_signed,
            self.num_readonly_unsigned,
        ])
        out += encode_compact_u16(len(self.account_keys))
        for addr in self.account_keys:
            out += address_bytes(addr)
        out += address_bytes(self.recent_blockhash)
        out += encode_compact_u16(len(self.instructions))
        for program_index, account_indices, data in self.instructions:
            out.append(program_index)
            out += encode_compact_u16(len(account_indices))
            out += bytes(account_indices)
            out += encode_compact_u16(len(data))
            out += data
        return bytes(out)

    @property
    def signers(self) -> list[str]:
        return self.account_keys[: self.num_required_signatures]


class Transaction:
    """A legacy transaction: a compiled message plus its signatures.

    Usage:
        tx = Transaction([system_transfer(a, b, 1000)], fee_payer=a, recent_blockhash=bh)
        tx.sign([keypair])
        rpc.send_transaction(tx.to_base64())
    """

    def __init__(
        self,
        instructions: Sequence[Instruction],
        fee_payer: str,
        recent_blockhash: str,
    ) -> None:
        if not instructions:
            raise ValueError("Transaction needs at least one instruction")
        self.message = Message.compile(instructions, fee_payer, recent_blockhash)
        self._signatures: dict[str, bytes] = {}

    def sign(self, signers: Sequence) -> None:
        """Sign with every required signer. Raises ValueError on a missing one."""
        payload = self.message.serialize()
        by_address = {s.address: s for s in signers}
        for addr in self.message.signers:
            signer = by_address.get(addr)
            if signer is None:
                raise ValueError(f"Missing signer: {addr}")
            self._signatures[addr] = signer.sign(payload)

    @property
    def signature(self) -> str | None:
        """Fee payer signature in base58 (the transaction id)."""
        sig = self._signatures.get(self.message.account_keys[0])
        return b58encode(sig) if sig else None

    def serialize(self) -> bytes:
        required = self.message.signers
        out = bytearray(encode_compact_u16(len(required)))
        for addr in required:
            out += self._signatures.get(addr, bytes(SIGNATURE_SIZE))
        out += self.message.serialize()
        return bytes(out)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")


def system_transfer(sender: str, recipient: str, lamports: int) -> Instruction:
    """System program transfer: u32 LE instruction index 2 + u64 LE lamports."""
    if lamports < 0 or lamports >= 2**64:
        raise ValueError(f"Lamports out of range: {lamports}")
    address_bytes(recipient)
    return Instruction(
        program_id=SYSTEM_PROGRAM_ID,
        accounts=(
            AccountMeta(sender, is_signer=True, is_writable=True),
            AccountMeta(recipient, is_signer=False, is_writable=True),
        ),
        data=struct.pack("<IQ", _SYSTEM_TRANSFER, lamports),
    )
