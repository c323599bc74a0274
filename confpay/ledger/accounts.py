"""
Payroll program accounts — Borsh decoding.

Every account starts with an 8-byte discriminator, SHA-256("account:<Name>")[:8].

Payroll:
    admin (32) | company_name (string) | employee_count (u64)

Employee (modern layout):
    payroll (32) | wallet (32) | name | role | ciphertext (vec<u8>) |
    input_type (u8) | pin | schedule | next_payment_ts (i64) | last_paid_ts (i64)

Employee (legacy layout, written before the timestamp fields existed):
    payroll (32) | wallet (32) | name | role | pin | schedule |
    [ciphertext (vec<u8>)] | [input_type (u8)] | [next_payment_ts | last_paid_ts]

Strings and vectors are a u32 LE length followed by the bytes. The legacy
decoder never raises on short data: missing trailing fields take defaults.
"""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone

from confpay import INPUT_TYPE_U64
from confpay.ledger.keys import b58encode

logger = logging.getLogger(__name__)

DISCRIMINATOR_SIZE = 8

# Largest integer a double-precision timestamp can hold exactly
_MAX_SAFE_INT = 2**53
# Below this a "seconds" value predates 1970-01-12: treated as unset
_MIN_PLAUSIBLE_SECS = 1_000_000
# Above this a value can only be milliseconds (seconds would be year 5138+)
_MILLIS_THRESHOLD = 100_000_000_000

_LEGACY_VEC_LIMIT = 1024


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


PAYROLL_DISCRIMINATOR = account_discriminator("Payroll")
EMPLOYEE_DISCRIMINATOR = account_discriminator("Employee")


class AccountDecodeError(ValueError):
    """Account data does not match the expected layout."""


class BorshReader:
    """Sequential little-endian reader over account data."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self.data = bytes(data)
        self.offset = offset

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def take(self, n: int) -> bytes:
        if n < 0 or self.offset + n > len(self.data):
            raise AccountDecodeError(
                f"Need {n} bytes at offset {self.offset}, have {self.remaining}"
            )
        chunk = self.data[self.offset:self.offset + n]
        self.offset += n
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def i64(self) -> int:
        return struct.unpack("<q", self.take(8))[0]

    def pubkey(self) -> str:
        return b58encode(self.take(32))

    def vec(self) -> bytes:
        return self.take(self.u32())

    def string(self) -> str:
        try:
            return self.vec().decode("utf-8")
        except UnicodeDecodeError as e:
            raise AccountDecodeError(f"Invalid UTF-8 string: {e}") from e


class BorshWriter:
    """Little-endian writer for instruction arguments."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def u8(self, value: int) -> BorshWriter:
        self._buf += struct.pack("<B", value)
        return self

    def i64(self, value: int) -> BorshWriter:
        self._buf += struct.pack("<q", value)
        return self

    def vec(self, value: bytes) -> BorshWriter:
        self._buf += struct.pack("<I", len(value)) + bytes(value)
        return self

    def string(self, value: str) -> BorshWriter:
        return self.vec(value.encode("utf-8"))

    def raw(self, value: bytes) -> BorshWriter:
        self._buf += value
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buf)


def normalize_due(raw: int, now: datetime) -> datetime:
    """Interpret a stored next-payment timestamp.

    Unset (0), implausibly small or out-of-range values mean "due now".
    Millisecond values written by older clients are detected and accepted.
    """
    if raw > _MAX_SAFE_INT or raw < _MIN_PLAUSIBLE_SECS:
        return now
    if raw > _MILLIS_THRESHOLD:
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    return datetime.fromtimestamp(raw, tz=timezone.utc)


def normalize_last_paid(raw: int) -> datetime | None:
    """Interpret a stored last-paid timestamp. 0 (or garbage) means never."""
    if raw <= 0 or raw > _MAX_SAFE_INT:
        return None
    if raw > _MILLIS_THRESHOLD:
        return datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
    return datetime.fromtimestamp(raw, tz=timezone.utc)


@dataclass
class PayrollRecord:
    admin: str
    company_name: str
    employee_count: int

    @classmethod
    def decode(cls, data: bytes) -> PayrollRecord:
        if bytes(data[:DISCRIMINATOR_SIZE]) != PAYROLL_DISCRIMINATOR:
            raise AccountDecodeError("Not a Payroll account")
        r = BorshReader(data, DISCRIMINATOR_SIZE)
        return cls(admin=r.pubkey(), company_name=r.string(), employee_count=r.u64())


@dataclass
class WorkerRecord:
    """Decoded employee account, timestamps still raw."""

    payroll: str
    wallet: str
    name: str
    role: str
    ciphertext: bytes
    input_type: int
    pin: str
    schedule: str
    next_payment_ts: int = 0
    last_paid_ts: int = 0
    address: str = ""
    legacy: bool = field(default=False, compare=False)

    def next_due_at(self, now: datetime) -> datetime:
        return normalize_due(self.next_payment_ts, now)

    @property
    def last_paid_at(self) -> datetime | None:
        return normalize_last_paid(self.last_paid_ts)


def decode_employee(data: bytes) -> WorkerRecord:
    """Decode the modern Employee layout. Raises AccountDecodeError."""
    if len(data) < DISCRIMINATOR_SIZE:
        raise AccountDecodeError("Account data shorter than discriminator")
    r = BorshReader(data, DISCRIMINATOR_SIZE)
    return WorkerRecord(
        payroll=r.pubkey(),
        wallet=r.pubkey(),
        name=r.string(),
        role=r.string(),
        ciphertext=r.vec(),
        input_type=r.u8(),
        pin=r.string(),
        schedule=r.string(),
        next_payment_ts=r.i64(),
        last_paid_ts=r.i64(),
    )


def decode_legacy_employee(data: bytes) -> WorkerRecord:
    """Best-effort decode of the legacy Employee layout.

    Only the two leading keys are required; anything after degrades to
    defaults when the data runs out.
    """
    r = BorshReader(data, DISCRIMINATOR_SIZE)
    payroll = r.pubkey()
    wallet = r.pubkey()

    def read_string() -> str:
        start = r.offset
        try:
            return r.string()
        except AccountDecodeError:
            r.offset = start
            return ""

    name = read_string()
    role = read_string()
    pin = read_string()
    schedule = read_string()

    ciphertext = b""
    if r.remaining >= 4:
        start = r.offset
        length = r.u32()
        if length < _LEGACY_VEC_LIMIT and length <= r.remaining:
            ciphertext = r.take(length)
        else:
            r.offset = start

    input_type = INPUT_TYPE_U64
    if r.remaining >= 1:
        input_type = r.u8()

    next_ts = last_ts = 0
    if r.remaining >= 16:
        next_ts = r.i64()
        last_ts = r.i64()

    return WorkerRecord(
        payroll=payroll,
        wallet=wallet,
        name=name,
        role=role,
        ciphertext=ciphertext,
        input_type=input_type,
        pin=pin,
        schedule=schedule,
        next_payment_ts=next_ts,
        last_paid_ts=last_ts,
        legacy=True,
    )


def decode_worker(data: bytes, address: str = "") -> WorkerRecord:
    """Decode an employee account, falling back to the legacy layout."""
    try:
        record = decode_employee(data)
    except AccountDecodeError as e:
        logger.debug("Modern decode failed for %s (%s), trying legacy layout",
                     address[:8] or "<account>", e)
        record = decode_legacy_employee(data)
    record.address = address
    return record
