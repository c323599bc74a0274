"""
Payroll program client.

Addresses:
    payroll   PDA ["payroll", employer]
    employee  PDA ["employee", payroll, worker]

Instruction data is an 8-byte discriminator, SHA-256("global:<name>")[:8],
followed by Borsh-encoded arguments:

    initialize_payroll(company_name)
    add_employee(name, role, ciphertext, input_type, pin, schedule, next_payment_ts)
    update_employee(name, role, ciphertext, input_type, pin, schedule, next_payment_ts)
    remove_employee()
    pay_employee()                  records a payment; advances next_payment_ts

Argument bounds are enforced here, before serialization, because the
program rejects over-long fields with an opaque error.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from confpay import (
    EMPLOYEE_SEED,
    ENVELOPE_MAX_SIZE,
    INPUT_TYPE_U64,
    MAX_NAME_LEN,
    MAX_PIN_LEN,
    MAX_ROLE_LEN,
    MAX_SCHEDULE_LEN,
    PAYROLL_SEED,
    PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
)
from confpay.ledger.accounts import (
    AccountDecodeError,
    BorshWriter,
    DISCRIMINATOR_SIZE,
    PayrollRecord,
    WorkerRecord,
    decode_worker,
)
from confpay.ledger.keys import address_bytes, find_program_address
from confpay.ledger.rpc import SolanaRPC
from confpay.ledger.transaction import AccountMeta, Instruction
from confpay.ledger.transfer import submit
from confpay.schedule import utcnow

logger = logging.getLogger(__name__)


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def payroll_address(employer: str, program_id: str = PROGRAM_ID) -> str:
    return find_program_address([PAYROLL_SEED, address_bytes(employer)], program_id)[0]


def employee_address(payroll: str, worker: str, program_id: str = PROGRAM_ID) -> str:
    return find_program_address(
        [EMPLOYEE_SEED, address_bytes(payroll), address_bytes(worker)], program_id
    )[0]


@dataclass
class WorkerTerms:
    """Arguments of add_employee / update_employee, before bounding."""

    name: str
    role: str
    ciphertext: bytes
    pin: str
    schedule: str
    next_payment_at: datetime | None
    input_type: int = INPUT_TYPE_U64

    def encode(self) -> bytes:
        """Borsh-encode with every field clamped to the program's limits."""
        ciphertext = bytes(self.ciphertext or b"")
        if len(ciphertext) > ENVELOPE_MAX_SIZE:
            logger.warning(
                "Ciphertext too long (%d bytes), truncating to %d",
                len(ciphertext), ENVELOPE_MAX_SIZE,
            )
            ciphertext = ciphertext[:ENVELOPE_MAX_SIZE]

        input_type = self.input_type
        if not isinstance(input_type, int) or not 0 <= input_type <= 255:
            input_type = INPUT_TYPE_U64

        next_ts = _to_unix(self.next_payment_at)
        if next_ts is None or next_ts < 0:
            next_ts = int(utcnow().timestamp())

        return (
            BorshWriter()
            .string(self.name[:MAX_NAME_LEN])
            .string(self.role[:MAX_ROLE_LEN])
            .vec(ciphertext)
            .u8(input_type)
            .string(self.pin[:MAX_PIN_LEN])
            .string(self.schedule[:MAX_SCHEDULE_LEN])
            .i64(next_ts)
            .getvalue()
        )


def _to_unix(when: datetime | None) -> int | None:
    if when is None:
        return None
    try:
        return int(when.timestamp())
    except (OverflowError, OSError, ValueError):
        return None


class PayrollProgram:
    """Sync client for the payroll program.

    Usage:
        program = PayrollProgram(SolanaRPC.from_env())
        sig = program.add_worker(employer_kp, worker_addr, terms)
        workers = program.fetch_all_workers(employer_kp.address)
    """

    def __init__(self, rpc: SolanaRPC, program_id: str | None = None) -> None:
        self.rpc = rpc
        self.program_id = program_id or os.environ.get("CONFPAY_PROGRAM_ID", "") or PROGRAM_ID

    def payroll_address(self, employer: str) -> str:
        return payroll_address(employer, self.program_id)

    def employee_address(self, employer: str, worker: str) -> str:
        return employee_address(self.payroll_address(employer), worker, self.program_id)

    # -- reads -------------------------------------------------------------

    def fetch_payroll(self, employer: str) -> PayrollRecord | None:
        account = self.rpc.get_account_info(self.payroll_address(employer))
        if account is None:
            return None
        return PayrollRecord.decode(account["data"])

    def is_registered(self, employer: str) -> bool:
        return self.rpc.get_account_info(self.payroll_address(employer)) is not None

    def fetch_worker(self, employer: str, worker: str) -> WorkerRecord | None:
        """One employee account, or None if it does not exist or cannot be read."""
        address = self.employee_address(employer, worker)
        account = self.rpc.get_account_info(address)
        if account is None:
            return None
        try:
            return decode_worker(account["data"], address)
        except AccountDecodeError as e:
            logger.warning("Cannot decode employee account %s: %s", address, e)
            return None

    def fetch_all_workers(self, employer: str) -> list[WorkerRecord]:
        """Every employee account of an employer's payroll.

        Matches on the payroll key right after the discriminator, so modern
        and legacy layouts are both returned.
        """
        payroll = self.payroll_address(employer)
        accounts = self.rpc.get_program_accounts(
            self.program_id,
            filters=[{"memcmp": {"offset": DISCRIMINATOR_SIZE, "bytes": payroll}}],
        )
        records: list[WorkerRecord] = []
        for address, account in accounts:
            try:
                records.append(decode_worker(account["data"], address))
            except AccountDecodeError as e:
                logger.warning("Skipping undecodable employee account %s: %s", address, e)
        logger.debug("Payroll %s has %d employee account(s)", payroll[:8], len(records))
        return records

    # -- writes ------------------------------------------------------------

    def _instruction(self, name: str, accounts: list[AccountMeta], args: bytes = b"") -> Instruction:
        return Instruction(
            program_id=self.program_id,
            accounts=tuple(accounts),
            data=instruction_discriminator(name) + args,
        )

    def _send(self, admin: Any, ix: Instruction) -> str:
        return submit(self.rpc, admin, [ix])

    def initialize_payroll(self, admin: Any, company_name: str) -> str:
        payroll = self.payroll_address(admin.address)
        ix = self._instruction(
            "initialize_payroll",
            [
                AccountMeta(payroll, is_writable=True),
                AccountMeta(admin.address, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID),
            ],
            BorshWriter().string(company_name).getvalue(),
        )
        logger.info("Registering payroll %s for %s", payroll, company_name)
        return self._send(admin, ix)

    def add_worker(self, admin: Any, worker: str, terms: WorkerTerms) -> str:
        payroll = self.payroll_address(admin.address)
        ix = self._instruction(
            "add_employee",
            [
                AccountMeta(payroll, is_writable=True),
                AccountMeta(self.employee_address(admin.address, worker), is_writable=True),
                AccountMeta(worker),
                AccountMeta(admin.address, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID),
            ],
            terms.encode(),
        )
        return self._send(admin, ix)

    def update_worker(self, admin: Any, worker: str, terms: WorkerTerms) -> str:
        payroll = self.payroll_address(admin.address)
        ix = self._instruction(
            "update_employee",
            [
                AccountMeta(payroll),
                AccountMeta(self.employee_address(admin.address, worker), is_writable=True),
                AccountMeta(worker),
                AccountMeta(admin.address, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID),
            ],
            terms.encode(),
        )
        return self._send(admin, ix)

    def remove_worker(self, admin: Any, worker: str) -> str:
        payroll = self.payroll_address(admin.address)
        ix = self._instruction(
            "remove_employee",
            [
                AccountMeta(payroll, is_writable=True),
                AccountMeta(self.employee_address(admin.address, worker), is_writable=True),
                AccountMeta(worker),
                AccountMeta(admin.address, is_signer=True, is_writable=True),
            ],
        )
        return self._send(admin, ix)

    def record_payment(self, admin: Any, employer: str, worker: str) -> str:
        """Mark a worker paid on the ledger (last_paid_ts, next_payment_ts).

        ``admin`` signs; ``employer`` owns the payroll (the same key unless a
        delegated bot signs).
        """
        payroll = self.payroll_address(employer)
        ix = self._instruction(
            "pay_employee",
            [
                AccountMeta(payroll),
                AccountMeta(self.employee_address(employer, worker), is_writable=True),
                AccountMeta(admin.address, is_signer=True, is_writable=True),
                AccountMeta(SYSTEM_PROGRAM_ID),
            ],
        )
        return self._send(admin, ix)
