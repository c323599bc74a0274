"""
Roster — the employer's working view of its workers.

A Worker is built from a decoded employee account and carries what the
ledger does not: the revealed plaintext amount (if any) and whether the
ledger record is known to lag behind a payment already made.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from confpay.guard import GuardStore
from confpay.ledger.accounts import WorkerRecord
from confpay.schedule import ScheduleKind, advance, parse_schedule

logger = logging.getLogger(__name__)

CONFIDENTIAL = "confidential"
REVEALED = "revealed"


@dataclass
class Worker:
    address: str
    name: str
    schedule: ScheduleKind
    next_due_at: datetime
    last_paid_at: datetime | None = None
    role: str = ""
    pin: str = ""
    ciphertext: bytes = b""
    account: str = ""
    amount: float | None = None
    record_stale: bool = False

    @classmethod
    def from_record(cls, record: WorkerRecord, now: datetime) -> Worker:
        try:
            schedule = parse_schedule(record.schedule)
        except ValueError:
            logger.warning("Worker %s has unknown schedule %r, treating as Weekly",
                           record.wallet[:8], record.schedule)
            schedule = ScheduleKind.WEEKLY
        return cls(
            address=record.wallet,
            name=record.name,
            role=record.role,
            pin=record.pin,
            schedule=schedule,
            next_due_at=record.next_due_at(now),
            last_paid_at=record.last_paid_at,
            ciphertext=bytes(record.ciphertext),
            account=record.address,
        )

    @property
    def status(self) -> str:
        return REVEALED if self.amount is not None else CONFIDENTIAL

    def is_due(self, now: datetime) -> bool:
        return self.next_due_at <= now

    def mark_paid(self, at: datetime) -> None:
        """Advance the local schedule mirror after a payment."""
        self.schedule, self.next_due_at = advance(self.schedule, self.next_due_at)
        self.last_paid_at = at


async def reveal_amounts(
    workers: Sequence[Worker],
    decryptor: Any,
    viewer: Any = None,
    pin: str | None = None,
    guard: GuardStore | None = None,
) -> int:
    """Batch-decrypt every confidential worker; cache what was revealed.

    Returns the number of workers revealed.
    """
    hidden = [w for w in workers if w.amount is None and w.ciphertext]
    if not hidden:
        return 0

    amounts = await decryptor.decrypt_batch([w.ciphertext for w in hidden], viewer, pin)
    revealed = 0
    for worker, amount in zip(hidden, amounts):
        if amount is None:
            continue
        worker.amount = amount
        revealed += 1
        if guard is not None:
            guard.cache_salary(worker.address, amount)
    logger.info("Revealed %d/%d confidential salar%s",
                revealed, len(hidden), "y" if len(hidden) == 1 else "ies")
    return revealed
