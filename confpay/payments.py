"""
Payment sequence shared by autopay and manual payments.

    guards  ->  transfer  ->  guard record  ->  record update  ->  local schedule
                   |               |                 |
                 fatal        durable first     failure logged, never retried

The guard record is written the moment the transfer confirms, before the
ledger record update is attempted. If the update then fails, the money has
moved but the ledger still shows the old schedule; the guard keeps the next
tick from paying again inside the cool-down, and the worker is flagged
``record_stale`` until an operator reconciles it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from confpay import AUTOPAY_COOLDOWN_SECS
from confpay.guard import GuardStore
from confpay.ledger.transfer import LedgerTransferError
from confpay.roster import Worker
from confpay.schedule import utcnow

logger = logging.getLogger(__name__)

__all__ = [
    "LedgerTransferError",
    "RecordUpdateError",
    "PaymentBlocked",
    "PaymentOutcome",
    "PayrollLedger",
    "PaymentService",
]

GUARD_LOCAL = "guarded locally"
GUARD_LEDGER = "paid on ledger recently"


class RecordUpdateError(Exception):
    """The transfer succeeded but the ledger record was not updated."""


class PaymentBlocked(Exception):
    """A guard refused the payment. ``reason`` says which one."""

    def __init__(self, worker: str, reason: str) -> None:
        super().__init__(f"Payment to {worker} blocked: {reason}")
        self.worker = worker
        self.reason = reason


class PayrollLedger(Protocol):
    """The two ledger operations a payment needs."""

    async def transfer(self, recipient: str, amount: float) -> str: ...

    async def record_payment(self, worker: str) -> str: ...


@dataclass
class PaymentOutcome:
    worker: str
    amount: float
    signature: str
    paid_at: datetime
    record_signature: str | None = None
    record_error: str | None = None

    @property
    def recorded(self) -> bool:
        return self.record_error is None


class PaymentService:
    """Runs one payment end to end under the guard discipline.

    Usage:
        service = PaymentService(ledger, guard)
        reason = service.blocked_reason(worker, now)
        if reason is None:
            outcome = await service.pay(worker, amount)
    """

    def __init__(
        self,
        ledger: PayrollLedger,
        guard: GuardStore,
        cooldown: timedelta = timedelta(seconds=AUTOPAY_COOLDOWN_SECS),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ledger = ledger
        self.guard = guard
        self.cooldown = cooldown
        self._clock = clock

    def blocked_reason(self, worker: Worker, now: datetime) -> str | None:
        """Which guard (if any) forbids paying this worker right now."""
        if self.guard.is_guarded(worker.address, now, self.cooldown):
            return GUARD_LOCAL
        if worker.last_paid_at is not None and now - worker.last_paid_at < self.cooldown:
            return GUARD_LEDGER
        return None

    def resolve_amount(self, worker: Worker) -> float | None:
        """The worker's known amount, else the cached one, else None."""
        if worker.amount is not None and worker.amount > 0:
            return worker.amount
        cached = self.guard.cached_salary(worker.address)
        if cached is not None:
            worker.amount = cached
        return cached

    async def pay(self, worker: Worker, amount: float) -> PaymentOutcome:
        """Transfer, guard, record, advance. Guards must be checked by the caller.

        Raises LedgerTransferError if the transfer fails. A record update
        failure does not raise; it is reported on the outcome.
        """
        signature = await self.ledger.transfer(worker.address, amount)
        paid_at = self._clock()
        self.guard.mark_paid(worker.address, paid_at)
        logger.info("Paid %s to %s (%s)", amount, worker.address[:8], signature)

        outcome = PaymentOutcome(
            worker=worker.address, amount=amount, signature=signature, paid_at=paid_at
        )
        try:
            outcome.record_signature = await self._record(worker.address)
            worker.record_stale = False
        except RecordUpdateError as e:
            logger.error("Payment to %s sent (%s) but ledger record not updated: %s",
                         worker.address[:8], signature, e)
            outcome.record_error = str(e)
            worker.record_stale = True

        worker.mark_paid(paid_at)
        return outcome

    async def _record(self, worker: str) -> str:
        try:
            return await self.ledger.record_payment(worker)
        except RecordUpdateError:
            raise
        except Exception as e:
            raise RecordUpdateError(str(e)) from e

    async def pay_now(
        self, worker: Worker, amount: float | None = None, force: bool = False
    ) -> PaymentOutcome:
        """Manual payment through the same guards as autopay.

        Raises PaymentBlocked if a guard applies (unless ``force``),
        ValueError if no amount is known, LedgerTransferError on transfer
        failure.
        """
        now = self._clock()
        if not force:
            reason = self.blocked_reason(worker, now)
            if reason is not None:
                raise PaymentBlocked(worker.address, reason)
        if amount is None:
            amount = self.resolve_amount(worker)
        if amount is None or amount <= 0:
            raise ValueError(f"No known salary for {worker.address}; reveal it first")
        return await self.pay(worker, amount)
