"""
Autopay bot — periodic roster scan that pays due workers.

Tick:
    1. Drop guard records older than the cool-down
    2. Refresh the roster (if a loader is attached)
    3. For each worker whose next due instant has passed:
         guard 1   local guard record younger than the cool-down  -> skip
         guard 2   ledger last_paid within the cool-down          -> skip
         amount    known or cached, else skip ("needs unlock")
         pay       transfer -> guard record -> record update -> advance
    4. Report "N processed, M due, error on K, record not updated: R"

One worker's failure never stops the scan. Ticks never overlap on one bot:
a tick that starts while another is still paying returns immediately.
Stopping the bot only prevents future ticks; a payment already sent is
never reverted.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

from confpay import AUTOPAY_TICK_SECS
from confpay.payments import PaymentOutcome, PaymentService
from confpay.roster import Worker
from confpay.schedule import utcnow

logger = logging.getLogger(__name__)

IDLE = "Idle"
NO_PAYMENTS_DUE = "No payments due"
NEEDS_UNLOCK = "needs unlock"
RECORD_NOT_UPDATED = "record not updated"


@dataclass
class TickReport:
    started_at: datetime
    due: int = 0
    processed: int = 0
    paid: list[PaymentOutcome] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    record_errors: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if not self.due:
            return NO_PAYMENTS_DUE
        text = f"{self.processed} processed, {self.due} due"
        if self.errors:
            text += f", error on {', '.join(sorted(self.errors))}"
        unlock = sorted(w for w, reason in self.skipped.items() if reason == NEEDS_UNLOCK)
        if unlock:
            text += f", {NEEDS_UNLOCK}: {', '.join(unlock)}"
        if self.record_errors:
            text += f", {RECORD_NOT_UPDATED}: {', '.join(sorted(self.record_errors))}"
        return text


class AutopayBot:
    """Pays due workers every ``interval`` seconds.

    ``roster`` is either a fixed list of workers or an object with an async
    ``load_roster(now)`` method (see LedgerGateway).

    Usage:
        bot = AutopayBot(gateway, PaymentService(gateway, guard))
        bot.start()
        ...
        await bot.stop()
    """

    def __init__(
        self,
        roster: Sequence[Worker] | Any,
        payments: PaymentService,
        *,
        interval: float = AUTOPAY_TICK_SECS,
        cooldown: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if isinstance(roster, (list, tuple)):
            self._loader = None
            self.workers: list[Worker] = list(roster)
        else:
            self._loader = roster
            self.workers = []
        self.payments = payments
        if cooldown is not None:
            self.payments.cooldown = cooldown
        self._interval = interval
        self._clock = clock
        self._ticking = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.last_report: TickReport | None = None
        self._status = IDLE

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Run a tick now, then one every interval. Needs a running loop."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="autopay")
        logger.info("Autopay started (tick interval: %ss)", self._interval)

    async def stop(self) -> None:
        """Prevent further ticks and wait for the current one to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._status = IDLE
        logger.info("Autopay stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Autopay tick error")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    # -- scan --------------------------------------------------------------

    async def tick(self) -> TickReport | None:
        """One roster scan. Returns None if a scan is already in progress."""
        if self._ticking:
            logger.debug("Autopay tick skipped: previous tick still running")
            return None
        self._ticking = True
        try:
            now = self._clock()
            pruned = self.payments.guard.prune(now, self.payments.cooldown)
            if pruned:
                logger.debug("Pruned %d expired guard record(s)", pruned)
            self._status = "Scanning for due payments..."
            if self._loader is not None:
                await self._refresh(now)
            report = TickReport(started_at=now)
            for worker in list(self.workers):
                if not worker.is_due(now):
                    continue
                report.due += 1
                try:
                    await self._process(worker, now, report)
                except Exception as e:
                    logger.exception("Autopay failed to pay %s", worker.name or worker.address)
                    report.errors[worker.name or worker.address] = str(e)
            self.last_report = report
            self._status = report.status
            logger.info("Autopay tick: %s", report.status)
            return report
        finally:
            self._ticking = False

    async def _process(self, worker: Worker, now: datetime, report: TickReport) -> None:
        label = worker.name or worker.address
        reason = self.payments.blocked_reason(worker, now)
        if reason is not None:
            logger.info("Skipping %s: %s", label, reason)
            report.skipped[label] = reason
            return

        amount = self.payments.resolve_amount(worker)
        if amount is None:
            logger.warning("Skipping %s: salary unknown, %s", label, NEEDS_UNLOCK)
            report.skipped[label] = NEEDS_UNLOCK
            return

        self._status = f"Processing payment for {label}..."
        outcome = await self.payments.pay(worker, amount)
        report.processed += 1
        report.paid.append(outcome)
        if outcome.record_error is not None:
            report.record_errors[label] = outcome.record_error

    async def _refresh(self, now: datetime) -> None:
        """Reload the roster, keeping local state the ledger cannot know yet."""
        fresh = await self._loader.load_roster(now)
        previous = {w.address: w for w in self.workers}
        merged: list[Worker] = []
        for worker in fresh:
            prev = previous.get(worker.address)
            if prev is not None:
                # Ledger record lags a payment we made: trust the local mirror
                if prev.record_stale and worker.next_due_at < prev.next_due_at:
                    merged.append(prev)
                    continue
                if worker.amount is None:
                    worker.amount = prev.amount
            merged.append(worker)
        self.workers = merged
