"""
Async ledger gateway for payments and autopay.

The RPC and program clients are blocking; every call here runs in a worker
thread so the event loop (and the autopay tick timer) keeps running while a
transaction confirms.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from confpay.ledger.program import PayrollProgram
from confpay.ledger.rpc import SolanaRPC
from confpay.ledger.transfer import send_transfer
from confpay.roster import Worker

logger = logging.getLogger(__name__)


class LedgerGateway:
    """Implements PayrollLedger on top of a signing key.

    ``signer`` pays and signs; ``employer`` owns the payroll. They are the
    same key unless a delegated bot key runs autopay.

    Usage:
        gateway = LedgerGateway(SolanaRPC.from_env(), keypair)
        workers = await gateway.load_roster(utcnow())
        sig = await gateway.transfer(workers[0].address, 1.5)
    """

    def __init__(
        self,
        rpc: SolanaRPC,
        signer: Any,
        employer: str | None = None,
        program: PayrollProgram | None = None,
    ) -> None:
        self.rpc = rpc
        self.signer = signer
        self.employer = employer or signer.address
        self.program = program if program is not None else PayrollProgram(rpc)

    async def transfer(self, recipient: str, amount: float) -> str:
        return await asyncio.to_thread(send_transfer, self.rpc, self.signer, recipient, amount)

    async def record_payment(self, worker: str) -> str:
        return await asyncio.to_thread(
            self.program.record_payment, self.signer, self.employer, worker
        )

    async def load_roster(self, now: datetime) -> list[Worker]:
        records = await asyncio.to_thread(self.program.fetch_all_workers, self.employer)
        return [Worker.from_record(r, now) for r in records]
