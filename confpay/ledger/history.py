"""
Payment history reconstructed from ledger transactions.

1. Collect signatures for every watched address (the wallet; for employers
   also the payroll PDA, extra senders such as the autopay bot, and the
   worker wallets), deduplicate, newest first, cap at 200
2. Fetch each transaction and walk its system transfer instructions,
   inner instructions included
3. Keep transfers relevant to the viewer's role:
       employer: transfer to a known worker from the employer, its payroll
                 PDA or an extra sender
       worker:   any incoming transfer
4. Hide records at or before the "history cleared" instant
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from confpay import PROGRAM_ID
from confpay.ledger.program import payroll_address
from confpay.ledger.rpc import LedgerRPCError, SolanaRPC
from confpay.units import from_subunits

logger = logging.getLogger(__name__)

MAX_SIGNATURES = 200


@dataclass(frozen=True)
class PaymentRecord:
    signature: str
    timestamp: datetime
    amount: float
    sender: str
    recipient: str
    status: str = "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "timestamp": self.timestamp.isoformat(),
            "amount": self.amount,
            "sender": self.sender,
            "recipient": self.recipient,
            "status": self.status,
        }


def _dedupe(addresses: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for addr in addresses:
        if addr and addr not in seen:
            seen.append(addr)
    return seen


def iter_transfers(tx: dict[str, Any]) -> Iterable[dict[str, Any]]:
    """Yield the parsed ``info`` of every system transfer in a transaction."""
    message = (tx.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])
    for ix in instructions:
        parsed = ix.get("parsed")
        if ix.get("program") != "system" or not isinstance(parsed, dict):
            continue
        if parsed.get("type") == "transfer" and isinstance(parsed.get("info"), dict):
            yield parsed["info"]


def fetch_payment_history(
    rpc: SolanaRPC,
    wallet: str,
    is_employer: bool,
    extra_senders: Sequence[str] = (),
    workers: Sequence[str] = (),
    cleared_at: datetime | None = None,
    program_id: str | None = None,
) -> list[PaymentRecord]:
    """Payment records visible to ``wallet``, newest first."""
    watched = [wallet]
    payroll = None
    if is_employer:
        payroll = payroll_address(wallet, program_id or PROGRAM_ID)
        watched += [payroll, *extra_senders, *workers]
    watched = _dedupe(watched)

    by_signature: dict[str, dict[str, Any]] = {}
    for address in watched:
        try:
            for entry in rpc.get_signatures_for_address(address, limit=MAX_SIGNATURES):
                by_signature[entry["signature"]] = entry
        except LedgerRPCError as e:
            logger.error("Failed to fetch signatures for %s: %s", address, e)

    entries = sorted(
        by_signature.values(), key=lambda s: s.get("blockTime") or 0, reverse=True
    )[:MAX_SIGNATURES]
    logger.debug("History: %d unique signature(s) across %d address(es)",
                 len(entries), len(watched))

    senders = {wallet, *extra_senders}
    if payroll:
        senders.add(payroll)
    worker_set = set(workers)

    history: list[PaymentRecord] = []
    for entry in entries:
        if entry.get("err"):
            continue
        signature = entry["signature"]
        try:
            tx = rpc.get_transaction(signature)
        except LedgerRPCError as e:
            logger.warning("Failed to fetch transaction %s: %s", signature[:12], e)
            continue
        if not tx or not tx.get("meta") or tx["meta"].get("err"):
            continue

        timestamp = datetime.fromtimestamp(tx.get("blockTime") or 0, tz=timezone.utc)
        if cleared_at is not None and timestamp <= cleared_at:
            continue

        for info in iter_transfers(tx):
            source = info.get("source", "")
            destination = info.get("destination", "")
            if is_employer:
                relevant = destination in worker_set and source in senders
            else:
                relevant = destination == wallet
            if not relevant:
                continue
            history.append(PaymentRecord(
                signature=signature,
                timestamp=timestamp,
                amount=from_subunits(int(info.get("lamports", 0))),
                sender=source,
                recipient=destination,
            ))
            break

    return history
