"""
Transaction submission and value transfers.

    submit()          sign + send + wait for "confirmed"
    send_transfer()   system transfer of floor(amount × 10^9) lamports
    confirm_signature polls getSignatureStatuses until the signature reaches
                      the wanted commitment, fails, or its blockhash expires
"""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from confpay.ledger.rpc import LedgerRPCError, SolanaRPC
from confpay.ledger.transaction import Instruction, Transaction, system_transfer
from confpay.units import to_subunits

logger = logging.getLogger(__name__)

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}

DEFAULT_CONFIRM_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 2.0


class LedgerTransferError(Exception):
    """A transaction could not be sent or did not confirm."""

    def __init__(self, message: str, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature


def confirm_signature(
    rpc: SolanaRPC,
    signature: str,
    last_valid_block_height: int = 0,
    commitment: str = "confirmed",
    timeout: float = DEFAULT_CONFIRM_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """Block until ``signature`` reaches ``commitment``.

    Raises LedgerTransferError if the transaction failed, its blockhash
    expired, or the timeout elapsed.
    """
    wanted = _COMMITMENT_RANK[commitment]
    deadline = time.monotonic() + timeout

    while True:
        try:
            statuses = rpc.get_signature_statuses([signature])
        except LedgerRPCError as e:
            logger.warning("Status poll for %s failed: %s", signature[:12], e)
            statuses = []

        status = statuses[0] if statuses else None
        if status:
            if status.get("err"):
                raise LedgerTransferError(
                    f"Transaction failed: {status['err']}", signature=signature
                )
            reached = _COMMITMENT_RANK.get(status.get("confirmationStatus") or "", -1)
            if reached >= wanted:
                return

        if last_valid_block_height:
            try:
                if rpc.get_block_height() > last_valid_block_height:
                    raise LedgerTransferError(
                        "Transaction expired (blockhash no longer valid)",
                        signature=signature,
                    )
            except LedgerRPCError as e:
                logger.debug("Block height check failed: %s", e)

        if time.monotonic() >= deadline:
            raise LedgerTransferError(
                f"Transaction not {commitment} after {timeout:.0f}s", signature=signature
            )
        time.sleep(poll_interval)


def submit(
    rpc: SolanaRPC,
    signer: Any,
    instructions: Sequence[Instruction],
    timeout: float = DEFAULT_CONFIRM_TIMEOUT,
) -> str:
    """Build, sign, send and confirm a transaction paid for by ``signer``.

    Returns the transaction signature. Raises LedgerTransferError.
    """
    try:
        blockhash, last_valid = rpc.get_latest_blockhash()
        tx = Transaction(instructions, fee_payer=signer.address, recent_blockhash=blockhash)
        tx.sign([signer])
        signature = rpc.send_transaction(tx.to_base64())
    except LedgerRPCError as e:
        raise LedgerTransferError(f"Send failed: {e}") from e
    except ValueError as e:
        raise LedgerTransferError(f"Invalid transaction: {e}") from e

    logger.debug("Sent %s, awaiting confirmation", signature)
    confirm_signature(rpc, signature, last_valid, timeout=timeout)
    return signature


def send_transfer(rpc: SolanaRPC, sender: Any, recipient: str, amount: float) -> str:
    """Transfer ``amount`` display units from sender to recipient.

    Returns the confirmed transaction signature. Raises LedgerTransferError.
    """
    try:
        lamports = to_subunits(amount)
    except ValueError as e:
        raise LedgerTransferError(str(e)) from e
    if lamports <= 0:
        raise LedgerTransferError(f"Transfer amount must be positive, got {amount!r}")

    try:
        ix = system_transfer(sender.address, recipient, lamports)
    except ValueError as e:
        raise LedgerTransferError(f"Invalid recipient {recipient!r}: {e}") from e

    signature = submit(rpc, sender, [ix])
    logger.info("Transferred %d lamports to %s (%s)", lamports, recipient[:8], signature)
    return signature
