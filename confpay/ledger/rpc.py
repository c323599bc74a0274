"""
Ledger JSON-RPC client.

Zero external dependencies — uses stdlib urllib.request for JSON-RPC 2.0.
Public endpoints throttle aggressively, so rate-limit failures (HTTP 403 /
429, dropped connections) are retried with a growing delay before giving up.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import time
import urllib.error
import urllib.request
from typing import Any

from confpay import DEFAULT_RPC_URL

logger = logging.getLogger(__name__)

_RETRY_STATUS = (403, 429)
_RETRY_ATTEMPTS = 3
_RETRY_DELAY = 1.0
_RETRY_BACKOFF = 1.5

DEFAULT_COMMITMENT = "confirmed"


class LedgerRPCError(Exception):
    """Error communicating with or returned by the ledger JSON-RPC node."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class SolanaRPC:
    """Minimal ledger JSON-RPC client using stdlib urllib.

    Usage:
        rpc = SolanaRPC.from_env()
        blockhash, last_valid = rpc.get_latest_blockhash()
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        retries: int = _RETRY_ATTEMPTS,
        retry_delay: float = _RETRY_DELAY,
    ) -> None:
        if not url:
            raise ValueError("Ledger RPC URL cannot be empty")
        self.url = url
        self._timeout = timeout
        self._retries = max(1, retries)
        self._retry_delay = retry_delay
        self._id_counter = 0

    @classmethod
    def from_env(cls) -> SolanaRPC:
        """Create RPC client from environment variables.

        Reads:
            CONFPAY_RPC_URL — e.g. https://api.devnet.solana.com
                              (defaults to the public devnet endpoint)
        """
        return cls(os.environ.get("CONFPAY_RPC_URL", "") or DEFAULT_RPC_URL)

    def _call_once(self, method: str, params: list[Any]) -> Any:
        self._id_counter += 1
        payload = json.dumps({
            "jsonrpc": "2.0",
            "id": self._id_counter,
            "method": method,
            "params": params,
        }).encode()

        req = urllib.request.Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                body = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            raise LedgerRPCError(
                f"HTTP {e.code}: {e.reason}", retryable=e.code in _RETRY_STATUS
            ) from e
        except urllib.error.URLError as e:
            raise LedgerRPCError(f"Connection failed: {e.reason}", retryable=True) from e
        except Exception as e:
            raise LedgerRPCError(f"RPC call failed: {e}") from e

        if not isinstance(body, dict):
            raise LedgerRPCError("RPC response is not a JSON object")
        if body.get("error"):
            err = body["error"]
            msg = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise LedgerRPCError(f"RPC error: {msg}")

        return body.get("result")

    def call(self, method: str, *params: Any) -> Any:
        """Execute a JSON-RPC call. Returns the 'result' field.

        Retries rate-limited or dropped requests. Raises LedgerRPCError on
        transport or RPC-level errors.
        """
        delay = self._retry_delay
        for attempt in range(1, self._retries + 1):
            try:
                return self._call_once(method, list(params))
            except LedgerRPCError as e:
                if not e.retryable or attempt == self._retries:
                    raise
                logger.warning(
                    "%s throttled (%s), retrying in %.1fs (%d left)",
                    method, e, delay, self._retries - attempt,
                )
                time.sleep(delay)
                delay *= _RETRY_BACKOFF
        raise LedgerRPCError(f"{method} failed after {self._retries} attempts")

    # -- typed helpers -----------------------------------------------------

    def get_latest_blockhash(self, commitment: str = DEFAULT_COMMITMENT) -> tuple[str, int]:
        """Returns (blockhash, last valid block height)."""
        result = self.call("getLatestBlockhash", {"commitment": commitment})
        value = (result or {}).get("value") or {}
        blockhash = value.get("blockhash")
        if not blockhash:
            raise LedgerRPCError("getLatestBlockhash returned no blockhash")
        return blockhash, int(value.get("lastValidBlockHeight", 0))

    def get_block_height(self, commitment: str = DEFAULT_COMMITMENT) -> int:
        return int(self.call("getBlockHeight", {"commitment": commitment}))

    def get_balance(self, address: str, commitment: str = DEFAULT_COMMITMENT) -> int:
        """Balance in lamports."""
        result = self.call("getBalance", address, {"commitment": commitment})
        return int((result or {}).get("value", 0))

    def get_account_info(
        self, address: str, commitment: str = DEFAULT_COMMITMENT
    ) -> dict[str, Any] | None:
        """Raw account info (data decoded from base64), or None if absent."""
        result = self.call(
            "getAccountInfo", address, {"encoding": "base64", "commitment": commitment}
        )
        value = (result or {}).get("value")
        if not value:
            return None
        return _decode_account(value)

    def get_program_accounts(
        self,
        program_id: str,
        filters: list[dict[str, Any]] | None = None,
        commitment: str = DEFAULT_COMMITMENT,
    ) -> list[tuple[str, dict[str, Any]]]:
        """All accounts owned by a program, as (address, account) pairs."""
        config: dict[str, Any] = {"encoding": "base64", "commitment": commitment}
        if filters:
            config["filters"] = filters
        result = self.call("getProgramAccounts", program_id, config) or []
        return [(item["pubkey"], _decode_account(item["account"])) for item in result]

    def send_transaction(self, wire_base64: str, skip_preflight: bool = False) -> str:
        """Submit a signed transaction. Returns its signature."""
        return self.call(
            "sendTransaction",
            wire_base64,
            {
                "encoding": "base64",
                "skipPreflight": skip_preflight,
                "preflightCommitment": DEFAULT_COMMITMENT,
            },
        )

    def get_signature_statuses(self, signatures: list[str]) -> list[dict[str, Any] | None]:
        result = self.call(
            "getSignatureStatuses", signatures, {"searchTransactionHistory": False}
        )
        return list((result or {}).get("value") or [])

    def get_signatures_for_address(self, address: str, limit: int = 200) -> list[dict[str, Any]]:
        return list(self.call("getSignaturesForAddress", address, {"limit": limit}) or [])

    def get_transaction(self, signature: str) -> dict[str, Any] | None:
        """Parsed transaction with metadata, or None if unknown."""
        return self.call(
            "getTransaction",
            signature,
            {
                "encoding": "jsonParsed",
                "maxSupportedTransactionVersion": 0,
                "commitment": DEFAULT_COMMITMENT,
            },
        )


def _decode_account(value: dict[str, Any]) -> dict[str, Any]:
    data = value.get("data")
    raw = b""
    if isinstance(data, list) and data:
        raw = base64.b64decode(data[0])
    elif isinstance(data, str):
        raw = base64.b64decode(data)
    return {
        "data": raw,
        "owner": value.get("owner", ""),
        "lamports": int(value.get("lamports", 0)),
    }
