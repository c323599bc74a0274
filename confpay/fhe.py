"""
External FHE network client — value encryption and attested decryption.

    POST /encrypt           {"value": "<u64>", "input_type": 4}  -> {"handle": "0x..."}
    POST /attested-decrypt  {"handles": [...], "address": ..., "message": ..., "signature": ...}
                                                                -> {"plaintexts": [...]}

The attested path costs the viewer exactly one signature per batch, no
matter how many handles are resolved.

Zero external dependencies — uses stdlib urllib.request, same as the ledger
RPC client. Blocking calls run in a worker thread so the event loop keeps
ticking while a request is in flight.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Sequence

from confpay import INPUT_TYPE_U64
from confpay.salary.keys import KeyDerivationError, request_signature

logger = logging.getLogger(__name__)

_ATTEST_DOMAIN = "confpay-attested-decrypt-v1"


class FheServiceError(Exception):
    """Error communicating with or returned by the FHE network."""


@dataclass
class Viewer:
    """Identity requesting decryption, plus its optional signing capability."""

    address: str
    signer: Any = None

    @property
    def can_sign(self) -> bool:
        return self.signer is not None and callable(getattr(self.signer, "sign_message", None))


def normalize_handle(handle: str | bytes) -> str:
    """Return a 0x-prefixed lowercase hex handle."""
    if isinstance(handle, (bytes, bytearray)):
        return "0x" + bytes(handle).hex()
    text = handle.strip().lower()
    return text if text.startswith("0x") else "0x" + text


def handle_to_bytes(handle: str) -> bytes:
    """Decode a hex handle (with or without 0x) to bytes."""
    text = handle[2:] if handle.startswith("0x") else handle
    return bytes.fromhex(text)


def attestation_message(handles: Sequence[str], address: str) -> bytes:
    """The message a viewer signs to authorize one decryption batch."""
    digest = hashlib.sha256("\n".join(handles).encode("utf-8")).hexdigest()
    return f"{_ATTEST_DOMAIN}|{address}|{len(handles)}|{digest}".encode("utf-8")


class FheClient:
    """Minimal JSON-over-HTTP client for the FHE network.

    Usage:
        fhe = FheClient.from_env()
        handle = await fhe.encrypt_value(2_500_000_000)
        values = await fhe.attested_decrypt([handle], viewer)
    """

    def __init__(self, url: str, api_key: str = "", timeout: float = 30.0) -> None:
        if not url:
            raise ValueError("FHE service URL cannot be empty")
        self.url = url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    @classmethod
    def from_env(cls) -> FheClient:
        """Create a client from environment variables.

        Reads:
            CONFPAY_FHE_URL      — e.g. https://fhe.example.net/v1
            CONFPAY_FHE_API_KEY  — optional bearer token
        """
        url = os.environ.get("CONFPAY_FHE_URL", "")
        if not url:
            raise FheServiceError(
                "CONFPAY_FHE_URL not set. "
                "Set it to the FHE network endpoint."
            )
        return cls(url, os.environ.get("CONFPAY_FHE_API_KEY", ""))

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON payload and return the decoded JSON body."""
        req = urllib.request.Request(
            f"{self.url}{path}",
            data=json.dumps(payload).encode(),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        if self._api_key:
            req.add_header("Authorization", f"Bearer {self._api_key}")

        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                body = json.loads(resp.read().decode())
        except urllib.error.HTTPError as e:
            raise FheServiceError(f"HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            raise FheServiceError(f"Connection failed: {e.reason}") from e
        except Exception as e:
            raise FheServiceError(f"FHE request failed: {e}") from e

        if not isinstance(body, dict):
            raise FheServiceError("FHE response is not a JSON object")
        if body.get("error"):
            raise FheServiceError(f"FHE error: {body['error']}")
        return body

    async def encrypt_value(self, value: int) -> str:
        """Encrypt an unsigned 64-bit integer. Returns a 0x-hex handle."""
        if value < 0 or value >= 2**64:
            raise ValueError(f"Value out of u64 range: {value}")
        body = await asyncio.to_thread(
            self._post, "/encrypt", {"value": str(value), "input_type": INPUT_TYPE_U64}
        )
        handle = body.get("handle")
        if not isinstance(handle, str) or not handle:
            raise FheServiceError("FHE response missing handle")
        return normalize_handle(handle)

    async def attested_decrypt(
        self, handles: Sequence[str], viewer: Viewer
    ) -> list[int | None]:
        """Decrypt a batch of handles for a viewer with ONE signing prompt.

        Returns one entry per handle, in order; None where the service
        returned nothing usable.
        """
        if not handles:
            return []
        if not viewer.can_sign:
            raise FheServiceError("Viewer cannot sign the attestation request")

        clean = [normalize_handle(h) for h in handles]
        message = attestation_message(clean, viewer.address)
        try:
            signature = await request_signature(viewer.signer, message)
        except KeyDerivationError as e:
            raise FheServiceError(f"Attestation signature unavailable: {e}") from e

        body = await asyncio.to_thread(
            self._post,
            "/attested-decrypt",
            {
                "handles": clean,
                "address": viewer.address,
                "message": message.decode("utf-8"),
                "signature": signature.hex(),
            },
        )
        plaintexts = body.get("plaintexts")
        if not isinstance(plaintexts, list):
            raise FheServiceError("FHE response missing plaintexts")

        results: list[int | None] = []
        for i in range(len(clean)):
            raw = plaintexts[i] if i < len(plaintexts) else None
            try:
                results.append(int(raw) if raw is not None else None)
            except (TypeError, ValueError):
                results.append(None)
        logger.debug("Attested decrypt resolved %d/%d handles",
                     sum(r is not None for r in results), len(clean))
        return results
