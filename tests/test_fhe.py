"""
Tests for the FHE network client — handles, attestation, batched decryption.

All tests use a patched transport — no FHE service required.
"""

from __future__ import annotations

import hashlib
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from confpay.fhe import (
    FheClient,
    FheServiceError,
    Viewer,
    attestation_message,
    handle_to_bytes,
    normalize_handle,
)


class CountingSigner:
    def __init__(self, reject: bool = False) -> None:
        self.reject = reject
        self.messages: list[bytes] = []

    async def sign_message(self, message: bytes) -> bytes:
        self.messages.append(message)
        if self.reject:
            raise RuntimeError("User rejected the request")
        return hashlib.sha512(message).digest()


def _response(payload: dict) -> MagicMock:
    resp = MagicMock()
    resp.read.return_value = json.dumps(payload).encode()
    cm = MagicMock()
    cm.__enter__.return_value = resp
    cm.__exit__.return_value = False
    return cm


@pytest.fixture
def client():
    return FheClient("https://fhe.test/v1/", api_key="secret")


# ---------------------------------------------------------------------------
# TestHandles
# ---------------------------------------------------------------------------

class TestHandles:

    def test_normalize(self):
        assert normalize_handle("ABCD") == "0xabcd"
        assert normalize_handle(" 0xAbCd ") == "0xabcd"
        assert normalize_handle(b"\x01\x02") == "0x0102"

    def test_to_bytes(self):
        assert handle_to_bytes("0x0102") == b"\x01\x02"
        assert handle_to_bytes("ff") == b"\xff"

    def test_attestation_message_binds_batch(self):
        a = attestation_message(["0x01", "0x02"], "viewer")
        assert a.startswith(b"confpay-attested-decrypt-v1|viewer|2|")
        assert a != attestation_message(["0x02", "0x01"], "viewer")
        assert a != attestation_message(["0x01", "0x02"], "other")


# ---------------------------------------------------------------------------
# TestFheClient
# ---------------------------------------------------------------------------

class TestFheClient:

    def test_from_env_requires_url(self, monkeypatch):
        monkeypatch.delenv("CONFPAY_FHE_URL", raising=False)
        with pytest.raises(FheServiceError):
            FheClient.from_env()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CONFPAY_FHE_URL", "https://fhe.test")
        assert FheClient.from_env().url == "https://fhe.test"

    @pytest.mark.asyncio
    async def test_encrypt_value(self, client):
        with patch("urllib.request.urlopen", return_value=_response({"handle": "ABCD"})) as op:
            assert await client.encrypt_value(2_500_000_000) == "0xabcd"
        req = op.call_args.args[0]
        assert req.full_url == "https://fhe.test/v1/encrypt"
        assert req.get_header("Authorization") == "Bearer secret"
        assert json.loads(req.data) == {"value": "2500000000", "input_type": 4}

    @pytest.mark.asyncio
    async def test_encrypt_out_of_range(self, client):
        with pytest.raises(ValueError):
            await client.encrypt_value(2**64)

    @pytest.mark.asyncio
    async def test_encrypt_missing_handle(self, client):
        with patch("urllib.request.urlopen", return_value=_response({})):
            with pytest.raises(FheServiceError):
                await client.encrypt_value(1)

    @pytest.mark.asyncio
    async def test_http_error(self, client):
        err = urllib.error.HTTPError("https://fhe.test", 503, "Unavailable", {}, None)
        with patch("urllib.request.urlopen", side_effect=err):
            with pytest.raises(FheServiceError, match="503"):
                await client.encrypt_value(1)

    @pytest.mark.asyncio
    async def test_attested_decrypt_one_signature(self, client):
        signer = CountingSigner()
        viewer = Viewer("viewer-addr", signer)
        payload = {"plaintexts": ["1000", None, "bogus"]}
        with patch("urllib.request.urlopen", return_value=_response(payload)) as op:
            results = await client.attested_decrypt(["0xAA", "bb", "0xcc"], viewer)

        assert results == [1000, None, None]
        assert len(signer.messages) == 1
        body = json.loads(op.call_args.args[0].data)
        assert body["handles"] == ["0xaa", "0xbb", "0xcc"]
        assert body["address"] == "viewer-addr"
        assert body["message"].encode() == signer.messages[0]
        assert body["signature"] == hashlib.sha512(signer.messages[0]).hexdigest()

    @pytest.mark.asyncio
    async def test_short_plaintext_list_padded(self, client):
        viewer = Viewer("v", CountingSigner())
        with patch("urllib.request.urlopen", return_value=_response({"plaintexts": [5]})):
            assert await client.attested_decrypt(["0x01", "0x02"], viewer) == [5, None]

    @pytest.mark.asyncio
    async def test_empty_batch_no_prompt(self, client):
        signer = CountingSigner()
        assert await client.attested_decrypt([], Viewer("v", signer)) == []
        assert signer.messages == []

    @pytest.mark.asyncio
    async def test_viewer_without_signer(self, client):
        with pytest.raises(FheServiceError):
            await client.attested_decrypt(["0x01"], Viewer("v"))

    @pytest.mark.asyncio
    async def test_rejected_signature(self, client):
        with patch("urllib.request.urlopen") as op:
            with pytest.raises(FheServiceError):
                await client.attested_decrypt(["0x01"], Viewer("v", CountingSigner(reject=True)))
        op.assert_not_called()
