"""
Tests for confidential salary primitives.

TestUnits        — display units <-> subunits, exact floor
TestSealedBlocks — AES-GCM roundtrip, wrong key, tampering
TestKeyDerivation — PIN and signature keys, signing capability handling
TestKeySession   — one prompt per wallet, concurrent callers, clear
TestEncryptor    — every path, ceiling handling, degradation
TestDecryptor    — symmetric probing, batched attested path, failure isolation
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from unittest.mock import AsyncMock

import pytest

from confpay import SIGNING_MESSAGE
from confpay._format import EnvelopeReader, EnvelopeWriter, MAX_ENVELOPE_SIZE
from confpay.fhe import Viewer
from confpay.salary.crypto import SealedBlock, open_bytes, open_sealed, seal, seal_bytes
from confpay.salary.decryptor import SalaryDecryptor, parse_block_plaintext, probe_blocks
from confpay.salary.encryptor import EncryptionError, SalaryEncryptor
from confpay.salary.keys import (
    KeyDerivationError,
    KeySession,
    derive_from_pin,
    derive_from_signature,
    request_signature,
)
from confpay.units import from_subunits, parse_positive_subunits, to_subunits

try:
    import cryptography  # noqa: F401
    HAS_CRYPTOGRAPHY = True
except ImportError:
    HAS_CRYPTOGRAPHY = False

requires_cryptography = pytest.mark.skipif(
    not HAS_CRYPTOGRAPHY,
    reason="cryptography not installed (pip install cryptography)",
)

HANDLE = "0x" + "ab" * 32


class FakeWallet:
    """Deterministic signing capability that counts prompts."""

    def __init__(self, address: str = "Employer1111", reject: bool = False) -> None:
        self.address = address
        self.reject = reject
        self.prompts = 0

    async def sign_message(self, message: bytes) -> bytes:
        self.prompts += 1
        await asyncio.sleep(0)
        if self.reject:
            raise RuntimeError("User rejected the request")
        return hashlib.sha512(self.address.encode() + message).digest()


def make_fhe(handle: str = HANDLE, plaintexts=None) -> AsyncMock:
    fhe = AsyncMock()
    fhe.encrypt_value.return_value = handle
    fhe.attested_decrypt.return_value = plaintexts if plaintexts is not None else []
    return fhe


# ---------------------------------------------------------------------------
# TestUnits
# ---------------------------------------------------------------------------

class TestUnits:

    def test_to_subunits_exact(self):
        assert to_subunits(2.5) == 2_500_000_000
        assert to_subunits(0.1) == 100_000_000
        assert to_subunits("1") == 1_000_000_000

    def test_to_subunits_floors(self):
        assert to_subunits("1.9999999999") == 1_999_999_999

    def test_to_subunits_rejects(self):
        with pytest.raises(ValueError):
            to_subunits(-1)
        with pytest.raises(ValueError):
            to_subunits("abc")
        with pytest.raises(ValueError):
            to_subunits(float("nan"))

    def test_from_subunits(self):
        assert from_subunits(1_500_000_000) == 1.5

    def test_parse_positive_subunits(self):
        assert parse_positive_subunits(2_500_000_000) == 2_500_000_000
        assert parse_positive_subunits("42") == 42
        assert parse_positive_subunits(0) is None
        assert parse_positive_subunits(-5) is None
        assert parse_positive_subunits("nope") is None
        assert parse_positive_subunits(None) is None
        assert parse_positive_subunits(True) is None


# ---------------------------------------------------------------------------
# TestSealedBlocks
# ---------------------------------------------------------------------------

@requires_cryptography
class TestSealedBlocks:

    def test_roundtrip(self):
        key = b"k" * 32
        block = seal(b"2500000000", key)
        assert len(block.nonce) == 12
        assert open_sealed(block, key) == b"2500000000"

    def test_block_layout(self):
        data = seal_bytes(b"12345", b"k" * 32)
        assert len(data) == 12 + 5 + 16
        assert SealedBlock.from_bytes(data).to_bytes() == data

    def test_wrong_key(self):
        data = seal_bytes(b"12345", b"k" * 32)
        with pytest.raises(ValueError):
            open_bytes(data, b"j" * 32)

    def test_tampered(self):
        data = bytearray(seal_bytes(b"12345", b"k" * 32))
        data[-1] ^= 0x01
        with pytest.raises(ValueError):
            open_bytes(bytes(data), b"k" * 32)

    def test_short_block(self):
        with pytest.raises(ValueError):
            open_bytes(b"\x00" * 27, b"k" * 32)

    def test_bad_key_size(self):
        with pytest.raises(ValueError):
            seal(b"x", b"short")

    def test_fresh_nonce(self):
        key = b"k" * 32
        assert seal_bytes(b"same", key) != seal_bytes(b"same", key)


# ---------------------------------------------------------------------------
# TestKeyDerivation
# ---------------------------------------------------------------------------

class TestKeyDerivation:

    def test_pin_key_is_sha256(self):
        key = derive_from_pin("4321")
        assert key.material == hashlib.sha256(b"4321").digest()
        assert key.source == "pin"

    def test_pin_key_deterministic(self):
        assert derive_from_pin("1234") == derive_from_pin("1234")
        assert derive_from_pin("1234") != derive_from_pin("1235")

    def test_empty_pin(self):
        with pytest.raises(KeyDerivationError):
            derive_from_pin("")
        with pytest.raises(KeyDerivationError):
            derive_from_pin(None)

    def test_signature_key(self):
        key = derive_from_signature(b"\x01" * 64)
        assert key.material == hashlib.sha256(b"\x01" * 64).digest()
        assert key.source == "wallet"

    def test_repr_hides_material(self):
        assert "material" not in repr(derive_from_pin("1234"))

    @pytest.mark.asyncio
    async def test_request_signature_async(self):
        wallet = FakeWallet()
        sig = await request_signature(wallet, b"msg")
        assert len(sig) == 64

    @pytest.mark.asyncio
    async def test_request_signature_sync(self):
        class SyncWallet:
            address = "sync"

            def sign_message(self, message):
                return b"\x02" * 64

        assert await request_signature(SyncWallet(), b"msg") == b"\x02" * 64

    @pytest.mark.asyncio
    async def test_request_signature_rejected(self):
        with pytest.raises(KeyDerivationError):
            await request_signature(FakeWallet(reject=True), b"msg")

    @pytest.mark.asyncio
    async def test_request_signature_incapable(self):
        with pytest.raises(KeyDerivationError):
            await request_signature(object(), b"msg")


# ---------------------------------------------------------------------------
# TestKeySession
# ---------------------------------------------------------------------------

class TestKeySession:

    @pytest.mark.asyncio
    async def test_signs_constant_message_once(self):
        wallet = FakeWallet()
        session = KeySession()
        first = await session.wallet_key(wallet)
        second = await session.wallet_key(wallet)
        assert first is second
        assert wallet.prompts == 1
        expected = hashlib.sha512(wallet.address.encode() + SIGNING_MESSAGE.encode()).digest()
        assert first.material == hashlib.sha256(expected).digest()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_prompt(self):
        wallet = FakeWallet()
        session = KeySession()
        keys = await asyncio.gather(*(session.wallet_key(wallet) for _ in range(5)))
        assert wallet.prompts == 1
        assert all(k == keys[0] for k in keys)

    @pytest.mark.asyncio
    async def test_keys_per_wallet(self):
        session = KeySession()
        a = await session.wallet_key(FakeWallet("A"))
        b = await session.wallet_key(FakeWallet("B"))
        assert a != b

    @pytest.mark.asyncio
    async def test_clear(self):
        wallet = FakeWallet()
        session = KeySession()
        await session.wallet_key(wallet)
        session.clear()
        assert session.cached(wallet) is None
        await session.wallet_key(wallet)
        assert wallet.prompts == 2

    @pytest.mark.asyncio
    async def test_rejection_not_cached(self):
        wallet = FakeWallet(reject=True)
        session = KeySession()
        with pytest.raises(KeyDerivationError):
            await session.wallet_key(wallet)
        assert session.cached(wallet) is None


# ---------------------------------------------------------------------------
# TestEncryptor
# ---------------------------------------------------------------------------

@requires_cryptography
class TestEncryptor:

    @pytest.mark.asyncio
    async def test_all_paths(self):
        fhe = make_fhe()
        wallet = FakeWallet()
        enc = SalaryEncryptor(fhe=fhe)
        out = await enc.encrypt(2.5, "Worker111", pin="4321", wallet=wallet)

        fhe.encrypt_value.assert_awaited_once_with(2_500_000_000)
        env = EnvelopeReader.unpack(out.ciphertext)
        assert env.is_envelope
        assert env.block_count == 2
        assert env.external_blob == bytes.fromhex("ab" * 32)
        assert out.input_type == 4
        assert len(out.ciphertext) <= MAX_ENVELOPE_SIZE

    @pytest.mark.asyncio
    async def test_block_plaintext_is_subunits(self):
        enc = SalaryEncryptor()
        out = await enc.encrypt(1.25, "Worker111", pin="9999")
        block = EnvelopeReader.unpack(out.ciphertext).blocks[0]
        assert open_bytes(block, derive_from_pin("9999").material) == b"1250000000"

    @pytest.mark.asyncio
    async def test_external_dropped_over_ceiling(self, caplog):
        fhe = make_fhe(handle="0x" + "cd" * 250)
        enc = SalaryEncryptor(fhe=fhe)
        with caplog.at_level(logging.WARNING):
            out = await enc.encrypt(1, "Worker111", pin="1111", wallet=FakeWallet())
        env = EnvelopeReader.unpack(out.ciphertext)
        assert env.block_count == 2
        assert env.external_blob == b""
        assert "dropping external handle" in caplog.text

    @pytest.mark.asyncio
    async def test_fhe_failure_degrades(self):
        fhe = make_fhe()
        fhe.encrypt_value.side_effect = RuntimeError("network down")
        enc = SalaryEncryptor(fhe=fhe)
        out = await enc.encrypt(3, "Worker111", pin="1111")
        env = EnvelopeReader.unpack(out.ciphertext)
        assert env.block_count == 1
        assert not env.has_external

    @pytest.mark.asyncio
    async def test_wallet_rejection_degrades(self):
        enc = SalaryEncryptor()
        out = await enc.encrypt(3, "Worker111", pin="1111", wallet=FakeWallet(reject=True))
        assert EnvelopeReader.unpack(out.ciphertext).block_count == 1

    @pytest.mark.asyncio
    async def test_external_only_is_raw(self):
        enc = SalaryEncryptor(fhe=make_fhe())
        out = await enc.encrypt(3, "Worker111")
        assert out.ciphertext == bytes.fromhex("ab" * 32)
        assert not EnvelopeReader.is_envelope(out.ciphertext)

    @pytest.mark.asyncio
    async def test_external_only_over_ceiling(self):
        enc = SalaryEncryptor(fhe=make_fhe(handle="0x" + "cd" * 300))
        with pytest.raises(EncryptionError):
            await enc.encrypt(3, "Worker111")

    @pytest.mark.asyncio
    async def test_nothing_available(self):
        with pytest.raises(EncryptionError):
            await SalaryEncryptor().encrypt(3, "Worker111")

    @pytest.mark.asyncio
    async def test_negative_amount(self):
        with pytest.raises(EncryptionError):
            await SalaryEncryptor().encrypt(-1, "Worker111", pin="1111")


# ---------------------------------------------------------------------------
# TestDecryptor
# ---------------------------------------------------------------------------

@requires_cryptography
class TestDecryptor:

    def test_parse_block_plaintext(self):
        assert parse_block_plaintext("2500000000") == 2.5
        assert parse_block_plaintext("2.5") == 2.5
        assert parse_block_plaintext("") is None
        assert parse_block_plaintext("garbage") is None

    def test_legacy_whole_number_reads_as_subunits(self):
        # Only legacy amounts with a fraction are distinguishable from subunits
        assert parse_block_plaintext("2") == 2e-9
        assert parse_block_plaintext("2.0") == 2.0
        assert parse_block_plaintext("1e1") == 10.0

    def test_probe_blocks_wrong_key_silent(self):
        blocks = [seal_bytes(b"1000000000", derive_from_pin("1111").material)]
        assert probe_blocks(blocks, [derive_from_pin("2222")]) is None
        assert probe_blocks(blocks, [derive_from_pin("2222"), derive_from_pin("1111")]) == 1.0

    @pytest.mark.asyncio
    async def test_pin_roundtrip(self):
        out = await SalaryEncryptor().encrypt(2.5, "W", pin="4321")
        assert await SalaryDecryptor().decrypt(out.ciphertext, pin="4321") == 2.5

    @pytest.mark.asyncio
    async def test_wallet_roundtrip(self):
        wallet = FakeWallet()
        session = KeySession()
        out = await SalaryEncryptor(session=session).encrypt(7, "W", wallet=wallet)
        dec = SalaryDecryptor(session=session)
        assert await dec.decrypt(out.ciphertext, Viewer(wallet.address, wallet)) == 7.0
        assert wallet.prompts == 1

    @pytest.mark.asyncio
    async def test_wrong_pin_is_none(self):
        out = await SalaryEncryptor().encrypt(2.5, "W", pin="4321")
        assert await SalaryDecryptor().decrypt(out.ciphertext, pin="0000") is None

    @pytest.mark.asyncio
    async def test_legacy_display_unit_block(self):
        block = seal_bytes(b"2.5", derive_from_pin("4321").material)
        envelope = EnvelopeWriter.pack([block])
        assert await SalaryDecryptor().decrypt(envelope, pin="4321") == 2.5

    @pytest.mark.asyncio
    async def test_batch_single_attested_call(self):
        fhe = make_fhe(plaintexts=[1_000_000_000, 3_000_000_000])
        wallet = FakeWallet()
        viewer = Viewer(wallet.address, wallet)
        pin_only = (await SalaryEncryptor().encrypt(2, "W", pin="1111")).ciphertext
        external_env = EnvelopeWriter.pack([], bytes.fromhex("01" * 32))
        raw = bytes.fromhex("02" * 32)

        dec = SalaryDecryptor(fhe=fhe)
        results = await dec.decrypt_batch([pin_only, external_env, None, raw], viewer, pin="1111")

        assert results == [2.0, 1.0, None, 3.0]
        fhe.attested_decrypt.assert_awaited_once()
        handles, passed_viewer = fhe.attested_decrypt.await_args.args
        assert handles == ["0x" + "01" * 32, "0x" + "02" * 32]
        assert passed_viewer is viewer

    @pytest.mark.asyncio
    async def test_symmetric_hit_skips_external(self):
        fhe = make_fhe()
        wallet = FakeWallet()
        out = await SalaryEncryptor(fhe=fhe).encrypt(5, "W", pin="1111")
        dec = SalaryDecryptor(fhe=fhe)
        assert await dec.decrypt(out.ciphertext, Viewer(wallet.address, wallet), "1111") == 5.0
        fhe.attested_decrypt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_external_failure_keeps_symmetric(self):
        fhe = make_fhe()
        fhe.attested_decrypt.side_effect = RuntimeError("service unavailable")
        wallet = FakeWallet()
        pin_only = (await SalaryEncryptor().encrypt(4, "W", pin="1111")).ciphertext
        raw = bytes.fromhex("02" * 32)

        dec = SalaryDecryptor(fhe=fhe)
        results = await dec.decrypt_batch([pin_only, raw], Viewer(wallet.address, wallet), "1111")
        assert results == [4.0, None]

    @pytest.mark.asyncio
    async def test_non_positive_external_is_none(self):
        fhe = make_fhe(plaintexts=[0, "abc", -3])
        wallet = FakeWallet()
        items = [bytes([i]) * 32 for i in range(1, 4)]
        results = await SalaryDecryptor(fhe=fhe).decrypt_batch(items, Viewer(wallet.address, wallet))
        assert results == [None, None, None]

    @pytest.mark.asyncio
    async def test_no_keys_no_viewer(self):
        fhe = make_fhe()
        out = (await SalaryEncryptor(fhe=fhe).encrypt(5, "W", pin="1111")).ciphertext
        results = await SalaryDecryptor(fhe=fhe).decrypt_batch([out])
        assert results == [None]
        fhe.attested_decrypt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_wallet_falls_back_to_pin(self):
        out = (await SalaryEncryptor().encrypt(6, "W", pin="1111")).ciphertext
        wallet = FakeWallet(reject=True)
        dec = SalaryDecryptor()
        assert await dec.decrypt(out, Viewer(wallet.address, wallet), "1111") == 6.0

    @pytest.mark.asyncio
    async def test_truncated_envelope_partial_recovery(self):
        block = seal_bytes(b"1000000000", derive_from_pin("1111").material)
        data = EnvelopeWriter.pack([block])
        # Claim a second block that is not there
        data = data[:4] + b"\x02" + data[5:] + b"\x30"
        assert await SalaryDecryptor().decrypt(data, pin="1111") == 1.0
