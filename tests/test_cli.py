"""
Tests for the command line — local-only commands (no ledger access).
"""

from __future__ import annotations

import json
import sys

import pytest

from confpay.cli import main
from confpay.guard import GuardStore

try:
    import cryptography  # noqa: F401
    HAS_CRYPTOGRAPHY = True
except ImportError:
    HAS_CRYPTOGRAPHY = False

requires_cryptography = pytest.mark.skipif(
    not HAS_CRYPTOGRAPHY,
    reason="cryptography not installed (pip install cryptography)",
)

RECIPIENT = "11111111111111111111111111111111"


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Isolated CONFPAY_HOME with no FHE service configured."""
    monkeypatch.setenv("CONFPAY_HOME", str(tmp_path))
    monkeypatch.delenv("CONFPAY_FHE_URL", raising=False)
    return tmp_path


def run(monkeypatch, *argv: str) -> None:
    monkeypatch.setattr(sys, "argv", ["confpay", *argv])
    main()


class TestCli:

    def test_no_command(self, home, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch)
        assert exc.value.code == 0
        assert "Usage:" in capsys.readouterr().out

    @requires_cryptography
    def test_keygen(self, home, monkeypatch, capsys):
        run(monkeypatch, "keygen")
        key = json.loads((home / "id.json").read_text())
        assert len(key) == 64
        assert "address:" in capsys.readouterr().out

        with pytest.raises(SystemExit) as exc:
            run(monkeypatch, "keygen")
        assert exc.value.code == 1
        assert "already exists" in capsys.readouterr().err

    @requires_cryptography
    def test_keygen_bot(self, home, monkeypatch):
        run(monkeypatch, "keygen", "--bot")
        assert (home / "bot_key.json").is_file()
        assert not (home / "id.json").exists()

    @requires_cryptography
    def test_encrypt_decrypt_with_pin(self, home, monkeypatch, capsys):
        run(monkeypatch, "encrypt", "2.5", "--recipient", RECIPIENT, "--pin", "4321", "--no-wallet")
        envelope = capsys.readouterr().out.strip()
        assert envelope.startswith("cafebabe01")

        run(monkeypatch, "decrypt", envelope, "--pin", "4321", "--no-wallet")
        assert capsys.readouterr().out.strip() == "2.5"

    @requires_cryptography
    def test_decrypt_wrong_pin(self, home, monkeypatch, capsys):
        run(monkeypatch, "encrypt", "1", "--recipient", RECIPIENT, "--pin", "1111", "--no-wallet")
        envelope = capsys.readouterr().out.strip()
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch, "decrypt", envelope, "--pin", "2222", "--no-wallet")
        assert exc.value.code == 1

    def test_encrypt_without_any_key(self, home, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch, "encrypt", "1", "--recipient", RECIPIENT, "--no-wallet")
        assert exc.value.code == 1
        assert "Encryption failed" in capsys.readouterr().err

    def test_missing_key_file(self, home, monkeypatch, capsys):
        with pytest.raises(SystemExit):
            run(monkeypatch, "decrypt", "cafebabe00")
        assert "confpay keygen" in capsys.readouterr().err

    def test_autopay_toggle(self, home, monkeypatch):
        run(monkeypatch, "autopay", "enable")
        assert GuardStore(home / "guard.json").autopay_enabled
        run(monkeypatch, "autopay", "disable")
        assert not GuardStore(home / "guard.json").autopay_enabled

    def test_autopay_run_requires_enable(self, home, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            run(monkeypatch, "autopay", "run")
        assert exc.value.code == 1
        assert "disabled" in capsys.readouterr().err

    def test_history_clear(self, home, monkeypatch):
        run(monkeypatch, "history", "clear")
        assert GuardStore(home / "guard.json").history_cleared_at is not None
