"""
ConfPay CLI — confidential payroll on a public ledger.

Commands:
  confpay keygen          - Create a signing key (employer or autopay bot)
  confpay register        - Register the employer's payroll account
  confpay worker add      - Enroll a worker with an encrypted salary
  confpay worker update   - Change a worker's terms (re-encrypts if salary given)
  confpay worker remove   - Remove a worker
  confpay worker list     - List workers (--reveal decrypts salaries)
  confpay encrypt         - Encrypt an amount into an envelope (hex)
  confpay decrypt         - Decrypt an envelope (hex)
  confpay pay             - Pay a worker now (same guards as autopay)
  confpay autopay run     - Run the autopay bot in the foreground
  confpay autopay enable  - Mark autopay enabled
  confpay autopay disable - Mark autopay disabled
  confpay history         - Show payment history
  confpay history clear   - Hide history up to now
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

KEY_FILENAME = "id.json"
BOT_KEY_FILENAME = "bot_key.json"
GUARD_FILENAME = "guard.json"


def _setup_logging(args: argparse.Namespace) -> None:
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _add_ledger_args(parser: argparse.ArgumentParser) -> None:
    """Add common ledger flags to a subparser."""
    parser.add_argument("--rpc-url", help="Ledger RPC URL (or set CONFPAY_RPC_URL)")
    parser.add_argument("--program-id", help="Payroll program id (or set CONFPAY_PROGRAM_ID)")
    parser.add_argument("--keypair", help="Signing key file (default: $CONFPAY_HOME/id.json)")


def _home() -> Path:
    from confpay.guard import default_home

    return default_home()


def _get_rpc(args: argparse.Namespace):
    from confpay.ledger.rpc import SolanaRPC

    url = getattr(args, "rpc_url", None)
    return SolanaRPC(url) if url else SolanaRPC.from_env()


def _get_program(args: argparse.Namespace, rpc=None):
    from confpay.ledger.program import PayrollProgram

    return PayrollProgram(rpc or _get_rpc(args), getattr(args, "program_id", None))


def _load_keypair(path: str | None, default_name: str = KEY_FILENAME):
    from confpay.ledger.keys import Keypair

    key_path = Path(path) if path else _home() / default_name
    if not key_path.is_file():
        print(
            f"Error: Key file not found: {key_path}. Run 'confpay keygen' first.",
            file=sys.stderr,
        )
        sys.exit(1)
    try:
        return Keypair.load(key_path)
    except (ValueError, OSError) as e:
        print(f"Error: Invalid key file {key_path}: {e}", file=sys.stderr)
        sys.exit(1)


def _get_guard():
    from confpay.guard import GuardStore

    return GuardStore(_home() / GUARD_FILENAME)


def _get_fhe():
    """FHE client if configured, else None (symmetric paths only)."""
    from confpay.fhe import FheClient

    if not os.environ.get("CONFPAY_FHE_URL"):
        return None
    return FheClient.from_env()


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        print(f"Error: Invalid date (use ISO 8601): {value}", file=sys.stderr)
        sys.exit(1)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_hex(value: str) -> bytes:
    text = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        print("Error: Ciphertext must be hex", file=sys.stderr)
        sys.exit(1)


def _encrypt_salary(amount: float, worker: str, pin: str, employer) -> bytes:
    from confpay.salary.encryptor import EncryptionError, SalaryEncryptor

    encryptor = SalaryEncryptor(fhe=_get_fhe())
    try:
        result = asyncio.run(encryptor.encrypt(amount, worker, pin=pin, wallet=employer))
    except EncryptionError as e:
        print(f"Error: Encryption failed: {e}", file=sys.stderr)
        sys.exit(1)
    return result.ciphertext


def _load_workers(args: argparse.Namespace, employer: str, program=None):
    from confpay.ledger.rpc import LedgerRPCError
    from confpay.roster import Worker
    from confpay.schedule import utcnow

    program = program or _get_program(args)
    now = utcnow()
    try:
        records = program.fetch_all_workers(employer)
    except LedgerRPCError as e:
        print(f"Error: Cannot load workers: {e}", file=sys.stderr)
        sys.exit(1)
    return [Worker.from_record(r, now) for r in records]


def _format_amount(amount: float | None) -> str:
    return "confidential" if amount is None else f"{amount:.9f}".rstrip("0").rstrip(".")


# -- commands --------------------------------------------------------------


def cmd_keygen(args: argparse.Namespace) -> None:
    """Create a signing key file. Refuses to overwrite without --force."""
    from confpay.ledger.keys import Keypair

    default_name = BOT_KEY_FILENAME if args.bot else KEY_FILENAME
    path = Path(args.output) if args.output else _home() / default_name
    if path.exists() and not args.force:
        print(f"Error: {path} already exists (use --force to replace)", file=sys.stderr)
        sys.exit(1)
    kp = Keypair.generate()
    kp.save(path)
    print(f"Created {'bot ' if args.bot else ''}key: {path}")
    print(f"  address: {kp.address}")
    if args.bot:
        print("  Fund this address; autopay transfers are paid from it.")


def cmd_register(args: argparse.Namespace) -> None:
    """Register the employer's payroll account."""
    from confpay.ledger.transfer import LedgerTransferError

    kp = _load_keypair(args.keypair)
    program = _get_program(args)
    if program.is_registered(kp.address):
        print(f"Payroll already registered for {kp.address}")
        return
    try:
        sig = program.initialize_payroll(kp, args.company)
    except LedgerTransferError as e:
        print(f"Error: Registration failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Registered payroll for {args.company}")
    print(f"  payroll: {program.payroll_address(kp.address)}")
    print(f"  tx:      {sig}")


def cmd_worker_add(args: argparse.Namespace) -> None:
    """Enroll a worker; the salary never leaves this machine in plaintext."""
    from confpay.ledger.keys import is_valid_address
    from confpay.ledger.program import WorkerTerms
    from confpay.ledger.transfer import LedgerTransferError
    from confpay.schedule import initial_due, parse_schedule, utcnow

    if not is_valid_address(args.address):
        print(f"Error: Invalid worker address: {args.address}", file=sys.stderr)
        sys.exit(1)
    try:
        kind = parse_schedule(args.schedule)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    kp = _load_keypair(args.keypair)
    ciphertext = _encrypt_salary(args.salary, args.address, args.pin, kp)
    terms = WorkerTerms(
        name=args.name,
        role=args.role or "",
        ciphertext=ciphertext,
        pin=args.pin,
        schedule=kind.value,
        next_payment_at=initial_due(kind, utcnow(), _parse_date(args.date)),
    )

    try:
        sig = _get_program(args).add_worker(kp, args.address, terms)
    except LedgerTransferError as e:
        print(f"Error: Adding worker failed: {e}", file=sys.stderr)
        sys.exit(1)

    _get_guard().cache_salary(args.address, args.salary)
    print(f"Added {args.name} ({args.address})")
    print(f"  schedule: {kind.value}, first payment {terms.next_payment_at.isoformat()}")
    print(f"  envelope: {len(ciphertext)} bytes")
    print(f"  tx:       {sig}")


def cmd_worker_update(args: argparse.Namespace) -> None:
    """Change a worker's terms. Unspecified fields keep their ledger values."""
    from confpay.ledger.program import WorkerTerms
    from confpay.ledger.transfer import LedgerTransferError
    from confpay.schedule import initial_due, parse_schedule, utcnow

    kp = _load_keypair(args.keypair)
    program = _get_program(args)
    record = program.fetch_worker(kp.address, args.address)
    if record is None:
        print(f"Error: No worker {args.address} on this payroll", file=sys.stderr)
        sys.exit(1)

    now = utcnow()
    pin = args.pin or record.pin
    ciphertext = record.ciphertext
    if args.salary is not None:
        ciphertext = _encrypt_salary(args.salary, args.address, pin, kp)

    next_payment_at = record.next_due_at(now)
    schedule = record.schedule
    if args.schedule:
        try:
            kind = parse_schedule(args.schedule)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        schedule = kind.value
        next_payment_at = initial_due(kind, now, _parse_date(args.date))
    elif args.date:
        next_payment_at = _parse_date(args.date)

    terms = WorkerTerms(
        name=args.name or record.name,
        role=args.role if args.role is not None else record.role,
        ciphertext=ciphertext,
        pin=pin,
        schedule=schedule,
        next_payment_at=next_payment_at,
        input_type=record.input_type,
    )
    try:
        sig = program.update_worker(kp, args.address, terms)
    except LedgerTransferError as e:
        print(f"Error: Update failed: {e}", file=sys.stderr)
        sys.exit(1)

    if args.salary is not None:
        _get_guard().cache_salary(args.address, args.salary)
    print(f"Updated {terms.name} ({args.address})")
    print(f"  tx: {sig}")


def cmd_worker_remove(args: argparse.Namespace) -> None:
    """Remove a worker and forget its local state."""
    from confpay.ledger.transfer import LedgerTransferError

    kp = _load_keypair(args.keypair)
    try:
        sig = _get_program(args).remove_worker(kp, args.address)
    except LedgerTransferError as e:
        print(f"Error: Remove failed: {e}", file=sys.stderr)
        sys.exit(1)
    _get_guard().forget(args.address)
    print(f"Removed {args.address}")
    print(f"  tx: {sig}")


def cmd_worker_list(args: argparse.Namespace) -> None:
    """List workers; --reveal batch-decrypts every salary (one signing prompt)."""
    from confpay.fhe import Viewer
    from confpay.roster import reveal_amounts
    from confpay.salary.decryptor import SalaryDecryptor
    from confpay.schedule import utcnow

    kp = _load_keypair(args.keypair)
    workers = _load_workers(args, kp.address)
    guard = _get_guard()

    if args.reveal:
        decryptor = SalaryDecryptor(fhe=_get_fhe())
        asyncio.run(reveal_amounts(workers, decryptor, Viewer(kp.address, kp), args.pin, guard))
    else:
        for w in workers:
            w.amount = guard.cached_salary(w.address)

    if not workers:
        print("No workers enrolled.")
        return

    now = utcnow()
    print(f"{'NAME':<20} {'ADDRESS':<44} {'SALARY':>14} {'SCHEDULE':<10} NEXT PAYMENT")
    for w in sorted(workers, key=lambda w: w.next_due_at):
        due = " (due)" if w.is_due(now) else ""
        print(
            f"{w.name[:20]:<20} {w.address:<44} {_format_amount(w.amount):>14} "
            f"{w.schedule.value:<10} {w.next_due_at.strftime('%Y-%m-%d %H:%M')}{due}"
        )
    print(f"\n{len(workers)} worker(s)")


def cmd_encrypt(args: argparse.Namespace) -> None:
    """Encrypt an amount for a recipient and print the envelope as hex."""
    wallet = None if args.no_wallet else _load_keypair(args.keypair)
    ciphertext = _encrypt_salary(args.amount, args.recipient, args.pin, wallet)
    print(ciphertext.hex())


def cmd_decrypt(args: argparse.Namespace) -> None:
    """Decrypt a hex envelope with the PIN and/or this key's wallet key."""
    from confpay.fhe import Viewer
    from confpay.salary.decryptor import SalaryDecryptor

    viewer = None
    if not args.no_wallet:
        kp = _load_keypair(args.keypair)
        viewer = Viewer(kp.address, kp)
    decryptor = SalaryDecryptor(fhe=_get_fhe())
    amount = asyncio.run(decryptor.decrypt(_parse_hex(args.ciphertext), viewer, args.pin))
    if amount is None:
        print("Error: No available key could decrypt this envelope", file=sys.stderr)
        sys.exit(1)
    print(_format_amount(amount))


def cmd_pay(args: argparse.Namespace) -> None:
    """Pay a worker now, honoring the same guards as autopay."""
    from confpay.ledger.gateway import LedgerGateway
    from confpay.payments import LedgerTransferError, PaymentBlocked, PaymentService

    kp = _load_keypair(args.keypair)
    rpc = _get_rpc(args)
    program = _get_program(args, rpc)
    workers = {w.address: w for w in _load_workers(args, kp.address, program)}
    worker = workers.get(args.address)
    if worker is None:
        print(f"Error: No worker {args.address} on this payroll", file=sys.stderr)
        sys.exit(1)

    service = PaymentService(LedgerGateway(rpc, kp, program=program), _get_guard())
    try:
        outcome = asyncio.run(service.pay_now(worker, args.amount, force=args.force))
    except PaymentBlocked as e:
        print(f"Error: {e} (use --force to override)", file=sys.stderr)
        sys.exit(1)
    except (ValueError, LedgerTransferError) as e:
        print(f"Error: Payment failed: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Paid {_format_amount(outcome.amount)} to {worker.name} ({worker.address})")
    print(f"  tx: {outcome.signature}")
    if outcome.recorded:
        print(f"  next payment: {worker.next_due_at.isoformat()}")
    else:
        print(f"  WARNING: ledger record not updated: {outcome.record_error}")


def cmd_autopay_run(args: argparse.Namespace) -> None:
    """Run the autopay bot in the foreground (Ctrl-C to stop)."""
    from confpay.autopay import AutopayBot
    from confpay.ledger.gateway import LedgerGateway
    from confpay.payments import PaymentService

    logging.getLogger("confpay").setLevel(logging.DEBUG if args.verbose else logging.INFO)
    guard = _get_guard()
    if not args.once and not guard.autopay_enabled:
        print("Error: Autopay is disabled. Run 'confpay autopay enable' first.", file=sys.stderr)
        sys.exit(1)

    employer = _load_keypair(args.keypair)
    signer = employer
    if args.bot_key or (_home() / BOT_KEY_FILENAME).is_file():
        signer = _load_keypair(args.bot_key, BOT_KEY_FILENAME)
    rpc = _get_rpc(args)
    gateway = LedgerGateway(rpc, signer, employer=employer.address,
                            program=_get_program(args, rpc))
    bot = AutopayBot(gateway, PaymentService(gateway, guard), interval=args.interval)

    if args.once:
        report = asyncio.run(bot.tick())
        print(report.status if report else bot.status)
        return

    async def _forever() -> None:
        bot.start()
        try:
            await asyncio.Event().wait()
        finally:
            await bot.stop()

    print(f"Autopay running for {employer.address} (signer {signer.address})")
    try:
        asyncio.run(_forever())
    except KeyboardInterrupt:
        print("\nShutting down...")


def cmd_autopay_enable(args: argparse.Namespace) -> None:
    _get_guard().set_autopay_enabled(True)
    print("Autopay enabled")


def cmd_autopay_disable(args: argparse.Namespace) -> None:
    _get_guard().set_autopay_enabled(False)
    print("Autopay disabled")


def cmd_history(args: argparse.Namespace) -> None:
    """Show payments made (employer) or received (--worker)."""
    from confpay.ledger.history import fetch_payment_history

    kp = _load_keypair(args.keypair)
    rpc = _get_rpc(args)
    guard = _get_guard()

    extra_senders: list[str] = []
    workers: list[str] = []
    if not args.worker:
        bot_path = _home() / BOT_KEY_FILENAME
        if bot_path.is_file():
            extra_senders.append(_load_keypair(str(bot_path)).address)
        workers = [w.address for w in _load_workers(args, kp.address)]

    records = fetch_payment_history(
        rpc,
        kp.address,
        is_employer=not args.worker,
        extra_senders=extra_senders,
        workers=workers,
        cleared_at=guard.history_cleared_at,
        program_id=getattr(args, "program_id", None),
    )
    if not records:
        print("No payments found.")
        return
    for r in records:
        counterparty = r.sender if args.worker else r.recipient
        print(f"{r.timestamp.strftime('%Y-%m-%d %H:%M')}  {_format_amount(r.amount):>14}  "
              f"{counterparty}  {r.signature}")


def cmd_history_clear(args: argparse.Namespace) -> None:
    from confpay.schedule import utcnow

    _get_guard().clear_history(utcnow())
    print("Payment history cleared (older records are hidden)")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="confpay",
        description="ConfPay — confidential payroll on a public ledger.",
    )
    from confpay import __version__
    parser.add_argument("--version", action="version", version=f"confpay {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    # keygen
    p_kg = sub.add_parser("keygen", help="Create a signing key")
    p_kg.add_argument("-o", "--output", help="Key file path")
    p_kg.add_argument("--bot", action="store_true", help="Create the autopay bot key")
    p_kg.add_argument("--force", action="store_true", help="Replace an existing key file")

    # register
    p_reg = sub.add_parser("register", help="Register the employer payroll")
    p_reg.add_argument("company", help="Company name")
    _add_ledger_args(p_reg)

    # worker (with subcommands)
    p_worker = sub.add_parser("worker", help="Worker management")
    worker_sub = p_worker.add_subparsers(dest="worker_command")

    p_wa = worker_sub.add_parser("add", help="Enroll a worker")
    p_wa.add_argument("address", help="Worker wallet address")
    p_wa.add_argument("--name", required=True, help="Worker name (max 50 chars)")
    p_wa.add_argument("--role", help="Role (max 32 chars)")
    p_wa.add_argument("--salary", type=float, required=True, help="Salary per period")
    p_wa.add_argument("--pin", required=True, help="Worker PIN (max 10 chars)")
    p_wa.add_argument("--schedule", default="Monthly",
                      help="Weekly, Bi-Weekly, Monthly or Custom (default: Monthly)")
    p_wa.add_argument("--date", help="First payment instant for Custom (ISO 8601)")
    _add_ledger_args(p_wa)

    p_wu = worker_sub.add_parser("update", help="Change a worker's terms")
    p_wu.add_argument("address", help="Worker wallet address")
    p_wu.add_argument("--name", help="New name")
    p_wu.add_argument("--role", help="New role")
    p_wu.add_argument("--salary", type=float, help="New salary (re-encrypts)")
    p_wu.add_argument("--pin", help="New PIN")
    p_wu.add_argument("--schedule", help="New schedule")
    p_wu.add_argument("--date", help="Next payment instant (ISO 8601)")
    _add_ledger_args(p_wu)

    p_wr = worker_sub.add_parser("remove", help="Remove a worker")
    p_wr.add_argument("address", help="Worker wallet address")
    _add_ledger_args(p_wr)

    p_wl = worker_sub.add_parser("list", help="List workers")
    p_wl.add_argument("--reveal", action="store_true", help="Decrypt salaries")
    p_wl.add_argument("--pin", help="Also try this PIN")
    _add_ledger_args(p_wl)

    # encrypt / decrypt
    p_enc = sub.add_parser("encrypt", help="Encrypt an amount into an envelope")
    p_enc.add_argument("amount", type=float, help="Amount in display units")
    p_enc.add_argument("--recipient", required=True, help="Recipient address")
    p_enc.add_argument("--pin", help="Add a PIN block")
    p_enc.add_argument("--no-wallet", action="store_true", help="Skip the wallet block")
    p_enc.add_argument("--keypair", help="Signing key file")

    p_dec = sub.add_parser("decrypt", help="Decrypt an envelope")
    p_dec.add_argument("ciphertext", help="Envelope bytes as hex")
    p_dec.add_argument("--pin", help="PIN to try")
    p_dec.add_argument("--no-wallet", action="store_true", help="Do not use the wallet key")
    p_dec.add_argument("--keypair", help="Signing key file")

    # pay
    p_pay = sub.add_parser("pay", help="Pay a worker now")
    p_pay.add_argument("address", help="Worker wallet address")
    p_pay.add_argument("--amount", type=float, help="Amount (default: revealed salary)")
    p_pay.add_argument("--force", action="store_true", help="Ignore the payment guards")
    _add_ledger_args(p_pay)

    # autopay (with subcommands)
    p_ap = sub.add_parser("autopay", help="Autopay bot")
    ap_sub = p_ap.add_subparsers(dest="autopay_command")

    p_apr = ap_sub.add_parser("run", help="Run the bot in the foreground")
    p_apr.add_argument("--once", action="store_true", help="Run a single tick and exit")
    p_apr.add_argument("--interval", type=float, default=60, help="Tick interval (default: 60s)")
    p_apr.add_argument("--bot-key", help="Bot key file (default: $CONFPAY_HOME/bot_key.json)")
    _add_ledger_args(p_apr)

    ap_sub.add_parser("enable", help="Enable autopay")
    ap_sub.add_parser("disable", help="Disable autopay")

    # history (with optional clear)
    p_hist = sub.add_parser("history", help="Payment history")
    hist_sub = p_hist.add_subparsers(dest="history_command")
    hist_sub.add_parser("clear", help="Hide history up to now")
    p_hist.add_argument("--worker", action="store_true", help="Show payments received")
    _add_ledger_args(p_hist)

    args = parser.parse_args()
    _setup_logging(args)

    if not args.command:
        print("ConfPay — confidential payroll")
        print()
        print("Usage:")
        print("  confpay keygen [--bot]")
        print("  confpay register \"Company\"")
        print("  confpay worker add <address> --name N --salary 1.5 --pin 1234 [--schedule Weekly]")
        print("  confpay worker update <address> [--salary ...] [--schedule ...]")
        print("  confpay worker remove <address>")
        print("  confpay worker list [--reveal]")
        print("  confpay encrypt <amount> --recipient <address> [--pin P]")
        print("  confpay decrypt <hex> [--pin P]")
        print("  confpay pay <address> [--amount A]")
        print("  confpay autopay {run|enable|disable}")
        print("  confpay history [clear] [--worker]")
        print()
        print("Run 'confpay <command> --help' for details on any command.")
        sys.exit(0)

    if args.command == "worker":
        worker_commands = {
            "add": cmd_worker_add,
            "update": cmd_worker_update,
            "remove": cmd_worker_remove,
            "list": cmd_worker_list,
        }
        wc = getattr(args, "worker_command", None)
        if not wc:
            print("Usage: confpay worker {add|update|remove|list}")
            sys.exit(0)
        worker_commands[wc](args)
        return

    if args.command == "autopay":
        autopay_commands = {
            "run": cmd_autopay_run,
            "enable": cmd_autopay_enable,
            "disable": cmd_autopay_disable,
        }
        ac = getattr(args, "autopay_command", None)
        if not ac:
            print("Usage: confpay autopay {run|enable|disable}")
            sys.exit(0)
        autopay_commands[ac](args)
        return

    if args.command == "history":
        if getattr(args, "history_command", None) == "clear":
            cmd_history_clear(args)
        else:
            cmd_history(args)
        return

    commands = {
        "keygen": cmd_keygen,
        "register": cmd_register,
        "encrypt": cmd_encrypt,
        "decrypt": cmd_decrypt,
        "pay": cmd_pay,
    }

    commands[args.command](args)


if __name__ == "__main__":
    main()
