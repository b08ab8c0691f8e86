"""Command-line interface for the paycadence scheduler and batch engine."""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Sequence

import yaml

from .batch import BatchPayment, BatchTransferEngine
from .config import ConfigurationError, Settings, load_settings, set_default_config_path
from .credentials import (
    CredentialEnvelope,
    KeystoreCredentialProvider,
    load_keystore,
    save_keystore,
    seal_credential,
)
from .errors import PaymentError
from .ledger import LedgerClient
from .model import NATIVE_MARKER, ScheduleIntent, ScheduleStatus, TokenInfo, utcnow
from .prices import PriceFeed
from .rpc_client import EthereumRPCClient, RPCError, RPCTransportError, format_rpc_hint
from .scheduler import PaymentScheduler, PollingWorker
from .store import SQLiteScheduleStore, eq

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ENV_MASTER_PASSPHRASE = "PAYCADENCE_MASTER_PASSPHRASE"
ENV_ACCOUNT_PASSPHRASE = "PAYCADENCE_ACCOUNT_PASSPHRASE"


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scheduled and batch payments for EVM chains")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--rpc-url", default=None, help="Override the JSON-RPC endpoint")
    parser.add_argument("--store", default=None, help="Override the SQLite schedule store path")
    parser.add_argument(
        "--unlocked-account",
        action="append",
        default=[],
        help="Address already unlocked on the node (repeatable)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="create a scheduled payment")
    create_parser.add_argument("--owner", required=True, help="Owner identity")
    create_parser.add_argument("--from", dest="source", required=True, help="Source address")
    create_parser.add_argument("--to", dest="recipient", required=True, help="Recipient address")
    create_parser.add_argument("--amount", required=True, help="Decimal amount, e.g. 0.25")
    create_parser.add_argument(
        "--frequency",
        default="once",
        help="once, daily, weekly, monthly or yearly (default: once)",
    )
    create_parser.add_argument(
        "--start", default=None, help="First execution time (ISO 8601, default: now)"
    )
    create_parser.add_argument("--max-executions", type=int, default=None)
    create_parser.add_argument("--token-symbol", default="ETH")
    create_parser.add_argument(
        "--token-contract", default=None, help="ERC-20 contract (omit for the native asset)"
    )
    create_parser.add_argument("--token-decimals", type=int, default=18)
    create_parser.add_argument("--description", default="")

    cancel_parser = subparsers.add_parser("cancel", help="cancel a scheduled payment")
    cancel_parser.add_argument("--schedule-id", required=True)
    cancel_parser.add_argument("--owner", required=True)

    list_parser = subparsers.add_parser("list", help="list scheduled payments")
    list_parser.add_argument("--owner", default=None)
    list_parser.add_argument(
        "--status", default=None, choices=[status.value for status in ScheduleStatus]
    )
    list_parser.add_argument("--limit", type=int, default=50)

    subparsers.add_parser("stats", help="show scheduler statistics")
    subparsers.add_parser("run-once", help="execute the current due set once")
    subparsers.add_parser(
        "trigger", help="execute the due set now, ignoring guard and settle windows"
    )

    worker_parser = subparsers.add_parser("worker", help="poll and execute until interrupted")
    worker_parser.add_argument(
        "--poll-interval", type=float, default=None, help="Polling cadence in seconds"
    )

    for name, help_text in (
        ("batch-preview", "preview a batch transfer"),
        ("batch-execute", "approve tokens as needed and submit a batch transfer"),
    ):
        batch_parser = subparsers.add_parser(name, help=help_text)
        batch_parser.add_argument(
            "--payments", required=True, help="YAML or JSON file listing the payments"
        )
        batch_parser.add_argument("--from", dest="source", required=True, help="Source address")

    seal_parser = subparsers.add_parser(
        "seal-credential", help="store a node account passphrase in the keystore"
    )
    seal_parser.add_argument("--address", required=True)
    seal_parser.add_argument("--keystore", default=None, help="Keystore path (YAML)")
    return parser


@dataclass
class Services:
    settings: Settings
    rpc: EthereumRPCClient
    ledger: LedgerClient
    store: SQLiteScheduleStore
    prices: PriceFeed
    credentials: KeystoreCredentialProvider

    def scheduler(self) -> PaymentScheduler:
        return PaymentScheduler(
            self.store, self.ledger, self.credentials, self.prices, self.settings.scheduler
        )


def _load_settings(args: argparse.Namespace) -> Settings:
    if args.config:
        set_default_config_path(args.config)
    rpc_overrides = {"endpoint": args.rpc_url} if args.rpc_url else None
    settings = load_settings(rpc_overrides=rpc_overrides)
    if args.store:
        settings.store_path = Path(args.store).expanduser()
    return settings


def _master_passphrase(confirm: bool = False) -> str:
    value = os.environ.get(ENV_MASTER_PASSPHRASE)
    if value:
        return value
    value = getpass.getpass("Keystore master passphrase: ")
    if confirm and value != getpass.getpass("Repeat master passphrase: "):
        raise CLIError("Passphrases do not match")
    if not value:
        raise CLIError("A master passphrase is required")
    return value


def _build_services(args: argparse.Namespace, *, signing: bool = False) -> Services:
    settings = _load_settings(args)
    rpc = EthereumRPCClient(settings.rpc)
    ledger = LedgerClient(
        rpc,
        receipt_poll_interval=settings.scheduler.receipt_poll_interval,
        block_time=settings.scheduler.block_time,
        chain_id=settings.rpc.chain_id,
    )
    if signing and settings.keystore_path is not None and settings.keystore_path.exists():
        credentials = KeystoreCredentialProvider.from_file(
            rpc,
            settings.keystore_path,
            _master_passphrase(),
            unlocked_accounts=args.unlocked_account,
        )
    else:
        credentials = KeystoreCredentialProvider(
            rpc, {}, "", unlocked_accounts=args.unlocked_account
        )
    return Services(
        settings=settings,
        rpc=rpc,
        ledger=ledger,
        store=SQLiteScheduleStore(settings.store_path),
        prices=PriceFeed(settings.prices),
        credentials=credentials,
    )


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _parse_start(raw: str | None) -> datetime:
    if raw is None:
        return utcnow()
    try:
        value = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise CLIError(f"--start must be an ISO 8601 timestamp: {raw}") from exc
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _schedule_summary(schedule: Any) -> dict[str, Any]:
    return {
        "schedule_id": schedule.schedule_id,
        "owner": schedule.owner,
        "status": schedule.status.value,
        "frequency": schedule.frequency.value,
        "amount": schedule.amount,
        "token": schedule.token.symbol,
        "recipient": schedule.recipient,
        "next_execution_at": schedule.next_execution_at,
        "executed_count": schedule.executed_count,
        "max_executions": schedule.max_executions,
        "retry_count": schedule.retry_count,
        "last_error": schedule.last_error,
        "last_tx_hash": schedule.last_tx_hash,
    }


def load_batch_payments(path: str | Path) -> list[BatchPayment]:
    """Read batch entries from a YAML (or JSON) file."""

    path = Path(path).expanduser()
    if not path.exists():
        raise CLIError(f"Payments file not found: {path}")
    try:
        loaded = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise CLIError(f"Invalid payments file {path}: {exc}") from exc
    entries = loaded.get("payments") if isinstance(loaded, dict) else loaded
    if not isinstance(entries, list):
        raise CLIError("Payments file must contain a list of payments")

    payments = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict) or "recipient" not in entry or "amount" not in entry:
            raise CLIError(f"Payment #{index} needs 'recipient' and 'amount'")
        token_raw = entry.get("token") or {}
        if isinstance(token_raw, str):
            token_raw = {"symbol": token_raw}
        contract = token_raw.get("contract") or NATIVE_MARKER
        token = TokenInfo(
            symbol=str(token_raw.get("symbol") or ("ETH" if contract == NATIVE_MARKER else "TOKEN")),
            contract_address=str(contract),
            decimals=int(token_raw.get("decimals", 18)),
            name=token_raw.get("name"),
        )
        try:
            fiat_value = Decimal(str(entry.get("fiat_value", "0")))
        except InvalidOperation as exc:
            raise CLIError(f"Payment #{index} has an invalid fiat_value") from exc
        payments.append(
            BatchPayment(
                recipient=str(entry["recipient"]),
                token=token,
                amount=str(entry["amount"]),
                fiat_value=fiat_value,
            )
        )
    return payments


def cmd_create(args: argparse.Namespace) -> None:
    services = _build_services(args)
    if args.token_contract:
        token = TokenInfo(args.token_symbol, args.token_contract, args.token_decimals)
    else:
        token = TokenInfo.native(args.token_symbol)
    schedule = services.scheduler().create_schedule(
        ScheduleIntent(
            owner=args.owner,
            source_address=args.source,
            recipient=args.recipient,
            amount=args.amount,
            token=token,
            frequency=args.frequency,
            first_execution_at=_parse_start(args.start),
            max_executions=args.max_executions,
            description=args.description,
        )
    )
    _emit(_schedule_summary(schedule))


def cmd_cancel(args: argparse.Namespace) -> None:
    services = _build_services(args)
    if not services.scheduler().cancel(args.schedule_id, args.owner):
        raise CLIError(
            f"Schedule {args.schedule_id} not found, not owned by {args.owner}, or already final"
        )
    _emit({"schedule_id": args.schedule_id, "status": ScheduleStatus.CANCELLED.value})


def cmd_list(args: argparse.Namespace) -> None:
    services = _build_services(args)
    clauses = []
    if args.owner:
        clauses.append(eq("owner", args.owner))
    if args.status:
        clauses.append(eq("status", ScheduleStatus(args.status)))
    schedules = services.store.find(clauses, order_by=["next_execution_at"], limit=args.limit)
    _emit([_schedule_summary(schedule) for schedule in schedules])


def cmd_stats(args: argparse.Namespace) -> None:
    _emit(_build_services(args).scheduler().poll().as_dict())


def cmd_run_once(args: argparse.Namespace) -> None:
    scheduler = _build_services(args, signing=True).scheduler()
    scheduler.recover_stale()
    _emit(scheduler.run_once().as_dict())


def cmd_trigger(args: argparse.Namespace) -> None:
    _emit(_build_services(args, signing=True).scheduler().trigger().as_dict())


def cmd_worker(args: argparse.Namespace) -> None:
    worker = PollingWorker(_build_services(args, signing=True).scheduler(), args.poll_interval)
    try:
        worker.run_forever()
    finally:
        worker.stop()


def cmd_batch_preview(args: argparse.Namespace) -> None:
    services = _build_services(args)
    engine = BatchTransferEngine(
        services.ledger, services.prices, services.settings.batch, services.settings.scheduler
    )
    _emit(engine.preview(load_batch_payments(args.payments), args.source).as_dict())


def cmd_batch_execute(args: argparse.Namespace) -> None:
    services = _build_services(args, signing=True)
    engine = BatchTransferEngine(
        services.ledger, services.prices, services.settings.batch, services.settings.scheduler
    )
    signer = services.credentials.get_signing_credential(args.source)
    outcome = engine.execute(load_batch_payments(args.payments), signer)
    _emit(outcome.as_dict())
    if not outcome.success:
        raise CLIError(f"Batch failed during {outcome.failed_step}: {outcome.error}")


def cmd_seal_credential(args: argparse.Namespace) -> None:
    settings = _load_settings(args)
    keystore_raw = args.keystore or settings.keystore_path
    if keystore_raw is None:
        raise CLIError("Provide --keystore or configure credentials.keystore")
    keystore = Path(keystore_raw).expanduser()
    envelopes: dict[str, CredentialEnvelope] = load_keystore(keystore) if keystore.exists() else {}
    secret = os.environ.get(ENV_ACCOUNT_PASSPHRASE) or getpass.getpass(
        f"Node account passphrase for {args.address}: "
    )
    if not secret:
        raise CLIError("An account passphrase is required")
    envelopes[args.address.lower()] = seal_credential(
        args.address, secret, _master_passphrase(confirm=not keystore.exists())
    )
    save_keystore(keystore, envelopes)
    _emit({"address": args.address, "keystore": str(keystore), "accounts": len(envelopes)})


COMMANDS = {
    "create": cmd_create,
    "cancel": cmd_cancel,
    "list": cmd_list,
    "stats": cmd_stats,
    "run-once": cmd_run_once,
    "trigger": cmd_trigger,
    "worker": cmd_worker,
    "batch-preview": cmd_batch_preview,
    "batch-execute": cmd_batch_execute,
    "seal-credential": cmd_seal_credential,
}


def _error_message(exc: BaseException) -> str:
    message = f"error: {exc}"
    cause = exc if isinstance(exc, RPCError) else exc.__cause__
    hint = format_rpc_hint(cause) if isinstance(cause, RPCError) else None
    if hint:
        message += f"\nhint: {hint}"
    return message + "\n"


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        handler = COMMANDS.get(args.command)
        if handler is None:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
        handler(args)
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except (
        CLIError,
        ConfigurationError,
        PaymentError,
        RPCError,
        RPCTransportError,
    ) as exc:
        parser.exit(1, _error_message(exc))


if __name__ == "__main__":
    main(sys.argv[1:])
