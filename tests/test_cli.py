from __future__ import annotations

import json
from decimal import Decimal
from pathlib import Path

import pytest

from paycadence import cli

SOURCE = "0x" + "1" * 40
RECIPIENT = "0x" + "2" * 40


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("paycadence.config.DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setattr("paycadence.config._CONFIG_PATH_OVERRIDE", None)
    for name in ("PAYCADENCE_RPC_URL", "PAYCADENCE_STORE_PATH", "PAYCADENCE_KEYSTORE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def run(tmp_path: Path, capsys: pytest.CaptureFixture[str]):
    store = str(tmp_path / "cli.sqlite")

    def invoke(*argv: str):
        cli.main(["--store", store, *argv])
        return json.loads(capsys.readouterr().out)

    return invoke


def _create(run, **overrides: str):
    args = {
        "--owner": "alice",
        "--from": SOURCE,
        "--to": RECIPIENT,
        "--amount": "0.25",
        "--frequency": "monthly",
        "--max-executions": "3",
        "--start": "2000-01-01T00:00:00",
    }
    args.update(overrides)
    argv = ["create"]
    for flag, value in args.items():
        argv.extend([flag, value])
    return run(*argv)


def test_parser_accepts_every_command() -> None:
    parser = cli.build_parser()
    choices = parser._subparsers._group_actions[0].choices  # type: ignore[union-attr]

    assert set(choices) == set(cli.COMMANDS)
    args = parser.parse_args(["worker", "--poll-interval", "5"])
    assert args.poll_interval == 5.0
    args = parser.parse_args(["batch-preview", "--payments", "p.yaml", "--from", SOURCE])
    assert args.source == SOURCE


def test_create_list_and_stats(run) -> None:
    created = _create(run)

    assert created["status"] == "active"
    assert created["frequency"] == "monthly"
    assert created["max_executions"] == 3
    assert created["next_execution_at"].startswith("2000-01-01 00:00:00")

    listed = run("list", "--owner", "alice")
    assert [item["schedule_id"] for item in listed] == [created["schedule_id"]]
    assert run("list", "--owner", "bob") == []

    report = run("stats")
    assert report["due"] == 1
    # just created, so still inside the settle window
    assert report["claimable"] == 0
    assert report["stats"]["active"] == 1


def test_cancel(run, capsys) -> None:
    created = _create(run, **{"--frequency": "once", "--max-executions": "1"})

    with pytest.raises(SystemExit) as excinfo:
        run("cancel", "--schedule-id", "nope", "--owner", "alice")
    assert excinfo.value.code == 1
    assert "not found" in capsys.readouterr().err

    cancelled = run("cancel", "--schedule-id", created["schedule_id"], "--owner", "alice")
    assert cancelled["status"] == "cancelled"
    assert run("stats")["stats"]["cancelled"] == 1


def test_invalid_create_exits_with_every_error(run, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _create(run, **{"--to": "nowhere", "--amount": "-1"})

    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert "invalid recipient address" in err
    assert "amount must be positive" in err


def test_load_batch_payments(tmp_path: Path) -> None:
    path = tmp_path / "payments.yaml"
    path.write_text(
        f"""
        payments:
          - recipient: "{RECIPIENT}"
            amount: "1.5"
          - recipient: "0x{'3' * 40}"
            amount: 10
            fiat_value: 10
            token:
              symbol: USDC
              contract: "0x{'a' * 40}"
              decimals: 6
        """
    )

    payments = cli.load_batch_payments(path)

    assert [payment.amount for payment in payments] == ["1.5", "10"]
    assert payments[0].token.is_native
    assert payments[0].token.symbol == "ETH"
    assert payments[1].token.decimals == 6
    assert payments[1].base_amount == 10_000_000
    assert payments[1].fiat_value == Decimal("10")


def test_load_batch_payments_rejects_bad_files(tmp_path: Path) -> None:
    with pytest.raises(cli.CLIError, match="not found"):
        cli.load_batch_payments(tmp_path / "absent.yaml")

    path = tmp_path / "payments.yaml"
    path.write_text(f'- recipient: "{RECIPIENT}"\n')
    with pytest.raises(cli.CLIError, match="needs 'recipient' and 'amount'"):
        cli.load_batch_payments(path)
