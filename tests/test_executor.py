from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from paycadence import abi
from paycadence.credentials import NodeAccountSigner
from paycadence.errors import InsufficientFunds, TerminalLedgerError, ValidationError
from paycadence.executor import PaymentExecutor, validate_payment
from paycadence.model import TokenInfo
from paycadence.prices import FixedPriceFeed

SOURCE = "0x" + "1" * 40
RECIPIENT = "0x" + "2" * 40
USDC = TokenInfo("USDC", "0x" + "a" * 40, 6)


@pytest.fixture
def executor(ledger, policy) -> PaymentExecutor:
    return PaymentExecutor(ledger, FixedPriceFeed("2000"), policy)


@pytest.fixture
def signer(chain) -> NodeAccountSigner:
    return NodeAccountSigner(chain, SOURCE, "secret")


def test_native_transfer_reports_realized_cost(executor, signer, chain, make_schedule, now) -> None:
    schedule = make_schedule(amount="0.5")
    broadcasts = []

    outcome = executor.execute(schedule, signer, now=now, on_broadcast=broadcasts.append)

    assert len(chain.sent) == 1
    sent = chain.sent[0]
    assert sent["to"] == RECIPIENT
    assert int(sent["value"], 16) == 5 * 10**17
    assert "data" not in sent
    assert broadcasts == [outcome.tx_hash]
    assert outcome.receipt.success
    assert outcome.cost_native == Decimal("0.00021")
    assert outcome.cost_fiat == Decimal("0.42")
    assert outcome.executed_at == now
    assert chain.passphrases == ["secret"]


def test_token_transfer_calls_the_contract(executor, signer, chain, make_schedule, now) -> None:
    chain.token_balances[(USDC.key, SOURCE)] = 100_000_000
    schedule = make_schedule(token=USDC, amount="25")

    executor.execute(schedule, signer, now=now)

    sent = chain.sent[0]
    assert sent["to"] == USDC.contract_address
    assert sent["value"] == "0x0"
    assert sent["data"] == abi.encode_transfer(RECIPIENT, 25_000_000)


def test_validation_collects_every_problem(executor, chain, make_schedule) -> None:
    schedule = make_schedule(recipient="not-an-address", amount="0")
    stranger = NodeAccountSigner(chain, "0x" + "9" * 40)

    with pytest.raises(ValidationError) as excinfo:
        executor.execute(schedule, stranger)

    assert len(excinfo.value.errors) == 3
    assert chain.signed == []


def test_validation_rejects_excess_precision_and_missing_signer(make_schedule) -> None:
    schedule = make_schedule(token=USDC, amount="1.0000001")

    with pytest.raises(ValidationError) as excinfo:
        validate_payment(schedule, None)

    assert any("precision" in error for error in excinfo.value.errors)
    assert "no signing credential supplied" in excinfo.value.errors


def test_insufficient_balance_stops_before_submission(executor, signer, chain, make_schedule) -> None:
    chain.balances[SOURCE] = 10**17
    schedule = make_schedule(amount="0.5")

    with pytest.raises(InsufficientFunds) as excinfo:
        executor.execute(schedule, signer)

    assert excinfo.value.required == 5 * 10**17
    assert excinfo.value.available == 10**17
    assert chain.sent == []


def test_reverted_transfer_is_terminal(executor, signer, chain, make_schedule) -> None:
    chain.reverting.add(RECIPIENT)
    schedule = make_schedule()

    with pytest.raises(TerminalLedgerError) as excinfo:
        executor.execute(schedule, signer, now=datetime(2024, 5, 1, tzinfo=timezone.utc))

    assert excinfo.value.receipt is not None
    assert not excinfo.value.receipt.success
    assert len(chain.sent) == 1
