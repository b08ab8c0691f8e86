from __future__ import annotations

import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest

from paycadence import abi
from paycadence.config import SchedulerPolicy
from paycadence.credentials import KeystoreCredentialProvider
from paycadence.ledger import LedgerClient
from paycadence.model import Frequency, ScheduledPayment, ScheduleStatus, TokenInfo
from paycadence.prices import FixedPriceFeed
from paycadence.rpc_client import RPCError
from paycadence.scheduler import PaymentScheduler
from paycadence.store import SQLiteScheduleStore

GWEI = 10**9
GENESIS_TIME = 1_714_560_000
BLOCK_SECONDS = 12


class StubRPC:
    """In-memory stand-in for an Ethereum node.

    Signed transactions are mined immediately unless ``mine`` is False, in
    which case they wait in ``unmined`` until :meth:`mine_pending`.
    """

    def __init__(self) -> None:
        self.latest = 100
        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[tuple[str, str], int] = {}
        self.allowances: Dict[tuple[str, str, str], int] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.signed: list[Dict[str, Any]] = []
        self.sent: list[Dict[str, Any]] = []
        self.unmined: list[tuple[str, Dict[str, Any]]] = []
        self.passphrases: list[str] = []
        self.send_errors: list[Exception] = []
        self.reverting: set[str] = set()
        self.savings: tuple[int, int] | None = (63_000, 45_000)
        self.mine = True
        self._raw: Dict[str, tuple[str, Dict[str, Any]]] = {}

    # Chain state ---------------------------------------------------------

    def chain_id(self) -> int:
        return 1

    def block_number(self) -> int:
        return self.latest

    def get_block_by_number(self, number, full_transactions=False):
        if number == "latest":
            return {"number": hex(self.latest), "baseFeePerGas": hex(10 * GWEI)}
        return self.blocks.get(number)

    def get_balance(self, address, block="latest"):
        return self.balances.get(address.lower(), 0)

    def eth_call(self, tx, block="latest"):
        data = tx["data"]
        selector = data[2:10]
        contract = tx["to"].lower()
        if selector == abi.SELECTOR_BALANCE_OF:
            owner = "0x" + data[34:74]
            return "0x" + abi.encode_uint(self.token_balances.get((contract, owner), 0))
        if selector == abi.SELECTOR_ALLOWANCE:
            owner = "0x" + data[34:74]
            spender = "0x" + data[98:138]
            return "0x" + abi.encode_uint(self.allowances.get((contract, owner, spender), 0))
        if selector == abi.SELECTOR_ESTIMATE_SAVINGS and self.savings is not None:
            individual, batch = self.savings
            return "0x" + abi.encode_uint(individual) + abi.encode_uint(batch)
        raise RPCError(-32000, "execution reverted")

    # Fees --------------------------------------------------------------------

    def estimate_gas(self, tx):
        return 60_000 if tx.get("data") else 21_000

    def gas_price(self):
        return 20 * GWEI

    def max_priority_fee_per_gas(self):
        return 1 * GWEI

    def get_transaction_count(self, address, block="pending"):
        return len(self.sent)

    # Signing and submission --------------------------------------------

    def sign_transaction(self, tx):
        return self._sign(tx)

    def personal_sign_transaction(self, tx, passphrase):
        self.passphrases.append(passphrase)
        return self._sign(tx)

    def _sign(self, tx):
        self.signed.append(dict(tx))
        tx_hash = "0x%064x" % (0xF00 + len(self.signed))
        raw = "0x02" + tx_hash[2:]
        self._raw[raw] = (tx_hash, dict(tx))
        return {"raw": raw, "tx": {"hash": tx_hash}}

    def send_raw_transaction(self, raw):
        tx_hash, tx = self._raw[raw]
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(tx)
        if self.mine:
            self.mine_tx(tx_hash, tx)
        else:
            self.unmined.append((tx_hash, tx))
            self.transactions[tx_hash] = {**tx, "hash": tx_hash, "blockNumber": None}
        return tx_hash

    def mine_tx(self, tx_hash, tx, *, gas_used=21_000):
        self.latest += 1
        success = str(tx.get("to", "")).lower() not in self.reverting
        mined = {
            **tx,
            "hash": tx_hash,
            "input": tx.get("data", "0x"),
            "value": tx.get("value", "0x0"),
            "blockNumber": hex(self.latest),
        }
        self.transactions[tx_hash] = mined
        self.blocks[self.latest] = {
            "number": hex(self.latest),
            "timestamp": hex(GENESIS_TIME + BLOCK_SECONDS * self.latest),
            "transactions": [mined],
        }
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "status": "0x1" if success else "0x0",
            "blockNumber": hex(self.latest),
            "gasUsed": hex(gas_used),
            "effectiveGasPrice": hex(10 * GWEI),
            "from": tx.get("from"),
            "to": tx.get("to"),
        }
        return tx_hash

    def mine_pending(self):
        for tx_hash, tx in self.unmined:
            self.mine_tx(tx_hash, tx)
        self.unmined.clear()

    def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def get_transaction_by_hash(self, tx_hash):
        return self.transactions.get(tx_hash)


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy() -> SchedulerPolicy:
    return SchedulerPolicy(
        lease_ttl=300,
        guard_window=0,
        settle_window=0,
        max_retries=3,
        retry_delay=60,
        receipt_timeout=5,
        receipt_poll_interval=1,
    )


@pytest.fixture
def store(tmp_path):
    store = SQLiteScheduleStore(tmp_path / "schedules.sqlite")
    yield store
    store.close()


@pytest.fixture
def chain() -> StubRPC:
    rpc = StubRPC()
    rpc.balances[("0x" + "1" * 40).lower()] = 10 * 10**18
    return rpc


@pytest.fixture
def ledger(chain) -> LedgerClient:
    ticks = itertools.count()
    return LedgerClient(
        chain,
        receipt_poll_interval=1.0,
        sleep=lambda _seconds: None,
        clock=lambda: float(next(ticks)),
    )


@pytest.fixture
def make_schedule(store, now):
    def factory(**overrides: Any) -> ScheduledPayment:
        fields: Dict[str, Any] = dict(
            schedule_id=uuid.uuid4().hex,
            owner="alice",
            source_address="0x" + "1" * 40,
            token=TokenInfo.native(),
            recipient="0x" + "2" * 40,
            amount="0.5",
            frequency=Frequency.ONCE,
            status=ScheduleStatus.ACTIVE,
            next_execution_at=now - timedelta(minutes=5),
            max_executions=1,
            created_at=now - timedelta(hours=1),
            updated_at=now - timedelta(hours=1),
        )
        fields.update(overrides)
        schedule = ScheduledPayment(**fields)
        store.insert(schedule)
        return schedule

    return factory


@pytest.fixture
def scheduler(store, ledger, chain, policy) -> PaymentScheduler:
    credentials = KeystoreCredentialProvider(
        chain, {}, "", unlocked_accounts=["0x" + "1" * 40]
    )
    return PaymentScheduler(
        store, ledger, credentials, FixedPriceFeed("2000"), policy, worker_id="worker-a"
    )
