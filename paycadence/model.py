"""Domain models for scheduled payments and their executions.

The structures defined here are plain dataclasses shared by every stage of the
pipeline. Amounts are carried as decimal strings at the edges and converted to
integer base units only when a transaction is built, so no float ever touches
a payment value.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

NATIVE_MARKER = "native"
ZERO_ADDRESS = "0x" + "0" * 40


class Frequency(str, enum.Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def recurring(self) -> bool:
        return self is not Frequency.ONCE


class ScheduleStatus(str, enum.Enum):
    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (ScheduleStatus.COMPLETED, ScheduleStatus.FAILED, ScheduleStatus.CANCELLED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def parse_amount(raw: str | Decimal | int) -> Decimal:
    """Parse a decimal amount, rejecting floats, NaN and infinities."""

    if isinstance(raw, float):
        raise ValueError("Amounts must be decimal strings, not floats")
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal amount: {raw!r}") from exc
    if not value.is_finite():
        raise ValueError(f"Invalid decimal amount: {raw!r}")
    return value


def to_base_units(amount: str | Decimal, decimals: int) -> int:
    """Convert a decimal amount to integer base units without rounding."""

    value = parse_amount(amount)
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Amount {amount} has more precision than {decimals} decimals")
    return int(scaled)


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(int(units)).scaleb(-decimals)


@dataclass(frozen=True)
class TokenInfo:
    """Token identity: the native asset or an ERC-20 contract."""

    symbol: str
    contract_address: str = NATIVE_MARKER
    decimals: int = 18
    name: str | None = None

    @property
    def is_native(self) -> bool:
        return self.contract_address == NATIVE_MARKER

    @property
    def key(self) -> str:
        """Stable identity for grouping (lower-cased contract or native marker)."""

        return self.contract_address.lower()

    @property
    def ledger_address(self) -> str:
        """Address used in mixed-batch payloads (zero address for the native asset)."""

        return ZERO_ADDRESS if self.is_native else self.contract_address

    @classmethod
    def native(cls, symbol: str = "ETH") -> "TokenInfo":
        return cls(symbol=symbol, contract_address=NATIVE_MARKER, decimals=18, name=symbol)


@dataclass
class ScheduledPayment:
    """A recurring or one-shot payment obligation as persisted in the store."""

    schedule_id: str
    owner: str
    source_address: str
    token: TokenInfo
    recipient: str
    amount: str
    frequency: Frequency
    status: ScheduleStatus
    next_execution_at: datetime | None
    executed_count: int = 0
    max_executions: int = 1
    processing_by: str | None = None
    processing_started: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None
    failed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_execution_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    last_tx_hash: str | None = None
    pending_tx_hash: str | None = None
    description: str = ""

    @property
    def base_amount(self) -> int:
        return to_base_units(self.amount, self.token.decimals)

    def lease_age(self, now: datetime) -> float | None:
        if self.processing_started is None:
            return None
        return (now - self.processing_started).total_seconds()

    def has_live_lease(self, now: datetime, ttl: float) -> bool:
        age = self.lease_age(now)
        return self.processing_by is not None and age is not None and age <= ttl

    def with_changes(self, **changes: Any) -> "ScheduledPayment":
        return replace(self, **changes)


@dataclass
class ScheduleIntent:
    """Owner-supplied intent used to create a new schedule."""

    owner: str
    source_address: str
    recipient: str
    amount: str
    token: TokenInfo
    frequency: Frequency | str
    first_execution_at: datetime
    max_executions: int | None = None
    description: str = ""


@dataclass(frozen=True)
class Receipt:
    """The subset of a transaction receipt the engine relies on."""

    tx_hash: str
    success: bool
    block_number: int
    gas_used: int
    effective_gas_price: int = 0
    from_address: str | None = None
    to_address: str | None = None

    @property
    def fee_wei(self) -> int:
        return self.gas_used * self.effective_gas_price

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "Receipt":
        return cls(
            tx_hash=str(payload.get("transactionHash")),
            success=_hex_int(payload.get("status")) == 1,
            block_number=_hex_int(payload.get("blockNumber")),
            gas_used=_hex_int(payload.get("gasUsed")),
            effective_gas_price=_hex_int(payload.get("effectiveGasPrice")),
            from_address=payload.get("from"),
            to_address=payload.get("to"),
        )


def _hex_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(str(value), 16)


@dataclass(frozen=True)
class FeeParams:
    """EIP-1559 fee parameters for one transaction."""

    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    base_fee_per_gas: int | None = None
    source: str = "unknown"

    @property
    def max_cost_wei(self) -> int:
        return self.gas_limit * self.max_fee_per_gas

    def to_tx_fields(self) -> dict[str, str]:
        return {
            "gas": hex(self.gas_limit),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
        }


@dataclass
class ExecutionOutcome:
    """Result of one confirmed transfer for a schedule."""

    schedule_id: str
    tx_hash: str
    receipt: Receipt
    cost_native: Decimal
    cost_fiat: Decimal
    executed_at: datetime
    recovered: bool = False


@dataclass(frozen=True)
class ExecutionRecord:
    """Immutable receipt of one execution attempt that reached the ledger."""

    schedule_id: str
    occurrence: int
    tx_hash: str
    gas_used: int
    block_number: int
    cost_native: Decimal
    cost_fiat: Decimal
    executed_at: datetime
    outcome: str
    executor_id: str
    recovered: bool = False
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_outcome(
        cls, outcome: ExecutionOutcome, *, occurrence: int, executor_id: str
    ) -> "ExecutionRecord":
        return cls(
            schedule_id=outcome.schedule_id,
            occurrence=occurrence,
            tx_hash=outcome.tx_hash,
            gas_used=outcome.receipt.gas_used,
            block_number=outcome.receipt.block_number,
            cost_native=outcome.cost_native,
            cost_fiat=outcome.cost_fiat,
            executed_at=outcome.executed_at,
            outcome="completed",
            executor_id=executor_id,
            recovered=outcome.recovered,
        )


# Recovery decisions -------------------------------------------------------


@dataclass(frozen=True)
class Retry:
    delay: float
    next_attempt_at: datetime
    reason: str


@dataclass(frozen=True)
class PermanentlyFailed:
    reason: str


@dataclass(frozen=True)
class RecoveredCompleted:
    outcome: ExecutionOutcome


Decision = Retry | PermanentlyFailed | RecoveredCompleted
