"""Batch transfer engine.

Builds one aggregated call to the batch payment contract for many recipients.
The mode follows from the assets involved:

* ``native``: every entry pays the native asset (``batchETHTransfer``)
* ``single_token``: every entry pays the same ERC-20 (``batchERC20Transfer``)
* ``mixed``: anything else (``batchMixedTransfer``, native legs use the zero
  address as their token)

ERC-20 legs need an allowance for the batch contract. Missing allowances are
approved one token at a time, each approval confirmed before the next step,
and the batch is only submitted once every approval has confirmed.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Sequence

from . import abi
from .config import BatchConfig, SchedulerPolicy
from .credentials import Signer
from .errors import InsufficientFunds, PaymentError, ValidationError
from .fees import NATIVE_TRANSFER_GAS, current_gas_price, wei_to_ether
from .ledger import LedgerClient, ensure_success
from .model import TokenInfo, from_base_units, to_base_units, utcnow

logger = logging.getLogger(__name__)

HEURISTIC_SMALL_BATCH = 5
HEURISTIC_SMALL_BATCH_GAS = 150_000
HEURISTIC_GAS_PER_TRANSFER = 25_000


class BatchMode(str, enum.Enum):
    NATIVE = "native"
    SINGLE_TOKEN = "single_token"
    MIXED = "mixed"

    @property
    def contract_transfer_type(self) -> str:
        return {"native": "ETH", "single_token": "ERC20", "mixed": "MIXED"}[self.value]


@dataclass
class BatchPayment:
    recipient: str
    token: TokenInfo
    amount: str
    fiat_value: Decimal = Decimal("0")

    @property
    def base_amount(self) -> int:
        return to_base_units(self.amount, self.token.decimals)


@dataclass
class AssetTotal:
    token: TokenInfo
    principal: int = 0
    tax: int = 0
    transfers: int = 0

    @property
    def total(self) -> int:
        return self.principal + self.tax

    def as_dict(self) -> dict[str, Any]:
        return {
            "token": self.token.symbol,
            "contract": self.token.contract_address,
            "transfers": self.transfers,
            "principal": str(from_base_units(self.principal, self.token.decimals)),
            "tax": str(from_base_units(self.tax, self.token.decimals)),
        }


@dataclass
class ApprovalNeed:
    token: TokenInfo
    required: int
    allowance: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "token": self.token.symbol,
            "contract": self.token.contract_address,
            "required": str(from_base_units(self.required, self.token.decimals)),
            "allowance": str(from_base_units(self.allowance, self.token.decimals)),
        }


@dataclass
class GasEstimate:
    batch_gas: int
    individual_gas: int
    savings: int
    savings_percent: Decimal
    gas_price_wei: int
    cost_native: Decimal
    cost_fiat: Decimal
    source: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_gas": self.batch_gas,
            "individual_gas": self.individual_gas,
            "savings": self.savings,
            "savings_percent": str(self.savings_percent),
            "gas_price_gwei": str(Decimal(self.gas_price_wei).scaleb(-9)),
            "cost_native": str(self.cost_native),
            "cost_fiat": str(self.cost_fiat),
            "source": self.source,
        }


@dataclass
class BatchPreview:
    mode: BatchMode
    batch_size: int
    totals: list[AssetTotal]
    total_fiat: Decimal
    tax_fiat: Decimal
    tax_collected: bool
    native_value: int
    gas: GasEstimate
    approvals_needed: list[ApprovalNeed] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "batch_size": self.batch_size,
            "totals": [total.as_dict() for total in self.totals],
            "total_fiat": str(self.total_fiat),
            "tax_fiat": str(self.tax_fiat),
            "tax_collected": self.tax_collected,
            "native_value": str(wei_to_ether(self.native_value)),
            "gas": self.gas.as_dict(),
            "approvals_needed": [need.as_dict() for need in self.approvals_needed],
        }


@dataclass
class BatchOutcome:
    """Result of :meth:`BatchTransferEngine.execute`.

    ``pending_approval_hash`` names an approval that was broadcast but did not
    confirm successfully. It may still be on the ledger.
    """

    success: bool
    mode: BatchMode
    tx_hash: str | None = None
    gas_used: int | None = None
    block_number: int | None = None
    approval_hashes: list[str] = field(default_factory=list)
    pending_approval_hash: str | None = None
    failed_step: str | None = None
    error: str | None = None
    elapsed_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "mode": self.mode.value,
            "tx_hash": self.tx_hash,
            "gas_used": self.gas_used,
            "block_number": self.block_number,
            "approval_hashes": list(self.approval_hashes),
            "pending_approval_hash": self.pending_approval_hash,
            "failed_step": self.failed_step,
            "error": self.error,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


def select_mode(payments: Sequence[BatchPayment]) -> BatchMode:
    keys = {payment.token.key for payment in payments}
    if all(payment.token.is_native for payment in payments):
        return BatchMode.NATIVE
    if len(keys) == 1:
        return BatchMode.SINGLE_TOKEN
    return BatchMode.MIXED


def heuristic_gas(batch_size: int) -> tuple[int, int]:
    """Return ``(batch_gas, individual_gas)`` when live estimation is unavailable."""

    if batch_size <= HEURISTIC_SMALL_BATCH:
        batch_gas = HEURISTIC_SMALL_BATCH_GAS
    else:
        batch_gas = batch_size * HEURISTIC_GAS_PER_TRANSFER
    return batch_gas, batch_size * NATIVE_TRANSFER_GAS


class BatchTransferEngine:
    def __init__(
        self,
        ledger: LedgerClient,
        price_feed: Any,
        config: BatchConfig | None = None,
        policy: SchedulerPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.price_feed = price_feed
        self.config = config or BatchConfig()
        self.policy = policy or SchedulerPolicy()
        self._clock = clock

    # Validation ------------------------------------------------------------

    def validate(self, payments: Sequence[BatchPayment]) -> None:
        """Raise one :class:`ValidationError` listing every problem found."""

        errors: list[str] = []
        count = len(payments)
        if count < self.config.min_batch_size:
            errors.append(
                f"batch needs at least {self.config.min_batch_size} payments, got {count}"
            )
        limit = self.config.max_batch_size - self._tax_leg_count(payments)
        if count > limit:
            errors.append(f"batch allows at most {limit} payments, got {count}")
        if not abi.is_address(self.config.contract_address):
            errors.append(f"invalid batch contract address: {self.config.contract_address!r}")
        if self.config.tax_collector is not None and not abi.is_address(self.config.tax_collector):
            errors.append(f"invalid tax collector address: {self.config.tax_collector!r}")

        seen: set[tuple[str, str]] = set()
        for index, payment in enumerate(payments, start=1):
            if not abi.is_address(payment.recipient):
                errors.append(f"payment {index}: invalid recipient address {payment.recipient!r}")
            if not payment.token.is_native and not abi.is_address(payment.token.contract_address):
                errors.append(
                    f"payment {index}: invalid token contract {payment.token.contract_address!r}"
                )
            try:
                if payment.base_amount <= 0:
                    errors.append(f"payment {index}: amount must be positive, got {payment.amount}")
            except ValueError as exc:
                errors.append(f"payment {index}: {exc}")
            pair = (str(payment.recipient).lower(), payment.token.key)
            if pair in seen:
                errors.append(
                    f"payment {index}: duplicate recipient {payment.recipient} for {payment.token.symbol}"
                )
            seen.add(pair)
        if errors:
            raise ValidationError(errors)

    def _tax_leg_count(self, payments: Sequence[BatchPayment]) -> int:
        if self.config.tax_collector is None or self.config.tax_rate == 0:
            return 0
        return len({payment.token.key for payment in payments})

    # Totals and tax ----------------------------------------------------------

    def tax_for(self, units: int) -> int:
        return int((Decimal(units) * self.config.tax_rate).to_integral_value(rounding=ROUND_DOWN))

    def asset_totals(self, payments: Sequence[BatchPayment]) -> list[AssetTotal]:
        totals: dict[str, AssetTotal] = {}
        for payment in payments:
            entry = totals.setdefault(payment.token.key, AssetTotal(payment.token))
            units = payment.base_amount
            entry.principal += units
            entry.tax += self.tax_for(units)
            entry.transfers += 1
        return list(totals.values())

    @property
    def collects_tax(self) -> bool:
        return self.config.tax_collector is not None and self.config.tax_rate > 0

    def _legs(
        self, payments: Sequence[BatchPayment], totals: Sequence[AssetTotal]
    ) -> list[tuple[str, TokenInfo, int]]:
        legs = [(payment.recipient, payment.token, payment.base_amount) for payment in payments]
        if self.collects_tax:
            for total in totals:
                if total.tax > 0:
                    legs.append((str(self.config.tax_collector), total.token, total.tax))
        return legs

    def _required(self, totals: Sequence[AssetTotal]) -> dict[str, int]:
        return {
            total.token.key: total.principal + (total.tax if self.collects_tax else 0)
            for total in totals
        }

    # Preview -----------------------------------------------------------------

    def estimate_gas(self, mode: BatchMode, batch_size: int) -> GasEstimate:
        """Estimate batch vs individual gas; degrades to a heuristic on any error."""

        try:
            words = abi.decode_words(
                self.ledger.call(
                    self.config.contract_address,
                    abi.encode_estimate_gas_savings(batch_size, mode.contract_transfer_type),
                )
            )
            individual, batch_gas = words[0], words[1]
            source = "contract"
        except (PaymentError, abi.ABIError, IndexError) as exc:
            logger.info("Batch gas estimation unavailable, using heuristic: %s", exc)
            batch_gas, individual = heuristic_gas(batch_size)
            source = "heuristic"

        savings = max(individual - batch_gas, 0)
        percent = (
            (Decimal(savings) * 100 / Decimal(individual)).quantize(Decimal("0.01"))
            if individual
            else Decimal("0")
        )
        gas_price = current_gas_price(self.ledger.rpc)
        cost_native = wei_to_ether(batch_gas * gas_price)
        return GasEstimate(
            batch_gas=batch_gas,
            individual_gas=individual,
            savings=savings,
            savings_percent=percent,
            gas_price_wei=gas_price,
            cost_native=cost_native,
            cost_fiat=self.price_feed.fiat_value(cost_native),
            source=source,
        )

    def approvals_needed(
        self, totals: Sequence[AssetTotal], owner: str
    ) -> list[ApprovalNeed]:
        required = self._required(totals)
        needs = []
        for total in totals:
            if total.token.is_native:
                continue
            allowance = self.ledger.get_allowance(total.token, owner, self.config.contract_address)
            if allowance < required[total.token.key]:
                needs.append(ApprovalNeed(total.token, required[total.token.key], allowance))
        return needs

    def preview(self, payments: Sequence[BatchPayment], from_address: str) -> BatchPreview:
        self.validate(payments)
        mode = select_mode(payments)
        totals = self.asset_totals(payments)
        required = self._required(totals)
        native_value = sum(
            required[total.token.key] for total in totals if total.token.is_native
        )
        total_fiat = sum((payment.fiat_value for payment in payments), Decimal("0"))
        return BatchPreview(
            mode=mode,
            batch_size=len(payments),
            totals=totals,
            total_fiat=total_fiat,
            tax_fiat=total_fiat * self.config.tax_rate,
            tax_collected=self.collects_tax,
            native_value=native_value,
            gas=self.estimate_gas(mode, len(self._legs(payments, totals))),
            approvals_needed=self.approvals_needed(totals, from_address),
        )

    # Execution -------------------------------------------------------------

    def build_call(
        self,
        mode: BatchMode,
        legs: Sequence[tuple[str, TokenInfo, int]],
        deadline: int,
    ) -> tuple[str, int]:
        """Return ``(calldata, native value)`` for the batch contract call."""

        native_value = sum(amount for _, token, amount in legs if token.is_native)
        recipients = [recipient for recipient, _, _ in legs]
        amounts = [amount for _, _, amount in legs]
        if mode is BatchMode.NATIVE:
            return abi.encode_batch_eth_transfer(recipients, amounts, deadline), native_value
        if mode is BatchMode.SINGLE_TOKEN:
            token = legs[0][1]
            return (
                abi.encode_batch_erc20_transfer(token.contract_address, recipients, amounts, deadline),
                0,
            )
        tuples = [(recipient, token.ledger_address, amount) for recipient, token, amount in legs]
        return abi.encode_batch_mixed_transfer(tuples, deadline), native_value

    def _check_balances(self, totals: Sequence[AssetTotal], owner: str) -> None:
        required = self._required(totals)
        for total in totals:
            balance = self.ledger.get_balance(owner, total.token)
            if balance < required[total.token.key]:
                raise InsufficientFunds(total.token.symbol, required[total.token.key], balance)

    def _approve(self, need: ApprovalNeed, signer: Signer) -> str:
        tx = self.ledger.build_transaction(
            sender=signer.address,
            to=need.token.contract_address,
            data=abi.encode_approve(self.config.contract_address, need.required),
        )
        tx_hash = self.ledger.submit(signer.sign_transaction(tx))
        logger.info("Approval for %s sent: %s", need.token.symbol, tx_hash)
        receipt = self.ledger.await_receipt(tx_hash, self.policy.receipt_timeout)
        ensure_success(receipt, f"Approval of {need.token.symbol}")
        return tx_hash

    def execute(
        self,
        payments: Sequence[BatchPayment],
        signer: Signer,
        *,
        now: datetime | None = None,
    ) -> BatchOutcome:
        """Approve what is missing, then submit one batch transaction.

        Validation and balance failures raise before any transaction is sent.
        Later failures are reported on the returned outcome, together with
        the approvals that already confirmed and any approval left in flight.
        """

        started = self._clock()
        self.validate(payments)
        if not abi.is_address(signer.address):
            raise ValidationError([f"invalid signer address: {signer.address!r}"])
        mode = select_mode(payments)
        totals = self.asset_totals(payments)
        self._check_balances(totals, signer.address)

        outcome = BatchOutcome(success=False, mode=mode)

        def finish(step: str | None, error: Exception | None = None) -> BatchOutcome:
            outcome.failed_step = step
            outcome.error = str(error) if error is not None else None
            outcome.success = step is None
            outcome.elapsed_seconds = self._clock() - started
            if step is not None:
                logger.error(
                    "Batch failed at %s after %d approval(s): %s",
                    step,
                    len(outcome.approval_hashes),
                    error,
                )
            return outcome

        for need in self.approvals_needed(totals, signer.address):
            try:
                outcome.approval_hashes.append(self._approve(need, signer))
            except PaymentError as exc:
                outcome.pending_approval_hash = getattr(exc, "tx_hash", None)
                return finish("approval", exc)

        legs = self._legs(payments, totals)
        deadline = int((now or utcnow()).timestamp()) + self.config.deadline_seconds
        data, value = self.build_call(mode, legs, deadline)
        fallback_gas, _ = heuristic_gas(len(legs))
        try:
            fee = self.ledger.estimate_fee(
                {
                    "from": signer.address,
                    "to": self.config.contract_address,
                    "value": hex(value),
                    "data": data,
                },
                fallback_gas_limit=fallback_gas,
            )
            tx = self.ledger.build_transaction(
                sender=signer.address,
                to=self.config.contract_address,
                value=value,
                data=data,
                fee=fee,
            )
            outcome.tx_hash = self.ledger.submit(signer.sign_transaction(tx))
        except PaymentError as exc:
            outcome.tx_hash = getattr(exc, "tx_hash", None)
            return finish("submission", exc)

        logger.info("Batch (%s, %d legs) sent: %s", mode.value, len(legs), outcome.tx_hash)
        try:
            receipt = self.ledger.await_receipt(outcome.tx_hash, self.policy.receipt_timeout)
            outcome.gas_used = receipt.gas_used
            outcome.block_number = receipt.block_number
            ensure_success(receipt, "Batch transfer")
        except PaymentError as exc:
            return finish("confirmation", exc)
        return finish(None)
