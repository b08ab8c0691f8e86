"""Single-payment execution engine."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from . import abi
from .config import SchedulerPolicy
from .credentials import Signer
from .errors import InsufficientFunds, StoreError, ValidationError
from .fees import format_fee_params, wei_to_ether
from .ledger import LedgerClient, ensure_success
from .model import ExecutionOutcome, Receipt, ScheduledPayment, to_base_units, utcnow

logger = logging.getLogger(__name__)


def outcome_from_receipt(
    schedule_id: str,
    receipt: Receipt,
    price_feed: Any,
    *,
    executed_at: datetime,
    recovered: bool = False,
) -> ExecutionOutcome:
    """Build an :class:`ExecutionOutcome` with realized native and fiat cost."""

    cost_native = wei_to_ether(receipt.fee_wei)
    cost_fiat = price_feed.fiat_value(cost_native) if price_feed is not None else Decimal("0")
    return ExecutionOutcome(
        schedule_id=schedule_id,
        tx_hash=receipt.tx_hash,
        receipt=receipt,
        cost_native=cost_native,
        cost_fiat=cost_fiat,
        executed_at=executed_at,
        recovered=recovered,
    )


def validate_payment(payment: ScheduledPayment, signer: Signer | None) -> int:
    """Validate a claimed schedule and return its amount in base units."""

    errors: list[str] = []
    if not abi.is_address(payment.recipient):
        errors.append(f"invalid recipient address: {payment.recipient!r}")
    if not abi.is_address(payment.source_address):
        errors.append(f"invalid source address: {payment.source_address!r}")
    if not payment.token.is_native and not abi.is_address(payment.token.contract_address):
        errors.append(f"invalid token contract: {payment.token.contract_address!r}")
    units = 0
    try:
        units = to_base_units(payment.amount, payment.token.decimals)
    except ValueError as exc:
        errors.append(str(exc))
    else:
        if units <= 0:
            errors.append(f"amount must be positive: {payment.amount}")
    if signer is None:
        errors.append("no signing credential supplied")
    elif not abi.same_address(signer.address, payment.source_address):
        errors.append(
            f"credential address {signer.address} does not match source {payment.source_address}"
        )
    if errors:
        raise ValidationError(errors)
    return units


class PaymentExecutor:
    """Submit one native or token transfer for a claimed schedule.

    Each call broadcasts at most one transaction. Callers must hold the
    schedule's lease; the executor itself never touches the store.
    """

    def __init__(self, ledger: LedgerClient, price_feed: Any, policy: SchedulerPolicy) -> None:
        self.ledger = ledger
        self.price_feed = price_feed
        self.policy = policy

    def execute(
        self,
        payment: ScheduledPayment,
        signer: Signer,
        *,
        now: datetime | None = None,
        on_broadcast: Callable[[str], Any] | None = None,
    ) -> ExecutionOutcome:
        units = validate_payment(payment, signer)
        token = payment.token

        balance = self.ledger.get_balance(payment.source_address, token)
        if balance < units:
            raise InsufficientFunds(token.symbol, units, balance)

        if token.is_native:
            to, value, data = payment.recipient, units, None
        else:
            to, value, data = token.contract_address, 0, abi.encode_transfer(payment.recipient, units)

        shape: dict[str, Any] = {"from": payment.source_address, "to": to, "value": hex(value)}
        if data:
            shape["data"] = data
        fee = self.ledger.estimate_fee(shape)
        logger.info(
            "Executing %s: %s %s -> %s (%s)",
            payment.schedule_id,
            payment.amount,
            token.symbol,
            payment.recipient,
            format_fee_params(fee),
            extra={"schedule_id": payment.schedule_id},
        )
        tx = self.ledger.build_transaction(
            sender=payment.source_address, to=to, value=value, data=data, fee=fee
        )
        signed = signer.sign_transaction(tx)
        tx_hash = self.ledger.submit(signed)
        if on_broadcast is not None:
            try:
                on_broadcast(tx_hash)
            except StoreError as exc:
                logger.warning(
                    "Could not record broadcast of %s for %s: %s", tx_hash, payment.schedule_id, exc
                )

        receipt = self.ledger.await_receipt(tx_hash, self.policy.receipt_timeout)
        ensure_success(receipt, f"Transfer for schedule {payment.schedule_id}")
        outcome = outcome_from_receipt(
            payment.schedule_id, receipt, self.price_feed, executed_at=now or utcnow()
        )
        logger.info(
            "Schedule %s paid in %s (block %d, cost %s ETH)",
            payment.schedule_id,
            tx_hash,
            receipt.block_number,
            outcome.cost_native,
            extra={"schedule_id": payment.schedule_id, "tx_hash": tx_hash},
        )
        return outcome
