"""Failure classification and ledger reconciliation.

A local failure does not prove a transfer failed: a node may answer "already
known" or time out for a transaction the network goes on to mine. Before any
retry is scheduled the controller asks the ledger whether a matching transfer
already confirmed, and reports it as a recovered success if so.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from .config import SchedulerPolicy
from .errors import PaymentError, RecoverableLedgerError, TerminalLedgerError
from .executor import outcome_from_receipt
from .ledger import LedgerClient
from .model import (
    Decision,
    PermanentlyFailed,
    Receipt,
    RecoveredCompleted,
    Retry,
    ScheduledPayment,
    utcnow,
)
from .store import ScheduleStore

logger = logging.getLogger(__name__)

#: Recoverable kinds where an earlier broadcast for this schedule may have landed.
SEARCH_KINDS = frozenset({"already_known", "nonce_conflict", "timeout", "network"})


class RecoveryController:
    def __init__(
        self,
        ledger: LedgerClient,
        policy: SchedulerPolicy,
        price_feed: Any = None,
        store: ScheduleStore | None = None,
    ) -> None:
        self.ledger = ledger
        self.policy = policy
        self.price_feed = price_feed
        self.store = store

    def handle_failure(
        self,
        schedule: ScheduledPayment,
        error: BaseException,
        executor_id: str,
        *,
        now: datetime | None = None,
    ) -> Decision:
        """Decide between a recovered success, a retry and a permanent failure."""

        now = now or utcnow()
        if not isinstance(error, PaymentError):
            logger.error(
                "Unclassified failure executing %s: %r",
                schedule.schedule_id,
                error,
                exc_info=logger.isEnabledFor(logging.DEBUG),
                extra={"schedule_id": schedule.schedule_id, "worker_id": executor_id},
            )
            return PermanentlyFailed(f"Unexpected error: {error}")
        if error.terminal:
            logger.warning(
                "Terminal failure for %s: %s",
                schedule.schedule_id,
                error,
                extra={"schedule_id": schedule.schedule_id, "worker_id": executor_id},
            )
            return PermanentlyFailed(str(error))

        if isinstance(error, RecoverableLedgerError):
            tx_hash = error.tx_hash or schedule.pending_tx_hash
            receipt = self.reconcile(
                schedule, tx_hash=tx_hash, search=error.kind in SEARCH_KINDS
            )
            if receipt is not None:
                if not receipt.success:
                    return PermanentlyFailed(
                        f"Transfer {receipt.tx_hash} reverted in block {receipt.block_number}"
                    )
                logger.info(
                    "Recovered %s: %s (%s) had already confirmed as %s",
                    schedule.schedule_id,
                    error.kind,
                    error,
                    receipt.tx_hash,
                    extra={"schedule_id": schedule.schedule_id, "tx_hash": receipt.tx_hash},
                )
                return self.recovered(schedule, receipt, now)

        return self.retry_or_fail(schedule, str(error), now)

    def retry_or_fail(self, schedule: ScheduledPayment, reason: str, now: datetime) -> Decision:
        attempt = schedule.retry_count + 1
        if attempt >= self.policy.max_retries:
            logger.warning(
                "Retries exhausted for %s (%d/%d): %s",
                schedule.schedule_id,
                attempt,
                self.policy.max_retries,
                reason,
                extra={"schedule_id": schedule.schedule_id},
            )
            return PermanentlyFailed(
                f"{reason} (retries exhausted {attempt}/{self.policy.max_retries})"
            )
        delay = self.policy.retry_delay_for(attempt)
        logger.info(
            "Retrying %s in %.0fs (attempt %d/%d): %s",
            schedule.schedule_id,
            delay,
            attempt,
            self.policy.max_retries,
            reason,
            extra={"schedule_id": schedule.schedule_id},
        )
        return Retry(delay=delay, next_attempt_at=now + timedelta(seconds=delay), reason=reason)

    def recovered(self, schedule: ScheduledPayment, receipt: Receipt, now: datetime) -> RecoveredCompleted:
        return RecoveredCompleted(
            outcome_from_receipt(
                schedule.schedule_id, receipt, self.price_feed, executed_at=now, recovered=True
            )
        )

    def reconcile(
        self,
        schedule: ScheduledPayment,
        *,
        tx_hash: str | None = None,
        search: bool = True,
        window: float | None = None,
    ) -> Receipt | None:
        """Return the receipt of a transfer that already settled this occurrence.

        A known ``tx_hash`` is checked first. With ``search`` the recent blocks
        are scanned for a matching transfer from the same source. Ledger errors
        while reconciling count as "not found".
        """

        try:
            if tx_hash:
                receipt = self.ledger.get_receipt(tx_hash)
                if receipt is not None:
                    return receipt
            if search:
                settled, last_block = self.settled_history(schedule)
                return self.ledger.find_recent_tx(
                    schedule.source_address,
                    schedule.recipient,
                    schedule.base_amount,
                    window or self.policy.reconciliation_window,
                    token=schedule.token,
                    exclude=settled,
                    after_block=last_block,
                )
        except PaymentError as exc:
            logger.warning(
                "Reconciliation for %s failed: %s",
                schedule.schedule_id,
                exc,
                extra={"schedule_id": schedule.schedule_id},
            )
        return None

    def settled_history(self, schedule: ScheduledPayment) -> tuple[set[str], int | None]:
        """Transfers already accounted to ``schedule`` and the newest block holding one.

        An earlier occurrence pays the same recipient the same amount, so a
        search must never match it again.
        """

        settled = {schedule.last_tx_hash} if schedule.last_tx_hash else set()
        last_block: int | None = None
        if self.store is not None:
            for record in self.store.execution_records(schedule.schedule_id):
                settled.add(record.tx_hash)
                if last_block is None or record.block_number > last_block:
                    last_block = record.block_number
        if last_block is None and schedule.last_tx_hash:
            receipt = self.ledger.get_receipt(schedule.last_tx_hash)
            if receipt is not None:
                last_block = receipt.block_number
        return settled, last_block

    def resume(
        self,
        schedule: ScheduledPayment,
        *,
        now: datetime | None = None,
        search: bool = False,
        window: float | None = None,
    ) -> Decision | None:
        """Settle a claimed occurrence that may already have been broadcast.

        Returns ``None`` when nothing was sent (or it was dropped by the
        network) and a fresh execution is safe.
        """

        now = now or utcnow()
        tx_hash = schedule.pending_tx_hash
        if not tx_hash and not search:
            return None
        receipt = self.reconcile(schedule, tx_hash=tx_hash, search=search, window=window)
        if receipt is not None:
            if receipt.success:
                return self.recovered(schedule, receipt, now)
            return PermanentlyFailed(
                f"Earlier transfer {receipt.tx_hash} reverted in block {receipt.block_number}"
            )
        if tx_hash:
            try:
                pending = self.ledger.is_pending(tx_hash)
            except PaymentError as exc:
                return self.handle_failure(schedule, exc, "resume", now=now)
            if pending:
                return self.retry_or_fail(
                    schedule, f"Earlier transfer {tx_hash} is still pending", now
                )
        return None


def failure_receipt(error: BaseException) -> Receipt | None:
    """The reverted receipt attached to ``error``, if any."""

    if isinstance(error, TerminalLedgerError) and isinstance(error.receipt, Receipt):
        return error.receipt
    return None
