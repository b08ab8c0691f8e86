"""Scheduler service: the select, claim, execute, recover and write pipeline."""

from __future__ import annotations

import logging
import socket
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from . import abi
from .claims import AlreadyClaimed, ClaimManager, Claimed
from .config import SchedulerPolicy
from .errors import InvalidFrequency, StoreError, ValidationError
from .executor import PaymentExecutor, outcome_from_receipt
from .ledger import LedgerClient
from .lifecycle import LifecycleWriter, failed_record
from .model import (
    Decision,
    ExecutionOutcome,
    Frequency,
    PermanentlyFailed,
    RecoveredCompleted,
    Retry,
    ScheduledPayment,
    ScheduleIntent,
    ScheduleStatus,
    to_base_units,
    utcnow,
)
from .recovery import RecoveryController, failure_receipt
from .recurrence import parse_frequency
from .selector import DuePaymentSelector
from .store import ScheduleStore, eq, gt, lt, lte

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


@dataclass
class ScheduleResult:
    schedule_id: str
    outcome: str
    tx_hash: str | None = None
    detail: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "outcome": self.outcome,
            "tx_hash": self.tx_hash,
            "detail": self.detail,
        }


@dataclass
class RunSummary:
    results: List[ScheduleResult] = field(default_factory=list)

    def add(self, result: ScheduleResult) -> None:
        self.results.append(result)

    def _count(self, *outcomes: str) -> int:
        return sum(1 for result in self.results if result.outcome in outcomes)

    @property
    def processed(self) -> int:
        return len(self.results) - self.skipped

    @property
    def succeeded(self) -> int:
        return self._count("completed", "rescheduled", "recovered")

    @property
    def recovered(self) -> int:
        return self._count("recovered")

    @property
    def retried(self) -> int:
        return self._count("retry")

    @property
    def failed(self) -> int:
        return self._count("failed", "error")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "recovered": self.recovered,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [result.as_dict() for result in self.results],
        }


@dataclass
class SchedulerStats:
    active: int
    processing: int
    completed: int
    failed: int
    cancelled: int
    due_now: int
    upcoming_24h: int

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class PollReport:
    due: int
    claimable: int
    stats: SchedulerStats

    def as_dict(self) -> Dict[str, Any]:
        return {"due": self.due, "claimable": self.claimable, "stats": self.stats.as_dict()}


class PaymentScheduler:
    """Entry points for creating, cancelling and running scheduled payments.

    All collaborators are injected; one instance per process is expected,
    shared by the CLI commands or the :class:`PollingWorker` driving it.
    """

    def __init__(
        self,
        store: ScheduleStore,
        ledger: LedgerClient,
        credentials: Any,
        price_feed: Any,
        policy: SchedulerPolicy | None = None,
        *,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.credentials = credentials
        self.price_feed = price_feed
        self.policy = policy or SchedulerPolicy()
        self.worker_id = worker_id or default_worker_id()
        self.selector = DuePaymentSelector(store, self.policy)
        self.claims = ClaimManager(store, self.policy)
        self.executor = PaymentExecutor(ledger, price_feed, self.policy)
        self.recovery = RecoveryController(ledger, self.policy, price_feed, store)
        self.lifecycle = LifecycleWriter(store, self.policy)

    # Creation and cancellation -------------------------------------------

    def create_schedule(
        self, intent: ScheduleIntent, *, now: datetime | None = None
    ) -> ScheduledPayment:
        now = now or utcnow()
        errors: list[str] = []
        if not str(intent.owner or "").strip():
            errors.append("owner is required")
        if not abi.is_address(intent.source_address):
            errors.append(f"invalid source address: {intent.source_address!r}")
        if not abi.is_address(intent.recipient):
            errors.append(f"invalid recipient address: {intent.recipient!r}")
        if not intent.token.is_native and not abi.is_address(intent.token.contract_address):
            errors.append(f"invalid token contract: {intent.token.contract_address!r}")
        if not 0 <= intent.token.decimals <= 77:
            errors.append(f"invalid token decimals: {intent.token.decimals}")
        else:
            try:
                if to_base_units(intent.amount, intent.token.decimals) <= 0:
                    errors.append(f"amount must be positive: {intent.amount}")
            except ValueError as exc:
                errors.append(str(exc))

        frequency: Frequency | None = None
        try:
            frequency = parse_frequency(intent.frequency)
        except InvalidFrequency as exc:
            errors.append(str(exc))

        max_executions = intent.max_executions
        if frequency is Frequency.ONCE:
            if max_executions not in (None, 1):
                errors.append("one-time schedules execute exactly once")
            max_executions = 1
        elif max_executions is None:
            max_executions = self.policy.default_max_executions
        if max_executions is not None and max_executions < 1:
            errors.append(f"max_executions must be at least 1: {max_executions}")
        if errors:
            raise ValidationError(errors)
        assert frequency is not None and max_executions is not None

        first = intent.first_execution_at
        if first.tzinfo is None:
            first = first.replace(tzinfo=timezone.utc)
        schedule = ScheduledPayment(
            schedule_id=uuid.uuid4().hex,
            owner=intent.owner,
            source_address=intent.source_address,
            token=intent.token,
            recipient=intent.recipient,
            amount=str(intent.amount),
            frequency=frequency,
            status=ScheduleStatus.ACTIVE,
            next_execution_at=first,
            max_executions=max_executions,
            created_at=now,
            updated_at=now,
            description=intent.description,
        )
        self.store.insert(schedule)
        logger.info(
            "Created %s schedule %s: %s %s -> %s from %s",
            frequency.value,
            schedule.schedule_id,
            schedule.amount,
            schedule.token.symbol,
            schedule.recipient,
            first.isoformat(),
            extra={"schedule_id": schedule.schedule_id},
        )
        return schedule

    def cancel(self, schedule_id: str, owner: str, *, now: datetime | None = None) -> bool:
        return self.lifecycle.cancel(schedule_id, owner, now=now)

    # Runs -----------------------------------------------------------------

    def run_once(
        self, now: datetime | None = None, *, force: bool = False, limit: int | None = None
    ) -> RunSummary:
        """Process the current due set once."""

        summary = RunSummary()
        for candidate in self.selector.select_due(now or utcnow(), limit, force=force):
            summary.add(self.process(candidate.schedule_id, now=now))
        if summary.results:
            logger.info(
                "Run finished: %d processed, %d succeeded, %d retried, %d failed, %d skipped",
                summary.processed,
                summary.succeeded,
                summary.retried,
                summary.failed,
                summary.skipped,
            )
        return summary

    def trigger(self, now: datetime | None = None, *, limit: int | None = None) -> RunSummary:
        """Manual run that ignores the guard and settle windows; leases still apply."""

        logger.info("Manual trigger by %s", self.worker_id)
        return self.run_once(now, force=True, limit=limit)

    def process(self, schedule_id: str, *, now: datetime | None = None) -> ScheduleResult:
        claim = self.claims.try_claim(schedule_id, self.worker_id, now=now or utcnow())
        if isinstance(claim, AlreadyClaimed):
            return ScheduleResult(schedule_id, "skipped", detail=claim.reason)
        return self._run_claimed(claim, now=now)

    def recover_stale(self, now: datetime | None = None) -> RunSummary:
        """Reconcile schedules whose lease expired while processing.

        A matching confirmed transfer is recorded as a recovered success.
        Otherwise the lease is released so the occurrence runs again.
        """

        at = now or utcnow()
        cutoff = at - timedelta(seconds=self.policy.lease_ttl)
        stale = self.store.find(
            [eq("status", ScheduleStatus.PROCESSING), lt("processing_started", cutoff)],
            order_by=["processing_started"],
            limit=self.policy.selection_limit,
        )
        summary = RunSummary()
        for schedule in stale:
            claim = self.claims.try_claim(schedule.schedule_id, self.worker_id, now=at)
            if isinstance(claim, AlreadyClaimed):
                summary.add(ScheduleResult(schedule.schedule_id, "skipped", detail=claim.reason))
                continue
            summary.add(self._run_claimed(claim, now=now, execute=False))
        if stale:
            logger.info("Stale lease recovery handled %d schedule(s)", len(stale))
        return summary

    def _run_claimed(
        self, claim: Claimed, *, now: datetime | None = None, execute: bool = True
    ) -> ScheduleResult:
        schedule = claim.schedule
        schedule_id = schedule.schedule_id
        at = now or utcnow()
        reclaimed = claim.reclaimed_from is not None
        try:
            decision = self.recovery.resume(
                schedule,
                now=at,
                search=reclaimed,
                window=self.policy.lease_ttl + self.policy.reconciliation_window,
            )
            if decision is not None:
                self.lifecycle.apply_decision(schedule, decision, self.worker_id, now=at)
                return self._decision_result(schedule, decision)
            if not execute:
                self.claims.release(schedule_id, self.worker_id, now=at)
                return ScheduleResult(schedule_id, "released")
            try:
                outcome = self._execute(schedule, at)
            except StoreError:
                raise
            except Exception as exc:
                return self._handle_failure(schedule, exc, at)
            self.lifecycle.apply_success(schedule, outcome, self.worker_id, now=at)
            return self._success_result(schedule, outcome, at)
        except StoreError as exc:
            logger.error(
                "Store failure while processing %s; lease left to expire: %s",
                schedule_id,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
                extra={"schedule_id": schedule_id, "worker_id": self.worker_id},
            )
            return ScheduleResult(schedule_id, "error", detail=str(exc))

    def _execute(self, schedule: ScheduledPayment, now: datetime) -> ExecutionOutcome:
        signer = self.credentials.get_signing_credential(schedule.source_address)

        def on_broadcast(tx_hash: str) -> None:
            self.lifecycle.note_broadcast(schedule.schedule_id, self.worker_id, tx_hash, now=now)

        return self.executor.execute(schedule, signer, now=now, on_broadcast=on_broadcast)

    def _handle_failure(
        self, schedule: ScheduledPayment, error: Exception, now: datetime
    ) -> ScheduleResult:
        decision = self.recovery.handle_failure(schedule, error, self.worker_id, now=now)
        record = None
        receipt = failure_receipt(error)
        if receipt is not None and isinstance(decision, PermanentlyFailed):
            outcome = outcome_from_receipt(
                schedule.schedule_id, receipt, self.price_feed, executed_at=now
            )
            record = failed_record(outcome, schedule, self.worker_id)
        self.lifecycle.apply_decision(
            schedule,
            decision,
            self.worker_id,
            tx_hash=getattr(error, "tx_hash", None),
            record=record,
            now=now,
        )
        result = self._decision_result(schedule, decision)
        if result.tx_hash is None:
            result.tx_hash = getattr(error, "tx_hash", None)
        return result

    def _success_result(
        self, schedule: ScheduledPayment, outcome: ExecutionOutcome, now: datetime
    ) -> ScheduleResult:
        if outcome.recovered:
            label = "recovered"
        elif self.lifecycle.plan_next(schedule, schedule.executed_count + 1, now) is None:
            label = "completed"
        else:
            label = "rescheduled"
        return ScheduleResult(schedule.schedule_id, label, tx_hash=outcome.tx_hash)

    def _decision_result(self, schedule: ScheduledPayment, decision: Decision) -> ScheduleResult:
        if isinstance(decision, RecoveredCompleted):
            return ScheduleResult(
                schedule.schedule_id, "recovered", tx_hash=decision.outcome.tx_hash
            )
        if isinstance(decision, Retry):
            return ScheduleResult(schedule.schedule_id, "retry", detail=decision.reason)
        return ScheduleResult(schedule.schedule_id, "failed", detail=decision.reason)

    # Reporting ------------------------------------------------------------

    def stats(self, now: datetime | None = None) -> SchedulerStats:
        now = now or utcnow()
        counts = {
            status: self.store.count([eq("status", status)]) for status in ScheduleStatus
        }
        active = eq("status", ScheduleStatus.ACTIVE)
        return SchedulerStats(
            active=counts[ScheduleStatus.ACTIVE],
            processing=counts[ScheduleStatus.PROCESSING],
            completed=counts[ScheduleStatus.COMPLETED],
            failed=counts[ScheduleStatus.FAILED],
            cancelled=counts[ScheduleStatus.CANCELLED],
            due_now=self.store.count([active, lte("next_execution_at", now)]),
            upcoming_24h=self.store.count(
                [
                    active,
                    gt("next_execution_at", now),
                    lte("next_execution_at", now + timedelta(hours=24)),
                ]
            ),
        )

    def poll(self, now: datetime | None = None) -> PollReport:
        now = now or utcnow()
        stats = self.stats(now)
        return PollReport(
            due=stats.due_now,
            claimable=self.store.count(self.selector.due_clauses(now)),
            stats=stats,
        )


class PollingWorker:
    """Run stale-lease recovery and due-payment passes on a background thread.

    ``stop()`` is observed within one poll interval because the loop waits on
    an :class:`threading.Event` rather than sleeping.
    """

    def __init__(self, scheduler: PaymentScheduler, poll_interval_seconds: float | None = None) -> None:
        self.scheduler = scheduler
        self.poll_interval_seconds = (
            scheduler.policy.poll_interval if poll_interval_seconds is None else poll_interval_seconds
        )
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_cycle(self) -> RunSummary:
        self.scheduler.recover_stale()
        summary = self.scheduler.run_once()
        self.cycles += 1
        return summary

    def run_forever(self) -> None:
        logger.info(
            "Starting payment worker %s (poll every %ss)",
            self.scheduler.worker_id,
            self.poll_interval_seconds,
        )
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:  # pragma: no cover - best effort logging
                logger.exception("Payment worker cycle encountered an error")
            self._stop.wait(self.poll_interval_seconds)
        logger.info("Payment worker %s stopped", self.scheduler.worker_id)

    def start(self) -> "PollingWorker":
        if self.running:
            raise RuntimeError("Worker already running")
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name=f"paycadence-{self.scheduler.worker_id}", daemon=True
        )
        self._thread.start()
        return self

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> "PollingWorker":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
