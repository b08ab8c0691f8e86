"""Applies execution outcomes and recovery decisions to schedules.

Every write is one conditional update. A successful execution is recorded
together with its :class:`~paycadence.model.ExecutionRecord` in the same
transaction, keyed by occurrence number, so an occurrence can never be
counted or recorded as completed twice.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any

from .config import SchedulerPolicy
from .model import (
    Decision,
    ExecutionOutcome,
    ExecutionRecord,
    PermanentlyFailed,
    RecoveredCompleted,
    Retry,
    ScheduledPayment,
    ScheduleStatus,
    utcnow,
)
from .recurrence import beyond_horizon, next_occurrence
from .store import ScheduleStore, eq, in_

logger = logging.getLogger(__name__)

_LEASE_CLEARED = {"processing_by": None, "processing_started": None}


class LifecycleWriter:
    def __init__(self, store: ScheduleStore, policy: SchedulerPolicy) -> None:
        self.store = store
        self.policy = policy

    # Success -----------------------------------------------------------------

    def plan_next(
        self, schedule: ScheduledPayment, executed_count: int, now: datetime
    ) -> datetime | None:
        """Next due time after a success, or ``None`` when the schedule is done."""

        if executed_count >= schedule.max_executions:
            return None
        base = schedule.next_execution_at or now
        candidate = next_occurrence(base, schedule.frequency)
        if candidate is None or beyond_horizon(candidate, now):
            return None
        return candidate

    def apply_success(
        self,
        schedule: ScheduledPayment,
        outcome: ExecutionOutcome,
        worker_id: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Count the execution, reschedule or complete, and release the lease.

        ``schedule`` is the state observed at claim time. The update is guarded
        on its ``executed_count`` so a second writer for the same occurrence
        matches nothing. A schedule cancelled mid-flight keeps its cancelled
        status but still records the payment that went out.
        """

        now = now or utcnow()
        count = schedule.executed_count + 1
        next_at = self.plan_next(schedule, count, now)
        record = ExecutionRecord.from_outcome(outcome, occurrence=count, executor_id=worker_id)
        patch: dict[str, Any] = {
            "executed_count": count,
            "last_execution_at": outcome.executed_at,
            "last_tx_hash": outcome.tx_hash,
            "pending_tx_hash": None,
            "retry_count": 0,
            "last_error": None,
            "updated_at": now,
            **_LEASE_CLEARED,
        }
        if next_at is None:
            patch.update(
                status=ScheduleStatus.COMPLETED, next_execution_at=None, completed_at=now
            )
        else:
            patch.update(status=ScheduleStatus.ACTIVE, next_execution_at=next_at)

        guard = eq("executed_count", schedule.executed_count)
        if self.store.atomic_update(
            schedule.schedule_id,
            [guard, in_("status", [ScheduleStatus.PROCESSING, ScheduleStatus.ACTIVE])],
            patch,
            record=record,
        ):
            logger.info(
                "Schedule %s occurrence %d %s%s",
                schedule.schedule_id,
                count,
                "completed" if next_at is None else f"rescheduled for {next_at.isoformat()}",
                " (recovered)" if outcome.recovered else "",
                extra={"schedule_id": schedule.schedule_id, "tx_hash": outcome.tx_hash},
            )
            return True

        cancelled_patch = {
            key: patch[key]
            for key in (
                "executed_count",
                "last_execution_at",
                "last_tx_hash",
                "pending_tx_hash",
                "updated_at",
                "processing_by",
                "processing_started",
            )
        }
        if self.store.atomic_update(
            schedule.schedule_id,
            [guard, eq("status", ScheduleStatus.CANCELLED)],
            cancelled_patch,
            record=record,
        ):
            logger.info(
                "Schedule %s was cancelled during execution; recorded %s",
                schedule.schedule_id,
                outcome.tx_hash,
            )
            return True

        logger.error(
            "Could not record success of %s occurrence %d (%s); schedule changed underneath",
            schedule.schedule_id,
            count,
            outcome.tx_hash,
            extra={"schedule_id": schedule.schedule_id, "tx_hash": outcome.tx_hash},
        )
        return False

    def note_broadcast(
        self, schedule_id: str, worker_id: str, tx_hash: str, *, now: datetime | None = None
    ) -> bool:
        """Remember a broadcast transfer so later attempts reconcile it first."""

        return self.store.atomic_update(
            schedule_id,
            [eq("status", ScheduleStatus.PROCESSING), eq("processing_by", worker_id)],
            {"pending_tx_hash": tx_hash, "updated_at": now or utcnow()},
        )

    # Failures ----------------------------------------------------------------

    def apply_retry(
        self,
        schedule: ScheduledPayment,
        decision: Retry,
        worker_id: str,
        *,
        tx_hash: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        next_at = decision.next_attempt_at
        if schedule.next_execution_at is not None and schedule.next_execution_at > next_at:
            next_at = schedule.next_execution_at
        updated = self.store.atomic_update(
            schedule.schedule_id,
            [eq("status", ScheduleStatus.PROCESSING), eq("processing_by", worker_id)],
            {
                "status": ScheduleStatus.ACTIVE,
                "next_execution_at": next_at,
                "retry_count": schedule.retry_count + 1,
                "last_error": decision.reason,
                "pending_tx_hash": tx_hash or schedule.pending_tx_hash,
                "updated_at": now,
                **_LEASE_CLEARED,
            },
        )
        if not updated:
            logger.warning("Lease on %s lost before retry could be recorded", schedule.schedule_id)
        return updated

    def apply_failure(
        self,
        schedule: ScheduledPayment,
        reason: str,
        worker_id: str,
        *,
        record: ExecutionRecord | None = None,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        updated = self.store.atomic_update(
            schedule.schedule_id,
            [eq("status", ScheduleStatus.PROCESSING), eq("processing_by", worker_id)],
            {
                "status": ScheduleStatus.FAILED,
                "next_execution_at": None,
                "failed_at": now,
                "last_error": reason,
                "retry_count": schedule.retry_count + 1,
                "pending_tx_hash": None,
                "updated_at": now,
                **_LEASE_CLEARED,
            },
            record=record,
        )
        if updated:
            logger.warning(
                "Schedule %s failed permanently: %s",
                schedule.schedule_id,
                reason,
                extra={"schedule_id": schedule.schedule_id},
            )
        else:
            logger.warning("Lease on %s lost before failure could be recorded", schedule.schedule_id)
        return updated

    def apply_decision(
        self,
        schedule: ScheduledPayment,
        decision: Decision,
        worker_id: str,
        *,
        tx_hash: str | None = None,
        record: ExecutionRecord | None = None,
        now: datetime | None = None,
    ) -> bool:
        if isinstance(decision, RecoveredCompleted):
            return self.apply_success(schedule, decision.outcome, worker_id, now=now)
        if isinstance(decision, Retry):
            return self.apply_retry(schedule, decision, worker_id, tx_hash=tx_hash, now=now)
        if isinstance(decision, PermanentlyFailed):
            return self.apply_failure(schedule, decision.reason, worker_id, record=record, now=now)
        raise TypeError(f"Unknown decision: {decision!r}")

    # Owner actions -----------------------------------------------------------

    def cancel(self, schedule_id: str, owner: str, *, now: datetime | None = None) -> bool:
        """Cancel a non-terminal schedule regardless of who holds its lease."""

        now = now or utcnow()
        cancelled = self.store.atomic_update(
            schedule_id,
            [
                eq("owner", owner),
                in_("status", [ScheduleStatus.ACTIVE, ScheduleStatus.PROCESSING]),
            ],
            {
                "status": ScheduleStatus.CANCELLED,
                "next_execution_at": None,
                "cancelled_at": now,
                "updated_at": now,
                **_LEASE_CLEARED,
            },
        )
        if cancelled:
            logger.info("Schedule %s cancelled by %s", schedule_id, owner)
        return cancelled


def failed_record(
    outcome: ExecutionOutcome, schedule: ScheduledPayment, worker_id: str
) -> ExecutionRecord:
    """Execution record for a transfer that reached the ledger and reverted."""

    record = ExecutionRecord.from_outcome(
        outcome, occurrence=schedule.executed_count + 1, executor_id=worker_id
    )
    return replace(record, outcome="failed")
