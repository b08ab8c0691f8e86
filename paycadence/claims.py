"""Lease-based claims on schedules.

A claim is a single conditional update: the schedule moves to ``processing``
with the worker's identity only if it is still claimable at that instant.
Two workers racing on the same schedule can never both observe success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import SchedulerPolicy
from .errors import LeaseConflict, StoreError
from .model import ScheduledPayment, ScheduleStatus, utcnow
from .store import ScheduleStore, all_of, any_of, column_lt, eq, is_null, lt, lte

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claimed:
    schedule: ScheduledPayment
    #: Holder of the stale lease this claim replaced, if any.
    reclaimed_from: str | None = None


@dataclass(frozen=True)
class AlreadyClaimed:
    schedule_id: str
    holder: str | None
    reason: str


ClaimResult = Claimed | AlreadyClaimed


class ClaimManager:
    def __init__(self, store: ScheduleStore, policy: SchedulerPolicy) -> None:
        self.store = store
        self.policy = policy

    def try_claim(
        self,
        schedule_id: str,
        worker_id: str,
        ttl: float | None = None,
        *,
        now: datetime | None = None,
    ) -> ClaimResult:
        """Take the lease on ``schedule_id`` if it is due and unleased (or stale)."""

        now = now or utcnow()
        ttl = self.policy.lease_ttl if ttl is None else ttl
        stale_cutoff = now - timedelta(seconds=ttl)
        previous = self.store.get(schedule_id)
        if previous is None:
            return AlreadyClaimed(schedule_id, None, "schedule not found")

        precondition = any_of(
            all_of(
                eq("status", ScheduleStatus.ACTIVE),
                lte("next_execution_at", now),
                column_lt("executed_count", "max_executions"),
                any_of(is_null("processing_by"), lt("processing_started", stale_cutoff)),
            ),
            all_of(
                eq("status", ScheduleStatus.PROCESSING),
                lt("processing_started", stale_cutoff),
            ),
        )
        matched = self.store.atomic_update(
            schedule_id,
            [precondition],
            {
                "status": ScheduleStatus.PROCESSING,
                "processing_by": worker_id,
                "processing_started": now,
                "updated_at": now,
            },
        )
        if not matched:
            current = self.store.get(schedule_id)
            holder = current.processing_by if current else None
            reason = self._explain(current, now, ttl)
            logger.info(
                "Claim on %s by %s refused: %s",
                schedule_id,
                worker_id,
                reason,
                extra={"schedule_id": schedule_id, "worker_id": worker_id},
            )
            return AlreadyClaimed(schedule_id, holder, reason)

        reclaimed_from = None
        if previous.status is ScheduleStatus.PROCESSING and previous.processing_by != worker_id:
            reclaimed_from = previous.processing_by
            logger.warning(
                "Reclaimed stale lease on %s from %s",
                schedule_id,
                reclaimed_from,
                extra={"schedule_id": schedule_id, "worker_id": worker_id},
            )
        claimed = self.store.get(schedule_id)
        if claimed is None:
            raise StoreError(f"Schedule {schedule_id} vanished after claim")
        logger.debug("Worker %s claimed %s", worker_id, schedule_id)
        return Claimed(claimed, reclaimed_from)

    def claim_or_raise(
        self,
        schedule_id: str,
        worker_id: str,
        ttl: float | None = None,
        *,
        now: datetime | None = None,
    ) -> Claimed:
        result = self.try_claim(schedule_id, worker_id, ttl, now=now)
        if isinstance(result, AlreadyClaimed):
            raise LeaseConflict(schedule_id, result.holder)
        return result

    def release(self, schedule_id: str, worker_id: str, *, now: datetime | None = None) -> bool:
        """Return a held lease without recording an outcome.

        A no-op when the lease has already passed to another holder.
        """

        now = now or utcnow()
        released = self.store.atomic_update(
            schedule_id,
            [eq("status", ScheduleStatus.PROCESSING), eq("processing_by", worker_id)],
            {
                "status": ScheduleStatus.ACTIVE,
                "processing_by": None,
                "processing_started": None,
                "updated_at": now,
            },
        )
        if not released:
            logger.debug("Release of %s by %s skipped; lease not held", schedule_id, worker_id)
        return released

    @staticmethod
    def _explain(current: ScheduledPayment | None, now: datetime, ttl: float) -> str:
        if current is None:
            return "schedule not found"
        if current.status is ScheduleStatus.PROCESSING:
            age = current.lease_age(now)
            return f"leased by {current.processing_by} ({age or 0:.0f}s of {ttl:.0f}s)"
        if current.status is not ScheduleStatus.ACTIVE:
            return f"status is {current.status.value}"
        if current.next_execution_at is None or current.next_execution_at > now:
            return "not due"
        if current.executed_count >= current.max_executions:
            return "execution limit reached"
        return "precondition changed"
