"""Due-payment selection.

Selection is a cheap, side-effect-free pre-filter. Exclusivity is enforced by
:class:`paycadence.claims.ClaimManager`; anything selected here may still lose
the claim race.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .config import SchedulerPolicy
from .model import ScheduledPayment, ScheduleStatus, utcnow
from .store import Clause, ScheduleStore, any_of, eq, is_null, lt, lte

logger = logging.getLogger(__name__)


class DuePaymentSelector:
    def __init__(self, store: ScheduleStore, policy: SchedulerPolicy) -> None:
        self.store = store
        self.policy = policy

    def due_clauses(self, now: datetime, *, force: bool = False) -> list[Clause]:
        """Store predicate for schedules that look executable at ``now``.

        ``force`` drops the guard and settle windows, which only protect
        against duplicate cron firings and records still being written.
        """

        lease_cutoff = now - timedelta(seconds=self.policy.lease_ttl)
        clauses = [
            eq("status", ScheduleStatus.ACTIVE),
            lte("next_execution_at", now),
            any_of(is_null("processing_by"), lt("processing_started", lease_cutoff)),
        ]
        if not force:
            guard_cutoff = now - timedelta(seconds=self.policy.guard_window)
            settle_cutoff = now - timedelta(seconds=self.policy.settle_window)
            clauses += [
                any_of(is_null("last_execution_at"), lt("last_execution_at", guard_cutoff)),
                any_of(is_null("created_at"), lt("created_at", settle_cutoff)),
                any_of(is_null("updated_at"), lt("updated_at", settle_cutoff)),
            ]
        return clauses

    def select_due(
        self,
        now: datetime | None = None,
        limit: int | None = None,
        *,
        force: bool = False,
    ) -> list[ScheduledPayment]:
        now = now or utcnow()
        limit = self.policy.selection_limit if limit is None else limit
        candidates = self.store.find(
            self.due_clauses(now, force=force), order_by=["next_execution_at"], limit=limit
        )
        selected = []
        for candidate in candidates:
            reason = self.rejection_reason(candidate, now)
            if reason is not None:
                logger.info(
                    "Skipping schedule %s: %s",
                    candidate.schedule_id,
                    reason,
                    extra={"schedule_id": candidate.schedule_id},
                )
                continue
            selected.append(candidate)
        logger.debug("Selected %d of %d due candidates", len(selected), len(candidates))
        return selected

    @staticmethod
    def rejection_reason(schedule: ScheduledPayment, now: datetime) -> str | None:
        """Second-pass safety checks; returns why ``schedule`` must be dropped."""

        if schedule.executed_count >= schedule.max_executions:
            return (
                f"execution limit reached ({schedule.executed_count}/{schedule.max_executions})"
            )
        if schedule.status is ScheduleStatus.PROCESSING:
            return "already processing"
        if schedule.next_execution_at is None:
            return "no next execution time"
        if schedule.frequency.recurring and schedule.next_execution_at > now:
            return f"next execution {schedule.next_execution_at.isoformat()} is in the future"
        if not schedule.frequency.recurring and schedule.executed_count != 0:
            return "one-time payment already executed"
        return None
