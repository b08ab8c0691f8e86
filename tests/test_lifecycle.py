from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from paycadence.claims import ClaimManager
from paycadence.lifecycle import LifecycleWriter, failed_record
from paycadence.model import (
    ExecutionOutcome,
    Frequency,
    PermanentlyFailed,
    Receipt,
    Retry,
    ScheduleStatus,
)

UTC = timezone.utc


@pytest.fixture
def lifecycle(store, policy) -> LifecycleWriter:
    return LifecycleWriter(store, policy)


@pytest.fixture
def claim(store, policy, now):
    manager = ClaimManager(store, policy)

    def take(schedule, worker_id: str = "worker-a"):
        return manager.claim_or_raise(schedule.schedule_id, worker_id, now=now).schedule

    return take


def _outcome(schedule_id: str, executed_at: datetime, *, tx_hash: str = "0xpaid", success: bool = True) -> ExecutionOutcome:
    return ExecutionOutcome(
        schedule_id=schedule_id,
        tx_hash=tx_hash,
        receipt=Receipt(tx_hash=tx_hash, success=success, block_number=101, gas_used=21_000, effective_gas_price=10**10),
        cost_native=Decimal("0.00021"),
        cost_fiat=Decimal("0.42"),
        executed_at=executed_at,
    )


def test_once_completes(lifecycle, claim, store, make_schedule, now) -> None:
    schedule = claim(make_schedule())

    assert lifecycle.apply_success(schedule, _outcome(schedule.schedule_id, now), "worker-a", now=now)

    stored = store.get(schedule.schedule_id)
    assert stored.status is ScheduleStatus.COMPLETED
    assert stored.next_execution_at is None
    assert stored.executed_count == 1
    assert stored.completed_at == now
    assert stored.processing_by is None
    assert stored.last_tx_hash == "0xpaid"
    [record] = store.execution_records(schedule.schedule_id)
    assert record.occurrence == 1
    assert record.outcome == "completed"
    assert record.executor_id == "worker-a"


def test_monthly_advances_from_the_occurrence_not_the_clock(lifecycle, claim, store, make_schedule, now) -> None:
    base = datetime(2024, 4, 30, 9, 0, tzinfo=UTC)
    schedule = claim(
        make_schedule(frequency=Frequency.MONTHLY, executed_count=2, max_executions=12, next_execution_at=base)
    )

    lifecycle.apply_success(schedule, _outcome(schedule.schedule_id, now), "worker-a", now=now)

    stored = store.get(schedule.schedule_id)
    assert stored.status is ScheduleStatus.ACTIVE
    assert stored.executed_count == 3
    assert stored.next_execution_at == datetime(2024, 5, 30, 9, 0, tzinfo=UTC)
    assert stored.retry_count == 0


def test_last_allowed_execution_completes_recurring_schedule(lifecycle, claim, store, make_schedule, now) -> None:
    schedule = claim(make_schedule(frequency=Frequency.WEEKLY, executed_count=3, max_executions=4))

    lifecycle.apply_success(schedule, _outcome(schedule.schedule_id, now), "worker-a", now=now)

    assert store.get(schedule.schedule_id).status is ScheduleStatus.COMPLETED


def test_same_occurrence_cannot_be_recorded_twice(lifecycle, claim, store, make_schedule, now) -> None:
    snapshot = claim(make_schedule(frequency=Frequency.DAILY, max_executions=10))

    assert lifecycle.apply_success(snapshot, _outcome(snapshot.schedule_id, now), "worker-a", now=now)
    assert not lifecycle.apply_success(
        snapshot, _outcome(snapshot.schedule_id, now, tx_hash="0xdouble"), "worker-b", now=now
    )

    stored = store.get(snapshot.schedule_id)
    assert stored.executed_count == 1
    assert [record.tx_hash for record in store.execution_records(snapshot.schedule_id)] == ["0xpaid"]


def test_cancel_mid_flight_keeps_status_but_records_payment(lifecycle, claim, store, make_schedule, now) -> None:
    schedule = claim(make_schedule(frequency=Frequency.DAILY, max_executions=10))

    assert lifecycle.cancel(schedule.schedule_id, "alice", now=now)
    assert lifecycle.apply_success(schedule, _outcome(schedule.schedule_id, now), "worker-a", now=now)

    stored = store.get(schedule.schedule_id)
    assert stored.status is ScheduleStatus.CANCELLED
    assert stored.next_execution_at is None
    assert stored.executed_count == 1
    assert len(store.execution_records(schedule.schedule_id)) == 1


def test_cancel_rules(lifecycle, store, make_schedule, now) -> None:
    schedule = make_schedule()
    finished = make_schedule(status=ScheduleStatus.COMPLETED)

    assert not lifecycle.cancel(schedule.schedule_id, "mallory", now=now)
    assert not lifecycle.cancel(finished.schedule_id, "alice", now=now)
    assert lifecycle.cancel(schedule.schedule_id, "alice", now=now)
    assert store.get(schedule.schedule_id).cancelled_at == now


def test_retry_reschedules_and_keeps_broadcast_hash(lifecycle, claim, store, make_schedule, now) -> None:
    schedule = claim(make_schedule())
    decision = Retry(delay=60, next_attempt_at=now + timedelta(seconds=60), reason="timed out")

    assert lifecycle.apply_decision(schedule, decision, "worker-a", tx_hash="0xsent", now=now)

    stored = store.get(schedule.schedule_id)
    assert stored.status is ScheduleStatus.ACTIVE
    assert stored.next_execution_at == now + timedelta(seconds=60)
    assert stored.retry_count == 1
    assert stored.last_error == "timed out"
    assert stored.pending_tx_hash == "0xsent"
    assert stored.processing_by is None


def test_retry_never_moves_due_time_backwards(lifecycle, claim, store, make_schedule, now) -> None:
    later = now + timedelta(days=1)
    schedule = claim(make_schedule(next_execution_at=now - timedelta(seconds=1)))
    schedule = schedule.with_changes(next_execution_at=later)
    decision = Retry(delay=60, next_attempt_at=now + timedelta(seconds=60), reason="network")

    lifecycle.apply_retry(schedule, decision, "worker-a", now=now)

    assert store.get(schedule.schedule_id).next_execution_at == later


def test_permanent_failure_clears_lease_and_next(lifecycle, claim, store, make_schedule, now) -> None:
    schedule = claim(make_schedule(retry_count=2, pending_tx_hash="0xsent"))
    outcome = _outcome(schedule.schedule_id, now, tx_hash="0xreverted", success=False)

    lifecycle.apply_decision(
        schedule,
        PermanentlyFailed("reverted"),
        "worker-a",
        record=failed_record(outcome, schedule, "worker-a"),
        now=now,
    )

    stored = store.get(schedule.schedule_id)
    assert stored.status is ScheduleStatus.FAILED
    assert stored.next_execution_at is None
    assert stored.failed_at == now
    assert stored.processing_by is None
    assert stored.processing_started is None
    assert stored.pending_tx_hash is None
    assert stored.retry_count == 3
    [record] = store.execution_records(schedule.schedule_id)
    assert record.outcome == "failed"


def test_writes_require_the_lease(lifecycle, claim, store, make_schedule, now) -> None:
    schedule = claim(make_schedule())
    decision = Retry(delay=60, next_attempt_at=now + timedelta(seconds=60), reason="x")

    assert not lifecycle.apply_retry(schedule, decision, "worker-b", now=now)
    assert not lifecycle.apply_failure(schedule, "x", "worker-b", now=now)
    assert not lifecycle.note_broadcast(schedule.schedule_id, "worker-b", "0xsent", now=now)
    assert lifecycle.note_broadcast(schedule.schedule_id, "worker-a", "0xsent", now=now)
    assert store.get(schedule.schedule_id).status is ScheduleStatus.PROCESSING
