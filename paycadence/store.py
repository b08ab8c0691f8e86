"""Persistence for schedules and execution records.

The store is the only shared mutable resource in the system. Every mutation
goes through :meth:`ScheduleStore.atomic_update`, a single conditional
``UPDATE`` so concurrent workers can never interleave a read-modify-write.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence

from .errors import StoreError
from .model import (
    ExecutionRecord,
    Frequency,
    ScheduledPayment,
    ScheduleStatus,
    TokenInfo,
    from_epoch,
    to_epoch,
)

logger = logging.getLogger(__name__)

SCHEDULE_COLUMNS = (
    "schedule_id",
    "owner",
    "source_address",
    "token_symbol",
    "token_name",
    "token_contract",
    "token_decimals",
    "recipient",
    "amount",
    "frequency",
    "status",
    "next_execution_at",
    "executed_count",
    "max_executions",
    "processing_by",
    "processing_started",
    "retry_count",
    "last_error",
    "failed_at",
    "created_at",
    "updated_at",
    "last_execution_at",
    "completed_at",
    "cancelled_at",
    "last_tx_hash",
    "pending_tx_hash",
    "description",
)

_TIMESTAMP_FIELDS = frozenset(
    {
        "next_execution_at",
        "processing_started",
        "failed_at",
        "created_at",
        "updated_at",
        "last_execution_at",
        "completed_at",
        "cancelled_at",
    }
)


# Filter clauses -----------------------------------------------------------


@dataclass(frozen=True)
class Clause:
    """A parameterised SQL predicate over the schedules table."""

    sql: str
    params: tuple[Any, ...] = ()


def _column(name: str) -> str:
    if name not in SCHEDULE_COLUMNS:
        raise ValueError(f"Unknown schedule column: {name}")
    return name


def _param(name: str, value: Any) -> Any:
    if name in _TIMESTAMP_FIELDS:
        return to_epoch(value)
    if isinstance(value, (ScheduleStatus, Frequency)):
        return value.value
    return value


def eq(name: str, value: Any) -> Clause:
    return Clause(f"{_column(name)} = ?", (_param(name, value),))


def ne(name: str, value: Any) -> Clause:
    return Clause(f"{_column(name)} != ?", (_param(name, value),))


def lt(name: str, value: Any) -> Clause:
    return Clause(f"{_column(name)} < ?", (_param(name, value),))


def lte(name: str, value: Any) -> Clause:
    return Clause(f"{_column(name)} <= ?", (_param(name, value),))


def gt(name: str, value: Any) -> Clause:
    return Clause(f"{_column(name)} > ?", (_param(name, value),))


def is_null(name: str) -> Clause:
    return Clause(f"{_column(name)} IS NULL")


def in_(name: str, values: Sequence[Any]) -> Clause:
    if not values:
        return Clause("0")
    placeholders = ", ".join("?" for _ in values)
    return Clause(
        f"{_column(name)} IN ({placeholders})", tuple(_param(name, v) for v in values)
    )


def any_of(*clauses: Clause) -> Clause:
    if not clauses:
        return Clause("0")
    sql = " OR ".join(f"({c.sql})" for c in clauses)
    params: tuple[Any, ...] = ()
    for clause in clauses:
        params += clause.params
    return Clause(f"({sql})", params)


def all_of(*clauses: Clause) -> Clause:
    sql, params = _where(clauses)
    return Clause(f"({sql})", params)


def column_lt(left: str, right: str) -> Clause:
    """Compare two columns of the same row."""

    return Clause(f"{_column(left)} < {_column(right)}")


def _where(clauses: Sequence[Clause]) -> tuple[str, tuple[Any, ...]]:
    if not clauses:
        return "1", ()
    sql = " AND ".join(f"({c.sql})" for c in clauses)
    params: tuple[Any, ...] = ()
    for clause in clauses:
        params += clause.params
    return sql, params


# Row mapping --------------------------------------------------------------


def schedule_to_row(schedule: ScheduledPayment) -> dict[str, Any]:
    return {
        "schedule_id": schedule.schedule_id,
        "owner": schedule.owner,
        "source_address": schedule.source_address,
        "token_symbol": schedule.token.symbol,
        "token_name": schedule.token.name,
        "token_contract": schedule.token.contract_address,
        "token_decimals": schedule.token.decimals,
        "recipient": schedule.recipient,
        "amount": schedule.amount,
        "frequency": schedule.frequency.value,
        "status": schedule.status.value,
        "next_execution_at": to_epoch(schedule.next_execution_at),
        "executed_count": schedule.executed_count,
        "max_executions": schedule.max_executions,
        "processing_by": schedule.processing_by,
        "processing_started": to_epoch(schedule.processing_started),
        "retry_count": schedule.retry_count,
        "last_error": schedule.last_error,
        "failed_at": to_epoch(schedule.failed_at),
        "created_at": to_epoch(schedule.created_at),
        "updated_at": to_epoch(schedule.updated_at),
        "last_execution_at": to_epoch(schedule.last_execution_at),
        "completed_at": to_epoch(schedule.completed_at),
        "cancelled_at": to_epoch(schedule.cancelled_at),
        "last_tx_hash": schedule.last_tx_hash,
        "pending_tx_hash": schedule.pending_tx_hash,
        "description": schedule.description,
    }


def row_to_schedule(row: Mapping[str, Any]) -> ScheduledPayment:
    return ScheduledPayment(
        schedule_id=row["schedule_id"],
        owner=row["owner"],
        source_address=row["source_address"],
        token=TokenInfo(
            symbol=row["token_symbol"],
            contract_address=row["token_contract"],
            decimals=int(row["token_decimals"]),
            name=row["token_name"],
        ),
        recipient=row["recipient"],
        amount=row["amount"],
        frequency=Frequency(row["frequency"]),
        status=ScheduleStatus(row["status"]),
        next_execution_at=from_epoch(row["next_execution_at"]),
        executed_count=int(row["executed_count"]),
        max_executions=int(row["max_executions"]),
        processing_by=row["processing_by"],
        processing_started=from_epoch(row["processing_started"]),
        retry_count=int(row["retry_count"]),
        last_error=row["last_error"],
        failed_at=from_epoch(row["failed_at"]),
        created_at=from_epoch(row["created_at"]),
        updated_at=from_epoch(row["updated_at"]),
        last_execution_at=from_epoch(row["last_execution_at"]),
        completed_at=from_epoch(row["completed_at"]),
        cancelled_at=from_epoch(row["cancelled_at"]),
        last_tx_hash=row["last_tx_hash"],
        pending_tx_hash=row["pending_tx_hash"],
        description=row["description"] or "",
    )


def _row_to_record(row: Mapping[str, Any]) -> ExecutionRecord:
    return ExecutionRecord(
        record_id=row["record_id"],
        schedule_id=row["schedule_id"],
        occurrence=int(row["occurrence"]),
        tx_hash=row["tx_hash"],
        gas_used=int(row["gas_used"]),
        block_number=int(row["block_number"]),
        cost_native=Decimal(row["cost_native"]),
        cost_fiat=Decimal(row["cost_fiat"]),
        executed_at=from_epoch(row["executed_at"]),
        outcome=row["outcome"],
        executor_id=row["executor_id"],
        recovered=bool(row["recovered"]),
    )


def _patch_value(name: str, value: Any) -> Any:
    _column(name)
    return _param(name, value)


# Store interface ----------------------------------------------------------


class ScheduleStore:
    """Interface for storing schedules and their execution records."""

    def insert(self, schedule: ScheduledPayment) -> None:
        raise NotImplementedError

    def get(self, schedule_id: str) -> ScheduledPayment | None:
        raise NotImplementedError

    def find(
        self,
        clauses: Sequence[Clause] = (),
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> list[ScheduledPayment]:
        raise NotImplementedError

    def count(self, clauses: Sequence[Clause] = ()) -> int:
        raise NotImplementedError

    def atomic_update(
        self,
        schedule_id: str,
        precondition: Sequence[Clause],
        patch: Mapping[str, Any],
        *,
        record: ExecutionRecord | None = None,
    ) -> bool:
        """Apply ``patch`` only if ``precondition`` holds; return whether it did."""

        raise NotImplementedError

    def execution_records(self, schedule_id: str) -> list[ExecutionRecord]:
        raise NotImplementedError


class SQLiteScheduleStore(ScheduleStore):
    """Persist schedules to a local SQLite database.

    Each thread gets its own connection so threads behave like independent
    workers sharing the database file.
    """

    def __init__(self, db_path: str | Path, *, busy_timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_guard = threading.Lock()
        self._init_schema()

    @property
    def conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._connections_guard:
                self._connections.append(conn)
        return conn

    def _init_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS schedules (
                schedule_id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                source_address TEXT NOT NULL,
                token_symbol TEXT NOT NULL,
                token_name TEXT,
                token_contract TEXT NOT NULL,
                token_decimals INTEGER NOT NULL,
                recipient TEXT NOT NULL,
                amount TEXT NOT NULL,
                frequency TEXT NOT NULL,
                status TEXT NOT NULL,
                next_execution_at REAL,
                executed_count INTEGER NOT NULL DEFAULT 0,
                max_executions INTEGER NOT NULL DEFAULT 1,
                processing_by TEXT,
                processing_started REAL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                failed_at REAL,
                created_at REAL,
                updated_at REAL,
                last_execution_at REAL,
                completed_at REAL,
                cancelled_at REAL,
                last_tx_hash TEXT,
                pending_tx_hash TEXT,
                description TEXT
            )
            """
        )
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_schedules_due ON schedules(status, next_execution_at)"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_schedules_owner ON schedules(owner)")
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_records (
                record_id TEXT PRIMARY KEY,
                schedule_id TEXT NOT NULL REFERENCES schedules(schedule_id),
                occurrence INTEGER NOT NULL,
                tx_hash TEXT NOT NULL,
                gas_used INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                cost_native TEXT NOT NULL,
                cost_fiat TEXT NOT NULL,
                executed_at REAL NOT NULL,
                outcome TEXT NOT NULL,
                executor_id TEXT NOT NULL,
                recovered INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cursor.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_records_completed_occurrence
            ON execution_records(schedule_id, occurrence) WHERE outcome = 'completed'
            """
        )

    def close(self) -> None:
        with self._connections_guard:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def __enter__(self) -> "SQLiteScheduleStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        cursor = self.conn.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise StoreError(f"Could not begin transaction: {exc}") from exc
        try:
            yield cursor
        except BaseException:
            cursor.execute("ROLLBACK")
            raise
        else:
            cursor.execute("COMMIT")

    def insert(self, schedule: ScheduledPayment) -> None:
        row = schedule_to_row(schedule)
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            self.conn.execute(
                f"INSERT INTO schedules ({columns}) VALUES ({placeholders})", tuple(row.values())
            )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to insert schedule {schedule.schedule_id}: {exc}") from exc

    def get(self, schedule_id: str) -> ScheduledPayment | None:
        found = self.find([eq("schedule_id", schedule_id)], limit=1)
        return found[0] if found else None

    def find(
        self,
        clauses: Sequence[Clause] = (),
        order_by: Sequence[str] = (),
        limit: int | None = None,
    ) -> list[ScheduledPayment]:
        where, params = _where(clauses)
        sql = f"SELECT * FROM schedules WHERE {where}"
        if order_by:
            parts = []
            for term in order_by:
                descending = term.startswith("-")
                name = _column(term.lstrip("-"))
                parts.append(f"{name} {'DESC' if descending else 'ASC'}")
            sql += " ORDER BY " + ", ".join(parts)
        if limit is not None:
            sql += " LIMIT ?"
            params += (int(limit),)
        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Schedule query failed: {exc}") from exc
        return [row_to_schedule(row) for row in rows]

    def count(self, clauses: Sequence[Clause] = ()) -> int:
        where, params = _where(clauses)
        try:
            row = self.conn.execute(
                f"SELECT COUNT(*) AS n FROM schedules WHERE {where}", params
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"Schedule count failed: {exc}") from exc
        return int(row["n"])

    def atomic_update(
        self,
        schedule_id: str,
        precondition: Sequence[Clause],
        patch: Mapping[str, Any],
        *,
        record: ExecutionRecord | None = None,
    ) -> bool:
        if not patch:
            raise ValueError("atomic_update requires a non-empty patch")
        assignments = ", ".join(f"{_column(name)} = ?" for name in patch)
        values = tuple(_patch_value(name, value) for name, value in patch.items())
        where, params = _where([eq("schedule_id", schedule_id), *precondition])
        try:
            with self._transaction() as cursor:
                cursor.execute(
                    f"UPDATE schedules SET {assignments} WHERE {where}", values + params
                )
                matched = cursor.rowcount == 1
                if matched and record is not None:
                    self._insert_record(cursor, record)
        except sqlite3.IntegrityError as exc:
            raise StoreError(
                f"Execution record for {schedule_id} occurrence "
                f"{record.occurrence if record else '?'} already exists: {exc}"
            ) from exc
        except sqlite3.Error as exc:
            raise StoreError(f"Conditional update of {schedule_id} failed: {exc}") from exc
        logger.debug("atomic_update %s matched=%s fields=%s", schedule_id, matched, list(patch))
        return matched

    @staticmethod
    def _insert_record(cursor: sqlite3.Cursor, record: ExecutionRecord) -> None:
        cursor.execute(
            """
            INSERT INTO execution_records (
                record_id, schedule_id, occurrence, tx_hash, gas_used, block_number,
                cost_native, cost_fiat, executed_at, outcome, executor_id, recovered
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.record_id,
                record.schedule_id,
                record.occurrence,
                record.tx_hash,
                record.gas_used,
                record.block_number,
                str(record.cost_native),
                str(record.cost_fiat),
                to_epoch(record.executed_at),
                record.outcome,
                record.executor_id,
                int(record.recovered),
            ),
        )

    def execution_records(self, schedule_id: str) -> list[ExecutionRecord]:
        try:
            rows = self.conn.execute(
                "SELECT * FROM execution_records WHERE schedule_id = ? ORDER BY occurrence, executed_at",
                (schedule_id,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"Execution record query failed: {exc}") from exc
        return [_row_to_record(row) for row in rows]
