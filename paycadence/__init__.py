"""Recurring and batch payment execution for Ethereum-compatible chains."""

from .batch import BatchMode, BatchOutcome, BatchPayment, BatchPreview, BatchTransferEngine
from .claims import AlreadyClaimed, ClaimManager, Claimed
from .config import Settings, SchedulerPolicy, load_settings
from .errors import (
    CredentialError,
    InsufficientAllowance,
    InsufficientFunds,
    InvalidFrequency,
    LeaseConflict,
    PaymentError,
    RecoverableLedgerError,
    StoreError,
    TerminalLedgerError,
    ValidationError,
)
from .ledger import LedgerClient
from .model import (
    ExecutionOutcome,
    ExecutionRecord,
    Frequency,
    PermanentlyFailed,
    RecoveredCompleted,
    Retry,
    ScheduledPayment,
    ScheduleIntent,
    ScheduleStatus,
    TokenInfo,
)
from .recurrence import next_occurrence
from .scheduler import PaymentScheduler, PollingWorker, RunSummary, SchedulerStats
from .store import ScheduleStore, SQLiteScheduleStore

__all__ = [
    "AlreadyClaimed",
    "BatchMode",
    "BatchOutcome",
    "BatchPayment",
    "BatchPreview",
    "BatchTransferEngine",
    "ClaimManager",
    "Claimed",
    "CredentialError",
    "ExecutionOutcome",
    "ExecutionRecord",
    "Frequency",
    "InsufficientAllowance",
    "InsufficientFunds",
    "InvalidFrequency",
    "LeaseConflict",
    "LedgerClient",
    "PaymentError",
    "PaymentScheduler",
    "PermanentlyFailed",
    "PollingWorker",
    "RecoverableLedgerError",
    "RecoveredCompleted",
    "Retry",
    "RunSummary",
    "SQLiteScheduleStore",
    "ScheduleIntent",
    "ScheduleStatus",
    "ScheduleStore",
    "ScheduledPayment",
    "SchedulerPolicy",
    "SchedulerStats",
    "Settings",
    "StoreError",
    "TerminalLedgerError",
    "TokenInfo",
    "ValidationError",
    "load_settings",
    "next_occurrence",
]
