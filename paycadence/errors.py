"""Error taxonomy shared by the scheduler, executors and recovery controller.

Every failure the pipeline can observe is expressed as one of these classes so
that the recovery controller can decide between retrying, failing permanently,
or reconciling with the ledger without inspecting free-form strings.
"""

from __future__ import annotations

from typing import Any, Iterable


class PaymentError(RuntimeError):
    """Base class for payment pipeline failures."""

    #: Terminal errors are recorded on the schedule and never retried.
    terminal = True


class ValidationError(PaymentError):
    """Raised when inputs are malformed; lists every offence found."""

    def __init__(self, errors: Iterable[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("Validation failed: " + "; ".join(self.errors))


class InsufficientFunds(PaymentError):
    """Raised when the source address cannot cover the transfer."""

    def __init__(
        self,
        asset: str,
        required: int | None = None,
        available: int | None = None,
        *,
        detail: str | None = None,
    ) -> None:
        if required is not None and available is not None:
            message = f"Insufficient {asset} balance: required {required}, available {available}"
        else:
            message = f"Insufficient {asset} balance"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.asset = asset
        self.required = required
        self.available = available


class InsufficientAllowance(PaymentError):
    """Raised when a spender allowance is below the required amount."""

    def __init__(self, token: str, required: int, allowance: int) -> None:
        super().__init__(
            f"Insufficient allowance for {token}: required {required}, approved {allowance}"
        )
        self.token = token
        self.required = required
        self.allowance = allowance


class CredentialError(PaymentError):
    """Raised when a signing credential is missing, malformed or mismatched."""


class InvalidFrequency(PaymentError, ValueError):
    """Raised for frequency values outside the supported set."""

    def __init__(self, value: Any) -> None:
        super().__init__(f"Invalid frequency: {value!r}")
        self.value = value


class LedgerError(PaymentError):
    """Base class for failures reported by (or while talking to) the ledger."""

    def __init__(
        self,
        message: str,
        *,
        tx_hash: str | None = None,
        receipt: Any = None,
    ) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        self.receipt = receipt


class RecoverableLedgerError(LedgerError):
    """Transient ledger failure; subject to reconciliation and retry.

    ``kind`` is one of ``timeout``, ``nonce_conflict``, ``fee_too_low``,
    ``already_known`` or ``network``. ``tx_hash`` is set when a transfer was
    already broadcast before the failure was observed.
    """

    terminal = False

    KINDS = frozenset({"timeout", "nonce_conflict", "fee_too_low", "already_known", "network"})

    def __init__(
        self,
        message: str,
        *,
        kind: str = "network",
        tx_hash: str | None = None,
        receipt: Any = None,
    ) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown recoverable error kind: {kind}")
        super().__init__(message, tx_hash=tx_hash, receipt=receipt)
        self.kind = kind


class TerminalLedgerError(LedgerError):
    """Ledger failure that must not be retried (revert, bad signature)."""


class LeaseConflict(PaymentError):
    """Another worker holds the lease; a normal signal rather than a fault."""

    terminal = False

    def __init__(self, schedule_id: str, holder: str | None) -> None:
        super().__init__(f"Schedule {schedule_id} is leased by {holder or 'another worker'}")
        self.schedule_id = schedule_id
        self.holder = holder


class StoreError(PaymentError):
    """Infrastructure failure in the schedule store."""

    terminal = False
