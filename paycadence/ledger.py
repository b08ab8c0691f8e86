"""Ledger client: the engine's view of the chain.

Wraps :class:`~paycadence.rpc_client.EthereumRPCClient` with the operations the
executors need (fee estimation, submission, bounded confirmation polling,
balances, allowances and reconciliation lookups) and translates node errors
into the :mod:`paycadence.errors` taxonomy.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable

from . import abi
from .errors import (
    InsufficientFunds,
    LedgerError,
    PaymentError,
    RecoverableLedgerError,
    TerminalLedgerError,
)
from .fees import DEFAULT_TOKEN_TRANSFER_GAS, NATIVE_TRANSFER_GAS, select_fee_params
from .model import FeeParams, Receipt, TokenInfo
from .rpc_client import RPCError, RPCTransportError

logger = logging.getLogger(__name__)

MAX_RECONCILIATION_BLOCKS = 500

_ALREADY_KNOWN = ("already known", "known transaction", "already imported")
_NONCE_CONFLICT = ("nonce too low", "replacement transaction underpriced", "nonce too high")
_FEE_TOO_LOW = (
    "transaction underpriced",
    "max fee per gas less than block base fee",
    "fee too low",
    "feecap",
)
_TERMINAL = ("execution reverted", "invalid sender", "invalid signature", "intrinsic gas too low")


@dataclass(frozen=True)
class SignedTransaction:
    """Raw signed transaction plus the hash the signer reported for it."""

    raw: str
    tx_hash: str | None = None


def classify_rpc_error(exc: Exception, *, tx_hash: str | None = None) -> PaymentError:
    """Map an RPC/transport exception onto the payment error taxonomy."""

    if isinstance(exc, PaymentError):
        return exc
    if isinstance(exc, RPCTransportError):
        kind = "timeout" if exc.timed_out else "network"
        return RecoverableLedgerError(str(exc), kind=kind, tx_hash=tx_hash)
    if isinstance(exc, RPCError):
        message = exc.message.lower()
        if any(token in message for token in _ALREADY_KNOWN):
            return RecoverableLedgerError(exc.message, kind="already_known", tx_hash=tx_hash)
        if any(token in message for token in _NONCE_CONFLICT):
            return RecoverableLedgerError(exc.message, kind="nonce_conflict", tx_hash=tx_hash)
        if any(token in message for token in _FEE_TOO_LOW) or "underpriced" in message:
            return RecoverableLedgerError(exc.message, kind="fee_too_low", tx_hash=tx_hash)
        if "insufficient funds" in message:
            return InsufficientFunds("native", detail=exc.message)
        if "timeout" in message or "timed out" in message:
            return RecoverableLedgerError(exc.message, kind="timeout", tx_hash=tx_hash)
        if any(token in message for token in _TERMINAL):
            return TerminalLedgerError(exc.message, tx_hash=tx_hash)
        return TerminalLedgerError(f"RPC error {exc.code}: {exc.message}", tx_hash=tx_hash)
    return TerminalLedgerError(str(exc), tx_hash=tx_hash)


class LedgerClient:
    """Chain operations used by the payment executors."""

    def __init__(
        self,
        rpc: Any,
        *,
        receipt_poll_interval: float = 3.0,
        block_time: float = 12.0,
        chain_id: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rpc = rpc
        self.receipt_poll_interval = receipt_poll_interval
        self.block_time = block_time
        self._chain_id = chain_id
        self._sleep = sleep
        self._clock = clock

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.rpc.chain_id())
        return self._chain_id

    # Fees and nonces -------------------------------------------------------

    def estimate_fee(
        self, tx_shape: Dict[str, Any], *, fallback_gas_limit: int | None = None
    ) -> FeeParams:
        fallback = fallback_gas_limit or (
            NATIVE_TRANSFER_GAS if not tx_shape.get("data") else DEFAULT_TOKEN_TRANSFER_GAS
        )
        try:
            return select_fee_params(self.rpc, tx_shape, fallback_gas_limit=fallback)
        except (RPCError, RPCTransportError) as exc:
            raise classify_rpc_error(exc) from exc

    def next_nonce(self, address: str) -> int:
        try:
            return int(self.rpc.get_transaction_count(address, "pending"))
        except (RPCError, RPCTransportError) as exc:
            raise classify_rpc_error(exc) from exc

    def build_transaction(
        self,
        *,
        sender: str,
        to: str,
        value: int = 0,
        data: str | None = None,
        fee: FeeParams | None = None,
        nonce: int | None = None,
    ) -> Dict[str, Any]:
        """Assemble an EIP-1559 transaction dict ready for signing."""

        shape: Dict[str, Any] = {"from": sender, "to": to, "value": hex(value)}
        if data:
            shape["data"] = data
        fee = fee or self.estimate_fee(shape)
        tx = dict(shape)
        tx.update(fee.to_tx_fields())
        tx["nonce"] = hex(self.next_nonce(sender) if nonce is None else nonce)
        tx["chainId"] = hex(self.chain_id)
        tx["type"] = "0x2"
        return tx

    # Submission and confirmation ----------------------------------------

    def submit(self, signed: SignedTransaction) -> str:
        """Broadcast a signed transaction and return its hash."""

        try:
            tx_hash = self.rpc.send_raw_transaction(signed.raw)
        except (RPCError, RPCTransportError) as exc:
            error = classify_rpc_error(exc, tx_hash=signed.tx_hash)
            logger.warning(
                "Submission failed (%s): %s",
                getattr(error, "kind", type(error).__name__),
                exc,
                extra={"tx_hash": signed.tx_hash},
            )
            raise error from exc
        logger.info("Broadcasted transaction %s", tx_hash)
        return str(tx_hash)

    def get_receipt(self, tx_hash: str) -> Receipt | None:
        try:
            payload = self.rpc.get_transaction_receipt(tx_hash)
        except (RPCError, RPCTransportError) as exc:
            raise classify_rpc_error(exc, tx_hash=tx_hash) from exc
        if not payload:
            return None
        return Receipt.from_rpc(payload)

    def is_pending(self, tx_hash: str) -> bool:
        """True while the node knows ``tx_hash`` but has not mined it."""

        try:
            tx = self.rpc.get_transaction_by_hash(tx_hash)
        except (RPCError, RPCTransportError) as exc:
            raise classify_rpc_error(exc, tx_hash=tx_hash) from exc
        return bool(tx) and tx.get("blockNumber") is None

    def await_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        """Poll for ``tx_hash``'s receipt at a fixed interval, bounded by ``timeout``."""

        deadline = self._clock() + timeout
        while True:
            try:
                receipt = self.get_receipt(tx_hash)
            except RecoverableLedgerError as exc:
                logger.warning("Receipt poll for %s failed: %s", tx_hash, exc)
                receipt = None
            if receipt is not None:
                logger.info(
                    "Receipt for %s: success=%s block=%d gas=%d",
                    tx_hash,
                    receipt.success,
                    receipt.block_number,
                    receipt.gas_used,
                )
                return receipt
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            self._sleep(min(self.receipt_poll_interval, remaining))
        raise RecoverableLedgerError(
            f"Transaction confirmation timeout after {timeout}s: {tx_hash}",
            kind="timeout",
            tx_hash=tx_hash,
        )

    # Reconciliation -------------------------------------------------------

    def find_recent_tx(
        self,
        from_address: str,
        to_address: str,
        amount: int,
        window: float,
        token: TokenInfo | None = None,
        *,
        exclude: Iterable[str] = (),
        after_block: int | None = None,
    ) -> Receipt | None:
        """Look for a confirmed matching transfer mined within ``window`` seconds.

        Native transfers match on sender, recipient and value. Token transfers
        match on sender, token contract and the exact ``transfer`` calldata.
        The window is measured on block timestamps back from the chain head;
        blocks without a timestamp are counted at the nominal ``block_time``.
        Hashes in ``exclude`` and blocks at or below ``after_block`` never match.
        """

        excluded = {str(tx_hash).lower() for tx_hash in exclude if tx_hash}
        nominal_blocks = max(int(math.ceil(window / self.block_time)), 1)
        native = token is None or token.is_native
        expected_input = None if native else abi.encode_transfer(to_address, amount).lower()
        target = to_address if native else token.contract_address  # type: ignore[union-attr]

        try:
            latest = int(self.rpc.block_number())
        except (RPCError, RPCTransportError) as exc:
            raise classify_rpc_error(exc) from exc

        cutoff: int | None = None
        for offset in range(MAX_RECONCILIATION_BLOCKS):
            number = latest - offset
            if number < 0 or (after_block is not None and number <= after_block):
                break
            if cutoff is None and offset >= nominal_blocks:
                break
            try:
                block = self.rpc.get_block_by_number(number, True)
            except (RPCError, RPCTransportError) as exc:
                logger.debug("Skipping block %d during reconciliation: %s", number, exc)
                continue
            stamp = _block_timestamp(block)
            if stamp is not None:
                if cutoff is None:
                    cutoff = stamp - int(window)
                elif stamp < cutoff:
                    break
            for tx in (block or {}).get("transactions", []) or []:
                if not isinstance(tx, dict):
                    continue
                if str(tx.get("hash", "")).lower() in excluded:
                    continue
                if not abi.same_address(tx.get("from"), from_address):
                    continue
                if not abi.same_address(tx.get("to"), target):
                    continue
                if native:
                    if int(str(tx.get("value", "0x0")), 16) != amount:
                        continue
                elif str(tx.get("input", "")).lower() != expected_input:
                    continue
                receipt = self.get_receipt(str(tx.get("hash")))
                if receipt is not None and receipt.success:
                    logger.info("Found matching confirmed transaction %s", receipt.tx_hash)
                    return receipt
        return None

    # Balances ---------------------------------------------------------------

    def call(self, to: str, data: str) -> str:
        try:
            return self.rpc.eth_call({"to": to, "data": data})
        except (RPCError, RPCTransportError) as exc:
            raise classify_rpc_error(exc) from exc

    def get_balance(self, address: str, token: TokenInfo | None = None) -> int:
        if token is None or token.is_native:
            try:
                return int(self.rpc.get_balance(address))
            except (RPCError, RPCTransportError) as exc:
                raise classify_rpc_error(exc) from exc
        return abi.decode_uint(self.call(token.contract_address, abi.encode_balance_of(address)))

    def get_allowance(self, token: TokenInfo, owner: str, spender: str) -> int:
        if token.is_native:
            raise ValueError("Native asset has no allowance")
        return abi.decode_uint(
            self.call(token.contract_address, abi.encode_allowance(owner, spender))
        )

    def gas_price(self) -> int:
        try:
            return int(self.rpc.gas_price())
        except (RPCError, RPCTransportError) as exc:
            raise classify_rpc_error(exc) from exc


def _block_timestamp(block: Dict[str, Any] | None) -> int | None:
    value = (block or {}).get("timestamp")
    if value is None:
        return None
    return value if isinstance(value, int) else int(str(value), 16)


def ensure_success(receipt: Receipt, what: str) -> Receipt:
    """Raise :class:`TerminalLedgerError` for a reverted receipt."""

    if not receipt.success:
        raise TerminalLedgerError(
            f"{what} reverted in block {receipt.block_number}: {receipt.tx_hash}",
            tx_hash=receipt.tx_hash,
            receipt=receipt,
        )
    return receipt


__all__ = [
    "LedgerClient",
    "LedgerError",
    "SignedTransaction",
    "classify_rpc_error",
    "ensure_success",
]
