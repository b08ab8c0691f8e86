"""Typed JSON-RPC client for Ethereum-compatible nodes.

Each helper maps to one RPC method and returns the parsed JSON result.
Receipts, balances and fee parameters are interpreted by
:mod:`paycadence.ledger`.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

import requests
from requests import RequestException, Response

from .config import ConfigurationError, RPCConfig, load_rpc_config

logger = logging.getLogger(__name__)

__all__ = [
    "ConfigurationError",
    "EthereumRPCClient",
    "RPCConfig",
    "RPCError",
    "RPCTransportError",
    "format_rpc_hint",
]


class RPCError(RuntimeError):
    """Raised when the node responds with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


class RPCTransportError(RuntimeError):
    """Raised when the RPC endpoint is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.timed_out = timed_out


def format_rpc_hint(error_obj: dict[str, Any] | RPCError | None) -> str | None:
    """Return a human-friendly hint for common Ethereum JSON-RPC errors."""

    if error_obj is None:
        return None

    code = None
    message = ""
    if isinstance(error_obj, RPCError):
        code = error_obj.code
        message = error_obj.message
    elif isinstance(error_obj, dict):
        code = error_obj.get("code")
        message = str(error_obj.get("message", ""))
    lowered = message.lower()

    if "already known" in lowered:
        return (
            "The node already has this transaction in its pool. It may still confirm; "
            "the scheduler reconciles against the ledger before retrying."
        )
    if "nonce too low" in lowered or "replacement transaction underpriced" in lowered:
        return (
            "Another transaction from this account used the same nonce. Wait for pending "
            "transactions to confirm before retrying."
        )
    if "underpriced" in lowered or "max fee per gas less than block base fee" in lowered:
        return "The fee offered is below the network's current requirement; retry with a fresh fee estimate."
    if "insufficient funds" in lowered:
        return "The source account cannot cover value plus gas. Fund the account and retry."
    if "execution reverted" in lowered:
        return (
            "The contract reverted the call. Check token balances, allowances, and the batch "
            "deadline, then retry."
        )
    if code == -32601:
        return (
            "The node does not expose this method. personal_signTransaction requires the "
            "personal namespace to be enabled on the node."
        )
    if code in {-32000, -32010} and "authentication needed" in lowered:
        return "The signing account is locked on the node; check the credential keystore."
    return None


class EthereumRPCClient:
    """Typed JSON-RPC client for Ethereum-compatible nodes.

    Connection defaults can be overridden via ``PAYCADENCE_RPC_URL``,
    ``PAYCADENCE_RPC_USER``, ``PAYCADENCE_RPC_PASSWORD`` and
    ``PAYCADENCE_RPC_TIMEOUT``, or the ``rpc`` section of
    ``~/.paycadence.yaml``. Every request carries a bounded timeout so a
    stalled node can never block a worker indefinitely.
    """

    def __init__(self, config: RPCConfig) -> None:
        self.config = config
        self._session = requests.Session()

    @classmethod
    def from_env(cls) -> "EthereumRPCClient":
        """Build a client from ``PAYCADENCE_RPC_*`` variables or the config file."""

        return cls(load_rpc_config())

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Send one JSON-RPC 2.0 request and return its ``result``."""

        payload = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params or [],
        }
        logger.debug("RPC call %s", method)
        try:
            response = self._session.post(
                self.config.endpoint,
                data=json.dumps(payload),
                headers={"content-type": "application/json"},
                auth=self.config.auth,
                timeout=self.config.timeout_seconds,
            )
        except requests.Timeout as exc:
            logger.warning("RPC %s timed out after %ss", method, self.config.timeout_seconds)
            raise RPCTransportError(
                f"RPC {method} timed out after {self.config.timeout_seconds}s", timed_out=True
            ) from exc
        except RequestException as exc:
            logger.error(
                "RPC connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise RPCTransportError(
                "RPC connection failed. Ensure the node is reachable and PAYCADENCE_RPC_URL "
                "(or ~/.paycadence.yaml) points to the right endpoint."
            ) from exc
        try:
            self._raise_for_status(response)
        except requests.HTTPError as exc:
            logger.error(
                "RPC HTTP error: %s", exc, exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            raise RPCTransportError(
                "RPC server returned an HTTP error; check the endpoint URL and credentials.",
                status_code=response.status_code,
            ) from exc
        try:
            result = response.json()
        except ValueError as exc:
            logger.debug("RPC JSON parse error: %s", response.text, exc_info=True)
            raise RPCTransportError("RPC server returned malformed JSON") from exc
        if result.get("error"):
            error = result["error"]
            raise RPCError(error.get("code", -1), error.get("message", "unknown"), error.get("data"))
        return result.get("result")

    def _raise_for_status(self, response: Response) -> None:
        if not response.ok:
            logger.error("RPC HTTP error %s from %s", response.status_code, response.url)
            if response.status_code == 401:
                raise RPCTransportError(
                    "Unauthorized (401). Ensure PAYCADENCE_RPC_USER/PAYCADENCE_RPC_PASSWORD are valid.",
                    status_code=response.status_code,
                )
        response.raise_for_status()

    # Convenience wrappers -------------------------------------------------

    def chain_id(self) -> int:
        return int(self.call("eth_chainId"), 16)

    def block_number(self) -> int:
        return int(self.call("eth_blockNumber"), 16)

    def get_block_by_number(self, number: int | str, full_transactions: bool = False) -> Dict[str, Any] | None:
        tag = hex(number) if isinstance(number, int) else number
        return self.call("eth_getBlockByNumber", [tag, full_transactions])

    def get_balance(self, address: str, block: str = "latest") -> int:
        return int(self.call("eth_getBalance", [address, block]), 16)

    def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        return self.call("eth_call", [tx, block])

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(self.call("eth_estimateGas", [tx]), 16)

    def gas_price(self) -> int:
        return int(self.call("eth_gasPrice"), 16)

    def max_priority_fee_per_gas(self) -> int:
        return int(self.call("eth_maxPriorityFeePerGas"), 16)

    def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(self.call("eth_getTransactionCount", [address, block]), 16)

    def send_raw_transaction(self, raw_tx: str) -> str:
        return self.call("eth_sendRawTransaction", [raw_tx])

    def get_transaction_receipt(self, tx_hash: str) -> Dict[str, Any] | None:
        return self.call("eth_getTransactionReceipt", [tx_hash])

    def get_transaction_by_hash(self, tx_hash: str) -> Dict[str, Any] | None:
        return self.call("eth_getTransactionByHash", [tx_hash])

    def sign_transaction(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        return self.call("eth_signTransaction", [tx])

    def personal_sign_transaction(self, tx: Dict[str, Any], passphrase: str) -> Dict[str, Any]:
        return self.call("personal_signTransaction", [tx, passphrase])
