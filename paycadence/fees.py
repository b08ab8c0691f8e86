"""Fee selection and conversion helpers for EVM transactions."""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any, Dict

from .model import FeeParams

logger = logging.getLogger(__name__)

WEI_PER_GWEI = 10**9
WEI_PER_ETHER = 10**18

NATIVE_TRANSFER_GAS = 21_000
DEFAULT_TOKEN_TRANSFER_GAS = 65_000
DEFAULT_FALLBACK_GAS_PRICE_GWEI = 20
DEFAULT_PRIORITY_FEE_GWEI = Decimal("1.5")
GAS_LIMIT_MARGIN = Decimal("1.2")
BASE_FEE_MULTIPLIER = 2
ENV_MIN_PRIORITY_FEE_GWEI = "PAYCADENCE_MIN_PRIORITY_FEE_GWEI"
ENV_FALLBACK_GAS_PRICE_GWEI = "PAYCADENCE_FALLBACK_GAS_PRICE_GWEI"


def gwei_to_wei(value: Decimal | int | str) -> int:
    return int(Decimal(str(value)) * WEI_PER_GWEI)


def wei_to_gwei(value: int) -> Decimal:
    return Decimal(int(value)) / WEI_PER_GWEI


def wei_to_ether(value: int) -> Decimal:
    return Decimal(int(value)).scaleb(-18)


def _env_override(name: str) -> Decimal | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    try:
        return Decimal(raw)
    except ArithmeticError:
        logger.warning("Invalid decimal in %s=%s; ignoring", name, raw)
        return None


def _latest_base_fee(rpc_client: Any) -> int | None:
    try:
        block = rpc_client.get_block_by_number("latest", False)
    except Exception as exc:  # pragma: no cover - RPC errors vary
        logger.info("Latest block unavailable for base fee: %s", exc)
        return None
    if not isinstance(block, dict) or block.get("baseFeePerGas") is None:
        return None
    try:
        return int(str(block["baseFeePerGas"]), 16)
    except (TypeError, ValueError):
        logger.debug("Unable to parse baseFeePerGas: %s", block.get("baseFeePerGas"))
        return None


def _priority_fee(rpc_client: Any) -> tuple[int, str]:
    floor = gwei_to_wei(_env_override(ENV_MIN_PRIORITY_FEE_GWEI) or 0)
    try:
        suggested = int(rpc_client.max_priority_fee_per_gas())
        source = "eth_maxPriorityFeePerGas"
    except Exception as exc:  # pragma: no cover - RPC errors vary
        logger.info("eth_maxPriorityFeePerGas unavailable: %s", exc)
        suggested = gwei_to_wei(DEFAULT_PRIORITY_FEE_GWEI)
        source = "default_priority"
    return max(suggested, floor), source


def estimate_gas_limit(rpc_client: Any, tx: Dict[str, Any], fallback: int) -> tuple[int, str]:
    """Estimate gas for ``tx`` with a safety margin, falling back to ``fallback``."""

    try:
        estimated = int(rpc_client.estimate_gas(tx))
    except Exception as exc:  # pragma: no cover - RPC errors vary
        logger.info("eth_estimateGas unavailable, using %d: %s", fallback, exc)
        return fallback, "fallback"
    return int(Decimal(estimated) * GAS_LIMIT_MARGIN), "eth_estimateGas"


def select_fee_params(
    rpc_client: Any,
    tx: Dict[str, Any],
    *,
    fallback_gas_limit: int = NATIVE_TRANSFER_GAS,
    max_fee_cap_wei: int | None = None,
) -> FeeParams:
    """Select EIP-1559 fee parameters with node-aware defaults and fallbacks."""

    gas_limit, gas_source = estimate_gas_limit(rpc_client, tx, fallback_gas_limit)
    priority, priority_source = _priority_fee(rpc_client)
    base_fee = _latest_base_fee(rpc_client)

    if base_fee is not None:
        max_fee = base_fee * BASE_FEE_MULTIPLIER + priority
        source = f"base_fee+{priority_source}"
    else:
        try:
            legacy = int(rpc_client.gas_price())
            source = "eth_gasPrice"
        except Exception as exc:  # pragma: no cover - RPC errors vary
            logger.info("eth_gasPrice unavailable: %s", exc)
            legacy = gwei_to_wei(
                _env_override(ENV_FALLBACK_GAS_PRICE_GWEI) or DEFAULT_FALLBACK_GAS_PRICE_GWEI
            )
            source = "fallback"
        max_fee = max(legacy, priority)
        priority = min(priority, max_fee)

    params = FeeParams(
        gas_limit=gas_limit,
        max_fee_per_gas=max_fee,
        max_priority_fee_per_gas=priority,
        base_fee_per_gas=base_fee,
        source=f"{source};gas={gas_source}",
    )
    if max_fee_cap_wei is not None and params.max_cost_wei > max_fee_cap_wei:
        raise ValueError(
            f"Computed max fee {params.max_cost_wei} wei exceeds cap {max_fee_cap_wei} wei"
        )
    return params


def current_gas_price(rpc_client: Any) -> int:
    """Best-effort gas price for display; never raises."""

    try:
        return int(rpc_client.gas_price())
    except Exception as exc:  # pragma: no cover - RPC errors vary
        logger.info("eth_gasPrice unavailable, using %s gwei: %s", DEFAULT_FALLBACK_GAS_PRICE_GWEI, exc)
        return gwei_to_wei(DEFAULT_FALLBACK_GAS_PRICE_GWEI)


def format_fee_params(params: FeeParams) -> str:
    """Format fee parameters for user-facing logs."""

    return (
        f"gas={params.gas_limit} maxFee={wei_to_gwei(params.max_fee_per_gas):.2f} gwei "
        f"priority={wei_to_gwei(params.max_priority_fee_per_gas):.2f} gwei ({params.source})"
    )
