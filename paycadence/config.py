"""Shared configuration loader for paycadence."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

import yaml


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".paycadence.yaml"
DEFAULT_STORE_PATH = Path.home() / ".paycadence" / "schedules.sqlite"
_CONFIG_PATH_OVERRIDE: Path | None = None

ENV_PREFIX = "PAYCADENCE_"


@dataclass
class RPCConfig:
    """Connection details for an Ethereum JSON-RPC endpoint."""

    endpoint: str = "http://127.0.0.1:8545"
    user: str | None = None
    password: str | None = None
    timeout_seconds: float = 30.0
    chain_id: int | None = None

    @property
    def auth(self) -> tuple[str, str] | None:
        if self.user and self.password:
            return (self.user, self.password)
        return None


@dataclass
class SchedulerPolicy:
    """Timing and retry policy for the payment pipeline (all durations in seconds)."""

    lease_ttl: float = 300.0
    guard_window: float = 120.0
    settle_window: float = 30.0
    selection_limit: int = 10
    poll_interval: float = 30.0
    max_retries: int = 3
    retry_delay: float = 300.0
    backoff_factor: float = 1.0
    receipt_timeout: float = 120.0
    receipt_poll_interval: float = 3.0
    reconciliation_window: float = 300.0
    block_time: float = 12.0
    default_max_executions: int = 999

    def retry_delay_for(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (1-based)."""

        return self.retry_delay * (self.backoff_factor ** max(attempt - 1, 0))


@dataclass
class BatchConfig:
    contract_address: str = "0xe07F91365a5d537a7B20b47B7fD9AF6DD5FeF81D"
    min_batch_size: int = 2
    max_batch_size: int = 100
    tax_rate: Decimal = Decimal("0.0025")
    tax_collector: str | None = None
    deadline_seconds: int = 3600


@dataclass
class PriceConfig:
    endpoint: str = "https://api.coingecko.com/api/v3"
    native_asset_id: str = "ethereum"
    fallback_price: Decimal = Decimal("3500")
    cache_ttl: float = 60.0
    timeout_seconds: float = 10.0
    api_key: str | None = None


@dataclass
class Settings:
    rpc: RPCConfig = field(default_factory=RPCConfig)
    scheduler: SchedulerPolicy = field(default_factory=SchedulerPolicy)
    batch: BatchConfig = field(default_factory=BatchConfig)
    prices: PriceConfig = field(default_factory=PriceConfig)
    store_path: Path = DEFAULT_STORE_PATH
    keystore_path: Path | None = None


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _section(file_config: Mapping[str, Any], name: str, path: Path) -> dict[str, Any]:
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected '{name}' to be a mapping in {path}")
    return section


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _coerce_float(raw: Any, *, source: str) -> float | None:
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid number in {source}: {raw}") from exc


def _coerce_int(raw: Any, *, source: str) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid integer in {source}: {raw}") from exc


def _coerce_decimal(raw: Any, *, source: str) -> Decimal | None:
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation as exc:
        raise ConfigurationError(f"Invalid decimal in {source}: {raw}") from exc


def _validate_endpoint(raw: str) -> str:
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ConfigurationError(f"Invalid RPC endpoint URL: {raw}")
    return raw


_SCHEDULER_FIELDS: dict[str, type] = {
    "lease_ttl": float,
    "guard_window": float,
    "settle_window": float,
    "selection_limit": int,
    "poll_interval": float,
    "max_retries": int,
    "retry_delay": float,
    "backoff_factor": float,
    "receipt_timeout": float,
    "receipt_poll_interval": float,
    "reconciliation_window": float,
    "block_time": float,
    "default_max_executions": int,
}


def _load_policy(
    section: Mapping[str, Any], env_map: Mapping[str, str], overrides: Mapping[str, Any]
) -> SchedulerPolicy:
    defaults = SchedulerPolicy()
    values: dict[str, Any] = {}
    for name, kind in _SCHEDULER_FIELDS.items():
        env_raw = env_map.get(f"{ENV_PREFIX}{name.upper()}")
        coerce = _coerce_int if kind is int else _coerce_float
        values[name] = _first_value(
            coerce(overrides.get(name), source="overrides"),
            coerce(env_raw, source="environment"),
            coerce(section.get(name), source=f"scheduler.{name}"),
            default=getattr(defaults, name),
        )
    policy = SchedulerPolicy(**values)

    if policy.lease_ttl <= policy.receipt_timeout:
        raise ConfigurationError(
            f"scheduler.lease_ttl ({policy.lease_ttl}s) must exceed scheduler.receipt_timeout "
            f"({policy.receipt_timeout}s) so a lease outlives a bounded execution"
        )
    if policy.max_retries < 1:
        raise ConfigurationError("scheduler.max_retries must be at least 1")
    if policy.poll_interval <= 0 or policy.receipt_poll_interval <= 0:
        raise ConfigurationError("Poll intervals must be positive")
    if policy.backoff_factor < 1:
        raise ConfigurationError("scheduler.backoff_factor must be >= 1")
    return policy


def load_rpc_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> RPCConfig:
    """Load RPC configuration from environment variables and optional YAML."""

    return load_settings(config_path=config_path, env=env, rpc_overrides=overrides).rpc


def load_settings(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    rpc_overrides: Mapping[str, Any] | None = None,
    scheduler_overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load all settings from overrides, ``PAYCADENCE_*`` variables and YAML."""

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )
    file_config = _load_config_file(path, required=explicit_path)

    rpc_section = _section(file_config, "rpc", path)
    rpc_override_map = dict(rpc_overrides or {})
    endpoint = _first_value(
        rpc_override_map.get("endpoint"),
        env_map.get(f"{ENV_PREFIX}RPC_URL"),
        rpc_section.get("endpoint"),
        default=RPCConfig.endpoint,
    )
    rpc = RPCConfig(
        endpoint=_validate_endpoint(str(endpoint)),
        user=_first_value(
            rpc_override_map.get("user"), env_map.get(f"{ENV_PREFIX}RPC_USER"), rpc_section.get("user")
        ),
        password=_first_value(
            rpc_override_map.get("password"),
            env_map.get(f"{ENV_PREFIX}RPC_PASSWORD"),
            rpc_section.get("password"),
        ),
        timeout_seconds=_first_value(
            _coerce_float(rpc_override_map.get("timeout_seconds"), source="overrides"),
            _coerce_float(env_map.get(f"{ENV_PREFIX}RPC_TIMEOUT"), source="environment"),
            _coerce_float(rpc_section.get("timeout_seconds"), source="rpc.timeout_seconds"),
            default=RPCConfig.timeout_seconds,
        ),
        chain_id=_first_value(
            _coerce_int(rpc_override_map.get("chain_id"), source="overrides"),
            _coerce_int(env_map.get(f"{ENV_PREFIX}CHAIN_ID"), source="environment"),
            _coerce_int(rpc_section.get("chain_id"), source="rpc.chain_id"),
        ),
    )

    policy = _load_policy(
        _section(file_config, "scheduler", path), env_map, dict(scheduler_overrides or {})
    )

    batch_section = _section(file_config, "batch", path)
    batch_defaults = BatchConfig()
    batch = BatchConfig(
        contract_address=str(
            _first_value(
                env_map.get(f"{ENV_PREFIX}BATCH_CONTRACT"),
                batch_section.get("contract_address"),
                default=batch_defaults.contract_address,
            )
        ),
        min_batch_size=_first_value(
            _coerce_int(batch_section.get("min_batch_size"), source="batch.min_batch_size"),
            default=batch_defaults.min_batch_size,
        ),
        max_batch_size=_first_value(
            _coerce_int(batch_section.get("max_batch_size"), source="batch.max_batch_size"),
            default=batch_defaults.max_batch_size,
        ),
        tax_rate=_first_value(
            _coerce_decimal(env_map.get(f"{ENV_PREFIX}TAX_RATE"), source="environment"),
            _coerce_decimal(batch_section.get("tax_rate"), source="batch.tax_rate"),
            default=batch_defaults.tax_rate,
        ),
        tax_collector=_first_value(
            env_map.get(f"{ENV_PREFIX}TAX_COLLECTOR"), batch_section.get("tax_collector")
        ),
        deadline_seconds=_first_value(
            _coerce_int(batch_section.get("deadline_seconds"), source="batch.deadline_seconds"),
            default=batch_defaults.deadline_seconds,
        ),
    )
    if not Decimal("0") <= batch.tax_rate < Decimal("1"):
        raise ConfigurationError(f"batch.tax_rate must be in [0, 1): {batch.tax_rate}")

    prices_section = _section(file_config, "prices", path)
    price_defaults = PriceConfig()
    prices = PriceConfig(
        endpoint=str(
            _first_value(
                env_map.get(f"{ENV_PREFIX}PRICE_URL"),
                prices_section.get("endpoint"),
                default=price_defaults.endpoint,
            )
        ),
        native_asset_id=str(
            _first_value(prices_section.get("native_asset_id"), default=price_defaults.native_asset_id)
        ),
        fallback_price=_first_value(
            _coerce_decimal(prices_section.get("fallback_price"), source="prices.fallback_price"),
            default=price_defaults.fallback_price,
        ),
        cache_ttl=_first_value(
            _coerce_float(prices_section.get("cache_ttl"), source="prices.cache_ttl"),
            default=price_defaults.cache_ttl,
        ),
        api_key=_first_value(
            env_map.get(f"{ENV_PREFIX}PRICE_API_KEY"), prices_section.get("api_key")
        ),
    )

    store_section = _section(file_config, "store", path)
    store_path = Path(
        _first_value(
            env_map.get(f"{ENV_PREFIX}STORE_PATH"), store_section.get("path"), default=DEFAULT_STORE_PATH
        )
    ).expanduser()

    credentials_section = _section(file_config, "credentials", path)
    keystore_raw = _first_value(
        env_map.get(f"{ENV_PREFIX}KEYSTORE"), credentials_section.get("keystore")
    )

    return Settings(
        rpc=rpc,
        scheduler=policy,
        batch=batch,
        prices=prices,
        store_path=store_path,
        keystore_path=Path(keystore_raw).expanduser() if keystore_raw else None,
    )
