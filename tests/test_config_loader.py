from decimal import Decimal
from pathlib import Path

import pytest

from paycadence.config import ConfigurationError, RPCConfig, load_rpc_config, load_settings


@pytest.fixture(autouse=True)
def isolated_default_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    default = tmp_path / "home" / ".paycadence.yaml"
    monkeypatch.setattr("paycadence.config.DEFAULT_CONFIG_PATH", default)
    monkeypatch.setattr("paycadence.config._CONFIG_PATH_OVERRIDE", None)
    return default


def test_environment_wins_over_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
        rpc:
          endpoint: http://filehost:8545
          user: file_user
          password: file_pass
          timeout_seconds: 12
        scheduler:
          lease_ttl: 600
          max_retries: 5
        """
    )
    env = {
        "PAYCADENCE_RPC_URL": "https://envhost:8545",
        "PAYCADENCE_RPC_USER": "env_user",
        "PAYCADENCE_MAX_RETRIES": "7",
    }

    settings = load_settings(config_path=config_path, env=env)

    assert isinstance(settings.rpc, RPCConfig)
    assert settings.rpc.endpoint == "https://envhost:8545"
    assert settings.rpc.user == "env_user"
    assert settings.rpc.password == "file_pass"
    assert settings.rpc.timeout_seconds == 12.0
    assert settings.scheduler.lease_ttl == 600.0
    assert settings.scheduler.max_retries == 7


def test_defaults_when_nothing_configured() -> None:
    settings = load_settings(env={})

    assert settings.rpc.endpoint == "http://127.0.0.1:8545"
    assert settings.rpc.auth is None
    assert settings.scheduler.lease_ttl == 300.0
    assert settings.scheduler.guard_window == 120.0
    assert settings.scheduler.settle_window == 30.0
    assert settings.scheduler.default_max_executions == 999
    assert settings.batch.tax_rate == Decimal("0.0025")
    assert settings.batch.tax_collector is None
    assert settings.keystore_path is None


def test_default_file_is_read(isolated_default_config: Path) -> None:
    isolated_default_config.parent.mkdir(parents=True)
    isolated_default_config.write_text(
        """
        batch:
          tax_collector: "0x3333333333333333333333333333333333333333"
          max_batch_size: 50
        prices:
          fallback_price: "2500.5"
        store:
          path: /tmp/paycadence-test.sqlite
        credentials:
          keystore: /tmp/paycadence-keys.yaml
        """
    )

    settings = load_settings(env={})

    assert settings.batch.tax_collector == "0x" + "3" * 40
    assert settings.batch.max_batch_size == 50
    assert settings.prices.fallback_price == Decimal("2500.5")
    assert settings.store_path == Path("/tmp/paycadence-test.sqlite")
    assert settings.keystore_path == Path("/tmp/paycadence-keys.yaml")


def test_overrides_take_precedence() -> None:
    settings = load_settings(
        env={"PAYCADENCE_RPC_URL": "http://envhost:1"},
        rpc_overrides={"endpoint": "http://override:2"},
        scheduler_overrides={"retry_delay": 30},
    )

    assert settings.rpc.endpoint == "http://override:2"
    assert settings.scheduler.retry_delay == 30.0
    assert load_rpc_config(env={}, overrides={"chain_id": 11155111}).chain_id == 11155111


def test_lease_must_outlive_receipt_timeout() -> None:
    with pytest.raises(ConfigurationError):
        load_settings(env={}, scheduler_overrides={"lease_ttl": 60, "receipt_timeout": 120})


@pytest.mark.parametrize(
    "env",
    [
        {"PAYCADENCE_RPC_URL": "ftp://node"},
        {"PAYCADENCE_TAX_RATE": "1.5"},
        {"PAYCADENCE_LEASE_TTL": "soon"},
    ],
)
def test_invalid_values_rejected(env) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(env=env)


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_settings(config_path=tmp_path / "missing.yaml", env={})
