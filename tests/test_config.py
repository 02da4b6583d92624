import json

from config.runtime_env import parse_bool
from config.settings import Config, HealthConfig, _safe_dataclass_from_dict, load_config


def test_parse_bool() -> None:
    assert parse_bool("YeS") is True
    assert parse_bool(" off ") is False
    assert parse_bool(0) is False
    assert parse_bool("maybe") is None


def test_defaults_and_breaker_profiles() -> None:
    config = Config(use_env=False)

    assert config.retry.max_attempts == 3
    assert config.orders.timeout_seconds == 60.0
    assert config.breaker_profile("order_placement").open_timeout_seconds == 30.0
    assert config.breaker_profile("data_fetch").failure_threshold == 10
    assert config.breaker_profile("broker_connection").min_volume == 2
    assert config.breaker_profile("unknown").failure_threshold == 5
    assert config.validation_warnings == []


def test_safe_dataclass_update_keeps_bad_fields() -> None:
    cfg = HealthConfig()
    warnings = _safe_dataclass_from_dict(cfg, {
        "auto_recover": "false",
        "failure_threshold": "4",
        "probe_interval_seconds": -1,
        "recovery_threshold": True,
        "nonsense": 1,
    })

    assert cfg.auto_recover is False
    assert cfg.failure_threshold == 4
    assert cfg.probe_interval_seconds == 30.0
    assert cfg.recovery_threshold == 2
    assert len(warnings) == 3
    assert any("Unknown field 'nonsense'" in w for w in warnings)


def test_file_then_env_override(tmp_path, monkeypatch) -> None:
    path = tmp_path / "resilience.json"
    path.write_text(json.dumps({
        "log_level": "debug",
        "retry": {"max_attempts": 5},
        "health": {"probe_interval_seconds": 10},
    }))
    monkeypatch.setenv("TRADING_HEALTH_PROBE_INTERVAL", "15")
    monkeypatch.setenv("TRADING_HEALTH_AUTO_RECOVER", "no")
    monkeypatch.setenv("TRADING_RETRY_MAX_ATTEMPTS", "not-a-number")

    config = load_config(path)

    assert config.log_level == "DEBUG"
    assert config.retry.max_attempts == 5
    assert config.health.probe_interval_seconds == 15.0
    assert config.health.auto_recover is False


def test_broken_file_is_a_warning(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    config = load_config(path, use_env=False)

    assert config.retry.max_attempts == 3
    assert any(w.startswith("Failed to load") for w in config.validation_warnings)


def test_validation_warnings() -> None:
    config = Config.from_dict({
        "reconciliation": {"price_tolerance_pct": 10},
        "alerts": {"webhook_enabled": True},
        "retry": {"initial_delay_seconds": 60},
    })
    warnings = config.validation_warnings

    assert any("price_tolerance_pct" in w for w in warnings)
    assert any("webhook_url" in w for w in warnings)
    assert any("initial_delay_seconds" in w for w in warnings)


def test_save_and_reload(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("TRADING_ALERT_WEBHOOK_URL", raising=False)
    path = tmp_path / "nested" / "config.json"
    config = Config.from_dict({"orders": {"max_retries": 1}})
    assert config.save(path) == path

    loaded = load_config(path, use_env=False)
    assert loaded.orders.max_retries == 1
    assert loaded.to_dict()["orders"] == config.to_dict()["orders"]

    path.write_text(json.dumps({"orders": {"max_retries": 2}}))
    loaded.reload()
    assert loaded.orders.max_retries == 2
