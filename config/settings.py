# config/settings.py
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config.runtime_env import parse_bool

# Plain stdlib logger: utils.logger must stay importable without config.
_log = logging.getLogger("config.settings")

ENV_PREFIX = "TRADING_"


@dataclass
class BreakerProfileConfig:
    """Thresholds for one operation-class circuit breaker."""
    failure_threshold: int = 5
    success_threshold: int = 2
    open_timeout_seconds: float = 60.0
    rolling_window_seconds: float = 60.0
    min_volume: int = 10


def _order_placement_profile() -> BreakerProfileConfig:
    return BreakerProfileConfig(
        failure_threshold=5, success_threshold=2,
        open_timeout_seconds=30.0, min_volume=3,
    )


def _data_fetch_profile() -> BreakerProfileConfig:
    return BreakerProfileConfig(
        failure_threshold=10, success_threshold=3,
        open_timeout_seconds=15.0, min_volume=5,
    )


def _broker_connection_profile() -> BreakerProfileConfig:
    return BreakerProfileConfig(
        failure_threshold=3, success_threshold=1,
        open_timeout_seconds=60.0, min_volume=2,
    )


@dataclass
class RetryConfig:
    """Default back-off policy for remote calls."""
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.25


@dataclass
class IdempotencyConfig:
    bucket_seconds: float = 1.0
    rearm_seconds: float = 5.0
    max_age_seconds: float = 120.0
    cleanup_interval_seconds: float = 60.0


@dataclass
class OrderConfig:
    """Order lifecycle limits."""
    timeout_seconds: float = 60.0
    max_retries: int = 3
    retention_days: int = 7


@dataclass
class ReconciliationConfig:
    order_interval_seconds: float = 5.0
    max_missing_cycles: int = 60
    position_interval_seconds: float = 300.0
    price_tolerance_pct: float = 1.0
    critical_after_cycles: int = 3


@dataclass
class HealthConfig:
    """Broker health probing and recovery."""
    probe_interval_seconds: float = 30.0
    failure_threshold: int = 3
    recovery_threshold: int = 2
    degraded_latency_seconds: float = 5.0
    history_size: int = 1000
    auto_recover: bool = True
    recovery_max_attempts: int = 10
    recovery_initial_delay_seconds: float = 10.0
    recovery_max_delay_seconds: float = 120.0
    reconnect_wait_seconds: float = 5.0


@dataclass
class RecoveryConfig:
    """Error-recovery service limits."""
    reconnect_max_attempts: int = 5
    reconnect_initial_delay_seconds: float = 2.0
    reconnect_max_delay_seconds: float = 30.0
    error_history_size: int = 1000


@dataclass
class AlertConfig:
    enabled: bool = True
    webhook_enabled: bool = False
    webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0
    max_history: int = 1000


def _safe_dataclass_from_dict(dc_instance: Any, data: Dict) -> List[str]:
    """
    Apply dict values to a dataclass instance with type checking.

    Returns a list of warnings for unknown keys and bad values; the
    offending fields keep their previous value.
    """
    if not isinstance(data, dict):
        return [f"Expected dict, got {type(data).__name__}"]

    warnings_list: List[str] = []
    dc_fields = {f.name for f in fields(dc_instance)}

    for key, value in data.items():
        if key not in dc_fields:
            warnings_list.append(f"Unknown field '{key}' ignored")
            continue

        current = getattr(dc_instance, key)

        # bool before int: bool is a subclass of int
        if isinstance(current, bool):
            parsed = parse_bool(value)
            if parsed is None:
                warnings_list.append(f"Bad value for bool field '{key}': {value!r}")
            else:
                setattr(dc_instance, key, parsed)
        elif isinstance(current, (int, float)):
            if isinstance(value, bool):
                warnings_list.append(f"Type mismatch for '{key}': got bool")
                continue
            try:
                number = float(value)
            except (TypeError, ValueError):
                warnings_list.append(f"Bad value for '{key}': {value!r}")
                continue
            if number < 0:
                warnings_list.append(f"Negative value for '{key}': {value!r}")
                continue
            setattr(dc_instance, key, int(number) if isinstance(current, int) else number)
        elif isinstance(current, str):
            if isinstance(value, str):
                setattr(dc_instance, key, value)
            else:
                warnings_list.append(
                    f"Type mismatch for '{key}': expected str, got {type(value).__name__}"
                )
        else:
            warnings_list.append(f"Unsupported field type for '{key}'")

    return warnings_list


def _dataclass_to_dict(dc_instance: Any) -> Dict[str, Any]:
    return {f.name: getattr(dc_instance, f.name) for f in fields(dc_instance)}


class Config:
    """
    Configuration for the resilience layer.

    Values resolve in order: dataclass defaults, then the optional JSON file,
    then ``TRADING_*`` environment variables. Problems never raise; they are
    logged and collected in ``validation_warnings``.

    Usage:
        config = load_config("resilience.json")
        config.health.probe_interval_seconds
        config.breaker_profile("order_placement").failure_threshold
    """

    _SUB_CONFIGS = (
        "breaker_order_placement",
        "breaker_data_fetch",
        "breaker_broker_connection",
        "retry",
        "idempotency",
        "orders",
        "reconciliation",
        "health",
        "recovery",
        "alerts",
    )

    _ENV_MAPPINGS: Dict[str, tuple[str, Callable[[str], Any]]] = {
        "LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "LOG_DIR": ("log_dir", str),
        "RETRY_MAX_ATTEMPTS": ("retry.max_attempts", int),
        "RETRY_INITIAL_DELAY": ("retry.initial_delay_seconds", float),
        "ORDER_TIMEOUT": ("orders.timeout_seconds", float),
        "ORDER_RECON_INTERVAL": ("reconciliation.order_interval_seconds", float),
        "POSITION_RECON_INTERVAL": ("reconciliation.position_interval_seconds", float),
        "PRICE_TOLERANCE_PCT": ("reconciliation.price_tolerance_pct", float),
        "HEALTH_PROBE_INTERVAL": ("health.probe_interval_seconds", float),
        "HEALTH_AUTO_RECOVER": ("health.auto_recover", parse_bool),
        "ALERT_WEBHOOK_URL": ("alerts.webhook_url", str),
        "ALERT_WEBHOOK_ENABLED": ("alerts.webhook_enabled", parse_bool),
    }

    def __init__(
        self,
        config_file: Optional[Path | str] = None,
        env_prefix: str = ENV_PREFIX,
        use_env: bool = True,
    ) -> None:
        self._lock = threading.RLock()
        self._config_file = Path(config_file) if config_file else None
        self._env_prefix = env_prefix
        self._use_env = use_env
        self._validation_warnings: List[str] = []

        self._reset_defaults()
        self._load()
        self._validate()

    def _reset_defaults(self) -> None:
        self.breaker_order_placement = _order_placement_profile()
        self.breaker_data_fetch = _data_fetch_profile()
        self.breaker_broker_connection = _broker_connection_profile()
        self.retry = RetryConfig()
        self.idempotency = IdempotencyConfig()
        self.orders = OrderConfig()
        self.reconciliation = ReconciliationConfig()
        self.health = HealthConfig()
        self.recovery = RecoveryConfig()
        self.alerts = AlertConfig()

        self.log_level: str = "INFO"
        self.log_dir: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any], use_env: bool = False) -> Config:
        """Build a config from a dict without touching the filesystem."""
        config = cls(use_env=use_env)
        with config._lock:
            config._apply_dict(data)
            if use_env:
                config._load_from_env()
            config._validate()
        return config

    def breaker_profile(self, operation_class: str) -> BreakerProfileConfig:
        """Profile for ``order_placement``, ``data_fetch`` or ``broker_connection``."""
        profile = getattr(self, f"breaker_{operation_class}", None)
        if not isinstance(profile, BreakerProfileConfig):
            return BreakerProfileConfig()
        return profile

    # ==================== LOADING ====================

    def _load(self) -> None:
        if self._config_file is not None and self._config_file.exists():
            try:
                with open(self._config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._apply_dict(data)
            except (OSError, ValueError) as e:
                self._validation_warnings.append(f"Failed to load config file: {e}")
                _log.warning("Failed to load config file %s: %s", self._config_file, e)

        if self._use_env:
            self._load_from_env()

    def _load_from_env(self) -> None:
        for env_key, (attr_path, converter) in self._ENV_MAPPINGS.items():
            full_key = f"{self._env_prefix}{env_key}"
            raw = os.environ.get(full_key)
            if raw is None or not raw.strip():
                continue
            try:
                value = converter(raw.strip())
            except ValueError as e:
                _log.warning("Failed to apply env %s=%r: %s", full_key, raw, e)
                continue
            if value is None:
                _log.warning("Unrecognised value for env %s=%r", full_key, raw)
                continue
            self._set_nested(attr_path, value)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        if not isinstance(data, dict):
            _log.warning("Config root must be an object, got %s", type(data).__name__)
            return

        for key, value in data.items():
            if key in self._SUB_CONFIGS:
                if not isinstance(value, dict):
                    _log.warning(
                        "Expected dict for '%s', got %s; ignored",
                        key, type(value).__name__,
                    )
                    continue
                for w in _safe_dataclass_from_dict(getattr(self, key), value):
                    _log.warning("Config %s: %s", key, w)
                continue

            if key in ("log_level", "log_dir"):
                if isinstance(value, str):
                    setattr(self, key, value.upper() if key == "log_level" else value)
                else:
                    _log.warning("Type mismatch for '%s'", key)
                continue

            _log.debug("Unknown config key '%s' ignored", key)

    def _set_nested(self, path: str, value: Any) -> None:
        parts = path.split(".")
        obj: Any = self
        for part in parts[:-1]:
            obj = getattr(obj, part)
        setattr(obj, parts[-1], value)

    # ==================== VALIDATION ====================

    def _validate(self) -> None:
        warnings_list: List[str] = [
            w for w in self._validation_warnings if w.startswith("Failed to load")
        ]

        for name in ("breaker_order_placement", "breaker_data_fetch", "breaker_broker_connection"):
            profile: BreakerProfileConfig = getattr(self, name)
            if profile.failure_threshold < 1:
                warnings_list.append(f"{name}.failure_threshold must be >= 1")
            if profile.success_threshold < 1:
                warnings_list.append(f"{name}.success_threshold must be >= 1")

        if self.retry.max_attempts < 1:
            warnings_list.append("retry.max_attempts must be >= 1")
        if self.retry.initial_delay_seconds > self.retry.max_delay_seconds:
            warnings_list.append("retry.initial_delay_seconds exceeds max_delay_seconds")
        if not 0 <= self.retry.jitter <= 1:
            warnings_list.append("retry.jitter must be within [0, 1]")

        if self.idempotency.rearm_seconds > self.idempotency.max_age_seconds:
            warnings_list.append("idempotency.rearm_seconds exceeds max_age_seconds")

        if not 1.0 <= self.reconciliation.price_tolerance_pct <= 5.0:
            warnings_list.append(
                f"reconciliation.price_tolerance_pct={self.reconciliation.price_tolerance_pct} "
                f"outside the usual 1-5% band"
            )

        if self.health.recovery_threshold < 1:
            warnings_list.append("health.recovery_threshold must be >= 1")

        if self.alerts.webhook_enabled and not self.alerts.webhook_url:
            warnings_list.append("alerts.webhook_enabled without alerts.webhook_url")

        for w in warnings_list:
            _log.warning("Config validation: %s", w)
        self._validation_warnings = warnings_list

    @property
    def validation_warnings(self) -> List[str]:
        return list(self._validation_warnings)

    # ==================== SAVE / RELOAD ====================

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            data: Dict[str, Any] = {
                "log_level": self.log_level,
                "log_dir": self.log_dir,
            }
            for name in self._SUB_CONFIGS:
                data[name] = _dataclass_to_dict(getattr(self, name))
            return data

    def save(self, path: Optional[Path | str] = None) -> Path:
        """Write the config as JSON atomically (temp file + rename)."""
        target = Path(path) if path else self._config_file
        if target is None:
            raise ValueError("No config file path to save to")

        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        tmp_path.replace(target)
        return target

    def reload(self) -> None:
        """Reset to defaults and re-apply file and environment."""
        with self._lock:
            self._validation_warnings = []
            self._reset_defaults()
            self._load()
            self._validate()

    def __repr__(self) -> str:
        return (
            f"Config(probe={self.health.probe_interval_seconds}s, "
            f"retry={self.retry.max_attempts}x, "
            f"order_timeout={self.orders.timeout_seconds}s, "
            f"warnings={len(self._validation_warnings)})"
        )


def load_config(path: Optional[Path | str] = None, use_env: bool = True) -> Config:
    """Load configuration from an optional JSON file plus environment."""
    return Config(config_file=path, use_env=use_env)
