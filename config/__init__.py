"""Configuration Package."""
from .settings import (
    AlertConfig,
    BreakerProfileConfig,
    Config,
    HealthConfig,
    IdempotencyConfig,
    OrderConfig,
    ReconciliationConfig,
    RecoveryConfig,
    RetryConfig,
    load_config,
)

__all__ = [
    'Config',
    'load_config',
    'BreakerProfileConfig',
    'RetryConfig',
    'IdempotencyConfig',
    'OrderConfig',
    'ReconciliationConfig',
    'HealthConfig',
    'RecoveryConfig',
    'AlertConfig',
]
