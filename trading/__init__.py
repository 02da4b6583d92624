# trading/__init__.py
from importlib import import_module

_LAZY_EXPORTS = {
    'ResilienceRuntime': '.runtime',
    'ExecutionGateway': '.gateway',
    'CircuitBreaker': '.circuit_breaker',
    'CircuitBreakerRegistry': '.circuit_breaker',
    'CircuitState': '.circuit_breaker',
    'RetryPolicy': '.retry',
    'RetryExecutor': '.retry',
    'execute_with_retry': '.retry',
    'IdempotencyGuard': '.idempotency',
    'OrderRegistry': '.oms',
    'OrderStateMachine': '.oms',
    'OrderReconciler': '.order_reconciliation',
    'PositionReconciler': '.position_reconciliation',
    'PositionBook': '.portfolio',
    'PositionLockManager': '.position_lock',
    'BrokerHealthMonitor': '.health',
    'BrokerHealthStatus': '.health',
    'KillSwitch': '.kill_switch',
    'ErrorRecoveryService': '.error_recovery',
    'AlertManager': '.alerts',
    'Broker': '.broker_base',
    'PaperBroker': '.broker_sim',
}


def __getattr__(name: str):
    """Lazy import dispatcher.

    ``from trading import ResilienceRuntime`` works without importing every
    submodule (and numpy/requests) when the package is first loaded.
    """
    module_name = _LAZY_EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module 'trading' has no attribute {name!r}")
    value = getattr(import_module(module_name, __name__), name)
    globals()[name] = value
    return value


__all__ = list(_LAZY_EXPORTS)
