"""Request execution with retry, backoff and node failover."""

from ledger_client.execution.executor import (
    Executable,
    ExecutionState,
    Executor,
    RequestStrategy,
    classify_precheck,
)

__all__ = ["Executable", "ExecutionState", "Executor", "RequestStrategy", "classify_precheck"]
