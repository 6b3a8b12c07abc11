"""
Sagas and the transaction log.
"""

from .log import LogLevel, TransactionLog, TransactionLogEntry
from .orchestrator import (
    RetryConfig,
    SagaContext,
    SagaDefinition,
    SagaOrchestrator,
    SagaResult,
    SagaStatus,
    SagaStep,
    StepRecord,
    StepStatus,
    calculate_delay,
    order_steps,
)

__all__ = [
    "LogLevel",
    "TransactionLog",
    "TransactionLogEntry",
    "RetryConfig",
    "SagaContext",
    "SagaDefinition",
    "SagaOrchestrator",
    "SagaResult",
    "SagaStatus",
    "SagaStep",
    "StepRecord",
    "StepStatus",
    "calculate_delay",
    "order_steps",
]
