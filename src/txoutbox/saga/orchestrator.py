"""
Saga Orchestrator

Runs multi-step operations whose steps cannot share one database
transaction. Each step is retried with exponential backoff and bounded
by an optional timeout. When a step finally fails, the steps that
already completed are compensated in reverse order.

Every step start, retry, completion, failure and compensation is
written to the TransactionLog.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from ..errors import SagaDefinitionError
from ..observability import create_span
from .log import LogLevel, TransactionLog

logger = logging.getLogger(__name__)


class SagaStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPENSATING = "compensating"
    COMMITTED = "committed"
    ABORTED = "aborted"
    FAILED = "failed"


FINISHED_STATUSES = frozenset({SagaStatus.COMMITTED, SagaStatus.ABORTED, SagaStatus.FAILED})


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATED = "compensated"


@dataclass
class RetryConfig:
    """Retry policy for one step. Delays are in seconds."""
    max_attempts: int = 3
    delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0


@dataclass
class SagaContext:
    """Shared state handed to every action and compensation."""
    transaction_id: str
    saga_id: str
    input: Any
    step_results: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


StepAction = Callable[[Any, SagaContext], Awaitable[Any]]
Compensation = Callable[[Any, SagaContext], Awaitable[None]]


@dataclass
class SagaStep:
    """
    One step of a saga.

    ``action`` receives the saga input and the context; its return value
    is stored in ``context.step_results[id]``. ``compensation`` receives
    that output when the step has to be undone.
    """
    id: str
    name: str
    action: StepAction
    compensation: Optional[Compensation] = None
    dependencies: Sequence[str] = ()
    retry: Optional[RetryConfig] = None
    timeout: Optional[float] = None


@dataclass
class SagaDefinition:
    id: str
    name: str
    steps: List[SagaStep]
    timeout: Optional[float] = None
    description: str = ""


@dataclass
class StepRecord:
    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    output: Any = None
    error: Optional[str] = None


@dataclass
class SagaResult:
    """Outcome of one saga execution."""
    transaction_id: str
    saga_id: str
    status: SagaStatus = SagaStatus.PENDING
    steps: Dict[str, StepRecord] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SagaStatus.COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "saga_id": self.saga_id,
            "status": self.status.value,
            "error": self.error,
            "steps": {
                step_id: {
                    "status": record.status.value,
                    "attempts": record.attempts,
                    "error": record.error,
                }
                for step_id, record in self.steps.items()
            },
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def calculate_delay(attempt: int, retry: RetryConfig) -> float:
    """Delay before retrying after ``attempt`` (1-based) failed."""
    delay = retry.delay * (retry.backoff_multiplier ** (attempt - 1))
    return min(delay, retry.max_delay)


def order_steps(steps: Sequence[SagaStep]) -> List[SagaStep]:
    """Dependency order, keeping declaration order among independent steps."""
    ordered: List[SagaStep] = []
    done = set()
    while len(ordered) < len(steps):
        next_step = next(
            (s for s in steps if s.id not in done and all(d in done for d in s.dependencies)),
            None
        )
        if next_step is None:
            raise SagaDefinitionError("Circular dependency detected in saga steps")
        ordered.append(next_step)
        done.add(next_step.id)
    return ordered


class _StepFailed(Exception):
    def __init__(self, step_id: str, error: str):
        self.step_id = step_id
        self.error = error
        super().__init__(error)


class SagaOrchestrator:
    """
    Registers saga definitions and executes them.

    Usage:
        orchestrator = SagaOrchestrator(TransactionLog(db))
        orchestrator.register(SagaDefinition(
            id="publish-minutes",
            name="Publish meeting minutes",
            steps=[
                SagaStep("render", "Render PDF", render, compensation=delete_pdf),
                SagaStep("notify", "Notify members", notify, dependencies=["render"]),
            ],
        ))
        result = await orchestrator.execute("publish-minutes", {"meeting_id": meeting_id})
    """

    def __init__(
        self,
        log: Optional[TransactionLog] = None,
        default_retry: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.txlog = log or TransactionLog()
        self.default_retry = default_retry or RetryConfig()
        self._sleep = sleep
        self._definitions: Dict[str, SagaDefinition] = {}
        self._ordered: Dict[str, List[SagaStep]] = {}
        self._executions: Dict[str, SagaResult] = {}

    def register(self, definition: SagaDefinition) -> None:
        """
        Validate and register a saga definition.

        Raises:
            SagaDefinitionError: Missing id/name, no steps, duplicate or
                unknown step ids, or a dependency cycle
        """
        if not definition.id or not definition.name:
            raise SagaDefinitionError("Saga definition must have id and name")
        if not definition.steps:
            raise SagaDefinitionError("Saga definition must have at least one step")

        step_ids = [s.id for s in definition.steps]
        if len(set(step_ids)) != len(step_ids):
            raise SagaDefinitionError(f"Saga {definition.id} has duplicate step ids")

        known = set(step_ids)
        for step in definition.steps:
            for dep in step.dependencies:
                if dep not in known:
                    raise SagaDefinitionError(f"Step {step.id} has invalid dependency: {dep}")

        self._ordered[definition.id] = order_steps(definition.steps)
        self._definitions[definition.id] = definition
        logger.info(f"Registered saga definition: {definition.id}")

    def get_status(self, transaction_id: str) -> Optional[SagaStatus]:
        result = self._executions.get(transaction_id)
        return result.status if result else None

    def get_active_transactions(self) -> List[str]:
        return [
            tid for tid, result in self._executions.items()
            if result.status not in FINISHED_STATUSES
        ]

    def cleanup(self, max_age: timedelta = timedelta(hours=24)) -> int:
        """Forget finished executions older than ``max_age``."""
        cutoff = datetime.now(timezone.utc) - max_age
        stale = [
            tid for tid, result in self._executions.items()
            if result.status in FINISHED_STATUSES and result.started_at < cutoff
        ]
        for tid in stale:
            del self._executions[tid]
        return len(stale)

    async def execute(
        self,
        saga_id: str,
        input: Any = None,
        transaction_id: Optional[str] = None
    ) -> SagaResult:
        """
        Run a registered saga to completion.

        Step failures do not raise; they are reported through the
        returned SagaResult status.

        Raises:
            SagaDefinitionError: Unknown saga id
        """
        definition = self._definitions.get(saga_id)
        if definition is None:
            raise SagaDefinitionError(f"Saga definition not found: {saga_id}")

        transaction_id = transaction_id or f"txn_{uuid4().hex}"
        context = SagaContext(transaction_id=transaction_id, saga_id=saga_id, input=input)
        result = SagaResult(
            transaction_id=transaction_id,
            saga_id=saga_id,
            steps={s.id: StepRecord(step_id=s.id) for s in definition.steps},
            started_at=context.started_at,
        )
        self._executions[transaction_id] = result

        with create_span("saga.execute", {"saga.id": saga_id, "saga.transaction_id": transaction_id}) as span:
            result.status = SagaStatus.RUNNING
            await self.txlog.log(
                transaction_id, LogLevel.INFO, "Saga execution started",
                {"saga_id": saga_id, "steps": len(definition.steps)}
            )

            completed: List[SagaStep] = []
            try:
                forward = self._run_steps(self._ordered[saga_id], context, result, completed)
                if definition.timeout:
                    await asyncio.wait_for(forward, timeout=definition.timeout)
                else:
                    await forward
            except _StepFailed as e:
                result.error = f"Step {e.step_id} failed: {e.error}"
            except asyncio.TimeoutError:
                result.error = f"Saga timed out after {definition.timeout}s"
                await self.txlog.log(transaction_id, LogLevel.ERROR, result.error)
                for record in result.steps.values():
                    if record.status == StepStatus.RUNNING:
                        record.status = StepStatus.FAILED
                        record.error = result.error

            if result.error is None:
                result.status = SagaStatus.COMMITTED
                result.output = dict(context.step_results)
                await self.txlog.log(transaction_id, LogLevel.INFO, "Saga completed successfully")
            else:
                clean = await self._compensate(completed, context, result)
                result.status = SagaStatus.ABORTED if clean else SagaStatus.FAILED
                await self.txlog.log(
                    transaction_id, LogLevel.ERROR, "Saga execution failed",
                    {"status": result.status.value}, error=result.error
                )

            span.set_attribute("saga.status", result.status.value)

        result.finished_at = datetime.now(timezone.utc)
        return result

    async def _run_steps(
        self,
        steps: List[SagaStep],
        context: SagaContext,
        result: SagaResult,
        completed: List[SagaStep]
    ):
        for step in steps:
            output = await self._execute_step(step, context, result.steps[step.id])
            context.step_results[step.id] = output
            completed.append(step)

    async def _execute_step(self, step: SagaStep, context: SagaContext, record: StepRecord) -> Any:
        """Execute a single step with retry logic."""
        retry = step.retry or self.default_retry
        tid = context.transaction_id
        record.status = StepStatus.RUNNING

        await self.txlog.log(tid, LogLevel.INFO, f"Executing step: {step.name}", step_id=step.id)

        for attempt in range(1, retry.max_attempts + 1):
            record.attempts = attempt
            try:
                pending = step.action(context.input, context)
                if step.timeout:
                    output = await asyncio.wait_for(pending, timeout=step.timeout)
                else:
                    output = await pending
            except asyncio.TimeoutError:
                error = f"Step timed out after {step.timeout}s"
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
            else:
                record.status = StepStatus.COMPLETED
                record.output = output
                record.error = None
                message = f"Step completed: {step.name}"
                if attempt > 1:
                    message = f"Step succeeded after {attempt} attempts: {step.name}"
                await self.txlog.log(tid, LogLevel.INFO, message, {"attempt": attempt}, step_id=step.id)
                return output

            record.error = error
            if attempt < retry.max_attempts:
                delay = calculate_delay(attempt, retry)
                await self.txlog.log(
                    tid, LogLevel.WARN,
                    f"Step failed, retrying in {delay}s: {step.name}",
                    {"attempt": attempt, "next_attempt": attempt + 1, "delay": delay},
                    step_id=step.id, error=error
                )
                await self._sleep(delay)

        record.status = StepStatus.FAILED
        await self.txlog.log(
            tid, LogLevel.ERROR,
            f"Step failed after all retry attempts: {step.name}",
            {"attempts": retry.max_attempts},
            step_id=step.id, error=record.error
        )
        raise _StepFailed(step.id, record.error)

    async def _compensate(self, completed: List[SagaStep], context: SagaContext, result: SagaResult) -> bool:
        """Undo completed steps in reverse order. Returns False if any compensation failed."""
        tid = context.transaction_id
        result.status = SagaStatus.COMPENSATING
        await self.txlog.log(
            tid, LogLevel.INFO, "Starting saga compensation",
            {"steps_to_compensate": len(completed)}
        )

        clean = True
        for step in reversed(completed):
            record = result.steps[step.id]
            if step.compensation is None:
                await self.txlog.log(
                    tid, LogLevel.DEBUG, f"No compensation for step: {step.name}", step_id=step.id
                )
                continue
            try:
                await step.compensation(record.output, context)
            except Exception as e:
                clean = False
                await self.txlog.log(
                    tid, LogLevel.ERROR, f"Step compensation failed: {step.name}",
                    step_id=step.id, error=f"{type(e).__name__}: {e}"
                )
                continue
            record.status = StepStatus.COMPENSATED
            await self.txlog.log(
                tid, LogLevel.INFO, f"Step compensated successfully: {step.name}", step_id=step.id
            )

        await self.txlog.log(tid, LogLevel.INFO, "Saga compensation completed", {"clean": clean})
        return clean
