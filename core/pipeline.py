"""
Pipeline orchestrator: runs an ordered list of steps against a run record.

Failure policy per step:
    critical     + retryable -> abort the attempt (PipelineAborted); the
                                outer retry loop re-runs every step
    critical     + permanent -> record a warning, continue with None
    non-critical + any       -> record a warning, continue with None

Runs are immutable RunState snapshots; every transition builds a new one and
re-persists it through the store, so progress is observable mid-run.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.errors import ClassifiedError, classify
from core.events import EventBus, RUN_COMPLETED, RUN_FAILED, RUN_PROGRESS

logger = logging.getLogger(__name__)

PENDING = "PENDING"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

TERMINAL_STATUSES = {COMPLETED, FAILED}
ALLOWED_TRANSITIONS = {
    PENDING: {RUNNING, FAILED},
    RUNNING: {COMPLETED, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}


class RunStateError(Exception):
    """Illegal run status transition or mutation of a terminal run."""


class PipelineAborted(Exception):
    """A critical step failed with a retryable error; the attempt is abandoned."""

    def __init__(self, step: str, error: ClassifiedError):
        super().__init__(f"Step '{step}' failed: {error.message}")
        self.step = step
        self.error = error


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunState(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    subject: str
    status: str = PENDING
    progress: int = 0
    current_step: Optional[str] = None
    step_warnings: Dict[str, dict] = {}
    attempts: int = 0
    config: Dict[str, Any] = {}
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: str, **updates) -> "RunState":
        if status not in ALLOWED_TRANSITIONS.get(self.status, set()):
            raise RunStateError(f"Run {self.id}: cannot move from {self.status} to {status}")

        changes = dict(updates, status=status)
        if status == RUNNING:
            changes.setdefault("started_at", _utcnow())
        if status in TERMINAL_STATUSES:
            changes.setdefault("completed_at", _utcnow())
        if status == COMPLETED:
            changes["progress"] = 100
            changes.setdefault("current_step", None)
        return self.model_copy(update=changes)

    def with_progress(self, progress: int, step: Optional[str] = None) -> "RunState":
        """Progress only moves forward and never past 100."""
        if self.is_terminal:
            raise RunStateError(f"Run {self.id} is {self.status}; progress is frozen")
        value = max(self.progress, min(100, max(0, int(progress))))
        update = {"progress": value}
        if step is not None:
            update["current_step"] = step
        return self.model_copy(update=update)

    def with_warning(self, step: str, error: ClassifiedError) -> "RunState":
        if self.is_terminal:
            raise RunStateError(f"Run {self.id} is {self.status}; warnings are frozen")
        warnings = dict(self.step_warnings)
        warnings[step] = error.summary()
        return self.model_copy(update={"step_warnings": warnings})


class StepContext:
    """What a step body gets to see while it runs."""

    def __init__(self, run: RunState, step: str, results: Dict[str, Any],
                 report: Callable[[float], Awaitable[None]]):
        self.run = run
        self.step = step
        self.results = results
        self._report = report

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def subject(self) -> str:
        return self.run.subject

    @property
    def config(self) -> Dict[str, Any]:
        return self.run.config

    async def report_progress(self, fraction: float):
        """Report 0..1 completion of this step; mapped into the step's range."""
        await self._report(fraction)


class StepDefinition:
    def __init__(self, name: str, body: Callable[[StepContext], Awaitable[Any]],
                 critical: bool = False, weight: float = 0.0,
                 persist: Optional[Callable[[str, str, Any], Any]] = None):
        self.name = name
        self.body = body
        self.critical = critical
        self.weight = weight
        self.persist = persist

    def __repr__(self):
        return f"<StepDefinition {self.name} critical={self.critical} weight={self.weight}>"


class Success:
    def __init__(self, result: Any):
        self.result = result


class PermanentFailure:
    def __init__(self, error: ClassifiedError, exception: BaseException):
        self.error = error
        self.exception = exception


class RetryableFailure:
    def __init__(self, error: ClassifiedError, exception: BaseException):
        self.error = error
        self.exception = exception


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 600.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = self.base_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class PipelineResult:
    def __init__(self, run: RunState, results: Dict[str, Any], attempts: int):
        self.run = run
        self.results = results
        self.attempts = attempts

    @property
    def warnings(self) -> Dict[str, dict]:
        return self.run.step_warnings

    @property
    def succeeded(self) -> bool:
        return self.run.status == COMPLETED


def progress_markers(steps: List[StepDefinition]) -> List[tuple]:
    """(start, end) progress markers for each step from cumulative weights."""
    total = 0.0
    markers = []
    for step in steps:
        if step.weight < 0 or step.weight > 1:
            raise ValueError(f"Step '{step.name}' weight must be between 0 and 1")
        start = total
        total += step.weight
        markers.append((round(start * 100), round(total * 100)))
    if total > 1.0 + 1e-9:
        raise ValueError(f"Step weights add up to {total:.3f}; they must not exceed 1.0")
    return markers


class _RunExecution:
    """Holds the current snapshot of one run during one attempt."""

    def __init__(self, store, events: EventBus, state: RunState):
        self.store = store
        self.events = events
        self.state = state

    async def save(self, state: RunState) -> RunState:
        stored = self.store.save_run(state)
        self.state = stored if stored is not None else state
        return self.state

    async def advance(self, progress: int, step: str):
        await self.save(self.state.with_progress(progress, step))
        await self.events.publish(RUN_PROGRESS, {
            "run_id": self.state.id,
            "step": step,
            "progress": self.state.progress,
        })

    async def record_warning(self, step: str, error: ClassifiedError):
        await self.save(self.state.with_warning(step, error))


class PipelineOrchestrator:
    def __init__(self, store, events: Optional[EventBus] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 classifier: Callable[[BaseException], ClassifiedError] = classify,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep,
                 summarize: Optional[Callable[[Dict[str, Any]], Any]] = None):
        self.store = store
        self.events = events or EventBus()
        self.retry_policy = retry_policy or RetryPolicy()
        self.classifier = classifier
        self.sleep = sleep
        # Picks the metrics published with run.completed out of the step results
        self.summarize = summarize

    async def _run_step(self, step: StepDefinition, context: StepContext):
        try:
            result = await step.body(context)
            if step.persist is not None:
                step.persist(context.run_id, step.name, result)
            else:
                self.store.save_step_result(context.run_id, step.name, result)
            return Success(result)
        except Exception as e:
            classified = self.classifier(e)
            if classified.retryable:
                return RetryableFailure(classified, e)
            return PermanentFailure(classified, e)

    async def execute(self, run: RunState, steps: List[StepDefinition]) -> PipelineResult:
        """Run every step once, in order. Raises PipelineAborted on a critical retryable failure."""
        markers = progress_markers(steps)
        execution = _RunExecution(self.store, self.events, run)

        if run.status == PENDING:
            await execution.save(run.transition(RUNNING))
        elif run.status != RUNNING:
            raise RunStateError(f"Run {run.id} is {run.status}; cannot execute")

        # Each attempt reports only its own warnings
        await execution.save(execution.state.model_copy(update={
            "step_warnings": {},
            "attempts": execution.state.attempts + 1,
        }))
        logger.info(
            "[PIPELINE] Run %s (%s) attempt %d: %d steps",
            run.id, run.subject, execution.state.attempts, len(steps),
        )

        results: Dict[str, Any] = {}
        for step, (start, end) in zip(steps, markers):
            await execution.advance(start, step.name)

            async def report(fraction: float, start=start, end=end, name=step.name):
                fraction = max(0.0, min(1.0, fraction))
                await execution.advance(start + round((end - start) * fraction), name)

            context = StepContext(execution.state, step.name, results, report)
            outcome = await self._run_step(step, context)

            if isinstance(outcome, Success):
                results[step.name] = outcome.result
                logger.info("[PIPELINE] Run %s step '%s' succeeded", run.id, step.name)
            else:
                if step.critical and isinstance(outcome, RetryableFailure):
                    logger.warning(
                        "[PIPELINE] Run %s critical step '%s' hit a retryable error: %s",
                        run.id, step.name, outcome.error.message,
                    )
                    raise PipelineAborted(step.name, outcome.error) from outcome.exception

                results[step.name] = None
                await execution.record_warning(step.name, outcome.error)
                logger.warning(
                    "[PIPELINE] Run %s step '%s' failed (%s, %s): %s",
                    run.id, step.name,
                    "critical" if step.critical else "non-critical",
                    outcome.error.category, outcome.error.message,
                )

            await execution.advance(end, step.name)

        completed = await execution.save(execution.state.transition(COMPLETED))
        await self.events.publish(RUN_COMPLETED, {
            "run_id": completed.id,
            "subject": completed.subject,
            "warnings": completed.step_warnings or None,
            "has_warnings": bool(completed.step_warnings),
            "metrics": self.summarize(results) if self.summarize else None,
        })
        logger.info(
            "[PIPELINE] Run %s completed (%d warnings)", completed.id, len(completed.step_warnings)
        )
        return PipelineResult(completed, results, completed.attempts)

    async def _fail(self, run_id: str, error: ClassifiedError) -> RunState:
        run = self.store.get_run(run_id)
        if run.is_terminal:
            return run
        failed = run.transition(FAILED, error_message=error.message)
        stored = self.store.save_run(failed) or failed
        await self.events.publish(RUN_FAILED, {
            "run_id": run_id,
            "subject": stored.subject,
            "error": error.message,
            "category": error.category,
        })
        logger.error("[PIPELINE] Run %s failed: %s", run_id, error.message)
        return stored

    async def run(self, run_id: str, steps: List[StepDefinition],
                  retry_policy: Optional[RetryPolicy] = None) -> PipelineResult:
        """
        Execute with whole-pipeline retries. A critical retryable failure
        re-runs every step from the first; once attempts are exhausted the run
        is marked FAILED with the last classified error.
        """
        policy = retry_policy or self.retry_policy
        last_error: Optional[ClassifiedError] = None
        attempt = 0

        while attempt < policy.max_attempts:
            attempt += 1
            run = self.store.get_run(run_id)
            if run is None:
                raise LookupError(f"Run {run_id} not found")
            if run.is_terminal:
                logger.info("[PIPELINE] Run %s already %s, skipping", run_id, run.status)
                return PipelineResult(run, {}, run.attempts)

            try:
                return await self.execute(run, steps)
            except PipelineAborted as e:
                last_error = e.error
            except RunStateError:
                raise
            except Exception as e:
                last_error = self.classifier(e)
                logger.error(f"[PIPELINE] Run {run_id} attempt {attempt} crashed: {e}")
                if not last_error.retryable:
                    break

            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.info(
                    "[PIPELINE] Run %s retrying in %.1fs (attempt %d/%d)",
                    run_id, delay, attempt + 1, policy.max_attempts,
                )
                await self.sleep(delay)

        failed = await self._fail(run_id, last_error)
        return PipelineResult(failed, {}, attempt)
