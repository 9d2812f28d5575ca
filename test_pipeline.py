import pytest

from core.errors import ProviderError
from core.events import EventBus, RUN_COMPLETED, RUN_FAILED, RUN_PROGRESS
from core.pipeline import (
    COMPLETED, FAILED, PENDING, RUNNING, PipelineAborted, PipelineOrchestrator,
    RetryPolicy, RunState, RunStateError, StepDefinition, progress_markers
)


class InMemoryRunStore:
    def __init__(self):
        self.runs = {}
        self.step_results = {}
        self.saved = []

    def add(self, run_id="run-1", subject="example.com", **fields):
        run = RunState(id=run_id, subject=subject, **fields)
        self.runs[run.id] = run
        return run

    def get_run(self, run_id):
        return self.runs.get(run_id)

    def save_run(self, state):
        self.runs[state.id] = state
        self.saved.append(state)
        return state

    def save_step_result(self, run_id, step_name, result):
        key = (run_id, step_name)
        if key in self.step_results:
            return False
        self.step_results[key] = result
        return True


def step(name, result=None, error=None, critical=False, weight=0.2, calls=None):
    async def body(context):
        if calls is not None:
            calls.append(name)
        if error is not None:
            raise error
        return result if result is not None else f"{name}-result"
    return StepDefinition(name, body, critical=critical, weight=weight)


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def events():
    bus = EventBus()
    bus.keep_history = True
    return bus


@pytest.fixture
def orchestrator(store, events, no_sleep):
    policy = RetryPolicy(max_attempts=3, base_delay_seconds=30, backoff_multiplier=2, max_delay_seconds=600)
    return PipelineOrchestrator(store, events=events, retry_policy=policy, sleep=no_sleep)


@pytest.mark.asyncio
async def test_all_steps_succeed(store, events, orchestrator):
    store.add()
    steps = [step("a", weight=0.2), step("b", weight=0.3), step("c", weight=0.5)]

    result = await orchestrator.run("run-1", steps)

    assert result.succeeded
    assert result.run.status == COMPLETED
    assert result.run.progress == 100
    assert result.run.current_step is None
    assert result.attempts == 1
    assert result.results == {"a": "a-result", "b": "b-result", "c": "c-result"}
    assert store.step_results[("run-1", "b")] == "b-result"
    assert result.run.started_at is not None and result.run.completed_at is not None

    completed = events.payloads_for(RUN_COMPLETED)
    assert completed == [{
        "run_id": "run-1", "subject": "example.com", "warnings": None,
        "has_warnings": False, "metrics": None,
    }]


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_capped(store, events, orchestrator):
    store.add()
    steps = [step("a", weight=0.25), step("b", error=ValueError("nope"), weight=0.25), step("c", weight=0.5)]

    await orchestrator.run("run-1", steps)

    progress = [s.progress for s in store.saved]
    assert progress == sorted(progress)
    assert max(progress) == 100
    published = [p["progress"] for p in events.payloads_for(RUN_PROGRESS)]
    assert published == sorted(published)
    assert published[-1] == 100


@pytest.mark.asyncio
async def test_critical_permanent_failure_completes_with_warning(store, orchestrator):
    store.add()
    calls = []
    steps = [
        step("load", critical=True, error=ValueError("No keywords to track"), calls=calls),
        step("after", calls=calls),
    ]

    result = await orchestrator.run("run-1", steps)

    assert result.run.status == COMPLETED
    assert result.results["load"] is None
    assert result.results["after"] == "after-result"
    assert calls == ["load", "after"]
    assert result.warnings["load"]["category"] == "permanent"
    assert result.warnings["load"]["message"] == "No keywords to track"


@pytest.mark.asyncio
async def test_non_critical_retryable_failure_is_not_retried(store, orchestrator, no_sleep):
    store.add()
    calls = []
    steps = [step("volume", error=ConnectionError("reset"), calls=calls), step("next", calls=calls)]

    result = await orchestrator.run("run-1", steps)

    assert result.run.status == COMPLETED
    assert calls == ["volume", "next"]
    assert result.warnings["volume"]["retryable"] is True
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_critical_retryable_failure_exhausts_retries(store, events, orchestrator, no_sleep):
    store.add()
    calls = []
    steps = [
        step("load", calls=calls),
        step("rankings", critical=True, error=ProviderError("Rate limit", status_code=40202), calls=calls),
        step("never", calls=calls),
    ]

    result = await orchestrator.run("run-1", steps)

    assert result.run.status == FAILED
    assert result.run.error_message == "Rate limit"
    assert result.attempts == 3
    assert calls == ["load", "rankings"] * 3
    assert no_sleep.delays == [30, 60]
    assert store.runs["run-1"].attempts == 3
    assert events.payloads_for(RUN_FAILED) == [{
        "run_id": "run-1", "subject": "example.com", "error": "Rate limit", "category": "retryable",
    }]
    # Duplicate step results are skipped on retry
    assert list(store.step_results) == [("run-1", "load")]


@pytest.mark.asyncio
async def test_retry_succeeds_and_clears_previous_warnings(store, orchestrator):
    store.add()
    attempts = {"flaky": 0, "optional": 0}

    async def optional(context):
        attempts["optional"] += 1
        if attempts["optional"] == 1:
            raise ValueError("bad first time")
        return "ok"

    async def flaky(context):
        attempts["flaky"] += 1
        if attempts["flaky"] == 1:
            raise TimeoutError("timed out")
        return "ranked"

    steps = [
        StepDefinition("optional", optional, weight=0.2),
        StepDefinition("flaky", flaky, critical=True, weight=0.8),
    ]

    result = await orchestrator.run("run-1", steps)

    assert result.run.status == COMPLETED
    assert result.attempts == 2
    assert result.warnings == {}
    assert result.results == {"optional": "ok", "flaky": "ranked"}


@pytest.mark.asyncio
async def test_five_steps_with_one_non_critical_failure(store, orchestrator):
    store.add()
    steps = [
        step("s1", critical=True),
        step("s2", critical=True),
        step("s3", error=ProviderError("Invalid location", status_code=40501)),
        step("s4"),
        step("s5"),
    ]

    result = await orchestrator.run("run-1", steps)

    assert result.run.status == COMPLETED
    assert list(result.warnings) == ["s3"]
    assert [name for name, value in result.results.items() if value is not None] == ["s1", "s2", "s4", "s5"]


@pytest.mark.asyncio
async def test_report_progress_is_clamped_to_the_step_range(store, events, orchestrator):
    store.add()
    reported = []

    async def body(context):
        await context.report_progress(0.5)
        reported.append(store.runs["run-1"].progress)
        await context.report_progress(2.0)
        reported.append(store.runs["run-1"].progress)
        await context.report_progress(-1)
        reported.append(store.runs["run-1"].progress)
        return "done"

    steps = [step("first", weight=0.2), StepDefinition("batched", body, weight=0.5), step("last", weight=0.3)]
    await orchestrator.run("run-1", steps)

    assert reported == [45, 70, 70]


@pytest.mark.asyncio
async def test_persist_hook_replaces_default_storage(store, orchestrator):
    store.add()
    persisted = []
    steps = [StepDefinition("metrics", step("metrics").body, weight=1.0,
                            persist=lambda run_id, name, result: persisted.append((run_id, name, result)))]

    await orchestrator.run("run-1", steps)

    assert persisted == [("run-1", "metrics", "metrics-result")]
    assert store.step_results == {}


@pytest.mark.asyncio
async def test_persist_failure_counts_as_step_failure(store, orchestrator):
    store.add()

    def broken(run_id, name, result):
        raise ValueError("cannot store")

    steps = [StepDefinition("optional", step("optional").body, weight=0.5, persist=broken)]
    result = await orchestrator.run("run-1", steps)

    assert result.run.status == COMPLETED
    assert result.warnings["optional"]["message"] == "cannot store"


@pytest.mark.asyncio
async def test_retryable_store_error_outside_steps_is_retried(store, orchestrator, no_sleep):
    store.add()
    original = store.save_run
    failures = []

    def flaky_save(state):
        if not failures:
            failures.append(state)
            raise ConnectionError("database connection reset")
        return original(state)

    store.save_run = flaky_save
    result = await orchestrator.run("run-1", [step("only", weight=1.0)])

    assert result.run.status == COMPLETED
    assert no_sleep.delays == [30]


@pytest.mark.asyncio
async def test_permanent_error_outside_steps_fails_immediately(store, orchestrator, no_sleep):
    store.add()
    steps = [step("a", weight=0.7), step("b", weight=0.7)]

    result = await orchestrator.run("run-1", steps)

    assert result.run.status == FAILED
    assert "must not exceed 1.0" in result.run.error_message
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_terminal_run_is_not_executed_again(store, orchestrator):
    store.add(status=COMPLETED, progress=100)
    calls = []

    result = await orchestrator.run("run-1", [step("a", calls=calls)])

    assert calls == []
    assert result.run.status == COMPLETED

    with pytest.raises(RunStateError):
        await orchestrator.execute(store.runs["run-1"], [step("a")])


@pytest.mark.asyncio
async def test_execute_raises_pipeline_aborted(store, orchestrator):
    run = store.add()
    with pytest.raises(PipelineAborted) as exc_info:
        await orchestrator.execute(run, [step("x", critical=True, error=TimeoutError("slow"))])

    assert exc_info.value.step == "x"
    assert isinstance(exc_info.value.__cause__, TimeoutError)
    assert store.runs["run-1"].status == RUNNING


@pytest.mark.asyncio
async def test_missing_run(orchestrator):
    with pytest.raises(LookupError):
        await orchestrator.run("nope", [step("a")])


def test_progress_markers():
    markers = progress_markers([step("a", weight=0.2), step("b", weight=0.3), step("c", weight=0.5)])
    assert markers == [(0, 20), (20, 50), (50, 100)]

    with pytest.raises(ValueError):
        progress_markers([step("a", weight=0.6), step("b", weight=0.6)])
    with pytest.raises(ValueError):
        progress_markers([step("a", weight=-0.1)])


def test_run_state_transitions():
    run = RunState(id="r", subject="example.com")
    assert run.status == PENDING

    running = run.transition(RUNNING)
    assert running.started_at is not None
    assert run.status == PENDING     # snapshots are immutable

    with pytest.raises(RunStateError):
        run.transition(COMPLETED)

    done = running.with_progress(40).transition(COMPLETED)
    assert done.progress == 100
    with pytest.raises(RunStateError):
        done.transition(FAILED)
    with pytest.raises(RunStateError):
        done.with_progress(50)


def test_with_progress_never_moves_backwards():
    run = RunState(id="r", subject="example.com", status=RUNNING, progress=40)
    assert run.with_progress(20).progress == 40
    assert run.with_progress(140).progress == 100
    assert run.with_progress(55, step="rankings").current_step == "rankings"


def test_pending_run_can_be_abandoned():
    failed = RunState(id="r", subject="example.com").transition(FAILED, error_message="abandoned")
    assert failed.status == FAILED
    assert failed.completed_at is not None


def test_retry_policy_delays():
    policy = RetryPolicy(base_delay_seconds=30, backoff_multiplier=2, max_delay_seconds=100)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [30, 60, 100, 100]
