from datetime import datetime, timedelta, timezone

import pytest

from collector.providers import BusinessListing, KeywordVolume, SerpRanking
from collector.steps import build_tracking_steps, completion_metrics
from core.errors import ProviderError
from core.events import EventBus, RUN_COMPLETED
from core.pipeline import COMPLETED, FAILED, RUNNING, PipelineOrchestrator, RetryPolicy
from core.task_waiter import PollConfig


class FakeBusinessTask:
    def __init__(self):
        self.task_id = "biz-1"
        self.checks = 0

    async def is_ready(self):
        self.checks += 1
        return self.checks >= 2

    async def fetch(self):
        return BusinessListing(title="Example Plumbing", rating=4.7, reviews_count=120)


class FakeProvider:
    def __init__(self, positions, failing=(), volume_error=None):
        self.positions = positions
        self.failing = set(failing)
        self.volume_error = volume_error
        self.ranking_calls = []

    async def get_serp_ranking(self, keyword, subject, location_name="United States", language_code="en"):
        self.ranking_calls.append(keyword)
        if keyword in self.failing:
            raise ProviderError("Service unavailable", http_status=503)
        return SerpRanking(keyword=keyword, position=self.positions.get(keyword),
                           url=f"https://{subject}/{keyword.replace(' ', '-')}")

    async def get_search_volume(self, keywords, location_name="United States", language_code="en"):
        if self.volume_error:
            raise self.volume_error
        return {k: KeywordVolume(keyword=k, search_volume=1000, cpc=2.5, volume_date="2024-05") for k in keywords}

    async def submit_business_task(self, keyword, location_name="United States", language_code="en"):
        return FakeBusinessTask()


KEYWORDS = ["plumber", "emergency plumber", "roofer"]
POSITIONS = {"plumber": 3, "emergency plumber": 12}


def completed_run(run_store, subject, created_at, positions):
    run = run_store.create_run(subject, created_at=created_at)
    run_store.save_keyword_results(run.id, [{"keyword": k, "position": p} for k, p in positions.items()])
    running = run_store.save_run(run.transition(RUNNING))
    run_store.save_run(running.transition(COMPLETED))
    return run.id


async def run_pipeline(run_store, provider, no_sleep, config=None, events=None, max_attempts=3):
    run = run_store.create_run("example.com", config=config if config is not None else {"keywords": KEYWORDS})
    orchestrator = PipelineOrchestrator(
        run_store,
        events=events,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay_seconds=1),
        sleep=no_sleep,
        summarize=completion_metrics,
    )
    steps = build_tracking_steps(run_store, provider, poll_config=PollConfig(initial_delay_seconds=1), sleep=no_sleep)
    return await orchestrator.run(run.id, steps)


def test_step_weights_fill_the_progress_range(run_store):
    steps = build_tracking_steps(run_store, FakeProvider({}))
    assert sum(s.weight for s in steps) == pytest.approx(1.0)
    assert [s.name for s in steps if s.critical] == ["load-keywords", "fetch-rankings", "save-results"]


@pytest.mark.asyncio
async def test_tracking_run_end_to_end(run_store, no_sleep):
    events = EventBus()
    events.keep_history = True

    result = await run_pipeline(run_store, FakeProvider(POSITIONS), no_sleep, events=events)

    assert result.run.status == COMPLETED
    assert result.warnings == {}

    rows = {r["keyword"]: r for r in run_store.get_keyword_results(result.run.id)}
    assert rows["plumber"]["position"] == 3
    assert rows["plumber"]["search_volume"] == 1000
    assert rows["plumber"]["volume_date"] == "2024-05"
    assert rows["roofer"]["position"] is None

    metrics = run_store.get_run_metrics(result.run.id)
    assert metrics["keywords_tracked"] == 3
    assert metrics["keywords_not_ranking"] == 1
    assert metrics["avg_position"] == 7.5
    assert run_store.get_step_result(result.run.id, "save-results") == {"keywords_saved": 3}

    completed = events.payloads_for(RUN_COMPLETED)[0]
    assert completed["metrics"]["keywords_in_top_3"] == 1


@pytest.mark.asyncio
async def test_uses_tracked_keywords_when_none_are_given(run_store, no_sleep):
    run_store.add_tracked_keywords("example.com", ["plumber"])
    provider = FakeProvider(POSITIONS)

    result = await run_pipeline(run_store, provider, no_sleep, config={})

    assert result.run.status == COMPLETED
    assert provider.ranking_calls == ["plumber"]


@pytest.mark.asyncio
async def test_previous_run_and_trends(run_store, no_sleep):
    week_ago = datetime.now(timezone.utc) - timedelta(days=7)
    completed_run(run_store, "example.com", week_ago, {"plumber": 5, "roofer": 8})

    result = await run_pipeline(run_store, FakeProvider(POSITIONS), no_sleep)

    rows = {r["keyword"]: r for r in run_store.get_keyword_results(result.run.id)}
    assert rows["plumber"]["previous_position"] == 5
    assert rows["plumber"]["position_change"] == 2
    assert rows["roofer"]["previous_position"] == 8
    assert rows["emergency plumber"]["previous_position"] is None

    trends = run_store.get_step_result(result.run.id, "trends")
    assert trends["plumber"] == {"7d": 2, "30d": None, "90d": None}

    metrics = run_store.get_run_metrics(result.run.id)
    assert metrics["improved_count"] == 1
    assert metrics["lost_rankings_count"] == 1
    assert metrics["new_rankings_count"] == 1
    assert metrics["trend_windows"] == ["7d"]


@pytest.mark.asyncio
async def test_search_volume_failure_is_a_warning(run_store, no_sleep):
    provider = FakeProvider(POSITIONS, volume_error=ProviderError("Payment required", status_code=40200))

    result = await run_pipeline(run_store, provider, no_sleep)

    assert result.run.status == COMPLETED
    assert list(result.warnings) == ["search-volume"]
    rows = run_store.get_keyword_results(result.run.id)
    assert all(r["search_volume"] is None for r in rows)


@pytest.mark.asyncio
async def test_single_ranking_failures_are_tolerated(run_store, no_sleep):
    result = await run_pipeline(run_store, FakeProvider(POSITIONS, failing=["plumber"]), no_sleep)

    assert result.run.status == COMPLETED
    rows = {r["keyword"]: r for r in run_store.get_keyword_results(result.run.id)}
    assert rows["plumber"]["position"] is None
    assert rows["emergency plumber"]["position"] == 12


@pytest.mark.asyncio
async def test_ranking_outage_retries_then_fails(run_store, no_sleep):
    provider = FakeProvider(POSITIONS, failing=KEYWORDS)

    result = await run_pipeline(run_store, provider, no_sleep, max_attempts=2)

    assert result.run.status == FAILED
    assert result.run.error_message == "Service unavailable"
    assert len(provider.ranking_calls) == 6
    assert run_store.get_keyword_results(result.run.id) == []


@pytest.mark.asyncio
async def test_no_keywords_completes_with_warnings(run_store, no_sleep):
    result = await run_pipeline(run_store, FakeProvider(POSITIONS), no_sleep, config={})

    assert result.run.status == COMPLETED
    assert "load-keywords" in result.warnings
    assert "fetch-rankings" in result.warnings


@pytest.mark.asyncio
async def test_business_listing_waits_for_task(run_store, no_sleep):
    config = {"keywords": ["plumber"], "include_business_listing": True, "business_name": "Example Plumbing"}

    result = await run_pipeline(run_store, FakeProvider(POSITIONS), no_sleep, config=config)

    assert result.run.status == COMPLETED
    listing = run_store.get_step_result(result.run.id, "business-listing")
    assert listing["title"] == "Example Plumbing"
    assert listing["reviews_count"] == 120
    assert 1 in no_sleep.delays
