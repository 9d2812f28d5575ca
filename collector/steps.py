"""
Keyword-tracking pipeline: the ordered steps a tracking run executes.

    load-keywords     critical      what to track
    previous-results  non-critical  last completed snapshot for run-over-run change
    search-volume     non-critical  volume / CPC enrichment
    fetch-rankings    critical      live SERP position per keyword, in batches
    save-results      critical      keyword rows (duplicates skipped on retry)
    trends            non-critical  7d / 30d / 90d deltas
    business-listing  non-critical  task-based listing lookup (opt-in)
    metrics           non-critical  completion metrics stored on the run
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from core.history import HistoricalWindowMatcher, Snapshot, compare_snapshots, summarize_positions
from core.pipeline import StepContext, StepDefinition
from core.rate_limiter import gather_in_batches
from core.task_waiter import PollConfig, wait_until_ready

logger = logging.getLogger(__name__)

DEFAULT_LOCATION = "United States"
DEFAULT_LANGUAGE = "en"
RANKING_BATCH_SIZE = 5
RANKING_BATCH_PAUSE = 0.2


def _location(context: StepContext) -> Dict[str, str]:
    return {
        "location_name": context.config.get("location_name") or DEFAULT_LOCATION,
        "language_code": context.config.get("language_code") or DEFAULT_LANGUAGE,
    }


def completion_metrics(results: Dict[str, Any]) -> Optional[dict]:
    """Metrics to publish with run.completed."""
    return results.get("metrics")


def build_tracking_steps(store, provider, matcher: Optional[HistoricalWindowMatcher] = None,
                         poll_config: Optional[PollConfig] = None,
                         sleep=asyncio.sleep) -> List[StepDefinition]:
    matcher = matcher or HistoricalWindowMatcher(store)

    async def load_keywords(context: StepContext) -> List[str]:
        keywords = context.config.get("keywords")
        if not keywords:
            keywords = [k["keyword"] for k in store.list_tracked_keywords(context.subject)]
        keywords = list(dict.fromkeys(k.strip() for k in keywords if k and k.strip()))
        if not keywords:
            raise ValueError(f"No keywords to track for {context.subject}")
        logger.info(f"[STEPS] {context.subject}: tracking {len(keywords)} keywords")
        return keywords

    async def previous_results(context: StepContext) -> Optional[Snapshot]:
        return store.get_previous_snapshot(context.subject, exclude_run_id=context.run_id)

    async def search_volume(context: StepContext):
        if not context.config.get("include_search_volume", True):
            return None
        keywords = context.results.get("load-keywords")
        if not keywords:
            raise ValueError("No keywords loaded")
        return await provider.get_search_volume(keywords, **_location(context))

    async def fetch_rankings(context: StepContext):
        keywords = context.results.get("load-keywords")
        if not keywords:
            raise ValueError("No keywords loaded")

        errors = []

        async def rank(keyword: str):
            try:
                return await provider.get_serp_ranking(keyword, context.subject, **_location(context))
            except Exception as e:
                logger.warning(f"[STEPS] Ranking lookup failed for '{keyword}': {e}")
                errors.append(e)
                return None

        async def on_batch(done: int, total: int):
            await context.report_progress(done / total)

        rankings = await gather_in_batches(
            keywords, rank,
            batch_size=RANKING_BATCH_SIZE,
            pause_seconds=RANKING_BATCH_PAUSE,
            on_batch=on_batch,
            sleep=sleep,
        )
        # Individual misses are tolerated; a total outage is the step's failure
        if errors and len(errors) == len(keywords):
            raise errors[-1]
        return [
            r.model_dump() if r is not None else {"keyword": k, "position": None}
            for k, r in zip(keywords, rankings)
        ]

    async def save_results(context: StepContext) -> List[dict]:
        rankings = context.results.get("fetch-rankings")
        if not rankings:
            raise ValueError("No rankings to save")
        volumes = context.results.get("search-volume") or {}
        comparison = compare_snapshots(
            {r["keyword"]: r.get("position") for r in rankings},
            context.results.get("previous-results"),
        )

        rows = []
        for ranking in rankings:
            keyword = ranking["keyword"]
            volume = volumes.get(keyword)
            rows.append({
                "keyword": keyword,
                "position": ranking.get("position"),
                "previous_position": comparison[keyword]["previous_position"],
                "position_change": comparison[keyword]["position_change"],
                "ranking_url": ranking.get("url"),
                "serp_features": ranking.get("serp_features") or None,
                "local_pack_position": ranking.get("local_pack_position"),
                "local_pack_rating": ranking.get("local_pack_rating"),
                "local_pack_reviews": ranking.get("local_pack_reviews"),
                "search_volume": volume.search_volume if volume else None,
                "cpc": volume.cpc if volume else None,
                "volume_date": volume.volume_date if volume else None,
            })

        store.save_keyword_results(context.run_id, rows)
        return rows

    async def trends(context: StepContext):
        rows = context.results.get("save-results")
        if not rows:
            raise ValueError("No saved results to compare")
        current = Snapshot(
            run_id=context.run_id,
            created_at=context.run.created_at or context.run.started_at,
            values={r["keyword"]: r["position"] for r in rows},
        )
        return matcher.compute_trends(current, context.subject)

    async def business_listing(context: StepContext):
        if not context.config.get("include_business_listing"):
            return None
        config = poll_config or PollConfig()
        task = await provider.submit_business_task(
            context.config.get("business_name") or context.subject, **_location(context)
        )

        async def on_poll(poll_count: int):
            await context.report_progress(poll_count / config.max_polls)

        await wait_until_ready(task, config, sleep=sleep, on_poll=on_poll)
        listing = await task.fetch()
        return listing.model_dump() if listing is not None else None

    async def metrics(context: StepContext) -> dict:
        rows = context.results.get("save-results")
        if rows is None:
            raise ValueError("No saved results to summarize")
        summary = summarize_positions(rows)
        summary["trend_windows"] = sorted({
            label for deltas in (context.results.get("trends") or {}).values()
            for label, delta in deltas.items() if delta is not None
        })
        return summary

    def persist_saved_count(run_id: str, step_name: str, rows):
        store.save_step_result(run_id, step_name, {"keywords_saved": len(rows or [])})

    def persist_metrics(run_id: str, step_name: str, summary):
        store.save_run_metrics(run_id, summary)

    return [
        StepDefinition("load-keywords", load_keywords, critical=True, weight=0.05),
        StepDefinition("previous-results", previous_results, weight=0.05),
        StepDefinition("search-volume", search_volume, weight=0.10),
        StepDefinition("fetch-rankings", fetch_rankings, critical=True, weight=0.45),
        StepDefinition("save-results", save_results, critical=True, weight=0.15,
                       persist=persist_saved_count),
        StepDefinition("trends", trends, weight=0.10),
        StepDefinition("business-listing", business_listing, weight=0.05),
        StepDefinition("metrics", metrics, weight=0.05, persist=persist_metrics),
    ]
