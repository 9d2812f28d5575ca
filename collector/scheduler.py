"""
Tracking scheduler: an hourly tick turns due schedules into PENDING runs,
and a pool of queue workers executes requested runs through the pipeline.
Uses APScheduler for the tick and for dispatching runs created elsewhere
(e.g. by the MCP server process).
"""
import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from collector.steps import build_tracking_steps, completion_metrics
from collector.store import RunStore, ScheduleStore
from core.events import EventBus, RUN_REQUESTED
from core.history import HistoricalWindowMatcher
from core.pipeline import PENDING, RUNNING, PipelineOrchestrator, RetryPolicy

logger = logging.getLogger(__name__)

TRACKER_TICK_CRON = os.environ.get("TRACKER_TICK_CRON", "0 * * * *")
TRACKER_DISPATCH_SECONDS = int(os.environ.get("TRACKER_DISPATCH_SECONDS", "30"))
RUN_WORKERS = int(os.environ.get("RUN_WORKERS", "2"))
DUE_SCHEDULE_LIMIT = int(os.environ.get("DUE_SCHEDULE_LIMIT", "20"))
PIPELINE_MAX_ATTEMPTS = int(os.environ.get("PIPELINE_MAX_ATTEMPTS", "3"))
PIPELINE_RETRY_BASE_SECONDS = float(os.environ.get("PIPELINE_RETRY_BASE_SECONDS", "30"))
PIPELINE_RETRY_MAX_SECONDS = float(os.environ.get("PIPELINE_RETRY_MAX_SECONDS", "600"))


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=PIPELINE_MAX_ATTEMPTS,
        base_delay_seconds=PIPELINE_RETRY_BASE_SECONDS,
        max_delay_seconds=PIPELINE_RETRY_MAX_SECONDS,
    )


class TrackingScheduler:
    """Turns schedules into runs and runs them, several subjects at a time."""

    def __init__(self, run_store: Optional[RunStore] = None,
                 schedule_store: Optional[ScheduleStore] = None,
                 provider=None, events: Optional[EventBus] = None,
                 workers: int = RUN_WORKERS, retry_policy: Optional[RetryPolicy] = None,
                 sleep=asyncio.sleep):
        self.run_store = run_store or RunStore()
        self.schedule_store = schedule_store or ScheduleStore()
        self.events = events or EventBus()
        self.workers = max(1, workers)
        self.sleep = sleep
        self._provider = provider
        self.orchestrator = PipelineOrchestrator(
            self.run_store,
            events=self.events,
            retry_policy=retry_policy or default_retry_policy(),
            sleep=sleep,
            summarize=completion_metrics,
        )
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._run_queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._queued: set = set()
        self._active: Dict[str, str] = {}   # worker name -> run id
        self._worker_tasks: List[asyncio.Task] = []
        self.events.subscribe(RUN_REQUESTED, self._on_run_requested)

    @property
    def provider(self):
        if self._provider is None:
            from collector.providers import DataForSEOClient
            self._provider = DataForSEOClient()
        return self._provider

    def start(self):
        """Start the tick and dispatch jobs and the worker pool."""
        self._recover_stuck_runs()
        self.scheduler.add_job(
            self.tick,
            trigger=CronTrigger.from_crontab(TRACKER_TICK_CRON, timezone=timezone.utc),
            id="tracking_tick",
            name="Due schedule tick",
            replace_existing=True,
            misfire_grace_time=300,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            self.dispatch_pending,
            trigger=IntervalTrigger(seconds=TRACKER_DISPATCH_SECONDS),
            id="pending_dispatch",
            name="Pending run dispatch",
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()

        self._worker_tasks = [t for t in self._worker_tasks if not t.done()]
        while len(self._worker_tasks) < self.workers:
            name = f"worker-{len(self._worker_tasks) + 1}"
            self._worker_tasks.append(asyncio.create_task(self._queue_worker(name)))
        logger.info(
            "[SCHEDULER] Started (tick=%s, workers=%d)", TRACKER_TICK_CRON, len(self._worker_tasks)
        )

    def shutdown(self):
        """Gracefully shut down the scheduler."""
        for task in self._worker_tasks:
            if not task.done():
                task.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Shutdown complete")

    def _recover_stuck_runs(self):
        """
        On startup, close orphan running runs left by crashes/restarts.
        This prevents permanent deduplication locks. Pending runs are left
        for the dispatch job.
        """
        return self.run_store.recover_stuck_runs()

    async def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Create a run for every due schedule. Returns the new run ids."""
        now = now or datetime.now(timezone.utc)
        due = self.schedule_store.due_schedules(now, limit=DUE_SCHEDULE_LIMIT)
        if not due:
            logger.debug("[SCHEDULER] Tick: no schedules due")
            return []

        logger.info("[SCHEDULER] Tick: %d schedules due", len(due))
        run_ids = []
        for schedule in due:
            subject = schedule["subject"]
            try:
                active = self.run_store.find_active_run(subject)
                if active:
                    logger.info(
                        "[SCHEDULER] Skip schedule for %s (%s already %s)", subject, active.id, active.status
                    )
                    continue

                config = {
                    "location_name": schedule["location_name"],
                    "language_code": schedule["language_code"],
                }
                run = self.run_store.create_run(subject, config=config, trigger="scheduled")
                self.schedule_store.mark_schedule_triggered(subject, run.id, now)
                await self._request(run.id, subject, config)
                run_ids.append(run.id)
            except Exception as e:
                logger.error(f"[SCHEDULER] Failed to trigger schedule for {subject}: {e}")
        return run_ids

    async def trigger_run(self, subject: str, config: Optional[Dict[str, Any]] = None,
                          trigger: str = "manual") -> str:
        """Request a run for `subject`, reusing one that is already pending or running."""
        existing = self.run_store.find_active_run(subject)
        if existing:
            logger.info(
                "[SCHEDULER] Skip enqueue for %s (%s already %s)", subject, existing.id, existing.status
            )
            return existing.id

        run = self.run_store.create_run(subject, config=config or {}, trigger=trigger)
        await self._request(run.id, subject, run.config)
        return run.id

    async def dispatch_pending(self) -> int:
        """Queue PENDING runs created by other processes."""
        dispatched = 0
        for run in self.run_store.list_runs(status=PENDING):
            if run.id in self._queued:
                continue
            await self._request(run.id, run.subject, run.config)
            dispatched += 1
        if dispatched:
            logger.info("[SCHEDULER] Dispatched %d pending runs", dispatched)
        return dispatched

    async def _request(self, run_id: str, subject: str, config: Dict[str, Any]):
        await self.events.publish(RUN_REQUESTED, {
            "run_id": run_id,
            "subject": subject,
            "config": config,
        })

    async def _on_run_requested(self, payload: Dict[str, Any]):
        run_id = payload["run_id"]
        if run_id in self._queued:
            return
        self._queued.add(run_id)
        await self._run_queue.put(run_id)
        logger.info(
            "[SCHEDULER] Queued run %s for %s (queue_size=%s)",
            run_id, payload.get("subject"), self._run_queue.qsize(),
        )

    async def _queue_worker(self, name: str):
        logger.info("[SCHEDULER] Queue %s started", name)
        while True:
            run_id = await self._run_queue.get()
            if run_id is None:
                self._run_queue.task_done()
                break

            self._active[name] = run_id
            try:
                await self.execute_run(run_id)
            except Exception as e:
                logger.error(f"[SCHEDULER] Run {run_id} crashed in {name}: {e}")
            finally:
                self._active.pop(name, None)
                self._queued.discard(run_id)
                self._run_queue.task_done()

    async def execute_run(self, run_id: str):
        """Run the tracking pipeline for one run id."""
        steps = build_tracking_steps(
            self.run_store,
            self.provider,
            HistoricalWindowMatcher(self.run_store),
            sleep=self.sleep,
        )
        result = await self.orchestrator.run(run_id, steps)
        logger.info(
            "[SCHEDULER] Run %s finished: status=%s, attempts=%d, warnings=%d",
            run_id, result.run.status, result.attempts, len(result.warnings),
        )
        return result

    def get_queue_status(self) -> dict:
        """Queue runtime status for diagnostics."""
        running = self.run_store.list_runs(status=RUNNING, limit=self.workers * 2)
        return {
            "queue_size": self._run_queue.qsize(),
            "workers": len(self._worker_tasks),
            "workers_alive": sum(1 for t in self._worker_tasks if not t.done()),
            "active_runs": [
                {"run_id": r.id, "subject": r.subject, "progress": r.progress, "step": r.current_step}
                for r in running
            ],
        }

    def get_next_runs(self) -> list[dict]:
        """Upcoming tick/dispatch jobs and the next scheduled subjects."""
        result = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            result.append({
                "job_key": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        for schedule in self.schedule_store.list_all():
            if schedule["is_enabled"]:
                result.append({
                    "job_key": f"schedule_{schedule['subject']}",
                    "name": f"{schedule['frequency']} tracking for {schedule['subject']}",
                    "next_run": schedule["next_run_at"],
                })
        return result


# Global instance
scheduler = TrackingScheduler()
