"""
Run Service: request tracking runs and query their status, results and
trends. Runs requested here are picked up by the collector's dispatch job.
"""
import logging
from typing import List, Optional

from collector.store import RunStore
from core.history import HistoricalWindowMatcher
from core.pipeline import COMPLETED, FAILED

logger = logging.getLogger(__name__)

run_store = RunStore()


def _iso(value):
    return value.isoformat() if value else None


class RunService:
    @staticmethod
    def request_run(subject: str, keywords: Optional[List[str]] = None,
                    location_name: Optional[str] = None, language_code: Optional[str] = None,
                    include_search_volume: bool = True, include_business_listing: bool = False):
        """Create a PENDING run, or return the subject's run that is already in flight."""
        try:
            subject = (subject or "").strip()
            if not subject:
                raise ValueError("subject is required")

            existing = run_store.find_active_run(subject)
            if existing:
                return {
                    "success": True,
                    "data": {"run_id": existing.id, "status": existing.status, "deduplicated": True},
                }

            if keywords:
                run_store.add_tracked_keywords(subject, keywords)

            config = {
                "location_name": location_name or "United States",
                "language_code": language_code or "en",
                "include_search_volume": include_search_volume,
                "include_business_listing": include_business_listing,
            }
            if keywords:
                config["keywords"] = list(keywords)

            run = run_store.create_run(subject, config=config, trigger="manual")
            return {
                "success": True,
                "data": {"run_id": run.id, "status": run.status, "deduplicated": False},
            }
        except ValueError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Request run error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_run_status(run_id: str):
        """Status snapshot for polling clients."""
        try:
            run = run_store.get_run(run_id)
            if not run:
                return {"success": False, "error": f"Run '{run_id}' not found"}

            return {
                "success": True,
                "data": {
                    "run_id": run.id,
                    "subject": run.subject,
                    "status": run.status,
                    "progress": run.progress,
                    "current_step": run.current_step,
                    "is_complete": run.status == COMPLETED,
                    "is_failed": run.status == FAILED,
                    "error_message": run.error_message,
                    "warnings": run.step_warnings or None,
                    "attempts": run.attempts,
                    "created_at": _iso(run.created_at),
                    "started_at": _iso(run.started_at),
                    "completed_at": _iso(run.completed_at),
                },
            }
        except Exception as e:
            logger.error(f"Run status error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_run_results(run_id: str):
        """Keyword rows and completion metrics of a run."""
        try:
            run = run_store.get_run(run_id)
            if not run:
                return {"success": False, "error": f"Run '{run_id}' not found"}

            rows = run_store.get_keyword_results(run_id)
            return {
                "success": True,
                "data": {
                    "run_id": run.id,
                    "subject": run.subject,
                    "status": run.status,
                    "metrics": run_store.get_run_metrics(run_id),
                    "keywords": rows,
                },
                "count": len(rows),
            }
        except Exception as e:
            logger.error(f"Run results error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_run_trends(run_id: str):
        """7d / 30d / 90d position deltas for every keyword of a completed run."""
        try:
            run = run_store.get_run(run_id)
            if not run:
                return {"success": False, "error": f"Run '{run_id}' not found"}
            if run.status != COMPLETED:
                return {"success": False, "error": f"Run '{run_id}' is {run.status}; trends need a completed run"}

            trends = run_store.get_step_result(run_id, "trends")
            if trends is None:
                snapshot = run_store.get_snapshot(run_id)
                trends = HistoricalWindowMatcher(run_store).compute_trends(snapshot, run.subject)

            return {"success": True, "data": {"run_id": run.id, "subject": run.subject, "trends": trends}}
        except Exception as e:
            logger.error(f"Run trends error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def list_runs(subject: Optional[str] = None, status: Optional[str] = None, limit: int = 20):
        try:
            runs = run_store.list_runs(status=status.upper() if status else None, subject=subject, limit=limit)
            data = [
                {
                    "run_id": r.id,
                    "subject": r.subject,
                    "status": r.status,
                    "progress": r.progress,
                    "has_warnings": bool(r.step_warnings),
                    "created_at": _iso(r.created_at),
                    "completed_at": _iso(r.completed_at),
                }
                for r in runs
            ]
            return {"success": True, "data": data, "count": len(data)}
        except Exception as e:
            logger.error(f"List runs error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def add_keywords(subject: str, keywords: List[str]):
        """Start tracking keywords for a subject (existing ones are kept)."""
        try:
            if not subject or not keywords:
                raise ValueError("subject and keywords are required")
            added = run_store.add_tracked_keywords(subject, keywords)
            tracked = run_store.list_tracked_keywords(subject)
            return {"success": True, "data": {"added": added, "tracked": [k["keyword"] for k in tracked]}}
        except ValueError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Add keywords error: {e}")
            return {"success": False, "error": str(e)}
