import json
import logging
import os
import signal
import time
import uuid
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, List, Optional
from mcp.server.fastmcp import FastMCP

from collector.database import init_db
from services.run_service import RunService
from services.schedule_service import ScheduleService

# Configure logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize MCP Server
MCP_HOST = os.environ.get('MCP_HOST', '0.0.0.0')
MCP_PORT = int(os.environ.get('MCP_PORT', '8000'))
MCP_TRANSPORT = os.environ.get('MCP_TRANSPORT', 'sse')  # 'sse' for network, 'stdio' for local

mcp = FastMCP("rank-collector", host=MCP_HOST, port=MCP_PORT)

TRACKING_CAPABILITIES = [
    {
        "category": "runs",
        "description": "Request keyword ranking collection for a domain and follow its progress.",
        "methods": ["request_tracking_run", "get_run_status", "list_tracking_runs", "add_tracked_keywords"],
        "examples": [
            "Track rankings for example.com now.",
            "How far along is run 3f2a...?",
        ],
    },
    {
        "category": "results",
        "description": "Keyword positions, completion metrics and 7/30/90 day trends of a completed run.",
        "methods": ["get_run_results", "get_run_trends"],
        "examples": [
            "Which keywords improved for example.com this week?",
            "Show the 30 day trend of the last run.",
        ],
    },
    {
        "category": "schedules",
        "description": "Weekly, biweekly or monthly recurring collection per domain.",
        "methods": [
            "create_tracking_schedule", "get_tracking_schedule", "update_tracking_schedule",
            "delete_tracking_schedule", "list_tracking_schedules",
        ],
        "examples": [
            "Track example.com every Monday at 06:00.",
            "Move the example.com schedule to the 15th of each month.",
        ],
    },
]

TOOL_REGISTRY: Dict[str, Callable[..., Any]] = {}
TOOL_METRICS: Dict[str, Any] = {
    "requests_total": 0,
    "failures_total": 0,
    "latency_ms_total": 0.0,
    "tool_calls": {},
    "tool_failures": {},
}


def _safe_iso_utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_error(error: Any) -> Dict[str, Any]:
    if error is None:
        return {"code": None, "message": None, "details": None}
    if isinstance(error, dict):
        return {
            "code": error.get("code"),
            "message": error.get("message") or error.get("error") or "Unknown error",
            "details": error.get("details"),
        }
    return {"code": "request_error", "message": str(error), "details": None}


def _normalize_tool_result(result: Any) -> Dict[str, Any]:
    if isinstance(result, dict):
        known = {"success", "data", "error", "meta"}
        normalized = {
            "success": bool(result.get("success", True)),
            "data": result.get("data"),
            "error": _normalize_error(result.get("error")),
            "meta": result.get("meta") if isinstance(result.get("meta"), dict) else {},
        }
        for k, v in result.items():
            if k not in known:
                normalized[k] = v
        return normalized

    return {
        "success": True,
        "data": result,
        "error": _normalize_error(None),
        "meta": {},
    }


def _record_metrics(tool_name: str, success: bool, latency_ms: float) -> None:
    TOOL_METRICS["requests_total"] += 1
    TOOL_METRICS["latency_ms_total"] += latency_ms
    TOOL_METRICS["tool_calls"][tool_name] = TOOL_METRICS["tool_calls"].get(tool_name, 0) + 1
    if not success:
        TOOL_METRICS["failures_total"] += 1
        TOOL_METRICS["tool_failures"][tool_name] = TOOL_METRICS["tool_failures"].get(tool_name, 0) + 1


def tool_endpoint():
    def decorator(func: Callable[..., Any]):
        tool_name = func.__name__

        @wraps(func)
        async def wrapper(*args, **kwargs):
            request_id = uuid.uuid4().hex
            started = time.perf_counter()

            try:
                raw = await func(*args, **kwargs)
                response = _normalize_tool_result(raw)
            except ValueError as exc:
                response = {
                    "success": False,
                    "data": None,
                    "error": {"code": "validation_error", "message": str(exc), "details": None},
                    "meta": {},
                }
            except Exception as exc:
                logger.exception("[TOOL_ERROR] %s failed", tool_name)
                response = {
                    "success": False,
                    "data": None,
                    "error": {
                        "code": "internal_error",
                        "message": str(exc),
                        "details": {"exception_type": type(exc).__name__},
                    },
                    "meta": {},
                }

            latency_ms = round((time.perf_counter() - started) * 1000.0, 3)
            response["error"] = _normalize_error(response.get("error"))
            response["meta"] = {
                **(response.get("meta") or {}),
                "request_id": request_id,
                "asof": _safe_iso_utc_now(),
                "transport": MCP_TRANSPORT,
                "latency_ms": latency_ms,
            }

            _record_metrics(tool_name, response["success"], latency_ms)
            logger.info(
                json.dumps(
                    {
                        "event": "tool_call",
                        "tool": tool_name,
                        "success": response["success"],
                        "request_id": request_id,
                        "latency_ms": latency_ms,
                    }
                )
            )
            return response

        TOOL_REGISTRY[tool_name] = wrapper
        return wrapper

    return decorator


@mcp.tool()
@tool_endpoint()
async def get_tracking_capabilities() -> Dict[str, Any]:
    """
    List what this server can do, by category, with method names and example questions.

    Use when the user asks "what can you do?" or "which tools exist for schedules?".
    """
    return {"data": {"categories": TRACKING_CAPABILITIES, "tool_count": len(TOOL_REGISTRY)}}


@mcp.tool()
@tool_endpoint()
async def get_server_metrics() -> Dict[str, Any]:
    """Tool call counters and average latency."""
    requests_total = TOOL_METRICS["requests_total"]
    return {
        "data": {
            "requests_total": requests_total,
            "failures_total": TOOL_METRICS["failures_total"],
            "latency_avg_ms": TOOL_METRICS["latency_ms_total"] / requests_total if requests_total else 0.0,
            "tool_calls": TOOL_METRICS["tool_calls"],
            "tool_failures": TOOL_METRICS["tool_failures"],
        }
    }


# --- Runs ---

@mcp.tool()
@tool_endpoint()
async def request_tracking_run(
    subject: str,
    keywords: Optional[List[str]] = None,
    location_name: str = "United States",
    language_code: str = "en",
    include_search_volume: bool = True,
    include_business_listing: bool = False,
) -> Dict[str, Any]:
    """
    Request a keyword ranking collection run for a domain.

    Parameters:
        subject: Domain to track, e.g. 'example.com'
        keywords: Keywords to check (optional; defaults to the domain's tracked keywords).
                  Given keywords are also added to the tracked list.
        location_name: Search location, e.g. 'United States', 'London,England,United Kingdom'
        language_code: Search language, e.g. 'en'
        include_search_volume: Enrich results with monthly search volume and CPC
        include_business_listing: Also look up the business listing (slow, task-based)

    If the domain already has a pending or running run, that run is returned
    (deduplicated=true) instead of starting a new one.

    Example: request_tracking_run("example.com", ["plumber austin", "emergency plumber"])
    """
    return RunService.request_run(
        subject,
        keywords=keywords,
        location_name=location_name,
        language_code=language_code,
        include_search_volume=include_search_volume,
        include_business_listing=include_business_listing,
    )


@mcp.tool()
@tool_endpoint()
async def get_run_status(run_id: str) -> Dict[str, Any]:
    """
    Get the status of a tracking run: status, progress (0-100), current step,
    is_complete / is_failed flags, error message and per-step warnings.

    A run can complete with warnings when optional steps (search volume, trends,
    business listing) failed.
    """
    return RunService.get_run_status(run_id)


@mcp.tool()
@tool_endpoint()
async def get_run_results(run_id: str) -> Dict[str, Any]:
    """
    Get keyword positions and completion metrics (average position, top 3/10/100
    counts, improved/declined keywords, estimated API cost) of a run.
    """
    return RunService.get_run_results(run_id)


@mcp.tool()
@tool_endpoint()
async def get_run_trends(run_id: str) -> Dict[str, Any]:
    """
    Get 7d / 30d / 90d position changes for every keyword of a completed run.
    Positive values mean the keyword moved up. null means no comparable past run.
    """
    return RunService.get_run_trends(run_id)


@mcp.tool()
@tool_endpoint()
async def list_tracking_runs(subject: Optional[str] = None, status: Optional[str] = None,
                             limit: int = 20) -> Dict[str, Any]:
    """
    List tracking runs, oldest first.

    Parameters:
        subject: Only runs of this domain (optional)
        status: PENDING, RUNNING, COMPLETED or FAILED (optional)
        limit: Maximum rows (1-200)
    """
    if limit < 1 or limit > 200:
        raise ValueError("limit must be between 1 and 200")
    return RunService.list_runs(subject=subject, status=status, limit=limit)


@mcp.tool()
@tool_endpoint()
async def add_tracked_keywords(subject: str, keywords: List[str]) -> Dict[str, Any]:
    """Add keywords to a domain's tracked list. Existing keywords are kept."""
    return RunService.add_keywords(subject, keywords)


# --- Schedules ---

@mcp.tool()
@tool_endpoint()
async def create_tracking_schedule(
    subject: str,
    frequency: str,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
    time_of_day: str = "06:00",
    location_name: str = "United States",
    language_code: str = "en",
) -> Dict[str, Any]:
    """
    Create a recurring collection schedule for a domain (one per domain).

    Parameters:
        frequency: 'weekly', 'biweekly' or 'monthly'
        day_of_week: 0 = Sunday ... 6 = Saturday (weekly/biweekly)
        day_of_month: 1-31 (monthly; clamped to the last day in short months)
        time_of_day: 'HH:MM' in UTC

    Example: create_tracking_schedule("example.com", "weekly", day_of_week=1) → every Monday 06:00 UTC
    """
    return ScheduleService.create_schedule(
        subject, frequency,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        time_of_day=time_of_day,
        location_name=location_name,
        language_code=language_code,
    )


@mcp.tool()
@tool_endpoint()
async def get_tracking_schedule(subject: str) -> Dict[str, Any]:
    """Get a domain's schedule including next_run_at and the last triggered run."""
    return ScheduleService.get_schedule(subject)


@mcp.tool()
@tool_endpoint()
async def update_tracking_schedule(
    subject: str,
    frequency: Optional[str] = None,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
    time_of_day: Optional[str] = None,
    is_enabled: Optional[bool] = None,
    location_name: Optional[str] = None,
    language_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Update a domain's schedule. Only the given fields change; next_run_at is
    recalculated when frequency, day or time change.

    Example: update_tracking_schedule("example.com", is_enabled=False) → pauses it
    """
    return ScheduleService.update_schedule(
        subject,
        frequency=frequency,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        time_of_day=time_of_day,
        is_enabled=is_enabled,
        location_name=location_name,
        language_code=language_code,
    )


@mcp.tool()
@tool_endpoint()
async def delete_tracking_schedule(subject: str) -> Dict[str, Any]:
    """Delete a domain's schedule. Past runs are kept."""
    return ScheduleService.delete_schedule(subject)


@mcp.tool()
@tool_endpoint()
async def list_tracking_schedules() -> Dict[str, Any]:
    """List all schedules with their next run time."""
    return ScheduleService.list_schedules()


def _handle_signal(sig, frame):
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    logger.info(f"[SIGNAL] Received {signal.Signals(sig).name}, shutting down...")
    raise KeyboardInterrupt


def main():
    """CLI entrypoint for the rank collector MCP server."""
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "[SERVER] Starting Rank Collector MCP Server "
        f"(transport={MCP_TRANSPORT}, host={MCP_HOST}, port={MCP_PORT})"
    )
    try:
        init_db()
        mcp.run(transport=MCP_TRANSPORT)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical(f"Server crashed: {e}")


if __name__ == "__main__":
    main()
