"""
Historical comparison: finds the past snapshot to compare a run against
and computes per-keyword position deltas.

Positions are ranks: a lower number is better, so a positive delta means
the keyword moved up.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel

from core.schedule import as_utc

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    """Per-key numeric results of one completed run."""
    run_id: str
    created_at: datetime
    values: Dict[str, Optional[Union[int, float]]] = {}


class HistoricalWindow(BaseModel):
    label: str
    offset_days: int
    tolerance_days: int


STANDARD_WINDOWS = [
    HistoricalWindow(label="7d", offset_days=7, tolerance_days=3),
    HistoricalWindow(label="30d", offset_days=30, tolerance_days=7),
    HistoricalWindow(label="90d", offset_days=90, tolerance_days=14),
]


def window_bounds(reference_date: datetime, offset_days: int, tolerance_days: int):
    """Inclusive [start, end] around reference_date - offset_days."""
    target = as_utc(reference_date) - timedelta(days=offset_days)
    tolerance = timedelta(days=tolerance_days)
    return target - tolerance, target + tolerance


def select_nearest_snapshot(snapshots: Iterable[Snapshot], reference_date: datetime,
                            offset_days: int, tolerance_days: int) -> Optional[Snapshot]:
    """
    Pick the snapshot with the largest created_at inside the window.
    Recency wins over closeness to the exact offset.
    """
    start, end = window_bounds(reference_date, offset_days, tolerance_days)
    best = None
    for snapshot in snapshots:
        created_at = as_utc(snapshot.created_at)
        if created_at < start or created_at > end:
            continue
        if best is None or created_at > as_utc(best.created_at):
            best = snapshot
    return best


def compute_delta(current_value: Optional[float], historical_value: Optional[float]) -> Optional[float]:
    """historical - current, or None when either side is missing."""
    if current_value is None or historical_value is None:
        return None
    return historical_value - current_value


class HistoricalWindowMatcher:
    """
    Locates comparison snapshots through a snapshot source, i.e. any object
    with list_snapshots(subject, start, end) returning completed snapshots.
    """

    def __init__(self, source, windows: Optional[List[HistoricalWindow]] = None):
        self.source = source
        self.windows = windows or STANDARD_WINDOWS

    def find_nearest_snapshot(self, subject: str, reference_date: datetime,
                              offset_days: int, tolerance_days: int) -> Optional[Snapshot]:
        start, end = window_bounds(reference_date, offset_days, tolerance_days)
        candidates = self.source.list_snapshots(subject, start, end)
        snapshot = select_nearest_snapshot(candidates, reference_date, offset_days, tolerance_days)
        if snapshot is None:
            logger.debug(
                "[HISTORY] No snapshot for %s in window -%sd (±%sd)",
                subject, offset_days, tolerance_days,
            )
        return snapshot

    def match_windows(self, subject: str, reference_date: datetime,
                      exclude_run_id: Optional[str] = None) -> Dict[str, Optional[Snapshot]]:
        """Nearest snapshot for every configured window, keyed by label."""
        matched = {}
        for window in self.windows:
            snapshot = self.find_nearest_snapshot(
                subject, reference_date, window.offset_days, window.tolerance_days
            )
            if snapshot is not None and snapshot.run_id == exclude_run_id:
                snapshot = None
            matched[window.label] = snapshot
        return matched

    def compute_trends(self, current: Snapshot, subject: str) -> Dict[str, Dict[str, Optional[float]]]:
        """key -> {window label -> delta} against each standard window."""
        matched = self.match_windows(subject, current.created_at, exclude_run_id=current.run_id)
        trends: Dict[str, Dict[str, Optional[float]]] = {}
        for key, value in current.values.items():
            trends[key] = {}
            for label, snapshot in matched.items():
                historical = snapshot.values.get(key) if snapshot else None
                trends[key][label] = compute_delta(value, historical)
        return trends


def compare_snapshots(current: Dict[str, Optional[float]],
                      previous: Optional[Snapshot]) -> Dict[str, Dict[str, Optional[float]]]:
    """Run-over-run comparison: previous position and change per key."""
    previous_values = previous.values if previous else {}
    comparison = {}
    for key, value in current.items():
        previous_value = previous_values.get(key)
        comparison[key] = {
            "previous_position": previous_value,
            "position_change": compute_delta(value, previous_value),
        }
    return comparison


def summarize_positions(rows: List[dict], cost_per_call: float = 0.002) -> dict:
    """
    Completion metrics for a tracking run. Each row carries 'position',
    'previous_position' and 'position_change'.
    """
    positions = [r["position"] for r in rows if r.get("position") is not None]
    changes = [r.get("position_change") for r in rows]

    return {
        "keywords_tracked": len(rows),
        "avg_position": round(sum(positions) / len(positions), 2) if positions else None,
        "keywords_in_top_3": sum(1 for p in positions if p <= 3),
        "keywords_in_top_10": sum(1 for p in positions if p <= 10),
        "keywords_in_top_100": sum(1 for p in positions if p <= 100),
        "keywords_not_ranking": sum(1 for r in rows if r.get("position") is None),
        "improved_count": sum(1 for c in changes if c is not None and c > 0),
        "declined_count": sum(1 for c in changes if c is not None and c < 0),
        "unchanged_count": sum(1 for c in changes if c == 0),
        "new_rankings_count": sum(
            1 for r in rows if r.get("position") is not None and r.get("previous_position") is None
        ),
        "lost_rankings_count": sum(
            1 for r in rows if r.get("position") is None and r.get("previous_position") is not None
        ),
        "api_calls_used": len(rows),
        "estimated_cost": round(len(rows) * cost_per_call, 4),
    }
