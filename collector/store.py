"""
Persistent store for runs, step results, keyword snapshots and schedules.

Writes that may be repeated by a retried pipeline (step results, keyword
results) skip rows that already exist instead of failing.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic_core import to_jsonable_python
from sqlalchemy.exc import IntegrityError

from collector.database import SessionLocal
from collector.models import (
    KeywordResult, RunStepResult, TrackedKeyword, TrackingRun, TrackingSchedule, utcnow
)
from core.history import Snapshot
from core.pipeline import COMPLETED, FAILED, PENDING, RUNNING, TERMINAL_STATUSES, RunState
from core.schedule import ScheduleSpec, as_utc, next_run_time, validate_schedule

logger = logging.getLogger(__name__)

KEYWORD_RESULT_FIELDS = (
    "position", "previous_position", "position_change", "search_volume", "volume_date",
    "cpc", "keyword_difficulty", "ranking_url", "serp_features",
    "local_pack_position", "local_pack_rating", "local_pack_reviews",
)


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Aware or naive -> naive UTC for storage."""
    value = as_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def _run_state(row: TrackingRun) -> RunState:
    return RunState(
        id=row.id,
        subject=row.subject,
        status=row.status,
        progress=row.progress or 0,
        current_step=row.current_step,
        step_warnings=row.step_warnings or {},
        attempts=row.attempts or 0,
        config=row.config or {},
        error_message=row.error_message,
        created_at=as_utc(row.created_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
    )


class RunStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    # --- Runs ---------------------------------------------------------------

    def create_run(self, subject: str, config: Optional[dict] = None,
                   trigger: str = "manual", created_at: Optional[datetime] = None) -> RunState:
        session = self.session_factory()
        try:
            row = TrackingRun(
                subject=subject,
                status=PENDING,
                progress=0,
                trigger=trigger,
                config=config or {},
                created_at=to_db_time(created_at) or utcnow(),
            )
            session.add(row)
            session.commit()
            logger.info("[STORE] Created run %s for %s (trigger=%s)", row.id, subject, trigger)
            return _run_state(row)
        finally:
            session.close()

    def get_run(self, run_id: str) -> Optional[RunState]:
        session = self.session_factory()
        try:
            row = session.get(TrackingRun, run_id)
            return _run_state(row) if row else None
        finally:
            session.close()

    def save_run(self, state: RunState) -> RunState:
        """
        Re-persist a run snapshot. Progress never moves backwards and a run
        that is already terminal is left untouched; the stored state is returned.
        """
        session = self.session_factory()
        try:
            row = session.get(TrackingRun, state.id)
            if row is None:
                raise LookupError(f"Run {state.id} not found")

            if row.status in TERMINAL_STATUSES:
                if state.status != row.status:
                    logger.warning(
                        "[STORE] Ignoring update to run %s: already %s", state.id, row.status
                    )
                return _run_state(row)

            row.status = state.status
            if state.status in TERMINAL_STATUSES:
                row.progress = state.progress
            else:
                row.progress = max(row.progress or 0, min(100, state.progress))
            row.current_step = state.current_step
            row.step_warnings = dict(state.step_warnings) or None
            row.attempts = state.attempts
            row.error_message = state.error_message
            row.started_at = to_db_time(state.started_at)
            row.completed_at = to_db_time(state.completed_at)
            session.commit()
            return _run_state(row)
        finally:
            session.close()

    def save_run_metrics(self, run_id: str, metrics: Optional[dict]):
        session = self.session_factory()
        try:
            row = session.get(TrackingRun, run_id)
            if row is None:
                raise LookupError(f"Run {run_id} not found")
            row.metrics = to_jsonable_python(metrics) if metrics is not None else None
            session.commit()
        finally:
            session.close()

    def get_run_metrics(self, run_id: str) -> Optional[dict]:
        session = self.session_factory()
        try:
            row = session.get(TrackingRun, run_id)
            return row.metrics if row else None
        finally:
            session.close()

    def find_active_run(self, subject: str) -> Optional[RunState]:
        session = self.session_factory()
        try:
            row = session.query(TrackingRun).filter(
                TrackingRun.subject == subject,
                TrackingRun.status.in_([PENDING, RUNNING]),
            ).order_by(TrackingRun.created_at.desc()).first()
            return _run_state(row) if row else None
        finally:
            session.close()

    def list_runs(self, status: Optional[str] = None, subject: Optional[str] = None,
                  limit: int = 50) -> List[RunState]:
        session = self.session_factory()
        try:
            query = session.query(TrackingRun)
            if status:
                query = query.filter(TrackingRun.status == status)
            if subject:
                query = query.filter(TrackingRun.subject == subject)
            rows = query.order_by(TrackingRun.created_at.asc()).limit(limit).all()
            return [_run_state(r) for r in rows]
        finally:
            session.close()

    def recover_stuck_runs(self) -> int:
        """
        Close RUNNING runs orphaned by a crash or restart. PENDING runs are
        durable requests and stay for dispatch_pending.
        """
        session = self.session_factory()
        try:
            stale_runs = session.query(TrackingRun).filter(
                TrackingRun.status == RUNNING,
            ).all()

            now = utcnow()
            for run in stale_runs:
                run.status = FAILED
                run.completed_at = now
                run.error_message = "Recovered as failed on scheduler startup"

            if stale_runs:
                session.commit()
                logger.warning("[STORE] Recovered %d stale running runs", len(stale_runs))
            return len(stale_runs)
        finally:
            session.close()

    # --- Step results -------------------------------------------------------

    def save_step_result(self, run_id: str, step_name: str, result: Any) -> bool:
        """Insert a step result; returns False when it was already stored."""
        session = self.session_factory()
        try:
            existing = session.query(RunStepResult.id).filter(
                RunStepResult.run_id == run_id,
                RunStepResult.step_name == step_name,
            ).first()
            if existing:
                logger.debug("[STORE] Step result %s/%s exists, skipping", run_id, step_name)
                return False

            session.add(RunStepResult(
                run_id=run_id,
                step_name=step_name,
                result=to_jsonable_python(result),
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True
        finally:
            session.close()

    def get_step_result(self, run_id: str, step_name: str) -> Optional[Any]:
        session = self.session_factory()
        try:
            row = session.query(RunStepResult).filter(
                RunStepResult.run_id == run_id,
                RunStepResult.step_name == step_name,
            ).first()
            return row.result if row else None
        finally:
            session.close()

    def save_keyword_results(self, run_id: str, rows: Iterable[dict]) -> int:
        """Insert keyword rows, skipping keywords already stored for the run."""
        session = self.session_factory()
        try:
            existing = {
                k for (k,) in session.query(KeywordResult.keyword).filter(
                    KeywordResult.run_id == run_id
                ).all()
            }
            inserted = 0
            for row in rows:
                keyword = row["keyword"]
                if keyword in existing:
                    continue
                existing.add(keyword)
                session.add(KeywordResult(
                    run_id=run_id,
                    keyword=keyword,
                    **{f: to_jsonable_python(row.get(f)) for f in KEYWORD_RESULT_FIELDS},
                ))
                inserted += 1
            session.commit()
            logger.info("[STORE] Saved %d keyword results for run %s", inserted, run_id)
            return inserted
        finally:
            session.close()

    def get_keyword_results(self, run_id: str) -> List[dict]:
        session = self.session_factory()
        try:
            rows = session.query(KeywordResult).filter(
                KeywordResult.run_id == run_id
            ).order_by(KeywordResult.keyword.asc()).all()
            return [
                dict({"keyword": r.keyword}, **{f: getattr(r, f) for f in KEYWORD_RESULT_FIELDS})
                for r in rows
            ]
        finally:
            session.close()

    # --- Snapshots ----------------------------------------------------------

    def _snapshot(self, session, run: TrackingRun) -> Snapshot:
        results = session.query(KeywordResult.keyword, KeywordResult.position).filter(
            KeywordResult.run_id == run.id
        ).all()
        return Snapshot(
            run_id=run.id,
            created_at=as_utc(run.created_at),
            values={keyword: position for keyword, position in results},
        )

    def get_snapshot(self, run_id: str) -> Optional[Snapshot]:
        session = self.session_factory()
        try:
            run = session.get(TrackingRun, run_id)
            return self._snapshot(session, run) if run else None
        finally:
            session.close()

    def list_snapshots(self, subject: str, start: datetime, end: datetime) -> List[Snapshot]:
        """Completed runs for `subject` created within [start, end]."""
        session = self.session_factory()
        try:
            runs = session.query(TrackingRun).filter(
                TrackingRun.subject == subject,
                TrackingRun.status == COMPLETED,
                TrackingRun.created_at >= to_db_time(start),
                TrackingRun.created_at <= to_db_time(end),
            ).order_by(TrackingRun.created_at.desc()).all()
            return [self._snapshot(session, run) for run in runs]
        finally:
            session.close()

    def get_previous_snapshot(self, subject: str, exclude_run_id: str) -> Optional[Snapshot]:
        """Most recent completed run of `subject` other than `exclude_run_id`."""
        session = self.session_factory()
        try:
            run = session.query(TrackingRun).filter(
                TrackingRun.subject == subject,
                TrackingRun.status == COMPLETED,
                TrackingRun.id != exclude_run_id,
            ).order_by(TrackingRun.created_at.desc()).first()
            return self._snapshot(session, run) if run else None
        finally:
            session.close()

    # --- Tracked keywords ---------------------------------------------------

    def list_tracked_keywords(self, subject: str) -> List[dict]:
        session = self.session_factory()
        try:
            rows = session.query(TrackedKeyword).filter(
                TrackedKeyword.subject == subject,
                TrackedKeyword.is_active.is_(True),
            ).order_by(TrackedKeyword.keyword.asc()).all()
            return [
                {"id": r.id, "keyword": r.keyword, "search_volume": r.search_volume, "cpc": r.cpc}
                for r in rows
            ]
        finally:
            session.close()

    def add_tracked_keywords(self, subject: str, keywords: Iterable[str]) -> int:
        session = self.session_factory()
        try:
            existing = {
                k for (k,) in session.query(TrackedKeyword.keyword).filter(
                    TrackedKeyword.subject == subject
                ).all()
            }
            added = 0
            for keyword in keywords:
                keyword = keyword.strip()
                if not keyword or keyword in existing:
                    continue
                existing.add(keyword)
                session.add(TrackedKeyword(subject=subject, keyword=keyword))
                added += 1
            session.commit()
            return added
        finally:
            session.close()


def _schedule_dict(row: TrackingSchedule) -> Dict[str, Any]:
    return {
        "id": row.id,
        "subject": row.subject,
        "frequency": row.frequency,
        "day_of_week": row.day_of_week,
        "day_of_month": row.day_of_month,
        "time_of_day": row.time_of_day,
        "location_name": row.location_name,
        "language_code": row.language_code,
        "is_enabled": row.is_enabled,
        "next_run_at": _iso(row.next_run_at),
        "last_run_at": _iso(row.last_run_at),
        "last_run_id": row.last_run_id,
    }


CADENCE_FIELDS = ("frequency", "day_of_week", "day_of_month", "time_of_day")
UPDATABLE_FIELDS = CADENCE_FIELDS + ("location_name", "language_code", "is_enabled")


class ScheduleStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def create(self, subject: str, frequency: str, day_of_week: Optional[int] = None,
               day_of_month: Optional[int] = None, time_of_day: Optional[str] = None,
               location_name: Optional[str] = None, language_code: Optional[str] = None,
               now: Optional[datetime] = None) -> Dict[str, Any]:
        validate_schedule(frequency, day_of_week, day_of_month, time_of_day)
        time_of_day = time_of_day or "06:00"
        spec = ScheduleSpec(frequency=frequency, day_of_week=day_of_week,
                            day_of_month=day_of_month, time_of_day=time_of_day)

        session = self.session_factory()
        try:
            if session.query(TrackingSchedule.id).filter(TrackingSchedule.subject == subject).first():
                raise ValueError(f"Schedule for '{subject}' already exists")

            row = TrackingSchedule(
                subject=subject,
                frequency=frequency,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                time_of_day=time_of_day,
                location_name=location_name or "United States",
                language_code=language_code or "en",
                is_enabled=True,
                next_run_at=to_db_time(next_run_time(spec, now)),
            )
            session.add(row)
            session.commit()
            logger.info("[STORE] Created %s schedule for %s (next=%s)", frequency, subject, row.next_run_at)
            return _schedule_dict(row)
        finally:
            session.close()

    def get(self, subject: str) -> Optional[Dict[str, Any]]:
        session = self.session_factory()
        try:
            row = session.query(TrackingSchedule).filter(TrackingSchedule.subject == subject).first()
            return _schedule_dict(row) if row else None
        finally:
            session.close()

    def list_all(self) -> List[Dict[str, Any]]:
        session = self.session_factory()
        try:
            rows = session.query(TrackingSchedule).order_by(TrackingSchedule.subject.asc()).all()
            return [_schedule_dict(r) for r in rows]
        finally:
            session.close()

    def update(self, subject: str, now: Optional[datetime] = None, **changes) -> Dict[str, Any]:
        """Apply changes; next_run_at is recalculated when the cadence changes."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")

        session = self.session_factory()
        try:
            row = session.query(TrackingSchedule).filter(TrackingSchedule.subject == subject).first()
            if row is None:
                raise LookupError(f"Schedule for '{subject}' not found")

            # A cadence switch drops the day field the new frequency does not use
            frequency = changes.get("frequency")
            if frequency and frequency != row.frequency:
                unused = "day_of_week" if frequency == "monthly" else "day_of_month"
                changes.setdefault(unused, None)

            merged ={f: changes.get(f, getattr(row, f)) for f in CADENCE_FIELDS}
            validate_schedule(**merged)

            for field, value in changes.items():
                setattr(row, field, value)

            if any(f in changes for f in CADENCE_FIELDS):
                spec = ScheduleSpec(last_run_at=as_utc(row.last_run_at), **merged)
                row.next_run_at = to_db_time(next_run_time(spec, now))

            session.commit()
            return _schedule_dict(row)
        finally:
            session.close()

    def delete(self, subject: str) -> bool:
        session = self.session_factory()
        try:
            row = session.query(TrackingSchedule).filter(TrackingSchedule.subject == subject).first()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True
        finally:
            session.close()

    def due_schedules(self, now: Optional[datetime] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Enabled schedules whose next_run_at has passed."""
        now = now or datetime.now(timezone.utc)
        session = self.session_factory()
        try:
            rows = session.query(TrackingSchedule).filter(
                TrackingSchedule.is_enabled.is_(True),
                TrackingSchedule.next_run_at <= to_db_time(now),
            ).order_by(TrackingSchedule.next_run_at.asc()).limit(limit).all()
            return [_schedule_dict(r) for r in rows]
        finally:
            session.close()

    def mark_schedule_triggered(self, subject: str, run_id: str,
                                now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Record a triggered run and move next_run_at forward."""
        now = as_utc(now) or datetime.now(timezone.utc)
        session = self.session_factory()
        try:
            row = session.query(TrackingSchedule).filter(TrackingSchedule.subject == subject).first()
            if row is None:
                return None

            spec = ScheduleSpec(
                frequency=row.frequency,
                day_of_week=row.day_of_week,
                day_of_month=row.day_of_month,
                time_of_day=row.time_of_day,
                last_run_at=now,
            )
            row.last_run_at = to_db_time(now)
            row.last_run_id = run_id
            row.next_run_at = to_db_time(next_run_time(spec, now))
            session.commit()
            return _schedule_dict(row)
        finally:
            session.close()
