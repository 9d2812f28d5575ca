"""
Schedule Service: create and maintain the recurring tracking cadence of a
subject. next_run_at is computed on create and whenever the cadence changes.
"""
import logging
from typing import Optional

from collector.store import ScheduleStore

logger = logging.getLogger(__name__)

schedule_store = ScheduleStore()


class ScheduleService:
    @staticmethod
    def create_schedule(subject: str, frequency: str, day_of_week: Optional[int] = None,
                        day_of_month: Optional[int] = None, time_of_day: Optional[str] = None,
                        location_name: Optional[str] = None, language_code: Optional[str] = None):
        try:
            if not subject:
                raise ValueError("subject is required")
            data = schedule_store.create(
                subject,
                frequency.lower() if frequency else frequency,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                time_of_day=time_of_day,
                location_name=location_name,
                language_code=language_code,
            )
            return {"success": True, "data": data}
        except ValueError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Create schedule error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_schedule(subject: str):
        try:
            data = schedule_store.get(subject)
            if not data:
                return {"success": False, "error": f"Schedule for '{subject}' not found"}
            return {"success": True, "data": data}
        except Exception as e:
            logger.error(f"Get schedule error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def update_schedule(subject: str, frequency: Optional[str] = None,
                        day_of_week: Optional[int] = None, day_of_month: Optional[int] = None,
                        time_of_day: Optional[str] = None, is_enabled: Optional[bool] = None,
                        location_name: Optional[str] = None, language_code: Optional[str] = None):
        """Change only the fields that are given. Switching frequency clears the unused day field."""
        changes = {
            "frequency": frequency.lower() if frequency else None,
            "day_of_week": day_of_week,
            "day_of_month": day_of_month,
            "time_of_day": time_of_day,
            "is_enabled": is_enabled,
            "location_name": location_name,
            "language_code": language_code,
        }
        changes = {k: v for k, v in changes.items() if v is not None}
        try:
            if not changes:
                raise ValueError("Nothing to update")
            data = schedule_store.update(subject, **changes)
            return {"success": True, "data": data}
        except (ValueError, LookupError) as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Update schedule error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def delete_schedule(subject: str):
        try:
            if not schedule_store.delete(subject):
                return {"success": False, "error": f"Schedule for '{subject}' not found"}
            return {"success": True, "data": {"subject": subject, "deleted": True}}
        except Exception as e:
            logger.error(f"Delete schedule error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def list_schedules():
        try:
            data = schedule_store.list_all()
            return {"success": True, "data": data, "count": len(data)}
        except Exception as e:
            logger.error(f"List schedules error: {e}")
            return {"success": False, "error": str(e)}
