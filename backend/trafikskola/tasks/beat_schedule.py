# backend/trafikskola/tasks/beat_schedule.py
"""
Celery Beat schedule.

Holds expire ten minutes after creation, so the sweep runs every five
minutes; checkout orders expire after a day, so hourly is enough.
"""

from typing import Any, Dict

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    "expire-stale-holds": {
        "task": "trafikskola.tasks.booking_tasks.expire_stale_holds",
        "schedule": crontab(minute="*/5"),
        "options": {"queue": "maintenance", "expires": 240},
    },
    "expire-stale-orders": {
        "task": "trafikskola.tasks.booking_tasks.expire_stale_orders",
        "schedule": crontab(minute=15),
        "options": {"queue": "maintenance", "expires": 3000},
    },
}


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return dict(CELERYBEAT_SCHEDULE)
