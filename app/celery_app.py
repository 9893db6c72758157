from celery import Celery

from app.config import settings


celery_app = Celery(
    "ibbs_seat_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.reservations.tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    beat_schedule={
        "sweep-expired-seat-holds": {
            "task": "app.reservations.tasks.sweep_expired_holds",
            "schedule": float(settings.SEAT_SWEEP_INTERVAL_SECONDS),
        },
    },
)
