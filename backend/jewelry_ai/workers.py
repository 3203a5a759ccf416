from celery import Celery
from .config import settings

def _route_task(name, args, kwargs, options, task=None):
    """
    Route poll tasks to dedicated queues so a slow provider on one pipeline
    never starves the other.
    """
    if name == "jewelry_ai.tasks.poll_ai_preview_jobs_task":
        return {"queue": "ai_preview"}

    if name == "jewelry_ai.tasks.poll_upgrade_preview_jobs_task":
        return {"queue": "upgrade_preview"}

    return None

celery_app = Celery(
    "jewelry_ai",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["jewelry_ai.tasks"]
)

celery_app.conf.update(
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_transport_options={"visibility_timeout": 3600},
    task_routes=(_route_task,),
    beat_schedule={
        "poll-ai-preview-jobs": {
            "task": "jewelry_ai.tasks.poll_ai_preview_jobs_task",
            "schedule": settings.WORKER_POLL_INTERVAL_SECONDS,
        },
        "poll-upgrade-preview-jobs": {
            "task": "jewelry_ai.tasks.poll_upgrade_preview_jobs_task",
            "schedule": settings.WORKER_POLL_INTERVAL_SECONDS,
        },
    },
)
