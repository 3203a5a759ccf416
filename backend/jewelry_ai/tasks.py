import asyncio
from .workers import celery_app
from .db import engine
from .deps import get_image_provider
from .services.polling import ai_preview_poller, upgrade_preview_poller
from .logger import logger

async def _poll(poller) -> int:
    try:
        return await poller.run_once()
    finally:
        # asyncio.run gives every task a fresh loop; pooled connections are bound to the old one
        await engine.dispose()

@celery_app.task(bind=True, acks_late=True, ignore_result=True)
def poll_ai_preview_jobs_task(self):
    """
    Celery beat task: claim and process pending AI preview jobs.
    """
    processed = asyncio.run(_poll(ai_preview_poller(get_image_provider)))
    if processed:
        logger.info(f"AI preview poll processed {processed} job(s)", extra={"task_id": self.request.id})
    return processed

@celery_app.task(bind=True, acks_late=True, ignore_result=True)
def poll_upgrade_preview_jobs_task(self):
    """
    Celery beat task: claim and process pending upgrade preview jobs.
    """
    processed = asyncio.run(_poll(upgrade_preview_poller(get_image_provider)))
    if processed:
        logger.info(f"Upgrade preview poll processed {processed} job(s)", extra={"task_id": self.request.id})
    return processed
