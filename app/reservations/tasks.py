import asyncio

import redis.asyncio as redis
from celery.utils.log import get_task_logger

from app.celery_app import celery_app
from app.config import settings
from app.services.seat_lock import SeatLockService
from app.services.seat_state import RedisSeatStateStore

logger = get_task_logger(__name__)


async def _sweep(client) -> int:
    store = RedisSeatStateStore(client)
    return await SeatLockService(store).sweep_and_trim(settings.SEAT_EVENT_STREAM_MAXLEN)


@celery_app.task(bind=True, ignore_result=True, acks_late=False)
def sweep_expired_holds(self):
    """Release expired seat holds on every open trip. Runs from Celery beat."""
    # Celery workers are synchronous; each run gets its own loop and connection pool
    async def _do():
        client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            return await _sweep(client)
        finally:
            await client.aclose()

    released = asyncio.run(_do())
    if released:
        logger.info("Released %d expired seat holds", released)
    return released
