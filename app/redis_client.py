import redis.asyncio as redis

from app.config import settings

# connections are opened lazily on first command
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)


async def close_redis():
    await redis_client.aclose()
