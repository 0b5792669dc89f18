from redis import Redis
from rq import Queue

from core.settings import settings


def get_redis() -> Redis:
    if not settings.REDIS_URL:
        raise RuntimeError("REDIS_URL is required")
    return Redis.from_url(settings.REDIS_URL)


def get_queue(name: str = "") -> Queue:
    # per-job timeout (notifications are short HTTP calls)
    return Queue(name or settings.QUEUE_NAME, connection=get_redis(), default_timeout=60 * 5)
