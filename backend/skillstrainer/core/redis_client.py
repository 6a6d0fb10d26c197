from __future__ import annotations

import redis
from rq import Queue

from skillstrainer.core.config import settings


def get_redis() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def get_queue(name: str | None = None) -> Queue:
    # rq stores pickled payloads, so this connection must not decode responses.
    conn = redis.Redis.from_url(settings.redis_url)
    eff = str(name or "").strip() or str(settings.rq_queue_default)
    return Queue(name=eff, connection=conn)
