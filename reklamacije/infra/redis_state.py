from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from redis import Redis
from redis.exceptions import LockError

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
RECURRING_LOCK_TTL_SEC = int(os.getenv("RECURRING_LOCK_TTL_SEC", "60"))
RECURRING_LOCK_PREFIX = "reklamacije:recurring-template:"


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


class RedisTemplateLocker:
    """Per-template advisory lock so overlapping sweeps skip a template another run holds."""

    def __init__(self, client: Redis | None = None, ttl_seconds: int = RECURRING_LOCK_TTL_SEC) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds

    @contextmanager
    def hold(self, template_id: str) -> Iterator[bool]:
        client = self._client or get_redis()
        lock = client.lock(
            f"{RECURRING_LOCK_PREFIX}{template_id}",
            timeout=self._ttl_seconds,
            blocking=False,
        )
        acquired = bool(lock.acquire())
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except LockError:
                    # expired under us; the next sweep re-checks the template
                    pass
