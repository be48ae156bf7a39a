from collections.abc import Iterator
from contextlib import contextmanager

from redis import Redis
from redis.exceptions import LockError

from app.core.config import Settings

BATCH_LOCK_NAME = "certificates:batch-lock"


def get_redis(settings: Settings) -> Redis:
    """Create a Redis client for the configured URL."""
    return Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        encoding="utf-8",
        socket_timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
    )


@contextmanager
def run_lock(client: Redis, name: str, ttl_seconds: int) -> Iterator[bool]:
    """
    Hold a non-blocking Redis lock for the duration of the block.

    Yields True when the lock was acquired, False when another holder has it.
    The TTL bounds how long a crashed holder can keep it.

    Example:
        with run_lock(client, BATCH_LOCK_NAME, 3600) as acquired:
            if acquired:
                run_batch(settings)
    """
    lock = client.lock(name, timeout=ttl_seconds, blocking=False)
    acquired = bool(lock.acquire())
    try:
        yield acquired
    finally:
        if acquired:
            try:
                lock.release()
            except LockError:
                # Expired while we held it; nothing left to release
                pass
