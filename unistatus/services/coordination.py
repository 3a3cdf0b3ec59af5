from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging

from redis.asyncio import Redis

from unistatus.core.config import get_settings


logger = logging.getLogger(__name__)

# Keep heartbeat keys stable for ops endpoint lookups.
SCHEDULER_HEARTBEAT_KEY = "unistatus:scheduler:heartbeat"
NOTIFY_WORKER_HEARTBEAT_KEY = "unistatus:notify-worker:heartbeat"
SCHEDULER_LOCK_KEY = "unistatus:scheduler:lock"

_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()
# Process-local fallback when Redis is unreachable; serializes cycles within one process.
_local_locks: dict[str, asyncio.Lock] = {}
# Owner currently holding each local lock; Redis-granted owners never appear here.
_local_holders: dict[str, str] = {}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_redis() -> Redis | None:
    # Reuse one Redis client per event loop for lock and heartbeat coordination.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("coordination_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


async def acquire_lock(key: str, *, owner: str, ttl_s: int) -> bool:
    """Try to take a cluster-wide lock with ``SET NX EX``.

    Falls back to a process-local asyncio lock when Redis cannot be reached,
    so a single-process install still never overlaps cycles.
    """
    try:
        redis = await get_redis()
        if redis is not None:
            return bool(await redis.set(key, owner, nx=True, ex=max(1, int(ttl_s))))
    except Exception:  # noqa: BLE001 - fall back to a local lock when Redis is down.
        logger.warning("coordination_lock_redis_failed key=%s", key, exc_info=True)
    lock = _local_locks.setdefault(key, asyncio.Lock())
    if lock.locked():
        return False
    await lock.acquire()
    _local_holders[key] = owner
    return True


async def release_lock(key: str, *, owner: str) -> None:
    if _local_holders.get(key) == owner:
        del _local_holders[key]
        _local_locks[key].release()
        return
    try:
        redis = await get_redis()
        if redis is None:
            return
        # Only the holder may release; a lock that already expired is left alone.
        if await redis.get(key) == owner:
            await redis.delete(key)
    except Exception:  # noqa: BLE001 - TTL expiry releases the lock eventually.
        logger.warning("coordination_unlock_failed key=%s", key, exc_info=True)


async def set_heartbeat(key: str, *, timestamp: datetime | None = None) -> None:
    try:
        redis = await get_redis()
        if redis is not None:
            await redis.set(key, (timestamp or _utc_now()).isoformat())
    except Exception:  # noqa: BLE001 - heartbeats are advisory.
        logger.warning("coordination_heartbeat_failed key=%s", key, exc_info=True)


async def get_heartbeat(key: str) -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    try:
        redis = await get_redis()
        raw_value = await redis.get(key) if redis is not None else None
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    try:
        return datetime.fromisoformat(str(raw_value))
    except ValueError:
        return None


async def ping_redis() -> bool:
    try:
        redis = await get_redis()
        return bool(redis is not None and await redis.ping())
    except Exception:  # noqa: BLE001 - reported as unreachable
        return False
