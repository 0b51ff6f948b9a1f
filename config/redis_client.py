"""
config/redis_client.py
Async Redis client and the keys the platform keeps there:

    guide:{guide_id}                 cached public guide profile (JSON)
    slot_lock:{guide_id}:{start}     in-flight booking for a start instant
    jwt_revoked:{jti}                logged-out access tokens
    rate:unauth:{ip}                 per-minute counter for anonymous traffic
"""

import json
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    await redis_client.ping()


async def close_redis() -> None:
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Keys ──────────────────────────────────────────────────────

def guide_cache_key(guide_id) -> str:
    return f"guide:{guide_id}"


def slot_lock_key(guide_id, start: datetime) -> str:
    return f"slot_lock:{guide_id}:{start.isoformat()}"


# ── Cache Helpers ─────────────────────────────────────────────

class RedisCache:
    """Typed access to the keys above over a shared client."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        value = await self.client.get(key)
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    # ── Guide profiles ───────────────────────────────────────
    async def get_guide(self, guide_id) -> Optional[dict]:
        return await self.get(guide_cache_key(guide_id))

    async def set_guide(self, guide_id, data: dict) -> None:
        await self.set(guide_cache_key(guide_id), data)

    async def invalidate_guide(self, guide_id) -> None:
        await self.client.delete(guide_cache_key(guide_id))

    # ── Booking locks ────────────────────────────────────────
    async def lock_slot(self, guide_id, start: datetime, holder) -> bool:
        """
        SET NX on the guide + start key. False means another request is
        booking the same start right now. The lock expires on its own after
        REDIS_SLOT_LOCK_TTL if the holder dies before releasing it.
        """
        result = await self.client.set(
            slot_lock_key(guide_id, start),
            str(holder),
            ex=settings.REDIS_SLOT_LOCK_TTL,
            nx=True,
        )
        return result is True

    async def release_slot(self, guide_id, start: datetime) -> None:
        await self.client.delete(slot_lock_key(guide_id, start))

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate limiting ────────────────────────────────────────
    async def count_anonymous_request(self, client_ip: str) -> int:
        """Increment the caller's counter for the current minute."""
        key = f"rate:unauth:{client_ip}"
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, 60)
        return count
