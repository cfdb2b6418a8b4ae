from __future__ import annotations

import json
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from keyward.logging import get_logger
from keyward.storage.models import VerificationCode

logger = get_logger(__name__)

REFRESH_PREFIX = "auth:refresh:"
VERIFY_PREFIX = "auth:verify:"


def refresh_key(token_id: str) -> str:
    return f"{REFRESH_PREFIX}{token_id}"


def verify_key(code: str) -> str:
    return f"{VERIFY_PREFIX}{code}"


def _decode_code(raw: Optional[str]) -> Optional[VerificationCode]:
    if raw is None:
        return None
    try:
        return VerificationCode.from_json(raw)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        # Corrupted payload; the key is already gone
        logger.warning("verification_code_payload_invalid")
        return None


class RedisCache:
    """Redis-backed refresh tokens and verification codes."""

    # Swap the old refresh id for the new one only while the old id still
    # belongs to the expected user. Returns 1 on success, 0 otherwise.
    _REPLACE_REFRESH_SCRIPT = """
local owner = redis.call('GET', KEYS[1])
if owner == false or owner ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('SET', KEYS[2], ARGV[1], 'EX', tonumber(ARGV[2]))
return 1
"""

    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._replace_refresh = self.client.register_script(self._REPLACE_REFRESH_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a throwaway loop
        sync_client = Redis.from_url(
            self.redis_url, decode_responses=True, socket_timeout=self.socket_timeout
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_refresh_token(self, token_id: str, user_id: str, ttl_seconds: int) -> None:
        await self.client.set(refresh_key(token_id), user_id, ex=max(1, int(ttl_seconds)))

    async def get_refresh_token(self, token_id: str) -> Optional[str]:
        return await self.client.get(refresh_key(token_id))

    async def delete_refresh_token(self, token_id: str) -> None:
        await self.client.delete(refresh_key(token_id))

    async def replace_refresh_token(
        self, old_token_id: str, new_token_id: str, user_id: str, ttl_seconds: int
    ) -> bool:
        """Atomically rotate a refresh token.

        Exactly one of any number of concurrent callers presenting the same
        ``old_token_id`` gets ``True``; the rest get ``False`` and no new
        mapping is written for them.
        """
        result = await self._replace_refresh(
            keys=[refresh_key(old_token_id), refresh_key(new_token_id)],
            args=[user_id, max(1, int(ttl_seconds))],
        )
        return int(result or 0) == 1

    async def set_verification_code(self, code: VerificationCode, ttl_seconds: int) -> bool:
        """Store a code unless one with the same value is outstanding."""
        stored = await self.client.set(
            verify_key(code.code), code.to_json(), ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(stored)

    async def pop_verification_code(self, code: str) -> Optional[VerificationCode]:
        """Atomically fetch and delete a verification code.

        Uses GETDEL (Redis 6.2+) with a Lua fallback so only one of several
        concurrent redeemers receives the payload.
        """
        key = verify_key(code)
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            cached = await self.client.eval(self._POP_SCRIPT, 1, key)
        return _decode_code(cached)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so callers await it exactly
    like RedisCache.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self._sync_client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._replace_refresh = self._sync_client.register_script(
            RedisCache._REPLACE_REFRESH_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def set_refresh_token(self, token_id: str, user_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(refresh_key(token_id), user_id, ex=max(1, int(ttl_seconds)))

    async def get_refresh_token(self, token_id: str) -> Optional[str]:
        return self._sync_client.get(refresh_key(token_id))

    async def delete_refresh_token(self, token_id: str) -> None:
        self._sync_client.delete(refresh_key(token_id))

    async def replace_refresh_token(
        self, old_token_id: str, new_token_id: str, user_id: str, ttl_seconds: int
    ) -> bool:
        result = self._replace_refresh(
            keys=[refresh_key(old_token_id), refresh_key(new_token_id)],
            args=[user_id, max(1, int(ttl_seconds))],
        )
        return int(result or 0) == 1

    async def set_verification_code(self, code: VerificationCode, ttl_seconds: int) -> bool:
        stored = self._sync_client.set(
            verify_key(code.code), code.to_json(), ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(stored)

    async def pop_verification_code(self, code: str) -> Optional[VerificationCode]:
        key = verify_key(code)
        try:
            cached = self._sync_client.getdel(key)
        except AttributeError:
            cached = self._sync_client.eval(RedisCache._POP_SCRIPT, 1, key)
        return _decode_code(cached)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
