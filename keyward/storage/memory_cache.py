from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from keyward.storage.models import VerificationCode

SWEEP_INTERVAL_SECONDS = 60.0


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Only used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Entries expire
    lazily on access against a monotonic clock, and writes sweep out
    expired entries at most once per ``SWEEP_INTERVAL_SECONDS``. Every
    compound operation runs under one lock so rotation and code redemption
    stay exactly-once.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._refresh: Dict[str, Tuple[str, float]] = {}
        self._codes: Dict[str, Tuple[VerificationCode, float]] = {}
        self._next_sweep = 0.0

    def verify_connection(self) -> None:
        return None

    def _live(self, table: Dict, key: str):
        entry = table.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            table.pop(key, None)
            return None
        return value

    def _sweep(self) -> None:
        # Caller holds the lock
        now = self._clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS
        for table in (self._refresh, self._codes):
            expired = [key for key, (_, expires_at) in table.items() if expires_at <= now]
            for key in expired:
                del table[key]

    async def set_refresh_token(self, token_id: str, user_id: str, ttl_seconds: int) -> None:
        with self._lock:
            self._sweep()
            self._refresh[token_id] = (user_id, self._clock() + max(1, ttl_seconds))

    async def get_refresh_token(self, token_id: str) -> Optional[str]:
        with self._lock:
            return self._live(self._refresh, token_id)

    async def delete_refresh_token(self, token_id: str) -> None:
        with self._lock:
            self._refresh.pop(token_id, None)

    async def replace_refresh_token(
        self, old_token_id: str, new_token_id: str, user_id: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            self._sweep()
            if self._live(self._refresh, old_token_id) != user_id:
                return False
            self._refresh.pop(old_token_id, None)
            self._refresh[new_token_id] = (user_id, self._clock() + max(1, ttl_seconds))
            return True

    async def set_verification_code(self, code: VerificationCode, ttl_seconds: int) -> bool:
        with self._lock:
            self._sweep()
            if self._live(self._codes, code.code) is not None:
                return False
            self._codes[code.code] = (code, self._clock() + max(1, ttl_seconds))
            return True

    async def pop_verification_code(self, code: str) -> Optional[VerificationCode]:
        with self._lock:
            found = self._live(self._codes, code)
            self._codes.pop(code, None)
            return found

    async def close(self) -> None:
        with self._lock:
            self._refresh.clear()
            self._codes.clear()
