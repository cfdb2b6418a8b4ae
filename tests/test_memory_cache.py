"""Thread-safety and expiry checks for the in-process cache fallback."""

import asyncio
import threading

from keyward.storage.memory_cache import MemoryCache
from keyward.storage.models import ChannelType, VerificationCode


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _code(value="123456", contact="a@example.com"):
    return VerificationCode(code=value, channel=ChannelType.EMAIL, value=contact)


async def test_refresh_token_expires():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set_refresh_token("t1", "u1", 10)
    assert await cache.get_refresh_token("t1") == "u1"
    clock.now += 11
    assert await cache.get_refresh_token("t1") is None


async def test_replace_requires_matching_owner():
    cache = MemoryCache()
    await cache.set_refresh_token("old", "u1", 60)
    assert await cache.replace_refresh_token("old", "new", "u2", 60) is False
    assert await cache.get_refresh_token("old") == "u1"
    assert await cache.replace_refresh_token("old", "new", "u1", 60) is True
    assert await cache.get_refresh_token("old") is None
    assert await cache.get_refresh_token("new") == "u1"


async def test_replace_expired_token_fails():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set_refresh_token("old", "u1", 5)
    clock.now += 6
    assert await cache.replace_refresh_token("old", "new", "u1", 60) is False
    assert await cache.get_refresh_token("new") is None


async def test_set_code_is_exclusive_until_expiry():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    assert await cache.set_verification_code(_code(), 300) is True
    assert await cache.set_verification_code(_code(contact="b@example.com"), 300) is False
    clock.now += 301
    assert await cache.set_verification_code(_code(contact="b@example.com"), 300) is True
    popped = await cache.pop_verification_code("123456")
    assert popped.value == "b@example.com"


async def test_pop_is_single_use():
    cache = MemoryCache()
    await cache.set_verification_code(_code(), 300)
    assert (await cache.pop_verification_code("123456")).code == "123456"
    assert await cache.pop_verification_code("123456") is None


def test_rotation_race_across_threads():
    cache = MemoryCache()
    asyncio.run(cache.set_refresh_token("old", "u1", 60))
    barrier = threading.Barrier(16)
    wins = []

    def rotate(index):
        barrier.wait()
        if asyncio.run(cache.replace_refresh_token("old", f"new-{index}", "u1", 60)):
            wins.append(index)

    threads = [threading.Thread(target=rotate, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert asyncio.run(cache.get_refresh_token(f"new-{wins[0]}")) == "u1"


def test_pop_race_across_threads():
    cache = MemoryCache()
    asyncio.run(cache.set_verification_code(_code(), 300))
    barrier = threading.Barrier(16)
    results = []

    def pop():
        barrier.wait()
        results.append(asyncio.run(cache.pop_verification_code("123456")))

    threads = [threading.Thread(target=pop) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([r for r in results if r is not None]) == 1


async def test_writes_sweep_expired_entries():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set_refresh_token("stale", "u1", 10)
    await cache.set_verification_code(_code("111111"), 10)
    clock.now += 61
    await cache.set_verification_code(_code("222222"), 10)
    assert "stale" not in cache._refresh
    assert "111111" not in cache._codes
    assert "222222" in cache._codes
