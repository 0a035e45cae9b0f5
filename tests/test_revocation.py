import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from hivelog.service.revocation import RevocationService, revocation_key
from hivelog.service.tokens import PrincipalClaims, TokenService
from hivelog.storage.memory import MemoryCache

SECRET = "access-secret"
MAX_LIFETIME = 7 * 86400


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingCache:
    def __init__(self):
        self.writes = []

    async def revoke(self, token_key, ttl_seconds):
        self.writes.append((token_key, ttl_seconds))

    async def is_revoked(self, token_key):
        return any(key == token_key for key, _ in self.writes)


class BrokenCache:
    async def revoke(self, token_key, ttl_seconds):
        raise ConnectionError("cache down")

    async def is_revoked(self, token_key):
        raise ConnectionError("cache down")


def _service(cache, clock=None):
    tokens = TokenService(clock=clock)
    return RevocationService(cache, tokens, max_token_lifetime_seconds=MAX_LIFETIME), tokens


async def test_revocation_ttl_matches_remaining_lifetime():
    clock = FakeClock()
    cache = RecordingCache()
    service, tokens = _service(cache, clock)
    token = tokens.issue(PrincipalClaims("u1", "keeper", ("user",)), "1h", SECRET)
    clock.now += 900

    ttl = await service.revoke_token(token)

    assert ttl == 2700
    assert cache.writes == [(revocation_key(token), 2700)]


async def test_unreadable_expiry_falls_back_to_max_lifetime():
    cache = RecordingCache()
    service, _ = _service(cache)

    ttl = await service.revoke_token("opaque-token-without-claims")

    assert ttl == MAX_LIFETIME
    assert cache.writes[0][1] == MAX_LIFETIME


async def test_already_expired_token_writes_nothing():
    clock = FakeClock()
    cache = RecordingCache()
    service, tokens = _service(cache, clock)
    token = tokens.issue(PrincipalClaims("u1", "keeper", ("user",)), "1m", SECRET)
    clock.now += 120

    assert await service.revoke_token(token) is None
    assert cache.writes == []


async def test_token_in_its_last_second_is_still_revoked():
    clock = FakeClock()
    cache = RecordingCache()
    service, tokens = _service(cache, clock)
    token = tokens.issue(PrincipalClaims("u1", "keeper", ("user",)), "1h", SECRET)
    clock.now += 3599.5

    assert tokens.verify(token, SECRET).principal_id == "u1"
    assert await service.revoke_token(token) == 1
    assert await service.is_revoked(token) is True


async def test_cache_key_is_a_hash_not_the_raw_token():
    cache = RecordingCache()
    service, tokens = _service(cache)
    token = tokens.issue(PrincipalClaims("u1", "keeper", ("user",)), "1h", SECRET)

    await service.revoke_token(token)

    key = cache.writes[0][0]
    assert token not in key
    assert len(key) == 64
    assert await service.is_revoked(token) is True


async def test_revocation_check_fails_closed_when_cache_errors():
    service, _ = _service(BrokenCache())
    assert await service.is_revoked("any-token") is True


async def test_revoke_propagates_cache_errors():
    service, _ = _service(BrokenCache())
    with pytest.raises(ConnectionError):
        await service.revoke_token("opaque")


async def test_memory_cache_entry_absent_after_ttl_without_reads():
    clock = FakeClock(0.0)
    cache = MemoryCache(clock=clock, sweep_interval=10.0)

    await cache.revoke("a", 5)
    assert await cache.is_revoked("a") is True

    clock.now = 5.0
    assert await cache.is_revoked("a") is False


async def test_memory_cache_sweeps_expired_entries_on_write():
    clock = FakeClock(0.0)
    cache = MemoryCache(clock=clock, sweep_interval=10.0)
    for index in range(50):
        await cache.revoke(f"k{index}", 5)
    assert len(cache) == 50

    clock.now = 20.0
    await cache.revoke("fresh", 5)

    assert len(cache) == 1


async def test_memory_cache_ignores_non_positive_ttl():
    cache = MemoryCache()
    await cache.revoke("zero", 0)
    await cache.revoke("negative", -3)
    assert len(cache) == 0


def test_memory_cache_concurrent_revoke_and_check():
    cache = MemoryCache()

    def worker(index):
        asyncio.run(cache.revoke(f"key-{index}", 60))
        return asyncio.run(cache.is_revoked(f"key-{index}"))

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(worker, range(40)))

    assert all(results)
    assert len(cache) == 40
