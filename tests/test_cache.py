import asyncio
import fnmatch

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from civicwatch.cache import (
    build_key,
    get_or_load,
    get_cache_stats,
    invalidate_records,
    record_hit,
    record_miss,
    records_key,
    records_pattern,
)


def test_build_key_deterministic():
    k1 = build_key("records", "ideas", 1, 50)
    k2 = build_key("records", "ideas", 1, 50)
    assert k1 == k2


def test_build_key_prefix():
    k = build_key("test")
    assert k.startswith("cw:v1:")


def test_build_key_different_inputs():
    k1 = build_key("records", "ideas")
    k2 = build_key("records", "issues")
    assert k1 != k2


def test_records_pattern_matches_only_its_kind():
    key = records_key("ideas", "Verkehr", None, 1, 50)
    assert fnmatch.fnmatchcase(key, records_pattern("ideas"))
    assert not fnmatch.fnmatchcase(key, records_pattern("events"))


@pytest.mark.asyncio
async def test_invalidate_records_scans_the_kind_pattern():
    class Keys:
        def __init__(self, keys):
            self.keys = list(keys)

        def __aiter__(self):
            return self

        async def __anext__(self):
            if not self.keys:
                raise StopAsyncIteration
            return self.keys.pop(0)

    redis = AsyncMock()
    redis.scan_iter = MagicMock(return_value=Keys(["a", "b"]))
    with patch("civicwatch.cache.get_redis", return_value=redis):
        await invalidate_records("issues")

    assert redis.scan_iter.call_args.kwargs["match"] == records_pattern("issues")
    assert redis.delete.await_count == 2


@pytest.mark.asyncio
async def test_stats_count_hits_and_misses():
    before = await get_cache_stats()
    await record_hit()
    await record_hit(stale=True)
    await record_miss()
    after = await get_cache_stats()

    assert after["hits"] - before["hits"] == 1
    assert after["stale_hits"] - before["stale_hits"] == 1
    assert after["total_requests"] - before["total_requests"] == 3


@pytest.mark.asyncio
async def test_get_or_load_miss_loads_and_stores():
    loader = AsyncMock(return_value={"total": 0})
    with patch("civicwatch.cache.cache_get", AsyncMock(return_value=(None, False))), \
         patch("civicwatch.cache.cache_set", new_callable=AsyncMock) as cache_set:
        value = await get_or_load("k", 300, loader, db="session")

    assert value == {"total": 0}
    loader.assert_awaited_once_with("session")
    cache_set.assert_awaited_once_with("k", {"total": 0}, 300)


@pytest.mark.asyncio
async def test_get_or_load_does_not_cache_missing_rows():
    with patch("civicwatch.cache.cache_get", AsyncMock(return_value=(None, False))), \
         patch("civicwatch.cache.cache_set", new_callable=AsyncMock) as cache_set:
        assert await get_or_load("k", 300, AsyncMock(return_value=None), db=None) is None
    cache_set.assert_not_awaited()


@pytest.mark.asyncio
async def test_get_or_load_serves_stale_and_revalidates_in_background():
    loader = AsyncMock()
    with patch("civicwatch.cache.cache_get", AsyncMock(return_value=({"total": 1}, True))), \
         patch("civicwatch.cache._revalidate", new_callable=AsyncMock) as revalidate:
        value = await get_or_load("k-stale", 300, loader, db=None)
        await asyncio.sleep(0)

    assert value == {"total": 1}
    loader.assert_not_awaited()
    revalidate.assert_awaited_once_with("k-stale", 300, loader)
