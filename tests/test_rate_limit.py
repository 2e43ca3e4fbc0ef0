from datetime import datetime, timedelta, timezone

from storekeep.service.runtime import check_rate_limit


async def test_bucket_allows_up_to_limit_then_refuses(runtime):
    results = [await check_rate_limit(runtime, "login:alice", 3, 60) for _ in range(4)]
    assert results == [True, True, True, False]


async def test_non_positive_limit_disables_check(runtime):
    assert await check_rate_limit(runtime, "login:alice", 0, 60)
    assert runtime._local_rate_limits == {}


async def test_refilled_buckets_are_evicted(runtime):
    now = datetime.now(timezone.utc)
    runtime._local_rate_limits["login:old"] = (
        5.0,
        now - timedelta(minutes=10),
        now - timedelta(minutes=5),
    )

    assert await check_rate_limit(runtime, "login:alice", 5, 60)

    assert "login:old" not in runtime._local_rate_limits
    assert set(runtime._local_rate_limits) == {"login:alice"}


async def test_drained_bucket_survives_eviction(runtime):
    for _ in range(2):
        await check_rate_limit(runtime, "login:bob", 2, 60)
    assert await check_rate_limit(runtime, "login:alice", 2, 60)
    assert "login:bob" in runtime._local_rate_limits
    assert not await check_rate_limit(runtime, "login:bob", 2, 60)
