"""Tests for core/rate_limiter.py."""
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tollgate.core.principals import Principal
from tollgate.core.rate_limiter import (
    AdmissionStrategy,
    Allowed,
    BurstLimiter,
    Denied,
    FixedWindowRateLimiter,
    get_strategy,
    register_strategy,
)

# 2023-11-14T22:13:20Z
NOW = 1700000000.0


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(fake_redis, clock):
    return FixedWindowRateLimiter(fake_redis, default_limit=100, clock=clock)


@pytest.mark.asyncio
async def test_quota_then_denied(limiter, principal):
    """With a quota of 5, requests 1-5 pass and request 6 is denied."""
    for expected_remaining in (4, 3, 2, 1, 0):
        result = await limiter.admit(principal, "/v1/chat/completions")
        assert isinstance(result, Allowed)
        assert result.remaining == expected_remaining
        assert result.limit == 5

    denied = await limiter.admit(principal, "/v1/chat/completions")
    assert isinstance(denied, Denied)
    assert denied.allowed is False
    assert denied.retry_after_s == 60
    assert denied.remaining == 0
    assert denied.limit == 5


@pytest.mark.asyncio
async def test_default_limit_when_principal_sets_none(limiter):
    principal = Principal(id="key_carol", user_id="user_carol", daily_budget_usd=1.0)
    result = await limiter.admit(principal, "/v1/chat/completions")
    assert result.limit == 100
    assert result.remaining == 99


@pytest.mark.asyncio
async def test_key_layout_and_single_expire(limiter, principal, fake_redis):
    await limiter.admit(principal, "/v1/chat/completions")
    key = "tollgate:rate_limit:key_alice:/v1/chat/completions:2023-11-14T22:13"
    assert fake_redis.data[key] == "1"
    assert fake_redis.ttls[key] == 60

    # Later increments must not refresh the TTL
    fake_redis.ttls[key] = 17
    await limiter.admit(principal, "/v1/chat/completions")
    assert fake_redis.ttls[key] == 17


@pytest.mark.asyncio
async def test_missing_ttl_is_repaired(limiter, principal, fake_redis):
    expire = fake_redis.expire
    calls = []

    async def flaky_expire(key, ttl):
        calls.append(key)
        if len(calls) == 1:
            raise RedisConnectionError("Connection reset")
        return await expire(key, ttl)

    fake_redis.expire = flaky_expire
    key = "tollgate:rate_limit:key_alice:/v1/chat/completions:2023-11-14T22:13"

    # EXPIRE fails after the first INCR: fail open, bucket left without a TTL
    assert (await limiter.admit(principal, "/v1/chat/completions")).allowed is True
    assert key not in fake_redis.ttls

    result = await limiter.admit(principal, "/v1/chat/completions")
    assert result.remaining == 3
    assert fake_redis.ttls[key] == 60


@pytest.mark.asyncio
async def test_endpoints_counted_separately(limiter, principal):
    for _ in range(5):
        await limiter.admit(principal, "/v1/chat/completions")
    assert (await limiter.admit(principal, "/v1/chat/completions")).allowed is False
    assert (await limiter.admit(principal, "/v1/embeddings")).allowed is True


@pytest.mark.asyncio
async def test_new_bucket_resets_count(limiter, principal, clock):
    for _ in range(6):
        await limiter.admit(principal, "/v1/chat/completions")

    clock.now = NOW + 60
    result = await limiter.admit(principal, "/v1/chat/completions")
    assert result.allowed is True
    assert result.remaining == 4


@pytest.mark.asyncio
async def test_reset_at_is_end_of_bucket(limiter, principal):
    result = await limiter.admit(principal, "/v1/chat/completions")
    # NOW is 20s into its minute
    assert result.reset_at == NOW - 20 + 60


@pytest.mark.asyncio
async def test_fails_open_when_store_unreachable(broken_redis, principal):
    limiter = FixedWindowRateLimiter(broken_redis, clock=FakeClock())
    for _ in range(10):
        result = await limiter.admit(principal, "/v1/chat/completions")
        assert result.allowed is True
        assert result.remaining == 5


@pytest.mark.asyncio
async def test_disabled_always_allows(fake_redis, principal):
    limiter = FixedWindowRateLimiter(fake_redis, enabled=False, clock=FakeClock())
    for _ in range(10):
        assert (await limiter.admit(principal, "/v1/chat/completions")).allowed is True
    assert fake_redis.data == {}


@pytest.mark.asyncio
async def test_burst_limiter(fake_redis, principal, clock):
    burst = BurstLimiter(fake_redis, max_requests=2, window_minutes=10, path_prefix="/v1/images", clock=clock)

    assert burst.applies_to("/v1/images/generations") is True
    assert burst.applies_to("/v1/chat/completions") is False

    assert (await burst.admit(principal, "/v1/images/generations")).allowed is True
    assert (await burst.admit(principal, "/v1/images/generations")).allowed is True
    denied = await burst.admit(principal, "/v1/images/generations")
    assert denied.allowed is False
    assert denied.retry_after_s == 600
    assert denied.limit == 2

    key = next(k for k in fake_redis.data if k.startswith("tollgate:burst_limit:"))
    assert fake_redis.ttls[key] == 600
    assert ":10m:" in key


def test_strategy_registry():
    assert get_strategy("fixed_window") is FixedWindowRateLimiter
    assert get_strategy("burst") is BurstLimiter
    with pytest.raises(ValueError):
        get_strategy("sliding_log")


def test_register_custom_strategy():
    class AllowAll(AdmissionStrategy):
        name = "allow_all"

        async def admit(self, principal, endpoint):
            return Allowed(limit=0, remaining=0, reset_at=0.0)

    register_strategy(AllowAll)
    assert get_strategy("allow_all") is AllowAll
