import pytest

from confession_bot.errors import RateLimitError
from confession_bot.ratelimit import RateLimiter


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_allowed_without_prior_record(self, store, clock):
        limiter = RateLimiter(store, clock)

        assert await limiter.allowed(1, "confession", 60000)

    @pytest.mark.asyncio
    async def test_blocked_inside_window(self, store, clock):
        limiter = RateLimiter(store, clock)
        await limiter.record(1, "confession")

        clock.advance(59_999)
        assert not await limiter.allowed(1, "confession", 60000)
        assert await limiter.remaining_ms(1, "confession", 60000) == 1

    @pytest.mark.asyncio
    async def test_window_boundary_requires_strictly_more_time(self, store, clock):
        limiter = RateLimiter(store, clock)
        await limiter.record(1, "confession")

        clock.advance(60_000)
        assert not await limiter.allowed(1, "confession", 60000)

        clock.advance(1)
        assert await limiter.allowed(1, "confession", 60000)

    @pytest.mark.asyncio
    async def test_actions_and_users_are_tracked_separately(self, store, clock):
        limiter = RateLimiter(store, clock)
        await limiter.record(1, "confession")

        assert await limiter.allowed(1, "comment", 60000)
        assert await limiter.allowed(2, "confession", 60000)

    @pytest.mark.asyncio
    async def test_record_keeps_other_actions(self, store, clock):
        limiter = RateLimiter(store, clock)
        await limiter.record(1, "confession")
        clock.advance(10)
        await limiter.record(1, "comment")

        assert not await limiter.allowed(1, "confession", 60000)

    @pytest.mark.asyncio
    async def test_check_raises_with_remaining_wait(self, store, clock):
        limiter = RateLimiter(store, clock)
        await limiter.record(1, "confession")
        clock.advance(20_000)

        with pytest.raises(RateLimitError) as exc_info:
            await limiter.check(1, "confession", 60000)

        assert exc_info.value.retry_after_ms == 40_000
        assert exc_info.value.retry_after_seconds == 40
