"""Tests for the in-process rate limiter used when Redis is unavailable."""

from shopgate.service.rate_limit import RateLimiter, rate_limit_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_rate_limit_key_combines_ip_and_route():
    assert rate_limit_key("10.0.0.1", "login") == "10.0.0.1:login"
    assert rate_limit_key(None, "login") == "unknown:login"


async def test_requests_within_limit_are_allowed():
    limiter = RateLimiter(None, clock=FakeClock())
    decisions = [await limiter.check("ip:login", 3, 60) for _ in range(3)]

    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]


async def test_request_over_limit_is_denied_with_reset_hint():
    clock = FakeClock()
    limiter = RateLimiter(None, clock=clock)
    for _ in range(3):
        await limiter.check("ip:login", 3, 60)

    clock.now += 10
    denied = await limiter.check("ip:login", 3, 60)

    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.reset_seconds == 50


async def test_window_slides_forward():
    clock = FakeClock()
    limiter = RateLimiter(None, clock=clock)
    for _ in range(2):
        await limiter.check("ip:otp", 2, 60)
    assert not (await limiter.check("ip:otp", 2, 60)).allowed

    clock.now += 61
    assert (await limiter.check("ip:otp", 2, 60)).allowed


async def test_keys_are_independent():
    limiter = RateLimiter(None, clock=FakeClock())
    await limiter.check("a:login", 1, 60)

    assert not (await limiter.check("a:login", 1, 60)).allowed
    assert (await limiter.check("b:login", 1, 60)).allowed
    assert (await limiter.check("a:register", 1, 60)).allowed


async def test_key_table_is_bounded():
    limiter = RateLimiter(None, max_keys=3, clock=FakeClock())
    for i in range(10):
        await limiter.check(f"10.0.0.{i}:login", 5, 60)

    assert len(limiter) == 3


async def test_zero_limit_disables_limiting():
    limiter = RateLimiter(None, clock=FakeClock())
    for _ in range(5):
        assert (await limiter.check("ip:login", 0, 60)).allowed


async def test_idle_keys_are_swept_on_access():
    clock = FakeClock()
    limiter = RateLimiter(None, prune_interval=30, clock=clock)
    for i in range(5):
        await limiter.check(f"10.0.0.{i}:login", 5, 60)
    assert len(limiter) == 5

    clock.now += 20
    await limiter.check("10.0.0.9:login", 5, 60)
    assert len(limiter) == 6

    clock.now += 50
    await limiter.check("10.0.0.9:login", 5, 60)
    assert len(limiter) == 1
