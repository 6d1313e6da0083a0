from app.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_limit_then_refuse():
    limiter = RateLimiter(2, clock=FakeClock())
    assert limiter.check("upload").remaining == 1
    assert limiter.check("upload").remaining == 0

    refused = limiter.check("upload")

    assert refused.allowed is False
    assert refused.retry_after == 60
    assert refused.headers()["Retry-After"] == "61"


def test_keys_are_independent():
    limiter = RateLimiter(1, clock=FakeClock())
    assert limiter.check("upload").allowed
    assert limiter.check("workitem").allowed
    assert not limiter.check("upload").allowed


def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(1, window_seconds=60, clock=clock)
    assert limiter.check("workitem").allowed
    clock.now = 30
    assert not limiter.check("workitem").allowed
    clock.now = 61
    assert limiter.check("workitem").allowed


def test_stats_and_cleanup():
    clock = FakeClock()
    limiter = RateLimiter(5, clock=clock)
    limiter.check("a")
    limiter.check("a")
    limiter.check("b")

    assert limiter.get_stats("a") == {"current": 2, "limit": 5, "remaining": 3, "window_seconds": 60}

    clock.now = 100
    assert limiter.cleanup_expired() == 3
    assert limiter.get_stats("a")["current"] == 0


def test_reset():
    limiter = RateLimiter(1, clock=FakeClock())
    limiter.check("a")
    limiter.reset("a")
    assert limiter.check("a").allowed
    limiter.reset()
    assert limiter.check("a").allowed
