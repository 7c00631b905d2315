from conftest import post
from security.rate_limit import FixedWindowRateLimiter


def test_fixed_window_allows_up_to_max(clock, store):
    limiter = FixedWindowRateLimiter(store, clock=clock)

    results = [limiter.hit("login", "10.0.0.1", window_seconds=900, max_requests=3) for _ in range(4)]

    assert [allowed for allowed, _ in results] == [True, True, True, False]
    retry_after = results[-1][1]
    assert 1 <= retry_after <= 900


def test_next_window_starts_fresh(clock, store):
    limiter = FixedWindowRateLimiter(store, clock=clock)
    for _ in range(3):
        limiter.hit("login", "10.0.0.1", window_seconds=60, max_requests=3)
    allowed, retry_after = limiter.hit("login", "10.0.0.1", window_seconds=60, max_requests=3)
    assert not allowed

    clock.advance(retry_after)
    allowed, _ = limiter.hit("login", "10.0.0.1", window_seconds=60, max_requests=3)
    assert allowed


def test_clients_and_scopes_are_counted_separately(clock, store):
    limiter = FixedWindowRateLimiter(store, clock=clock)
    for _ in range(3):
        limiter.hit("login", "10.0.0.1", window_seconds=60, max_requests=3)

    assert limiter.hit("login", "10.0.0.2", window_seconds=60, max_requests=3)[0]
    assert limiter.hit("password_reset", "10.0.0.1", window_seconds=60, max_requests=3)[0]


def test_password_reset_endpoint_is_throttled(client):
    for _ in range(3):
        resp = post(client, "/auth/forgot-password", json={"email": "nobody@example.com"})
        assert resp.status_code == 200

    resp = post(client, "/auth/forgot-password", json={"email": "nobody@example.com"})
    assert resp.status_code == 429
    body = resp.get_json()
    assert body["success"] is False
    assert body["code"] == "RATE_LIMITED"
    assert int(resp.headers["Retry-After"]) == body["retryAfter"]


def test_stale_windows_do_not_accumulate_in_memory(clock, store):
    limiter = FixedWindowRateLimiter(store, clock=clock)
    for _ in range(1000):
        limiter.hit("general", "10.0.0.1", window_seconds=60, max_requests=100)
        clock.advance(61)

    # expired windows are reclaimed by the store's periodic sweep
    assert len(store._data) <= store.sweep_interval // 60 + 1
