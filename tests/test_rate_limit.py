"""Tests for fixed-window request limits."""

from storefront.rate_limit import FETCH, UPDATE, RateLimiter

from tests.conftest import auth_header


class TestRateLimiter:
    def test_allows_up_to_the_limit(self):
        limiter = RateLimiter("test", max_requests=3, window_seconds=60)
        assert [limiter.check("ip:1", now=100.0) for _ in range(3)] == [None, None, None]
        assert limiter.check("ip:1", now=100.0) == 60

    def test_retry_after_counts_down(self):
        limiter = RateLimiter("test", max_requests=1, window_seconds=60)
        limiter.check("ip:1", now=100.0)
        assert limiter.check("ip:1", now=130.5) == 30
        assert limiter.check("ip:1", now=159.9) == 1

    def test_window_resets(self):
        limiter = RateLimiter("test", max_requests=1, window_seconds=60)
        limiter.check("ip:1", now=100.0)
        assert limiter.check("ip:1", now=160.0) is None
        assert limiter.check("ip:1", now=161.0) is not None

    def test_identifiers_are_independent(self):
        limiter = RateLimiter("test", max_requests=1, window_seconds=60)
        assert limiter.check("ip:1", now=0.0) is None
        assert limiter.check("ip:2", now=0.0) is None
        assert limiter.check("ip:1", now=0.0) is not None

    def test_clear(self):
        limiter = RateLimiter("test", max_requests=1, window_seconds=60)
        limiter.check("ip:1", now=0.0)
        limiter.clear()
        assert limiter.check("ip:1", now=0.0) is None

    def test_profiles(self):
        assert (FETCH.max_requests, FETCH.window_seconds) == (100, 60)
        assert (UPDATE.max_requests, UPDATE.window_seconds) == (50, 60)


class TestRateLimitedEndpoints:
    def test_public_fetch_limit(self, client):
        for _ in range(100):
            assert client.get("/products/").status_code == 200

        response = client.get("/products/")

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        detail = response.json()["detail"]
        assert detail["error"] == "rate_limited"
        assert detail["retry_after"] >= 1

    def test_admins_are_limited_per_user(self, client):
        for _ in range(100):
            assert client.get("/orders/", headers=auth_header(1, is_admin=True)).status_code == 200

        assert client.get("/orders/", headers=auth_header(1, is_admin=True)).status_code == 429
        assert client.get("/orders/", headers=auth_header(2, is_admin=True)).status_code == 200

    def test_auth_checked_before_counting(self, client):
        assert client.get("/orders/", headers=auth_header(5)).status_code == 403
        assert client.get("/orders/").status_code in (401, 403)
