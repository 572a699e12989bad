"""Tests for the admin API (rate limit and cache management)."""

import pytest
from fastapi.testclient import TestClient

from apiguard.app.core.config import Settings
from apiguard.app.main import create_app


@pytest.fixture
def app(clock):
    return create_app(settings=Settings(_env_file=None), clock=clock)


@pytest.fixture
def client(app, admin_token):
    return TestClient(app, headers={"Authorization": f"Bearer {admin_token}"})


class TestAdminAuth:
    """Admin token enforcement."""

    def test_missing_token(self, app, admin_token):
        """Requests without a bearer token are rejected."""
        response = TestClient(app).get("/admin/rate-limits")
        assert response.status_code == 401

    def test_wrong_token(self, app, admin_token):
        """A wrong token is rejected with the same message."""
        response = TestClient(app).get(
            "/admin/rate-limits", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or missing admin token"

    def test_token_too_long(self, app, admin_token):
        """Oversized tokens are refused before comparison."""
        response = TestClient(app).get(
            "/admin/cache", headers={"Authorization": "Bearer " + "x" * 600}
        )
        assert response.status_code == 400


class TestRateLimitAdmin:
    """Rate limit registry endpoints."""

    def test_list_defaults(self, client):
        """All built-in policies are listed with stats."""
        data = client.get("/admin/rate-limits").json()

        assert data["total"] == 12
        assert data["stats"]["total_configs"] == 12
        keys = [c["key"] for c in data["configs"]]
        assert keys == sorted(keys)

    def test_list_filters(self, client):
        """Strategy, key search and enabled filters narrow the list."""
        assert client.get("/admin/rate-limits?strategy=token_bucket").json()["total"] == 2
        assert client.get("/admin/rate-limits?key=auth").json()["total"] == 3
        assert client.get("/admin/rate-limits?tier=user").json()["total"] == 3
        assert client.get("/admin/rate-limits?enabled=false").json()["total"] == 0

    def test_create_config(self, client):
        """A valid config is registered and returned."""
        response = client.post(
            "/admin/rate-limits",
            json={
                "key": "custom.test",
                "strategy": "fixed_window",
                "tier": "ip",
                "limit": 10,
                "window": 60,
                "description": "Test policy",
            },
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["config"]["key"] == "custom.test"
        assert client.get("/admin/rate-limits").json()["total"] == 13

    def test_create_token_bucket_requires_burst(self, client):
        """Token bucket configs without burst are rejected."""
        response = client.post(
            "/admin/rate-limits",
            json={
                "key": "bucket.bad",
                "strategy": "token_bucket",
                "tier": "ip",
                "limit": 10,
                "window": 60,
                "refill_rate": 1,
            },
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_config"

    def test_create_unknown_strategy(self, client):
        """An unknown strategy is a 400, not a 422."""
        response = client.post(
            "/admin/rate-limits",
            json={"key": "x", "strategy": "nope", "tier": "ip", "limit": 1, "window": 1},
        )
        assert response.status_code == 400
        assert client.get("/admin/rate-limits/x").status_code == 404

    def test_get_config(self, client):
        """One config with its entry count and traffic stats."""
        data = client.get("/admin/rate-limits/auth.login").json()

        assert data["config"]["limit"] == 5
        assert data["config"]["window"] == 900
        assert data["active_entries"] == 0
        assert data["stats"] == {"allowed": 0, "denied": 0}

    def test_get_unknown_config(self, client):
        response = client.get("/admin/rate-limits/missing.key")

        assert response.status_code == 404
        assert response.json()["error"] == "config_not_found"

    def test_delete_config(self, client):
        """Deleting twice gives 200 then 404."""
        assert client.delete("/admin/rate-limits/public.contact").status_code == 200
        assert client.delete("/admin/rate-limits/public.contact").status_code == 404
        assert client.get("/admin/rate-limits").json()["total"] == 11

    def test_status_and_reset(self, client):
        """Traffic shows up in status and reset clears it."""
        for _ in range(2):
            # Route does not exist, but the request is still counted
            client.get("/api/auth/login")

        data = client.get("/admin/rate-limits/auth.login/status?identifier=testclient").json()
        assert data["identifier"] == "testclient"
        assert data["status"]["remaining"] == 3
        assert data["status"]["allowed"] is True

        detail = client.get("/admin/rate-limits/auth.login").json()
        assert detail["active_entries"] == 1
        assert detail["stats"]["allowed"] == 2

        reset = client.post("/admin/rate-limits/auth.login/reset?identifier=testclient").json()
        assert reset == {"success": True, "identifier": "testclient", "removed": 1}

        data = client.get("/admin/rate-limits/auth.login/status?identifier=testclient").json()
        assert data["status"]["remaining"] == 5

    def test_status_resolves_identifier_from_request(self, client):
        """Without identifier the admin caller itself is looked up."""
        data = client.get("/admin/rate-limits/auth.login/status").json()
        assert data["identifier"] == "testclient"

    def test_status_does_not_consume(self, client):
        """Polling status leaves the quota untouched."""
        for _ in range(3):
            client.get("/admin/rate-limits/auth.login/status?identifier=someone")
        data = client.get("/admin/rate-limits/auth.login/status?identifier=someone").json()
        assert data["status"]["remaining"] == 5

    def test_reset_all(self, client):
        """Reset without identifier clears every caller."""
        client.get("/api/auth/login", headers={"X-Forwarded-For": "1.1.1.1"})
        client.get("/api/auth/login", headers={"X-Forwarded-For": "2.2.2.2"})

        reset = client.post("/admin/rate-limits/auth.login/reset").json()
        assert reset["removed"] == 2

    def test_reset_unknown_config(self, client):
        assert client.post("/admin/rate-limits/missing.key/reset").status_code == 404


class TestCacheAdmin:
    """Cache management endpoints."""

    def test_overview_when_idle(self, client):
        """A fresh cache is empty and idle."""
        data = client.get("/admin/cache").json()

        assert data["size"] == 0
        assert data["health_status"] == "idle"
        assert "permissions" in data["available_tags"]
        assert data["configuration"]["default_ttl"] == 300

    def test_warmup_then_clear_by_tags(self, client):
        """Warmup fills the cache; tag clearing removes the tagged entries."""
        warmup = client.post("/admin/cache", json={"action": "warmup"}).json()
        assert warmup["success"] is True
        assert len(warmup["warmed"]) == 4
        assert client.get("/admin/cache").json()["size"] == 4

        cleared = client.post(
            "/admin/cache", json={"action": "clear-by-tags", "tags": ["roles"]}
        ).json()
        assert cleared["removed"] == 3
        assert client.get("/admin/cache").json()["size"] == 1

    def test_clear_all(self, client):
        client.post("/admin/cache", json={"action": "warmup"})

        response = client.post("/admin/cache", json={"action": "clear-all"})
        assert response.json()["success"] is True
        assert client.get("/admin/cache").json()["size"] == 0

    def test_clear_by_keys(self, client):
        """Only live keys count as removed."""
        client.post("/admin/cache", json={"action": "warmup"})

        data = client.post(
            "/admin/cache",
            json={"action": "clear-by-keys", "keys": ["role:permissions:USER", "missing"]},
        ).json()
        assert data["removed"] == 1

    def test_invalidate_actions(self, client):
        """Content and permission invalidation report their removals."""
        client.post("/admin/cache", json={"action": "warmup"})

        content = client.post("/admin/cache", json={"action": "invalidate-content"}).json()
        assert content["removed"] == 1

        perms = client.post("/admin/cache", json={"action": "invalidate-permissions"}).json()
        assert perms["removed"] == 3

        users = client.post("/admin/cache", json={"action": "invalidate-users"}).json()
        assert users["removed"] == 0

    def test_cache_info_lists_keys(self, client):
        client.post("/admin/cache", json={"action": "warmup"})

        data = client.post("/admin/cache", json={"action": "get-cache-info"}).json()
        assert "role:permissions:ADMIN" in data["keys"]
        assert data["size"] == 4

    def test_missing_arguments(self, client):
        """Actions that need tags or keys reject empty input."""
        assert client.post("/admin/cache", json={"action": "clear-by-tags"}).status_code == 400
        assert client.post("/admin/cache", json={"action": "clear-by-keys"}).status_code == 400

    def test_unknown_action(self, client):
        response = client.post("/admin/cache", json={"action": "explode"})
        assert response.status_code == 400
        assert "Unknown action" in response.json()["detail"]

    def test_delete_by_key_or_tag(self, client):
        """DELETE removes one key or a whole tag."""
        client.post("/admin/cache", json={"action": "warmup"})

        by_key = client.delete("/admin/cache?key=role:permissions:USER").json()
        assert by_key["deleted"] is True

        by_tag = client.delete("/admin/cache?tag=content").json()
        assert by_tag["deleted"] == 1

        assert client.delete("/admin/cache").status_code == 400


class TestHealth:
    """Health endpoint."""

    def test_health(self, app):
        """Health reports limiter and cache components."""
        with TestClient(app) as client:
            data = client.get("/health").json()

        assert data["status"] == "ok"
        assert data["components"]["rate_limiter"]["configs"] == 12
        assert data["components"]["rate_limiter"]["sweeper_running"] is True
        assert data["components"]["cache"]["size"] == 0
