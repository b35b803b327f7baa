"""
End-to-end tests for the vault HTTP API.

The app is built with create_app() against in-memory SQLite, a fixed
identity secret, an in-memory rate limiter and an httpx MockTransport
standing in for every platform API.

CRITICAL: These tests verify that:
1. Every response uses the {"success", "data", "error"} envelope
2. Preflight is answered before authentication and rate limiting
3. Responses never contain credential values
4. Identity callers cannot reach another user's integrations
"""

import json
import time

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from src.config.settings import VaultSettings
from src.credentials.formats import looks_like_new_cipher
from src.database.session import get_db_session
from src.main import create_app
from src.middleware.rate_limit import InMemoryRateLimitCounter, RateLimiter
from src.models.platform_integration import IntegrationStatus, Platform, PlatformIntegration
from src.platform.access_gate import JWTIdentityVerifier

AUTOMATION_KEY = "automation-secret"
JWT_SECRET = "identity-jwt-secret"


class PlatformAPI:
    """Routes MockTransport requests to per-host canned responses."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, host, payload, status_code=200):
        self.routes[host] = (status_code, payload)

    def __call__(self, request):
        self.requests.append(request)
        status_code, payload = self.routes.get(request.url.host, (404, {"error": "not mocked"}))
        return httpx.Response(status_code, json=payload)


@pytest.fixture
def platform_api():
    return PlatformAPI()


@pytest.fixture
def build_client(db_session, encryption_key_string, legacy_decryptor, platform_api):
    def _build(rate_limit=100):
        settings = VaultSettings(
            encryption_key=encryption_key_string,
            automation_api_key=AUTOMATION_KEY,
            database_url="sqlite://",
        )
        app = create_app(
            settings=settings,
            identity_verifier=JWTIdentityVerifier(JWT_SECRET),
            rate_limiter=RateLimiter(InMemoryRateLimitCounter(), limit=rate_limit, window_seconds=60),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(platform_api)),
            legacy_decryptor=legacy_decryptor,
        )
        app.dependency_overrides[get_db_session] = lambda: db_session
        return TestClient(app, raise_server_exceptions=False)
    return _build


@pytest.fixture
def client(build_client):
    return build_client()


def automation():
    return {"x-api-key": AUTOMATION_KEY}


def bearer(user_id):
    token = jwt.encode(
        {"sub": user_id, "aud": "authenticated", "exp": int(time.time()) + 3600},
        JWT_SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def store_linkedin(client, user_id, **extra):
    return client.post(
        "/api/vault/integrations",
        headers=automation(),
        json={
            "user_id": user_id,
            "platform_name": "linkedin",
            "credentials": {"accessToken": "li-access", "refreshToken": "li-refresh"},
            "metadata": {"personal_info": {"name": "Ada"}},
            **extra,
        },
    )


# ============================================================================
# TEST SUITE: TRANSPORT
# ============================================================================

class TestTransport:

    def test_preflight_short_circuits(self, build_client):
        client = build_client(rate_limit=1)

        for _ in range(3):
            response = client.options("/api/vault/activity")
            assert response.status_code == 200
            assert response.content == b""
            assert response.headers["Access-Control-Allow-Origin"] == "*"
            assert "x-api-key" in response.headers["Access-Control-Allow-Headers"]

    def test_unauthenticated(self, client):
        response = client.post("/api/vault/activity", json={})

        assert response.status_code == 401
        assert response.json() == {"success": False, "data": None, "error": "Missing authentication"}
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    def test_invalid_api_key(self, client, user_id):
        response = client.post(
            "/api/vault/activity",
            headers={"x-api-key": "wrong"},
            json={"user_id": user_id},
        )

        assert response.status_code == 401

    def test_rate_limit(self, build_client, user_id):
        client = build_client(rate_limit=2)

        statuses = [
            client.post("/api/vault/activity", headers=automation(), json={"user_id": user_id}).status_code
            for _ in range(3)
        ]

        assert statuses == [200, 200, 429]

    def test_unauthenticated_calls_not_counted(self, build_client, user_id):
        client = build_client(rate_limit=1)
        for _ in range(3):
            client.post("/api/vault/activity", json={})

        response = client.post("/api/vault/activity", headers=automation(), json={"user_id": user_id})

        assert response.status_code == 200

    def test_malformed_body(self, client, user_id):
        response = client.post(
            "/api/vault/integrations",
            headers=automation(),
            json={"user_id": user_id, "platform_name": "linkedin"},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert "credentials" in response.json()["error"]

    def test_unauthenticated_invalid_json_is_401(self, client):
        """CRITICAL: Authentication runs before the body is parsed."""
        response = client.post(
            "/api/vault/integrations",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "Missing authentication"

    def test_invalid_json_rate_limited_before_parsing(self, build_client, user_id):
        client = build_client(rate_limit=1)
        headers = {**automation(), "Content-Type": "application/json"}

        client.post("/api/vault/activity", headers=headers, json={"user_id": user_id})
        response = client.post("/api/vault/activity", headers=headers, content=b"{not json")

        assert response.status_code == 429

    def test_authenticated_invalid_json(self, client):
        response = client.post(
            "/api/vault/integrations",
            content=b"{not json",
            headers={**automation(), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "data": None,
            "error": "Request body must be valid JSON",
        }

    def test_health_is_public(self, client):
        assert client.get("/health").json()["status"] == "ok"


# ============================================================================
# TEST SUITE: INTEGRATIONS
# ============================================================================

class TestIntegrations:

    def test_store_and_get(self, client, db_session, user_id):
        stored = store_linkedin(client, user_id)

        assert stored.status_code == 200
        body = stored.json()
        assert body["success"] is True
        assert body["data"]["platform_name"] == "linkedin"
        assert "li-access" not in stored.text

        integration = db_session.get(PlatformIntegration, body["data"]["integration_id"])
        assert looks_like_new_cipher(integration.credentials)

        response = client.post(
            "/api/vault/integrations/get",
            headers=automation(),
            json={"user_id": user_id, "platform_name": "LinkedIn"},
        )
        data = response.json()["data"]
        assert data["metadata"] == {"personal_info": {"name": "Ada"}}
        assert data["credentials_format"] == "new_cipher"
        assert data["token_status"]["needs_reconnect"] is False
        assert "li-access" not in response.text
        assert "li-refresh" not in response.text

    def test_automation_requires_user_id(self, client):
        response = client.post(
            "/api/vault/integrations/get",
            headers=automation(),
            json={"platform_name": "linkedin"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "user_id is required"

    def test_unknown_platform(self, client, user_id):
        response = client.post(
            "/api/vault/integrations/get",
            headers=automation(),
            json={"user_id": user_id, "platform_name": "myspace"},
        )

        assert response.status_code == 400
        assert "myspace" in response.json()["error"]

    def test_secrets_rejected_in_metadata(self, client, user_id):
        response = store_linkedin(client, user_id, metadata={"access_token": "oops"})

        assert response.status_code == 400
        assert "oops" not in response.text

    def test_identity_caller_acts_for_self(self, client, user_id):
        response = client.post(
            "/api/vault/integrations",
            headers=bearer(user_id),
            json={"platform_name": "youtube", "credentials": {"access_token": "yt"}},
        )

        assert response.status_code == 200
        summary = client.post(
            "/api/vault/integrations/get",
            headers=bearer(user_id),
            json={"platform_name": "youtube"},
        ).json()["data"]
        assert summary["user_id"] == user_id

    def test_identity_caller_cannot_name_other_user(self, client, user_id, other_user_id):
        store_linkedin(client, other_user_id)

        response = client.post(
            "/api/vault/integrations/get",
            headers=bearer(user_id),
            json={"user_id": other_user_id, "platform_name": "linkedin"},
        )

        assert response.status_code == 401

    def test_user_isolation(self, client, user_id, other_user_id):
        store_linkedin(client, other_user_id)

        response = client.post(
            "/api/vault/integrations/get",
            headers=bearer(user_id),
            json={"platform_name": "linkedin"},
        )

        assert response.status_code == 404

    def test_disconnect(self, client, user_id):
        store_linkedin(client, user_id)

        response = client.post(
            "/api/vault/integrations/disconnect",
            headers=automation(),
            json={"user_id": user_id, "platform_name": "linkedin"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["hard_delete"] is False
        follow_up = client.post(
            "/api/vault/integrations/get",
            headers=automation(),
            json={"user_id": user_id, "platform_name": "linkedin"},
        )
        assert follow_up.status_code == 404


# ============================================================================
# TEST SUITE: TOKEN LIFECYCLE
# ============================================================================

class TestTokenLifecycle:

    def test_refresh(self, client, user_id, platform_api, monkeypatch):
        monkeypatch.setenv("LINKEDIN_CLIENT_ID", "li-client")
        monkeypatch.setenv("LINKEDIN_CLIENT_SECRET", "li-secret")
        store_linkedin(client, user_id)
        platform_api.on("www.linkedin.com", {"access_token": "li-new", "expires_in": 5184000})

        response = client.post(
            "/api/vault/linkedin/refresh-token",
            headers=bearer(user_id),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["message"] == "Token refreshed and stored securely"
        assert data["expires_in"] == 5184000
        assert "li-new" not in response.text

    def test_refresh_rejected_by_platform(self, client, user_id, platform_api, monkeypatch):
        monkeypatch.setenv("LINKEDIN_CLIENT_ID", "li-client")
        monkeypatch.setenv("LINKEDIN_CLIENT_SECRET", "li-secret")
        store_linkedin(client, user_id)
        platform_api.on(
            "www.linkedin.com",
            {"error": "invalid_grant", "error_description": "The token has been revoked"},
            status_code=400,
        )

        response = client.post("/api/vault/linkedin/refresh-token", headers=bearer(user_id))

        assert response.status_code == 400
        assert response.json()["error"] == "The token has been revoked"

    def test_refresh_not_supported(self, client, user_id):
        response = client.post("/api/vault/twitter/refresh-token", headers=bearer(user_id))

        assert response.status_code == 400

    def test_facebook_exchange(self, client, user_id, platform_api, monkeypatch):
        monkeypatch.setenv("FACEBOOK_APP_ID", "fb-app")
        monkeypatch.setenv("FACEBOOK_APP_SECRET", "fb-secret")
        platform_api.on("graph.facebook.com", {"access_token": "fb-long", "expires_in": 5184000})

        response = client.post(
            "/api/vault/facebook/exchange-token",
            headers=bearer(user_id),
            json={"short_lived_token": "fb-short"},
        )

        assert response.status_code == 200
        assert "fb-long" not in response.text
        assert response.json()["data"]["integration_id"]

    def test_openai_validate_and_store(self, client, user_id, platform_api):
        platform_api.on("api.openai.com", {"data": []})

        response = client.post(
            "/api/vault/openai/validate",
            headers=bearer(user_id),
            json={"api_key": "sk-test-key", "store": True},
        )

        assert response.json() == {"success": True, "data": {"valid": True}, "error": None}
        summary = client.post(
            "/api/vault/integrations/get",
            headers=bearer(user_id),
            json={"platform_name": "openai"},
        )
        assert summary.status_code == 200
        assert "sk-test-key" not in summary.text


# ============================================================================
# TEST SUITE: DISCOVERY AND ACTIVITY
# ============================================================================

class TestDiscoveryAndActivity:

    def test_discover_then_activity(self, client, user_id, platform_api):
        client.post(
            "/api/vault/integrations",
            headers=bearer(user_id),
            json={"platform_name": "facebook", "credentials": {"access_token": "fb-user"}},
        )
        platform_api.on("graph.facebook.com", {"data": [
            {"id": "p1", "name": "Acme", "access_token": "fb-page"},
        ]})

        discovered = client.post("/api/vault/facebook/discover", headers=bearer(user_id))

        assert discovered.json()["data"] == {
            "pages": [{"page_id": "p1", "page_name": "Acme", "picture_url": None}],
        }
        assert "fb-page" not in discovered.text

        platform_api.on("graph.facebook.com", {"data": [
            {"id": "p1_1", "message": "Launch day", "created_time": "2026-05-01T10:00:00+0000"},
        ]})
        response = client.post("/api/vault/activity", headers=bearer(user_id))

        activities = response.json()["data"]["activities"]
        assert [a["id"] for a in activities] == ["p1_1"]
        assert activities[0]["account_name"] == "Acme"
        assert platform_api.requests[-1].url.params["access_token"] == "fb-page"
        assert "fb-page" not in response.text

    def test_activity_empty(self, client, user_id):
        response = client.post("/api/vault/activity", headers=bearer(user_id))

        assert response.json() == {"success": True, "data": {"activities": []}, "error": None}


# ============================================================================
# TEST SUITE: ADMINISTRATION
# ============================================================================

class TestMigrateEncryption:

    def test_requires_automation_key(self, client, user_id):
        response = client.post("/api/vault/admin/migrate-encryption", headers=bearer(user_id))

        assert response.status_code == 401

    def test_sweep(self, client, db_session, user_id):
        row = PlatformIntegration(
            user_id=user_id,
            platform_name=Platform.LINKEDIN,
            credentials=json.dumps({"access_token": "plain"}),
            credentials_encrypted=False,
            status=IntegrationStatus.ACTIVE,
        )
        db_session.add(row)
        db_session.commit()

        dry = client.post(
            "/api/vault/admin/migrate-encryption", headers=automation(), json={"dry_run": True}
        ).json()["data"]
        report = client.post("/api/vault/admin/migrate-encryption", headers=automation()).json()["data"]

        assert dry["dry_run"] is True
        assert dry["migrated_from_plain"] == 1
        assert report["migrated_from_plain"] == 1
        assert report["errors"] == []
        db_session.expire_all()
        assert looks_like_new_cipher(db_session.get(PlatformIntegration, row.id).credentials)
