"""
HTTP tests for the integration API.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio

from app.db.session import get_async_db
from app.features.integrations.repository import IntegrationRepository
from app.main import create_app

from conftest import make_integration, token_response


API_KEY = {"X-API-Key": "internal-key"}


@pytest.fixture
def app(session_factory, provider_api):
    app = create_app(db_factory=session_factory, oauth_factory=provider_api.oauth_factory)

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = override_db
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# =============================================================================
# OAuth flow
# =============================================================================

class TestAuthorizationRoutes:
    """Tests for authorize and exchange."""

    @pytest.mark.asyncio
    async def test_full_flow(self, client, provider_api):
        response = await client.post("/api/v1/users/user-1/integrations/garmin/authorize")
        assert response.status_code == 200
        body = response.json()
        assert body["configured"] is True
        query = parse_qs(urlparse(body["authorization_url"]).query)
        assert query["code_challenge_method"] == ["S256"]

        provider_api.token.append(token_response())
        provider_api.identity.append(httpx.Response(200, json={"userId": "g-1"}))
        response = await client.post(
            "/api/v1/users/user-1/integrations/garmin/exchange",
            json={"code": "abc", "state": query["state"][0]},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "provider": "garmin", "provider_user_id": "g-1"}

        status = await client.get("/api/v1/users/user-1/integrations/garmin/status")
        assert status.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_state_mismatch_is_400(self, client):
        await client.post("/api/v1/users/user-1/integrations/garmin/authorize")

        response = await client.post(
            "/api/v1/users/user-1/integrations/garmin/exchange",
            json={"code": "abc", "state": "forged"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_exchange_without_pending_is_410(self, client):
        response = await client.post(
            "/api/v1/users/user-1/integrations/garmin/exchange",
            json={"code": "abc", "state": "s"},
        )

        assert response.status_code == 410

    @pytest.mark.asyncio
    async def test_unknown_provider_is_404(self, client):
        response = await client.post("/api/v1/users/user-1/integrations/polar/authorize")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, session_factory, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "wahoo_client_id", None)
        app = create_app(db_factory=session_factory)

        async def override_db():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_async_db] = override_db
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.post("/api/v1/users/user-1/integrations/wahoo/authorize")

        assert response.status_code == 200
        assert response.json()["configured"] is False

    @pytest.mark.asyncio
    async def test_authorize_is_rate_limited(self, client, test_settings, monkeypatch):
        monkeypatch.setattr(test_settings, "auth_rate_limit_requests", 2)

        codes = [
            (await client.post("/api/v1/users/user-1/integrations/garmin/authorize")).status_code
            for _ in range(3)
        ]

        assert codes == [200, 200, 429]


# =============================================================================
# Connections
# =============================================================================

class TestConnectionRoutes:
    """Tests for status, refresh and disconnect."""

    @pytest.mark.asyncio
    async def test_providers_listed(self, client):
        response = await client.get("/api/v1/integrations/providers")

        providers = {p["provider"]: p for p in response.json()}
        assert set(providers) == {"strava", "garmin", "wahoo", "google_calendar"}
        assert providers["garmin"]["supports_revoke"] is False

    @pytest.mark.asyncio
    async def test_list_connections_covers_every_provider(self, client, db):
        await make_integration(db, provider="strava")

        response = await client.get("/api/v1/users/user-1/integrations")

        statuses = {c["provider"]: c["status"] for c in response.json()}
        assert statuses["strava"] == "healthy"
        assert statuses["garmin"] == "not_connected"

    @pytest.mark.asyncio
    async def test_terminal_refresh_is_409(self, client, db, provider_api):
        await make_integration(db, provider="strava")
        provider_api.token.append(httpx.Response(400, json={"errors": [{"code": "invalid_grant"}]}))

        response = await client.post("/api/v1/users/user-1/integrations/strava/refresh")

        assert response.status_code == 409
        assert response.json()["detail"]["requires_reconnect"] is True

        status = await client.get("/api/v1/users/user-1/integrations/strava/status")
        assert status.json()["status"] == "refresh_token_invalid"
        assert status.json()["action"] == "reconnect"

    @pytest.mark.asyncio
    async def test_transient_refresh_is_503(self, client, db, provider_api):
        await make_integration(db, provider="strava")
        provider_api.token.append(httpx.Response(502))

        response = await client.post("/api/v1/users/user-1/integrations/strava/refresh")

        assert response.status_code == 503
        assert response.json()["detail"]["retryable"] is True

    @pytest.mark.asyncio
    async def test_repair_restores_provider_user_id(self, client, db, provider_api):
        await make_integration(db, provider="wahoo", provider_user_id=None)
        provider_api.token.append(token_response(access_token="fresh"))
        provider_api.identity.append(httpx.Response(200, json={"id": 4242}))

        response = await client.post("/api/v1/users/user-1/integrations/wahoo/repair")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["provider_user_id"] == "4242"

    @pytest.mark.asyncio
    async def test_repair_keeps_refreshed_token_when_id_unresolved(self, client, db, provider_api):
        await make_integration(db, provider="wahoo", provider_user_id=None)
        provider_api.token.append(token_response(access_token="fresh"))

        response = await client.post("/api/v1/users/user-1/integrations/wahoo/repair")

        assert response.status_code == 502
        db.expire_all()
        integration = await IntegrationRepository(db).get_for("user-1", "wahoo")
        assert integration.access_token == "fresh"

    @pytest.mark.asyncio
    async def test_disconnect(self, client, db):
        await make_integration(db, provider="wahoo")

        response = await client.delete("/api/v1/users/user-1/integrations/wahoo")

        assert response.status_code == 200
        assert response.json()["deleted"] is True
        status = await client.get("/api/v1/users/user-1/integrations/wahoo/status")
        assert status.json()["status"] == "not_connected"

    @pytest.mark.asyncio
    async def test_disconnect_not_connected_is_404(self, client):
        response = await client.delete("/api/v1/users/user-1/integrations/wahoo")

        assert response.status_code == 404


# =============================================================================
# Webhooks
# =============================================================================

class TestWebhookRoutes:
    """Tests for inbound webhooks."""

    @pytest.mark.asyncio
    async def test_strava_handshake(self, client):
        response = await client.get(
            "/api/v1/webhooks/strava",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "xyz"},
        )

        assert response.status_code == 200
        assert response.json() == {"hub.challenge": "xyz"}

    @pytest.mark.asyncio
    async def test_strava_handshake_refused(self, client):
        response = await client.get(
            "/api/v1/webhooks/strava",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "xyz"},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_orphan_event_is_acknowledged(self, client):
        response = await client.post("/api/v1/webhooks/strava", json={
            "owner_id": 1, "object_type": "activity", "aspect_type": "create", "object_id": 2,
        })

        assert response.status_code == 200
        assert response.json()["recorded"] == 1
        assert response.json()["matched"] == 0

    @pytest.mark.asyncio
    async def test_google_headers(self, client, db):
        await make_integration(db, provider="google_calendar", provider_user_id="google-sub")

        response = await client.post(
            "/api/v1/webhooks/google_calendar",
            headers={"X-Goog-Channel-Token": "google-sub", "X-Goog-Resource-State": "exists"},
        )

        assert response.json()["matched"] == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_is_400(self, client):
        response = await client.post("/api/v1/webhooks/garmin", json={"nothing": 1})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_processing_result_and_counts(self, client):
        ack = await client.post("/api/v1/webhooks/wahoo", json={
            "event_type": "workout_summary", "user": {"id": 5}, "workout_summary": {"id": 9},
        })
        event_id = ack.json()["event_ids"][0]

        response = await client.post(
            f"/api/v1/internal/webhooks/events/{event_id}/result",
            json={"error": None},
            headers=API_KEY,
        )
        assert response.status_code == 200
        assert response.json()["processed"] is True

        counts = await client.get("/api/v1/internal/webhooks/counts", headers=API_KEY)
        assert counts.json() == {"total": 1, "matched": 0, "orphaned": 1}


# =============================================================================
# Internal & users
# =============================================================================

class TestInternalRoutes:
    """Tests for API-key protected routes."""

    @pytest.mark.asyncio
    async def test_requires_api_key(self, client):
        response = await client.post(
            "/api/v1/internal/maintenance/sweep", headers={"X-API-Key": "wrong"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_sweep_and_last_result(self, client, db, provider_api):
        await make_integration(db, access_expires_in=timedelta(minutes=5))
        provider_api.token.append(token_response())

        last = await client.get("/api/v1/internal/maintenance/last", headers=API_KEY)
        assert last.json()["status"] == "never_run"

        response = await client.post("/api/v1/internal/maintenance/sweep", headers=API_KEY)
        assert response.json()["refreshed"] == 1

        last = await client.get("/api/v1/internal/maintenance/last", headers=API_KEY)
        assert last.json()["result"]["refreshed"] == 1

    @pytest.mark.asyncio
    async def test_delete_unknown_user_is_404(self, client):
        response = await client.delete("/api/v1/users/ghost")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_account(self, client, db):
        await make_integration(db, provider="garmin")

        response = await client.delete("/api/v1/users/user-1")

        assert response.status_code == 200
        assert response.json()["revocation"]["all_deleted"] is True
