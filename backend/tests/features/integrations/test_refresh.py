"""
Tests for the token refresh engine.
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from app.features.integrations.exceptions import (
    IntegrationNotFound,
    TerminalRefreshRejection,
    TransientRefreshError,
)
from app.features.integrations.health import HealthStatus, evaluate_status
from app.features.integrations.maintenance import find_due_integrations
from app.features.integrations.oauth import ProviderOAuth
from app.features.integrations.providers import get_provider
from app.features.integrations.refresh import TokenRefreshEngine
from app.features.integrations.repository import IntegrationRepository
from app.shared.clock import utcnow

from conftest import TEST_CREDENTIALS, make_integration, token_response


@pytest.fixture
def engine_for(db, provider_api):
    return TokenRefreshEngine(db, oauth_factory=provider_api.oauth_factory)


async def _reload(db, user_id="user-1", provider="garmin"):
    db.expire_all()
    return await IntegrationRepository(db).get_for(user_id, provider)


# =============================================================================
# Outcomes
# =============================================================================

class TestRefreshOutcomes:
    """Success, terminal and transient outcomes."""

    @pytest.mark.asyncio
    async def test_success_writes_new_tokens(self, engine_for, db, provider_api):
        await make_integration(db, access_expires_in=timedelta(minutes=1))
        provider_api.token.append(token_response(access_token="fresh", refresh_token="rotated"))

        integration = await engine_for.refresh("user-1", "garmin")

        assert integration.access_token == "fresh"
        assert integration.refresh_token == "rotated"
        assert integration.access_token_expires_at > utcnow() + timedelta(minutes=50)
        assert integration.refresh_token_invalid is False
        body = parse_qs(provider_api.calls("token")[0].content.decode())
        assert body["grant_type"] == ["refresh_token"]
        assert body["refresh_token"] == ["old-refresh"]

    @pytest.mark.asyncio
    async def test_success_keeps_refresh_token_when_not_rotated(self, engine_for, db, provider_api):
        await make_integration(db)
        provider_api.token.append(token_response(refresh_token=None))

        integration = await engine_for.refresh("user-1", "garmin")

        assert integration.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {"error": "invalid_grant"},
        {"message": "Token has been revoked"},
        {"error": "InvalidRefreshToken"},
    ])
    async def test_terminal_rejection_sets_flag(self, engine_for, db, provider_api, body):
        await make_integration(db)
        provider_api.token.append(httpx.Response(400, json=body))

        with pytest.raises(TerminalRefreshRejection):
            await engine_for.refresh("user-1", "garmin")

        integration = await _reload(db)
        assert integration.refresh_token_invalid is True
        assert integration.access_token == "old-access"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(503),
        httpx.Response(429, json={"error": "rate_limited"}),
        httpx.ConnectTimeout("timeout"),
    ])
    async def test_transient_failure_leaves_state_alone(self, engine_for, db, provider_api, response):
        await make_integration(db)
        provider_api.token.append(response)

        with pytest.raises(TransientRefreshError):
            await engine_for.refresh("user-1", "garmin")

        integration = await _reload(db)
        assert integration.refresh_token_invalid is False
        assert integration.access_token == "old-access"

    @pytest.mark.asyncio
    async def test_malformed_response_is_transient(self, engine_for, db, provider_api):
        await make_integration(db)
        provider_api.token.append(httpx.Response(200, json={"token_type": "bearer"}))

        with pytest.raises(TransientRefreshError):
            await engine_for.refresh("user-1", "garmin")
        assert (await _reload(db)).refresh_token_invalid is False

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_transient(self, engine_for, db, provider_api):
        await make_integration(db)
        provider_api.token.append(httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(TransientRefreshError):
            await engine_for.refresh("user-1", "garmin")
        assert (await _reload(db)).refresh_token_invalid is False


# =============================================================================
# Refusals
# =============================================================================

class TestRefreshRefusals:
    """Cases where the provider is never called."""

    @pytest.mark.asyncio
    async def test_not_connected(self, engine_for, provider_api):
        with pytest.raises(IntegrationNotFound):
            await engine_for.refresh("user-1", "garmin")
        assert provider_api.requests == []

    @pytest.mark.asyncio
    async def test_invalid_flag_refuses_without_calling_provider(self, engine_for, db, provider_api):
        await make_integration(db, refresh_token_invalid=True)

        with pytest.raises(TerminalRefreshRejection):
            await engine_for.refresh("user-1", "garmin")
        assert provider_api.requests == []

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, engine_for, db, provider_api):
        await make_integration(db, refresh_token=None)

        with pytest.raises(TerminalRefreshRejection):
            await engine_for.refresh("user-1", "garmin")
        assert provider_api.requests == []

    @pytest.mark.asyncio
    async def test_successful_reconnect_clears_invalid_flag(self, db):
        await make_integration(db, refresh_token_invalid=True)
        # Full write from a new authorization
        await make_integration(db)

        assert (await _reload(db)).refresh_token_invalid is False


# =============================================================================
# Valid access token
# =============================================================================

class TestGetValidAccessToken:
    """Tests for refresh-before-use."""

    @pytest.mark.asyncio
    async def test_returns_stored_token_when_fresh(self, engine_for, db, provider_api):
        await make_integration(db, access_expires_in=timedelta(hours=2))

        assert await engine_for.get_valid_access_token("user-1", "garmin") == "old-access"
        assert provider_api.requests == []

    @pytest.mark.asyncio
    async def test_refreshes_when_expiring_soon(self, engine_for, db, provider_api):
        await make_integration(db, access_expires_in=timedelta(minutes=2))
        provider_api.token.append(token_response(access_token="fresh"))

        assert await engine_for.get_valid_access_token("user-1", "garmin") == "fresh"


# =============================================================================
# Concurrency
# =============================================================================

class TestConcurrentRefresh:
    """Refreshes of the same integration from separate sessions."""

    @pytest.mark.asyncio
    async def test_stale_rejection_does_not_flag_rotated_token(self, db, session_factory):
        await make_integration(db, provider="wahoo", refresh_token="R1")
        calls = []
        release = asyncio.Event()

        async def handler(request):
            calls.append(request)
            if len(calls) == 1:
                # Answered only after the second refresh has rotated the token
                await release.wait()
                return httpx.Response(400, json={"error": "invalid_grant"})
            return token_response(access_token="A2", refresh_token="R2", expires_in=7200)

        def oauth_factory(provider):
            return ProviderOAuth(get_provider(provider), TEST_CREDENTIALS, transport=httpx.MockTransport(handler))

        async def refresh():
            async with session_factory() as session:
                engine = TokenRefreshEngine(session, oauth_factory=oauth_factory)
                integration = await engine.refresh("user-1", "wahoo")
                return integration.refresh_token

        async def refresh_after_first_call():
            while not calls:
                await asyncio.sleep(0.01)
            try:
                return await refresh()
            finally:
                release.set()

        slow, fast = await asyncio.gather(refresh(), refresh_after_first_call())

        assert fast == "R2"
        assert slow == "R2"
        integration = await _reload(db, provider="wahoo")
        assert integration.refresh_token == "R2"
        assert integration.access_token == "A2"
        assert integration.refresh_token_invalid is False
        assert evaluate_status(integration) == HealthStatus.HEALTHY
        assert await find_due_integrations(db) == []

    @pytest.mark.asyncio
    async def test_rejection_still_flags_when_token_unchanged(self, db, session_factory):
        await make_integration(db, provider="wahoo", refresh_token="R1")
        # Rewrite the row without touching the token, as a repair would
        await IntegrationRepository(db).update_for("user-1", "wahoo", provider_user_id="ext-2")
        await db.commit()

        def oauth_factory(provider):
            transport = httpx.MockTransport(
                lambda request: httpx.Response(400, json={"error": "invalid_grant"})
            )
            return ProviderOAuth(get_provider(provider), TEST_CREDENTIALS, transport=transport)

        async with session_factory() as session:
            with pytest.raises(TerminalRefreshRejection):
                await TokenRefreshEngine(session, oauth_factory=oauth_factory).refresh("user-1", "wahoo")

        assert (await _reload(db, provider="wahoo")).refresh_token_invalid is True

    @pytest.mark.asyncio
    async def test_concurrent_successful_refreshes(self, db, session_factory, provider_api):
        await make_integration(db, access_expires_in=timedelta(minutes=1))
        provider_api.token.extend([
            token_response(access_token="A2", refresh_token="R2"),
            token_response(access_token="A3", refresh_token="R3"),
        ])

        async def refresh():
            async with session_factory() as session:
                engine = TokenRefreshEngine(session, oauth_factory=provider_api.oauth_factory)
                return (await engine.refresh("user-1", "garmin")).access_token

        tokens = await asyncio.gather(refresh(), refresh())

        assert set(tokens) <= {"A2", "A3"}
        assert await IntegrationRepository(db).count() == 1
        integration = await _reload(db)
        assert integration.access_token in {"A2", "A3"}
        assert integration.refresh_token_invalid is False

    @pytest.mark.asyncio
    async def test_concurrent_upserts_keep_one_row(self, db, session_factory):
        now = utcnow()

        async def upsert(n):
            async with session_factory() as session:
                repo = IntegrationRepository(session)
                await repo.upsert_integration(
                    "user-1",
                    "strava",
                    provider_user_id="ext-1",
                    access_token=f"access-{n}",
                    refresh_token=f"refresh-{n}",
                    access_token_expires_at=now + timedelta(hours=6),
                    refresh_token_expires_at=None,
                    refresh_token_invalid=False,
                )
                await repo.commit()

        await asyncio.gather(*(upsert(n) for n in range(10)))

        assert await IntegrationRepository(db).count() == 1
        integration = await _reload(db, provider="strava")
        assert integration.access_token.startswith("access-")
        assert integration.refresh_token == integration.access_token.replace("access", "refresh")
