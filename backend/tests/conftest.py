"""
Shared test fixtures.

- Temporary SQLite database (aiosqlite) per test
- FakeProviderAPI: canned provider responses behind httpx.MockTransport
- Settings patched with provider credentials and zero retry backoff
"""

import os

# Must be set before app.config is imported
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")

from datetime import timedelta
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import ProviderCredentials, settings
from app.db.session import create_engine_for_url, init_db
from app.features.integrations import PROVIDERS, ProviderOAuth, get_provider
from app.features.integrations.repository import IntegrationRepository
from app.shared.clock import utcnow


TEST_CREDENTIALS = ProviderCredentials(
    client_id="test-client",
    client_secret="test-secret",
    redirect_uri="http://localhost:3000/oauth/callback",
)


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Configure every provider and remove retry waits."""
    for provider in ("strava", "garmin", "wahoo", "google_calendar"):
        monkeypatch.setattr(settings, f"{provider}_client_id", "test-client")
        monkeypatch.setattr(settings, f"{provider}_client_secret", "test-secret")
    monkeypatch.setattr(settings, "provider_user_id_retry_base_delay", 0.0)
    monkeypatch.setattr(settings, "provider_user_id_retry_attempts", 3)
    monkeypatch.setattr(settings, "internal_api_key", "internal-key")
    monkeypatch.setattr(settings, "strava_webhook_verify_token", "verify-me")
    monkeypatch.setattr(settings, "wahoo_webhook_token", None)
    monkeypatch.setattr(settings, "rate_limit_enabled", True)
    return settings


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# =============================================================================
# Provider API
# =============================================================================

class FakeProviderAPI:
    """
    Stands in for every provider's HTTP endpoints.

    Queue responses (httpx.Response or an exception to raise) per endpoint
    kind. An empty queue answers 500.
    """

    def __init__(self):
        self.token: list = []
        self.identity: list = []
        self.revoke: list = []
        self.requests: list[httpx.Request] = []

    def _endpoint(self, url: str) -> Optional[str]:
        for spec in PROVIDERS.values():
            if url == spec.token_url:
                return "token"
            if url == spec.user_id_url:
                return "identity"
            if url == spec.revoke_url:
                return "revoke"
        return None

    def _kind(self, request: httpx.Request) -> Optional[str]:
        return self._endpoint(f"{request.url.scheme}://{request.url.host}{request.url.path}")

    def calls(self, kind: str) -> list[httpx.Request]:
        return [r for r in self.requests if self._kind(r) == kind]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind = self._kind(request)
        if kind is None:
            return httpx.Response(404)

        queue = getattr(self, kind)
        if not queue:
            return httpx.Response(500, json={"error": "no canned response"})
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def oauth_factory(self, provider: str) -> ProviderOAuth:
        return ProviderOAuth(
            get_provider(provider),
            TEST_CREDENTIALS,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def provider_api():
    return FakeProviderAPI()


def token_response(
    access_token: str = "new-access",
    refresh_token: Optional[str] = "new-refresh",
    expires_in: int = 3600,
    **extra,
) -> httpx.Response:
    body = {"access_token": access_token, "expires_in": expires_in, **extra}
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)


# =============================================================================
# Data helpers
# =============================================================================

async def make_integration(
    db: AsyncSession,
    user_id: str = "user-1",
    provider: str = "garmin",
    provider_user_id: Optional[str] = "ext-1",
    access_expires_in: timedelta = timedelta(hours=12),
    refresh_expires_in: Optional[timedelta] = None,
    refresh_token: Optional[str] = "old-refresh",
    refresh_token_invalid: bool = False,
):
    """Store an integration with expiries relative to now."""
    now = utcnow()
    repo = IntegrationRepository(db)
    integration = await repo.upsert_integration(
        user_id,
        provider,
        provider_user_id=provider_user_id,
        access_token="old-access",
        refresh_token=refresh_token,
        access_token_expires_at=now + access_expires_in,
        refresh_token_expires_at=now + refresh_expires_in if refresh_expires_in else None,
        refresh_token_invalid=refresh_token_invalid,
    )
    await repo.commit()
    return integration
