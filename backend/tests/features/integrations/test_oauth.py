"""
Tests for PKCE helpers, token response parsing and refresh classification.
"""

import base64
import hashlib
from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from app.features.integrations import pkce
from app.features.integrations.exceptions import (
    TerminalRefreshRejection,
    TokenExchangeFailed,
    TransientRefreshError,
)
from app.features.integrations.oauth import (
    ProviderOAuth,
    classify_refresh_failure,
    parse_token_response,
)
from app.features.integrations.providers import get_provider

from conftest import TEST_CREDENTIALS


NOW = datetime(2026, 1, 1, 12, 0, 0)


# =============================================================================
# PKCE
# =============================================================================

class TestPkce:
    """Tests for verifier/challenge/state generation."""

    def test_verifier_is_32_bytes_base64url_without_padding(self):
        verifier = pkce.generate_code_verifier()
        assert len(verifier) == 43
        assert "=" not in verifier
        assert len(base64.urlsafe_b64decode(verifier + "=")) == 32

    def test_challenge_is_s256_of_verifier(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        expected = base64.urlsafe_b64encode(
            hashlib.sha256(verifier.encode()).digest()
        ).rstrip(b"=").decode()
        assert pkce.code_challenge(verifier) == expected
        # RFC 7636 appendix B
        assert pkce.code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_state_is_16_random_bytes_hex(self):
        state = pkce.generate_state()
        assert len(state) == 32
        int(state, 16)
        assert pkce.generate_state() != state


# =============================================================================
# Authorization URL
# =============================================================================

class TestAuthorizationUrl:
    """Tests for provider authorize URLs."""

    def _params(self, provider: str) -> dict:
        oauth = ProviderOAuth(get_provider(provider), TEST_CREDENTIALS)
        url = oauth.get_authorization_url("state-123", "challenge-abc")
        return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}

    def test_garmin_includes_pkce_challenge(self):
        params = self._params("garmin")
        assert params["code_challenge"] == "challenge-abc"
        assert params["code_challenge_method"] == "S256"
        assert params["state"] == "state-123"
        assert params["redirect_uri"] == TEST_CREDENTIALS.redirect_uri
        assert params["client_id"] == "test-client"

    def test_strava_omits_pkce_and_joins_scopes_with_commas(self):
        params = self._params("strava")
        assert "code_challenge" not in params
        assert params["scope"] == "read,activity:read_all,profile:read_all"

    def test_google_requests_offline_access(self):
        params = self._params("google_calendar")
        assert params["access_type"] == "offline"
        assert params["prompt"] == "consent"


# =============================================================================
# Token parsing
# =============================================================================

class TestParseTokenResponse:
    """Tests for expiry computation and refresh-token retention."""

    def test_expires_in_sets_access_expiry(self):
        tokens = parse_token_response(
            get_provider("wahoo"),
            {"access_token": "a", "refresh_token": "r", "expires_in": 7200},
            now=NOW,
        )
        assert tokens.access_token_expires_at == NOW + timedelta(seconds=7200)
        assert tokens.refresh_token_expires_at is None

    def test_strava_expires_at_epoch(self):
        epoch = int((NOW + timedelta(hours=6) - datetime(1970, 1, 1)).total_seconds())
        tokens = parse_token_response(
            get_provider("strava"),
            {"access_token": "a", "refresh_token": "r", "expires_at": epoch},
            now=NOW,
        )
        assert tokens.access_token_expires_at == NOW + timedelta(hours=6)

    def test_garmin_falls_back_to_90_day_default(self):
        tokens = parse_token_response(
            get_provider("garmin"),
            {"access_token": "a", "refresh_token": "r"},
            now=NOW,
        )
        assert tokens.access_token_expires_at == NOW + timedelta(days=90)
        assert tokens.refresh_token_expires_at == NOW + timedelta(days=90)

    def test_garmin_refresh_token_expires_in(self):
        tokens = parse_token_response(
            get_provider("garmin"),
            {"access_token": "a", "refresh_token": "r", "expires_in": 86400,
             "refresh_token_expires_in": 7776000},
            now=NOW,
        )
        assert tokens.refresh_token_expires_at == NOW + timedelta(seconds=7776000)

    def test_missing_refresh_token_keeps_previous_one_and_expiry(self):
        previous_expiry = NOW + timedelta(days=20)
        tokens = parse_token_response(
            get_provider("garmin"),
            {"access_token": "a", "expires_in": 86400},
            now=NOW,
            previous_refresh_token="old-refresh",
            previous_refresh_expires_at=previous_expiry,
        )
        assert tokens.refresh_token == "old-refresh"
        assert tokens.refresh_token_expires_at == previous_expiry

    def test_rotated_refresh_token_gets_fresh_expiry(self):
        tokens = parse_token_response(
            get_provider("garmin"),
            {"access_token": "a", "refresh_token": "rotated", "expires_in": 86400},
            now=NOW,
            previous_refresh_token="old-refresh",
            previous_refresh_expires_at=NOW + timedelta(days=20),
        )
        assert tokens.refresh_token == "rotated"
        assert tokens.refresh_token_expires_at == NOW + timedelta(days=90)

    def test_missing_access_token_raises(self):
        with pytest.raises(TokenExchangeFailed):
            parse_token_response(get_provider("wahoo"), {"refresh_token": "r"}, now=NOW)


# =============================================================================
# Refresh failure classification
# =============================================================================

class TestClassifyRefreshFailure:
    """Terminal vs transient is decided by body signature."""

    @pytest.mark.parametrize("status,body", [
        (400, '{"error": "invalid_grant"}'),
        (400, '{"error": "invalid_request", "error_description": "Token has been revoked"}'),
        (400, '{"message": "Bad Request", "errors": [{"resource": "RefreshToken", "code": "invalid"}]}'),
        (401, '{"error": "invalid_grant"}'),
    ])
    def test_terminal_signatures(self, status, body):
        assert classify_refresh_failure(status, body) is TerminalRefreshRejection

    @pytest.mark.parametrize("status,body", [
        (500, "Internal Server Error"),
        (503, ""),
        (429, '{"message": "Rate Limit Exceeded"}'),
        (400, '{"error": "invalid_request"}'),
    ])
    def test_transient_failures(self, status, body):
        assert classify_refresh_failure(status, body) is TransientRefreshError
