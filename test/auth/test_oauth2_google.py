"""
Tests for auth/oauth2_google.py

Tests cover:
- Token acquisition through the installed app flow
- Credential caching and silent refresh
- Fallback to the browser flow
"""

from unittest.mock import MagicMock, patch

import pytest

from mailmirror.auth import oauth2_google
from mailmirror.errors import OAuth2Error


@pytest.fixture(autouse=True)
def clear_caches():
    """Clear the credentials cache between tests."""
    oauth2_google._creds_cache.clear()
    yield
    oauth2_google._creds_cache.clear()


def _flow_module(token="google_token"):
    credentials = MagicMock()
    credentials.token = token
    flow = MagicMock()
    flow.run_local_server.return_value = credentials
    module = MagicMock()
    module.InstalledAppFlow.from_client_config.return_value = flow
    return module


def _flow_modules(module):
    return {"google_auth_oauthlib": MagicMock(), "google_auth_oauthlib.flow": module}


class TestAcquireToken:
    """Tests for acquire_token function."""

    def test_successful_token(self):
        """Test token acquisition through the browser flow."""
        module = _flow_module()
        with patch.dict("sys.modules", _flow_modules(module)):
            result = oauth2_google.acquire_token("client-id", "client-secret", log_fn=lambda _: None)

        assert result == "google_token"
        config = module.InstalledAppFlow.from_client_config.call_args[0][0]
        assert config["installed"]["client_id"] == "client-id"
        assert module.InstalledAppFlow.from_client_config.call_args[1]["scopes"] == ["https://mail.google.com/"]

    def test_token_url_from_env(self, monkeypatch):
        """Test OAUTH2_GOOGLE_TOKEN_URL overrides the token endpoint."""
        monkeypatch.setenv("OAUTH2_GOOGLE_TOKEN_URL", "http://localhost:9000/token")
        module = _flow_module()
        with patch.dict("sys.modules", _flow_modules(module)):
            oauth2_google.acquire_token("client-id", "client-secret", log_fn=lambda _: None)

        config = module.InstalledAppFlow.from_client_config.call_args[0][0]
        assert config["installed"]["token_uri"] == "http://localhost:9000/token"

    def test_missing_library(self):
        """Test a clear error when google-auth-oauthlib is not installed."""
        with patch.dict("sys.modules", {"google_auth_oauthlib": None, "google_auth_oauthlib.flow": None}):
            with pytest.raises(OAuth2Error, match="google-auth-oauthlib"):
                oauth2_google.acquire_token("client-id", "client-secret", log_fn=lambda _: None)

    def test_no_token_returned(self):
        """Test returns None when the flow yields no token."""
        with patch.dict("sys.modules", _flow_modules(_flow_module(token=None))):
            assert oauth2_google.acquire_token("client-id", "client-secret", log_fn=lambda _: None) is None

    def test_credentials_cached_on_first_call(self):
        """Test credentials are cached after the browser flow."""
        with patch.dict("sys.modules", _flow_modules(_flow_module())):
            oauth2_google.acquire_token("client-id", "client-secret", log_fn=lambda _: None)

        assert ("client-id", "client-secret") in oauth2_google._creds_cache

    def test_cached_credentials_refreshed(self):
        """Test a cached refresh token is used without opening the browser."""
        creds = MagicMock()
        creds.refresh_token = "refresh_tok"
        creds.token = "refreshed_google_token"
        oauth2_google._creds_cache[("client-id", "client-secret")] = creds

        with patch.dict(
            "sys.modules",
            {
                "google": MagicMock(),
                "google.auth": MagicMock(),
                "google.auth.transport": MagicMock(),
                "google.auth.transport.requests": MagicMock(),
            },
        ):
            result = oauth2_google.acquire_token("client-id", "client-secret", log_fn=lambda _: None)

        assert result == "refreshed_google_token"
        creds.refresh.assert_called_once()

    def test_falls_back_to_browser_if_refresh_fails(self, log_lines):
        """Test the browser flow runs again when the refresh fails."""
        creds = MagicMock()
        creds.refresh_token = "refresh_tok"
        creds.refresh.side_effect = Exception("Refresh failed")
        oauth2_google._creds_cache[("client-id", "client-secret")] = creds

        with patch.dict("sys.modules", _flow_modules(_flow_module("new_browser_token"))):
            result = oauth2_google.acquire_token("client-id", "client-secret", log_fn=log_lines)

        assert result == "new_browser_token"
        assert any("refresh failed" in line for line in log_lines.lines)

    def test_no_refresh_without_refresh_token(self):
        """Test cached credentials without a refresh token are not refreshed."""
        creds = MagicMock()
        creds.refresh_token = None
        oauth2_google._creds_cache[("client-id", "client-secret")] = creds

        with patch.dict("sys.modules", _flow_modules(_flow_module("new_browser_token"))):
            result = oauth2_google.acquire_token("client-id", "client-secret", log_fn=lambda _: None)

        assert result == "new_browser_token"
        creds.refresh.assert_not_called()
