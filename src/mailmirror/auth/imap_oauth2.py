"""
IMAP OAuth2 Authentication

Token acquisition for XOAUTH2 logins. Dispatches to the provider modules
(oauth2_microsoft, oauth2_google); the provider is detected from the IMAP
host. Both providers cache credentials in memory, so acquiring a token on
every (re)connect only contacts the server when a refresh is due.
"""

from __future__ import annotations

from mailmirror.auth import oauth2_google, oauth2_microsoft
from mailmirror.errors import OAuth2Error
from mailmirror.utils.imap_common import safe_print

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"


def is_token_expired_error(error) -> bool:
    error_str = str(error).lower()
    return "accesstokenexpired" in error_str or "session invalidated" in error_str


def detect_oauth2_provider(host):
    """Returns "microsoft", "google", or None if unrecognized."""
    host_lower = (host or "").lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return PROVIDER_MICROSOFT
    if "gmail" in host_lower or "google" in host_lower:
        return PROVIDER_GOOGLE
    return None


def acquire_token_for_provider(provider, client_id, email, client_secret=None, log_fn=safe_print):
    if provider == PROVIDER_MICROSOFT:
        return oauth2_microsoft.acquire_token(client_id, email, log_fn=log_fn)
    if provider == PROVIDER_GOOGLE:
        if not client_secret:
            raise OAuth2Error("An OAuth2 client secret is required for Google OAuth2.")
        return oauth2_google.acquire_token(client_id, client_secret, log_fn=log_fn)
    raise OAuth2Error(f"Unknown OAuth2 provider: {provider}")


def acquire_token(config, log_fn=safe_print) -> str:
    """
    Acquires a token for an EndpointConfig that carries an OAuth2 client id.

    Raises:
        OAuth2Error: provider not recognized or token not granted.
    """
    provider = detect_oauth2_provider(config.host)
    if not provider:
        raise OAuth2Error(f"Could not detect OAuth2 provider from host '{config.host}'.")
    token = acquire_token_for_provider(
        provider, config.oauth2_client_id, config.username, config.oauth2_client_secret, log_fn=log_fn
    )
    if not token:
        raise OAuth2Error(f"Failed to acquire OAuth2 token for {config.describe()} ({provider}).")
    return token


def build_xoauth2_string(user, token) -> bytes:
    return f"user={user}\x01auth=Bearer {token}\x01\x01".encode()


def auth_description(config) -> str:
    """Human-readable auth description for configuration summaries."""
    if config.oauth2_client_id:
        provider = detect_oauth2_provider(config.host) or "unknown"
        return f"OAuth2/{provider} (XOAUTH2)"
    if config.auth_method == "xoauth2":
        return "OAuth2 token (XOAUTH2)"
    if config.auth_method == "login":
        return "Basic (AUTHENTICATE LOGIN)"
    return "Basic (password)"
