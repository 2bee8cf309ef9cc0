"""
Google OAuth2 Token Acquisition

Access tokens for Gmail IMAP through the installed app flow, which opens a
browser for consent and listens on a local redirect.

Requires the 'google-auth-oauthlib' package.
"""

from __future__ import annotations

import os
import threading

from mailmirror.errors import OAuth2Error
from mailmirror.utils.imap_common import safe_print

IMAP_SCOPES = ["https://mail.google.com/"]

# (client_id, client_secret) -> credentials holding the refresh token
_creds_cache = {}
_cache_lock = threading.Lock()


def _refresh_cached(cache_key, log_fn):
    with _cache_lock:
        creds = _creds_cache.get(cache_key)
    if not creds or not creds.refresh_token:
        return None
    try:
        import google.auth.transport.requests

        creds.refresh(google.auth.transport.requests.Request())
    except Exception as e:
        log_fn(f"Warning: Google token refresh failed, falling back to browser flow: {e}")
        return None
    return creds.token or None


def acquire_token(client_id, client_secret, log_fn=safe_print):
    """
    Returns an access token for Gmail IMAP, or None on failure.

    Cached credentials are refreshed silently; the browser flow only runs
    the first time or when the refresh token no longer works.
    """
    cache_key = (client_id, client_secret)
    token = _refresh_cached(cache_key, log_fn)
    if token:
        return token

    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError:
        raise OAuth2Error(
            "The 'google-auth-oauthlib' package is required for Google OAuth2. "
            "Install it with: pip install google-auth-oauthlib"
        )

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth",
            "token_uri": os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, scopes=IMAP_SCOPES)

    log_fn("Opening browser for Google authentication...")
    credentials = flow.run_local_server(port=0)

    if credentials and credentials.token:
        with _cache_lock:
            _creds_cache[cache_key] = credentials
        return credentials.token

    log_fn("Error: Could not acquire Google OAuth2 token.")
    return None
