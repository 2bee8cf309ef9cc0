"""
Microsoft OAuth2 Token Acquisition

Access tokens for Outlook / Microsoft 365 IMAP through the MSAL device code
flow. The tenant is discovered from the mailbox domain.

Requires the 'msal' package.
"""

from __future__ import annotations

import http.client
import json
import os
import re
import ssl
import threading
import urllib.parse

from mailmirror.errors import OAuth2Error
from mailmirror.utils.imap_common import safe_print

IMAP_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
DEFAULT_DISCOVERY_HOST = "login.microsoftonline.com"

_TENANT_PATTERN = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})")

# Module-level caches, shared by every job in the process
_msal_app_cache = {}  # (client_id, tenant_id) -> PublicClientApplication
_tenant_cache = {}  # domain -> tenant_id
_cache_lock = threading.Lock()


def _fetch_json_https(host, path, timeout=10):
    """Fetch JSON from an HTTP(S) endpoint."""
    if not host or any(ch in host for ch in "\r\n"):
        raise ValueError("Invalid host")
    if not path.startswith("/"):
        path = f"/{path}"

    use_https = True
    if host.startswith("http://") or host.startswith("https://"):
        parsed = urllib.parse.urlparse(host)
        if not parsed.hostname:
            raise ValueError("Invalid host")
        host = parsed.hostname if not parsed.port else f"{parsed.hostname}:{parsed.port}"
        base_path = parsed.path.rstrip("/")
        if base_path:
            path = f"{base_path}{path}"
        use_https = parsed.scheme == "https"

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_tenant(email, log_fn=safe_print):
    """
    Returns the tenant id for the mailbox domain using the OpenID Connect
    discovery document, or None when it cannot be determined.
    Results are cached per domain.
    """
    domain = email.split("@")[-1].strip().lower()
    if not domain:
        log_fn("Error: Could not discover Microsoft tenant: missing email domain")
        return None

    with _cache_lock:
        if domain in _tenant_cache:
            return _tenant_cache[domain]

    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    discovery_host = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or DEFAULT_DISCOVERY_HOST
    try:
        data = _fetch_json_https(discovery_host, path, timeout=10)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError) as e:
        log_fn(f"Error: Could not discover Microsoft tenant for domain '{domain}': {e}")
        return None

    issuer = data.get("issuer", "")
    match = _TENANT_PATTERN.search(issuer)
    if not match:
        log_fn(f"Error: Could not extract tenant ID from issuer: {issuer}")
        return None

    tenant_id = match.group(1)
    with _cache_lock:
        _tenant_cache[domain] = tenant_id
    return tenant_id


def acquire_token(client_id, email, log_fn=safe_print):
    """
    Returns an access token for the mailbox, or None on failure.

    The first call walks the user through the device code flow; later calls
    refresh silently through the cached MSAL application.
    """
    tenant_id = discover_tenant(email, log_fn=log_fn)
    if not tenant_id:
        return None

    try:
        import msal
    except ImportError:
        raise OAuth2Error("The 'msal' package is required for Microsoft OAuth2. Install it with: pip install msal")

    authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or f"https://{DEFAULT_DISCOVERY_HOST}"
    authority = f"{authority_base.rstrip('/')}/{tenant_id}"

    cache_key = (client_id, tenant_id)
    with _cache_lock:
        app = _msal_app_cache.get(cache_key)
        if app is None:
            log_fn(f"Discovered Microsoft tenant: {tenant_id}")
            app = msal.PublicClientApplication(client_id, authority=authority)
            _msal_app_cache[cache_key] = app

    accounts = app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(IMAP_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=IMAP_SCOPES)
    if "user_code" not in flow:
        log_fn(f"Error: Could not initiate device flow: {flow.get('error_description', 'Unknown error')}")
        return None

    log_fn(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    log_fn(f"Error: Could not acquire token: {result.get('error_description', 'Unknown error')}")
    return None
