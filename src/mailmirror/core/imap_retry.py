"""
IMAP Retry Logic

Transparent retry wrapper for imaplib connections that handles transient
server replies (e.g. Microsoft 365 "Server Busy", Gmail THROTTLED) with
exponential backoff. Dropped connections are not handled here; see
ConnectionManager.reconnect.
"""

from __future__ import annotations

import time

from mailmirror.utils.imap_common import safe_print

TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"SERVER BUSY", b"TRY AGAIN", b"THROTTLED")

# Methods that are safe to retry and return (typ, data)
RETRYABLE_METHODS = frozenset(
    {
        "uid",
        "select",
        "search",
        "fetch",
        "append",
        "list",
        "create",
        "noop",
        "status",
    }
)


def is_transient_error(data) -> bool:
    """Check if IMAP response data contains transient error patterns."""
    for item in data or []:
        if isinstance(item, bytes):
            upper = item.upper()
            for pattern in TRANSIENT_PATTERNS:
                if pattern in upper:
                    return True
    return False


class ConnectionProxy:
    """Transparent proxy that retries IMAP commands on transient server errors.

    Wraps an imaplib.IMAP4 or IMAP4_SSL connection. For methods in
    RETRYABLE_METHODS that return (typ, data) tuples, retries on transient
    errors with delays of initial_wait * 2**attempt.
    """

    def __init__(self, conn, max_retries=3, initial_wait=5, log_fn=safe_print, sleep_fn=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep_fn = sleep_fn

    @property
    def wrapped(self):
        return self._conn

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in RETRYABLE_METHODS or not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            last_result = None
            for attempt in range(self._max_retries):
                result = attr(*args, **kwargs)
                if not isinstance(result, tuple) or len(result) < 2:
                    return result
                typ, data = result[0], result[1]
                if typ == "OK" or not is_transient_error(data):
                    return result
                last_result = result
                if attempt + 1 < self._max_retries:
                    wait = self._initial_wait * (2**attempt)
                    self._log_fn(
                        f"Server busy on {name.upper()}, retrying in {wait}s... "
                        f"(attempt {attempt + 1}/{self._max_retries})"
                    )
                    self._sleep_fn(wait)
            return last_result

        return wrapper
