"""
Configuration

Endpoint and job option structures. Defaults come from environment
variables so deployments can tune timeouts, pool size and batching
without code changes:

    IMAP_TIMEOUT               : Per-connection socket timeout in seconds (default: 30)
    IMAP_KEEPALIVE_INTERVAL    : Idle seconds before a pooled session is NOOP-checked (default: 10)
    IMAP_RECONNECT_ATTEMPTS    : Reconnect attempts after an unexpected disconnect (default: 3)
    IMAP_RECONNECT_DELAY       : Base reconnect delay in seconds, doubled per attempt (default: 5)
    IMAP_CONNECTION_POOL_SIZE  : Idle sessions kept per (host, port, user) (default: 10)
    SYNC_BATCH_SIZE            : Messages per batch (default: 50)
    SYNC_MAX_WORKERS           : Concurrent jobs per orchestrator (default: 4)
    SYNC_STALE_THRESHOLD       : Seconds without progress before a job is reported stale (default: 300)
"""

from __future__ import annotations

import os
import urllib.parse
from dataclasses import dataclass, field

AUTH_PLAIN = "plain"
AUTH_LOGIN = "login"
AUTH_XOAUTH2 = "xoauth2"
AUTH_METHODS = (AUTH_PLAIN, AUTH_LOGIN, AUTH_XOAUTH2)

DEFAULT_SECURE_PORT = 993
DEFAULT_PLAIN_PORT = 143

MAX_BATCH_SIZE = 500
MAX_RETRY_ATTEMPTS = 10


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def default_timeout() -> float:
    return env_float("IMAP_TIMEOUT", 30.0)


def default_keepalive_interval() -> float:
    return env_float("IMAP_KEEPALIVE_INTERVAL", 10.0)


def default_reconnect_attempts() -> int:
    return env_int("IMAP_RECONNECT_ATTEMPTS", 3)


def default_reconnect_delay() -> float:
    return env_float("IMAP_RECONNECT_DELAY", 5.0)


def default_pool_size() -> int:
    return env_int("IMAP_CONNECTION_POOL_SIZE", 10)


def default_batch_size() -> int:
    return env_int("SYNC_BATCH_SIZE", 50)


def default_max_workers() -> int:
    return env_int("SYNC_MAX_WORKERS", 4)


def default_stale_threshold() -> float:
    return env_float("SYNC_STALE_THRESHOLD", 300.0)


@dataclass
class EndpointConfig:
    """
    Connection parameters for one IMAP endpoint.

    `host` may carry a scheme the way the command line accepts it:
    "imap://host:143" forces plain TCP, "imaps://host" forces TLS.
    For xoauth2, `password` holds the bearer token unless an OAuth2
    client id is configured, in which case the token is acquired from the
    provider when the connection is opened.
    """

    host: str
    username: str
    password: str | None = None
    port: int | None = None
    secure: bool = True
    auth_method: str = AUTH_PLAIN
    oauth2_client_id: str | None = None
    oauth2_client_secret: str | None = None
    timeout: float = field(default_factory=default_timeout)
    keepalive_interval: float = field(default_factory=default_keepalive_interval)

    def __post_init__(self):
        if not self.host or not self.username:
            raise ValueError("host and username are required")

        if "://" in self.host:
            parsed = urllib.parse.urlparse(self.host)
            scheme = parsed.scheme.lower()
            if not scheme or not parsed.hostname:
                raise ValueError(f"Invalid IMAP host: {self.host}")
            if scheme in {"imap", "tcp"}:
                self.secure = False
            elif scheme in {"imaps", "imap+ssl", "imapssl", "ssl"}:
                self.secure = True
            else:
                raise ValueError(f"Unsupported IMAP scheme: {scheme}")
            self.host = parsed.hostname
            if parsed.port and not self.port:
                self.port = parsed.port

        self.auth_method = (self.auth_method or AUTH_PLAIN).lower()
        if self.auth_method == "oauth2":
            self.auth_method = AUTH_XOAUTH2
        if self.oauth2_client_id:
            self.auth_method = AUTH_XOAUTH2
        if self.auth_method not in AUTH_METHODS:
            raise ValueError(f"Unsupported auth method: {self.auth_method}")
        if self.auth_method != AUTH_XOAUTH2 and not self.password:
            raise ValueError(f"A password is required for {self.auth_method} authentication on {self.host}")
        if self.auth_method == AUTH_XOAUTH2 and not (self.password or self.oauth2_client_id):
            raise ValueError(f"Either an OAuth2 token or an OAuth2 client id is required for {self.host}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")

    @property
    def resolved_port(self) -> int:
        if self.port:
            return self.port
        return DEFAULT_SECURE_PORT if self.secure else DEFAULT_PLAIN_PORT

    @property
    def identity(self) -> tuple[str, int, str]:
        return (self.host.lower(), self.resolved_port, self.username)

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.resolved_port}"

    def redacted(self) -> dict:
        return {
            "host": self.host,
            "port": self.resolved_port,
            "username": self.username,
            "secure": self.secure,
            "auth_method": self.auth_method,
            "password": "[HIDDEN]" if self.password else None,
        }

    @classmethod
    def from_env(cls, prefix: str) -> EndpointConfig:
        """Builds a config from <prefix>_IMAP_HOST / _USERNAME / _PASSWORD / _OAUTH2_CLIENT_ID."""
        return cls(
            host=os.getenv(f"{prefix}_IMAP_HOST", ""),
            username=os.getenv(f"{prefix}_IMAP_USERNAME", ""),
            password=os.getenv(f"{prefix}_IMAP_PASSWORD"),
            port=env_int(f"{prefix}_IMAP_PORT", 0) or None,
            auth_method=os.getenv(f"{prefix}_IMAP_AUTH_METHOD", AUTH_PLAIN),
            oauth2_client_id=os.getenv(f"{prefix}_OAUTH2_CLIENT_ID") or None,
            oauth2_client_secret=os.getenv(f"{prefix}_OAUTH2_CLIENT_SECRET") or None,
        )


@dataclass
class SyncOptions:
    batch_size: int = field(default_factory=default_batch_size)
    preserve_flags: bool = True
    preserve_dates: bool = True
    retry_attempts: int = field(default_factory=default_reconnect_attempts)
    retry_delay: float = field(default_factory=default_reconnect_delay)

    def __post_init__(self):
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {self.batch_size}")
        if not 0 <= self.retry_attempts <= MAX_RETRY_ATTEMPTS:
            raise ValueError(f"retry_attempts must be between 0 and {MAX_RETRY_ATTEMPTS}, got {self.retry_attempts}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got {self.retry_delay}")

    def to_dict(self) -> dict:
        return {
            "batch_size": self.batch_size,
            "preserve_flags": self.preserve_flags,
            "preserve_dates": self.preserve_dates,
            "retry_attempts": self.retry_attempts,
            "retry_delay": self.retry_delay,
        }
