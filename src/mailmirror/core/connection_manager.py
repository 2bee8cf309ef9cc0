"""
Connection Manager

Owns every live IMAP session of the process. Sessions are leased to jobs
under a connection id (e.g. "<job id>:source") and parked in a pool keyed by
endpoint identity (host, port, username) when the lease is returned, so the
next job against the same account skips the handshake.

The registry and pools are guarded by one lock; network I/O (handshake,
NOOP validation, LOGOUT) always happens outside it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from mailmirror import config as mm_config
from mailmirror.config import EndpointConfig
from mailmirror.core.imap_session import ImapSession
from mailmirror.errors import AuthenticationError, ImapConnectionError, MaxReconnectAttemptsReached, SyncError
from mailmirror.events import ConnectionEvent, ConnectionEventType, EventDispatcher
from mailmirror.models import utcnow
from mailmirror.utils.imap_common import safe_print


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    POOLED = "pooled"
    ERROR = "error"
    CLOSED = "closed"


@dataclass
class Connection:
    id: str
    config: EndpointConfig
    session: ImapSession
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    connected_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    error_count: int = 0

    @property
    def identity(self) -> tuple[str, int, str]:
        return self.config.identity

    @property
    def secure(self) -> bool:
        return self.config.secure

    @property
    def auth_method(self) -> str:
        return self.config.auth_method

    @property
    def idle_seconds(self) -> float:
        return (utcnow() - self.last_activity).total_seconds()

    def touch(self) -> None:
        self.last_activity = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "host": self.config.host,
            "port": self.config.resolved_port,
            "username": self.config.username,
            "secure": self.secure,
            "auth_method": self.auth_method,
            "status": self.status.value,
            "connected_at": self.connected_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "error_count": self.error_count,
        }


@dataclass
class ConnectionTestResult:
    success: bool
    error: str | None = None
    code: str | None = None
    hint: str | None = None


class ConnectionManager:
    def __init__(
        self,
        session_factory=ImapSession.open,
        max_pool_size=None,
        reconnect_attempts=None,
        reconnect_delay=None,
        listeners=None,
        log_fn=safe_print,
        sleep_fn=time.sleep,
    ):
        self._session_factory = session_factory
        self.max_pool_size = mm_config.default_pool_size() if max_pool_size is None else max_pool_size
        self.reconnect_attempts = (
            mm_config.default_reconnect_attempts() if reconnect_attempts is None else reconnect_attempts
        )
        self.reconnect_delay = mm_config.default_reconnect_delay() if reconnect_delay is None else reconnect_delay
        if self.max_pool_size < 0:
            raise ValueError(f"max_pool_size must be >= 0, got {self.max_pool_size}")

        self._events = EventDispatcher(listeners, log_fn=log_fn)
        self._log_fn = log_fn
        self._sleep_fn = sleep_fn
        self._lock = threading.Lock()
        self._active: dict[str, Connection] = {}
        self._pools: dict[tuple[str, int, str], list[Connection]] = {}

    def add_listener(self, listener) -> None:
        self._events.add_listener(listener)

    def _emit(self, event_type, connection_id, attempts=0, error=None):
        self._events.dispatch(ConnectionEvent(event_type, connection_id, attempts=attempts, error=error))

    def _open(self, connection_id: str, config: EndpointConfig) -> Connection:
        session = self._session_factory(config, log_fn=self._log_fn)
        return Connection(id=connection_id, config=config, session=session, status=ConnectionStatus.CONNECTED)

    def _register(self, conn: Connection) -> Connection:
        with self._lock:
            previous = self._active.get(conn.id)
            self._active[conn.id] = conn
        if previous is not None and previous is not conn:
            self._close_quietly(previous)
        conn.status = ConnectionStatus.CONNECTED
        conn.touch()
        return conn

    def _close_quietly(self, conn: Connection) -> None:
        conn.status = ConnectionStatus.CLOSED
        try:
            conn.session.logout()
        except (SyncError, OSError) as e:
            self._log_fn(f"Error closing connection {conn.id} ({conn.config.describe()}): {e}")

    def _take_pooled(self, config: EndpointConfig) -> Connection | None:
        """Pops pooled sessions for the identity until one answers NOOP."""
        while True:
            with self._lock:
                pool = self._pools.get(config.identity)
                if not pool:
                    return None
                conn = pool.pop()
            if conn.session.noop():
                return conn
            conn.error_count += 1
            self._log_fn(f"Discarding dead pooled connection to {config.describe()}")
            self._close_quietly(conn)

    def get_connection(self, connection_id: str, config: EndpointConfig) -> Connection:
        """
        Returns a connected session for the lease id, reusing the existing
        lease, then a pooled session, then opening a new one.

        Raises:
            ImapConnectionError (or subclasses): the session could not be established.
        """
        with self._lock:
            existing = self._active.get(connection_id)
        if existing is not None:
            if existing.status == ConnectionStatus.CONNECTED and existing.identity == config.identity:
                existing.touch()
                return existing
            self.close_connection(connection_id)

        pooled = self._take_pooled(config)
        if pooled is not None:
            pooled.id = connection_id
            pooled.config = config
            self._log_fn(f"Reusing pooled connection to {config.describe()} for {connection_id}")
            return self._register(pooled)

        self._log_fn(f"Connecting to {config.describe()} for {connection_id}...")
        conn = self._register(self._open(connection_id, config))
        self._emit(ConnectionEventType.CONNECTED, connection_id)
        return conn

    def return_to_pool(self, connection_id: str) -> None:
        """Releases the lease. The session is pooled while the identity's pool has room, closed otherwise."""
        overflow = None
        with self._lock:
            conn = self._active.pop(connection_id, None)
            if conn is None:
                return
            if conn.status != ConnectionStatus.CONNECTED:
                overflow = conn
            else:
                pool = self._pools.setdefault(conn.identity, [])
                if len(pool) < self.max_pool_size:
                    conn.status = ConnectionStatus.POOLED
                    conn.touch()
                    pool.append(conn)
                else:
                    overflow = conn
        if overflow is not None:
            self._close_quietly(overflow)
            self._emit(ConnectionEventType.DISCONNECTED, connection_id)

    def close_connection(self, connection_id: str) -> None:
        with self._lock:
            conn = self._active.pop(connection_id, None)
        if conn is None:
            return
        self._close_quietly(conn)
        self._emit(ConnectionEventType.DISCONNECTED, connection_id)

    def close_all(self) -> None:
        with self._lock:
            active = list(self._active.values())
            pooled = [conn for pool in self._pools.values() for conn in pool]
            self._active.clear()
            self._pools.clear()
        for conn in active:
            self._close_quietly(conn)
            self._emit(ConnectionEventType.DISCONNECTED, conn.id)
        for conn in pooled:
            self._close_quietly(conn)
        if active or pooled:
            self._log_fn(f"Closed {len(active)} active and {len(pooled)} pooled connection(s)")

    def reconnect(self, connection_id: str, config: EndpointConfig, max_attempts=None, base_delay=None) -> Connection:
        """
        Replaces a dropped session, waiting base_delay * 2**attempt before
        each attempt.

        Raises:
            AuthenticationError: credentials rejected; never retried.
            MaxReconnectAttemptsReached: every attempt failed.
        """
        max_attempts = self.reconnect_attempts if max_attempts is None else max_attempts
        base_delay = self.reconnect_delay if base_delay is None else base_delay

        with self._lock:
            dropped = self._active.pop(connection_id, None)
        if dropped is not None:
            dropped.status = ConnectionStatus.ERROR
            dropped.error_count += 1
            self._close_quietly(dropped)

        last_error = None
        for attempt in range(max_attempts):
            delay = base_delay * (2**attempt)
            self._log_fn(
                f"Reconnecting {connection_id} to {config.describe()} in {delay}s "
                f"(attempt {attempt + 1}/{max_attempts})..."
            )
            self._emit(ConnectionEventType.RECONNECTING, connection_id, attempts=attempt + 1)
            self._sleep_fn(delay)
            try:
                conn = self._register(self._open(connection_id, config))
            except AuthenticationError:
                raise
            except ImapConnectionError as e:
                last_error = e
                self._log_fn(f"Reconnect attempt {attempt + 1}/{max_attempts} for {connection_id} failed: {e}")
                continue
            self._log_fn(f"Reconnected {connection_id} to {config.describe()}")
            self._emit(ConnectionEventType.RECONNECTED, connection_id, attempts=attempt + 1)
            return conn

        message = f"Could not reconnect {connection_id} to {config.describe()} after {max_attempts} attempt(s)"
        if last_error is not None:
            message = f"{message}: {last_error}"
        self._emit(
            ConnectionEventType.MAX_RECONNECT_ATTEMPTS_REACHED,
            connection_id,
            attempts=max_attempts,
            error=str(last_error) if last_error else None,
        )
        raise MaxReconnectAttemptsReached(message, attempts=max_attempts)

    def test_connection(self, config: EndpointConfig) -> ConnectionTestResult:
        """Connects, authenticates and logs out. Never touches the registry or the pools."""
        try:
            session = self._session_factory(config, log_fn=self._log_fn)
        except SyncError as e:
            return ConnectionTestResult(False, error=e.message, code=e.code, hint=getattr(e, "hint", None))
        try:
            session.logout()
        except (SyncError, OSError) as e:
            self._log_fn(f"Logout after connection test to {config.describe()} failed: {e}")
        return ConnectionTestResult(True)

    def keepalive(self) -> int:
        """NOOPs pooled sessions idle past their keepalive interval. Returns how many were dropped."""
        due = []
        with self._lock:
            for identity, pool in self._pools.items():
                keep = []
                for conn in pool:
                    if conn.idle_seconds >= conn.config.keepalive_interval:
                        due.append(conn)
                    else:
                        keep.append(conn)
                self._pools[identity] = keep

        dropped = 0
        alive = []
        for conn in due:
            if conn.session.noop():
                conn.touch()
                alive.append(conn)
            else:
                conn.error_count += 1
                self._close_quietly(conn)
                dropped += 1

        overflow = []
        with self._lock:
            for conn in alive:
                pool = self._pools.setdefault(conn.identity, [])
                if len(pool) < self.max_pool_size:
                    pool.append(conn)
                else:
                    overflow.append(conn)
        for conn in overflow:
            self._close_quietly(conn)
        if dropped:
            self._log_fn(f"Keepalive dropped {dropped} dead pooled connection(s)")
        return dropped

    def get_connection_status(self, connection_id: str) -> dict | None:
        with self._lock:
            conn = self._active.get(connection_id)
            return conn.to_dict() if conn else None

    def get_all_connections_status(self) -> dict:
        with self._lock:
            return {
                "active": [conn.to_dict() for conn in self._active.values()],
                "pooled": [conn.to_dict() for pool in self._pools.values() for conn in pool],
            }

    def pool_size(self, config: EndpointConfig) -> int:
        with self._lock:
            return len(self._pools.get(config.identity, []))
