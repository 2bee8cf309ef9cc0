"""
Tests for core/connection_manager.py

Tests cover:
- Lease reuse, pooling by endpoint identity and pool capacity
- Dead pooled sessions discarded on reuse and by keepalive
- Idempotent close / close_all
- Reconnect backoff, auth failures not retried, max attempts event
- test_connection outcomes
- Status snapshots and connection events
"""

import pytest
from conftest import make_endpoint
from fake_imap import FakeServer, session_factory

from mailmirror.config import EndpointConfig
from mailmirror.core.connection_manager import ConnectionManager, ConnectionStatus
from mailmirror.errors import AuthenticationError, ImapConnectionError, MaxReconnectAttemptsReached
from mailmirror.events import ConnectionEventType, QueueListener


def _config(host="imap.example.com", user="user", password="pass", **kwargs):
    return EndpointConfig(host=host, username=user, password=password, **kwargs)


@pytest.fixture
def server():
    return FakeServer({"INBOX": []})


@pytest.fixture
def events():
    return QueueListener()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def manager(server, events, sleeps):
    return ConnectionManager(
        session_factory=session_factory({"imap.example.com": server}),
        max_pool_size=2,
        reconnect_attempts=3,
        reconnect_delay=1,
        listeners=[events],
        log_fn=lambda _: None,
        sleep_fn=sleeps.append,
    )


class TestGetConnection:
    def test_new_connection(self, manager, server, events):
        conn = manager.get_connection("job1:source", _config())
        assert conn.status == ConnectionStatus.CONNECTED
        assert conn.identity == ("imap.example.com", 993, "user")
        assert conn.secure is True
        assert len(server.sessions) == 1
        assert [e.type for e in events.drain()] == [ConnectionEventType.CONNECTED]

    def test_same_lease_reuses_connection(self, manager, server):
        first = manager.get_connection("job1:source", _config())
        second = manager.get_connection("job1:source", _config())
        assert first is second
        assert len(server.sessions) == 1

    def test_different_leases_get_different_sessions(self, manager, server):
        a = manager.get_connection("job1:source", _config())
        b = manager.get_connection("job2:source", _config())
        assert a.session is not b.session
        assert len(server.sessions) == 2

    def test_pooled_session_reused_for_same_identity(self, manager, server):
        session = manager.get_connection("job1:source", _config()).session
        manager.return_to_pool("job1:source")
        conn = manager.get_connection("job2:source", _config())
        assert conn.session is session
        assert conn.id == "job2:source"
        assert len(server.sessions) == 1

    def test_pool_not_shared_across_identities(self, manager, server):
        manager.get_connection("job1:source", _config(user="alice"))
        manager.return_to_pool("job1:source")
        manager.get_connection("job2:source", _config(user="bob"))
        assert len(server.sessions) == 2

    def test_dead_pooled_session_discarded(self, manager, server):
        stale = manager.get_connection("job1:source", _config()).session
        manager.return_to_pool("job1:source")
        stale.alive = False
        conn = manager.get_connection("job2:source", _config())
        assert conn.session is not stale
        assert stale.logged_out is True
        assert manager.pool_size(_config()) == 0

    def test_connect_failure_propagates(self, manager, server):
        server.fail("connect", ImapConnectionError("refused"))
        with pytest.raises(ImapConnectionError):
            manager.get_connection("job1:source", _config())
        assert manager.get_connection_status("job1:source") is None


class TestPooling:
    def test_return_to_pool(self, manager):
        manager.get_connection("job1:source", _config())
        manager.return_to_pool("job1:source")
        assert manager.get_connection_status("job1:source") is None
        assert manager.pool_size(_config()) == 1
        pooled = manager.get_all_connections_status()["pooled"]
        assert pooled[0]["status"] == "pooled"

    def test_pool_capacity_closes_overflow(self, manager):
        sessions = [manager.get_connection(f"job{i}:source", _config()).session for i in range(3)]
        for i in range(3):
            manager.return_to_pool(f"job{i}:source")
        assert manager.pool_size(_config()) == 2
        assert sessions[2].logged_out is True

    def test_return_unknown_lease_is_noop(self, manager):
        manager.return_to_pool("nope")

    def test_close_connection_idempotent(self, manager, events):
        session = manager.get_connection("job1:source", _config()).session
        events.drain()
        manager.close_connection("job1:source")
        manager.close_connection("job1:source")
        assert session.logged_out is True
        assert [e.type for e in events.drain()] == [ConnectionEventType.DISCONNECTED]

    def test_close_swallows_logout_errors(self, manager):
        session = manager.get_connection("job1:source", _config()).session

        def broken_logout():
            raise OSError("broken pipe")

        session.logout = broken_logout
        manager.close_connection("job1:source")
        assert manager.get_connection_status("job1:source") is None

    def test_close_all(self, manager):
        active = manager.get_connection("job1:source", _config()).session
        pooled = manager.get_connection("job2:source", _config()).session
        manager.return_to_pool("job2:source")
        manager.close_all()
        manager.close_all()
        assert active.logged_out and pooled.logged_out
        assert manager.get_all_connections_status() == {"active": [], "pooled": []}


class TestReconnect:
    def test_reconnect_replaces_session(self, manager, server, events):
        old = manager.get_connection("job1:source", _config()).session
        events.drain()
        conn = manager.reconnect("job1:source", _config())
        assert conn.session is not old
        assert manager.get_connection("job1:source", _config()) is conn
        assert [e.type for e in events.drain()] == [
            ConnectionEventType.RECONNECTING,
            ConnectionEventType.RECONNECTED,
        ]

    def test_backoff_doubles(self, manager, server, sleeps):
        server.fail("connect", ImapConnectionError("down"), ImapConnectionError("down"))
        manager.reconnect("job1:source", _config(), max_attempts=3, base_delay=2)
        assert sleeps == [2, 4, 8]

    def test_max_attempts_reached(self, manager, server, events, sleeps):
        server.fail("connect", *[ImapConnectionError("down")] * 3)
        with pytest.raises(MaxReconnectAttemptsReached) as exc_info:
            manager.reconnect("job1:source", _config())
        assert exc_info.value.attempts == 3
        assert exc_info.value.code == "MAX_RECONNECT_ATTEMPTS"
        assert sleeps == [1, 2, 4]
        last = events.drain()[-1]
        assert last.type == ConnectionEventType.MAX_RECONNECT_ATTEMPTS_REACHED
        assert last.attempts == 3

    def test_authentication_failure_not_retried(self, manager, server, sleeps):
        server.fail("connect", AuthenticationError("rejected"))
        with pytest.raises(AuthenticationError):
            manager.reconnect("job1:source", _config())
        assert sleeps == [1]

    def test_zero_attempts(self, manager):
        with pytest.raises(MaxReconnectAttemptsReached):
            manager.reconnect("job1:source", _config(), max_attempts=0)


class TestConnectionTest:
    def test_success_does_not_register(self, manager, server):
        result = manager.test_connection(_config())
        assert result.success is True
        assert server.sessions[0].logged_out is True
        assert manager.get_all_connections_status() == {"active": [], "pooled": []}

    def test_auth_failure(self, manager, server):
        server.reject_password = "wrong"
        result = manager.test_connection(_config(password="wrong"))
        assert result.success is False
        assert result.code == "AUTH_FAILED"

    def test_live_server(self, single_mock_server):
        _, port = single_mock_server()
        manager = ConnectionManager(log_fn=lambda _: None)
        assert manager.test_connection(make_endpoint(port)).success is True
        result = manager.test_connection(make_endpoint(port, password="bad"))
        assert result.success is False
        assert result.code == "AUTH_FAILED"
        assert result.hint


class TestKeepalive:
    def test_dead_idle_sessions_dropped(self, manager):
        config = _config(keepalive_interval=0)
        alive = manager.get_connection("a", config).session
        dead = manager.get_connection("b", config).session
        manager.return_to_pool("a")
        manager.return_to_pool("b")
        dead.alive = False
        assert manager.keepalive() == 1
        assert manager.pool_size(config) == 1
        assert dead.logged_out is True
        assert alive.logged_out is False

    def test_recent_sessions_left_alone(self, manager):
        config = _config(keepalive_interval=3600)
        session = manager.get_connection("a", config).session
        manager.return_to_pool("a")
        session.alive = False
        assert manager.keepalive() == 0
        assert manager.pool_size(config) == 1


class TestStatus:
    def test_connection_status_snapshot(self, manager):
        manager.get_connection("job1:destination", _config(auth_method="login"))
        status = manager.get_connection_status("job1:destination")
        assert status["id"] == "job1:destination"
        assert status["status"] == "connected"
        assert status["auth_method"] == "login"
        assert status["port"] == 993
        assert "password" not in status
