"""
Shared pytest fixtures and utilities for mailmirror tests.
"""

import os
import socket
import sys
from contextlib import contextmanager

import pytest

# Ensure src/tools/test helpers are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from mock_imap_server import start_server_thread

from mailmirror.config import EndpointConfig


def make_endpoint(port, user="user", password="pass", **kwargs):
    """EndpointConfig pointing at a local mock server over plain TCP."""
    kwargs.setdefault("timeout", 5)
    return EndpointConfig(host=f"imap://localhost:{port}", username=user, password=password, **kwargs)


@pytest.fixture
def mock_server_factory():
    """
    Factory fixture that creates mock IMAP server pairs.
    Automatically cleans up all servers after the test.
    """
    servers = []

    def _create(src_data=None, dest_data=None, src_options=None, dest_options=None):
        src_server, src_port = start_server_thread(0, src_data, **(src_options or {}))
        dest_server, dest_port = start_server_thread(0, dest_data, **(dest_options or {}))
        servers.extend([src_server, dest_server])
        return src_server, dest_server, src_port, dest_port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def single_mock_server():
    """
    Creates a single mock IMAP server for tests that only need one server.
    """
    servers = []

    def _create(initial_data=None, **options):
        server, port = start_server_thread(0, initial_data, **options)
        servers.append(server)
        return server, port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def silent_server():
    """A listening socket that never answers, for timeout tests. Yields the port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("localhost", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def log_lines():
    """A list-collecting log_fn, for asserting on log output."""
    lines = []

    def _log(message):
        lines.append(message)

    _log.lines = lines
    return _log


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@contextmanager
def temp_argv(args):
    original = sys.argv[:]
    sys.argv = list(args)
    try:
        yield
    finally:
        sys.argv = original


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


__all__ = [
    "make_endpoint",
    "mock_server_factory",
    "single_mock_server",
    "silent_server",
    "log_lines",
    "temp_env",
    "temp_argv",
]
