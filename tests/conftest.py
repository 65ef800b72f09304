"""Shared pytest fixtures for gauge tests."""

import socket

import pytest

from gauge.config import GaugePaths, ProxyConfig


@pytest.fixture
def paths(tmp_path):
    """State directory isolated to the test."""
    state_dir = tmp_path / ".claude"
    state_dir.mkdir()
    return GaugePaths(state_dir=state_dir)


@pytest.fixture
def proxy_config(paths):
    """Small limits so tests can hit them quickly."""
    return ProxyConfig(
        max_connections=3,
        max_body_bytes=1024,
        supervised=False,
        paths=paths,
    )


@pytest.fixture
def free_port():
    """A loopback port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def bound_port():
    """A loopback port held by a foreign listener for the test's duration."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()
