from __future__ import annotations

import socket
from typing import Iterator

import pytest

from mcp_gateway.ports import is_port_free, is_port_in_use


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def listener() -> Iterator[int]:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("0.0.0.0", 0))
    sock.listen(1)
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


def test_free_port_reports_free_twice() -> None:
    port = _free_port()

    assert is_port_free(port) is True
    assert is_port_free(port) is True
    assert is_port_in_use(port) is False


def test_bound_port_reports_bound_twice(listener: int) -> None:
    assert is_port_free(listener) is False
    assert is_port_in_use(listener) is True
    assert is_port_in_use(listener) is True


def test_probe_releases_its_socket() -> None:
    port = _free_port()
    assert is_port_free(port)

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("0.0.0.0", port))
        sock.listen(1)
        assert is_port_in_use(port)
