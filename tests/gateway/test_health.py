from __future__ import annotations

import asyncio
import json
import time

import httpx
import pytest

from mcp_gateway.health import warmup, warmup_all
from mcp_gateway.manager import TopologyRegistry
from mcp_gateway.types import DiscoveryOutcome


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _sse_ok() -> httpx.Response:
    return httpx.Response(
        200,
        headers={"Content-Type": "text/event-stream"},
        content=b"event: endpoint\ndata: /message\n\n",
    )


class BridgeStub:
    """MockTransport handler imitating a bridge that comes up after N attempts."""

    def __init__(
        self,
        *,
        fail_first: int = 0,
        tools: list[dict] | None = None,
        message_status: int = 200,
    ) -> None:
        self.fail_first = fail_first
        self.tools = tools
        self.message_status = message_status
        self.sse_calls = 0
        self.message_bodies: list[dict] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/sse":
            self.sse_calls += 1
            assert request.headers["Accept"] == "text/event-stream"
            if self.sse_calls <= self.fail_first:
                raise httpx.ConnectError("connection refused", request=request)
            return _sse_ok()
        if request.url.path == "/message":
            self.message_bodies.append(json.loads(request.content))
            if self.tools is None:
                return httpx.Response(self.message_status, json={"error": "no session"})
            return httpx.Response(
                self.message_status,
                json={"jsonrpc": "2.0", "id": 1, "result": {"tools": self.tools}},
            )
        return httpx.Response(404)


@pytest.mark.anyio
async def test_warmup_succeeds_and_caches_tools() -> None:
    stub = BridgeStub(fail_first=2, tools=[{"name": "read"}, {"name": "write"}])
    registry = TopologyRegistry()

    result = await warmup(
        "files", 9001, registry, delay=0.01, transport=httpx.MockTransport(stub)
    )

    assert result.ready is True
    assert result.attempts == 3
    assert result.discovery is DiscoveryOutcome.POPULATED
    assert result.tool_count == 2
    assert registry.capabilities("files") == [{"name": "read"}, {"name": "write"}]
    assert stub.message_bodies == [
        {"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}}
    ]


@pytest.mark.anyio
async def test_discovery_failure_does_not_fail_warmup() -> None:
    stub = BridgeStub(tools=None, message_status=400)
    registry = TopologyRegistry()

    result = await warmup(
        "memory", 9002, registry, delay=0.01, transport=httpx.MockTransport(stub)
    )

    assert result.ready is True
    assert result.attempts == 1
    assert result.discovery is DiscoveryOutcome.FAILED
    assert registry.capabilities("memory") is None


@pytest.mark.anyio
async def test_warmup_exhausts_attempts_for_closed_port() -> None:
    stub = BridgeStub(fail_first=1_000)
    registry = TopologyRegistry()

    started = time.monotonic()
    result = await warmup(
        "dead",
        9003,
        registry,
        attempts=10,
        delay=0.02,
        transport=httpx.MockTransport(stub),
    )
    elapsed = time.monotonic() - started

    assert result.ready is False
    assert result.attempts == 10
    assert result.discovery is DiscoveryOutcome.NOT_ATTEMPTED
    assert stub.sse_calls == 10
    assert stub.message_bodies == []
    assert 0.15 <= elapsed < 2.0


@pytest.mark.anyio
async def test_hung_attempt_is_aborted_without_ending_retry_loop() -> None:
    calls = 0

    async def hang(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        await asyncio.sleep(10)
        return _sse_ok()

    result = await warmup(
        "stuck",
        9004,
        TopologyRegistry(),
        attempts=3,
        delay=0.01,
        attempt_timeout=0.05,
        transport=httpx.MockTransport(hang),
    )

    assert result.ready is False
    assert result.attempts == 3
    assert calls == 3


@pytest.mark.anyio
async def test_warmup_all_marks_only_responsive_servers_ready(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    registry = TopologyRegistry()
    marked: list[str] = []
    monkeypatch.setattr(registry, "mark_ready", marked.append)

    slow = BridgeStub(fail_first=1_000)
    fast = BridgeStub(tools=[{"name": "ping"}])

    async def route(request: httpx.Request) -> httpx.Response:
        handler = slow if request.url.port == 9101 else fast
        return await handler(request)

    results = await warmup_all(
        [("slow", 9101), ("fast", 9102)],
        registry,
        attempts=5,
        delay=0.05,
        transport=httpx.MockTransport(route),
    )

    assert [result.name for result in results] == ["slow", "fast"]
    assert [result.ready for result in results] == [False, True]
    assert marked == ["fast"]
    assert registry.capabilities("fast") == [{"name": "ping"}]


@pytest.mark.anyio
async def test_warmup_all_with_no_servers() -> None:
    assert await warmup_all([], TopologyRegistry()) == []
