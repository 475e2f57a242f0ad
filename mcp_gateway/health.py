from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

import httpx

from .manager import TopologyRegistry
from .types import DiscoveryOutcome, WarmupResult

LOGGER = logging.getLogger("Gateway.Health")

DEFAULT_WARMUP_ATTEMPTS = 10
DEFAULT_WARMUP_DELAY = 0.5
DEFAULT_ATTEMPT_TIMEOUT = 3.0

_TOOLS_LIST_REQUEST: dict[str, Any] = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "tools/list",
    "params": {},
}


async def _open_event_stream(client: httpx.AsyncClient, url: str) -> bool:
    async with client.stream(
        "GET", url, headers={"Accept": "text/event-stream"}
    ) as response:
        return response.is_success


async def _discover_tools(
    client: httpx.AsyncClient,
    name: str,
    url: str,
    registry: TopologyRegistry,
) -> tuple[DiscoveryOutcome, int]:
    try:
        response = await client.post(url, json=_TOOLS_LIST_REQUEST)
        if not response.is_success:
            LOGGER.debug("%s: tools/list returned %s", name, response.status_code)
            return DiscoveryOutcome.FAILED, 0
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        LOGGER.debug("%s: tools/list failed: %s", name, exc)
        return DiscoveryOutcome.FAILED, 0

    result = data.get("result") if isinstance(data, dict) else None
    tools = result.get("tools") if isinstance(result, dict) else None
    if not isinstance(tools, list):
        return DiscoveryOutcome.FAILED, 0

    registry.cache_capabilities(name, tools)
    LOGGER.debug("  %s: cached %s tools", name, len(tools))
    return DiscoveryOutcome.POPULATED, len(tools)


async def warmup(
    name: str,
    port: int,
    registry: TopologyRegistry,
    *,
    attempts: int = DEFAULT_WARMUP_ATTEMPTS,
    delay: float = DEFAULT_WARMUP_DELAY,
    attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT,
    host: str = "127.0.0.1",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> WarmupResult:
    """Poll the server's SSE endpoint until it answers, then prime its tool cache."""

    sse_url = f"http://{host}:{port}/sse"
    message_url = f"http://{host}:{port}/message"
    attempt = 0
    async with httpx.AsyncClient(
        timeout=attempt_timeout, transport=transport
    ) as client:
        while attempt < attempts:
            attempt += 1
            try:
                connected = await asyncio.wait_for(
                    _open_event_stream(client, sse_url), timeout=attempt_timeout
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as exc:
                LOGGER.debug(
                    "Warmup attempt %s for %s failed: %r", attempt, name, exc
                )
                connected = False

            if connected:
                LOGGER.info("  %s: warmed up (attempt %s)", name, attempt)
                discovery, tool_count = await _discover_tools(
                    client, name, message_url, registry
                )
                return WarmupResult(
                    name=name,
                    port=port,
                    ready=True,
                    attempts=attempt,
                    discovery=discovery,
                    tool_count=tool_count,
                )

            if attempt < attempts:
                await asyncio.sleep(delay)

    LOGGER.warning("  %s: warmup failed after %s attempts", name, attempt)
    return WarmupResult(name=name, port=port, ready=False, attempts=attempt)


async def warmup_all(
    servers: Iterable[tuple[str, int]],
    registry: TopologyRegistry,
    **kwargs: Any,
) -> list[WarmupResult]:
    """Warm every server concurrently and mark the responsive ones ready."""

    targets = list(servers)
    if not targets:
        return []

    results = await asyncio.gather(
        *(warmup(name, port, registry, **kwargs) for name, port in targets)
    )
    for result in results:
        if result.ready:
            registry.mark_ready(result.name)
    return list(results)
