from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import socket
from typing import Any, Awaitable, Callable, Iterable, Iterator, Optional, Sequence

import psutil
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import (
    DEFAULT_CONFIG_HOST,
    DEFAULT_CONFIG_PORT,
    DEFAULT_REMOTE_CLIENT_ARGS,
    DEFAULT_REMOTE_CLIENT_COMMAND,
)
from .types import ServerSpec

LOGGER = logging.getLogger("Gateway.API")

CONFIG_ROUTES = ("/config", "/config.json", "/.mcp.json")
_MAPPED_IPV4_PREFIX = "::ffff:"
_WSL_INTERFACE_MARKERS = ("WSL", "vEthernet")
_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET",
}


class PublisherBindError(RuntimeError):
    """Raised when the config server cannot bind its listening port."""


def detect_host_ip() -> str:
    """Best guess at the host address a WSL guest or container can reach."""

    try:
        interfaces = psutil.net_if_addrs()
    except (OSError, RuntimeError) as exc:  # pragma: no cover - platform specific
        LOGGER.debug("Interface enumeration failed: %s", exc)
        return "localhost"

    def _external_ipv4(addresses: Iterable[Any]) -> Optional[str]:
        for address in addresses:
            if address.family == socket.AF_INET and not address.address.startswith(
                "127."
            ):
                return address.address
        return None

    for name, addresses in interfaces.items():
        if any(marker in name for marker in _WSL_INTERFACE_MARKERS):
            found = _external_ipv4(addresses)
            if found:
                return found

    for addresses in interfaces.values():
        found = _external_ipv4(addresses)
        if found:
            return found

    return "localhost"


def resolve_client_view(
    server_addr: Optional[Sequence[Any]], fallback: str
) -> str:
    """Return the local address the client used to reach us."""

    if not server_addr:
        return fallback
    host = server_addr[0]
    if not host:
        return fallback
    host = str(host)
    if host.startswith(_MAPPED_IPV4_PREFIX):
        host = host[len(_MAPPED_IPV4_PREFIX) :]
    return host


def remote_server_entry(
    host: str,
    port: int,
    *,
    command: str = DEFAULT_REMOTE_CLIENT_COMMAND,
    client_args: Sequence[str] = DEFAULT_REMOTE_CLIENT_ARGS,
) -> dict[str, Any]:
    return {
        "command": command,
        "args": [*client_args, f"http://{host}:{port}/sse", "--allow-http"],
    }


def render_mcp_config(specs: Iterable[ServerSpec], host: str) -> dict[str, Any]:
    """Build the `.mcp.json` document for a client reaching us via `host`."""

    return {
        "mcpServers": {
            spec.name: remote_server_entry(host, spec.port)
            for spec in specs
            if spec.enabled
        }
    }


def _usage_text(config_port: int) -> str:
    return f"""MCP Gateway Config Server

Endpoints:
  GET /config.json - fetch the generated .mcp.json

Usage from WSL:
  curl http://<HOST_IP>:{config_port}/config.json > .mcp.json

Finding the host IP from WSL:
  ip route | grep default | awk '{{print $3}}'
"""


def create_app(
    specs: Sequence[ServerSpec],
    *,
    fallback_host: str = "localhost",
    config_port: int = DEFAULT_CONFIG_PORT,
) -> FastAPI:
    app = FastAPI(
        title="MCP Gateway Config Server",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    published = [spec for spec in specs if spec.enabled]

    @app.middleware("http")
    async def _cors_headers(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers.update(_CORS_HEADERS)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _plain_errors(
        request: Request, exc: StarletteHTTPException
    ) -> PlainTextResponse:
        if exc.status_code == 404:
            return PlainTextResponse("Not found", status_code=404)
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.get("/", response_class=PlainTextResponse)
    async def usage() -> PlainTextResponse:
        return PlainTextResponse(_usage_text(config_port))

    async def mcp_config(request: Request) -> Response:
        host = resolve_client_view(request.scope.get("server"), fallback_host)
        LOGGER.debug("Serving config for client view %s", host)
        body = json.dumps(render_mcp_config(published, host), indent=2)
        return Response(content=body, media_type="application/json")

    for path in CONFIG_ROUTES:
        app.add_api_route(path, mcp_config, methods=["GET"])

    return app


class _PublisherServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the gateway."""

    def install_signal_handlers(self) -> None:  # pragma: no cover - older uvicorn
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class ConfigPublisher:
    """Serve the config app on a fixed port in the background."""

    def __init__(
        self,
        app: FastAPI,
        *,
        host: str = DEFAULT_CONFIG_HOST,
        port: int = DEFAULT_CONFIG_PORT,
    ) -> None:
        self.host = host
        self.port = port
        self._app = app
        self._server: Optional[_PublisherServer] = None
        self._task: Optional[asyncio.Task[None]] = None

    def _bind(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(128)
        except OSError as exc:
            sock.close()
            raise PublisherBindError(
                f"Config server cannot bind {self.host}:{self.port}: {exc}"
            ) from exc
        sock.setblocking(False)
        return sock

    async def start(self) -> None:
        sock = self._bind()
        config = uvicorn.Config(self._app, log_level="warning", lifespan="off")
        server = _PublisherServer(config)
        self._server = server
        self._task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started:
            if self._task.done():
                sock.close()
                exc = self._task.exception()
                self._server = None
                self._task = None
                raise PublisherBindError(
                    f"Config server on port {self.port} exited during startup: {exc}"
                )
            await asyncio.sleep(0.05)

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._server = None
            self._task = None
