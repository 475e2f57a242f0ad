from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shlex
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from .api import ConfigPublisher, PublisherBindError, create_app, detect_host_ip
from .config import (
    DEFAULT_BRIDGE_COMMAND,
    DEFAULT_CONFIG_HOST,
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONFIG_PORT,
    DEFAULT_SETTLE_DELAY,
    ConfigLoadError,
    GatewayCLIArgs,
    default_state_path,
    load_server_specs,
)
from .health import warmup_all
from .manager import ProcessSupervisor, TopologyRegistry
from .state import clear_topology, gateway_status, stop_gateway, write_topology
from .types import (
    GatewayPhase,
    PersistedServer,
    PersistedTopology,
    ServerSpec,
    ServerStatus,
    StartResult,
    WarmupResult,
)

LOGGER = logging.getLogger("Gateway")

_BANNER = "=" * 60


def parse_args(argv: Sequence[str] | None = None) -> GatewayCLIArgs:
    parser = argparse.ArgumentParser(
        description="Launch MCP servers behind SSE bridges and publish their config."
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "--status",
        action="store_true",
        help="Report liveness of a running gateway without starting anything.",
    )
    actions.add_argument(
        "--stop",
        action="store_true",
        help="Signal a previously started gateway and clear its state file.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("MCP_GATEWAY_CONFIG", DEFAULT_CONFIG_PATH)),
        help="Server definitions JSON. Defaults to MCP_GATEWAY_CONFIG or 'config.json'.",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        default=os.environ.get("MCP_GATEWAY_STATE_FILE"),
        help="Session state file. Defaults to '.gateway.pid' beside the config.",
    )
    parser.add_argument(
        "--config-host",
        default=DEFAULT_CONFIG_HOST,
        help="Interface for the config HTTP server.",
    )
    parser.add_argument(
        "--config-port",
        type=int,
        default=int(os.environ.get("MCP_GATEWAY_CONFIG_PORT", DEFAULT_CONFIG_PORT)),
        help="Port for the config HTTP server.",
    )
    parser.add_argument(
        "--bridge",
        default=shlex.join(DEFAULT_BRIDGE_COMMAND),
        help="Command used to expose each stdio server over SSE.",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for per-server log files (disabled when omitted).",
    )
    parser.add_argument(
        "--settle-delay",
        type=float,
        default=DEFAULT_SETTLE_DELAY,
        help="Seconds to wait after spawning before checking the port.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )

    args = parser.parse_args(argv)
    config_path = args.config.expanduser().resolve()
    state_path = (
        Path(args.state_file).expanduser().resolve()
        if args.state_file
        else default_state_path(config_path)
    )
    bridge = tuple(shlex.split(args.bridge))
    if not bridge:
        parser.error("--bridge must not be empty")

    action = "status" if args.status else "stop" if args.stop else "run"
    return GatewayCLIArgs(
        config_path=config_path,
        state_path=state_path,
        action=action,
        config_host=args.config_host,
        config_port=args.config_port,
        bridge=bridge,
        log_dir=args.log_dir.expanduser().resolve() if args.log_dir else None,
        settle_delay=args.settle_delay,
        log_level=args.log_level,
    )


class Gateway:
    """Drive startup, warmup, publishing and shutdown for one session."""

    def __init__(
        self,
        specs: Sequence[ServerSpec],
        *,
        state_path: Path,
        config_host: str = DEFAULT_CONFIG_HOST,
        config_port: int = DEFAULT_CONFIG_PORT,
        bridge: Sequence[str] = DEFAULT_BRIDGE_COMMAND,
        log_dir: Optional[Path] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        host_ip: Optional[str] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        registry: Optional[TopologyRegistry] = None,
        warmup_options: Optional[dict[str, Any]] = None,
    ) -> None:
        self.specs = list(specs)
        self.state_path = state_path
        self.host_ip = host_ip or detect_host_ip()
        self.config_port = config_port
        self.registry = registry or TopologyRegistry()
        self.supervisor = supervisor or ProcessSupervisor(
            self.registry,
            bridge=bridge,
            log_dir=log_dir,
            settle_delay=settle_delay,
        )
        self.publisher = ConfigPublisher(
            create_app(self.specs, fallback_host=self.host_ip, config_port=config_port),
            host=config_host,
            port=config_port,
        )
        self.phase = GatewayPhase.IDLE
        self.results: list[StartResult] = []
        self.warmups: list[WarmupResult] = []
        self._warmup_options = dict(warmup_options or {})
        self._stop_event: Optional[asyncio.Event] = None
        self._shutdown_task: Optional[asyncio.Task[None]] = None
        self._state_written = False
        self._loop_signals: list[signal.Signals] = []
        self._previous_handlers: dict[signal.Signals, Any] = {}

    @property
    def stop_event(self) -> asyncio.Event:
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    async def start(self) -> list[StartResult]:
        self.phase = GatewayPhase.STARTING
        LOGGER.info("MCP Gateway starting...")
        LOGGER.info("Host IP: %s", self.host_ip)

        await self.publisher.start()
        LOGGER.info(
            "Config server: http://%s:%s/config.json", self.host_ip, self.config_port
        )

        for spec in self.specs:
            self.results.append(await self.supervisor.start(spec))

        self.phase = GatewayPhase.RUNNING
        running = [
            (result.name, result.port)
            for result in self.results
            if result.status is ServerStatus.RUNNING
        ]
        if running:
            LOGGER.info("Warming up servers...")
            self.warmups = await warmup_all(
                running, self.registry, **self._warmup_options
            )

        write_topology(self.state_path, self._topology())
        self._state_written = True
        self._log_instructions()
        return self.results

    def _topology(self) -> PersistedTopology:
        return PersistedTopology(
            pid=os.getpid(),
            started=datetime.now(timezone.utc),
            servers=[
                PersistedServer(name=result.name, port=result.port, status=result.status)
                for result in self.results
                if result.status is ServerStatus.RUNNING
            ],
        )

    def _log_instructions(self) -> None:
        LOGGER.info(_BANNER)
        LOGGER.info("MCP Gateway is running")
        LOGGER.info(_BANNER)
        LOGGER.info("Active servers:")
        for result in self.results:
            if result.status is ServerStatus.RUNNING:
                LOGGER.info("  - %s: port %s", result.name, result.port)
        LOGGER.info(_BANNER)
        LOGGER.info("Connecting from WSL/Linux:")
        LOGGER.info("Option 1: point an MCP client at each server")
        for spec in self.specs:
            if spec.enabled:
                LOGGER.info(
                    "  %s -> npx -y mcp-remote \"http://%s:%s/sse\" --allow-http",
                    spec.name,
                    self.host_ip,
                    spec.port,
                )
        LOGGER.info("Option 2: download .mcp.json")
        LOGGER.info(
            "  curl http://%s:%s/config.json > .mcp.json",
            self.host_ip,
            self.config_port,
        )
        LOGGER.info(_BANNER)
        LOGGER.info("Press Ctrl+C to stop")

    def request_stop(self) -> None:
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
                self._loop_signals.append(sig)
            except (NotImplementedError, RuntimeError):
                previous = signal.signal(
                    sig, lambda *_: loop.call_soon_threadsafe(self.request_stop)
                )
                self._previous_handlers[sig] = (
                    previous if previous is not None else signal.SIG_DFL
                )

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._loop_signals:
            loop.remove_signal_handler(sig)
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous)
        self._loop_signals.clear()
        self._previous_handlers.clear()

    async def shutdown(self) -> None:
        """Stop publisher, terminate children, clear state; runs once."""

        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        self.phase = GatewayPhase.SHUTTING_DOWN
        LOGGER.warning("Shutting down MCP Gateway...")
        try:
            await self.publisher.stop()
            await self.supervisor.terminate_all()
        finally:
            if self._state_written:
                clear_topology(self.state_path)
            self.phase = GatewayPhase.STOPPED
        LOGGER.info("MCP Gateway stopped")

    async def run(self) -> None:
        self.install_signal_handlers()
        try:
            await self.start()
            await self.stop_event.wait()
        finally:
            try:
                await self.shutdown()
            finally:
                self.remove_signal_handlers()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    if args.action == "status":
        gateway_status(args.state_path)
        return 0
    if args.action == "stop":
        stop_gateway(args.state_path)
        return 0

    try:
        specs = load_server_specs(args.config_path)
    except ConfigLoadError as exc:
        LOGGER.error("Failed to load config: %s", exc)
        return 1

    gateway = Gateway(
        specs,
        state_path=args.state_path,
        config_host=args.config_host,
        config_port=args.config_port,
        bridge=args.bridge,
        log_dir=args.log_dir,
        settle_delay=args.settle_delay,
    )
    LOGGER.info("Config: %s", args.config_path)

    try:
        asyncio.run(gateway.run())
    except PublisherBindError as exc:
        LOGGER.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        LOGGER.info("Shutdown requested by user.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
