from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from .config import DEFAULT_BRIDGE_COMMAND, DEFAULT_SETTLE_DELAY
from .launcher import launch_server
from .ports import is_port_in_use
from .types import (
    Capability,
    ProcessExit,
    ProcessRecord,
    ServerSpec,
    ServerStatus,
    StartResult,
)

LOGGER = logging.getLogger("Gateway.Registry")
SUPERVISOR_LOGGER = logging.getLogger("Gateway.Supervisor")

LaunchServerFunc = Callable[..., Awaitable[ProcessRecord]]
PortCheckFunc = Callable[[int], bool]
_SHUTDOWN_TIMEOUT = 10.0
_WATCHER_TIMEOUT = 5.0
_PUMP_DRAIN_TIMEOUT = 1.0
_EXIT_POLL_INTERVAL = 0.1
_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class TopologyRegistry:
    """Track live bridge processes and the capabilities they advertise."""

    def __init__(self) -> None:
        self._records: dict[str, ProcessRecord] = {}
        self._capabilities: dict[str, list[Capability]] = {}

    def register(self, record: ProcessRecord) -> None:
        self._records[record.name] = record

    def get(self, name: str) -> Optional[ProcessRecord]:
        return self._records.get(name)

    def records(self) -> List[ProcessRecord]:
        return list(self._records.values())

    def names(self) -> List[str]:
        return list(self._records)

    def on_process_exit(self, event: ProcessExit) -> None:
        record = self._records.get(event.name)
        if record is None or record.process.pid != event.pid:
            LOGGER.debug(
                "Ignoring exit of untracked process '%s' (pid=%s).",
                event.name,
                event.pid,
            )
            return

        requested = record.status is ServerStatus.EXITED
        record.status = ServerStatus.EXITED
        record.ready = False
        del self._records[event.name]

        if event.returncode == 0 or requested:
            LOGGER.info("%s exited with code %s", event.name, event.returncode)
        else:
            log_hint = f" (log file: {record.log_path})" if record.log_path else ""
            LOGGER.error(
                "%s exited with code %s.%s", event.name, event.returncode, log_hint
            )

    def mark_ready(self, name: str) -> None:
        record = self._records.get(name)
        if record is None or not record.alive:
            LOGGER.warning(
                "Attempted to mark '%s' ready but its process is not running.", name
            )
            return
        record.ready = True

    def ready_names(self) -> List[str]:
        return [
            record.name
            for record in self._records.values()
            if record.ready and record.alive
        ]

    def cache_capabilities(self, name: str, tools: Sequence[Capability]) -> None:
        self._capabilities[name] = list(tools)

    def capabilities(self, name: str) -> Optional[list[Capability]]:
        tools = self._capabilities.get(name)
        return list(tools) if tools is not None else None


class ProcessSupervisor:
    """Start, observe, and terminate one bridge process per server spec."""

    def __init__(
        self,
        registry: TopologyRegistry,
        *,
        bridge: Sequence[str] = DEFAULT_BRIDGE_COMMAND,
        log_dir: Optional[Path] = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        launch_fn: LaunchServerFunc = launch_server,
        port_in_use: PortCheckFunc = is_port_in_use,
    ) -> None:
        self._registry = registry
        self._bridge = tuple(bridge)
        self._log_dir = log_dir
        self._settle_delay = settle_delay
        self._launch_server = launch_fn
        self._port_in_use = port_in_use
        self._watchers: dict[int, asyncio.Task[None]] = {}

    async def start(self, spec: ServerSpec) -> StartResult:
        """Start `spec`; every failure is reported through the result."""

        if not spec.enabled:
            SUPERVISOR_LOGGER.warning("Skipping %s (disabled)", spec.name)
            return StartResult(spec.name, spec.port, ServerStatus.SKIPPED, "disabled")

        if self._port_in_use(spec.port):
            SUPERVISOR_LOGGER.warning(
                "Port %s already in use for %s", spec.port, spec.name
            )
            return StartResult(
                spec.name, spec.port, ServerStatus.SKIPPED, "port in use"
            )

        SUPERVISOR_LOGGER.info("Starting %s on port %s...", spec.name, spec.port)
        if spec.description:
            SUPERVISOR_LOGGER.info("  %s", spec.description)

        try:
            record = await self._launch_server(
                spec, bridge=self._bridge, log_dir=self._log_dir
            )
        except (OSError, ValueError) as exc:
            SUPERVISOR_LOGGER.error("%s error: %s", spec.name, exc)
            return StartResult(spec.name, spec.port, ServerStatus.FAILED, str(exc))

        self._registry.register(record)
        self._watch(record)

        await asyncio.sleep(self._settle_delay)

        if not record.alive:
            reason = f"exited with code {record.process.returncode}"
            SUPERVISOR_LOGGER.error("%s failed to start: %s", spec.name, reason)
            record.status = ServerStatus.FAILED
            return StartResult(spec.name, spec.port, ServerStatus.FAILED, reason)

        if self._port_in_use(spec.port):
            record.status = ServerStatus.RUNNING
            SUPERVISOR_LOGGER.info(
                "%s started successfully on http://localhost:%s", spec.name, spec.port
            )
            return StartResult(spec.name, spec.port, ServerStatus.RUNNING)

        record.status = ServerStatus.FAILED
        SUPERVISOR_LOGGER.error("%s failed to start", spec.name)
        return StartResult(
            spec.name, spec.port, ServerStatus.FAILED, "port not bound after settle"
        )

    async def terminate_all(self, timeout: float = _SHUTDOWN_TIMEOUT) -> None:
        """Terminate every tracked process, escalating to kill on timeout."""

        records = self._registry.records()
        for record in records:
            if not record.alive:
                continue
            SUPERVISOR_LOGGER.info(
                "Stopping %s (pid=%s)...", record.name, record.process.pid
            )
            record.status = ServerStatus.EXITED
            _send_signal(record, signal.SIGTERM)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        for record in records:
            if not record.alive:
                continue
            remaining = max(0.0, deadline - loop.time())
            try:
                await asyncio.wait_for(wait_for_exit(record.process), timeout=remaining)
            except asyncio.TimeoutError:
                SUPERVISOR_LOGGER.warning(
                    "%s did not exit within %.1fs; forcing kill.",
                    record.name,
                    timeout,
                )
                _send_signal(record, _KILL_SIGNAL)
                await wait_for_exit(record.process)

        watchers = list(self._watchers.values())
        if watchers:
            _, pending = await asyncio.wait(watchers, timeout=_WATCHER_TIMEOUT)
            for task in pending:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

    def _watch(self, record: ProcessRecord) -> None:
        pid = record.process.pid
        task = asyncio.create_task(self._observe_exit(record))
        self._watchers[pid] = task
        task.add_done_callback(lambda _: self._watchers.pop(pid, None))

    async def _observe_exit(self, record: ProcessRecord) -> None:
        returncode = await wait_for_exit(record.process)
        self._registry.on_process_exit(
            ProcessExit(name=record.name, pid=record.process.pid, returncode=returncode)
        )
        await _drain_output(record)


async def wait_for_exit(
    process: asyncio.subprocess.Process, poll_interval: float = _EXIT_POLL_INTERVAL
) -> int:
    """Return the exit code as soon as the process is gone.

    ``Process.wait()`` can keep waiting while a descendant still holds the
    child's stdout/stderr, so the return code is polled alongside it.
    """

    waiter = asyncio.ensure_future(process.wait())
    try:
        while process.returncode is None:
            done, _ = await asyncio.wait({waiter}, timeout=poll_interval)
            if done:
                return waiter.result()
        return process.returncode
    finally:
        if not waiter.done():
            waiter.cancel()


async def _drain_output(record: ProcessRecord) -> None:
    if not record.pump_tasks:
        return
    _, pending = await asyncio.wait(record.pump_tasks, timeout=_PUMP_DRAIN_TIMEOUT)
    if pending:
        SUPERVISOR_LOGGER.debug(
            "%s output still open after exit; dropping %s reader(s).",
            record.name,
            len(pending),
        )
        for task in pending:
            task.cancel()
    await asyncio.gather(*record.pump_tasks, return_exceptions=True)


def _send_signal(record: ProcessRecord, sig: int) -> None:
    try:
        if record.process_group:
            os.killpg(record.process.pid, sig)
        elif sig == signal.SIGTERM:
            record.process.terminate()
        else:
            record.process.kill()
    except ProcessLookupError:
        pass
