"""
Persisted gateway session state.

A single JSON file (``.gateway.pid`` by default) records the orchestrator pid,
its start time and the servers that reached ``running``. Its presence is the
only signal that a session is active; ``--status`` re-probes the recorded
ports because the stored status reflects the moment of the last write, and
``--stop`` uses the pid to signal a detached gateway from a later invocation.
"""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .ports import is_port_in_use
from .types import PersistedTopology, ServerLiveness

LOGGER = logging.getLogger("Gateway.State")


def write_topology(path: Path, topology: PersistedTopology) -> None:
    """Atomically replace the state file with `topology`."""

    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        temp_path.write_text(topology.model_dump_json(indent=2), encoding="utf-8")
        temp_path.replace(path)
    finally:
        temp_path.unlink(missing_ok=True)


def read_topology(path: Path) -> Optional[PersistedTopology]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    if not raw.strip():
        return None
    try:
        return PersistedTopology.model_validate_json(raw)
    except ValidationError as exc:
        LOGGER.warning("Ignoring unreadable state file %s: %s", path, exc)
        return None


def clear_topology(path: Path) -> None:
    path.unlink(missing_ok=True)


def gateway_status(path: Path) -> Optional[list[ServerLiveness]]:
    """Report current port liveness for every persisted server."""

    topology = read_topology(path)
    if topology is None:
        LOGGER.warning("MCP Gateway is not running")
        return None

    LOGGER.info(
        "MCP Gateway status (pid %s, started: %s)",
        topology.pid,
        topology.started.isoformat(),
    )
    report: list[ServerLiveness] = []
    for server in topology.servers:
        running = is_port_in_use(server.port)
        report.append(ServerLiveness(server.name, server.port, running))
        if running:
            LOGGER.info("  - %s: running (port %s)", server.name, server.port)
        else:
            LOGGER.error("  - %s: stopped (port %s)", server.name, server.port)
    return report


def stop_gateway(path: Path) -> bool:
    """Signal a previously started gateway and clear its state file."""

    topology = read_topology(path)
    if topology is None:
        LOGGER.warning("Gateway is not running")
        clear_topology(path)
        return False

    delivered = False
    try:
        os.kill(topology.pid, signal.SIGTERM)
        delivered = True
        LOGGER.info("Sent stop signal to gateway (pid %s)", topology.pid)
    except ProcessLookupError:
        LOGGER.warning("Gateway process not found, cleaning up...")
    except PermissionError as exc:
        LOGGER.error("Not allowed to signal gateway pid %s: %s", topology.pid, exc)

    clear_topology(path)
    return delivered
