from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ServerStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    EXITED = "exited"
    SKIPPED = "skipped"


class DiscoveryOutcome(str, Enum):
    """Result of the best-effort `tools/list` call made after warmup."""

    NOT_ATTEMPTED = "not_attempted"
    FAILED = "failed"
    POPULATED = "populated"


class GatewayPhase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ServerSpec(BaseModel):
    """A single MCP server entry from the gateway config file."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(min_length=1)
    command: str
    args: Tuple[str, ...] = ()
    port: int = Field(ge=1, le=65535)
    enabled: bool = True
    description: str = ""


@dataclass
class ProcessRecord:
    """Tracking metadata for a spawned bridge process."""

    spec: ServerSpec
    process: asyncio.subprocess.Process
    status: ServerStatus = ServerStatus.STARTING
    ready: bool = False
    log_path: Optional[Path] = None
    pump_tasks: List[asyncio.Task[None]] = field(default_factory=list)
    # Bridge leads its own session; signals go to the whole group.
    process_group: bool = False

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def port(self) -> int:
        return self.spec.port

    @property
    def alive(self) -> bool:
        return self.process.returncode is None


@dataclass(frozen=True)
class StartResult:
    """Outcome of attempting to start one server."""

    name: str
    port: int
    status: ServerStatus
    reason: Optional[str] = None


@dataclass(frozen=True)
class ProcessExit:
    """Emitted once when a tracked process terminates."""

    name: str
    pid: int
    returncode: Optional[int]


@dataclass(frozen=True)
class WarmupResult:
    name: str
    port: int
    ready: bool
    attempts: int
    discovery: DiscoveryOutcome = DiscoveryOutcome.NOT_ATTEMPTED
    tool_count: int = 0


@dataclass(frozen=True)
class ServerLiveness:
    """Current port-level liveness of a persisted server."""

    name: str
    port: int
    running: bool


class PersistedServer(BaseModel):
    name: str
    port: int
    status: ServerStatus


class PersistedTopology(BaseModel):
    """On-disk record of the active gateway session."""

    pid: int
    started: datetime
    servers: List[PersistedServer] = Field(default_factory=list)


Capability = dict[str, Any]
