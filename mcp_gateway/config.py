from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from .types import ServerSpec

LOGGER = logging.getLogger("Gateway.Config")

DEFAULT_CONFIG_PATH = Path("config.json")
DEFAULT_STATE_FILENAME = ".gateway.pid"
DEFAULT_CONFIG_HOST = "0.0.0.0"
DEFAULT_CONFIG_PORT = 8930
DEFAULT_BRIDGE_COMMAND: Tuple[str, ...] = ("npx", "-y", "supergateway")
DEFAULT_REMOTE_CLIENT_COMMAND = "npx"
DEFAULT_REMOTE_CLIENT_ARGS: Tuple[str, ...] = ("-y", "mcp-remote")
DEFAULT_SETTLE_DELAY = 2.0


class ConfigLoadError(RuntimeError):
    """Raised when the gateway config file cannot be read or validated."""


class GatewayConfigFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    servers: List[ServerSpec] = []

    @model_validator(mode="after")
    def _unique_names(self) -> "GatewayConfigFile":
        seen: set[str] = set()
        for spec in self.servers:
            if spec.name in seen:
                raise ValueError(f"Duplicate server name '{spec.name}'.")
            seen.add(spec.name)
        return self


@dataclass(frozen=True)
class GatewayCLIArgs:
    """Typed representation of CLI arguments used to boot the gateway."""

    config_path: Path
    state_path: Path
    action: str = "run"
    config_host: str = DEFAULT_CONFIG_HOST
    config_port: int = DEFAULT_CONFIG_PORT
    bridge: Tuple[str, ...] = DEFAULT_BRIDGE_COMMAND
    log_dir: Optional[Path] = None
    settle_delay: float = DEFAULT_SETTLE_DELAY
    log_level: str = "INFO"


def default_state_path(config_path: Path) -> Path:
    return config_path.parent / DEFAULT_STATE_FILENAME


def load_server_specs(path: Path) -> list[ServerSpec]:
    """Read and validate the server list from a JSON config file."""

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Failed to read config {path}: {exc}") from exc

    try:
        parsed = GatewayConfigFile.model_validate_json(raw)
    except ValidationError as exc:
        raise ConfigLoadError(f"Invalid config {path}: {exc}") from exc

    LOGGER.debug(
        "Loaded %s server definition(s) from %s (%s enabled).",
        len(parsed.servers),
        path,
        sum(1 for spec in parsed.servers if spec.enabled),
    )
    return list(parsed.servers)
