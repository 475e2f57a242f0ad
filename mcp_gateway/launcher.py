from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_BRIDGE_COMMAND
from .types import ProcessRecord, ServerSpec

_LOG_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 5
_BIND_ALL_HOST = "0.0.0.0"
_OWN_SESSION = os.name != "nt"

# Node prints this on every start of the bridge; it carries no information.
_SUPPRESSED_STDERR = ("ExperimentalWarning",)


def _configure_logger(
    spec: ServerSpec, log_dir: Optional[Path]
) -> tuple[logging.Logger, Optional[Path]]:
    logger = logging.getLogger(f"Gateway.Server.{spec.name}")
    if log_dir is None:
        return logger, None

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{spec.name}.log"
    if not any(
        isinstance(handler, RotatingFileHandler)
        and Path(handler.baseFilename).resolve() == log_path.resolve()
        for handler in logger.handlers
    ):
        handler = RotatingFileHandler(
            log_path, maxBytes=_LOG_BYTES, backupCount=_LOG_BACKUPS, encoding="utf-8"
        )
        formatter = logging.Formatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger, log_path


def is_suppressed(line: str) -> bool:
    return any(marker in line for marker in _SUPPRESSED_STDERR)


async def _pump_stream(
    stream: asyncio.StreamReader,
    logger: logging.Logger,
    prefix: str,
    *,
    level: int,
    filter_noise: bool = False,
) -> None:
    while True:
        raw = await stream.readline()
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip()
        if not line.strip():
            continue
        if filter_noise and is_suppressed(line):
            continue
        logger.log(level, "%s%s", prefix, line)


def build_bridge_command(
    spec: ServerSpec, bridge: Sequence[str] = DEFAULT_BRIDGE_COMMAND
) -> list[str]:
    """Compose the bridge invocation that exposes `spec` over SSE."""

    if not bridge:
        raise ValueError("Bridge command must not be empty.")
    stdio_command = shlex.join([spec.command, *spec.args])
    executable = shutil.which(bridge[0]) or bridge[0]
    return [
        executable,
        *bridge[1:],
        "--stdio",
        stdio_command,
        "--port",
        str(spec.port),
        "--host",
        _BIND_ALL_HOST,
    ]


async def launch_server(
    spec: ServerSpec,
    *,
    bridge: Sequence[str] = DEFAULT_BRIDGE_COMMAND,
    log_dir: Optional[Path] = None,
) -> ProcessRecord:
    """Spawn the bridge process for `spec` and start pumping its output."""

    logger, log_path = _configure_logger(spec, log_dir)
    cmd = build_bridge_command(spec, bridge)

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=_OWN_SESSION,
    )

    prefix = f"[{spec.name}] "
    pump_tasks = []
    if process.stdout is not None:
        pump_tasks.append(
            asyncio.create_task(
                _pump_stream(process.stdout, logger, prefix, level=logging.INFO)
            )
        )
    if process.stderr is not None:
        pump_tasks.append(
            asyncio.create_task(
                _pump_stream(
                    process.stderr,
                    logger,
                    prefix,
                    level=logging.WARNING,
                    filter_noise=True,
                )
            )
        )

    logger.debug(
        "Launched bridge PID=%s for '%s' on port %s: %s",
        process.pid,
        spec.name,
        spec.port,
        shlex.join(cmd),
    )

    return ProcessRecord(
        spec=spec,
        process=process,
        log_path=log_path,
        pump_tasks=pump_tasks,
        process_group=_OWN_SESSION,
    )
