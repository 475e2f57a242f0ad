"""
MCP gateway.

Each configured stdio MCP server is started behind an SSE bridge on its own
port and warmed up. The gateway then answers `GET /config.json` with a
`.mcp.json` that points the caller at those ports using the address it
connected on. The session pid and server list are kept in `.gateway.pid`
for `--status` and `--stop`.
"""

from __future__ import annotations

__all__ = [
    "api",
    "config",
    "health",
    "launcher",
    "main",
    "manager",
    "ports",
    "state",
    "types",
]
