import json
from pathlib import Path

import pytest

from mcp_gateway.config import (
    DEFAULT_BRIDGE_COMMAND,
    DEFAULT_CONFIG_PORT,
    ConfigLoadError,
    load_server_specs,
)
from mcp_gateway.main import parse_args
from mcp_gateway.types import ServerSpec


def _write_config(path: Path, servers: list[dict]) -> Path:
    path.write_text(json.dumps({"servers": servers}), encoding="utf-8")
    return path


def test_load_server_specs_preserves_order(tmp_path: Path) -> None:
    config = _write_config(
        tmp_path / "config.json",
        [
            {
                "name": "filesystem",
                "command": "npx",
                "args": ["-y", "@modelcontextprotocol/server-filesystem", "/data"],
                "port": 9001,
                "enabled": True,
                "description": "Files",
            },
            {"name": "memory", "command": "npx", "port": 9002, "enabled": False},
        ],
    )

    specs = load_server_specs(config)

    assert [spec.name for spec in specs] == ["filesystem", "memory"]
    assert specs[0].args == ("-y", "@modelcontextprotocol/server-filesystem", "/data")
    assert specs[1].enabled is False
    assert specs[1].description == ""
    assert all(isinstance(spec, ServerSpec) for spec in specs)


def test_load_server_specs_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError):
        load_server_specs(tmp_path / "missing.json")


def test_load_server_specs_rejects_bad_json(tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text("{not json", encoding="utf-8")

    with pytest.raises(ConfigLoadError):
        load_server_specs(config)


def test_load_server_specs_rejects_duplicate_names(tmp_path: Path) -> None:
    config = _write_config(
        tmp_path / "config.json",
        [
            {"name": "a", "command": "x", "port": 9001},
            {"name": "a", "command": "y", "port": 9002},
        ],
    )

    with pytest.raises(ConfigLoadError):
        load_server_specs(config)


def test_load_server_specs_allows_shared_ports(tmp_path: Path) -> None:
    config = _write_config(
        tmp_path / "config.json",
        [
            {"name": "a", "command": "x", "port": 9001},
            {"name": "b", "command": "y", "port": 9001},
        ],
    )

    assert [spec.port for spec in load_server_specs(config)] == [9001, 9001]


def test_parse_args_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MCP_GATEWAY_CONFIG", raising=False)
    monkeypatch.delenv("MCP_GATEWAY_STATE_FILE", raising=False)
    monkeypatch.delenv("MCP_GATEWAY_CONFIG_PORT", raising=False)
    config = tmp_path / "config.json"

    args = parse_args(["--config", str(config)])

    assert args.action == "run"
    assert args.config_path == config.resolve()
    assert args.state_path == config.resolve().parent / ".gateway.pid"
    assert args.config_port == DEFAULT_CONFIG_PORT
    assert args.bridge == DEFAULT_BRIDGE_COMMAND
    assert args.log_dir is None


def test_parse_args_actions_and_overrides(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("MCP_GATEWAY_CONFIG_PORT", "9999")
    state = tmp_path / "state.json"

    status = parse_args(["--status", "--state-file", str(state)])
    stop = parse_args(["--stop", "--bridge", "python bridge.py"])

    assert status.action == "status"
    assert status.state_path == state.resolve()
    assert status.config_port == 9999
    assert stop.action == "stop"
    assert stop.bridge == ("python", "bridge.py")


def test_parse_args_rejects_status_with_stop() -> None:
    with pytest.raises(SystemExit):
        parse_args(["--status", "--stop"])
