import json
from pathlib import Path

import yaml
from typer.testing import CliRunner

import termpilot.config as config_module
import termpilot.main as main_module
from termpilot.main import app

runner = CliRunner()


def isolate(monkeypatch, tmp_path: Path) -> Path:
    """Point config and server storage at tmp_path; keep logging untouched."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setattr(main_module, "configure_logging", lambda *args, **kwargs: None)
    servers_path = tmp_path / "servers.yaml"
    (tmp_path / "termpilot.yaml").write_text(
        f"mcp:\n  servers_path: {servers_path}\n  retry_delay_ms: 0\n",
        encoding="utf-8",
    )
    return servers_path


def test_version_command(monkeypatch, tmp_path: Path):
    isolate(monkeypatch, tmp_path)

    result = runner.invoke(app, ["version"])

    assert result.exit_code == 0
    assert "Termpilot v0.1.0" in result.output


def test_call_rejects_invalid_json_arguments(monkeypatch, tmp_path: Path):
    isolate(monkeypatch, tmp_path)

    result = runner.invoke(app, ["call", "mcp_s1_ping", "--args", "{not json"])
    assert result.exit_code == 2
    assert "not valid JSON" in result.output

    result = runner.invoke(app, ["call", "mcp_s1_ping", "--args", "[1, 2]"])
    assert result.exit_code == 2


def test_call_reports_unknown_tool(monkeypatch, tmp_path: Path):
    isolate(monkeypatch, tmp_path)

    result = runner.invoke(app, ["call", "not_a_composite_name"])

    assert result.exit_code == 1
    assert "Unknown tool" in result.output


def test_servers_lists_persisted_entries(monkeypatch, tmp_path: Path):
    servers_path = isolate(monkeypatch, tmp_path)
    servers_path.write_text(
        yaml.safe_dump(
            {
                "mcp-servers": [
                    {"id": "files", "name": "Files", "transport": "stdio", "command": "run", "enabled": False}
                ]
            }
        ),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["servers", "--no-connect"])

    assert result.exit_code == 0
    assert "files" in result.output
    assert "disconnected" in result.output


def test_import_servers_persists_entries(monkeypatch, tmp_path: Path):
    servers_path = isolate(monkeypatch, tmp_path)
    source = tmp_path / "claude.json"
    source.write_text(
        json.dumps({"mcpServers": {"ghost": {"command": "definitely-missing-termpilot-binary"}}}),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["import-servers", str(source)])

    assert result.exit_code == 0
    assert "Imported 1 server(s)" in result.output
    stored = yaml.safe_load(servers_path.read_text(encoding="utf-8"))["mcp-servers"]
    assert [entry["name"] for entry in stored] == ["ghost"]


def test_bad_config_file_exits(monkeypatch, tmp_path: Path):
    isolate(monkeypatch, tmp_path)
    broken = tmp_path / "broken.yaml"
    broken.write_text("agent:\n  max_rounds: 3\n", encoding="utf-8")

    result = runner.invoke(app, ["-c", str(broken), "version"])

    assert result.exit_code == 1
    assert "Failed to load config" in result.output
