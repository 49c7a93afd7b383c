"""Tests for the mcporter CLI."""

import sys

import click
import pytest
import yaml
from click.testing import CliRunner

from mcporter.cli.main import cli, coerce_value, parse_arguments

from helpers import ECHO_SERVER


class TestParseArguments:
    """Tests for key=value parsing."""

    def test_coercion(self):
        args = parse_arguments([
            "x=100",
            "ratio=-0.5",
            "visible=true",
            "locked=false",
            'name="Test Frame"',
            "parent=null",
            "query=react",
        ])

        assert args == {
            "x": 100,
            "ratio": -0.5,
            "visible": True,
            "locked": False,
            "name": "Test Frame",
            "parent": None,
            "query": "react",
        }

    def test_value_with_equals(self):
        assert parse_arguments(["filter=a=b"]) == {"filter": "a=b"}

    def test_quoted_number_stays_string(self):
        assert coerce_value("'42'") == "42"

    def test_missing_equals(self):
        with pytest.raises(click.BadParameter):
            parse_arguments(["oops"])


class TestCommands:
    """End-to-end tests against the echo MCP server."""

    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "mcporter.yaml"
        with open(path, "w") as f:
            yaml.dump({
                "servers": {
                    "echo": {"command": sys.executable, "args": [ECHO_SERVER]},
                    "joined": {
                        "command": sys.executable,
                        "args": [ECHO_SERVER],
                        "session": {"handshake_tool": "echo"},
                    },
                }
            }, f)
        return path

    def test_list_servers(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "list"])
        assert result.exit_code == 0
        assert "echo" in result.output
        assert "joined" in result.output

    def test_list_tools(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "list", "echo"])
        assert result.exit_code == 0
        assert "Available tools (4)" in result.output
        assert "echo.garbage" in result.output

    def test_list_schema(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "list", "echo", "--schema", "slow"])
        assert result.exit_code == 0
        assert "Tool: echo.slow" in result.output

    def test_call(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "call", "echo", "echo", "x=1", 'name="Test"'])
        assert result.exit_code == 0, result.output
        assert '{"name": "Test", "x": 1}' in result.output

    def test_call_session_server_joins_first(self, config_file):
        result = CliRunner().invoke(
            cli, ["--config", str(config_file), "call", "joined", "slow", "seconds=0", "--channel", "c-9"]
        )
        assert result.exit_code == 0, result.output
        assert "Connected to channel: c-9" in result.output
        assert "slow done" in result.output

    def test_call_unknown_tool(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "call", "echo", "missing"])
        assert result.exit_code == 1
        assert "Unknown tool 'missing'" in result.output

    def test_call_unknown_server(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "call", "nope", "echo"])
        assert result.exit_code == 1
        assert "Unknown server: nope" in result.output

    def test_adhoc_stdio_server(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        command = f'"{sys.executable}" "{ECHO_SERVER}"'
        result = CliRunner().invoke(cli, ["call", "adhoc", "echo", "q=1", "--stdio", command])
        assert result.exit_code == 0, result.output
        assert '{"q": 1}' in result.output

    def test_bad_config(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("servers:\n  x: {}\n")
        result = CliRunner().invoke(cli, ["--config", str(path), "list"])
        assert result.exit_code == 1
        assert "Invalid server 'x'" in result.output
