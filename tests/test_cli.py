"""Tests for the command line interface."""

import json

import pytest
from sqlalchemy import create_engine, inspect

from conftest import linear_flow
from flow_orchestrator import cli
from flow_orchestrator.config import reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


def write_json(path, data):
    path.write_text(json.dumps(data))
    return str(path)


class TestConfiguration:
    """Test argument parsing and configuration overrides."""

    def test_overrides_apply_on_top_of_preset(self):
        args = cli.create_argument_parser().parse_args(
            ["--env", "testing", "--port", "9100", "--debug", "--log-level", "ERROR", "config", "show"])

        config = cli.load_configuration(args)

        assert config.port == 9100
        assert config.debug is True
        assert config.log_level.value == "ERROR"
        assert config.database_url == "sqlite:///:memory:"

    def test_invalid_override_is_reported(self, capsys):
        assert cli.main(["--env", "testing", "--database-url", "oracle://db", "config", "show"]) == 1
        assert "Configuration error" in capsys.readouterr().out

    def test_config_show(self, capsys):
        assert cli.main(["--env", "testing", "config", "show"]) == 0

        out = capsys.readouterr().out
        assert "Database URL: sqlite:///:memory:" in out
        assert "Selection Strategy: default_first" in out

    def test_missing_subcommands(self, capsys):
        assert cli.main(["--env", "testing", "config"]) == 1
        assert cli.main(["--env", "testing", "db"]) == 1
        assert cli.main(["--env", "testing", "flows"]) == 1

    def test_default_command_runs_server(self, monkeypatch):
        started = []
        monkeypatch.setattr(cli, "run_server", lambda config: started.append(config.port) or 0)

        assert cli.main(["--env", "testing", "--port", "8123"]) == 0
        assert started == [8123]


class TestDatabaseCommands:
    """Test table creation and reset."""

    def test_init_and_reset(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'cli.db'}"

        assert cli.main(["--env", "testing", "--database-url", url, "db", "init"]) == 0
        assert cli.main(["--env", "testing", "--database-url", url, "db", "reset"]) == 0

        engine = create_engine(url)
        try:
            tables = set(inspect(engine).get_table_names())
        finally:
            engine.dispose()
        assert {"flow_definitions", "flow_instances", "flow_execution_logs"} <= tables


class TestFlowValidation:
    """Test offline validation of definition files."""

    def test_valid_file(self, tmp_path, capsys):
        path = write_json(tmp_path / "greeter.json", linear_flow())

        assert cli.main(["--env", "testing", "flows", "validate", path]) == 0
        assert f"{path}: valid" in capsys.readouterr().out

    def test_warnings_are_printed(self, tmp_path, capsys):
        path = write_json(tmp_path / "loose.json", linear_flow(edges=[]))

        assert cli.main(["--env", "testing", "flows", "validate", path]) == 0
        assert "warning: " in capsys.readouterr().out

    def test_invalid_and_unreadable_files_fail(self, tmp_path, capsys):
        good = write_json(tmp_path / "good.json", linear_flow())
        bad = write_json(tmp_path / "bad.json", {"name": "No start", "nodes": []})
        missing = str(tmp_path / "missing.json")

        assert cli.main(["--env", "testing", "flows", "validate", good, bad, missing]) == 1

        out = capsys.readouterr().out
        assert f"{bad}: INVALID" in out
        assert f"{missing}: cannot read definition" in out
