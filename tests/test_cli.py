"""Tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from conftest import ScriptedBackend, call, final_turn, make_registry, tool_turn
from taskpilot.main import cli
from taskpilot.orchestrator import Orchestrator
from taskpilot.tasks.manager import TaskLifecycleManager
from taskpilot.tasks.persistence import InMemoryPersistenceAdapter


@pytest.fixture
def runner():
    return CliRunner()


def json_output(output: str):
    """The JSON document printed after any log lines."""
    return json.loads(output[output.index("{\n"):])


def scripted_orchestrator(monkeypatch, *script):
    def from_config(cls, config=None, backend=None):
        return cls(TaskLifecycleManager(InMemoryPersistenceAdapter()), ScriptedBackend(*script), make_registry())

    monkeypatch.setattr(Orchestrator, "from_config", classmethod(from_config))


class TestCLI:
    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "recent", "events", "classify"):
            assert command in result.output

    def test_classify_code_request(self, runner):
        result = runner.invoke(cli, ["classify", "refactor the python function"])

        assert result.exit_code == 0
        route = json_output(result.output)
        assert route["provider"] == "anthropic"
        assert route["was_auto_routed"] is True
        assert route["classification"]["intent"] == "code_task"

    def test_classify_with_image(self, runner):
        result = runner.invoke(cli, ["classify", "hello there friend", "--image", "chart.png"])

        route = json_output(result.output)
        assert route["classification"]["intent"] == "data_analysis"
        assert route["provider"] == "openai"

    def test_run_completes_a_task(self, runner, monkeypatch):
        scripted_orchestrator(monkeypatch, tool_turn(call("c1", "echo", text="ok")), final_turn("QA PASS"))

        result = runner.invoke(cli, ["run", "qa", "Check the utils package"])

        assert result.exit_code == 0, result.output
        assert "Created task:" in result.output
        assert "→ echo" in result.output
        assert "✓ completed: QA PASS" in result.output

    def test_run_with_auto_approval(self, runner, monkeypatch):
        scripted_orchestrator(monkeypatch, tool_turn(call("c1", "writeFile", path="a.py")), final_turn("Split"))

        result = runner.invoke(cli, ["run", "refactor", "Split utils", "--yes"])

        assert result.exit_code == 0, result.output
        assert "created: a.py" in result.output

    def test_failed_run_exits_non_zero(self, runner, monkeypatch):
        scripted_orchestrator(monkeypatch, tool_turn(call("c1", "echo", text="again")))
        monkeypatch.setenv("TASKPILOT_MAX_ITERATIONS", "1")

        result = runner.invoke(cli, ["run", "qa", "Never finishes"])

        assert result.exit_code == 1
        assert "failed: Maximum iterations reached without completion" in result.output

    def test_recent_with_empty_store(self, runner, monkeypatch):
        scripted_orchestrator(monkeypatch)

        result = runner.invoke(cli, ["recent"])

        assert result.exit_code == 0
        assert "No tasks found." in result.output

    def test_events_with_empty_store(self, runner, monkeypatch):
        scripted_orchestrator(monkeypatch)

        result = runner.invoke(cli, ["events", "missing", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output.strip().splitlines()[-1]) == []
