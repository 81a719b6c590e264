"""Tests for the subprocess-backed tools and the built-in registry."""

import asyncio
import os
import shlex
import sys

import pytest

from conftest import call
from taskpilot.agent.tools_executor import ToolExecutor
from taskpilot.tools import Tool, ToolCategory, ToolRegistry, ToolResult, create_tool_registry
from taskpilot.tools.git_ops import parse_porcelain
from taskpilot.tools.linter import _format_issues
from taskpilot.tools.test_runner import TIMEOUT_EXIT_CODE, parse_pytest_summary, run_command


class TestRunCommand:
    async def test_captures_output_and_exit_code(self, tmp_path):
        result = await run_command([sys.executable, "-c", "import sys; print('hi'); sys.exit(3)"], tmp_path)

        assert result.stdout.strip() == "hi"
        assert result.exit_code == 3

    async def test_timeout_kills_the_process(self, tmp_path):
        result = await run_command([sys.executable, "-c", "import time; time.sleep(10)"], tmp_path, timeout=0.2)

        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert result.timed_out is True
        assert "Process timed out" in result.stderr

    async def test_missing_executable(self, tmp_path):
        result = await run_command(["definitely-not-a-real-command-xyz"], tmp_path)

        assert result.exit_code == 127
        assert "Command not found" in result.stderr

    async def test_cancellation_kills_and_reaps_the_process(self, tmp_path):
        pid_file = tmp_path / "child.pid"
        script = (
            "import os, pathlib, time; "
            f"pathlib.Path({str(pid_file)!r}).write_text(str(os.getpid())); "
            "time.sleep(30)"
        )
        task = asyncio.create_task(run_command([sys.executable, "-c", script], tmp_path, timeout=60))

        for _ in range(500):
            if pid_file.exists() and pid_file.read_text():
                break
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        with pytest.raises(ProcessLookupError):
            os.kill(int(pid_file.read_text()), 0)


class TestSubprocessToolTimeouts:
    async def test_executor_does_not_cut_short_a_tool_that_manages_its_timeout(self):
        async def run(params: dict) -> ToolResult:
            await asyncio.sleep(0.1)
            return ToolResult(success=True, output="finished")

        registry = ToolRegistry()
        registry.register(Tool("build", "Build", {"type": "object"}, run, manages_timeout=True))

        record = await ToolExecutor(registry, tool_timeout=0.01).execute_one(call("c1", "build"))

        assert record.result.success is True
        assert record.result.output == "finished"

    async def test_run_tests_reports_its_own_timeout(self, tmp_path):
        registry = create_tool_registry(tmp_path)
        command = f"{shlex.quote(sys.executable)} -c 'import time; time.sleep(10)'"

        record = await ToolExecutor(registry, tool_timeout=0.05).execute_one(
            call("c1", "runTests", command=command, timeout=0.3)
        )

        assert record.result.success is False
        assert record.result.error == "Tests timed out after 0.3 seconds"
        assert record.result.metadata["exit_code"] == TIMEOUT_EXIT_CODE

    def test_subprocess_tools_manage_their_own_timeout(self, tmp_path):
        registry = create_tool_registry(tmp_path)
        flagged = sorted(t.name for t in registry.get_all() if t.manages_timeout)

        assert flagged == ["gitCommit", "gitDiff", "gitLog", "gitStatus", "runLinter", "runTests"]


class TestParsers:
    def test_pytest_summary(self):
        line = "==== 3 failed, 41 passed, 2 skipped, 1 error in 2.31s ===="
        assert parse_pytest_summary(line) == {"failed": 3, "passed": 41, "skipped": 2, "errors": 1}

    def test_porcelain(self):
        output = "M  staged.py\n M changed.py\nMM both.py\n?? new.py\n"
        assert parse_porcelain(output) == {
            "staged": ["staged.py", "both.py"],
            "unstaged": ["changed.py", "both.py"],
            "untracked": ["new.py"],
        }

    def test_ruff_issues(self, tmp_path):
        raw = (
            '[{"filename": "' + str(tmp_path / "pkg" / "a.py") + '", '
            '"location": {"row": 3, "column": 1}, "code": "F401", "message": "unused import"}]'
        )
        text, count = _format_issues(raw, tmp_path)

        assert count == 1
        assert text == "pkg/a.py:3:1: F401 unused import"


class TestBuiltinRegistry:
    def test_every_tool_is_registered(self, tmp_path):
        registry = create_tool_registry(tmp_path)

        assert registry.list_names() == [
            "readFile", "writeFile", "editFile", "deleteFile", "listFiles", "searchFiles",
            "runTests",
            "runLinter",
            "gitStatus", "gitDiff", "gitLog", "gitCommit",
        ]
        assert {t.name for t in registry.get_all() if t.requires_approval} == {"deleteFile", "gitCommit"}
        assert [t.name for t in registry.get_by_category(ToolCategory.GIT)] == [
            "gitStatus", "gitDiff", "gitLog", "gitCommit",
        ]
