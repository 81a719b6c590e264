"""
Test Runner Tools
=================

Runs the project's test suite in a subprocess.

Subprocess tools enforce their own hard kill timeout, independent of the
agent-level tool timeout: when it expires the process is killed and the
result carries exit code 124 (the same convention as coreutils timeout).

run_command() is shared with the linter and git tools.
"""

import asyncio
import os
import re
import shlex
import signal
from dataclasses import dataclass
from pathlib import Path

from taskpilot.tools import Tool, ToolCategory, ToolResult
from taskpilot.utils.logger import Logger

logger = Logger("TestRunner")

TIMEOUT_EXIT_CODE = 124
DEFAULT_TEST_COMMAND = "pytest"
MAX_OUTPUT_CHARS = 20_000


@dataclass
class CommandResult:
    """Captured output of a finished subprocess."""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @property
    def combined(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


async def run_command(
    args: list[str],
    cwd: Path,
    timeout: float = 120.0,
    env: dict[str, str] | None = None
) -> CommandResult:
    """
    Run a command and capture its output.

    Never raises for process failures: a missing executable gives exit code
    127 and an expired timeout kills the process and gives exit code 124.
    If the caller is cancelled, the process is killed and reaped before the
    cancellation propagates.

    Args:
        args: Program and arguments (no shell)
        cwd: Working directory
        timeout: Hard kill timeout in seconds
        env: Extra environment variables

    Returns:
        CommandResult with decoded stdout/stderr
    """
    merged_env = {**os.environ, "NO_COLOR": "1", "FORCE_COLOR": "0", **(env or {})}

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd),
            env=merged_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except FileNotFoundError:
        return CommandResult(stdout="", stderr=f"Command not found: {args[0]}", exit_code=127)
    except OSError as e:
        return CommandResult(stdout="", stderr=str(e), exit_code=1)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.CancelledError:
        await _kill(process)
        logger.warning(f"Killed '{args[0]}' after cancellation")
        raise
    except asyncio.TimeoutError:
        await _kill(process)
        stdout, stderr = await process.communicate()
        logger.warning(f"Killed '{args[0]}' after {timeout:g}s")
        return CommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace") + "\nProcess timed out",
            exit_code=TIMEOUT_EXIT_CODE,
        )

    return CommandResult(
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
        exit_code=process.returncode if process.returncode is not None else 1,
    )


async def _kill(process: asyncio.subprocess.Process) -> None:
    """Kill a process with its process group, then reap it."""
    if process.returncode is None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[-MAX_OUTPUT_CHARS:] + "\n[output truncated]"


_SUMMARY_RE = re.compile(r"(\d+) (passed|failed|error|errors|skipped)")


def parse_pytest_summary(output: str) -> dict[str, int]:
    """Pull pass/fail counts out of pytest's final summary line."""
    counts: dict[str, int] = {}
    for number, label in _SUMMARY_RE.findall(output):
        key = "errors" if label.startswith("error") else label
        counts[key] = counts.get(key, 0) + int(number)
    return counts


def create_test_runner_tools(root: Path) -> list[Tool]:
    """Build the runTests tool bound to a working directory."""

    async def run_tests(params: dict) -> ToolResult:
        command = shlex.split(params.get("command") or DEFAULT_TEST_COMMAND)
        if params.get("pattern"):
            command += ["-k", params["pattern"]]
        command += params.get("paths", [])

        timeout = float(params.get("timeout", 300))
        logger.info(f"Running tests: {' '.join(command)}")

        result = await run_command(command, root, timeout=timeout)
        summary = parse_pytest_summary(result.stdout)

        if result.timed_out:
            return ToolResult(
                success=False,
                output=_truncate(result.combined),
                error=f"Tests timed out after {timeout:g} seconds",
                metadata={"exit_code": result.exit_code, **summary},
            )

        # pytest exits 1 when tests fail; that is a successful run with failures
        ran = result.exit_code in (0, 1)
        return ToolResult(
            success=ran,
            output=_truncate(result.combined),
            error=None if ran else result.stderr or f"Test command exited with {result.exit_code}",
            metadata={"exit_code": result.exit_code, "passed_all": result.exit_code == 0, **summary},
        )

    return [
        Tool(
            name="runTests",
            description="Run the test suite (pytest by default) and return its output",
            input_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Test command (default: pytest)"},
                    "paths": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Test files or directories",
                    },
                    "pattern": {"type": "string", "description": "Only run tests matching this expression"},
                    "timeout": {"type": "number", "exclusiveMinimum": 0, "description": "Seconds before the run is killed"},
                },
            },
            execute=run_tests,
            category=ToolCategory.TEST,
            manages_timeout=True,
        ),
    ]
