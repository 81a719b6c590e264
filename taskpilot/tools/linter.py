"""
Linter Tools
============

Runs ruff over the working tree and reports issues back to the model.
"""

import json
from pathlib import Path

from taskpilot.tools import Tool, ToolCategory, ToolResult
from taskpilot.tools.test_runner import run_command
from taskpilot.utils.logger import Logger

logger = Logger("Linter")


def _format_issues(raw: str, root: Path) -> tuple[str, int]:
    """Render ruff's JSON output as file:line:col lines."""
    try:
        issues = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return raw, 0

    lines = []
    for issue in issues:
        filename = issue.get("filename", "")
        try:
            filename = str(Path(filename).relative_to(root))
        except ValueError:
            pass
        location = issue.get("location") or {}
        lines.append(
            f"{filename}:{location.get('row', 0)}:{location.get('column', 0)}: "
            f"{issue.get('code')} {issue.get('message')}"
        )
    return "\n".join(lines), len(issues)


def create_linter_tools(root: Path) -> list[Tool]:
    """Build the runLinter tool bound to a working directory."""

    async def run_linter(params: dict) -> ToolResult:
        args = ["ruff", "check", "--output-format", "json"]
        if params.get("fix", False):
            args.append("--fix")
        args += params.get("paths") or ["."]

        result = await run_command(args, root, timeout=float(params.get("timeout", 120)))

        # ruff: 0 = clean, 1 = issues found, anything else = it could not run
        if result.exit_code not in (0, 1):
            return ToolResult.fail(
                result.stderr.strip() or f"Linter exited with {result.exit_code}",
                exit_code=result.exit_code,
            )

        output, count = _format_issues(result.stdout, root)
        return ToolResult(
            success=True,
            output=output or "No lint issues found",
            metadata={"issues": count, "exit_code": result.exit_code},
        )

    return [
        Tool(
            name="runLinter",
            description="Lint Python files with ruff, optionally applying automatic fixes",
            input_schema={
                "type": "object",
                "properties": {
                    "paths": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Files or directories to lint (default: .)",
                    },
                    "fix": {"type": "boolean", "description": "Apply safe automatic fixes"},
                    "timeout": {"type": "number", "exclusiveMinimum": 0},
                },
            },
            execute=run_linter,
            category=ToolCategory.LINT,
            manages_timeout=True,
        ),
    ]
