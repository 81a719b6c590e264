"""
Git Tools
=========

Read-only inspection of the repository plus committing staged work.

gitCommit requires approval: under supervised or manual autonomy the
agent loop pauses for a human before it runs.
"""

import re
from pathlib import Path

from taskpilot.tools import Tool, ToolCategory, ToolResult
from taskpilot.tools.test_runner import run_command

GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}
GIT_TIMEOUT = 30.0


async def _git(root: Path, *args: str):
    return await run_command(["git", *args], root, timeout=GIT_TIMEOUT, env=GIT_ENV)


def parse_porcelain(output: str) -> dict[str, list[str]]:
    """Split `git status --porcelain` into staged, unstaged and untracked."""
    status: dict[str, list[str]] = {"staged": [], "unstaged": [], "untracked": []}
    for line in output.splitlines():
        if len(line) < 4:
            continue
        index, worktree, path = line[0], line[1], line[3:]
        if index == "?" and worktree == "?":
            status["untracked"].append(path)
            continue
        if index != " ":
            status["staged"].append(path)
        if worktree != " ":
            status["unstaged"].append(path)
    return status


def create_git_tools(root: Path) -> list[Tool]:
    """Build gitStatus, gitDiff, gitLog and gitCommit bound to a repository."""

    async def git_status(params: dict) -> ToolResult:
        status = await _git(root, "status", "--porcelain")
        if status.exit_code != 0:
            return ToolResult.fail(status.stderr.strip() or "Failed to get git status")

        branch = await _git(root, "rev-parse", "--abbrev-ref", "HEAD")
        parsed = parse_porcelain(status.stdout)
        summary = "\n".join([
            f"Branch: {branch.stdout.strip() or 'unknown'}",
            f"Staged: {len(parsed['staged'])} file(s)",
            f"Unstaged: {len(parsed['unstaged'])} file(s)",
            f"Untracked: {len(parsed['untracked'])} file(s)",
            *status.stdout.splitlines(),
        ])
        return ToolResult(success=True, output=summary, metadata=parsed)

    async def git_diff(params: dict) -> ToolResult:
        args = ["diff"]
        if params.get("staged", False):
            args.append("--staged")
        if params.get("base"):
            args.append(params["base"])
        if params.get("file"):
            args += ["--", params["file"]]

        result = await _git(root, *args)
        if result.exit_code != 0:
            return ToolResult.fail(result.stderr.strip() or "git diff failed")
        return ToolResult(success=True, output=result.stdout or "No changes")

    async def git_log(params: dict) -> ToolResult:
        count = params.get("count", 10)
        args = ["log", f"-{count}", "--pretty=format:%h %an %ad %s", "--date=short"]
        if params.get("file"):
            args += ["--", params["file"]]

        result = await _git(root, *args)
        if result.exit_code != 0:
            return ToolResult.fail(result.stderr.strip() or "git log failed")
        return ToolResult(
            success=True,
            output=result.stdout,
            metadata={"count": len(result.stdout.splitlines())},
        )

    async def git_commit(params: dict) -> ToolResult:
        if params.get("all", False):
            added = await _git(root, "add", "--all")
            if added.exit_code != 0:
                return ToolResult.fail(added.stderr.strip() or "git add failed")

        result = await _git(root, "commit", "-m", params["message"])
        if result.exit_code != 0:
            return ToolResult.fail(result.stderr.strip() or result.stdout.strip() or "git commit failed")

        match = re.search(r"\[[^\s\]]+ ([0-9a-f]+)\]", result.stdout)
        return ToolResult(
            success=True,
            output=result.stdout.strip(),
            metadata={"commit": match.group(1) if match else None},
        )

    return [
        Tool(
            name="gitStatus",
            description="Get the current git status: branch, staged, unstaged and untracked files",
            input_schema={"type": "object", "properties": {}},
            execute=git_status,
            category=ToolCategory.GIT,
            manages_timeout=True,
        ),
        Tool(
            name="gitDiff",
            description="Show the diff of changes in the repository",
            input_schema={
                "type": "object",
                "properties": {
                    "staged": {"type": "boolean", "description": "Diff staged changes"},
                    "base": {"type": "string", "description": "Revision to diff against"},
                    "file": {"type": "string", "description": "Limit the diff to one path"},
                },
            },
            execute=git_diff,
            category=ToolCategory.GIT,
            manages_timeout=True,
        ),
        Tool(
            name="gitLog",
            description="Show recent commits",
            input_schema={
                "type": "object",
                "properties": {
                    "count": {"type": "integer", "minimum": 1, "maximum": 100},
                    "file": {"type": "string", "description": "Only commits touching this path"},
                },
            },
            execute=git_log,
            category=ToolCategory.GIT,
            manages_timeout=True,
        ),
        Tool(
            name="gitCommit",
            description="Commit staged changes (optionally staging everything first)",
            input_schema={
                "type": "object",
                "properties": {
                    "message": {"type": "string", "minLength": 1, "description": "Commit message"},
                    "all": {"type": "boolean", "description": "Stage all changes before committing"},
                },
                "required": ["message"],
            },
            execute=git_commit,
            category=ToolCategory.GIT,
            manages_timeout=True,
            requires_approval=True,
        ),
    ]
