"""
File Tools
==========

Tools for reading and changing files inside the task's working directory.

These tools allow the agent to:
- Read a file before changing it
- Create or overwrite files
- Replace exact snippets inside a file
- Delete files (requires approval under supervised autonomy)
- List and grep the tree

Every path is resolved against the working directory and rejected if it
escapes it. Mutating tools attach a FileChange to their result so the
agent loop can build its change manifest.
"""

import re
from pathlib import Path

from taskpilot.tools import ChangeKind, FileChange, Tool, ToolCategory, ToolResult
from taskpilot.utils.logger import Logger

logger = Logger("FileTools")

IGNORED_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build"})
MAX_READ_BYTES = 512 * 1024


class PathOutsideWorkspace(ValueError):
    pass


def _resolve(root: Path, relative: str) -> Path:
    """
    Resolve a model-supplied path inside root.

    Raises:
        PathOutsideWorkspace: If the path points outside root
    """
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        raise PathOutsideWorkspace(f"Path '{relative}' is outside the working directory")
    return candidate


def _is_ignored(path: Path, root: Path) -> bool:
    return any(part in IGNORED_DIRS for part in path.relative_to(root).parts)


def create_file_tools(root: Path) -> list[Tool]:
    """
    Build the file tools bound to a working directory.

    Args:
        root: Absolute, resolved working directory

    Returns:
        readFile, writeFile, editFile, deleteFile, listFiles, searchFiles
    """

    # ==========================================================================
    # Tool: Read File
    # ==========================================================================

    async def read_file(params: dict) -> ToolResult:
        try:
            path = _resolve(root, params["path"])
            if not path.is_file():
                return ToolResult.fail(f"File not found: {params['path']}")
            if path.stat().st_size > MAX_READ_BYTES:
                return ToolResult.fail(f"File is larger than {MAX_READ_BYTES} bytes: {params['path']}")

            content = path.read_text(encoding=params.get("encoding", "utf-8"))
            return ToolResult(
                success=True,
                output=content,
                metadata={"path": str(path), "size": len(content)},
            )
        except (OSError, UnicodeDecodeError, PathOutsideWorkspace, LookupError) as e:
            return ToolResult.fail(str(e))

    # ==========================================================================
    # Tool: Write File
    # ==========================================================================

    async def write_file(params: dict) -> ToolResult:
        try:
            path = _resolve(root, params["path"])
            existed = path.exists()

            if params.get("createDirectories", True):
                path.parent.mkdir(parents=True, exist_ok=True)

            content = params["content"]
            path.write_text(content, encoding="utf-8")

            kind = ChangeKind.MODIFIED if existed else ChangeKind.CREATED
            logger.debug(f"{kind.value} {params['path']}")
            return ToolResult(
                success=True,
                output=f"Successfully wrote {len(content)} characters to {params['path']}",
                metadata={"path": str(path), "size": len(content)},
                change=FileChange(path=params["path"], kind=kind),
            )
        except (OSError, PathOutsideWorkspace) as e:
            return ToolResult.fail(str(e))

    # ==========================================================================
    # Tool: Edit File
    # ==========================================================================

    async def edit_file(params: dict) -> ToolResult:
        try:
            path = _resolve(root, params["path"])
            if not path.is_file():
                return ToolResult.fail(f"File not found: {params['path']}")

            text = path.read_text(encoding="utf-8")
            old, new = params["oldContent"], params["newContent"]

            occurrences = text.count(old)
            if occurrences == 0:
                return ToolResult.fail("The specified content was not found in the file")

            if params.get("replaceAll", False):
                updated = text.replace(old, new)
                replaced = occurrences
            else:
                updated = text.replace(old, new, 1)
                replaced = 1

            path.write_text(updated, encoding="utf-8")
            return ToolResult(
                success=True,
                output=f"Successfully edited {params['path']} ({replaced} replacement(s))",
                metadata={"path": str(path), "replacements": replaced},
                change=FileChange(path=params["path"], kind=ChangeKind.MODIFIED),
            )
        except (OSError, UnicodeDecodeError, PathOutsideWorkspace) as e:
            return ToolResult.fail(str(e))

    def validate_edit(params: dict) -> list[str]:
        if params.get("oldContent") == "":
            return ["oldContent must not be empty"]
        return []

    # ==========================================================================
    # Tool: Delete File
    # ==========================================================================

    async def delete_file(params: dict) -> ToolResult:
        try:
            path = _resolve(root, params["path"])
            if not path.is_file():
                return ToolResult.fail(f"File not found: {params['path']}")

            path.unlink()
            return ToolResult(
                success=True,
                output=f"Successfully deleted {params['path']}",
                metadata={"path": str(path)},
                change=FileChange(path=params["path"], kind=ChangeKind.DELETED),
            )
        except (OSError, PathOutsideWorkspace) as e:
            return ToolResult.fail(str(e))

    # ==========================================================================
    # Tool: List Files
    # ==========================================================================

    async def list_files(params: dict) -> ToolResult:
        try:
            base = _resolve(root, params.get("path", "."))
            if not base.is_dir():
                return ToolResult.fail(f"Not a directory: {params.get('path', '.')}")

            pattern = params.get("pattern")
            if pattern:
                matches = base.glob(pattern)
            elif params.get("recursive", False):
                matches = base.rglob("*")
            else:
                matches = base.iterdir()

            files = sorted(
                str(p.relative_to(base))
                for p in matches
                if p.is_file() and not _is_ignored(p, root)
            )
            return ToolResult(
                success=True,
                output="\n".join(files),
                metadata={"count": len(files), "pattern": pattern},
            )
        except (OSError, ValueError) as e:
            return ToolResult.fail(str(e))

    # ==========================================================================
    # Tool: Search Files
    # ==========================================================================

    async def search_files(params: dict) -> ToolResult:
        try:
            regex = re.compile(params["pattern"])
        except re.error as e:
            return ToolResult.fail(f"Invalid regex: {e}")

        file_pattern = params.get("filePattern", "**/*.py")
        max_results = params.get("maxResults", 50)
        results: list[str] = []

        for path in sorted(root.glob(file_pattern)):
            if len(results) >= max_results:
                break
            if not path.is_file() or _is_ignored(path, root):
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue

            rel = path.relative_to(root)
            for number, line in enumerate(lines, start=1):
                if regex.search(line):
                    results.append(f"{rel}:{number}: {line.strip()}")
                    if len(results) >= max_results:
                        break

        return ToolResult(
            success=True,
            output="\n".join(results) or "No matches found",
            metadata={"count": len(results), "pattern": params["pattern"]},
        )

    path_property = {
        "type": "string",
        "description": "The file path relative to the working directory",
    }

    return [
        Tool(
            name="readFile",
            description="Read the contents of a file at the specified path",
            input_schema={
                "type": "object",
                "properties": {
                    "path": path_property,
                    "encoding": {"type": "string", "description": "File encoding (default: utf-8)"},
                },
                "required": ["path"],
            },
            execute=read_file,
            category=ToolCategory.FILE,
        ),
        Tool(
            name="writeFile",
            description="Write content to a file, creating it if it does not exist",
            input_schema={
                "type": "object",
                "properties": {
                    "path": path_property,
                    "content": {"type": "string", "description": "The content to write to the file"},
                    "createDirectories": {
                        "type": "boolean",
                        "description": "Create parent directories if they do not exist",
                    },
                },
                "required": ["path", "content"],
            },
            execute=write_file,
            category=ToolCategory.FILE,
        ),
        Tool(
            name="editFile",
            description="Edit a file by replacing an exact snippet with new content",
            input_schema={
                "type": "object",
                "properties": {
                    "path": path_property,
                    "oldContent": {"type": "string", "description": "The exact content to replace"},
                    "newContent": {"type": "string", "description": "The replacement content"},
                    "replaceAll": {"type": "boolean", "description": "Replace every occurrence"},
                },
                "required": ["path", "oldContent", "newContent"],
            },
            execute=edit_file,
            category=ToolCategory.FILE,
            validate=validate_edit,
        ),
        Tool(
            name="deleteFile",
            description="Delete a file at the specified path",
            input_schema={
                "type": "object",
                "properties": {"path": path_property},
                "required": ["path"],
            },
            execute=delete_file,
            category=ToolCategory.FILE,
            requires_approval=True,
        ),
        Tool(
            name="listFiles",
            description="List files in a directory, optionally filtering by glob pattern",
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Directory (default: working directory)"},
                    "pattern": {"type": "string", "description": 'Glob pattern, e.g. "**/*.py"'},
                    "recursive": {"type": "boolean", "description": "List files recursively"},
                },
            },
            execute=list_files,
            category=ToolCategory.FILE,
        ),
        Tool(
            name="searchFiles",
            description="Search file contents with a regular expression",
            input_schema={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Regex to search for"},
                    "filePattern": {"type": "string", "description": "Glob of files to search (default: **/*.py)"},
                    "maxResults": {"type": "integer", "minimum": 1, "description": "Maximum matches returned"},
                },
                "required": ["pattern"],
            },
            execute=search_files,
            category=ToolCategory.SEARCH,
        ),
    ]
