"""Tests for the workspace file tools."""

import pytest

from taskpilot.tools import ChangeKind, ToolCategory
from taskpilot.tools.file_ops import create_file_tools


@pytest.fixture
def root(tmp_path):
    return tmp_path.resolve()


@pytest.fixture
def tools(root):
    return {tool.name: tool for tool in create_file_tools(root)}


class TestFileTools:
    def test_tool_set(self, tools):
        assert sorted(tools) == ["deleteFile", "editFile", "listFiles", "readFile", "searchFiles", "writeFile"]
        assert tools["deleteFile"].requires_approval is True
        assert tools["writeFile"].requires_approval is False
        assert tools["searchFiles"].category == ToolCategory.SEARCH

    async def test_write_reports_created_then_modified(self, tools, root):
        first = await tools["writeFile"].execute({"path": "pkg/a.py", "content": "x = 1\n"})
        second = await tools["writeFile"].execute({"path": "pkg/a.py", "content": "x = 2\n"})

        assert first.success and second.success
        assert first.change.kind == ChangeKind.CREATED
        assert second.change.kind == ChangeKind.MODIFIED
        assert second.change.to_dict() == {"path": "pkg/a.py", "type": "modified"}
        assert (root / "pkg" / "a.py").read_text() == "x = 2\n"

    async def test_read_file(self, tools, root):
        (root / "notes.txt").write_text("hello")

        result = await tools["readFile"].execute({"path": "notes.txt"})
        missing = await tools["readFile"].execute({"path": "nope.txt"})

        assert result.output == "hello"
        assert missing.success is False
        assert missing.error == "File not found: nope.txt"

    async def test_paths_outside_the_workspace_are_rejected(self, tools):
        result = await tools["writeFile"].execute({"path": "../escape.txt", "content": "x"})

        assert result.success is False
        assert "outside the working directory" in result.error

    async def test_edit_replaces_first_occurrence(self, tools, root):
        (root / "a.py").write_text("a = 1\na = 1\n")

        result = await tools["editFile"].execute({"path": "a.py", "oldContent": "a = 1", "newContent": "a = 2"})

        assert result.success is True
        assert result.change.kind == ChangeKind.MODIFIED
        assert (root / "a.py").read_text() == "a = 2\na = 1\n"

    async def test_edit_replace_all_and_missing_snippet(self, tools, root):
        (root / "a.py").write_text("a = 1\na = 1\n")

        result = await tools["editFile"].execute({
            "path": "a.py", "oldContent": "a = 1", "newContent": "b = 1", "replaceAll": True,
        })
        missing = await tools["editFile"].execute({"path": "a.py", "oldContent": "zzz", "newContent": ""})

        assert result.metadata["replacements"] == 2
        assert missing.error == "The specified content was not found in the file"

    def test_edit_rejects_empty_snippet(self, tools):
        assert tools["editFile"].validate({"path": "a.py", "oldContent": "", "newContent": "x"}) == [
            "oldContent must not be empty"
        ]

    async def test_delete(self, tools, root):
        (root / "old.py").write_text("")

        result = await tools["deleteFile"].execute({"path": "old.py"})

        assert result.change.kind == ChangeKind.DELETED
        assert not (root / "old.py").exists()

    async def test_list_skips_ignored_directories(self, tools, root):
        (root / "src").mkdir()
        (root / "src" / "main.py").write_text("")
        (root / "__pycache__").mkdir()
        (root / "__pycache__" / "main.cpython.pyc").write_text("")

        result = await tools["listFiles"].execute({"recursive": True})

        assert result.output.splitlines() == ["src/main.py"]

    async def test_search_files(self, tools, root):
        (root / "a.py").write_text("import os\n\ndef handler():\n    pass\n")
        (root / "b.py").write_text("x = 1\n")

        result = await tools["searchFiles"].execute({"pattern": r"def \w+"})
        nothing = await tools["searchFiles"].execute({"pattern": "class"})
        invalid = await tools["searchFiles"].execute({"pattern": "("})

        assert result.output == "a.py:3: def handler():"
        assert nothing.output == "No matches found"
        assert invalid.success is False
