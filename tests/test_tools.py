"""Tests for agents/tools.py -- scratch-directory tool execution.

Covers argument validation, path confinement, each tool's output format and
the conversion of every failure into an unsuccessful ToolResult.
"""

from pathlib import Path

import pytest

from agents.tools import (
    MAX_READ_FILE_CHARS,
    TOOL_DEFINITIONS,
    ScratchToolExecutor,
    get_tool_definitions_for_llm,
)


@pytest.fixture()
def executor(tmp_path) -> ScratchToolExecutor:
    return ScratchToolExecutor(str(tmp_path))


class TestDefinitions:
    def test_llm_format(self) -> None:
        tools = get_tool_definitions_for_llm()
        assert len(tools) == len(TOOL_DEFINITIONS)
        assert all(t["type"] == "function" for t in tools)
        names = {t["function"]["name"] for t in tools}
        assert names == {"write_file", "read_file", "list_files", "search_files"}


class TestArgumentValidation:
    async def test_unknown_tool(self, executor) -> None:
        result = await executor.execute("delete_everything", {})
        assert not result.success
        assert "Unknown tool" in result.content

    async def test_non_dict_arguments(self, executor) -> None:
        result = await executor.execute("read_file", ["index.html"])
        assert not result.success
        assert "expected an object" in result.content

    async def test_missing_required_argument(self, executor) -> None:
        result = await executor.execute("write_file", {"path": "index.html"})
        assert not result.success
        assert "Missing required arguments: content" in result.content

    async def test_blank_path_is_missing(self, executor) -> None:
        result = await executor.execute("read_file", {"path": "   "})
        assert not result.success
        assert "Missing required arguments: path" in result.content

    async def test_non_string_argument(self, executor) -> None:
        result = await executor.execute("read_file", {"path": 42})
        assert not result.success
        assert "expected string" in result.content

    async def test_unknown_fields_are_ignored(self, executor, tmp_path: Path) -> None:
        result = await executor.execute(
            "write_file", {"path": "a.txt", "content": "x", "mode": "append"}
        )
        assert result.success
        assert (tmp_path / "a.txt").read_text() == "x"

    async def test_tool_call_id_is_carried(self, executor) -> None:
        result = await executor.execute("list_files", {}, tool_call_id="tc_42")
        assert result.tool_call_id == "tc_42"


class TestWriteAndRead:
    async def test_write_creates_parent_directories(self, executor, tmp_path: Path) -> None:
        result = await executor.execute(
            "write_file", {"path": "css/style.css", "content": "body {}"}
        )
        assert result.success
        assert result.content == "Successfully wrote 7 bytes to css/style.css"
        assert (tmp_path / "css" / "style.css").read_text() == "body {}"

    async def test_empty_content_is_a_valid_write(self, executor, tmp_path: Path) -> None:
        result = await executor.execute("write_file", {"path": "empty.js", "content": ""})
        assert result.success
        assert (tmp_path / "empty.js").read_text() == ""

    async def test_content_is_not_stripped(self, executor, tmp_path: Path) -> None:
        await executor.execute("write_file", {"path": "a.txt", "content": "  padded\n"})
        assert (tmp_path / "a.txt").read_text() == "  padded\n"

    async def test_traversal_is_rejected(self, executor) -> None:
        result = await executor.execute("write_file", {"path": "../escape.txt", "content": "x"})
        assert not result.success
        assert "Path traversal blocked" in result.content

    async def test_read_round_trip(self, executor) -> None:
        await executor.execute("write_file", {"path": "index.html", "content": "<h1/>"})
        result = await executor.execute("read_file", {"path": "index.html"})
        assert result.success
        assert result.content == "<h1/>"

    async def test_read_missing_file(self, executor) -> None:
        result = await executor.execute("read_file", {"path": "nope.html"})
        assert not result.success
        assert "File not found: nope.html" in result.content

    async def test_read_is_truncated(self, executor, tmp_path: Path) -> None:
        (tmp_path / "big.txt").write_text("x" * (MAX_READ_FILE_CHARS + 10))
        result = await executor.execute("read_file", {"path": "big.txt"})
        assert result.success
        assert "[truncated 10 characters" in result.content


class TestListAndSearch:
    async def test_list_root(self, executor, tmp_path: Path) -> None:
        (tmp_path / "js").mkdir()
        (tmp_path / "index.html").write_text("")
        result = await executor.execute("list_files", {})
        assert result.content.splitlines() == ["index.html", "js/"]

    async def test_list_empty_directory(self, executor) -> None:
        result = await executor.execute("list_files", {"path": "."})
        assert result.content == "(empty directory)"

    async def test_list_missing_directory(self, executor) -> None:
        result = await executor.execute("list_files", {"path": "missing"})
        assert not result.success

    async def test_search_reports_path_and_line(self, executor, tmp_path: Path) -> None:
        (tmp_path / "js").mkdir()
        (tmp_path / "js" / "app.js").write_text("let a = 1;\nfunction render() {}\n")
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "lib.js").write_text("function render() {}\n")

        result = await executor.execute("search_files", {"pattern": r"render\("})

        assert result.content == "js/app.js:2: function render() {}"

    async def test_search_no_matches(self, executor, tmp_path: Path) -> None:
        (tmp_path / "index.html").write_text("hello")
        result = await executor.execute("search_files", {"pattern": "goodbye"})
        assert result.content == "No matches found"

    async def test_invalid_pattern(self, executor) -> None:
        result = await executor.execute("search_files", {"pattern": "("})
        assert not result.success
        assert "Invalid pattern" in result.content
