"""Tests for tool use/result formatting."""

from __future__ import annotations

from relay.streaming.tool_visibility import (
    MAX_RESULT_CHARS,
    format_tool_execution,
    format_tool_result,
    format_tool_use,
    format_value,
    generate_tool_summary,
    tool_emoji,
)
from relay.streaming.types import ToolResultEvent, ToolUseEvent


class TestFormatToolUse:
    def test_bash_command(self):
        text = format_tool_use(ToolUseEvent(name="bash", input={"command": "ls -la", "cwd": "/srv"}))
        assert text.startswith("\U0001f4bb Using: bash")
        assert "Command: ls -la" in text
        assert "Dir: /srv" in text

    def test_bash_git_subcommand(self):
        text = format_tool_use(ToolUseEvent(name="Bash", input={"command": "git log -5"}))
        assert "Git: log" in text
        assert "Showing 5 commits" in text

    def test_read_with_range(self):
        text = format_tool_use(
            ToolUseEvent(name="read", input={"file_path": "/a.py", "offset": 10, "limit": 20})
        )
        assert "File: /a.py" in text
        assert "Lines: 11-30" in text

    def test_write_preview_is_truncated(self):
        content = "x" * 500
        text = format_tool_use(ToolUseEvent(name="write", input={"file_path": "/a.py", "content": content}))
        assert "Size: 500 bytes, 1 lines" in text
        assert "Type: py" in text
        assert "x" * 100 + "..." in text
        assert "x" * 101 not in text

    def test_search_options(self):
        text = format_tool_use(
            ToolUseEvent(name="grep", input={"pattern": "TODO", "path": "src", "ignore_case": True})
        )
        assert "Query: TODO" in text
        assert "Path: src" in text
        assert "case-insensitive" in text

    def test_generic_tool(self):
        text = format_tool_use(
            ToolUseEvent(
                name="custom",
                input={"name": "n" * 80, "flag": True, "items": [1, 2], "session_id": "hidden"},
            )
        )
        assert text.startswith("\U0001f527 Using: custom")
        assert "flag: true" in text
        assert "items: [2 items]" in text
        assert "session_id" not in text
        assert '"' + "n" * 50 + '..."' in text


class TestFormatToolResult:
    def test_plain_result(self):
        text = format_tool_result(ToolResultEvent(tool_use_id="t1", content="ok"), "read")
        assert text == "\U0001f4d6 Result: read\n\nok"

    def test_long_result_truncated(self):
        content = "y" * (MAX_RESULT_CHARS + 25)
        text = format_tool_result(ToolResultEvent(tool_use_id="t1", content=content), "bash")
        assert "... (25 more characters)" in text
        assert "y" * (MAX_RESULT_CHARS + 1) not in text

    def test_error_result(self):
        text = format_tool_result(ToolResultEvent(tool_use_id="t1", content="nope", is_error=True), "bash")
        assert text.startswith("❌ Error in bash")

    def test_unknown_tool_name(self):
        text = format_tool_result(ToolResultEvent(tool_use_id="t1", content="ok"))
        assert "Result: Tool" in text


class TestHelpers:
    def test_emoji_fallback(self):
        assert tool_emoji("READ") == "\U0001f4d6"
        assert tool_emoji("whatever") == "\U0001f527"

    def test_format_value(self):
        assert format_value(3) == "3"
        assert format_value({"a": 1}) == "{...}"
        assert format_value(False) == "false"

    def test_execution_combines_use_and_result(self):
        tool = ToolUseEvent(name="read", input={"file_path": "/a"})
        text = format_tool_execution(tool, ToolResultEvent(tool_use_id=tool.id, content="body"))
        assert "Using: read" in text
        assert "Result: read" in text

    def test_summary(self):
        tools = [
            ToolUseEvent(name="bash", input={"command": "make"}),
            ToolUseEvent(name="read", input={"file_path": "/x"}),
            ToolUseEvent(name="bash", input={"command": "make test"}),
        ]
        summary = generate_tool_summary(tools)
        assert summary.splitlines()[0] == "\U0001f527 Tools used: bash, read"
        assert "• \U0001f4bb bash - make test" in summary
        assert "• \U0001f4d6 read - /x" in summary
        assert generate_tool_summary([]) == ""
