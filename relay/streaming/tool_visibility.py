"""Human-readable progress text for tool calls.

Pure functions, no state. Output is plain text (no parse_mode) so a
partially streamed message never breaks Telegram's entity parser.
"""

from __future__ import annotations

import re
from typing import Any

from relay.streaming.types import ToolResultEvent, ToolUseEvent

MAX_RESULT_CHARS = 1500
MAX_VALUE_CHARS = 50
MAX_PREVIEW_CHARS = 100

# Lowercased tool name -> emoji
TOOL_EMOJIS: dict[str, str] = {
    "read": "\U0001f4d6",
    "write": "✏️",
    "edit": "\U0001f4dd",
    "bash": "\U0001f4bb",
    "search": "\U0001f50d",
    "grep": "\U0001f50d",
    "glob": "\U0001f4c1",
    "git": "\U0001f4e6",
    "filesystem": "\U0001f4c1",
    "http": "\U0001f310",
    "browser": "\U0001f310",
    "webfetch": "\U0001f310",
    "websearch": "\U0001f50d",
}


def tool_emoji(tool_name: str) -> str:
    return TOOL_EMOJIS.get(tool_name.lower(), "\U0001f527")


def truncate(content: str, max_length: int) -> str:
    if len(content) <= max_length:
        return content
    return content[:max_length] + "..."


def format_value(value: Any) -> str:
    """Compact one-line rendering of an input value."""
    if isinstance(value, str):
        return f'"{truncate(value, MAX_VALUE_CHARS)}"'
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return f"[{len(value)} items]"
    if isinstance(value, dict):
        return "{...}"
    return str(value)


def _format_git_command(command: str) -> str:
    parts = command.split()
    sub = parts[1] if len(parts) > 1 else "status"
    lines = [f"\U0001f4e6 Git: {sub}"]

    if sub == "diff":
        lines.append("Showing changes...")
    elif sub == "log":
        count = next((p.lstrip("-n") for p in parts[2:] if re.fullmatch(r"-?n?\d+", p)), None)
        lines.append(f"Showing {count or 'recent'} commits...")
    elif sub == "status":
        lines.append("Checking repository status...")
    elif sub == "commit":
        lines.append("Creating commit...")
    elif sub in ("push", "pull"):
        branch = parts[3] if len(parts) > 3 else None
        lines.append(f"Syncing {branch or 'branch'}...")
    return "\n".join(lines)


def _format_bash(tool_input: dict[str, Any]) -> str:
    command = str(tool_input.get("command") or "")
    if command.startswith("git "):
        body = _format_git_command(command)
    else:
        body = f"Command: {truncate(command, 300)}"
    if tool_input.get("cwd"):
        body += f"\nDir: {tool_input['cwd']}"
    return body


def _format_read(tool_input: dict[str, Any]) -> str:
    body = f"\U0001f4d6 File: {tool_input.get('file_path') or ''}"
    if "offset" in tool_input or "limit" in tool_input:
        offset = int(tool_input.get("offset") or 0)
        limit = int(tool_input.get("limit") or 0)
        body += f"\nLines: {offset + 1}-{offset + limit}"
    return body


def _format_write(tool_input: dict[str, Any]) -> str:
    file_path = str(tool_input.get("file_path") or "")
    content = tool_input.get("content")
    body = f"✏️ File: {file_path}"
    if isinstance(content, str) and content:
        body += f"\nSize: {len(content)} bytes, {content.count(chr(10)) + 1} lines"
        if "." in file_path:
            body += f"\nType: {file_path.rsplit('.', 1)[-1]}"
        body += f"\n\n{truncate(content, MAX_PREVIEW_CHARS)}"
    return body


def _format_edit(tool_input: dict[str, Any]) -> str:
    body = f"\U0001f4dd File: {tool_input.get('file_path') or ''}"
    patches = tool_input.get("patches")
    if isinstance(patches, list):
        body += f"\nEdits: {len(patches)} change(s)"
    elif isinstance(patches, str):
        body += f"\nEdits: {patches.count('@@') // 2 or 1} change(s)"
    elif "old_string" in tool_input:
        body += "\nEdits: 1 change(s)"
    return body


def _format_search(tool_input: dict[str, Any]) -> str:
    query = tool_input.get("query") or tool_input.get("pattern") or ""
    body = f"\U0001f50d Query: {query}"
    if tool_input.get("path"):
        body += f"\nPath: {tool_input['path']}"
    options = []
    if tool_input.get("ignore_case"):
        options.append("case-insensitive")
    if tool_input.get("match_case"):
        options.append("case-sensitive")
    if tool_input.get("regex"):
        options.append("regex")
    if options:
        body += f"\nOptions: {', '.join(options)}"
    return body


def _format_git(tool_input: dict[str, Any]) -> str:
    command = str(tool_input.get("command") or "")
    body = f"\U0001f4e6 Git: {command}"
    if command == "status":
        body += "\nChecking working tree status..."
    elif command == "log":
        body += f"\nShowing {tool_input.get('n') or 10} recent commits..."
    elif command == "diff":
        body += "\nShowing changes..."
    return body


def _format_generic(tool_input: dict[str, Any]) -> str:
    lines = ["Input:"]
    for key, value in tool_input.items():
        if key == "session_id":
            continue
        lines.append(f"  {key}: {format_value(value)}")
    return "\n".join(lines)


_FORMATTERS = {
    "bash": _format_bash,
    "read": _format_read,
    "write": _format_write,
    "edit": _format_edit,
    "search": _format_search,
    "grep": _format_search,
    "git": _format_git,
}


def format_tool_use(tool: ToolUseEvent) -> str:
    """Progress text for a tool invocation."""
    formatter = _FORMATTERS.get(tool.name.lower(), _format_generic)
    return f"{tool_emoji(tool.name)} Using: {tool.name}\n\n{formatter(tool.input or {})}"


def format_tool_result(result: ToolResultEvent, tool_name: str | None = None) -> str:
    """Progress text for a tool result, truncated to MAX_RESULT_CHARS."""
    name = tool_name or "Tool"
    content = result.content
    if len(content) > MAX_RESULT_CHARS:
        extra = len(content) - MAX_RESULT_CHARS
        content = f"{content[:MAX_RESULT_CHARS]}\n\n... ({extra} more characters)"

    display = f"{tool_emoji(name)} Result: {name}\n\n{content}"
    if result.is_error:
        display = f"❌ Error in {tool_name or 'tool'}\n\n{display}"
    return display


def format_tool_execution(tool: ToolUseEvent, result: ToolResultEvent | None = None) -> str:
    display = format_tool_use(tool)
    if result is not None:
        display += "\n\n" + format_tool_result(result, tool.name)
    return display


def generate_tool_summary(tools: list[ToolUseEvent]) -> str:
    """One line per tool call, headed by the distinct tool names."""
    if not tools:
        return ""

    unique = list(dict.fromkeys(t.name for t in tools))
    lines = [f"\U0001f527 Tools used: {', '.join(unique)}", ""]
    for tool in tools:
        line = f"• {tool_emoji(tool.name)} {tool.name}"
        lowered = tool.name.lower()
        if lowered == "bash":
            line += f" - {truncate(str(tool.input.get('command') or 'command'), MAX_VALUE_CHARS)}"
        elif lowered in ("read", "write", "edit"):
            line += f" - {tool.input.get('file_path') or 'file'}"
        lines.append(line)
    return "\n".join(lines)
