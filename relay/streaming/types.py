"""Shared types for streaming responses and tool visibility."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4


class ChatTransport(Protocol):
    """The slice of the Telegram Bot API the streaming core consumes."""

    async def send_message(
        self,
        chat_id: int,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> dict[str, Any]: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> Any: ...

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> Any: ...

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> Any: ...

    async def delete_message(self, chat_id: int, message_id: int) -> Any: ...


class StreamStatus(StrEnum):
    IDLE = "idle"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    RESPONSE = "response"
    CONFIRMATION = "confirmation"
    COMPLETE = "complete"
    ERROR = "error"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ToolUseEvent:
    """A provider request to run a tool."""

    name: str
    input: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"tool_{uuid4().hex[:12]}")
    timestamp: datetime = field(default_factory=_now)


@dataclass
class ToolResultEvent:
    """Output of a tool call, correlated by tool_use_id."""

    tool_use_id: str
    content: str
    is_error: bool = False
    timestamp: datetime = field(default_factory=_now)


@dataclass
class StreamState:
    """Progress of one turn in one conversation. Owned by StatusManager."""

    status: StreamStatus = StreamStatus.IDLE
    provider_label: str = ""
    message_id: int | None = None
    current_tool: str = ""
    tool_history: list[ToolUseEvent] = field(default_factory=list)
    last_error: str | None = None
    pending_confirmation: str | None = None  # tool use id awaiting approval
    started_at: float = 0.0
    updated_at: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StreamingResult:
    """Final outcome of a provider stream."""

    text: str
    session_id: str = ""
    provider: str = ""
    duration_ms: int = 0
    tool_history: list[ToolUseEvent] = field(default_factory=list)
    usage: dict[str, int] | None = None


@dataclass
class StreamCallbacks:
    """Provider-agnostic callback surface.

    Every callback is awaited before the next event is processed, so a
    callback that suspends (confirmation) pauses the whole stream.
    """

    on_status_change: Callable[[StreamStatus], Awaitable[None]] | None = None
    on_tool_use: Callable[[ToolUseEvent], Awaitable[None]] | None = None
    on_tool_result: Callable[[ToolResultEvent], Awaitable[None]] | None = None
    on_content: Callable[[str], Awaitable[None]] | None = None
    on_error: Callable[[Exception], Awaitable[None]] | None = None
    on_complete: Callable[[StreamingResult], Awaitable[None]] | None = None


# ---------------------------------------------------------------------------
# Status display
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusDisplay:
    emoji: str
    text: str
    show_elapsed: bool = False
    subtext: str = ""


STATUS_DISPLAYS: dict[StreamStatus, StatusDisplay] = {
    StreamStatus.IDLE: StatusDisplay("\U0001f4a4", "Ready"),
    StreamStatus.THINKING: StatusDisplay(
        "\U0001f914", "Analyzing", show_elapsed=True, subtext="Thinking about your request..."
    ),
    StreamStatus.TOOL_USE: StatusDisplay(
        "\U0001f527", "Working", subtext="Using tools to complete your request"
    ),
    StreamStatus.RESPONSE: StatusDisplay(
        "✍️", "Writing", show_elapsed=True, subtext="Generating response..."
    ),
    StreamStatus.CONFIRMATION: StatusDisplay(
        "⚠️",
        "Confirmation needed",
        subtext="A potentially dangerous operation requires your approval",
    ),
    StreamStatus.COMPLETE: StatusDisplay("✅", "Done"),
    StreamStatus.ERROR: StatusDisplay("❌", "Error"),
}


# ---------------------------------------------------------------------------
# Error recovery suggestions
# ---------------------------------------------------------------------------

ERROR_SUGGESTIONS: list[tuple[re.Pattern[str], list[str]]] = [
    (
        re.compile(r"timeout|timed out", re.IGNORECASE),
        [
            "⏱️ The operation took too long",
            "\U0001f504 Try again with a smaller task",
            "\U0001f4ca Check system resources",
        ],
    ),
    (
        re.compile(r"unauthori[sz]ed|authenticat|api key|invalid.*token|\b401\b|\b403\b", re.IGNORECASE),
        [
            "\U0001f511 Check the provider API key",
            "\U0001f500 Switch provider with /provider",
            "\U0001f4c5 Verify the subscription is still active",
        ],
    ),
    (
        re.compile(r"content.?filter|moderation|safety|policy violation", re.IGNORECASE),
        [
            "\U0001f6e1️ The provider blocked this request",
            "✏️ Rephrase the request",
            "\U0001f500 Try a different provider with /provider",
        ],
    ),
    (
        re.compile(r"rate.?limit|too many requests|\b429\b|overloaded", re.IGNORECASE),
        [
            "⏳ Wait a moment before retrying",
            "\U0001f500 Switch provider with /provider",
        ],
    ),
    (
        re.compile(r"permission|denied|access", re.IGNORECASE),
        [
            "\U0001f511 Check file permissions with ls -la",
            "\U0001f464 Try running with different user permissions",
            "\U0001f4c2 Verify the file/directory path is correct",
        ],
    ),
    (
        re.compile(r"not found|no such file|does not exist", re.IGNORECASE),
        [
            "\U0001f50d Verify the file path is correct",
            "\U0001f4c2 List directory contents with ls",
            "\U0001f4cd Check your current working directory",
        ],
    ),
    (
        re.compile(r"network|connection|dns", re.IGNORECASE),
        [
            "\U0001f310 Check your internet connection",
            "\U0001f50c Verify VPN or proxy settings",
            "\U0001f504 Try the operation again",
        ],
    ),
]

DEFAULT_SUGGESTIONS = [
    "\U0001f4a1 Try asking the assistant to explain what went wrong",
    "\U0001f504 Retry the operation",
    "\U0001f4cb Review the steps that led to this error",
]


def get_error_suggestions(error_message: str) -> list[str]:
    """Return remediation hints for the first pattern matching the error text."""
    for pattern, suggestions in ERROR_SUGGESTIONS:
        if pattern.search(error_message):
            return suggestions
    return DEFAULT_SUGGESTIONS


def format_error_message(error_message: str) -> str:
    """User-facing error banner with suggestions."""
    lines = [f"❌ Error:\n{error_message}", "", "\U0001f4a1 Possible solutions:"]
    lines.extend(get_error_suggestions(error_message))
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------

CONTINUATION_MARKER = "\n\n...continuing..."


def _find_split(text: str, max_length: int) -> int:
    """Index to cut text at so that text[:idx] fits max_length.

    Prefers the last newline not inside an open ``` fence, then any
    newline, then any whitespace, then a hard cut.
    """
    window = text[:max_length]

    newline_cuts = [i + 1 for i, ch in enumerate(window) if ch == "\n"]
    for cut in reversed(newline_cuts):
        if window[:cut].count("```") % 2 == 0:
            return cut
    if newline_cuts:
        return newline_cuts[-1]

    for i in range(len(window) - 1, 0, -1):
        if window[i].isspace():
            return i + 1

    return max_length


def split_into_chunks(text: str, max_length: int = 4000) -> list[str]:
    """Split text into ordered chunks no longer than max_length.

    Chunks are exact slices: ``"".join(chunks) == text``.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_length:
        cut = _find_split(remaining, max_length)
        chunks.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        chunks.append(remaining)
    return chunks
