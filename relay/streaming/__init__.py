"""Streaming core: live status, throttled edits and tool confirmations.

Public API: the manager classes plus the shared types. The orchestrator
lives in relay.streaming.handler and is imported from there.
"""

from relay.streaming.confirmation import ConfirmationManager, ConfirmationOutcome
from relay.streaming.message_stream import MessageStreamer
from relay.streaming.status import StatusManager
from relay.streaming.types import (
    ChatTransport,
    StreamCallbacks,
    StreamingResult,
    StreamState,
    StreamStatus,
    ToolResultEvent,
    ToolUseEvent,
    format_error_message,
    split_into_chunks,
)

__all__ = [
    "ChatTransport",
    "ConfirmationManager",
    "ConfirmationOutcome",
    "MessageStreamer",
    "StatusManager",
    "StreamCallbacks",
    "StreamState",
    "StreamStatus",
    "StreamingResult",
    "ToolResultEvent",
    "ToolUseEvent",
    "format_error_message",
    "split_into_chunks",
]
