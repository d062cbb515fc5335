"""Stream status tracking per conversation.

StatusManager is the only writer of StreamState. Other components go
through its methods; nobody touches the map directly.
"""

from __future__ import annotations

import logging
import time

from relay.errors import TurnInProgressError
from relay.streaming.types import (
    STATUS_DISPLAYS,
    StreamState,
    StreamStatus,
    ToolUseEvent,
    get_error_suggestions,
)

logger = logging.getLogger(__name__)

# States not updated for this long are treated as leaked turns
STALE_STATE_SECONDS = 60 * 60


class StatusManager:
    """Owns one StreamState per active conversation."""

    def __init__(self, max_tool_history: int = 50):
        self._states: dict[str, StreamState] = {}
        self._max_tool_history = max_tool_history

    def create_state(self, conversation_id: str, provider_label: str = "") -> StreamState:
        """Start tracking a new turn.

        Raises TurnInProgressError if the conversation already has one.
        """
        if conversation_id in self._states:
            raise TurnInProgressError(conversation_id)

        now = time.time()
        state = StreamState(provider_label=provider_label, started_at=now, updated_at=now)
        self._states[conversation_id] = state
        logger.debug("Created stream state for chat %s (%s)", conversation_id, provider_label)
        return state

    def get_state(self, conversation_id: str) -> StreamState | None:
        return self._states.get(conversation_id)

    def update_status(
        self,
        conversation_id: str,
        status: StreamStatus,
        error_message: str | None = None,
    ) -> None:
        state = self._states.get(conversation_id)
        if state is None:
            logger.warning("No stream state for chat %s", conversation_id)
            return

        state.status = status
        state.updated_at = time.time()
        if status == StreamStatus.ERROR and error_message:
            state.last_error = error_message
        logger.debug("Chat %s status -> %s", conversation_id, status.value)

    def set_message_id(self, conversation_id: str, message_id: int) -> None:
        state = self._states.get(conversation_id)
        if state:
            state.message_id = message_id

    def set_current_tool(self, conversation_id: str, tool_name: str) -> None:
        state = self._states.get(conversation_id)
        if state:
            state.current_tool = tool_name
            state.updated_at = time.time()

    def set_pending_confirmation(self, conversation_id: str, tool_use_id: str | None) -> None:
        state = self._states.get(conversation_id)
        if state:
            state.pending_confirmation = tool_use_id

    def add_tool_to_history(self, conversation_id: str, tool: ToolUseEvent) -> None:
        """Append to the tool history, keeping only the most recent entries."""
        state = self._states.get(conversation_id)
        if state is None:
            return
        state.tool_history.append(tool)
        overflow = len(state.tool_history) - self._max_tool_history
        if overflow > 0:
            del state.tool_history[:overflow]

    def set_tokens(self, conversation_id: str, input_tokens: int, output_tokens: int) -> None:
        state = self._states.get(conversation_id)
        if state:
            state.input_tokens = input_tokens
            state.output_tokens = output_tokens

    def clear_state(self, conversation_id: str) -> None:
        """Forget the turn. Safe to call more than once."""
        if self._states.pop(conversation_id, None) is not None:
            logger.debug("Cleared stream state for chat %s", conversation_id)

    def get_elapsed_time(self, conversation_id: str) -> int:
        state = self._states.get(conversation_id)
        if state is None:
            return 0
        return int(time.time() - state.started_at)

    def generate_status_display(self, conversation_id: str) -> str:
        """Render the live status line for a conversation."""
        state = self._states.get(conversation_id)
        if state is None:
            return "⏳ Initializing..."

        display = STATUS_DISPLAYS[state.status]
        text = f"{display.emoji} {display.text}"
        if state.provider_label:
            text += f" · {state.provider_label}"

        if display.show_elapsed:
            seconds = self.get_elapsed_time(conversation_id)
            if seconds >= 3:
                text += f" ({seconds}s)"

        if state.status == StreamStatus.COMPLETE and state.total_tokens:
            text += f"\n\n\U0001f4ca {state.total_tokens / 1000:.1f}k tokens"
            if state.input_tokens and state.output_tokens:
                text += (
                    f" ({state.input_tokens / 1000:.1f}k in"
                    f" + {state.output_tokens / 1000:.1f}k out)"
                )

        if state.current_tool:
            text += f"\n\n\U0001f527 {state.current_tool}"

        if state.last_error:
            text += f"\n\n❌ {state.last_error}"
            text += "\n\n\U0001f4a1 Possible solutions:"
            for suggestion in get_error_suggestions(state.last_error):
                text += f"\n{suggestion}"

        return text

    def cleanup_stale(self, max_age: float = STALE_STATE_SECONDS) -> int:
        """Drop states that have not been updated within max_age seconds."""
        cutoff = time.time() - max_age
        stale = [cid for cid, state in self._states.items() if state.updated_at < cutoff]
        for cid in stale:
            del self._states[cid]
        if stale:
            logger.info("Cleaned up %d stale stream states", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._states)
