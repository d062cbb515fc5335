"""Streaming message handler -- one turn from inbound text to final message.

Wires StatusManager, MessageStreamer, ConfirmationManager and the tool
formatters around LLMRouter.process_message_stream(). Every exit path
(complete, provider error, rejected confirmation, unexpected failure)
leaves exactly one final readable message in the chat and clears the
per-chat state.
"""

from __future__ import annotations

import asyncio
import logging

from relay.errors import ProviderError, TurnCancelled, TurnInProgressError
from relay.llm.router import LLMRouter
from relay.streaming.confirmation import ConfirmationManager, ConfirmationOutcome
from relay.streaming.message_stream import MessageStreamer
from relay.streaming.status import StatusManager
from relay.streaming.tool_visibility import format_tool_result, format_tool_use
from relay.streaming.types import (
    ChatTransport,
    StreamCallbacks,
    StreamingResult,
    StreamStatus,
    ToolResultEvent,
    ToolUseEvent,
    format_error_message,
)

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "⏳ Still working on your previous message. Please wait for it to finish."
CANCELLED_MESSAGE = "❌ Operation cancelled"
EXPIRED_MESSAGE = "⌛ Operation cancelled: confirmation timed out"


class _Turn:
    """Mutable bookkeeping for one in-flight turn."""

    def __init__(self, chat_id: int, message_id: int):
        self.chat_id = chat_id
        self.message_id = message_id
        self.content = ""
        self.finished = False
        # Set once anything is posted below the live message
        self.followed = False


class StreamingOrchestrator:
    """Runs a streaming turn per inbound message."""

    def __init__(
        self,
        transport: ChatTransport,
        router: LLMRouter,
        status_manager: StatusManager,
        streamer: MessageStreamer,
        confirmations: ConfirmationManager,
        throttle: float = 0.5,
        stream_max_length: int = 3800,
        message_max_length: int = 4000,
        show_tool_results: bool = True,
    ):
        self._transport = transport
        self._router = router
        self._status = status_manager
        self._streamer = streamer
        self._confirmations = confirmations
        self._throttle = throttle
        self._stream_max_length = stream_max_length
        self._message_max_length = message_max_length
        self._show_tool_results = show_tool_results

    async def handle(self, chat_id: int, text: str) -> None:
        """Process one inbound text message as a streaming turn."""
        conversation_id = str(chat_id)
        provider = self._router.get_provider(conversation_id)

        try:
            self._status.create_state(conversation_id, self._router.get_provider_label(provider))
        except TurnInProgressError:
            logger.info("Rejecting concurrent turn for chat %s", chat_id)
            await self._safe_send(chat_id, BUSY_MESSAGE)
            return

        turn: _Turn | None = None
        try:
            try:
                await self._transport.send_chat_action(chat_id, "typing")
            except Exception as e:
                logger.debug("sendChatAction failed for chat %s: %s", chat_id, e)

            result = await self._transport.send_message(
                chat_id, self._status.generate_status_display(conversation_id)
            )
            turn = _Turn(chat_id, result["message_id"])
            self._status.set_message_id(conversation_id, turn.message_id)

            await self._router.process_message_stream(
                conversation_id, text, self._callbacks(turn)
            )

        except TurnCancelled as e:
            logger.info("Turn in chat %s cancelled: %s", chat_id, e)
            self._status.update_status(conversation_id, StreamStatus.ERROR, str(e))
            await self._finish(turn, chat_id, EXPIRED_MESSAGE if e.timed_out else CANCELLED_MESSAGE)

        except ProviderError as e:
            logger.error("Provider error in chat %s: %s", chat_id, e)
            self._status.update_status(conversation_id, StreamStatus.ERROR, str(e))
            await self._finish(turn, chat_id, format_error_message(str(e)))

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.exception("Error handling streaming message in chat %s", chat_id)
            self._status.update_status(conversation_id, StreamStatus.ERROR, str(e))
            await self._finish(turn, chat_id, format_error_message(str(e) or type(e).__name__))

        finally:
            self._status.clear_state(conversation_id)
            self._streamer.cleanup(chat_id)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _callbacks(self, turn: _Turn) -> StreamCallbacks:
        conversation_id = str(turn.chat_id)

        async def on_status_change(status: StreamStatus) -> None:
            self._status.update_status(conversation_id, status)
            if not turn.content:
                await self._refresh(turn)

        async def on_tool_use(tool: ToolUseEvent) -> None:
            logger.debug("Tool use in chat %s: %s", turn.chat_id, tool.name)

            if self._confirmations.requires_confirmation(tool):
                await self._confirm(turn, tool)

            self._status.update_status(conversation_id, StreamStatus.TOOL_USE)
            self._status.set_current_tool(conversation_id, tool.name)
            self._status.add_tool_to_history(conversation_id, tool)
            await self._refresh(turn, extra=format_tool_use(tool))

        async def on_tool_result(result: ToolResultEvent) -> None:
            state = self._status.get_state(conversation_id)
            tool_name = state.current_tool if state and state.current_tool else None
            if tool_name is None and state:
                tool_name = next(
                    (t.name for t in reversed(state.tool_history) if t.id == result.tool_use_id),
                    None,
                )
            self._status.set_current_tool(conversation_id, "")
            if self._show_tool_results:
                turn.followed = True
                await self._safe_send(turn.chat_id, format_tool_result(result, tool_name))

        async def on_content(chunk: str) -> None:
            turn.content += chunk
            state = self._status.get_state(conversation_id)
            if state and state.status != StreamStatus.RESPONSE:
                self._status.update_status(conversation_id, StreamStatus.RESPONSE)
            await self._streamer.edit_message_throttled(
                turn.chat_id,
                turn.message_id,
                turn.content or self._status.generate_status_display(conversation_id),
                max_length=self._stream_max_length,
                throttle=self._throttle,
            )

        async def on_error(error: Exception) -> None:
            logger.error("Stream error in chat %s: %s", turn.chat_id, error)
            self._status.update_status(conversation_id, StreamStatus.ERROR, str(error))
            await self._finish(turn, turn.chat_id, format_error_message(str(error)))

        async def on_complete(result: StreamingResult) -> None:
            logger.debug("Stream complete in chat %s (%d chars)", turn.chat_id, len(result.text))
            if result.usage:
                self._status.set_tokens(
                    conversation_id,
                    result.usage.get("input_tokens", 0),
                    result.usage.get("output_tokens", 0),
                )
            self._status.set_current_tool(conversation_id, "")
            self._status.update_status(conversation_id, StreamStatus.COMPLETE)
            final = result.text or turn.content or self._status.generate_status_display(conversation_id)
            await self._finish(turn, turn.chat_id, final)

        return StreamCallbacks(
            on_status_change=on_status_change,
            on_tool_use=on_tool_use,
            on_tool_result=on_tool_result,
            on_content=on_content,
            on_error=on_error,
            on_complete=on_complete,
        )

    async def _confirm(self, turn: _Turn, tool: ToolUseEvent) -> None:
        """Park the turn until the user approves. Raises TurnCancelled otherwise."""
        conversation_id = str(turn.chat_id)
        self._status.set_current_tool(conversation_id, tool.name)
        self._status.set_pending_confirmation(conversation_id, tool.id)
        self._status.update_status(conversation_id, StreamStatus.CONFIRMATION)
        await self._refresh(turn)

        turn.followed = True
        outcome = await self._confirmations.request_decision(tool, turn.chat_id)
        self._status.set_pending_confirmation(conversation_id, None)
        if outcome != ConfirmationOutcome.APPROVED:
            logger.info("Tool %s not approved in chat %s: %s", tool.name, turn.chat_id, outcome.value)
            raise TurnCancelled(tool.name, timed_out=outcome == ConfirmationOutcome.EXPIRED)

        logger.info("Tool %s approved in chat %s", tool.name, turn.chat_id)
        self._status.set_current_tool(conversation_id, "")
        self._status.update_status(conversation_id, StreamStatus.TOOL_USE)

    # ------------------------------------------------------------------
    # Message plumbing
    # ------------------------------------------------------------------

    async def _refresh(self, turn: _Turn, extra: str = "") -> None:
        """Throttled edit of the live message with the status display."""
        text = self._status.generate_status_display(str(turn.chat_id))
        if extra:
            text += "\n\n" + extra
        await self._streamer.edit_message_throttled(
            turn.chat_id,
            turn.message_id,
            text,
            max_length=self._stream_max_length,
            throttle=self._throttle,
        )

    async def _finish(self, turn: _Turn | None, chat_id: int, text: str) -> None:
        """Deliver the final text once, as the last thing in the chat.

        The live status message is replaced in place unless tool results or
        a confirmation prompt were posted after it. In that case it is
        removed and the final text is sent as new messages below them.
        """
        message_id = None
        if turn is not None:
            if turn.finished:
                return
            turn.finished = True
            message_id = turn.message_id
        self._streamer.cleanup(chat_id)
        if turn is not None and turn.followed:
            await self._retire_live_message(turn)
            message_id = None
        try:
            await self._streamer.send_complete(
                chat_id,
                text,
                max_length=self._message_max_length,
                message_id=message_id,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Failed to deliver final message to chat %s: %s", chat_id, e)

    async def _retire_live_message(self, turn: _Turn) -> None:
        """Delete the live message, or leave the final status on it."""
        try:
            await self._transport.delete_message(turn.chat_id, turn.message_id)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to delete message %s in chat %s: %s", turn.message_id, turn.chat_id, e)
        try:
            await self._transport.edit_message_text(
                turn.chat_id,
                turn.message_id,
                self._status.generate_status_display(str(turn.chat_id)),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to update message %s in chat %s: %s", turn.message_id, turn.chat_id, e)

    async def _safe_send(self, chat_id: int, text: str) -> None:
        try:
            await self._transport.send_message(chat_id, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to send message to chat %s: %s", chat_id, e)

    def destroy(self) -> None:
        self._streamer.destroy()
        self._confirmations.destroy()
