"""Throttled progressive editing of a single Telegram message.

Telegram caps message length and silently rate-limits edits of the same
message, so streamed text is coalesced: at most one edit per throttle
interval, and only the latest buffered text is ever sent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from relay.streaming.types import CONTINUATION_MARKER, ChatTransport, split_into_chunks

logger = logging.getLogger(__name__)

DEFAULT_MAX_LENGTH = 4000
DEFAULT_THROTTLE = 0.5


@dataclass
class _EditSlot:
    """Throttle bookkeeping for one (chat_id, message_id)."""

    last_text: str = ""
    last_edit: float = 0.0
    pending_text: str | None = None
    timer: asyncio.Task | None = None
    max_length: int = DEFAULT_MAX_LENGTH
    parse_mode: str | None = None


def truncate_for_display(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + CONTINUATION_MARKER


class MessageStreamer:
    """Coalesces live edits and delivers final, possibly chunked, text."""

    # Pause between chunks of one long reply
    chunk_delay = 0.3

    def __init__(self, transport: ChatTransport):
        self._transport = transport
        self._slots: dict[tuple[int, int], _EditSlot] = {}

    async def edit_message_throttled(
        self,
        chat_id: int,
        message_id: int,
        full_text: str,
        max_length: int = DEFAULT_MAX_LENGTH,
        throttle: float = DEFAULT_THROTTLE,
        parse_mode: str | None = None,
    ) -> None:
        """Edit now if the throttle window has passed, otherwise buffer.

        A buffered text is flushed by a single deferred edit; later calls
        before it fires only replace the buffered text.
        """
        key = (chat_id, message_id)
        slot = self._slots.setdefault(key, _EditSlot())
        slot.max_length = max_length
        slot.parse_mode = parse_mode

        latest = slot.pending_text if slot.pending_text is not None else slot.last_text
        if full_text == latest:
            return

        if slot.timer is not None and not slot.timer.done():
            slot.pending_text = full_text
            return

        elapsed = time.time() - slot.last_edit
        if elapsed >= throttle:
            slot.pending_text = None
            await self._apply_edit(key, slot, full_text)
            return

        slot.pending_text = full_text
        slot.timer = asyncio.create_task(
            self._flush_later(key, throttle - elapsed, throttle),
            name=f"edit-{chat_id}-{message_id}",
        )

    async def _flush_later(self, key: tuple[int, int], delay: float, throttle: float) -> None:
        await asyncio.sleep(delay)
        while True:
            slot = self._slots.get(key)
            if slot is None or slot.pending_text is None:
                return
            text = slot.pending_text
            slot.pending_text = None
            await self._apply_edit(key, slot, text)
            # Text buffered while the edit was in flight gets its own window
            if slot.pending_text is None:
                return
            await asyncio.sleep(throttle)

    async def _apply_edit(self, key: tuple[int, int], slot: _EditSlot, text: str) -> None:
        """Send one edit. Failures are logged, never raised."""
        chat_id, message_id = key
        # Stamp before the await so concurrent callers see the window as used
        slot.last_edit = time.time()
        slot.last_text = text
        try:
            await self._transport.edit_message_text(
                chat_id,
                message_id,
                truncate_for_display(text, slot.max_length),
                parse_mode=slot.parse_mode,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to update message %s in chat %s: %s", message_id, chat_id, e)

    async def flush(self, chat_id: int, message_id: int) -> None:
        """Send any buffered text for this message right away."""
        key = (chat_id, message_id)
        slot = self._slots.get(key)
        if slot is None:
            return
        if slot.timer is not None and not slot.timer.done():
            slot.timer.cancel()
        slot.timer = None
        if slot.pending_text is not None:
            text = slot.pending_text
            slot.pending_text = None
            await self._apply_edit(key, slot, text)

    async def send_complete(
        self,
        chat_id: int,
        text: str,
        max_length: int = DEFAULT_MAX_LENGTH,
        message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> list[int]:
        """Deliver the final text in order, splitting oversized text.

        With message_id the first chunk replaces that message; the rest are
        sent as new messages. Returns the ids of the messages holding the text.
        """
        chunks = split_into_chunks(text, max_length)
        marker = ""
        if len(chunks) > 1 and max_length > len(CONTINUATION_MARKER):
            # Reserve room for the marker so no message exceeds max_length
            marker = CONTINUATION_MARKER
            chunks = split_into_chunks(text, max_length - len(marker))
        delivered: list[int] = []

        for index, chunk in enumerate(chunks):
            body = chunk if index == len(chunks) - 1 else chunk + marker
            if index == 0 and message_id is not None:
                if await self._replace(chat_id, message_id, body, parse_mode):
                    delivered.append(message_id)
                    continue
            result = await self._transport.send_message(chat_id, body, parse_mode=parse_mode)
            if isinstance(result, dict) and "message_id" in result:
                delivered.append(result["message_id"])
            if index < len(chunks) - 1:
                await asyncio.sleep(self.chunk_delay)

        return delivered

    async def _replace(self, chat_id: int, message_id: int, text: str, parse_mode: str | None) -> bool:
        try:
            await self._transport.edit_message_text(chat_id, message_id, text, parse_mode=parse_mode)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Final edit of message %s failed, sending new message: %s", message_id, e)
            return False

    def cleanup(self, chat_id: int) -> None:
        """Cancel deferred edits for a chat and drop its buffered state."""
        for key in [k for k in self._slots if k[0] == chat_id]:
            slot = self._slots.pop(key)
            if slot.timer is not None and not slot.timer.done():
                slot.timer.cancel()

    def destroy(self) -> None:
        """Cancel every outstanding deferred edit."""
        for slot in self._slots.values():
            if slot.timer is not None and not slot.timer.done():
                slot.timer.cancel()
        self._slots.clear()

    def has_pending(self, chat_id: int) -> bool:
        return any(
            key[0] == chat_id and slot.pending_text is not None
            for key, slot in self._slots.items()
        )
