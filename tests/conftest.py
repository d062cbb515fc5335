"""Shared fixtures: an in-memory chat transport and scripted providers."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest

from relay.llm.providers import BaseProvider, ProviderEvent
from relay.llm.router import LLMRouter


class FakeTransport:
    """Records every Bot API call. Message ids count up from 100."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.edits: list[dict[str, Any]] = []
        self.answers: list[dict[str, Any]] = []
        self.actions: list[tuple[int, str]] = []
        self.deleted: list[tuple[int, int]] = []
        self.fail_send = False
        self.fail_edit = False
        self.fail_delete = False
        self._next_id = 100

    async def send_message(self, chat_id, text, parse_mode=None, reply_markup=None) -> dict:
        if self.fail_send:
            raise RuntimeError("send failed")
        self._next_id += 1
        self.sent.append(
            {"chat_id": chat_id, "text": text, "reply_markup": reply_markup, "message_id": self._next_id}
        )
        return {"message_id": self._next_id}

    async def edit_message_text(self, chat_id, message_id, text, parse_mode=None, reply_markup=None):
        if self.fail_edit:
            raise RuntimeError("edit failed")
        self.edits.append({"chat_id": chat_id, "message_id": message_id, "text": text})
        return True

    async def answer_callback_query(self, callback_query_id, text=None, show_alert=False):
        self.answers.append({"id": callback_query_id, "text": text})
        return True

    async def send_chat_action(self, chat_id, action="typing"):
        self.actions.append((chat_id, action))
        return True

    async def delete_message(self, chat_id, message_id):
        if self.fail_delete:
            raise RuntimeError("delete failed")
        self.deleted.append((chat_id, message_id))
        return True

    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent]

    def last_prompt(self) -> dict[str, Any]:
        """Most recent message that carried an inline keyboard."""
        return next(m for m in reversed(self.sent) if m["reply_markup"])


class ScriptedProvider(BaseProvider):
    """Yields a fixed list of events, optionally raising afterwards."""

    def __init__(
        self,
        key: str,
        events: list[ProviderEvent] | None = None,
        configured: bool = True,
        raise_after: Exception | None = None,
    ):
        self.key = key
        self.label = key.upper()
        self.events = events or []
        self.configured = configured
        self.raise_after = raise_after
        self.closed = False
        self.calls: list[tuple[str, str, str | None]] = []
        self.resets: list[str] = []

    def is_configured(self) -> bool:
        return self.configured

    async def stream(self, conversation_id, text, model=None) -> AsyncGenerator[ProviderEvent, None]:
        self.calls.append((conversation_id, text, model))
        try:
            for event in self.events:
                yield event
            if self.raise_after is not None:
                raise self.raise_after
        finally:
            self.closed = True

    def reset(self, conversation_id: str) -> None:
        self.resets.append(conversation_id)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def make_router():
    """Factory: LLMRouter over scripted providers, configured per keyword."""

    def factory(**configured: bool) -> LLMRouter:
        providers = {
            key: ScriptedProvider(key, configured=configured.get(key, False))
            for key in ("zai", "minimax", "mistral", "claude-cli")
        }
        return LLMRouter(providers, default_provider="zai", fallback_order=["zai", "minimax", "mistral"])

    return factory
