"""LLM router -- binds conversations to providers and normalizes their streams.

Provider choice is static: explicit per-chat override, else the configured
default, else the first configured provider in the fallback order. A
provider that fails mid-stream is reported, never silently retried on
another backend.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from relay.errors import ProviderError, ProviderUnavailableError, TurnCancelled
from relay.llm.providers import BaseProvider, ProviderEvent
from relay.streaming.types import StreamCallbacks, StreamingResult, ToolUseEvent

logger = logging.getLogger(__name__)

PROVIDER_LABELS: dict[str, str] = {
    "zai": "Z.ai GLM-4.7",
    "minimax": "MiniMax v2.1",
    "mistral": "Mistral",
    "claude-cli": "Claude CLI",
}

PROVIDER_ALIASES: dict[str, str] = {
    "zai": "zai",
    "glm": "zai",
    "glm-4.7": "zai",
    "minimax": "minimax",
    "minimax-v2.1": "minimax",
    "mistral": "mistral",
    "mixtral": "mistral",
    "claude": "claude-cli",
    "claude-cli": "claude-cli",
    "cli": "claude-cli",
}

DEFAULT_FALLBACK_ORDER = ["zai", "minimax", "mistral"]


@dataclass
class ProviderStatus:
    provider: str
    label: str
    available: bool
    reason: str | None = None


class LLMRouter:
    """Maps conversations to provider clients."""

    def __init__(
        self,
        providers: dict[str, BaseProvider],
        default_provider: str = "zai",
        fallback_order: list[str] | None = None,
    ):
        self._providers = providers
        self._default_provider = self.normalize_provider(default_provider) or default_provider
        self._fallback_order = fallback_order or list(DEFAULT_FALLBACK_ORDER)
        self._provider_overrides: dict[str, str] = {}
        self._model_overrides: dict[str, dict[str, str]] = {}

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @staticmethod
    def normalize_provider(name: str) -> str | None:
        return PROVIDER_ALIASES.get(name.strip().lower())

    def get_provider_label(self, provider: str) -> str:
        client = self._providers.get(provider)
        if client is not None and client.label:
            return client.label
        return PROVIDER_LABELS.get(provider, provider)

    def get_default_provider(self) -> str:
        return self._default_provider

    def is_provider_available(self, provider: str) -> bool:
        client = self._providers.get(provider)
        return client is not None and client.is_configured()

    def get_provider(self, conversation_id: str) -> str:
        candidate = self._provider_overrides.get(conversation_id, self._default_provider)
        if self.is_provider_available(candidate):
            return candidate
        for provider in (self._default_provider, *self._fallback_order):
            if self.is_provider_available(provider):
                return provider
        return candidate

    def is_provider_active(self, conversation_id: str, provider: str) -> bool:
        return self.get_provider(conversation_id) == provider

    def set_provider(self, conversation_id: str, provider: str) -> str:
        """Bind a conversation to a provider (alias accepted). Returns the key."""
        key = self.normalize_provider(provider)
        if key is None:
            raise ValueError(f"Unknown provider: {provider}")
        self._provider_overrides[conversation_id] = key
        logger.info("Chat %s switched to provider %s", conversation_id, key)
        return key

    def clear_provider(self, conversation_id: str) -> None:
        self._provider_overrides.pop(conversation_id, None)

    def get_provider_status(self) -> list[ProviderStatus]:
        statuses = []
        for provider in PROVIDER_LABELS:
            reason = None
            if provider == "claude-cli" and not self.is_provider_available(provider):
                reason = "Requires a locally installed Claude CLI"
            elif not self.is_provider_available(provider):
                reason = "No API key configured"
            statuses.append(
                ProviderStatus(
                    provider=provider,
                    label=self.get_provider_label(provider),
                    available=self.is_provider_available(provider),
                    reason=reason,
                )
            )
        return statuses

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def get_model(self, conversation_id: str, provider: str) -> str | None:
        override = self._model_overrides.get(conversation_id, {}).get(provider)
        if override:
            return override
        client = self._providers.get(provider)
        return client.default_model if client else None

    def set_model(self, conversation_id: str, provider: str, model: str) -> None:
        self._model_overrides.setdefault(conversation_id, {})[provider] = model

    def clear_model(self, conversation_id: str, provider: str | None = None) -> None:
        if provider is None:
            self._model_overrides.pop(conversation_id, None)
            return
        models = self._model_overrides.get(conversation_id)
        if not models:
            return
        models.pop(provider, None)
        if not models:
            del self._model_overrides[conversation_id]

    def reset_conversation(self, conversation_id: str) -> None:
        """Drop provider-side session state for a chat."""
        for client in self._providers.values():
            client.reset(conversation_id)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def process_message_stream(
        self,
        conversation_id: str,
        text: str,
        callbacks: StreamCallbacks,
    ) -> StreamingResult | None:
        """Run one turn on the bound provider, dispatching events to callbacks.

        Returns the result on completion, None if the provider reported an
        error (on_error was called). Raises TurnCancelled when a callback
        cancels the turn, ProviderError when the provider itself raises.
        """
        provider = self.get_provider(conversation_id)
        client = self._providers.get(provider)
        if client is None or not client.is_configured():
            raise ProviderUnavailableError(provider)

        started = time.monotonic()
        accumulated: list[str] = []
        tools: list[ToolUseEvent] = []
        stream = client.stream(conversation_id, text, model=self.get_model(conversation_id, provider))

        try:
            async for event in stream:
                if event.type == "error":
                    error = ProviderError(provider, event.text or "Unknown provider error")
                    logger.warning("Provider %s error for chat %s: %s", provider, conversation_id, error)
                    await self._invoke(callbacks.on_error, error)
                    return None

                if event.type == "done":
                    result = self._build_result(event, provider, started, "".join(accumulated), tools)
                    await self._invoke(callbacks.on_complete, result)
                    return result

                if event.type == "text_delta":
                    accumulated.append(event.text)
                elif event.type == "tool_use" and event.tool is not None:
                    tools.append(event.tool)

                await self._dispatch(event, callbacks)
        except (TurnCancelled, asyncio.CancelledError):
            raise
        except ProviderError:
            raise
        except Exception as e:
            logger.exception("Provider %s stream failed for chat %s", provider, conversation_id)
            raise ProviderError(provider, str(e) or type(e).__name__) from e
        finally:
            await stream.aclose()

        # Stream ended without a terminal event
        logger.debug("Provider %s ended without done event, completing", provider)
        result = self._build_result(ProviderEvent(type="done"), provider, started, "".join(accumulated), tools)
        await self._invoke(callbacks.on_complete, result)
        return result

    async def _dispatch(self, event: ProviderEvent, callbacks: StreamCallbacks) -> None:
        if event.type == "status" and event.status is not None:
            await self._invoke(callbacks.on_status_change, event.status)
        elif event.type == "text_delta" and event.text:
            await self._invoke(callbacks.on_content, event.text)
        elif event.type == "tool_use" and event.tool is not None:
            await self._invoke(callbacks.on_tool_use, event.tool)
        elif event.type == "tool_result" and event.result is not None:
            await self._invoke(callbacks.on_tool_result, event.result)

    @staticmethod
    async def _invoke(callback: Callable[..., Awaitable[None]] | None, *args: Any) -> None:
        """Run one callback. Handler failures are logged, not propagated.

        TurnCancelled is the exception: it ends the turn.
        """
        if callback is None:
            return
        try:
            await callback(*args)
        except (TurnCancelled, asyncio.CancelledError):
            raise
        except Exception:
            logger.exception("Stream callback %s failed", getattr(callback, "__name__", callback))

    @staticmethod
    def _build_result(
        event: ProviderEvent,
        provider: str,
        started: float,
        accumulated: str,
        tools: list[ToolUseEvent],
    ) -> StreamingResult:
        return StreamingResult(
            text=event.text or accumulated,
            session_id=event.session_id,
            provider=provider,
            duration_ms=int((time.monotonic() - started) * 1000),
            tool_history=list(tools),
            usage=event.usage,
        )

    async def close(self) -> None:
        for client in self._providers.values():
            await client.close()
