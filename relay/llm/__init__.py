"""Provider clients and the router that picks one per conversation."""

from relay.llm.providers import (
    BaseProvider,
    ChatCompletionsProvider,
    ClaudeCliProvider,
    ProviderEvent,
)
from relay.llm.router import LLMRouter, ProviderStatus

__all__ = [
    "BaseProvider",
    "ChatCompletionsProvider",
    "ClaudeCliProvider",
    "LLMRouter",
    "ProviderEvent",
    "ProviderStatus",
]
