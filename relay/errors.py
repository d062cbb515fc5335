"""Exception taxonomy for the relay core."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class TurnInProgressError(RelayError):
    """A turn is already running for this conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(f"A turn is already in progress for conversation {conversation_id}")
        self.conversation_id = conversation_id


class TurnCancelled(RelayError):
    """Control signal: the user rejected (or ignored) a tool confirmation.

    Raised from inside an event callback to stop consuming the provider
    stream. Not a fault.
    """

    def __init__(self, tool_name: str, timed_out: bool = False):
        reason = "timed out" if timed_out else "rejected by user"
        super().__init__(f"Operation {tool_name} {reason}")
        self.tool_name = tool_name
        self.timed_out = timed_out


class ProviderError(RelayError):
    """A provider stream failed mid-turn."""

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailableError(ProviderError):
    """No configured client exists for the requested provider."""

    def __init__(self, provider: str):
        super().__init__(provider, f"Provider {provider} is not available")


class TelegramAPIError(RelayError):
    """Telegram Bot API returned ok=false."""

    def __init__(self, method: str, description: str, error_code: int | None = None):
        super().__init__(f"{method} failed: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code
