"""Provider clients -- turn prompt text into a stream of ProviderEvents.

Two families:
- ChatCompletionsProvider: OpenAI-compatible /chat/completions over httpx
  with SSE streaming (Z.ai, MiniMax, Mistral). Text only, no tools.
- ClaudeCliProvider: spawns the Claude CLI with stream-json output and
  maps its assistant/user/result lines to events, including tool calls.

Providers yield events; they never call the orchestration callbacks
directly. LLMRouter does that translation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import httpx

from relay.errors import ProviderError
from relay.streaming.types import StreamStatus, ToolResultEvent, ToolUseEvent

logger = logging.getLogger(__name__)

MAX_CONVERSATIONS = 100


@dataclass
class ProviderEvent:
    """A single normalized event from a provider stream."""

    type: str  # status, text_delta, tool_use, tool_result, error, done
    text: str = ""
    status: StreamStatus | None = None
    tool: ToolUseEvent | None = None
    result: ToolResultEvent | None = None
    usage: dict[str, int] | None = None
    session_id: str = ""


@dataclass
class Message:
    """A single message in a conversation."""

    role: str  # "user" or "assistant"
    content: str


@dataclass
class Conversation:
    """Bounded chat history kept for stateless HTTP providers."""

    conversation_id: str
    messages: list[Message] = field(default_factory=list)


class BaseProvider(ABC):
    """Common surface every provider client implements."""

    key: str = ""
    label: str = ""

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials/binary are present."""

    @abstractmethod
    def stream(
        self,
        conversation_id: str,
        text: str,
        model: str | None = None,
    ) -> AsyncGenerator[ProviderEvent, None]:
        """Yield events for one turn. Must end with a done or error event."""

    @property
    def default_model(self) -> str | None:
        return None

    def reset(self, conversation_id: str) -> None:
        """Forget any per-conversation session state."""

    async def close(self) -> None:
        """Release network/process resources."""


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


def _parse_chat_chunk(data: dict[str, Any]) -> ProviderEvent | None:
    """Parse one chat.completion.chunk dict into a ProviderEvent."""
    if "error" in data:
        error = data["error"]
        message = error.get("message", "") if isinstance(error, dict) else str(error)
        return ProviderEvent(type="error", text=message or "unknown provider error")

    choices = data.get("choices") or []
    if not choices:
        usage = data.get("usage")
        if usage:
            return ProviderEvent(type="usage", usage=_normalize_usage(usage))
        return None

    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    if content:
        return ProviderEvent(type="text_delta", text=content)
    return None


def _normalize_usage(usage: dict[str, Any]) -> dict[str, int]:
    return {
        "input_tokens": int(usage.get("prompt_tokens") or usage.get("input_tokens") or 0),
        "output_tokens": int(usage.get("completion_tokens") or usage.get("output_tokens") or 0),
    }


class ChatCompletionsProvider(BaseProvider):
    """Streams from an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        key: str,
        label: str,
        base_url: str,
        api_key: str,
        model: str,
        system_prompt: str = "",
        max_history_messages: int = 20,
        timeout_connect: int = 10,
        timeout_read: int = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.key = key
        self.label = label
        self._api_key = api_key
        self._model = model
        self._system_prompt = system_prompt
        self._max_history = max_history_messages
        self._conversations: OrderedDict[str, Conversation] = OrderedDict()
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "authorization": f"Bearer {api_key}",
                "content-type": "application/json",
            },
            timeout=httpx.Timeout(connect=timeout_connect, read=timeout_read, write=10.0, pool=10.0),
            transport=transport,
        )

    def is_configured(self) -> bool:
        return bool(self._api_key)

    @property
    def default_model(self) -> str | None:
        return self._model

    def reset(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)

    async def close(self) -> None:
        await self._http.aclose()

    async def stream(
        self,
        conversation_id: str,
        text: str,
        model: str | None = None,
    ) -> AsyncGenerator[ProviderEvent, None]:
        conversation = self._get_or_create_conversation(conversation_id)
        payload = {
            "model": model or self._model,
            "messages": self._format_messages(conversation, text),
            "stream": True,
        }
        started = time.monotonic()

        yield ProviderEvent(type="status", status=StreamStatus.THINKING)

        parts: list[str] = []
        usage: dict[str, int] | None = None
        responding = False

        try:
            async with self._http.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code != 200:
                    error_body = await response.aread()
                    yield ProviderEvent(
                        type="error",
                        text=f"HTTP {response.status_code}: {error_body.decode(errors='replace')[:500]}",
                    )
                    return

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    raw = line[6:].strip()
                    if raw == "[DONE]":
                        break
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.debug("%s: skipping malformed chunk %r", self.key, raw[:100])
                        continue
                    event = _parse_chat_chunk(data)
                    if event is None:
                        continue
                    if event.type == "error":
                        yield event
                        return
                    if event.type == "usage":
                        usage = event.usage
                        continue
                    if not responding:
                        responding = True
                        yield ProviderEvent(type="status", status=StreamStatus.RESPONSE)
                    parts.append(event.text)
                    yield event
        except httpx.TimeoutException:
            yield ProviderEvent(type="error", text=f"{self.label} request timed out")
            return
        except httpx.HTTPError as e:
            yield ProviderEvent(type="error", text=f"{self.label} connection error: {e}")
            return

        response_text = "".join(parts)
        conversation.messages.append(Message(role="user", content=text))
        conversation.messages.append(Message(role="assistant", content=response_text))
        del conversation.messages[: -self._max_history]

        logger.debug(
            "%s answered chat %s in %.1fs (%d chars)",
            self.key,
            conversation_id,
            time.monotonic() - started,
            len(response_text),
        )
        yield ProviderEvent(
            type="done",
            text=response_text,
            usage=usage,
            session_id=f"{self.key}:{conversation_id}",
        )

    def _get_or_create_conversation(self, conversation_id: str) -> Conversation:
        """Get existing or create new conversation with LRU eviction."""
        if conversation_id in self._conversations:
            self._conversations.move_to_end(conversation_id)
            return self._conversations[conversation_id]

        while len(self._conversations) >= MAX_CONVERSATIONS:
            self._conversations.popitem(last=False)

        conversation = Conversation(conversation_id=conversation_id)
        self._conversations[conversation_id] = conversation
        return conversation

    def _format_messages(self, conversation: Conversation, text: str) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.extend(
            {"role": m.role, "content": m.content}
            for m in conversation.messages[-self._max_history:]
        )
        messages.append({"role": "user", "content": text})
        return messages


# ---------------------------------------------------------------------------
# Claude CLI
# ---------------------------------------------------------------------------


def parse_cli_line(data: dict[str, Any], pending_tools: dict[str, ToolUseEvent]) -> list[ProviderEvent]:
    """Map one stream-json line from the Claude CLI to events.

    pending_tools maps CLI tool_use ids to the events already emitted so
    tool_result blocks can be correlated.
    """
    line_type = data.get("type")
    events: list[ProviderEvent] = []

    if line_type in ("assistant", "user"):
        content = (data.get("message") or {}).get("content")
        if isinstance(content, str):
            if line_type == "assistant" and content:
                events.append(ProviderEvent(type="text_delta", text=content))
            return events
        for block in content or []:
            block_type = block.get("type")
            if block_type == "text" and block.get("text") and line_type == "assistant":
                events.append(ProviderEvent(type="text_delta", text=block["text"]))
            elif block_type == "tool_use" and block.get("name"):
                tool = ToolUseEvent(name=block["name"], input=block.get("input") or {})
                if block.get("id"):
                    tool.id = block["id"]
                pending_tools[tool.id] = tool
                events.append(ProviderEvent(type="tool_use", tool=tool))
            elif block_type == "tool_result":
                tool_use_id = block.get("tool_use_id", "")
                pending_tools.pop(tool_use_id, None)
                events.append(
                    ProviderEvent(
                        type="tool_result",
                        result=ToolResultEvent(
                            tool_use_id=tool_use_id,
                            content=_block_text(block.get("content")),
                            is_error=bool(block.get("is_error")),
                        ),
                    )
                )
        return events

    if line_type == "result":
        usage = data.get("usage") or {}
        if data.get("is_error"):
            events.append(ProviderEvent(type="error", text=str(data.get("result") or "Claude CLI error")))
        else:
            events.append(
                ProviderEvent(
                    type="done",
                    text=str(data.get("result") or ""),
                    usage=_normalize_usage(usage) if usage else None,
                    session_id=data.get("session_id", ""),
                )
            )
        return events

    # system/init and unknown lines carry nothing for the chat
    return events


def _block_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return "" if content is None else str(content)


class ClaudeCliProvider(BaseProvider):
    """Runs the local Claude CLI and streams its stream-json output."""

    key = "claude-cli"
    label = "Claude CLI"

    def __init__(
        self,
        binary: str = "claude",
        workdir: str = "/tmp/relay-workspace",
        timeout: int = 600,
        model: str | None = None,
    ):
        self._binary = binary
        self._workdir = workdir
        self._timeout = timeout
        self._model = model
        # conversation id -> CLI session id, for --resume
        self._sessions: dict[str, str] = {}

    def is_configured(self) -> bool:
        return shutil.which(self._binary) is not None

    @property
    def default_model(self) -> str | None:
        return self._model

    def reset(self, conversation_id: str) -> None:
        self._sessions.pop(conversation_id, None)

    def build_args(self, conversation_id: str, text: str, model: str | None = None) -> list[str]:
        args = ["-p", "--output-format", "stream-json", "--verbose"]
        session_id = self._sessions.get(conversation_id)
        if session_id:
            args += ["--resume", session_id]
        if model or self._model:
            args += ["--model", model or self._model]
        # Prompt goes last, after "--", so text starting with "-" is never an option
        args += ["--", text]
        return args

    async def stream(
        self,
        conversation_id: str,
        text: str,
        model: str | None = None,
    ) -> AsyncGenerator[ProviderEvent, None]:
        os.makedirs(self._workdir, exist_ok=True)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *self.build_args(conversation_id, text, model),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._workdir,
            )
        except OSError as e:
            raise ProviderError(self.key, f"Failed to run {self._binary}: {e}") from e

        yield ProviderEvent(type="status", status=StreamStatus.THINKING)

        pending_tools: dict[str, ToolUseEvent] = {}
        finished = False
        try:
            assert proc.stdout is not None
            while True:
                try:
                    raw = await asyncio.wait_for(proc.stdout.readline(), timeout=self._timeout)
                except asyncio.TimeoutError:
                    yield ProviderEvent(type="error", text=f"Claude CLI timed out after {self._timeout}s")
                    finished = True
                    return
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    # Plain text output, pass through
                    yield ProviderEvent(type="text_delta", text=line + "\n")
                    continue

                for event in parse_cli_line(data, pending_tools):
                    if event.type == "tool_use":
                        yield ProviderEvent(type="status", status=StreamStatus.TOOL_USE)
                    if event.type == "done":
                        if event.session_id:
                            self._sessions[conversation_id] = event.session_id
                        finished = True
                    if event.type == "error":
                        finished = True
                    yield event
                    if finished:
                        return

            returncode = await proc.wait()
            if returncode != 0:
                stderr = b""
                if proc.stderr is not None:
                    stderr = await proc.stderr.read()
                yield ProviderEvent(
                    type="error",
                    text=f"Claude CLI exited with code {returncode}: "
                    f"{stderr.decode('utf-8', errors='replace')[:500]}",
                )
                finished = True
        finally:
            if proc.returncode is None:
                # Stream abandoned (rejection, timeout, shutdown)
                proc.kill()
                await proc.wait()
                if not finished:
                    logger.info("Killed Claude CLI for chat %s", conversation_id)
