"""Human-in-the-loop confirmation for dangerous tool calls.

request_confirmation() parks the calling turn on a future keyed by a
confirmation id. The inline keyboard callback, which arrives through a
different update than the one that started the turn, resolves it via
handle_callback(). Silence is refusal: an unanswered prompt resolves to
False after the timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from uuid import uuid4

from relay.streaming.types import ChatTransport, ToolUseEvent

logger = logging.getLogger(__name__)

CALLBACK_PREFIX = "confirm"
APPROVE = "approve"
REJECT = "reject"

DEFAULT_TIMEOUT = 5 * 60

DANGEROUS_TOOLS = frozenset({"write", "edit", "delete", "multiedit", "notebookedit"})

DANGEROUS_COMMANDS = (
    "rm -rf",
    "rm -r",
    "del ",
    "delete",
    "format",
    "mkfs",
    "dd if=",
    "git push --force",
    "git push -f",
    "git reset --hard",
    "chmod 000",
    "> /dev/",
    "shutdown",
    "reboot",
)

_SHELL_TOOLS = frozenset({"bash", "shell"})


class ConfirmationOutcome(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"  # prompt could not be delivered


@dataclass
class PendingConfirmation:
    confirmation_id: str
    chat_id: int
    tool: ToolUseEvent
    future: asyncio.Future[bool]
    created_at: float = field(default_factory=time.time)
    message_id: int | None = None


def build_callback_data(confirmation_id: str, decision: str) -> str:
    return f"{CALLBACK_PREFIX}:{confirmation_id}:{decision}"


def parse_callback_data(data: str) -> tuple[str, str] | None:
    """Return (confirmation_id, decision) or None if data is not ours."""
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX:
        return None
    _, confirmation_id, decision = parts
    if not confirmation_id or decision not in (APPROVE, REJECT):
        return None
    return confirmation_id, decision


def is_confirmation_callback(data: str | None) -> bool:
    return bool(data) and data.startswith(f"{CALLBACK_PREFIX}:")


class ConfirmationManager:
    """Gates dangerous tool calls behind an approve/reject prompt."""

    def __init__(
        self,
        transport: ChatTransport,
        timeout: float = DEFAULT_TIMEOUT,
        extra_tools: set[str] | None = None,
        extra_commands: tuple[str, ...] = (),
    ):
        self._transport = transport
        self.timeout = timeout
        self._dangerous_tools = DANGEROUS_TOOLS | {t.lower() for t in (extra_tools or set())}
        self._dangerous_commands = DANGEROUS_COMMANDS + tuple(c.lower() for c in extra_commands)
        self._pending: dict[str, PendingConfirmation] = {}

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def requires_confirmation(self, tool: ToolUseEvent) -> bool:
        """Pure policy check: dangerous tool name or dangerous shell command."""
        name = tool.name.lower()
        if name in self._dangerous_tools:
            return True
        if name in _SHELL_TOOLS:
            command = tool.input.get("command")
            if isinstance(command, str) and self.is_dangerous_command(command):
                return True
        return False

    def is_dangerous_command(self, command: str) -> bool:
        lowered = command.lower()
        return any(pattern in lowered for pattern in self._dangerous_commands)

    # ------------------------------------------------------------------
    # Request / resolve
    # ------------------------------------------------------------------

    async def request_confirmation(self, tool: ToolUseEvent, chat_id: int) -> bool:
        """Prompt the user and wait for a decision. False on reject or timeout."""
        return await self.request_decision(tool, chat_id) == ConfirmationOutcome.APPROVED

    async def request_decision(self, tool: ToolUseEvent, chat_id: int) -> ConfirmationOutcome:
        """Like request_confirmation(), but tells rejection and expiry apart."""
        confirmation_id = uuid4().hex[:16]
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        pending = PendingConfirmation(
            confirmation_id=confirmation_id,
            chat_id=chat_id,
            tool=tool,
            future=future,
        )
        # Register before sending so a fast callback always finds the entry
        self._pending[confirmation_id] = pending
        logger.info("Requesting confirmation %s for %s in chat %s", confirmation_id, tool.name, chat_id)

        try:
            result = await self._transport.send_message(
                chat_id,
                self.format_confirmation_message(tool),
                reply_markup=self._keyboard(confirmation_id),
            )
        except asyncio.CancelledError:
            self._pending.pop(confirmation_id, None)
            raise
        except Exception as e:
            logger.error("Failed to send confirmation prompt for %s: %s", tool.name, e)
            self._pending.pop(confirmation_id, None)
            return ConfirmationOutcome.FAILED

        if isinstance(result, dict):
            pending.message_id = result.get("message_id")

        try:
            approved = await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout)
        except asyncio.TimeoutError:
            if not self._resolve(confirmation_id, False):
                # A callback won the race against the timer
                approved = future.result()
            else:
                logger.warning(
                    "Confirmation %s for %s timed out after %ss, denying",
                    confirmation_id,
                    tool.name,
                    self.timeout,
                )
                await self._close_prompt(pending, "⌛ Confirmation expired, operation denied")
                return ConfirmationOutcome.EXPIRED
        finally:
            self._pending.pop(confirmation_id, None)

        return ConfirmationOutcome.APPROVED if approved else ConfirmationOutcome.REJECTED

    async def handle_callback(self, callback_data: str, callback_query_id: str) -> bool | None:
        """Resolve a pending confirmation from an inline keyboard press.

        Returns the decision, or None when nothing was pending (duplicate
        delivery, expired, or malformed data). Never raises for those.
        """
        parsed = parse_callback_data(callback_data)
        if parsed is None:
            logger.warning("Malformed confirmation callback: %r", callback_data)
            await self._answer(callback_query_id, "Unknown action")
            return None

        confirmation_id, decision = parsed
        pending = self._pending.get(confirmation_id)
        approved = decision == APPROVE

        if pending is None or not self._resolve(confirmation_id, approved):
            logger.info("Callback for unknown or resolved confirmation %s", confirmation_id)
            await self._answer(callback_query_id, "This confirmation is no longer active")
            return None

        logger.info("Confirmation %s %s", confirmation_id, "approved" if approved else "rejected")
        await self._answer(callback_query_id, "✅ Approved" if approved else "❌ Rejected")
        await self._close_prompt(pending, "✅ Approved" if approved else "❌ Rejected")
        return approved

    def cancel(self, confirmation_id: str) -> bool:
        """Deny a pending confirmation without user input."""
        if self._resolve(confirmation_id, False):
            logger.info("Confirmation %s cancelled", confirmation_id)
            return True
        return False

    def cancel_chat(self, chat_id: int) -> int:
        ids = [cid for cid, p in self._pending.items() if p.chat_id == chat_id]
        return sum(1 for cid in ids if self.cancel(cid))

    def _resolve(self, confirmation_id: str, approved: bool) -> bool:
        """Set the decision once and drop the entry. False if already resolved."""
        pending = self._pending.pop(confirmation_id, None)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(approved)
        return True

    # ------------------------------------------------------------------
    # Telegram plumbing
    # ------------------------------------------------------------------

    def _keyboard(self, confirmation_id: str) -> dict:
        return {
            "inline_keyboard": [
                [
                    {"text": "✅ Approve", "callback_data": build_callback_data(confirmation_id, APPROVE)},
                    {"text": "❌ Reject", "callback_data": build_callback_data(confirmation_id, REJECT)},
                ]
            ]
        }

    async def _answer(self, callback_query_id: str, text: str) -> None:
        try:
            await self._transport.answer_callback_query(callback_query_id, text=text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to answer callback %s: %s", callback_query_id, e)

    async def _close_prompt(self, pending: PendingConfirmation, outcome: str) -> None:
        """Replace the prompt (and its buttons) with the outcome."""
        if pending.message_id is None:
            return
        try:
            await self._transport.edit_message_text(
                pending.chat_id,
                pending.message_id,
                f"{outcome}: {pending.tool.name}",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Could not update confirmation prompt %s: %s", pending.confirmation_id, e)

    @staticmethod
    def format_confirmation_message(tool: ToolUseEvent) -> str:
        lines = ["⚠️ Confirmation required", "", "The assistant wants to execute:", ""]
        name = tool.name.lower()
        tool_input = tool.input or {}

        if name in _SHELL_TOOLS:
            lines.append(f"$ {tool_input.get('command', '')}")
        elif name == "write":
            content = tool_input.get("content") or ""
            lines.append(f"File: {tool_input.get('file_path', '')}")
            lines.append(f"Action: write {len(content)} bytes")
        elif name in ("edit", "multiedit"):
            lines.append(f"File: {tool_input.get('file_path', '')}")
            lines.append("Action: edit file")
        else:
            lines.append(f"Tool: {tool.name}")
            lines.append(f"Input: {json.dumps(tool_input, indent=2, default=str)[:1000]}")

        lines.extend(["", "⚠️ This action could be destructive. Approve?"])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Introspection / teardown
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def destroy(self) -> None:
        """Deny everything still waiting."""
        for confirmation_id in list(self._pending):
            self._resolve(confirmation_id, False)
        self._pending.clear()
