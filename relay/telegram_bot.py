"""Telegram bot for the relay.

Long-polls the Bot API, runs each inbound text message as a streaming turn
and routes inline keyboard presses back to pending confirmations.

Usage:
    TELEGRAM_BOT_TOKEN=... ZAI_API_KEY=... python -m relay.telegram_bot

Environment:
    TELEGRAM_BOT_TOKEN    - Bot token from @BotFather
    RELAY_ALLOWED_USERS   - Comma-separated Telegram user IDs (optional, empty = allow all)
    RELAY_DEFAULT_PROVIDER - zai, minimax, mistral or claude-cli
    See relay.config.Settings for the rest.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Coroutine

import httpx

from relay.config import Settings
from relay.errors import TelegramAPIError
from relay.llm.providers import BaseProvider, ChatCompletionsProvider, ClaudeCliProvider
from relay.llm.router import PROVIDER_LABELS, LLMRouter
from relay.ratelimit import RateLimiter
from relay.streaming.confirmation import ConfirmationManager, is_confirmation_callback
from relay.streaming.handler import StreamingOrchestrator
from relay.streaming.message_stream import MessageStreamer
from relay.streaming.status import StatusManager

logger = logging.getLogger(__name__)

# Telegram Bot API endpoint
TG_API = "{base}/bot{token}/{method}"

# Telegram answers this when an edit would not change anything
_NOT_MODIFIED = "message is not modified"

START_MESSAGE = (
    "🤖 Relay is ready. Send me a message!\n\n"
    "/provider [name] - show or switch the model provider\n"
    "/providers - list providers\n"
    "/model [name|default] - show or override the model\n"
    "/reset - start a new conversation"
)


class TelegramClient:
    """Thin async wrapper over the Bot API methods the relay needs."""

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        poll_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        # Read timeout must outlive the long poll
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10, read=poll_timeout + 10, write=10, pool=10),
            transport=transport,
        )

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Call a Bot API method. Raises TelegramAPIError on ok=false."""
        url = TG_API.format(base=self.api_base, token=self.bot_token, method=method)
        payload = {k: v for k, v in (params or {}).items() if v is not None}
        response = await self._http.post(url, json=payload)
        data = response.json()
        if not data.get("ok"):
            description = data.get("description", "unknown error")
            if _NOT_MODIFIED in description:
                return True
            logger.warning("Telegram API error on %s: %s", method, description)
            raise TelegramAPIError(method, description, data.get("error_code"))
        return data.get("result")

    async def send_message(
        self,
        chat_id: int,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict | None = None,
    ) -> dict:
        return await self.call(
            "sendMessage",
            {"chat_id": chat_id, "text": text, "parse_mode": parse_mode, "reply_markup": reply_markup},
        )

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        parse_mode: str | None = None,
        reply_markup: dict | None = None,
    ) -> Any:
        return await self.call(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": parse_mode,
                "reply_markup": reply_markup,
            },
        )

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        show_alert: bool = False,
    ) -> Any:
        return await self.call(
            "answerCallbackQuery",
            {"callback_query_id": callback_query_id, "text": text, "show_alert": show_alert},
        )

    async def send_chat_action(self, chat_id: int, action: str = "typing") -> Any:
        return await self.call("sendChatAction", {"chat_id": chat_id, "action": action})

    async def delete_message(self, chat_id: int, message_id: int) -> Any:
        return await self.call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def get_updates(self, offset: int = 0, timeout: int = 30) -> list[dict[str, Any]]:
        return await self.call(
            "getUpdates",
            {"offset": offset, "timeout": timeout, "allowed_updates": ["message", "callback_query"]},
        ) or []

    async def get_me(self) -> dict[str, Any]:
        return await self.call("getMe")

    async def close(self) -> None:
        await self._http.aclose()


class RelayTelegramBot:
    """Polling bot: commands, rate limiting and per-message turn tasks."""

    def __init__(
        self,
        settings: Settings,
        client: TelegramClient,
        orchestrator: StreamingOrchestrator,
        router: LLMRouter,
        confirmations: ConfirmationManager,
        rate_limiter: RateLimiter,
        status_manager: StatusManager,
    ):
        self.settings = settings
        self.client = client
        self.allowed_users = settings.allowed_user_ids
        self._orchestrator = orchestrator
        self._router = router
        self._confirmations = confirmations
        self._rate_limiter = rate_limiter
        self._status = status_manager
        self._offset = 0
        self._tasks: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None

    async def start(self) -> None:
        """Start polling loop."""
        me = await self.client.get_me()
        logger.info("Bot started: @%s (%s)", me.get("username"), me.get("id"))
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="relay-sweeper")

        while True:
            try:
                updates = await self.client.get_updates(self._offset, self.settings.poll_timeout)
                for update in updates:
                    self._offset = update["update_id"] + 1
                    await self.handle_update(update)
            except httpx.ReadTimeout:
                continue  # Normal for long polling
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Polling error: %s", e)
                await asyncio.sleep(5)

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Handle a single Telegram update."""
        callback_query = update.get("callback_query")
        if callback_query:
            await self._handle_callback_query(callback_query)
            return

        message = update.get("message")
        if message:
            await self._handle_message(message)

    async def _handle_callback_query(self, query: dict[str, Any]) -> None:
        data = query.get("data")
        if is_confirmation_callback(data):
            await self._confirmations.handle_callback(data, query["id"])
            return
        try:
            await self.client.answer_callback_query(query["id"], text="Unknown action")
        except Exception as e:
            logger.debug("Failed to answer callback %s: %s", query.get("id"), e)

    async def _handle_message(self, message: dict[str, Any]) -> None:
        chat_id = message["chat"]["id"]
        user_id = message.get("from", {}).get("id")
        text = (message.get("text") or "").strip()

        if not text:
            return

        # Access control
        if self.allowed_users and user_id not in self.allowed_users:
            await self._reply(chat_id, "⛔ Not authorized.")
            return

        is_command = text.startswith("/")
        if not self._allow(chat_id, user_id, is_command):
            return

        if is_command:
            await self._handle_command(chat_id, text)
            return

        self._spawn(self._orchestrator.handle(chat_id, text), f"turn-{chat_id}")

    def _allow(self, chat_id: int, user_id: int | None, is_command: bool) -> bool:
        if is_command:
            category = "commands"
            limit = self.settings.rate_limit_commands
            window_ms = self.settings.rate_limit_commands_window_ms
        else:
            category = "messages"
            limit = self.settings.rate_limit_messages
            window_ms = self.settings.rate_limit_messages_window_ms

        decision = self._rate_limiter.check(f"{chat_id}:{user_id}:{category}", limit, window_ms)
        if decision.allowed:
            return True

        seconds = max(1, -(-decision.retry_after_ms // 1000))
        logger.info("Rate limited %s in chat %s for %ss", category, chat_id, seconds)
        self._spawn(
            self._reply(chat_id, f"⏳ Too many requests. Try again in {seconds}s."),
            f"ratelimit-{chat_id}",
        )
        return False

    async def _handle_command(self, chat_id: int, text: str) -> None:
        command, _, argument = text.partition(" ")
        command = command.split("@", 1)[0].lower()
        argument = argument.strip()
        conversation_id = str(chat_id)

        if command == "/start":
            await self._reply(chat_id, START_MESSAGE)

        elif command == "/provider":
            if not argument:
                current = self._router.get_provider(conversation_id)
                model = self._router.get_model(conversation_id, current)
                suffix = f" ({model})" if model else ""
                await self._reply(
                    chat_id, f"Current provider: {self._router.get_provider_label(current)}{suffix}"
                )
                return
            try:
                key = self._router.set_provider(conversation_id, argument)
            except ValueError:
                await self._reply(
                    chat_id, f"❓ Unknown provider: {argument}\nAvailable: {', '.join(PROVIDER_LABELS)}"
                )
                return
            note = "" if self._router.is_provider_available(key) else " (not configured, falling back)"
            await self._reply(chat_id, f"✅ Switched to {self._router.get_provider_label(key)}{note}")

        elif command == "/model":
            current = self._router.get_provider(conversation_id)
            label = self._router.get_provider_label(current)
            if not argument:
                model = self._router.get_model(conversation_id, current) or "provider default"
                await self._reply(chat_id, f"Current model for {label}: {model}")
                return
            if argument.lower() == "default":
                self._router.clear_model(conversation_id, current)
                await self._reply(chat_id, f"✅ {label} reset to its default model")
                return
            self._router.set_model(conversation_id, current, argument)
            await self._reply(chat_id, f"✅ {label} will use {argument}")

        elif command == "/providers":
            lines = ["Providers:"]
            for status in self._router.get_provider_status():
                marker = "✅" if status.available else "❌"
                active = " ← active" if self._router.is_provider_active(conversation_id, status.provider) else ""
                reason = f" ({status.reason})" if status.reason else ""
                lines.append(f"{marker} {status.provider}: {status.label}{reason}{active}")
            await self._reply(chat_id, "\n".join(lines))

        elif command == "/reset":
            self._confirmations.cancel_chat(chat_id)
            self._router.reset_conversation(conversation_id)
            self._router.clear_model(conversation_id)
            await self._reply(chat_id, "🔄 New conversation started.")

        else:
            await self._reply(chat_id, f"❓ Unknown command: {command}")

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Task %s failed: %s", task.get_name(), task.exception())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            evicted = self._rate_limiter.sweep()
            stale = self._status.cleanup_stale()
            if evicted or stale:
                logger.debug("Swept %d rate-limit buckets, %d stale turns", evicted, stale)

    async def _reply(self, chat_id: int, text: str) -> None:
        try:
            await self.client.send_message(chat_id, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to reply in chat %s: %s", chat_id, e)

    async def close(self) -> None:
        """Cancel running turns and release clients."""
        if self._sweeper is not None:
            self._sweeper.cancel()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._orchestrator.destroy()
        await self._router.close()
        await self.client.close()


def build_providers(settings: Settings) -> dict[str, BaseProvider]:
    providers: dict[str, BaseProvider] = {}
    for key, api_key, base_url, model in (
        ("zai", settings.zai_api_key, settings.zai_base_url, settings.zai_model),
        ("minimax", settings.minimax_api_key, settings.minimax_base_url, settings.minimax_model),
        ("mistral", settings.mistral_api_key, settings.mistral_base_url, settings.mistral_model),
    ):
        providers[key] = ChatCompletionsProvider(
            key=key,
            label=PROVIDER_LABELS[key],
            base_url=base_url,
            api_key=api_key,
            model=model,
            max_history_messages=settings.max_history_messages,
            timeout_connect=settings.provider_timeout_connect,
            timeout_read=settings.provider_timeout_read,
        )
    if settings.claude_cli_enabled:
        providers["claude-cli"] = ClaudeCliProvider(
            binary=settings.claude_cli_binary,
            workdir=settings.claude_cli_workdir,
            timeout=settings.claude_cli_timeout,
        )
    return providers


def build_bot(settings: Settings, client: TelegramClient | None = None) -> RelayTelegramBot:
    """Wire the core components into a bot."""
    client = client or TelegramClient(
        settings.telegram_bot_token, settings.telegram_api_base, settings.poll_timeout
    )
    router = LLMRouter(
        build_providers(settings),
        default_provider=settings.default_provider,
        fallback_order=settings.fallback_providers,
    )
    status_manager = StatusManager(max_tool_history=settings.max_tool_history)
    confirmations = ConfirmationManager(client, timeout=settings.confirmation_timeout)
    orchestrator = StreamingOrchestrator(
        client,
        router,
        status_manager,
        MessageStreamer(client),
        confirmations,
        throttle=settings.stream_throttle,
        stream_max_length=settings.stream_max_length,
        message_max_length=settings.message_max_length,
        show_tool_results=settings.show_tool_results,
    )
    return RelayTelegramBot(
        settings,
        client,
        orchestrator,
        router,
        confirmations,
        RateLimiter(),
        status_manager,
    )


async def main() -> None:
    """Entry point."""
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not settings.telegram_bot_token:
        print("Error: TELEGRAM_BOT_TOKEN not set", file=sys.stderr)
        sys.exit(1)

    bot = build_bot(settings)
    try:
        await bot.start()
    finally:
        await bot.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
