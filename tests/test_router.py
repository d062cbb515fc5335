"""Tests for LLMRouter provider selection and stream dispatch."""

from __future__ import annotations

import pytest

from relay.errors import ProviderError, ProviderUnavailableError, TurnCancelled
from relay.llm.providers import ProviderEvent
from relay.llm.router import LLMRouter
from relay.streaming.types import StreamCallbacks, StreamStatus, ToolResultEvent, ToolUseEvent


class Recorder:
    """Collects callback invocations in order."""

    def __init__(self):
        self.calls: list[tuple[str, object]] = []

    def callbacks(self, **overrides) -> StreamCallbacks:
        def record(name):
            async def callback(arg):
                self.calls.append((name, arg))

            return callback

        names = ["on_status_change", "on_tool_use", "on_tool_result", "on_content", "on_error", "on_complete"]
        kwargs = {name: record(name) for name in names}
        kwargs.update(overrides)
        return StreamCallbacks(**kwargs)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class TestSelection:
    def test_default_when_configured(self, make_router):
        router = make_router(zai=True, minimax=True)
        assert router.get_provider("1") == "zai"

    def test_falls_back_in_order(self, make_router):
        router = make_router(mistral=True, minimax=True)
        assert router.get_provider("1") == "minimax"

    def test_override_wins(self, make_router):
        router = make_router(zai=True, mistral=True)
        assert router.set_provider("1", "Mixtral") == "mistral"
        assert router.get_provider("1") == "mistral"
        assert router.get_provider("2") == "zai"
        assert router.is_provider_active("1", "mistral")

    def test_unconfigured_override_falls_back(self, make_router):
        router = make_router(zai=True)
        router.set_provider("1", "claude")
        assert router.get_provider("1") == "zai"
        router.clear_provider("1")
        assert router.get_provider("1") == "zai"

    def test_unknown_alias_rejected(self, make_router):
        router = make_router(zai=True)
        with pytest.raises(ValueError):
            router.set_provider("1", "gpt-9")

    def test_aliases(self):
        assert LLMRouter.normalize_provider(" GLM ") == "zai"
        assert LLMRouter.normalize_provider("cli") == "claude-cli"
        assert LLMRouter.normalize_provider("nope") is None

    def test_provider_status(self, make_router):
        statuses = {s.provider: s for s in make_router(zai=True).get_provider_status()}
        assert statuses["zai"].available and statuses["zai"].reason is None
        assert not statuses["minimax"].available
        assert statuses["claude-cli"].reason.startswith("Requires")

    def test_model_overrides(self, make_router):
        router = make_router(zai=True)
        assert router.get_model("1", "zai") is None
        router.set_model("1", "zai", "glm-4.5")
        assert router.get_model("1", "zai") == "glm-4.5"
        router.clear_model("1", "zai")
        assert router.get_model("1", "zai") is None

    def test_reset_conversation_reaches_every_provider(self, make_router):
        router = make_router(zai=True)
        router.reset_conversation("1")
        assert all(p.resets == ["1"] for p in router._providers.values())


class TestProcessMessageStream:
    @pytest.mark.asyncio
    async def test_events_dispatched_in_order(self, make_router):
        router = make_router(zai=True)
        tool = ToolUseEvent(name="read", input={"file_path": "/a"})
        router._providers["zai"].events = [
            ProviderEvent(type="status", status=StreamStatus.THINKING),
            ProviderEvent(type="tool_use", tool=tool),
            ProviderEvent(type="tool_result", result=ToolResultEvent(tool_use_id=tool.id, content="x")),
            ProviderEvent(type="text_delta", text="Hel"),
            ProviderEvent(type="text_delta", text="lo"),
            ProviderEvent(type="done", usage={"input_tokens": 3, "output_tokens": 2}, session_id="s1"),
        ]
        recorder = Recorder()

        result = await router.process_message_stream("1", "hi", recorder.callbacks())

        assert recorder.names() == [
            "on_status_change",
            "on_tool_use",
            "on_tool_result",
            "on_content",
            "on_content",
            "on_complete",
        ]
        assert result.text == "Hello"
        assert result.provider == "zai"
        assert result.session_id == "s1"
        assert result.tool_history == [tool]
        assert router._providers["zai"].calls == [("1", "hi", None)]

    @pytest.mark.asyncio
    async def test_error_event_calls_on_error_only(self, make_router):
        router = make_router(zai=True)
        router._providers["zai"].events = [
            ProviderEvent(type="text_delta", text="partial"),
            ProviderEvent(type="error", text="HTTP 401: bad key"),
            ProviderEvent(type="done"),
        ]
        recorder = Recorder()

        assert await router.process_message_stream("1", "hi", recorder.callbacks()) is None
        assert recorder.names() == ["on_content", "on_error"]
        error = recorder.calls[-1][1]
        assert isinstance(error, ProviderError)
        assert "401" in str(error)

    @pytest.mark.asyncio
    async def test_callback_failure_is_isolated(self, make_router):
        router = make_router(zai=True)
        router._providers["zai"].events = [
            ProviderEvent(type="text_delta", text="a"),
            ProviderEvent(type="text_delta", text="b"),
            ProviderEvent(type="done"),
        ]
        recorder = Recorder()

        async def broken(chunk):
            raise RuntimeError("handler bug")

        result = await router.process_message_stream("1", "hi", recorder.callbacks(on_content=broken))
        assert result.text == "ab"
        assert recorder.names() == ["on_complete"]

    @pytest.mark.asyncio
    async def test_turn_cancelled_stops_stream(self, make_router):
        router = make_router(zai=True)
        provider = router._providers["zai"]
        provider.events = [
            ProviderEvent(type="tool_use", tool=ToolUseEvent(name="write")),
            ProviderEvent(type="text_delta", text="never"),
            ProviderEvent(type="done"),
        ]
        recorder = Recorder()

        async def reject(tool):
            raise TurnCancelled(tool.name)

        with pytest.raises(TurnCancelled):
            await router.process_message_stream("1", "hi", recorder.callbacks(on_tool_use=reject))
        assert recorder.calls == []
        assert provider.closed

    @pytest.mark.asyncio
    async def test_provider_exception_becomes_provider_error(self, make_router):
        router = make_router(zai=True)
        router._providers["zai"].raise_after = ConnectionError("reset by peer")
        recorder = Recorder()

        with pytest.raises(ProviderError, match="reset by peer"):
            await router.process_message_stream("1", "hi", recorder.callbacks())
        assert "on_error" not in recorder.names()

    @pytest.mark.asyncio
    async def test_stream_without_done_is_completed(self, make_router):
        router = make_router(zai=True)
        router._providers["zai"].events = [ProviderEvent(type="text_delta", text="tail")]
        recorder = Recorder()

        result = await router.process_message_stream("1", "hi", recorder.callbacks())
        assert result.text == "tail"
        assert recorder.names() == ["on_content", "on_complete"]

    @pytest.mark.asyncio
    async def test_no_configured_provider(self, make_router):
        router = make_router()
        with pytest.raises(ProviderUnavailableError):
            await router.process_message_stream("1", "hi", Recorder().callbacks())
