"""Tests for StatusManager state tracking and status display."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from relay.errors import TurnInProgressError
from relay.streaming.status import StatusManager
from relay.streaming.types import StreamStatus, ToolUseEvent


class TestLifecycle:
    def test_create_starts_idle(self):
        manager = StatusManager()
        state = manager.create_state("1", "Z.ai GLM-4.7")
        assert state.status == StreamStatus.IDLE
        assert state.provider_label == "Z.ai GLM-4.7"
        assert state.current_tool == ""
        assert state.message_id is None

    def test_second_create_is_rejected(self):
        """A running turn is never overwritten."""
        manager = StatusManager()
        first = manager.create_state("1")
        with pytest.raises(TurnInProgressError):
            manager.create_state("1")
        assert manager.get_state("1") is first

    def test_clear_is_idempotent(self):
        manager = StatusManager()
        manager.create_state("1")
        manager.clear_state("1")
        manager.clear_state("1")
        assert manager.get_state("1") is None
        manager.create_state("1")

    def test_error_records_last_error(self):
        manager = StatusManager()
        manager.create_state("1")
        manager.update_status("1", StreamStatus.THINKING, "ignored")
        assert manager.get_state("1").last_error is None
        manager.update_status("1", StreamStatus.ERROR, "boom")
        assert manager.get_state("1").last_error == "boom"

    def test_updates_without_state_are_ignored(self):
        manager = StatusManager()
        manager.update_status("missing", StreamStatus.THINKING)
        manager.set_current_tool("missing", "bash")
        manager.add_tool_to_history("missing", ToolUseEvent(name="bash"))
        assert len(manager) == 0

    def test_tool_history_keeps_most_recent(self):
        manager = StatusManager(max_tool_history=3)
        manager.create_state("1")
        for i in range(5):
            manager.add_tool_to_history("1", ToolUseEvent(name=f"t{i}"))
        assert [t.name for t in manager.get_state("1").tool_history] == ["t2", "t3", "t4"]

    def test_cleanup_stale(self):
        manager = StatusManager()
        with patch("time.time", return_value=1000.0):
            manager.create_state("old")
        with patch("time.time", return_value=5000.0):
            manager.create_state("new")
            assert manager.cleanup_stale(max_age=3600) == 1
        assert manager.get_state("old") is None
        assert manager.get_state("new") is not None


class TestStatusDisplay:
    def test_no_state(self):
        assert StatusManager().generate_status_display("1") == "⏳ Initializing..."

    def test_thinking_with_provider(self):
        manager = StatusManager()
        manager.create_state("1", "Mistral")
        manager.update_status("1", StreamStatus.THINKING)
        display = manager.generate_status_display("1")
        assert display.startswith("\U0001f914 Analyzing · Mistral")
        assert "s)" not in display

    def test_elapsed_shown_after_three_seconds(self):
        manager = StatusManager()
        with patch("time.time", return_value=1000.0):
            manager.create_state("1")
            manager.update_status("1", StreamStatus.RESPONSE)
        with patch("time.time", return_value=1007.5):
            display = manager.generate_status_display("1")
        assert "(7s)" in display

    def test_current_tool_and_tokens(self):
        manager = StatusManager()
        manager.create_state("1")
        manager.set_current_tool("1", "bash")
        assert "\U0001f527 bash" in manager.generate_status_display("1")

        manager.set_current_tool("1", "")
        manager.set_tokens("1", 1200, 300)
        manager.update_status("1", StreamStatus.COMPLETE)
        display = manager.generate_status_display("1")
        assert "1.5k tokens" in display
        assert "1.2k in + 0.3k out" in display

    def test_error_includes_suggestions(self):
        manager = StatusManager()
        manager.create_state("1")
        manager.update_status("1", StreamStatus.ERROR, "Request timed out")
        display = manager.generate_status_display("1")
        assert "❌ Request timed out" in display
        assert "Possible solutions" in display
        assert "took too long" in display
