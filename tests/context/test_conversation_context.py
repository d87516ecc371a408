"""Tests for the conversation context engine and compression helpers."""

import pytest

from meeting_scheduler.context.compression import (
    AI_SUMMARIZATION,
    HYBRID,
    SIMPLE,
    build_simple_context,
    estimate_tokens,
    select_hybrid_strategy,
    select_retained_messages,
)
from meeting_scheduler.context.conversation_context import ConversationContextEngine
from meeting_scheduler.context.mode_classifier import KeywordModeClassifier
from meeting_scheduler.memory.schemas import (
    AvailabilityResult,
    ConversationContextRecord,
    InvalidTimeRangeError,
    Message,
)
from meeting_scheduler.router.ai_router import RoutingError
from tests.conftest import MEETING_END, MEETING_START


def numbered_messages(count):
    return [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"message {i}")
        for i in range(count)
    ]


async def fill(engine, count):
    for message in numbered_messages(count):
        await engine.add_message(message)


class TestCompressionHelpers:
    def test_token_estimate(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_hybrid_strategy_selection(self):
        assert select_hybrid_strategy(4, 5000) == SIMPLE
        assert select_hybrid_strategy(20, 400) == SIMPLE
        assert select_hybrid_strategy(20, 2500) == AI_SUMMARIZATION
        assert select_hybrid_strategy(20, 2500, can_summarize=False) == SIMPLE
        assert select_hybrid_strategy(20, 1500) == SIMPLE

    def test_retained_messages_keep_anchor_and_recent(self):
        messages = numbered_messages(20)

        retained = select_retained_messages(messages, token_count=100, compression_level=0)

        assert retained[:2] == messages[:2]
        assert retained[2:] == messages[-8:]

    def test_simple_context_truncates_long_messages(self):
        record = ConversationContextRecord(
            conversation_id="c",
            user_id="u",
            messages=[Message(role="user", content="x" * 200)],
        )

        text = build_simple_context(record)

        assert "Mode: casual" in text
        assert "U: " + "x" * 80 + "..." in text


class TestModeClassifier:
    def test_transitions(self):
        classifier = KeywordModeClassifier()

        assert classifier.classify([Message(role="user", content="hi there")], "casual", None) == "casual"
        assert classifier.classify(
            [Message(role="user", content="Can we schedule a meeting?")], "casual", None
        ) == "scheduling"
        assert classifier.classify([Message(role="user", content="yes")], "scheduling", None) == "approval"
        assert classifier.classify([Message(role="user", content="yes")], "casual", None) == "casual"

    def test_plural_keywords(self):
        classifier = KeywordModeClassifier()

        assert classifier.classify([Message(role="user", content="any meetings?")], "casual", None) == "scheduling"


class TestConversationContextEngine:
    @pytest.mark.asyncio
    async def test_messages_are_persisted(self, context_engine, memory_store):
        await context_engine.add_message(Message(role="user", content="Let's schedule a meeting"))

        assert len(memory_store.messages["conv-1"]) == 1
        assert memory_store.contexts["conv-1"].mode == "scheduling"

    @pytest.mark.asyncio
    async def test_load_starts_from_recent_messages(self, memory_store):
        for message in numbered_messages(25):
            await memory_store.append_message("conv-9", message)
        engine = ConversationContextEngine("conv-9", "user-1", memory_store)

        record = await engine.load_context()

        assert len(record.messages) == 20
        assert record.messages[-1].content == "message 24"

    @pytest.mark.asyncio
    async def test_load_restores_stored_context(self, context_engine, memory_store):
        await context_engine.update_meeting_data({"title": "Retro"})
        engine = ConversationContextEngine("conv-1", "user-1", memory_store)

        await engine.load_context()

        assert engine.draft.title == "Retro"

    @pytest.mark.asyncio
    async def test_compress_requires_more_than_ten_messages(self, context_engine):
        await fill(context_engine, 10)

        assert await context_engine.compress_context(SIMPLE) is False
        assert context_engine.record.compression_level == 0

    @pytest.mark.asyncio
    async def test_simple_compression_bumps_level_and_keeps_history(self, context_engine, memory_store):
        await fill(context_engine, 12)

        assert await context_engine.compress_context(SIMPLE) is True

        assert len(context_engine.messages) == 8
        assert context_engine.record.compression_level == 1
        assert len(memory_store.messages["conv-1"]) == 12
        assert await context_engine.compress_context(SIMPLE) is False
        assert context_engine.record.compression_level == 1

    @pytest.mark.asyncio
    async def test_summarization_keeps_summary_and_recent(self, context_engine, mock_ai_service):
        await fill(context_engine, 12)

        assert await context_engine.compress_context(AI_SUMMARIZATION) is True

        messages = context_engine.messages
        assert len(messages) == 4
        assert messages[0].content == "Summary of earlier conversation: The user wants to plan a meeting."
        assert messages[0].metadata == {"summary": True, "summarized_messages": 9}
        assert messages[-1].content == "message 11"
        mock_ai_service.summarize_conversation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_summarization_falls_back_to_simple(self, context_engine, mock_ai_service):
        mock_ai_service.summarize_conversation.side_effect = RoutingError(
            "summarize_conversation", "down", "TIMEOUT"
        )
        await fill(context_engine, 12)

        assert await context_engine.compress_context(AI_SUMMARIZATION) is True
        assert len(context_engine.messages) == 8

    @pytest.mark.asyncio
    async def test_failed_summarization_reports_simple_context(self, context_engine, mock_ai_service):
        mock_ai_service.summarize_conversation.side_effect = RoutingError(
            "summarize_conversation", "down", "TIMEOUT"
        )
        await fill(context_engine, 12)

        compressed = await context_engine.get_compressed_context(AI_SUMMARIZATION)

        assert compressed.compression_strategy == SIMPLE
        assert "message 11" in compressed.compressed_context
        assert len(context_engine.messages) == 12

    @pytest.mark.asyncio
    async def test_add_message_compresses_over_threshold(self, memory_store):
        engine = ConversationContextEngine(
            "conv-2", "user-1", memory_store, max_context_length=20, compression_threshold=0.5
        )

        await fill(engine, 10)
        assert len(engine.messages) == 10
        assert engine.record.compression_level == 0

        await engine.add_message(Message(role="user", content="message 10"))

        assert [m.content for m in engine.messages] == [
            "message 0", "message 1", "message 5", "message 6", "message 7", "message 8", "message 9", "message 10",
        ]
        assert engine.record.compression_level == 1
        assert engine.get_performance_metrics()["compressions"] == 1

    @pytest.mark.asyncio
    async def test_add_message_below_threshold_keeps_window(self, context_engine):
        await fill(context_engine, 12)

        assert len(context_engine.messages) == 12
        assert context_engine.record.compression_level == 0

    @pytest.mark.asyncio
    async def test_compressed_context_reports_applied_strategy(self, context_engine):
        await fill(context_engine, 3)

        compressed = await context_engine.get_compressed_context(HYBRID)

        assert compressed.compression_strategy == SIMPLE
        assert "message 2" in compressed.compressed_context

    @pytest.mark.asyncio
    async def test_simple_context_does_not_mutate_window(self, context_engine):
        await fill(context_engine, 12)

        first = await context_engine.get_compressed_context(SIMPLE)
        second = await context_engine.get_compressed_context(SIMPLE)

        assert first.compressed_context == second.compressed_context
        assert len(context_engine.messages) == 12

    @pytest.mark.asyncio
    async def test_unknown_strategy_rejected(self, context_engine):
        with pytest.raises(ValueError):
            await context_engine.get_compressed_context("zip")

    @pytest.mark.asyncio
    async def test_message_history_pages_full_history(self, context_engine):
        await fill(context_engine, 12)
        await context_engine.compress_context(SIMPLE)

        page = await context_engine.get_message_history(offset=10, limit=5)

        assert page.total_count == 12
        assert len(page.messages) == 2
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_update_meeting_data_tracks_time_collection(self, context_engine):
        changed = await context_engine.update_meeting_data({
            "start_time": MEETING_START.isoformat(),
            "end_time": MEETING_END.isoformat(),
        })

        assert sorted(changed) == ["end_time", "start_time"]
        assert context_engine.record.time_collection_complete is True
        assert context_engine.validate_workflow_step("attendee_collection").is_valid is True

    @pytest.mark.asyncio
    async def test_time_change_clears_availability(self, context_engine):
        await context_engine.update_meeting_data({"start_time": MEETING_START, "end_time": MEETING_END})
        await context_engine.store_availability_result(
            AvailabilityResult(is_available=True, start_time=MEETING_START, end_time=MEETING_END)
        )

        await context_engine.update_meeting_data({"end_time": MEETING_END.replace(hour=16)})

        assert context_engine.record.availability_checked is False
        assert context_engine.record.availability_result is None

    @pytest.mark.asyncio
    async def test_reversed_window_is_rejected(self, context_engine, memory_store):
        with pytest.raises(InvalidTimeRangeError):
            await context_engine.update_meeting_data({"start_time": MEETING_END, "end_time": MEETING_START})

        assert context_engine.draft is None
        assert context_engine.record.time_collection_complete is False
        assert "conv-1" not in memory_store.contexts

    @pytest.mark.asyncio
    async def test_end_moved_before_start_is_rejected(self, context_engine):
        await context_engine.update_meeting_data({"start_time": MEETING_START, "end_time": MEETING_END})

        with pytest.raises(InvalidTimeRangeError):
            await context_engine.update_meeting_data({"end_time": MEETING_START})

        assert context_engine.draft.end_time == MEETING_END

    @pytest.mark.asyncio
    async def test_explicit_none_clears_field(self, context_engine):
        await context_engine.update_meeting_data({"title": "Retro", "location": "Room 1"})

        await context_engine.update_meeting_data({"location": None})

        assert context_engine.draft.title == "Retro"
        assert context_engine.draft.location is None

    def test_time_gate_without_times(self, context_engine):
        result = context_engine.validate_workflow_step("availability_check")

        assert result.errors == ["Time collection must be completed before availability check"]

    @pytest.mark.asyncio
    async def test_next_required_step(self, context_engine):
        assert context_engine.next_required_step() == "intent_detection"

        await context_engine.update_meeting_data({"title": "Retro", "type": "online"})
        assert context_engine.next_required_step() == "time_date_collection"

    @pytest.mark.asyncio
    async def test_reset_keeps_compression_level(self, context_engine):
        await fill(context_engine, 12)
        await context_engine.compress_context(SIMPLE)
        await context_engine.update_meeting_data({"title": "Retro"})

        await context_engine.reset()

        assert context_engine.messages == []
        assert context_engine.draft is None
        assert context_engine.record.compression_level == 1

    @pytest.mark.asyncio
    async def test_performance_metrics_after_compression(self, context_engine):
        await fill(context_engine, 12)
        assert context_engine.get_performance_metrics()["compressions"] == 0

        await context_engine.compress_context(SIMPLE)
        metrics = context_engine.get_performance_metrics()

        assert metrics["compressions"] == 1
        assert metrics["tokens_saved"] > 0
        assert 0 < metrics["compression_effectiveness"] < 1

    @pytest.mark.asyncio
    async def test_recommends_capturing_a_draft(self, context_engine):
        await context_engine.add_message(Message(role="user", content="Let's schedule a meeting"))

        assert context_engine.get_optimization_recommendations() == ["Capture meeting details into a draft"]

    @pytest.mark.asyncio
    async def test_manual_compression(self, context_engine):
        await fill(context_engine, 8)
        assert await context_engine.manual_compression(keep_recent=4, keep_initial=2) is True

        messages = context_engine.messages
        assert [m.content for m in messages] == [
            "message 0", "message 1", "message 4", "message 5", "message 6", "message 7",
        ]
        assert await context_engine.manual_compression(keep_recent=4, keep_initial=2) is False

    @pytest.mark.asyncio
    async def test_compression_recommendation(self, context_engine):
        await fill(context_engine, 5)
        assert context_engine.get_compression_recommendation()["should_compress"] is False

        await fill(context_engine, 7)
        context_engine.max_context_length = 20
        recommendation = context_engine.get_compression_recommendation()

        assert recommendation["should_compress"] is True
        assert recommendation["reason"].endswith("exceeds threshold 14")

    @pytest.mark.asyncio
    async def test_clear_availability_result(self, context_engine, memory_store):
        await context_engine.store_availability_result(
            AvailabilityResult(is_available=True, start_time=MEETING_START, end_time=MEETING_END)
        )

        await context_engine.clear_availability_result()

        assert memory_store.contexts["conv-1"].availability_checked is False
        assert memory_store.contexts["conv-1"].availability_result is None
