"""
Tests for ContentAggregator fed by a live RunStepReconstructor.
"""

import pytest

from threadline.coordination.event_bus import EventBus
from threadline.coordination.steps.aggregator import ContentAggregator
from threadline.coordination.steps.reconstructor import RunStepReconstructor
from threadline.messages.format import format_agent_messages
from threadline.messages.types import AIMessage, ToolCall, ToolCallChunk, ToolMessage, get_text


METADATA = {"run_id": "run-1", "node": "agent", "agent_id": "researcher", "provider": "anthropic"}
STEP_KEY = "run-1:agent:researcher"


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def reconstructor(bus):
    return RunStepReconstructor(event_bus=bus)


@pytest.fixture
def aggregator(bus):
    return ContentAggregator(event_bus=bus)


class TestContentAggregator:
    """Tests for turning step events into stored content parts."""

    @pytest.mark.asyncio
    async def test_anthropic_tool_round_trip(self, reconstructor, aggregator):
        await reconstructor.handle_content_delta(STEP_KEY, "Let me check", METADATA)
        tool_step_id = await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(name="calc", id="t1", args="", index=1)], METADATA
        )
        await reconstructor.handle_tool_call_chunks(STEP_KEY, [ToolCallChunk(args='{"x": ', index=1)], METADATA)
        await reconstructor.handle_tool_call_chunks(STEP_KEY, [ToolCallChunk(args="1}", index=1)], METADATA)
        await reconstructor.handle_tool_calls([ToolCall(name="calc", args={"x": 1}, id="t1")], METADATA)
        await reconstructor.dispatch_tool_completed(tool_step_id, "t1", "calc", "42")
        await reconstructor.handle_content_delta(STEP_KEY, "The answer is 42", METADATA)

        parts = aggregator.get_content_parts()

        assert parts == [
            {"type": "text", "text": "Let me check", "tool_call_ids": ["t1"]},
            {"type": "tool_call", "tool_call": {"id": "t1", "name": "calc", "args": '{"x": 1}', "output": "42"}},
            {"type": "text", "text": "The answer is 42"},
        ]

        messages = format_agent_messages([{"role": "assistant", "content": parts}]).messages

        assert isinstance(messages[0], AIMessage)
        assert messages[0].content == "Let me check"
        assert messages[0].tool_calls == [ToolCall(name="calc", args={"x": 1}, id="t1")]
        assert isinstance(messages[1], ToolMessage)
        assert messages[1].tool_call_id == "t1"
        assert messages[1].content == "42"
        assert get_text(messages[2]) == "The answer is 42"

    @pytest.mark.asyncio
    async def test_bedrock_completion_claims_idless_part(self, reconstructor, aggregator):
        """Argument fragments arrive without ids; the result names the call."""
        metadata = {**METADATA, "provider": "bedrock"}
        step_id = await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(args='{"x"', index=0)], metadata
        )
        await reconstructor.handle_tool_call_chunks(STEP_KEY, [ToolCallChunk(args=": 1}", index=0)], metadata)
        await reconstructor.handle_tool_calls([ToolCall(name="calc", args={"x": 1}, id="t1")], metadata)
        await reconstructor.dispatch_tool_completed(step_id, "t1", "calc", "42")

        assert aggregator.get_content_parts() == [
            {"type": "tool_call", "tool_call": {"id": "t1", "name": "calc", "args": '{"x": 1}', "output": "42"}},
        ]

    @pytest.mark.asyncio
    async def test_parallel_calls_become_separate_parts(self, reconstructor, aggregator):
        await reconstructor.handle_content_delta(STEP_KEY, "Both", METADATA)
        await reconstructor.handle_tool_calls(
            [ToolCall(name="weather", args={"city": "Paris"}, id="a"), ToolCall(name="news", id="b")], METADATA
        )

        parts = aggregator.get_content_parts()

        assert parts[0]["tool_call_ids"] == ["a", "b"]
        assert [p["tool_call"]["id"] for p in parts[1:]] == ["a", "b"]
        assert parts[1]["tool_call"]["args"] == {"city": "Paris"}

    @pytest.mark.asyncio
    async def test_reasoning_becomes_think_part(self, reconstructor, aggregator):
        await reconstructor.handle_content_delta(
            STEP_KEY,
            [{"type": "thinking", "thinking": "Let me "}, {"type": "text", "text": "ok"}],
            METADATA,
        )
        await reconstructor.handle_content_delta(STEP_KEY, [{"type": "thinking", "thinking": "think"}], METADATA)

        assert aggregator.get_content_parts() == [
            {"type": "think", "think": "Let me think"},
            {"type": "text", "text": "ok"},
        ]
        assert aggregator.agent_id_map == {0: "researcher", 1: "researcher"}

    @pytest.mark.asyncio
    async def test_returned_parts_are_copies(self, reconstructor, aggregator):
        await reconstructor.handle_content_delta(STEP_KEY, "Hi", METADATA)

        aggregator.get_content_parts()[0]["text"] = "changed"

        assert aggregator.content_parts[0]["text"] == "Hi"

    @pytest.mark.asyncio
    async def test_detach_stops_aggregation(self, bus, reconstructor, aggregator):
        aggregator.detach()

        await reconstructor.handle_content_delta(STEP_KEY, "Hi", METADATA)

        assert aggregator.content_parts == []
        assert bus.get_listener_count() == 0

    @pytest.mark.asyncio
    async def test_reset(self, reconstructor, aggregator):
        await reconstructor.handle_content_delta(STEP_KEY, "Hi", METADATA)

        aggregator.reset()

        assert aggregator.content_parts == []
        assert aggregator.agent_id_map == {}
        assert aggregator.steps == {}
