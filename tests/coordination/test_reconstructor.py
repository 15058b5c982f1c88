"""
Tests for RunStepReconstructor.

Streams are fed through the public handlers and the resulting steps are
checked both on the reconstructor's state and on the events it published.
"""

import logging

import pytest

from threadline.coordination.event_bus import EventBus
from threadline.coordination.steps.events import (
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    RunStepCreatedEvent,
    RunStepDeltaEvent,
    ToolCompletedEvent,
)
from threadline.coordination.steps.reconstructor import RunStepReconstructor, format_web_search_results
from threadline.coordination.steps.types import StepType
from threadline.exceptions import RunStepError
from threadline.messages.types import ToolCall, ToolCallChunk


METADATA = {"run_id": "run-1", "node": "agent", "agent_id": "researcher", "provider": "anthropic"}
STEP_KEY = "run-1:agent:researcher"


@pytest.fixture
def bus():
    return EventBus(max_history=None)


@pytest.fixture
def reconstructor(bus):
    return RunStepReconstructor(event_bus=bus)


def events_of(bus, event_class):
    return [event for event in bus.events if isinstance(event, event_class)]


def step_types(reconstructor):
    return [step.type for step in reconstructor.steps]


def assert_disjoint_tool_steps(reconstructor):
    """Every tool-call id lives in exactly one TOOL_CALLS step."""
    seen = {}
    for step in reconstructor.steps:
        for tool_call_id in step.tool_call_ids:
            assert tool_call_id not in seen, f"{tool_call_id} in {seen[tool_call_id]} and {step.id}"
            seen[tool_call_id] = step.id
            assert step.type == StepType.TOOL_CALLS


# =============================================================================
# Step keys and lookup
# =============================================================================

class TestStepKeys:
    """Tests for step key construction and step lookup."""

    def test_full_key(self, reconstructor):
        assert reconstructor.get_step_key(METADATA) == STEP_KEY

    def test_missing_parts_are_dropped(self, reconstructor):
        assert reconstructor.get_step_key({"run_id": "run-1", "agent_id": "a1"}) == "run-1:a1"
        assert reconstructor.get_step_key({"run_id": "run-1"}) == "run-1"

    @pytest.mark.parametrize("metadata", [None, {}, {"agent_id": "a1"}])
    def test_missing_run_id_raises(self, reconstructor, metadata):
        with pytest.raises(RunStepError):
            reconstructor.get_step_key(metadata)

    def test_unknown_key_has_no_step(self, reconstructor):
        assert reconstructor.get_step_id_by_key("nothing") is None
        assert reconstructor.get_run_step(None) is None

    @pytest.mark.asyncio
    async def test_delta_for_unknown_step_raises(self, reconstructor):
        with pytest.raises(RunStepError) as exc_info:
            await reconstructor.dispatch_message_delta("step_missing", [{"type": "text", "text": "x"}])

        assert exc_info.value.step_id == "step_missing"


# =============================================================================
# Content deltas
# =============================================================================

class TestContentDeltas:
    """Tests for handle_content_delta."""

    @pytest.mark.asyncio
    async def test_text_stream_shares_one_message_step(self, reconstructor, bus):
        first = await reconstructor.handle_content_delta(STEP_KEY, "Hello", METADATA)
        second = await reconstructor.handle_content_delta(STEP_KEY, [{"type": "text", "text": " world"}], METADATA)

        assert first == second
        assert step_types(reconstructor) == [StepType.MESSAGE_CREATION]
        assert [e.content for e in events_of(bus, MessageDeltaEvent)] == [
            [{"type": "text", "text": "Hello"}],
            [{"type": "text", "text": " world"}],
        ]

    @pytest.mark.asyncio
    async def test_step_carries_agent_and_message_id(self, reconstructor, bus):
        step_id = await reconstructor.handle_content_delta(STEP_KEY, "Hi", METADATA)

        step = reconstructor.get_run_step(step_id)
        created = events_of(bus, RunStepCreatedEvent)[0]
        assert step.agent_id == "researcher"
        assert step.index == 0
        assert step_id.startswith("step_")
        assert step.step_details.message_id == reconstructor.message_ids_by_key[STEP_KEY]
        assert step.step_details.message_id.startswith("msg_")
        assert created.run_step is step
        assert created.agent_id == "researcher"

    @pytest.mark.asyncio
    async def test_empty_text_is_not_routed(self, reconstructor, bus):
        step_id = await reconstructor.handle_content_delta(STEP_KEY, [{"type": "text", "text": ""}], METADATA)

        assert step_id is not None
        assert events_of(bus, MessageDeltaEvent) == []

    @pytest.mark.asyncio
    async def test_reasoning_is_normalized_and_routed_first(self, reconstructor, bus):
        metadata = {**METADATA, "provider": "bedrock"}
        content = [
            {"type": "text", "text": "Answer"},
            {"type": "reasoning_content", "reasoningText": {"text": "Let me think"}},
        ]

        await reconstructor.handle_content_delta(STEP_KEY, content, metadata)

        reasoning = events_of(bus, ReasoningDeltaEvent)
        assert reasoning[0].content == [{"type": "thinking", "thinking": "Let me think"}]
        assert bus.events[-2] is reasoning[0]
        assert isinstance(bus.events[-1], MessageDeltaEvent)

    @pytest.mark.asyncio
    async def test_text_after_tool_step_opens_new_message_step(self, reconstructor):
        await reconstructor.handle_content_delta(STEP_KEY, "Checking", METADATA)
        await reconstructor.handle_tool_calls([ToolCall(name="calc", args={"x": 1}, id="t1")], METADATA)

        step_id = await reconstructor.handle_content_delta(STEP_KEY, "Done", METADATA)

        assert step_types(reconstructor) == [
            StepType.MESSAGE_CREATION,
            StepType.TOOL_CALLS,
            StepType.MESSAGE_CREATION,
        ]
        assert step_id == reconstructor.steps[-1].id

    @pytest.mark.asyncio
    async def test_empty_delta_after_tool_step(self, reconstructor):
        await reconstructor.handle_tool_calls([ToolCall(name="calc", id="t1")], METADATA)

        assert await reconstructor.handle_content_delta(STEP_KEY, "", METADATA) is None
        assert step_types(reconstructor) == [StepType.MESSAGE_CREATION, StepType.TOOL_CALLS]

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self, reconstructor):
        other_key = "run-1:agent:writer"

        await reconstructor.handle_content_delta(STEP_KEY, "a", METADATA)
        await reconstructor.handle_content_delta(other_key, "b", {**METADATA, "agent_id": "writer"})

        assert len(reconstructor.step_ids_by_key[STEP_KEY]) == 1
        assert len(reconstructor.step_ids_by_key[other_key]) == 1
        assert reconstructor.get_step_id_by_key(STEP_KEY) != reconstructor.get_step_id_by_key(other_key)


# =============================================================================
# Tool-call chunks and finalized calls
# =============================================================================

class TestToolCalls:
    """Tests for handle_tool_call_chunks and handle_tool_calls."""

    @pytest.mark.asyncio
    async def test_anthropic_stream(self, reconstructor, bus):
        """Text, then a named chunk, then argument fragments, then the finalized call."""
        await reconstructor.handle_content_delta(STEP_KEY, "Let me calculate", METADATA)
        first = await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(name="calc", id="t1", args="", index=1)], METADATA
        )
        second = await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(args='{"x": 1}', index=1)], METADATA
        )
        await reconstructor.handle_tool_calls([ToolCall(name="calc", args={"x": 1}, id="t1")], METADATA)

        message_step, tool_step = reconstructor.steps
        assert first == second == tool_step.id
        assert step_types(reconstructor) == [StepType.MESSAGE_CREATION, StepType.TOOL_CALLS]
        assert tool_step.tool_call_ids == ["t1"]
        assert reconstructor.tool_call_step_ids == {"t1": tool_step.id}
        assert message_step.id in reconstructor.message_step_has_tool_calls

        deltas = events_of(bus, RunStepDeltaEvent)
        assert [d.delta.tool_calls[0]["args"] for d in deltas] == ["", '{"x": 1}']
        assert deltas[1].delta.tool_calls[0]["id"] is None

    @pytest.mark.asyncio
    async def test_chunks_without_step_open_message_step_first(self, reconstructor):
        await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(name="calc", id="t1", args="{}", index=0)], METADATA
        )

        assert step_types(reconstructor) == [StepType.MESSAGE_CREATION, StepType.TOOL_CALLS]

    @pytest.mark.asyncio
    async def test_bedrock_idless_chunks_then_finalized_call(self, reconstructor, bus):
        """An empty TOOL_CALLS step adopts the finalized call instead of a new step opening."""
        step_id = await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(name="", id="", args='{"x"', index=0)], METADATA
        )
        await reconstructor.handle_tool_call_chunks(STEP_KEY, [ToolCallChunk(args=": 1}", index=0)], METADATA)
        created_before = len(events_of(bus, RunStepCreatedEvent))

        await reconstructor.handle_tool_calls([{"name": "calc", "args": {"x": 1}, "id": "t1"}], METADATA)

        assert len(events_of(bus, RunStepCreatedEvent)) == created_before
        assert reconstructor.steps[-1].id == step_id
        assert reconstructor.steps[-1].tool_call_ids == ["t1"]
        assert reconstructor.tool_call_step_ids["t1"] == step_id
        assert len(events_of(bus, RunStepDeltaEvent)) == 2

    @pytest.mark.asyncio
    async def test_parallel_finalized_calls_get_separate_steps(self, reconstructor):
        await reconstructor.handle_content_delta(STEP_KEY, "Looking up both", METADATA)
        await reconstructor.handle_tool_calls(
            [ToolCall(name="weather", id="a"), ToolCall(name="news", id="b")], METADATA
        )

        assert step_types(reconstructor) == [
            StepType.MESSAGE_CREATION,
            StepType.TOOL_CALLS,
            StepType.TOOL_CALLS,
        ]
        assert [step.tool_call_ids for step in reconstructor.steps[1:]] == [["a"], ["b"]]
        assert_disjoint_tool_steps(reconstructor)

    @pytest.mark.asyncio
    async def test_parallel_chunks_get_separate_steps(self, reconstructor):
        first = await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(name="weather", id="a", args="", index=0)], METADATA
        )
        second = await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(name="news", id="b", args="", index=1)], METADATA
        )
        # Finalized calls for already-seeded ids open nothing new
        await reconstructor.handle_tool_calls(
            [ToolCall(name="weather", id="a"), ToolCall(name="news", id="b")], METADATA
        )

        assert first != second
        assert reconstructor.get_run_step(first).tool_call_ids == ["a"]
        assert reconstructor.get_run_step(second).tool_call_ids == ["b"]
        assert len(reconstructor.steps) == 3
        assert_disjoint_tool_steps(reconstructor)

    @pytest.mark.asyncio
    async def test_two_calls_in_one_batch_get_separate_steps(self, reconstructor, bus):
        """Each call in a single chunk batch opens its own step and receives only its own deltas."""
        await reconstructor.handle_content_delta(STEP_KEY, "Looking up both", METADATA)
        await reconstructor.handle_tool_call_chunks(
            STEP_KEY,
            [
                ToolCallChunk(name="weather", id="a", args="", index=0),
                ToolCallChunk(name="news", id="b", args="", index=1),
            ],
            METADATA,
        )
        last = await reconstructor.handle_tool_call_chunks(
            STEP_KEY,
            [ToolCallChunk(args='{"city": "Oslo"}', index=0), ToolCallChunk(args='{"topic": "tech"}', index=1)],
            METADATA,
        )

        message_step, weather_step, news_step = reconstructor.steps
        assert step_types(reconstructor) == [
            StepType.MESSAGE_CREATION,
            StepType.TOOL_CALLS,
            StepType.TOOL_CALLS,
        ]
        assert weather_step.tool_call_ids == ["a"]
        assert news_step.tool_call_ids == ["b"]
        assert last == news_step.id
        assert message_step.id in reconstructor.message_step_has_tool_calls
        assert_disjoint_tool_steps(reconstructor)

        args_by_step = {}
        for event in events_of(bus, RunStepDeltaEvent):
            args_by_step.setdefault(event.step_id, []).extend(c["args"] for c in event.delta.tool_calls)
        assert args_by_step == {
            weather_step.id: ["", '{"city": "Oslo"}'],
            news_step.id: ["", '{"topic": "tech"}'],
        }

    @pytest.mark.asyncio
    async def test_batch_after_single_call_opens_a_step_per_call(self, reconstructor):
        """A batch arriving after an earlier call never lands in that call's step."""
        await reconstructor.handle_tool_call_chunks(
            STEP_KEY, [ToolCallChunk(name="weather", id="a", args="", index=0)], METADATA
        )
        await reconstructor.handle_tool_call_chunks(
            STEP_KEY,
            [
                ToolCallChunk(name="news", id="b", args="", index=1),
                ToolCallChunk(name="stocks", id="c", args="", index=2),
            ],
            METADATA,
        )

        assert [step.tool_call_ids for step in reconstructor.steps[1:]] == [["a"], ["b"], ["c"]]
        assert_disjoint_tool_steps(reconstructor)

    @pytest.mark.asyncio
    async def test_missing_id_is_generated(self, reconstructor):
        await reconstructor.handle_tool_calls([ToolCall(name="calc")], METADATA)

        (tool_call_id,) = reconstructor.steps[-1].tool_call_ids
        assert tool_call_id.startswith("toolu_")
        assert len(tool_call_id) == len("toolu_") + 24

    @pytest.mark.asyncio
    async def test_missing_metadata_warns(self, reconstructor, caplog):
        with caplog.at_level(logging.WARNING):
            await reconstructor.handle_tool_calls([ToolCall(name="calc", id="t1")], None)

        assert reconstructor.steps == []
        assert "metadata not found" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_tool_calls(self, reconstructor):
        await reconstructor.handle_tool_calls([], METADATA)

        assert reconstructor.steps == []


# =============================================================================
# Server-side tool results
# =============================================================================

def web_search_result(tool_use_id="srv1"):
    return {
        "type": "web_search_tool_result",
        "tool_use_id": tool_use_id,
        "content": [
            {"type": "web_search_result", "title": "Python", "url": "https://python.org", "page_age": "2024"},
            {"type": "web_search_result", "title": "PyPI", "url": "https://pypi.org"},
        ],
    }


class TestServerToolResults:
    """Tests for handle_server_tool_result."""

    @pytest.mark.asyncio
    async def test_web_search_result(self, reconstructor, bus):
        await reconstructor.handle_tool_calls(
            [ToolCall(name="web_search", args={"query": "python"}, id="srv1")], METADATA
        )

        handled = await reconstructor.handle_server_tool_result([web_search_result()], METADATA, "anthropic")

        assert handled is True
        (completed,) = events_of(bus, ToolCompletedEvent)
        assert completed.step_id == reconstructor.tool_call_step_ids["srv1"]
        assert completed.name == "web_search"
        assert completed.args == {"query": "python"}
        assert completed.output == (
            "# [0.0] Python\nURL: https://python.org\nPublished: 2024\n\n# [0.1] PyPI\nURL: https://pypi.org"
        )
        assert completed.artifact == {
            "web_search": {
                "turn": 0,
                "organic": [
                    {"title": "Python", "link": "https://python.org", "date": "2024"},
                    {"title": "PyPI", "link": "https://pypi.org", "date": None},
                ],
            }
        }
        assert reconstructor.invoked_tool_ids == {"srv1"}

    @pytest.mark.asyncio
    async def test_turn_advances_per_search(self, reconstructor, bus):
        await reconstructor.handle_tool_calls(
            [ToolCall(name="web_search", id="srv1"), ToolCall(name="web_search", id="srv2")], METADATA
        )

        await reconstructor.handle_server_tool_result(
            [web_search_result("srv1"), web_search_result("srv2")], METADATA, "anthropic"
        )

        turns = [e.artifact["web_search"]["turn"] for e in events_of(bus, ToolCompletedEvent)]
        assert turns == [0, 1]

    @pytest.mark.asyncio
    async def test_other_providers_are_ignored(self, reconstructor, bus):
        await reconstructor.handle_tool_calls([ToolCall(name="web_search", id="srv1")], METADATA)

        assert await reconstructor.handle_server_tool_result([web_search_result()], METADATA, "openai") is False
        assert await reconstructor.handle_server_tool_result("text", METADATA, "anthropic") is False
        assert events_of(bus, ToolCompletedEvent) == []

    @pytest.mark.asyncio
    async def test_unknown_tool_use_id(self, reconstructor, caplog):
        with caplog.at_level(logging.WARNING):
            handled = await reconstructor.handle_server_tool_result(
                [web_search_result("ghost")], METADATA, "anthropic"
            )

        assert handled is False
        assert "not found in run steps" in caplog.text

    @pytest.mark.asyncio
    async def test_id_mapped_to_missing_step(self, reconstructor, caplog):
        reconstructor.tool_call_step_ids["srv1"] = "step_gone"

        with caplog.at_level(logging.WARNING):
            handled = await reconstructor.handle_server_tool_result([web_search_result()], METADATA, "anthropic")

        assert handled is False
        assert "does not exist" in caplog.text

    @pytest.mark.asyncio
    async def test_id_mapped_to_message_step(self, reconstructor, caplog):
        message_step_id = await reconstructor.handle_content_delta(STEP_KEY, "Hi", METADATA)
        reconstructor.tool_call_step_ids["srv1"] = message_step_id

        with caplog.at_level(logging.WARNING):
            handled = await reconstructor.handle_server_tool_result([web_search_result()], METADATA, "anthropic")

        assert handled is False
        assert "is not a tool call step" in caplog.text


def test_format_web_search_results_untitled():
    assert format_web_search_results(2, [{"url": "https://example.com"}]) == (
        "# [2.0] Untitled\nURL: https://example.com"
    )


@pytest.mark.asyncio
async def test_reset(reconstructor):
    await reconstructor.handle_content_delta(STEP_KEY, "Hi", METADATA)
    await reconstructor.handle_tool_calls([ToolCall(name="calc", id="t1")], METADATA)

    reconstructor.reset()

    assert reconstructor.steps == []
    assert reconstructor.step_ids_by_key == {}
    assert reconstructor.tool_call_step_ids == {}
    assert reconstructor.message_step_has_tool_calls == set()
    assert reconstructor.get_step_id_by_key(STEP_KEY) is None

    step_id = await reconstructor.handle_content_delta(STEP_KEY, "Again", METADATA)
    assert reconstructor.get_run_step(step_id).index == 0
