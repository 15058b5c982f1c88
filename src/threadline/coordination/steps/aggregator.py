"""
Aggregates step events into stored content parts.

The parts produced here are the assistant payload shape consumed by
``format_agent_messages`` and ``label_content_by_agent``:

    {"type": "text", "text": "...", "tool_call_ids": [...]}
    {"type": "think", "think": "..."}
    {"type": "tool_call", "tool_call": {"id": ..., "name": ..., "args": ..., "output": ...}}
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from threadline.coordination.event_bus import EventBus
from threadline.coordination.steps.events import (
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    RunStepCreatedEvent,
    RunStepDeltaEvent,
    StepEvent,
    ToolCompletedEvent,
)
from threadline.coordination.steps.types import RunStep, StepType

logger = logging.getLogger(__name__)

_SUBSCRIPTIONS = (
    RunStepCreatedEvent,
    RunStepDeltaEvent,
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    ToolCompletedEvent,
)


class ContentAggregator:
    """
    Builds content parts from the events of a ``RunStepReconstructor``.

    Parts are appended in the order they are first seen. ``agent_id_map``
    records which agent produced each part, keyed by part index, which is
    what ``label_content_by_agent`` expects.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self.content_parts: List[Dict[str, Any]] = []
        self.agent_id_map: Dict[int, str] = {}
        self.steps: Dict[str, RunStep] = {}

        # (step id, "text" | "think") -> part index
        self._message_parts: Dict[Tuple[str, str], int] = {}
        # step id -> tool_call part indices, in creation order
        self._step_tool_parts: Dict[str, List[int]] = {}
        # (step id, chunk index) -> part index
        self._chunk_parts: Dict[Tuple[str, int], int] = {}
        self._tool_call_indices: Dict[str, int] = {}
        self._event_bus: Optional[EventBus] = None

        if event_bus is not None:
            self.attach(event_bus)

    def attach(self, event_bus: EventBus) -> None:
        """Subscribe to every step event published on ``event_bus``."""
        self._event_bus = event_bus
        for event_class in _SUBSCRIPTIONS:
            event_bus.subscribe(event_class.__name__, self.handle_event)

    def detach(self) -> None:
        if self._event_bus is None:
            return
        for event_class in _SUBSCRIPTIONS:
            self._event_bus.unsubscribe(event_class.__name__, self.handle_event)
        self._event_bus = None

    def handle_event(self, event: StepEvent) -> None:
        if isinstance(event, RunStepCreatedEvent):
            self._on_run_step_created(event)
        elif isinstance(event, RunStepDeltaEvent):
            self._on_tool_call_delta(event)
        elif isinstance(event, MessageDeltaEvent):
            self._on_message_delta(event)
        elif isinstance(event, ReasoningDeltaEvent):
            self._on_reasoning_delta(event)
        elif isinstance(event, ToolCompletedEvent):
            self._on_tool_completed(event)

    def get_content_parts(self) -> List[Dict[str, Any]]:
        """Copy of the aggregated parts, safe to hand to the formatter."""
        return copy.deepcopy(self.content_parts)

    def reset(self) -> None:
        self.content_parts.clear()
        self.agent_id_map.clear()
        self.steps.clear()
        self._message_parts.clear()
        self._step_tool_parts.clear()
        self._chunk_parts.clear()
        self._tool_call_indices.clear()

    # --- Parts ---

    def _add_part(self, part: Dict[str, Any], agent_id: Optional[str]) -> int:
        index = len(self.content_parts)
        self.content_parts.append(part)
        if agent_id:
            self.agent_id_map[index] = agent_id
        return index

    def _message_part(self, step_id: str, kind: str, agent_id: Optional[str]) -> Dict[str, Any]:
        index = self._message_parts.get((step_id, kind))
        if index is None:
            index = self._add_part({"type": kind, kind: ""}, agent_id)
            self._message_parts[(step_id, kind)] = index
        return self.content_parts[index]

    def _new_tool_part(self, step_id: str, agent_id: Optional[str]) -> int:
        part = {"type": "tool_call", "tool_call": {"id": None, "name": None, "args": "", "output": None}}
        index = self._add_part(part, agent_id)
        self._step_tool_parts.setdefault(step_id, []).append(index)
        return index

    def _unclaimed_tool_part(self, step_id: str, by_chunk: bool) -> Optional[int]:
        """First tool part of the step not yet claimed by a chunk index (or by an id)."""
        claimed = {index for (s, _), index in self._chunk_parts.items() if s == step_id}
        for index in self._step_tool_parts.get(step_id, []):
            if by_chunk and index not in claimed:
                return index
            if not by_chunk and not self.content_parts[index]["tool_call"]["id"]:
                return index
        return None

    def _assign_tool_call_id(self, step_id: str, index: int, tool_call_id: Optional[str]) -> None:
        tool_call = self.content_parts[index]["tool_call"]
        if not tool_call_id or tool_call["id"]:
            return
        tool_call["id"] = tool_call_id
        self._tool_call_indices[tool_call_id] = index
        self._tag_message_text(self.steps.get(step_id), tool_call_id)

    def _tag_message_text(self, run_step: Optional[RunStep], tool_call_id: str) -> None:
        """Attach a tool-call id to the text of the message step preceding ``run_step``."""
        if run_step is None:
            return
        earlier = [
            step
            for step in self.steps.values()
            if step.step_key == run_step.step_key
            and step.index < run_step.index
            and step.type == StepType.MESSAGE_CREATION
        ]
        if not earlier:
            return
        message_step = max(earlier, key=lambda step: step.index)
        index = self._message_parts.get((message_step.id, "text"))
        if index is None:
            return
        ids = self.content_parts[index].setdefault("tool_call_ids", [])
        if tool_call_id not in ids:
            ids.append(tool_call_id)

    # --- Event handlers ---

    def _on_run_step_created(self, event: RunStepCreatedEvent) -> None:
        run_step = event.run_step
        self.steps[run_step.id] = run_step
        if run_step.type != StepType.TOOL_CALLS:
            return
        for tool_call in run_step.step_details.tool_calls:
            index = self._new_tool_part(run_step.id, event.agent_id)
            self.content_parts[index]["tool_call"]["name"] = tool_call.name
            if tool_call.args:
                self.content_parts[index]["tool_call"]["args"] = dict(tool_call.args)
            self._assign_tool_call_id(run_step.id, index, tool_call.id)

    def _on_tool_call_delta(self, event: RunStepDeltaEvent) -> None:
        for chunk in event.delta.tool_calls:
            tool_call_id = chunk.get("id")
            chunk_index = chunk.get("index")

            if tool_call_id and tool_call_id in self._tool_call_indices:
                index = self._tool_call_indices[tool_call_id]
            elif chunk_index is not None and (event.step_id, chunk_index) in self._chunk_parts:
                index = self._chunk_parts[(event.step_id, chunk_index)]
            else:
                index = self._unclaimed_tool_part(event.step_id, by_chunk=True)
                if index is None:
                    index = self._new_tool_part(event.step_id, event.agent_id)
            if chunk_index is not None:
                self._chunk_parts.setdefault((event.step_id, chunk_index), index)

            self._assign_tool_call_id(event.step_id, index, tool_call_id)
            tool_call = self.content_parts[index]["tool_call"]
            if chunk.get("name"):
                tool_call["name"] = chunk["name"]
            fragment = chunk.get("args")
            if fragment:
                if not isinstance(tool_call["args"], str):
                    tool_call["args"] = ""
                tool_call["args"] += fragment

    def _on_message_delta(self, event: MessageDeltaEvent) -> None:
        part = self._message_part(event.step_id, "text", event.agent_id)
        for block in event.content:
            part["text"] += block.get("text") or ""

    def _on_reasoning_delta(self, event: ReasoningDeltaEvent) -> None:
        part = self._message_part(event.step_id, "think", event.agent_id)
        for block in event.content:
            part["think"] += block.get("thinking") or ""

    def _on_tool_completed(self, event: ToolCompletedEvent) -> None:
        index = self._tool_call_indices.get(event.tool_call_id)
        if index is None:
            # A call adopted by an id-less step is first identified by its result
            index = self._unclaimed_tool_part(event.step_id, by_chunk=False)
            if index is None:
                index = self._new_tool_part(event.step_id, event.agent_id)
            self._assign_tool_call_id(event.step_id, index, event.tool_call_id)

        tool_call = self.content_parts[index]["tool_call"]
        tool_call["name"] = event.name or tool_call["name"]
        if event.args:
            tool_call["args"] = dict(event.args)
        tool_call["output"] = event.output
