"""
Step event definitions published by the run-step reconstructor.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import time
import uuid

from threadline.coordination.steps.types import RunStep, ToolCallDelta


@dataclass
class StepEvent:
    """Base class for all step events."""
    step_key: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), kw_only=True)
    timestamp: float = field(default_factory=time.time, kw_only=True)
    agent_id: Optional[str] = field(default=None, kw_only=True)
    metadata: Dict[str, Any] = field(default_factory=dict, kw_only=True)

    @property
    def event_type(self) -> str:
        """Get event type for filtering."""
        return self.__class__.__name__.replace("Event", "").lower()


@dataclass
class RunStepCreatedEvent(StepEvent):
    """A new step was appended to the run."""
    run_step: RunStep


@dataclass
class RunStepDeltaEvent(StepEvent):
    """Tool-call chunks routed to a TOOL_CALLS step."""
    step_id: str
    delta: ToolCallDelta


@dataclass
class MessageDeltaEvent(StepEvent):
    """Text content routed to a MESSAGE_CREATION step."""
    step_id: str
    content: List[Dict[str, Any]]


@dataclass
class ReasoningDeltaEvent(StepEvent):
    """Reasoning content routed to a MESSAGE_CREATION step."""
    step_id: str
    content: List[Dict[str, Any]]


@dataclass
class ToolCompletedEvent(StepEvent):
    """A tool call finished, either via a round trip or a server-side result."""
    step_id: str
    tool_call_id: str
    name: str
    output: str
    args: Dict[str, Any] = field(default_factory=dict)
    artifact: Optional[Dict[str, Any]] = None
