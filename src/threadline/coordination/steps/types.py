"""Run step data model."""

import dataclasses
import enum
from typing import Any, Dict, List, Optional, Union

from threadline.messages.types import ToolCall


class StepType(str, enum.Enum):
    MESSAGE_CREATION = "message_creation"
    TOOL_CALLS = "tool_calls"


@dataclasses.dataclass
class MessageCreationDetails:
    """Details of a step that produces model text. Carries no tool-call fields."""

    message_id: str
    type: StepType = dataclasses.field(default=StepType.MESSAGE_CREATION, init=False)


@dataclasses.dataclass
class ToolCallsDetails:
    """Details of a step that invokes tools. Carries no text."""

    tool_calls: List[ToolCall] = dataclasses.field(default_factory=list)
    type: StepType = dataclasses.field(default=StepType.TOOL_CALLS, init=False)


StepDetails = Union[MessageCreationDetails, ToolCallsDetails]


@dataclasses.dataclass
class RunStep:
    """One discrete unit of agent output within a run."""

    id: str
    index: int
    step_key: str
    step_details: StepDetails
    agent_id: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None

    @property
    def type(self) -> StepType:
        return self.step_details.type

    @property
    def tool_call_ids(self) -> List[str]:
        if isinstance(self.step_details, ToolCallsDetails):
            return [tc.id for tc in self.step_details.tool_calls if tc.id]
        return []


@dataclasses.dataclass
class ToolCallDelta:
    """Incremental tool-call content routed to a TOOL_CALLS step."""

    tool_calls: List[Dict[str, Any]]
    type: StepType = dataclasses.field(default=StepType.TOOL_CALLS, init=False)
