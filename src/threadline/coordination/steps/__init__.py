"""
Run steps and the events published while they are built.
"""

from .types import (
    MessageCreationDetails,
    RunStep,
    StepType,
    ToolCallDelta,
    ToolCallsDetails,
)
from .events import (
    StepEvent,
    RunStepCreatedEvent,
    RunStepDeltaEvent,
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    ToolCompletedEvent,
)
from .reconstructor import ReconstructorConfig, RunStepReconstructor
from .aggregator import ContentAggregator

__all__ = [
    'StepType',
    'RunStep',
    'MessageCreationDetails',
    'ToolCallsDetails',
    'ToolCallDelta',
    'StepEvent',
    'RunStepCreatedEvent',
    'RunStepDeltaEvent',
    'MessageDeltaEvent',
    'ReasoningDeltaEvent',
    'ToolCompletedEvent',
    'ReconstructorConfig',
    'RunStepReconstructor',
    'ContentAggregator',
]
