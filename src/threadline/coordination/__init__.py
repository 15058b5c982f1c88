"""
Run-step coordination: the event bus and step reconstruction from model streams.
"""

from .event_bus import ALL_EVENTS, EventBus
from .steps import (
    ContentAggregator,
    ReconstructorConfig,
    RunStep,
    RunStepReconstructor,
    StepType,
)

__all__ = [
    "ALL_EVENTS",
    "EventBus",
    "ContentAggregator",
    "ReconstructorConfig",
    "RunStep",
    "RunStepReconstructor",
    "StepType",
]
