from .context import AgentContext, AgentInputs, CachedValue, SystemPrompt, ToolDefinition
from .turn import TurnInput, prepare_turn
from .utils import AgentLogFilter, init_agent_logging

__all__ = [
    "AgentContext",
    "AgentInputs",
    "CachedValue",
    "SystemPrompt",
    "ToolDefinition",
    "TurnInput",
    "prepare_turn",
    "AgentLogFilter",
    "init_agent_logging",
]
