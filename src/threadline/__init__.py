"""
Threadline - conversation state core for multi-agent LLM runs

Keeps an agent's conversation inside its token budget, decides which tools
the model can see each turn, and rebuilds discrete run steps from streamed
model output.
"""

__version__ = "0.1.0"

# Agent state
from .agents import AgentContext, AgentInputs, ToolDefinition, TurnInput, prepare_turn

# Messages
from .messages import (
    AIMessage,
    HumanMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolMessage,
    UsageMetadata,
    MessagePruner,
    PruneConfig,
    PruneResult,
    prune_messages,
    extract_tool_discoveries,
    has_tool_search_in_current_turn,
    format_agent_messages,
)

# Run steps
from .coordination import ContentAggregator, EventBus, ReconstructorConfig, RunStepReconstructor

# Providers
from .models import Provider

from .exceptions import (
    ThreadlineError,
    ContextWindowExceededError,
    MessageContentError,
    MessageFormatError,
    RunStepError,
)

__all__ = [
    # Version
    "__version__",
    # Agents
    "AgentContext",
    "AgentInputs",
    "ToolDefinition",
    "TurnInput",
    "prepare_turn",
    # Messages
    "Message",
    "SystemMessage",
    "HumanMessage",
    "AIMessage",
    "ToolMessage",
    "ToolCall",
    "UsageMetadata",
    # Pruning
    "MessagePruner",
    "PruneConfig",
    "PruneResult",
    "prune_messages",
    # Tool discovery
    "extract_tool_discoveries",
    "has_tool_search_in_current_turn",
    # Formatting
    "format_agent_messages",
    # Run steps
    "EventBus",
    "RunStepReconstructor",
    "ReconstructorConfig",
    "ContentAggregator",
    # Providers
    "Provider",
    # Errors
    "ThreadlineError",
    "ContextWindowExceededError",
    "MessageContentError",
    "MessageFormatError",
    "RunStepError",
]
