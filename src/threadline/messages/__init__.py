"""
Provider-neutral messages and the operations that shape them for a model call.
"""

from .types import (
    AIMessage,
    HumanMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolCallChunk,
    ToolMessage,
    UsageMetadata,
    get_buffer_string,
)
from .tools import extract_tool_discoveries, has_tool_search_in_current_turn
from .prune import MessagePruner, PruneConfig, PruneResult, prune_messages
from .format import (
    FormatResult,
    ensure_thinking_block_in_messages,
    format_agent_messages,
    format_message,
    label_content_by_agent,
    shift_index_token_count_map,
)

__all__ = [
    # Types
    "Message",
    "SystemMessage",
    "HumanMessage",
    "AIMessage",
    "ToolMessage",
    "ToolCall",
    "ToolCallChunk",
    "UsageMetadata",
    "get_buffer_string",
    # Tool discovery
    "extract_tool_discoveries",
    "has_tool_search_in_current_turn",
    # Pruning
    "MessagePruner",
    "PruneConfig",
    "PruneResult",
    "prune_messages",
    # Formatting
    "FormatResult",
    "format_agent_messages",
    "format_message",
    "shift_index_token_count_map",
    "ensure_thinking_block_in_messages",
    "label_content_by_agent",
]
