"""
Tool discovery tracking.

A tool-search call returns an artifact listing the deferred tools it found::

    {"tool_references": [{"tool_name": "get_weather"}, ...]}

Only results belonging to the current turn (after the latest AI message that
issued tool calls) are scanned; earlier turns have already been folded into
the agent's discovered set.
"""

import logging
from typing import Any, List, Optional, Sequence, Tuple

from threadline.constants import TOOL_SEARCH
from threadline.messages.types import AIMessage, Message, ToolMessage, get_tool_call_names

logger = logging.getLogger(__name__)


def _current_turn(messages: Sequence[Message]) -> Optional[Tuple[int, AIMessage]]:
    """Return the index and AI parent of the current tool turn, or None."""
    if not messages or not isinstance(messages[-1], ToolMessage):
        return None
    for i in range(len(messages) - 2, -1, -1):
        message = messages[i]
        if isinstance(message, AIMessage) and get_tool_call_names(message):
            return i, message
    return None


def _tool_search_results(messages: Sequence[Message]) -> List[ToolMessage]:
    turn = _current_turn(messages)
    if turn is None:
        return []
    parent_index, parent = turn
    names = get_tool_call_names(parent)
    return [
        message
        for message in messages[parent_index + 1:]
        if isinstance(message, ToolMessage)
        and message.tool_call_id in names
        and names[message.tool_call_id] == TOOL_SEARCH
    ]


def _referenced_tool_names(artifact: Any) -> List[str]:
    if not isinstance(artifact, dict):
        return []
    references = artifact.get("tool_references") or []
    return [
        ref["tool_name"]
        for ref in references
        if isinstance(ref, dict) and isinstance(ref.get("tool_name"), str)
    ]


def extract_tool_discoveries(messages: Sequence[Message]) -> List[str]:
    """
    Extract the tool names revealed by tool-search results in the current turn.

    Args:
        messages: Conversation, ending with the current turn's tool results

    Returns:
        Discovered names in message order. Repeats are kept.
    """
    discovered: List[str] = []
    for message in _tool_search_results(messages):
        discovered.extend(_referenced_tool_names(message.artifact))
    if discovered:
        logger.debug(f"Discovered {len(discovered)} tool name(s) in current turn: {discovered}")
    return discovered


def has_tool_search_in_current_turn(messages: Sequence[Message]) -> bool:
    """Whether the current turn contains at least one tool-search result."""
    return bool(_tool_search_results(messages))
