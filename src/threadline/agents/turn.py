"""
Per-turn input preparation for an agent.

``prepare_turn`` is the glue a host runs before every model call:

    tool discovery -> tool binding -> system prompt -> token map -> pruning

It is the only place that mutates an ``AgentContext`` between turns besides
the context's own methods.
"""

import dataclasses
import logging
from typing import Any, List, Optional, Sequence

from threadline.agents.context import AgentContext, SystemPrompt
from threadline.messages.format import shift_index_token_count_map
from threadline.messages.prune import MessagePruner, PruneConfig, PruneResult
from threadline.messages.tools import extract_tool_discoveries, has_tool_search_in_current_turn
from threadline.messages.types import Message, UsageMetadata

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class TurnInput:
    """Everything needed for one model call."""

    messages: List[Message]
    tools: Optional[List[Any]] = None
    system_prompt: Optional[SystemPrompt] = None
    prune_result: Optional[PruneResult] = None


def _get_pruner(context: AgentContext) -> MessagePruner:
    if context.pruner is None:
        context.pruner = MessagePruner(
            PruneConfig(
                max_tokens=context.max_context_tokens,
                thinking_enabled=context.thinking_enabled,
            ),
            token_counter=context.token_counter,
        )
    return context.pruner


def prepare_turn(
    context: AgentContext,
    messages: Sequence[Message],
    usage: Optional[UsageMetadata] = None,
) -> TurnInput:
    """
    Build the model input for the agent's next call.

    Args:
        context: The agent's context; its discovery, prompt and token state is updated
        messages: Conversation so far, without a system message
        usage: Usage reported by the previous model call, if any

    Returns:
        TurnInput with the (pruned) messages, bindable tools and system prompt

    Raises:
        ContextWindowExceededError: If the conversation cannot fit the agent's budget
    """
    if has_tool_search_in_current_turn(messages):
        context.mark_tools_as_discovered(extract_tool_discoveries(messages))

    tools = context.get_tools_for_binding()
    system_prompt = context.system_runnable
    if usage is not None:
        context.current_usage = usage

    conversation = list(messages)
    if system_prompt is None:
        full = conversation
        offset = 0
        counts = dict(context.index_token_count_map)
    else:
        full = [system_prompt.message] + conversation
        offset = 1
        counts = shift_index_token_count_map(context.index_token_count_map, system_prompt.token_count)

    if context.max_context_tokens is None:
        return TurnInput(messages=full, tools=tools, system_prompt=system_prompt)

    pruner = _get_pruner(context)
    pruner.index_token_count_map = counts
    result = pruner(full, usage=usage)

    # The system slot is recounted from the prompt on every turn
    context.index_token_count_map = {
        index - offset: count for index, count in pruner.index_token_count_map.items() if index >= offset
    }
    logger.debug(
        f"Prepared turn for agent '{context.agent_id}': {len(result.context)}/{len(full)} messages, "
        f"{result.total_tokens} tokens",
        extra={"agent_id": context.agent_id},
    )
    return TurnInput(messages=result.context, tools=tools, system_prompt=system_prompt, prune_result=result)
