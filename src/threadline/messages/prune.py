"""
Token-budget pruning of conversation context.

The pruner keeps the newest messages that fit ``max_tokens`` while preserving
the structural rules providers enforce on a conversation:

- a leading system message is always kept first
- a tool result never appears without the AI message that issued its call
- with extended thinking enabled, the first AI message of the window carries
  the most recent reasoning block that was pruned away
"""

import dataclasses
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from threadline.exceptions import ContextError, ContextWindowExceededError
from threadline.messages.types import (
    AIMessage,
    Message,
    SystemMessage,
    ToolMessage,
    UsageMetadata,
    content_to_blocks,
    get_reasoning_block,
    get_tool_call_ids,
    has_thinking_block,
)

logger = logging.getLogger(__name__)

TokenCountMap = Dict[int, int]

# Roles a pruned window may be aligned to start with
START_TYPES = ("human", "ai")


@dataclasses.dataclass
class PruneConfig:
    """Configuration for a ``MessagePruner``."""

    max_tokens: int
    start_index: int = 0  # Position where the current run's messages begin
    thinking_enabled: bool = False
    start_type: Optional[str] = None  # Role the window must start with, e.g. "human"

    def __post_init__(self):
        if self.max_tokens < 0:
            raise ValueError(f"max_tokens must be non-negative, got {self.max_tokens}")
        if self.start_index < 0:
            raise ValueError(f"start_index must be non-negative, got {self.start_index}")
        _check_start_type(self.start_type)


@dataclasses.dataclass
class PruneResult:
    """Outcome of one pruning pass."""

    context: List[Message]
    # Counts keyed by original message index; includes any thinking-block delta
    index_token_count_map: TokenCountMap
    # Counts keyed by position in ``context``
    context_token_count_map: TokenCountMap
    messages_to_refine: List[Message] = dataclasses.field(default_factory=list)
    remaining_context_tokens: int = 0
    thinking_block_reinserted: bool = False

    @property
    def total_tokens(self) -> int:
        return sum(self.context_token_count_map.values())


def normalize_token_count_map(counts: Optional[Mapping[Union[int, str], int]]) -> TokenCountMap:
    """Return a copy of ``counts`` with integer keys."""
    if not counts:
        return {}
    return {int(key): int(value) for key, value in counts.items()}


def _fill_token_counts(
    messages: Sequence[Message],
    index_token_count_map: Dict[Any, int],
    token_counter: Optional[Callable[[Message], int]],
    start_index: int,
    usage: Optional[UsageMetadata],
) -> TokenCountMap:
    counts = normalize_token_count_map(index_token_count_map)
    last = len(messages) - 1
    for i, message in enumerate(messages):
        if i in counts:
            continue
        if (
            i == last
            and i >= start_index
            and usage is not None
            and usage.output_tokens
            and isinstance(message, AIMessage)
        ):
            value = usage.output_tokens
        elif token_counter is None:
            raise ContextError(
                f"No token count for message {i} and no token counter was supplied",
                context={"index": i},
            )
        else:
            value = int(token_counter(message))
        if value < 0:
            raise ContextError(f"Token counter returned a negative count for message {i}: {value}")
        counts[i] = value
        index_token_count_map[i] = value
    return counts


def _include_tool_bundle(
    end: int,
    first: int,
    messages: Sequence[Message],
) -> Optional[tuple[int, List[int]]]:
    """
    Resolve the run of tool messages ending at ``end`` to its AI parent.

    Returns:
        (parent_index, included_indices) where included_indices holds the parent
        and the tool messages whose ids the parent issued, or None when no AI
        parent exists before the run.
    """
    j = end
    while j >= first and isinstance(messages[j], ToolMessage):
        j -= 1
    if j < first or not isinstance(messages[j], AIMessage):
        return None
    call_ids = set(get_tool_call_ids(messages[j]))
    included = [j]
    for k in range(j + 1, end + 1):
        if messages[k].tool_call_id in call_ids:
            included.append(k)
        else:
            logger.debug(f"Dropping tool message {k} with unknown tool_call_id {messages[k].tool_call_id!r}")
    return j, included


def _pack_backward(
    messages: Sequence[Message],
    counts: TokenCountMap,
    first: int,
    budget: int,
) -> List[int]:
    """Pack indices backward from the newest message until the budget is reached."""
    window: List[int] = []
    used = 0
    i = len(messages) - 1
    while i >= first:
        message = messages[i]
        if isinstance(message, ToolMessage):
            bundle = _include_tool_bundle(i, first, messages)
            if bundle is None:
                # Tool results with no AI parent anywhere before them are unrecoverable
                j = i
                while j >= first and isinstance(messages[j], ToolMessage):
                    j -= 1
                logger.debug(f"Dropping orphaned tool messages {j + 1}..{i}")
                i = j
                continue
            parent, included = bundle
            cost = sum(counts[k] for k in included)
            if used + cost > budget:
                logger.debug(f"Tool bundle {parent}..{i} ({cost} tokens) does not fit remaining budget")
                break
            window.extend(reversed(included))
            used += cost
            i = parent - 1
            continue

        if used + counts[i] > budget:
            break
        window.append(i)
        used += counts[i]
        i -= 1

    window.reverse()
    return window


def _drop_leading_tool_messages(messages: Sequence[Message], window: List[int]) -> List[int]:
    start = 0
    while start < len(window) and isinstance(messages[window[start]], ToolMessage):
        start += 1
    return window[start:]


def _check_start_type(start_type: Optional[str]) -> None:
    if start_type is not None and start_type not in START_TYPES:
        raise ValueError(f"start_type must be one of human/ai, got {start_type!r}")


def _align_start_type(messages: Sequence[Message], window: List[int], start_type: str) -> List[int]:
    for pos, index in enumerate(window):
        if messages[index].role == start_type:
            return window[pos:]
    logger.debug(f"No '{start_type}' message in pruned window; keeping window as is")
    return window


def _with_thinking_block(message: AIMessage, block: Dict[str, Any]) -> AIMessage:
    return dataclasses.replace(message, content=[dict(block)] + content_to_blocks(message.content))


def prune_messages(
    messages: Sequence[Message],
    token_counter: Optional[Callable[[Message], int]],
    index_token_count_map: Optional[Dict[Any, int]],
    max_tokens: int,
    start_index: int = 0,
    thinking_enabled: bool = False,
    start_type: Optional[str] = None,
    usage: Optional[UsageMetadata] = None,
) -> PruneResult:
    """
    Prune ``messages`` to fit ``max_tokens``.

    Args:
        messages: Conversation in order, optionally starting with a system message
        token_counter: Counter invoked for messages missing from the map
        index_token_count_map: Per-index token counts; computed entries are written back.
            The thinking-block delta is not: it only reaches the result's map, so
            this map keeps the counts of the unmodified messages
        max_tokens: Token budget for the returned context
        start_index: Position where the current run's messages begin
        thinking_enabled: Carry the latest pruned reasoning block into the window
        start_type: Role the first non-system message must have after pruning,
            "human" or "ai"
        usage: Provider usage for the latest call, calibrates the newest AI message

    Returns:
        PruneResult with the pruned context and its token accounting

    Raises:
        ContextWindowExceededError: If no non-empty context fits the budget
        ValueError: If start_type is not a supported role
    """
    _check_start_type(start_type)
    if index_token_count_map is None:
        index_token_count_map = {}
    counts = _fill_token_counts(messages, index_token_count_map, token_counter, start_index, usage)

    if not messages:
        return PruneResult(
            context=[],
            index_token_count_map=counts,
            context_token_count_map={},
            remaining_context_tokens=max_tokens,
        )

    has_system = isinstance(messages[0], SystemMessage)
    first = 1 if has_system else 0
    system_tokens = counts[0] if has_system else 0
    if system_tokens > max_tokens:
        raise ContextWindowExceededError(
            f"Context window exceeded: system message alone requires {system_tokens} tokens "
            f"but the budget is {max_tokens}",
            max_tokens=max_tokens,
            required_tokens=system_tokens,
        )

    total = sum(counts[i] for i in range(len(messages)))
    if total <= max_tokens:
        return PruneResult(
            context=list(messages),
            index_token_count_map=counts,
            context_token_count_map={i: counts[i] for i in range(len(messages))},
            remaining_context_tokens=max_tokens - total,
        )

    budget = max_tokens - system_tokens
    window = _pack_backward(messages, counts, first, budget)

    if start_type and window:
        window = _align_start_type(messages, window, start_type)

    replacements: Dict[int, Message] = {}
    reinserted = False
    if thinking_enabled and window:
        window, reinserted = _reinsert_thinking_block(
            messages, window, counts, budget, token_counter, replacements
        )

    if not window and len(messages) > first:
        smallest = min(counts[i] for i in range(first, len(messages)))
        raise ContextWindowExceededError(
            f"Context window exceeded: no message fits the remaining budget of {budget} tokens "
            f"(smallest candidate needs {smallest})",
            max_tokens=max_tokens,
            required_tokens=system_tokens + smallest,
        )

    kept = ([0] if has_system else []) + window
    context = [replacements.get(i, messages[i]) for i in kept]
    context_counts = {pos: counts[i] for pos, i in enumerate(kept)}
    kept_set = set(kept)
    dropped = [messages[i] for i in range(first, len(messages)) if i not in kept_set]

    used = sum(context_counts.values())
    logger.debug(
        f"Pruned context to {len(context)}/{len(messages)} messages "
        f"({used}/{max_tokens} tokens)"
    )
    return PruneResult(
        context=context,
        index_token_count_map=counts,
        context_token_count_map=context_counts,
        messages_to_refine=dropped,
        remaining_context_tokens=max_tokens - used,
        thinking_block_reinserted=reinserted,
    )


def _reinsert_thinking_block(
    messages: Sequence[Message],
    window: List[int],
    counts: TokenCountMap,
    budget: int,
    token_counter: Optional[Callable[[Message], int]],
    replacements: Dict[int, Message],
) -> tuple[List[int], bool]:
    """
    Move the latest pruned reasoning block onto the first AI message of the window.

    Nothing moves when any message of the window already carries a reasoning block.

    ``counts`` and ``replacements`` are updated in place for the chosen target.
    """
    if any(has_thinking_block(messages[i]) for i in window):
        return window, False

    block = None
    for i in range(window[0] - 1, -1, -1):
        block = get_reasoning_block(messages[i])
        if block is not None:
            break
    if block is None:
        return window, False

    while window:
        target_pos = next(
            (pos for pos, i in enumerate(window) if isinstance(messages[i], AIMessage)), None
        )
        if target_pos is None:
            return window, False
        target = window[target_pos]
        updated = _with_thinking_block(messages[target], block)
        new_count = int(token_counter(updated)) if token_counter else counts[target]
        # The reasoning block can only add tokens
        new_count = max(new_count, counts[target])
        window_total = sum(counts[i] for i in window) - counts[target] + new_count
        if window_total <= budget:
            replacements[target] = updated
            counts[target] = new_count
            logger.debug(f"Reinserted thinking block into message {target} ({new_count} tokens)")
            return window, True
        logger.debug(f"Thinking block does not fit with message {target}; pruning through it")
        window = _drop_leading_tool_messages(messages, window[target_pos + 1:])
    return window, False


class MessagePruner:
    """
    Stateful pruner for one agent.

    Keeps the running index token count map across calls and advances
    ``start_index`` so usage calibration only ever applies to the newest run.
    """

    def __init__(
        self,
        config: PruneConfig,
        token_counter: Optional[Callable[[Message], int]] = None,
        index_token_count_map: Optional[Mapping[Union[int, str], int]] = None,
    ):
        self.config = config
        self.token_counter = token_counter
        self.index_token_count_map: TokenCountMap = normalize_token_count_map(index_token_count_map)
        self.start_index = config.start_index

    def __call__(
        self,
        messages: Sequence[Message],
        usage: Optional[UsageMetadata] = None,
        start_type: Optional[str] = None,
    ) -> PruneResult:
        result = prune_messages(
            messages,
            token_counter=self.token_counter,
            index_token_count_map=self.index_token_count_map,
            max_tokens=self.config.max_tokens,
            start_index=self.start_index,
            thinking_enabled=self.config.thinking_enabled,
            start_type=start_type or self.config.start_type,
            usage=usage,
        )
        self.start_index = len(messages)
        return result
