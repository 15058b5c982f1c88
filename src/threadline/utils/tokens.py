"""
Token counting utilities for context pruning.

The pruning engine treats the token counter as a black box: any callable
``(message) -> int`` works. ``DefaultTokenCounter`` is a heuristic fallback
for hosts that do not supply a tokenizer.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from threadline.messages.types import AIMessage, Message, ToolCall, ToolMessage

logger = logging.getLogger(__name__)


class TokenCounter(Protocol):
    """Protocol for token counting strategies."""

    def __call__(self, message: Message) -> int:
        """
        Count tokens in a single message.

        Args:
            message: Provider-neutral message

        Returns:
            Non-negative token count
        """
        ...


class DefaultTokenCounter:
    """
    Default token counter using character-based heuristics and fixed image estimates.

    Token estimation approach:
    - Text and reasoning content: ~4 characters per token
    - Images: Fixed estimate per image (default 800 tokens, conservative)
    - Tool calls: name + JSON arguments / 4 chars per token
    - Other structured blocks: JSON size / 4 chars per token

    Note: This is a heuristic estimator. For precise counting, supply a
    provider-specific tokenizer as the token counter instead.
    """

    def __init__(
        self,
        image_token_estimate: int = 800,
        chars_per_token: float = 4.0,
        provider: Optional[str] = None,
    ):
        """
        Initialize the token counter.

        Args:
            image_token_estimate: Fixed token estimate per image (default 800)
            chars_per_token: Average characters per token (default 4.0)
            provider: Provider name, recorded for provider-aware counters
        """
        if chars_per_token <= 0:
            raise ValueError(f"chars_per_token must be positive, got {chars_per_token}")
        self.image_token_estimate = image_token_estimate
        self.chars_per_token = chars_per_token
        self.provider = provider

    def __call__(self, message: Message) -> int:
        return self.count_message(message)

    def count_message(self, message: Message) -> int:
        """
        Count tokens in a message.

        Args:
            message: Message with content, optional tool calls, name and tool_call_id

        Returns:
            Estimated token count for the message
        """
        # Role overhead (empirically ~3 tokens)
        total: float = 3

        total += self._count_content(message.content)

        if isinstance(message, AIMessage) and message.tool_calls:
            total += self._count_tool_calls(message.tool_calls)

        if message.name:
            total += len(str(message.name)) / self.chars_per_token

        if isinstance(message, ToolMessage) and message.tool_call_id:
            total += 10  # UUID-ish overhead

        return int(total)

    def _count_content(self, content: Union[str, List[Dict[str, Any]]]) -> int:
        if isinstance(content, str):
            return int(len(content) / self.chars_per_token)

        total = 0
        for item in content:
            item_type = item.get("type")
            if item_type == "text":
                total += int(len(item.get("text", "")) / self.chars_per_token)
            elif item_type == "thinking":
                total += int(len(item.get("thinking", "")) / self.chars_per_token)
            elif item_type in ("image_url", "image"):
                total += self.image_token_estimate
            elif item_type == "tool_use":
                payload = item.get("input", {})
                raw = payload if isinstance(payload, str) else json.dumps(payload, separators=(",", ":"))
                total += int((len(item.get("name", "")) + len(raw)) / self.chars_per_token)
            else:
                total += int(
                    len(json.dumps(item, separators=(",", ":"), default=str))
                    / self.chars_per_token
                )
        return total

    def _count_tool_calls(self, tool_calls: Sequence[ToolCall]) -> int:
        total: float = 0
        for tc in tool_calls:
            # Tool call structure overhead
            total += 5
            total += len(tc.name or "") / self.chars_per_token
            total += len(json.dumps(tc.args or {}, separators=(",", ":"), default=str)) / self.chars_per_token
        return int(total)

    def count_messages(self, messages: Sequence[Message]) -> Tuple[int, List[int]]:
        """
        Count tokens across all messages.

        Returns:
            Tuple of (total_tokens, per_message_tokens)
        """
        per_message = [self.count_message(msg) for msg in messages]
        return sum(per_message), per_message


def estimate_tokens(
    messages: Sequence[Message],
    image_token_estimate: int = 800,
    chars_per_token: float = 4.0,
) -> int:
    """Quick token estimation for a list of messages."""
    counter = DefaultTokenCounter(
        image_token_estimate=image_token_estimate, chars_per_token=chars_per_token
    )
    total, _ = counter.count_messages(messages)
    return total
