"""
Provider-neutral message model.

Messages are a closed set of dataclasses discriminated by ``role``. Structured
content is an ordered list of blocks, each a dict carrying an explicit
``type`` tag; unknown tags are rejected when the message is constructed.
"""

import dataclasses
import json
import logging
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, field_validator, model_validator

from threadline.exceptions import MessageContentError, MessageError, MessageFormatError

logger = logging.getLogger(__name__)

# Reasoning block tags as emitted by the supported providers
REASONING_BLOCK_TYPES = frozenset(
    {"thinking", "redacted_thinking", "reasoning_content", "reasoning"}
)

KNOWN_BLOCK_TYPES = frozenset(
    {
        "text",
        "image_url",
        "image",
        "document",
        "video",
        "audio",
        "file",
        "tool_use",
        "tool_result",
        "server_tool_use",
        "web_search_tool_result",
    }
) | REASONING_BLOCK_TYPES

Content = Union[str, List[Dict[str, Any]]]


def validate_content_blocks(blocks: Iterable[Any]) -> None:
    """
    Validate that every block is a dict with a recognized ``type`` tag.

    Raises:
        MessageContentError: If a block is untagged or carries an unknown tag
    """
    for i, block in enumerate(blocks):
        if not isinstance(block, dict):
            raise MessageContentError(
                f"content[{i}] must be a dict, got {type(block).__name__}",
                allowed_types=list(KNOWN_BLOCK_TYPES),
            )
        block_type = block.get("type")
        if block_type not in KNOWN_BLOCK_TYPES:
            raise MessageContentError(
                f"content[{i}] has unrecognized block type: {block_type!r}",
                block_type=block_type,
                allowed_types=list(KNOWN_BLOCK_TYPES),
            )


@dataclasses.dataclass
class ToolCall:
    """A finalized tool invocation requested by the model."""

    name: str
    args: Dict[str, Any] = dataclasses.field(default_factory=dict)
    id: Optional[str] = None
    type: str = "tool_call"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.args, "type": self.type}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        """Create from a dict, accepting both neutral and OpenAI function formats."""
        if "function" in data:
            function = data.get("function") or {}
            raw_args = function.get("arguments", "{}")
            args = json.loads(raw_args) if isinstance(raw_args, str) and raw_args else raw_args
            return cls(name=function.get("name", ""), args=args or {}, id=data.get("id"))
        return cls(
            name=data.get("name", ""),
            args=data.get("args") or {},
            id=data.get("id"),
        )


@dataclasses.dataclass
class ToolCallChunk:
    """A partial tool call as streamed by a provider. ``args`` is a JSON fragment."""

    name: Optional[str] = None
    args: Optional[str] = None
    id: Optional[str] = None
    index: Optional[int] = None
    type: str = "tool_call_chunk"

    def sanitized(self) -> "ToolCallChunk":
        """Return a copy with empty-string ``id``/``name`` normalized to None."""
        return dataclasses.replace(self, id=self.id or None, name=self.name or None)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class Message:
    """Base class for conversation messages."""

    content: Content = ""
    name: Optional[str] = None
    id: Optional[str] = None
    additional_kwargs: Dict[str, Any] = dataclasses.field(default_factory=dict)

    role: ClassVar[str] = "generic"

    def __post_init__(self):
        if self.content is None:
            self.content = ""
        if isinstance(self.content, list):
            validate_content_blocks(self.content)
        elif not isinstance(self.content, str):
            raise MessageFormatError(
                f"{type(self).__name__}.content must be a string or a list of blocks, "
                f"got {type(self.content).__name__}",
                invalid_content=self.content,
                expected_format="str or List[Dict] with a 'type' key",
            )

    @property
    def text(self) -> str:
        return get_text(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        result: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            result["name"] = self.name
        if self.id:
            result["id"] = self.id
        return result


@dataclasses.dataclass
class SystemMessage(Message):
    role: ClassVar[str] = "system"


@dataclasses.dataclass
class HumanMessage(Message):
    role: ClassVar[str] = "human"


@dataclasses.dataclass
class AIMessage(Message):
    tool_calls: List[ToolCall] = dataclasses.field(default_factory=list)
    usage_metadata: Optional[Dict[str, Any]] = None

    role: ClassVar[str] = "ai"

    def __post_init__(self):
        super().__post_init__()
        if not isinstance(self.tool_calls, list):
            raise MessageError(
                f"tool_calls must be a list, got {type(self.tool_calls).__name__}"
            )
        converted = []
        for i, tc in enumerate(self.tool_calls):
            if isinstance(tc, ToolCall):
                converted.append(tc)
            elif isinstance(tc, dict):
                try:
                    converted.append(ToolCall.from_dict(tc))
                except (ValueError, TypeError) as e:
                    raise MessageError(f"Failed to convert tool_calls[{i}] to ToolCall: {e}")
            else:
                raise MessageError(
                    f"tool_calls[{i}] must be dict or ToolCall, got {type(tc).__name__}"
                )
        self.tool_calls = converted

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return result


@dataclasses.dataclass
class ToolMessage(Message):
    tool_call_id: str = ""
    artifact: Optional[Any] = None
    status: str = "success"

    role: ClassVar[str] = "tool"

    def __post_init__(self):
        super().__post_init__()
        if self.tool_call_id is None:
            self.tool_call_id = ""
        if self.status not in ("success", "error"):
            raise MessageError(f"ToolMessage.status must be 'success' or 'error', got {self.status!r}")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["tool_call_id"] = self.tool_call_id
        return result


# --- Content helpers ---


def content_to_blocks(content: Content) -> List[Dict[str, Any]]:
    """Return content as a block list, wrapping a non-empty string as a text block."""
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return list(content)


def get_text(message: Message) -> str:
    """Concatenate the text of a message's text blocks."""
    if isinstance(message.content, str):
        return message.content
    return "".join(
        block.get("text", "") for block in message.content if block.get("type") == "text"
    )


def is_reasoning_block(block: Any) -> bool:
    return isinstance(block, dict) and block.get("type") in REASONING_BLOCK_TYPES


def get_reasoning_block(message: Message) -> Optional[Dict[str, Any]]:
    """Return the first reasoning block of an AI message, if any."""
    if not isinstance(message, AIMessage) or isinstance(message.content, str):
        return None
    for block in message.content:
        if is_reasoning_block(block):
            return block
    return None


def has_thinking_block(message: Message) -> bool:
    return get_reasoning_block(message) is not None


def get_tool_call_ids(message: Message) -> List[str]:
    """
    Collect the tool-call ids issued by an AI message.

    Ids come from both ``tool_calls`` and inline ``tool_use`` blocks, in order,
    without duplicates.
    """
    if not isinstance(message, AIMessage):
        return []
    ids: List[str] = []
    for tc in message.tool_calls:
        if tc.id and tc.id not in ids:
            ids.append(tc.id)
    if isinstance(message.content, list):
        for block in message.content:
            if block.get("type") == "tool_use" and block.get("id") and block["id"] not in ids:
                ids.append(block["id"])
    return ids


def get_tool_call_names(message: Message) -> Dict[str, str]:
    """Map tool-call id to tool name for an AI message."""
    if not isinstance(message, AIMessage):
        return {}
    names = {tc.id: tc.name for tc in message.tool_calls if tc.id}
    if isinstance(message.content, list):
        for block in message.content:
            if block.get("type") == "tool_use" and block.get("id"):
                names.setdefault(block["id"], block.get("name", ""))
    return names


_BUFFER_PREFIXES = {"system": "System", "human": "Human", "ai": "AI", "tool": "Tool"}


def get_buffer_string(messages: Iterable[Message]) -> str:
    """Render messages as a plain transcript, one ``Prefix: text`` line per message."""
    lines = []
    for message in messages:
        prefix = _BUFFER_PREFIXES.get(message.role, message.role)
        text = get_text(message)
        if isinstance(message, AIMessage) and message.tool_calls:
            calls = json.dumps([tc.to_dict() for tc in message.tool_calls], ensure_ascii=False)
            text = f"{text}\n{calls}" if text else calls
        lines.append(f"{prefix}: {text}")
    return "\n".join(lines)


class UsageMetadata(BaseModel):
    """Token usage reported by the provider for one model call."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: Optional[int] = None
    input_token_details: Optional[Dict[str, int]] = None

    @field_validator("input_tokens", "output_tokens")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("token counts must be non-negative")
        return value

    @model_validator(mode="after")
    def _fill_total(self) -> "UsageMetadata":
        if self.total_tokens is None:
            self.total_tokens = self.input_tokens + self.output_tokens
        return self
