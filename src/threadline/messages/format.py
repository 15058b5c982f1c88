"""
Conversion of stored payloads into provider-neutral messages.

A payload is the flat, persisted form of a conversation: a list of dicts with
a ``role`` and either a string or a list of content parts. Assistant entries
interleave text, reasoning and tool calls (with their recorded outputs) in a
single content list; ``format_agent_messages`` expands each of those into the
AI/tool message sequence a model expects.
"""

import copy
import dataclasses
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from threadline.constants import PREVIOUS_CONTEXT_HEADER, TOOL_SEARCH, TRANSFER_TOOL_PREFIX
from threadline.exceptions import MessageContentError, MessageFormatError
from threadline.messages.types import (
    AIMessage,
    HumanMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolMessage,
    get_buffer_string,
    get_tool_call_ids,
    is_reasoning_block,
)
from threadline.models.providers import Provider, get_provider_spec

logger = logging.getLogger(__name__)

# Part types a stored payload may contain
PAYLOAD_PART_TYPES = frozenset(
    {
        "text",
        "think",
        "tool_call",
        "error",
        "agent_update",
        "image_url",
        "image",
        "document",
        "video",
        "audio",
        "file",
    }
)

_NAME_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_EMBEDDED_JSON = re.compile(r"\{[\s\S]*\}")


@dataclasses.dataclass
class FormatResult:
    messages: List[Message]
    index_token_count_map: Optional[Dict[int, int]] = None


def _sanitize_name(name: str) -> str:
    # Provider APIs accept ^[a-zA-Z0-9_-]{1,64}$
    return _NAME_INVALID_CHARS.sub("_", name)[:64]


def _validate_parts(parts: Sequence[Any], index: Optional[int] = None) -> None:
    where = f"payload[{index}]" if index is not None else "message"
    for j, part in enumerate(parts):
        if not isinstance(part, dict) or part.get("type") not in PAYLOAD_PART_TYPES:
            part_type = part.get("type") if isinstance(part, dict) else type(part).__name__
            raise MessageContentError(
                f"{where}.content[{j}] has unrecognized part type: {part_type!r}",
                block_type=part_type,
                allowed_types=list(PAYLOAD_PART_TYPES),
            )


def _strip_part(part: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in part.items() if key != "tool_call_ids"}


def format_message(
    message: Mapping[str, Any],
    user_name: Optional[str] = None,
    assistant_name: Optional[str] = None,
    provider: Union[Provider, str, None] = None,
) -> Message:
    """
    Format a single stored message into a ``HumanMessage``, ``AIMessage`` or ``SystemMessage``.

    The role falls back to ``sender`` ("user" or anything else meaning
    assistant). Media attached under ``documents``, ``videos``, ``audios`` or
    ``image_urls`` is added to user messages, before the text for providers
    that expect media first and after it otherwise.
    """
    role = message.get("role")
    if role is None:
        sender = message.get("sender")
        role = "user" if isinstance(sender, str) and sender.lower() == "user" else "assistant"
    content = message.get("content")
    if content is None:
        content = message.get("text") or ""

    name = message.get("name") or None
    if user_name and role == "user":
        name = user_name
    if assistant_name and role == "assistant":
        name = assistant_name
    if name:
        name = _sanitize_name(name)

    media: List[Dict[str, Any]] = []
    for key in ("documents", "videos", "audios", "image_urls"):
        parts = message.get(key)
        if isinstance(parts, list):
            media.extend(parts)

    if media and role == "user":
        if isinstance(content, str):
            body = [{"type": "text", "text": content}]
        else:
            body = [_strip_part(part) for part in content]
        spec = get_provider_spec(provider)
        blocks = media + body if spec and spec.media_first else body + media
        return HumanMessage(content=blocks, name=name)

    if isinstance(content, list):
        content = [_strip_part(part) for part in content]

    if role in ("user", "human"):
        return HumanMessage(content=content, name=name)
    if role in ("assistant", "ai"):
        return AIMessage(content=content, name=name)
    if role == "system":
        return SystemMessage(content=content, name=name)
    raise MessageFormatError(
        f"Unsupported message role: {role!r}",
        invalid_content=role,
        expected_format="role in {'user', 'assistant', 'system'}",
    )


def _join_text(parts: Iterable[Dict[str, Any]]) -> str:
    return "".join(f"{part.get('text') or ''}\n" for part in parts if part.get("type") == "text")


def _parse_args(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, str):
        return raw if isinstance(raw, dict) else {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {"input": raw}
    return parsed if isinstance(parsed, dict) else {"input": raw}


def _tool_output(output: Any) -> Union[str, List[Dict[str, Any]]]:
    if output is None:
        return ""
    if isinstance(output, (str, list)):
        return output
    return json.dumps(output, ensure_ascii=False)


def _format_assistant_message(parts: Sequence[Dict[str, Any]]) -> List[Message]:
    formatted: List[Message] = []
    current: List[Dict[str, Any]] = []
    last_ai: Optional[AIMessage] = None
    has_reasoning = False

    for part in parts:
        part_type = part.get("type")

        if part_type == "text" and part.get("tool_call_ids"):
            # Pending content is collapsed to a string so tool calls can attach to it
            if current:
                text = f"{_join_text(current)}\n{part.get('text') or ''}".strip()
                current = []
            else:
                text = part.get("text") or ""
            last_ai = AIMessage(content=text)
            formatted.append(last_ai)

        elif part_type == "tool_call":
            tool_call = part.get("tool_call")
            if not tool_call:
                logger.debug("Skipping tool_call part without a tool_call payload")
                continue
            name = tool_call.get("name")
            output = tool_call.get("output")
            if not name and (output is None or output == ""):
                logger.debug(f"Skipping malformed tool call {tool_call.get('id')!r} with no name and no output")
                continue

            if last_ai is None:
                last_ai = AIMessage(content="")
                formatted.append(last_ai)

            call = ToolCall(
                name=name or "",
                args=_parse_args(tool_call.get("args")),
                id=tool_call.get("id"),
            )
            last_ai.tool_calls.append(call)
            formatted.append(
                ToolMessage(
                    content=_tool_output(output),
                    tool_call_id=call.id or "",
                    name=call.name or None,
                )
            )

        elif part_type == "think":
            has_reasoning = True

        elif part_type in ("error", "agent_update"):
            continue

        else:
            current.append(_strip_part(part))

    if has_reasoning and current:
        text = _join_text(current).strip()
        if text:
            formatted.append(AIMessage(content=text))
    elif current:
        formatted.append(AIMessage(content=current))

    return formatted


def _extract_tool_names_from_search_output(output: str) -> List[str]:
    def names(parsed: Any) -> List[str]:
        if isinstance(parsed, dict) and isinstance(parsed.get("tools"), list):
            return [
                tool["name"]
                for tool in parsed["tools"]
                if isinstance(tool, dict) and isinstance(tool.get("name"), str)
            ]
        return []

    try:
        return names(json.loads(output))
    except ValueError:
        # Output may have warnings prepended
        match = _EMBEDDED_JSON.search(output)
        if match:
            try:
                return names(json.loads(match.group(0)))
            except ValueError:
                pass
    return []


def _filter_tool_calls(parts: List[Dict[str, Any]], allowed: Set[str]) -> List[Dict[str, Any]]:
    """Turn calls to tools outside ``allowed`` into text, growing ``allowed`` from tool-search output."""
    filtered: List[Dict[str, Any]] = []
    invalid_ids: Set[str] = set()
    invalid_strings: List[str] = []

    for part in parts:
        if part.get("type") != "tool_call":
            filtered.append(part)
            continue

        tool_call = part.get("tool_call") or {}
        tool_name = tool_call.get("name")
        call_id = tool_call.get("id")
        if not tool_name:
            if isinstance(call_id, str) and call_id:
                invalid_ids.add(call_id)
            continue

        output = tool_call.get("output")
        if tool_name == TOOL_SEARCH and isinstance(output, str) and output:
            allowed.update(_extract_tool_names_from_search_output(output))

        if tool_name in allowed:
            filtered.append(part)
        else:
            if isinstance(call_id, str) and call_id:
                invalid_ids.add(call_id)
            invalid_strings.append(f"Tool: {tool_name}, {output or ''}")

    if invalid_ids:
        for i, part in enumerate(filtered):
            if part.get("type") == "text" and isinstance(part.get("tool_call_ids"), list):
                remaining = [tid for tid in part["tool_call_ids"] if tid not in invalid_ids]
                updated = {key: value for key, value in part.items() if key != "tool_call_ids"}
                if remaining:
                    updated["tool_call_ids"] = remaining
                filtered[i] = updated

    if invalid_strings:
        invalid_text = "\n".join(invalid_strings)
        last_text = next(
            (j for j in range(len(filtered) - 1, -1, -1) if filtered[j].get("type") == "text"),
            None,
        )
        if last_text is None:
            filtered.append({"type": "text", "text": invalid_text})
        else:
            existing = filtered[last_text].get("text") or ""
            filtered[last_text] = {
                **filtered[last_text],
                "text": f"{existing}\n{invalid_text}" if existing else invalid_text,
            }

    return filtered


def format_agent_messages(
    payload: Sequence[Mapping[str, Any]],
    index_token_count_map: Optional[Mapping[Union[int, str], Optional[int]]] = None,
    tools: Optional[Set[str]] = None,
) -> FormatResult:
    """
    Format a stored payload into messages, expanding assistant tool calls.

    Args:
        payload: Stored conversation entries
        index_token_count_map: Token counts keyed by payload index
        tools: Tool names allowed in the request; calls to other tools become text

    Returns:
        FormatResult with the messages and, when a map was given, token counts
        keyed by message index

    Raises:
        MessageContentError: If a content part carries an unrecognized type
        MessageFormatError: If an entry has an unsupported role
    """
    messages: List[Message] = []
    index_mapping: Dict[int, List[int]] = {}
    allowed = set(tools) if tools is not None else None

    for i, entry in enumerate(payload):
        content = entry.get("content")
        if isinstance(content, str):
            parts = [{"type": "text", "text": content}]
        elif isinstance(content, list):
            parts = copy.deepcopy(content)
        elif content is None:
            parts = []
        else:
            raise MessageFormatError(
                f"payload[{i}].content must be a string or a list of parts",
                invalid_content=content,
                expected_format="str or List[Dict]",
            )
        _validate_parts(parts, i)

        if entry.get("role") != "assistant":
            messages.append(format_message({**entry, "content": parts}))
            index_mapping[i] = [len(messages) - 1]
            continue

        start = len(messages)
        if allowed is not None:
            parts = _filter_tool_calls(parts, allowed)
        messages.extend(_format_assistant_message(parts))
        index_mapping[i] = list(range(start, len(messages)))

    if index_token_count_map is None:
        return FormatResult(messages=messages)

    counts = {int(key): value for key, value in index_token_count_map.items()}
    updated: Dict[int, int] = {}
    for original, result_indices in index_mapping.items():
        token_count = counts.get(original)
        if token_count is None or not result_indices:
            continue
        if len(result_indices) == 1:
            updated[result_indices[0]] = token_count
            continue
        # Even split with the remainder on the last message; an approximation
        per_message = token_count // len(result_indices)
        for result_index in result_indices[:-1]:
            updated[result_index] = per_message
        updated[result_indices[-1]] = token_count - per_message * (len(result_indices) - 1)

    return FormatResult(messages=messages, index_token_count_map=updated)


def shift_index_token_count_map(
    index_token_count_map: Mapping[Union[int, str], int], instruction_tokens: int
) -> Dict[int, int]:
    """Put ``instruction_tokens`` at index 0 and shift every other index by one."""
    shifted = {0: instruction_tokens}
    for index, count in index_token_count_map.items():
        shifted[int(index) + 1] = count
    return shifted


def ensure_thinking_block_in_messages(
    messages: Sequence[Message], provider: Union[Provider, str, None] = None
) -> List[Message]:
    """
    Make a history produced without reasoning safe for a reasoning-enabled agent.

    Any AI message that uses tools without starting with a reasoning block is
    folded, together with the tool results that follow it, into a
    ``HumanMessage`` holding a transcript of that exchange.
    """
    result: List[Message] = []
    i = 0
    while i < len(messages):
        message = messages[i]
        uses_tools = isinstance(message, AIMessage) and (bool(message.tool_calls) or bool(get_tool_call_ids(message)))
        if not uses_tools:
            result.append(message)
            i += 1
            continue

        first_block = message.content[0] if isinstance(message.content, list) and message.content else None
        if is_reasoning_block(first_block):
            result.append(message)
            i += 1
            continue

        j = i + 1
        while j < len(messages) and isinstance(messages[j], ToolMessage):
            j += 1
        buffer = get_buffer_string(messages[i:j])
        result.append(HumanMessage(content=f"{PREVIOUS_CONTEXT_HEADER}\n{buffer}"))
        i = j

    return result


# --- Multi-agent attribution ---


def _compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _agent_lines(agent_name: str, parts: Sequence[Dict[str, Any]], wrap_text: bool) -> List[str]:
    lines = []
    for part in parts:
        part_type = part.get("type")
        if part_type == "think":
            think = part.get("think") or ""
            if think or wrap_text:
                lines.append(f"{agent_name}: {_compact({'type': 'think', 'think': think})}")
        elif part_type == "text":
            text = part.get("text") or ""
            if not text:
                continue
            if wrap_text:
                lines.append(f"{agent_name}: {_compact({'type': 'text', 'text': text})}")
            else:
                lines.append(f"{agent_name}: {text}")
        elif part_type == "tool_call":
            lines.append(
                f"{agent_name}: {_compact({'type': 'tool_call', 'tool_call': part.get('tool_call')})}"
            )
    return lines


def _label_all_agent_content(
    content_parts: Sequence[Dict[str, Any]],
    agent_id_map: Mapping[int, str],
    agent_names: Optional[Mapping[str, str]],
) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    buffer: List[Dict[str, Any]] = []
    current: Optional[str] = None

    def flush() -> None:
        if not buffer:
            return
        if current:
            name = (agent_names or {}).get(current) or current
            lines = [f"--- {name} ---"] + _agent_lines(name, buffer, wrap_text=False)
            lines.append(f"--- End of {name} ---")
            result.append({"type": "text", "text": "\n\n".join(lines)})
        else:
            result.extend(buffer)
        buffer.clear()

    for i, part in enumerate(content_parts):
        agent_id = agent_id_map.get(i)
        if current is not None and agent_id != current:
            flush()
        current = agent_id
        buffer.append(part)
    flush()
    return result


def label_content_by_agent(
    content_parts: Sequence[Dict[str, Any]],
    agent_id_map: Optional[Mapping[int, str]] = None,
    agent_names: Optional[Mapping[str, str]] = None,
    label_non_transfer_content: bool = False,
) -> List[Dict[str, Any]]:
    """
    Attribute multi-agent content parts to the agents that produced them.

    Content produced by an agent after a ``transfer_to_*`` call is folded into
    that call's output so the next reader sees it as the transferred agent's
    response rather than its own. With ``label_non_transfer_content`` every
    run of consecutive parts is wrapped in ``--- {agent} ---`` labels instead,
    for fan-out/fan-in patterns.

    Args:
        content_parts: Content parts of a run, as aggregated from step events
        agent_id_map: Content part index -> agent id
        agent_names: Agent id -> display name

    Returns:
        New list of content parts; the input is not modified
    """
    if not agent_id_map:
        return list(content_parts)
    agent_id_map = {int(key): value for key, value in agent_id_map.items()}
    if label_non_transfer_content:
        return _label_all_agent_content(content_parts, agent_id_map, agent_names)

    result: List[Dict[str, Any]] = []
    buffer: List[Dict[str, Any]] = []
    current: Optional[str] = None
    transfer_index: Optional[int] = None
    transfer_id: Optional[str] = None

    def flush() -> None:
        nonlocal transfer_index, transfer_id
        if not buffer:
            return
        if current and transfer_index is not None:
            name = (agent_names or {}).get(current) or current
            lines = [f"--- Transfer to {name} ---"] + _agent_lines(name, buffer, wrap_text=True)
            lines.append(f"--- End of {name} response ---")
            transfer_part = result[transfer_index]
            if (transfer_part.get("tool_call") or {}).get("id") == transfer_id:
                transfer_part["tool_call"]["output"] = "\n\n".join(lines)
        else:
            result.extend(buffer)
        buffer.clear()
        transfer_index = None
        transfer_id = None

    for i, part in enumerate(content_parts):
        agent_id = agent_id_map.get(i)
        tool_call = part.get("tool_call") if part.get("type") == "tool_call" else None
        is_transfer = bool(tool_call and (tool_call.get("name") or "").startswith(TRANSFER_TOOL_PREFIX))

        if current is not None and agent_id != current:
            flush()
        current = agent_id

        if is_transfer:
            flush()
            result.append({**part, "tool_call": dict(tool_call)})
            transfer_index = len(result) - 1
            transfer_id = tool_call.get("id")
            # The next agent's content belongs to this transfer
            current = None
        else:
            buffer.append(part)

    flush()
    return result
