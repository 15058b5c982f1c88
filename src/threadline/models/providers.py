"""
Closed provider table.

Every supported provider belongs to exactly one ``ProviderFamily``. Behaviour
that differs between providers (reasoning block shape, media placement,
server-side tools) is looked up in ``PROVIDER_TABLE`` rather than decided by
runtime type checks, so the pruning and step-reconstruction code only ever
sees the neutral ``thinking`` block shape.
"""

import dataclasses
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from threadline.exceptions import MessageContentError

logger = logging.getLogger(__name__)


class Provider(str, Enum):
    ANTHROPIC = "anthropic"
    BEDROCK = "bedrock"
    GOOGLE = "google"
    VERTEXAI = "vertexai"
    OPENAI = "openai"
    AZURE_OPENAI = "azure_openai"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"
    XAI = "xai"


class ProviderFamily(str, Enum):
    ANTHROPIC = "anthropic"
    BEDROCK = "bedrock"
    GOOGLE = "google"
    OPENAI_LIKE = "openai_like"


PROVIDER_FAMILIES: Dict[Provider, ProviderFamily] = {
    Provider.ANTHROPIC: ProviderFamily.ANTHROPIC,
    Provider.BEDROCK: ProviderFamily.BEDROCK,
    Provider.GOOGLE: ProviderFamily.GOOGLE,
    Provider.VERTEXAI: ProviderFamily.GOOGLE,
    Provider.OPENAI: ProviderFamily.OPENAI_LIKE,
    Provider.AZURE_OPENAI: ProviderFamily.OPENAI_LIKE,
    Provider.OPENROUTER: ProviderFamily.OPENAI_LIKE,
    Provider.DEEPSEEK: ProviderFamily.OPENAI_LIKE,
    Provider.XAI: ProviderFamily.OPENAI_LIKE,
}


# --- Reasoning block converters: provider shape -> neutral thinking block ---


def _anthropic_to_thinking(block: Dict[str, Any]) -> Dict[str, Any]:
    if block.get("type") == "redacted_thinking":
        return {"type": "redacted_thinking", "data": block.get("data", "")}
    thinking = block.get("thinking")
    if not isinstance(thinking, str):
        raise MessageContentError(
            "Anthropic thinking block is missing a 'thinking' string", block_type="thinking"
        )
    result = {"type": "thinking", "thinking": thinking}
    if block.get("signature"):
        result["signature"] = block["signature"]
    return result


def _bedrock_to_thinking(block: Dict[str, Any]) -> Dict[str, Any]:
    # Bedrock Converse: {"type": "reasoning_content", "reasoningText": {"text", "signature"}}
    reasoning = block.get("reasoningText") or block.get("reasoning_text")
    if isinstance(reasoning, dict) and isinstance(reasoning.get("text"), str):
        result = {"type": "thinking", "thinking": reasoning["text"]}
        if reasoning.get("signature"):
            result["signature"] = reasoning["signature"]
        return result
    if block.get("redactedContent"):
        return {"type": "redacted_thinking", "data": block["redactedContent"]}
    raise MessageContentError(
        "Bedrock reasoning block has neither 'reasoningText' nor 'redactedContent'",
        block_type=block.get("type"),
    )


def _google_to_thinking(block: Dict[str, Any]) -> Dict[str, Any]:
    reasoning = block.get("reasoning")
    if not isinstance(reasoning, str):
        raise MessageContentError(
            "Google reasoning block is missing a 'reasoning' string", block_type="reasoning"
        )
    return {"type": "thinking", "thinking": reasoning}


def _openai_to_thinking(block: Dict[str, Any]) -> Dict[str, Any]:
    # OpenAI-compatible reasoning arrives as {"type": "reasoning", "summary": [...]} or
    # {"type": "reasoning", "reasoning": "..."} depending on the endpoint
    if isinstance(block.get("reasoning"), str):
        return {"type": "thinking", "thinking": block["reasoning"]}
    summary = block.get("summary")
    if isinstance(summary, list):
        text = "".join(part.get("text", "") for part in summary if isinstance(part, dict))
        return {"type": "thinking", "thinking": text}
    raise MessageContentError(
        "OpenAI reasoning block has neither 'reasoning' nor 'summary'",
        block_type=block.get("type"),
    )


@dataclasses.dataclass(frozen=True)
class ProviderSpec:
    """Per-family conversion entry."""

    family: ProviderFamily
    reasoning_block_type: str
    to_thinking: Callable[[Dict[str, Any]], Dict[str, Any]]
    media_first: bool = False
    supports_server_tools: bool = False


PROVIDER_TABLE: Dict[ProviderFamily, ProviderSpec] = {
    ProviderFamily.ANTHROPIC: ProviderSpec(
        family=ProviderFamily.ANTHROPIC,
        reasoning_block_type="thinking",
        to_thinking=_anthropic_to_thinking,
        media_first=True,
        supports_server_tools=True,
    ),
    ProviderFamily.BEDROCK: ProviderSpec(
        family=ProviderFamily.BEDROCK,
        reasoning_block_type="reasoning_content",
        to_thinking=_bedrock_to_thinking,
    ),
    ProviderFamily.GOOGLE: ProviderSpec(
        family=ProviderFamily.GOOGLE,
        reasoning_block_type="reasoning",
        to_thinking=_google_to_thinking,
    ),
    ProviderFamily.OPENAI_LIKE: ProviderSpec(
        family=ProviderFamily.OPENAI_LIKE,
        reasoning_block_type="reasoning",
        to_thinking=_openai_to_thinking,
    ),
}

# Used when the originating provider is unknown; the block tag decides
_BLOCK_TYPE_CONVERTERS = {
    "thinking": _anthropic_to_thinking,
    "redacted_thinking": _anthropic_to_thinking,
    "reasoning_content": _bedrock_to_thinking,
}


def resolve_provider(provider: Union[Provider, str, None]) -> Optional[Provider]:
    """Coerce a provider name into ``Provider``; None stays None."""
    if provider is None or isinstance(provider, Provider):
        return provider
    try:
        return Provider(str(provider).lower())
    except ValueError:
        raise MessageContentError(f"Unknown provider: {provider!r}")


def get_provider_spec(provider: Union[Provider, str, None]) -> Optional[ProviderSpec]:
    resolved = resolve_provider(provider)
    if resolved is None:
        return None
    return PROVIDER_TABLE[PROVIDER_FAMILIES[resolved]]


def is_family(provider: Union[Provider, str, None], family: ProviderFamily) -> bool:
    spec = get_provider_spec(provider)
    return spec is not None and spec.family == family


def normalize_reasoning_block(
    block: Dict[str, Any], provider: Union[Provider, str, None] = None
) -> Dict[str, Any]:
    """
    Convert a provider reasoning block into the neutral ``thinking`` shape.

    Args:
        block: Reasoning block as produced by a provider
        provider: Originating provider; when omitted the block's tag decides

    Returns:
        A ``thinking`` or ``redacted_thinking`` block

    Raises:
        MessageContentError: If the block's shape is not recognized
    """
    block_type = block.get("type") if isinstance(block, dict) else None
    spec = get_provider_spec(provider)
    if spec is not None and block_type == spec.reasoning_block_type:
        return spec.to_thinking(block)
    converter = _BLOCK_TYPE_CONVERTERS.get(block_type)
    if converter is not None:
        return converter(block)
    if block_type == "reasoning":
        if isinstance(block.get("reasoning"), str):
            return _google_to_thinking(block)
        return _openai_to_thinking(block)
    raise MessageContentError(
        f"Unrecognized reasoning block type: {block_type!r}",
        block_type=block_type,
        allowed_types=["thinking", "redacted_thinking", "reasoning_content", "reasoning"],
    )
