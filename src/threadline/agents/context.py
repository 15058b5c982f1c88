"""
Per-agent conversation context.

An ``AgentContext`` owns everything about one agent that changes from turn to
turn: which deferred tools have been discovered, the compiled system prompt,
and the token accounting for that prompt. The system prompt is memoized in a
``CachedValue`` cell and rebuilt only after something invalidates it.
"""

import dataclasses
import logging
from typing import Any, Callable, Dict, Generic, List, Literal, Mapping, Optional, Set, TypeVar, Union

from pydantic import BaseModel, ValidationError, field_validator

from threadline.exceptions import AgentConfigurationError, MessageContentError
from threadline.messages.prune import MessagePruner
from threadline.messages.types import Message, SystemMessage, UsageMetadata
from threadline.models.providers import Provider, resolve_provider

logger = logging.getLogger(__name__)

T = TypeVar("T")

CallerType = Literal["direct", "code_execution"]


class ToolDefinition(BaseModel):
    """Registry metadata for one tool."""

    name: str
    description: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    allowed_callers: List[CallerType] = ["direct"]
    defer_loading: bool = False

    @field_validator("allowed_callers", mode="before")
    @classmethod
    def _default_callers(cls, value: Any) -> Any:
        # Absent, null or empty means directly callable
        if not value:
            return ["direct"]
        return value

    @field_validator("defer_loading", mode="before")
    @classmethod
    def _falsy_defer(cls, value: Any) -> bool:
        return bool(value)

    @property
    def is_direct(self) -> bool:
        return "direct" in self.allowed_callers

    @property
    def is_code_execution_only(self) -> bool:
        return "code_execution" in self.allowed_callers and not self.is_direct


class CachedValue(Generic[T]):
    """
    Memoization cell with an explicit stale flag.

    ``get_or_build`` returns the cached value until ``invalidate`` is called.
    The flag is cleared only after the builder returns; a builder that raises
    leaves the cell stale.
    """

    def __init__(self):
        self.value: Optional[T] = None
        self.is_stale: bool = True

    def invalidate(self) -> None:
        self.is_stale = True

    def get_or_build(self, builder: Callable[[], Optional[T]]) -> Optional[T]:
        if self.is_stale:
            self.value = builder()
            self.is_stale = False
        return self.value


@dataclasses.dataclass(frozen=True, eq=False)
class SystemPrompt:
    """Compiled system prompt for one agent turn."""

    message: SystemMessage
    text: str
    token_count: int = 0


@dataclasses.dataclass
class AgentInputs:
    """Configuration used to create an ``AgentContext``."""

    agent_id: str
    provider: Optional[Union[Provider, str]] = None
    instructions: Optional[str] = None
    additional_instructions: Optional[str] = None
    tools: Optional[List[Any]] = None
    tool_registry: Optional[Mapping[str, Union[ToolDefinition, Dict[str, Any]]]] = None
    max_context_tokens: Optional[int] = None
    thinking_enabled: bool = False


def get_tool_name(tool: Any) -> Optional[str]:
    """Name of a tool object or tool dict, None when it has none."""
    if isinstance(tool, Mapping):
        name = tool.get("name")
    else:
        name = getattr(tool, "name", None)
    return name if isinstance(name, str) and name else None


def build_programmatic_tools_section(tools: List[ToolDefinition]) -> str:
    """Render the system-prompt section listing code-execution-only tools."""
    if not tools:
        return ""
    lines = [
        "## Programmatic Tools",
        "",
        "The following tools can only be called from code you run with the code "
        "execution tool. They cannot be called directly.",
        "",
    ]
    for tool in tools:
        if tool.description:
            lines.append(f"- **{tool.name}**: {tool.description}")
        else:
            lines.append(f"- **{tool.name}**")
    return "\n".join(lines)


class AgentContext:
    """
    Mutable per-agent state for a run.

    Attributes:
        agent_id: Identity of the agent, also part of its step keys
        provider: Provider the agent calls, if known
        tools: Tool objects configured for the agent (None means none configured)
        discovered_tool_names: Deferred tools revealed by tool search so far
        instruction_tokens: Token cost of the current system prompt
        index_token_count_map: Per-message token counts for the conversation
        current_usage: Usage reported by the latest model call
    """

    def __init__(
        self,
        agent_id: str,
        provider: Optional[Provider] = None,
        instructions: Optional[str] = None,
        additional_instructions: Optional[str] = None,
        tools: Optional[List[Any]] = None,
        tool_registry: Optional[Dict[str, ToolDefinition]] = None,
        token_counter: Optional[Callable[[Message], int]] = None,
        max_context_tokens: Optional[int] = None,
        thinking_enabled: bool = False,
    ):
        self.agent_id = agent_id
        self.provider = provider
        self.tools = tools
        self.token_counter = token_counter
        self.max_context_tokens = max_context_tokens
        self.thinking_enabled = thinking_enabled

        self._system_prompt: CachedValue[SystemPrompt] = CachedValue()
        self._instructions = instructions
        self._additional_instructions = additional_instructions
        self._tool_registry = tool_registry

        self.discovered_tool_names: Set[str] = set()
        self.instruction_tokens: int = 0
        self.index_token_count_map: Dict[int, int] = {}
        self.current_usage: Optional[UsageMetadata] = None

        # Owned by prepare_turn; cleared on reset
        self.pruner: Optional[MessagePruner] = None

    @classmethod
    def from_config(
        cls,
        inputs: AgentInputs,
        token_counter: Optional[Callable[[Message], int]] = None,
    ) -> "AgentContext":
        """
        Create a context from ``AgentInputs``.

        Raises:
            AgentConfigurationError: If the agent id, provider, budget or a
                registry entry is invalid
        """
        if not inputs.agent_id:
            raise AgentConfigurationError(
                "AgentInputs.agent_id must be a non-empty string",
                config_field="agent_id",
                config_value=inputs.agent_id,
            )
        if inputs.max_context_tokens is not None and inputs.max_context_tokens <= 0:
            raise AgentConfigurationError(
                f"max_context_tokens must be positive, got {inputs.max_context_tokens}",
                config_field="max_context_tokens",
                config_value=inputs.max_context_tokens,
                agent_id=inputs.agent_id,
            )
        try:
            provider = resolve_provider(inputs.provider)
        except MessageContentError as e:
            raise AgentConfigurationError(
                str(e.developer_message),
                config_field="provider",
                config_value=inputs.provider,
                agent_id=inputs.agent_id,
            ) from e

        return cls(
            agent_id=inputs.agent_id,
            provider=provider,
            instructions=inputs.instructions,
            additional_instructions=inputs.additional_instructions,
            tools=inputs.tools,
            tool_registry=_build_registry(inputs.agent_id, inputs.tool_registry),
            token_counter=token_counter,
            max_context_tokens=inputs.max_context_tokens,
            thinking_enabled=inputs.thinking_enabled,
        )

    # --- Prompt inputs; changing any of them invalidates the cached prompt ---

    @property
    def instructions(self) -> Optional[str]:
        return self._instructions

    @instructions.setter
    def instructions(self, value: Optional[str]) -> None:
        self._instructions = value
        self._system_prompt.invalidate()

    @property
    def additional_instructions(self) -> Optional[str]:
        return self._additional_instructions

    @additional_instructions.setter
    def additional_instructions(self, value: Optional[str]) -> None:
        self._additional_instructions = value
        self._system_prompt.invalidate()

    @property
    def tool_registry(self) -> Optional[Dict[str, ToolDefinition]]:
        return self._tool_registry

    @tool_registry.setter
    def tool_registry(self, value: Optional[Mapping[str, Union[ToolDefinition, Dict[str, Any]]]]) -> None:
        self._tool_registry = _build_registry(self.agent_id, value)
        self._system_prompt.invalidate()

    # --- System prompt ---

    @property
    def system_runnable(self) -> Optional[SystemPrompt]:
        """The compiled system prompt, rebuilt only after invalidation."""
        return self._system_prompt.get_or_build(self._build_system_prompt)

    def initialize_system_runnable(self) -> None:
        """Build the system prompt now if it is missing or stale."""
        self._system_prompt.get_or_build(self._build_system_prompt)

    def _programmatic_tools(self) -> List[ToolDefinition]:
        if not self._tool_registry:
            return []
        return [
            tool
            for tool in self._tool_registry.values()
            if tool.is_code_execution_only
            and (not tool.defer_loading or tool.name in self.discovered_tool_names)
        ]

    def _build_system_prompt(self) -> Optional[SystemPrompt]:
        sections = [
            self._instructions,
            self._additional_instructions,
            build_programmatic_tools_section(self._programmatic_tools()),
        ]
        text = "\n\n".join(section for section in sections if section)
        if not text:
            self.instruction_tokens = 0
            return None

        message = SystemMessage(content=text)
        token_count = int(self.token_counter(message)) if self.token_counter else 0
        self.instruction_tokens = token_count
        logger.debug(
            f"Built system prompt for agent '{self.agent_id}' ({token_count} tokens)",
            extra={"agent_id": self.agent_id},
        )
        return SystemPrompt(message=message, text=text, token_count=token_count)

    # --- Tool visibility ---

    def mark_tools_as_discovered(self, names: List[str]) -> bool:
        """
        Record tool names revealed by a tool search.

        Unknown names are accepted. Returns True iff at least one name was new,
        in which case the system prompt is rebuilt on next access.
        """
        new_names = [name for name in names if name not in self.discovered_tool_names]
        if not new_names:
            return False
        self.discovered_tool_names.update(new_names)
        self._system_prompt.invalidate()
        logger.debug(
            f"Agent '{self.agent_id}' discovered tools: {new_names}",
            extra={"agent_id": self.agent_id},
        )
        return True

    def get_tools_for_binding(self) -> Optional[List[Any]]:
        """
        Tools the model may call directly this turn.

        Returns None when no tools are configured. Tools without a registry
        entry are treated as direct and not deferred.
        """
        if self.tools is None:
            return None
        if self._tool_registry is None:
            return list(self.tools)

        bindable = []
        for tool in self.tools:
            name = get_tool_name(tool)
            definition = self._tool_registry.get(name) if name else None
            if definition is None:
                bindable.append(tool)
                continue
            if not definition.is_direct:
                continue
            if definition.defer_loading and name not in self.discovered_tool_names:
                continue
            bindable.append(tool)
        return bindable

    # --- Token accounting ---

    def update_token_map_with_instructions(
        self, counts: Mapping[Union[int, str], int]
    ) -> Dict[int, int]:
        """Store ``counts`` with the system prompt's tokens added to index 0."""
        updated = {int(index): int(value) for index, value in counts.items()}
        if 0 in updated:
            updated[0] += self.instruction_tokens
        self.index_token_count_map = updated
        return updated

    def reset(self) -> None:
        """Return the context to its pre-first-turn state."""
        self.discovered_tool_names.clear()
        self.instruction_tokens = 0
        self.index_token_count_map = {}
        self.current_usage = None
        self.pruner = None
        self._system_prompt.invalidate()


def _build_registry(
    agent_id: str,
    registry: Optional[Mapping[str, Union[ToolDefinition, Dict[str, Any]]]],
) -> Optional[Dict[str, ToolDefinition]]:
    if registry is None:
        return None
    built: Dict[str, ToolDefinition] = {}
    for name, entry in registry.items():
        if isinstance(entry, ToolDefinition):
            built[name] = entry
            continue
        try:
            built[name] = ToolDefinition.model_validate({"name": name, **dict(entry)})
        except (ValidationError, TypeError) as e:
            raise AgentConfigurationError(
                f"Invalid tool registry entry '{name}': {e}",
                config_field="tool_registry",
                config_value=entry,
                agent_id=agent_id,
            ) from e
    return built
