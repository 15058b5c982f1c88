"""
Run-step reconstruction from a streamed model response.

Providers stream text, reasoning and tool-call fragments interleaved and in
inconsistent shapes. ``RunStepReconstructor`` folds that stream into an
append-only sequence of discrete steps, one sequence per step key, and
publishes every step and delta on an ``EventBus``:

    NONE --text--> MESSAGE_CREATION --tool chunk--> TOOL_CALLS --text--> MESSAGE_CREATION

A MESSAGE_CREATION step never carries tool calls and a TOOL_CALLS step never
carries text. Parallel tool calls each get their own TOOL_CALLS step.

State is mutated only between awaits; a single reconstructor must not be
driven by two streams at once.
"""

import dataclasses
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from threadline.constants import (
    MESSAGE_ID_PREFIX,
    STEP_ID_PREFIX,
    TOOL_CALL_ID_PREFIX,
    WEB_SEARCH,
)
from threadline.coordination.event_bus import EventBus
from threadline.coordination.steps.events import (
    MessageDeltaEvent,
    ReasoningDeltaEvent,
    RunStepCreatedEvent,
    RunStepDeltaEvent,
    ToolCompletedEvent,
)
from threadline.coordination.steps.types import (
    MessageCreationDetails,
    RunStep,
    StepDetails,
    StepType,
    ToolCallDelta,
    ToolCallsDetails,
)
from threadline.exceptions import RunStepError
from threadline.messages.types import ToolCall, ToolCallChunk, content_to_blocks, is_reasoning_block
from threadline.models.providers import Provider, ProviderFamily, is_family, normalize_reasoning_block

logger = logging.getLogger(__name__)

WEB_SEARCH_RESULT_TYPES = frozenset({"web_search_result", "web_search_tool_result"})


@dataclasses.dataclass
class ReconstructorConfig:
    """Identifier prefixes and reserved names used by the reconstructor."""

    tool_call_id_prefix: str = TOOL_CALL_ID_PREFIX
    step_id_prefix: str = STEP_ID_PREFIX
    message_id_prefix: str = MESSAGE_ID_PREFIX
    web_search_tool_name: str = WEB_SEARCH


def format_web_search_results(turn: int, results: Sequence[Dict[str, Any]]) -> str:
    """Render provider web-search results as a numbered plain-text listing."""
    lines = []
    for i, result in enumerate(results):
        lines.append(f"# [{turn}.{i}] {result.get('title') or 'Untitled'}")
        lines.append(f"URL: {result.get('url', '')}")
        if result.get("page_age"):
            lines.append(f"Published: {result['page_age']}")
        lines.append("")
    return "\n".join(lines).rstrip()


class RunStepReconstructor:
    """
    Turns streamed model output into run steps and step events.

    Attributes:
        event_bus: Sink for every step event
        config: Identifier prefixes and reserved names
        steps: All steps of the run, in creation order
        step_ids_by_key: Step ids created for each step key, in creation order
        message_step_has_tool_calls: Message steps already followed by a tool step
        tool_call_step_ids: Tool-call id to the TOOL_CALLS step carrying it
        message_ids_by_key: Latest message id created for each step key
        invoked_tool_ids: Tool calls completed by the provider itself
    """

    def __init__(self, event_bus: Optional[EventBus] = None, config: Optional[ReconstructorConfig] = None):
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.config = config or ReconstructorConfig()

        self.steps: List[RunStep] = []
        self.step_ids_by_key: Dict[str, List[str]] = {}
        self.message_step_has_tool_calls: Set[str] = set()
        self.tool_call_step_ids: Dict[str, str] = {}
        self.message_ids_by_key: Dict[str, str] = {}
        self.invoked_tool_ids: Set[str] = set()

        self._steps_by_id: Dict[str, RunStep] = {}
        # Message step id -> the TOOL_CALLS step opened for it
        self._message_tool_steps: Dict[str, str] = {}
        # (step key, stream chunk index) -> step the index was last routed to
        self._chunk_index_steps: Dict[Tuple[str, int], str] = {}

    # ==========================================================================
    # Lookup
    # ==========================================================================

    def get_step_key(self, metadata: Optional[Mapping[str, Any]]) -> str:
        """
        Build the step key for a stream from its metadata.

        The key is ``run_id`` followed by the node and agent id when present,
        so agents streaming into the same run never share a step sequence.

        Raises:
            RunStepError: If metadata or its ``run_id`` is missing
        """
        if not metadata:
            raise RunStepError("Cannot build a step key without stream metadata")
        run_id = metadata.get("run_id")
        if not run_id:
            raise RunStepError(
                "Cannot build a step key: metadata has no run_id",
                context={"metadata_keys": sorted(metadata.keys())},
            )
        parts = [run_id, metadata.get("node"), metadata.get("agent_id")]
        return ":".join(str(part) for part in parts if part)

    def get_step_id_by_key(self, step_key: str) -> Optional[str]:
        """Id of the latest step for ``step_key``, None if the key has no steps."""
        step_ids = self.step_ids_by_key.get(step_key)
        return step_ids[-1] if step_ids else None

    def get_run_step(self, step_id: Optional[str]) -> Optional[RunStep]:
        if not step_id:
            return None
        return self._steps_by_id.get(step_id)

    def _latest_step(self, step_key: str) -> Optional[RunStep]:
        return self.get_run_step(self.get_step_id_by_key(step_key))

    def _require_step(self, step_id: str) -> RunStep:
        run_step = self.get_run_step(step_id)
        if run_step is None:
            raise RunStepError(f"No run step with id '{step_id}'", step_id=step_id)
        return run_step

    # ==========================================================================
    # Dispatch
    # ==========================================================================

    async def dispatch_run_step(
        self,
        step_key: str,
        details: StepDetails,
        agent_id: Optional[str] = None,
    ) -> str:
        """
        Append a new step for ``step_key`` and publish it.

        Returns:
            The new step's id
        """
        step_id = f"{self.config.step_id_prefix}{uuid.uuid4().hex}"
        run_step = RunStep(
            id=step_id,
            index=len(self.steps),
            step_key=step_key,
            step_details=details,
            agent_id=agent_id,
        )
        self.steps.append(run_step)
        self._steps_by_id[step_id] = run_step
        self.step_ids_by_key.setdefault(step_key, []).append(step_id)

        if isinstance(details, ToolCallsDetails):
            for tool_call_id in run_step.tool_call_ids:
                self.tool_call_step_ids[tool_call_id] = step_id

        logger.debug(f"Created {run_step.type.value} step {step_id} (index {run_step.index}) for {step_key}")
        await self.event_bus.emit(RunStepCreatedEvent(step_key=step_key, run_step=run_step, agent_id=agent_id))
        return step_id

    async def dispatch_run_step_delta(self, step_id: str, delta: ToolCallDelta) -> None:
        run_step = self._require_step(step_id)
        await self.event_bus.emit(
            RunStepDeltaEvent(step_key=run_step.step_key, step_id=step_id, delta=delta, agent_id=run_step.agent_id)
        )

    async def dispatch_message_delta(self, step_id: str, content: List[Dict[str, Any]]) -> None:
        run_step = self._require_step(step_id)
        await self.event_bus.emit(
            MessageDeltaEvent(step_key=run_step.step_key, step_id=step_id, content=content, agent_id=run_step.agent_id)
        )

    async def dispatch_reasoning_delta(self, step_id: str, content: List[Dict[str, Any]]) -> None:
        run_step = self._require_step(step_id)
        await self.event_bus.emit(
            ReasoningDeltaEvent(step_key=run_step.step_key, step_id=step_id, content=content, agent_id=run_step.agent_id)
        )

    async def dispatch_tool_completed(
        self,
        step_id: str,
        tool_call_id: str,
        name: str,
        output: str,
        args: Optional[Dict[str, Any]] = None,
        artifact: Optional[Dict[str, Any]] = None,
    ) -> None:
        run_step = self._require_step(step_id)
        await self.event_bus.emit(
            ToolCompletedEvent(
                step_key=run_step.step_key,
                step_id=step_id,
                tool_call_id=tool_call_id,
                name=name,
                output=output,
                args=args or {},
                artifact=artifact,
                agent_id=run_step.agent_id,
            )
        )

    async def _dispatch_message_creation(self, step_key: str, agent_id: Optional[str]) -> str:
        message_id = f"{self.config.message_id_prefix}{uuid.uuid4().hex}"
        self.message_ids_by_key[step_key] = message_id
        return await self.dispatch_run_step(step_key, MessageCreationDetails(message_id=message_id), agent_id)

    async def _dispatch_tool_calls(
        self,
        step_key: str,
        tool_calls: List[ToolCall],
        agent_id: Optional[str],
        message_step_id: Optional[str] = None,
    ) -> str:
        step_id = await self.dispatch_run_step(step_key, ToolCallsDetails(tool_calls=tool_calls), agent_id)
        if message_step_id:
            self.message_step_has_tool_calls.add(message_step_id)
            self._message_tool_steps[message_step_id] = step_id
        return step_id

    # ==========================================================================
    # Stream handlers
    # ==========================================================================

    async def handle_content_delta(
        self,
        step_key: str,
        content: Union[str, List[Dict[str, Any]], None],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """
        Route a text or reasoning delta to the current MESSAGE_CREATION step.

        A step is created when the key has none yet, and a fresh one is
        opened when content follows a TOOL_CALLS step.

        Returns:
            Id of the message step the content was routed to, None if the
            latest step is a tool step and the delta carried nothing to route
        """
        agent_id = metadata.get("agent_id") if metadata else None
        provider = metadata.get("provider") if metadata else None

        text_parts: List[Dict[str, Any]] = []
        reasoning_parts: List[Dict[str, Any]] = []
        for block in content_to_blocks(content or ""):
            if is_reasoning_block(block):
                reasoning_parts.append(normalize_reasoning_block(block, provider))
            elif block.get("type") == "text" and block.get("text"):
                text_parts.append({"type": "text", "text": block["text"]})

        run_step = self._latest_step(step_key)
        if run_step is None:
            step_id = await self._dispatch_message_creation(step_key, agent_id)
        elif run_step.type == StepType.TOOL_CALLS:
            if not text_parts and not reasoning_parts:
                return None
            step_id = await self._dispatch_message_creation(step_key, agent_id)
        else:
            step_id = run_step.id

        if reasoning_parts:
            await self.dispatch_reasoning_delta(step_id, reasoning_parts)
        if text_parts:
            await self.dispatch_message_delta(step_id, text_parts)
        return step_id

    async def handle_tool_call_chunks(
        self,
        step_key: str,
        tool_call_chunks: Sequence[ToolCallChunk],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """
        Route streamed tool-call chunks to TOOL_CALLS steps.

        Every new call (a chunk carrying both an id and a name) gets its own
        step, even when several arrive in one batch. Later chunks follow their
        call by id, or by stream index when the id is missing. Empty-string
        ids and names are treated as missing. Chunks are always delivered as a
        delta, even when none of them carries an id or a name (Bedrock streams
        argument fragments that way).

        Returns:
            Id of the TOOL_CALLS step the last chunk was routed to
        """
        agent_id = metadata.get("agent_id") if metadata else None
        chunks = [chunk.sanitized() for chunk in tool_call_chunks]

        if self._latest_step(step_key) is None:
            await self._dispatch_message_creation(step_key, agent_id)

        for chunk in chunks:
            if chunk.id and chunk.name and chunk.id not in self.tool_call_step_ids:
                await self._attach_tool_call(step_key, ToolCall(name=chunk.name, id=chunk.id), agent_id)

        # Step id -> chunks, in order of first appearance
        routed: Dict[str, List[ToolCallChunk]] = {}
        step_id = None
        for chunk in chunks:
            step_id = await self._route_chunk(step_key, chunk, agent_id)
            routed.setdefault(step_id, []).append(chunk)
        if step_id is None:
            step_id = await self._fallback_tool_step(step_key, agent_id)
            routed[step_id] = []

        for target, target_chunks in routed.items():
            await self.dispatch_run_step_delta(
                target, ToolCallDelta(tool_calls=[chunk.to_dict() for chunk in target_chunks])
            )
        return step_id

    def _current_tool_step_ids(self, step_key: str) -> List[str]:
        """TOOL_CALLS steps opened for ``step_key`` since its latest message step."""
        current: List[str] = []
        for step_id in reversed(self.step_ids_by_key.get(step_key, [])):
            if self._steps_by_id[step_id].type != StepType.TOOL_CALLS:
                break
            current.append(step_id)
        return current

    async def _attach_tool_call(self, step_key: str, tool_call: ToolCall, agent_id: Optional[str]) -> str:
        """Give a newly seen call a TOOL_CALLS step of its own."""
        prev_step = self._latest_step(step_key)
        if prev_step.type == StepType.TOOL_CALLS:
            if not prev_step.step_details.tool_calls:
                prev_step.step_details.tool_calls.append(tool_call)
                self.tool_call_step_ids[tool_call.id] = prev_step.id
                return prev_step.id
            return await self._dispatch_tool_calls(step_key, [tool_call], agent_id)
        return await self._dispatch_tool_calls(step_key, [tool_call], agent_id, message_step_id=prev_step.id)

    async def _route_chunk(self, step_key: str, chunk: ToolCallChunk, agent_id: Optional[str]) -> str:
        if chunk.id and chunk.id in self.tool_call_step_ids:
            step_id = self.tool_call_step_ids[chunk.id]
        else:
            step_id = None
            if chunk.index is not None:
                indexed = self._chunk_index_steps.get((step_key, chunk.index))
                if indexed in self._current_tool_step_ids(step_key):
                    step_id = indexed
            if step_id is None:
                step_id = await self._fallback_tool_step(step_key, agent_id)
        if chunk.index is not None:
            self._chunk_index_steps[(step_key, chunk.index)] = step_id
        return step_id

    async def _fallback_tool_step(self, step_key: str, agent_id: Optional[str]) -> str:
        """Step for chunks that name no known call: the open tool step, or a new empty one."""
        prev_step = self._latest_step(step_key)
        if prev_step.type == StepType.TOOL_CALLS:
            return prev_step.id
        step_id = self._message_tool_steps.get(prev_step.id)
        if step_id is None:
            step_id = await self._dispatch_tool_calls(step_key, [], agent_id, message_step_id=prev_step.id)
        return step_id

    async def handle_tool_calls(
        self,
        tool_calls: Optional[Sequence[Union[ToolCall, Dict[str, Any]]]],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """
        Give every finalized tool call a TOOL_CALLS step.

        Calls without an id get a generated one. Calls already attached to a
        step (seeded from chunks) are skipped. An empty TOOL_CALLS step left
        behind by id-less chunks adopts the first call instead of a new step
        being created.
        """
        if not metadata:
            logger.warning("Stream metadata not found, cannot dispatch tool calls")
            return
        if not tool_calls:
            return

        step_key = self.get_step_key(metadata)
        agent_id = metadata.get("agent_id")

        for raw_call in tool_calls:
            tool_call = raw_call if isinstance(raw_call, ToolCall) else ToolCall.from_dict(raw_call)
            if not tool_call.id:
                tool_call.id = f"{self.config.tool_call_id_prefix}{uuid.uuid4().hex[:24]}"
            if tool_call.id in self.tool_call_step_ids:
                continue

            prev_step = self._latest_step(step_key)

            if prev_step is not None and prev_step.type == StepType.TOOL_CALLS:
                if not prev_step.step_details.tool_calls:
                    prev_step.step_details.tool_calls.append(tool_call)
                    self.tool_call_step_ids[tool_call.id] = prev_step.id
                    logger.debug(f"Tool call {tool_call.id} adopted by empty step {prev_step.id}")
                    continue
                await self._dispatch_tool_calls(step_key, [tool_call], agent_id)
                continue

            if prev_step is not None:
                message_step_id = prev_step.id
            else:
                message_step_id = await self._dispatch_message_creation(step_key, agent_id)
            await self._dispatch_tool_calls(step_key, [tool_call], agent_id, message_step_id=message_step_id)

    async def handle_server_tool_result(
        self,
        content: Union[str, List[Dict[str, Any]], None],
        metadata: Optional[Mapping[str, Any]] = None,
        provider: Union[Provider, str, None] = None,
    ) -> bool:
        """
        Match tool results executed by the provider itself back to their steps.

        Only Anthropic-family providers return server tool results inline.
        Results whose tool-use id cannot be matched to a TOOL_CALLS step are
        logged and skipped.

        Returns:
            True if at least one result was matched to a step
        """
        if not is_family(provider, ProviderFamily.ANTHROPIC):
            return False
        if isinstance(content, str) or not content:
            return False
        if len(content) == 1 and content[0].get("tool_use_id") is None:
            return False

        handled = False
        for part in content:
            tool_use_id = part.get("tool_use_id")
            if not tool_use_id:
                continue

            step_id = self.tool_call_step_ids.get(tool_use_id)
            if not step_id:
                logger.warning(f"Tool use id {tool_use_id} not found in run steps, cannot dispatch tool result")
                continue
            run_step = self.get_run_step(step_id)
            if run_step is None:
                logger.warning(f"Run step for {step_id} does not exist, cannot dispatch tool result")
                continue
            if run_step.type != StepType.TOOL_CALLS:
                logger.warning(f"Run step for {step_id} is not a tool call step, cannot dispatch tool result")
                continue

            tool_call = next((tc for tc in run_step.step_details.tool_calls if tc.id == tool_use_id), None)
            if tool_call is None:
                continue

            if part.get("type") in WEB_SEARCH_RESULT_TYPES:
                await self._handle_web_search_result(part, tool_call, run_step)
            handled = True

        return handled

    async def _handle_web_search_result(self, part: Dict[str, Any], tool_call: ToolCall, run_step: RunStep) -> None:
        results = part.get("content")
        if not isinstance(results, list):
            logger.warning(f"Expected web search content to be a list, got {type(results).__name__}")
            return
        if not results or not isinstance(results[0], dict) or results[0].get("type") != "web_search_result":
            logger.warning(f"Expected web search results, got {results!r:.200}")
            return

        turn = len(self.invoked_tool_ids)
        organic = [
            {
                "title": result.get("title"),
                "link": result.get("url"),
                "date": result.get("page_age"),
            }
            for result in results
        ]
        await self.dispatch_tool_completed(
            run_step.id,
            tool_call_id=tool_call.id,
            name=tool_call.name,
            output=format_web_search_results(turn, results),
            args=tool_call.args,
            artifact={self.config.web_search_tool_name: {"turn": turn, "organic": organic}},
        )
        self.invoked_tool_ids.add(tool_call.id)

    def reset(self) -> None:
        """Abandon every in-flight step; used on cancellation and between runs."""
        self.steps.clear()
        self.step_ids_by_key.clear()
        self.message_step_has_tool_calls.clear()
        self.tool_call_step_ids.clear()
        self.message_ids_by_key.clear()
        self.invoked_tool_ids.clear()
        self._steps_by_id.clear()
        self._message_tool_steps.clear()
        self._chunk_index_steps.clear()
