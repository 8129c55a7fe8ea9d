"""Agent Loop Controller: one bounded tool-calling attempt against one provider.

Each iteration makes exactly one streamed model call. While tool budget
remains the web search tool is offered; once it is spent a forced-final
directive is appended instead and the tool is withdrawn. The attempt ends
when a turn produces content without tool calls, and fails when a turn
produces nothing or the iteration budget runs out.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator

from ..client import ModelTransport
from ..errors import EmptyCompletionError, IterationBudgetExceeded
from ..harmony import extract_analysis, extract_final_answer
from ..prompts import DEFAULT_PROMPTS, PromptConfig, build_forced_final_message, build_system_prompt
from ..providers import ProviderAdapter
from ..stream_decoder import ContentDelta, ReasoningDelta, ToolCallFragment, UsageSnapshot, iter_deltas
from ..tools.web_search import WEB_SEARCH_TOOL, SearchBackend, ToolSpec, clamp_num_results
from .tool_calls import AccumulatedCalls, ReadyToolCall, ToolCallAccumulator
from .types import (
    AgentAttemptState,
    AgentEvent,
    AgentResult,
    AgentTask,
    AttemptMetadata,
    Message,
    ToolResult,
    UsageTotals,
)

__all__ = ["AgentLoopController"]

LOGGER = logging.getLogger(__name__)

SKIPPED_BUDGET_RESULT = (
    '{"error": "Search budget exhausted; this search was not run. '
    'Answer with the results already gathered."}'
)
SKIPPED_UNKNOWN_TOOL_RESULT = '{"error": "Unknown tool; only webSearch is available."}'
MISSING_QUERY_RESULT = '{"error": "webSearch requires a non-empty query."}'


@dataclass(slots=True)
class _TurnOutput:
    """Everything one model call produced."""

    content_parts: list[str] = field(default_factory=list)
    accumulator: ToolCallAccumulator = field(default_factory=ToolCallAccumulator)
    usage: UsageTotals | None = None

    @property
    def content(self) -> str:
        return "".join(self.content_parts)


class AgentLoopController:
    """Drives the iteration loop for one ``(model, provider)`` route.

    Example:
        >>> controller = AgentLoopController(client, PROVIDERS["deepinfra"],
        ...     model="openai/gpt-oss-20b", search=WebSearchTool(api_key))
        >>> async for event in controller.stream(task):
        ...     print(event.to_dict())
    """

    def __init__(
        self,
        client: ModelTransport,
        adapter: ProviderAdapter,
        *,
        model: str,
        search: SearchBackend,
        prompts: PromptConfig = DEFAULT_PROMPTS,
        tool: ToolSpec = WEB_SEARCH_TOOL,
    ) -> None:
        self._client = client
        self._adapter = adapter
        self._model = model
        self._search = search
        self._prompts = prompts
        self._tool = tool

    @property
    def model(self) -> str:
        return self._model

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    def new_state(self, task: AgentTask) -> AgentAttemptState:
        """Fresh attempt state seeded with the system prompt and the task messages."""

        options = task.options
        state = AgentAttemptState(
            max_iterations=options.resolved_max_iterations,
            max_tool_calls=options.resolved_max_tool_calls,
        )
        state.append(
            build_system_prompt(
                options.resolved_reasoning_level,
                max_tool_calls=state.max_tool_calls,
                max_iterations=state.max_iterations,
                config=self._prompts,
            )
        )
        state.transcript.extend(task.messages)
        return state

    async def stream(self, task: AgentTask) -> AsyncIterator[AgentEvent]:
        """Yield content events as they arrive, then one metadata event.

        Raises:
            ProviderError: The provider transport failed.
            SearchAPIError: A requested search failed.
            EmptyCompletionError: A turn had neither content nor tool calls.
            IterationBudgetExceeded: No final answer within ``max_iterations``.
        """

        state = self.new_state(task)
        options = task.options
        LOGGER.debug(
            "Starting attempt on %s/%s (iterations=%d, tool calls=%d, reasoning=%s)",
            self._adapter.name,
            self._model,
            state.max_iterations,
            state.max_tool_calls,
            options.resolved_reasoning_level,
        )

        while state.iteration < state.max_iterations:
            state.iteration += 1
            offer_tools = state.should_offer_tools
            if not offer_tools:
                state.append(
                    build_forced_final_message(
                        state.tool_budget_remaining,
                        used=state.tool_calls_used,
                        role=self._adapter.forced_final_role,
                    )
                )
            payload = self._adapter.build_payload(
                model=self._model,
                messages=state.transcript,
                tools=[self._tool.as_openai_tool()] if offer_tools else None,
                max_tokens=options.resolved_max_tokens,
                temperature=options.resolved_temperature,
            )

            turn = _TurnOutput()
            async with aclosing(self._client.stream_chat(payload)) as chunks:
                async with aclosing(iter_deltas(chunks, self._adapter)) as deltas:
                    async for delta in deltas:
                        if isinstance(delta, ContentDelta):
                            turn.content_parts.append(delta.text)
                            yield AgentEvent.content(delta.text)
                        elif isinstance(delta, ToolCallFragment):
                            turn.accumulator.add(delta)
                        elif isinstance(delta, ReasoningDelta):
                            state.reasoning_parts.append(delta.text)
                        elif isinstance(delta, UsageSnapshot):
                            # Some hosts repeat a running total; the last one wins.
                            turn.usage = delta.usage

            if turn.usage is not None:
                state.usage.add(turn.usage)
            calls = turn.accumulator.complete()
            content = turn.content

            LOGGER.debug(
                "Iteration %d/%d: %d content char(s), %d tool call(s) requested",
                state.iteration,
                state.max_iterations,
                len(content),
                calls.requested,
            )

            if calls:
                await self._run_tool_calls(state, content, calls)
                continue
            if content.strip():
                yield AgentEvent.metadata(self._metadata(state, content))
                return
            raise EmptyCompletionError()

        raise IterationBudgetExceeded(state.max_iterations)

    async def run(self, task: AgentTask) -> AgentResult:
        """Drain :meth:`stream` and return the normalized answer."""

        metadata: AttemptMetadata | None = None
        async for event in self.stream(task):
            if isinstance(event.data, AttemptMetadata):
                metadata = event.data
        if metadata is None:  # pragma: no cover - stream always ends with metadata or raises
            raise RuntimeError("Attempt finished without a metadata event")
        return AgentResult(content=metadata.content, metadata=metadata)

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------
    async def _run_tool_calls(
        self,
        state: AgentAttemptState,
        content: str,
        calls: AccumulatedCalls,
    ) -> None:
        if calls.ready or content:
            state.append(
                Message.assistant(content, tool_calls=[ready.call.to_chat_param() for ready in calls.ready])
            )
        for ready in calls.ready:
            state.append(await self._run_tool_call(state, ready))

    async def _run_tool_call(self, state: AgentAttemptState, ready: ReadyToolCall) -> Message:
        if ready.name != self._tool.name:
            LOGGER.warning("Skipping call %s to unknown tool %r", ready.id, ready.name)
            return Message.tool(SKIPPED_UNKNOWN_TOOL_RESULT, tool_call_id=ready.id, name=ready.name)
        if state.tool_calls_used >= state.max_tool_calls:
            LOGGER.info(
                "Skipping tool call %s: budget of %d search(es) used",
                ready.id,
                state.max_tool_calls,
            )
            return Message.tool(SKIPPED_BUDGET_RESULT, tool_call_id=ready.id, name=ready.name)

        query = ready.arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            LOGGER.warning("Skipping tool call %s without a query: %s", ready.id, ready.arguments)
            return Message.tool(MISSING_QUERY_RESULT, tool_call_id=ready.id, name=ready.name)
        query = query.strip()
        num_results = clamp_num_results(ready.arguments.get("numResults"))

        state.tool_calls_used += 1
        LOGGER.debug(
            "Running search %d/%d: %r (%d result(s))",
            state.tool_calls_used,
            state.max_tool_calls,
            query,
            num_results,
        )
        response = await self._search.execute(query, num_results)
        state.sources.extend(response.sources())
        state.queries.append(query)
        return ToolResult(ready.id, response.to_payload(), name=ready.name).to_message()

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    def _metadata(self, state: AgentAttemptState, raw_content: str) -> AttemptMetadata:
        final = self._adapter.finalize_content(extract_final_answer(raw_content))
        reasoning = state.reasoning or extract_analysis(raw_content)
        return AttemptMetadata(
            usage=state.usage.copy(),
            tool_calls=state.tool_calls_used,
            model=self._model,
            provider=self._adapter.name,
            sources=tuple(state.sources),
            queries=tuple(state.queries),
            reasoning=reasoning,
            iterations=state.iteration,
            content=final,
        )
