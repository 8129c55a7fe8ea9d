"""Provider Fallback Chain: retries a task across an ordered list of routes."""

from __future__ import annotations

import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Sequence

from ...services.usage_tracking import UsageRecord, UsageRecorder
from ..client import ModelTransport
from ..errors import AllProvidersFailedError, AttemptError, ProviderFailure
from ..prompts import DEFAULT_PROMPTS, PromptConfig
from ..providers import ProviderAdapter
from ..tools.web_search import SearchBackend
from .agent_loop import AgentLoopController
from .types import AgentEvent, AgentOptions, AgentResult, AgentTask, AttemptMetadata

__all__ = ["ProviderRoute", "ProviderFallbackChain"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ProviderRoute:
    """One ``(model, provider)`` pair plus the transport that reaches it."""

    model: str
    adapter: ProviderAdapter
    client: ModelTransport

    @property
    def provider(self) -> str:
        return self.adapter.name

    def __str__(self) -> str:
        return f"{self.provider}/{self.model}"


class ProviderFallbackChain:
    """Attempts each route in order until one completes.

    Every attempt starts from a fresh state, so usage and tool budget never
    carry over. Content streamed by a failed attempt has already reached the
    caller and is not retracted. Options left unset on a task are filled from
    ``default_options``.
    """

    def __init__(
        self,
        routes: Sequence[ProviderRoute],
        *,
        search: SearchBackend,
        prompts: PromptConfig = DEFAULT_PROMPTS,
        recorder: UsageRecorder | None = None,
        clock: Callable[[], float] = time.perf_counter,
        default_options: AgentOptions | None = None,
    ) -> None:
        self._routes = tuple(routes)
        self._default_options = default_options
        self._search = search
        self._prompts = prompts
        self._recorder = recorder
        self._clock = clock

    @property
    def routes(self) -> tuple[ProviderRoute, ...]:
        return self._routes

    def controller_for(self, route: ProviderRoute) -> AgentLoopController:
        return AgentLoopController(
            route.client,
            route.adapter,
            model=route.model,
            search=self._search,
            prompts=self._prompts,
        )

    async def stream(self, task: AgentTask) -> AsyncIterator[AgentEvent]:
        """Stream the first successful attempt.

        Raises:
            AllProvidersFailedError: Every route failed, or none is configured.
        """

        if self._default_options is not None:
            task = task.with_default_options(self._default_options)
        failures: list[ProviderFailure] = []
        for position, route in enumerate(self._routes, start=1):
            LOGGER.debug("Attempt %d/%d via %s", position, len(self._routes), route)
            started = self._clock()
            try:
                async with aclosing(self.controller_for(route).stream(task)) as events:
                    async for event in events:
                        if isinstance(event.data, AttemptMetadata):
                            self._record_success(route, task, event.data, started)
                        yield event
                return
            except AttemptError as exc:
                LOGGER.warning("Provider %s failed: %s", route, exc)
                failures.append(ProviderFailure(model=route.model, provider=route.provider, error=exc))
                self._record_failure(route, task, exc, started)

        error = AllProvidersFailedError(failures)
        LOGGER.error("%s", error)
        raise error

    async def run(self, task: AgentTask) -> AgentResult:
        metadata: AttemptMetadata | None = None
        async for event in self.stream(task):
            if isinstance(event.data, AttemptMetadata):
                metadata = event.data
        if metadata is None:  # pragma: no cover - stream always ends with metadata or raises
            raise RuntimeError("Fallback chain finished without a metadata event")
        return AgentResult(content=metadata.content, metadata=metadata)

    # ------------------------------------------------------------------
    # Usage records
    # ------------------------------------------------------------------
    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._clock() - started) * 1000))

    def _record_success(
        self,
        route: ProviderRoute,
        task: AgentTask,
        metadata: AttemptMetadata,
        started: float,
    ) -> None:
        usage = metadata.usage
        self._emit(
            UsageRecord.for_success(
                model=route.model,
                provider=route.provider,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                reasoning_tokens=usage.reasoning_tokens,
                latency_ms=self._elapsed_ms(started),
                tool_calls=metadata.tool_calls,
                reasoning_level=task.options.resolved_reasoning_level,
            )
        )

    def _record_failure(
        self,
        route: ProviderRoute,
        task: AgentTask,
        error: AttemptError,
        started: float,
    ) -> None:
        self._emit(
            UsageRecord.for_failure(
                model=route.model,
                provider=route.provider,
                error_message=str(error) or type(error).__name__,
                latency_ms=self._elapsed_ms(started),
                reasoning_level=task.options.resolved_reasoning_level,
            )
        )

    def _emit(self, record: UsageRecord) -> None:
        if self._recorder is None:
            return
        try:
            self._recorder.record(record)
        except Exception:
            LOGGER.warning("Usage recorder failed for %s/%s", record.provider, record.model, exc_info=True)
