"""Shared test helpers: stream builders and fake transports.

Import from here instead of duplicating these stubs in individual test files::

    from tests.helpers import FakeTransport, sse, content_record
"""

from __future__ import annotations

import copy
import json
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from freire.ai.orchestration.types import AgentEvent, AgentOptions, AgentTask, Message
from freire.ai.tools.web_search import SearchResponse, SearchResult


# -----------------------------------------------------------------------------
# Stream records
# -----------------------------------------------------------------------------


def content_record(text: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


def reasoning_record(text: str, field: str = "reasoning_content") -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {field: text}}]}


def tool_call_record(
    index: int = 0,
    *,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict[str, Any]:
    function: dict[str, Any] = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    call: dict[str, Any] = {"index": index, "function": function}
    if call_id is not None:
        call["id"] = call_id
        call["type"] = "function"
    return {"choices": [{"index": 0, "delta": {"tool_calls": [call]}}]}


def usage_record(prompt: int, completion: int, total: int | None = None) -> dict[str, Any]:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion if total is None else total,
        },
    }


def sse(*records: Mapping[str, Any], done: bool = True) -> bytes:
    """Encode records as ``data:`` lines, optionally closed by ``[DONE]``."""

    lines = [f"data: {json.dumps(record)}\n\n" for record in records]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def split_at(data: bytes, positions: Iterable[int]) -> list[bytes]:
    """Split ``data`` at the given byte offsets."""

    chunks: list[bytes] = []
    previous = 0
    for position in sorted(set(positions)):
        chunks.append(data[previous:position])
        previous = position
    chunks.append(data[previous:])
    return chunks


def search_call_turn(
    *calls: tuple[str, str],
    usage: tuple[int, int] = (10, 5),
) -> bytes:
    """One model turn requesting web searches; ``calls`` are ``(id, query)`` pairs."""

    records: list[dict[str, Any]] = []
    for index, (call_id, query) in enumerate(calls):
        arguments = json.dumps({"query": query, "numResults": 3})
        records.append(tool_call_record(index, call_id=call_id, name="webSearch", arguments=""))
        records.append(tool_call_record(index, arguments=arguments[:7]))
        records.append(tool_call_record(index, arguments=arguments[7:]))
    records.append(usage_record(*usage))
    return sse(*records)


def answer_turn(text: str, usage: tuple[int, int] = (20, 8)) -> bytes:
    return sse(content_record(text), usage_record(*usage))


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------


class FakeTransport:
    """Scripted model transport; each call consumes the next scripted turn.

    A turn is raw bytes, a list of byte chunks, or an exception raised when
    the turn is requested.
    """

    def __init__(self, turns: Sequence[bytes | Sequence[bytes] | BaseException]) -> None:
        self._turns = list(turns)
        self.payloads: list[dict[str, Any]] = []
        self.closed_streams = 0

    @property
    def calls(self) -> int:
        return len(self.payloads)

    async def stream_chat(self, payload: Mapping[str, Any]) -> AsyncIterator[bytes]:
        self.payloads.append(copy.deepcopy(dict(payload)))
        if not self._turns:
            raise AssertionError("FakeTransport ran out of scripted turns")
        turn = self._turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        chunks = [turn] if isinstance(turn, bytes) else list(turn)
        try:
            for chunk in chunks:
                yield chunk
        finally:
            self.closed_streams += 1


class FakeSearch:
    """Search backend returning ``num_results`` synthetic hits per query."""

    def __init__(self, *, error: BaseException | None = None, available: int = 10) -> None:
        self.calls: list[tuple[str, int]] = []
        self._error = error
        self._available = available

    async def execute(self, query: str, num_results: int) -> SearchResponse:
        self.calls.append((query, num_results))
        if self._error is not None:
            raise self._error
        results = tuple(
            SearchResult(
                title=f"{query} result {i}",
                snippet=f"snippet {i}",
                link=f"https://example.com/{i}",
            )
            for i in range(min(num_results, self._available))
        )
        return SearchResponse(organic=results)


def make_task(text: str = "What happened today?", **options: Any) -> AgentTask:
    return AgentTask(messages=(Message.user(text),), options=AgentOptions(**options))


async def collect(events: AsyncIterator[AgentEvent]) -> list[AgentEvent]:
    return [event async for event in events]
