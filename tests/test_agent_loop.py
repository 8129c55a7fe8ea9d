"""Tests for orchestration/agent_loop.py."""

from __future__ import annotations

import json
from typing import Any, Mapping

import pytest

from freire.ai.errors import EmptyCompletionError, IterationBudgetExceeded, ProviderError, SearchAPIError
from freire.ai.orchestration.agent_loop import (
    MISSING_QUERY_RESULT,
    SKIPPED_BUDGET_RESULT,
    SKIPPED_UNKNOWN_TOOL_RESULT,
    AgentLoopController,
)
from freire.ai.orchestration.types import AttemptMetadata
from freire.ai.prompts import FORCED_FINAL_DIRECTIVE, NO_SEARCH_DIRECTIVE, PromptConfig
from freire.ai.providers import get_adapter
from tests.helpers import (
    FakeSearch,
    FakeTransport,
    answer_turn,
    collect,
    content_record,
    make_task,
    reasoning_record,
    search_call_turn,
    sse,
    tool_call_record,
    usage_record,
)

DIRECTIVES = {FORCED_FINAL_DIRECTIVE.format(used=n) for n in range(1, 20)} | {NO_SEARCH_DIRECTIVE}


def _controller(
    transport: FakeTransport,
    search: FakeSearch | None = None,
    provider: str = "deepinfra",
    **kwargs: Any,
) -> AgentLoopController:
    return AgentLoopController(
        transport,
        get_adapter(provider),
        model="openai/gpt-oss-20b",
        search=search or FakeSearch(),
        **kwargs,
    )


def _directives(payload: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    return [m for m in payload["messages"] if m["content"] in DIRECTIVES]


def _tool_messages(payload: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    return [m for m in payload["messages"] if m["role"] == "tool"]


def _metadata(events) -> AttemptMetadata:
    assert events[-1].type == "metadata"
    assert all(event.type == "content" for event in events[:-1])
    return events[-1].data


# -----------------------------------------------------------------------------
# Tests: completion
# -----------------------------------------------------------------------------


class TestCompletion:
    """Turns that end the attempt."""

    @pytest.mark.asyncio
    async def test_direct_answer(self) -> None:
        """Test a content-only turn completes with one metadata event."""
        transport = FakeTransport([sse(content_record("Hel"), content_record("lo"), usage_record(20, 8))])
        events = await collect(_controller(transport).stream(make_task()))

        assert [e.data for e in events[:-1]] == ["Hel", "lo"]
        metadata = _metadata(events)
        assert metadata.content == "Hello"
        assert metadata.tool_calls == 0
        assert metadata.usage.total_tokens == 28
        assert metadata.provider == "deepinfra"
        assert metadata.model == "openai/gpt-oss-20b"
        assert metadata.iterations == 1
        assert metadata.to_dict()["toolCalls"] == 0
        assert "sources" not in metadata.to_dict()

    @pytest.mark.asyncio
    async def test_metadata_wire_form(self) -> None:
        """Test the metadata event serializes usage with camelCase keys."""
        transport = FakeTransport([answer_turn("Hello")])
        events = await collect(_controller(transport).stream(make_task()))

        payload = events[-1].to_dict()
        assert payload["type"] == "metadata"
        data = payload["data"]
        assert data["usage"] == {"promptTokens": 20, "completionTokens": 8, "totalTokens": 28}
        assert data["toolCalls"] == 0
        assert data["content"] == "Hello"
        assert data["provider"] == "deepinfra"
        assert data["model"] == "openai/gpt-oss-20b"

    @pytest.mark.asyncio
    async def test_request_defaults(self) -> None:
        """Test defaults, the offered tool and the prepended system prompt."""
        transport = FakeTransport([answer_turn("ok")])
        await collect(_controller(transport).stream(make_task("hello")))

        payload = transport.payloads[0]
        assert payload["max_tokens"] == 2000
        assert payload["temperature"] == 0.7
        assert payload["tools"][0]["function"]["name"] == "webSearch"
        assert payload["messages"][0]["role"] == "system"
        assert "1 search available" in payload["messages"][0]["content"]
        assert payload["messages"][1] == {"role": "user", "content": "hello"}
        assert _directives(payload) == []

    @pytest.mark.asyncio
    async def test_prompt_config_per_reasoning_level(self) -> None:
        """Test the low-reasoning template and plural suffix."""
        prompts = PromptConfig(templates={"high": "deep {max_tool_calls}", "low": "quick {max_tool_calls} search{plural}"})
        transport = FakeTransport([answer_turn("ok")])
        task = make_task(reasoning_level="low", max_tool_calls=3)
        await collect(_controller(transport, prompts=prompts).stream(task))
        assert transport.payloads[0]["messages"][0]["content"] == "quick 3 searches"

    @pytest.mark.asyncio
    async def test_harmony_answer_is_normalized(self) -> None:
        """Test raw fragments stream while metadata carries the final channel."""
        raw = (
            "<|channel|>analysis<|message|>thinking<|end|>"
            "<|start|>assistant<|channel|>final<|message|>42<|end|>"
        )
        transport = FakeTransport([answer_turn(raw)])
        controller = _controller(transport, provider="gmicloud")
        events = await collect(controller.stream(make_task()))

        assert events[0].data == raw
        metadata = _metadata(events)
        assert metadata.content == "42"
        assert metadata.reasoning == "thinking"

    @pytest.mark.asyncio
    async def test_reasoning_deltas_collected(self) -> None:
        transport = FakeTransport(
            [sse(reasoning_record("step one. "), reasoning_record("step two."), content_record("done"))]
        )
        events = await collect(_controller(transport).stream(make_task()))
        assert _metadata(events).reasoning == "step one. step two."
        assert [e.data for e in events[:-1]] == ["done"]

    @pytest.mark.asyncio
    async def test_run_returns_result(self) -> None:
        transport = FakeTransport([answer_turn("<|channel|>final<|message|>Paris<|end|>")])
        result = await _controller(transport).run(make_task())
        assert result.content == "Paris"
        assert result.metadata.content == "Paris"

    @pytest.mark.asyncio
    async def test_empty_turn_fails(self) -> None:
        """Test a turn with neither content nor tool calls."""
        transport = FakeTransport([sse(usage_record(5, 0))])
        with pytest.raises(EmptyCompletionError, match="without providing content"):
            await collect(_controller(transport).stream(make_task()))
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_whitespace_turn_fails(self) -> None:
        transport = FakeTransport([sse(content_record("  \n"))])
        with pytest.raises(EmptyCompletionError):
            await collect(_controller(transport).stream(make_task()))

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self) -> None:
        transport = FakeTransport([ProviderError("boom", provider="deepinfra", status_code=500)])
        with pytest.raises(ProviderError):
            await collect(_controller(transport).stream(make_task()))


# -----------------------------------------------------------------------------
# Tests: tool execution and budget
# -----------------------------------------------------------------------------


class TestToolBudget:
    """Tool offering, execution and the forced-final directive."""

    @pytest.mark.asyncio
    async def test_search_then_answer(self) -> None:
        """Test one search feeds the transcript and the metadata."""
        search = FakeSearch()
        transport = FakeTransport([search_call_turn(("call_1", "imf forecast")), answer_turn("Answer")])
        events = await collect(_controller(transport, search).stream(make_task()))

        assert search.calls == [("imf forecast", 3)]
        metadata = _metadata(events)
        assert metadata.tool_calls == 1
        assert metadata.queries == ("imf forecast",)
        assert len(metadata.sources) == 3
        assert metadata.usage.prompt_tokens == 30
        assert metadata.usage.completion_tokens == 13
        assert metadata.iterations == 2
        data = metadata.to_dict()
        assert data["searchMetadata"]["query"] == "imf forecast"
        assert data["sources"][0]["url"] == "https://example.com/0"

        second = transport.payloads[1]
        assert "tools" not in second
        assert "tool_choice" not in second
        assistant = [m for m in second["messages"] if m["role"] == "assistant"]
        assert assistant[0]["tool_calls"][0]["id"] == "call_1"
        assert json.loads(assistant[0]["tool_calls"][0]["function"]["arguments"]) == {
            "query": "imf forecast",
            "numResults": 3,
        }
        tool_message = _tool_messages(second)[0]
        assert tool_message["tool_call_id"] == "call_1"
        assert len(json.loads(tool_message["content"])["organic"]) == 3

    @pytest.mark.asyncio
    async def test_two_calls_with_budget_one(self) -> None:
        """Test one turn requesting two searches runs exactly one."""
        search = FakeSearch()
        transport = FakeTransport(
            [search_call_turn(("call_a", "first"), ("call_b", "second")), answer_turn("done")]
        )
        events = await collect(_controller(transport, search).stream(make_task(max_tool_calls=1)))

        assert search.calls == [("first", 3)]
        assert _metadata(events).tool_calls == 1
        tool_messages = _tool_messages(transport.payloads[1])
        assert [m["tool_call_id"] for m in tool_messages] == ["call_a", "call_b"]
        assert tool_messages[1]["content"] == SKIPPED_BUDGET_RESULT

    @pytest.mark.asyncio
    async def test_budget_never_exceeded(self) -> None:
        """Test repeated over-asking never runs more than max_tool_calls searches."""
        search = FakeSearch()
        transport = FakeTransport(
            [
                search_call_turn(("a", "q1"), ("b", "q2"), ("c", "q3")),
                search_call_turn(("d", "q4"), ("e", "q5")),
                answer_turn("done"),
            ]
        )
        events = await collect(_controller(transport, search).stream(make_task(max_tool_calls=2)))

        assert [query for query, _ in search.calls] == ["q1", "q2"]
        assert _metadata(events).tool_calls == 2

    @pytest.mark.asyncio
    async def test_one_directive_per_forced_iteration(self) -> None:
        """Test each forced iteration adds exactly one directive before its call."""
        transport = FakeTransport(
            [
                search_call_turn(("a", "q1")),
                search_call_turn(("b", "q2")),
                search_call_turn(("c", "q3")),
                answer_turn("done"),
            ]
        )
        await collect(_controller(transport).stream(make_task(max_tool_calls=1)))

        assert [len(_directives(p)) for p in transport.payloads] == [0, 1, 2, 3]
        # The newest directive sits right after the previous turn's tool results.
        for payload in transport.payloads[1:]:
            assert payload["messages"][-1]["content"] in DIRECTIVES

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("provider", "role"), [("gmicloud", "user"), ("deepinfra", "system"), ("cerebras", "system")])
    async def test_directive_role_per_provider(self, provider: str, role: str) -> None:
        transport = FakeTransport([search_call_turn(("a", "q")), answer_turn("done")])
        await collect(_controller(transport, provider=provider).stream(make_task()))
        directives = _directives(transport.payloads[1])
        assert [d["role"] for d in directives] == [role]
        assert directives[0]["content"] == FORCED_FINAL_DIRECTIVE.format(used=1)

    @pytest.mark.asyncio
    async def test_zero_budget_forces_from_the_start(self) -> None:
        """Test max_tool_calls=0 withholds tools on the first call."""
        transport = FakeTransport([answer_turn("from memory")])
        await collect(_controller(transport).stream(make_task(max_tool_calls=0)))
        payload = transport.payloads[0]
        assert "tools" not in payload
        assert [d["content"] for d in _directives(payload)] == [NO_SEARCH_DIRECTIVE]

    @pytest.mark.asyncio
    async def test_unknown_tool_skipped(self) -> None:
        """Test calls to other tools are skipped without using budget."""
        search = FakeSearch()
        unknown = sse(
            tool_call_record(0, call_id="x", name="readFile", arguments='{"path": "/etc"}'),
            usage_record(1, 1),
        )
        transport = FakeTransport([unknown, answer_turn("done")])
        await collect(_controller(transport, search).stream(make_task()))

        assert search.calls == []
        second = transport.payloads[1]
        assert "tools" in second
        assert _tool_messages(second)[0]["content"] == SKIPPED_UNKNOWN_TOOL_RESULT

    @pytest.mark.asyncio
    async def test_invalid_arguments_dropped(self) -> None:
        """Test an unparseable call is not executed and the loop goes on."""
        search = FakeSearch()
        broken = sse(tool_call_record(0, call_id="bad", name="webSearch", arguments='{"query": "unfinished'))
        transport = FakeTransport([broken, answer_turn("done")])
        events = await collect(_controller(transport, search).stream(make_task()))

        assert search.calls == []
        assert transport.calls == 2
        assert _tool_messages(transport.payloads[1]) == []
        assert _metadata(events).content == "done"

    @pytest.mark.asyncio
    async def test_missing_query_does_not_use_budget(self) -> None:
        search = FakeSearch()
        empty = sse(tool_call_record(0, call_id="e", name="webSearch", arguments="{}"))
        transport = FakeTransport([empty, search_call_turn(("s", "real")), answer_turn("done")])
        events = await collect(_controller(transport, search).stream(make_task()))

        assert _tool_messages(transport.payloads[1])[0]["content"] == MISSING_QUERY_RESULT
        assert "tools" in transport.payloads[1]
        assert search.calls == [("real", 3)]
        assert _metadata(events).tool_calls == 1

    @pytest.mark.asyncio
    async def test_num_results_defaults_and_clamps(self) -> None:
        search = FakeSearch()
        turn = sse(
            tool_call_record(0, call_id="a", name="webSearch", arguments='{"query": "x"}'),
            tool_call_record(1, call_id="b", name="webSearch", arguments='{"query": "y", "numResults": 50}'),
        )
        transport = FakeTransport([turn, answer_turn("done")])
        await collect(_controller(transport, search).stream(make_task(max_tool_calls=2)))
        assert search.calls == [("x", 10), ("y", 10)]

    @pytest.mark.asyncio
    async def test_search_failure_ends_attempt(self) -> None:
        search = FakeSearch(error=SearchAPIError("Search API error: 500", status_code=500))
        transport = FakeTransport([search_call_turn(("a", "q")), answer_turn("never")])
        with pytest.raises(SearchAPIError):
            await collect(_controller(transport, search).stream(make_task()))
        assert transport.calls == 1


# -----------------------------------------------------------------------------
# Tests: iteration budget, usage and cancellation
# -----------------------------------------------------------------------------


class TestIterationBudget:
    @pytest.mark.asyncio
    async def test_never_answering_hits_the_cap(self) -> None:
        """Test a model that keeps asking for tools stops after max_iterations."""
        transport = FakeTransport([search_call_turn((f"c{i}", f"q{i}")) for i in range(4)])
        with pytest.raises(IterationBudgetExceeded) as excinfo:
            await collect(_controller(transport).stream(make_task(max_iterations=4)))
        assert transport.calls == 4
        assert excinfo.value.max_iterations == 4

    @pytest.mark.asyncio
    async def test_content_streams_before_failure(self) -> None:
        """Test fragments from tool turns reach the caller before the error."""
        turns = [
            sse(content_record("Searching..."), tool_call_record(0, call_id=f"c{i}", name="webSearch", arguments='{"query": "q"}'))
            for i in range(2)
        ]
        transport = FakeTransport(turns)
        received: list[str] = []
        with pytest.raises(IterationBudgetExceeded):
            async for event in _controller(transport).stream(make_task(max_iterations=2)):
                received.append(event.data)
        assert received == ["Searching...", "Searching..."]


class TestUsage:
    @pytest.mark.asyncio
    async def test_last_snapshot_per_turn(self) -> None:
        """Test running totals within one turn are counted once."""
        turn = sse(usage_record(10, 1), content_record("hi"), usage_record(10, 4))
        transport = FakeTransport([turn])
        events = await collect(_controller(transport).stream(make_task()))
        assert _metadata(events).usage.completion_tokens == 4

    @pytest.mark.asyncio
    async def test_fresh_state_per_stream(self) -> None:
        """Test two runs on one controller do not share usage or budget."""
        search = FakeSearch()
        transport = FakeTransport(
            [search_call_turn(("a", "q")), answer_turn("one"), search_call_turn(("b", "q")), answer_turn("two")]
        )
        controller = _controller(transport, search)
        first = await controller.run(make_task())
        second = await controller.run(make_task())
        assert first.metadata.usage.total_tokens == second.metadata.usage.total_tokens
        assert second.metadata.tool_calls == 1
        assert len(search.calls) == 2


class TestCancellation:
    @pytest.mark.asyncio
    async def test_closing_stops_provider_calls(self) -> None:
        """Test no further provider calls happen once the caller detaches."""
        first_turn = [
            sse(content_record("partial"), done=False),
            sse(tool_call_record(0, call_id="a", name="webSearch", arguments='{"query": "q"}')),
        ]
        search = FakeSearch()
        transport = FakeTransport([first_turn, answer_turn("unused")])
        stream = _controller(transport, search).stream(make_task())

        event = await stream.__anext__()
        assert event.data == "partial"
        await stream.aclose()

        assert transport.calls == 1
        assert transport.closed_streams == 1
        assert search.calls == []
