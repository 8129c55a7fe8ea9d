"""Reassembly of streamed tool calls.

Providers stream a tool call as many small fragments keyed by the call's
index within the turn: the first fragment usually carries the id and name,
later ones carry slices of the JSON argument string. Readiness is decided by
the end of the turn, never by the buffer happening to parse as JSON midway.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..errors import ToolArgumentError
from ..stream_decoder import ToolCallFragment
from .types import ToolCall

__all__ = [
    "ReadyToolCall",
    "AccumulatedCalls",
    "ToolCallAccumulator",
    "parse_tool_arguments",
]

LOGGER = logging.getLogger(__name__)


def parse_tool_arguments(call: ToolCall) -> dict[str, Any]:
    """Parse a completed call's argument buffer.

    An empty buffer counts as ``{}``.

    Raises:
        ToolArgumentError: If the buffer is not a JSON object.
    """

    buffer = call.arguments_buffer
    if not buffer.strip():
        return {}
    try:
        parsed = json.loads(buffer)
    except json.JSONDecodeError as exc:
        raise ToolArgumentError(
            f"Invalid JSON in tool arguments: {exc}",
            call_id=call.id,
            name=call.name,
            arguments=buffer,
        ) from exc
    if not isinstance(parsed, dict):
        raise ToolArgumentError(
            f"Arguments must be a JSON object, got {type(parsed).__name__}",
            call_id=call.id,
            name=call.name,
            arguments=buffer,
        )
    return parsed


@dataclass(slots=True, frozen=True)
class ReadyToolCall:
    """A complete call whose arguments parsed successfully."""

    call: ToolCall
    arguments: dict[str, Any]

    @property
    def id(self) -> str:
        return self.call.id

    @property
    def name(self) -> str:
        return self.call.name


@dataclass(slots=True, frozen=True)
class AccumulatedCalls:
    """End-of-turn result: ready calls plus the ones that were dropped."""

    ready: tuple[ReadyToolCall, ...] = ()
    errors: tuple[ToolArgumentError, ...] = ()

    @property
    def requested(self) -> int:
        return len(self.ready) + len(self.errors)

    def __bool__(self) -> bool:
        return self.requested > 0


@dataclass(slots=True)
class ToolCallAccumulator:
    """Maintains one growing :class:`ToolCall` per fragment index."""

    _calls: dict[int, ToolCall] = field(default_factory=dict)
    _arguments: dict[int, list[str]] = field(default_factory=dict)
    _completed: bool = False

    def __len__(self) -> int:
        return len(self._calls)

    def add(self, fragment: ToolCallFragment) -> None:
        if self._completed:
            raise RuntimeError("Cannot add fragments after the turn completed")
        call = self._calls.get(fragment.index)
        if call is None:
            call = ToolCall(id=fragment.id or "", name=fragment.name or "", index=fragment.index)
            self._calls[fragment.index] = call
            self._arguments[fragment.index] = []
        else:
            if fragment.id and not call.id:
                call.id = fragment.id
            if fragment.name and fragment.name != call.name:
                # Some hosts stream the function name in pieces too.
                call.name = call.name + fragment.name if call.name else fragment.name
        if fragment.arguments_fragment:
            self._arguments[fragment.index].append(fragment.arguments_fragment)

    def extend(self, fragments: Iterable[ToolCallFragment]) -> None:
        for fragment in fragments:
            self.add(fragment)

    def calls(self) -> list[ToolCall]:
        """Snapshot of the records so far, ordered by index."""
        result: list[ToolCall] = []
        for index in sorted(self._calls):
            call = self._calls[index]
            call.arguments_buffer = "".join(self._arguments[index])
            result.append(call)
        return result

    def raw_calls(self) -> list[dict[str, Any]]:
        """Assistant ``tool_calls`` payload for every accumulated record."""
        return [call.to_chat_param() for call in self.calls()]

    def complete(self) -> AccumulatedCalls:
        """Close the turn and parse every accumulated argument buffer.

        A call whose arguments do not parse is reported in ``errors`` and
        skipped; the remaining calls are still returned as ready.
        """

        self._completed = True
        ready: list[ReadyToolCall] = []
        errors: list[ToolArgumentError] = []
        for call in self.calls():
            if not call.id:
                call.id = f"call_{call.index}_{uuid.uuid4().hex[:8]}"
            try:
                arguments = parse_tool_arguments(call)
            except ToolArgumentError as exc:
                LOGGER.warning("Dropping tool call %s (%s): %s", call.id, call.name or "?", exc)
                errors.append(exc)
                continue
            ready.append(ReadyToolCall(call=call, arguments=arguments))
        return AccumulatedCalls(ready=tuple(ready), errors=tuple(errors))
