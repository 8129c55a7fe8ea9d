"""Incremental decoder for provider event streams.

Providers answer a streamed chat completion with newline-delimited event
records::

    data: {"choices": [{"delta": {"content": "Hel"}}]}
    data: {"choices": [{"delta": {"content": "lo"}}]}
    data: [DONE]

Reads from the transport can end anywhere, including in the middle of a
record or a multi-byte character, so the decoder keeps the undecoded tail and
prefixes it to the next read. Turning a JSON record into typed deltas is the
provider adapter's job; the decoder only handles framing.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Union

from .errors import StreamParseError
from .orchestration.types import UsageTotals

if TYPE_CHECKING:
    from .providers import ProviderAdapter

__all__ = [
    "ContentDelta",
    "ReasoningDelta",
    "ToolCallFragment",
    "UsageSnapshot",
    "StreamTerminated",
    "StreamDelta",
    "StreamDecoder",
    "iter_deltas",
    "DATA_PREFIX",
    "DONE_SENTINEL",
]

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
_RECORD_PREVIEW_CHARS = 200


# -----------------------------------------------------------------------------
# Delta types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ContentDelta:
    """A fragment of user-visible text."""

    text: str


@dataclass(slots=True, frozen=True)
class ReasoningDelta:
    """A fragment of the provider's separate reasoning field."""

    text: str


@dataclass(slots=True, frozen=True)
class ToolCallFragment:
    """A piece of one tool call, keyed by its position in the turn."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments_fragment: str | None = None


@dataclass(slots=True, frozen=True)
class UsageSnapshot:
    """Token usage reported by the provider, already normalized."""

    usage: UsageTotals


@dataclass(slots=True, frozen=True)
class StreamTerminated:
    """The provider sent the terminating sentinel record."""


StreamDelta = Union[ContentDelta, ReasoningDelta, ToolCallFragment, UsageSnapshot, StreamTerminated]


# -----------------------------------------------------------------------------
# Decoder
# -----------------------------------------------------------------------------


class StreamDecoder:
    """Turns raw transport chunks into typed deltas.

    Example:
        >>> decoder = StreamDecoder(adapter)
        >>> deltas = decoder.feed(b'data: {"choices": [{"delta": {"content": "hi"}}]}\\n')
        >>> deltas += decoder.finish()
    """

    def __init__(self, adapter: ProviderAdapter, *, encoding: str = "utf-8") -> None:
        self._adapter = adapter
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._terminated = False
        self.skipped_records = 0

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def pending(self) -> str:
        """Undecoded trailing partial line carried into the next read."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[StreamDelta]:
        """Decode one transport read and return the complete deltas it closed."""

        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        deltas: list[StreamDelta] = []
        for line in lines:
            deltas.extend(self._decode_line(line))
        return deltas

    def finish(self) -> list[StreamDelta]:
        """Flush the decoder at end of transport."""

        tail = self._decoder.decode(b"", final=True)
        remainder = self._buffer + tail
        self._buffer = ""
        if not remainder.strip():
            return []
        return self._decode_line(remainder)

    def _decode_line(self, line: str) -> list[StreamDelta]:
        line = line.rstrip("\r")
        if self._terminated or not line.startswith(DATA_PREFIX):
            # Blank separators, SSE comments and event names carry nothing.
            return []
        data = line[len(DATA_PREFIX):].strip()
        if not data:
            return []
        if data == DONE_SENTINEL:
            self._terminated = True
            return [StreamTerminated()]
        try:
            record = self._parse_record(data)
            return self._adapter.deltas_from_record(record)
        except StreamParseError as exc:
            self.skipped_records += 1
            LOGGER.warning(
                "Skipping malformed %s stream record: %s (%s)",
                self._adapter.name,
                exc,
                exc.record[:_RECORD_PREVIEW_CHARS],
            )
            return []

    @staticmethod
    def _parse_record(data: str) -> Mapping[str, Any]:
        try:
            record = json.loads(data)
        except json.JSONDecodeError as exc:
            raise StreamParseError(f"Invalid JSON in event record: {exc}", record=data) from exc
        if not isinstance(record, dict):
            raise StreamParseError(
                f"Event record must be a JSON object, got {type(record).__name__}",
                record=data,
            )
        error = record.get("error")
        if error and not record.get("choices"):
            raise StreamParseError(f"Provider reported an in-stream error: {error}", record=data)
        return record


async def iter_deltas(
    chunks: AsyncIterable[bytes],
    adapter: ProviderAdapter,
) -> AsyncIterator[StreamDelta]:
    """Decode an async byte stream, yielding deltas as soon as they are complete."""

    decoder = StreamDecoder(adapter)
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
    for delta in decoder.finish():
        yield delta
    if decoder.skipped_records:
        LOGGER.debug("Stream finished with %d skipped record(s)", decoder.skipped_records)
