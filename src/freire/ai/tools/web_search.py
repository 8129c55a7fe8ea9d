"""Web search tool: the function definition offered to the model and its executor."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, cast

import httpx
from openai.types.chat import ChatCompletionToolParam

from ..errors import SearchAPIError
from ..orchestration.types import SearchSource

__all__ = [
    "DEFAULT_SEARCH_ENDPOINT",
    "MIN_RESULTS",
    "MAX_RESULTS",
    "DEFAULT_NUM_RESULTS",
    "SearchResult",
    "SearchResponse",
    "SearchBackend",
    "ToolSpec",
    "WEB_SEARCH_TOOL",
    "WebSearchTool",
    "clamp_num_results",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_SEARCH_ENDPOINT = "https://google.serper.dev/search"
MIN_RESULTS = 2
MAX_RESULTS = 10
DEFAULT_NUM_RESULTS = 10


@dataclass(slots=True, frozen=True)
class SearchResult:
    title: str
    snippet: str
    link: str

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> SearchResult:
        return cls(
            title=str(raw.get("title") or ""),
            snippet=str(raw.get("snippet") or ""),
            link=str(raw.get("link") or ""),
        )

    def to_dict(self) -> dict[str, str]:
        return {"title": self.title, "snippet": self.snippet, "link": self.link}


@dataclass(slots=True, frozen=True)
class SearchResponse:
    """Search endpoint answer, already truncated to the requested size."""

    organic: tuple[SearchResult, ...] = ()
    answer_box: Mapping[str, Any] | None = None

    def to_payload(self) -> str:
        """JSON payload handed back to the model as the tool result."""
        data: dict[str, Any] = {"organic": [result.to_dict() for result in self.organic]}
        if self.answer_box:
            data["answerBox"] = dict(self.answer_box)
        return json.dumps(data, ensure_ascii=False)

    def sources(self) -> list[SearchSource]:
        return [
            SearchSource(title=result.title, url=result.link, snippet=result.snippet or None)
            for result in self.organic
        ]


class SearchBackend(Protocol):
    async def execute(self, query: str, num_results: int) -> SearchResponse:
        ...


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Function-calling metadata for a tool offered to the model.

    Attributes:
        name: Tool identifier used in API calls.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool arguments.
        strict: Whether to request strict schema adherence.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    strict: bool = False

    def as_openai_tool(self) -> ChatCompletionToolParam:
        parameters = dict(self.parameters) or {"type": "object", "properties": {}}
        function: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "parameters": parameters,
        }
        if self.strict:
            function["strict"] = True
        return cast(ChatCompletionToolParam, {"type": "function", "function": function})


WEB_SEARCH_TOOL = ToolSpec(
    name="webSearch",
    description=(
        "Search the web for current information. Use when the user asks for latest, new or "
        "recent information, or for facts you are unsure about."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query to look up on the web",
            },
            "numResults": {
                "type": "integer",
                "description": (
                    "Number of results to return (2-10). Use 2-4 for simple facts, 5-7 for "
                    "verification, 8-10 for deep research."
                ),
                "minimum": MIN_RESULTS,
                "maximum": MAX_RESULTS,
            },
        },
        "required": ["query", "numResults"],
        "additionalProperties": False,
    },
)


def clamp_num_results(value: Any) -> int:
    """Coerce a model-supplied ``numResults`` into the accepted range.

    Missing or non-numeric values fall back to :data:`DEFAULT_NUM_RESULTS`.
    """

    if value is None or isinstance(value, bool):
        return DEFAULT_NUM_RESULTS
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_NUM_RESULTS
    return max(MIN_RESULTS, min(MAX_RESULTS, number))


class WebSearchTool:
    """Executes web searches against a Serper-compatible endpoint."""

    name = WEB_SEARCH_TOOL.name

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str = DEFAULT_SEARCH_ENDPOINT,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def execute(self, query: str, num_results: int) -> SearchResponse:
        """Run one search.

        Raises:
            ValueError: If the query is blank or ``num_results`` is out of range.
            SearchAPIError: If the endpoint is unreachable or answers with a
                non-success status.
        """

        query = (query or "").strip()
        if not query:
            raise ValueError("Search query must not be empty")
        if isinstance(num_results, bool) or not MIN_RESULTS <= num_results <= MAX_RESULTS:
            raise ValueError(
                f"num_results must be between {MIN_RESULTS} and {MAX_RESULTS}, got {num_results!r}"
            )

        LOGGER.debug("Searching for %r (%d result(s))", query, num_results)
        try:
            response = await self._client.post(
                self._endpoint,
                json={"q": query, "num": num_results},
                headers={"X-API-KEY": self._api_key, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise SearchAPIError(f"Search request failed: {exc}") from exc
        if not response.is_success:
            raise SearchAPIError(
                f"Search API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise SearchAPIError(
                "Search API returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(data, Mapping):
            raise SearchAPIError("Search API returned an unexpected payload", status_code=response.status_code)

        organic = [
            SearchResult.from_mapping(item)
            for item in data.get("organic") or []
            if isinstance(item, Mapping)
        ]
        answer_box = data.get("answerBox")
        return SearchResponse(
            organic=tuple(organic[:num_results]),
            answer_box=answer_box if isinstance(answer_box, Mapping) else None,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
