"""Provider adapters for OpenAI-compatible chat endpoints.

Every provider speaks a loosely-typed dialect of the chat-completions stream:
reasoning arrives as ``reasoning_content`` on one host and ``reasoning`` on
another, usage may be reported with OpenAI or AI-SDK field names, and some
hosts only honour a mid-conversation nudge when it comes from the ``user``
role. A :class:`ProviderAdapter` captures one dialect and normalizes it into
the shared delta and usage shapes before anything reaches the agent loop.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionToolParam

from .errors import StreamParseError
from .harmony import strip_control_tokens as _strip_control_tokens
from .orchestration.types import Message, UsageTotals
from .stream_decoder import (
    ContentDelta,
    ReasoningDelta,
    StreamDelta,
    ToolCallFragment,
    UsageSnapshot,
)

__all__ = [
    "ProviderAdapter",
    "PROVIDERS",
    "MODEL_PROVIDERS",
    "DISABLED_PROVIDER",
    "UNKNOWN_PROVIDER",
    "get_adapter",
    "provider_for_model",
    "normalize_usage",
]

DISABLED_PROVIDER = "disabled"
UNKNOWN_PROVIDER = "unknown"

_PROMPT_KEYS = ("prompt_tokens", "input_tokens", "promptTokens", "inputTokens")
_COMPLETION_KEYS = ("completion_tokens", "output_tokens", "completionTokens", "outputTokens")
_TOTAL_KEYS = ("total_tokens", "totalTokens")
_REASONING_KEYS = ("reasoning_tokens", "reasoningTokens")
_DETAIL_KEYS = ("completion_tokens_details", "output_tokens_details")


def _first_int(raw: Mapping[str, Any], keys: Sequence[str]) -> int | None:
    for key in keys:
        value = raw.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def normalize_usage(raw: Any) -> UsageTotals | None:
    """Map any known usage dialect onto :class:`UsageTotals`.

    Returns ``None`` when ``raw`` carries no recognizable token counts.
    """

    if not isinstance(raw, Mapping):
        return None
    prompt = _first_int(raw, _PROMPT_KEYS)
    completion = _first_int(raw, _COMPLETION_KEYS)
    total = _first_int(raw, _TOTAL_KEYS)
    if prompt is None and completion is None and total is None:
        return None
    reasoning = _first_int(raw, _REASONING_KEYS)
    if reasoning is None:
        for key in _DETAIL_KEYS:
            details = raw.get(key)
            if isinstance(details, Mapping):
                reasoning = _first_int(details, _REASONING_KEYS)
                if reasoning is not None:
                    break
    prompt = prompt or 0
    completion = completion or 0
    if total is None:
        total = prompt + completion
    return UsageTotals(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        reasoning_tokens=reasoning,
    )


@dataclass(slots=True, frozen=True)
class ProviderAdapter:
    """One provider's request and stream dialect.

    Attributes:
        name: Provider identifier used in logs and usage records.
        base_url: Root of the OpenAI-compatible API (``/chat/completions`` is appended).
        api_key_env: Environment variable holding the provider API key.
        reasoning_fields: Delta fields that carry reasoning text, checked in order.
        token_limit_param: Request parameter name for the completion token limit.
        forced_final_role: Role used for the forced-final directive.
        strip_control_tokens: Whether to remove ``<|...|>`` tokens from completed content.
        strict_tools: Whether to send ``strict`` on the function tool definition.
        include_stream_usage: Whether to request a usage record at the end of the stream.
        model_aliases: Public model id to provider-specific model id.
        extra_body: Additional fields merged into every request payload.
    """

    name: str
    base_url: str
    api_key_env: str
    reasoning_fields: tuple[str, ...] = ("reasoning_content",)
    token_limit_param: str = "max_tokens"
    forced_final_role: Literal["system", "user"] = "system"
    strip_control_tokens: bool = False
    strict_tools: bool = False
    include_stream_usage: bool = True
    model_aliases: Mapping[str, str] = field(default_factory=dict)
    extra_body: Mapping[str, Any] = field(default_factory=dict)

    @property
    def chat_url(self) -> str:
        return self.base_url.rstrip("/") + "/chat/completions"

    def resolve_model(self, model: str) -> str:
        return self.model_aliases.get(model, model)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def build_payload(
        self,
        *,
        model: str,
        messages: Sequence[Message],
        tools: Sequence[ChatCompletionToolParam] | None,
        max_tokens: int,
        temperature: float,
    ) -> dict[str, Any]:
        """Build the streamed chat-completions request body.

        ``tools`` and ``tool_choice`` are omitted entirely when no tools are
        offered; several hosts reject ``tool_choice`` without ``tools``.
        """

        payload: dict[str, Any] = {
            "model": self.resolve_model(model),
            "messages": [message.to_chat_param() for message in messages],
            self.token_limit_param: max_tokens,
            "temperature": temperature,
            "stream": True,
        }
        if tools:
            payload["tools"] = [self._adapt_tool(tool) for tool in tools]
            payload["tool_choice"] = "auto"
        if self.include_stream_usage:
            payload["stream_options"] = {"include_usage": True}
        if self.extra_body:
            payload.update(self.extra_body)
        return payload

    def _adapt_tool(self, tool: ChatCompletionToolParam) -> dict[str, Any]:
        adapted = dict(tool)
        function = dict(adapted.get("function", {}))
        if self.strict_tools:
            function["strict"] = True
        else:
            function.pop("strict", None)
        adapted["function"] = function
        return adapted

    # ------------------------------------------------------------------
    # Stream records
    # ------------------------------------------------------------------
    def deltas_from_record(self, record: Mapping[str, Any]) -> list[StreamDelta]:
        """Translate one decoded event record into typed deltas."""

        deltas: list[StreamDelta] = []
        choices = record.get("choices") or []
        if not isinstance(choices, list):
            raise StreamParseError("'choices' must be a list", record=str(record))
        if choices:
            choice = choices[0]
            if not isinstance(choice, Mapping):
                raise StreamParseError("choice must be an object", record=str(record))
            delta = choice.get("delta") or choice.get("message") or {}
            if not isinstance(delta, Mapping):
                raise StreamParseError("'delta' must be an object", record=str(record))
            deltas.extend(self._reasoning_deltas(delta))
            deltas.extend(self._tool_call_fragments(delta, record))
            content = delta.get("content")
            if isinstance(content, str) and content:
                deltas.append(ContentDelta(content))
        usage = normalize_usage(record.get("usage"))
        if usage is not None:
            deltas.append(UsageSnapshot(usage))
        return deltas

    def _reasoning_deltas(self, delta: Mapping[str, Any]) -> list[StreamDelta]:
        for key in self.reasoning_fields:
            value = delta.get(key)
            if isinstance(value, str) and value:
                return [ReasoningDelta(value)]
        return []

    def _tool_call_fragments(
        self,
        delta: Mapping[str, Any],
        record: Mapping[str, Any],
    ) -> list[StreamDelta]:
        raw_calls = delta.get("tool_calls")
        if not raw_calls:
            return []
        if not isinstance(raw_calls, list):
            raise StreamParseError("'tool_calls' must be a list", record=str(record))
        fragments: list[StreamDelta] = []
        for position, raw in enumerate(raw_calls):
            if not isinstance(raw, Mapping):
                raise StreamParseError("tool call delta must be an object", record=str(record))
            index = raw.get("index", position)
            if not isinstance(index, int) or isinstance(index, bool):
                raise StreamParseError(f"tool call index must be an integer, got {index!r}", record=str(record))
            function = raw.get("function") or {}
            if not isinstance(function, Mapping):
                raise StreamParseError("tool call 'function' must be an object", record=str(record))
            name = function.get("name")
            if name is not None and not isinstance(name, str):
                raise StreamParseError(f"tool call name must be a string, got {name!r}", record=str(record))
            call_id = raw.get("id")
            if call_id is not None and not isinstance(call_id, str):
                raise StreamParseError(f"tool call id must be a string, got {call_id!r}", record=str(record))
            arguments = function.get("arguments")
            if arguments is not None and not isinstance(arguments, str):
                # Some hosts send already-parsed arguments on the final chunk.
                arguments = _dump_arguments(arguments)
            fragments.append(
                ToolCallFragment(
                    index=index,
                    id=call_id or None,
                    name=name or None,
                    arguments_fragment=arguments or None,
                )
            )
        return fragments

    # ------------------------------------------------------------------
    # Completed content
    # ------------------------------------------------------------------
    def finalize_content(self, text: str) -> str:
        if not self.strip_control_tokens:
            return text
        return _strip_control_tokens(text)


def _dump_arguments(arguments: Any) -> str:
    try:
        return json.dumps(arguments, ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise StreamParseError(f"Unserializable tool arguments: {exc}") from exc


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

PROVIDERS: dict[str, ProviderAdapter] = {
    "gmicloud": ProviderAdapter(
        name="gmicloud",
        base_url="https://api.gmi-serving.com/v1",
        api_key_env="GMI_API_KEY",
        reasoning_fields=("reasoning_content",),
        forced_final_role="user",
        strip_control_tokens=True,
        model_aliases={"gmi/gpt-oss-120b": "openai/gpt-oss-120b"},
    ),
    "deepinfra": ProviderAdapter(
        name="deepinfra",
        base_url="https://api.deepinfra.com/v1/openai",
        api_key_env="DEEPINFRA_API_KEY",
        reasoning_fields=("reasoning_content", "reasoning"),
        forced_final_role="system",
    ),
    "cerebras": ProviderAdapter(
        name="cerebras",
        base_url="https://api.cerebras.ai/v1",
        api_key_env="CEREBRAS_API_KEY",
        reasoning_fields=("reasoning",),
        token_limit_param="max_completion_tokens",
        forced_final_role="system",
        strict_tools=True,
        include_stream_usage=False,
        model_aliases={"cerebras/gpt-oss-120b": "gpt-oss-120b"},
    ),
    "openai": ProviderAdapter(
        name="openai",
        base_url="https://api.openai.com/v1",
        api_key_env="OPENAI_API_KEY",
        reasoning_fields=("reasoning_content", "reasoning"),
        token_limit_param="max_completion_tokens",
    ),
}

MODEL_PROVIDERS: dict[str, str] = {
    "openai/gpt-oss-20b": "deepinfra",
    "openai/gpt-oss-120b": DISABLED_PROVIDER,
    "cerebras/gpt-oss-120b": "cerebras",
    "gmi/gpt-oss-120b": "gmicloud",
    "moonshotai/kimi-k2-thinking": DISABLED_PROVIDER,
    "kimi/k2-thinking": DISABLED_PROVIDER,
}


def provider_for_model(model: str) -> str:
    """Return the provider name serving ``model``, or ``"unknown"``."""

    return MODEL_PROVIDERS.get(model, UNKNOWN_PROVIDER)


def get_adapter(name: str) -> ProviderAdapter:
    try:
        return PROVIDERS[name]
    except KeyError:
        raise KeyError(f"Unknown provider: {name}") from None
