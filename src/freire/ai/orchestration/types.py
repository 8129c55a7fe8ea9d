"""Core type definitions for the agent executor.

Message and result types are frozen and shared between stages as-is. The only
mutable types are the per-attempt accumulators (:class:`UsageTotals` and
:class:`AgentAttemptState`), which are owned by exactly one attempt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

__all__ = [
    "MessageRole",
    "ReasoningLevel",
    "Message",
    "ToolCall",
    "ToolResult",
    "SearchSource",
    "UsageTotals",
    "AgentOptions",
    "AgentTask",
    "AgentAttemptState",
    "AttemptMetadata",
    "AgentEvent",
    "AgentResult",
]

MessageRole = Literal["system", "user", "assistant", "tool"]
ReasoningLevel = Literal["low", "high"]

DEFAULT_MAX_ITERATIONS = 4
DEFAULT_MAX_TOOL_CALLS = 1
DEFAULT_MAX_TOKENS = 2_000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_REASONING_LEVEL: ReasoningLevel = "high"


# -----------------------------------------------------------------------------
# Transcript
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message.

    Attributes:
        role: The role of the message sender.
        content: Text content; tool results carry their JSON payload here.
        tool_call_id: ID linking a tool result to the call that produced it.
        tool_calls: Tool calls requested by an assistant turn.
        name: Optional tool name for tool-result messages.
    """

    role: MessageRole
    content: str
    tool_call_id: str | None = None
    tool_calls: tuple[Mapping[str, Any], ...] | None = None
    name: str | None = None

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None:
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [dict(call) for call in self.tool_calls]
        return payload  # type: ignore[return-value]

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from an OpenAI-style message mapping."""
        role = param.get("role", "user")
        if role not in ("system", "user", "assistant", "tool"):
            raise ValueError(f"Unsupported message role: {role!r}")
        content = param.get("content")
        tool_calls = param.get("tool_calls")
        return cls(
            role=role,
            content="" if content is None else str(content),
            tool_call_id=param.get("tool_call_id"),
            tool_calls=tuple(tool_calls) if tool_calls else None,
            name=param.get("name"),
        )

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[Mapping[str, Any]] | None = None,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)


@dataclass(slots=True)
class ToolCall:
    """A tool invocation reassembled from streamed fragments."""

    id: str
    name: str
    arguments_buffer: str = ""
    index: int = 0

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_buffer},
        }


@dataclass(slots=True, frozen=True)
class ToolResult:
    """JSON-encoded search response for one executed call."""

    tool_call_id: str
    payload: str
    name: str | None = None

    def to_message(self) -> Message:
        return Message.tool(self.payload, tool_call_id=self.tool_call_id, name=self.name)


@dataclass(slots=True, frozen=True)
class SearchSource:
    """A search hit surfaced to the caller as a citation."""

    title: str
    url: str
    snippet: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"title": self.title, "url": self.url}
        if self.snippet is not None:
            data["snippet"] = self.snippet
        return data


# -----------------------------------------------------------------------------
# Usage
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class UsageTotals:
    """Token usage, accumulated monotonically within one attempt."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int | None = None

    def add(self, other: UsageTotals) -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens
        if other.reasoning_tokens is not None:
            self.reasoning_tokens = (self.reasoning_tokens or 0) + other.reasoning_tokens

    def copy(self) -> UsageTotals:
        return UsageTotals(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            total_tokens=self.total_tokens,
            reasoning_tokens=self.reasoning_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        """Outbound wire form with camelCase keys."""
        data = {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }
        if self.reasoning_tokens is not None:
            data["reasoningTokens"] = self.reasoning_tokens
        return data


# -----------------------------------------------------------------------------
# Inbound task
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AgentOptions:
    """Per-request knobs; unset values fall back to the controller defaults."""

    temperature: float | None = None
    max_tokens: int | None = None
    max_iterations: int | None = None
    max_tool_calls: int | None = None
    reasoning_level: ReasoningLevel | None = None

    def __post_init__(self) -> None:
        if self.reasoning_level not in (None, "low", "high"):
            raise ValueError(f"reasoning_level must be 'low' or 'high', got {self.reasoning_level!r}")
        if self.max_iterations is not None and self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.max_tool_calls is not None and self.max_tool_calls < 0:
            raise ValueError("max_tool_calls cannot be negative")

    @property
    def resolved_max_iterations(self) -> int:
        return self.max_iterations if self.max_iterations is not None else DEFAULT_MAX_ITERATIONS

    @property
    def resolved_max_tool_calls(self) -> int:
        return self.max_tool_calls if self.max_tool_calls is not None else DEFAULT_MAX_TOOL_CALLS

    @property
    def resolved_max_tokens(self) -> int:
        return self.max_tokens if self.max_tokens is not None else DEFAULT_MAX_TOKENS

    @property
    def resolved_temperature(self) -> float:
        return self.temperature if self.temperature is not None else DEFAULT_TEMPERATURE

    @property
    def resolved_reasoning_level(self) -> ReasoningLevel:
        return self.reasoning_level if self.reasoning_level is not None else DEFAULT_REASONING_LEVEL

    def with_defaults(self, defaults: AgentOptions) -> AgentOptions:
        """Fill every unset field from ``defaults``."""
        return AgentOptions(
            temperature=self.temperature if self.temperature is not None else defaults.temperature,
            max_tokens=self.max_tokens if self.max_tokens is not None else defaults.max_tokens,
            max_iterations=self.max_iterations if self.max_iterations is not None else defaults.max_iterations,
            max_tool_calls=self.max_tool_calls if self.max_tool_calls is not None else defaults.max_tool_calls,
            reasoning_level=self.reasoning_level or defaults.reasoning_level,
        )


@dataclass(slots=True, frozen=True)
class AgentTask:
    """Inbound request: the conversation so far plus options."""

    messages: tuple[Message, ...]
    options: AgentOptions = field(default_factory=AgentOptions)

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if not self.messages:
            raise ValueError("At least one message is required to start a chat")

    def with_default_options(self, defaults: AgentOptions) -> AgentTask:
        return AgentTask(messages=self.messages, options=self.options.with_defaults(defaults))

    @classmethod
    def from_chat_params(
        cls,
        messages: Sequence[Mapping[str, Any]],
        options: AgentOptions | None = None,
    ) -> AgentTask:
        return cls(
            messages=tuple(Message.from_chat_param(m) for m in messages),
            options=options or AgentOptions(),
        )


# -----------------------------------------------------------------------------
# Attempt state
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class AgentAttemptState:
    """Mutable state of one attempt against one provider.

    Created at attempt start and discarded at attempt end; never shared
    across attempts or requests.
    """

    max_iterations: int
    max_tool_calls: int
    transcript: list[Message] = field(default_factory=list)
    iteration: int = 0
    tool_calls_used: int = 0
    sources: list[SearchSource] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)
    usage: UsageTotals = field(default_factory=UsageTotals)
    reasoning_parts: list[str] = field(default_factory=list)

    @property
    def tool_budget_remaining(self) -> int:
        return max(0, self.max_tool_calls - self.tool_calls_used)

    @property
    def should_offer_tools(self) -> bool:
        return self.tool_calls_used < self.max_tool_calls

    @property
    def reasoning(self) -> str | None:
        text = "".join(self.reasoning_parts)
        return text or None

    def append(self, message: Message) -> None:
        self.transcript.append(message)


# -----------------------------------------------------------------------------
# Outbound stream
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AttemptMetadata:
    """Payload of the terminal ``metadata`` event."""

    usage: UsageTotals
    tool_calls: int
    model: str
    provider: str
    sources: tuple[SearchSource, ...] = ()
    queries: tuple[str, ...] = ()
    reasoning: str | None = None
    iterations: int = 0
    content: str = ""

    @property
    def query(self) -> str | None:
        return ", ".join(self.queries) if self.queries else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "usage": self.usage.to_dict(),
            "toolCalls": self.tool_calls,
            "model": self.model,
            "provider": self.provider,
            "content": self.content,
        }
        if self.sources:
            data["sources"] = [source.to_dict() for source in self.sources]
            data["searchMetadata"] = {
                "query": self.query,
                "sources": data["sources"],
            }
        if self.reasoning:
            data["reasoning"] = self.reasoning
        return data


@dataclass(slots=True, frozen=True)
class AgentEvent:
    """One event of the outbound stream."""

    type: Literal["content", "metadata"]
    data: str | AttemptMetadata

    @classmethod
    def content(cls, text: str) -> AgentEvent:
        return cls(type="content", data=text)

    @classmethod
    def metadata(cls, meta: AttemptMetadata) -> AgentEvent:
        return cls(type="metadata", data=meta)

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.data, AttemptMetadata):
            return {"type": self.type, "data": self.data.to_dict()}
        return {"type": self.type, "data": self.data}


@dataclass(slots=True, frozen=True)
class AgentResult:
    """Non-streaming outcome of a completed attempt."""

    content: str
    metadata: AttemptMetadata
