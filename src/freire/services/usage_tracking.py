"""Token pricing, cost accounting and usage records for provider attempts."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Literal, Mapping, Protocol

__all__ = [
    "ModelPricing",
    "MODEL_PRICING",
    "USD_TO_PHP_RATE",
    "UsageRecord",
    "UsageRecorder",
    "InMemoryUsageRecorder",
    "calculate_cost",
    "pricing_for",
    "usd_to_php",
    "php_to_usd",
    "format_currency",
]

LOGGER = logging.getLogger(__name__)

USD_TO_PHP_RATE = 56.5
_TOKENS_PER_UNIT = 1_000_000


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """USD per million tokens."""

    prompt: float
    completion: float


_FREE = ModelPricing(prompt=0.0, completion=0.0)

MODEL_PRICING: dict[str, ModelPricing] = {
    "openai/gpt-oss-20b": ModelPricing(prompt=0.04, completion=0.04),
    "openai/gpt-oss-120b": ModelPricing(prompt=0.05, completion=0.25),
    "moonshotai/kimi-k2-thinking": ModelPricing(prompt=0.55, completion=2.25),
    "nousresearch/hermes-3-llama-3.1-405b:extended": ModelPricing(prompt=1.0, completion=1.0),
    "meta-llama/llama-3.3-70b-instruct": ModelPricing(prompt=0.25, completion=0.25),
    "deepseek/deepseek-chat": ModelPricing(prompt=0.14, completion=0.28),
    "google/gemini-2.0-flash-exp:free": _FREE,
    "google/gemini-flash-1.5": ModelPricing(prompt=0.075, completion=0.3),
    "google/gemini-2.5-flash-lite": ModelPricing(prompt=0.0015, completion=0.006),
}

# Routed model ids billed at the upstream model's rate.
_PRICING_ALIASES: dict[str, str] = {
    "cerebras/gpt-oss-120b": "openai/gpt-oss-120b",
    "gmi/gpt-oss-120b": "openai/gpt-oss-120b",
    "kimi/k2-thinking": "moonshotai/kimi-k2-thinking",
}


def pricing_for(model: str) -> ModelPricing:
    """Pricing for ``model``; unknown models are free."""

    key = _PRICING_ALIASES.get(model, model)
    return MODEL_PRICING.get(key, _FREE)


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimated cost in USD of one attempt."""

    pricing = pricing_for(model)
    prompt_cost = prompt_tokens / _TOKENS_PER_UNIT * pricing.prompt
    completion_cost = completion_tokens / _TOKENS_PER_UNIT * pricing.completion
    return prompt_cost + completion_cost


def usd_to_php(usd: float) -> float:
    return usd * USD_TO_PHP_RATE


def php_to_usd(php: float) -> float:
    return php / USD_TO_PHP_RATE


def format_currency(amount: float, currency: Literal["USD", "PHP"]) -> str:
    if currency == "USD":
        return f"${amount:.6f}"
    if currency == "PHP":
        return f"₱{amount:.4f}"
    raise ValueError(f"Unsupported currency: {currency!r}")


@dataclass(slots=True)
class UsageRecord:
    """One provider attempt, successful or not."""

    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int | None = None
    cost_usd: float = 0.0
    cost_php: float = 0.0
    latency_ms: int = 0
    success: bool = True
    error_message: str | None = None
    tool_calls: int = 0
    reasoning_level: str | None = None
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def for_success(
        cls,
        *,
        model: str,
        provider: str,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int,
        reasoning_tokens: int | None = None,
        latency_ms: int = 0,
        tool_calls: int = 0,
        reasoning_level: str | None = None,
    ) -> UsageRecord:
        cost = calculate_cost(model, prompt_tokens, completion_tokens)
        return cls(
            model=model,
            provider=provider,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            reasoning_tokens=reasoning_tokens,
            cost_usd=cost,
            cost_php=usd_to_php(cost),
            latency_ms=latency_ms,
            success=True,
            tool_calls=tool_calls,
            reasoning_level=reasoning_level,
        )

    @classmethod
    def for_failure(
        cls,
        *,
        model: str,
        provider: str,
        error_message: str,
        latency_ms: int = 0,
        reasoning_level: str | None = None,
    ) -> UsageRecord:
        return cls(
            model=model,
            provider=provider,
            latency_ms=latency_ms,
            success=False,
            error_message=error_message,
            reasoning_level=reasoning_level,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class UsageRecorder(Protocol):
    """Sink interface used to collect usage records."""

    def record(self, record: UsageRecord) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryUsageRecorder:
    """Ring-buffer usage recorder for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[UsageRecord] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, record: UsageRecord) -> None:
        with self._lock:
            self._buffer.append(record)

    def tail(self, limit: int | None = None) -> list[UsageRecord]:
        with self._lock:
            records = list(self._buffer)
        if limit is None or limit >= len(records):
            return records
        return records[-limit:]

    def totals(self) -> Mapping[str, float]:
        """Aggregate tokens and cost over the buffered records."""
        with self._lock:
            records = list(self._buffer)
        return {
            "attempts": len(records),
            "failures": sum(1 for r in records if not r.success),
            "prompt_tokens": sum(r.prompt_tokens for r in records),
            "completion_tokens": sum(r.completion_tokens for r in records),
            "total_tokens": sum(r.total_tokens for r in records),
            "cost_usd": sum(r.cost_usd for r in records),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
