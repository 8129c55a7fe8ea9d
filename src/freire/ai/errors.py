"""Error taxonomy for the agent executor.

Only :class:`StreamParseError` and :class:`ToolArgumentError` are recovered
locally. Every :class:`AttemptError` ends the current provider attempt and is
handed to the fallback chain, which raises :class:`AllProvidersFailedError`
once no provider remains.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

__all__ = [
    "FreireError",
    "StreamParseError",
    "ToolArgumentError",
    "AttemptError",
    "ProviderError",
    "SearchAPIError",
    "IterationBudgetExceeded",
    "EmptyCompletionError",
    "ProviderFailure",
    "AllProvidersFailedError",
]


class FreireError(Exception):
    """Base class for every error raised by the agent core."""


# -----------------------------------------------------------------------------
# Locally recovered errors
# -----------------------------------------------------------------------------


class StreamParseError(FreireError):
    """A single event record in the provider stream could not be decoded."""

    def __init__(self, message: str, *, record: str = "") -> None:
        super().__init__(message)
        self.record = record


class ToolArgumentError(FreireError):
    """Accumulated tool-call arguments are not a valid JSON object."""

    def __init__(self, message: str, *, call_id: str, name: str, arguments: str) -> None:
        super().__init__(message)
        self.call_id = call_id
        self.name = name
        self.arguments = arguments


# -----------------------------------------------------------------------------
# Attempt-fatal errors
# -----------------------------------------------------------------------------


class AttemptError(FreireError):
    """Ends the current provider attempt and triggers fallback."""


class ProviderError(AttemptError):
    """The provider transport answered with a non-success response."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.body = body


class SearchAPIError(AttemptError):
    """The external search endpoint failed; never retried within an attempt."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IterationBudgetExceeded(AttemptError):
    """The attempt used every iteration without producing a final answer."""

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Reached max iterations ({max_iterations}) without completion")
        self.max_iterations = max_iterations


class EmptyCompletionError(AttemptError):
    """The model turn carried neither content nor tool calls."""

    def __init__(self, message: str = "Model finished without providing content") -> None:
        super().__init__(message)


# -----------------------------------------------------------------------------
# Terminal error
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ProviderFailure:
    """One failed attempt as recorded by the fallback chain."""

    model: str
    provider: str
    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error) or type(self.error).__name__

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "error_type": type(self.error).__name__,
            "message": self.message,
        }


@dataclass
class AllProvidersFailedError(FreireError):
    """Every configured provider failed.

    ``discard_placeholder`` tells the caller that any placeholder message it
    created for this request should be deleted; the chain never touches caller
    storage itself.
    """

    failures: Sequence[ProviderFailure] = field(default_factory=tuple)
    discard_placeholder: bool = True

    def __post_init__(self) -> None:
        self.failures = tuple(self.failures)
        Exception.__init__(self, self._summary())

    def _summary(self) -> str:
        if not self.failures:
            return "No providers configured"
        parts = [f"{f.provider}/{f.model}: {f.message}" for f in self.failures]
        return "All providers failed: " + "; ".join(parts)

    @property
    def last_error(self) -> BaseException | None:
        return self.failures[-1].error if self.failures else None

    def __str__(self) -> str:
        return self._summary()
