"""Bounded web-search agent executor with streaming output and provider fallback."""

from .ai import (
    AgentEvent,
    AgentOptions,
    AgentResult,
    AgentTask,
    AllProvidersFailedError,
    Message,
    ProviderFallbackChain,
)
from .services.settings import Settings

__version__ = "0.3.0"

__all__ = [
    "AgentEvent",
    "AgentOptions",
    "AgentResult",
    "AgentTask",
    "AllProvidersFailedError",
    "Message",
    "ProviderFallbackChain",
    "Settings",
    "__version__",
]
