"""Agent core: provider transport, stream decoding, normalization and orchestration."""

from .errors import (
    AllProvidersFailedError,
    AttemptError,
    EmptyCompletionError,
    FreireError,
    IterationBudgetExceeded,
    ProviderError,
    SearchAPIError,
    StreamParseError,
    ToolArgumentError,
)

# Orchestration first: the decoder and adapters import its types module.
from .orchestration import (
    AgentEvent,
    AgentLoopController,
    AgentOptions,
    AgentResult,
    AgentTask,
    Message,
    ProviderFallbackChain,
    ProviderRoute,
)
from .client import ClientSettings, ProviderClient
from .harmony import extract_final_answer
from .providers import PROVIDERS, ProviderAdapter, get_adapter, provider_for_model

__all__ = [
    "AllProvidersFailedError",
    "AttemptError",
    "EmptyCompletionError",
    "FreireError",
    "IterationBudgetExceeded",
    "ProviderError",
    "SearchAPIError",
    "StreamParseError",
    "ToolArgumentError",
    "AgentEvent",
    "AgentLoopController",
    "AgentOptions",
    "AgentResult",
    "AgentTask",
    "Message",
    "ProviderFallbackChain",
    "ProviderRoute",
    "ClientSettings",
    "ProviderClient",
    "extract_final_answer",
    "PROVIDERS",
    "ProviderAdapter",
    "get_adapter",
    "provider_for_model",
]
