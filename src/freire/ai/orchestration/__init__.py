"""Agent orchestration: attempt state, tool-call reassembly, the loop and fallback."""

# Core types
from .types import (
    AgentAttemptState,
    AgentEvent,
    AgentOptions,
    AgentResult,
    AgentTask,
    AttemptMetadata,
    Message,
    SearchSource,
    ToolCall,
    ToolResult,
    UsageTotals,
)

# Tool-call reassembly
from .tool_calls import AccumulatedCalls, ReadyToolCall, ToolCallAccumulator, parse_tool_arguments

# Loop and fallback
from .agent_loop import AgentLoopController
from .fallback import ProviderFallbackChain, ProviderRoute

__all__ = [
    "AgentAttemptState",
    "AgentEvent",
    "AgentOptions",
    "AgentResult",
    "AgentTask",
    "AttemptMetadata",
    "Message",
    "SearchSource",
    "ToolCall",
    "ToolResult",
    "UsageTotals",
    "AccumulatedCalls",
    "ReadyToolCall",
    "ToolCallAccumulator",
    "parse_tool_arguments",
    "AgentLoopController",
    "ProviderFallbackChain",
    "ProviderRoute",
]
