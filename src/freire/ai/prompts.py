"""System prompts and injected directives for the search agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping

from .orchestration.types import Message, ReasoningLevel

__all__ = [
    "PromptConfig",
    "DEFAULT_PROMPTS",
    "HIGH_REASONING_PROMPT",
    "LOW_REASONING_PROMPT",
    "FORCED_FINAL_DIRECTIVE",
    "NO_SEARCH_DIRECTIVE",
    "build_system_prompt",
    "build_forced_final_message",
]

_SOURCE_GUIDE = """CHOOSE THE RIGHT NUMBER OF SOURCES (numResults parameter):
- **2-4 Sources**: Simple facts (weather, scores, prices, definitions)
- **5-7 Sources**: Verification needs (news, reviews, health/legal info)
- **8-10 Sources**: Deep research (academic, market analysis, complex topics)"""

HIGH_REASONING_PROMPT = (
    "CRITICAL INSTRUCTIONS - You have ONLY {max_iterations} iterations maximum. "
    "Provide a final response before you run out.\n\n"
    "EXTENDED THINKING MODE ENABLED - You have {max_tool_calls} search{plural} available "
    "for thorough research.\n\n"
    "SEARCH STRATEGY:\n"
    "- Use BROAD searches instead of narrow, specific ones\n"
    "- ONE comprehensive search is better than multiple narrow searches\n"
    "- Example: Instead of searching \"IMF 2025 India GDP\" and \"IMF 2025 Vietnam GDP\" "
    "separately, use ONE search: \"IMF 2025 GDP forecast emerging markets Asia India Vietnam\"\n\n"
    + _SOURCE_GUIDE
    + "\n\nMAXIMIZE INSIGHT WITH MULTIPLE SEARCHES:\n"
    "- With {max_tool_calls} search{plural} available, you can cross-verify information\n"
    "- Use your first search for broad context, subsequent searches for specific details\n"
    "- Use webSearch when the user's request asks for latest, new, or recent information"
)

LOW_REASONING_PROMPT = (
    "QUICK MODE - You have ONLY {max_iterations} iterations maximum. "
    "Provide a final response before you run out.\n\n"
    "FAST SEARCH STRATEGY:\n"
    "- You have ONLY {max_tool_calls} search{plural} available - make it count\n"
    "- Use BROAD, comprehensive searches to gather all needed information at once\n\n"
    + _SOURCE_GUIDE
    + "\n\nMINIMIZE TOOL CALLS:\n"
    "- Use webSearch when the user's request asks for latest, new, or recent information\n"
    "- Make your search comprehensive and thorough"
)

FORCED_FINAL_DIRECTIVE = (
    "You have used all {used} of your web searches. Provide your final answer now, based "
    "only on the search results you have already received. Do not request more searches."
)
NO_SEARCH_DIRECTIVE = (
    "Web search is not available for this request. Provide your final answer now from "
    "what you already know. Do not request any searches."
)


@dataclass(slots=True, frozen=True)
class PromptConfig:
    """Maps a reasoning level to its system prompt template.

    Templates are ``str.format`` strings and may use ``max_tool_calls``,
    ``max_iterations`` and ``plural``.
    """

    templates: Mapping[str, str] = field(
        default_factory=lambda: {"high": HIGH_REASONING_PROMPT, "low": LOW_REASONING_PROMPT}
    )

    def template_for(self, level: ReasoningLevel) -> str:
        try:
            return self.templates[level]
        except KeyError:
            raise KeyError(f"No system prompt configured for reasoning level {level!r}") from None

    def render(self, level: ReasoningLevel, *, max_tool_calls: int, max_iterations: int) -> str:
        return self.template_for(level).format(
            max_tool_calls=max_tool_calls,
            max_iterations=max_iterations,
            plural="es" if max_tool_calls != 1 else "",
        )


DEFAULT_PROMPTS = PromptConfig()


def build_system_prompt(
    level: ReasoningLevel,
    *,
    max_tool_calls: int,
    max_iterations: int,
    config: PromptConfig = DEFAULT_PROMPTS,
) -> Message:
    return Message.system(
        config.render(level, max_tool_calls=max_tool_calls, max_iterations=max_iterations)
    )


def build_forced_final_message(
    remaining_budget: int,
    *,
    used: int = 0,
    role: Literal["system", "user"] = "system",
) -> Message:
    """Directive compelling the model to answer without further tool use.

    ``remaining_budget`` is the number of tool calls still allowed; the
    directive is only meaningful once it reaches zero.
    """

    if remaining_budget > 0:
        raise ValueError(f"Tool budget not exhausted ({remaining_budget} call(s) left)")
    content = FORCED_FINAL_DIRECTIVE.format(used=used) if used > 0 else NO_SEARCH_DIRECTIVE
    return Message(role=role, content=content)
