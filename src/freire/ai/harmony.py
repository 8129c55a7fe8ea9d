"""Response format normalizer for multi-channel model output.

gpt-oss models answer in the Harmony format, which interleaves labelled
channels::

    <|start|>assistant<|channel|>analysis<|message|>...reasoning...<|end|>
    <|start|>assistant<|channel|>final<|message|>...answer...<|end|>

Only the ``final`` channel is meant for the user. Providers do not always
deliver clean channel markup, so extraction is an ordered list of named
strategies; the first one that matches decides the answer. Every strategy is
pure and either returns its input unchanged or something strictly shorter, so
:func:`extract_final_answer` can apply the chain until the text stops
changing. That fixed point is what makes it idempotent.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Sequence

__all__ = [
    "HarmonyChannels",
    "ExtractionStrategy",
    "STRATEGIES",
    "parse_harmony_format",
    "has_channel_markers",
    "is_harmony_format",
    "extract_final_answer",
    "extract_final_answer_with_strategy",
    "extract_analysis",
    "strip_control_tokens",
]

LOGGER = logging.getLogger(__name__)

CHANNEL_MARKER = "<|channel|>"
MESSAGE_MARKER = "<|message|>"
START_MARKER = "<|start|>"

_ANALYSIS_RE = re.compile(
    r"<\|channel\|>analysis<\|message\|>([\s\S]*?)(?:<\|end\|>|<\|channel\|>|<\|start\|>|$)"
)
_COMMENTARY_RE = re.compile(
    r"<\|channel\|>commentary(?:\s+to=[\w.]+)?(?:\s*<\|constrain\|>\s*\w+)?<\|message\|>"
    r"([\s\S]*?)(?:<\|end\|>|<\|call\|>|<\|channel\|>|<\|start\|>|$)"
)
_FINAL_RE = re.compile(r"<\|channel\|>final<\|message\|>([\s\S]*?)(?:<\|end\|>|<\|return\|>|$)")

_ROLE_HEADER_RE = re.compile(r"<\|start\|>\s*(?:assistant|user|system|developer|tool)\b")
_CHANNEL_LABEL_RE = re.compile(r"<\|channel\|>\w+")
_FUNCTION_TARGET_RE = re.compile(r"\bto=functions\.\w+")
_CONSTRAINED_ARGS_RE = re.compile(r"<\|constrain\|>\s*json\s*(?:<\|message\|>)?\s*\{[^}]*\}")
_CONTROL_TOKEN_RE = re.compile(r"<\|[^|<>]+\|>")
_TEXT_REASONING_RE = re.compile(r"analysis[\s\S]*?assistantfinal([\s\S]*)$", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class HarmonyChannels:
    """Channels found in one raw response; derived, never persisted."""

    raw: str
    analysis: str | None = None
    commentary: str | None = None
    final: str | None = None


def _match_group(pattern: re.Pattern[str], text: str) -> str | None:
    match = pattern.search(text)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None


def parse_harmony_format(text: str) -> HarmonyChannels:
    """Split ``text`` into its analysis, commentary and final channels."""

    return HarmonyChannels(
        raw=text,
        analysis=_match_group(_ANALYSIS_RE, text),
        commentary=_match_group(_COMMENTARY_RE, text),
        final=_match_group(_FINAL_RE, text),
    )


def has_channel_markers(text: str) -> bool:
    return CHANNEL_MARKER in text or MESSAGE_MARKER in text


def is_harmony_format(text: str) -> bool:
    return has_channel_markers(text) or START_MARKER in text


def strip_control_tokens(text: str) -> str:
    """Remove every ``<|...|>`` control token and trim the result."""

    return _CONTROL_TOKEN_RE.sub("", text).strip()


# -----------------------------------------------------------------------------
# Extraction strategies
# -----------------------------------------------------------------------------


def _final_channel(text: str) -> str | None:
    if not has_channel_markers(text):
        return None
    return _match_group(_FINAL_RE, text)


def _commentary_only(text: str) -> str | None:
    if not has_channel_markers(text):
        return None
    if "<|channel|>commentary" in text and "<|channel|>final" not in text:
        # Tool-call traces are internal and never shown to the user.
        return ""
    return None


def _strip_markers(text: str) -> str | None:
    if not has_channel_markers(text):
        return None
    cleaned = _ROLE_HEADER_RE.sub("", text)
    cleaned = _CONSTRAINED_ARGS_RE.sub("", cleaned)
    cleaned = _CHANNEL_LABEL_RE.sub("", cleaned)
    cleaned = _FUNCTION_TARGET_RE.sub("", cleaned)
    return strip_control_tokens(cleaned)


def _text_reasoning(text: str) -> str | None:
    match = _TEXT_REASONING_RE.search(text)
    if match is None:
        return None
    return match.group(1).strip()


def _passthrough(text: str) -> str | None:
    return text


@dataclass(slots=True, frozen=True)
class ExtractionStrategy:
    """A named extraction step; ``apply`` returns ``None`` when it does not match."""

    name: str
    apply: Callable[[str], str | None]


STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy("final_channel", _final_channel),
    ExtractionStrategy("commentary_only", _commentary_only),
    ExtractionStrategy("strip_markers", _strip_markers),
    ExtractionStrategy("text_reasoning", _text_reasoning),
    ExtractionStrategy("passthrough", _passthrough),
)


def extract_final_answer_with_strategy(
    text: str,
    strategies: Sequence[ExtractionStrategy] = STRATEGIES,
) -> tuple[str, str]:
    """Return ``(strategy_name, answer)`` for the first matching strategy."""

    for strategy in strategies:
        result = strategy.apply(text)
        if result is not None:
            return strategy.name, result
    return "passthrough", text


def extract_final_answer(
    text: str,
    strategies: Sequence[ExtractionStrategy] = STRATEGIES,
) -> str:
    """Return the user-facing answer contained in ``text``."""

    current = text
    while True:
        name, answer = extract_final_answer_with_strategy(current, strategies)
        if len(answer) >= len(current):
            return current
        if name != "final_channel":
            LOGGER.debug("Final answer extracted with %s strategy", name)
        current = answer


def extract_analysis(text: str) -> str | None:
    """Return the analysis channel, useful for optionally showing reasoning."""

    return parse_harmony_format(text).analysis
