"""Runtime settings and provider-chain wiring."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping

import httpx

from ..ai.client import ClientSettings, ProviderClient
from ..ai.orchestration.fallback import ProviderFallbackChain, ProviderRoute
from ..ai.orchestration.types import AgentOptions, ReasoningLevel
from ..ai.prompts import DEFAULT_PROMPTS, PromptConfig
from ..ai.providers import DISABLED_PROVIDER, UNKNOWN_PROVIDER, get_adapter, provider_for_model
from ..ai.tools.web_search import DEFAULT_SEARCH_ENDPOINT, WebSearchTool
from .usage_tracking import UsageRecorder

__all__ = ["Settings", "redact_secret"]

LOGGER = logging.getLogger(__name__)

_ENV_OVERRIDES: Mapping[str, str] = {
    "GMI_API_KEY": "gmi_api_key",
    "DEEPINFRA_API_KEY": "deepinfra_api_key",
    "CEREBRAS_API_KEY": "cerebras_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "SERPER_API_KEY": "serper_api_key",
    "FREIRE_SEARCH_ENDPOINT": "search_endpoint",
    "FREIRE_REASONING_LEVEL": "reasoning_level",
    "FREIRE_LOG_DIR": "log_dir",
}
_LIST_ENV_OVERRIDES: Mapping[str, str] = {
    "FREIRE_FALLBACK_MODELS": "fallback_models",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "FREIRE_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "FREIRE_REQUEST_TIMEOUT": "request_timeout",
    "FREIRE_SEARCH_TIMEOUT": "search_timeout",
    "FREIRE_TEMPERATURE": "temperature",
    "FREIRE_RETRY_MIN_SECONDS": "retry_min_seconds",
    "FREIRE_RETRY_MAX_SECONDS": "retry_max_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "FREIRE_MAX_RETRIES": "max_retries",
    "FREIRE_MAX_ITERATIONS": "max_iterations",
    "FREIRE_MAX_TOOL_CALLS": "max_tool_calls",
    "FREIRE_MAX_TOKENS": "max_tokens",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

# Provider name to the settings field holding its API key.
_PROVIDER_KEY_FIELDS: Mapping[str, str] = {
    "gmicloud": "gmi_api_key",
    "deepinfra": "deepinfra_api_key",
    "cerebras": "cerebras_api_key",
    "openai": "openai_api_key",
}


@dataclass(slots=True)
class Settings:
    """Service configuration, normally built with :meth:`from_env`."""

    fallback_models: tuple[str, ...] = (
        "gmi/gpt-oss-120b",
        "cerebras/gpt-oss-120b",
        "openai/gpt-oss-20b",
    )
    gmi_api_key: str = ""
    deepinfra_api_key: str = ""
    cerebras_api_key: str = ""
    openai_api_key: str = ""
    serper_api_key: str = ""
    search_endpoint: str = DEFAULT_SEARCH_ENDPOINT
    search_timeout: float = 30.0
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_iterations: int = 4
    max_tool_calls: int = 1
    max_tokens: int = 2_000
    temperature: float = 0.7
    reasoning_level: ReasoningLevel = "high"
    debug_logging: bool = False
    log_dir: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        base: Settings | None = None,
    ) -> Settings:
        """Apply environment overrides on top of ``base`` (defaults when omitted)."""

        env = os.environ if environ is None else environ
        settings = base or cls()
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip()
        for env_name, field_name in _LIST_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = tuple(part.strip() for part in value.split(",") if part.strip())
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = env.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        reasoning = overrides.get("reasoning_level")
        if reasoning is not None and reasoning not in ("low", "high"):
            LOGGER.warning("Ignoring unsupported reasoning level %r", reasoning)
            overrides.pop("reasoning_level")
        if overrides:
            settings = settings._with_overrides(overrides, source="environment")
        return settings

    def _with_overrides(self, overrides: Mapping[str, Any], *, source: str) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if not filtered:
            return self
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
        return replace(self, **filtered)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    def api_key_for(self, provider: str) -> str:
        field_name = _PROVIDER_KEY_FIELDS.get(provider)
        if field_name is None:
            return ""
        return getattr(self, field_name)

    def default_options(self) -> AgentOptions:
        return AgentOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            max_iterations=self.max_iterations,
            max_tool_calls=self.max_tool_calls,
            reasoning_level=self.reasoning_level,
        )

    def client_settings(self, provider: str) -> ClientSettings:
        adapter = get_adapter(provider)
        return ClientSettings(
            base_url=adapter.base_url,
            api_key=self.api_key_for(provider),
            provider=adapter.name,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )

    def build_routes(self, *, http_client: httpx.AsyncClient | None = None) -> list[ProviderRoute]:
        """Resolve ``fallback_models`` into routes, in order.

        Disabled and unknown models are skipped, as are providers without an
        API key.
        """

        routes: list[ProviderRoute] = []
        for model in self.fallback_models:
            provider = provider_for_model(model)
            if provider in (DISABLED_PROVIDER, UNKNOWN_PROVIDER):
                LOGGER.info("Skipping %s model %s", provider, model)
                continue
            if not self.api_key_for(provider):
                LOGGER.warning("Skipping %s: no API key configured for %s", model, provider)
                continue
            client = ProviderClient(self.client_settings(provider), http_client=http_client)
            routes.append(ProviderRoute(model=model, adapter=get_adapter(provider), client=client))
        return routes

    def build_search_tool(self, *, http_client: httpx.AsyncClient | None = None) -> WebSearchTool:
        if not self.serper_api_key:
            LOGGER.warning("SERPER_API_KEY is not set; web searches will be rejected")
        return WebSearchTool(
            self.serper_api_key,
            endpoint=self.search_endpoint,
            http_client=http_client,
            timeout=self.search_timeout,
        )

    def build_chain(
        self,
        *,
        recorder: UsageRecorder | None = None,
        prompts: PromptConfig = DEFAULT_PROMPTS,
        http_client: httpx.AsyncClient | None = None,
    ) -> ProviderFallbackChain:
        return ProviderFallbackChain(
            self.build_routes(http_client=http_client),
            search=self.build_search_tool(http_client=http_client),
            prompts=prompts,
            recorder=recorder,
            default_options=self.default_options(),
        )

    def redacted(self) -> dict[str, Any]:
        """Field values safe to log."""

        data: dict[str, Any] = {}
        for item in fields(Settings):
            value = getattr(self, item.name)
            if item.name.endswith("_api_key"):
                value = redact_secret(value)
            data[item.name] = value
        return data


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
