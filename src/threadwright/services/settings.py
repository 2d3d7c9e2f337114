"""Settings dataclass and environment override helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Literal, Mapping

from ..ai.client import ClientSettings

__all__ = [
    "AGENT_TYPES",
    "AgentType",
    "ProviderName",
    "Settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

AgentType = Literal["default", "fast", "explore"]
AGENT_TYPES: tuple[str, ...] = ("default", "fast", "explore")
ProviderName = Literal["anthropic", "openai", "mock"]
_PROVIDER_NAMES: tuple[str, ...] = ("anthropic", "openai", "mock")

_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADWRIGHT_PROVIDER": "provider",
    "THREADWRIGHT_API_KEY": "api_key",
    "THREADWRIGHT_BASE_URL": "base_url",
    "THREADWRIGHT_MODEL": "model",
    "THREADWRIGHT_FAST_MODEL": "fast_model",
    "THREADWRIGHT_EXPLORE_MODEL": "explore_model",
    "THREADWRIGHT_ORGANIZATION": "organization",
    "THREADWRIGHT_LOG_DIR": "log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADWRIGHT_DEBUG_LOGGING": "debug_logging",
    "THREADWRIGHT_DISABLE_CACHING": "disable_caching",
    "THREADWRIGHT_PARALLEL_TOOL_CALLS": "parallel_tool_calls",
    "THREADWRIGHT_AUTO_TITLE": "auto_title",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADWRIGHT_REQUEST_TIMEOUT": "request_timeout",
    "THREADWRIGHT_RETRY_MIN_SECONDS": "retry_min_seconds",
    "THREADWRIGHT_RETRY_MAX_SECONDS": "retry_max_seconds",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "THREADWRIGHT_MAX_RETRIES": "max_retries",
    "THREADWRIGHT_MAX_CONCURRENT_SUBAGENTS": "max_concurrent_subagents",
    "THREADWRIGHT_MAX_INVALID_TOOL_TURNS": "max_invalid_tool_turns",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """Runtime configuration shared by providers, threads, and the orchestrator."""

    provider: ProviderName = "anthropic"
    base_url: str | None = None
    api_key: str = ""
    organization: str | None = None
    model: str = "claude-sonnet-4-5"
    fast_model: str = "claude-haiku-4-5"
    explore_model: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_concurrent_subagents: int = 3
    max_invalid_tool_turns: int = 3
    parallel_tool_calls: bool = True
    disable_caching: bool = False
    auto_title: bool = True
    debug_logging: bool = False
    log_dir: str | None = None

    def clamp(self) -> Settings:
        """Clamp values into safe operating ranges and return ``self``."""

        if self.provider not in _PROVIDER_NAMES:
            LOGGER.warning("Unknown provider %r; falling back to anthropic", self.provider)
            self.provider = "anthropic"
        self.max_retries = max(1, int(self.max_retries or 1))
        self.retry_min_seconds = max(0.05, float(self.retry_min_seconds))
        self.retry_max_seconds = max(self.retry_min_seconds, float(self.retry_max_seconds))
        self.max_concurrent_subagents = max(1, int(self.max_concurrent_subagents or 1))
        self.max_invalid_tool_turns = max(1, int(self.max_invalid_tool_turns or 1))
        return self

    def model_for_agent_type(self, agent_type: str | None) -> str:
        """Return the model configured for *agent_type* (``default`` when unknown)."""

        if agent_type == "fast":
            return self.fast_model or self.model
        if agent_type == "explore":
            return self.explore_model or self.fast_model or self.model
        return self.model

    def client_settings(self, model: str | None = None) -> ClientSettings:
        """Project these settings onto the subset consumed by provider adapters."""

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=model or self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            debug_logging=self.debug_logging,
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, *, base: Settings | None = None) -> Settings:
        """Return settings with ``THREADWRIGHT_*`` environment overrides applied."""

        source = os.environ if env is None else env
        settings = base if base is not None else cls()
        overrides = _collect_env_overrides(source)
        if overrides:
            LOGGER.debug("Applying environment overrides: %s", sorted(overrides))
            settings = replace(settings, **overrides)
        return settings.clamp()

    def as_dict(self, *, redact: bool = True) -> Dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        if redact:
            payload["api_key"] = redact_secret(self.api_key)
        return payload


def _collect_env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is not None:
            overrides[field_name] = value
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
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
    return overrides


def redact_secret(value: str | None) -> str:
    """Return a display-safe rendition of an API key."""

    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}…{value[-4:]}"
