"""Shared client plumbing for provider adapters: settings, retries, token counting."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

try:  # pragma: no cover - optional dependency used when installed
    import tiktoken  # type: ignore
except Exception:  # pragma: no cover - optional fallback when package missing
    tiktoken = None

from .ai_types import TokenCounterProtocol

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_TIKTOKEN_WARNING_EMITTED = False


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        if tiktoken is None:  # pragma: no cover - depends on optional dependency
            raise RuntimeError("tiktoken is not installed")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text))
        except Exception:  # pragma: no cover - tokenizer edge cases
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        token_module: Any = tiktoken
        try:
            if encoding_name:
                return token_module.get_encoding(encoding_name)
            return token_module.encoding_for_model(model_name)
        except Exception:  # pragma: no cover - unknown model names
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return token_module.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - tokenizer edge cases
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    def ensure_counter(self, model_name: str) -> TokenCounterProtocol:
        """Register (once) and return the best available counter for *model_name*."""

        if self.has(model_name):
            return self.get(model_name)
        counter = build_token_counter(model_name)
        self.register(model_name, counter)
        return counter

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def build_token_counter(model_name: str) -> TokenCounterProtocol:
    """Return a tiktoken-backed counter when available, else the byte approximation."""

    if tiktoken is None:
        _log_tiktoken_warning_once()
        return ApproxByteCounter(model_name=model_name)
    try:
        return TiktokenCounter(model_name)
    except Exception as exc:  # pragma: no cover - logged fallback
        LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
        return ApproxByteCounter(model_name=model_name)


def _log_tiktoken_warning_once() -> None:
    global _TIKTOKEN_WARNING_EMITTED
    if _TIKTOKEN_WARNING_EMITTED:
        return
    _TIKTOKEN_WARNING_EMITTED = True
    LOGGER.warning("tiktoken is not installed; using approximate byte counter for token estimates.")


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure a backend SDK client."""

    api_key: str
    model: str
    base_url: str | None = None
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


def build_retrying(settings: ClientSettings, retry_on: tuple[type[BaseException], ...]) -> AsyncRetrying:
    """Return the tenacity policy used to (re)open provider streams."""

    return AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, settings.max_retries)),
        wait=wait_exponential(
            multiplier=settings.retry_min_seconds,
            max=settings.retry_max_seconds,
        ),
        retry=retry_if_exception_type(retry_on + (httpx.TimeoutException,)),
    )


def log_payload(logger: logging.Logger, label: str, payload: Mapping[str, Any]) -> None:
    try:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError):
        logger.debug("%s (unserializable): %s", label, payload)
    else:
        logger.debug("%s:\n%s", label, serialized)


async def close_client(client: Any) -> None:
    """Close an SDK client if it exposes ``close``; tolerates sync and async variants."""

    close = getattr(client, "close", None)
    if close is None:
        return
    try:
        result = close()
    except Exception as exc:  # pragma: no cover - best-effort shutdown
        LOGGER.debug("Client close failed to start: %s", exc)
        return
    if inspect.isawaitable(result):
        await result


__all__ = [
    "ApproxByteCounter",
    "ClientSettings",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "build_retrying",
    "build_token_counter",
    "close_client",
    "log_payload",
]
