"""Tests for shared client plumbing: token counting, retries, provider factory."""

from __future__ import annotations

import logging

import httpx
import pytest

from threadwright.ai.agents.conversation import Agent, AgentConfig
from threadwright.ai.ai_types import TextBlock
from threadwright.ai.client import (
    ApproxByteCounter,
    ClientSettings,
    TokenCounterRegistry,
    build_retrying,
    close_client,
    log_payload,
)
from threadwright.ai.providers import create_provider
from threadwright.ai.providers.anthropic import AnthropicProvider
from threadwright.ai.providers.mock import MockProvider
from threadwright.services import telemetry as telemetry_service
from threadwright.services.settings import Settings


class _FakeCounter:
    def __init__(self, *, multiplier: int, model_name: str) -> None:
        self.multiplier = multiplier
        self.model_name = model_name

    def count(self, text: str) -> int:
        return len(text) * self.multiplier

    def estimate(self, text: str) -> int:
        return len(text)


class _BrokenCounter:
    model_name = "stub"

    def count(self, text: str) -> int:
        raise RuntimeError("boom")

    def estimate(self, text: str) -> int:
        return len(text) + 5


def test_approx_counter_rounds_up_bytes() -> None:
    counter = ApproxByteCounter()

    assert counter.count("") == 0
    assert counter.count("abc") == 1
    assert counter.count("abcdefghi") == 3


def test_registry_handles_missing_models() -> None:
    registry = TokenCounterRegistry(fallback=ApproxByteCounter())
    registry.register("Fake", _FakeCounter(multiplier=2, model_name="fake"))

    assert registry.count("fake", "abc") == 6
    assert registry.count("missing", "abcd") == 1
    assert registry.has("FAKE")


def test_registry_falls_back_to_estimate_when_counter_breaks() -> None:
    registry = TokenCounterRegistry()
    registry.register("stub-model", _BrokenCounter())

    assert registry.count("stub-model", "hello") == len("hello") + 5


def test_register_requires_model_name() -> None:
    with pytest.raises(ValueError):
        TokenCounterRegistry().register("  ", ApproxByteCounter())


@pytest.mark.asyncio
async def test_turn_started_event_carries_token_estimate(provider: MockProvider) -> None:
    events: list[dict] = []
    telemetry_service.register_event_listener("agent.turn_started", events.append)
    agent = Agent(provider, AgentConfig(model="test-model", system_prompt=None), thread_id=3)
    agent.append_user_message(TextBlock(text="x" * 40))

    task = agent.continue_conversation()
    (await provider.next_stream_request()).respond(text="ok")
    await task

    (event,) = events
    assert event["thread_id"] == 3
    assert event["message_count"] == 1
    # empty system prompt joined with 40 bytes of text
    assert event["estimated_input_tokens"] == 11


@pytest.mark.asyncio
async def test_build_retrying_retries_listed_errors_then_reraises() -> None:
    settings = ClientSettings(api_key="k", model="m", max_retries=3, retry_min_seconds=0.001, retry_max_seconds=0.001)
    attempts = 0

    with pytest.raises(httpx.ConnectError):
        async for attempt in build_retrying(settings, (httpx.ConnectError,)):
            with attempt:
                attempts += 1
                raise httpx.ConnectError("refused")

    assert attempts == 3


@pytest.mark.asyncio
async def test_build_retrying_does_not_retry_other_errors() -> None:
    settings = ClientSettings(api_key="k", model="m", max_retries=3, retry_min_seconds=0.001, retry_max_seconds=0.001)
    attempts = 0

    with pytest.raises(ValueError):
        async for attempt in build_retrying(settings, (httpx.ConnectError,)):
            with attempt:
                attempts += 1
                raise ValueError("bad request")

    assert attempts == 1


def test_log_payload_serializes_to_debug(caplog) -> None:
    logger = logging.getLogger("threadwright.test.payload")
    with caplog.at_level(logging.DEBUG, logger="threadwright.test.payload"):
        log_payload(logger, "Request", {"model": "m", "stream": True})

    assert '"model": "m"' in caplog.text


@pytest.mark.asyncio
async def test_close_client_accepts_sync_and_async_close() -> None:
    closed: list[str] = []

    class _Sync:
        def close(self) -> None:
            closed.append("sync")

    class _Async:
        async def close(self) -> None:
            closed.append("async")

    await close_client(_Sync())
    await close_client(_Async())
    await close_client(object())

    assert closed == ["sync", "async"]


@pytest.mark.asyncio
async def test_create_provider_follows_settings() -> None:
    mock = create_provider(Settings(provider="mock", parallel_tool_calls=False))
    anthropic_provider = create_provider(Settings(provider="anthropic", api_key="k", model="claude-test"))

    assert isinstance(mock, MockProvider)
    assert mock.supports_parallel_tool_use is False
    assert isinstance(anthropic_provider, AnthropicProvider)
    assert anthropic_provider.settings.model == "claude-test"
