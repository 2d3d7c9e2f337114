"""Shared pytest fixtures."""

from __future__ import annotations

import logging

import pytest

from threadwright.ai.providers.mock import MockProvider
from threadwright.chat.checkpoint import disable_sequential_checkpoint_ids, enable_sequential_checkpoint_ids
from threadwright.chat.registry import ThreadRegistry
from threadwright.services import telemetry as telemetry_service
from threadwright.services.settings import Settings

from tests.helpers import BashCommandTool, EchoTool


@pytest.fixture(autouse=True)
def sequential_checkpoints():
    enable_sequential_checkpoint_ids()
    yield
    disable_sequential_checkpoint_ids()


@pytest.fixture(autouse=True)
def reset_telemetry_listeners():
    yield
    telemetry_service.clear_event_listeners()


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def settings() -> Settings:
    return Settings(provider="mock", model="test-model", fast_model="test-fast", auto_title=False)


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def registry(provider: MockProvider, settings: Settings) -> ThreadRegistry:
    return ThreadRegistry(provider, settings, tools=[EchoTool(), BashCommandTool()])
