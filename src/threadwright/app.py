"""Engine bootstrap: settings, logging, provider, and the thread registry."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Mapping, Sequence

from .ai.orchestration.tool_manager import ApprovalPolicy
from .ai.providers import Provider, create_provider
from .ai.tools.base import BaseTool, ConfirmCallback
from .chat.registry import ThreadRegistry
from .services.settings import Settings
from .services.telemetry import TelemetrySink
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)


def configure_logging(settings: Settings, *, console: bool = True, force: bool = False) -> Path:
    """Configure structured logging for the engine."""

    log_path = logging_utils.setup_logging_from_settings(settings, console=console, force=force)
    _LOGGER.debug("Logging configured (path=%s, debug=%s)", log_path, settings.debug_logging)
    return log_path


def load_settings(env: Mapping[str, str] | None = None, *, base: Settings | None = None) -> Settings:
    """Defaults overlaid with ``THREADWRIGHT_*`` environment overrides."""

    return Settings.from_env(env, base=base).clamp()


def build_registry(
    settings: Settings | None = None,
    *,
    provider: Provider | None = None,
    tools: Sequence[BaseTool] = (),
    approval_policy: ApprovalPolicy | None = None,
    confirm: ConfirmCallback | None = None,
    usage_sink: TelemetrySink | None = None,
    configure_logs: bool = True,
    console: bool = True,
    force_logging: bool = False,
) -> ThreadRegistry:
    """Wire settings, logging, and a provider into a ready :class:`ThreadRegistry`."""

    active = settings or load_settings()
    if configure_logs:
        configure_logging(active, console=console, force=force_logging)
    backend = provider or create_provider(active)
    _LOGGER.info("Starting threadwright (provider=%s, model=%s)", active.provider, active.model)
    return ThreadRegistry(
        backend,
        active,
        tools=tools,
        approval_policy=approval_policy,
        confirm=confirm,
        usage_sink=usage_sink,
    )


async def shutdown(registry: ThreadRegistry) -> None:
    """Abort running threads, wait for their drive loops, and close the provider."""

    running = []
    for summary in registry.summaries():
        thread = registry.get_thread(summary.id)
        if thread is None or not thread.busy:
            continue
        thread.abort()
        if thread.drive_task is not None:
            running.append(thread.drive_task)
    if running:
        outcomes = await asyncio.gather(*running, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, asyncio.CancelledError):
                _LOGGER.debug("Drive loop ended with %s during shutdown", outcome)

    close = getattr(registry.provider, "aclose", None)
    if close is None:
        return
    await close()
    _LOGGER.debug("Provider %s closed", getattr(registry.provider, "name", "?"))


__all__ = ["build_registry", "configure_logging", "load_settings", "shutdown"]
