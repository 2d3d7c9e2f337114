"""Fake tools and async helpers shared by the test suite."""

from __future__ import annotations

import asyncio
from typing import Any, ClassVar, Mapping

from threadwright.ai.ai_types import (
    Message,
    TextBlock,
    ToolRequest,
    ToolResultBlock,
    ToolResultError,
    ToolResultOk,
    ToolSpec,
    ToolUseBlock,
)
from threadwright.ai.providers.mock import MockProvider, MockStreamRequest
from threadwright.ai.tools.base import BaseTool, ToolContext
from threadwright.ai.tools.errors import ToolExecutionError
from threadwright.ai.tools.registry import ToolRegistry


class EchoTool(BaseTool):
    spec: ClassVar[ToolSpec] = ToolSpec(
        name="echo",
        description="Return the given text unchanged.",
        input_schema={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    )

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        return request.input["text"]


class BashCommandTool(BaseTool):
    """Pretends to run a shell command; only understands ``echo``."""

    spec: ClassVar[ToolSpec] = ToolSpec(
        name="bash_command",
        description="Run a shell command.",
        input_schema={
            "type": "object",
            "properties": {"command": {"type": "string"}},
            "required": ["command"],
        },
    )

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        command = request.input["command"]
        if not command.startswith("echo "):
            raise ToolExecutionError(message=f"Unsupported command: {command}")
        return command[len("echo ") :] + "\n"


class GateTool(BaseTool):
    """Blocks until the test opens the gate; records starts and cancellations."""

    spec: ClassVar[ToolSpec] = ToolSpec(
        name="gate",
        description="Wait for the gate to open.",
        input_schema={
            "type": "object",
            "properties": {"label": {"type": "string"}},
            "required": ["label"],
        },
    )

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.started: list[str] = []
        self.finished: list[str] = []
        self.cancelled: list[str] = []

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        label = request.input["label"]
        self.started.append(label)
        try:
            await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled.append(label)
            raise
        self.finished.append(label)
        return f"opened {label}"


class ExplodingTool(BaseTool):
    spec: ClassVar[ToolSpec] = ToolSpec(
        name="explode",
        description="Always fails.",
        input_schema={"type": "object", "properties": {}},
    )

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        raise RuntimeError("kaboom")


def tool_use(registry: ToolRegistry, tool_id: str, name: str, tool_input: Any) -> ToolUseBlock:
    return ToolUseBlock(id=tool_id, name=name, request=registry.validate_request(tool_id, name, tool_input))


def result_text(block: ToolResultBlock) -> str:
    result = block.result
    if isinstance(result, ToolResultError):
        return result.message
    assert isinstance(result, ToolResultOk)
    return "".join(item.text for item in result.content if isinstance(item, TextBlock))


def tool_results(message: Message) -> dict[str, ToolResultBlock]:
    return {block.tool_use_id: block for block in message.tool_results()}


def first_user_text(request: MockStreamRequest) -> str:
    return request.messages[0].text()


async def next_requests(provider: MockProvider, count: int) -> dict[str, MockStreamRequest]:
    """Collect *count* stream requests keyed by their first user message text."""

    requests = [await provider.next_stream_request() for _ in range(count)]
    return {first_user_text(request): request for request in requests}


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def as_mapping(value: Mapping[str, Any]) -> dict[str, Any]:
    return dict(value)
