"""compact tool: rewrite history ranges between checkpoints into summaries."""

from __future__ import annotations

from typing import Any, ClassVar, Mapping

from ..ai_types import ToolRequest, ToolSpec
from ..orchestration.compaction import COMPACT_TOOL_NAME, CompactReplacement
from .base import BaseTool, ToolContext
from .errors import ErrorCode, OrchestrationError, ValidationError

COMPACTED_TEXT = "Thread compacted successfully."

COMPACT_SPEC = ToolSpec(
    name=COMPACT_TOOL_NAME,
    description=(
        "Compact the conversation thread by replacing message ranges with summaries.\n\n"
        "Checkpoints are markers in the conversation (format: <checkpoint:xxxxxx>) that appear at the end of "
        "user messages. Each replacement specifies:\n"
        "- from: checkpoint id to start from (omit to start from beginning of thread)\n"
        "- to: checkpoint id to end at (omit to go to end of thread)\n"
        "- summary: text to replace the range with (empty string deletes the range)\n\n"
        "Thinking blocks and system reminders after the range are stripped. Checkpoint markers are preserved "
        "for future compactions. To keep working after compaction, pass a continuation message."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "replacements": {
                "type": "array",
                "description": "Array of replacements to apply to the thread.",
                "items": {
                    "type": "object",
                    "properties": {
                        "from": {
                            "type": "string",
                            "description": "Checkpoint ID to start replacement from. Omit to start from beginning of thread.",
                        },
                        "to": {
                            "type": "string",
                            "description": "Checkpoint ID to end replacement at. Omit to replace to end of thread.",
                        },
                        "summary": {
                            "type": "string",
                            "description": "Text to replace the range with. Use empty string to delete the range.",
                        },
                    },
                    "required": ["summary"],
                },
            },
            "continuation": {
                "type": "string",
                "description": "Optional message appended after compaction; the agent continues from it.",
            },
        },
        "required": ["replacements"],
    },
)


def parse_compact_input(params: Mapping[str, Any]) -> tuple[list[CompactReplacement], str | None]:
    replacements = [CompactReplacement.from_dict(item) for item in params.get("replacements") or ()]
    continuation = params.get("continuation") or None
    return replacements, continuation


class CompactTool(BaseTool):
    """Schedules compaction of the calling thread once the turn's results are in."""

    spec: ClassVar[ToolSpec] = COMPACT_SPEC

    def validate(self, params: Mapping[str, Any]) -> None:
        for index, item in enumerate(params.get("replacements") or ()):
            start, end = item.get("from"), item.get("to")
            if start is not None and start == end:
                raise ValidationError(
                    message=f"replacements[{index}]: from and to must be different checkpoints",
                    details={"index": index},
                )

    async def execute(self, request: ToolRequest, context: ToolContext) -> str:
        thread = context.registry.get_thread(context.thread_id) if context.registry is not None else None
        if thread is None:
            raise OrchestrationError(
                error_code=ErrorCode.THREAD_NOT_FOUND,
                message=f"Thread {context.thread_id} not found",
                thread_id=context.thread_id,
            )
        replacements, continuation = parse_compact_input(request.input)
        thread.request_compaction(replacements, continuation)
        return COMPACTED_TEXT


__all__ = ["COMPACTED_TEXT", "COMPACT_SPEC", "CompactTool", "parse_compact_input"]
