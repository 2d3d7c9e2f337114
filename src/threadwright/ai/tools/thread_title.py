"""thread_title: the forced tool used to name a new thread."""

from __future__ import annotations

from typing import Any, Mapping

from ..ai_types import InvalidToolRequest, ToolRequest, ToolRequestResult, ToolSpec

MAX_TITLE_LENGTH = 80

THREAD_TITLE_SPEC = ToolSpec(
    name="thread_title",
    description="Set a title for the current conversation thread based on the user's message.",
    input_schema={
        "type": "object",
        "properties": {
            "title": {
                "type": "string",
                "description": "A short, descriptive title for the conversation thread. Should be shorter than 80 characters.",
            },
        },
        "required": ["title"],
        "additionalProperties": False,
    },
)


def validate_title_input(request_id: str, tool_name: str, raw_input: Any) -> ToolRequestResult:
    title = raw_input.get("title") if isinstance(raw_input, Mapping) else None
    if not isinstance(title, str):
        return InvalidToolRequest(
            id=request_id,
            tool_name=tool_name,
            error=f"expected req.input.title to be a string but it was {title!r}",
            raw_input=raw_input,
        )
    return ToolRequest(id=request_id, tool_name=tool_name, input={"title": title.strip()[:MAX_TITLE_LENGTH]})


__all__ = ["MAX_TITLE_LENGTH", "THREAD_TITLE_SPEC", "validate_title_input"]
