"""Tool registry and JSON-schema validation of tool input."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Sequence

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from ..ai_types import InvalidToolRequest, ToolRequest, ToolRequestResult, ToolSpec
from .base import BaseTool
from .errors import ValidationError

LOGGER = logging.getLogger(__name__)

MAX_SCHEMA_ERRORS = 5


def format_schema_path(path: Sequence[Any]) -> str:
    if not path:
        return ""
    components: list[str] = []
    for segment in path:
        if isinstance(segment, int):
            if components:
                components[-1] = f"{components[-1]}[{segment}]"
            else:
                components.append(f"[{segment}]")
        else:
            components.append(str(segment))
    return ".".join(filter(None, components))


def schema_errors(validator: Draft7Validator, value: Any) -> list[str]:
    """Return human-readable validation errors, capped at ``MAX_SCHEMA_ERRORS``."""

    messages: list[str] = []
    for issue in sorted(validator.iter_errors(value), key=lambda item: list(item.absolute_path)):
        path = format_schema_path(issue.absolute_path)
        messages.append(f"{path}: {issue.message}" if path else issue.message)
        if len(messages) >= MAX_SCHEMA_ERRORS:
            messages.append("Too many validation errors; stopping early.")
            break
    return messages


class ToolRegistry:
    """Name-indexed tool implementations with cached schema validators."""

    def __init__(self, tools: Iterable[BaseTool] = ()) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._validators: dict[str, Draft7Validator] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        name = tool.name
        if not name:
            raise ValueError("Tools must declare a spec with a name")
        try:
            Draft7Validator.check_schema(dict(tool.spec.input_schema))
        except SchemaError as exc:
            raise ValueError(f"Tool {name} declares an invalid input schema: {exc.message}") from exc
        self._tools[name] = tool
        self._validators[name] = Draft7Validator(dict(tool.spec.input_schema))

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._tools)

    def specs(self, names: Iterable[str] | None = None) -> list[ToolSpec]:
        if names is None:
            return [tool.spec for tool in self._tools.values()]
        return [self._tools[name].spec for name in names if name in self._tools]

    def validate_request(self, request_id: str, tool_name: str, raw_input: Any) -> ToolRequestResult:
        """Validate *raw_input* for *tool_name*; invalid input is retained, never dropped."""

        tool = self._tools.get(tool_name)
        if tool is None:
            return InvalidToolRequest(id=request_id, tool_name=tool_name, error=f"Unknown tool: {tool_name}", raw_input=raw_input)
        if not isinstance(raw_input, Mapping):
            return InvalidToolRequest(
                id=request_id,
                tool_name=tool_name,
                error=f"expected tool input to be an object but it was {type(raw_input).__name__}",
                raw_input=raw_input,
            )
        errors = schema_errors(self._validators[tool_name], raw_input)
        if errors:
            LOGGER.debug("Tool %s input failed schema validation: %s", tool_name, errors)
            return InvalidToolRequest(id=request_id, tool_name=tool_name, error="; ".join(errors), raw_input=raw_input)
        try:
            tool.validate(raw_input)
        except ValidationError as exc:
            return InvalidToolRequest(id=request_id, tool_name=tool_name, error=exc.message, raw_input=raw_input)
        return ToolRequest(id=request_id, tool_name=tool_name, input=dict(raw_input))


__all__ = ["MAX_SCHEMA_ERRORS", "ToolRegistry", "format_schema_path", "schema_errors"]
