"""Tool-schema sanitization for backends with partial JSON-Schema support."""

from __future__ import annotations

import copy
import json
from typing import Any, Mapping

from ..ai_types import ToolSpec

UNSUPPORTED_FORMATS: frozenset[str] = frozenset(
    {
        "uri",
        "uri-reference",
        "uri-template",
        "date-time",
        "date",
        "time",
        "email",
        "hostname",
        "ipv4",
        "ipv6",
        "uuid",
        "regex",
        "json-pointer",
    }
)

_FORMAT_DESCRIPTIONS: Mapping[str, str] = {
    "uri": "A valid URI string",
    "uri-reference": "A valid URI string",
    "date-time": 'A date-time string (e.g., "2023-12-01T10:30:00Z")',
    "date": 'A date string (e.g., "2023-12-01")',
    "email": "A valid email address",
}


def describe_format(fmt: str) -> str:
    return _FORMAT_DESCRIPTIONS.get(fmt, f"A string in {json.dumps(fmt)} format")


def strip_unsupported_formats(schema: Any) -> Any:
    """Return a copy of *schema* with unsupported ``format`` keywords replaced by descriptions."""

    if isinstance(schema, list):
        return [strip_unsupported_formats(item) for item in schema]
    if not isinstance(schema, Mapping):
        return schema

    sanitized: dict[str, Any] = {}
    fmt = schema.get("format")
    drop_format = isinstance(fmt, str) and fmt in UNSUPPORTED_FORMATS
    for key, value in schema.items():
        if key == "format":
            if not drop_format:
                sanitized[key] = value
            continue
        sanitized[key] = strip_unsupported_formats(value) if isinstance(value, (Mapping, list)) else value
    if drop_format and not sanitized.get("description"):
        sanitized["description"] = describe_format(fmt)
    return sanitized


def sanitize_tool_schema(schema: Mapping[str, Any]) -> dict[str, Any]:
    """Prepare *schema* for strict-mode backends.

    Unsupported formats are removed at every depth. A top-level object
    schema additionally gets ``additionalProperties: false`` and lists every
    property as required. The caller's schema is never mutated.
    """

    sanitized = strip_unsupported_formats(copy.deepcopy(dict(schema)))
    if sanitized.get("type") != "object":
        return sanitized
    sanitized["additionalProperties"] = False
    properties = sanitized.get("properties")
    if isinstance(properties, Mapping):
        sanitized["required"] = list(properties.keys())
    else:
        sanitized["required"] = []
    return sanitized


def sanitize_tool_spec(spec: ToolSpec) -> ToolSpec:
    return ToolSpec(name=spec.name, description=spec.description, input_schema=sanitize_tool_schema(spec.input_schema))


__all__ = [
    "UNSUPPORTED_FORMATS",
    "describe_format",
    "sanitize_tool_schema",
    "sanitize_tool_spec",
    "strip_unsupported_formats",
]
