"""Prompt-cache hint placement over wire-format message lists.

Both helpers take Anthropic-style message params (``{"role", "content":
[block, ...]}``) and return new lists; input messages and blocks are
never mutated.
"""

from __future__ import annotations

import json
import math
from typing import Any, Mapping, Sequence

STR_CHARS_PER_TOKEN = 4
MAX_BREAKPOINTS = 4
MIN_CACHEABLE_TOKENS = 1024
_EPHEMERAL = {"type": "ephemeral"}
_UNCACHEABLE_TYPES = frozenset({"thinking", "redacted_thinking"})


def highest_powers_of_two(n: int, count: int) -> list[int]:
    """Return up to *count* descending powers of two that are <= *n*."""

    if n < 1 or count < 1:
        return []
    result: list[int] = []
    power = int(math.floor(math.log2(n)))
    while len(result) < count and power >= 0:
        result.append(2**power)
        power -= 1
    return result


def block_length(block: Mapping[str, Any]) -> int:
    """Approximate character length of one wire block; thinking counts as zero."""

    block_type = block.get("type")
    if block_type == "text":
        return len(block.get("text", ""))
    if block_type in ("image", "document"):
        source = block.get("source") or {}
        return len(source.get("data", "")) if isinstance(source, Mapping) else 0
    if block_type in ("tool_use", "server_tool_use"):
        return len(json.dumps(block.get("input", {}), separators=(",", ":")))
    if block_type == "tool_result":
        content = block.get("content")
        if isinstance(content, str):
            return len(content)
        if isinstance(content, list):
            return sum(block_length(item) for item in content if isinstance(item, Mapping))
        return 0
    return 0


def _copy_messages(messages: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    copied: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, list):
            content = [dict(block) for block in content]
        copied.append({**message, "content": content})
    return copied


def place_cache_breakpoints(messages: Sequence[Mapping[str, Any]]) -> tuple[list[dict[str, Any]], int]:
    """Mark blocks at power-of-two token boundaries with ``cache_control``.

    Returns the copied messages and the number of blocks actually marked.
    """

    copied = _copy_messages(messages)
    positions: list[tuple[dict[str, Any], int]] = []
    total = 0
    for message in copied:
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for block in content:
            total += block_length(block)
            positions.append((block, total))

    tokens = total // STR_CHARS_PER_TOKEN
    powers = [power for power in highest_powers_of_two(tokens, MAX_BREAKPOINTS) if power >= MIN_CACHEABLE_TOKENS]
    placed = 0
    for power in powers:
        target = power * STR_CHARS_PER_TOKEN
        entry = next((block for block, acc in positions if acc > target), None)
        if entry is None or entry.get("type") in _UNCACHEABLE_TYPES or "cache_control" in entry:
            continue
        entry["cache_control"] = dict(_EPHEMERAL)
        placed += 1
    return copied, placed


def with_cache_control(messages: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Mark the last cacheable block of the conversation."""

    copied = _copy_messages(messages)
    for message in reversed(copied):
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for block in reversed(content):
            if block.get("type") not in _UNCACHEABLE_TYPES:
                block["cache_control"] = dict(_EPHEMERAL)
                return copied
    return copied


__all__ = [
    "MAX_BREAKPOINTS",
    "MIN_CACHEABLE_TOKENS",
    "STR_CHARS_PER_TOKEN",
    "block_length",
    "highest_powers_of_two",
    "place_cache_breakpoints",
    "with_cache_control",
]
