"""Checkpoint-addressed history compaction.

A replacement ``{from?, to?, summary}`` deletes everything between two
checkpoint markers (inclusive of the ``to`` marker) and puts ``summary``
in its place as a user-role text block. The summary keeps the last
checkpoint it consumed so later compactions can address the same point.
Thinking blocks and system reminders are stripped from what follows the
range. An empty summary is a pure deletion.

Replacements are applied from the one whose ``to`` lies latest in the
thread to the earliest, so positions that have not been rewritten yet
stay valid.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Union

from ..ai_types import (
    CheckpointBlock,
    ContentBlock,
    Message,
    RedactedThinkingBlock,
    Role,
    SystemReminderBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

LOGGER = logging.getLogger(__name__)

COMPACT_TOOL_NAME = "compact"

_END_OF_MESSAGE = sys.maxsize


@dataclass(frozen=True, slots=True)
class CompactReplacement:
    summary: str
    from_checkpoint: str | None = None
    to_checkpoint: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CompactReplacement":
        return cls(
            summary=str(data.get("summary") or ""),
            from_checkpoint=data.get("from") or None,
            to_checkpoint=data.get("to") or None,
        )


@dataclass(frozen=True, slots=True)
class _At:
    msg_idx: int
    block_idx: int


@dataclass(frozen=True, slots=True)
class _Summarized:
    """Checkpoint consumed by an earlier replacement; points at its summary."""

    msg_idx: int


@dataclass(frozen=True, slots=True)
class _End:
    """Checkpoint cut off by truncation; addresses the end of the thread."""


CheckpointPosition = Union[_At, _Summarized, _End]


def build_checkpoint_map(messages: Sequence[Message]) -> dict[str, CheckpointPosition]:
    positions: dict[str, CheckpointPosition] = {}
    for msg_idx, message in enumerate(messages):
        for block_idx, block in enumerate(message.content):
            if isinstance(block, CheckpointBlock):
                positions[block.id] = _At(msg_idx, block_idx)
    return positions


def _resolve_from(
    checkpoint_id: str | None,
    positions: Mapping[str, CheckpointPosition],
    message_count: int,
) -> tuple[int, int]:
    position = positions.get(checkpoint_id) if checkpoint_id else None
    match position:
        case _At(msg_idx=msg_idx, block_idx=block_idx):
            return msg_idx, block_idx
        case _Summarized(msg_idx=msg_idx):
            return msg_idx, -1
        case _End():
            return message_count - 1, _END_OF_MESSAGE
        case None:
            return 0, -1
    raise AssertionError(f"unhandled checkpoint position {position!r}")


def _resolve_to(
    checkpoint_id: str | None,
    positions: Mapping[str, CheckpointPosition],
    message_count: int,
) -> tuple[int, int]:
    position = positions.get(checkpoint_id) if checkpoint_id else None
    match position:
        case _At(msg_idx=msg_idx, block_idx=block_idx):
            return msg_idx, block_idx
        case _Summarized(msg_idx=msg_idx):
            return msg_idx, -1
        case _End() | None:
            return message_count - 1, _END_OF_MESSAGE
    raise AssertionError(f"unhandled checkpoint position {position!r}")


def strip_system_reminders(blocks: Iterable[ContentBlock]) -> tuple[ContentBlock, ...]:
    return tuple(block for block in blocks if not isinstance(block, SystemReminderBlock))


def strip_thinking(blocks: Iterable[ContentBlock]) -> tuple[ContentBlock, ...]:
    return tuple(block for block in blocks if not isinstance(block, (ThinkingBlock, RedactedThinkingBlock)))


def _strip_ephemeral(message: Message, blocks: Iterable[ContentBlock]) -> tuple[ContentBlock, ...]:
    if message.role == Role.ASSISTANT:
        return strip_thinking(blocks)
    return strip_system_reminders(blocks)


def merge_adjacent_messages(messages: Sequence[Message]) -> list[Message]:
    merged: list[Message] = []
    for message in messages:
        if not message.content:
            continue
        if merged and merged[-1].role == message.role:
            merged[-1] = Message(role=message.role, content=merged[-1].content + message.content)
        else:
            merged.append(message)
    return merged


def apply_replacement(
    messages: Sequence[Message],
    replacement: CompactReplacement,
    positions: dict[str, CheckpointPosition],
) -> list[Message]:
    """Apply one replacement and update *positions* in place."""

    if not messages:
        return []
    from_msg, from_block = _resolve_from(replacement.from_checkpoint, positions, len(messages))
    to_msg, to_block = _resolve_to(replacement.to_checkpoint, positions, len(messages))
    if (to_msg, to_block) < (from_msg, from_block):
        LOGGER.warning(
            "Skipping compaction range %s..%s: end precedes start",
            replacement.from_checkpoint,
            replacement.to_checkpoint,
        )
        return list(messages)

    result: list[Message] = list(messages[:from_msg])

    if from_block >= 0 and from_msg < len(messages):
        head = messages[from_msg]
        kept = strip_system_reminders(head.content[: from_block + 1])
        if kept:
            result.append(Message(role=head.role, content=kept))

    in_range: list[tuple[int, int, str]] = []
    for checkpoint_id, position in positions.items():
        if not isinstance(position, _At):
            continue
        at = (position.msg_idx, position.block_idx)
        if (from_msg, from_block) < at <= (to_msg, to_block):
            in_range.append((position.msg_idx, position.block_idx, checkpoint_id))
    consumed = [checkpoint_id for _msg, _block, checkpoint_id in sorted(in_range)]

    summary_idx = len(result)
    if replacement.summary.strip():
        summary_blocks: list[ContentBlock] = [TextBlock(text=replacement.summary)]
        if consumed:
            summary_blocks.append(CheckpointBlock(id=consumed[-1]))
        result.append(Message(role=Role.USER, content=tuple(summary_blocks)))

    if to_block != _END_OF_MESSAGE and to_msg < len(messages):
        tail = messages[to_msg]
        kept = _strip_ephemeral(tail, tail.content[to_block + 1 :])
        if kept:
            result.append(Message(role=tail.role, content=kept))

    resume_at = len(messages) if to_block == _END_OF_MESSAGE else to_msg + 1
    for message in messages[resume_at:]:
        kept = _strip_ephemeral(message, message.content)
        if kept:
            result.append(Message(role=message.role, content=kept))

    refreshed = build_checkpoint_map(result)
    shift = len(result) - len(messages)
    for checkpoint_id, position in positions.items():
        if checkpoint_id in refreshed:
            continue
        if checkpoint_id in consumed:
            refreshed[checkpoint_id] = _Summarized(summary_idx)
        elif isinstance(position, _Summarized):
            if position.msg_idx > to_msg:
                refreshed[checkpoint_id] = _Summarized(position.msg_idx + shift)
            elif position.msg_idx >= from_msg:
                refreshed[checkpoint_id] = _Summarized(summary_idx)
            else:
                refreshed[checkpoint_id] = position
        elif isinstance(position, _End):
            refreshed[checkpoint_id] = position
    positions.clear()
    positions.update(refreshed)
    return result


def compact_messages(
    messages: Sequence[Message],
    replacements: Sequence[CompactReplacement],
    *,
    truncate_at: int | None = None,
) -> list[Message]:
    """Apply every replacement and return the merged, compacted history.

    With *truncate_at*, messages after that index are dropped first; the
    checkpoints they held resolve to the end of the truncated thread.
    """

    positions = build_checkpoint_map(messages)
    current = list(messages)
    if truncate_at is not None:
        for checkpoint_id, position in list(positions.items()):
            if isinstance(position, _At) and position.msg_idx > truncate_at:
                positions[checkpoint_id] = _End()
        current = current[: truncate_at + 1]

    def _sort_key(replacement: CompactReplacement) -> tuple[int, int]:
        return _resolve_to(replacement.to_checkpoint, positions, len(current))

    ordered = sorted(replacements, key=_sort_key, reverse=True)
    for replacement in ordered:
        current = apply_replacement(current, replacement, positions)
    return merge_adjacent_messages(current)


def trim_compact_tool_use(messages: Sequence[Message]) -> list[Message]:
    """Drop ``compact`` tool_use blocks from the last assistant turn, with their results."""

    trimmed = list(messages)
    assistant_idx = next(
        (idx for idx in range(len(trimmed) - 1, -1, -1) if trimmed[idx].role == Role.ASSISTANT),
        None,
    )
    if assistant_idx is None:
        return trimmed

    assistant = trimmed[assistant_idx]
    compact_ids = {
        block.id
        for block in assistant.content
        if isinstance(block, ToolUseBlock) and block.name == COMPACT_TOOL_NAME
    }
    if not compact_ids:
        return trimmed

    rewritten: list[Message] = trimmed[:assistant_idx]
    remaining = tuple(block for block in assistant.content if not (isinstance(block, ToolUseBlock) and block.id in compact_ids))
    if remaining:
        rewritten.append(Message(role=assistant.role, content=remaining))
    for message in trimmed[assistant_idx + 1 :]:
        content = tuple(
            block
            for block in message.content
            if not (isinstance(block, ToolResultBlock) and block.tool_use_id in compact_ids)
        )
        if content:
            rewritten.append(Message(role=message.role, content=content))
    return rewritten


__all__ = [
    "COMPACT_TOOL_NAME",
    "CompactReplacement",
    "CheckpointPosition",
    "apply_replacement",
    "build_checkpoint_map",
    "compact_messages",
    "merge_adjacent_messages",
    "strip_system_reminders",
    "strip_thinking",
    "trim_compact_tool_use",
]
