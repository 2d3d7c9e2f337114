"""Checkpoint identifiers embedded in user messages."""

from __future__ import annotations

import itertools
import secrets
import string

from ..ai.ai_types import CheckpointBlock

ID_LENGTH = 6
ID_CHARS = string.ascii_lowercase + string.digits

_sequential = False
_counter = itertools.count()


def enable_sequential_checkpoint_ids() -> None:
    """Use zero-padded counters instead of random ids (deterministic tests)."""

    global _sequential, _counter
    _sequential = True
    _counter = itertools.count()


def disable_sequential_checkpoint_ids() -> None:
    global _sequential, _counter
    _sequential = False
    _counter = itertools.count()


def generate_checkpoint_id() -> str:
    if _sequential:
        return str(next(_counter)).zfill(ID_LENGTH)
    return "".join(secrets.choice(ID_CHARS) for _ in range(ID_LENGTH))


def new_checkpoint() -> CheckpointBlock:
    return CheckpointBlock(id=generate_checkpoint_id())


__all__ = [
    "ID_CHARS",
    "ID_LENGTH",
    "disable_sequential_checkpoint_ids",
    "enable_sequential_checkpoint_ids",
    "generate_checkpoint_id",
    "new_checkpoint",
]
