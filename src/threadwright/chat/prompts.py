"""System prompts and reminders per agent type."""

from __future__ import annotations

from typing import Sequence

from ..services.settings import AgentType

_ROLE = """\
You are a coding assistant working inside the user's editor. You can call tools
to inspect and change the project. Keep answers short and concrete, and prefer
doing the work over describing it."""

_GUIDELINES = """\
# Guidelines
- Read before you edit; never guess at file contents.
- When a task splits into independent questions, delegate them with
  spawn_subagent (non-blocking) and collect answers with wait_for_subagents.
- For the same task over many inputs, use spawn_foreach.
- When the conversation grows long, use the compact tool to replace finished
  work with a summary. Checkpoints like <checkpoint:abc123> mark the
  boundaries you can compact between."""

_YIELD = """\
You are a subagent to a parent agent which will delegate a specific task to you.
When you are finished with the task, it is critical that you use the yield_to_parent tool."""

_FAST = """\
# Fast agent
You handle small, well-scoped tasks. Do the minimum needed and report back."""

_EXPLORE = """\
# Explore agent
Answer one specific question about the codebase. Respond with file paths, line
ranges, and short descriptions of what is there. Never paste full file contents."""

DEFAULT_SYSTEM_PROMPT = "\n\n".join((_ROLE, _GUIDELINES))

SUBAGENT_REMINDER = (
    "You are running as a subagent. Only the text you pass to yield_to_parent "
    "reaches the parent; call it exactly once when the task is done."
)

TITLE_PROMPT = """\
The user has provided the following prompt:
{message}

Come up with a succinct thread title for this prompt. It should be less than 80 characters long.
"""

FOREACH_ELEMENT_PROMPT = """\
{prompt}

You are one of several agents working in parallel on this prompt. Your task is to complete this prompt for this specific case:

{element}"""


def system_prompt_for(agent_type: AgentType, *, subagent: bool) -> str:
    sections = [_ROLE, _GUIDELINES]
    if agent_type == "fast":
        sections.append(_FAST)
    elif agent_type == "explore":
        sections.append(_EXPLORE)
    if subagent:
        sections.append(_YIELD)
    return "\n\n".join(sections)


def context_files_text(paths: Sequence[str]) -> str:
    listing = "\n".join(f"- {path}" for path in paths)
    return f"The following files were provided as context for this task:\n{listing}"


def title_prompt(message: str) -> str:
    return TITLE_PROMPT.format(message=message)


def foreach_element_prompt(prompt: str, element: str) -> str:
    return FOREACH_ELEMENT_PROMPT.format(prompt=prompt, element=element)


__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "SUBAGENT_REMINDER",
    "context_files_text",
    "foreach_element_prompt",
    "system_prompt_for",
    "title_prompt",
]
