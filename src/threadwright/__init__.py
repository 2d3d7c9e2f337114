"""Conversation and subagent orchestration engine for tool-using language models."""

__version__ = "0.1.0"
