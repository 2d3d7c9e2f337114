"""Tool execution, subagent fan-out, and history compaction."""
