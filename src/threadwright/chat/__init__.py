"""Threads, the thread registry, and checkpoint helpers."""
