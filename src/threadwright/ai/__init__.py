"""Provider adapters, conversation agent, and tool wiring."""

from .client import ApproxByteCounter, ClientSettings, TokenCounterRegistry

__all__ = ["ClientSettings", "TokenCounterRegistry", "ApproxByteCounter"]
