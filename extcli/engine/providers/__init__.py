"""Adapters that drive the external agent CLIs."""
from .base import (
    AdapterCallbacks,
    AdapterStartInput,
    ExternalCliAdapter,
    InteractionRequest,
)
from .registry import create_adapter

__all__ = [
    "AdapterCallbacks",
    "AdapterStartInput",
    "ExternalCliAdapter",
    "InteractionRequest",
    "create_adapter",
    "CodexAppServerAdapter",
    "ClaudeAgentAdapter",
]


def __getattr__(name: str):
    if name == "CodexAppServerAdapter":
        from .codex_adapter import CodexAppServerAdapter
        return CodexAppServerAdapter
    if name == "ClaudeAgentAdapter":
        from .claude_adapter import ClaudeAgentAdapter
        return ClaudeAgentAdapter
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
