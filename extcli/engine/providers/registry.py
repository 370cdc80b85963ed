"""Adapter registry: maps provider names to adapter factories."""
from __future__ import annotations

import logging
from typing import Callable

from ..errors import ExternalCliProtocolError
from ..models import ExternalCliProvider
from .base import ExternalCliAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ExternalCliProvider], ExternalCliAdapter]


def _codex_factory(provider: ExternalCliProvider) -> ExternalCliAdapter:
    from .codex_adapter import CodexAppServerAdapter
    return CodexAppServerAdapter()


def _claude_factory(provider: ExternalCliProvider) -> ExternalCliAdapter:
    from .claude_adapter import ClaudeAgentAdapter
    return ClaudeAgentAdapter()


_FACTORIES: dict[ExternalCliProvider, Callable[[ExternalCliProvider], ExternalCliAdapter]] = {
    ExternalCliProvider.CODEX: _codex_factory,
    ExternalCliProvider.CLAUDE: _claude_factory,
}


def create_adapter(provider: ExternalCliProvider | str) -> ExternalCliAdapter:
    """Build a fresh adapter for *provider*.

    Raises ExternalCliProtocolError for a provider with no adapter.
    """
    try:
        key = ExternalCliProvider(provider)
        factory = _FACTORIES[key]
    except (ValueError, KeyError):
        raise ExternalCliProtocolError(
            f"Unsupported external CLI provider: {provider}",
            field_name="provider",
        ) from None
    adapter = factory(key)
    logger.debug("Adapter created: %s -> %s", key.value, type(adapter).__name__)
    return adapter
