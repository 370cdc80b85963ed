"""Adapters package - bridge between the run manager and UI frontends."""
from __future__ import annotations

__all__ = [
    "RunEventBus",
    "RunEvent",
    "dict_to_event",
]

from extcli.adapters.event_bus import RunEventBus
from extcli.adapters.events import RunEvent, dict_to_event
