"""Event types emitted by the run manager.

Each event corresponds to a run-manager event dict, parsed into a
typed dataclass for UI consumers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class RunEvent:
    """Base event for one external CLI run."""
    event_type: str = ""
    run_id: str = ""
    session_id: str = ""
    provider: str = ""
    timestamp: int = 0


@dataclass
class RunCreated(RunEvent):
    event_type: str = "run_created"
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunStatusChanged(RunEvent):
    event_type: str = "run_status_changed"
    old_status: str = ""
    new_status: str = ""
    summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class RunProgress(RunEvent):
    event_type: str = "run_progress"
    kind: str = ""
    message: str = ""


@dataclass
class InteractionRequested(RunEvent):
    event_type: str = "interaction_requested"
    interaction: dict[str, Any] = field(default_factory=dict)


@dataclass
class InteractionResolved(RunEvent):
    event_type: str = "interaction_resolved"
    interaction_id: str = ""


_EVENT_MAP: dict[str, type[RunEvent]] = {
    "run_created": RunCreated,
    "run_status_changed": RunStatusChanged,
    "run_progress": RunProgress,
    "interaction_requested": InteractionRequested,
    "interaction_resolved": InteractionResolved,
}


def dict_to_event(data: dict[str, Any]) -> RunEvent:
    """Convert a run-manager event dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, RunEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
