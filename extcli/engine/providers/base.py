"""Abstract base for external CLI adapters.

An adapter owns one child process for one run and translates its wire
protocol into the callback set below. The run manager never looks at
provider-specific output; it only reacts to callbacks, so adding a
provider means adding an adapter and a registry entry.

Callbacks are plain synchronous callables. They may be invoked from
the event loop or from a reader thread, and they must not block.
"""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
import logging
from typing import Any, Callable, Optional

from ..models import (
    ExternalCliProvider,
    InteractionType,
    ProgressKind,
    ResponsePayload,
)

logger = logging.getLogger(__name__)


@dataclass
class AdapterStartInput:
    """Everything an adapter needs to launch its process."""
    run_id: str
    session_id: str
    provider: ExternalCliProvider
    prompt: str
    working_directory: str
    bypass_permission: bool = False
    binary_path: str | None = None


@dataclass
class InteractionRequest:
    """A blocking prompt raised by the CLI.

    The manager turns this into a PendingInteraction by adding the run
    identity, origin and timestamp.
    """
    interaction_id: str
    type: InteractionType
    prompt: str
    options: list[str] | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class AdapterCallbacks:
    """Notifications from an adapter to the run manager."""
    on_progress: Callable[[ProgressKind, str], None]
    on_waiting_interaction: Callable[[InteractionRequest], None]
    on_interaction_resolved: Callable[[str], None]
    on_completed: Callable[[Optional[str]], None]
    on_failed: Callable[[str, str], None]
    on_cancelled: Callable[[Optional[str]], None]
    # Observability hooks
    on_launch_command: Optional[Callable[[str], None]] = None
    on_diagnostic_log: Optional[Callable[[str, str], None]] = None
    on_process_exit: Optional[Callable[[Optional[int], Optional[str]], None]] = None

    def launch_command(self, command: str) -> None:
        if self.on_launch_command is not None:
            self.on_launch_command(command)

    def diagnostic(self, stream: str, text: str) -> None:
        if self.on_diagnostic_log is not None and text:
            self.on_diagnostic_log(stream, text)

    def process_exit(self, code: int | None, signal: str | None = None) -> None:
        if self.on_process_exit is not None:
            self.on_process_exit(code, signal)


class ExternalCliAdapter(abc.ABC):
    """Abstract adapter interface.

    Implementations:
    - CodexAppServerAdapter: ``codex app-server`` JSON-RPC over stdio
    - ClaudeAgentAdapter: Claude Agent SDK ``query()``
    """

    @property
    @abc.abstractmethod
    def provider(self) -> ExternalCliProvider:
        """Which CLI this adapter drives."""

    @abc.abstractmethod
    async def start(
        self, input: AdapterStartInput, callbacks: AdapterCallbacks,
    ) -> None:
        """Launch the process and begin reporting through *callbacks*.

        Returns once the run is under way. Raises if the process could
        not be started; later failures go through ``on_failed``.
        """

    @abc.abstractmethod
    async def respond(
        self, interaction_id: str, payload: ResponsePayload,
    ) -> None:
        """Deliver the user's decision for a pending interaction."""

    @abc.abstractmethod
    async def cancel(self, reason: str | None = None) -> None:
        """Ask the process to stop. Acknowledged via ``on_cancelled``."""

    @abc.abstractmethod
    async def dispose(self) -> None:
        """Release the process and any readers. Safe to call twice."""
