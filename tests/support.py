"""Shared fakes for adapter, run-manager and tool tests."""
import asyncio
from typing import Callable

from extcli.engine.models import (
    AuthStatus,
    AvailabilityEntry,
    AvailabilitySnapshot,
    BinaryTrust,
    ExternalCliProvider,
    ProgressKind,
)
from extcli.engine.providers.base import AdapterCallbacks, ExternalCliAdapter


class Recorder:
    def __init__(self) -> None:
        self.progress: list[tuple[ProgressKind, str]] = []
        self.interactions = []
        self.resolved: list[str] = []
        self.completed: list[str | None] = []
        self.failed: list[tuple[str, str]] = []
        self.cancelled: list[str | None] = []
        self.launch: list[str] = []
        self.diagnostics: list[tuple[str, str]] = []
        self.exits: list[tuple[int | None, str | None]] = []

    def callbacks(self) -> AdapterCallbacks:
        return AdapterCallbacks(
            on_progress=lambda kind, message: self.progress.append((kind, message)),
            on_waiting_interaction=self.interactions.append,
            on_interaction_resolved=self.resolved.append,
            on_completed=self.completed.append,
            on_failed=lambda code, message: self.failed.append((code, message)),
            on_cancelled=self.cancelled.append,
            on_launch_command=self.launch.append,
            on_diagnostic_log=lambda stream, text: self.diagnostics.append((stream, text)),
            on_process_exit=lambda code, sig: self.exits.append((code, sig)),
        )

    def messages(self) -> list[str]:
        return [message for _, message in self.progress]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakeAdapter(ExternalCliAdapter):
    """Records calls and exposes the callbacks so tests can drive the run."""

    def __init__(self, provider, *, ack_cancel=True, fail_start=None, fail_respond=None):
        self._provider = provider
        self.ack_cancel = ack_cancel
        self.fail_start = fail_start
        self.fail_respond = fail_respond
        self.input = None
        self.callbacks = None
        self.responses = []
        self.cancel_reasons = []
        self.disposed = 0

    @property
    def provider(self):
        return self._provider

    async def start(self, input, callbacks):
        self.input = input
        self.callbacks = callbacks
        if self.fail_start is not None:
            raise self.fail_start
        callbacks.launch_command(f"{input.binary_path} --fake")

    async def respond(self, interaction_id, payload):
        if self.fail_respond is not None:
            raise self.fail_respond
        self.responses.append((interaction_id, payload))

    async def cancel(self, reason=None):
        self.cancel_reasons.append(reason)
        if self.ack_cancel:
            self.callbacks.on_cancelled(reason)

    async def dispose(self):
        self.disposed += 1


class FakeFactory:
    def __init__(self, **adapter_kwargs):
        self.adapter_kwargs = adapter_kwargs
        self.created: list[FakeAdapter] = []

    def __call__(self, provider):
        adapter = FakeAdapter(provider, **self.adapter_kwargs)
        self.created.append(adapter)
        return adapter

    @property
    def last(self) -> FakeAdapter:
        return self.created[-1]


def _entry(provider: ExternalCliProvider, **overrides) -> AvailabilityEntry:
    values = dict(
        provider=provider,
        installed=True,
        binary_path=f"/usr/local/bin/{provider.value}",
        binary_sha256="a" * 64,
        binary_trust=BinaryTrust.TRUSTED,
        trust_reason="Binary path is in a trusted directory.",
        version="1.0.0",
        auth_status=AuthStatus.AUTHENTICATED,
        auth_message=None,
        checked_at=0,
    )
    values.update(overrides)
    return AvailabilityEntry(**values)


class FakeDiscovery:
    def __init__(self, **codex_overrides) -> None:
        self.snapshot = AvailabilitySnapshot(
            codex=_entry(ExternalCliProvider.CODEX, **codex_overrides),
            claude=_entry(ExternalCliProvider.CLAUDE),
            checked_at=0,
            ttl_ms=30_000,
        )

    async def get_availability(self, force_refresh: bool = False):
        return self.snapshot
