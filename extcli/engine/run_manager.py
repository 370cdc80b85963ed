"""Run manager for external CLI runs.

Owns every RunRecord and the adapter driving it. ``start_run`` gates a
launch on runtime settings and the discovery snapshot, prepares the
working directory, applies the bypass policy and hands off to an
adapter. From then on the record changes only through adapter
callbacks or the manager's own respond/cancel paths.

Concurrency:
- each run has a ``threading.RLock``; every record mutation happens
  under that lock because callbacks may arrive from any thread
- ``respond`` and ``cancel`` on the same run are serialized by a
  per-run ``asyncio.Lock``
- terminal acknowledgment is an ``asyncio.Event`` set through
  ``call_soon_threadsafe``
- persistence is coalesced into one background writer task
"""
from __future__ import annotations

import asyncio
import copy
import logging
import threading
from typing import Any, Callable, Optional

from .config import ManagerConfig, RuntimeConfig
from .discovery import DiscoveryService
from .errors import (
    CLI_PROTOCOL_ERROR,
    ExternalCliError,
    ExternalCliProtocolError,
    ProviderBlockedError,
)
from .lifecycle import can_transition
from .models import (
    AuthStatus,
    BinaryTrust,
    ExternalCliProvider,
    InteractionType,
    PendingInteraction,
    ProgressEntry,
    ProgressKind,
    ResponseDecision,
    ResponsePayload,
    RunDiagnostics,
    RunRecord,
    RunStatus,
    RunSummary,
    StartRunInput,
    make_id,
    now_ms,
)
from .providers.base import (
    AdapterCallbacks,
    AdapterStartInput,
    ExternalCliAdapter,
    InteractionRequest,
)
from .providers.registry import create_adapter
from .response_parser import parse_natural_language_response
from .workdir import prepare_working_directory
from extcli.shared.services.run_state_store import RunStateStore

logger = logging.getLogger(__name__)

AMBIGUOUS_PERMISSION_MESSAGE = (
    "Ambiguous permission response. Reply with allow, allow session, deny, or cancel."
)
DEFAULT_CANCEL_REASON = "Run cancelled by user request."
_MAX_DIAGNOSTIC_NOTES = 200


def bypass_downgrade_message(provider: ExternalCliProvider) -> str:
    return (
        f"Bypass was requested but is disabled in settings for {provider.value}; "
        "running with standard permission prompts."
    )


class _RunSlot:
    """A run record plus the synchronization and adapter that go with it."""

    __slots__ = ("record", "lock", "op_lock", "terminal", "adapter")

    def __init__(self, record: RunRecord, adapter: ExternalCliAdapter | None = None) -> None:
        self.record = record
        self.lock = threading.RLock()
        self.op_lock = asyncio.Lock()
        self.terminal = asyncio.Event()
        self.adapter = adapter
        if record.status.is_terminal:
            self.terminal.set()


class RunManager:
    """Lifecycle API for external CLI runs."""

    def __init__(
        self,
        discovery: DiscoveryService,
        get_runtime_config: Callable[[], RuntimeConfig],
        *,
        config: Optional[ManagerConfig] = None,
        store: Any = None,
        adapter_factory: Callable[[ExternalCliProvider], ExternalCliAdapter] = create_adapter,
        event_bus: Any = None,
    ) -> None:
        self._discovery = discovery
        self._get_runtime_config = get_runtime_config
        self._config = config or ManagerConfig()
        if store is None:
            store = RunStateStore(self._config.app_data_dir)
        self._store = store
        self._adapter_factory = adapter_factory
        self._event_bus = event_bus

        self._runs: dict[str, _RunSlot] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._initialized = False
        self._background: set[asyncio.Task] = set()

        self._persist_lock = threading.Lock()
        self._persist_dirty = False
        self._persist_task: asyncio.Task | None = None

    # ── Setup / teardown ──

    async def initialize(self) -> None:
        """Load persisted history. Safe to call more than once."""
        if self._initialized:
            return
        self._loop = asyncio.get_running_loop()
        if self._event_bus is not None:
            self._event_bus.attach(self._loop)

        restored = await asyncio.to_thread(self._store.load)
        for record in restored:
            self._runs[record.run_id] = _RunSlot(record)
        self._initialized = True
        logger.info("RunManager initialized with %d persisted run(s)", len(restored))
        await self._persist()

    async def shutdown(self) -> None:
        """Dispose every adapter and flush state. Errors are logged."""
        for slot in list(self._runs.values()):
            await self._dispose_adapter(slot)
        pending = [task for task in self._background if not task.done()]
        if self._persist_task is not None and not self._persist_task.done():
            pending.append(self._persist_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._persist()
        logger.info("RunManager shut down (%d run(s) tracked)", len(self._runs))

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ExternalCliProtocolError(
                "External CLI run manager is not initialized."
            )

    # ── Queries ──

    def get_run(self, run_id: str) -> RunRecord | None:
        """Copy of the full record, or None."""
        slot = self._runs.get(run_id)
        if slot is None:
            return None
        with slot.lock:
            return copy.deepcopy(slot.record)

    def get_summary(self, run_id: str) -> RunSummary | None:
        slot = self._runs.get(run_id)
        if slot is None:
            return None
        with slot.lock:
            return RunSummary.from_record(slot.record)

    def get_latest_run(
        self,
        session_id: str,
        provider: ExternalCliProvider | str | None = None,
    ) -> RunRecord | None:
        """Most recently updated run of *session_id* (optionally one provider)."""
        wanted = ExternalCliProvider(provider) if provider else None
        latest: RunRecord | None = None
        for slot in list(self._runs.values()):
            with slot.lock:
                record = slot.record
                if record.session_id != session_id:
                    continue
                if wanted is not None and record.provider is not wanted:
                    continue
                if latest is None or record.updated_at > latest.updated_at:
                    latest = copy.deepcopy(record)
        return latest

    def list_runs(
        self,
        session_id: str | None = None,
        provider: ExternalCliProvider | str | None = None,
        status: RunStatus | str | None = None,
    ) -> list[RunSummary]:
        """Summaries, most recently updated first."""
        wanted_provider = ExternalCliProvider(provider) if provider else None
        wanted_status = RunStatus(status) if status else None
        summaries: list[RunSummary] = []
        for slot in list(self._runs.values()):
            with slot.lock:
                record = slot.record
                if session_id and record.session_id != session_id:
                    continue
                if wanted_provider is not None and record.provider is not wanted_provider:
                    continue
                if wanted_status is not None and record.status is not wanted_status:
                    continue
                summaries.append(RunSummary.from_record(record))
        summaries.sort(key=lambda s: s.updated_at, reverse=True)
        return summaries

    # ── Start ──

    async def start_run(self, input: StartRunInput) -> RunSummary:
        """Gate, register and launch a run. Returns without waiting for output."""
        self._require_initialized()
        provider = self._validate_start_input(input)

        settings = self._get_runtime_config().for_provider(provider)
        if not settings.enabled:
            raise ProviderBlockedError(
                provider.value, "disabled",
                f"{provider.value} CLI tools are disabled in settings.",
            )

        snapshot = await self._discovery.get_availability()
        entry = snapshot.entry_for(provider)
        if not entry.installed:
            raise ProviderBlockedError(
                provider.value, "not_installed",
                f"{provider.value} CLI is not installed on this machine.",
            )
        if entry.binary_trust is not BinaryTrust.TRUSTED:
            raise ProviderBlockedError(
                provider.value, "untrusted",
                f"{provider.value} CLI binary is not trusted: "
                f"{entry.trust_reason or 'trust could not be established.'}",
            )
        if entry.auth_status is AuthStatus.UNAUTHENTICATED:
            raise ProviderBlockedError(
                provider.value, "unauthenticated",
                entry.auth_message or f"{provider.value} CLI is not authenticated.",
            )

        self._ensure_no_active_run(input.session_id, provider)
        resolved = await asyncio.to_thread(
            prepare_working_directory,
            input.working_directory,
            self._config.default_cwd,
            input.create_if_missing,
        )
        # The directory check awaited; another start may have registered.
        self._ensure_no_active_run(input.session_id, provider)

        requested = (
            input.requested_bypass_permission
            if input.requested_bypass_permission is not None
            else input.bypass_permission
        )
        effective = bool(requested and settings.allow_bypass_permissions)

        now = now_ms()
        record = RunRecord(
            run_id=make_id("ext-run"),
            session_id=input.session_id,
            provider=provider,
            prompt=input.prompt,
            working_directory=resolved,
            resolved_working_directory=resolved,
            create_if_missing=input.create_if_missing,
            requested_bypass_permission=bool(requested),
            effective_bypass_permission=effective,
            bypass_permission=effective,
            status=RunStatus.QUEUED,
            started_at=now,
            updated_at=now,
            origin=input.origin,
            progress=[ProgressEntry(now, ProgressKind.STATUS, f"Queued {provider.value} run.")],
        )
        if requested and not effective:
            record.progress.append(
                ProgressEntry(now, ProgressKind.STATUS, bypass_downgrade_message(provider))
            )
            logger.info(
                "Bypass downgraded for run %s (%s disallows bypass)",
                record.run_id, provider.value,
            )

        slot = _RunSlot(record)
        self._runs[record.run_id] = slot
        with slot.lock:
            self._emit(slot, "run_created", summary=RunSummary.from_record(record).to_dict())
        await self._persist()
        logger.info(
            "Run %s queued provider=%s session=%s cwd=%s bypass=%s",
            record.run_id, provider.value, record.session_id, resolved, effective,
        )

        try:
            adapter = self._adapter_factory(provider)
        except Exception as exc:
            self._fail_launch(slot, exc)
            await self._persist()
            return self._summary(slot)

        slot.adapter = adapter
        with slot.lock:
            self._transition_locked(slot, RunStatus.RUNNING)
            self._append_progress_locked(
                slot, ProgressKind.STATUS, f"Starting {provider.value} process...",
            )

        try:
            await adapter.start(
                AdapterStartInput(
                    run_id=record.run_id,
                    session_id=record.session_id,
                    provider=provider,
                    prompt=record.prompt,
                    working_directory=resolved,
                    bypass_permission=effective,
                    binary_path=entry.binary_path,
                ),
                self._make_callbacks(slot),
            )
        except Exception as exc:
            self._fail_launch(slot, exc)
            await self._dispose_adapter(slot)

        await self._persist()
        return self._summary(slot)

    def _validate_start_input(self, input: StartRunInput) -> ExternalCliProvider:
        try:
            provider = ExternalCliProvider(input.provider)
        except ValueError:
            raise ExternalCliProtocolError(
                f"Unsupported external CLI provider: {input.provider}",
                field_name="provider",
            ) from None
        if not (input.session_id or "").strip():
            raise ExternalCliProtocolError("session_id is required.", field_name="session_id")
        if not (input.prompt or "").strip():
            raise ExternalCliProtocolError("prompt is required.", field_name="prompt")
        return provider

    def _ensure_no_active_run(self, session_id: str, provider: ExternalCliProvider) -> None:
        if self._config.allow_concurrent_session_runs:
            return
        for slot in list(self._runs.values()):
            with slot.lock:
                record = slot.record
                if (
                    record.session_id == session_id
                    and record.provider is provider
                    and record.status.is_active
                ):
                    raise ExternalCliProtocolError(
                        f"{provider.value} already has an active run in this "
                        f"session ({record.run_id})."
                    )

    def _fail_launch(self, slot: _RunSlot, exc: Exception) -> None:
        message = exc.message if isinstance(exc, ExternalCliError) else str(exc)
        message = message or type(exc).__name__
        logger.error("Run %s failed to launch: %s", slot.record.run_id, message)
        with slot.lock:
            if slot.record.status.is_terminal:
                return
            slot.record.error_code = CLI_PROTOCOL_ERROR
            slot.record.error_message = message
            self._append_progress_locked(slot, ProgressKind.ERROR, message)
            self._transition_locked(slot, RunStatus.FAILED)

    # ── Respond ──

    async def respond(
        self, interaction_id: str, payload: ResponsePayload | str,
    ) -> RunSummary:
        """Answer a pending interaction with a structured payload or free text."""
        self._require_initialized()
        slot = self._find_slot_by_interaction(interaction_id)
        if slot is None:
            raise ExternalCliProtocolError(
                f"No pending interaction found for id {interaction_id}.",
                field_name="interaction_id",
            )
        return await self._respond_slot(slot, interaction_id, payload)

    async def respond_to_run(self, run_id: str, text: str) -> RunSummary:
        """Answer whatever interaction *run_id* is currently waiting on."""
        self._require_initialized()
        slot = self._runs.get(run_id)
        if slot is None:
            raise ExternalCliProtocolError(
                f"External CLI run not found: {run_id}", field_name="run_id",
            )
        with slot.lock:
            pending = slot.record.pending_interaction
        if pending is None:
            raise ExternalCliProtocolError(
                f"No pending interaction for run {run_id}.", field_name="run_id",
            )
        return await self._respond_slot(slot, pending.interaction_id, text)

    async def try_respond_from_integration(
        self, session_id: str, platform: str, chat_id: str, text: str,
    ) -> bool:
        """Route an integration chat reply to the run waiting on that chat.

        Returns False when no run of this origin is waiting.
        """
        candidates: list[tuple[int, str]] = []
        for slot in list(self._runs.values()):
            with slot.lock:
                record = slot.record
                origin = record.origin
                if (
                    record.session_id == session_id
                    and record.status is RunStatus.WAITING_USER
                    and record.pending_interaction is not None
                    and origin.source == "integration"
                    and origin.platform == platform
                    and origin.chat_id == chat_id
                ):
                    candidates.append((record.updated_at, record.run_id))
        if not candidates:
            return False
        _, run_id = max(candidates)
        await self.respond_to_run(run_id, text)
        return True

    async def _respond_slot(
        self,
        slot: _RunSlot,
        interaction_id: str,
        payload: ResponsePayload | str,
    ) -> RunSummary:
        async with slot.op_lock:
            with slot.lock:
                record = slot.record
                pending = record.pending_interaction
                if (
                    record.status is not RunStatus.WAITING_USER
                    or pending is None
                    or pending.interaction_id != interaction_id
                ):
                    raise ExternalCliProtocolError(
                        f"Interaction {interaction_id} is no longer pending.",
                        field_name="interaction_id",
                    )
                interaction_type = pending.type
                adapter = slot.adapter

            parsed = (
                payload if isinstance(payload, ResponsePayload)
                else parse_natural_language_response(payload)
            )
            if (
                interaction_type is InteractionType.PERMISSION
                and parsed.decision is ResponseDecision.ANSWER
            ):
                raise ExternalCliProtocolError(
                    AMBIGUOUS_PERMISSION_MESSAGE, field_name="response",
                )
            if adapter is None:
                raise ExternalCliProtocolError("Run adapter is not available.")

            try:
                await adapter.respond(interaction_id, parsed)
            except ExternalCliError as exc:
                raise ExternalCliProtocolError(
                    f"Failed to deliver response: {exc.message}",
                ) from exc
            except Exception as exc:
                logger.warning("Adapter respond failed for %s: %s", interaction_id, exc)
                raise ExternalCliProtocolError(
                    f"Failed to deliver response: {exc}",
                ) from exc

            with slot.lock:
                record = slot.record
                if (
                    record.status is RunStatus.WAITING_USER
                    and record.pending_interaction is not None
                    and record.pending_interaction.interaction_id == interaction_id
                ):
                    self._clear_interaction_locked(slot, interaction_id)
                if not record.status.is_terminal:
                    self._append_progress_locked(
                        slot, ProgressKind.EVENT,
                        f"User responded: {parsed.decision.value}.",
                    )
                summary = RunSummary.from_record(record)

        self._request_persist()
        return summary

    # ── Cancel ──

    async def cancel(self, run_id: str, reason: str | None = None) -> RunSummary:
        """Stop a run, forcing it to cancelled if the adapter stays silent."""
        self._require_initialized()
        slot = self._runs.get(run_id)
        if slot is None:
            raise ExternalCliProtocolError(
                f"External CLI run not found: {run_id}", field_name="run_id",
            )

        reason_text = reason or DEFAULT_CANCEL_REASON
        async with slot.op_lock:
            with slot.lock:
                if slot.record.status.is_terminal:
                    return RunSummary.from_record(slot.record)
                adapter = slot.adapter

            grace = self._config.cancel_grace_seconds
            loop = asyncio.get_running_loop()
            deadline = loop.time() + grace
            if adapter is not None:
                try:
                    await asyncio.wait_for(adapter.cancel(reason_text), timeout=grace)
                except asyncio.TimeoutError:
                    logger.warning("Adapter cancel for run %s timed out", run_id)
                except Exception as exc:
                    logger.warning("Adapter cancel for run %s failed: %s", run_id, exc)
                remaining = deadline - loop.time()
                if remaining > 0 and not slot.terminal.is_set():
                    try:
                        await asyncio.wait_for(slot.terminal.wait(), timeout=remaining)
                    except asyncio.TimeoutError:
                        pass

            with slot.lock:
                if not slot.record.status.is_terminal:
                    note = (
                        f"Adapter did not acknowledge cancellation within "
                        f"{grace:g}s; run marked cancelled."
                    )
                    logger.warning("Run %s: %s", run_id, note)
                    self._diagnostics_locked(slot).notes.append(note)
                    self._append_progress_locked(slot, ProgressKind.EVENT, note)
                    self._append_progress_locked(slot, ProgressKind.STATUS, reason_text)
                    self._transition_locked(slot, RunStatus.CANCELLED)

            await self._dispose_adapter(slot)
            summary = self._summary(slot)

        await self._persist()
        return summary

    # ── Callbacks ──

    def _make_callbacks(self, slot: _RunSlot) -> AdapterCallbacks:
        run_id = slot.record.run_id

        def on_progress(kind: ProgressKind, message: str) -> None:
            with slot.lock:
                if slot.record.status.is_terminal:
                    logger.debug("Run %s: progress after terminal ignored", run_id)
                    return
                self._append_progress_locked(slot, ProgressKind(kind), message)
            self._request_persist()

        def on_waiting_interaction(request: InteractionRequest) -> None:
            with slot.lock:
                record = slot.record
                if record.pending_interaction is not None:
                    logger.warning(
                        "Run %s: interaction %s ignored, %s still pending",
                        run_id, request.interaction_id,
                        record.pending_interaction.interaction_id,
                    )
                    if not record.status.is_terminal:
                        self._append_progress_locked(
                            slot, ProgressKind.EVENT,
                            "Ignored a second interaction request while one is pending.",
                        )
                    return
                if record.status is not RunStatus.RUNNING:
                    logger.warning(
                        "Run %s: interaction %s ignored in status %s",
                        run_id, request.interaction_id, record.status.value,
                    )
                    return
                interaction = PendingInteraction(
                    interaction_id=request.interaction_id,
                    run_id=run_id,
                    session_id=record.session_id,
                    provider=record.provider,
                    type=request.type,
                    prompt=request.prompt,
                    requested_at=now_ms(),
                    origin=record.origin,
                    options=list(request.options) if request.options else None,
                    metadata=dict(request.metadata) if request.metadata else None,
                )
                record.pending_interaction = interaction
                self._transition_locked(slot, RunStatus.WAITING_USER)
                self._append_progress_locked(slot, ProgressKind.STATUS, request.prompt)
                self._emit(slot, "interaction_requested", interaction=interaction.to_dict())
            self._request_persist()

        def on_interaction_resolved(interaction_id: str) -> None:
            with slot.lock:
                record = slot.record
                if (
                    record.status is not RunStatus.WAITING_USER
                    or record.pending_interaction is None
                    or record.pending_interaction.interaction_id != interaction_id
                ):
                    logger.debug(
                        "Run %s: resolve of %s ignored in status %s",
                        run_id, interaction_id, record.status.value,
                    )
                    return
                self._clear_interaction_locked(slot, interaction_id)
            self._request_persist()

        def on_completed(summary: str | None) -> None:
            with slot.lock:
                if slot.record.status not in (RunStatus.RUNNING, RunStatus.WAITING_USER):
                    logger.warning(
                        "Run %s: completion ignored in status %s",
                        run_id, slot.record.status.value,
                    )
                    return
                slot.record.result_summary = summary
                if summary:
                    self._append_progress_locked(slot, ProgressKind.STATUS, summary)
                self._transition_locked(slot, RunStatus.COMPLETED)
            self._request_persist()

        def on_failed(code: str, message: str) -> None:
            with slot.lock:
                if slot.record.status.is_terminal:
                    logger.warning(
                        "Run %s: failure %s ignored in status %s",
                        run_id, code, slot.record.status.value,
                    )
                    return
                slot.record.error_code = code
                slot.record.error_message = message
                self._append_progress_locked(slot, ProgressKind.ERROR, message)
                self._transition_locked(slot, RunStatus.FAILED)
            self._request_persist()

        def on_cancelled(reason: str | None) -> None:
            with slot.lock:
                if slot.record.status.is_terminal:
                    logger.debug("Run %s: cancel ack ignored, already terminal", run_id)
                    return
                self._append_progress_locked(
                    slot, ProgressKind.STATUS, reason or "Run cancelled.",
                )
                self._transition_locked(slot, RunStatus.CANCELLED)
            self._request_persist()

        def on_launch_command(command: str) -> None:
            with slot.lock:
                slot.record.launch_command = command
            logger.info("Run %s launch: %s", run_id, command)

        def on_diagnostic_log(stream: str, text: str) -> None:
            with slot.lock:
                self._append_diagnostic_locked(slot, stream, text)

        def on_process_exit(code: int | None, signal: str | None) -> None:
            with slot.lock:
                diagnostics = self._diagnostics_locked(slot)
                diagnostics.exit_code = code
                diagnostics.exit_signal = signal
            self._request_persist()

        return AdapterCallbacks(
            on_progress=on_progress,
            on_waiting_interaction=on_waiting_interaction,
            on_interaction_resolved=on_interaction_resolved,
            on_completed=on_completed,
            on_failed=on_failed,
            on_cancelled=on_cancelled,
            on_launch_command=on_launch_command,
            on_diagnostic_log=on_diagnostic_log,
            on_process_exit=on_process_exit,
        )

    # ── Record mutation (caller holds slot.lock) ──

    def _transition_locked(self, slot: _RunSlot, target: RunStatus) -> bool:
        record = slot.record
        current = record.status
        if not can_transition(current, target):
            logger.warning(
                "Run %s: ignoring transition %s -> %s",
                record.run_id, current.value, target.value,
            )
            return False
        now = now_ms()
        record.status = target
        record.updated_at = now
        if target.is_terminal:
            record.pending_interaction = None
            if record.finished_at is None:
                record.finished_at = now
        logger.info("Run %s: %s -> %s", record.run_id, current.value, target.value)
        self._emit(
            slot, "run_status_changed",
            old_status=current.value,
            new_status=target.value,
            summary=RunSummary.from_record(record).to_dict(),
        )
        if target.is_terminal:
            self._on_terminal(slot)
        return True

    def _append_progress_locked(
        self, slot: _RunSlot, kind: ProgressKind, message: str,
    ) -> None:
        entry = ProgressEntry.create(kind, message)
        slot.record.progress.append(entry)
        slot.record.updated_at = entry.timestamp
        self._emit(slot, "run_progress", kind=entry.kind.value, message=entry.message)

    def _clear_interaction_locked(self, slot: _RunSlot, interaction_id: str) -> None:
        slot.record.pending_interaction = None
        self._transition_locked(slot, RunStatus.RUNNING)
        self._emit(slot, "interaction_resolved", interaction_id=interaction_id)

    def _diagnostics_locked(self, slot: _RunSlot) -> RunDiagnostics:
        if slot.record.diagnostics is None:
            slot.record.diagnostics = RunDiagnostics()
        return slot.record.diagnostics

    def _append_diagnostic_locked(self, slot: _RunSlot, stream: str, text: str) -> None:
        diagnostics = self._diagnostics_locked(slot)
        limit = self._config.max_diagnostic_chars
        if stream in ("stdout", "stderr"):
            current = getattr(diagnostics, stream)
            combined = f"{current}\n{text}" if current else text
            if len(combined) > limit:
                combined = combined[-limit:]
                diagnostics.truncated = True
            setattr(diagnostics, stream, combined)
            return
        diagnostics.notes.append(text)
        if len(diagnostics.notes) > _MAX_DIAGNOSTIC_NOTES:
            del diagnostics.notes[0]
            diagnostics.truncated = True

    def _on_terminal(self, slot: _RunSlot) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            slot.adapter = None
            return
        loop.call_soon_threadsafe(slot.terminal.set)
        loop.call_soon_threadsafe(self._schedule_dispose, slot)

    def _schedule_dispose(self, slot: _RunSlot) -> None:
        if slot.adapter is None:
            return
        task = asyncio.ensure_future(self._dispose_adapter(slot))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _dispose_adapter(self, slot: _RunSlot) -> None:
        adapter, slot.adapter = slot.adapter, None
        if adapter is None:
            return
        try:
            await adapter.dispose()
        except Exception as exc:
            logger.warning(
                "Adapter dispose failed for run %s: %s", slot.record.run_id, exc,
            )

    def _summary(self, slot: _RunSlot) -> RunSummary:
        with slot.lock:
            return RunSummary.from_record(slot.record)

    def _find_slot_by_interaction(self, interaction_id: str) -> _RunSlot | None:
        for slot in list(self._runs.values()):
            with slot.lock:
                pending = slot.record.pending_interaction
                if pending is not None and pending.interaction_id == interaction_id:
                    return slot
        return None

    # ── Events ──

    def _emit(self, slot: _RunSlot, event: str, **fields: Any) -> None:
        if self._event_bus is None:
            return
        record = slot.record
        self._event_bus.publish({
            "event": event,
            "run_id": record.run_id,
            "session_id": record.session_id,
            "provider": record.provider.value,
            "timestamp": now_ms(),
            **fields,
        })

    # ── Persistence ──

    def _snapshot_records(self) -> list[RunRecord]:
        records: list[RunRecord] = []
        for slot in list(self._runs.values()):
            with slot.lock:
                records.append(copy.deepcopy(slot.record))
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records[: self._config.max_persisted_runs]

    def _persist_sync(self) -> None:
        with self._persist_lock:
            records = self._snapshot_records()
            try:
                self._store.save(records)
            except OSError as exc:
                logger.error("Failed to persist external CLI runs: %s", exc)

    async def _persist(self) -> None:
        await asyncio.to_thread(self._persist_sync)

    def _request_persist(self) -> None:
        """Schedule a coalesced background save; callable from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._persist_sync()
            return
        self._persist_dirty = True
        loop.call_soon_threadsafe(self._ensure_persist_task)

    def _ensure_persist_task(self) -> None:
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = asyncio.ensure_future(self._persist_loop())

    async def _persist_loop(self) -> None:
        while self._persist_dirty:
            self._persist_dirty = False
            await self._persist()
