"""Core data models for the external CLI subsystem.

All dataclasses and enums live here so the manager, the adapters and
the store can share them without circular imports. Records serialize
to the camelCase shape of the persisted state file via ``to_dict()``
and are rebuilt with ``from_dict()``.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class ExternalCliProvider(str, Enum):
    """The two supported external agent CLIs."""
    CODEX = "codex"
    CLAUDE = "claude"


class BinaryTrust(str, Enum):
    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"
    UNKNOWN = "unknown"


class AuthStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    UNKNOWN = "unknown"


class RunStatus(str, Enum):
    """Run lifecycle states. See lifecycle.py for transition rules."""
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_USER = "waiting_user"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


_TERMINAL_STATUSES = frozenset({
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.INTERRUPTED,
})


class ProgressKind(str, Enum):
    STATUS = "status"
    ASSISTANT = "assistant"
    EVENT = "event"
    ERROR = "error"


class InteractionType(str, Enum):
    PERMISSION = "permission"
    QUESTION = "question"


class ResponseDecision(str, Enum):
    """Structured decision derived from a user reply."""
    ALLOW_ONCE = "allow_once"
    ALLOW_SESSION = "allow_session"
    DENY = "deny"
    CANCEL = "cancel"
    ANSWER = "answer"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def make_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# ── Availability ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class AvailabilityEntry:
    """Discovery result for one provider.

    Immutable: the next discovery cycle replaces the whole entry.
    """
    provider: ExternalCliProvider
    installed: bool
    binary_path: str | None
    binary_sha256: str | None
    binary_trust: BinaryTrust
    trust_reason: str | None
    version: str | None
    auth_status: AuthStatus
    auth_message: str | None
    checked_at: int

    @classmethod
    def empty(
        cls, provider: ExternalCliProvider, checked_at: int,
    ) -> AvailabilityEntry:
        """Zero value used when the binary is not installed."""
        return cls(
            provider=provider,
            installed=False,
            binary_path=None,
            binary_sha256=None,
            binary_trust=BinaryTrust.UNKNOWN,
            trust_reason=None,
            version=None,
            auth_status=AuthStatus.UNKNOWN,
            auth_message=None,
            checked_at=checked_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "installed": self.installed,
            "binaryPath": self.binary_path,
            "binarySha256": self.binary_sha256,
            "binaryTrust": self.binary_trust.value,
            "trustReason": self.trust_reason,
            "version": self.version,
            "authStatus": self.auth_status.value,
            "authMessage": self.auth_message,
            "checkedAt": self.checked_at,
        }


@dataclass(frozen=True)
class AvailabilitySnapshot:
    """Both providers' entries; the unit that is cached and invalidated."""
    codex: AvailabilityEntry
    claude: AvailabilityEntry
    checked_at: int
    ttl_ms: int

    def entry_for(self, provider: ExternalCliProvider | str) -> AvailabilityEntry:
        provider = ExternalCliProvider(provider)
        if provider is ExternalCliProvider.CODEX:
            return self.codex
        return self.claude

    def to_dict(self) -> dict[str, Any]:
        return {
            "codex": self.codex.to_dict(),
            "claude": self.claude.to_dict(),
            "checkedAt": self.checked_at,
            "ttlMs": self.ttl_ms,
        }


# ── Runs ─────────────────────────────────────────────────────────────

@dataclass
class RunOrigin:
    """Where the run was requested from (desktop UI or an integration chat)."""
    source: str = "desktop"
    platform: str | None = None
    chat_id: str | None = None
    sender_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "source": self.source,
            "platform": self.platform,
            "chatId": self.chat_id,
            "senderName": self.sender_name,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RunOrigin:
        data = data or {}
        return cls(
            source=data.get("source", "desktop"),
            platform=data.get("platform"),
            chat_id=data.get("chatId"),
            sender_name=data.get("senderName"),
        )


@dataclass(frozen=True)
class ProgressEntry:
    timestamp: int
    kind: ProgressKind
    message: str

    @classmethod
    def create(cls, kind: ProgressKind | str, message: str) -> ProgressEntry:
        return cls(timestamp=now_ms(), kind=ProgressKind(kind), message=message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressEntry:
        return cls(
            timestamp=int(data.get("timestamp", 0)),
            kind=ProgressKind(data.get("kind", "status")),
            message=str(data.get("message", "")),
        )


@dataclass
class PendingInteraction:
    """A blocking request from the CLI awaiting a human decision."""
    interaction_id: str
    run_id: str
    session_id: str
    provider: ExternalCliProvider
    type: InteractionType
    prompt: str
    requested_at: int
    origin: RunOrigin = field(default_factory=RunOrigin)
    options: list[str] | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "interactionId": self.interaction_id,
            "runId": self.run_id,
            "sessionId": self.session_id,
            "provider": self.provider.value,
            "type": self.type.value,
            "prompt": self.prompt,
            "options": list(self.options) if self.options is not None else None,
            "requestedAt": self.requested_at,
            "origin": self.origin.to_dict(),
            "metadata": self.metadata,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingInteraction:
        return cls(
            interaction_id=data["interactionId"],
            run_id=data.get("runId", ""),
            session_id=data.get("sessionId", ""),
            provider=ExternalCliProvider(data["provider"]),
            type=InteractionType(data.get("type", "permission")),
            prompt=data.get("prompt", ""),
            requested_at=int(data.get("requestedAt", 0)),
            origin=RunOrigin.from_dict(data.get("origin")),
            options=data.get("options"),
            metadata=data.get("metadata"),
        )


@dataclass
class RunDiagnostics:
    """Bounded capture of process output for failure reports."""
    stdout: str = ""
    stderr: str = ""
    notes: list[str] = field(default_factory=list)
    exit_code: int | None = None
    exit_signal: str | None = None
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "notes": list(self.notes),
            "exitCode": self.exit_code,
            "exitSignal": self.exit_signal,
            "truncated": self.truncated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunDiagnostics:
        return cls(
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            notes=list(data.get("notes") or []),
            exit_code=data.get("exitCode"),
            exit_signal=data.get("exitSignal"),
            truncated=bool(data.get("truncated", False)),
        )


@dataclass
class RunRecord:
    """Complete state of one external CLI run.

    Owned by RunManager; mutated only through adapter callbacks and
    manager methods.
    """
    run_id: str
    session_id: str
    provider: ExternalCliProvider
    prompt: str
    working_directory: str
    status: RunStatus
    started_at: int
    updated_at: int
    origin: RunOrigin = field(default_factory=RunOrigin)
    resolved_working_directory: str | None = None
    create_if_missing: bool = False
    requested_bypass_permission: bool = False
    effective_bypass_permission: bool = False
    bypass_permission: bool = False
    launch_command: str | None = None
    finished_at: int | None = None
    progress: list[ProgressEntry] = field(default_factory=list)
    pending_interaction: PendingInteraction | None = None
    error_code: str | None = None
    error_message: str | None = None
    result_summary: str | None = None
    diagnostics: RunDiagnostics | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "runId": self.run_id,
            "sessionId": self.session_id,
            "provider": self.provider.value,
            "prompt": self.prompt,
            "launchCommand": self.launch_command,
            "workingDirectory": self.working_directory,
            "resolvedWorkingDirectory": self.resolved_working_directory,
            "createIfMissing": self.create_if_missing,
            "requestedBypassPermission": self.requested_bypass_permission,
            "effectiveBypassPermission": self.effective_bypass_permission,
            "bypassPermission": self.bypass_permission,
            "status": self.status.value,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "finishedAt": self.finished_at,
            "origin": self.origin.to_dict(),
            "progress": [entry.to_dict() for entry in self.progress],
            "pendingInteraction": (
                self.pending_interaction.to_dict()
                if self.pending_interaction else None
            ),
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "resultSummary": self.result_summary,
            "diagnostics": self.diagnostics.to_dict() if self.diagnostics else None,
        })

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        pending = data.get("pendingInteraction")
        diagnostics = data.get("diagnostics")
        return cls(
            run_id=data["runId"],
            session_id=data["sessionId"],
            provider=ExternalCliProvider(data["provider"]),
            prompt=data.get("prompt", ""),
            launch_command=data.get("launchCommand"),
            working_directory=data.get("workingDirectory", ""),
            resolved_working_directory=data.get("resolvedWorkingDirectory"),
            create_if_missing=bool(data.get("createIfMissing", False)),
            requested_bypass_permission=bool(
                data.get("requestedBypassPermission", False)
            ),
            effective_bypass_permission=bool(
                data.get("effectiveBypassPermission", False)
            ),
            bypass_permission=bool(data.get("bypassPermission", False)),
            status=RunStatus(data.get("status", "interrupted")),
            started_at=int(data.get("startedAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
            finished_at=data.get("finishedAt"),
            origin=RunOrigin.from_dict(data.get("origin")),
            progress=[
                ProgressEntry.from_dict(entry)
                for entry in data.get("progress") or []
            ],
            pending_interaction=(
                PendingInteraction.from_dict(pending) if pending else None
            ),
            error_code=data.get("errorCode"),
            error_message=data.get("errorMessage"),
            result_summary=data.get("resultSummary"),
            diagnostics=(
                RunDiagnostics.from_dict(diagnostics) if diagnostics else None
            ),
        )


@dataclass(frozen=True)
class InteractionDigest:
    """Pending interaction as exposed in a RunSummary."""
    interaction_id: str
    type: InteractionType
    prompt: str
    requested_at: int
    options: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "interactionId": self.interaction_id,
            "type": self.type.value,
            "prompt": self.prompt,
            "options": list(self.options) if self.options is not None else None,
            "requestedAt": self.requested_at,
        })


@dataclass(frozen=True)
class RunSummary:
    """Lightweight projection of a RunRecord returned by the lifecycle API."""
    run_id: str
    session_id: str
    provider: ExternalCliProvider
    status: RunStatus
    started_at: int
    updated_at: int
    latest_progress: str | None
    progress_count: int
    launch_command: str | None = None
    finished_at: int | None = None
    pending_interaction: InteractionDigest | None = None
    error_code: str | None = None
    error_message: str | None = None
    result_summary: str | None = None
    diagnostics: RunDiagnostics | None = None

    @classmethod
    def from_record(cls, run: RunRecord) -> RunSummary:
        pending = run.pending_interaction
        return cls(
            run_id=run.run_id,
            session_id=run.session_id,
            provider=run.provider,
            status=run.status,
            launch_command=run.launch_command,
            started_at=run.started_at,
            updated_at=run.updated_at,
            finished_at=run.finished_at,
            latest_progress=run.progress[-1].message if run.progress else None,
            progress_count=len(run.progress),
            pending_interaction=InteractionDigest(
                interaction_id=pending.interaction_id,
                type=pending.type,
                prompt=pending.prompt,
                options=list(pending.options) if pending.options else None,
                requested_at=pending.requested_at,
            ) if pending else None,
            error_code=run.error_code,
            error_message=run.error_message,
            result_summary=run.result_summary,
            diagnostics=replace(run.diagnostics) if run.diagnostics else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "runId": self.run_id,
            "sessionId": self.session_id,
            "provider": self.provider.value,
            "status": self.status.value,
            "launchCommand": self.launch_command,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "finishedAt": self.finished_at,
            "latestProgress": self.latest_progress,
            "progressCount": self.progress_count,
            "pendingInteraction": (
                self.pending_interaction.to_dict()
                if self.pending_interaction else None
            ),
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "resultSummary": self.result_summary,
            "diagnostics": self.diagnostics.to_dict() if self.diagnostics else None,
        })


# ── Inputs ───────────────────────────────────────────────────────────

@dataclass
class StartRunInput:
    """Arguments for RunManager.start_run().

    ``requested_bypass_permission`` records what the caller asked for;
    when omitted it defaults to ``bypass_permission``.
    """
    session_id: str
    provider: ExternalCliProvider | str
    prompt: str
    working_directory: str
    create_if_missing: bool = False
    bypass_permission: bool = False
    requested_bypass_permission: bool | None = None
    origin: RunOrigin = field(default_factory=RunOrigin)


@dataclass(frozen=True)
class ResponsePayload:
    decision: ResponseDecision
    text: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"decision": self.decision.value, "text": self.text}


@dataclass
class PersistedState:
    """Shape of the run-history file: ``{runs, updatedAt}``."""
    runs: list[RunRecord] = field(default_factory=list)
    updated_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "runs": [run.to_dict() for run in self.runs],
            "updatedAt": self.updated_at,
        }
