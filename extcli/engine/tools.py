"""Tool handlers exposing the run manager to a host agent.

Each handler takes the caller's ``ToolContext`` plus keyword arguments
and returns a plain dict: ``{"success": True, "data": ...}`` or
``{"success": False, "error": "<CODE>: <message>"}``. Handlers never
raise for run-manager errors.

Start and progress results carry a ``monitoring`` block telling the
caller when to poll again. The cadence comes from a rough complexity
estimate of the prompt.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .errors import ExternalCliError, ExternalCliProtocolError
from .models import (
    ExternalCliProvider,
    RunOrigin,
    RunRecord,
    RunStatus,
    StartRunInput,
)
from .run_manager import RunManager
from .workdir import resolve_working_directory

logger = logging.getLogger(__name__)

DEFAULT_RECENT_ENTRIES = 10
MAX_RECENT_ENTRIES = 30

_MEDIUM_COMPLEXITY_HINTS = (
    "build", "feature", "website", "app", "frontend", "backend",
    "test", "integration", "api", "database",
)
_HIGH_COMPLEXITY_HINTS = (
    "refactor", "migration", "end-to-end", "architecture", "multi-step",
    "multi file", "deploy", "production", "full stack",
)


@dataclass
class ToolContext:
    """Caller identity: the chat session and its working directory."""
    session_id: str
    working_directory: str = "."


@dataclass(frozen=True)
class PollingPlan:
    complexity: str
    interval_seconds: int
    reason: str


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def _fail(error: Exception) -> dict[str, Any]:
    if isinstance(error, ExternalCliError):
        return {"success": False, "error": f"{error.code}: {error.message}"}
    return {"success": False, "error": str(error)}


def derive_polling_plan(prompt: str) -> PollingPlan:
    """Estimate how long a run will take from its prompt."""
    text = (prompt or "").lower()
    score = 0
    if len(prompt or "") > 320:
        score += 1
    if len(prompt or "") > 800:
        score += 2
    if any(hint in text for hint in _MEDIUM_COMPLEXITY_HINTS):
        score += 1
    if any(hint in text for hint in _HIGH_COMPLEXITY_HINTS):
        score += 2

    if score >= 4:
        return PollingPlan("high", 60, "Long-running or high-complexity workflow detected.")
    if score >= 2:
        return PollingPlan("medium", 10, "Moderate complexity workflow detected.")
    return PollingPlan("low", 5, "Quick iteration workflow detected.")


def _monitoring(status: RunStatus, plan: PollingPlan) -> dict[str, Any]:
    terminal = status.is_terminal
    if terminal:
        next_poll = None
        recommendation = "Run reached a terminal state. Report outcome to user."
    else:
        next_poll = 5 if status is RunStatus.WAITING_USER else plan.interval_seconds
        recommendation = f"Call external_cli_get_progress again in {next_poll}s."
    return {
        "required": not terminal,
        "terminal": terminal,
        "complexity": plan.complexity,
        "nextPollSeconds": next_poll,
        "shouldRespond": status is RunStatus.WAITING_USER,
        "reason": plan.reason,
        "recommendation": recommendation,
    }


def _require_bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ExternalCliProtocolError(
            f"{name} is required. Confirm the choice in conversation and retry.",
            field_name=name,
        )
    return value


class ExternalCliTools:
    """The ``start_*_cli_run`` and ``external_cli_*`` tool handlers."""

    def __init__(
        self,
        run_manager: RunManager,
        get_session_origin: Optional[Callable[[str], RunOrigin]] = None,
    ) -> None:
        self._manager = run_manager
        self._get_session_origin = get_session_origin or (lambda _session_id: RunOrigin())

    # ── Start ──

    async def start_codex_cli_run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        return await self._start(ExternalCliProvider.CODEX, context, kwargs)

    async def start_claude_cli_run(self, context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        return await self._start(ExternalCliProvider.CLAUDE, context, kwargs)

    async def _start(
        self,
        provider: ExternalCliProvider,
        context: ToolContext,
        args: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            prompt = args.get("prompt")
            if not isinstance(prompt, str) or not prompt.strip():
                raise ExternalCliProtocolError("prompt is required.", field_name="prompt")
            raw_dir = args.get("working_directory")
            if not isinstance(raw_dir, str) or not raw_dir.strip():
                raise ExternalCliProtocolError(
                    "working_directory is required. Confirm a directory in "
                    "conversation and retry.",
                    field_name="working_directory",
                )
            create_if_missing = _require_bool(
                args.get("create_if_missing"), "create_if_missing",
            )
            bypass_value = args.get("bypassPermission", args.get("bypass_permission"))
            bypass = _require_bool(bypass_value, "bypassPermission")

            working_directory = resolve_working_directory(
                context.working_directory, raw_dir,
            )
            plan = derive_polling_plan(prompt)
            summary = await self._manager.start_run(StartRunInput(
                session_id=context.session_id,
                provider=provider,
                prompt=prompt,
                working_directory=working_directory,
                create_if_missing=create_if_missing,
                requested_bypass_permission=bypass,
                bypass_permission=bypass,
                origin=self._get_session_origin(context.session_id),
            ))
        except ExternalCliError as exc:
            logger.info("start_%s_cli_run rejected: %s", provider.value, exc.message)
            return _fail(exc)

        return _ok({
            "run": summary.to_dict(),
            "monitoring": _monitoring(summary.status, plan),
        })

    # ── Progress ──

    async def external_cli_get_progress(
        self,
        context: ToolContext,
        run_id: str | None = None,
        provider: str | None = None,
        include_recent_entries: int = DEFAULT_RECENT_ENTRIES,
    ) -> dict[str, Any]:
        try:
            requested = int(include_recent_entries or DEFAULT_RECENT_ENTRIES)
            record = self._select_record(context, run_id, provider)
        except (ExternalCliError, ValueError, TypeError) as exc:
            return _fail(exc)
        if record is None:
            return _ok({
                "found": False,
                "message": "No external CLI run found for this session and filter.",
            })

        limit = max(1, min(requested, MAX_RECENT_ENTRIES))
        pending = record.pending_interaction
        plan = derive_polling_plan(record.prompt)
        return _ok({
            "found": True,
            "summary": {
                "runId": record.run_id,
                "provider": record.provider.value,
                "status": record.status.value,
                "launchCommand": record.launch_command,
                "startedAt": record.started_at,
                "updatedAt": record.updated_at,
                "finishedAt": record.finished_at,
                "pendingInteraction": {
                    "interactionId": pending.interaction_id,
                    "type": pending.type.value,
                    "prompt": pending.prompt,
                    "options": pending.options,
                } if pending else None,
                "resultSummary": record.result_summary,
                "errorCode": record.error_code,
                "errorMessage": record.error_message,
                "diagnostics": record.diagnostics.to_dict() if record.diagnostics else None,
            },
            "recentProgress": [entry.to_dict() for entry in record.progress[-limit:]],
            "monitoring": _monitoring(record.status, plan),
        })

    def _select_record(
        self, context: ToolContext, run_id: str | None, provider: str | None,
    ) -> RunRecord | None:
        if run_id:
            return self._manager.get_run(run_id)
        wanted = ExternalCliProvider(provider) if provider else None
        return self._manager.get_latest_run(context.session_id, wanted)

    # ── Respond ──

    async def external_cli_respond(
        self,
        context: ToolContext,
        response_text: str = "",
        run_id: str | None = None,
    ) -> dict[str, Any]:
        if not run_id:
            waiting = self._manager.list_runs(
                session_id=context.session_id, status=RunStatus.WAITING_USER,
            )
            if not waiting:
                return _ok({
                    "acknowledged": False,
                    "message": "No waiting external CLI run found for this session.",
                })
            run_id = waiting[0].run_id

        try:
            if not (response_text or "").strip():
                raise ExternalCliProtocolError(
                    "response_text is required.", field_name="response_text",
                )
            summary = await self._manager.respond_to_run(run_id, response_text)
        except ExternalCliError as exc:
            return _fail(exc)

        terminal = summary.status.is_terminal
        return _ok({
            "acknowledged": True,
            "summary": summary.to_dict(),
            "monitoring": {
                "required": not terminal,
                "terminal": terminal,
                "nextPollSeconds": None if terminal else 5,
                "shouldRespond": False,
                "recommendation": (
                    "Run reached terminal state. Report outcome to user."
                    if terminal
                    else "Call external_cli_get_progress in 5s to confirm post-response state."
                ),
            },
        })

    # ── Cancel ──

    async def external_cli_cancel_run(
        self,
        context: ToolContext,
        run_id: str | None = None,
        provider: str | None = None,
    ) -> dict[str, Any]:
        try:
            if not run_id:
                wanted = ExternalCliProvider(provider) if provider else None
                active = [
                    summary for summary in self._manager.list_runs(
                        session_id=context.session_id, provider=wanted,
                    )
                    if summary.status.is_active
                ]
                if not active:
                    return _ok({
                        "cancelled": False,
                        "message": "No active external CLI run found to cancel.",
                    })
                run_id = active[0].run_id
            summary = await self._manager.cancel(run_id)
        except (ExternalCliError, ValueError) as exc:
            return _fail(exc)

        return _ok({
            "cancelled": True,
            "summary": summary.to_dict(),
            "monitoring": {
                "required": False,
                "terminal": True,
                "nextPollSeconds": None,
                "shouldRespond": False,
                "recommendation": "Run cancelled. Report cancellation to user.",
            },
        })

    # ── List ──

    async def external_cli_list_runs(
        self,
        context: ToolContext,
        provider: str | None = None,
        status: str | None = None,
    ) -> dict[str, Any]:
        try:
            summaries = self._manager.list_runs(
                session_id=context.session_id, provider=provider, status=status,
            )
        except ValueError as exc:
            return _fail(exc)
        return _ok({"runs": [summary.to_dict() for summary in summaries]})

    def handlers(self) -> dict[str, Callable[..., Any]]:
        """Tool name to bound handler, for registration with a host."""
        return {
            "start_codex_cli_run": self.start_codex_cli_run,
            "start_claude_cli_run": self.start_claude_cli_run,
            "external_cli_get_progress": self.external_cli_get_progress,
            "external_cli_respond": self.external_cli_respond,
            "external_cli_cancel_run": self.external_cli_cancel_run,
            "external_cli_list_runs": self.external_cli_list_runs,
        }
