"""Anthropic Claude CLI adapter.

Wraps ``claude_agent_sdk.query()``, which launches the ``claude``
binary in stream-json mode. Tool permission prompts arrive through the
SDK's ``can_use_tool`` callback; each one becomes a pending interaction
and the callback blocks until the user responds. ``AskUserQuestion``
tool calls are intercepted the same way and surface as question
interactions whose answer is handed back through the deny message.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from typing import Any, AsyncIterator, Callable

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKError, query
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from ..errors import (
    CLI_AUTH_REQUIRED,
    CLI_PROTOCOL_ERROR,
    ExternalCliProtocolError,
)
from ..models import (
    ExternalCliProvider,
    InteractionType,
    ProgressKind,
    ResponseDecision,
    ResponsePayload,
    make_id,
)
from .base import (
    AdapterCallbacks,
    AdapterStartInput,
    ExternalCliAdapter,
    InteractionRequest,
)

logger = logging.getLogger(__name__)

PERMISSION_OPTIONS = ["allow", "allow session", "deny", "cancel"]
AUTH_REQUIRED_MESSAGE = (
    "Claude is installed but not authenticated. Run `claude /login` and retry."
)
_AUTH_MARKERS = ("authentication_failed", "not logged in", "invalid api key")
_USER_QUESTION_TOOLS = frozenset({"askuserquestion", "request_user_input"})

QueryFn = Callable[..., AsyncIterator[Any]]


def _is_auth_failure(text: str) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in _AUTH_MARKERS)


def _describe_tool_input(tool_input: Any) -> str | None:
    if not isinstance(tool_input, dict):
        return None
    for key in ("command", "file_path", "path", "url", "pattern"):
        value = tool_input.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _extract_question(tool_input: Any) -> tuple[str, list[str]]:
    """Question text and option labels from AskUserQuestion input.

    Accepts ``{questions: [{question, options: [{label}]}]}`` and the
    flat ``{question, options}`` form.
    """
    if not isinstance(tool_input, dict):
        return "", []
    source = tool_input
    questions = tool_input.get("questions")
    if isinstance(questions, list) and questions and isinstance(questions[0], dict):
        source = questions[0]
    question = str(source.get("question", "")).strip()
    labels: list[str] = []
    options = source.get("options")
    if isinstance(options, list):
        for option in options:
            if isinstance(option, dict) and option.get("label"):
                labels.append(str(option["label"]))
            elif isinstance(option, str):
                labels.append(option)
    return question, labels


class ClaudeAgentAdapter(ExternalCliAdapter):
    """Adapter backed by the Claude Agent SDK.

    ``query_fn`` defaults to ``claude_agent_sdk.query`` and exists so
    tests can feed a scripted message stream.
    """

    def __init__(
        self,
        query_fn: QueryFn | None = None,
        cancel_timeout: float = 2.0,
    ) -> None:
        self._query = query_fn or query
        self._cancel_timeout = cancel_timeout
        self._callbacks: AdapterCallbacks | None = None
        self._task: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future[ResponsePayload]] = {}
        # Concurrent tool callbacks wait here so one interaction is open at a time.
        self._interaction_lock = asyncio.Lock()
        self._session_allowed_tools: set[str] = set()
        self._bypass = False
        self._stopped = False
        self._finished = False
        self._stderr_lines: list[str] = []

    @property
    def provider(self) -> ExternalCliProvider:
        return ExternalCliProvider.CLAUDE

    # ── Lifecycle ──

    async def start(
        self, input: AdapterStartInput, callbacks: AdapterCallbacks,
    ) -> None:
        self._callbacks = callbacks
        self._bypass = input.bypass_permission
        self._stopped = False
        self._finished = False

        permission_mode = "bypassPermissions" if input.bypass_permission else "default"
        options_kwargs: dict[str, Any] = dict(
            permission_mode=permission_mode,
            cwd=input.working_directory,
            stderr=self._capture_stderr,
            can_use_tool=self._check_permission,
        )
        if input.binary_path:
            options_kwargs["cli_path"] = input.binary_path
        options = ClaudeAgentOptions(**options_kwargs)

        callbacks.launch_command(shlex.join([
            input.binary_path or "claude",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
            "--permission-mode", permission_mode,
        ]))
        callbacks.on_progress(ProgressKind.STATUS, "Starting Claude CLI run...")
        logger.info(
            "Claude run starting run=%s mode=%s cwd=%s cli=%s",
            input.run_id, permission_mode, input.working_directory,
            input.binary_path or "<sdk-default>",
        )

        # can_use_tool requires a streaming prompt; a string prompt
        # closes stdin before control requests can be answered.
        async def _prompt_stream():
            yield {
                "type": "user",
                "message": {"role": "user", "content": input.prompt},
            }

        self._task = asyncio.ensure_future(self._consume(_prompt_stream(), options))

    async def respond(
        self, interaction_id: str, payload: ResponsePayload,
    ) -> None:
        future = self._pending.get(interaction_id)
        if future is None or future.done():
            raise ExternalCliProtocolError(
                f"Claude has no pending interaction {interaction_id}.",
                field_name="interaction_id",
            )
        future.set_result(payload)
        if self._callbacks is not None:
            self._callbacks.on_interaction_resolved(interaction_id)

    async def cancel(self, reason: str | None = None) -> None:
        self._stopped = True
        self._release_pending(ResponsePayload(ResponseDecision.CANCEL))
        await self._stop_task()
        self._report_cancelled(reason or "Claude run cancelled.")

    async def dispose(self) -> None:
        self._stopped = True
        self._release_pending(ResponsePayload(ResponseDecision.CANCEL))
        await self._stop_task()
        self._callbacks = None

    # ── Message stream ──

    async def _consume(self, prompt: AsyncIterator[dict], options: ClaudeAgentOptions) -> None:
        try:
            async for message in self._query(prompt=prompt, options=options):
                if self._finished:
                    break
                self._handle_message(message)
        except ClaudeSDKError as exc:
            if self._stopped:
                return
            detail = str(exc)
            stderr_tail = "\n".join(self._stderr_lines[-10:]).strip()
            if _is_auth_failure(f"{detail}\n{stderr_tail}"):
                self._report_failed(CLI_AUTH_REQUIRED, AUTH_REQUIRED_MESSAGE)
                return
            message = f"Claude run failed: {detail}"
            if stderr_tail:
                message = f"{message}\n\nstderr tail:\n{stderr_tail}"
            self._report_failed(CLI_PROTOCOL_ERROR, message)
            return
        except Exception as exc:
            if self._stopped:
                return
            logger.exception("Claude message stream crashed")
            self._report_failed(CLI_PROTOCOL_ERROR, f"Claude run failed: {exc}")
            return

        if not self._finished and not self._stopped:
            self._report_failed(
                CLI_PROTOCOL_ERROR, "Claude session ended without a result.",
            )

    def _handle_message(self, message: Any) -> None:
        callbacks = self._callbacks
        if callbacks is None:
            return

        if hasattr(message, "result") and hasattr(message, "is_error"):
            result_text = (message.result or "").strip()
            if message.is_error:
                if _is_auth_failure(result_text):
                    self._report_failed(CLI_AUTH_REQUIRED, AUTH_REQUIRED_MESSAGE)
                else:
                    self._report_failed(
                        CLI_PROTOCOL_ERROR, result_text or "Claude run failed.",
                    )
                return
            self._finished = True
            callbacks.on_completed(result_text or "Claude run completed successfully.")
            return

        if hasattr(message, "subtype") and hasattr(message, "data"):
            if message.subtype == "init":
                callbacks.on_progress(ProgressKind.STATUS, "Claude run initialized.")
            return

        content = getattr(message, "content", None)
        if not isinstance(content, list):
            return
        texts = [
            block.text for block in content
            if hasattr(block, "text") and isinstance(block.text, str)
        ]
        text = "\n".join(texts).strip()
        if text:
            callbacks.on_progress(ProgressKind.ASSISTANT, text)
        for block in content:
            if hasattr(block, "name") and hasattr(block, "input"):
                callbacks.on_progress(
                    ProgressKind.STATUS, f"Claude is using tool {block.name}.",
                )
                break

    def _capture_stderr(self, line: str) -> None:
        line = line.rstrip()
        if not line:
            return
        self._stderr_lines.append(line)
        if len(self._stderr_lines) > 180:
            del self._stderr_lines[0]
        logger.debug("claude stderr: %s", line)
        if self._callbacks is not None:
            self._callbacks.diagnostic("stderr", line)

    # ── Permission bridge ──

    async def _check_permission(
        self, tool_name: str, tool_input: dict, context: object = None,
    ):
        """``can_use_tool`` callback: (tool_name, tool_input, context) -> result."""
        if self._stopped:
            return PermissionResultDeny(message="Run cancelled.", interrupt=True)

        if tool_name.lower() in _USER_QUESTION_TOOLS:
            return await self._ask_question(tool_input)

        if self._bypass or tool_name in self._session_allowed_tools:
            return PermissionResultAllow()

        prompt_parts = [f"Claude requests permission to use {tool_name}."]
        detail = _describe_tool_input(tool_input)
        if detail:
            prompt_parts.append(f"Input: {detail}")
        payload = await self._wait_for_user(InteractionRequest(
            interaction_id=make_id("ext-int"),
            type=InteractionType.PERMISSION,
            prompt=" ".join(prompt_parts),
            options=list(PERMISSION_OPTIONS),
            metadata={"tool_name": tool_name},
        ))

        if payload.decision is ResponseDecision.ALLOW_SESSION:
            self._session_allowed_tools.add(tool_name)
            return PermissionResultAllow()
        if payload.decision is ResponseDecision.ALLOW_ONCE:
            return PermissionResultAllow()
        if payload.decision is ResponseDecision.CANCEL:
            return PermissionResultDeny(message="User cancelled the run.", interrupt=True)
        return PermissionResultDeny(message="User denied tool call")

    async def _ask_question(self, tool_input: Any):
        question, options = _extract_question(tool_input)
        payload = await self._wait_for_user(InteractionRequest(
            interaction_id=make_id("ext-int"),
            type=InteractionType.QUESTION,
            prompt=question or "Claude requested additional user input.",
            options=options or None,
        ))
        if self._stopped:
            return PermissionResultDeny(message="Run cancelled.", interrupt=True)
        # Free text is the answer even if it reads like a command.
        return PermissionResultDeny(message=f"User responded: {payload.text}")

    async def _wait_for_user(self, request: InteractionRequest) -> ResponsePayload:
        async with self._interaction_lock:
            if self._stopped:
                return ResponsePayload(ResponseDecision.CANCEL)
            future: asyncio.Future[ResponsePayload] = asyncio.get_running_loop().create_future()
            self._pending[request.interaction_id] = future
            try:
                if self._callbacks is not None:
                    self._callbacks.on_waiting_interaction(request)
                return await future
            finally:
                self._pending.pop(request.interaction_id, None)

    # ── Helpers ──

    def _release_pending(self, payload: ResponsePayload) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_result(payload)

    async def _stop_task(self) -> None:
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait({task}, timeout=self._cancel_timeout)

    def _report_failed(self, code: str, message: str) -> None:
        if self._finished or self._callbacks is None:
            return
        self._finished = True
        logger.warning("Claude run failed code=%s: %s", code, message.splitlines()[0])
        self._callbacks.on_failed(code, message)

    def _report_cancelled(self, reason: str) -> None:
        if self._finished or self._callbacks is None:
            return
        self._finished = True
        self._callbacks.on_cancelled(reason)
