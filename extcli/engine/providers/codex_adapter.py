"""OpenAI Codex CLI adapter.

Drives ``codex app-server``, which speaks newline-delimited JSON-RPC
over stdio. The client side sends ``initialize``, ``account/read``,
``thread/start`` and ``turn/start``; the server streams notifications
(``turn/started``, ``item/*``, ``turn/completed``, ``error``) and sends
its own requests when it needs approval or user input. Those server
requests become pending interactions and are answered when the user
responds.
"""
from __future__ import annotations

import asyncio
import collections
import json
import logging
import shlex
import signal
from typing import Any, Awaitable, Callable

from ..errors import (
    CLI_AUTH_REQUIRED,
    CLI_PROTOCOL_ERROR,
    ExternalCliError,
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

CLIENT_NAME = "extcli"
CLIENT_VERSION = "0.1.0"

PERMISSION_OPTIONS = ["allow", "allow session", "deny", "cancel"]
APPROVAL_METHODS = frozenset({
    "item/commandExecution/requestApproval",
    "item/fileChange/requestApproval",
})
USER_INPUT_METHOD = "item/tool/requestUserInput"

AUTH_REQUIRED_MESSAGE = (
    "Codex is installed but not authenticated. Run `codex login` and retry."
)
MODEL_UNAVAILABLE_MESSAGE = (
    "Codex default model is not available. Update your Codex CLI model "
    "configuration and retry."
)

_DECISION_TO_CODEX = {
    ResponseDecision.ALLOW_ONCE: "accept",
    ResponseDecision.ALLOW_SESSION: "acceptForSession",
    ResponseDecision.CANCEL: "cancel",
    ResponseDecision.DENY: "decline",
}

# Lines kept per stream for failure reports
_TAIL_CAPACITY = 180
_TAIL_REPORT_LINES = 10
# StreamReader line limit; app-server items can be large
_LINE_LIMIT = 16 * 1024 * 1024

SpawnFn = Callable[..., Awaitable[Any]]


class CodexRpcError(Exception):
    """A JSON-RPC request failed, timed out, or the transport closed."""


def _extract_error_message(params: dict[str, Any]) -> str:
    message = params.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    nested = params.get("error")
    if isinstance(nested, dict):
        nested_message = nested.get("message")
        if isinstance(nested_message, str) and nested_message.strip():
            return nested_message.strip()
    return "Codex reported an error."


def classify_codex_error(params: dict[str, Any]) -> tuple[str, str]:
    """Map a Codex error payload to ``(code, message)``."""
    message = _extract_error_message(params)
    lower = message.lower()
    if "model_not_found" in lower or (
        "requested model" in lower and "does not exist" in lower
    ):
        return CLI_PROTOCOL_ERROR, MODEL_UNAVAILABLE_MESSAGE
    if (
        "authentication" in lower
        or "unauthorized" in lower
        or "not logged in" in lower
    ):
        return CLI_AUTH_REQUIRED, AUTH_REQUIRED_MESSAGE
    return CLI_PROTOCOL_ERROR, message


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


class CodexAppServerAdapter(ExternalCliAdapter):
    """Adapter backed by ``codex app-server``.

    One instance drives one run. ``spawn`` defaults to
    ``asyncio.create_subprocess_exec`` and exists so tests can supply a
    scripted process.
    """

    def __init__(
        self,
        command: str = "codex",
        request_timeout: float = 20.0,
        kill_grace: float = 1.0,
        spawn: SpawnFn | None = None,
    ) -> None:
        self._command = command
        self._request_timeout = request_timeout
        self._kill_grace = kill_grace
        self._spawn = spawn or asyncio.create_subprocess_exec

        self._process: Any = None
        self._callbacks: AdapterCallbacks | None = None
        self._request_id = 0
        self._requests: dict[int | str, asyncio.Future] = {}
        self._interactions: dict[str, tuple[int | str, InteractionType, dict[str, Any]]] = {}
        # Surfaced one at a time; later server requests wait here.
        self._queued_interactions: collections.deque[InteractionRequest] = collections.deque()
        self._active_interaction: str | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stdout_task: asyncio.Task | None = None

        self._thread_id: str | None = None
        self._turn_id: str | None = None
        self._stopped = False
        self._finished = False
        self._stdout_tail: collections.deque[str] = collections.deque(maxlen=_TAIL_CAPACITY)
        self._stderr_tail: collections.deque[str] = collections.deque(maxlen=_TAIL_CAPACITY)

    @property
    def provider(self) -> ExternalCliProvider:
        return ExternalCliProvider.CODEX

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    @property
    def turn_id(self) -> str | None:
        return self._turn_id

    # ── Lifecycle ──

    async def start(
        self, input: AdapterStartInput, callbacks: AdapterCallbacks,
    ) -> None:
        self._callbacks = callbacks
        self._stopped = False
        self._finished = False

        executable = input.binary_path or self._command
        cmd = [executable, "app-server"]
        try:
            # Argument list, no shell
            self._process = await self._spawn(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=input.working_directory,
                limit=_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise ExternalCliError(
                CLI_PROTOCOL_ERROR, f"'{executable}' CLI not found: {exc}",
            ) from exc
        except OSError as exc:
            raise ExternalCliError(
                CLI_PROTOCOL_ERROR, f"Failed to start codex app-server: {exc}",
            ) from exc

        logger.info(
            "Codex app-server started run=%s pid=%s cwd=%s bypass=%s",
            input.run_id, getattr(self._process, "pid", None),
            input.working_directory, input.bypass_permission,
        )
        callbacks.launch_command(shlex.join(cmd))

        self._stdout_task = self._spawn_task(self._read_stdout())
        self._spawn_task(self._read_stderr())
        self._spawn_task(self._watch_exit())
        self._spawn_task(self._bootstrap(input))

    async def respond(
        self, interaction_id: str, payload: ResponsePayload,
    ) -> None:
        pending = self._interactions.get(interaction_id)
        if pending is None:
            raise ExternalCliProtocolError(
                f"Codex has no pending interaction {interaction_id}.",
                field_name="interaction_id",
            )
        request_id, interaction_type, metadata = pending

        if interaction_type is InteractionType.PERMISSION:
            decision = _DECISION_TO_CODEX.get(payload.decision, "decline")
            result: dict[str, Any] = {"decision": decision}
        else:
            answer = payload.text.strip()
            result = {
                "answers": {
                    question_id: {"answers": [answer]}
                    for question_id in metadata.get("question_ids", [])
                },
            }

        await self._write_json({"jsonrpc": "2.0", "id": request_id, "result": result})
        del self._interactions[interaction_id]
        logger.info(
            "Codex interaction %s answered (%s)", interaction_id, payload.decision.value,
        )
        if self._active_interaction == interaction_id:
            self._active_interaction = None
        if self._callbacks is not None:
            self._callbacks.on_interaction_resolved(interaction_id)
        self._surface_next_interaction()

    async def cancel(self, reason: str | None = None) -> None:
        self._stopped = True
        if self._thread_id and self._turn_id:
            try:
                await self._send_request(
                    "turn/interrupt",
                    {"threadId": self._thread_id, "turnId": self._turn_id},
                    timeout=self._kill_grace,
                )
            except CodexRpcError as exc:
                # Termination below is authoritative.
                logger.debug("turn/interrupt failed: %s", exc)

        await self._terminate()
        self._report_cancelled(reason or "Codex run cancelled.")

    async def dispose(self) -> None:
        self._stopped = True
        await self._terminate()

        for request_id, future in list(self._requests.items()):
            if not future.done():
                future.set_exception(CodexRpcError("Codex adapter disposed."))
            self._requests.pop(request_id, None)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        self._queued_interactions.clear()
        self._active_interaction = None
        self._interactions.clear()
        self._callbacks = None
        self._thread_id = None
        self._turn_id = None

    # ── Bootstrap ──

    async def _bootstrap(self, input: AdapterStartInput) -> None:
        callbacks = self._callbacks
        if callbacks is None:
            return
        callbacks.on_progress(ProgressKind.STATUS, "Starting Codex CLI run...")
        try:
            await self._send_request("initialize", {
                "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            })

            account = await self._send_request("account/read", {"refreshToken": False})
            if not isinstance(account, dict) or not account.get("account"):
                self._report_failed(CLI_AUTH_REQUIRED, AUTH_REQUIRED_MESSAGE)
                return

            approval_policy = "never" if input.bypass_permission else "on-request"
            thread = await self._send_request("thread/start", {
                "cwd": input.working_directory,
                "approvalPolicy": approval_policy,
                "sandbox": (
                    "danger-full-access" if input.bypass_permission else "workspace-write"
                ),
            })
            thread_id = None
            if isinstance(thread, dict) and isinstance(thread.get("thread"), dict):
                thread_id = thread["thread"].get("id")
            if not thread_id:
                raise CodexRpcError("Codex thread/start did not return a thread id.")
            self._thread_id = thread_id

            await self._send_request("turn/start", {
                "threadId": thread_id,
                "input": [{"type": "text", "text": input.prompt}],
                "cwd": input.working_directory,
                "approvalPolicy": approval_policy,
                "sandboxPolicy": (
                    {"type": "dangerFullAccess"}
                    if input.bypass_permission
                    else {"type": "workspaceWrite", "networkAccess": False}
                ),
            })
        except CodexRpcError as exc:
            if self._stopped:
                return
            self._report_failed(
                CLI_PROTOCOL_ERROR,
                self._failure_message(f"Codex initialization failed: {exc}"),
            )

    # ── JSON-RPC transport ──

    async def _send_request(
        self, method: str, params: dict[str, Any], timeout: float | None = None,
    ) -> Any:
        self._request_id += 1
        request_id = self._request_id
        future = asyncio.get_running_loop().create_future()
        self._requests[request_id] = future

        await self._write_json({
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params,
        })
        try:
            return await asyncio.wait_for(
                future, timeout=timeout or self._request_timeout,
            )
        except asyncio.TimeoutError:
            raise CodexRpcError(f"Codex request timed out: {method}") from None
        finally:
            self._requests.pop(request_id, None)

    async def _write_json(self, payload: dict[str, Any]) -> None:
        proc = self._process
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            raise CodexRpcError("Codex app-server stdin is closed.")
        proc.stdin.write(json.dumps(payload).encode("utf-8") + b"\n")
        try:
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise CodexRpcError(f"Codex app-server stdin closed: {exc}") from exc

    async def _read_stdout(self) -> None:
        reader = self._process.stdout
        while True:
            try:
                line = await reader.readline()
            except ValueError as exc:
                self._diagnostic("note", f"Dropped oversized stdout line: {exc}")
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            self._stdout_tail.append(text)
            self._diagnostic("stdout", text)
            await self._handle_line(text)

        for future in self._requests.values():
            if not future.done():
                future.set_exception(CodexRpcError("Codex app-server closed stdout."))

    async def _read_stderr(self) -> None:
        reader = self._process.stderr
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                self._stderr_tail.append(text)
                self._diagnostic("stderr", text)
                logger.debug("codex stderr: %s", text)

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        if self._stdout_task is not None:
            # Let queued notifications (turn/completed) land first.
            await asyncio.wait({self._stdout_task}, timeout=self._kill_grace)
        exit_signal = _signal_name(returncode)
        logger.info(
            "Codex app-server exited code=%s signal=%s", returncode, exit_signal,
        )
        callbacks = self._callbacks
        if callbacks is None:
            return
        callbacks.process_exit(returncode, exit_signal)
        self._diagnostic(
            "note", f"Process closed (code={returncode} signal={exit_signal})",
        )
        if self._stopped or self._finished:
            return
        if returncode == 0:
            message = "Codex process exited before the run completed."
        else:
            message = f"Codex process exited unexpectedly with code {returncode}."
        self._report_failed(CLI_PROTOCOL_ERROR, self._failure_message(message))

    async def _handle_line(self, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            self._diagnostic("note", "Received non-JSON stdout line from Codex app-server.")
            return
        if not isinstance(message, dict):
            return

        method = message.get("method")
        has_id = "id" in message and message["id"] is not None
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}

        if has_id and method is None:
            self._resolve_response(message)
        elif has_id and isinstance(method, str):
            await self._handle_server_request(message["id"], method, params)
        elif isinstance(method, str):
            self._handle_notification(method, params)

    def _resolve_response(self, message: dict[str, Any]) -> None:
        future = self._requests.get(message["id"])
        if future is None or future.done():
            return
        error = message.get("error")
        if error is not None:
            detail = error.get("message") if isinstance(error, dict) else None
            code = error.get("code") if isinstance(error, dict) else None
            future.set_exception(
                CodexRpcError(detail or f"JSON-RPC error {code if code is not None else 'unknown'}")
            )
            return
        future.set_result(message.get("result"))

    # ── Server → client traffic ──

    def _handle_notification(self, method: str, params: dict[str, Any]) -> None:
        callbacks = self._callbacks
        if callbacks is None or self._finished:
            return

        if method == "turn/started":
            turn = params.get("turn")
            if isinstance(turn, dict) and isinstance(turn.get("id"), str):
                self._turn_id = turn["id"]
            callbacks.on_progress(ProgressKind.STATUS, "Codex run started.")
            return

        if method in ("item/agentMessage/delta", "item/plan/delta"):
            delta = params.get("delta")
            if isinstance(delta, str) and delta.strip():
                callbacks.on_progress(ProgressKind.ASSISTANT, delta.strip())
            return

        if method == "item/completed":
            item = params.get("item")
            if (
                isinstance(item, dict)
                and item.get("type") in ("agentMessage", "plan")
                and isinstance(item.get("text"), str)
                and item["text"].strip()
            ):
                callbacks.on_progress(ProgressKind.ASSISTANT, item["text"].strip())
            return

        if method == "error":
            code, message = classify_codex_error(params)
            self._report_failed(code, message)
            return

        if method == "turn/completed":
            turn = params.get("turn")
            status = "completed"
            if isinstance(turn, dict) and isinstance(turn.get("status"), str):
                status = turn["status"]
            if status == "failed":
                error = turn.get("error") if isinstance(turn, dict) else None
                if not isinstance(error, dict):
                    error = {"message": "Codex run failed."}
                code, message = classify_codex_error(error)
                self._report_failed(code, message)
                return
            self._finished = True
            callbacks.on_completed("Codex run completed successfully.")
            return

        logger.debug("Unhandled codex notification: %s", method)

    async def _handle_server_request(
        self, request_id: int | str, method: str, params: dict[str, Any],
    ) -> None:
        callbacks = self._callbacks
        if callbacks is None or self._finished:
            await self._write_json({"jsonrpc": "2.0", "id": request_id, "result": {}})
            return

        if method in APPROVAL_METHODS:
            interaction_id = make_id("ext-int")
            prompt_parts = ["Codex requests permission."]
            command = params.get("command")
            if isinstance(command, list):
                command = shlex.join(str(part) for part in command)
            if isinstance(command, str) and command:
                prompt_parts.append(f"Command: {command}")
            reason = params.get("reason")
            if isinstance(reason, str) and reason:
                prompt_parts.append(f"Reason: {reason}")
            metadata: dict[str, Any] = {"method": method, "request_id": request_id}
            if isinstance(params.get("itemId"), str):
                metadata["item_id"] = params["itemId"]

            self._interactions[interaction_id] = (
                request_id, InteractionType.PERMISSION, metadata,
            )
            self._enqueue_interaction(InteractionRequest(
                interaction_id=interaction_id,
                type=InteractionType.PERMISSION,
                prompt=" ".join(prompt_parts),
                options=list(PERMISSION_OPTIONS),
                metadata=metadata,
            ))
            return

        if method == USER_INPUT_METHOD:
            questions = params.get("questions")
            if not isinstance(questions, list):
                questions = []
            first = questions[0] if questions and isinstance(questions[0], dict) else {}
            prompt = first.get("question") if isinstance(first.get("question"), str) else ""
            question_ids = [
                q["id"] for q in questions
                if isinstance(q, dict) and isinstance(q.get("id"), str)
            ]
            raw_options = first.get("options")
            options = [
                str(option["label"]) for option in raw_options
                if isinstance(option, dict) and isinstance(option.get("label"), str)
            ] if isinstance(raw_options, list) else []

            interaction_id = make_id("ext-int")
            metadata = {"request_id": request_id, "question_ids": question_ids}
            self._interactions[interaction_id] = (
                request_id, InteractionType.QUESTION, metadata,
            )
            self._enqueue_interaction(InteractionRequest(
                interaction_id=interaction_id,
                type=InteractionType.QUESTION,
                prompt=prompt or "Codex requested additional user input.",
                options=options or None,
                metadata=metadata,
            ))
            return

        logger.debug("Auto-acknowledging codex server request: %s", method)
        await self._write_json({"jsonrpc": "2.0", "id": request_id, "result": {}})

    # ── Helpers ──

    def _enqueue_interaction(self, request: InteractionRequest) -> None:
        self._queued_interactions.append(request)
        self._surface_next_interaction()

    def _surface_next_interaction(self) -> None:
        if self._active_interaction is not None or self._callbacks is None:
            return
        if self._queued_interactions:
            request = self._queued_interactions.popleft()
            self._active_interaction = request.interaction_id
            self._callbacks.on_waiting_interaction(request)

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _diagnostic(self, stream: str, text: str) -> None:
        if self._callbacks is not None:
            self._callbacks.diagnostic(stream, text)

    def _report_failed(self, code: str, message: str) -> None:
        if self._finished or self._callbacks is None:
            return
        self._finished = True
        logger.warning("Codex run failed code=%s: %s", code, message.splitlines()[0])
        self._callbacks.on_failed(code, message)

    def _report_cancelled(self, reason: str) -> None:
        if self._finished or self._callbacks is None:
            return
        self._finished = True
        self._callbacks.on_cancelled(reason)

    def _failure_message(self, base: str) -> str:
        parts = [base]
        stderr_tail = "\n".join(list(self._stderr_tail)[-_TAIL_REPORT_LINES:]).strip()
        stdout_tail = "\n".join(list(self._stdout_tail)[-_TAIL_REPORT_LINES:]).strip()
        if stderr_tail:
            parts.append(f"stderr tail:\n{stderr_tail}")
        if stdout_tail:
            parts.append(f"stdout tail:\n{stdout_tail}")
        return "\n\n".join(parts)

    async def _terminate(self) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
            logger.info("Codex app-server stopped (pid=%s)", getattr(proc, "pid", None))
        except ProcessLookupError:
            pass
