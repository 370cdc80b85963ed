import asyncio
from types import SimpleNamespace

import pytest
from claude_agent_sdk import ClaudeSDKError
from claude_agent_sdk.types import PermissionResultAllow, PermissionResultDeny

from extcli.engine.errors import CLI_AUTH_REQUIRED, CLI_PROTOCOL_ERROR, ExternalCliProtocolError
from extcli.engine.models import (
    ExternalCliProvider,
    InteractionType,
    ProgressKind,
    ResponseDecision,
    ResponsePayload,
)
from extcli.engine.providers.base import AdapterStartInput
from extcli.engine.providers.claude_adapter import AUTH_REQUIRED_MESSAGE, ClaudeAgentAdapter

from support import Recorder, wait_until


class ScriptedQuery:
    """Stands in for claude_agent_sdk.query()."""

    def __init__(self, messages=(), *, hold: bool = False, error: Exception | None = None) -> None:
        self.messages = list(messages)
        self.hold = hold
        self.error = error
        self.options = None
        self.prompts: list[dict] = []
        self.release = asyncio.Event()

    async def __call__(self, *, prompt, options):
        self.options = options
        async for item in prompt:
            self.prompts.append(item)
        for message in self.messages:
            yield message
        if self.hold:
            await self.release.wait()
        if self.error is not None:
            raise self.error


def _start_input(**overrides) -> AdapterStartInput:
    values = dict(
        run_id="run-1",
        session_id="session-1",
        provider=ExternalCliProvider.CLAUDE,
        prompt="Explain the build",
        working_directory="/work/project",
    )
    values.update(overrides)
    return AdapterStartInput(**values)


def _result(text: str, is_error: bool = False) -> SimpleNamespace:
    return SimpleNamespace(result=text, is_error=is_error)


async def _started(query: ScriptedQuery, **overrides):
    adapter = ClaudeAgentAdapter(query_fn=query, cancel_timeout=0.5)
    recorder = Recorder()
    await adapter.start(_start_input(**overrides), recorder.callbacks())
    return adapter, recorder


@pytest.mark.asyncio
async def test_successful_run_reports_progress_and_result() -> None:
    query = ScriptedQuery([
        SimpleNamespace(subtype="init", data={"session_id": "abc"}),
        SimpleNamespace(content=[SimpleNamespace(text="Reading the Makefile")]),
        SimpleNamespace(content=[SimpleNamespace(name="Read", input={"file_path": "Makefile"})]),
        _result("The build uses make."),
    ])
    adapter, recorder = await _started(query)
    await wait_until(lambda: recorder.completed)

    assert recorder.completed == ["The build uses make."]
    assert recorder.progress[0] == (ProgressKind.STATUS, "Starting Claude CLI run...")
    assert (ProgressKind.STATUS, "Claude run initialized.") in recorder.progress
    assert (ProgressKind.ASSISTANT, "Reading the Makefile") in recorder.progress
    assert (ProgressKind.STATUS, "Claude is using tool Read.") in recorder.progress
    assert query.prompts == [{
        "type": "user",
        "message": {"role": "user", "content": "Explain the build"},
    }]
    assert query.options.cwd == "/work/project"
    assert query.options.permission_mode == "default"
    assert "--permission-mode default" in recorder.launch[0]
    await adapter.dispose()


@pytest.mark.asyncio
async def test_binary_path_is_passed_to_sdk() -> None:
    query = ScriptedQuery([_result("ok")])
    adapter, recorder = await _started(query, binary_path="/usr/local/bin/claude")
    await wait_until(lambda: recorder.completed)

    assert str(query.options.cli_path) == "/usr/local/bin/claude"
    assert recorder.launch[0].startswith("/usr/local/bin/claude ")
    await adapter.dispose()


@pytest.mark.asyncio
async def test_error_result_with_auth_text_is_auth_required() -> None:
    adapter, recorder = await _started(ScriptedQuery([_result("Invalid API key", is_error=True)]))
    await wait_until(lambda: recorder.failed)

    assert recorder.failed == [(CLI_AUTH_REQUIRED, AUTH_REQUIRED_MESSAGE)]
    await adapter.dispose()


@pytest.mark.asyncio
async def test_error_result_is_protocol_failure() -> None:
    adapter, recorder = await _started(ScriptedQuery([_result("Tool crashed", is_error=True)]))
    await wait_until(lambda: recorder.failed)

    assert recorder.failed == [(CLI_PROTOCOL_ERROR, "Tool crashed")]
    await adapter.dispose()


@pytest.mark.asyncio
async def test_sdk_error_is_reported_as_failure() -> None:
    adapter, recorder = await _started(ScriptedQuery(error=ClaudeSDKError("process exited 1")))
    await wait_until(lambda: recorder.failed)

    code, message = recorder.failed[0]
    assert code == CLI_PROTOCOL_ERROR
    assert "process exited 1" in message
    await adapter.dispose()


@pytest.mark.asyncio
async def test_stream_without_result_fails() -> None:
    adapter, recorder = await _started(ScriptedQuery([
        SimpleNamespace(content=[SimpleNamespace(text="partial")]),
    ]))
    await wait_until(lambda: recorder.failed)

    assert recorder.failed == [(CLI_PROTOCOL_ERROR, "Claude session ended without a result.")]
    await adapter.dispose()


@pytest.mark.asyncio
async def test_permission_prompt_waits_for_user() -> None:
    adapter, recorder = await _started(ScriptedQuery(hold=True))

    check = asyncio.ensure_future(
        adapter._check_permission("Bash", {"command": "npm test"}, None)
    )
    await wait_until(lambda: recorder.interactions)
    request = recorder.interactions[0]
    assert request.type is InteractionType.PERMISSION
    assert "Bash" in request.prompt
    assert "npm test" in request.prompt
    assert not check.done()

    await adapter.respond(request.interaction_id, ResponsePayload(ResponseDecision.ALLOW_ONCE))
    assert isinstance(await check, PermissionResultAllow)
    assert recorder.resolved == [request.interaction_id]
    await adapter.dispose()


@pytest.mark.asyncio
async def test_allow_session_skips_later_prompts_for_same_tool() -> None:
    adapter, recorder = await _started(ScriptedQuery(hold=True))

    check = asyncio.ensure_future(adapter._check_permission("Edit", {"file_path": "a.py"}))
    await wait_until(lambda: recorder.interactions)
    await adapter.respond(
        recorder.interactions[0].interaction_id,
        ResponsePayload(ResponseDecision.ALLOW_SESSION),
    )
    assert isinstance(await check, PermissionResultAllow)

    second = await adapter._check_permission("Edit", {"file_path": "b.py"})
    assert isinstance(second, PermissionResultAllow)
    assert len(recorder.interactions) == 1
    await adapter.dispose()


@pytest.mark.asyncio
async def test_deny_and_cancel_decisions() -> None:
    adapter, recorder = await _started(ScriptedQuery(hold=True))

    check = asyncio.ensure_future(adapter._check_permission("Bash", {"command": "rm -rf /"}))
    await wait_until(lambda: len(recorder.interactions) == 1)
    await adapter.respond(recorder.interactions[0].interaction_id, ResponsePayload(ResponseDecision.DENY))
    denied = await check
    assert isinstance(denied, PermissionResultDeny)
    assert denied.interrupt is False

    check = asyncio.ensure_future(adapter._check_permission("Bash", {"command": "rm -rf /"}))
    await wait_until(lambda: len(recorder.interactions) == 2)
    await adapter.respond(recorder.interactions[1].interaction_id, ResponsePayload(ResponseDecision.CANCEL))
    cancelled = await check
    assert isinstance(cancelled, PermissionResultDeny)
    assert cancelled.interrupt is True
    await adapter.dispose()


@pytest.mark.asyncio
async def test_bypass_allows_without_prompting() -> None:
    query = ScriptedQuery(hold=True)
    adapter, recorder = await _started(query, bypass_permission=True)

    result = await adapter._check_permission("Bash", {"command": "make"})

    assert isinstance(result, PermissionResultAllow)
    assert recorder.interactions == []
    await wait_until(lambda: query.options is not None)
    assert query.options.permission_mode == "bypassPermissions"
    await adapter.dispose()


@pytest.mark.asyncio
async def test_ask_user_question_returns_answer_through_deny_message() -> None:
    adapter, recorder = await _started(ScriptedQuery(hold=True), bypass_permission=True)

    check = asyncio.ensure_future(adapter._check_permission(
        "AskUserQuestion",
        {"questions": [{"question": "Which database?", "options": [{"label": "postgres"}]}]},
    ))
    await wait_until(lambda: recorder.interactions)
    request = recorder.interactions[0]
    assert request.type is InteractionType.QUESTION
    assert request.prompt == "Which database?"
    assert request.options == ["postgres"]

    # Free text that happens to contain "kill" is still just an answer.
    await adapter.respond(
        request.interaction_id,
        ResponsePayload(ResponseDecision.CANCEL, "kill the old one, use postgres"),
    )
    result = await check
    assert isinstance(result, PermissionResultDeny)
    assert result.message == "User responded: kill the old one, use postgres"
    await adapter.dispose()


@pytest.mark.asyncio
async def test_respond_to_unknown_interaction_raises() -> None:
    adapter, _ = await _started(ScriptedQuery(hold=True))
    with pytest.raises(ExternalCliProtocolError):
        await adapter.respond("ext-int-nope", ResponsePayload(ResponseDecision.ALLOW_ONCE))
    await adapter.dispose()


@pytest.mark.asyncio
async def test_cancel_releases_pending_prompt_and_acknowledges() -> None:
    adapter, recorder = await _started(ScriptedQuery(hold=True))

    check = asyncio.ensure_future(adapter._check_permission("Bash", {"command": "sleep 100"}))
    await wait_until(lambda: recorder.interactions)

    await adapter.cancel("Stopped by user.")

    result = await check
    assert isinstance(result, PermissionResultDeny)
    assert result.interrupt is True
    assert recorder.cancelled == ["Stopped by user."]
    assert recorder.failed == []
    await adapter.dispose()


@pytest.mark.asyncio
async def test_concurrent_tool_checks_are_surfaced_one_at_a_time() -> None:
    adapter, recorder = await _started(ScriptedQuery(hold=True))

    first = asyncio.ensure_future(adapter._check_permission("Bash", {"command": "npm test"}))
    second = asyncio.ensure_future(adapter._check_permission("Write", {"file_path": "a.py"}))
    await wait_until(lambda: recorder.interactions)
    await asyncio.sleep(0.05)

    assert len(recorder.interactions) == 1
    assert "Bash" in recorder.interactions[0].prompt

    await adapter.respond(
        recorder.interactions[0].interaction_id, ResponsePayload(ResponseDecision.ALLOW_ONCE),
    )
    assert isinstance(await first, PermissionResultAllow)
    await wait_until(lambda: len(recorder.interactions) == 2)
    assert "Write" in recorder.interactions[1].prompt
    assert not second.done()

    await adapter.respond(
        recorder.interactions[1].interaction_id, ResponsePayload(ResponseDecision.DENY),
    )
    assert isinstance(await second, PermissionResultDeny)
    assert recorder.resolved == [r.interaction_id for r in recorder.interactions]
    await adapter.dispose()


@pytest.mark.asyncio
async def test_cancel_releases_queued_tool_checks_without_prompting() -> None:
    adapter, recorder = await _started(ScriptedQuery(hold=True))

    first = asyncio.ensure_future(adapter._check_permission("Bash", {"command": "make"}))
    second = asyncio.ensure_future(adapter._check_permission("Edit", {"file_path": "b.py"}))
    await wait_until(lambda: recorder.interactions)

    await adapter.cancel("Stopped by user.")

    for check in (first, second):
        result = await check
        assert isinstance(result, PermissionResultDeny)
        assert result.interrupt is True
    assert len(recorder.interactions) == 1
    await adapter.dispose()
