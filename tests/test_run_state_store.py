import json

from extcli.engine.errors import CLI_RUN_INTERRUPTED
from extcli.engine.models import (
    ExternalCliProvider,
    InteractionType,
    PendingInteraction,
    ProgressEntry,
    ProgressKind,
    RunOrigin,
    RunRecord,
    RunStatus,
)
from extcli.shared.services.run_state_store import (
    INTERRUPTED_MESSAGE,
    INTERRUPTED_PROGRESS,
    STATE_FILE_NAME,
    RunStateStore,
)


def _record(run_id: str, status: RunStatus, **kwargs) -> RunRecord:
    return RunRecord(
        run_id=run_id,
        session_id="session-1",
        provider=ExternalCliProvider.CODEX,
        prompt="fix the tests",
        working_directory="/work",
        status=status,
        started_at=1_000,
        updated_at=2_000,
        progress=[ProgressEntry(1_000, ProgressKind.STATUS, "Queued codex run.")],
        **kwargs,
    )


def test_missing_file_loads_empty(tmp_path) -> None:
    assert RunStateStore(tmp_path).load() == []


def test_save_writes_runs_and_updated_at(tmp_path) -> None:
    store = RunStateStore(tmp_path / "data")
    store.save([_record("run-1", RunStatus.COMPLETED, finished_at=3_000)])

    data = json.loads((tmp_path / "data" / STATE_FILE_NAME).read_text())
    assert set(data) == {"runs", "updatedAt"}
    assert data["runs"][0]["runId"] == "run-1"
    assert data["runs"][0]["status"] == "completed"
    assert data["runs"][0]["progress"][0]["kind"] == "status"


def test_terminal_runs_round_trip_unchanged(tmp_path) -> None:
    store = RunStateStore(tmp_path)
    original = _record(
        "run-1",
        RunStatus.FAILED,
        finished_at=3_000,
        error_code="CLI_AUTH_REQUIRED",
        error_message="login first",
        origin=RunOrigin(source="integration", platform="slack", chat_id="C1"),
    )
    store.save([original])

    [loaded] = store.load()
    assert loaded == original


def test_in_flight_runs_become_interrupted(tmp_path) -> None:
    store = RunStateStore(tmp_path)
    pending = PendingInteraction(
        interaction_id="int-1",
        run_id="run-2",
        session_id="session-1",
        provider=ExternalCliProvider.CODEX,
        type=InteractionType.PERMISSION,
        prompt="Allow rm?",
        requested_at=1_500,
    )
    store.save([
        _record("run-1", RunStatus.RUNNING),
        _record("run-2", RunStatus.WAITING_USER, pending_interaction=pending),
        _record("run-3", RunStatus.COMPLETED, finished_at=2_500),
    ])

    runs = {run.run_id: run for run in store.load()}

    for run_id in ("run-1", "run-2"):
        run = runs[run_id]
        assert run.status is RunStatus.INTERRUPTED
        assert run.error_code == CLI_RUN_INTERRUPTED
        assert run.error_message == INTERRUPTED_MESSAGE
        assert run.pending_interaction is None
        assert run.finished_at is not None
        assert run.progress[-1].kind is ProgressKind.ERROR
        assert run.progress[-1].message == INTERRUPTED_PROGRESS
        # Earlier progress is kept in order.
        assert run.progress[0].message == "Queued codex run."

    assert runs["run-3"].status is RunStatus.COMPLETED
    assert runs["run-3"].finished_at == 2_500


def test_corrupt_file_is_backed_up(tmp_path) -> None:
    path = tmp_path / STATE_FILE_NAME
    path.write_text("{not json")

    assert RunStateStore(tmp_path).load() == []
    assert not path.exists()
    backups = list(tmp_path.glob(f"{STATE_FILE_NAME}.corrupt-*.json"))
    assert len(backups) == 1
    assert backups[0].read_text() == "{not json"


def test_empty_file_is_backed_up(tmp_path) -> None:
    path = tmp_path / STATE_FILE_NAME
    path.write_text("  \n")

    assert RunStateStore(tmp_path).load() == []
    assert list(tmp_path.glob(f"{STATE_FILE_NAME}.corrupt-*.json"))


def test_malformed_record_is_treated_as_corrupt(tmp_path) -> None:
    path = tmp_path / STATE_FILE_NAME
    path.write_text(json.dumps({"runs": [{"runId": "x"}], "updatedAt": 1}))

    assert RunStateStore(tmp_path).load() == []
    assert list(tmp_path.glob(f"{STATE_FILE_NAME}.corrupt-*.json"))


def test_save_leaves_no_temp_files(tmp_path) -> None:
    store = RunStateStore(tmp_path)
    store.save([])
    store.save([_record("run-1", RunStatus.CANCELLED, finished_at=5)])

    assert sorted(p.name for p in tmp_path.iterdir()) == [STATE_FILE_NAME]


def test_load_sweeps_temp_files_from_interrupted_write(tmp_path) -> None:
    store = RunStateStore(tmp_path)
    store.save([_record("run-1", RunStatus.COMPLETED, finished_at=5)])
    (tmp_path / f".{STATE_FILE_NAME}.abc123.tmp").write_text('{"runs": [')

    runs = store.load()

    assert [run.run_id for run in runs] == ["run-1"]
    assert sorted(p.name for p in tmp_path.iterdir()) == [STATE_FILE_NAME]


def test_state_without_runs_list_is_backed_up(tmp_path) -> None:
    path = tmp_path / STATE_FILE_NAME
    path.write_text(json.dumps({"runs": {"run-1": {}}, "updatedAt": 1}))

    assert RunStateStore(tmp_path).load() == []
    assert not path.exists()
    backups = list(tmp_path.glob(f"{STATE_FILE_NAME}.corrupt-*.json"))
    assert len(backups) == 1
