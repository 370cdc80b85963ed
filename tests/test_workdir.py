import os

import pytest

from extcli.engine.errors import CLI_PROTOCOL_ERROR, ExternalCliProtocolError
from extcli.engine.workdir import prepare_working_directory, resolve_working_directory


def test_relative_path_resolves_against_root(tmp_path) -> None:
    resolved = resolve_working_directory(str(tmp_path), "proj/sub")
    assert resolved == os.path.join(str(tmp_path), "proj", "sub")


def test_absolute_path_is_unchanged(tmp_path) -> None:
    target = str(tmp_path / "abs")
    assert resolve_working_directory("/somewhere/else", target) == target


def test_dot_segments_are_normalized(tmp_path) -> None:
    resolved = resolve_working_directory(str(tmp_path), "a/../b/./c")
    assert resolved == os.path.join(str(tmp_path), "b", "c")


def test_existing_directory_is_accepted(tmp_path) -> None:
    (tmp_path / "repo").mkdir()
    assert prepare_working_directory("repo", str(tmp_path), False) == str(tmp_path / "repo")


def test_missing_directory_without_create_fails_and_creates_nothing(tmp_path) -> None:
    with pytest.raises(ExternalCliProtocolError) as exc_info:
        prepare_working_directory("new/project", str(tmp_path), False)

    err = exc_info.value
    assert err.code == CLI_PROTOCOL_ERROR
    assert str(tmp_path / "new" / "project") in err.message
    assert "create_if_missing" in err.message
    assert not (tmp_path / "new").exists()


def test_missing_directory_is_created_when_allowed(tmp_path) -> None:
    resolved = prepare_working_directory("new/project", str(tmp_path), True)
    assert os.path.isdir(resolved)


def test_file_in_the_way_is_rejected(tmp_path) -> None:
    (tmp_path / "notes.txt").write_text("hi")
    with pytest.raises(ExternalCliProtocolError, match="not a directory"):
        prepare_working_directory("notes.txt", str(tmp_path), True)


def test_creation_failure_removes_partial_tree(tmp_path) -> None:
    # A file as an intermediate component makes mkdir fail partway.
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "blocker").write_text("x")
    with pytest.raises(ExternalCliProtocolError, match="Failed to create"):
        prepare_working_directory("a/blocker/child", str(tmp_path), True)
    assert (tmp_path / "a" / "blocker").is_file()


def test_empty_path_is_rejected(tmp_path) -> None:
    with pytest.raises(ExternalCliProtocolError) as exc_info:
        prepare_working_directory("   ", str(tmp_path), True)
    assert exc_info.value.field_name == "working_directory"
