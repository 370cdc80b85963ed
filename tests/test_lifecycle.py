import pytest

from extcli.engine.lifecycle import VALID_TRANSITIONS, can_transition, validate_transition
from extcli.engine.models import RunStatus

TERMINAL = [
    RunStatus.COMPLETED,
    RunStatus.FAILED,
    RunStatus.CANCELLED,
    RunStatus.INTERRUPTED,
]


def test_every_status_has_an_entry() -> None:
    assert set(VALID_TRANSITIONS) == set(RunStatus)


@pytest.mark.parametrize("terminal", TERMINAL)
def test_terminal_states_are_absorbing(terminal) -> None:
    assert terminal.is_terminal
    for target in RunStatus:
        assert not can_transition(terminal, target)


def test_waiting_user_round_trip() -> None:
    assert can_transition(RunStatus.RUNNING, RunStatus.WAITING_USER)
    assert can_transition(RunStatus.WAITING_USER, RunStatus.RUNNING)


def test_queued_cannot_wait_for_user() -> None:
    assert not can_transition(RunStatus.QUEUED, RunStatus.WAITING_USER)
    assert not can_transition(RunStatus.QUEUED, RunStatus.COMPLETED)


def test_validate_transition_raises_with_allowed_list() -> None:
    with pytest.raises(ValueError, match="none \\(terminal\\)"):
        validate_transition(RunStatus.COMPLETED, RunStatus.RUNNING)
    validate_transition(RunStatus.QUEUED, RunStatus.RUNNING)


def test_active_is_the_complement_of_terminal() -> None:
    for status in RunStatus:
        assert status.is_active is (status not in TERMINAL)
