import pytest

from extcli.engine.models import ResponseDecision
from extcli.engine.response_parser import parse_natural_language_response


@pytest.mark.parametrize(
    "text,expected",
    [
        ("allow", ResponseDecision.ALLOW_ONCE),
        ("Yes, go ahead", ResponseDecision.ALLOW_ONCE),
        ("approve it", ResponseDecision.ALLOW_ONCE),
        ("allow session", ResponseDecision.ALLOW_SESSION),
        ("yes, always allow this", ResponseDecision.ALLOW_SESSION),
        ("ok and remember that", ResponseDecision.ALLOW_SESSION),
        ("approve, don't ask again", ResponseDecision.ALLOW_SESSION),
        ("deny", ResponseDecision.DENY),
        ("no", ResponseDecision.DENY),
        ("reject that command", ResponseDecision.DENY),
        ("cancel", ResponseDecision.CANCEL),
        ("please stop the run", ResponseDecision.CANCEL),
        ("never mind", ResponseDecision.CANCEL),
        ("use the staging database", ResponseDecision.ANSWER),
        ("main.py", ResponseDecision.ANSWER),
        ("cancel this", ResponseDecision.CANCEL),
        ("always allow", ResponseDecision.ALLOW_SESSION),
        ("Use branch feature/x", ResponseDecision.ANSWER),
    ],
)
def test_classification(text, expected) -> None:
    assert parse_natural_language_response(text).decision is expected


def test_cancel_wins_over_allow() -> None:
    result = parse_natural_language_response("yes allow... actually no, cancel")
    assert result.decision is ResponseDecision.CANCEL


def test_allow_wins_over_deny() -> None:
    result = parse_natural_language_response("no problem, allow it")
    assert result.decision is ResponseDecision.ALLOW_ONCE


@pytest.mark.parametrize(
    "text",
    [
        "don't allow",
        "do not approve that",
        "Don’t allow this",
        "never allow it",
        "that's not okay",
        "I'm not sure",
        "no, not ok",
        "not yet, no",
    ],
)
def test_negated_allow_is_deny(text) -> None:
    assert parse_natural_language_response(text).decision is ResponseDecision.DENY


def test_negated_allow_with_session_words_is_still_deny() -> None:
    result = parse_natural_language_response("do not allow, always ask")
    assert result.decision is ResponseDecision.DENY


def test_empty_input_is_empty_answer() -> None:
    for text in ("", "   ", None):
        result = parse_natural_language_response(text)
        assert result.decision is ResponseDecision.ANSWER
        assert result.text == ""


def test_text_is_stripped_input() -> None:
    result = parse_natural_language_response("  Allow \n")
    assert result.text == "Allow"


def test_words_inside_other_words_do_not_match() -> None:
    # "know" contains "no", "allowance" contains "allow"
    result = parse_natural_language_response("I know the allowance file")
    assert result.decision is ResponseDecision.ANSWER


def test_deterministic() -> None:
    first = parse_natural_language_response("yes for this session")
    second = parse_natural_language_response("yes for this session")
    assert first == second
