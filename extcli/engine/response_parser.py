"""Classify a free-text user reply into a structured decision.

Used when a reply to a pending interaction arrives as plain chat text
(for example from an integration channel) instead of a button press.
Deterministic and stateless.

Precedence: cancel > allow (upgraded to allow_session by session
vocabulary) > deny > answer.
"""
from __future__ import annotations

import re

from .models import ResponseDecision, ResponsePayload

_CANCEL_RE = re.compile(
    r"\b(cancel|stop|abort|halt|terminate|kill|quit)\b|\bnever\s*mind\b",
    re.IGNORECASE,
)
_ALLOW_RE = re.compile(
    r"\b(allow|approve|approved|yes|yep|yeah|ok|okay|sure|proceed|accept|"
    r"confirm|grant|permit)\b|\bgo\s+ahead\b",
    re.IGNORECASE,
)
_NEGATED_ALLOW_RE = re.compile(
    r"\b(don'?t|do\s+not|never|not|no)\s+(allow|approve|accept|confirm|grant|"
    r"permit|proceed|go\s+ahead|ok|okay|sure|yes|yep|yeah)\b",
    re.IGNORECASE,
)
_SESSION_RE = re.compile(
    r"\b(session|always|remember|every\s*time)\b|\bfrom\s+now\s+on\b|"
    r"\bdon'?t\s+ask\s+again\b",
    re.IGNORECASE,
)
_DENY_RE = re.compile(
    r"\b(deny|reject|decline|no|nope|refuse|disallow|block)\b",
    re.IGNORECASE,
)


def _normalize(text: str) -> str:
    # Curly apostrophes show up from mobile keyboards.
    return text.replace("’", "'")


def parse_natural_language_response(text: str | None) -> ResponsePayload:
    """Map *text* to a ResponsePayload.

    >>> parse_natural_language_response("yes, always").decision.value
    'allow_session'
    >>> parse_natural_language_response("please stop").decision.value
    'cancel'
    """
    stripped = (text or "").strip()
    if not stripped:
        return ResponsePayload(ResponseDecision.ANSWER, "")

    normalized = _normalize(stripped)

    if _CANCEL_RE.search(normalized):
        return ResponsePayload(ResponseDecision.CANCEL, stripped)

    negated = _NEGATED_ALLOW_RE.search(normalized) is not None
    if not negated and _ALLOW_RE.search(normalized):
        if _SESSION_RE.search(normalized):
            return ResponsePayload(ResponseDecision.ALLOW_SESSION, stripped)
        return ResponsePayload(ResponseDecision.ALLOW_ONCE, stripped)

    if negated or _DENY_RE.search(normalized):
        return ResponsePayload(ResponseDecision.DENY, stripped)

    return ResponsePayload(ResponseDecision.ANSWER, stripped)
