"""Exception hierarchy for the external CLI subsystem.

Every error surfaced to callers carries a stable ``code`` from the
taxonomy below so the tool layer can report it without parsing text.
Adapter-reported failure codes never become exceptions; they are
stored on the run record.
"""
from __future__ import annotations

CLI_PROTOCOL_ERROR = "CLI_PROTOCOL_ERROR"
CLI_PROVIDER_BLOCKED = "CLI_PROVIDER_BLOCKED"
CLI_AUTH_REQUIRED = "CLI_AUTH_REQUIRED"
CLI_RUN_INTERRUPTED = "CLI_RUN_INTERRUPTED"


class ExternalCliError(Exception):
    """Base exception for all external CLI errors."""
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ExternalCliProtocolError(ExternalCliError):
    """Malformed input, unusable working directory, or bad interaction reply."""
    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        field_name: str | None = None,
    ):
        self.path = path
        self.field_name = field_name
        super().__init__(CLI_PROTOCOL_ERROR, message)


class ProviderBlockedError(ExternalCliError):
    """A policy gate (settings, install, trust, auth) rejected the provider.

    Raised before any process is spawned. ``reason`` is one of
    ``disabled``, ``not_installed``, ``untrusted``, ``unauthenticated``.
    """
    def __init__(self, provider: str, reason: str, message: str):
        self.provider = provider
        self.reason = reason
        super().__init__(CLI_PROVIDER_BLOCKED, message)
