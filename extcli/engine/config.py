"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via EXTCLI_* env vars,
or via a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import ExternalCliProvider

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning("Ignoring unparseable boolean %s=%r", name, raw)
    return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring unparseable number %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring unparseable integer %s=%r", name, raw)
        return default


@dataclass
class ProviderRuntimeSettings:
    """Operator settings for one provider."""
    enabled: bool = False
    allow_bypass_permissions: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProviderRuntimeSettings:
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            allow_bypass_permissions=bool(
                data.get(
                    "allow_bypass_permissions",
                    data.get("allowBypassPermissions", False),
                )
            ),
        )


@dataclass
class RuntimeConfig:
    """Per-provider runtime settings. Both providers are off by default."""
    codex: ProviderRuntimeSettings = field(default_factory=ProviderRuntimeSettings)
    claude: ProviderRuntimeSettings = field(default_factory=ProviderRuntimeSettings)

    def for_provider(self, provider: ExternalCliProvider | str) -> ProviderRuntimeSettings:
        provider = ExternalCliProvider(provider)
        if provider is ExternalCliProvider.CODEX:
            return self.codex
        return self.claude

    @classmethod
    def from_env(cls) -> RuntimeConfig:
        return cls(
            codex=ProviderRuntimeSettings(
                enabled=_env_bool("EXTCLI_CODEX_ENABLED", False),
                allow_bypass_permissions=_env_bool("EXTCLI_CODEX_ALLOW_BYPASS", False),
            ),
            claude=ProviderRuntimeSettings(
                enabled=_env_bool("EXTCLI_CLAUDE_ENABLED", False),
                allow_bypass_permissions=_env_bool("EXTCLI_CLAUDE_ALLOW_BYPASS", False),
            ),
        )


@dataclass
class ManagerConfig:
    """Run manager and discovery configuration."""

    # Directory holding external-cli-runs.json
    app_data_dir: str = str(Path.home() / ".extcli")
    # Root for relative working directories
    default_cwd: str = "."

    # Discovery cache lifetime and per-probe subprocess budget
    discovery_ttl_seconds: float = 30.0
    probe_timeout_seconds: float = 10.0

    # How long cancel() waits for the adapter to acknowledge before
    # forcing the run to cancelled.
    cancel_grace_seconds: float = 5.0

    # Retention of persisted history (most recently updated first)
    max_persisted_runs: int = 200
    # Per-stream cap on captured stdout/stderr diagnostics
    max_diagnostic_chars: int = 20_000

    # When False, a session may hold one active run per provider.
    allow_concurrent_session_runs: bool = False

    @classmethod
    def from_env(cls) -> ManagerConfig:
        """Load configuration from EXTCLI_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("EXTCLI_")
        }
        if overrides:
            logger.info(
                "ManagerConfig.from_env: EXTCLI_* env overrides: %s",
                ", ".join(sorted(overrides)),
            )
        else:
            logger.debug("ManagerConfig.from_env: no EXTCLI_* env vars set, using defaults")

        return cls(
            app_data_dir=os.getenv("EXTCLI_APP_DATA_DIR", cls.app_data_dir),
            default_cwd=os.getenv("EXTCLI_DEFAULT_CWD", cls.default_cwd),
            discovery_ttl_seconds=_env_float(
                "EXTCLI_DISCOVERY_TTL", cls.discovery_ttl_seconds,
            ),
            probe_timeout_seconds=_env_float(
                "EXTCLI_PROBE_TIMEOUT", cls.probe_timeout_seconds,
            ),
            cancel_grace_seconds=_env_float(
                "EXTCLI_CANCEL_GRACE", cls.cancel_grace_seconds,
            ),
            max_persisted_runs=_env_int(
                "EXTCLI_MAX_PERSISTED_RUNS", cls.max_persisted_runs,
            ),
            max_diagnostic_chars=_env_int(
                "EXTCLI_MAX_DIAGNOSTIC_CHARS", cls.max_diagnostic_chars,
            ),
            allow_concurrent_session_runs=_env_bool(
                "EXTCLI_ALLOW_CONCURRENT_SESSION_RUNS",
                cls.allow_concurrent_session_runs,
            ),
        )
