"""YAML configuration loader.

Loads a single YAML file holding manager settings and per-provider
runtime settings. Env vars (config.py) provide the base values; keys
present in the file override them.

Example YAML:
    manager:
      app_data_dir: ~/.extcli
      default_cwd: ~/projects
      discovery_ttl_seconds: 30
      probe_timeout_seconds: 10
      cancel_grace_seconds: 5
      max_persisted_runs: 200

    providers:
      codex:
        enabled: true
        allow_bypass_permissions: false
      claude:
        enabled: true
        allow_bypass_permissions: true
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import ManagerConfig, ProviderRuntimeSettings, RuntimeConfig

logger = logging.getLogger(__name__)

_PATH_KEYS = {"app_data_dir", "default_cwd"}


@dataclass
class ExtCliConfig:
    """Complete parsed configuration."""
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)


def _apply_manager_section(base: ManagerConfig, section: dict[str, Any]) -> ManagerConfig:
    known = {f.name: f for f in fields(ManagerConfig)}
    for key, value in section.items():
        if key not in known:
            logger.warning("Unknown manager setting '%s'; skipping", key)
            continue
        if value is None:
            continue
        if key in _PATH_KEYS:
            value = os.path.expanduser(str(value))
        current = getattr(base, key)
        try:
            if isinstance(current, bool):
                value = bool(value)
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid value for manager.%s: %r; keeping %r",
                key, value, current,
            )
            continue
        setattr(base, key, value)
    return base


def _apply_providers_section(
    base: RuntimeConfig, section: dict[str, Any],
) -> RuntimeConfig:
    for name, raw in section.items():
        if name not in ("codex", "claude"):
            logger.warning("Unknown provider '%s' in config; skipping", name)
            continue
        if not isinstance(raw, dict):
            logger.warning("Provider '%s' settings must be a mapping; skipping", name)
            continue
        setattr(base, name, ProviderRuntimeSettings.from_dict(raw))
    return base


def load_yaml_config(path: str | Path | None) -> ExtCliConfig:
    """Load and parse a YAML config file.

    A missing file or a parse error logs a warning and yields the
    env-derived defaults; configuration problems never stop startup.
    """
    config = ExtCliConfig(
        manager=ManagerConfig.from_env(),
        runtime=RuntimeConfig.from_env(),
    )
    if path is None:
        return config

    path = Path(path).expanduser()
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.is_file(),
    )
    if not path.is_file():
        logger.warning("Config file not found: %s; using defaults", path)
        return config

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.warning("YAML parse error in %s: %s; using defaults", path, exc)
        return config
    except OSError as exc:
        logger.warning("Could not read %s: %s; using defaults", path, exc)
        return config

    if not isinstance(data, dict):
        logger.warning("Config root in %s is not a mapping; using defaults", path)
        return config

    manager_section = data.get("manager") or {}
    if isinstance(manager_section, dict):
        _apply_manager_section(config.manager, manager_section)

    providers_section = data.get("providers") or {}
    if isinstance(providers_section, dict):
        _apply_providers_section(config.runtime, providers_section)

    return config
