"""JSON persistence for external CLI run history.

The whole history lives in one file, ``external-cli-runs.json``, shaped
as ``{"runs": [...], "updatedAt": <ms>}``. Writes are atomic. A run
that was still in flight when the previous process exited cannot be
resumed, so ``load()`` marks it ``interrupted``.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from extcli.engine.errors import CLI_RUN_INTERRUPTED
from extcli.engine.models import (
    PersistedState,
    ProgressEntry,
    ProgressKind,
    RunRecord,
    RunStatus,
    now_ms,
)
from extcli.shared.services.durable_write import atomic_write_json, sweep_temp_files

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "external-cli-runs.json"

INTERRUPTED_MESSAGE = (
    "External CLI run was interrupted because the host process restarted."
)
INTERRUPTED_PROGRESS = "Run interrupted after host restart."


class RunStateStore:
    """Load and save RunRecords under ``app_data_dir``."""

    def __init__(self, app_data_dir: str | Path) -> None:
        self._path = Path(app_data_dir).expanduser() / STATE_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[RunRecord]:
        """Return persisted runs, in-flight ones converted to interrupted.

        A missing file yields ``[]``. An empty or unreadable file is
        moved aside to ``<file>.corrupt-<ms>.json`` and also yields ``[]``.
        """
        sweep_temp_files(self._path)
        if not self._path.exists():
            return []

        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to read run state %s: %s", self._path, exc)
            return []

        if not raw.strip():
            backup = self._backup_corrupt_file("empty state file")
            logger.warning(
                "Run state file was empty and was reset%s",
                f" (backup: {backup})" if backup else "",
            )
            return []

        try:
            data = json.loads(raw)
            runs_data = data.get("runs") if isinstance(data, dict) else None
            if not isinstance(runs_data, list):
                raise ValueError("state file has no runs list")
            runs = [RunRecord.from_dict(entry) for entry in runs_data]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            backup = self._backup_corrupt_file(str(exc))
            logger.warning(
                "Failed to load run state: %s%s",
                exc, f" (backup: {backup})" if backup else "",
            )
            return []

        now = now_ms()
        recovered = 0
        for run in runs:
            if run.status.is_terminal:
                continue
            run.status = RunStatus.INTERRUPTED
            run.updated_at = now
            run.finished_at = now
            run.error_code = run.error_code or CLI_RUN_INTERRUPTED
            run.error_message = run.error_message or INTERRUPTED_MESSAGE
            run.pending_interaction = None
            run.progress.append(ProgressEntry(now, ProgressKind.ERROR, INTERRUPTED_PROGRESS))
            recovered += 1
        if recovered:
            logger.info("Marked %d in-flight run(s) as interrupted", recovered)
        return runs

    def save(self, runs: list[RunRecord]) -> None:
        state = PersistedState(runs=list(runs), updated_at=now_ms())
        atomic_write_json(self._path, state.to_dict())

    def _backup_corrupt_file(self, reason: str) -> Path | None:
        if not self._path.exists():
            return None
        backup = self._path.with_name(f"{self._path.name}.corrupt-{now_ms()}.json")
        try:
            os.replace(self._path, backup)
        except OSError as exc:
            logger.error("Failed to back up corrupt run state (%s): %s", reason, exc)
            return None
        return backup
