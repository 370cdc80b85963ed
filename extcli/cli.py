"""Command-line entry point for the external CLI subsystem.

Usage:
    extcli discover [--refresh] [--json]
    extcli run codex "Add a test for the parser" --cwd ~/src/app
    extcli run claude "Fix the lint errors" --cwd . --create --bypass
    extcli runs [--session S] [--provider codex]

Providers are disabled by default; enable them with EXTCLI_CODEX_ENABLED /
EXTCLI_CLAUDE_ENABLED or the ``providers:`` section of a --config file.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler

from extcli.adapters.event_bus import RunEventBus
from extcli.adapters.events import (
    InteractionRequested,
    RunProgress,
    RunStatusChanged,
)
from extcli.engine.discovery import DiscoveryService
from extcli.engine.errors import ExternalCliError
from extcli.engine.models import RunStatus, StartRunInput, make_id
from extcli.engine.run_manager import RunManager
from extcli.engine.trust import TrustPolicy
from extcli.engine.yaml_config import ExtCliConfig, load_yaml_config

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def _configure_logging(verbose: bool, log_file: str | None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format=_LOG_FORMAT, datefmt="%H:%M:%S")
    if log_file:
        handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler.setLevel(logging.DEBUG)
        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(handler)
        # Keep the console at the requested level.
        for existing in root.handlers:
            if existing is not handler:
                existing.setLevel(level)


def _build_discovery(config: ExtCliConfig) -> DiscoveryService:
    return DiscoveryService(
        ttl_seconds=config.manager.discovery_ttl_seconds,
        probe_timeout_seconds=config.manager.probe_timeout_seconds,
        trust_policy=TrustPolicy.from_env(),
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="extcli",
        description="Launch and supervise the codex and claude agent CLIs",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to a YAML config file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write debug logs to this file (rotated at 2 MB)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    discover = sub.add_parser("discover", help="Show installed, trusted and authenticated CLIs")
    discover.add_argument("--refresh", action="store_true", help="Ignore the cache")
    discover.add_argument("--json", action="store_true", help="Print raw JSON")

    run = sub.add_parser("run", help="Start a run and follow it to completion")
    run.add_argument("provider", choices=["codex", "claude"])
    run.add_argument("prompt", help="Prompt to send to the CLI")
    run.add_argument(
        "--cwd",
        default=".",
        help="Working directory for the run (default: current dir)",
    )
    run.add_argument(
        "--create",
        action="store_true",
        help="Create the working directory if it does not exist",
    )
    run.add_argument(
        "--bypass",
        action="store_true",
        help="Request bypass of permission prompts (honored only if allowed in settings)",
    )
    run.add_argument(
        "--session",
        default=None,
        help="Session id to attach the run to (default: a fresh one)",
    )

    runs = sub.add_parser("runs", help="List persisted runs")
    runs.add_argument("--session", default=None)
    runs.add_argument("--provider", choices=["codex", "claude"], default=None)
    runs.add_argument("--status", default=None)
    return parser


async def _discover(config: ExtCliConfig, refresh: bool, as_json: bool) -> int:
    snapshot = await _build_discovery(config).get_availability(force_refresh=refresh)
    if as_json:
        print(json.dumps(snapshot.to_dict(), indent=2))
        return 0
    for entry in (snapshot.codex, snapshot.claude):
        settings = config.runtime.for_provider(entry.provider)
        print(f"{entry.provider.value}:")
        print(f"  enabled:   {settings.enabled}")
        print(f"  installed: {entry.installed}")
        if not entry.installed:
            continue
        print(f"  path:      {entry.binary_path}")
        print(f"  version:   {entry.version or '-'}")
        print(f"  trust:     {entry.binary_trust.value} ({entry.trust_reason})")
        auth = entry.auth_status.value
        if entry.auth_message:
            auth = f"{auth} ({entry.auth_message})"
        print(f"  auth:      {auth}")
    return 0


async def _follow_run(manager: RunManager, bus: RunEventBus, run_id: str) -> RunStatus:
    async for event in bus.consume():
        if event.run_id != run_id:
            continue
        if isinstance(event, RunProgress):
            print(f"[{event.kind}] {event.message}")
        elif isinstance(event, InteractionRequested):
            interaction = event.interaction
            options = interaction.get("options")
            hint = f" [{' / '.join(options)}]" if options else ""
            while True:
                reply = await asyncio.to_thread(
                    input, f"> {interaction.get('prompt', '')}{hint}: ",
                )
                try:
                    await manager.respond(interaction["interactionId"], reply)
                    break
                except ExternalCliError as exc:
                    print(f"{exc.code}: {exc.message}", file=sys.stderr)
                    summary = manager.get_summary(run_id)
                    if summary is None or summary.pending_interaction is None:
                        break
        elif isinstance(event, RunStatusChanged):
            status = RunStatus(event.new_status)
            if status.is_terminal:
                return status
    summary = manager.get_summary(run_id)
    return summary.status if summary else RunStatus.INTERRUPTED


async def _run(config: ExtCliConfig, args: argparse.Namespace) -> int:
    bus = RunEventBus()
    manager = RunManager(
        _build_discovery(config),
        lambda: config.runtime,
        config=config.manager,
        event_bus=bus,
    )
    await manager.initialize()
    try:
        summary = await manager.start_run(StartRunInput(
            session_id=args.session or make_id("cli-session"),
            provider=args.provider,
            prompt=args.prompt,
            working_directory=args.cwd,
            create_if_missing=args.create,
            bypass_permission=args.bypass,
        ))
    except ExternalCliError as exc:
        print(f"{exc.code}: {exc.message}", file=sys.stderr)
        await manager.shutdown()
        return 2

    print(f"Run {summary.run_id} ({summary.provider.value}) started.")
    status = summary.status
    try:
        if not status.is_terminal:
            status = await _follow_run(manager, bus, summary.run_id)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nCancelling...")
        await manager.cancel(summary.run_id, "Run cancelled from the command line.")
        status = RunStatus.CANCELLED
    finally:
        await manager.shutdown()
        bus.close()

    final = manager.get_run(summary.run_id)
    if final is not None:
        if final.result_summary:
            print(f"\n=== Result ===\n\n{final.result_summary}")
        if final.error_message:
            print(f"\n{final.error_code}: {final.error_message}", file=sys.stderr)
    print(f"Run {summary.run_id} finished: {status.value}")
    return 0 if status is RunStatus.COMPLETED else 1


async def _list_runs(config: ExtCliConfig, args: argparse.Namespace) -> int:
    manager = RunManager(
        _build_discovery(config), lambda: config.runtime, config=config.manager,
    )
    await manager.initialize()
    try:
        for summary in manager.list_runs(
            session_id=args.session, provider=args.provider, status=args.status,
        ):
            print(
                f"{summary.run_id}  {summary.provider.value:<6}  "
                f"{summary.status.value:<12}  {summary.latest_progress or ''}"
            )
    finally:
        await manager.shutdown()
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose, args.log_file)
    config = load_yaml_config(args.config)

    try:
        if args.command == "discover":
            code = asyncio.run(_discover(config, args.refresh, args.json))
        elif args.command == "run":
            code = asyncio.run(_run(config, args))
        else:
            code = asyncio.run(_list_runs(config, args))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
