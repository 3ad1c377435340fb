#!/usr/bin/env python3
"""
Release CLI
===========

Command-line interface for running guided canary releases.

Usage:
    canarypilot demo [--speed FACTOR] [--virtual] [--decision prompt|rollback|continue]
    canarypilot compare
    canarypilot settings show
    canarypilot settings set [--network on|off] [--default-canary 1|5|10]
    canarypilot history [--db PATH] [--limit N]
    canarypilot history show RUN_ID [--db PATH]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from canarypilot.archive import ReleaseArchive
from canarypilot.config import EngineConfig
from canarypilot.db.connection import DEFAULT_DB_PATH
from canarypilot.engine import ReleaseSession, Transition, validate_canary_percent
from canarypilot.errors import ReleaseError
from canarypilot.models import BASELINE_MODEL, CANDIDATE_MODEL, Phase, compare_models
from canarypilot.output import (
    console,
    print_agent_message,
    print_audit_log,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_log_entry,
    print_metric_history,
    print_model_comparison,
    print_panel,
    print_phase,
    print_success,
    print_warning,
    create_table,
    select,
    setup_rich_logging,
)
from canarypilot.scheduler import AsyncioScheduler, ManualScheduler, Scheduler
from canarypilot.settings import SETTINGS_FILE, SettingsStore

# Ticks to wait past the anomaly tick before giving up on detection
EXTRA_TICKS = 5


class DemoClock:
    """Lets the demo wait on either the virtual clock or the real loop."""

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler

    async def sleep(self, seconds: float) -> None:
        if isinstance(self.scheduler, ManualScheduler):
            self.scheduler.advance(seconds)
            await asyncio.sleep(0)
        else:
            await asyncio.sleep(seconds)


def _print_transition(transition: Transition) -> None:
    print_phase(transition.target, transition.source)


def build_engine_config(args) -> EngineConfig:
    config = EngineConfig.load(args.config)
    if args.seed is not None:
        config.seed = args.seed
    if args.speed != 1.0:
        config = config.scaled(args.speed)
    return config


async def run_demo(args) -> int:
    """Walk one guided release from IDLE to a decision."""
    engine_config = build_engine_config(args)
    scheduler = ManualScheduler() if args.virtual else AsyncioScheduler()
    session = ReleaseSession(
        scheduler=scheduler,
        config=engine_config,
        settings_store=SettingsStore(args.settings_file),
        on_log=print_log_entry,
        on_message=print_agent_message,
        on_transition=_print_transition,
    )
    clock = DemoClock(scheduler)

    print_header(f"Guided Release: {session.candidate.version} vs {session.baseline.version}")
    print_model_comparison(
        compare_models(session.baseline, session.candidate),
        session.baseline.version,
        session.candidate.version,
    )

    try:
        session.start_guided_release()
        await clock.sleep(engine_config.shadow_test_seconds)
        session.continue_to_setup()
        session.start_canary(args.percent, args.duration)

        ticks = 0
        while session.current_phase() == Phase.MONITORING:
            if ticks > engine_config.anomaly_tick_index + EXTRA_TICKS:
                break
            await clock.sleep(engine_config.tick_interval)
            ticks += 1

        if session.current_phase() != Phase.ANOMALY_DETECTED:
            if not session.config.network_enabled:
                print_warning("Telemetry network is disabled; no samples were collected.")
            else:
                print_warning("No anomaly observed.")
            print_metric_history(session.metric_history())
            return 0

        await clock.sleep(max(engine_config.advisory_offsets))
        print_metric_history(session.metric_history())

        decision = args.decision
        if decision == "prompt":
            # Off the loop thread so advisory and timeout timers keep running
            decision = await asyncio.to_thread(select, "Decision", ["rollback", "continue"], default="rollback")

        if decision == "rollback":
            snapshot = session.request_rollback()
            print_key_value_table({
                "Latency": f"{round(snapshot.latency_ms)}ms",
                "Error rate": f"{snapshot.error_rate * 100:.1f}%",
                "Drift (user_region)": f"{snapshot.drift_user_region:.2f}",
                "Confidence": f"{snapshot.confidence_percent}%",
            }, title=f"Rollback to {session.baseline.version}")
            session.confirm_rollback(args.confidence)
            notes = session.generate_release_notes()
            print_panel(notes.render(), title="Release Notes", border_style="cp.err")
        else:
            session.continue_rollout(args.confidence)
            await clock.sleep(engine_config.tick_interval * 3)
            print_metric_history(session.metric_history())

        if args.archive:
            archive = await ReleaseArchive.open(args.archive)
            try:
                run_id = await archive.save_session(session)
            finally:
                await archive.close()
            print_success(f"Archived release run {run_id}")
    finally:
        session.shutdown()

    return 0


def cmd_demo(args):
    """Run a guided release demo."""
    return asyncio.run(run_demo(args))


def cmd_compare(args):
    """Show the offline evaluation of the two models."""
    print_header("Model Comparison")
    print_model_comparison(compare_models(), BASELINE_MODEL.version, CANDIDATE_MODEL.version)
    return 0


def cmd_settings(args):
    """Show or change persisted operator settings."""
    store = SettingsStore(args.settings_file)
    settings = store.load()

    if args.settings_command == "set":
        if args.network is not None:
            settings.network_enabled = args.network == "on"
        if args.default_canary is not None:
            settings.default_canary_percent = validate_canary_percent(args.default_canary)
        store.save(settings)
        print_success(f"Settings saved to {store.path}")

    print_key_value_table({
        "Network": "enabled" if settings.network_enabled else "disabled",
        "Default canary": f"{settings.default_canary_percent}%",
        "File": str(store.path),
    }, title="Settings")
    return 0


async def _list_runs(db_path: Path, limit: int) -> list[dict]:
    archive = await ReleaseArchive.open(db_path)
    try:
        return await archive.list_runs(limit)
    finally:
        await archive.close()


async def _load_run_log(db_path: Path, run_id: str):
    archive = await ReleaseArchive.open(db_path)
    try:
        return await archive.load_audit_log(run_id)
    finally:
        await archive.close()


def cmd_history(args):
    """List archived runs, or show the audit log of one."""
    if not Path(args.db).exists():
        print_warning(f"No archive found at {args.db}")
        return 1

    if args.history_command == "show":
        try:
            entries = asyncio.run(_load_run_log(args.db, args.run_id))
        except KeyError:
            print_error(f"Unknown release run: {args.run_id}")
            return 1
        print_header(f"Run {args.run_id}")
        print_audit_log(entries)
        return 0

    with console.status("Loading archived runs..."):
        runs = asyncio.run(_list_runs(args.db, args.limit))

    if not runs:
        print_info("No archived runs yet.")
        return 0

    table = create_table(title="Archived Release Runs", columns=["Run", "Archived", "Release", "Phase", "Canary"])
    for run in runs:
        style = "cp.err" if run["rolled_back"] else "cp.ok"
        table.add_row(
            run["run_id"],
            f"[cp.timestamp]{(run['archived_at'] or '')[:19]}[/]",
            f"{run['baseline']} -> {run['candidate']}",
            f"[{style}]{run['final_phase']}[/]",
            f"{run['canary_percent']}%",
        )
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="canarypilot",
        description="Guided canary releases with a human in the loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logging")
    parser.add_argument(
        "--settings-file",
        type=Path,
        default=Path(SETTINGS_FILE),
        help=f"Operator settings file (default: {SETTINGS_FILE})",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # demo command
    demo_parser = subparsers.add_parser("demo", help="Run a guided release")
    demo_parser.add_argument("--speed", type=float, default=1.0, help="Multiply every delay by this factor")
    demo_parser.add_argument("--virtual", action="store_true", help="Use a virtual clock (instant)")
    demo_parser.add_argument(
        "--decision",
        choices=["prompt", "rollback", "continue"],
        default="prompt",
        help="How to answer the recommendation",
    )
    demo_parser.add_argument("--percent", type=int, help="Canary percentage (1, 5 or 10)")
    demo_parser.add_argument("--duration", type=int, help="Rollout duration in minutes")
    demo_parser.add_argument("--confidence", type=int, help="Adjusted confidence for the decision")
    demo_parser.add_argument("--seed", type=int, help="Seed for synthetic telemetry")
    demo_parser.add_argument("--config", type=Path, help="Engine config JSON file")
    demo_parser.add_argument("--archive", type=Path, help="Archive the finished run to this SQLite file")

    # compare command
    subparsers.add_parser("compare", help="Compare baseline and candidate models")

    # settings command
    settings_parser = subparsers.add_parser("settings", help="Show or change operator settings")
    settings_sub = settings_parser.add_subparsers(dest="settings_command")
    settings_sub.add_parser("show", help="Show settings")
    set_parser = settings_sub.add_parser("set", help="Change settings")
    set_parser.add_argument("--network", choices=["on", "off"], help="Enable or disable telemetry")
    set_parser.add_argument("--default-canary", type=int, help="Default canary percentage")

    # history command
    history_parser = subparsers.add_parser("history", help="Browse archived runs")
    history_parser.add_argument("--db", type=Path, default=DEFAULT_DB_PATH, help="Archive database")
    history_parser.add_argument("--limit", "-n", type=int, default=20, help="Max runs to show")
    history_sub = history_parser.add_subparsers(dest="history_command")
    show_parser = history_sub.add_parser("show", help="Show a run's audit log")
    show_parser.add_argument("run_id", help="Run id to show")

    return parser


def main(argv=None):
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return 1

    # Dispatch to command handler
    commands = {
        "demo": cmd_demo,
        "compare": cmd_compare,
        "settings": cmd_settings,
        "history": cmd_history,
    }

    handler = commands.get(args.command)
    try:
        return handler(args)
    except ReleaseError as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        print_warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
