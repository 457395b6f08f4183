from __future__ import annotations

import argparse
import dataclasses
import logging
import os
from typing import Any, Dict, List, Optional

from .hwchange import HardwareChangeDetector
from .lib.env import CLI_NAME, PATHS
from .logging_utils import configure_logging, level_from_name
from .optimizer import Optimizer
from .pipeline import FAILED, PipelineResult, run_pipeline
from .server_config import ServerConfig, load_server_config
from .state_store import ensure_defaults, load_state, save_state
from .steps import (
    DetectHardwareStep,
    DisasterRecoveryStep,
    DynamicOptimizationStep,
    HardwareSnapshotStep,
    StepContext,
    UserMonitorStep,
)

logger = logging.getLogger(__name__)


DEFAULT_STATE_PATH = PATHS.state_default


def build_steps(ctx: StepContext):
    return [
        DetectHardwareStep(ctx),
        DynamicOptimizationStep(ctx),
        HardwareSnapshotStep(ctx),
        UserMonitorStep(ctx),
        DisasterRecoveryStep(ctx),
    ]


def run_init(
    ctx: StepContext,
    *,
    state_path: str = DEFAULT_STATE_PATH,
    log_path: Optional[str] = None,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    force: bool = False,
) -> PipelineResult:
    """Run the init pipeline, persisting state for resume."""

    state: Dict[str, Any] = ensure_defaults(load_state(state_path))
    state["config"]["dry_run"] = ctx.dry_run
    if log_path:
        state.setdefault("execution", {}).setdefault("paths", {})["log_path_actual"] = log_path

    try:
        result = run_pipeline(
            state=state,
            steps=build_steps(ctx),
            start_at=start_at,
            stop_after=stop_after,
            force=force,
        )
        state = result.state
        summary = state.setdefault("execution", {}).setdefault("summary", {})
        summary["ran_steps"] = result.ran_steps
        summary["skipped_steps"] = result.skipped_steps
        summary["failed_steps"] = result.failed_steps
    finally:
        if ctx.dry_run:
            logger.info("Would save state to %s", state_path)
        else:
            save_state(state_path, state)

    logger.info("Server initialization summary:")
    for step_id, status in result.outcomes:
        if status == FAILED:
            logger.error("  %s: %s", step_id, status)
        else:
            logger.info("  %s: %s", step_id, status)
    return result


def _cmd_init(args: argparse.Namespace, ctx: StepContext) -> int:
    if not ctx.dry_run and hasattr(os, "geteuid") and os.geteuid() != 0:
        logger.error("This command must be run as root (or with --dry-run)")
        return 1
    result = run_init(
        ctx,
        state_path=args.state,
        log_path=args.log_path,
        start_at=args.start_at,
        stop_after=args.stop_after,
        force=args.force,
    )
    return 0 if result.ok else 1


def _cmd_optimize(args: argparse.Namespace, ctx: StepContext) -> int:
    ctx.optimizer.run(minimal=args.minimal)
    return 0


def _cmd_report(args: argparse.Namespace, ctx: StepContext) -> int:
    optimizer: Optimizer = ctx.optimizer
    print(optimizer.generate_report(optimizer.detect()))
    return 0


def _cmd_hardware(args: argparse.Namespace, ctx: StepContext) -> int:
    detector: HardwareChangeDetector = ctx.detector()
    if args.action == "collect":
        detector.collect()
    elif args.action == "check":
        detector.check()
    else:
        detector.install_timer()
    return 0


def _cmd_user_monitor(args: argparse.Namespace, ctx: StepContext) -> int:
    monitor = ctx.user_monitor()
    if args.action == "setup":
        monitor.setup()
    elif args.action == "sync":
        monitor.initial_sync()
    elif args.action == "daemon":
        monitor.run_forever()
    else:
        return 0 if monitor.status() else 1
    return 0


def _cmd_recovery(args: argparse.Namespace, ctx: StepContext) -> int:
    recovery = ctx.recovery()
    if args.action == "setup":
        recovery.setup()
    elif args.action == "check":
        return 0 if recovery.monitor_and_recover().ok else 1
    elif args.action == "recover":
        return 0 if recovery.perform_immediate_recovery() else 1
    else:
        recovery.run_forever()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=CLI_NAME, description="PostgreSQL/pgbouncer server tuning and self-healing")
    p.add_argument("--conf-dir", default=PATHS.conf_dir, help="Directory holding default.env and user.env")
    p.add_argument("--log", default=None, help="Path to log file (default: LOG_FILE from config)")
    p.add_argument("--dry-run", action="store_true", help="Log commands and writes instead of performing them")

    sub = p.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Run the full server initialization pipeline")
    init.add_argument("--state", default=DEFAULT_STATE_PATH, help="Path to run state (json|yaml)")
    init.add_argument("--start-at", default=None, help="Start at step_id (e.g. 20_dynamic_optimization)")
    init.add_argument("--stop-after", default=None, help="Stop after step_id")
    init.add_argument("--force", action="store_true", help="Re-run steps even if marked completed")
    init.set_defaults(handler=_cmd_init)

    opt = sub.add_parser("optimize", help="Tune PostgreSQL and pgbouncer for the detected hardware")
    mode = opt.add_mutually_exclusive_group()
    mode.add_argument("--minimal", action="store_true", help="Only write configuration; no reload/restart")
    mode.add_argument("--full", action="store_true", help="Write configuration and reload/restart (default)")
    opt.set_defaults(handler=_cmd_optimize)

    rep = sub.add_parser("report", help="Write an optimization report for the detected hardware")
    rep.set_defaults(handler=_cmd_report)

    hw = sub.add_parser("hardware", help="Hardware change detection")
    hw.add_argument("action", choices=["collect", "check", "install"])
    hw.set_defaults(handler=_cmd_hardware)

    um = sub.add_parser("user-monitor", help="Keep pgbouncer userlist.txt in sync with PostgreSQL roles")
    um.add_argument("action", choices=["setup", "sync", "daemon", "status"])
    um.set_defaults(handler=_cmd_user_monitor)

    rec = sub.add_parser("recovery", help="Service monitoring and disaster recovery")
    rec.add_argument("action", choices=["setup", "check", "recover", "daemon"])
    rec.set_defaults(handler=_cmd_recovery)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config: ServerConfig = load_server_config(args.conf_dir)
    if args.log:
        config = dataclasses.replace(config, log_override=args.log)
    dry_run = args.dry_run or config.dry_run
    log_path = configure_logging(log_path=args.log or config.log_file, level=level_from_name(config.log_level))
    if dry_run:
        logger.info("Dry run: no commands will be executed and no files written")

    ctx = StepContext.build(config, dry_run=dry_run)
    args.log_path = log_path
    try:
        return args.handler(args, ctx)
    except (RuntimeError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
