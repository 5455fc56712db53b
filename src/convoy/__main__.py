"""Convoy CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from convoy.config import ConvoyConfig, load_config
from convoy.errors import ConvoyError, FleetInterrupted
from convoy.models import FleetResult

logger = logging.getLogger(__name__)

# Exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def _load(args) -> ConvoyConfig:
    convoy_dir: Path = args.repo_root / args.config_dir
    try:
        return load_config(convoy_dir)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Create .convoy/config.yaml or pass --repo-root / --config-dir", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    except ValueError as e:
        print(f"Error: invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(EXIT_USAGE)


# ── convoy run ───────────────────────────────────────────────────────────────


def _print_summary(result: FleetResult) -> None:
    print()
    print(f"Fleet run {'succeeded' if result.success else 'finished with problems'}")
    for issue in result.issues:
        line = f"  #{issue.issue_number:<6}{issue.outcome.value:<24}{issue.token_usage:>8} tokens"
        if issue.failed_phases:
            line += f"  failed phases: {issue.failed_phases}"
        print(line)
        if issue.error:
            print(f"          {issue.error}")
    if result.failed_issues:
        print(f"  Failed:  {', '.join(f'#{n}' for n in result.failed_issues)}")
    if result.blocked_issues:
        print(f"  Blocked: {', '.join(f'#{n}' for n in result.blocked_issues)}")
    if result.skipped_issues:
        print(f"  Skipped: {', '.join(f'#{n}' for n in result.skipped_issues)}")
    print(f"  Tokens:  {result.token_usage}   Duration: {result.total_duration:.1f}s")


async def _run_fleet(args, config: ConvoyConfig) -> int:
    from convoy.fleet import FleetOrchestrator

    orchestrator = FleetOrchestrator(
        config,
        base_dir=args.repo_root,
        issue_numbers=args.issue,
        provider_override=args.provider,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop, sig.name)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    try:
        result = await orchestrator.run()
    except FleetInterrupted as e:
        print(f"\n{e}", file=sys.stderr)
        print("Run `convoy run --resume` to continue.", file=sys.stderr)
        return EXIT_INTERRUPTED
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass

    _print_summary(result)
    return EXIT_OK if result.success else EXIT_FAILED


def _cmd_run(args) -> int:
    config = _load(args)
    if args.resume:
        config.options.resume = True
    if args.dry_run:
        config.options.dry_run = True
    if args.max_parallel is not None:
        if args.max_parallel < 1:
            print("Error: --max-parallel must be >= 1", file=sys.stderr)
            return EXIT_USAGE
        config.options.max_parallel_issues = args.max_parallel

    try:
        return asyncio.run(_run_fleet(args, config))
    except ConvoyError as e:
        # Invalid issue graph or unknown provider surface here, before any work starts
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE


# ── convoy status / reset ────────────────────────────────────────────────────


def _cmd_status(args) -> int:
    from convoy.status import RunStateService, format_fleet_table, format_issue_history

    config = _load(args)
    service = RunStateService(config.state_path(args.repo_root), config.project.name)

    if args.issue is not None:
        state = service.issue_state(args.issue)
        if state is None:
            print(f"No checkpoint for issue #{args.issue}")
            return EXIT_FAILED
        print(format_issue_history(state))
        return EXIT_OK

    fleet = service.fleet_state()
    if fleet is None:
        print("No fleet run recorded yet. Start one with `convoy run`.")
        return EXIT_OK
    print(format_fleet_table(fleet))
    return EXIT_OK


def _cmd_reset(args) -> int:
    from convoy.status import RunStateService

    config = _load(args)
    service = RunStateService(config.state_path(args.repo_root), config.project.name)
    issues = [args.issue] if args.issue is not None else None
    reset = asyncio.run(service.reset(issues))
    if not reset:
        print("Nothing to reset")
    else:
        print(f"Reset {len(reset)} issue(s): {', '.join(f'#{n}' for n in reset)}")
    return EXIT_OK


# ── Argument parsing ─────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convoy",
        description="Convoy — dependency-aware fleet runner for agent issue pipelines",
    )
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    parser.add_argument(
        "--config-dir",
        default=".convoy",
        help="Config directory relative to the repository root (default: .convoy)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # convoy run
    run_parser = subparsers.add_parser("run", help="Run issue pipelines for the configured fleet")
    run_parser.add_argument("--resume", action="store_true", help="Resume from the last checkpoint")
    run_parser.add_argument(
        "--issue",
        type=int,
        action="append",
        help="Only run this issue (repeatable)",
    )
    run_parser.add_argument(
        "--max-parallel",
        type=int,
        help="Maximum issues to run concurrently (default: from config)",
    )
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Stop each issue after planning",
    )
    run_parser.add_argument(
        "--provider",
        help="Isolation provider to use (overrides config)",
    )

    # convoy status
    status_parser = subparsers.add_parser("status", help="Show fleet or issue status")
    status_parser.add_argument("--issue", type=int, help="Show one issue's phase history")

    # convoy reset
    reset_parser = subparsers.add_parser("reset", help="Reset issues to not-started")
    reset_parser.add_argument("--issue", type=int, help="Reset only this issue")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers = {"run": _cmd_run, "status": _cmd_status, "reset": _cmd_reset}
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
