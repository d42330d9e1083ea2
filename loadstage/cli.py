"""
Command-line entry point.

Usage::

    loadstage run scenarios/load.yml --base-url http://localhost:5001
    loadstage validate scenarios/spike.yml

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "script crashed":

- ``0``: every stage completed, no abort and every threshold passed
- ``1``: the run aborted on a breach or a final threshold failed
- ``2``: bad plan, failed preflight, an engine failure or the report could
  not be written
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from loadstage import __version__, create_runner
from loadstage.config import get_config
from loadstage.exceptions import LoadstageError
from loadstage.plan import load_plan
from loadstage.report import print_summary

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadstage",
        description="Run staged HTTP load against an API and gate on thresholds.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subcommands = parser.add_subparsers(dest="command", required=True)

    run = subcommands.add_parser("run", help="Execute a run plan and write its report")
    run.add_argument("plan", type=Path, help="Path to the YAML run plan")
    run.add_argument("--base-url", help="Override the plan's base_url")
    run.add_argument("--results-dir", type=Path, help="Directory for the JSON report")
    run.add_argument("--seed", type=int, help="Override the plan's random seed")
    run.add_argument(
        "--env",
        choices=("development", "testing", "production"),
        help="Engine configuration (defaults to LOADSTAGE_ENV or production)",
    )

    validate = subcommands.add_parser("validate", help="Check a run plan without running it")
    validate.add_argument("plan", type=Path, help="Path to the YAML run plan")
    return parser


def _run(args: argparse.Namespace) -> int:
    settings = get_config(args.env)
    logging.getLogger().setLevel(settings.LOG_LEVEL)

    plan = load_plan(args.plan, base_url=args.base_url, seed=args.seed)
    runner = create_runner(plan, env=args.env, results_dir=args.results_dir)
    report = runner.run()
    print_summary(report)
    if runner.report_path is not None:
        print(f"Report: {runner.report_path}")
    return EXIT_PASS if report.passed else EXIT_THRESHOLD_BREACH


def _validate(args: argparse.Namespace) -> int:
    plan = load_plan(args.plan)
    print(
        f"Plan {plan.name!r} is valid: {len(plan.stages)} stage(s), "
        f"{plan.total_duration:.1f}s, {len(plan.endpoints.paths)} endpoint(s), "
        f"{len(plan.thresholds)} threshold(s), profile {plan.profile.value}"
    )
    return EXIT_PASS


def main(argv: Sequence[str] | None = None) -> int:
    """
    Parse arguments and dispatch to a subcommand.

    Returns:
        ``EXIT_PASS`` (0), ``EXIT_THRESHOLD_BREACH`` (1) or
        ``EXIT_SCRIPT_ERROR`` (2).
    """
    args = build_parser().parse_args(argv)
    handlers = {"run": _run, "validate": _validate}
    try:
        return handlers[args.command](args)
    except LoadstageError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        print(f"loadstage {args.command} failed: {exc}", file=sys.stderr)
        return EXIT_SCRIPT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
