"""CLI entry point for imagegate.

Builds a container image, scans it, and publishes it only when every
severity count is within its threshold.

Commands:
    run       Run the full build -> scan -> gate -> publish pipeline
    gate      Evaluate a findings-count JSON file against the thresholds
    profiles  List the available configuration profiles
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .collaborators import Collaborators, CommandRunner
from .config_loader import build_thresholds, build_unified_config, list_available_profiles, validate_config
from .exceptions import ConfigurationError
from .pipeline import EXIT_FAILURE, PipelineOrchestrator, PipelineRun, build_default_stages
from .reporting import build_run_summary, render_gate_decision, write_json_atomic
from .schemas import FindingCounts
from .threshold_gate import evaluate_gate

logger = logging.getLogger(__name__)


def _add_threshold_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--profile", help="Configuration profile (e.g. default, strict)")
    for level in ("critical", "high", "medium", "low", "other"):
        parser.add_argument(
            f"--{level}-threshold",
            type=int,
            default=None,
            help=f"Maximum allowed {level} findings",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imagegate",
        description="Build a container image, scan it, and publish it only if it passes the vulnerability gate",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the full publishing pipeline")
    run_parser.add_argument("--workspace", default=".", help="Repository checkout to build (default: .)")
    _add_threshold_arguments(run_parser)
    run_parser.add_argument("--commit-sha", dest="commit_sha", help="Commit to build (default: GITHUB_SHA)")
    run_parser.add_argument("--repository-id", dest="repository_id", help="Source repository id for session names")
    run_parser.add_argument("--region", help="AWS region of the registry")
    run_parser.add_argument("--repository", help="ECR repository name")
    run_parser.add_argument("--oidc-role", dest="oidc_role", help="Role assumed with the OIDC token")
    run_parser.add_argument("--deploy-role", dest="deploy_role", help="Role chained into for publishing")
    run_parser.add_argument("--context", help="Build context, relative to the workspace")
    run_parser.add_argument("--dockerfile", help="Dockerfile, relative to the workspace")
    run_parser.add_argument("--platforms", help="Comma-separated target platforms")
    run_parser.add_argument("--cache-dir", dest="cache_dir", help="Buildx local cache directory")
    run_parser.add_argument("--timeout-minutes", dest="timeout_minutes", type=int, help="Wall-clock limit for the run")
    run_parser.add_argument("--output-dir", dest="output_dir", help="Directory for scan reports")
    run_parser.add_argument("--artifact-root", dest="artifact_root", help="Directory for uploaded bundles")
    run_parser.add_argument("--artifact-name", dest="artifact_name", help="Name of the report bundle")
    run_parser.add_argument("--summary-file", dest="summary_file", help="Where to write the JSON run summary")

    gate_parser = subparsers.add_parser("gate", help="Evaluate finding counts against the thresholds")
    gate_parser.add_argument("counts_file", metavar="COUNTS_JSON", help="JSON object of severity -> count")
    _add_threshold_arguments(gate_parser)

    subparsers.add_parser("profiles", help="List available configuration profiles")
    return parser


def _print_outcome(run: PipelineRun) -> None:
    ctx = run.context
    if run.succeeded:
        print(f"Published {', '.join(ctx.published_references)}")
        return

    print(f"Pipeline failed at {run.failed_stage} ({run.failure_kind})")
    failure = run.failure
    if failure is not None and failure.error:
        print(f"  {failure.error}")
    if run.failure_kind == "gate" and ctx.gate_decision is not None:
        print(render_gate_decision(ctx.gate_decision))
    if ctx.uploaded_bundle is not None:
        print(f"Scan reports stored in {ctx.uploaded_bundle.destination}")


def cmd_run(args: argparse.Namespace, collaborators: Optional[Collaborators] = None) -> int:
    try:
        config = build_unified_config(cli_args=args, repo_path=args.workspace)
    except (ConfigurationError, ValueError) as exc:
        print(f"Configuration is invalid: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    issues = validate_config(config)
    errors = [issue for issue in issues if issue.startswith("ERROR")]
    for issue in issues:
        if issue not in errors:
            logger.warning(issue)
    if errors:
        print("Configuration is invalid:", file=sys.stderr)
        for issue in errors:
            print(f"  {issue}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        thresholds = build_thresholds(config)
    except ConfigurationError as exc:
        print(f"Configuration is invalid: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    deadline = time.monotonic() + float(config["timeout_minutes"]) * 60
    if collaborators is None:
        collaborators = Collaborators.from_config(config, runner=CommandRunner(deadline=deadline))

    orchestrator = PipelineOrchestrator(
        stages=build_default_stages(collaborators),
        config=config,
        thresholds=thresholds,
        deadline=deadline,
    )
    run = orchestrator.run(args.workspace)

    summary_file = Path(args.summary_file or Path(config["output_dir"]) / "run_summary.json")
    try:
        write_json_atomic(build_run_summary(run), summary_file)
        logger.info("Run summary: %s", summary_file)
    except OSError as exc:
        logger.error("Could not write run summary to %s: %s", summary_file, exc)

    _print_outcome(run)
    return run.exit_code


def cmd_gate(args: argparse.Namespace) -> int:
    try:
        config = build_unified_config(cli_args=args)
        thresholds = build_thresholds(config)
    except (ConfigurationError, ValueError) as exc:
        print(f"Configuration is invalid: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        with open(args.counts_file, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
        if isinstance(payload, dict) and isinstance(payload.get("counts"), dict):
            payload = payload["counts"]
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object of severity -> count")
        counts = FindingCounts.from_mapping(payload)
    except (OSError, ValueError, ValidationError) as exc:
        print(f"Could not read counts from {args.counts_file}: {exc}", file=sys.stderr)
        return EXIT_FAILURE

    decision = evaluate_gate(counts, thresholds)
    print(render_gate_decision(decision))
    return decision.exit_code


def cmd_profiles(args: argparse.Namespace) -> int:
    for name in list_available_profiles():
        print(name)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for imagegate"""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    if args.command == "run":
        return cmd_run(args)
    if args.command == "gate":
        return cmd_gate(args)
    if args.command == "profiles":
        return cmd_profiles(args)

    parser.print_help()
    return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
