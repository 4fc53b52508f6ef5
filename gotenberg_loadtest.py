from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from errors import ScenarioError, SetupError
from runner import EXIT_SETUP_ERROR, RunConfig, RunResult, run_load_test
from scenario import (
    BUILTIN_REQUESTS,
    Scenario,
    Stage,
    Threshold,
    builtin_scenario,
    load_scenario_file,
    parse_stages,
    parse_threshold,
)

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ScenarioError(f"Environment variable {name} must be an integer, got {raw!r}") from None


def _stages_arg(value: str) -> list[Stage]:
    try:
        return parse_stages(value)
    except SetupError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _threshold_arg(value: str) -> Threshold:
    try:
        return parse_threshold(value)
    except SetupError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _form_field_arg(value: str) -> tuple[str, str]:
    key, sep, field_value = value.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"Invalid form field '{value}'. Expected key=value.")
    return key.strip(), field_value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Staged load test for a Gotenberg document-conversion service."
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--scenario",
        choices=sorted(BUILTIN_REQUESTS),
        default="office",
        help="Built-in scenario to run.",
    )
    source.add_argument(
        "--scenario-file",
        type=Path,
        default=None,
        help="JSON scenario definition (endpoint, parts, stages, thresholds, checks).",
    )

    parser.add_argument(
        "--base-url",
        default=os.environ.get("BASE_URL", "http://localhost:3000"),
        help="Service base URL (env: BASE_URL).",
    )
    parser.add_argument(
        "--max-vus",
        type=int,
        default=None,
        help="Top stage target for built-in scenarios (env: MAX_VUS, default 10).",
    )
    parser.add_argument(
        "--duration",
        default="10m",
        help="Ramp duration for built-in scenarios, e.g. 30s, 10m.",
    )
    parser.add_argument(
        "--stages",
        type=_stages_arg,
        default=None,
        help="Comma-separated <duration>:<target> stages, e.g. 30s:5,1m:10,30s:0",
    )
    parser.add_argument(
        "--threshold",
        dest="thresholds",
        type=_threshold_arg,
        action="append",
        default=None,
        help="<metric>:<condition>[:abort|:continue], e.g. 'failed requests:count>=1'. Repeatable.",
    )
    parser.add_argument(
        "--form",
        dest="form_fields",
        type=_form_field_arg,
        action="append",
        default=[],
        help="Extra multipart form field key=value. Repeatable.",
    )

    parser.add_argument("--fixtures-dir", type=Path, default=Path("testdata"))
    parser.add_argument("--timeout-s", type=float, default=30.0)
    parser.add_argument("--control-interval-s", type=float, default=1.0)
    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument(
        "--no-requests-log",
        dest="write_requests",
        action="store_false",
        help="Do not write the per-iteration requests.jsonl file.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")
    if args.control_interval_s <= 0:
        parser.error("--control-interval-s must be > 0")
    if args.max_vus is not None and args.max_vus < 0:
        parser.error("--max-vus must be >= 0")
    if args.scenario_file is not None and not args.scenario_file.exists():
        parser.error(f"--scenario-file not found: {args.scenario_file}")


def _resolve_scenario(args: argparse.Namespace) -> Scenario:
    if args.scenario_file is not None:
        scenario = load_scenario_file(args.scenario_file)
    else:
        max_vus = args.max_vus if args.max_vus is not None else _env_int("MAX_VUS", 10)
        scenario = builtin_scenario(args.scenario, max_vus=max_vus, duration=args.duration)
    return scenario.with_overrides(
        stages=args.stages,
        thresholds=args.thresholds,
        form_fields=dict(args.form_fields) if args.form_fields else None,
    )


async def _run_from_args(args: argparse.Namespace) -> RunResult:
    config = RunConfig(
        scenario=_resolve_scenario(args),
        base_url=args.base_url,
        fixtures_dir=args.fixtures_dir,
        timeout_s=args.timeout_s,
        control_interval_s=args.control_interval_s,
        output_dir=args.output_dir,
        run_name=args.run_name,
        write_requests=args.write_requests,
    )
    return await run_load_test(config)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        result = asyncio.run(_run_from_args(args))
    except SetupError as exc:
        logger.error("Setup failed: %s", exc)
        return EXIT_SETUP_ERROR

    report = result.report
    if result.aborted and result.abort_reason is not None:
        print(
            f"Run aborted: threshold '{result.abort_reason.threshold}' breached "
            f"(observed {result.abort_reason.observed_value:g})."
        )
    else:
        print("Run complete.")
    for name, counts in report["checks"].items():
        print(f"  {name}: {counts['passes']} passed, {counts['fails']} failed")
    print(f"  failed requests: {report['failed_requests']}")
    if result.output_dir is not None:
        print(f"Outputs written to: {result.output_dir}")
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
