"""
Command-line entry point.

Two subcommands:

- ``rampload run CONFIG.yml`` (or ``rampload run --preset basic``)
  executes a load test and prints the end-of-run summary.
- ``rampload check --summary summary.json --thresholds thresholds.yml``
  re-evaluates thresholds against a summary saved by an earlier run,
  which lets CI gate on limits that were not part of the run file.

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "the tool itself failed":

- ``0`` -- all thresholds passed
- ``1`` -- at least one threshold was breached
- ``2`` -- the run was aborted, or the tool failed (missing file, bad
  YAML, unknown scenario, etc.)

Key Concepts Demonstrated:
- ``module:attribute`` scenario references resolved with ``importlib``
- Logging configured once, at the process entry point
- Summary written to stdout or to files for CI artefacts
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from rampload.config import RunConfig, get_config, load_yaml
from rampload.exceptions import RamploadError, ScenarioLoadError
from rampload.runner import EXIT_PASS, EXIT_RUN_ERROR, EXIT_THRESHOLD_BREACH, Run
from rampload.scenario import Scenario
from rampload.scenarios.orders import PRESETS
from rampload.summary import render_json, render_text
from rampload.thresholds import all_passed, evaluate, parse_thresholds, summary_snapshot
from rampload.transport import RequestsTransport

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    """Build the ``rampload`` argument parser."""
    parser = argparse.ArgumentParser(
        prog="rampload",
        description="Ramp virtual users through staged load and gate on thresholds.",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: from RAMPLOAD_LOG_LEVEL / RAMPLOAD_ENV)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", parents=[common], help="Execute a load test")
    run.add_argument("config", nargs="?", type=Path, help="Path to a YAML run file")
    run.add_argument("--preset", choices=sorted(PRESETS), help="Built-in order-API workload")
    run.add_argument("--base-url", default=None, help="Base URL of the system under test")
    run.add_argument(
        "--summary-json",
        type=Path,
        default=None,
        help="Write the JSON summary to this path ('-' for stdout)",
    )
    run.add_argument(
        "--summary-text",
        type=Path,
        default=Path("-"),
        help="Write the text summary to this path (default: stdout)",
    )

    check = subparsers.add_parser(
        "check", parents=[common], help="Re-evaluate thresholds against a saved summary"
    )
    check.add_argument("--summary", required=True, type=Path, help="Path to a JSON summary")
    check.add_argument("--thresholds", required=True, type=Path, help="Path to thresholds YAML file")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def load_scenario(reference: str, base_url: str) -> Scenario:
    """
    Resolve a ``package.module:attribute`` reference to a scenario.

    The attribute may be a :class:`Scenario` or a factory taking the
    base URL and returning one.

    Raises:
        ScenarioLoadError: If the reference cannot be imported or does
            not produce a scenario.
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ScenarioLoadError(f"Scenario reference must look like 'module:attribute', got {reference!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ScenarioLoadError(f"Cannot import scenario module {module_name!r}: {exc}") from exc

    try:
        target = getattr(module, attribute)
    except AttributeError as exc:
        raise ScenarioLoadError(f"Module {module_name!r} has no attribute {attribute!r}") from exc

    scenario = target if isinstance(target, Scenario) else None
    if scenario is None and callable(target):
        scenario = target(base_url)
    if not isinstance(scenario, Scenario):
        raise ScenarioLoadError(f"{reference!r} did not produce a Scenario")
    return scenario


def _write(text: str, destination: Path) -> None:
    if str(destination) == "-":
        sys.stdout.write(text)
        sys.stdout.flush()
        return
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(text, encoding="utf-8")
    logger.info("Summary written to %s", destination)


def _prepare_run(args: argparse.Namespace) -> tuple[Scenario, RunConfig, str]:
    settings = get_config()
    if args.config is None and args.preset is None:
        raise RamploadError("Either a run file or --preset is required")

    data: dict[str, Any] = {}
    factory = None
    if args.preset is not None:
        factory, options = PRESETS[args.preset]
        data.update(options)
    if args.config is not None:
        data.update(load_yaml(args.config))

    base_url = args.base_url or data.get("base_url") or settings.TARGET_BASE_URL
    run_config = RunConfig.from_dict(data, settings)

    if data.get("scenario"):
        scenario = load_scenario(str(data["scenario"]), base_url)
    elif factory is not None:
        scenario = factory(base_url)
    else:
        raise ScenarioLoadError("Run file does not name a 'scenario'")
    return scenario, run_config, base_url


def command_run(args: argparse.Namespace) -> int:
    scenario, run_config, base_url = _prepare_run(args)
    transport = RequestsTransport(base_url=base_url)
    run = Run(scenario, run_config, transport=transport)
    try:
        outcome = run.execute()
    finally:
        transport.close()

    if args.summary_json is not None:
        _write(render_json(outcome.summary) + "\n", args.summary_json)
    if args.summary_text is not None:
        _write(render_text(outcome.summary), args.summary_text)
    return outcome.exit_code


def command_check(args: argparse.Namespace) -> int:
    try:
        with args.summary.open("r", encoding="utf-8") as handle:
            summary = json.load(handle)
    except OSError as exc:
        raise RamploadError(f"Cannot read {args.summary}: {exc}") from exc
    except ValueError as exc:
        raise RamploadError(f"Invalid JSON in {args.summary}: {exc}") from exc
    if not isinstance(summary, dict):
        raise RamploadError(f"{args.summary} must contain a JSON object")

    data = load_yaml(args.thresholds)
    thresholds = parse_thresholds(data.get("thresholds", data))
    if not thresholds:
        raise RamploadError(f"No thresholds defined in {args.thresholds}")

    results = evaluate(summary_snapshot(summary), thresholds)
    print("Performance Threshold Check")
    print("-" * 72)
    print(f"{'Threshold':<40}{'Observed':>12}{'Status':>10}")
    print("-" * 72)
    for result in results:
        observed = "-" if result.observed is None else f"{result.observed:.2f}"
        print(f"{result.threshold.description:<40}{observed:>12}{result.status.value.upper():>10}")
    print("-" * 72)
    passed = all_passed(results)
    print(f"Overall: {'PASS' if passed else 'FAIL'}")
    return EXIT_PASS if passed else EXIT_THRESHOLD_BREACH


def main(argv: Sequence[str] | None = None) -> int:
    """
    Entry point: parse arguments, configure logging, dispatch.

    Returns:
        ``EXIT_PASS`` (0), ``EXIT_THRESHOLD_BREACH`` (1) or
        ``EXIT_RUN_ERROR`` (2).
    """
    args = build_parser().parse_args(argv)
    commands = {"run": command_run, "check": command_check}
    try:
        configure_logging(args.log_level or get_config().LOG_LEVEL)
        return commands[args.command](args)
    except RamploadError as exc:
        print(f"rampload: {exc}", file=sys.stderr)
        return EXIT_RUN_ERROR
    except KeyboardInterrupt:
        print("rampload: interrupted", file=sys.stderr)
        return EXIT_RUN_ERROR
    except Exception as exc:  # pragma: no cover - last-resort CLI guard
        logger.exception("Unexpected failure")
        print(f"rampload: {exc}", file=sys.stderr)
        return EXIT_RUN_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
