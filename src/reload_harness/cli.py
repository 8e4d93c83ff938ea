"""CLI entry point for the reload harness.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``reload-harness = "reload_harness.cli:main"``.
Parses command-line arguments, loads the scenario and optional config
YAML files, and runs every scenario variant through
``run_scenario_sync()``.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

from reload_harness.errors import ScenarioError
from reload_harness.models import HarnessConfig, ScenarioResult, ScenarioTemplate
from reload_harness.scaffold import expand_variants, load_template, load_yaml
from reload_harness.scenario import (
    apply_env_overrides,
    configure_logging,
    run_scenario_sync,
)


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ``ArgumentParser``.
    """
    parser = argparse.ArgumentParser(
        prog="reload-harness",
        description="Run live-reload scenarios against a target application and its monitor.",
    )
    parser.add_argument(
        "--scenario",
        required=True,
        help="Path to the scenario YAML file.",
    )
    parser.add_argument(
        "--config",
        required=False,
        default=None,
        help="Path to an optional HarnessConfig YAML file.",
    )
    parser.add_argument(
        "--source-root",
        default=None,
        help="Directory copy_paths are resolved against (default: the scenario file's directory).",
    )
    parser.add_argument(
        "--keep-workspace",
        action="store_true",
        help="Leave each scenario workspace on disk after teardown.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level (e.g. DEBUG).",
    )
    return parser


def _print_startup_summary(template: ScenarioTemplate, config: HarnessConfig, runs: int) -> None:
    """Print a startup summary banner to stdout."""
    sep = "=" * 60
    print(sep)
    print("Reload Harness")
    print(sep)
    print(f"  Scenario:     {template.name}")
    print(f"  Variants:     {runs}")
    print(f"  Build goals:  {' '.join(template.build.goals) or '(default)'}")
    print(f"  Poll:         every {config.poll_interval_seconds}s")
    print(
        f"  Bounds:       sync={config.sync_timeout_seconds}s, "
        f"assert={config.assertion_timeout_seconds}s, "
        f"build={config.build_timeout_seconds}s"
    )
    print(sep)


def _print_result(result: ScenarioResult) -> None:
    status = "PASSED" if result.succeeded else f"FAILED during {result.failed_phase}"
    print(f"{status}: {result.name} ({result.duration_seconds:.1f}s)")
    if result.surviving_pids:
        print(f"  Processes still alive after teardown: {result.surviving_pids}")


def main(argv: list[str] | None = None) -> int:
    """Entry point for the reload-harness CLI application.

    Returns:
        Exit code: 0 when every scenario variant passed, 1 otherwise.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        template = load_template(args.scenario)

        config = HarnessConfig()
        if args.config is not None:
            config = HarnessConfig(**load_yaml(args.config, "config"))
        config = apply_env_overrides(config)
        updates: dict[str, object] = {}
        if args.keep_workspace:
            updates["keep_workspace"] = True
        if args.log_level:
            updates["log_level"] = args.log_level
        if updates:
            config = config.model_copy(update=updates)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config)
    source_root = Path(args.source_root) if args.source_root else Path(args.scenario).resolve().parent
    variants = expand_variants(template)
    _print_startup_summary(template, config, len(variants))

    failed = 0
    for variant in variants:
        try:
            result = run_scenario_sync(variant, config, source_root=source_root)
        except ScenarioError as exc:
            failed += 1
            result = exc.result
            print(f"Scenario error: {exc}", file=sys.stderr)
            print(f"Diagnostics: {exc.diagnostics}", file=sys.stderr)
        _print_result(result)

    print(f"{len(variants) - failed}/{len(variants)} scenarios passed.")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
