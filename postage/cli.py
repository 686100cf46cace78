"""CLI entry point for the postage mail-server test harness."""

from __future__ import annotations

import argparse
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from . import __version__
from .config import load_config, validate_scenario_config
from .dashboard import follow_run
from .exceptions import PostageConfigError, PostageError
from .logging_config import get_logger
from .models import RunPhase, ScenarioConfig
from .runner import PostageRunner

logger = get_logger("cli")


def _setup_signal_handlers(runner: PostageRunner) -> None:
    """SIGINT/SIGTERM abort the run; results gathered so far are still written."""

    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("Shutdown signal received (signal %d), terminating run...", signum)
        runner.terminate()

    # Only set up SIGTERM on Unix-like systems
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


def _apply_overrides(config: ScenarioConfig, args: argparse.Namespace) -> ScenarioConfig:
    """Apply CLI overrides to a loaded scenario. Returns the config unchanged if none were given."""
    changes: dict[str, Any] = {}
    if args.run_id is not None:
        changes["id"] = args.run_id
    if args.duration is not None:
        changes["duration_minutes"] = args.duration
    if not changes:
        return config
    merged = replace(config, **changes)
    validate_scenario_config(merged)
    return merged


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="postage",
        description="Mail server load and delivery-correctness harness. Sends test mail at "
        "configured rates and checks it arrives in mailboxes (POP3) and at relay targets (SMTP sink).",
    )
    parser.add_argument(
        "-f",
        "--config",
        required=True,
        help="Path to YAML scenario file",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        default=".",
        dest="output_dir",
        help="Directory for the CSV result files (default: current directory)",
    )
    parser.add_argument(
        "--json",
        metavar="PATH",
        dest="json_path",
        help="Write the JSON summary to PATH instead of postage_summary.<id>.json in the output directory",
    )
    parser.add_argument("--id", default=None, dest="run_id", help="Override scenario: run identifier")
    parser.add_argument("--duration", type=int, default=None, metavar="MIN", help="Override scenario: duration in minutes")
    parser.add_argument(
        "--no-live",
        action="store_true",
        help="Disable live Rich dashboard (headless mode)",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"postage {__version__}",
    )
    args = parser.parse_args()

    def handle_error(e: BaseException) -> int:
        if isinstance(e, PostageError):
            print(f"Error: {e.message}", file=sys.stderr)
            return 1
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return 1

    try:
        config = _apply_overrides(load_config(Path(args.config)), args)
    except PostageConfigError as e:
        return handle_error(e)

    runner = PostageRunner(
        config,
        output_dir=args.output_dir,
        summary_path=args.json_path,
    )
    _setup_signal_handlers(runner)
    try:
        runner.start()
        follow_run(runner, live=not args.no_live)
    except KeyboardInterrupt:
        runner.terminate()
        print("\nInterrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        return handle_error(e)

    if runner.setup_error is not None:
        return handle_error(runner.setup_error)
    if runner.phase == RunPhase.ABORTED:
        print("Run aborted; partial results written.", file=sys.stderr)
        return 130
    mail_path = runner.result_file_paths()[0]
    print(f"Results written to {mail_path} (summary: {runner.summary_path})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
