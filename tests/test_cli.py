"""Unit tests for CLI (overrides, main exit codes)."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import make_scenario
from postage.cli import _apply_overrides, main
from postage.exceptions import PostageConfigError, StartupError
from postage.models import RunPhase


def test_main_version_exits_zero() -> None:
    with patch.object(sys, "argv", ["postage", "--version"]):
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 0


def test_main_help_exits_zero() -> None:
    with patch.object(sys, "argv", ["postage", "--help"]):
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 0


def test_main_requires_config() -> None:
    with patch.object(sys, "argv", ["postage"]):
        with pytest.raises(SystemExit) as exc:
            main()
        assert exc.value.code == 2


def test_main_missing_config_exits_one() -> None:
    with patch.object(sys, "argv", ["postage", "-f", "/nonexistent/scenario.yaml"]):
        assert main() == 1


def test_main_invalid_duration_override_exits_one(tmp_path_scenario: Path) -> None:
    with patch.object(sys, "argv", ["postage", "-f", str(tmp_path_scenario), "--duration", "0"]):
        assert main() == 1


def test_apply_overrides() -> None:
    config = make_scenario(run_id="a", duration_minutes=5)
    same = _apply_overrides(config, argparse.Namespace(run_id=None, duration=None))
    assert same is config
    changed = _apply_overrides(config, argparse.Namespace(run_id="nightly", duration=30))
    assert (changed.id, changed.duration_minutes) == ("nightly", 30)
    with pytest.raises(PostageConfigError):
        _apply_overrides(config, argparse.Namespace(run_id=" ", duration=None))


class _StubRunner:
    """Stands in for PostageRunner inside main()."""

    phase = RunPhase.COMPLETED
    setup_error: StartupError | None = None

    def __init__(self, config, output_dir=".", summary_path=None) -> None:
        self.config = config
        self.output_dir = Path(output_dir)
        self.summary_path = Path(summary_path) if summary_path else self.output_dir / f"postage_summary.{config.id}.json"

    def start(self) -> None:
        pass

    def terminate(self) -> None:
        pass

    def result_file_paths(self):
        return (self.output_dir / f"postage_mailResults.{self.config.id}.csv",)


def _main_with(runner_cls, argv: list[str]) -> int:
    with patch.object(sys, "argv", argv), patch("postage.cli.PostageRunner", runner_cls), patch(
        "postage.cli.follow_run"
    ), patch("postage.cli._setup_signal_handlers"):
        return main()


def test_main_completed_exits_zero(tmp_path_scenario: Path, capsys) -> None:
    code = _main_with(_StubRunner, ["postage", "-f", str(tmp_path_scenario), "--no-live", "--id", "cli"])
    assert code == 0
    out = capsys.readouterr().out
    assert "postage_mailResults.cli.csv" in out
    assert "postage_summary.cli.json" in out


def test_main_aborted_exits_130(tmp_path_scenario: Path) -> None:
    class Aborted(_StubRunner):
        phase = RunPhase.ABORTED

    assert _main_with(Aborted, ["postage", "-f", str(tmp_path_scenario), "--no-live"]) == 130


def test_main_setup_error_exits_one(tmp_path_scenario: Path, capsys) -> None:
    class Failed(_StubRunner):
        phase = RunPhase.STARTING
        setup_error = StartupError("error setting up internal user accounts")

    assert _main_with(Failed, ["postage", "-f", str(tmp_path_scenario), "--no-live"]) == 1
    assert "internal user accounts" in capsys.readouterr().err
