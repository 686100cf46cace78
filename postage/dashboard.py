"""Rich live dashboard with low overhead for real-time run statistics."""

from __future__ import annotations

import sys
import time
from typing import TYPE_CHECKING

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from .runner import PostageRunner

LIVE_REFRESH_PER_SEC = 1
# Interval of the plain-text fallback when stdout is not a TTY (seconds)
STREAMING_FALLBACK_INTERVAL_SEC = 10.0
POLL_SEC = 0.2


def build_metrics_table(runner: PostageRunner) -> Table:
    """Build a single Rich table with current counters."""
    results = runner.results
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")

    table.add_row("Phase", runner.phase.value)
    table.add_row("Minutes", f"{runner.minutes_running} / {runner.config.duration_minutes}")
    table.add_row("Sent", str(results.sent_count))
    table.add_row("Matched", str(results.matched_count))
    table.add_row("Unmatched", str(results.unmatched_count))
    table.add_row("Errors", str(results.error_count))
    table.add_row("Outstanding", str(runner.store.outstanding_count))
    if results.matched_count:
        table.add_row("Latency p50 (s)", f"{results.latency_percentile(50):.2f}")
        table.add_row("Latency p95 (s)", f"{results.latency_percentile(95):.2f}")
    else:
        table.add_row("Latency p50 (s)", "-")
        table.add_row("Latency p95 (s)", "-")
    return table


def _format_remaining(seconds: float) -> str:
    """Format remaining time as Xs or Xm Ys."""
    s = max(0, int(round(seconds)))
    if s >= 60:
        m, s = divmod(s, 60)
        return f"{m}m {s}s"
    return f"{s}s"


def create_live_panel(runner: PostageRunner, start_time: float) -> Panel:
    """Create Rich Panel for live display."""
    elapsed = time.perf_counter() - start_time if start_time else 0.0
    total = runner.config.duration_minutes * runner.minute_seconds
    remaining = max(0.0, total - elapsed)
    table = build_metrics_table(runner)
    table.add_row("Remaining (ETA)", _format_remaining(remaining))
    title = Text()
    title.append("postage ", style="bold magenta")
    title.append(f"| {runner.config.id} | {runner.phase.value}", style="dim")
    title.append(f" | ETA: {_format_remaining(remaining)}", style="bold yellow")
    return Panel(table, title=title, border_style="blue")


def status_line(runner: PostageRunner) -> str:
    r = runner.results
    return (
        f"postage | {runner.config.id} | {runner.phase.value} | "
        f"minute {runner.minutes_running}/{runner.config.duration_minutes} | "
        f"sent={r.sent_count} matched={r.matched_count} unmatched={r.unmatched_count} "
        f"errors={r.error_count} outstanding={runner.store.outstanding_count}"
    )


def _stdout_is_tty() -> bool:
    """True if stdout is a TTY (interactive terminal). False in Docker without -it, CI, pipes."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def follow_run(runner: PostageRunner, live: bool = True) -> None:
    """Show progress until the started runner has finished."""
    start_time = time.perf_counter()
    if not live:
        runner.wait()
        return
    if _stdout_is_tty():
        console = Console()
        with Live(
            create_live_panel(runner, start_time),
            console=console,
            refresh_per_second=LIVE_REFRESH_PER_SEC,
        ) as live_ctx:
            while not runner.wait(POLL_SEC):
                live_ctx.update(create_live_panel(runner, start_time))
            live_ctx.update(create_live_panel(runner, start_time))
        return
    next_line = 0.0
    while not runner.wait(POLL_SEC):
        now = time.perf_counter()
        if now >= next_line:
            sys.stdout.write(status_line(runner) + "\n")
            sys.stdout.flush()
            next_line = now + STREAMING_FALLBACK_INTERVAL_SEC
    sys.stdout.write(status_line(runner) + "\n")
    sys.stdout.flush()
