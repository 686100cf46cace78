"""Result aggregate and result files.

The aggregate holds the running counters of one run (sent, matched, unmatched,
errors), a T-Digest of delivery latencies, the per-minute history and the
records that have not been written yet. It is shared by every scheduler thread,
so each mutation takes the aggregate lock.

The CSV sink appends the pending records at each flush to the three result
series of a run and rewrites a JSON summary (counters, latency, minute history,
environment) next to them.
"""

from __future__ import annotations

import csv
import threading
import time
from pathlib import Path
from typing import Protocol

import orjson
from tdigest import TDigest

from .logging_config import get_logger
from .models import (
    ErrorRecord,
    MatchEvent,
    MatchKind,
    MinuteSnapshot,
    ResourceSample,
    ResultSnapshot,
)

logger = get_logger("results")

MAIL_RESULTS_PREFIX = "postage_mailResults"
RESOURCE_STATISTICS_PREFIX = "postage_jvmStatistics"
ERRORS_PREFIX = "postage_errors"
SUMMARY_PREFIX = "postage_summary"
RESULT_FILE_SUFFIX = ".csv"
SUMMARY_FILE_SUFFIX = ".json"
# Error messages are truncated to keep records bounded
MAX_ERROR_MESSAGE_LENGTH = 500

MAIL_RESULTS_HEADER = (
    "kind", "token", "sender", "recipient", "sent_at", "observed_at", "latency_seconds", "source",
)
RESOURCE_HEADER = ("timestamp", "target", "cpu_percent", "memory_percent", "rss_bytes", "threads")
ERRORS_HEADER = ("timestamp", "source", "message")


def _percentile_from_digest(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError):
        return 0.0


class ResultAggregate:
    """Running counters and pending records of one run. Thread-safe."""

    __slots__ = (
        "_lock", "_sent", "_matched", "_unmatched", "_errors",
        "_digest", "_latency_sum", "_latency_count",
        "_pending_events", "_pending_errors", "_pending_resources",
        "_history", "_environment",
    )

    def __init__(self, environment: dict[str, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._sent = 0
        self._matched = 0
        self._unmatched = 0
        self._errors = 0
        self._digest = TDigest()
        self._latency_sum = 0.0
        self._latency_count = 0
        self._pending_events: list[MatchEvent] = []
        self._pending_errors: list[ErrorRecord] = []
        self._pending_resources: list[ResourceSample] = []
        self._history: list[MinuteSnapshot] = []
        self._environment: dict[str, str] | None = dict(environment) if environment else None

    # --- mutation ---

    def record_sent(self) -> None:
        with self._lock:
            self._sent += 1

    def retract_sent(self) -> None:
        """Undo record_sent for a mail whose dispatch failed."""
        with self._lock:
            self._sent -= 1

    def record_match_event(self, event: MatchEvent) -> None:
        with self._lock:
            if event.kind == MatchKind.MATCHED:
                self._matched += 1
                if event.latency_seconds is not None:
                    self._digest.update(event.latency_seconds)
                    self._latency_sum += event.latency_seconds
                    self._latency_count += 1
            else:
                self._unmatched += 1
            self._pending_events.append(event)

    def record_error(self, source: str, message: str, timestamp: float | None = None) -> ErrorRecord:
        record = ErrorRecord(
            timestamp=timestamp if timestamp is not None else time.time(),
            source=source,
            message=message[:MAX_ERROR_MESSAGE_LENGTH],
        )
        with self._lock:
            self._errors += 1
            self._pending_errors.append(record)
        return record

    def record_resource_sample(self, sample: ResourceSample) -> None:
        with self._lock:
            self._pending_resources.append(sample)

    def set_environment(self, environment: dict[str, str]) -> None:
        """Record the environment description. Only once per run."""
        with self._lock:
            if self._environment is not None:
                raise ValueError("environment description is already set")
            self._environment = dict(environment)

    def checkpoint(self, minute: int, outstanding: int, timestamp: float | None = None) -> MinuteSnapshot:
        """Append the cumulative counts of a completed minute to the history."""
        with self._lock:
            prev = self._history[-1] if self._history else None
            snap = MinuteSnapshot(
                minute=minute,
                timestamp=timestamp if timestamp is not None else time.time(),
                sent=self._sent,
                matched=self._matched,
                unmatched=self._unmatched,
                errors=self._errors,
                outstanding=outstanding,
                sent_delta=self._sent - (prev.sent if prev else 0),
                matched_delta=self._matched - (prev.matched if prev else 0),
                unmatched_delta=self._unmatched - (prev.unmatched if prev else 0),
                errors_delta=self._errors - (prev.errors if prev else 0),
            )
            self._history.append(snap)
        return snap

    def snapshot(self, run_id: str, outstanding: int, drain: bool = True) -> ResultSnapshot:
        """Consistent copy of the counters. With drain=True pending records move into the snapshot."""
        with self._lock:
            snap = ResultSnapshot(
                run_id=run_id,
                timestamp=time.time(),
                sent=self._sent,
                matched=self._matched,
                unmatched=self._unmatched,
                errors=self._errors,
                outstanding=outstanding,
                history=list(self._history),
                events=list(self._pending_events),
                error_records=list(self._pending_errors),
                resource_samples=list(self._pending_resources),
                environment=dict(self._environment or {}),
                latency_p50_seconds=_percentile_from_digest(self._digest, 50),
                latency_p95_seconds=_percentile_from_digest(self._digest, 95),
                latency_avg_seconds=(
                    self._latency_sum / self._latency_count if self._latency_count else 0.0
                ),
            )
            if drain:
                self._pending_events.clear()
                self._pending_errors.clear()
                self._pending_resources.clear()
        return snap

    # --- read ---

    @property
    def sent_count(self) -> int:
        return self._sent

    @property
    def matched_count(self) -> int:
        return self._matched

    @property
    def unmatched_count(self) -> int:
        return self._unmatched

    @property
    def error_count(self) -> int:
        return self._errors

    @property
    def has_pending(self) -> bool:
        """True if records were added since the last draining snapshot."""
        with self._lock:
            return bool(self._pending_events or self._pending_errors or self._pending_resources)

    @property
    def history(self) -> list[MinuteSnapshot]:
        with self._lock:
            return list(self._history)

    @property
    def environment(self) -> dict[str, str]:
        with self._lock:
            return dict(self._environment or {})

    def latency_percentile(self, p: float) -> float:
        with self._lock:
            return _percentile_from_digest(self._digest, p)


class ResultSink(Protocol):
    """Where flushed results go. Called once per checkpoint and once at the end."""

    def write_snapshot(self, snapshot: ResultSnapshot, final_sweep_performed: bool) -> None: ...


def result_file_names(run_id: str) -> tuple[str, str, str]:
    """(mail results, resource statistics, errors) file names for a run."""
    return (
        f"{MAIL_RESULTS_PREFIX}.{run_id}{RESULT_FILE_SUFFIX}",
        f"{RESOURCE_STATISTICS_PREFIX}.{run_id}{RESULT_FILE_SUFFIX}",
        f"{ERRORS_PREFIX}.{run_id}{RESULT_FILE_SUFFIX}",
    )


def summary_file_name(run_id: str) -> str:
    return f"{SUMMARY_PREFIX}.{run_id}{SUMMARY_FILE_SUFFIX}"


def rotate_result_file(path: str | Path) -> Path | None:
    """Move an existing result file out of the way: name.<last-modified epoch ms>.

    Returns the new path, or None if there was nothing to rotate.
    """
    p = Path(path)
    if not p.exists():
        return None
    last_modified_ms = int(p.stat().st_mtime * 1000)
    target = p.with_name(f"{p.name}.{last_modified_ms}")
    p.rename(target)
    logger.info("Rotated previous result file %s -> %s", p, target.name)
    return target


def _fmt_ts(ts: float | None) -> str:
    return "" if ts is None else f"{ts:.3f}"


class CsvResultSink:
    """Append-only CSV series plus a JSON summary rewritten at every flush.

    Without an explicit summary_path the summary sits next to the mail results file.
    """

    def __init__(
        self,
        mail_results_path: str | Path,
        resource_path: str | Path,
        errors_path: str | Path,
        summary_path: str | Path | None = None,
    ) -> None:
        self.mail_results_path = Path(mail_results_path)
        self.resource_path = Path(resource_path)
        self.errors_path = Path(errors_path)
        self.summary_path = (
            Path(summary_path)
            if summary_path is not None
            else self.mail_results_path.with_name(self.mail_results_path.stem + SUMMARY_FILE_SUFFIX)
        )
        self._lock = threading.Lock()

    @classmethod
    def for_run(cls, run_id: str, output_dir: str | Path = ".", summary_path: str | Path | None = None) -> "CsvResultSink":
        out = Path(output_dir)
        mail, resources, errors = result_file_names(run_id)
        if summary_path is None:
            summary_path = out / summary_file_name(run_id)
        return cls(out / mail, out / resources, out / errors, summary_path=summary_path)

    @property
    def paths(self) -> tuple[Path, Path, Path]:
        return (self.mail_results_path, self.resource_path, self.errors_path)

    def write_snapshot(self, snapshot: ResultSnapshot, final_sweep_performed: bool) -> None:
        with self._lock:
            self._append(
                self.mail_results_path,
                MAIL_RESULTS_HEADER,
                (
                    (
                        e.kind.value,
                        e.token or "",
                        e.sender,
                        e.recipient,
                        _fmt_ts(e.sent_at),
                        _fmt_ts(e.observed_at),
                        "" if e.latency_seconds is None else f"{e.latency_seconds:.3f}",
                        e.source,
                    )
                    for e in snapshot.events
                ),
            )
            self._append(
                self.resource_path,
                RESOURCE_HEADER,
                (
                    (
                        _fmt_ts(s.timestamp),
                        s.target,
                        f"{s.cpu_percent:.1f}",
                        f"{s.memory_percent:.1f}",
                        s.rss_bytes,
                        s.threads,
                    )
                    for s in snapshot.resource_samples
                ),
            )
            self._append(
                self.errors_path,
                ERRORS_HEADER,
                ((_fmt_ts(r.timestamp), r.source, r.message) for r in snapshot.error_records),
            )
            write_json_summary(self.summary_path, snapshot, final_sweep_performed)

    @staticmethod
    def _append(path: Path, header: tuple[str, ...], rows) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not path.exists()
        with path.open("a", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            if is_new:
                writer.writerow(header)
            writer.writerows(rows)


def write_json_summary(output_path: str | Path, snapshot: ResultSnapshot, final_sweep_performed: bool) -> None:
    """Write machine-readable JSON summary with counters, latency and minute history."""
    payload = {
        "run_id": snapshot.run_id,
        "timestamp": round(snapshot.timestamp, 3),
        "final_sweep_performed": final_sweep_performed,
        "environment": snapshot.environment,
        "sent": snapshot.sent,
        "matched": snapshot.matched,
        "unmatched": snapshot.unmatched,
        "errors": snapshot.errors,
        "outstanding": snapshot.outstanding,
        "latency_p50_seconds": round(snapshot.latency_p50_seconds, 4),
        "latency_p95_seconds": round(snapshot.latency_p95_seconds, 4),
        "latency_avg_seconds": round(snapshot.latency_avg_seconds, 4),
        "minutes": [
            {
                "minute": m.minute,
                "sent": m.sent,
                "matched": m.matched,
                "unmatched": m.unmatched,
                "errors": m.errors,
                "outstanding": m.outstanding,
                "sent_delta": m.sent_delta,
                "matched_delta": m.matched_delta,
                "unmatched_delta": m.unmatched_delta,
                "errors_delta": m.errors_delta,
            }
            for m in snapshot.history
        ],
    }
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
