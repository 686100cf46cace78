"""Run controller: set up one scenario, drive all samplers, checkpoint every minute, reconcile.

Phases: CREATED -> STARTING -> RUNNING -> COMPLETED | ABORTED.
- STARTING: provisioning, availability checks, relay sink, result file rotation.
  Any failure here is a StartupError; the run never reaches RUNNING.
- RUNNING: one SampleController thread per sampler plus a timer thread that
  issues a checkpoint after every full minute and stops the run after the last one.
- COMPLETED: the timer ran out. Mailboxes get one exhaustive final check, then
  every still-outstanding test mail is swept into the unmatched count.
- ABORTED: terminate() was called first. No final check, no sweep.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from pathlib import Path
from typing import Protocol

from .controller import SECONDS_PER_MINUTE, SampleController
from .correlation import CorrelationStore
from .exceptions import PostageConfigError, PostageRunnerError, StartupError
from .factory import SamplerFactory
from .logging_config import get_run_logger
from .models import RunPhase, ScenarioConfig
from .results import (
    CsvResultSink,
    ResultAggregate,
    ResultSink,
    result_file_names,
    rotate_result_file,
    summary_file_name,
)
from .sampler import Sampler

# Relay interceptor liveness probes per minute (its real work is connection driven)
RELAY_PROBES_PER_MINUTE = 10
# Resource samples per minute
RESOURCE_SAMPLES_PER_MINUTE = 4
# Bound for joining sampler threads at the end of a run (seconds)
JOIN_TIMEOUT_SEC = 10.0


class ControllerRole(str, Enum):
    """Stop order of the schedulers is the declaration order."""

    SEND = "send"
    INBOUND = "inbound"
    RELAY = "relay"
    RESOURCE = "resource"


class InboundChecker(Protocol):
    def check_availability(self) -> bool: ...

    def do_sample(self) -> None: ...

    def match_all_users(self) -> int: ...


class MailSink(Protocol):
    def initialize(self) -> None: ...

    def shutdown(self) -> None: ...

    def check_availability(self) -> bool: ...

    def do_sample(self) -> None: ...


class ControllerRegistry:
    """The only owner of a run's SampleControllers, grouped by role."""

    def __init__(self) -> None:
        self._by_role: dict[ControllerRole, list[SampleController]] = {role: [] for role in ControllerRole}
        self._lock = threading.Lock()

    def add(self, role: ControllerRole, controller: SampleController) -> int:
        """Register a controller; returns its handle (index within the role)."""
        with self._lock:
            self._by_role[role].append(controller)
            return len(self._by_role[role]) - 1

    def get(self, role: ControllerRole, handle: int = 0) -> SampleController:
        with self._lock:
            return self._by_role[role][handle]

    def count(self, role: ControllerRole | None = None) -> int:
        with self._lock:
            if role is not None:
                return len(self._by_role[role])
            return sum(len(v) for v in self._by_role.values())

    def _ordered(self) -> list[SampleController]:
        with self._lock:
            return [c for role in ControllerRole for c in self._by_role[role]]

    def start_all(self) -> None:
        for c in self._ordered():
            c.start()

    def stop_all(self) -> None:
        """Stop every controller, senders first. Stopping is idempotent per controller."""
        for c in self._ordered():
            c.stop()

    def join_all(self, timeout: float) -> list[str]:
        """Join every worker within a shared deadline; returns names still running."""
        deadline = time.monotonic() + timeout
        hung: list[str] = []
        for c in self._ordered():
            if not c.join(max(0.0, deadline - time.monotonic())):
                hung.append(c.name)
        return hung


class PostageRunner:
    """Controls one scenario run. See module docstring for the phase model.

    Args:
        config: The scenario to run
        factory: Builds samplers and collaborators (default: real protocol clients)
        sink: Where flushed results go (default: CSV files named after the run id)
        output_dir: Directory of the default CSV result files
        summary_path: JSON summary of the default sink (default: named after the run id in output_dir)
        minute_seconds: Length of one run minute; 60 outside of tests
    """

    def __init__(
        self,
        config: ScenarioConfig,
        *,
        factory: SamplerFactory | None = None,
        sink: ResultSink | None = None,
        output_dir: str | Path = ".",
        summary_path: str | Path | None = None,
        minute_seconds: float = SECONDS_PER_MINUTE,
    ) -> None:
        if config is None:
            raise PostageConfigError("a scenario configuration is required")
        self.config = config
        self._log = get_run_logger("runner", config.id)
        self.output_dir = Path(output_dir)
        self.minute_seconds = minute_seconds
        self._factory = factory or SamplerFactory(config)
        self.summary_path = (
            Path(summary_path) if summary_path is not None else self.output_dir / summary_file_name(config.id)
        )
        self._sink: ResultSink = sink or CsvResultSink.for_run(config.id, self.output_dir, summary_path=self.summary_path)

        total_per_min = config.total_mails_per_minute
        environment = {
            "mails_per_min": str(total_per_min),
            "totally_running_min": str(config.duration_minutes),
            "totally_mails_target": str(total_per_min * config.duration_minutes),
        }
        self.results = ResultAggregate(environment=environment)
        self.store = CorrelationStore(config.id, self.results)
        self.controllers = ControllerRegistry()

        self._phase = RunPhase.CREATED
        self._phase_lock = threading.Lock()
        self._stopped = False
        self._abort_requested = False
        self._finished = threading.Event()
        self._timer_stop = threading.Event()
        self._flush_lock = threading.Lock()
        self._timer_thread: threading.Thread | None = None
        self._background: threading.Thread | None = None
        self._minutes_running = 0

        self._inbound_checker: InboundChecker | None = None
        self._relay_interceptor: MailSink | None = None
        self._pending: list[tuple[ControllerRole, Sampler | InboundChecker | MailSink, float, float | None]] = []
        self.setup_error: StartupError | None = None

    # --- run control surface ---

    @property
    def phase(self) -> RunPhase:
        return self._phase

    @property
    def minutes_running(self) -> int:
        return self._minutes_running

    def result_file_paths(self) -> tuple[Path, Path, Path]:
        mail, resources, errors = result_file_names(self.config.id)
        return (self.output_dir / mail, self.output_dir / resources, self.output_dir / errors)

    def start(self) -> threading.Thread:
        """Run in a background thread and return immediately."""
        if self._background is not None:
            raise PostageRunnerError("runner already started", context={"id": self.config.id})
        self._background = threading.Thread(target=self._run_background, name=f"postage-{self.config.id}", daemon=True)
        self._background.start()
        return self._background

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for a start()ed run to finish. True when it has."""
        t = self._background
        if t is None:
            return self._phase.is_terminal
        t.join(timeout)
        return not t.is_alive()

    def terminate(self) -> None:
        """Abort the run from outside. Idempotent; a no-op once the run has completed."""
        with self._phase_lock:
            if self._phase.is_terminal:
                return
            was_running = self._phase == RunPhase.RUNNING
            self._abort_requested = True
            self._phase = RunPhase.ABORTED
        self._log.info("terminating scenario")
        self._timer_stop.set()
        self._stop_recording()
        if was_running:
            self._write_data(final_sweep_performed=False)
        self._finished.set()

    def run(self) -> RunPhase:
        """Execute the scenario and block until it has completed or was aborted.

        Raises:
            StartupError: If setup failed; the phase stays STARTING
            PostageRunnerError: If this runner was already executed
        """
        if self._phase == RunPhase.ABORTED:
            self._log.info("scenario was terminated before it started")
            return self._phase
        self._transition(RunPhase.CREATED, RunPhase.STARTING)

        try:
            self._setup()
        except StartupError as e:
            self.setup_error = e
            self._log.critical("could not even start the runner successfully: %s", e)
            self._teardown_interceptor()
            raise

        with self._phase_lock:
            if self._abort_requested:
                self._log.info("scenario aborted during setup")
                self._teardown_interceptor()
                return self._phase
            self._phase = RunPhase.RUNNING
        self._log.info("starting scenario")

        self._start_timer()
        try:
            self._record_data()
        finally:
            self._teardown_interceptor()
            self._join_controllers()
        return self._phase

    # --- setup ---

    def _setup(self) -> None:
        try:
            self._setup_internal_user_accounts()
            self._setup_inbound_mailing()
            self._setup_inbound_mailing_checker()
            self._setup_forwarded_mail_interceptor()
            self._setup_resource_sampling()
            for path in (*self.result_file_paths(), self.summary_path):
                rotate_result_file(path)
        except StartupError:
            raise
        except Exception as e:
            raise StartupError(
                f"setup failed: {e}",
                context={"id": self.config.id},
                original_error=e,
            ) from e

    def _setup_internal_user_accounts(self) -> None:
        provisioner = self._factory.create_provisioner()
        if provisioner is None:
            self._log.info("No management API configured; using existing internal accounts")
            return
        try:
            users = provisioner.provision(self.config.internal_users)
        except Exception as e:
            raise StartupError("error setting up internal user accounts", original_error=e) from e
        finally:
            close = getattr(provisioner, "close", None)
            if close is not None:
                close()
        self._log.info("Provisioned %d internal account(s)", len(users))

    def _setup_inbound_mailing(self) -> None:
        for sender, per_minute in self._factory.create_senders(self.store):
            available = sender.check_availability()
            self._log.info("availability of inbound mailing (%s) %sverified", sender.name, "" if available else "NOT ")
            if not available:
                continue
            self._pending.append((ControllerRole.SEND, sender, per_minute, None))

    def _setup_inbound_mailing_checker(self) -> None:
        checker = self._factory.create_inbound_checker(self.store, self.results)
        if checker is None:
            return
        if not checker.check_availability():
            self._log.warning("checking for inbound mailing (POP3) NOT available; mailboxes will not be checked")
            return
        self._log.info("availability of checking for inbound mailing (POP3) verified")
        self._inbound_checker = checker
        self._pending.append(
            (ControllerRole.INBOUND, checker, self.config.testserver.pop3_fetches_per_minute, None)
        )

    def _setup_forwarded_mail_interceptor(self) -> None:
        interceptor = self._factory.create_relay_interceptor(self.store, self.results)
        if interceptor is None:
            return
        try:
            interceptor.initialize()
        except Exception as e:
            raise StartupError("failed to set up forwarded mail interceptor", original_error=e) from e
        self._relay_interceptor = interceptor
        wait = self.config.testserver.smtp_forwarding_wait_seconds
        self._pending.append(
            (ControllerRole.RELAY, interceptor, RELAY_PROBES_PER_MINUTE, wait if wait > 0 else None)
        )
        self._log.info("forwarded mail interceptor is set up.")

    def _setup_resource_sampling(self) -> None:
        sampler = self._factory.create_resource_sampler(self.results)
        if sampler is None:
            return
        if not sampler.check_availability():
            self._log.warning("resource sampling NOT available; continuing without it")
            return
        self._pending.append((ControllerRole.RESOURCE, sampler, RESOURCE_SAMPLES_PER_MINUTE, None))

    # --- running ---

    def _record_data(self) -> None:
        for role, sampler, per_minute, fixed_delay in self._pending:
            self.controllers.add(
                role,
                SampleController(
                    sampler,
                    per_minute,
                    fixed_delay,
                    self.results,
                    minute_seconds=self.minute_seconds,
                ),
            )
        self._pending.clear()
        self.controllers.start_all()
        self._log.info("Started %d sampler(s)", self.controllers.count())
        if self._stopped:
            # terminate() ran before the controllers existed
            self.controllers.stop_all()

        self._finished.wait()

        if self._phase == RunPhase.COMPLETED:
            # In-flight sends must be registered before the final pass and sweep
            self._join_controllers()
            if self._inbound_checker is not None:
                self._final_mailbox_pass(self._inbound_checker)
            self.store.sweep_outstanding()
            self._log.info("completing by writing data")
            self._write_data(final_sweep_performed=True)
        else:
            self._log.info("skip checking internal accounts for unmatched mail.")
            # Samples in flight at terminate() record after the abort flush
            self._join_controllers()
            if self.results.has_pending:
                self._write_data(final_sweep_performed=False)

    def _final_mailbox_pass(self, checker: InboundChecker) -> None:
        self._log.info("checking all internal accounts for unmatched mail...")
        try:
            checker.match_all_users()
        except Exception as e:
            self._log.exception("Final mailbox check failed")
            self.results.record_error("final-mailbox-check", str(e))
            return
        self._log.info("...done checking internal accounts")

    def _start_timer(self) -> None:
        self._timer_thread = threading.Thread(target=self._timer, name=f"timer-{self.config.id}", daemon=True)
        self._timer_thread.start()

    def _timer(self) -> None:
        duration = self.config.duration_minutes
        self._log.info("running for %d minute(s)", duration)
        for _ in range(duration):
            if self._timer_stop.wait(self.minute_seconds):
                return
            self._one_minute_checkpoint()
        self._complete()

    def _one_minute_checkpoint(self) -> None:
        self._minutes_running += 1
        self._log.info(
            "reached checkpoint after %d of %d minute(s) running.",
            self._minutes_running, self.config.duration_minutes,
        )
        self.results.checkpoint(self._minutes_running, self.store.outstanding_count)
        self._write_data(final_sweep_performed=False)

    def _complete(self) -> None:
        self._stop_recording()
        with self._phase_lock:
            if self._phase != RunPhase.RUNNING:
                return
            self._phase = RunPhase.COMPLETED
        self._finished.set()

    def _stop_recording(self) -> None:
        with self._phase_lock:
            if self._stopped:
                return
            self._stopped = True
        self._log.info("stopping")
        self.controllers.stop_all()

    def _join_controllers(self) -> None:
        hung = self.controllers.join_all(JOIN_TIMEOUT_SEC)
        if hung:
            self._log.warning("Sampler thread(s) still busy after stop: %s", ", ".join(hung))

    def _teardown_interceptor(self) -> None:
        interceptor = self._relay_interceptor
        if interceptor is not None:
            interceptor.shutdown()

    # --- results ---

    def _write_data(self, final_sweep_performed: bool) -> None:
        with self._flush_lock:
            snapshot = self.results.snapshot(self.config.id, self.store.outstanding_count)
            self._log.info("unmatched messages: %d", snapshot.unmatched)
            self._log.info("matched messages:   %d", snapshot.matched)
            self._log.info("recorded errors:    %d", snapshot.errors)
            try:
                self._sink.write_snapshot(snapshot, final_sweep_performed)
            except Exception:  # noqa: BLE001
                self._log.exception("Failed to write results")

    # --- phase ---

    def _transition(self, expected: RunPhase, target: RunPhase) -> None:
        with self._phase_lock:
            if self._phase != expected:
                raise PostageRunnerError(
                    f"cannot move from {self._phase.value} to {target.value}",
                    context={"id": self.config.id},
                )
            self._phase = target

    def _run_background(self) -> None:
        try:
            self.run()
        except StartupError:
            pass  # logged in run(), kept in setup_error
