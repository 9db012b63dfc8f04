"""Running jobs: target acquisition, locking, test execution and reporting."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from contest.model import (
    EVENT_RUN_STARTED,
    EVENT_TARGET_ACQUIRED,
    FrameworkEvent,
    Job,
    Target,
    Test,
    TestEventData,
    TestEventHeader,
)
from contest.status import RunCoordinates, StatusBuilder, StatusError

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.01


class FrameworkEventManager(Protocol):
    """Emits and fetches framework events."""

    def emit(self, event: FrameworkEvent) -> None: ...

    def fetch(self, **query: Any) -> list[FrameworkEvent]: ...


class TestEventEmitter(Protocol):
    """Emits test events under a fixed header."""

    def emit(self, data: TestEventData) -> None: ...


class TargetLocker(Protocol):
    """Locks targets on behalf of a job."""

    def lock(self, job_id: int, targets: Sequence[Target]) -> None: ...

    def unlock(self, job_id: int, targets: Sequence[Target]) -> None: ...

    def refresh_locks(self, job_id: int, targets: Sequence[Target]) -> None: ...


TestRunnerFunc = Callable[
    [threading.Event, threading.Event, Test, list[Target], int, int], None
]


class JobRunnerError(Exception):
    """Raised when a job cannot be run to completion."""


class _Cancelled(Exception):
    pass


@dataclass(frozen=True)
class Report:
    """The outcome computed by a reporter for a run or for the whole job."""

    success: bool
    data: Any
    reporter_name: str
    report_time: datetime


def _plugin_name(plugin: Any) -> str:
    name = plugin.name
    return name() if callable(name) else name


class JobRunner:
    """Runs jobs and keeps track of the targets each job has acquired."""

    def __init__(
        self,
        framework_events: FrameworkEventManager,
        test_events: Any,
        emitter_factory: Callable[[TestEventHeader], TestEventEmitter],
        locker: TargetLocker,
        test_runner: TestRunnerFunc,
        *,
        target_manager_timeout: float = 300.0,
        lock_refresh_timeout: float = 60.0,
    ) -> None:
        self._framework_events = framework_events
        self._test_events = test_events
        self._emitter_factory = emitter_factory
        self._locker = locker
        self._test_runner = test_runner
        self._target_manager_timeout = target_manager_timeout
        self._lock_refresh_timeout = lock_refresh_timeout
        self._status = StatusBuilder(framework_events, test_events)
        self._targets: dict[int, list[Target]] = {}
        self._targets_lock = threading.Lock()

    def get_targets(self, job_id: int) -> list[Target]:
        """Return the targets acquired for ``job_id`` (empty if none)."""
        with self._targets_lock:
            return list(self._targets.get(job_id, []))

    def get_current_run(self, job_id: int) -> int:
        """Return the id of the run currently executed for ``job_id``."""
        try:
            events = list(
                self._framework_events.fetch(job_id=job_id, event_name=EVENT_RUN_STARTED)
            )
        except Exception as err:
            raise JobRunnerError(f"could not fetch last run id for job {job_id}: {err}") from err
        if not events:
            raise JobRunnerError(f"could not fetch last run id for job {job_id}: no run started")
        try:
            decoded = json.loads(events[-1].payload or "null")
        except ValueError as err:
            raise JobRunnerError(f"could not fetch last run id for job {job_id}: {err}") from err
        run_id = decoded.get("RunID", 0) if isinstance(decoded, dict) else None
        if not isinstance(run_id, int) or isinstance(run_id, bool):
            raise JobRunnerError(
                f"could not fetch last run id for job {job_id}: invalid payload"
            )
        return run_id

    def _emit_event(self, job_id: int, event_name: str, payload: dict[str, Any]) -> None:
        event = FrameworkEvent(
            job_id=job_id,
            event_name=event_name,
            payload=json.dumps(payload),
            emit_time=datetime.now(),
        )
        try:
            self._framework_events.emit(event)
        except Exception as err:
            log.warning("could not emit event %s: %s", event_name, err)
            raise

    def _emit_acquired_targets(self, emitter: TestEventEmitter, targets: list[Target]) -> None:
        for target in targets:
            try:
                emitter.emit(TestEventData(event_name=EVENT_TARGET_ACQUIRED, target=target))
            except Exception as err:
                log.warning("could not emit event %s: %s", EVENT_TARGET_ACQUIRED, err)
                raise

    def _in_background(self, func: Callable[[], Any], name: str) -> queue.Queue:
        results: queue.Queue = queue.Queue(maxsize=1)

        def work() -> None:
            try:
                results.put((True, func()))
            except Exception as err:
                results.put((False, err))

        threading.Thread(target=work, name=name, daemon=True).start()
        return results

    def _await(self, results: queue.Queue, job: Job, what: str) -> tuple[bool, Any]:
        deadline = time.monotonic() + self._target_manager_timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                return results.get(timeout=max(0.0, min(_POLL_INTERVAL, remaining)))
            except queue.Empty:
                pass
            if job.cancel.is_set():
                log.info("cancellation requested for job ID %s", job.id)
                raise _Cancelled
            if time.monotonic() >= deadline:
                raise JobRunnerError(
                    f"target manager {what} timed out after {self._target_manager_timeout}s"
                )

    def _acquire(self, job: Job, test: Test, run_id: int) -> list[Target]:
        bundle = test.target_manager_bundle

        def acquire() -> list[Target]:
            targets = list(
                bundle.target_manager.acquire(
                    job.id, job.cancel, bundle.acquire_parameters, self._locker
                )
            )
            # Lock again so every acquired target is locked before running.
            try:
                self._locker.lock(job.id, targets)
            except Exception as err:
                raise JobRunnerError(f"Target locking failed: {err}") from err
            return targets

        ok, value = self._await(self._in_background(acquire, "acquire"), job, "acquire")
        if not ok:
            message = f"run #{run_id}: cannot fetch targets for test '{test.name}': {value}"
            log.error(message)
            raise JobRunnerError(message) from value
        with self._targets_lock:
            self._targets[job.id] = value
        return value

    def _refresh_locks(self, job: Job, targets: list[Target], done: threading.Event) -> None:
        interval = self._lock_refresh_timeout / 10 * 9
        while True:
            deadline = time.monotonic() + interval
            while time.monotonic() < deadline:
                if job.cancel.is_set():
                    try:
                        self._locker.unlock(job.id, targets)
                    except Exception as err:
                        log.warning("Failed to unlock targets for job ID %s: %s", job.id, err)
                    return
                if job.pause.is_set():
                    log.debug("Received pause request, NOT releasing targets")
                    return
                if done.is_set():
                    try:
                        self._locker.unlock(job.id, targets)
                    except Exception as err:
                        log.warning("Failed to unlock %d target(s): %s", len(targets), err)
                    log.info("Unlocked %d target(s) for job ID %s", len(targets), job.id)
                    return
                time.sleep(min(_POLL_INTERVAL, max(0.0, deadline - time.monotonic())))
            try:
                self._locker.refresh_locks(job.id, targets)
            except Exception as err:
                log.warning("Failed to refresh %d locks for job ID %s: %s", len(targets), job.id, err)

    def _run_test(self, job: Job, test: Test, run_id: int) -> None:
        targets = self._acquire(job, test, run_id)

        done = threading.Event()
        refresher = threading.Thread(
            target=self._refresh_locks, args=(job, targets, done), name="lock-refresh", daemon=True
        )
        refresher.start()

        run_error: BaseException | None = None
        header = TestEventHeader(job_id=job.id, run_id=run_id, test_name=test.name)
        try:
            self._emit_acquired_targets(self._emitter_factory(header), targets)
            log.info(
                "Run #%d: running test '%s' for job '%s' (job ID: %s) on %d targets",
                run_id, test.name, job.name, job.id, len(targets),
            )
            self._test_runner(job.cancel, job.pause, test, targets, job.id, run_id)
        except Exception as err:
            run_error = err

        bundle = test.target_manager_bundle

        def release() -> None:
            try:
                bundle.target_manager.release(job.id, job.cancel, bundle.release_parameters)
            finally:
                done.set()

        ok, value = self._await(self._in_background(release, "release"), job, "release")
        if not ok:
            message = f"Failed to release targets: {value}"
            log.error(message)
            raise JobRunnerError(message) from value
        refresher.join(self._target_manager_timeout)
        if run_error is not None:
            raise run_error

    def _run_reports(self, job: Job, run_id: int) -> list[Report]:
        reports = []
        coordinates = RunCoordinates(job_id=job.id, run_id=run_id)
        for bundle in job.run_reporter_bundles:
            try:
                run_status = self._status.build_run_status(coordinates, job)
            except StatusError as err:
                log.warning("could not build run status for job %s: %s", job.id, err)
                continue
            name = _plugin_name(bundle.reporter)
            success, data = False, None
            try:
                success, data = bundle.reporter.run_report(
                    job.cancel, bundle.parameters, run_status, self._test_events
                )
            except Exception as err:
                log.warning("Run reporter failed while calculating run results: %s", err)
            else:
                outcome = "successful" if success else "failed"
                log.info("Run #%d of job %s considered %s according to %s", run_id, job.id, outcome, name)
            reports.append(Report(success, data, name, datetime.now()))
        return reports

    def _final_reports(self, job: Job, runs_done: int) -> list[Report]:
        reports = []
        for bundle in job.final_reporter_bundles:
            try:
                run_statuses = self._status.build_run_statuses(job)
            except StatusError as err:
                log.warning("could not calculate run statuses: %s", err)
                continue
            name = _plugin_name(bundle.reporter)
            success, data = False, None
            try:
                success, data = bundle.reporter.final_report(
                    job.cancel, bundle.parameters, run_statuses, self._test_events
                )
            except Exception as err:
                log.warning("Final reporter failed while calculating test results: %s", err)
            else:
                outcome = "successful" if success else "failed"
                log.info(
                    "Job %s (%d runs out of %d desired) considered %s",
                    job.id, runs_done, job.runs, outcome,
                )
            reports.append(Report(success, data, name, datetime.now()))
        return reports

    def run(self, job: Job) -> tuple[list[list[Report]], list[Report]]:
        """Run ``job`` and return its run reports (grouped by run) and final reports.

        A cancelled job returns two empty lists. A fatal error raises.
        """
        if job.runs == 0:
            log.info("Running job '%s' (id %s) indefinitely", job.name, job.id)
        else:
            log.info("Running job '%s' %d times", job.name, job.runs)

        all_run_reports: list[list[Report]] = []
        run = 0
        try:
            while not (job.runs and run == job.runs):
                run_id = run + 1
                try:
                    self._emit_event(job.id, EVENT_RUN_STARTED, {"RunID": run_id})
                except Exception as err:
                    log.warning("Could not emit run %d start event for job %s: %s", run_id, job.id, err)

                for test in job.tests:
                    if job.is_cancelled():
                        log.debug("Cancellation requested, skipping test of run #%d", run_id)
                        break
                    self._run_test(job, test, run_id)

                all_run_reports.append(self._run_reports(job, run_id))

                if job.is_cancelled():
                    break
                if job.runs == 0 or (job.runs > 1 and run < job.runs - 1):
                    job.cancel.wait(job.run_interval)
                run += 1
        except _Cancelled:
            return [], []

        if job.is_cancelled():
            return [], []
        return all_run_reports, self._final_reports(job, run)