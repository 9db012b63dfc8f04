"""Rebuilding run, test, step and target statuses from stored events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from contest.model import (
    EVENT_RUN_STARTED,
    EVENT_TARGET_ACQUIRED,
    EVENT_TARGET_ERR,
    EVENT_TARGET_IN,
    EVENT_TARGET_IN_ERR,
    EVENT_TARGET_OUT,
    FrameworkEvent,
    Job,
    Target,
    Test,
    TestEvent,
)

log = logging.getLogger(__name__)

# Events tracking the flow of targets between test steps.
ROUTING_EVENTS = frozenset(
    {EVENT_TARGET_IN, EVENT_TARGET_ERR, EVENT_TARGET_OUT, EVENT_TARGET_IN_ERR}
)


class FrameworkEventFetcher(Protocol):
    """Fetches framework events matching keyword filters (``job_id``, ``event_name``)."""

    def fetch(self, **query: Any) -> list[FrameworkEvent]: ...


class TestEventFetcher(Protocol):
    """Fetches test events matching keyword filters.

    Filters: ``job_id``, ``run_id``, ``test_name``, ``test_step_label``, ``event_name``.
    """

    def fetch(self, **query: Any) -> list[TestEvent]: ...


class StatusError(Exception):
    """Raised when a status cannot be rebuilt from the stored events."""


@dataclass(frozen=True)
class RunCoordinates:
    """Identifies a run of a job."""

    job_id: int
    run_id: int


@dataclass(frozen=True)
class TestCoordinates:
    """Identifies a test within a run."""

    job_id: int
    run_id: int
    test_name: str


@dataclass(frozen=True)
class TestStepCoordinates:
    """Identifies a test step within a test of a run."""

    job_id: int
    run_id: int
    test_name: str
    test_step_name: str
    test_step_label: str


@dataclass
class TargetStatus:
    """The status of a target within a test step."""

    coordinates: TestStepCoordinates | None = None
    target: Target | None = None
    in_time: datetime | None = None
    out_time: datetime | None = None
    error: str = ""
    events: list[TestEvent] = field(default_factory=list)


@dataclass
class TestStepStatus:
    """Step-level events and per-target statuses of a test step."""

    coordinates: TestStepCoordinates
    events: list[TestEvent] = field(default_factory=list)
    target_statuses: list[TargetStatus] = field(default_factory=list)


@dataclass
class TestStatus:
    """Statuses of the steps of a test and the final status of each target."""

    coordinates: TestCoordinates
    test_step_statuses: list[TestStepStatus] = field(default_factory=list)
    target_statuses: list[TargetStatus] = field(default_factory=list)


@dataclass
class RunStatus:
    """Statuses of all tests in a run."""

    coordinates: RunCoordinates
    test_statuses: list[TestStatus] = field(default_factory=list)


def _step_name(step: Any) -> str:
    name = step.name
    return name() if callable(name) else name


def _error_from_payload(payload: str | None) -> str:
    if payload is None:
        return ""
    try:
        decoded = json.loads(payload)
    except ValueError as err:
        return f"could not unmarshal payload error: {err}"
    if decoded is None:
        return ""
    if not isinstance(decoded, dict):
        return "could not unmarshal payload error: payload is not a JSON object"
    error = decoded.get("Error", "")
    if not isinstance(error, str):
        return "could not unmarshal payload error: Error is not a string"
    return error


def _run_id_from_payload(payload: str | None) -> int:
    try:
        decoded = json.loads(payload if payload is not None else "null")
    except ValueError as err:
        raise StatusError("could not unmarshal RunStarted event payload") from err
    if decoded is None:
        return 0
    if not isinstance(decoded, dict):
        raise StatusError("could not unmarshal RunStarted event payload")
    run_id = decoded.get("RunID", 0)
    if not isinstance(run_id, int) or isinstance(run_id, bool):
        raise StatusError("could not unmarshal RunStarted event payload")
    return run_id


class StatusBuilder:
    """Rebuilds job statuses from framework and test events."""

    def __init__(
        self,
        framework_events: FrameworkEventFetcher,
        test_events: TestEventFetcher | None = None,
    ) -> None:
        self._framework_events = framework_events
        self._test_events = test_events

    def _fetch_test_events(self, **query: Any) -> list[TestEvent]:
        if self._test_events is None:
            raise StatusError("no test event fetcher configured")
        return list(self._test_events.fetch(**query))

    def _build_target_statuses(
        self, coordinates: TestStepCoordinates, target_events: list[TestEvent]
    ) -> list[TargetStatus]:
        statuses: dict[Target, TargetStatus] = {}
        for event in target_events:
            target = event.data.target
            status = statuses.get(target)
            if status is None:
                status = statuses[target] = TargetStatus(coordinates=coordinates, target=target)
            name = event.data.event_name
            if name not in ROUTING_EVENTS:
                status.events.append(event)
            if name == EVENT_TARGET_IN:
                status.in_time = event.emit_time
            elif name == EVENT_TARGET_OUT:
                status.out_time = event.emit_time
            elif name == EVENT_TARGET_ERR:
                status.out_time = event.emit_time
                status.error = _error_from_payload(event.data.payload)
        return list(statuses.values())

    def _build_test_step_status(self, coordinates: TestStepCoordinates) -> TestStepStatus:
        try:
            events = self._fetch_test_events(
                job_id=coordinates.job_id,
                run_id=coordinates.run_id,
                test_name=coordinates.test_name,
                test_step_label=coordinates.test_step_label,
            )
        except Exception as err:
            raise StatusError(
                f"could not fetch events associated to test step "
                f"{coordinates.test_step_label}: {err}"
            ) from err

        step_events: list[TestEvent] = []
        target_events: list[TestEvent] = []
        for event in events:
            if event.data.target is None:
                if event.data.event_name in ROUTING_EVENTS:
                    log.warning(
                        "Found routing event '%s' with no target associated, "
                        "this could indicate a bug",
                        event.data.event_name,
                    )
                    continue
                step_events.append(event)
            else:
                target_events.append(event)

        return TestStepStatus(
            coordinates=coordinates,
            events=step_events,
            target_statuses=self._build_target_statuses(coordinates, target_events),
        )

    def _build_test_status(self, coordinates: TestCoordinates, job: Job) -> TestStatus:
        current: Test | None = next(
            (t for t in job.tests if t.name == coordinates.test_name), None
        )
        if current is None:
            raise StatusError(
                f"job with id {coordinates.job_id} does not include any test "
                f"named {coordinates.test_name}"
            )

        step_statuses = []
        for bundle in current.step_bundles:
            name = _step_name(bundle.test_step)
            step_coordinates = TestStepCoordinates(
                job_id=coordinates.job_id,
                run_id=coordinates.run_id,
                test_name=coordinates.test_name,
                test_step_name=name,
                test_step_label=bundle.label,
            )
            try:
                step_statuses.append(self._build_test_step_status(step_coordinates))
            except StatusError as err:
                raise StatusError(f"could not build TestStatus for test {name}: {err}") from err

        # Target acquisition events are the source of truth for which targets belong to a test.
        try:
            acquired = self._fetch_test_events(
                job_id=coordinates.job_id,
                run_id=coordinates.run_id,
                test_name=coordinates.test_name,
                event_name=EVENT_TARGET_ACQUIRED,
            )
        except Exception as err:
            raise StatusError("could not fetch events associated to target acquisition") from err

        last_status: dict[Target, TargetStatus] = {}
        for step_status in step_statuses:
            for target_status in step_status.target_statuses:
                last_status[target_status.target] = target_status

        target_statuses = []
        for event in acquired:
            target = event.data.target
            # A target without any status has not started the test.
            target_statuses.append(last_status.setdefault(target, TargetStatus()))

        return TestStatus(
            coordinates=coordinates,
            test_step_statuses=step_statuses,
            target_statuses=target_statuses,
        )

    def build_run_status(self, coordinates: RunCoordinates, job: Job) -> RunStatus:
        """Build the status of one run of ``job``."""
        test_statuses = []
        for test in job.tests:
            test_coordinates = TestCoordinates(
                job_id=coordinates.job_id, run_id=coordinates.run_id, test_name=test.name
            )
            try:
                test_statuses.append(self._build_test_status(test_coordinates, job))
            except StatusError as err:
                raise StatusError(f"could not rebuild status for test {test.name}: {err}") from err
        return RunStatus(coordinates=coordinates, test_statuses=test_statuses)

    def build_run_statuses(self, job: Job) -> list[RunStatus]:
        """Build the status of every run of ``job`` that was started."""
        try:
            run_events = list(
                self._framework_events.fetch(event_name=EVENT_RUN_STARTED, job_id=job.id)
            )
        except Exception as err:
            raise StatusError(f"could not determine how many runs were executed: {err}") from err
        if not run_events:
            return []

        num_runs = max(_run_id_from_payload(event.payload) for event in run_events)

        statuses = []
        for run_id in range(1, num_runs + 1):
            coordinates = RunCoordinates(job_id=job.id, run_id=run_id)
            try:
                statuses.append(self.build_run_status(coordinates, job))
            except StatusError as err:
                raise StatusError(f"could not rebuild run status for run {run_id}: {err}") from err
        return statuses