"""Core data types shared by the plugin registry and the job runner."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

EVENT_RUN_STARTED = "RunStarted"
EVENT_TEST_ERROR = "TestError"

EVENT_TARGET_ACQUIRED = "TargetAcquired"
EVENT_TARGET_IN = "TargetIn"
EVENT_TARGET_IN_ERR = "TargetInErr"
EVENT_TARGET_OUT = "TargetOut"
EVENT_TARGET_ERR = "TargetErr"

_EVENT_NAME_RE = re.compile(r"[A-Za-z]+")


def validate_event_name(name: str) -> str:
    """Return ``name`` if it is a valid event name, otherwise raise ValueError.

    Event names are non-empty and made of letters only.
    """
    if not isinstance(name, str) or not _EVENT_NAME_RE.fullmatch(name):
        raise ValueError(f"invalid event name {name!r}: only letters are allowed")
    return name


@dataclass(frozen=True)
class Target:
    """A device under test."""

    name: str = ""
    id: str = ""
    fqdn: str = ""


@dataclass(frozen=True)
class TargetError:
    """A target that left a test step with an error."""

    target: Target
    error: BaseException | None = None


@dataclass(frozen=True)
class TestEventHeader:
    """Coordinates that every test event carries."""

    job_id: int
    run_id: int
    test_name: str
    test_step_label: str = ""


@dataclass(frozen=True)
class TestEventData:
    """The body of a test event; ``payload`` is raw JSON text or None."""

    event_name: str
    target: Target | None = None
    payload: str | None = None


@dataclass(frozen=True)
class TestEvent:
    """A test event as stored and fetched."""

    header: TestEventHeader
    data: TestEventData
    emit_time: datetime


@dataclass(frozen=True)
class FrameworkEvent:
    """An event emitted by the framework itself; ``payload`` is raw JSON text."""

    job_id: int
    event_name: str
    payload: str | None
    emit_time: datetime


@dataclass(frozen=True)
class RunStartedPayload:
    """Payload of the run-started framework event."""

    run_id: int


@dataclass
class TestStepDescriptor:
    """Description of a test step as written in a test descriptor."""

    name: str
    label: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class TestDescriptor:
    """Names and raw parameters of the plugins a test uses."""

    target_manager_name: str = ""
    target_manager_acquire_parameters: Any = None
    target_manager_release_parameters: Any = None
    test_fetcher_name: str = ""
    test_fetcher_fetch_parameters: Any = None


@dataclass
class TestStepBundle:
    """A test step instance with its label, parameters and allowed events."""

    test_step: Any
    label: str
    parameters: dict[str, Any] = field(default_factory=dict)
    allowed_events: frozenset[str] = frozenset()


@dataclass
class TestFetcherBundle:
    """A test fetcher instance with its validated fetch parameters."""

    test_fetcher: Any
    fetch_parameters: Any = None


@dataclass
class TargetManagerBundle:
    """A target manager instance with its validated parameters."""

    target_manager: Any
    acquire_parameters: Any = None
    release_parameters: Any = None


@dataclass
class ReporterBundle:
    """A reporter instance with its validated parameters."""

    reporter: Any
    parameters: Any = None


@dataclass
class Test:
    """A named test: where targets come from and which steps run on them."""

    name: str
    target_manager_bundle: TargetManagerBundle | None = None
    test_fetcher_bundle: TestFetcherBundle | None = None
    step_bundles: list[TestStepBundle] = field(default_factory=list)


@dataclass
class Job:
    """A job: a list of tests run ``runs`` times (0 means forever)."""

    id: int
    name: str = ""
    runs: int = 0
    run_interval: float = 0.0
    tests: list[Test] = field(default_factory=list)
    run_reporter_bundles: list[ReporterBundle] = field(default_factory=list)
    final_reporter_bundles: list[ReporterBundle] = field(default_factory=list)
    cancel: threading.Event = field(default_factory=threading.Event)
    pause: threading.Event = field(default_factory=threading.Event)

    def is_cancelled(self) -> bool:
        """Tell whether cancellation of the job has been requested."""
        return self.cancel.is_set()