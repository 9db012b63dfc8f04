"""Registry of plugin factories and construction of plugin bundles."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from contest.model import (
    ReporterBundle,
    TargetManagerBundle,
    TestDescriptor,
    TestFetcherBundle,
    TestStepBundle,
    TestStepDescriptor,
    validate_event_name,
)

log = logging.getLogger(__name__)

Factory = Callable[[], Any]


class PluginRegistryError(Exception):
    """Raised when a plugin cannot be registered, found or configured."""


class StepLabelMissingError(PluginRegistryError):
    """Raised when a test step descriptor has no label."""

    def __init__(self, descriptor: TestStepDescriptor) -> None:
        super().__init__(f"step has no label, but it is mandatory (step: {descriptor})")
        self.descriptor = descriptor


class PluginRegistry:
    """Maps case-insensitive plugin names to factories creating plugin instances."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._target_managers: dict[str, Factory] = {}
        self._test_fetchers: dict[str, Factory] = {}
        self._test_steps: dict[str, Factory] = {}
        self._test_step_events: dict[str, frozenset[str]] = {}
        self._reporters: dict[str, Factory] = {}

    def _register(self, kind: str, log_kind: str, table: dict[str, Factory], name: str, factory: Factory) -> str:
        key = name.lower()
        log.info("Registering %s %s", log_kind, key)
        if key in table:
            raise PluginRegistryError(f"{kind} {key} already registered")
        table[key] = factory
        return key

    def _create(self, kind: str, table: dict[str, Factory], name: str) -> Any:
        key = name.lower()
        with self._lock:
            factory = table.get(key)
        if factory is None:
            raise PluginRegistryError(f"{kind} {key} is not registered")
        return factory()

    def register_target_manager(self, name: str, factory: Factory) -> None:
        """Register a factory for target manager plugins."""
        with self._lock:
            self._register("TargetManager", "target manager", self._target_managers, name, factory)

    def register_test_fetcher(self, name: str, factory: Factory) -> None:
        """Register a factory for test fetcher plugins."""
        with self._lock:
            self._register("TestFetcher", "test fetcher", self._test_fetchers, name, factory)

    def register_test_step(self, name: str, factory: Factory, events: Iterable[str]) -> None:
        """Register a test step factory and the events the step may emit."""
        with self._lock:
            key = self._register("TestSteps", "test step", self._test_steps, name, factory)
            allowed = set()
            for event_name in events:
                try:
                    validate_event_name(event_name)
                except ValueError as err:
                    raise PluginRegistryError(f"could not register TestStep {key}: {err}") from err
                allowed.add(event_name)
            self._test_step_events[key] = frozenset(allowed)

    def register_reporter(self, name: str, factory: Factory) -> None:
        """Register a factory for reporter plugins."""
        with self._lock:
            self._register("Reporter", "reporter", self._reporters, name, factory)

    def new_target_manager(self, name: str) -> Any:
        """Create a target manager by name."""
        return self._create("TargetManager", self._target_managers, name)

    def new_test_fetcher(self, name: str) -> Any:
        """Create a test fetcher by name."""
        return self._create("TestFetcher", self._test_fetchers, name)

    def new_test_step(self, name: str) -> Any:
        """Create a test step by name."""
        return self._create("TestStep", self._test_steps, name)

    def new_test_step_events(self, name: str) -> frozenset[str]:
        """Return the event names the named test step may emit."""
        key = name.lower()
        with self._lock:
            events = self._test_step_events.get(key)
        if events is None:
            raise PluginRegistryError(f"TestStep {key} does not have any event associated")
        return events

    def new_reporter(self, name: str) -> Any:
        """Create a reporter by name."""
        return self._create("Reporter", self._reporters, name)

    def new_test_step_bundle(
        self,
        descriptor: TestStepDescriptor,
        step_index: int,
        allowed_events: Iterable[str],
    ) -> TestStepBundle:
        """Create a test step from its descriptor and validate its parameters.

        ``step_index`` is the step's position in the test; it does not affect
        the bundle.
        """
        try:
            step = self.new_test_step(descriptor.name)
        except PluginRegistryError as err:
            raise PluginRegistryError(
                f"could not get the desired TestStep ({descriptor.name}): {err}"
            ) from err
        try:
            step.validate_parameters(descriptor.parameters)
        except Exception as err:
            raise PluginRegistryError(
                f"could not validate parameters for test step {descriptor.name}: {err}"
            ) from err
        if not descriptor.label:
            raise StepLabelMissingError(descriptor)
        return TestStepBundle(
            test_step=step,
            label=descriptor.label,
            parameters=descriptor.parameters,
            allowed_events=frozenset(allowed_events),
        )

    def new_test_fetcher_bundle(self, descriptor: TestDescriptor) -> TestFetcherBundle:
        """Create the test fetcher named in ``descriptor`` with validated parameters."""
        try:
            fetcher = self.new_test_fetcher(descriptor.test_fetcher_name)
        except PluginRegistryError as err:
            raise PluginRegistryError(
                f"could not get the desired TestFetcher ({descriptor.test_fetcher_name}): {err}"
            ) from err
        try:
            params = fetcher.validate_fetch_parameters(descriptor.test_fetcher_fetch_parameters)
        except Exception as err:
            raise PluginRegistryError(
                f"could not validate TestFetcher fetch parameters: {err}"
            ) from err
        return TestFetcherBundle(test_fetcher=fetcher, fetch_parameters=params)

    def new_target_manager_bundle(self, descriptor: TestDescriptor) -> TargetManagerBundle:
        """Create the target manager named in ``descriptor`` with validated parameters."""
        try:
            manager = self.new_target_manager(descriptor.target_manager_name)
        except PluginRegistryError as err:
            raise PluginRegistryError(
                f"could not get TargetManager ({descriptor.target_manager_name}): {err}"
            ) from err
        try:
            acquire = manager.validate_acquire_parameters(
                descriptor.target_manager_acquire_parameters
            )
        except Exception as err:
            raise PluginRegistryError(
                f"could not validate TargetManager acquire parameters: {err}"
            ) from err
        try:
            release = manager.validate_release_parameters(
                descriptor.target_manager_release_parameters
            )
        except Exception as err:
            raise PluginRegistryError(
                f"could not validate TargetManager release parameters: {err}"
            ) from err
        return TargetManagerBundle(
            target_manager=manager, acquire_parameters=acquire, release_parameters=release
        )

    def _reporter(self, name: str) -> Any:
        try:
            return self.new_reporter(name)
        except PluginRegistryError as err:
            raise PluginRegistryError(f"could not get reporter '{name}': {err}") from err

    def new_run_reporter_bundle(self, name: str, parameters: Any) -> ReporterBundle:
        """Create a reporter with validated run-report parameters."""
        reporter = self._reporter(name)
        try:
            params = reporter.validate_run_parameters(parameters)
        except Exception as err:
            raise PluginRegistryError(
                f"could not validate run reporter parameters: {err}"
            ) from err
        return ReporterBundle(reporter=reporter, parameters=params)

    def new_final_reporter_bundle(self, name: str, parameters: Any) -> ReporterBundle:
        """Create a reporter with validated final-report parameters."""
        reporter = self._reporter(name)
        try:
            params = reporter.validate_final_parameters(parameters)
        except Exception as err:
            raise PluginRegistryError(
                f"could not validate run reporter parameters: {err}"
            ) from err
        return ReporterBundle(reporter=reporter, parameters=params)