# contest

Building blocks for orchestrating test jobs against a set of targets
(machines, devices, services). Everything is in-process and thread based; the
package has no third-party dependencies.

## Modules

- **`contest.model`** — the shared data types: `Target`, `TargetError`,
  `TestEventHeader`, `TestEventData`, `TestEvent`, `FrameworkEvent`,
  `RunStartedPayload`, `TestStepDescriptor`, `TestDescriptor`, the bundles
  (`TestStepBundle`, `TestFetcherBundle`, `TargetManagerBundle`,
  `ReporterBundle`), `Test` and `Job`. A `Job` carries `cancel` and `pause`
  `threading.Event`s; `Job.is_cancelled()` reports the former. `runs=0`
  means the job runs until cancelled. `validate_event_name(name)` accepts
  non-empty names made of letters only and raises `ValueError` otherwise.
- **`contest.pluginregistry`** — `PluginRegistry` maps case-insensitive
  plugin names to factories for target managers, test fetchers, test steps
  and reporters. `register_*` raises `PluginRegistryError` on a duplicate
  name; `register_test_step` also takes the event names the step may emit and
  raises if one is invalid. `new_*` creates an instance or raises if the name
  is unknown. The bundle builders (`new_test_step_bundle`,
  `new_test_fetcher_bundle`, `new_target_manager_bundle`,
  `new_run_reporter_bundle`, `new_final_reporter_bundle`) create the plugin
  and call its `validate_*` method on the parameters; a failure becomes a
  `PluginRegistryError`, and a step descriptor without a label raises
  `StepLabelMissingError`.
- **`contest.channels`** — `Channel`, a closable FIFO between threads
  (unbuffered by default, optional `capacity` and `timeout`), with `send`,
  `receive`, `close`, `closed` and iteration until closed and drained.
  Sending to or closing a closed channel, and receiving from a closed, empty
  one, raise `ChannelClosed`; waits beyond `timeout` raise `TimeoutError`.
  `wait_for_first_target(source, cancel, pause)` returns
  `(out, on_first_target, on_no_targets)`: targets are forwarded to `out` in
  order, `on_first_target` is set when the first arrives, and
  `on_no_targets` is set (after `out` is closed) if `source` closes empty.
  If `cancel` or `pause` is set before the first target, forwarding stops and
  `out` stays open.
- **`contest.status`** — `StatusBuilder(framework_events, test_events)`
  rebuilds `RunStatus`, `TestStatus`, `TestStepStatus` and `TargetStatus`
  objects from stored events. `build_run_statuses(job)` builds one status for
  every run id up to the highest one found in the job's `RunStarted` events.
  Failures raise `StatusError`.
- **`contest.jobrunner`** — `JobRunner.run(job)` runs each test of each run:
  it emits a `RunStarted` framework event, acquires targets through the
  test's target manager, locks them, emits `TargetAcquired` events, calls the
  test runner, refreshes locks in the background and releases the targets
  afterwards. Acquire and release are bounded by `target_manager_timeout`.
  It returns the run reports grouped by run and the final reports as
  `Report` objects; a cancelled job returns `([], [])`, and fatal errors
  raise `JobRunnerError` (or the test runner's own exception).
  `get_targets(job_id)` returns the targets last acquired for a job, and
  `get_current_run(job_id)` the run id of the latest `RunStarted` event.

## Plugin interfaces

Plugins are plain objects; the package calls these methods on them:

- test step: `name` (attribute or method), `validate_parameters(params)`
- test fetcher: `validate_fetch_parameters(params)`
- target manager: `validate_acquire_parameters(params)`,
  `validate_release_parameters(params)`,
  `acquire(job_id, cancel, params, locker)`,
  `release(job_id, cancel, params)`
- reporter: `name`, `validate_run_parameters(params)`,
  `validate_final_parameters(params)`,
  `run_report(cancel, params, run_status, test_events)` and
  `final_report(cancel, params, run_statuses, test_events)`, each returning
  `(success, data)`

## Example

```python
from contest.pluginregistry import PluginRegistry, PluginRegistryError

registry = PluginRegistry()
registry.register_test_step("Echo", EchoStep, ["EchoStarted", "EchoFinished"])

step = registry.new_test_step("echo")          # names are case-insensitive
events = registry.new_test_step_events("ECHO")  # frozenset({"EchoStarted", "EchoFinished"})

try:
    registry.register_test_step("Bad", EchoStep, ["not a valid name"])
except PluginRegistryError as exc:
    print(exc)
```

```python
from contest.channels import Channel, wait_for_first_target

source = Channel()
out, on_first, on_none = wait_for_first_target(source, None, None)
```

## What the package does not provide

- No event storage: `StatusBuilder` and `JobRunner` are given objects with
  `emit`/`fetch` methods, and an `emitter_factory` for test events.
- No target locker implementation: `JobRunner` takes any object with `lock`,
  `unlock` and `refresh_locks`.
- No test step pipeline: `JobRunner` takes a `test_runner` callable
  `(cancel, pause, test, targets, job_id, run_id)` that runs the steps.
- No built-in plugins, no job descriptor parsing, no server and no
  command-line tool.

## Running the tests

```
pip install .[test]
pytest
```