import pytest

from contest.model import TestDescriptor as Descriptor
from contest.model import TestStepDescriptor as StepDescriptor
from contest.pluginregistry import (
    PluginRegistry,
    PluginRegistryError,
    StepLabelMissingError,
)


class AStep:
    def name(self):
        return "AStep"

    def validate_parameters(self, params):
        if params.get("fail"):
            raise ValueError("bad parameters")


class Fetcher:
    def validate_fetch_parameters(self, params):
        if params == "bad":
            raise ValueError("bad fetch")
        return {"fetch": params}


class Manager:
    def validate_acquire_parameters(self, params):
        if params == "bad":
            raise ValueError("bad acquire")
        return {"acquire": params}

    def validate_release_parameters(self, params):
        if params == "bad":
            raise ValueError("bad release")
        return {"release": params}


class Reporter:
    def validate_run_parameters(self, params):
        if params == "bad":
            raise ValueError("bad run")
        return {"run": params}

    def validate_final_parameters(self, params):
        if params == "bad":
            raise ValueError("bad final")
        return {"final": params}


@pytest.fixture
def registry():
    reg = PluginRegistry()
    reg.register_test_step("AStep", AStep, ["AStepEventName"])
    reg.register_test_fetcher("Fetcher", Fetcher)
    reg.register_target_manager("Manager", Manager)
    reg.register_reporter("Reporter", Reporter)
    return reg


def test_register_test_step():
    reg = PluginRegistry()
    reg.register_test_step("AStep", AStep, ["AStepEventName"])
    assert reg.new_test_step("AStep").name() == "AStep"
    assert reg.new_test_step_events("astep") == {"AStepEventName"}


def test_register_test_step_does_not_validate():
    reg = PluginRegistry()
    with pytest.raises(PluginRegistryError):
        reg.register_test_step("AStep", AStep, ["Event which does not validate"])


def test_names_are_case_insensitive(registry):
    assert registry.new_test_step("ASTEP").name() == "AStep"
    assert registry.new_test_fetcher("fetcher").validate_fetch_parameters("p") == {"fetch": "p"}
    assert registry.new_target_manager("MANAGER").validate_acquire_parameters("a") == {
        "acquire": "a"
    }
    assert registry.new_reporter("reporter").validate_run_parameters("p") == {"run": "p"}


def test_each_call_creates_new_instance():
    created = []

    def factory():
        step = AStep()
        created.append(step)
        return step

    reg = PluginRegistry()
    reg.register_test_step("AStep", factory, [])
    first = reg.new_test_step("astep")
    second = reg.new_test_step("astep")
    assert len(created) == 2
    assert created[0] is first
    assert created[1] is second


@pytest.mark.parametrize(
    "method",
    ["register_target_manager", "register_test_fetcher", "register_reporter"],
)
def test_duplicate_registration_rejected(registry, method):
    names = {
        "register_target_manager": "manager",
        "register_test_fetcher": "FETCHER",
        "register_reporter": "Reporter",
    }
    with pytest.raises(PluginRegistryError, match="already registered") as info:
        getattr(registry, method)(names[method], object)
    assert names[method].lower() in str(info.value)
    # the original factories are still in place
    assert registry.new_target_manager("manager").validate_release_parameters("r") == {
        "release": "r"
    }
    assert registry.new_test_fetcher("fetcher").validate_fetch_parameters("f") == {"fetch": "f"}
    assert registry.new_reporter("reporter").validate_final_parameters("x") == {"final": "x"}


def test_duplicate_test_step_rejected(registry):
    with pytest.raises(PluginRegistryError, match="already registered"):
        registry.register_test_step("astep", AStep, [])


def test_unknown_plugins(registry):
    with pytest.raises(PluginRegistryError, match="TestStep missing is not registered"):
        registry.new_test_step("Missing")
    with pytest.raises(PluginRegistryError):
        registry.new_test_fetcher("missing")
    with pytest.raises(PluginRegistryError):
        registry.new_target_manager("missing")
    with pytest.raises(PluginRegistryError):
        registry.new_reporter("missing")
    with pytest.raises(PluginRegistryError, match="does not have any event"):
        registry.new_test_step_events("missing")


def test_test_step_bundle(registry):
    descriptor = StepDescriptor(name="AStep", label="first", parameters={"x": ["1"]})
    bundle = registry.new_test_step_bundle(descriptor, 0, {"AStepEventName"})
    assert bundle.test_step.name() == "AStep"
    assert bundle.label == "first"
    assert bundle.parameters == {"x": ["1"]}
    assert bundle.allowed_events == {"AStepEventName"}


def test_test_step_bundle_requires_label(registry):
    descriptor = StepDescriptor(name="AStep", label="")
    with pytest.raises(StepLabelMissingError) as info:
        registry.new_test_step_bundle(descriptor, 0, set())
    assert info.value.descriptor is descriptor
    assert "mandatory" in str(info.value)


def test_test_step_bundle_invalid_parameters(registry):
    descriptor = StepDescriptor(name="AStep", label="l", parameters={"fail": True})
    with pytest.raises(PluginRegistryError, match="could not validate parameters"):
        registry.new_test_step_bundle(descriptor, 0, set())


def test_test_step_bundle_unknown_step(registry):
    descriptor = StepDescriptor(name="Nope", label="l")
    with pytest.raises(PluginRegistryError, match="could not get the desired TestStep"):
        registry.new_test_step_bundle(descriptor, 0, set())


def test_test_fetcher_bundle(registry):
    descriptor = Descriptor(test_fetcher_name="Fetcher", test_fetcher_fetch_parameters="p")
    bundle = registry.new_test_fetcher_bundle(descriptor)
    assert bundle.test_fetcher.validate_fetch_parameters("q") == {"fetch": "q"}
    assert bundle.fetch_parameters == {"fetch": "p"}
    bad = Descriptor(test_fetcher_name="Fetcher", test_fetcher_fetch_parameters="bad")
    with pytest.raises(PluginRegistryError, match="fetch parameters"):
        registry.new_test_fetcher_bundle(bad)


def test_target_manager_bundle(registry):
    descriptor = Descriptor(
        target_manager_name="Manager",
        target_manager_acquire_parameters="a",
        target_manager_release_parameters="r",
    )
    bundle = registry.new_target_manager_bundle(descriptor)
    assert bundle.acquire_parameters == {"acquire": "a"}
    assert bundle.release_parameters == {"release": "r"}


@pytest.mark.parametrize(
    "acquire, release, message",
    [("bad", "r", "acquire parameters"), ("a", "bad", "release parameters")],
)
def test_target_manager_bundle_invalid(registry, acquire, release, message):
    descriptor = Descriptor(
        target_manager_name="Manager",
        target_manager_acquire_parameters=acquire,
        target_manager_release_parameters=release,
    )
    with pytest.raises(PluginRegistryError, match=message):
        registry.new_target_manager_bundle(descriptor)


def test_reporter_bundles(registry):
    run_bundle = registry.new_run_reporter_bundle("Reporter", "p")
    final_bundle = registry.new_final_reporter_bundle("Reporter", "p")
    assert run_bundle.parameters == {"run": "p"}
    assert final_bundle.parameters == {"final": "p"}
    with pytest.raises(PluginRegistryError):
        registry.new_run_reporter_bundle("Reporter", "bad")
    with pytest.raises(PluginRegistryError):
        registry.new_final_reporter_bundle("Reporter", "bad")
    with pytest.raises(PluginRegistryError, match="could not get reporter 'nope'"):
        registry.new_run_reporter_bundle("nope", "p")