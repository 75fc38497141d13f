"""
Tests for post-step verification.
"""
import pytest

from dictator.resources import ZERO_ADDRESS, InMemoryResourceClient, RemoteResourceHandle
from dictator.verification import (
    InvariantViolation,
    StepContext,
    StepVerifier,
    assert_dead_registry,
    assert_owner,
    assert_property,
    assert_zero_address,
)
from support import addr


@pytest.fixture
def resources(no_wait_retry):
    client = InMemoryResourceClient()
    client.add_resource("Messenger", properties={"owner": addr(1), "paused": True})
    client.add_resource(
        "Registry",
        properties={"getAddress": {"OVM_Sequencer": ZERO_ADDRESS, "OVM_Proposer": addr(0x99)}},
    )
    return {
        name: RemoteResourceHandle(name, client, retry=no_wait_retry)
        for name in ("Messenger", "Registry")
    }


class TestAssertions:

    def test_property_match(self, resources):
        ctx = StepContext(2, resources)
        assert_property(ctx, resources["Messenger"], "paused", True)

    def test_property_mismatch_reports_expected_and_actual(self, resources):
        ctx = StepContext(5, resources)
        with pytest.raises(InvariantViolation) as exc_info:
            assert_property(ctx, resources["Messenger"], "paused", False)

        violation = exc_info.value
        assert violation.step_index == 5
        assert violation.expected is False
        assert violation.actual is True
        assert "Messenger.paused" in violation.assertion
        assert "step 5" in str(violation)

    def test_owner_comparison_ignores_case(self, resources):
        ctx = StepContext(3, resources)
        assert_owner(ctx, resources["Messenger"], addr(1).upper().replace("0X", "0x"))

    def test_zero_address(self, resources):
        ctx = StepContext(2, resources)
        assert_zero_address(ctx, resources["Registry"], "getAddress", "OVM_Sequencer")
        with pytest.raises(InvariantViolation):
            assert_zero_address(ctx, resources["Registry"], "getAddress", "OVM_Proposer")

    def test_dead_registry_names_first_live_entry(self, resources):
        ctx = StepContext(2, resources)
        with pytest.raises(InvariantViolation) as exc_info:
            assert_dead_registry(ctx, resources["Registry"], ["OVM_Sequencer", "OVM_Proposer"])
        assert "OVM_Proposer" in exc_info.value.assertion
        assert exc_info.value.actual == addr(0x99)


class TestStepVerifier:

    def test_step_without_checks_passes(self, resources):
        verifier = StepVerifier()
        assert not verifier.has_checks(4)
        verifier.verify(4, resources)

    def test_registered_check_runs(self, resources):
        seen = []
        verifier = StepVerifier({1: lambda ctx: seen.append((ctx.step_index, ctx.settings))})
        verifier.verify(1, resources, {"final_owner": addr(7)})
        assert seen == [(1, {"final_owner": addr(7)})]
        assert verifier.steps == [1]

    def test_violation_is_tagged_with_step(self, resources):
        def check(ctx):
            raise InvariantViolation(None, "Messenger.owner == ProxyAdmin", addr(2), addr(1))

        verifier = StepVerifier()
        verifier.register(3, check)

        with pytest.raises(InvariantViolation) as exc_info:
            verifier.verify(3, resources)
        assert exc_info.value.step_index == 3
        assert exc_info.value.to_dict() == {
            "step_index": 3,
            "assertion": "Messenger.owner == ProxyAdmin",
            "expected": addr(2),
            "actual": addr(1),
        }

    def test_context_exposes_resources_by_name(self, resources):
        ctx = StepContext(1, resources)
        assert ctx["Messenger"] is resources["Messenger"]
