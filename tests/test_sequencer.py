"""
Tests for the migration step sequencer.

A small three-step system is used throughout:

    step 1  requires resource A to be owned by the dictator (X -> Y)
    step 2  records that the second stage ran
    step 3  the dictator hands A to the final owner Z

Verifies that:
1. A live run from step 1 ends terminal with A.owner == Z and currentStep == 4.
2. Re-running a terminal migration invokes nothing.
3. A crash between a step call and its confirmation never causes a second call.
4. A decreasing step counter halts the run.
5. A failed verification halts before the next step is attempted.
6. A wait that never converges surfaces as a timeout.
7. A restarted run re-checks the step it finds executed before going further.
"""
import json

import pytest

from dictator.handover import HandoverTarget, TransferStrategy
from dictator.observability import OperatorChannel
from dictator.resilience import TimeoutError, TransportError
from dictator.resources import (
    Authority,
    InMemoryResourceClient,
    OperationReverted,
    RemoteResourceHandle,
    same_address,
)
from dictator.sequencer import (
    DictatorOperation,
    HandoverPrerequisite,
    MigrationHalted,
    MigrationPlan,
    MigrationStepSequencer,
    StepDescriptor,
    StepState,
)
from dictator.verification import InvariantViolation, assert_owner, assert_property
from support import addr


X = addr(0x10)      # initial owner of A and the controller
Y = addr(0xD1)      # the dictator
Z = addr(0xF1)      # final owner
OPERATOR = addr(0x0B)


class SimulatedCrash(Exception):
    """The sequencer process died."""


class ThreeStepSystem:
    """In-memory dictator with three steps and one governed resource."""

    def __init__(self, controller=X, owner_of_a=X):
        self.controller = controller
        self.client = InMemoryResourceClient()
        self.client.add_resource(
            "A", addr(0xA),
            properties={"owner": owner_of_a},
            operations={"transferOwnership": self._transfer},
        )
        self.client.add_resource(
            "Dictator", Y,
            properties={"owner": controller, "currentStep": 1, "stage": ""},
        )
        for index, effect in ((1, self._step1), (2, self._step2), (3, self._step3)):
            self.client.register_operation("Dictator", f"step{index}", self._gated(index, effect))

    def _transfer(self, client, resource, signer, new_owner):
        if not same_address(client.get_property(resource, "owner"), signer):
            raise OperationReverted(resource, "transferOwnership", "not owner")
        client.set_property(resource, "owner", new_owner)

    def _gated(self, index, effect):
        def handler(client, resource, signer):
            if not same_address(client.get_property(resource, "owner"), signer):
                raise OperationReverted(resource, f"step{index}", "not owner")
            if client.get_property(resource, "currentStep") != index:
                raise OperationReverted(resource, f"step{index}", "wrong step")
            effect(client)
            client.set_property(resource, "currentStep", index + 1)
        return handler

    def _step1(self, client):
        if not same_address(client.get_property("A", "owner"), Y):
            raise OperationReverted("Dictator", "step1", "dictator does not own A")

    def _step2(self, client):
        client.set_property("Dictator", "stage", "two")

    def _step3(self, client):
        client.set_property("A", "owner", Z)

    def step(self):
        return self.client.get_property("Dictator", "currentStep")

    def resources(self, signer, retry):
        return {
            "A": RemoteResourceHandle("A", self.client, address=addr(0xA), signer=signer, retry=retry),
            "Dictator": RemoteResourceHandle("Dictator", self.client, address=Y, signer=signer, retry=retry),
        }

    def plan(self, resources):
        def check_step_1(ctx):
            assert_owner(ctx, ctx["A"], Y)

        def check_step_2(ctx):
            assert_property(ctx, ctx["Dictator"], "stage", "two")

        def check_step_3(ctx):
            assert_owner(ctx, ctx["A"], Z)

        handover = HandoverPrerequisite(
            HandoverTarget(resources["A"], TransferStrategy.TRANSFER_OWNERSHIP), Y,
        )
        return MigrationPlan(
            [
                StepDescriptor(1, DictatorOperation("step1"), check_step_1, (handover,)),
                StepDescriptor(2, DictatorOperation("step2"), check_step_2),
                StepDescriptor(3, DictatorOperation("step3"), check_step_3),
            ],
            dictator="Dictator",
        )

    def operator_turn(self):
        """What an external controller does when it gets a chance to act."""
        if same_address(self.client.get_property("A", "owner"), self.controller):
            self.client.invoke("A", "transferOwnership", (Y,), signer=self.controller)
        elif self.step() <= 3:
            self.client.invoke("Dictator", f"step{self.step()}", (), signer=self.controller)


@pytest.fixture
def system():
    return ThreeStepSystem()


def _sequencer(system, poller, retry, deployer=X, channel=None):
    resources = system.resources(deployer, retry)
    return MigrationStepSequencer(
        system.plan(resources),
        resources,
        Authority.resolve(deployer, system.controller),
        poller,
        channel=channel,
    )


class TestLiveRun:

    def test_three_step_end_to_end(self, system, make_poller, no_wait_retry):
        report = _sequencer(system, make_poller(), no_wait_retry).run()

        assert report.is_terminal
        assert report.initial_step == 1
        assert report.final_step == 4
        assert system.step() == 4
        assert system.client.get_property("A", "owner") == Z
        for step in (1, 2, 3):
            assert report.states_for(step) == [StepState.PENDING, StepState.ADVANCING, StepState.VERIFIED]
            assert system.client.invocation_count("Dictator", f"step{step}") == 1
        assert [r.operation for r in report.invoked] == ["step1", "step2", "step3"]
        assert report.actions_required == []

    def test_terminal_migration_is_a_no_op(self, system, make_poller, no_wait_retry):
        _sequencer(system, make_poller(), no_wait_retry).run()
        before = len(system.client.invocations)

        report = _sequencer(system, make_poller(), no_wait_retry).run()

        assert report.is_terminal
        assert len(system.client.invocations) == before
        assert report.invoked == []
        for step in (1, 2):
            assert report.states_for(step) == [StepState.SKIPPED]
        assert report.states_for(3) == [StepState.SKIPPED, StepState.VERIFIED]

    def test_resume_from_middle_skips_handover(self, system, make_poller, no_wait_retry):
        system.client.invoke("A", "transferOwnership", (Y,), signer=X)
        system.client.invoke("Dictator", "step1", (), signer=X)

        report = _sequencer(system, make_poller(), no_wait_retry).run()

        assert report.initial_step == 2
        assert report.handovers == []
        assert report.states_for(1) == [StepState.SKIPPED, StepState.VERIFIED]
        assert system.client.invocation_count("Dictator", "step1") == 1

    def test_crash_after_invoke_does_not_double_invoke(self, system, make_poller, no_wait_retry):
        crashed = []

        def crash_once(receipt):
            if receipt.operation == "step2" and not crashed:
                crashed.append(receipt)
                raise SimulatedCrash("killed before confirmation")

        system.client.on_invoke(crash_once)
        with pytest.raises(SimulatedCrash):
            _sequencer(system, make_poller(), no_wait_retry).run()
        assert system.step() == 3

        report = _sequencer(system, make_poller(), no_wait_retry).run()

        assert report.is_terminal
        assert system.client.invocation_count("Dictator", "step1") == 1
        assert system.client.invocation_count("Dictator", "step2") == 1
        assert system.client.invocation_count("Dictator", "step3") == 1
        assert report.states_for(2) == [StepState.SKIPPED, StepState.VERIFIED]
        assert report.states_for(3) == [StepState.PENDING, StepState.ADVANCING, StepState.VERIFIED]

    def test_run_id_is_reported(self, system, make_poller, no_wait_retry):
        report = _sequencer(system, make_poller(), no_wait_retry).run(run_id="run-fixed")
        data = report.to_dict()
        assert data["run_id"] == "run-fixed"
        assert data["terminal"] is True
        json.dumps(data)


class TestNonLiveRun:

    def test_external_operator_drives_to_terminal(self, system, clock, make_poller, no_wait_retry):
        clock.hooks.append(system.operator_turn)
        channel = OperatorChannel()

        report = _sequencer(system, make_poller(), no_wait_retry, deployer=OPERATOR, channel=channel).run()

        assert report.is_terminal
        assert report.invoked == []
        assert system.client.get_property("A", "owner") == Z
        assert [a.operation for a in report.actions_required] == [
            "transferOwnership", "step1", "step2", "step3",
        ]
        assert channel.instructions[1].message == "Please execute step 1..."
        assert report.actions_required[0].desired_owner == Y
        assert all(a.desired_owner is None for a in report.actions_required[1:])
        assert all(r.signer == X for r in system.client.invocations)

    def test_counter_racing_ahead_is_skipped(self, system, clock, make_poller, no_wait_retry):
        system.client.set_property("A", "owner", Y)

        def operator_runs_everything():
            while system.step() <= 3:
                system.operator_turn()

        clock.hooks.append(operator_runs_everything)

        report = _sequencer(system, make_poller(), no_wait_retry, deployer=OPERATOR).run()

        assert report.is_terminal
        assert StepState.VERIFIED not in report.states_for(1)
        assert report.states_for(1)[-1] == StepState.SKIPPED
        assert report.states_for(3) == [StepState.SKIPPED, StepState.VERIFIED]

    def test_timeout_when_nobody_acts(self, system, clock, make_poller, no_wait_retry):
        start = clock.now
        channel = OperatorChannel()

        with pytest.raises(MigrationHalted) as exc_info:
            _sequencer(
                system, make_poller(interval=2.0, timeout=10.0), no_wait_retry,
                deployer=OPERATOR, channel=channel,
            ).run()

        halted = exc_info.value
        assert isinstance(halted.cause, TimeoutError)
        assert halted.step_index == 1
        assert halted.report.state == StepState.HALTED
        assert halted.report.error["type"] == "TimeoutError"
        assert [i.resource for i in channel.instructions] == ["A"]
        assert system.client.get_property("A", "owner") == X
        assert clock.now - start <= 10.0 + 2.0


class TestHalting:

    def test_failed_verification_halts_before_next_step(self, system, make_poller, no_wait_retry):
        def step2_without_effect(client, resource, signer):
            client.set_property(resource, "currentStep", 3)

        system.client.register_operation("Dictator", "step2", step2_without_effect)

        with pytest.raises(MigrationHalted) as exc_info:
            _sequencer(system, make_poller(), no_wait_retry).run()

        halted = exc_info.value
        assert isinstance(halted.cause, InvariantViolation)
        assert halted.step_index == 2
        assert halted.cause.expected == "two"
        assert system.client.invocation_count("Dictator", "step3") == 0
        assert system.step() == 3
        assert halted.report.states_for(2)[-1] == StepState.HALTED

    def test_restart_rechecks_step_that_crashed_before_verification(self, system, make_poller, no_wait_retry):
        def step2_without_effect(client, resource, signer):
            client.set_property(resource, "currentStep", 3)

        def crash_after_step2(receipt):
            if receipt.operation == "step2":
                raise SimulatedCrash("killed before confirmation")

        system.client.register_operation("Dictator", "step2", step2_without_effect)
        system.client.on_invoke(crash_after_step2)
        with pytest.raises(SimulatedCrash):
            _sequencer(system, make_poller(), no_wait_retry).run()
        assert system.step() == 3

        with pytest.raises(MigrationHalted) as exc_info:
            _sequencer(system, make_poller(), no_wait_retry).run()

        halted = exc_info.value
        assert isinstance(halted.cause, InvariantViolation)
        assert halted.step_index == 2
        assert halted.cause.expected == "two"
        assert system.client.invocation_count("Dictator", "step3") == 0
        assert halted.report.states_for(2) == [StepState.SKIPPED, StepState.HALTED]
        assert StepState.PENDING not in halted.report.states_for(3)

    def test_decreasing_counter_halts(self, system, make_poller, no_wait_retry):
        class RewindingClient(InMemoryResourceClient):
            values = [3, 2]

            def read_property(self, resource_name, property_name, *args):
                if property_name == "currentStep" and self.values:
                    return self.values.pop(0)
                return super().read_property(resource_name, property_name, *args)

        system.client = RewindingClient()
        system.client.add_resource("A", addr(0xA), properties={"owner": Y})
        system.client.add_resource("Dictator", Y, properties={"owner": X, "currentStep": 2})

        with pytest.raises(MigrationHalted) as exc_info:
            _sequencer(system, make_poller(), no_wait_retry).run()

        cause = exc_info.value.cause
        assert isinstance(cause, InvariantViolation)
        assert "non-decreasing" in cause.assertion
        assert cause.actual == 2

    def test_counter_below_one_halts_at_startup(self, system, make_poller, no_wait_retry):
        system.client.set_property("Dictator", "currentStep", 0)

        with pytest.raises(MigrationHalted) as exc_info:
            _sequencer(system, make_poller(), no_wait_retry).run()

        assert exc_info.value.step_index is None
        assert isinstance(exc_info.value.cause, InvariantViolation)
        assert system.client.invocations == []

    def test_unreachable_dictator_is_transport_failure(self, system, make_poller, no_wait_retry):
        system.client.fail_reads(100, resource="Dictator")

        with pytest.raises(MigrationHalted) as exc_info:
            _sequencer(system, make_poller(), no_wait_retry).run()

        assert isinstance(exc_info.value.cause, TransportError)
        assert exc_info.value.report.error["resource"] == "Dictator"

    def test_revert_halts(self, make_poller, no_wait_retry):
        # The deployer is live but the dictator belongs to someone else.
        system = ThreeStepSystem(controller=X)
        system.client.set_property("Dictator", "owner", OPERATOR)

        with pytest.raises(MigrationHalted) as exc_info:
            _sequencer(system, make_poller(), no_wait_retry).run()

        assert isinstance(exc_info.value.cause, OperationReverted)
        assert exc_info.value.report.error["reason"] == "not owner"


class TestPlan:

    def test_indices_must_be_contiguous(self):
        with pytest.raises(ValueError):
            MigrationPlan([
                StepDescriptor(1, DictatorOperation("step1")),
                StepDescriptor(3, DictatorOperation("step3")),
            ])

    def test_steps_are_ordered(self):
        plan = MigrationPlan([
            StepDescriptor(2, DictatorOperation("step2")),
            StepDescriptor(1, DictatorOperation("step1")),
        ])
        assert [s.index for s in plan.steps] == [1, 2]
        assert plan.terminal_step == 3
        assert plan.step(2).operation.name == "step2"

    def test_dictator_must_be_a_resource(self, system, make_poller, no_wait_retry):
        resources = system.resources(X, no_wait_retry)
        plan = system.plan(resources)
        del resources["Dictator"]
        with pytest.raises(ValueError):
            MigrationStepSequencer(plan, resources, Authority(X, True), make_poller())

    def test_plan_to_dict(self, system, no_wait_retry):
        plan = system.plan(system.resources(X, no_wait_retry))
        data = plan.to_dict()
        assert data["size"] == 3
        assert data["steps"][0]["prerequisites"] == [
            {"resource": "A", "strategy": "transfer_ownership", "desired_owner": Y},
        ]
        assert data["steps"][1]["has_checks"] is True


def test_package_exports():
    import dictator

    assert dictator.MigrationStepSequencer is MigrationStepSequencer
    assert dictator.Authority is Authority
    assert set(dictator.__all__) >= {"ConditionPoller", "StepVerifier", "build_system_dictator_plan"}
    with pytest.raises(AttributeError):
        dictator.NoSuchThing
