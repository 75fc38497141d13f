"""
Dictator Migration Step Sequencer

Drives a dictator resource through ``step_1 .. step_N``. The sequencer is a
level-triggered reconciler: every pass re-reads the authoritative step
counter and derives its action from what it sees, so a run can be killed
and restarted at any point without repeating work.

State Machine (per step i):

    PENDING(i) ──prerequisites──▶ invoke step_i (live)
         │                        or instruct operator (non-live)
         │                                  │
         │ currentStep > i                  ▼
         ▼                            ADVANCING(i)
      SKIPPED(i)                            │ currentStep == i + 1
         │                                  ▼
         │                            VERIFIED(i) ──InvariantViolation──▶ HALTED
         │                                  │
         └──────────────▶ next step ◀───────┘
                               │ i > N
                               ▼
                           TERMINAL

All progress lives in the dictator and the governed resources; the
sequencer keeps nothing between runs. A run that first meets the counter at
step i (including TERMINAL) re-runs the checks of step i - 1 before going
further, since an earlier process may have died between executing that
step and verifying it.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from dictator.handover import (
    ActionRequired,
    HandoverResult,
    HandoverTarget,
    OwnershipHandoverCoordinator,
)
from dictator.observability import (
    OperatorChannel,
    SequencerLayer,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
    correlation_id_var,
    step_var,
)
from dictator.resilience import ConditionPoller, TimeoutError, TransportError
from dictator.resources import Authority, OperationReverted, Receipt, RemoteResourceHandle
from dictator.verification import InvariantViolation, StepVerifier, Verifier


logger = get_logger("sequencer", SequencerLayer.SEQUENCER)


# =============================================================================
# STATES
# =============================================================================

class StepState(Enum):
    """Where the sequencer stands with respect to a step."""
    PENDING = "pending"
    ADVANCING = "advancing"
    VERIFIED = "verified"
    SKIPPED = "skipped"
    TERMINAL = "terminal"
    HALTED = "halted"

    def is_terminal(self) -> bool:
        return self in {StepState.TERMINAL, StepState.HALTED}


# =============================================================================
# PLAN
# =============================================================================

@dataclass(frozen=True)
class DictatorOperation:
    """Typed reference to a mutating operation on the dictator."""
    name: str
    args: Tuple[Any, ...] = ()

    def invoke(self, handle: RemoteResourceHandle) -> Receipt:
        return handle.invoke(self.name, *self.args)


@dataclass(frozen=True)
class HandoverPrerequisite:
    """Ownership of ``target`` must be ``desired_owner`` before the step runs."""
    target: HandoverTarget
    desired_owner: str


@dataclass(frozen=True)
class StepDescriptor:
    """One entry of the static, ordered step table."""
    index: int
    operation: DictatorOperation
    verifier: Optional[Verifier] = None
    prerequisites: Tuple[HandoverPrerequisite, ...] = ()
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "operation": self.operation.name,
            "description": self.description,
            "has_checks": self.verifier is not None,
            "prerequisites": [
                {
                    "resource": p.target.name,
                    "strategy": p.target.strategy.value,
                    "desired_owner": p.desired_owner,
                }
                for p in self.prerequisites
            ],
        }


class MigrationPlan:
    """
    Ordered sequence of N step descriptors.

    Step indices must be exactly ``1..N``; the dictator's counter is
    terminal at ``N + 1``.
    """

    def __init__(
        self,
        steps: Sequence[StepDescriptor],
        dictator: str = "MigrationSystemDictator",
        step_property: str = "currentStep",
    ):
        steps = sorted(steps, key=lambda s: s.index)
        indices = [s.index for s in steps]
        if indices != list(range(1, len(steps) + 1)):
            raise ValueError(f"Step indices must be contiguous from 1, got {indices}")
        self._steps: Tuple[StepDescriptor, ...] = tuple(steps)
        self.dictator = dictator
        self.step_property = step_property

    @property
    def steps(self) -> Tuple[StepDescriptor, ...]:
        return self._steps

    @property
    def size(self) -> int:
        return len(self._steps)

    @property
    def terminal_step(self) -> int:
        return len(self._steps) + 1

    def step(self, index: int) -> StepDescriptor:
        return self._steps[index - 1]

    def build_verifier(self) -> StepVerifier:
        return StepVerifier({s.index: s.verifier for s in self._steps if s.verifier is not None})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dictator": self.dictator,
            "step_property": self.step_property,
            "size": self.size,
            "steps": [s.to_dict() for s in self._steps],
        }


# =============================================================================
# RUN REPORT
# =============================================================================

@dataclass
class StepTransition:
    """Record of a state change during a run."""
    step: int
    state: StepState
    reason: str
    observed_step: Optional[int] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "state": self.state.value,
            "reason": self.reason,
            "observed_step": self.observed_step,
            "timestamp": self.timestamp,
        }


@dataclass
class RunReport:
    """Audit trail of one sequencer run."""
    run_id: str
    plan_size: int
    authority: Authority
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    finished_at: Optional[str] = None
    initial_step: Optional[int] = None
    final_step: Optional[int] = None
    state: StepState = StepState.PENDING
    transitions: List[StepTransition] = field(default_factory=list)
    invoked: List[Receipt] = field(default_factory=list)
    handovers: List[HandoverResult] = field(default_factory=list)
    actions_required: List[ActionRequired] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.state == StepState.TERMINAL

    def record(self, step: int, state: StepState, reason: str, observed: Optional[int] = None) -> None:
        self.state = state
        self.transitions.append(StepTransition(step, state, reason, observed))

    def states_for(self, step: int) -> List[StepState]:
        return [t.state for t in self.transitions if t.step == step]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan_size": self.plan_size,
            "authority": {"identity": self.authority.identity, "is_live": self.authority.is_live},
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "initial_step": self.initial_step,
            "final_step": self.final_step,
            "state": self.state.value,
            "terminal": self.is_terminal,
            "transitions": [t.to_dict() for t in self.transitions],
            "invoked": [r.to_dict() for r in self.invoked],
            "handovers": [h.to_dict() for h in self.handovers],
            "actions_required": [a.to_dict() for a in self.actions_required],
            "error": self.error,
        }


class MigrationHalted(Exception):
    """A run stopped on a fatal error; ``cause`` is the original exception."""

    def __init__(self, step_index: Optional[int], cause: Exception, report: RunReport):
        self.step_index = step_index
        self.cause = cause
        self.report = report
        where = f"step {step_index}" if step_index is not None else "startup"
        super().__init__(f"Migration halted at {where}: {cause}")


FATAL_ERRORS = (InvariantViolation, TransportError, TimeoutError, OperationReverted)


def _describe_error(error: Exception) -> Dict[str, Any]:
    info: Dict[str, Any] = {"type": type(error).__name__, "message": str(error)}
    if isinstance(error, InvariantViolation):
        info.update(error.to_dict())
    elif isinstance(error, TransportError):
        info.update({"resource": error.resource, "operation": error.operation})
    elif isinstance(error, TimeoutError):
        info.update({
            "operation": error.operation,
            "timeout_seconds": error.timeout_seconds,
            "cancelled": error.cancelled,
        })
    elif isinstance(error, OperationReverted):
        info.update({"resource": error.resource, "operation": error.operation, "reason": error.reason})
    return info


# =============================================================================
# SEQUENCER
# =============================================================================

class MigrationStepSequencer:
    """
    Resumable, idempotent step sequencer.

    Example:
        sequencer = MigrationStepSequencer(plan, resources, authority, poller)
        report = sequencer.run()
        assert report.is_terminal
    """

    def __init__(
        self,
        plan: MigrationPlan,
        resources: Mapping[str, RemoteResourceHandle],
        authority: Authority,
        poller: ConditionPoller,
        channel: Optional[OperatorChannel] = None,
        handover: Optional[OwnershipHandoverCoordinator] = None,
        verifier: Optional[StepVerifier] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        if plan.dictator not in resources:
            raise ValueError(f"Resource set has no dictator named {plan.dictator!r}")
        self.plan = plan
        self.resources = dict(resources)
        self.authority = authority
        self.poller = poller
        self.channel = channel or OperatorChannel()
        self.handover = handover or OwnershipHandoverCoordinator(poller, self.channel)
        self.verifier = verifier or plan.build_verifier()
        self.settings = dict(settings or {})

        dictator = self.resources[plan.dictator]
        self._dictator = dictator
        self._dictator_signer = dictator if dictator.signer else dictator.with_signer(authority.identity)
        self._last_observed: Optional[int] = None
        self._verified: Set[int] = set()

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def current_step(self) -> int:
        """Read the authoritative step counter."""
        return int(self._dictator.read(self.plan.step_property))

    def _observe(self) -> int:
        observed = self.current_step()
        if self._last_observed is not None and observed < self._last_observed:
            raise InvariantViolation(
                None,
                f"{self.plan.dictator}.{self.plan.step_property} is non-decreasing",
                f">= {self._last_observed}",
                observed,
            )
        self._last_observed = observed
        return observed

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, run_id: Optional[str] = None) -> RunReport:
        """
        Reconcile the migration from whatever step the dictator reports.

        Returns a terminal RunReport. Raises MigrationHalted wrapping
        InvariantViolation, TransportError, TimeoutError or OperationReverted.
        """
        run_id = run_id or correlation_id_var.get() or generate_correlation_id()
        token = set_correlation_id(run_id)
        report = RunReport(run_id=run_id, plan_size=self.plan.size, authority=self.authority)
        self._last_observed = None
        self._verified = set()
        current_index: Optional[int] = None

        try:
            report.initial_step = self._observe()
            if report.initial_step < 1:
                raise InvariantViolation(
                    None,
                    f"{self.plan.dictator}.{self.plan.step_property} starts at 1",
                    ">= 1",
                    report.initial_step,
                )
            logger.info(
                "Starting migration run",
                operation="run",
                run_id=run_id,
                current_step=report.initial_step,
                plan_size=self.plan.size,
                is_live=self.authority.is_live,
            )

            for descriptor in self.plan.steps:
                current_index = descriptor.index
                step_token = step_var.set(descriptor.index)
                try:
                    self._reconcile_step(descriptor, report)
                finally:
                    step_var.reset(step_token)

            current_index = None
            report.final_step = self._observe()
            self._confirm_previous(self.plan.terminal_step, report, report.final_step)
            report.record(self.plan.terminal_step, StepState.TERMINAL, "All steps executed", report.final_step)
            logger.info(
                "Migration terminal",
                operation="run",
                final_step=report.final_step,
                invoked=len(report.invoked),
            )
            return report

        except FATAL_ERRORS as e:
            # A failed check names the step it belongs to, which can be the
            # one before the step being reconciled.
            if isinstance(e, InvariantViolation) and e.step_index is not None:
                current_index = e.step_index
            report.error = _describe_error(e)
            report.record(current_index or 0, StepState.HALTED, str(e), self._last_observed)
            logger.error(
                f"Migration halted: {e}",
                error_code=type(e).__name__,
                step_index=current_index,
                **{k: v for k, v in report.error.items() if k not in ("type", "message", "step_index")},
            )
            raise MigrationHalted(current_index, e, report) from e

        finally:
            report.finished_at = datetime.now(timezone.utc).isoformat()
            if report.final_step is None:
                report.final_step = self._last_observed
            correlation_id_var.reset(token)

    def _reconcile_step(self, descriptor: StepDescriptor, report: RunReport) -> None:
        i = descriptor.index
        observed = self._observe()

        if observed > i:
            logger.info(f"Step {i} executed", step_index=i, current_step=observed)
            report.record(i, StepState.SKIPPED, "Already executed", observed)
            return

        if observed < i:
            raise InvariantViolation(
                i,
                f"{self.plan.dictator}.{self.plan.step_property} reached step {i}",
                i,
                observed,
            )

        self._confirm_previous(i, report, observed)
        report.record(i, StepState.PENDING, "Awaiting execution", observed)

        for prerequisite in descriptor.prerequisites:
            result = self.handover.ensure_owner(
                prerequisite.target,
                prerequisite.desired_owner,
                self.authority,
                step=i,
            )
            report.handovers.append(result)
            if result.action_required is not None:
                report.actions_required.append(result.action_required)

        # Prerequisites can take arbitrarily long; look again before acting.
        observed = self._observe()
        if observed == i:
            if self.authority.is_live:
                logger.info(f"Executing step {i}...", step_index=i, operation=descriptor.operation.name)
                receipt = descriptor.operation.invoke(self._dictator_signer)
                report.invoked.append(receipt)
            else:
                self.channel.instruct(
                    f"Please execute step {i}...",
                    resource=self.plan.dictator,
                    operation=descriptor.operation.name,
                    step=i,
                )
                report.actions_required.append(ActionRequired(
                    resource=self.plan.dictator,
                    desired_owner=None,
                    operation=descriptor.operation.name,
                    instruction=f"Please execute step {i}...",
                ))

        report.record(i, StepState.ADVANCING, f"Waiting for {self.plan.step_property} == {i + 1}", observed)
        self.poller.await_condition(
            lambda: self.current_step() > i,
            description=f"{self.plan.dictator}.{self.plan.step_property} == {i + 1}",
        )

        observed = self._observe()
        if observed != i + 1:
            # Another executor already ran later steps; their checks supersede ours.
            logger.warning(
                f"Step counter moved past {i + 1} before step {i} could be verified",
                step_index=i,
                current_step=observed,
            )
            report.record(i, StepState.SKIPPED, "Advanced past verification window", observed)
            return

        self.verifier.verify(i, self.resources, self.settings)
        self._verified.add(i)
        report.record(i, StepState.VERIFIED, "Post-step checks passed", observed)

    def _confirm_previous(self, i: int, report: RunReport, observed: int) -> None:
        """
        Re-check step ``i - 1`` when this run did not see its checks pass.

        A run that starts (or lands) at step ``i`` cannot tell whether an
        earlier process died between executing ``i - 1`` and verifying it,
        so the checks run again before anything later is attempted.
        """
        previous = i - 1
        if not 1 <= previous <= self.plan.size or previous in self._verified:
            return
        logger.info(f"Confirming step {previous} before step {i}", step_index=previous, current_step=observed)
        self.verifier.verify(previous, self.resources, self.settings)
        self._verified.add(previous)
        report.record(previous, StepState.VERIFIED, "Post-step checks confirmed on resume", observed)
