"""
Dictator: Staged Migration Step Sequencer

Drives a privileged "dictator" resource through a fixed sequence of
migration steps, handing ownership of governed resources over first and
verifying remote state after every step.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                       STAGED MIGRATION SEQUENCER                         │
    │                                                                          │
    │  ORCHESTRATION                                                           │
    │    sequencer.py     Level-triggered step reconciler and run report       │
    │    plans.py         The six-step system dictator plan                    │
    │                                                                          │
    │  CONVERGENCE                                                             │
    │    handover.py      Idempotent ownership handover (live and non-live)    │
    │    verification.py  Post-step invariant checks                           │
    │    resilience.py    Condition polling, retries, deadlines                │
    │                                                                          │
    │  BOUNDARY                                                                │
    │    resources.py     Remote resource handles and client protocol          │
    │    simulator.py     In-memory system for tests and dry runs              │
    │    config.py        Configuration and deployment documents               │
    │    observability.py Structured logging and the operator channel          │
    │    cli.py           Command-line interface                               │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Core Concepts
─────────────

    Dictator: the resource holding the authoritative ``currentStep``
    counter. It starts at 1, advances by exactly one per executed step and
    is terminal at N + 1.

    Authority: whether the running identity may execute privileged
    operations itself (live) or only observe and instruct an external
    operator (non-live). Both modes converge through the same polls.

    Stateless runs: all progress lives in remote state, so a run can be
    killed and restarted at any point without repeating a step.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"


def __getattr__(name: str):
    """Lazy import of sequencer components."""

    # Sequencer exports
    if name in ("MigrationStepSequencer", "MigrationPlan", "StepDescriptor",
                "DictatorOperation", "HandoverPrerequisite", "StepState",
                "RunReport", "MigrationHalted"):
        from dictator import sequencer
        return getattr(sequencer, name)

    # Handover exports
    if name in ("OwnershipHandoverCoordinator", "HandoverTarget", "TransferStrategy",
                "HandoverOutcome", "ActionRequired"):
        from dictator import handover
        return getattr(handover, name)

    # Verification exports
    if name in ("StepVerifier", "InvariantViolation", "StepContext"):
        from dictator import verification
        return getattr(verification, name)

    # Resilience exports
    if name in ("ConditionPoller", "await_condition", "RetryPolicy", "RunDeadline",
                "TransportError", "TimeoutError"):
        from dictator import resilience
        return getattr(resilience, name)

    # Resource exports
    if name in ("RemoteResourceHandle", "RemoteResourceClient", "InMemoryResourceClient",
                "Authority", "Receipt", "OperationReverted"):
        from dictator import resources
        return getattr(resources, name)

    # Plan exports
    if name in ("build_system_dictator_plan", "build_system_resources", "SystemAddresses"):
        from dictator import plans
        return getattr(plans, name)

    raise AttributeError(f"module 'dictator' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Sequencer
    "MigrationStepSequencer",
    "MigrationPlan",
    "StepDescriptor",
    "DictatorOperation",
    "HandoverPrerequisite",
    "StepState",
    "RunReport",
    "MigrationHalted",
    # Handover
    "OwnershipHandoverCoordinator",
    "HandoverTarget",
    "TransferStrategy",
    "HandoverOutcome",
    "ActionRequired",
    # Verification
    "StepVerifier",
    "InvariantViolation",
    "StepContext",
    # Resilience
    "ConditionPoller",
    "await_condition",
    "RetryPolicy",
    "RunDeadline",
    "TransportError",
    "TimeoutError",
    # Resources
    "RemoteResourceHandle",
    "RemoteResourceClient",
    "InMemoryResourceClient",
    "Authority",
    "Receipt",
    "OperationReverted",
    # Plans
    "build_system_dictator_plan",
    "build_system_resources",
    "SystemAddresses",
]
