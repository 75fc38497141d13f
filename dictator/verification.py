"""
Dictator Step Verification

Post-step invariant checks. One verifier per step index; each verifier is a
fixed list of read-and-compare assertions against resource state. A failed
assertion means the step executed but produced the wrong remote state, so
it is fatal and never retried.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from dictator.observability import SequencerLayer, get_logger
from dictator.resources import ZERO_ADDRESS, RemoteResourceHandle, same_address


logger = get_logger("verifier", SequencerLayer.VERIFIER)


class InvariantViolation(Exception):
    """A post-step assertion about remote state did not hold."""

    def __init__(
        self,
        step_index: Optional[int],
        assertion: str,
        expected: Any = None,
        actual: Any = None,
    ):
        self.step_index = step_index
        self.assertion = assertion
        self.expected = expected
        self.actual = actual
        where = f"step {step_index}" if step_index is not None else "migration"
        super().__init__(
            f"Invariant violated after {where}: {assertion} "
            f"(expected {expected!r}, got {actual!r})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_index": self.step_index,
            "assertion": self.assertion,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass
class StepContext:
    """What a verifier sees: the step index and the named resource set."""
    step_index: int
    resources: Mapping[str, RemoteResourceHandle]
    settings: Dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, name: str) -> RemoteResourceHandle:
        return self.resources[name]


# =============================================================================
# ASSERTION PRIMITIVES
# =============================================================================

def assert_property(
    ctx: StepContext,
    handle: RemoteResourceHandle,
    prop: str,
    expected: Any,
    *args: Any,
) -> None:
    """``handle.prop(*args) == expected``; addresses compare case-insensitively."""
    actual = handle.read(prop, *args)
    call = f"{handle.name}.{prop}({', '.join(str(a) for a in args)})" if args else f"{handle.name}.{prop}"
    if not same_address(actual, expected):
        raise InvariantViolation(ctx.step_index, f"{call} == {expected!r}", expected, actual)


def assert_owner(ctx: StepContext, handle: RemoteResourceHandle, expected_owner: str) -> None:
    assert_property(ctx, handle, handle.owner_property, expected_owner)


def assert_zero_address(ctx: StepContext, handle: RemoteResourceHandle, prop: str, *args: Any) -> None:
    assert_property(ctx, handle, prop, ZERO_ADDRESS, *args)


def assert_dead_registry(
    ctx: StepContext,
    registry: RemoteResourceHandle,
    dead_names: Iterable[str],
    lookup: str = "getAddress",
) -> None:
    """Every name in ``dead_names`` must resolve to the zero address."""
    for name in dead_names:
        actual = registry.read(lookup, name)
        if not same_address(actual, ZERO_ADDRESS):
            raise InvariantViolation(
                ctx.step_index,
                f"{registry.name}.{lookup}({name}) is zero",
                ZERO_ADDRESS,
                actual,
            )


# =============================================================================
# STEP VERIFIER
# =============================================================================

Verifier = Callable[[StepContext], None]


class StepVerifier:
    """
    Registry of one verification routine per step index.

    Steps without a registered routine pass trivially.
    """

    def __init__(self, verifiers: Optional[Mapping[int, Verifier]] = None):
        self._verifiers: Dict[int, Verifier] = dict(verifiers or {})

    def register(self, step_index: int, verifier: Verifier) -> None:
        self._verifiers[step_index] = verifier

    def has_checks(self, step_index: int) -> bool:
        return step_index in self._verifiers

    @property
    def steps(self) -> List[int]:
        return sorted(self._verifiers)

    def verify(
        self,
        step_index: int,
        resources: Mapping[str, RemoteResourceHandle],
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Run the checks for ``step_index``; raises InvariantViolation."""
        verifier = self._verifiers.get(step_index)
        if verifier is None:
            logger.debug(f"No checks registered for step {step_index}", step_index=step_index)
            return

        ctx = StepContext(step_index, resources, dict(settings or {}))
        try:
            verifier(ctx)
        except InvariantViolation as violation:
            logger.error(
                f"Step {step_index} verification failed",
                error_code="INVARIANT_VIOLATION",
                assertion=violation.assertion,
                expected=violation.expected,
                actual=violation.actual,
            )
            if violation.step_index != step_index:
                raise InvariantViolation(
                    step_index, violation.assertion, violation.expected, violation.actual,
                ) from violation
            raise

        logger.info(f"Step {step_index} checks passed", step_index=step_index)
