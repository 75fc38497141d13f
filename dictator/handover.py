"""
Dictator Ownership Handover

Moves the controlling authority (``owner``) of a governed resource to a new
identity, idempotently, for both live and non-live callers.

    read owner ──▶ already desired? ──yes──▶ ALREADY_OWNED
                        │ no
                        ▼
              live (or always-act)? ──yes──▶ invoke transfer ──┐
                        │ no                                   │
                        ▼                                      ▼
              ActionRequired advisory ──────────────▶ await owner == desired

Both paths end in the same post-condition wait, so callers never need to
know which one was taken.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from dictator.observability import (
    OperatorChannel,
    SequencerLayer,
    get_logger,
    timed_operation,
)
from dictator.resilience import ConditionPoller
from dictator.resources import Authority, Receipt, RemoteResourceHandle, same_address


logger = get_logger("handover", SequencerLayer.HANDOVER)


class TransferStrategy(Enum):
    """
    Shape of the ownership-transfer call a resource exposes.

    Chosen per resource when the plan is built, never by inspecting the
    resource at run time.
    """
    SET_OWNER = "set_owner"                    # owner-gated setOwner(newOwner)
    TRANSFER_OWNERSHIP = "transfer_ownership"  # Ownable.transferOwnership(newOwner)
    PROXY_ADMIN = "proxy_admin"                # proxy setOwner via signer-bound handle

    @property
    def operation(self) -> str:
        return {
            TransferStrategy.SET_OWNER: "setOwner",
            TransferStrategy.TRANSFER_OWNERSHIP: "transferOwnership",
            TransferStrategy.PROXY_ADMIN: "setOwner",
        }[self]

    @property
    def owner_property(self) -> str:
        """Property that reports the current owner for this shape."""
        if self == TransferStrategy.PROXY_ADMIN:
            return "getOwner"
        return "owner"


class HandoverOutcome(Enum):
    ALREADY_OWNED = "already_owned"
    TRANSFERRED = "transferred"
    ACTION_REQUIRED = "action_required"


@dataclass
class HandoverTarget:
    """
    A resource whose ownership the migration governs.

    ``signer_handle`` is used for the PROXY_ADMIN shape, where the owner is
    read through a plain handle but the transfer must be sent from a
    signer-bound one. ``requires_authority=False`` marks resources the
    running identity always controls (it acts even when not live).
    """
    handle: RemoteResourceHandle
    strategy: TransferStrategy
    signer_handle: Optional[RemoteResourceHandle] = None
    requires_authority: bool = True
    label: str = ""

    @property
    def name(self) -> str:
        return self.label or self.handle.name

    def read_owner(self) -> Any:
        return self.handle.read(self.strategy.owner_property)

    def transfer(self, new_owner: str, authority: Authority) -> Receipt:
        if self.strategy == TransferStrategy.PROXY_ADMIN:
            sender = self.signer_handle or self.handle.with_signer(authority.identity)
        else:
            sender = self.handle if self.handle.signer else self.handle.with_signer(authority.identity)
        return sender.invoke(self.strategy.operation, new_owner)


@dataclass
class ActionRequired:
    """
    Advisory that a non-live caller must have an operator act out-of-band.

    Not an error: the handover keeps polling after emitting it.
    ``desired_owner`` is None when the action is a dictator step rather
    than an ownership transfer.
    """
    resource: str
    desired_owner: Optional[str]
    operation: str
    instruction: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "desired_owner": self.desired_owner,
            "operation": self.operation,
            "instruction": self.instruction,
            "details": self.details,
        }


@dataclass
class HandoverResult:
    resource: str
    desired_owner: str
    outcome: HandoverOutcome
    receipt: Optional[Receipt] = None
    action_required: Optional[ActionRequired] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "desired_owner": self.desired_owner,
            "outcome": self.outcome.value,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "action_required": self.action_required.to_dict() if self.action_required else None,
        }


class OwnershipHandoverCoordinator:
    """Ensures governed resources end up owned by the desired identity."""

    def __init__(
        self,
        poller: ConditionPoller,
        channel: Optional[OperatorChannel] = None,
    ):
        self._poller = poller
        self._channel = channel or OperatorChannel()

    @timed_operation(logger, "ensure_owner")
    def ensure_owner(
        self,
        target: HandoverTarget,
        desired_owner: str,
        authority: Authority,
        step: Optional[int] = None,
    ) -> HandoverResult:
        """
        Make ``desired_owner`` the owner of ``target``.

        Idempotent: a resource already owned by ``desired_owner`` is left
        alone. Raises TimeoutError if ownership never converges and
        TransportError on unrecoverable transport failure.
        """
        current = target.read_owner()
        if same_address(current, desired_owner):
            logger.info(
                f"{target.name} already owned by {desired_owner}",
                operation="ensure_owner",
                resource=target.name,
                owner=desired_owner,
            )
            return HandoverResult(target.name, desired_owner, HandoverOutcome.ALREADY_OWNED)

        receipt: Optional[Receipt] = None
        advisory: Optional[ActionRequired] = None

        if authority.is_live or not target.requires_authority:
            logger.info(
                f"Setting {target.name} owner to {desired_owner}",
                operation="ensure_owner",
                resource=target.name,
                current_owner=current,
                desired_owner=desired_owner,
                strategy=target.strategy.value,
            )
            receipt = target.transfer(desired_owner, authority)
            outcome = HandoverOutcome.TRANSFERRED
        else:
            advisory = ActionRequired(
                resource=target.name,
                desired_owner=desired_owner,
                operation=target.strategy.operation,
                instruction=f"Please transfer {target.name} owner to {desired_owner}",
                details={"current_owner": current, "address": target.handle.address},
            )
            self._channel.instruct(
                advisory.instruction,
                resource=target.name,
                operation=advisory.operation,
                step=step,
                desired_owner=desired_owner,
                current_owner=current,
            )
            outcome = HandoverOutcome.ACTION_REQUIRED

        self._poller.await_condition(
            lambda: same_address(target.read_owner(), desired_owner),
            description=f"{target.name}.{target.strategy.owner_property} == {desired_owner}",
        )

        return HandoverResult(
            target.name,
            desired_owner,
            outcome,
            receipt=receipt,
            action_required=advisory,
        )


__all__ = [
    "TransferStrategy",
    "HandoverOutcome",
    "HandoverTarget",
    "ActionRequired",
    "HandoverResult",
    "OwnershipHandoverCoordinator",
]
