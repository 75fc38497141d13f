"""
System Dictator Migration Plan

The six-step plan that hands the legacy messaging system over to the
MigrationSystemDictator and then to the final system owner.

    before step 1   ProxyAdmin, AddressManager, L1CrossDomainMessenger and
                    the L1StandardBridge proxy are owned by the dictator
    step 1          ProxyAdmin knows the AddressManager and proxy types
    step 2          messenger paused, legacy names removed from the registry
    step 3          AddressManager and messenger owned by the ProxyAdmin
    step 4          (no checks)
    step 5          messenger unpaused
    step 6          bridge and ProxyAdmin owned by the final system owner

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Dict, Iterable, Optional, Tuple

from dictator.handover import HandoverTarget, TransferStrategy
from dictator.resilience import RetryPolicy
from dictator.resources import RemoteResourceClient, RemoteResourceHandle
from dictator.sequencer import (
    DictatorOperation,
    HandoverPrerequisite,
    MigrationPlan,
    StepDescriptor,
)
from dictator.verification import (
    StepContext,
    assert_dead_registry,
    assert_owner,
    assert_property,
)


DICTATOR = "MigrationSystemDictator"
PROXY_ADMIN = "ProxyAdmin"
ADDRESS_MANAGER = "Lib_AddressManager"
MESSENGER = "Proxy__OVM_L1CrossDomainMessenger"
BRIDGE = "Proxy__OVM_L1StandardBridge"

SYSTEM_STEPS = 6
MESSENGER_IMPLEMENTATION_NAME = "OVM_L1CrossDomainMessenger"

# Registry names that must resolve to the zero address once step 2 has run.
DEAD_ADDRESS_NAMES: Tuple[str, ...] = (
    "Proxy__OVM_L1CrossDomainMessenger",
    "Proxy__OVM_L1StandardBridge",
    "OVM_CanonicalTransactionChain",
    "OVM_L2CrossDomainMessenger",
    "OVM_DecompressionPrecompileAddress",
    "OVM_Sequencer",
    "OVM_Proposer",
    "OVM_ChainStorageContainer-CTC-batches",
    "OVM_ChainStorageContainer-CTC-queue",
    "OVM_StateCommitmentChain",
    "OVM_BondManager",
    "OVM_ExecutionManager",
    "OVM_FraudVerifier",
    "OVM_StateManagerFactory",
    "OVM_StateTransitionerFactory",
    "OVM_SafetyChecker",
    "OVM_L1MultiMessageRelayer",
)


class ProxyType(IntEnum):
    """ProxyAdmin proxy kinds."""
    ERC1967 = 0
    CHUGSPLASH = 1
    RESOLVED = 2


@dataclass(frozen=True)
class SystemAddresses:
    """Deployed addresses of the governed resources."""
    dictator: str
    proxy_admin: str
    address_manager: str
    messenger: str
    bridge: str

    def by_name(self) -> Dict[str, str]:
        return {
            DICTATOR: self.dictator,
            PROXY_ADMIN: self.proxy_admin,
            ADDRESS_MANAGER: self.address_manager,
            MESSENGER: self.messenger,
            BRIDGE: self.bridge,
        }

    @classmethod
    def from_mapping(cls, data: Dict[str, str]) -> "SystemAddresses":
        return cls(
            dictator=data[DICTATOR],
            proxy_admin=data[PROXY_ADMIN],
            address_manager=data[ADDRESS_MANAGER],
            messenger=data[MESSENGER],
            bridge=data[BRIDGE],
        )


def build_system_resources(
    client: RemoteResourceClient,
    addresses: SystemAddresses,
    deployer: str,
    retry: Optional[RetryPolicy] = None,
) -> Dict[str, RemoteResourceHandle]:
    """Handles for every resource the plan touches, signing as ``deployer``."""
    resources: Dict[str, RemoteResourceHandle] = {}
    for name, address in addresses.by_name().items():
        resources[name] = RemoteResourceHandle(
            name,
            client,
            address=address,
            signer=deployer,
            owner_property="getOwner" if name == BRIDGE else "owner",
            retry=retry,
        )
    return resources


def handover_targets(
    resources: Dict[str, RemoteResourceHandle],
    deployer: str,
) -> Tuple[HandoverTarget, ...]:
    """The four resources handed to the dictator before step 1."""
    bridge = resources[BRIDGE]
    return (
        # The deployer always owns the ProxyAdmin, so it acts even when not live.
        HandoverTarget(resources[PROXY_ADMIN], TransferStrategy.SET_OWNER, requires_authority=False),
        HandoverTarget(resources[ADDRESS_MANAGER], TransferStrategy.TRANSFER_OWNERSHIP),
        HandoverTarget(resources[MESSENGER], TransferStrategy.TRANSFER_OWNERSHIP),
        HandoverTarget(
            bridge,
            TransferStrategy.PROXY_ADMIN,
            signer_handle=bridge.with_signer(deployer),
            label=f"{BRIDGE} (proxy)",
        ),
    )


def build_system_dictator_plan(
    resources: Dict[str, RemoteResourceHandle],
    final_owner: str,
    deployer: str,
    dead_names: Iterable[str] = DEAD_ADDRESS_NAMES,
) -> MigrationPlan:
    """Static step table for the system dictator."""
    dead_names = tuple(dead_names)
    dictator_address = resources[DICTATOR].address
    proxy_admin = resources[PROXY_ADMIN]
    address_manager = resources[ADDRESS_MANAGER]
    messenger = resources[MESSENGER]
    bridge = resources[BRIDGE]

    def check_step_1(ctx: StepContext) -> None:
        assert_property(ctx, proxy_admin, "addressManager", address_manager.address)
        assert_property(
            ctx, proxy_admin, "implementationName", MESSENGER_IMPLEMENTATION_NAME, messenger.address,
        )
        assert_property(ctx, proxy_admin, "proxyType", int(ProxyType.RESOLVED), messenger.address)
        assert_property(ctx, proxy_admin, "proxyType", int(ProxyType.CHUGSPLASH), bridge.address)

    def check_step_2(ctx: StepContext) -> None:
        assert_property(ctx, messenger, "paused", True)
        assert_dead_registry(ctx, address_manager, dead_names)

    def check_step_3(ctx: StepContext) -> None:
        assert_owner(ctx, address_manager, proxy_admin.address)
        assert_owner(ctx, messenger, proxy_admin.address)

    def check_step_5(ctx: StepContext) -> None:
        assert_property(ctx, messenger, "paused", False)

    def check_step_6(ctx: StepContext) -> None:
        assert_owner(ctx, bridge, final_owner)
        assert_owner(ctx, proxy_admin, final_owner)

    prerequisites = tuple(
        HandoverPrerequisite(target, dictator_address)
        for target in handover_targets(resources, deployer)
    )

    steps = [
        StepDescriptor(1, DictatorOperation("step1"), check_step_1, prerequisites,
                       "Point the ProxyAdmin at the AddressManager and register proxy types"),
        StepDescriptor(2, DictatorOperation("step2"), check_step_2,
                       description="Pause the messenger and clear legacy registry names"),
        StepDescriptor(3, DictatorOperation("step3"), check_step_3,
                       description="Hand the AddressManager and messenger to the ProxyAdmin"),
        # Step 4 has no post-conditions yet.
        StepDescriptor(4, DictatorOperation("step4"), None,
                       description="Upgrade system implementations"),
        StepDescriptor(5, DictatorOperation("step5"), check_step_5,
                       description="Unpause the messenger"),
        StepDescriptor(6, DictatorOperation("step6"), check_step_6,
                       description="Transfer the bridge and ProxyAdmin to the final owner"),
    ]
    return MigrationPlan(steps, dictator=DICTATOR)


def describe_plan(plan: MigrationPlan, dead_names: Iterable[str] = DEAD_ADDRESS_NAMES) -> Dict[str, Any]:
    """Plan summary for display."""
    data = plan.to_dict()
    data["dead_address_names"] = list(dead_names)
    return data
