"""
System Dictator Simulator

An in-memory rendition of the governed resources and the
MigrationSystemDictator, used by the test suite and by ``dictator simulate``.

    deployer ─── owns ──▶ ProxyAdmin
    controller ─ owns ──▶ MigrationSystemDictator, Lib_AddressManager,
                          messenger, bridge proxy

Every privileged operation is owner-gated and every ``stepN`` reverts
unless ``currentStep == N`` and the dictator holds the ownerships it needs,
so a sequencer that acts out of order fails loudly.

For non-live runs an ExternalOperator plays the controller: each call to
``act()`` performs at most one pending out-of-band action, in the order an
operator following the printed instructions would.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import threading
from typing import Any, Dict, Iterable, List, Optional

from dictator.observability import SequencerLayer, get_logger
from dictator.plans import (
    ADDRESS_MANAGER,
    BRIDGE,
    DEAD_ADDRESS_NAMES,
    DICTATOR,
    MESSENGER,
    MESSENGER_IMPLEMENTATION_NAME,
    PROXY_ADMIN,
    SYSTEM_STEPS,
    ProxyType,
    SystemAddresses,
    build_system_dictator_plan,
    build_system_resources,
)
from dictator.resilience import RetryPolicy
from dictator.resources import (
    ZERO_ADDRESS,
    Authority,
    InMemoryResourceClient,
    OperationReverted,
    RemoteResourceHandle,
    same_address,
)
from dictator.sequencer import MigrationPlan


logger = get_logger("simulator", SequencerLayer.SIMULATOR)


def derive_address(label: str) -> str:
    """Deterministic 20-byte hex address for a label."""
    return "0x" + hashlib.sha256(label.encode()).hexdigest()[:40]


def default_addresses() -> SystemAddresses:
    return SystemAddresses(
        dictator=derive_address(DICTATOR),
        proxy_admin=derive_address(PROXY_ADMIN),
        address_manager=derive_address(ADDRESS_MANAGER),
        messenger=derive_address(MESSENGER),
        bridge=derive_address(BRIDGE),
    )


# =============================================================================
# OPERATION HANDLERS
# =============================================================================

def _require_owner(client: InMemoryResourceClient, resource: str, owner_prop: str,
                   signer: Optional[str], operation: str) -> None:
    owner = client.get_property(resource, owner_prop)
    if not same_address(owner, signer):
        raise OperationReverted(resource, operation, f"caller {signer} is not the owner {owner}")


def _set_owner(client: InMemoryResourceClient, resource: str, signer: Optional[str], new_owner: str) -> None:
    _require_owner(client, resource, "owner", signer, "setOwner")
    client.set_property(resource, "owner", new_owner)


def _transfer_ownership(client: InMemoryResourceClient, resource: str, signer: Optional[str],
                        new_owner: str) -> None:
    _require_owner(client, resource, "owner", signer, "transferOwnership")
    if same_address(new_owner, ZERO_ADDRESS):
        raise OperationReverted(resource, "transferOwnership", "new owner is the zero address")
    client.set_property(resource, "owner", new_owner)


def _set_proxy_owner(client: InMemoryResourceClient, resource: str, signer: Optional[str],
                     new_owner: str) -> None:
    _require_owner(client, resource, "getOwner", signer, "setOwner")
    client.set_property(resource, "getOwner", new_owner)


def _set_address(client: InMemoryResourceClient, resource: str, signer: Optional[str],
                 name: str, address: str) -> None:
    _require_owner(client, resource, "owner", signer, "setAddress")
    client.set_property(resource, "getAddress", address, key=name)


# =============================================================================
# SIMULATOR
# =============================================================================

class SystemSimulator:
    """
    In-memory system under migration.

    Example:
        sim = SystemSimulator(deployer="0xd...", controller="0xd...", final_owner="0xf...")
        sequencer = MigrationStepSequencer(sim.plan(), sim.resources(), sim.authority(), poller)
        sequencer.run()
    """

    def __init__(
        self,
        deployer: str,
        controller: str,
        final_owner: str,
        addresses: Optional[SystemAddresses] = None,
        dead_names: Iterable[str] = DEAD_ADDRESS_NAMES,
        client: Optional[InMemoryResourceClient] = None,
    ):
        self.deployer = deployer
        self.controller = controller
        self.final_owner = final_owner
        self.addresses = addresses or default_addresses()
        self.dead_names = tuple(dead_names)
        self.client = client or InMemoryResourceClient()
        self._seed()

    def _seed(self) -> None:
        a = self.addresses
        c = self.client

        c.add_resource(
            PROXY_ADMIN, a.proxy_admin,
            properties={
                "owner": self.deployer,
                "addressManager": ZERO_ADDRESS,
                "implementationName": {},
                "proxyType": {},
            },
            operations={"setOwner": _set_owner},
        )
        c.add_resource(
            ADDRESS_MANAGER, a.address_manager,
            properties={
                "owner": self.controller,
                "getAddress": {name: derive_address(f"legacy:{name}") for name in self.dead_names},
            },
            operations={"transferOwnership": _transfer_ownership, "setAddress": _set_address},
        )
        c.add_resource(
            MESSENGER, a.messenger,
            properties={"owner": self.controller, "paused": False},
            operations={"transferOwnership": _transfer_ownership},
        )
        c.add_resource(
            BRIDGE, a.bridge,
            properties={"getOwner": self.controller},
            operations={"setOwner": _set_proxy_owner},
        )
        c.add_resource(
            DICTATOR, a.dictator,
            properties={"owner": self.controller, "currentStep": 1},
        )
        for index in range(1, SYSTEM_STEPS + 1):
            c.register_operation(DICTATOR, f"step{index}", self._step_handler(index))

    # -------------------------------------------------------------------------
    # Dictator steps
    # -------------------------------------------------------------------------

    def _step_handler(self, index: int):
        effects = {
            1: self._step1,
            2: self._step2,
            3: self._step3,
            4: self._step4,
            5: self._step5,
            6: self._step6,
        }[index]

        def handler(client: InMemoryResourceClient, resource: str, signer: Optional[str]) -> None:
            operation = f"step{index}"
            _require_owner(client, resource, "owner", signer, operation)
            current = client.get_property(resource, "currentStep")
            if current != index:
                raise OperationReverted(resource, operation, f"current step is {current}")
            effects(client)
            client.set_property(resource, "currentStep", index + 1)
            logger.debug(f"Dictator executed {operation}", resource=resource, current_step=index + 1)

        return handler

    def _require_dictator_owns(self, client: InMemoryResourceClient, operation: str,
                               *resources: str) -> None:
        for name in resources:
            prop = "getOwner" if name == BRIDGE else "owner"
            if not same_address(client.get_property(name, prop), self.addresses.dictator):
                raise OperationReverted(DICTATOR, operation, f"dictator does not own {name}")

    def _step1(self, client: InMemoryResourceClient) -> None:
        self._require_dictator_owns(client, "step1", PROXY_ADMIN)
        a = self.addresses
        client.set_property(PROXY_ADMIN, "addressManager", a.address_manager)
        client.set_property(PROXY_ADMIN, "implementationName", MESSENGER_IMPLEMENTATION_NAME, key=a.messenger)
        client.set_property(PROXY_ADMIN, "proxyType", int(ProxyType.RESOLVED), key=a.messenger)
        client.set_property(PROXY_ADMIN, "proxyType", int(ProxyType.CHUGSPLASH), key=a.bridge)

    def _step2(self, client: InMemoryResourceClient) -> None:
        self._require_dictator_owns(client, "step2", ADDRESS_MANAGER, MESSENGER)
        client.set_property(MESSENGER, "paused", True)
        for name in self.dead_names:
            client.set_property(ADDRESS_MANAGER, "getAddress", ZERO_ADDRESS, key=name)

    def _step3(self, client: InMemoryResourceClient) -> None:
        self._require_dictator_owns(client, "step3", ADDRESS_MANAGER, MESSENGER)
        client.set_property(ADDRESS_MANAGER, "owner", self.addresses.proxy_admin)
        client.set_property(MESSENGER, "owner", self.addresses.proxy_admin)

    def _step4(self, client: InMemoryResourceClient) -> None:
        self._require_dictator_owns(client, "step4", PROXY_ADMIN, BRIDGE)

    def _step5(self, client: InMemoryResourceClient) -> None:
        client.set_property(MESSENGER, "paused", False)

    def _step6(self, client: InMemoryResourceClient) -> None:
        self._require_dictator_owns(client, "step6", PROXY_ADMIN, BRIDGE)
        client.set_property(BRIDGE, "getOwner", self.final_owner)
        client.set_property(PROXY_ADMIN, "owner", self.final_owner)

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def authority(self) -> Authority:
        return Authority.resolve(self.deployer, self.controller)

    def resources(self, retry: Optional[RetryPolicy] = None) -> Dict[str, RemoteResourceHandle]:
        return build_system_resources(self.client, self.addresses, self.deployer, retry=retry)

    def plan(self, resources: Optional[Dict[str, RemoteResourceHandle]] = None) -> MigrationPlan:
        return build_system_dictator_plan(
            resources or self.resources(),
            self.final_owner,
            self.deployer,
            dead_names=self.dead_names,
        )

    def current_step(self) -> int:
        return self.client.get_property(DICTATOR, "currentStep")

    def fast_forward(self, step: int) -> None:
        """Execute everything before ``step`` as the controller would."""
        operator = ExternalOperator(self, include_deployer=True)
        while self.current_step() < step:
            if not operator.act():
                raise RuntimeError(f"Simulator cannot reach step {step}")

    def external_operator(self) -> "ExternalOperator":
        return ExternalOperator(self)


class ExternalOperator:
    """
    The off-band controller for non-live runs.

    ``act()`` performs the next outstanding handover or dictator step and
    returns whether it did anything. It can be passed as the poller's
    ``sleep`` hook so each wait gives the operator one turn.
    """

    def __init__(self, simulator: SystemSimulator, include_deployer: bool = False):
        self._sim = simulator
        self._include_deployer = include_deployer
        self.actions: List[str] = []

    def _owner(self, name: str) -> Any:
        prop = "getOwner" if name == BRIDGE else "owner"
        return self._sim.client.get_property(name, prop)

    def act(self) -> bool:
        sim = self._sim
        client = sim.client
        dictator = sim.addresses.dictator
        step = sim.current_step()
        if step > SYSTEM_STEPS:
            return False

        if step == 1:
            if self._include_deployer and same_address(self._owner(PROXY_ADMIN), sim.deployer):
                client.invoke(PROXY_ADMIN, "setOwner", (dictator,), signer=sim.deployer)
                self.actions.append(f"{PROXY_ADMIN}.setOwner")
                return True
            for name, operation in (
                (ADDRESS_MANAGER, "transferOwnership"),
                (MESSENGER, "transferOwnership"),
                (BRIDGE, "setOwner"),
            ):
                if same_address(self._owner(name), sim.controller):
                    client.invoke(name, operation, (dictator,), signer=sim.controller)
                    self.actions.append(f"{name}.{operation}")
                    return True

        try:
            client.invoke(DICTATOR, f"step{step}", (), signer=sim.controller)
        except OperationReverted as e:
            # Prerequisites not in place yet; try again on the next turn.
            logger.debug(f"Operator could not execute step {step}: {e.reason}", step_index=step)
            return False
        self.actions.append(f"{DICTATOR}.step{step}")
        return True

    def __call__(self, _seconds: float) -> None:
        self.act()


class BackgroundOperator:
    """
    Runs an ExternalOperator on a thread until stopped.

    A failed turn is logged and kept in ``errors``; the loop carries on so
    the waiting sequencer sees the failure in the log rather than a silent
    stall.
    """

    def __init__(self, operator: ExternalOperator, interval_seconds: float = 0.05):
        self._operator = operator
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="external-operator", daemon=True)
        self.errors: List[Exception] = []

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.turn()

    def turn(self) -> None:
        """Give the operator one turn."""
        try:
            self._operator.act()
        except Exception as e:
            self.errors.append(e)
            logger.error(
                f"External operator action failed: {e}",
                error_code=type(e).__name__,
                exc_info=True,
            )

    def start(self) -> "BackgroundOperator":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=5)

    def __enter__(self) -> "BackgroundOperator":
        return self.start()

    def __exit__(self, *exc: Any) -> None:
        self.stop()


__all__ = [
    "derive_address",
    "default_addresses",
    "SystemSimulator",
    "ExternalOperator",
    "BackgroundOperator",
]
