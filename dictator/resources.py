"""
Dictator Remote Resources

Handles onto named remote resources (contracts, services) and the client
protocol the sequencer consumes. The transport, ABI encoding and signing
live behind RemoteResourceClient; this module only adds naming, retries
for reads, and owner-property conventions.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                   RemoteResourceHandle                               │
    │   name · address · signer · owner property                           │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │ read_property / invoke
                                   ▼
    ┌─────────────────────────────────────────────────────────────────────┐
    │                   RemoteResourceClient (Protocol)                    │
    │   JSON-RPC client · InMemoryResourceClient (tests, simulator)        │
    └─────────────────────────────────────────────────────────────────────┘

Mutating invocations are never retried locally: a lost response must not
turn into a second transaction. The next read-before-act pass is the retry.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from dictator.resilience import (
    RetryExhaustedError,
    RetryPolicy,
    TRANSIENT_EXCEPTIONS,
    TransportError,
)


ZERO_ADDRESS = "0x" + "00" * 20


def same_address(a: Any, b: Any) -> bool:
    """Compare two values, treating hex addresses case-insensitively."""
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    return a == b


class OperationReverted(Exception):
    """A remote operation was rejected by the resource itself."""
    def __init__(self, resource: str, operation: str, reason: str):
        self.resource = resource
        self.operation = operation
        self.reason = reason
        super().__init__(f"{resource}.{operation} reverted: {reason}")


# =============================================================================
# RECEIPTS
# =============================================================================

@dataclass
class Receipt:
    """Acknowledgement of a mutating invocation."""
    resource: str
    operation: str
    args: Tuple[Any, ...] = ()
    signer: Optional[str] = None
    tx_id: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        if not self.tx_id:
            content = f"{self.resource}:{self.operation}:{self.args}:{self.signer}:{self.timestamp}"
            self.tx_id = "0x" + hashlib.sha256(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "operation": self.operation,
            "args": [str(a) for a in self.args],
            "signer": self.signer,
            "tx_id": self.tx_id,
            "timestamp": self.timestamp,
        }


# =============================================================================
# CLIENT PROTOCOL
# =============================================================================

class RemoteResourceClient(Protocol):
    """
    Protocol for the transport to remote resources.

    Implementations resolve resource names to addresses through their own
    registry. Transport failures should surface as TransportError,
    ConnectionError or OSError so the retry and poll layers recognise them.
    """

    def read_property(self, resource_name: str, property_name: str, *args: Any) -> Any:
        """Read a named property (or call a view with ``args``)."""
        ...

    def invoke(
        self,
        resource_name: str,
        operation_name: str,
        args: Sequence[Any] = (),
        signer: Optional[str] = None,
    ) -> Receipt:
        """Invoke a mutating operation and return its receipt."""
        ...


# =============================================================================
# AUTHORITY
# =============================================================================

@dataclass(frozen=True)
class Authority:
    """
    Whether the calling identity may execute privileged operations itself.

    Resolved once at startup. A non-live authority only observes and prints
    instructions for the external controller.
    """
    identity: str
    is_live: bool

    @classmethod
    def resolve(cls, deployer: str, controller: str) -> "Authority":
        """The deployer is live exactly when it is the configured controller."""
        return cls(identity=deployer, is_live=same_address(deployer, controller))


# =============================================================================
# RESOURCE HANDLE
# =============================================================================

class RemoteResourceHandle:
    """
    Reference to a named remote resource.

    Reads go through a RetryPolicy and raise TransportError once it is
    exhausted. Invocations are single-shot.
    """

    def __init__(
        self,
        name: str,
        client: RemoteResourceClient,
        address: str = "",
        signer: Optional[str] = None,
        owner_property: str = "owner",
        retry: Optional[RetryPolicy] = None,
    ):
        self.name = name
        self.address = address
        self.signer = signer
        self.owner_property = owner_property
        self._client = client
        self._retry = retry or RetryPolicy(max_attempts=3, base_delay_seconds=0.25)

    @property
    def client(self) -> RemoteResourceClient:
        return self._client

    def read(self, property_name: str, *args: Any) -> Any:
        """Read a property, retrying transient transport failures."""
        try:
            return self._retry.execute(
                lambda: self._client.read_property(self.name, property_name, *args)
            )
        except RetryExhaustedError as e:
            raise TransportError(self.name, property_name, cause=e.last_exception) from e

    def invoke(self, operation_name: str, *args: Any) -> Receipt:
        """Invoke a mutating operation once."""
        try:
            return self._client.invoke(self.name, operation_name, tuple(args), signer=self.signer)
        except TransportError:
            raise
        except TRANSIENT_EXCEPTIONS as e:
            raise TransportError(self.name, operation_name, cause=e) from e

    def owner(self) -> Any:
        """Current controlling authority."""
        return self.read(self.owner_property)

    def with_signer(self, signer: str) -> "RemoteResourceHandle":
        """Same resource, with mutations signed by ``signer``."""
        return RemoteResourceHandle(
            self.name,
            self._client,
            address=self.address,
            signer=signer,
            owner_property=self.owner_property,
            retry=self._retry,
        )

    def __repr__(self) -> str:
        return f"RemoteResourceHandle({self.name!r}, address={self.address!r}, signer={self.signer!r})"


# =============================================================================
# IN-MEMORY CLIENT
# =============================================================================

OperationHandler = Callable[..., Any]


@dataclass
class _FailurePlan:
    remaining: int
    resource: Optional[str]
    name: Optional[str]

    def matches(self, resource: str, name: str) -> bool:
        if self.remaining <= 0:
            return False
        if self.resource is not None and self.resource != resource:
            return False
        if self.name is not None and self.name != name:
            return False
        return True


class InMemoryResourceClient:
    """
    In-memory remote resource client for testing and simulation.

    Resources are property maps. Mapping-valued properties are read with
    arguments (``read_property("AddressManager", "getAddress", "OVM_Sequencer")``).
    Operations are handlers ``handler(client, resource_name, signer, *args)``
    that mutate state through ``set_property``.
    """

    def __init__(self):
        self._properties: Dict[str, Dict[str, Any]] = {}
        self._operations: Dict[str, Dict[str, OperationHandler]] = {}
        self._addresses: Dict[str, str] = {}
        self._invocations: List[Receipt] = []
        self._read_failures: List[_FailurePlan] = []
        self._invoke_failures: List[_FailurePlan] = []
        self._invoke_listeners: List[Callable[[Receipt], None]] = []
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def add_resource(
        self,
        name: str,
        address: str = "",
        properties: Optional[Dict[str, Any]] = None,
        operations: Optional[Dict[str, OperationHandler]] = None,
    ) -> None:
        with self._lock:
            self._properties[name] = dict(properties or {})
            self._operations[name] = dict(operations or {})
            self._addresses[name] = address

    def address_of(self, name: str) -> str:
        return self._addresses[name]

    def register_operation(self, resource: str, operation: str, handler: OperationHandler) -> None:
        with self._lock:
            self._operations.setdefault(resource, {})[operation] = handler

    def set_property(self, resource: str, prop: str, value: Any, key: Any = None) -> None:
        """Write a property directly (no failure injection, no receipt)."""
        with self._lock:
            props = self._properties.setdefault(resource, {})
            if key is None:
                props[prop] = value
            else:
                props.setdefault(prop, {})[key] = value

    def get_property(self, resource: str, prop: str, key: Any = None) -> Any:
        """Read a property directly (no failure injection)."""
        with self._lock:
            value = self._properties[resource][prop]
            if key is None:
                return value
            return value.get(key)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Deep-enough copy of all resource state."""
        with self._lock:
            return {
                name: {k: dict(v) if isinstance(v, dict) else v for k, v in props.items()}
                for name, props in self._properties.items()
            }

    # -------------------------------------------------------------------------
    # Failure injection
    # -------------------------------------------------------------------------

    def fail_reads(self, count: int, resource: Optional[str] = None, prop: Optional[str] = None) -> None:
        """Make the next ``count`` matching reads raise TransportError."""
        with self._lock:
            self._read_failures.append(_FailurePlan(count, resource, prop))

    def fail_invocations(
        self,
        count: int,
        resource: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        """Make the next ``count`` matching invocations raise TransportError."""
        with self._lock:
            self._invoke_failures.append(_FailurePlan(count, resource, operation))

    def on_invoke(self, listener: Callable[[Receipt], None]) -> None:
        """Call ``listener`` after every successful invocation."""
        self._invoke_listeners.append(listener)

    def _consume_failure(self, plans: List[_FailurePlan], resource: str, name: str) -> bool:
        for plan in plans:
            if plan.matches(resource, name):
                plan.remaining -= 1
                return True
        return False

    # -------------------------------------------------------------------------
    # RemoteResourceClient
    # -------------------------------------------------------------------------

    def read_property(self, resource_name: str, property_name: str, *args: Any) -> Any:
        with self._lock:
            if self._consume_failure(self._read_failures, resource_name, property_name):
                raise TransportError(
                    resource_name, property_name,
                    message=f"Injected read failure on {resource_name}.{property_name}",
                )
            if resource_name not in self._properties:
                raise KeyError(f"Unknown resource: {resource_name}")
            props = self._properties[resource_name]
            if property_name not in props:
                raise KeyError(f"Unknown property: {resource_name}.{property_name}")

            value = props[property_name]
            if not args:
                return value
            key = args[0] if len(args) == 1 else tuple(args)
            return value.get(key)

    def invoke(
        self,
        resource_name: str,
        operation_name: str,
        args: Sequence[Any] = (),
        signer: Optional[str] = None,
    ) -> Receipt:
        with self._lock:
            if self._consume_failure(self._invoke_failures, resource_name, operation_name):
                raise TransportError(
                    resource_name, operation_name,
                    message=f"Injected invoke failure on {resource_name}.{operation_name}",
                )
            handler = self._operations.get(resource_name, {}).get(operation_name)
            if handler is None:
                raise OperationReverted(resource_name, operation_name, "unknown operation")

            handler(self, resource_name, signer, *args)

            receipt = Receipt(
                resource=resource_name,
                operation=operation_name,
                args=tuple(args),
                signer=signer,
                tx_id="0x%064x" % (len(self._invocations) + 1),
            )
            self._invocations.append(receipt)

        for listener in self._invoke_listeners:
            listener(receipt)

        return receipt

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @property
    def invocations(self) -> List[Receipt]:
        with self._lock:
            return list(self._invocations)

    def invocation_count(self, resource: str, operation: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for r in self._invocations
                if r.resource == resource and (operation is None or r.operation == operation)
            )


__all__ = [
    "ZERO_ADDRESS",
    "same_address",
    "OperationReverted",
    "Receipt",
    "RemoteResourceClient",
    "Authority",
    "RemoteResourceHandle",
    "InMemoryResourceClient",
    "TransportError",
]
