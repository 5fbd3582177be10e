"""Shared test fixtures: spec builders, a fake remote API and a virtual clock."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from typing import Any

import pytest

from aks_reconciler.clients.base import OperationHandle, PollResult, RemoteResult
from aks_reconciler.config import ClusterRef, EngineConfig, ExecutorConfig
from aks_reconciler.engine import ClusterReconciler
from aks_reconciler.errors import ResourceNotFound
from aks_reconciler.models import ClusterSpec, ResourceState
from aks_reconciler.operations import VirtualClock
from aks_reconciler.state import StateStore

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
RESOURCE_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-prod"
    "/providers/Microsoft.ContainerService/managedClusters/aks-prod"
)
IDENTITY_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-prod"
    "/providers/Microsoft.ManagedIdentity/userAssignedIdentities/aks-id"
)
KEY_ID = "https://kv-prod-001.vault.azure.net/keys/etcd/0123456789abcdef"

# Values the remote never echoes back.
_WRITE_ONLY = (
    ("default_node_pool", "temporary_name_for_rotation"),
    ("storage_profile", "disk_driver_version"),
    ("windows_profile", "admin_password"),
)


def base_document() -> dict[str, Any]:
    return {
        "name": "aks-prod",
        "location": "westeurope",
        "resource_group_name": "rg-prod",
        "dns_prefix": "aksprod",
        "identity": {"type": "SystemAssigned"},
        "default_node_pool": {
            "name": "default",
            "vm_size": "Standard_D2s_v3",
            "node_count": 2,
            "temporary_name_for_rotation": "tmpdefault",
        },
    }


class FakeRemoteApi:
    """In-memory RemoteClusterApi that mirrors mutations into a remote attribute tree.

    ``async_ops`` makes every mutation return an operation handle that needs
    ``polls_until_done`` polls. Failures are queued per ``(action, target)``.
    """

    def __init__(self, clock: VirtualClock, *, async_ops: bool = False, polls_until_done: int = 2) -> None:
        self.clock = clock
        self.async_ops = async_ops
        self.polls_until_done = polls_until_done
        self.remote: dict[str, Any] | None = None
        self.calls: list[tuple[str, str]] = []
        self.payloads: list[dict[str, Any] | None] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.terminal: dict[str, PollResult] = {}
        self.never_finish: set[str] = set()
        self.missing: set[str] = set()
        self.on_call: Callable[[str, str], None] | None = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._operations: dict[str, dict[str, Any]] = {}
        self._next_id = 0

    def fail(self, action: str, target: str, *errors: Exception) -> None:
        self.failures.setdefault((action, target), []).extend(errors)

    def _mutate(self, action: str, target: str, payload: dict[str, Any] | None) -> None:
        if target == "cluster":
            if action == "delete":
                self.remote = None
            else:
                self.remote = {**(self.remote or {}), **copy.deepcopy(payload or {})}
            return
        if self.remote is None:
            raise ResourceNotFound(target)
        if target.startswith("node_pools/"):
            name = target.split("/", 1)[1]
            pools = [p for p in self.remote.get("node_pools") or [] if p["name"] != name]
            if action != "delete":
                pools.append(copy.deepcopy(payload))
            self.remote["node_pools"] = pools
            return
        self.remote[target] = None if action == "delete" else copy.deepcopy(payload)

    def _computed(self) -> dict[str, Any]:
        if self.remote is None:
            pools = []
        else:
            pools = [self.remote.get("default_node_pool"), *(self.remote.get("node_pools") or [])]
        return {
            "fqdn": "aksprod-abc123.hcp.westeurope.azmk8s.io",
            "kube_config_host": "https://aksprod-abc123.hcp.westeurope.azmk8s.io:443",
            "provisioning_state": "Succeeded",
            "node_pool_states": {p["name"]: "Succeeded" for p in pools if p},
        }

    async def _issue(self, action: str, target: str, payload: dict[str, Any] | None) -> RemoteResult:
        self.calls.append((action, target))
        self.payloads.append(copy.deepcopy(payload))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            queued = self.failures.get((action, target))
            if queued:
                raise queued.pop(0)
            self._mutate(action, target, payload)
            if self.on_call is not None:
                self.on_call(action, target)
        finally:
            self.in_flight -= 1
        if not self.async_ops:
            return RemoteResult(payload={"computed": self._computed()})
        self._next_id += 1
        operation_id = f"op-{self._next_id}"
        self._operations[operation_id] = {"target": target, "remaining": self.polls_until_done}
        return RemoteResult(handle=OperationHandle(operation_id=operation_id, target=target))

    async def create(self, ref: ClusterRef, target: str, payload: dict[str, Any]) -> RemoteResult:
        return await self._issue("create", target, payload)

    async def update(self, ref: ClusterRef, target: str, payload: dict[str, Any]) -> RemoteResult:
        return await self._issue("update", target, payload)

    async def delete(self, ref: ClusterRef, target: str) -> RemoteResult:
        return await self._issue("delete", target, None)

    async def get(self, ref: ClusterRef) -> dict[str, Any]:
        if self.remote is None or ref.cluster_name in self.missing:
            raise ResourceNotFound(ref.resource_id)
        attributes = copy.deepcopy(self.remote)
        for block, leaf in _WRITE_ONLY:
            if isinstance(attributes.get(block), dict):
                attributes[block].pop(leaf, None)
        return {"attributes": attributes, "computed": self._computed()}

    async def poll(self, handle: OperationHandle) -> PollResult:
        op = self._operations[handle.operation_id]
        if op["target"] in self.never_finish:
            return PollResult(status="running")
        op["remaining"] -= 1
        if op["remaining"] > 0:
            return PollResult(status="running")
        if op["target"] in self.terminal:
            return self.terminal[op["target"]]
        return PollResult(status="succeeded", payload={"computed": self._computed()})


@pytest.fixture
def make_spec() -> Callable[..., ClusterSpec]:
    """Factory building a valid ClusterSpec with top-level overrides."""

    def _make(**overrides: Any) -> ClusterSpec:
        document = base_document()
        document.update(overrides)
        return ClusterSpec.model_validate(document)

    return _make


@pytest.fixture
def make_state() -> Callable[..., ResourceState]:
    """Factory building the state a fully converged spec would leave behind."""

    def _make(spec: ClusterSpec, serial: int = 1) -> ResourceState:
        return ResourceState(resource_id=RESOURCE_ID, attributes=spec.model_dump(mode="json"), serial=serial)

    return _make


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def remote(clock: VirtualClock) -> FakeRemoteApi:
    return FakeRemoteApi(clock)


@pytest.fixture
def executor_config() -> ExecutorConfig:
    return ExecutorConfig(
        poll_interval_seconds=15,
        operation_timeout_seconds=300,
        max_attempts=3,
        backoff_initial_seconds=1,
        backoff_max_seconds=8,
        concurrency_limit=4,
    )


@pytest.fixture
def engine_config(executor_config: ExecutorConfig) -> EngineConfig:
    return EngineConfig(subscription_id=SUBSCRIPTION_ID, executor=executor_config)


@pytest.fixture
def ref() -> ClusterRef:
    return ClusterRef(subscription_id=SUBSCRIPTION_ID, resource_group="rg-prod", cluster_name="aks-prod")


@pytest.fixture
def reconciler(remote: FakeRemoteApi, engine_config: EngineConfig, clock: VirtualClock) -> ClusterReconciler:
    return ClusterReconciler(remote, engine_config, clock=clock, store=StateStore())


@pytest.fixture
def identity_id() -> str:
    return IDENTITY_ID


@pytest.fixture
def key_id() -> str:
    return KEY_ID


@pytest.fixture
def resource_id() -> str:
    return RESOURCE_ID
