"""AKS management-plane implementation of the remote cluster API."""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError, ServiceResponseError
from azure.core.polling import LROPoller
from azure.identity import DefaultAzureCredential
from azure.mgmt.containerservice import ContainerServiceClient
from azure.mgmt.containerservice.models import AgentPool, ManagedCluster

from aks_reconciler.clients.azure_mapping import (
    agent_pool_model,
    apply_root,
    cluster_attributes,
    cluster_computed,
    cluster_model,
    identity_model,
    initial_node_count,
    set_kms,
)
from aks_reconciler.clients.base import OperationHandle, OperationStatus, PollResult, RemoteResult
from aks_reconciler.config import ClusterRef
from aks_reconciler.errors import ConvergenceError, RemoteOperationFailed, ResourceNotFound, TransientFailure
from aks_reconciler.models import scrub_sensitive_values

log = structlog.get_logger()

_TRANSIENT_STATUS = frozenset({408, 429})

# 409 codes AKS returns while another operation on the same cluster is still running.
_TRANSIENT_CONFLICT_CODES = frozenset({"operationnotallowed", "conflict", "anotheroperationinprogress"})

_POLLER_STATUS: dict[str, OperationStatus] = {
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "canceled",
    "cancelled": "canceled",
}


def map_http_error(error: HttpResponseError, target: str) -> ConvergenceError:
    """Translate an Azure HTTP error into the engine's error taxonomy."""
    status = error.status_code or 0
    message = scrub_sensitive_values(error.message or str(error))
    if status in _TRANSIENT_STATUS or status >= 500:
        return TransientFailure(message, target=target)
    code = error.error.code if error.error is not None else None
    if status == 409 and (code or "").lower() in _TRANSIENT_CONFLICT_CODES:
        return TransientFailure(message, target=target)
    return RemoteOperationFailed(message, target=target, remote_code=code or str(status))


@dataclass
class _TrackedOperation:
    poller: LROPoller[Any]
    ref: ClusterRef
    target: str


class AzureAksClient:
    """RemoteClusterApi over azure-mgmt-containerservice.

    Mutations return an OperationHandle while the SDK poller runs; ``poll``
    reports its status until it completes.
    """

    def __init__(self, subscription_id: str) -> None:
        self._subscription_id = subscription_id
        self._container_client: ContainerServiceClient | None = None
        self._credential: DefaultAzureCredential | None = None
        # RLock: _get_container_client calls _get_credential while holding it.
        self._lock = threading.RLock()
        self._operations: dict[str, _TrackedOperation] = {}
        self._default_pools: dict[str, str] = {}

    def _get_credential(self) -> DefaultAzureCredential:
        with self._lock:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            return self._credential

    def _get_container_client(self) -> ContainerServiceClient:
        with self._lock:
            if self._container_client is None:
                self._container_client = ContainerServiceClient(
                    credential=self._get_credential(),
                    subscription_id=self._subscription_id,
                )
            return self._container_client

    async def _call(self, ref: ClusterRef, target: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except ResourceNotFoundError as e:
            log.error("azure_resource_not_found", cluster=ref.cluster_name, target=target)
            raise ResourceNotFound(ref.resource_id) from e
        except HttpResponseError as e:
            log.error("azure_call_failed", cluster=ref.cluster_name, target=target, status=e.status_code)
            raise map_http_error(e, target) from e
        except (ServiceRequestError, ServiceResponseError) as e:
            log.error("azure_connection_failed", cluster=ref.cluster_name, target=target)
            raise TransientFailure(scrub_sensitive_values(str(e)), target=target) from e

    def _payload(self, target: str, result: Any) -> dict[str, Any]:
        if isinstance(result, ManagedCluster):
            return {"computed": cluster_computed(result)}
        if isinstance(result, AgentPool) and result.name:
            return {"computed": {"node_pool_states": {result.name: result.provisioning_state}}}
        return {}

    async def _track(self, poller: LROPoller[Any], ref: ClusterRef, target: str) -> RemoteResult:
        if await asyncio.to_thread(poller.done):
            result = await self._call(ref, target, poller.result)
            return RemoteResult(payload=self._payload(target, result))
        operation_id = str(uuid.uuid4())
        self._operations[operation_id] = _TrackedOperation(poller=poller, ref=ref, target=target)
        log.info("azure_operation_started", operation=operation_id, cluster=ref.cluster_name, target=target)
        return RemoteResult(handle=OperationHandle(operation_id=operation_id, target=target))

    async def _put_cluster(self, ref: ClusterRef, target: str, cluster: ManagedCluster) -> RemoteResult:
        client = self._get_container_client()
        poller = await self._call(
            ref,
            target,
            client.managed_clusters.begin_create_or_update,
            ref.resource_group,
            ref.cluster_name,
            cluster,
        )
        return await self._track(poller, ref, target)

    async def _update_section(self, ref: ClusterRef, target: str, payload: dict[str, Any] | None) -> RemoteResult:
        """Read-modify-write of one section of the managed cluster document."""
        client = self._get_container_client()
        cluster = await self._call(ref, target, client.managed_clusters.get, ref.resource_group, ref.cluster_name)
        if target == "cluster":
            apply_root(cluster, payload or {})
        elif target == "identity":
            cluster.identity = identity_model(payload or {})
        else:
            set_kms(cluster, payload)
        return await self._put_cluster(ref, target, cluster)

    async def _put_pool(
        self, ref: ClusterRef, target: str, payload: dict[str, Any], mode: str | None, *, create: bool
    ) -> RemoteResult:
        client = self._get_container_client()
        count: int | None = None
        if payload.get("node_count") is None:
            if create:
                count = initial_node_count(payload)
            else:
                # An unset node_count keeps whatever count the pool has now.
                current = await self._call(
                    ref, target, client.agent_pools.get, ref.resource_group, ref.cluster_name, payload["name"]
                )
                count = current.count
        poller = await self._call(
            ref,
            target,
            client.agent_pools.begin_create_or_update,
            ref.resource_group,
            ref.cluster_name,
            payload["name"],
            agent_pool_model(payload, mode=mode, count=count),
        )
        return await self._track(poller, ref, target)

    async def _delete_pool(self, ref: ClusterRef, target: str, pool_name: str) -> RemoteResult:
        client = self._get_container_client()
        poller = await self._call(
            ref,
            target,
            client.agent_pools.begin_delete,
            ref.resource_group,
            ref.cluster_name,
            pool_name,
        )
        return await self._track(poller, ref, target)

    async def _default_pool_name(self, ref: ClusterRef) -> str:
        tracked = self._default_pools.get(ref.resource_id)
        if tracked:
            return tracked
        observed = await self.get(ref)
        pool = observed["attributes"].get("default_node_pool")
        if not pool:
            msg = f"Cluster {ref.cluster_name} has no system node pool"
            raise RemoteOperationFailed(msg, target="default_node_pool")
        return str(pool["name"])

    async def create(self, ref: ClusterRef, target: str, payload: dict[str, Any]) -> RemoteResult:
        if target == "cluster":
            if payload.get("default_node_pool"):
                self._default_pools[ref.resource_id] = payload["default_node_pool"]["name"]
            return await self._put_cluster(ref, target, cluster_model(payload))
        if target == "default_node_pool":
            self._default_pools[ref.resource_id] = payload["name"]
            return await self._put_pool(ref, target, payload, mode="System", create=True)
        if target.startswith("node_pools/"):
            return await self._put_pool(ref, target, payload, mode=None, create=True)
        return await self._update_section(ref, target, payload)

    async def update(self, ref: ClusterRef, target: str, payload: dict[str, Any]) -> RemoteResult:
        if target == "default_node_pool":
            return await self._put_pool(ref, target, payload, mode="System", create=False)
        if target.startswith("node_pools/"):
            return await self._put_pool(ref, target, payload, mode=None, create=False)
        return await self._update_section(ref, target, payload)

    async def delete(self, ref: ClusterRef, target: str) -> RemoteResult:
        """Delete a target. A target that is already gone counts as deleted."""
        try:
            if target == "cluster":
                client = self._get_container_client()
                poller = await self._call(
                    ref, target, client.managed_clusters.begin_delete, ref.resource_group, ref.cluster_name
                )
                self._default_pools.pop(ref.resource_id, None)
                return await self._track(poller, ref, target)
            if target == "default_node_pool":
                return await self._delete_pool(ref, target, await self._default_pool_name(ref))
            if target.startswith("node_pools/"):
                return await self._delete_pool(ref, target, target.split("/", 1)[1])
            if target == "key_management_service":
                return await self._update_section(ref, target, None)
        except ResourceNotFound:
            log.info("azure_target_already_deleted", cluster=ref.cluster_name, target=target)
            return RemoteResult()
        msg = f"{target} cannot be deleted independently of the cluster"
        raise RemoteOperationFailed(msg, target=target)

    async def get(self, ref: ClusterRef) -> dict[str, Any]:
        client = self._get_container_client()
        cluster = await self._call(ref, "cluster", client.managed_clusters.get, ref.resource_group, ref.cluster_name)
        return {
            "attributes": cluster_attributes(cluster, ref.resource_group, self._default_pools.get(ref.resource_id)),
            "computed": cluster_computed(cluster),
        }

    async def poll(self, handle: OperationHandle) -> PollResult:
        tracked = self._operations.get(handle.operation_id)
        if tracked is None:
            msg = f"Unknown operation {handle.operation_id}"
            raise RemoteOperationFailed(msg, target=handle.target)
        if not await asyncio.to_thread(tracked.poller.done):
            return PollResult(status="running")

        del self._operations[handle.operation_id]
        try:
            result = await asyncio.to_thread(tracked.poller.result)
        except HttpResponseError as e:
            status = _POLLER_STATUS.get(str(tracked.poller.status()).lower(), "failed")
            log.error(
                "azure_operation_failed",
                operation=handle.operation_id,
                cluster=tracked.ref.cluster_name,
                target=tracked.target,
                status=status,
            )
            return PollResult(
                status="canceled" if status == "canceled" else "failed",
                error=scrub_sensitive_values(e.message or str(e)),
                error_code=e.error.code if e.error is not None else None,
            )
        return PollResult(status="succeeded", payload=self._payload(tracked.target, result))
