"""Boundary contract between the engine and a remote control-plane API client."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from aks_reconciler.config import ClusterRef

OperationStatus = Literal["running", "succeeded", "failed", "canceled"]


@dataclass(frozen=True)
class OperationHandle:
    """Opaque reference to an asynchronous remote mutation."""

    operation_id: str
    target: str


@dataclass(frozen=True)
class RemoteResult:
    """Outcome of issuing a mutating call: either a synchronous payload or an operation handle."""

    payload: dict[str, Any] = field(default_factory=dict)
    handle: OperationHandle | None = None

    @property
    def pending(self) -> bool:
        return self.handle is not None


@dataclass(frozen=True)
class PollResult:
    """Status of an operation; ``payload`` is set on success, ``error``/``error_code`` on failure."""

    status: OperationStatus
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None


class RemoteClusterApi(Protocol):
    """Typed create/update/delete/get calls per sub-resource, plus poll-by-handle.

    Targets are ``cluster``, ``identity``, ``key_management_service``,
    ``default_node_pool`` and ``node_pools/<name>``. Implementations raise
    ``TransientFailure`` for retryable conditions, ``RemoteOperationFailed`` when
    the remote rejects a call and ``ResourceNotFound`` from ``get`` when the
    cluster no longer exists.
    """

    async def create(self, ref: ClusterRef, target: str, payload: dict[str, Any]) -> RemoteResult: ...

    async def update(self, ref: ClusterRef, target: str, payload: dict[str, Any]) -> RemoteResult: ...

    async def delete(self, ref: ClusterRef, target: str) -> RemoteResult: ...

    async def get(self, ref: ClusterRef) -> dict[str, Any]:
        """Return ``{"attributes": {...}, "computed": {...}}`` for the cluster."""
        ...

    async def poll(self, handle: OperationHandle) -> PollResult: ...
