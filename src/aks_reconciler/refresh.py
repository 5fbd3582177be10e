"""Drift Detector: re-read remote state, keep write-only values, report drift."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from aks_reconciler.clients.base import RemoteClusterApi
from aks_reconciler.config import ClusterRef
from aks_reconciler.diff import CLUSTER_FIELDS, diff_attributes
from aks_reconciler.errors import ConvergenceError, ResourceNotFound
from aks_reconciler.models import ComputedAttributes, ResourceState
from aks_reconciler.schema import FieldSpec, non_round_trip_paths
from aks_reconciler.state import StateStore
from aks_reconciler.utils import get_path

log = structlog.get_logger()

_WRITE_ONLY_PATHS = non_round_trip_paths(CLUSTER_FIELDS)


def _leaf_default(fields: tuple[FieldSpec, ...], path: str) -> Any:
    """Default of the leaf at a dotted path (keyed segments written as ``name[]``)."""
    spec: FieldSpec | None = None
    children = fields
    for segment in path.split("."):
        name = segment.removesuffix("[]")
        spec = next((f for f in children if f.name == name), None)
        if spec is None:
            return None
        children = spec.children or tuple(c for variant in spec.variants.values() for c in variant)
    return spec.default if spec is not None else None


def _carry_over(block: dict[str, Any], previous: dict[str, Any] | None, leaf: str, default: Any) -> None:
    if leaf in block and block[leaf] is not None:
        return
    value = get_path(previous, leaf) if previous is not None else None
    block[leaf] = copy.deepcopy(value) if value is not None else default


def preserve_write_only(
    refreshed: dict[str, Any],
    previous: dict[str, Any] | None,
    paths: Sequence[str] = _WRITE_ONLY_PATHS,
) -> dict[str, Any]:
    """Copy values the remote never returns from ``previous`` into ``refreshed``.

    A value is only carried into a block that still exists remotely; without a
    previous value the field's default is used.
    """
    result = copy.deepcopy(refreshed)
    for path in paths:
        default = _leaf_default(CLUSTER_FIELDS, path)
        if "[]." in path:
            list_name, leaf = path.split("[].", 1)
            previous_entries = {e.get("name"): e for e in (previous or {}).get(list_name) or []}
            for entry in result.get(list_name) or []:
                _carry_over(entry, previous_entries.get(entry.get("name")), leaf, default)
            continue
        parent_path, _, leaf = path.rpartition(".")
        block = get_path(result, parent_path) if parent_path else result
        if not isinstance(block, dict):
            continue
        previous_block = get_path(previous, parent_path) if parent_path else previous
        _carry_over(block, previous_block if isinstance(previous_block, dict) else None, leaf, default)
    return result


class DriftDetector:
    """Reconstructs ResourceState from the remote API."""

    def __init__(self, client: RemoteClusterApi, store: StateStore | None = None) -> None:
        self._client = client
        self._store = store or StateStore()

    async def _read(self, resource_id: str, previous: ResourceState | None) -> ResourceState:
        ref = ClusterRef.from_resource_id(resource_id)
        try:
            observed = await self._client.get(ref)
        except ResourceNotFound:
            log.warning("resource_not_found", cluster=ref.cluster_name)
            raise

        attributes = preserve_write_only(
            observed.get("attributes") or {},
            previous.attributes if previous is not None else None,
        )
        if previous is not None:
            drift = diff_attributes(attributes, previous.attributes)
            if drift:
                log.warning(
                    "drift_detected",
                    cluster=ref.cluster_name,
                    paths=[c.path for c in drift],
                    kinds=sorted({c.kind for c in drift}),
                )
        return ResourceState(
            resource_id=ref.resource_id,
            attributes=attributes,
            computed=ComputedAttributes.model_validate(observed.get("computed") or {}),
            serial=previous.serial if previous is not None else 0,
        )

    async def refresh(self, resource_id: str, previous: ResourceState | None = None) -> ResourceState:
        """Re-read ``resource_id`` and commit the result to the store.

        ``previous`` defaults to the store's current snapshot.

        Raises:
            ResourceNotFound: If the cluster no longer exists. The stale snapshot is dropped.
        """
        if previous is None:
            previous = self._store.snapshot()
            if previous is not None and previous.resource_id.lower() != resource_id.lower():
                previous = None
        try:
            state = await self._read(resource_id, previous)
        except ResourceNotFound:
            current = self._store.snapshot()
            if current is not None and current.resource_id.lower() == resource_id.lower():
                await self._store.commit(None)
            raise
        committed = await self._store.commit(state)
        log.info("state_refreshed", resource_id=resource_id, serial=committed.serial if committed else None)
        return committed or state

    async def refresh_many(
        self,
        resource_ids: Sequence[str],
        previous: Mapping[str, ResourceState] | None = None,
    ) -> dict[str, ResourceState | ConvergenceError]:
        """Read several clusters concurrently without touching the store.

        Each id maps to its refreshed state or to the ConvergenceError it raised.
        """
        previous = previous or {}
        tasks = [self._read(rid, previous.get(rid)) for rid in resource_ids]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        outputs: dict[str, ResourceState | ConvergenceError] = {}
        for rid, result in zip(resource_ids, results, strict=True):
            if isinstance(result, ConvergenceError):
                log.error("fan_out_refresh_failed", resource_id=rid, error=type(result).__name__)
                outputs[rid] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                outputs[rid] = result
        return outputs
