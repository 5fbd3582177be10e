"""Inbound facade: validate, diff, plan, apply and refresh one managed cluster."""

from __future__ import annotations

import asyncio

import structlog

from aks_reconciler.clients import load_aks_client
from aks_reconciler.clients.base import RemoteClusterApi
from aks_reconciler.config import EngineConfig, load_engine_config, validate_engine_config
from aks_reconciler.diff import diff
from aks_reconciler.executor import ApplyResult, ConvergenceExecutor
from aks_reconciler.logs import configure_logging
from aks_reconciler.models import ChangeSet, ClusterSpec, OrderedPlan, ResourceState, ValidationResult
from aks_reconciler.operations import Clock
from aks_reconciler.planner import plan
from aks_reconciler.refresh import DriftDetector
from aks_reconciler.state import StateStore
from aks_reconciler.validation import ensure_valid, validate

log = structlog.get_logger()


class ClusterReconciler:
    """Converges a managed cluster onto a ClusterSpec through an injected remote client."""

    def __init__(
        self,
        client: RemoteClusterApi,
        config: EngineConfig | None = None,
        *,
        clock: Clock | None = None,
        store: StateStore | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self.store = store or StateStore()
        self._executor = ConvergenceExecutor(client, self._config.executor, clock=clock, store=self.store)
        self._detector = DriftDetector(client, self.store)

    @classmethod
    def from_azure(cls, config: EngineConfig | None = None, *, store: StateStore | None = None) -> ClusterReconciler:
        """Build a reconciler against the AKS management plane.

        Also configures structlog at ``config.log_level``. Raises RuntimeError if
        the engine configuration is invalid.
        """
        config = config or load_engine_config()
        validate_engine_config(config)
        configure_logging(config.log_level)
        return cls(load_aks_client(config), config, store=store)

    def validate(self, spec: ClusterSpec) -> ValidationResult:
        return validate(spec)

    def diff(self, spec: ClusterSpec, state: ResourceState | None = None, *, include_noop: bool = False) -> ChangeSet:
        return diff(spec, state, include_noop=include_noop)

    def plan(self, spec: ClusterSpec, state: ResourceState | None = None) -> OrderedPlan:
        """Validate, diff and order. Raises InvalidConfiguration or UnsatisfiableDependency."""
        ensure_valid(spec)
        return plan(
            diff(spec, state),
            policies=self._config.replace_policies,
            extra_dependencies=self._config.extra_dependencies,
        )

    async def apply(
        self,
        spec: ClusterSpec,
        state: ResourceState | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Converge the remote cluster onto ``spec``.

        ``state`` defaults to the store's last committed snapshot. Validation and
        planning errors raise before any remote call; execution errors are
        returned on the result together with the best-known state.
        """
        if state is None:
            state = self.store.snapshot()
        ordered = self.plan(spec, state)
        if ordered.empty:
            log.info("apply_no_changes", cluster=spec.name)
            return ApplyResult(state=state)
        ref = self._config.cluster_ref(spec.resource_group_name, spec.name)
        return await self._executor.apply(ordered, ref, state, cancel=cancel)

    async def refresh(self, resource_id: str) -> ResourceState:
        return await self._detector.refresh(resource_id)
