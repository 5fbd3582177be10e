"""Tests for executor.py: folding, polling, deadlines, retries, cancellation and concurrency."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from aks_reconciler.clients.base import PollResult
from aks_reconciler.config import ClusterRef, ExecutorConfig
from aks_reconciler.diff import diff
from aks_reconciler.errors import OperationTimedOut, RemoteOperationFailed, TransientFailure
from aks_reconciler.executor import ConvergenceExecutor, fold_call
from aks_reconciler.models import ClusterSpec, RemoteCall, ResourceState
from aks_reconciler.operations import VirtualClock
from aks_reconciler.planner import plan
from aks_reconciler.state import StateStore


def _pool(name: str, **overrides: Any) -> dict[str, Any]:
    pool = {"name": name, "vm_size": "Standard_D4s_v3", "node_count": 1}
    pool.update(overrides)
    return pool


class TestFoldCall:
    def test_cluster_create_starts_state(self, ref: ClusterRef) -> None:
        call = RemoteCall(action="create", target="cluster", payload={"name": "aks-prod", "tags": {}})
        state = fold_call(None, ref, call, {"computed": {"fqdn": "aks.example"}})
        assert state is not None
        assert state.resource_id == ref.resource_id
        assert state.attributes == {"name": "aks-prod", "tags": {}}
        assert state.computed.fqdn == "aks.example"

    def test_cluster_delete_clears_state(self, ref: ClusterRef) -> None:
        state = ResourceState(resource_id=ref.resource_id, attributes={"name": "aks-prod"})
        assert fold_call(state, ref, RemoteCall(action="delete", target="cluster"), {}) is None

    def test_node_pool_create_and_delete(self, ref: ClusterRef) -> None:
        state = ResourceState(resource_id=ref.resource_id, attributes={"node_pools": []})
        created = fold_call(
            state,
            ref,
            RemoteCall(action="create", target="node_pools/gpu", payload=_pool("gpu")),
            {"computed": {"node_pool_states": {"gpu": "Succeeded"}}},
        )
        assert created is not None
        assert created.attributes["node_pools"] == [_pool("gpu")]
        deleted = fold_call(created, ref, RemoteCall(action="delete", target="node_pools/gpu"), {})
        assert deleted is not None
        assert deleted.attributes["node_pools"] == []
        assert deleted.computed.node_pool_states == {}

    def test_sub_resource_delete_leaves_partial_state(self, ref: ClusterRef) -> None:
        state = ResourceState(resource_id=ref.resource_id, attributes={"default_node_pool": _pool("default")})
        folded = fold_call(state, ref, RemoteCall(action="delete", target="default_node_pool"), {})
        assert folded is not None
        assert folded.attributes["default_node_pool"] is None
        assert state.attributes["default_node_pool"] == _pool("default")


class TestApply:
    async def test_create_from_scratch(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        spec = make_spec(node_pools=[_pool("gpu")])
        store = StateStore()
        executor = ConvergenceExecutor(remote, executor_config, clock=clock, store=store)
        result = await executor.apply(plan(diff(spec, None)), ref, None)

        assert result.ok
        assert result.completed_steps == ["cluster", "node_pools/gpu"]
        assert remote.calls == [("create", "cluster"), ("create", "node_pools/gpu")]
        assert result.state is not None
        assert result.state.serial == 2
        assert result.state.computed.node_pool_states == {"default": "Succeeded", "gpu": "Succeeded"}
        assert store.snapshot() == result.state
        assert diff(spec, result.state).empty

    async def test_empty_plan_makes_no_calls(
        self,
        make_spec: Callable[..., ClusterSpec],
        make_state: Callable[..., ResourceState],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        spec = make_spec()
        state = make_state(spec)
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(spec, state)), ref, state)
        assert result.state is state
        assert remote.calls == []

    async def test_polls_pending_operations(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        remote.async_ops = True
        remote.polls_until_done = 3
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(), None)), ref, None)
        assert result.ok
        assert clock.sleeps == [15, 15]
        assert result.state is not None
        assert result.state.computed.provisioning_state == "Succeeded"

    async def test_deadline_expiry(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        remote.async_ops = True
        remote.never_finish.add("cluster")
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(), None)), ref, None)

        assert isinstance(result.error, OperationTimedOut)
        assert result.error.target == "cluster"
        assert result.error.deadline == 300
        assert executor_config.operation_timeout_seconds <= clock.now()
        assert clock.now() <= executor_config.operation_timeout_seconds + executor_config.poll_interval_seconds
        assert result.state is None
        assert result.diagnostics[0].code == "OperationTimedOut"

    async def test_failed_operation(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        remote.async_ops = True
        remote.terminal["cluster"] = PollResult(status="failed", error="quota exceeded", error_code="QuotaExceeded")
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(), None)), ref, None)
        assert isinstance(result.error, RemoteOperationFailed)
        assert result.error.remote_code == "QuotaExceeded"
        assert not result.error.transient

    async def test_each_call_of_a_step_is_issued_once(
        self,
        make_spec: Callable[..., ClusterSpec],
        make_state: Callable[..., ResourceState],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        state = make_state(make_spec())
        remote.remote = copy.deepcopy(state.attributes)
        remote.async_ops = True
        pool = {**make_spec().default_node_pool.model_dump(mode="json"), "vm_size": "Standard_D8s_v3"}
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(default_node_pool=pool), state)), ref, state)

        assert result.ok
        assert remote.calls == [
            ("create", "node_pools/tmpdefault"),
            ("delete", "default_node_pool"),
            ("create", "default_node_pool"),
            ("delete", "node_pools/tmpdefault"),
        ]


class TestRetries:
    async def test_transient_failures_are_retried(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        remote.fail("create", "cluster", TransientFailure("throttled"), TransientFailure("throttled"))
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(), None)), ref, None)
        assert result.ok
        assert remote.calls == [("create", "cluster")] * 3
        assert clock.sleeps == [1, 2]

    async def test_exhausted_retries_fail(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        remote.fail("create", "cluster", *(TransientFailure("throttled") for _ in range(3)))
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(), None)), ref, None)
        assert isinstance(result.error, RemoteOperationFailed)
        assert result.error.transient
        assert len(remote.calls) == executor_config.max_attempts

    async def test_backoff_is_capped(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        config = replace(executor_config, max_attempts=6, backoff_max_seconds=5)
        remote.fail("create", "cluster", *(TransientFailure("throttled") for _ in range(5)))
        executor = ConvergenceExecutor(remote, config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(), None)), ref, None)
        assert result.ok
        assert clock.sleeps == [1, 2, 4, 5, 5]

    async def test_permanent_failure_is_not_retried(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        remote.fail("create", "cluster", RemoteOperationFailed("bad request", target="cluster", remote_code="400"))
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(make_spec(), None)), ref, None)
        assert isinstance(result.error, RemoteOperationFailed)
        assert remote.calls == [("create", "cluster")]
        assert clock.sleeps == []


class TestPartialFailure:
    async def test_failure_keeps_confirmed_progress(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        spec = make_spec(node_pools=[_pool("gpu")])
        remote.fail("create", "node_pools/gpu", RemoteOperationFailed("SKU not available", target="node_pools/gpu"))
        store = StateStore()
        executor = ConvergenceExecutor(remote, executor_config, clock=clock, store=store)
        result = await executor.apply(plan(diff(spec, None)), ref, None)

        assert result.completed_steps == ["cluster"]
        assert result.skipped_steps == []
        assert result.state is not None
        assert store.snapshot() == result.state
        # The next diff only retries what failed.
        follow_up = diff(spec, result.state)
        assert [(c.kind, c.target) for c in follow_up.actionable] == [("create", "node_pools/gpu")]

    async def test_dependents_of_failed_step_are_skipped(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        spec = make_spec(node_pools=[_pool("gpu")])
        remote.fail("create", "cluster", RemoteOperationFailed("conflict", target="cluster", remote_code="409"))
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(spec, None)), ref, None)
        assert result.skipped_steps == ["node_pools/gpu"]
        assert result.state is None
        assert {d.code for d in result.diagnostics} == {"RemoteOperationFailed", "StepNotApplied"}


class TestCancellation:
    async def test_cancel_stops_new_steps(
        self,
        make_spec: Callable[..., ClusterSpec],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        cancel = asyncio.Event()
        remote.on_call = lambda action, target: cancel.set()
        spec = make_spec(node_pools=[_pool("gpu"), _pool("web")])
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(spec, None)), ref, None, cancel=cancel)

        assert result.canceled
        assert result.error is None
        assert result.completed_steps == ["cluster"]
        assert result.skipped_steps == ["node_pools/gpu", "node_pools/web"]
        assert remote.calls == [("create", "cluster")]
        assert result.state is not None

    async def test_cancel_lets_dispatched_steps_finish(
        self,
        make_spec: Callable[..., ClusterSpec],
        make_state: Callable[..., ResourceState],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        cancel = asyncio.Event()
        remote.on_call = lambda action, target: cancel.set()
        state = make_state(make_spec())
        remote.remote = copy.deepcopy(state.attributes)
        spec = make_spec(node_pools=[_pool("a"), _pool("b")])
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(spec, state)), ref, state, cancel=cancel)

        assert result.canceled
        assert sorted(result.completed_steps) == ["node_pools/a", "node_pools/b"]
        assert result.skipped_steps == []


class TestConcurrency:
    async def test_respects_concurrency_limit(
        self,
        make_spec: Callable[..., ClusterSpec],
        make_state: Callable[..., ResourceState],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        state = make_state(make_spec())
        remote.remote = copy.deepcopy(state.attributes)
        spec = make_spec(node_pools=[_pool("a"), _pool("b"), _pool("c")])
        executor = ConvergenceExecutor(remote, replace(executor_config, concurrency_limit=2), clock=clock)
        result = await executor.apply(plan(diff(spec, state)), ref, state)
        assert result.ok
        assert remote.max_in_flight == 2
        assert len(remote.calls) == 3

    async def test_independent_steps_overlap(
        self,
        make_spec: Callable[..., ClusterSpec],
        make_state: Callable[..., ResourceState],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
    ) -> None:
        state = make_state(make_spec())
        remote.remote = copy.deepcopy(state.attributes)
        spec = make_spec(node_pools=[_pool("a"), _pool("b"), _pool("c")])
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(spec, state)), ref, state)
        assert result.ok
        assert remote.max_in_flight == 3
        assert {p["name"] for p in result.state.attributes["node_pools"]} == {"a", "b", "c"}

    async def test_dependent_waits_for_parent(
        self,
        make_spec: Callable[..., ClusterSpec],
        make_state: Callable[..., ResourceState],
        remote: Any,
        clock: VirtualClock,
        executor_config: ExecutorConfig,
        ref: ClusterRef,
        identity_id: str,
        key_id: str,
    ) -> None:
        state = make_state(make_spec())
        remote.remote = copy.deepcopy(state.attributes)
        spec = make_spec(
            identity={"type": "UserAssigned", "identity_ids": [identity_id]},
            key_management_service={"key_vault_key_id": key_id},
        )
        executor = ConvergenceExecutor(remote, executor_config, clock=clock)
        result = await executor.apply(plan(diff(spec, state)), ref, state)
        assert result.ok
        assert remote.calls == [("update", "identity"), ("create", "key_management_service")]
        assert remote.max_in_flight == 1
