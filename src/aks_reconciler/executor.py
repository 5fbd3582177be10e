"""Remote Convergence Executor: issue planned calls, poll pending operations, fold confirmed results."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from graphlib import TopologicalSorter
from typing import Any, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from aks_reconciler.clients.base import OperationHandle, RemoteClusterApi, RemoteResult
from aks_reconciler.config import ClusterRef, ExecutorConfig
from aks_reconciler.errors import ConvergenceError, OperationTimedOut, RemoteOperationFailed, TransientFailure
from aks_reconciler.models import (
    ComputedAttributes,
    Diagnostic,
    OrderedPlan,
    RemoteCall,
    ResourceState,
    Step,
    scrub_sensitive_values,
)
from aks_reconciler.operations import Clock, LoopClock, PendingOperation
from aks_reconciler.state import StateStore
from aks_reconciler.utils import deep_merge, delete_path, set_path

log = structlog.get_logger()

T = TypeVar("T")


@dataclass
class ApplyResult:
    """Best-known state after an apply, with everything the caller needs to resume."""

    state: ResourceState | None
    diagnostics: list[Diagnostic] = field(default_factory=list)
    error: ConvergenceError | None = None
    completed_steps: list[str] = field(default_factory=list)
    skipped_steps: list[str] = field(default_factory=list)
    canceled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.canceled

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def _target_path(target: str) -> str:
    if target.startswith("node_pools/"):
        return f"node_pools[{target.split('/', 1)[1]}]"
    return target


def fold_call(
    state: ResourceState | None,
    ref: ClusterRef,
    call: RemoteCall,
    payload: dict[str, Any],
) -> ResourceState | None:
    """Fold one confirmed call into the running state.

    Deleting the cluster yields no state; every other call rewrites only its own
    target's slice of the attribute tree and merges any computed values returned.
    """
    if call.target == "cluster" and call.action == "delete":
        return None

    base = state or ResourceState(resource_id=ref.resource_id, attributes={})
    attributes = copy.deepcopy(base.attributes)
    computed = base.computed.model_dump()

    if call.target == "cluster":
        attributes.update(copy.deepcopy(call.payload or {}))
    elif call.action == "delete":
        delete_path(attributes, _target_path(call.target))
        if call.target.startswith("node_pools/"):
            computed["node_pool_states"].pop(call.target.split("/", 1)[1], None)
    else:
        set_path(attributes, _target_path(call.target), copy.deepcopy(call.payload))

    computed = deep_merge(computed, payload.get("computed") or {})
    return base.model_copy(
        update={
            "attributes": attributes,
            "computed": ComputedAttributes.model_validate(computed),
        }
    )


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "transient_failure_retrying",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=scrub_sensitive_values(str(exc)) if exc else None,
    )


class _ApplyRun:
    """Mutable bookkeeping for a single apply invocation."""

    def __init__(self, ref: ClusterRef, state: ResourceState | None, store: StateStore | None) -> None:
        self.ref = ref
        self.state = state
        self.store = store

    async def fold(self, call: RemoteCall, payload: dict[str, Any]) -> None:
        folded = fold_call(self.state, self.ref, call, payload)
        if self.store is not None:
            self.state = await self.store.commit(folded)
        elif folded is not None:
            self.state = folded.model_copy(update={"serial": folded.serial + 1})
        else:
            self.state = None


class ConvergenceExecutor:
    """Applies an OrderedPlan against an injected remote API client."""

    def __init__(
        self,
        client: RemoteClusterApi,
        config: ExecutorConfig | None = None,
        *,
        clock: Clock | None = None,
        store: StateStore | None = None,
    ) -> None:
        self._client = client
        self._config = config or ExecutorConfig()
        self._clock = clock or LoopClock()
        self._store = store

    async def _retrying(self, target: str, fn: Callable[[], Awaitable[T]]) -> T:
        cfg = self._config
        retrying = AsyncRetrying(
            stop=stop_after_attempt(cfg.max_attempts),
            wait=wait_exponential(multiplier=cfg.backoff_initial_seconds, max=cfg.backoff_max_seconds),
            retry=retry_if_exception_type(TransientFailure),
            sleep=self._clock.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await fn()
        except TransientFailure as e:
            log.error("transient_failure_exhausted", target=target, attempts=cfg.max_attempts)
            msg = f"{e.message} (gave up after {cfg.max_attempts} attempts)"
            raise RemoteOperationFailed(msg, target=target, remote_code=e.code, transient=True) from e
        msg = "retry loop exited without a result"
        raise RuntimeError(msg)

    async def _dispatch(self, ref: ClusterRef, call: RemoteCall) -> RemoteResult:
        if call.action == "create":
            return await self._client.create(ref, call.target, call.payload or {})
        if call.action == "update":
            return await self._client.update(ref, call.target, call.payload or {})
        return await self._client.delete(ref, call.target)

    async def _await_operation(self, handle: OperationHandle) -> dict[str, Any]:
        cfg = self._config
        op = PendingOperation(
            operation_id=handle.operation_id,
            target=handle.target,
            poll_interval=cfg.poll_interval_seconds,
            deadline=self._clock.now() + cfg.operation_timeout_seconds,
        )
        log.info("operation_pending", operation=op.operation_id, target=op.target, deadline=op.deadline)
        while True:
            result = await self._retrying(op.target, lambda: self._client.poll(handle))
            op.record(result)
            log.debug("operation_polled", operation=op.operation_id, status=op.status, polls=op.polls)
            if op.status == "succeeded":
                return op.payload
            if op.terminal:
                log.error("operation_failed", operation=op.operation_id, target=op.target, status=op.status)
                msg = op.error or f"Operation {op.operation_id} on {op.target} ended {op.status}"
                raise RemoteOperationFailed(msg, target=op.target, remote_code=op.error_code or op.status)
            if op.expired(self._clock.now()):
                log.error("operation_timed_out", operation=op.operation_id, target=op.target, polls=op.polls)
                raise OperationTimedOut(op.operation_id, op.target, op.deadline)
            await self._clock.sleep(op.poll_interval)

    async def _run_step(self, run: _ApplyRun, step: Step) -> None:
        log.info("step_started", step=step.id, kind=step.kind, calls=len(step.calls))
        for call in step.calls:
            result = await self._retrying(call.target, lambda call=call: self._dispatch(run.ref, call))
            payload = await self._await_operation(result.handle) if result.handle else result.payload
            await run.fold(call, payload)
            log.debug("call_confirmed", step=step.id, action=call.action, target=call.target)
        log.info("step_completed", step=step.id)

    async def apply(
        self,
        plan: OrderedPlan,
        ref: ClusterRef,
        state: ResourceState | None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> ApplyResult:
        """Apply every step of ``plan``, returning the best-known state.

        Steps whose predecessors have all succeeded run concurrently up to the
        configured limit. The first execution error stops dispatching; steps
        already in flight finish and nothing is rolled back. Setting ``cancel``
        has the same effect without an error.
        """
        run = _ApplyRun(ref, state, self._store)
        if plan.empty:
            return ApplyResult(state=state)

        log.info("apply_started", cluster=ref.cluster_name, steps=len(plan.steps))
        order = {s.id: i for i, s in enumerate(plan.steps)}
        sorter: TopologicalSorter[str] = TopologicalSorter(
            {s.id: set(plan.dependencies.get(s.id, [])) for s in plan.steps}
        )
        sorter.prepare()

        ready: list[str] = []
        in_flight: dict[asyncio.Task[None], str] = {}
        completed: list[str] = []
        failed: list[str] = []
        error: ConvergenceError | None = None
        unexpected: BaseException | None = None
        canceled = False
        limit = max(1, self._config.concurrency_limit)

        while True:
            if cancel is not None and cancel.is_set() and not canceled:
                canceled = True
                log.warning("apply_cancel_requested", in_flight=sorted(in_flight.values()))
            stopping = canceled or error is not None or unexpected is not None
            if not stopping:
                ready.extend(sorted(sorter.get_ready(), key=order.__getitem__))
                while ready and len(in_flight) < limit:
                    step_id = ready.pop(0)
                    task = asyncio.create_task(self._run_step(run, plan.step(step_id)))
                    in_flight[task] = step_id
            if not in_flight:
                break
            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: order[in_flight[t]]):
                step_id = in_flight.pop(task)
                exc = task.exception()
                if exc is None:
                    completed.append(step_id)
                    sorter.done(step_id)
                    continue
                failed.append(step_id)
                if isinstance(exc, ConvergenceError):
                    log.error("step_failed", step=step_id, error=scrub_sensitive_values(str(exc)))
                    error = error or exc
                else:
                    unexpected = unexpected or exc

        if unexpected is not None:
            raise unexpected

        skipped = [s.id for s in plan.steps if s.id not in completed and s.id not in failed]
        diagnostics: list[Diagnostic] = []
        if error is not None:
            diagnostics.append(error.diagnostic())
        if canceled and skipped:
            diagnostics.append(
                Diagnostic(
                    severity="warning",
                    code="ApplyCanceled",
                    summary=f"apply canceled before {len(skipped)} step(s) started",
                )
            )
        for step_id in skipped:
            diagnostics.append(
                Diagnostic(
                    severity="warning",
                    code="StepNotApplied",
                    summary=f"step {step_id} was not applied",
                    path=step_id,
                )
            )

        log.info(
            "apply_finished",
            cluster=ref.cluster_name,
            completed=len(completed),
            failed=failed,
            skipped=len(skipped),
            canceled=canceled,
        )
        return ApplyResult(
            state=run.state,
            diagnostics=diagnostics,
            error=error,
            completed_steps=completed,
            skipped_steps=skipped,
            canceled=canceled,
        )
