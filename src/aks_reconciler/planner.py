"""Operation Planner: group changes into steps, order them as a DAG, and expand replaces into calls."""

from __future__ import annotations

from collections.abc import Iterable
from graphlib import CycleError, TopologicalSorter
from typing import Any

import structlog

from aks_reconciler.config import ReplacePolicies
from aks_reconciler.diff import ROOT_TARGET, cluster_payload, root_payload
from aks_reconciler.errors import InvalidConfiguration, UnsatisfiableDependency
from aks_reconciler.models import CHANGE_PRIORITY, Change, ChangeKind, ChangeSet, OrderedPlan, RemoteCall, Step

log = structlog.get_logger()

# Direct parents of each kind of target. A parent's call must complete before its child's.
# Cluster, identity and key management writes all PUT the managed cluster document, which
# carries the agent pool profiles, so they form one chain ahead of every node pool write.
TARGET_PARENTS: dict[str, tuple[str, ...]] = {
    "identity": (ROOT_TARGET,),
    "key_management_service": ("identity",),
    "default_node_pool": ("key_management_service",),
    "node_pools": ("default_node_pool",),
}

# Sub-resources carried inside the cluster's own create payload.
_EMBEDDED_TARGETS = ("identity", "default_node_pool")


def target_kind(target: str) -> str:
    return target.split("/", 1)[0]


def ancestors(kind: str) -> set[str]:
    found: set[str] = set()
    pending = list(TARGET_PARENTS.get(kind, ()))
    while pending:
        parent = pending.pop()
        if parent not in found:
            found.add(parent)
            pending.extend(TARGET_PARENTS.get(parent, ()))
    return found


def _step_kind(changes: list[Change]) -> ChangeKind:
    return max((c.kind for c in changes), key=lambda kind: CHANGE_PRIORITY[kind])


def _node_pool_entry(desired: dict[str, Any], name: str) -> dict[str, Any] | None:
    for entry in desired.get("node_pools") or []:
        if entry.get("name") == name:
            return entry
    return None


def target_payload(target: str, desired: dict[str, Any]) -> dict[str, Any] | None:
    """The slice of the desired tree a target's create/update call sends."""
    if target == ROOT_TARGET:
        return root_payload(desired)
    if target.startswith("node_pools/"):
        return _node_pool_entry(desired, target.split("/", 1)[1])
    return desired.get(target)


def _rotation_calls(desired: dict[str, Any]) -> list[RemoteCall]:
    pool = dict(desired["default_node_pool"])
    temporary = pool.get("temporary_name_for_rotation")
    if not temporary:
        msg = "temporary_name_for_rotation must be set to replace the default node pool"
        raise InvalidConfiguration(msg, path="default_node_pool.temporary_name_for_rotation")
    temporary_pool = {k: v for k, v in pool.items() if k != "temporary_name_for_rotation"}
    temporary_pool.update(name=temporary, mode="System")
    temporary_target = f"node_pools/{temporary}"
    return [
        RemoteCall(action="create", target=temporary_target, payload=temporary_pool),
        RemoteCall(action="delete", target="default_node_pool"),
        RemoteCall(action="create", target="default_node_pool", payload=pool),
        RemoteCall(action="delete", target=temporary_target),
    ]


def _calls(target: str, kind: ChangeKind, desired: dict[str, Any], policies: ReplacePolicies) -> list[RemoteCall]:
    if target == ROOT_TARGET and kind in ("create", "replace"):
        payload = cluster_payload(desired)
    else:
        payload = target_payload(target, desired)

    if kind == "create":
        return [RemoteCall(action="create", target=target, payload=payload)]
    if kind == "update-in-place":
        return [RemoteCall(action="update", target=target, payload=payload)]
    if kind == "delete":
        return [RemoteCall(action="delete", target=target)]
    if policies.for_target(target) == "rotate" and target == "default_node_pool":
        return _rotation_calls(desired)
    return [
        RemoteCall(action="delete", target=target),
        RemoteCall(action="create", target=target, payload=payload),
    ]


def _group(change_set: ChangeSet) -> dict[str, list[Change]]:
    grouped: dict[str, list[Change]] = {}
    for change in change_set.actionable:
        grouped.setdefault(change.target, []).append(change)

    cluster_changes = grouped.get(ROOT_TARGET)
    if not cluster_changes:
        return grouped
    cluster_kind = _step_kind(cluster_changes)
    if cluster_kind not in ("create", "replace"):
        return grouped

    # Identity and the default pool ride along with the cluster's create call.
    for embedded in _EMBEDDED_TARGETS:
        cluster_changes.extend(grouped.pop(embedded, []))

    if cluster_kind == "replace":
        # Everything else was destroyed with the old cluster: drop deletes, re-create what is desired.
        desired = change_set.desired
        for target in list(grouped):
            if target != ROOT_TARGET and target not in _EMBEDDED_TARGETS:
                del grouped[target]
        if desired.get("key_management_service") is not None:
            grouped["key_management_service"] = [
                Change(
                    kind="create",
                    path="key_management_service",
                    target="key_management_service",
                    after=desired["key_management_service"],
                    reason="re-created with the cluster",
                )
            ]
        for entry in desired.get("node_pools") or []:
            target = f"node_pools/{entry['name']}"
            grouped[target] = [
                Change(
                    kind="create",
                    path=f"node_pools[{entry['name']}]",
                    target=target,
                    after=entry,
                    reason="re-created with the cluster",
                )
            ]
    return grouped


def _matches(pattern: str, step_id: str) -> bool:
    return step_id == pattern or step_id.startswith(f"{pattern}/")


def _dependencies(
    steps: dict[str, Step],
    extra_dependencies: Iterable[tuple[str, str]],
) -> dict[str, set[str]]:
    graph: dict[str, set[str]] = {sid: set() for sid in steps}
    for before in steps.values():
        for after in steps.values():
            if before.id == after.id or target_kind(before.target) not in ancestors(target_kind(after.target)):
                continue
            # A dependent being deleted goes first so its parent can change underneath it.
            if after.kind == "delete" and before.kind not in ("create", "replace"):
                graph[before.id].add(after.id)
            else:
                graph[after.id].add(before.id)
    for first, second in extra_dependencies:
        for before_id in steps:
            if not _matches(first, before_id):
                continue
            for after_id in steps:
                if after_id != before_id and _matches(second, after_id):
                    graph[after_id].add(before_id)
    return graph


def plan(
    change_set: ChangeSet,
    *,
    policies: ReplacePolicies | None = None,
    extra_dependencies: Iterable[tuple[str, str]] = (),
) -> OrderedPlan:
    """Order a ChangeSet into steps respecting the dependencies between remote targets.

    Args:
        change_set: Output of the diff engine.
        policies: Replace policy per kind of sub-resource.
        extra_dependencies: Additional ``(before, after)`` target edges; a target
            prefix such as ``node_pools`` matches every node pool.

    Raises:
        UnsatisfiableDependency: If the resulting graph has a cycle.
        InvalidConfiguration: If a replace cannot be carried out under its policy.
    """
    policies = policies or ReplacePolicies()
    grouped = _group(change_set)
    if not grouped:
        return OrderedPlan(resource_id=change_set.resource_id)

    steps: dict[str, Step] = {}
    for target, changes in grouped.items():
        kind = _step_kind(changes)
        steps[target] = Step(
            id=target,
            target=target,
            kind=kind,
            changes=changes,
            calls=_calls(target, kind, change_set.desired, policies),
        )

    graph = _dependencies(steps, extra_dependencies)
    sorter: TopologicalSorter[str] = TopologicalSorter(graph)
    try:
        sorter.prepare()
    except CycleError as e:
        log.error("plan_cycle_detected", cycle=e.args[1])
        raise UnsatisfiableDependency(e.args[1]) from None

    index = {sid: i for i, sid in enumerate(steps)}
    order: list[str] = []
    batches: list[list[str]] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready(), key=index.__getitem__)
        batches.append(ready)
        order.extend(ready)
        sorter.done(*ready)

    ordered = OrderedPlan(
        resource_id=change_set.resource_id,
        steps=[steps[sid] for sid in order],
        dependencies={sid: sorted(graph[sid], key=index.__getitem__) for sid in order},
        batches=batches,
    )
    log.info("plan_built", steps=len(ordered.steps), batches=len(batches), order=order)
    return ordered
