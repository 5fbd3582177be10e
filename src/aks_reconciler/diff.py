"""Diff Engine: classify every difference between a desired spec and the last known state."""

from __future__ import annotations

from typing import Any

import structlog

from aks_reconciler.models import Change, ChangeSet, ClusterSpec, ResourceState
from aks_reconciler.schema import FieldSpec, block_defaults, describe_model, values_equal

log = structlog.get_logger()

ROOT_TARGET = "cluster"

CLUSTER_FIELDS: tuple[FieldSpec, ...] = describe_model(ClusterSpec)


def separately_created(fields: tuple[FieldSpec, ...] = CLUSTER_FIELDS) -> list[FieldSpec]:
    """Sub-resources that are not part of the cluster's own create payload."""
    return [f for f in fields if f.sub_resource and not f.create_with_parent]


def cluster_payload(desired: dict[str, Any], fields: tuple[FieldSpec, ...] = CLUSTER_FIELDS) -> dict[str, Any]:
    """The part of the desired tree sent when creating the cluster itself."""
    excluded = {f.name for f in separately_created(fields)}
    return {k: v for k, v in desired.items() if k not in excluded}


def root_payload(desired: dict[str, Any], fields: tuple[FieldSpec, ...] = CLUSTER_FIELDS) -> dict[str, Any]:
    """Root-level attributes and plain blocks, without any sub-resource."""
    excluded = {f.name for f in fields if f.sub_resource}
    return {k: v for k, v in desired.items() if k not in excluded}


class _Walker:
    def __init__(self, include_noop: bool) -> None:
        self.include_noop = include_noop

    def _noop(self, path: str, target: str, value: Any) -> list[Change]:
        if self.include_noop:
            return [Change(kind="no-op", path=path, target=target, before=value, after=value)]
        return []

    def walk(
        self,
        fields: tuple[FieldSpec, ...],
        desired: dict[str, Any] | None,
        current: dict[str, Any] | None,
        prefix: str,
        target: str,
    ) -> list[Change]:
        desired = desired or {}
        current = current or {}
        changes: list[Change] = []
        for spec in fields:
            changes.extend(self.field(spec, desired.get(spec.name), current.get(spec.name), prefix, target))
        return changes

    def field(self, spec: FieldSpec, desired: Any, current: Any, prefix: str, target: str) -> list[Change]:
        path = f"{prefix}{spec.name}"
        if spec.kind == "leaf":
            return self.leaf(spec, desired, current, path, target)
        if spec.kind == "keyed_list":
            return self.keyed_list(spec, desired, current, path)
        if spec.sub_resource:
            return self.sub_resource(spec, desired, current, path)
        return self.block(spec, desired, current, path, target)

    def leaf(self, spec: FieldSpec, desired: Any, current: Any, path: str, target: str) -> list[Change]:
        if values_equal(spec, desired, current):
            return self._noop(path, target, current)
        kind = "replace" if spec.force_new else "update-in-place"
        return [Change(kind=kind, path=path, target=target, before=current, after=desired)]

    def block(self, spec: FieldSpec, desired: Any, current: Any, path: str, target: str) -> list[Change]:
        if desired is None and current is None:
            return self._noop(path, target, None)
        # A block missing on either side is compared as its defaults, so removing a
        # plain block reverts its fields to their defaults in place.
        defaults = block_defaults(spec)
        return self.walk(
            spec.children,
            desired if desired is not None else defaults,
            current if current is not None else defaults,
            f"{path}.",
            target,
        )

    def sub_resource(self, spec: FieldSpec, desired: Any, current: Any, path: str) -> list[Change]:
        target = spec.sub_resource or path
        if desired is None and current is None:
            return self._noop(path, target, None)
        if desired is None:
            return [Change(kind="delete", path=path, target=target, before=current)]
        if current is None:
            return [Change(kind="create", path=path, target=target, after=desired)]
        if spec.kind == "tagged":
            tag = spec.tag or "type"
            if desired.get(tag) != current.get(tag):
                kind = "update-in-place" if spec.convertible else "replace"
                return [
                    Change(
                        kind=kind,
                        path=path,
                        target=target,
                        before=current,
                        after=desired,
                        reason=f"{tag} changes from {current.get(tag)} to {desired.get(tag)}",
                    )
                ]
            return self.walk(spec.variants[desired[tag]], desired, current, f"{path}.", target)
        return self.walk(spec.children, desired, current, f"{path}.", target)

    def keyed_list(self, spec: FieldSpec, desired: Any, current: Any, path: str) -> list[Change]:
        key = spec.key or "name"
        wanted = {entry[key]: entry for entry in desired or []}
        existing = {entry[key]: entry for entry in current or []}
        changes: list[Change] = []
        for name, entry in wanted.items():
            entry_path = f"{path}[{name}]"
            target = f"{spec.sub_resource}/{name}"
            if name not in existing:
                changes.append(Change(kind="create", path=entry_path, target=target, after=entry))
                continue
            changes.extend(self.walk(spec.children, entry, existing[name], f"{entry_path}.", target))
        for name, entry in existing.items():
            if name not in wanted:
                changes.append(
                    Change(kind="delete", path=f"{path}[{name}]", target=f"{spec.sub_resource}/{name}", before=entry)
                )
        return changes


def _initial_changes(desired: dict[str, Any], fields: tuple[FieldSpec, ...]) -> list[Change]:
    changes = [Change(kind="create", path="", target=ROOT_TARGET, after=cluster_payload(desired, fields))]
    for spec in separately_created(fields):
        value = desired.get(spec.name)
        if spec.kind == "keyed_list":
            key = spec.key or "name"
            for entry in value or []:
                changes.append(
                    Change(
                        kind="create",
                        path=f"{spec.name}[{entry[key]}]",
                        target=f"{spec.sub_resource}/{entry[key]}",
                        after=entry,
                    )
                )
        elif value is not None:
            changes.append(Change(kind="create", path=spec.name, target=spec.sub_resource or spec.name, after=value))
    return changes


def _existing_sub_resources(current: dict[str, Any], fields: tuple[FieldSpec, ...]) -> list[str]:
    targets: list[str] = []
    for spec in fields:
        if not spec.sub_resource:
            continue
        value = current.get(spec.name)
        if spec.kind == "keyed_list":
            key = spec.key or "name"
            targets.extend(f"{spec.sub_resource}/{entry[key]}" for entry in value or [])
        elif value is not None:
            targets.append(spec.sub_resource)
    return targets


def diff_attributes(
    desired: dict[str, Any],
    current: dict[str, Any],
    *,
    fields: tuple[FieldSpec, ...] = CLUSTER_FIELDS,
    include_noop: bool = False,
) -> list[Change]:
    """Diff two attribute trees of the same schema.

    Parent blocks that invalidate children are diffed first. When such a parent
    changes, each invalidated child still present in the desired tree is
    evaluated against the post-change parent, i.e. as absent, and is re-created.
    """
    walker = _Walker(include_noop)
    by_name = {f.name: f for f in fields}

    parent_changes: dict[str, list[Change]] = {}
    projected = dict(current)
    reasons: dict[str, str] = {}
    for spec in fields:
        if not spec.invalidates:
            continue
        found = walker.field(spec, desired.get(spec.name), current.get(spec.name), "", ROOT_TARGET)
        parent_changes[spec.name] = found
        if not any(c.kind != "no-op" for c in found):
            continue
        for child in spec.invalidates:
            if desired.get(child) is not None and current.get(child) is not None:
                projected[child] = None
                reasons[by_name[child].sub_resource or child] = f"re-applied after {spec.name} change"

    changes: list[Change] = []
    for spec in fields:
        if spec.name in parent_changes:
            changes.extend(parent_changes[spec.name])
            continue
        changes.extend(walker.field(spec, desired.get(spec.name), projected.get(spec.name), "", ROOT_TARGET))

    for change in changes:
        if change.kind == "create" and change.target in reasons:
            change.reason = reasons[change.target]
            change.before = current.get(change.path)
    return changes


def diff(spec: ClusterSpec, state: ResourceState | None, *, include_noop: bool = False) -> ChangeSet:
    """Compute the ChangeSet that converges ``state`` onto ``spec``.

    Without a state, the cluster and each separately created sub-resource are
    created. A cluster-level replace lists every existing sub-resource it destroys.
    """
    desired = spec.model_dump(mode="json")
    if state is None:
        changes = _initial_changes(desired, CLUSTER_FIELDS)
        change_set = ChangeSet(desired=desired, changes=changes)
        log.debug("diff_computed", cluster=spec.name, changes=len(changes), initial=True)
        return change_set

    changes = diff_attributes(desired, state.attributes, include_noop=include_noop)
    for change in changes:
        if change.target == ROOT_TARGET and change.kind == "replace":
            change.cascades = _existing_sub_resources(state.attributes, CLUSTER_FIELDS)
            break

    change_set = ChangeSet(resource_id=state.resource_id, desired=desired, changes=changes)
    log.debug(
        "diff_computed",
        cluster=spec.name,
        changes=len(change_set.actionable),
        kinds=sorted({c.kind for c in change_set.actionable}),
    )
    return change_set
