"""Field metadata for convergence and the walker that turns a pydantic model into a FieldSpec tree."""

from __future__ import annotations

import re
import types
from dataclasses import dataclass, field
from typing import Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel, Field
from pydantic.fields import FieldInfo
from pydantic_core import PydanticUndefined

_META_KEY = "x-converge"

Suppression = Literal["version_alias", "case_insensitive", "location", "unordered", "unordered_case_insensitive"]
FieldKind = Literal["leaf", "block", "tagged", "keyed_list"]


def attr(
    default: Any = PydanticUndefined,
    *,
    force_new: bool = False,
    round_trip: bool = True,
    optional_computed: bool = False,
    suppress: Suppression | None = None,
    sub_resource: str | None = None,
    create_with_parent: bool = False,
    convertible: bool = False,
    invalidates: tuple[str, ...] = (),
    key: str | None = None,
    **kwargs: Any,
) -> Any:
    """Declare a pydantic field together with its convergence behaviour.

    Args:
        force_new: Changing the value requires destroying and re-creating the owning target.
        round_trip: False when the remote API never returns the value (secrets, local-only knobs).
        optional_computed: The remote picks a value when unset; an unset desired value never diffs.
        suppress: Name of an equivalence rule applied before two values are compared.
        sub_resource: Remote target the block is applied through.
        create_with_parent: The sub-resource is part of the parent's create payload.
        convertible: For tagged blocks, a tag transition is applied in place.
        invalidates: Sibling sub-resources that must be re-applied when this block changes.
        key: For lists of blocks, the field that identifies each entry.
    """
    meta = {
        "force_new": force_new,
        "round_trip": round_trip,
        "optional_computed": optional_computed,
        "suppress": suppress,
        "sub_resource": sub_resource,
        "create_with_parent": create_with_parent,
        "convertible": convertible,
        "invalidates": list(invalidates),
        "key": key,
    }
    return Field(default, json_schema_extra={_META_KEY: meta}, **kwargs)


@dataclass(frozen=True)
class FieldSpec:
    """Convergence description of one field of a model tree."""

    name: str
    kind: FieldKind
    default: Any = None
    force_new: bool = False
    round_trip: bool = True
    optional_computed: bool = False
    suppress: Suppression | None = None
    sub_resource: str | None = None
    create_with_parent: bool = False
    convertible: bool = False
    invalidates: tuple[str, ...] = ()
    key: str | None = None
    required: bool = False
    model: type[BaseModel] | None = None
    tag: str | None = None
    children: tuple[FieldSpec, ...] = ()
    variants: dict[str, tuple[FieldSpec, ...]] = field(default_factory=dict)

    def child(self, name: str) -> FieldSpec | None:
        for spec in self.children:
            if spec.name == name:
                return spec
        return None


def _model_members(annotation: Any) -> list[type[BaseModel]]:
    """Return the BaseModel classes referenced by an annotation (ignoring None)."""
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        members: list[type[BaseModel]] = []
        for arg in get_args(annotation):
            members.extend(_model_members(arg))
        return members
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return [annotation]
    return []


def _list_item_model(annotation: Any) -> type[BaseModel] | None:
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        for arg in get_args(annotation):
            found = _list_item_model(arg)
            if found is not None:
                return found
        return None
    if origin is list:
        args = get_args(annotation)
        if args and isinstance(args[0], type) and issubclass(args[0], BaseModel):
            return args[0]
    return None


def _field_default(info: FieldInfo) -> Any:
    if info.default_factory is not None:
        return info.default_factory()  # type: ignore[call-arg]
    if info.default is PydanticUndefined:
        return None
    if isinstance(info.default, BaseModel):
        return info.default.model_dump(mode="json")
    return info.default


def _tag_value(model: type[BaseModel], tag: str) -> str:
    annotation = model.model_fields[tag].annotation
    values = get_args(annotation)
    if not values:
        msg = f"Tag field {model.__name__}.{tag} must be a Literal."
        raise TypeError(msg)
    return str(values[0])


def describe_field(name: str, info: FieldInfo) -> FieldSpec:
    meta: dict[str, Any] = {}
    if isinstance(info.json_schema_extra, dict):
        meta = dict(info.json_schema_extra.get(_META_KEY, {}))  # type: ignore[arg-type]
    meta["invalidates"] = tuple(meta.get("invalidates", ()))
    common = {
        "name": name,
        "default": _field_default(info),
        "required": info.is_required(),
        **meta,
    }

    item_model = _list_item_model(info.annotation)
    if item_model is not None and meta.get("key"):
        return FieldSpec(kind="keyed_list", model=item_model, children=describe_model(item_model), **common)

    members = _model_members(info.annotation)
    if len(members) > 1 or (members and info.discriminator):
        tag = info.discriminator if isinstance(info.discriminator, str) else "type"
        variants = {_tag_value(m, tag): describe_model(m) for m in members}
        return FieldSpec(kind="tagged", tag=tag, variants=variants, **common)
    if members:
        return FieldSpec(kind="block", model=members[0], children=describe_model(members[0]), **common)
    return FieldSpec(kind="leaf", **common)


def describe_model(model: type[BaseModel]) -> tuple[FieldSpec, ...]:
    """Build the FieldSpec tree for every field of ``model`` in declaration order."""
    return tuple(describe_field(name, info) for name, info in model.model_fields.items())


def block_defaults(spec: FieldSpec) -> dict[str, Any]:
    """Default attribute values for a block whose fields all carry defaults."""
    return {child.name: child.default for child in spec.children}


_VERSION_RE = re.compile(r"^(\d+)\.(\d+)(?:\.(\d+))?$")


def _version_alias_equal(desired: Any, current: Any) -> bool:
    """A ``major.minor`` alias matches any patch release of that minor version."""
    d = _VERSION_RE.match(str(desired))
    c = _VERSION_RE.match(str(current))
    if not d or not c:
        return desired == current
    if d.group(3) is None:
        return d.group(1, 2) == c.group(1, 2)
    return d.groups() == c.groups()


def normalize_location(value: str) -> str:
    return value.replace(" ", "").lower()


def values_equal(spec: FieldSpec, desired: Any, current: Any) -> bool:
    """Compare two leaf values honouring the field's suppression rule."""
    if desired is None and spec.optional_computed:
        return True
    if desired is None or current is None:
        return desired == current
    match spec.suppress:
        case "version_alias":
            return _version_alias_equal(desired, current)
        case "case_insensitive":
            return str(desired).lower() == str(current).lower()
        case "location":
            return normalize_location(str(desired)) == normalize_location(str(current))
        case "unordered":
            return sorted(desired) == sorted(current)
        case "unordered_case_insensitive":
            return sorted(str(v).lower() for v in desired) == sorted(str(v).lower() for v in current)
    return bool(desired == current)


def non_round_trip_paths(fields: tuple[FieldSpec, ...], prefix: str = "") -> list[str]:
    """Dotted paths of every leaf the remote API does not return.

    Keyed list entries use ``[]`` as a placeholder segment, e.g. ``node_pools[].secret``.
    """
    paths: list[str] = []
    for spec in fields:
        path = f"{prefix}{spec.name}"
        if spec.kind == "leaf":
            if not spec.round_trip:
                paths.append(path)
        elif spec.kind == "block":
            paths.extend(non_round_trip_paths(spec.children, f"{path}."))
        elif spec.kind == "keyed_list":
            paths.extend(non_round_trip_paths(spec.children, f"{path}[]."))
        elif spec.kind == "tagged":
            for children in spec.variants.values():
                for nested in non_round_trip_paths(children, f"{path}."):
                    if nested not in paths:
                        paths.append(nested)
    return paths
