"""Field-level and cross-field validation of a ClusterSpec."""

from __future__ import annotations

import re
from typing import Any

import structlog
from pydantic import ValidationError

from aks_reconciler.errors import InvalidConfiguration
from aks_reconciler.models import (
    ClusterSpec,
    Diagnostic,
    KeyManagementService,
    NodePoolSpec,
    UserAssignedIdentity,
    ValidationResult,
)

log = structlog.get_logger()

# AKS node pool: lowercase alphanumeric, 1-12 chars, starts with letter
_NODE_POOL_RE = re.compile(r"^[a-z][a-z0-9]{0,11}$")

# DNS prefix may start with a digit (e.g. "1stCluster"), 1-54 chars, no leading/trailing hyphen
_DNS_PREFIX_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,52}[a-zA-Z0-9])?$")

_VERSION_RE = re.compile(r"^\d+\.\d+(\.\d+)?$")

_KEY_VAULT_KEY_RE = re.compile(r"^https://[a-zA-Z0-9-]{3,24}\.vault\.[\w.]+/keys/[^/]+/[^/]+$")

_HOST_GROUP_RE = re.compile(
    r"^/subscriptions/[^/]+/resourceGroups/[^/]+/providers/Microsoft\.Compute/hostGroups/[^/]+$",
    re.IGNORECASE,
)

_IMAGE_CLEANER_MIN_HOURS = 24
_IMAGE_CLEANER_MAX_HOURS = 2160
_MAX_NODE_COUNT = 1000


def validate_node_pool_name(name: str) -> None:
    """Validate an AKS node pool name."""
    if not _NODE_POOL_RE.match(name):
        msg = f"Invalid node pool name: {name!r}. Must be 1-12 lowercase alphanumeric starting with a letter."
        raise ValueError(msg)


def validate_dns_prefix(prefix: str) -> None:
    if not _DNS_PREFIX_RE.match(prefix):
        msg = (
            f"Invalid DNS prefix: {prefix!r}. Must be 1-54 alphanumerics or hyphens, "
            "starting and ending with an alphanumeric."
        )
        raise ValueError(msg)


def validate_kubernetes_version(version: str) -> None:
    if not _VERSION_RE.match(version):
        msg = f"Invalid Kubernetes version: {version!r}. Must be 'major.minor' or 'major.minor.patch'."
        raise ValueError(msg)


class _Collector:
    """Accumulates diagnostics so every violation is reported, not just the first."""

    def __init__(self) -> None:
        self.errors: list[Diagnostic] = []

    def add(self, path: str, summary: str) -> None:
        self.errors.append(Diagnostic(code="InvalidConfiguration", summary=summary, path=path))

    def check(self, path: str, check: Any, value: Any) -> None:
        try:
            check(value)
        except ValueError as e:
            self.add(path, str(e))


def _check_pool(out: _Collector, path: str, pool: NodePoolSpec, *, minimum_count: int) -> None:
    out.check(f"{path}.name", validate_node_pool_name, pool.name)
    if not pool.vm_size:
        out.add(f"{path}.vm_size", "vm_size must not be empty")
    if pool.node_count is not None and not minimum_count <= pool.node_count <= _MAX_NODE_COUNT:
        out.add(f"{path}.node_count", f"node_count must be between {minimum_count} and {_MAX_NODE_COUNT}")
    if pool.enable_auto_scaling:
        if pool.min_count is None or pool.max_count is None:
            out.add(path, "min_count and max_count are required when enable_auto_scaling is true")
        elif pool.min_count > pool.max_count:
            out.add(f"{path}.min_count", "min_count must not exceed max_count")
    elif pool.min_count is not None or pool.max_count is not None:
        out.add(path, "min_count and max_count must be unset when enable_auto_scaling is false")
    if pool.host_group_id is not None and not _HOST_GROUP_RE.match(pool.host_group_id):
        out.add(f"{path}.host_group_id", f"Invalid dedicated host group id: {pool.host_group_id!r}")
    if pool.orchestrator_version is not None:
        out.check(f"{path}.orchestrator_version", validate_kubernetes_version, pool.orchestrator_version)


def _check_key_management(out: _Collector, spec: ClusterSpec, kms: KeyManagementService) -> None:
    if not isinstance(spec.identity, UserAssignedIdentity):
        out.add(
            "key_management_service",
            "key_management_service requires a UserAssigned identity",
        )
    if not _KEY_VAULT_KEY_RE.match(kms.key_vault_key_id):
        out.add(
            "key_management_service.key_vault_key_id",
            f"Invalid versioned Key Vault key id: {kms.key_vault_key_id!r}",
        )


def validate(spec: ClusterSpec) -> ValidationResult:
    """Check field-level and cross-field constraints of a parsed spec.

    Side-effect-free; every violation is reported with the offending field path.
    """
    out = _Collector()

    if not spec.name:
        out.add("name", "name must not be empty")
    if (spec.dns_prefix is None) == (spec.dns_prefix_private_cluster is None):
        out.add("dns_prefix", "exactly one of dns_prefix or dns_prefix_private_cluster must be set")
    if spec.dns_prefix is not None:
        out.check("dns_prefix", validate_dns_prefix, spec.dns_prefix)
    if spec.dns_prefix_private_cluster is not None:
        out.check("dns_prefix_private_cluster", validate_dns_prefix, spec.dns_prefix_private_cluster)
    if spec.kubernetes_version is not None:
        out.check("kubernetes_version", validate_kubernetes_version, spec.kubernetes_version)
    if spec.edge_zone is not None and not spec.edge_zone.strip():
        out.add("edge_zone", "edge_zone must not be empty when set")

    interval = spec.image_cleaner_interval_hours
    if interval is not None and not _IMAGE_CLEANER_MIN_HOURS <= interval <= _IMAGE_CLEANER_MAX_HOURS:
        out.add(
            "image_cleaner_interval_hours",
            f"image_cleaner_interval_hours must be between {_IMAGE_CLEANER_MIN_HOURS} and {_IMAGE_CLEANER_MAX_HOURS}",
        )
    if spec.image_cleaner_enabled and interval is None:
        out.add("image_cleaner_interval_hours", "image_cleaner_interval_hours is required when image_cleaner_enabled")

    if isinstance(spec.identity, UserAssignedIdentity) and len(spec.identity.identity_ids) != 1:
        out.add("identity.identity_ids", "a UserAssigned identity requires exactly one identity id")
    if spec.key_management_service is not None:
        _check_key_management(out, spec, spec.key_management_service)

    _check_pool(out, "default_node_pool", spec.default_node_pool, minimum_count=1)
    pool_names = [spec.default_node_pool.name]
    for pool in spec.node_pools:
        path = f"node_pools[{pool.name}]"
        _check_pool(out, path, pool, minimum_count=0)
        if pool.name in pool_names:
            out.add(f"{path}.name", f"duplicate node pool name {pool.name!r}")
        pool_names.append(pool.name)

    temporary = spec.default_node_pool.temporary_name_for_rotation
    if temporary is not None:
        out.check("default_node_pool.temporary_name_for_rotation", validate_node_pool_name, temporary)
        if temporary in pool_names:
            out.add(
                "default_node_pool.temporary_name_for_rotation",
                "temporary_name_for_rotation must differ from every node pool name",
            )

    storage = spec.storage_profile
    if storage is not None and not storage.disk_driver_enabled and "disk_driver_version" in storage.model_fields_set:
        out.add("storage_profile.disk_driver_version", "disk_driver_version requires disk_driver_enabled")

    if spec.windows_profile is not None and not spec.windows_profile.admin_username:
        out.add("windows_profile.admin_username", "admin_username must not be empty")

    return ValidationResult(errors=out.errors)


def ensure_valid(spec: ClusterSpec) -> ClusterSpec:
    """Raise InvalidConfiguration carrying the first offending path if ``spec`` is invalid."""
    result = validate(spec)
    if not result.valid:
        first = result.errors[0]
        log.warning("spec_invalid", cluster=spec.name, path=first.path, errors=len(result.errors))
        raise InvalidConfiguration(first.summary, path=first.path, errors=result.errors)
    return spec


def _loc_to_path(loc: tuple[int | str, ...]) -> str:
    parts: list[str] = []
    for item in loc:
        if isinstance(item, int):
            if parts:
                parts[-1] = f"{parts[-1]}[{item}]"
            continue
        parts.append(str(item))
    return ".".join(parts)


def parse_spec(document: dict[str, Any]) -> ClusterSpec:
    """Parse and fully validate a desired-state document.

    Raises:
        InvalidConfiguration: On type errors or any constraint violation.
    """
    try:
        spec = ClusterSpec.model_validate(document)
    except ValidationError as e:
        errors = [
            Diagnostic(code="InvalidConfiguration", summary=err["msg"], path=_loc_to_path(err["loc"]))
            for err in e.errors()
        ]
        first = errors[0]
        raise InvalidConfiguration(first.summary, path=first.path, errors=errors) from None
    return ensure_valid(spec)
