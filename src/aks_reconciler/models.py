"""Pydantic v2 models for the desired cluster spec, observed state, change sets, plans and diagnostics."""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from aks_reconciler.schema import attr

STATE_SCHEMA_VERSION = 1

ChangeKind = Literal["create", "update-in-place", "replace", "delete", "no-op"]
CallAction = Literal["create", "update", "delete"]

# Severity order used when several changes land on the same target.
CHANGE_PRIORITY: dict[str, int] = {
    "replace": 4,
    "create": 3,
    "delete": 2,
    "update-in-place": 1,
    "no-op": 0,
}


# --- Shared diagnostic model ---


class Diagnostic(BaseModel):
    """A single problem or notice surfaced to the caller alongside the best-known state."""

    severity: Literal["error", "warning"] = "error"
    code: str
    summary: str
    path: str | None = None
    detail: str | None = None


class ValidationResult(BaseModel):
    """Outcome of validating a ClusterSpec."""

    errors: list[Diagnostic] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


_IP_PATTERN = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")
_SUBSCRIPTION_PATTERN = re.compile(r"/subscriptions/[a-f0-9-]+", re.IGNORECASE)
_RESOURCE_GROUP_PATTERN = re.compile(r"/resourceGroups/[^/]+", re.IGNORECASE)
_FQDN_PATTERN = re.compile(r"\b[\w.-]+\.azmk8s\.io\b", re.IGNORECASE)
_AZURE_HOST_PATTERN = re.compile(r"\b[\w.-]+\.(vault\.azure\.net|blob\.core\.windows\.net)\b", re.IGNORECASE)


def scrub_sensitive_values(text: str) -> str:
    """Remove internal IPs, subscription IDs, resource group names, and Azure FQDNs from text.

    Node pool names and operation identifiers are preserved.
    """
    if not text:
        return text
    result = _IP_PATTERN.sub("[REDACTED_IP]", text)
    result = _RESOURCE_GROUP_PATTERN.sub("/resourceGroups/[REDACTED]", result)
    result = _SUBSCRIPTION_PATTERN.sub("/subscriptions/[REDACTED]", result)
    result = _FQDN_PATTERN.sub("[REDACTED_FQDN]", result)
    result = _AZURE_HOST_PATTERN.sub("[REDACTED_HOST]", result)
    return result


# --- Desired state: cluster spec ---


class SystemAssignedIdentity(BaseModel):
    """Identity managed by the platform for the cluster's lifetime."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["SystemAssigned"] = "SystemAssigned"


class UserAssignedIdentity(BaseModel):
    """Identity created outside the cluster and attached by ARM id."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["UserAssigned"] = "UserAssigned"
    identity_ids: list[str] = attr(suppress="unordered_case_insensitive")


class KeyManagementService(BaseModel):
    """etcd encryption with a customer-managed Key Vault key."""

    model_config = ConfigDict(extra="forbid")

    key_vault_key_id: str = attr()
    key_vault_network_access: Literal["Public", "Private"] = attr("Public")


class UpgradeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_surge: str | None = attr(None, optional_computed=True)


class NodePoolSpec(BaseModel):
    """Fields shared by the default node pool and additional node pools."""

    model_config = ConfigDict(extra="forbid")

    name: str = attr(force_new=True)
    vm_size: str = attr(force_new=True, suppress="case_insensitive")
    node_count: int | None = attr(None, optional_computed=True)
    enable_auto_scaling: bool = attr(False)
    min_count: int | None = attr(None)
    max_count: int | None = attr(None)
    enable_host_encryption: bool = attr(False, force_new=True)
    host_group_id: str | None = attr(None, force_new=True, suppress="case_insensitive")
    zones: list[str] = attr(default_factory=list, force_new=True, suppress="unordered")
    node_labels: dict[str, str] = attr(default_factory=dict)
    orchestrator_version: str | None = attr(None, optional_computed=True, suppress="version_alias")
    upgrade_settings: UpgradeSettings | None = attr(None)


class DefaultNodePool(NodePoolSpec):
    """The system node pool created together with the cluster."""

    temporary_name_for_rotation: str | None = attr(None, round_trip=False)


class NodePool(NodePoolSpec):
    """An additional node pool managed as its own sub-resource."""

    mode: Literal["System", "User"] = attr("User")


class WorkloadAutoscalerProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    keda_enabled: bool = attr(False)
    vertical_pod_autoscaler_enabled: bool = attr(False)


class StorageProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    blob_driver_enabled: bool = attr(False)
    disk_driver_enabled: bool = attr(True)
    # The GA API does not return the disk driver version.
    disk_driver_version: Literal["v1", "v2"] = attr("v1", round_trip=False)
    file_driver_enabled: bool = attr(True)
    snapshot_controller_enabled: bool = attr(True)


class WindowsProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    admin_username: str = attr(force_new=True)
    admin_password: str | None = attr(None, round_trip=False)


class ClusterSpec(BaseModel):
    """Desired state of a managed cluster and its nested sub-resources."""

    model_config = ConfigDict(extra="forbid")

    name: str = attr(force_new=True)
    location: str = attr(force_new=True, suppress="location")
    resource_group_name: str = attr(force_new=True, suppress="case_insensitive")
    dns_prefix: str | None = attr(None, force_new=True)
    dns_prefix_private_cluster: str | None = attr(None, force_new=True)
    kubernetes_version: str | None = attr(None, optional_computed=True, suppress="version_alias")
    node_resource_group: str | None = attr(None, force_new=True, optional_computed=True)
    edge_zone: str | None = attr(None, force_new=True)
    run_command_enabled: bool = attr(True)
    image_cleaner_enabled: bool = attr(False)
    image_cleaner_interval_hours: int | None = attr(None)
    tags: dict[str, str] = attr(default_factory=dict)

    identity: SystemAssignedIdentity | UserAssignedIdentity = attr(
        sub_resource="identity",
        create_with_parent=True,
        convertible=True,
        invalidates=("key_management_service",),
        discriminator="type",
    )
    key_management_service: KeyManagementService | None = attr(None, sub_resource="key_management_service")
    default_node_pool: DefaultNodePool = attr(sub_resource="default_node_pool", create_with_parent=True)
    node_pools: list[NodePool] = attr(default_factory=list, sub_resource="node_pools", key="name")

    workload_autoscaler_profile: WorkloadAutoscalerProfile | None = attr(None)
    storage_profile: StorageProfile | None = attr(None)
    windows_profile: WindowsProfile | None = attr(None)


# --- Observed state ---


class ComputedAttributes(BaseModel):
    """Read-only values assigned by the remote API."""

    model_config = ConfigDict(extra="ignore")

    fqdn: str | None = None
    private_fqdn: str | None = None
    kube_config_host: str | None = None
    provisioning_state: str | None = None
    power_state: str | None = None
    identity_principal_id: str | None = None
    identity_tenant_id: str | None = None
    current_kubernetes_version: str | None = None
    node_pool_states: dict[str, str] = Field(default_factory=dict)


class ResourceState(BaseModel):
    """Last-observed remote state of one cluster.

    ``attributes`` mirrors the ClusterSpec tree; mid-replace it may be missing a
    sub-resource that has been deleted but not yet re-created.
    """

    schema_version: int = STATE_SCHEMA_VERSION
    resource_id: str
    attributes: dict[str, Any]
    computed: ComputedAttributes = Field(default_factory=ComputedAttributes)
    serial: int = 0


# --- Change sets and plans ---


class Change(BaseModel):
    """One difference between desired and current state."""

    kind: ChangeKind
    path: str
    target: str
    before: Any = None
    after: Any = None
    reason: str | None = None
    cascades: list[str] = Field(default_factory=list)


class ChangeSet(BaseModel):
    """Ordered changes produced by one diff, plus the desired tree they were computed from."""

    resource_id: str | None = None
    desired: dict[str, Any]
    changes: list[Change] = Field(default_factory=list)

    @property
    def actionable(self) -> list[Change]:
        return [c for c in self.changes if c.kind != "no-op"]

    @property
    def empty(self) -> bool:
        return not self.actionable

    def for_target(self, target: str) -> list[Change]:
        return [c for c in self.actionable if c.target == target]


class RemoteCall(BaseModel):
    """A single mutating call against the remote API."""

    action: CallAction
    target: str
    payload: dict[str, Any] | None = None


class Step(BaseModel):
    """All changes for one remote target, applied as an ordered list of calls."""

    id: str
    target: str
    kind: ChangeKind
    changes: list[Change] = Field(default_factory=list)
    calls: list[RemoteCall] = Field(default_factory=list)


class OrderedPlan(BaseModel):
    """Topologically ordered steps with their predecessor sets and concurrency batches."""

    resource_id: str | None = None
    steps: list[Step] = Field(default_factory=list)
    dependencies: dict[str, list[str]] = Field(default_factory=dict)
    batches: list[list[str]] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.steps

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        msg = f"Unknown step '{step_id}'."
        raise KeyError(msg)

    def position(self, step_id: str) -> int:
        return [s.id for s in self.steps].index(step_id)
