"""Translation between attribute trees and azure-mgmt-containerservice models."""

from __future__ import annotations

from typing import Any

from azure.mgmt.containerservice.models import (
    AgentPool,
    AgentPoolUpgradeSettings,
    AzureKeyVaultKms,
    ExtendedLocation,
    ManagedCluster,
    ManagedClusterAgentPoolProfile,
    ManagedClusterAPIServerAccessProfile,
    ManagedClusterIdentity,
    ManagedClusterSecurityProfile,
    ManagedClusterSecurityProfileImageCleaner,
    ManagedClusterStorageProfile,
    ManagedClusterStorageProfileBlobCSIDriver,
    ManagedClusterStorageProfileDiskCSIDriver,
    ManagedClusterStorageProfileFileCSIDriver,
    ManagedClusterStorageProfileSnapshotController,
    ManagedClusterWindowsProfile,
    ManagedClusterWorkloadAutoScalerProfile,
    ManagedClusterWorkloadAutoScalerProfileKeda,
    ManagedClusterWorkloadAutoScalerProfileVerticalPodAutoscaler,
    ManagedServiceIdentityUserAssignedIdentitiesValue,
)


def _value(value: Any) -> Any:
    """Plain string for SDK enum members; everything else unchanged."""
    return getattr(value, "value", value)


def _enabled(block: Any) -> bool:
    return bool(block is not None and block.enabled)


# --- Flatten: SDK -> attributes ---


def pool_attributes(pool: ManagedClusterAgentPoolProfile | AgentPool) -> dict[str, Any]:
    upgrade = pool.upgrade_settings
    return {
        "name": pool.name,
        "vm_size": pool.vm_size,
        "node_count": pool.count,
        "enable_auto_scaling": bool(pool.enable_auto_scaling),
        "min_count": pool.min_count,
        "max_count": pool.max_count,
        "enable_host_encryption": bool(pool.enable_encryption_at_host),
        "host_group_id": pool.host_group_id,
        "zones": list(pool.availability_zones or []),
        "node_labels": dict(pool.node_labels or {}),
        "orchestrator_version": pool.orchestrator_version,
        "upgrade_settings": {"max_surge": upgrade.max_surge} if upgrade is not None else None,
    }


def _identity_attributes(identity: ManagedClusterIdentity | None) -> dict[str, Any] | None:
    if identity is None:
        return None
    kind = _value(identity.type)
    if kind == "UserAssigned":
        return {"type": "UserAssigned", "identity_ids": sorted(identity.user_assigned_identities or {})}
    return {"type": "SystemAssigned"}


def _kms_attributes(security: ManagedClusterSecurityProfile | None) -> dict[str, Any] | None:
    kms = security.azure_key_vault_kms if security is not None else None
    if not _enabled(kms):
        return None
    return {
        "key_vault_key_id": kms.key_id,
        "key_vault_network_access": _value(kms.key_vault_network_access) or "Public",
    }


def _split_pools(
    profiles: list[ManagedClusterAgentPoolProfile],
    default_pool_name: str | None,
) -> tuple[ManagedClusterAgentPoolProfile | None, list[ManagedClusterAgentPoolProfile]]:
    default = next((p for p in profiles if p.name == default_pool_name), None)
    if default is None:
        default = next((p for p in profiles if _value(p.mode) == "System"), None)
    return default, [p for p in profiles if p is not default]


def cluster_attributes(
    cluster: ManagedCluster,
    resource_group: str,
    default_pool_name: str | None = None,
) -> dict[str, Any]:
    """Flatten a ManagedCluster into the ClusterSpec-shaped attribute tree.

    Write-only values (rotation pool name, Windows password, disk driver
    version) are never present in the result.
    """
    security = cluster.security_profile
    cleaner = security.image_cleaner if security is not None else None
    api_access = cluster.api_server_access_profile
    default, others = _split_pools(list(cluster.agent_pool_profiles or []), default_pool_name)

    autoscaler = cluster.workload_auto_scaler_profile
    storage = cluster.storage_profile
    windows = cluster.windows_profile
    return {
        "name": cluster.name,
        "location": cluster.location,
        "resource_group_name": resource_group,
        "dns_prefix": cluster.dns_prefix,
        "dns_prefix_private_cluster": cluster.fqdn_subdomain,
        "kubernetes_version": cluster.kubernetes_version,
        "node_resource_group": cluster.node_resource_group,
        "edge_zone": cluster.extended_location.name if cluster.extended_location is not None else None,
        "run_command_enabled": not (api_access is not None and api_access.disable_run_command),
        "image_cleaner_enabled": _enabled(cleaner),
        "image_cleaner_interval_hours": cleaner.interval_hours if cleaner is not None else None,
        "tags": dict(cluster.tags or {}),
        "identity": _identity_attributes(cluster.identity),
        "key_management_service": _kms_attributes(security),
        "default_node_pool": pool_attributes(default) if default is not None else None,
        "node_pools": [{**pool_attributes(p), "mode": _value(p.mode) or "User"} for p in others],
        "workload_autoscaler_profile": (
            {
                "keda_enabled": _enabled(autoscaler.keda),
                "vertical_pod_autoscaler_enabled": _enabled(autoscaler.vertical_pod_autoscaler),
            }
            if autoscaler is not None
            else None
        ),
        "storage_profile": (
            {
                "blob_driver_enabled": _enabled(storage.blob_csi_driver),
                "disk_driver_enabled": _enabled(storage.disk_csi_driver),
                "file_driver_enabled": _enabled(storage.file_csi_driver),
                "snapshot_controller_enabled": _enabled(storage.snapshot_controller),
            }
            if storage is not None
            else None
        ),
        "windows_profile": {"admin_username": windows.admin_username} if windows is not None else None,
    }


def api_server_host(cluster: ManagedCluster) -> str | None:
    """Kubeconfig ``server`` of the cluster; private clusters are reached on their private FQDN."""
    fqdn = cluster.private_fqdn if cluster.fqdn is None else cluster.fqdn
    return f"https://{fqdn}:443" if fqdn else None


def cluster_computed(cluster: ManagedCluster) -> dict[str, Any]:
    identity = cluster.identity
    return {
        "fqdn": cluster.fqdn,
        "private_fqdn": cluster.private_fqdn,
        "kube_config_host": api_server_host(cluster),
        "provisioning_state": cluster.provisioning_state,
        "power_state": _value(cluster.power_state.code) if cluster.power_state is not None else None,
        "identity_principal_id": identity.principal_id if identity is not None else None,
        "identity_tenant_id": identity.tenant_id if identity is not None else None,
        "current_kubernetes_version": cluster.current_kubernetes_version,
        "node_pool_states": {p.name: p.provisioning_state for p in cluster.agent_pool_profiles or [] if p.name},
    }


# --- Expand: attributes -> SDK ---


def identity_model(identity: dict[str, Any]) -> ManagedClusterIdentity:
    if identity.get("type") == "UserAssigned":
        return ManagedClusterIdentity(
            type="UserAssigned",
            user_assigned_identities={
                rid: ManagedServiceIdentityUserAssignedIdentitiesValue() for rid in identity.get("identity_ids") or []
            },
        )
    return ManagedClusterIdentity(type="SystemAssigned")


def kms_model(kms: dict[str, Any] | None) -> AzureKeyVaultKms:
    if kms is None:
        return AzureKeyVaultKms(enabled=False)
    return AzureKeyVaultKms(
        enabled=True,
        key_id=kms["key_vault_key_id"],
        key_vault_network_access=kms.get("key_vault_network_access") or "Public",
    )


def set_kms(cluster: ManagedCluster, kms: dict[str, Any] | None) -> ManagedCluster:
    security = cluster.security_profile or ManagedClusterSecurityProfile()
    security.azure_key_vault_kms = kms_model(kms)
    cluster.security_profile = security
    return cluster


def initial_node_count(pool: dict[str, Any]) -> int:
    """Count sent when a pool is created without an explicit node_count."""
    if pool.get("node_count") is not None:
        return int(pool["node_count"])
    if pool.get("enable_auto_scaling") and pool.get("min_count") is not None:
        return int(pool["min_count"])
    return 1


def _pool_kwargs(pool: dict[str, Any], count: int | None = None) -> dict[str, Any]:
    upgrade = pool.get("upgrade_settings")
    return {
        "vm_size": pool["vm_size"],
        "count": pool["node_count"] if pool.get("node_count") is not None else count,
        "enable_auto_scaling": pool.get("enable_auto_scaling", False),
        "min_count": pool.get("min_count"),
        "max_count": pool.get("max_count"),
        "enable_encryption_at_host": pool.get("enable_host_encryption", False),
        "host_group_id": pool.get("host_group_id"),
        "availability_zones": pool.get("zones") or None,
        "node_labels": pool.get("node_labels") or None,
        "orchestrator_version": pool.get("orchestrator_version"),
        "upgrade_settings": AgentPoolUpgradeSettings(max_surge=upgrade.get("max_surge")) if upgrade else None,
    }


def pool_profile_model(pool: dict[str, Any], mode: str = "System") -> ManagedClusterAgentPoolProfile:
    return ManagedClusterAgentPoolProfile(
        name=pool["name"], mode=mode, **_pool_kwargs(pool, count=initial_node_count(pool))
    )


def agent_pool_model(pool: dict[str, Any], mode: str | None = None, *, count: int | None = None) -> AgentPool:
    """AgentPool body for a PUT; ``count`` fills in an unset node_count."""
    return AgentPool(mode=mode or pool.get("mode") or "User", **_pool_kwargs(pool, count=count))


def apply_root(cluster: ManagedCluster, attributes: dict[str, Any]) -> ManagedCluster:
    """Write root-level attributes and plain blocks onto ``cluster`` in place."""
    cluster.tags = dict(attributes.get("tags") or {})
    cluster.dns_prefix = attributes.get("dns_prefix")
    cluster.fqdn_subdomain = attributes.get("dns_prefix_private_cluster")
    if attributes.get("kubernetes_version") is not None:
        cluster.kubernetes_version = attributes["kubernetes_version"]
    if attributes.get("node_resource_group") is not None:
        cluster.node_resource_group = attributes["node_resource_group"]
    if attributes.get("edge_zone"):
        cluster.extended_location = ExtendedLocation(name=attributes["edge_zone"], type="EdgeZone")

    api_access = cluster.api_server_access_profile or ManagedClusterAPIServerAccessProfile()
    api_access.disable_run_command = not attributes.get("run_command_enabled", True)
    if attributes.get("dns_prefix_private_cluster"):
        api_access.enable_private_cluster = True
    cluster.api_server_access_profile = api_access

    security = cluster.security_profile or ManagedClusterSecurityProfile()
    security.image_cleaner = ManagedClusterSecurityProfileImageCleaner(
        enabled=attributes.get("image_cleaner_enabled", False),
        interval_hours=attributes.get("image_cleaner_interval_hours"),
    )
    cluster.security_profile = security

    autoscaler = attributes.get("workload_autoscaler_profile")
    if autoscaler is not None:
        cluster.workload_auto_scaler_profile = ManagedClusterWorkloadAutoScalerProfile(
            keda=ManagedClusterWorkloadAutoScalerProfileKeda(enabled=autoscaler.get("keda_enabled", False)),
            vertical_pod_autoscaler=ManagedClusterWorkloadAutoScalerProfileVerticalPodAutoscaler(
                enabled=autoscaler.get("vertical_pod_autoscaler_enabled", False)
            ),
        )
    elif cluster.workload_auto_scaler_profile is not None:
        cluster.workload_auto_scaler_profile = ManagedClusterWorkloadAutoScalerProfile(
            keda=ManagedClusterWorkloadAutoScalerProfileKeda(enabled=False),
            vertical_pod_autoscaler=ManagedClusterWorkloadAutoScalerProfileVerticalPodAutoscaler(enabled=False),
        )

    storage = attributes.get("storage_profile")
    if storage is not None:
        cluster.storage_profile = ManagedClusterStorageProfile(
            blob_csi_driver=ManagedClusterStorageProfileBlobCSIDriver(
                enabled=storage.get("blob_driver_enabled", False)
            ),
            # disk_driver_version is only accepted by preview API versions.
            disk_csi_driver=ManagedClusterStorageProfileDiskCSIDriver(enabled=storage.get("disk_driver_enabled", True)),
            file_csi_driver=ManagedClusterStorageProfileFileCSIDriver(enabled=storage.get("file_driver_enabled", True)),
            snapshot_controller=ManagedClusterStorageProfileSnapshotController(
                enabled=storage.get("snapshot_controller_enabled", True)
            ),
        )

    windows = attributes.get("windows_profile")
    if windows is not None:
        cluster.windows_profile = ManagedClusterWindowsProfile(
            admin_username=windows["admin_username"],
            admin_password=windows.get("admin_password"),
        )
    return cluster


def cluster_model(attributes: dict[str, Any]) -> ManagedCluster:
    """Build the create payload: root attributes, identity and the default node pool."""
    cluster = ManagedCluster(location=attributes["location"])
    apply_root(cluster, attributes)
    if attributes.get("identity") is not None:
        cluster.identity = identity_model(attributes["identity"])
    if attributes.get("default_node_pool") is not None:
        cluster.agent_pool_profiles = [pool_profile_model(attributes["default_node_pool"])]
    return cluster
