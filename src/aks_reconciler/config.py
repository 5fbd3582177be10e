"""Cluster references, executor tuning, replace policies, and environment variable overrides."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

import yaml

ReplacePolicy = Literal["delete_then_create", "rotate"]

_VALID_REPLACE_POLICIES = ("delete_then_create", "rotate")

_CLUSTER_ID_RE = re.compile(
    r"^/subscriptions/(?P<subscription>[^/]+)"
    r"/resourceGroups/(?P<resource_group>[^/]+)"
    r"/providers/Microsoft\.ContainerService/managedClusters/(?P<name>[^/]+)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ClusterRef:
    """Coordinates of a single AKS cluster."""

    subscription_id: str
    resource_group: str
    cluster_name: str

    @property
    def resource_id(self) -> str:
        return (
            f"/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.ContainerService"
            f"/managedClusters/{self.cluster_name}"
        )

    @classmethod
    def from_resource_id(cls, resource_id: str) -> ClusterRef:
        """Parse a managed cluster ARM id.

        Raises:
            ValueError: If the id is not a managed cluster id.
        """
        match = _CLUSTER_ID_RE.match(resource_id)
        if not match:
            msg = f"Not a managed cluster resource id: {resource_id!r}"
            raise ValueError(msg)
        return cls(
            subscription_id=match.group("subscription"),
            resource_group=match.group("resource_group"),
            cluster_name=match.group("name"),
        )


@dataclass(frozen=True)
class ExecutorConfig:
    """Polling, retry and concurrency settings with environment variable overrides."""

    poll_interval_seconds: float = field(
        default_factory=lambda: float(os.environ.get("AKS_POLL_INTERVAL_SECONDS", "15"))
    )
    operation_timeout_seconds: float = field(
        default_factory=lambda: float(os.environ.get("AKS_OPERATION_TIMEOUT_SECONDS", "5400"))
    )
    max_attempts: int = field(default_factory=lambda: int(os.environ.get("AKS_MAX_ATTEMPTS", "5")))
    backoff_initial_seconds: float = field(
        default_factory=lambda: float(os.environ.get("AKS_BACKOFF_INITIAL_SECONDS", "2"))
    )
    backoff_max_seconds: float = field(
        default_factory=lambda: float(os.environ.get("AKS_BACKOFF_MAX_SECONDS", "60"))
    )
    concurrency_limit: int = field(default_factory=lambda: int(os.environ.get("AKS_CONCURRENCY_LIMIT", "4")))


@dataclass(frozen=True)
class ReplacePolicies:
    """How each kind of sub-resource is replaced when a force-new field changes."""

    cluster: ReplacePolicy = "delete_then_create"
    default_node_pool: ReplacePolicy = "rotate"
    node_pool: ReplacePolicy = "delete_then_create"

    def for_target(self, target: str) -> ReplacePolicy:
        if target == "default_node_pool":
            return self.default_node_pool
        if target.startswith("node_pools/"):
            return self.node_pool
        return self.cluster


@dataclass(frozen=True)
class EngineConfig:
    """Top-level engine configuration."""

    subscription_id: str = field(default_factory=lambda: os.environ.get("ARM_SUBSCRIPTION_ID", ""))
    log_level: str = field(default_factory=lambda: os.environ.get("AKS_LOG_LEVEL", "INFO"))
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    replace_policies: ReplacePolicies = field(default_factory=ReplacePolicies)
    # Extra ordering edges between remote targets, e.g. ("node_pools/gpu", "node_pools/web").
    extra_dependencies: tuple[tuple[str, str], ...] = ()

    def cluster_ref(self, resource_group: str, cluster_name: str) -> ClusterRef:
        return ClusterRef(
            subscription_id=self.subscription_id,
            resource_group=resource_group,
            cluster_name=cluster_name,
        )


def _section(raw: dict[str, Any], name: str, path: Path) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        msg = f"Engine config file {path}: '{name}' must be a mapping, got {type(value).__name__}."
        raise ValueError(msg)
    return value


def _load_engine_config(path: Path) -> EngineConfig:
    """Parse a YAML engine configuration file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        The parsed EngineConfig; keys absent from the file keep their env/default values.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If the file content is malformed or contains unknown keys.
    """
    if not path.exists():
        msg = f"Engine configuration file not found: {path}."
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(path.read_text()) or {}
    if not isinstance(raw, dict):
        msg = f"Engine config file {path} must contain a mapping at the top level."
        raise ValueError(msg)

    executor_raw = _section(raw, "executor", path)
    known = {f.name for f in fields(ExecutorConfig)}
    unknown = sorted(set(executor_raw) - known)
    if unknown:
        msg = f"Engine config file {path}: unknown executor settings: {', '.join(unknown)}."
        raise ValueError(msg)

    policies_raw = _section(raw, "replace_policies", path)
    for target, policy in policies_raw.items():
        if target not in {f.name for f in fields(ReplacePolicies)}:
            msg = f"Engine config file {path}: unknown replace policy target '{target}'."
            raise ValueError(msg)
        if policy not in _VALID_REPLACE_POLICIES:
            valid = ", ".join(_VALID_REPLACE_POLICIES)
            msg = (
                f"Engine config file {path}: invalid replace policy {policy!r} for '{target}'. "
                f"Must be one of: {valid}"
            )
            raise ValueError(msg)
        if policy == "rotate" and target != "default_node_pool":
            msg = f"Engine config file {path}: only the default node pool can be replaced by rotation."
            raise ValueError(msg)

    extra_raw = raw.get("extra_dependencies") or []
    extra: list[tuple[str, str]] = []
    for entry in extra_raw:
        if not isinstance(entry, list | tuple) or len(entry) != 2:
            msg = f"Engine config file {path}: each extra dependency must be a [before, after] pair."
            raise ValueError(msg)
        extra.append((str(entry[0]), str(entry[1])))

    base = EngineConfig()
    return EngineConfig(
        subscription_id=str(raw.get("subscription_id", base.subscription_id)),
        log_level=str(raw.get("log_level", base.log_level)),
        executor=ExecutorConfig(**executor_raw),
        replace_policies=ReplacePolicies(**policies_raw),
        extra_dependencies=tuple(extra),
    )


def load_engine_config(path: Path | None = None) -> EngineConfig:
    """Load engine configuration from YAML, falling back to env/defaults.

    Reads the file path from the ``AKS_RECONCILER_CONFIG`` environment variable,
    defaulting to ``reconciler.yaml`` in the current working directory. A missing
    default file is not an error; a missing explicit path is.
    """
    if path is not None:
        return _load_engine_config(path)
    env_path = os.environ.get("AKS_RECONCILER_CONFIG")
    if env_path:
        return _load_engine_config(Path(env_path))
    default = Path("reconciler.yaml")
    if default.exists():
        return _load_engine_config(default)
    return EngineConfig()


_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def validate_engine_config(config: EngineConfig) -> None:
    """Validate the engine configuration before any remote call.

    Raises RuntimeError if the subscription id is a placeholder or not a UUID,
    or if executor settings are out of range.
    """
    errors: list[str] = []
    if config.subscription_id.startswith("<") and config.subscription_id.endswith(">"):
        errors.append("placeholder subscription_id detected")
    elif not _UUID_RE.match(config.subscription_id):
        errors.append("subscription_id is not a valid UUID")

    if config.log_level.upper() not in logging.getLevelNamesMapping():
        errors.append(f"unknown log_level {config.log_level!r}")

    executor = config.executor
    if executor.poll_interval_seconds <= 0:
        errors.append("poll_interval_seconds must be positive")
    if executor.operation_timeout_seconds < executor.poll_interval_seconds:
        errors.append("operation_timeout_seconds must be at least poll_interval_seconds")
    if executor.max_attempts < 1:
        errors.append("max_attempts must be at least 1")
    if executor.concurrency_limit < 1:
        errors.append("concurrency_limit must be at least 1")

    if errors:
        detail = "; ".join(errors)
        msg = f"Engine configuration errors: {detail}."
        raise RuntimeError(msg)
