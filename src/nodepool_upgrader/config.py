"""Cluster and node-pool configuration, orchestrator settings, and environment variable overrides."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import ValidationError

from nodepool_upgrader.models import NodePool


@dataclass(frozen=True)
class ClusterConfig:
    """Configuration for a single AKS cluster."""

    cluster_id: str
    environment: str
    region: str
    subscription_id: str
    resource_group: str
    aks_cluster_name: str
    kubeconfig_context: str


def _env_state_dir() -> Path | None:
    value = os.environ.get("UPGRADE_STATE_DIR")
    return Path(value) if value else None


@dataclass(frozen=True)
class OrchestratorSettings:
    """Timeouts, retry limits and backends with environment variable overrides."""

    health_check_timeout_seconds: float = field(
        default_factory=lambda: float(os.environ.get("UPGRADE_HEALTH_CHECK_TIMEOUT_SECONDS", "600"))
    )
    poll_interval_seconds: float = field(
        default_factory=lambda: float(os.environ.get("UPGRADE_POLL_INTERVAL_SECONDS", "10"))
    )
    retry_limit: int = field(default_factory=lambda: int(os.environ.get("UPGRADE_RETRY_LIMIT", "2")))
    drain_timeout_seconds: float = field(
        default_factory=lambda: float(os.environ.get("UPGRADE_DRAIN_TIMEOUT_SECONDS", "900"))
    )
    state_dir: Path | None = field(default_factory=_env_state_dir)
    provisioner: Literal["aks", "simulated"] = field(
        default_factory=lambda: os.environ.get("UPGRADE_PROVISIONER", "aks")  # type: ignore[return-value]
    )

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            msg = f"poll_interval_seconds must be positive, got {self.poll_interval_seconds}"
            raise ValueError(msg)
        if self.retry_limit < 0:
            msg = f"retry_limit must be zero or more, got {self.retry_limit}"
            raise ValueError(msg)
        if self.provisioner not in ("aks", "simulated"):
            msg = f"Unknown provisioner {self.provisioner!r}. Must be one of: aks, simulated"
            raise ValueError(msg)


_REQUIRED_FIELDS = (
    "environment",
    "region",
    "subscription_id",
    "resource_group",
    "aks_cluster_name",
    "kubeconfig_context",
)


def _load_node_pools(cluster_id: str, pools_raw: Any) -> dict[str, NodePool]:
    if pools_raw is None:
        return {}
    if not isinstance(pools_raw, dict):
        msg = f"Cluster '{cluster_id}' node_pools must be a mapping, got {type(pools_raw).__name__}."
        raise ValueError(msg)

    pools: dict[str, NodePool] = {}
    for pool_name, entry in pools_raw.items():
        if not isinstance(entry, dict):
            msg = f"Node pool '{cluster_id}/{pool_name}' must be a mapping, got {type(entry).__name__}."
            raise ValueError(msg)
        fields = dict(entry)
        # YAML reads an unquoted "1.30" as a float.
        if "current_version" in fields:
            fields["current_version"] = str(fields["current_version"])
        try:
            pool = NodePool(name=str(pool_name), cluster_id=cluster_id, **fields)
        except ValidationError as e:
            msg = f"Node pool '{cluster_id}/{pool_name}' is invalid: {e}"
            raise ValueError(msg) from e
        pools[pool.pool_id] = pool
    return pools


def _load_cluster_map(path: Path) -> tuple[dict[str, ClusterConfig], dict[str, NodePool]]:
    """Parse a YAML cluster configuration file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A tuple of (cluster ID -> ClusterConfig, pool ID -> NodePool).

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If the file content is malformed or missing required fields.
    """
    if not path.exists():
        msg = (
            f"Cluster configuration file not found: {path}. "
            "Copy clusters.example.yaml to clusters.yaml and fill in your subscription IDs, "
            "or set NODEPOOL_UPGRADER_CLUSTERS to point to your config file."
        )
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(path.read_text())

    if not isinstance(raw, dict) or "clusters" not in raw:
        msg = f"Cluster config file {path} must contain a top-level 'clusters' key."
        raise ValueError(msg)

    clusters_raw: Any = raw["clusters"]
    if not isinstance(clusters_raw, dict) or len(clusters_raw) == 0:
        msg = f"Cluster config file {path} has an empty or invalid 'clusters' section."
        raise ValueError(msg)

    cluster_map: dict[str, ClusterConfig] = {}
    pool_map: dict[str, NodePool] = {}
    for cluster_id, entry in clusters_raw.items():
        if not isinstance(entry, dict):
            msg = f"Cluster '{cluster_id}' must be a mapping, got {type(entry).__name__}."
            raise ValueError(msg)

        missing = [f for f in _REQUIRED_FIELDS if f not in entry]
        if missing:
            msg = f"Cluster '{cluster_id}' is missing required fields: {', '.join(missing)}."
            raise ValueError(msg)

        cluster_map[cluster_id] = ClusterConfig(
            cluster_id=cluster_id,
            environment=str(entry["environment"]),
            region=str(entry["region"]),
            subscription_id=str(entry["subscription_id"]),
            resource_group=str(entry["resource_group"]),
            aks_cluster_name=str(entry["aks_cluster_name"]),
            kubeconfig_context=str(entry["kubeconfig_context"]),
        )
        pool_map.update(_load_node_pools(cluster_id, entry.get("node_pools")))

    return cluster_map, pool_map


CLUSTER_MAP: dict[str, ClusterConfig] = {}
POOL_MAP: dict[str, NodePool] = {}


def load_cluster_map() -> dict[str, ClusterConfig]:
    """Load cluster and node-pool configuration from YAML and populate module-level globals.

    Reads the file path from the ``NODEPOOL_UPGRADER_CLUSTERS`` environment variable,
    defaulting to ``clusters.yaml`` in the current working directory.

    Returns:
        The loaded cluster map.
    """
    path = Path(os.environ.get("NODEPOOL_UPGRADER_CLUSTERS", "clusters.yaml"))
    clusters, pools = _load_cluster_map(path)
    CLUSTER_MAP.clear()
    CLUSTER_MAP.update(clusters)
    POOL_MAP.clear()
    POOL_MAP.update(pools)
    return CLUSTER_MAP


def resolve_cluster(cluster_id: str) -> ClusterConfig:
    """Resolve a composite cluster ID to its full configuration.

    Raises:
        ValueError: If the cluster_id is not found in CLUSTER_MAP.
    """
    if cluster_id not in CLUSTER_MAP:
        valid = ", ".join(sorted(CLUSTER_MAP.keys()))
        msg = f"Unknown cluster '{cluster_id}'. Valid clusters: {valid}"
        raise ValueError(msg)
    return CLUSTER_MAP[cluster_id]


_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def validate_cluster_config() -> None:
    """Validate all cluster configurations at startup.

    Raises RuntimeError if placeholder subscription IDs, invalid UUID formats,
    empty required fields, or pools of unknown clusters are detected.
    """
    errors: list[str] = []
    for cluster_id, config in CLUSTER_MAP.items():
        if config.subscription_id.startswith("<") and config.subscription_id.endswith(">"):
            errors.append(f"{cluster_id}: placeholder subscription_id detected")
        elif not _UUID_RE.match(config.subscription_id):
            errors.append(f"{cluster_id}: subscription_id is not a valid UUID")

        if not config.resource_group:
            errors.append(f"{cluster_id}: resource_group is empty")
        if not config.aks_cluster_name:
            errors.append(f"{cluster_id}: aks_cluster_name is empty")
        if not config.kubeconfig_context:
            errors.append(f"{cluster_id}: kubeconfig_context is empty")

    for pool_id, pool in POOL_MAP.items():
        if pool.cluster_id not in CLUSTER_MAP:
            errors.append(f"{pool_id}: references unknown cluster {pool.cluster_id}")

    if errors:
        detail = "; ".join(errors)
        msg = f"Cluster configuration errors: {detail}. Fix before running in production."
        raise RuntimeError(msg)


def get_settings() -> OrchestratorSettings:
    """Return orchestrator settings with environment variable overrides applied."""
    return OrchestratorSettings()
