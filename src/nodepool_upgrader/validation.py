"""Input validation helpers for orchestrator and tool parameters."""

from __future__ import annotations

import re

# AKS node pool: lowercase alphanumeric, 1-12 chars, starts with letter
_NODE_POOL_RE = re.compile(r"^[a-z][a-z0-9]{0,11}$")

# Kubernetes versions as AKS reports them, with or without the leading "v"
_VERSION_RE = re.compile(r"^v?\d+\.\d+(\.\d+)?(-[0-9A-Za-z.\-]+)?$")

# Composite cluster id, e.g. prod-eastus
_CLUSTER_ID_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?$")


def validate_node_pool(node_pool: str | None) -> None:
    """Validate an AKS node pool name."""
    if node_pool is None:
        return
    if not _NODE_POOL_RE.match(node_pool):
        msg = f"Invalid node pool name: {node_pool!r}. Must be 1-12 lowercase alphanumeric starting with a letter."
        raise ValueError(msg)


def validate_cluster_id(cluster_id: str) -> None:
    """Validate a composite cluster id such as ``prod-eastus``."""
    if not _CLUSTER_ID_RE.match(cluster_id):
        msg = f"Invalid cluster id: {cluster_id!r}. Must be a valid RFC 1123 label."
        raise ValueError(msg)


def normalize_version(version: str) -> str:
    """Strip the leading ``v`` kubelet adds so versions compare equal to AKS pool versions."""
    return version.strip().lstrip("v")


def validate_version(version: str) -> None:
    """Validate a Kubernetes version string such as ``1.30.0`` or ``v1.29.8``."""
    if not _VERSION_RE.match(version.strip()):
        msg = f"Invalid version: {version!r}. Expected MAJOR.MINOR[.PATCH], e.g. 1.30.0."
        raise ValueError(msg)


def validate_target_version(current_version: str, target_version: str) -> None:
    """Validate that an upgrade target is well formed and differs from the running version."""
    validate_version(target_version)
    if normalize_version(current_version) == normalize_version(target_version):
        msg = f"Target version {target_version!r} is already the pool's current version."
        raise ValueError(msg)
