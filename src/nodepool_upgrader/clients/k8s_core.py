"""Kubernetes Core API wrapper: node readiness, cordon, and pod eviction."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from kubernetes import client as k8s_client
from kubernetes.client.rest import ApiException

from nodepool_upgrader.clients import load_k8s_api_client
from nodepool_upgrader.config import ClusterConfig

log = structlog.get_logger()

# Node pool label with fallback
PRIMARY_POOL_LABEL = "agentpool"
FALLBACK_POOL_LABEL = "kubernetes.azure.com/agentpool"

_PRESSURE_CONDITIONS = ("MemoryPressure", "DiskPressure", "PIDPressure", "NetworkUnavailable")


def _node_to_dict(node: Any) -> dict[str, Any]:
    labels = node.metadata.labels or {}
    conditions = {c.type: c.status for c in (node.status.conditions or [])}
    return {
        "name": node.metadata.name,
        "pool": labels.get(PRIMARY_POOL_LABEL) or labels.get(FALLBACK_POOL_LABEL),
        "version": (node.status.node_info.kubelet_version if node.status.node_info else None),
        "unschedulable": bool(node.spec.unschedulable),
        "conditions": conditions,
    }


def classify_node_health(node: dict[str, Any]) -> str:
    """Map a node dict to Pending, Ready, Draining or Unhealthy."""
    conditions = node.get("conditions", {})
    if any(conditions.get(c) == "True" for c in _PRESSURE_CONDITIONS):
        return "Unhealthy"
    if node.get("unschedulable"):
        return "Draining"
    if conditions.get("Ready") == "True":
        return "Ready"
    return "Pending"


class K8sCoreClient:
    """Wrapper around the Kubernetes Core V1 API."""

    def __init__(self, cluster_config: ClusterConfig) -> None:
        self._cluster_config = cluster_config
        self._api: k8s_client.CoreV1Api | None = None

    def _get_api(self) -> k8s_client.CoreV1Api:
        if self._api is None:
            api_client = load_k8s_api_client(self._cluster_config.kubeconfig_context)
            self._api = k8s_client.CoreV1Api(api_client)
        return self._api

    async def get_pool_nodes(self, pool_names: list[str]) -> list[dict[str, Any]]:
        """List nodes belonging to any of ``pool_names``.

        Returns a list of dicts with keys: name, pool, version, unschedulable, conditions.
        """
        api = self._get_api()
        try:
            node_list = await asyncio.to_thread(api.list_node)
        except Exception:
            log.error("failed_to_list_nodes", cluster=self._cluster_config.cluster_id)
            raise

        results: list[dict[str, Any]] = []
        for node in node_list.items:
            info = _node_to_dict(node)
            if info["pool"] is None:
                log.warning(
                    "node_missing_pool_label",
                    node=info["name"],
                    cluster=self._cluster_config.cluster_id,
                )
                continue
            if info["pool"] in pool_names:
                results.append(info)
        return results

    async def get_node(self, name: str) -> dict[str, Any] | None:
        """Read a single node, or None if it no longer exists."""
        api = self._get_api()
        try:
            node = await asyncio.to_thread(api.read_node, name)
        except ApiException as e:
            if e.status == 404:
                return None
            log.error("failed_to_read_node", cluster=self._cluster_config.cluster_id, node=name)
            raise
        return _node_to_dict(node)

    async def cordon_node(self, name: str) -> None:
        """Mark a node unschedulable."""
        api = self._get_api()
        try:
            await asyncio.to_thread(api.patch_node, name, {"spec": {"unschedulable": True}})
        except Exception:
            log.error("failed_to_cordon_node", cluster=self._cluster_config.cluster_id, node=name)
            raise

    async def get_evictable_pods(self, node_name: str) -> list[dict[str, str]]:
        """List pods on a node that a drain must evict (DaemonSet and mirror pods are skipped)."""
        api = self._get_api()
        try:
            pod_list = await asyncio.to_thread(
                api.list_pod_for_all_namespaces,
                field_selector=f"spec.nodeName={node_name},status.phase!=Succeeded,status.phase!=Failed",
            )
        except Exception:
            log.error("failed_to_list_pods", cluster=self._cluster_config.cluster_id, node=node_name)
            raise

        pods: list[dict[str, str]] = []
        for pod in pod_list.items:
            owners = pod.metadata.owner_references or []
            if any(o.kind == "DaemonSet" for o in owners):
                continue
            if "kubernetes.io/config.mirror" in (pod.metadata.annotations or {}):
                continue
            pods.append({"name": pod.metadata.name, "namespace": pod.metadata.namespace})
        return pods

    async def evict_pod(self, name: str, namespace: str) -> bool:
        """Request eviction of a pod.

        Returns False when a PodDisruptionBudget rejects the eviction (HTTP 429),
        True when the eviction was accepted or the pod is already gone.
        """
        api = self._get_api()
        body = k8s_client.V1Eviction(metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace))
        try:
            await asyncio.to_thread(api.create_namespaced_pod_eviction, name, namespace, body)
        except ApiException as e:
            if e.status == 404:
                return True
            if e.status == 429:
                return False
            log.error(
                "failed_to_evict_pod",
                cluster=self._cluster_config.cluster_id,
                pod=name,
                namespace=namespace,
            )
            raise
        return True
