"""NodeProvisioner backed by AKS agent pools and the Kubernetes API.

An AKS agent pool runs a single orchestrator version, so each configured pool is
paired with a companion pool (the source pool name with a one-letter suffix, kept
within the 12 character AKS limit). New-version nodes go into whichever of the
two is already on the target version or holds no nodes, so successive upgrades
alternate between them. Nodes are created by scaling that pool up by one and
waiting for the new node to register, drained by cordoning and evicting their
pods, and removed with the agent pool delete-machines API.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from nodepool_upgrader.clients.azure_aks import AzureAksClient
from nodepool_upgrader.clients.k8s_core import K8sCoreClient, classify_node_health
from nodepool_upgrader.clock import Clock, SystemClock
from nodepool_upgrader.config import ClusterConfig, OrchestratorSettings
from nodepool_upgrader.errors import DrainError, ProvisionError
from nodepool_upgrader.models import Node, NodeColor, NodeHealth, NodePool
from nodepool_upgrader.validation import normalize_version

log = structlog.get_logger()

COMPANION_SUFFIX = "n"


def companion_pool_name(pool_name: str) -> str:
    return f"{pool_name[:11]}{COMPANION_SUFFIX}"


class AksNodeProvisioner:
    """Provisions nodes for the pools of one AKS cluster."""

    def __init__(
        self,
        cluster_config: ClusterConfig,
        settings: OrchestratorSettings,
        clock: Clock | None = None,
        aks_client: AzureAksClient | None = None,
        core_client: K8sCoreClient | None = None,
    ) -> None:
        self._config = cluster_config
        self._settings = settings
        self._clock = clock or SystemClock()
        self._aks = aks_client or AzureAksClient(cluster_config)
        self._core = core_client or K8sCoreClient(cluster_config)
        # Scale-ups are serialized so each one can be matched to the node it registers.
        self._scale_lock = asyncio.Lock()

    async def list_nodes(self, pool: NodePool) -> list[Node]:
        raw_nodes = await self._core.get_pool_nodes([pool.name, companion_pool_name(pool.name)])
        nodes: list[Node] = []
        for raw in raw_nodes:
            version = normalize_version(raw["version"] or "unknown")
            color: NodeColor | None = None
            if pool.strategy == "BlueGreen":
                color = "Blue" if version == pool.current_version else "Green"
            nodes.append(
                Node(
                    name=raw["name"],
                    pool=pool.pool_id,
                    version=version,
                    health=classify_node_health(raw),  # type: ignore[arg-type]
                    color=color,
                )
            )
        return nodes

    async def create_node(self, pool: NodePool, version: str, color: NodeColor | None) -> Node:
        async with self._scale_lock:
            try:
                target, state = await self._pick_target_pool(pool, version)
                before = {n["name"] for n in await self._core.get_pool_nodes([target])}
                if state is None:
                    await self._aks.create_companion_pool(pool.name, target, version, count=1)
                else:
                    if normalize_version(str(state["target_version"])) != normalize_version(version):
                        await self._aks.set_node_pool_version(target, version)
                    await self._aks.scale_node_pool(target, state["count"] + 1)
            except ProvisionError:
                raise
            except Exception as e:
                msg = f"Failed to add a node to {pool.name} in {self._config.cluster_id}: {e}"
                raise ProvisionError(msg) from e

            name = await self._await_registration(target, before)

        log.info("node_created", cluster=self._config.cluster_id, pool=pool.pool_id, node=name, version=version)
        return Node(name=name, pool=pool.pool_id, version=normalize_version(version), health="Pending", color=color)

    async def _pick_target_pool(self, pool: NodePool, version: str) -> tuple[str, dict[str, Any] | None]:
        """Pick the agent pool that takes new nodes at ``version``.

        A pool already at ``version`` is reused. Otherwise the companion pool is
        created when missing, or whichever of the two pools holds no nodes is
        moved to ``version``. A ``None`` state means the companion must be created.
        """
        companion = companion_pool_name(pool.name)
        states = {name: await self._aks.get_node_pool_state(name) for name in (pool.name, companion)}
        for name, state in states.items():
            if state is not None and normalize_version(str(state["target_version"])) == normalize_version(version):
                return name, state
        if states[companion] is None:
            return companion, None
        for name, state in states.items():
            if state is not None and state["count"] == 0:
                return name, state
        msg = f"Neither {pool.name} nor {companion} can take a node at {version}: both hold nodes on other versions"
        raise ProvisionError(msg)

    async def get_node_health(self, pool: NodePool, node_name: str) -> NodeHealth:
        node = await self._core.get_node(node_name)
        if node is None:
            return "Terminated"
        return classify_node_health(node)  # type: ignore[return-value]

    async def drain_node(self, pool: NodePool, node_name: str) -> None:
        deadline = self._clock.now().timestamp() + self._settings.drain_timeout_seconds
        try:
            await self._core.cordon_node(node_name)
            while True:
                pods = await self._core.get_evictable_pods(node_name)
                if not pods:
                    break
                for pod in pods:
                    await self._core.evict_pod(pod["name"], pod["namespace"])
                if self._clock.now().timestamp() >= deadline:
                    msg = f"Node {node_name} still has {len(pods)} pod(s) after {self._settings.drain_timeout_seconds}s"
                    raise DrainError(msg, node=node_name)
                await self._clock.sleep(self._settings.poll_interval_seconds)
        except DrainError:
            raise
        except Exception as e:
            msg = f"Failed to drain {node_name}: {e}"
            raise DrainError(msg, node=node_name) from e
        log.info("node_drained", cluster=self._config.cluster_id, pool=pool.pool_id, node=node_name)

    async def terminate_node(self, pool: NodePool, node_name: str) -> None:
        try:
            node = await self._core.get_node(node_name)
            if node is None:
                return
            await self._aks.delete_machines(node["pool"], [node_name])
        except Exception as e:
            msg = f"Failed to remove {node_name}: {e}"
            raise ProvisionError(msg, node=node_name) from e
        log.info("node_terminated", cluster=self._config.cluster_id, pool=pool.pool_id, node=node_name)

    async def _await_registration(self, companion: str, before: set[str]) -> str:
        deadline = self._clock.now().timestamp() + self._settings.health_check_timeout_seconds
        while True:
            current = {n["name"] for n in await self._core.get_pool_nodes([companion])}
            new_nodes = sorted(current - before)
            if new_nodes:
                return new_nodes[0]
            if self._clock.now().timestamp() >= deadline:
                msg = f"No new node registered in {companion} within {self._settings.health_check_timeout_seconds}s"
                raise ProvisionError(msg)
            await self._clock.sleep(self._settings.poll_interval_seconds)
