"""AKS agent pool wrapper: pool state, companion pool creation, scaling, machine deletion."""

from __future__ import annotations

import asyncio
import threading
from typing import Any

import structlog
from azure.core.exceptions import ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.containerservice import ContainerServiceClient
from azure.mgmt.containerservice.models import AgentPool, AgentPoolDeleteMachinesParameter

from nodepool_upgrader.config import ClusterConfig

log = structlog.get_logger()


class AzureAksClient:
    """Wrapper around the AKS agent pool management APIs."""

    def __init__(self, cluster_config: ClusterConfig) -> None:
        self._config = cluster_config
        self._container_client: ContainerServiceClient | None = None
        self._credential: DefaultAzureCredential | None = None
        # RLock is needed because _get_container_client calls _get_credential.
        self._lock = threading.RLock()

    def _get_credential(self) -> DefaultAzureCredential:
        with self._lock:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            return self._credential

    def _get_container_client(self) -> ContainerServiceClient:
        with self._lock:
            if self._container_client is None:
                self._container_client = ContainerServiceClient(
                    credential=self._get_credential(),
                    subscription_id=self._config.subscription_id,
                )
            return self._container_client

    async def get_node_pool_state(self, pool_name: str) -> dict[str, Any] | None:
        """Get the state of a specific node pool, or None if it does not exist.

        Returns dict with count, versions, VM size, mode and provisioning state.
        """
        client = self._get_container_client()
        try:
            pool = await asyncio.to_thread(
                client.agent_pools.get,
                self._config.resource_group,
                self._config.aks_cluster_name,
                pool_name,
            )
        except ResourceNotFoundError:
            return None
        except Exception:
            log.error("failed_to_get_node_pool", cluster=self._config.cluster_id, pool=pool_name)
            raise

        return {
            "name": pool.name,
            "count": pool.count or 0,
            "vm_size": pool.vm_size,
            "mode": pool.mode,
            "os_type": pool.os_type,
            "vnet_subnet_id": pool.vnet_subnet_id,
            "current_version": pool.current_orchestrator_version or pool.orchestrator_version,
            "target_version": pool.orchestrator_version,
            "provisioning_state": pool.provisioning_state,
        }

    async def create_companion_pool(self, source_pool: str, companion_pool: str, version: str, count: int) -> None:
        """Create ``companion_pool`` with the source pool's shape at ``version``."""
        source = await self.get_node_pool_state(source_pool)
        if source is None:
            msg = f"Source node pool {source_pool} not found in {self._config.cluster_id}"
            raise LookupError(msg)

        parameters = AgentPool(
            count=count,
            vm_size=source["vm_size"],
            mode=source["mode"],
            os_type=source["os_type"],
            vnet_subnet_id=source["vnet_subnet_id"],
            orchestrator_version=version,
            node_labels={"nodepool-upgrader/source-pool": source_pool},
        )
        await self._create_or_update(companion_pool, parameters)
        log.info(
            "companion_pool_created",
            cluster=self._config.cluster_id,
            pool=companion_pool,
            source=source_pool,
            version=version,
        )

    async def scale_node_pool(self, pool_name: str, count: int) -> None:
        """Set the node count of an existing pool and wait for the operation to finish."""
        client = self._get_container_client()
        try:
            pool = await asyncio.to_thread(
                client.agent_pools.get,
                self._config.resource_group,
                self._config.aks_cluster_name,
                pool_name,
            )
        except Exception:
            log.error("failed_to_get_node_pool", cluster=self._config.cluster_id, pool=pool_name)
            raise
        pool.count = count
        await self._create_or_update(pool_name, pool)
        log.info("node_pool_scaled", cluster=self._config.cluster_id, pool=pool_name, count=count)

    async def set_node_pool_version(self, pool_name: str, version: str) -> None:
        """Move an existing pool to ``version``. Only used on pools with no nodes."""
        client = self._get_container_client()
        try:
            pool = await asyncio.to_thread(
                client.agent_pools.get,
                self._config.resource_group,
                self._config.aks_cluster_name,
                pool_name,
            )
        except Exception:
            log.error("failed_to_get_node_pool", cluster=self._config.cluster_id, pool=pool_name)
            raise
        pool.orchestrator_version = version
        await self._create_or_update(pool_name, pool)
        log.info("node_pool_version_set", cluster=self._config.cluster_id, pool=pool_name, version=version)

    async def delete_machines(self, pool_name: str, machine_names: list[str]) -> None:
        """Remove specific machines from a pool, lowering its count by the same amount."""
        client = self._get_container_client()
        parameters = AgentPoolDeleteMachinesParameter(machine_names=machine_names)
        try:
            await asyncio.to_thread(
                lambda: client.agent_pools.begin_delete_machines(
                    self._config.resource_group,
                    self._config.aks_cluster_name,
                    pool_name,
                    parameters,
                ).result()
            )
        except Exception:
            log.error(
                "failed_to_delete_machines",
                cluster=self._config.cluster_id,
                pool=pool_name,
                machines=machine_names,
            )
            raise

    async def _create_or_update(self, pool_name: str, parameters: AgentPool) -> None:
        client = self._get_container_client()
        try:
            await asyncio.to_thread(
                lambda: client.agent_pools.begin_create_or_update(
                    self._config.resource_group,
                    self._config.aks_cluster_name,
                    pool_name,
                    parameters,
                ).result()
            )
        except Exception:
            log.error("failed_to_update_node_pool", cluster=self._config.cluster_id, pool=pool_name)
            raise
