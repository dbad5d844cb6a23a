"""start / abort / status handlers for node-pool upgrade operations."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import structlog

from nodepool_upgrader.clients.aks_provisioner import AksNodeProvisioner
from nodepool_upgrader.clients.provisioner import NodeProvisioner
from nodepool_upgrader.clients.simulated import SimulatedProvisioner
from nodepool_upgrader.config import (
    CLUSTER_MAP,
    POOL_MAP,
    OrchestratorSettings,
    get_settings,
    load_cluster_map,
    resolve_cluster,
)
from nodepool_upgrader.errors import OperationNotFoundError
from nodepool_upgrader.models import (
    NodePoolListOutput,
    NodePoolSummary,
    ToolError,
    UpgradeOperation,
    UpgradeOperationOutput,
    scrub_sensitive_values,
)
from nodepool_upgrader.orchestrator import UpgradeOrchestrator
from nodepool_upgrader.store import OperationStore
from nodepool_upgrader.validation import validate_cluster_id, validate_node_pool

log = structlog.get_logger()

_ORCHESTRATOR: UpgradeOrchestrator | None = None


def build_orchestrator(settings: OrchestratorSettings | None = None) -> UpgradeOrchestrator:
    """Build an orchestrator for every configured pool using the configured provisioner backend."""
    settings = settings or get_settings()
    if not CLUSTER_MAP:
        load_cluster_map()

    provisioner: NodeProvisioner | dict[str, NodeProvisioner]
    if settings.provisioner == "simulated":
        simulated = SimulatedProvisioner()
        for pool in POOL_MAP.values():
            simulated.seed_pool(pool)
        provisioner = simulated
    else:
        provisioner = {cid: AksNodeProvisioner(cfg, settings) for cid, cfg in CLUSTER_MAP.items()}

    return UpgradeOrchestrator(POOL_MAP, provisioner, settings, store=OperationStore(settings.state_dir))


def get_orchestrator() -> UpgradeOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = build_orchestrator()
    return _ORCHESTRATOR


def set_orchestrator(orchestrator: UpgradeOrchestrator | None) -> None:
    global _ORCHESTRATOR
    _ORCHESTRATOR = orchestrator


def _pool_id(cluster_id: str, node_pool: str) -> str:
    validate_cluster_id(cluster_id)
    validate_node_pool(node_pool)
    resolve_cluster(cluster_id)
    return f"{cluster_id}/{node_pool}"


def _operation_output(cluster_id: str, node_pool: str, operation: UpgradeOperation) -> UpgradeOperationOutput:
    live = operation.live_nodes()
    upgraded = len(operation.nodes_on_version(operation.target_version))
    summary = (
        f"{operation.pool_id}: {operation.source_version} -> {operation.target_version} "
        f"({operation.strategy}), phase {operation.phase}, "
        f"{upgraded}/{len(live)} nodes upgraded, {len(operation.batches)} batch(es)"
    )
    if operation.error is not None:
        summary += f", failed with {operation.error.kind}: {operation.error.message}"
    return UpgradeOperationOutput(
        cluster=cluster_id,
        node_pool=node_pool,
        operation=operation,
        nodes_total=len(live),
        nodes_upgraded=upgraded,
        summary=summary,
        timestamp=datetime.now(tz=UTC).isoformat(),
    )


async def list_node_pools_handler() -> NodePoolListOutput:
    """List configured pools with their versions and in-flight state."""
    orchestrator = get_orchestrator()
    pools = [
        NodePoolSummary(
            pool_id=p.pool_id,
            current_version=p.current_version,
            target_version=p.target_version,
            strategy=p.strategy,
            desired_count=p.desired_count,
            upgrade_in_flight=orchestrator.is_in_flight(p.pool_id),
        )
        for p in orchestrator.list_pools()
    ]
    in_flight = sum(1 for p in pools if p.upgrade_in_flight)
    return NodePoolListOutput(
        pools=pools,
        summary=f"{len(pools)} node pool(s) configured, {in_flight} upgrade(s) in flight",
        timestamp=datetime.now(tz=UTC).isoformat(),
    )


async def start_upgrade_handler(cluster_id: str, node_pool: str, target_version: str) -> UpgradeOperationOutput:
    """Core handler for start_node_pool_upgrade."""
    pool_id = _pool_id(cluster_id, node_pool)
    operation = await get_orchestrator().start_upgrade(pool_id, target_version)
    return _operation_output(cluster_id, node_pool, operation)


async def abort_upgrade_handler(cluster_id: str, node_pool: str) -> UpgradeOperationOutput:
    """Core handler for abort_node_pool_upgrade."""
    pool_id = _pool_id(cluster_id, node_pool)
    operation = await get_orchestrator().abort_upgrade(pool_id)
    return _operation_output(cluster_id, node_pool, operation)


async def get_operation_status_handler(cluster_id: str, node_pool: str) -> UpgradeOperationOutput:
    """Core handler for get_upgrade_operation_status on a single pool."""
    pool_id = _pool_id(cluster_id, node_pool)
    try:
        operation = get_orchestrator().get_operation_status(pool_id)
    except OperationNotFoundError:
        return UpgradeOperationOutput(
            cluster=cluster_id,
            node_pool=node_pool,
            summary=f"No upgrade recorded for {pool_id}",
            timestamp=datetime.now(tz=UTC).isoformat(),
        )
    return _operation_output(cluster_id, node_pool, operation)


async def get_operation_status_all(node_pool: str | None = None) -> list[UpgradeOperationOutput]:
    """Fan-out get_upgrade_operation_status to every configured pool concurrently."""
    validate_node_pool(node_pool)
    pools = [p for p in get_orchestrator().list_pools() if node_pool is None or p.name == node_pool]
    tasks = [get_operation_status_handler(p.cluster_id, p.name) for p in pools]
    results = await asyncio.gather(*tasks, return_exceptions=True)
    outputs: list[UpgradeOperationOutput] = []
    for pool, result in zip(pools, results, strict=True):
        if isinstance(result, BaseException):
            log.error(
                "fan_out_pool_failed",
                tool="get_upgrade_operation_status",
                pool=pool.pool_id,
                error=str(result),
            )
            outputs.append(
                UpgradeOperationOutput(
                    cluster=pool.cluster_id,
                    node_pool=pool.name,
                    summary=f"Status unavailable for {pool.pool_id}",
                    timestamp=datetime.now(tz=UTC).isoformat(),
                    errors=[
                        ToolError(
                            error=scrub_sensitive_values(str(result)),
                            source="orchestrator",
                            cluster=pool.cluster_id,
                        )
                    ],
                )
            )
        else:
            outputs.append(result)
    return outputs
