"""MCP server entry point and tool registration."""

from __future__ import annotations

import sys
import time

import structlog
from mcp.server.fastmcp import FastMCP

from nodepool_upgrader.config import load_cluster_map, validate_cluster_config
from nodepool_upgrader.models import scrub_sensitive_values
from nodepool_upgrader.tools.upgrade_operations import (
    abort_upgrade_handler,
    get_operation_status_all,
    get_operation_status_handler,
    list_node_pools_handler,
    start_upgrade_handler,
)

# Configure structlog for JSON output to stderr; stdout carries the MCP stdio transport.
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)

log = structlog.get_logger()

mcp = FastMCP("Node Pool Upgrade Orchestrator")


@mcp.tool()
async def list_node_pools() -> str:
    """List the configured AKS node pools with their versions, strategy and in-flight upgrade state.

    Use this to find a pool id before starting, aborting or inspecting an upgrade.
    """
    start = time.monotonic()
    try:
        result = await list_node_pools_handler()
        output = scrub_sensitive_values(result.model_dump_json(indent=2))
        log.info("tool_completed", tool="list_node_pools", latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        sanitised = scrub_sensitive_values(str(e))
        log.error("tool_failed", tool="list_node_pools", error=sanitised)
        raise RuntimeError(sanitised) from None


@mcp.tool()
async def start_node_pool_upgrade(cluster: str, node_pool: str, target_version: str) -> str:
    """Start rolling a node pool to a new Kubernetes version.

    Uses the pool's configured strategy: Surge adds up to max_surge new nodes per batch
    before draining old ones; BlueGreen stands up a full green batch, soaks it, then
    retires the blue nodes. Returns immediately with the operation in phase Planning;
    poll get_upgrade_operation_status to follow it. Fails if an upgrade is already in
    flight for the pool.

    Args:
        cluster: Cluster ID (e.g., 'prod-eastus').
        node_pool: Node pool name within the cluster.
        target_version: Kubernetes version to roll out, e.g. '1.30.0'.
    """
    start = time.monotonic()
    try:
        result = await start_upgrade_handler(cluster, node_pool, target_version)
        output = scrub_sensitive_values(result.model_dump_json(indent=2))
        log.info("tool_completed", tool="start_node_pool_upgrade", cluster=cluster, latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        sanitised = scrub_sensitive_values(str(e))
        log.error("tool_failed", tool="start_node_pool_upgrade", cluster=cluster, error=sanitised)
        raise RuntimeError(sanitised) from None


@mcp.tool()
async def abort_node_pool_upgrade(cluster: str, node_pool: str) -> str:
    """Abort the in-flight upgrade of a node pool.

    Node creations and drains already under way finish first; new nodes of the
    unfinished batch are then removed. Completed batches are left in place.

    Args:
        cluster: Cluster ID (e.g., 'prod-eastus').
        node_pool: Node pool name within the cluster.
    """
    start = time.monotonic()
    try:
        result = await abort_upgrade_handler(cluster, node_pool)
        output = scrub_sensitive_values(result.model_dump_json(indent=2))
        log.info("tool_completed", tool="abort_node_pool_upgrade", cluster=cluster, latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        sanitised = scrub_sensitive_values(str(e))
        log.error("tool_failed", tool="abort_node_pool_upgrade", cluster=cluster, error=sanitised)
        raise RuntimeError(sanitised) from None


@mcp.tool()
async def get_upgrade_operation_status(cluster: str, node_pool: str | None = None) -> str:
    """Get the phase, batches, per-node state and error of a node-pool upgrade.

    Returns the in-flight operation or, if none, the most recent finished one.

    Args:
        cluster: Cluster ID (e.g., 'prod-eastus') or 'all' for every configured pool.
        node_pool: Node pool name. Required unless cluster is 'all', where it filters pools.
    """
    start = time.monotonic()
    try:
        if cluster == "all":
            results = await get_operation_status_all(node_pool)
            output = "\n\n".join(scrub_sensitive_values(r.model_dump_json(indent=2)) for r in results)
        else:
            if node_pool is None:
                msg = "node_pool is required when cluster is not 'all'"
                raise ValueError(msg)
            result = await get_operation_status_handler(cluster, node_pool)
            output = scrub_sensitive_values(result.model_dump_json(indent=2))
        log.info("tool_completed", tool="get_upgrade_operation_status", cluster=cluster, latency_ms=_elapsed_ms(start))
        return output
    except Exception as e:
        sanitised = scrub_sensitive_values(str(e))
        log.error("tool_failed", tool="get_upgrade_operation_status", cluster=cluster, error=sanitised)
        raise RuntimeError(sanitised) from None


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


if __name__ == "__main__":
    load_cluster_map()
    validate_cluster_config()
    mcp.run(transport="stdio")
