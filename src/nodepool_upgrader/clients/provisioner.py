"""Interface the orchestrator uses to create, inspect, drain and remove nodes."""

from __future__ import annotations

from typing import Protocol

from nodepool_upgrader.models import Node, NodeColor, NodeHealth, NodePool


class NodeProvisioner(Protocol):
    """Node lifecycle backend for a set of pools.

    ``create_node`` raises ``ProvisionError`` when the backend rejects the request;
    ``drain_node`` raises ``DrainError`` when workloads cannot be evicted.
    """

    async def list_nodes(self, pool: NodePool) -> list[Node]: ...

    async def create_node(self, pool: NodePool, version: str, color: NodeColor | None) -> Node: ...

    async def get_node_health(self, pool: NodePool, node_name: str) -> NodeHealth: ...

    async def drain_node(self, pool: NodePool, node_name: str) -> None: ...

    async def terminate_node(self, pool: NodePool, node_name: str) -> None: ...
