"""In-memory provisioner for dry runs and scenario tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from nodepool_upgrader.batching import unavailable_count
from nodepool_upgrader.errors import ProvisionError
from nodepool_upgrader.models import Node, NodeColor, NodeHealth, NodePool

log = structlog.get_logger()


@dataclass
class _SimNode:
    node: Node
    sequence: int | None
    health_checks: int = 0


@dataclass
class PoolObservation:
    """Worst case seen for a pool across every state change."""

    peak_total: int = 0
    peak_unavailable: int = 0


@dataclass
class SimulatedProvisioner:
    """Keeps pools in memory and lets callers inject provisioning and health failures.

    Created nodes are numbered from 1 in creation order; ``never_ready`` and
    ``unhealthy_after`` refer to those numbers. ``unhealthy_after[n] = k`` makes node
    ``n`` report Unhealthy once it has passed ``k`` Ready health checks.
    """

    ready_after_checks: int = 1
    fail_creates: int = 0
    never_ready: set[int] = field(default_factory=set)
    unhealthy_after: dict[int, int] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)
    drained: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    observations: dict[str, PoolObservation] = field(default_factory=dict)
    _pools: dict[str, dict[str, _SimNode]] = field(default_factory=dict)
    _desired: dict[str, int] = field(default_factory=dict)
    _serial: int = 0
    _creations: int = 0

    def seed_pool(self, pool: NodePool, ready: int | None = None) -> list[Node]:
        """Populate ``pool`` with ``desired_count`` nodes at its current version.

        Args:
            pool: The pool to seed.
            ready: How many of the seeded nodes are Ready; the rest are Unhealthy.
        """
        ready = pool.desired_count if ready is None else ready
        nodes: dict[str, _SimNode] = {}
        for i in range(pool.desired_count):
            name = self._next_name(pool)
            health: NodeHealth = "Ready" if i < ready else "Unhealthy"
            node = Node(name=name, pool=pool.pool_id, version=pool.current_version, health=health)
            nodes[name] = _SimNode(node, None)
        self._pools[pool.pool_id] = nodes
        self._desired[pool.pool_id] = pool.desired_count
        self._observe(pool.pool_id)
        return [n.node.model_copy() for n in nodes.values()]

    def live_nodes(self, pool_id: str) -> list[Node]:
        return [n.node.model_copy() for n in self._pools.get(pool_id, {}).values() if n.node.health != "Terminated"]

    async def list_nodes(self, pool: NodePool) -> list[Node]:
        await asyncio.sleep(0)
        return self.live_nodes(pool.pool_id)

    async def create_node(self, pool: NodePool, version: str, color: NodeColor | None) -> Node:
        await asyncio.sleep(0)
        if self.fail_creates > 0:
            self.fail_creates -= 1
            msg = f"Simulated capacity error creating a node in {pool.pool_id}"
            raise ProvisionError(msg)

        self._creations += 1
        name = self._next_name(pool)
        node = Node(name=name, pool=pool.pool_id, version=version, health="Pending", color=color)
        self._pools.setdefault(pool.pool_id, {})[name] = _SimNode(node, self._creations)
        self.created.append(name)
        self._observe(pool.pool_id)
        log.debug("simulated_node_created", pool=pool.pool_id, node=name, version=version)
        return node.model_copy()

    async def get_node_health(self, pool: NodePool, node_name: str) -> NodeHealth:
        await asyncio.sleep(0)
        sim = self._get(pool, node_name)
        node = sim.node
        if node.health in ("Pending", "Ready") and sim.sequence is not None:
            sim.health_checks += 1
            if sim.sequence in self.never_ready:
                node.health = "Pending"
            elif sim.health_checks > self.ready_after_checks:
                node.health = "Ready"
                ready_checks = sim.health_checks - self.ready_after_checks
                limit = self.unhealthy_after.get(sim.sequence)
                if limit is not None and ready_checks > limit:
                    node.health = "Unhealthy"
            self._observe(pool.pool_id)
        return node.health

    async def drain_node(self, pool: NodePool, node_name: str) -> None:
        await asyncio.sleep(0)
        sim = self._get(pool, node_name)
        sim.node.health = "Draining"
        self.drained.append(node_name)
        self._observe(pool.pool_id)

    async def terminate_node(self, pool: NodePool, node_name: str) -> None:
        await asyncio.sleep(0)
        sim = self._get(pool, node_name)
        sim.node.health = "Terminated"
        self.terminated.append(node_name)
        self._observe(pool.pool_id)

    def _get(self, pool: NodePool, node_name: str) -> _SimNode:
        try:
            return self._pools[pool.pool_id][node_name]
        except KeyError:
            msg = f"Node {node_name} does not exist in {pool.pool_id}"
            raise ProvisionError(msg, node=node_name) from None

    def _next_name(self, pool: NodePool) -> str:
        self._serial += 1
        return f"aks-{pool.name}-{self._serial:08d}"

    def _observe(self, pool_id: str) -> None:
        nodes = [n.node for n in self._pools[pool_id].values() if n.node.health != "Terminated"]
        ready = sum(1 for n in nodes if n.health == "Ready")
        obs = self.observations.setdefault(pool_id, PoolObservation())
        obs.peak_total = max(obs.peak_total, len(nodes))
        obs.peak_unavailable = max(obs.peak_unavailable, unavailable_count(self._desired.get(pool_id, 0), ready))
