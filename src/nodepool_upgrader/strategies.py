"""Batch executors for the Surge and BlueGreen upgrade strategies."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from nodepool_upgrader.batching import BatchPlan, plan_blue_green_batch, plan_surge_batch
from nodepool_upgrader.clock import Clock
from nodepool_upgrader.errors import HealthCheckTimeout, NodeUnhealthyError, ProvisionError, UpgradeError
from nodepool_upgrader.models import (
    BatchRecord,
    Node,
    NodeColor,
    NodeHealth,
    NodePool,
    OperationPhase,
    UpgradeOperation,
)

if TYPE_CHECKING:
    from nodepool_upgrader.clients.provisioner import NodeProvisioner
    from nodepool_upgrader.clients.traffic import TrafficRouter
    from nodepool_upgrader.config import OrchestratorSettings

log = structlog.get_logger()


class AbortRequested(Exception):
    """Raised at a step boundary once an abort has been requested."""


def _readiness_order(node: Node) -> tuple[int, str]:
    return (1 if node.health == "Ready" else 0, node.name)


class StrategyExecutor:
    """Drives the batches of one upgrade operation.

    ``run`` returns once no node is left on an old version; the caller owns the
    terminal transition. Errors propagate unchanged so the caller can record their
    kind; ``rollback_current_batch`` removes new nodes of an unfinished batch that
    have not yet replaced an old node.
    """

    def __init__(
        self,
        pool: NodePool,
        operation: UpgradeOperation,
        provisioner: NodeProvisioner,
        router: TrafficRouter,
        settings: OrchestratorSettings,
        clock: Clock,
        abort_event: asyncio.Event,
        on_change: Callable[[UpgradeOperation], None] | None = None,
    ) -> None:
        self.pool = pool
        self.op = operation
        self.provisioner = provisioner
        self.router = router
        self.settings = settings
        self.clock = clock
        self.abort_event = abort_event
        self._on_change = on_change

    # --- planning ---

    async def plan(self) -> None:
        """Take the node inventory for the pool."""
        nodes = await self.provisioner.list_nodes(self.pool)
        self.op.nodes = {n.name: n for n in nodes}
        self._changed()
        log.info(
            "upgrade_planned",
            pool=self.pool.pool_id,
            operation_id=self.op.operation_id,
            strategy=self.op.strategy,
            nodes=len(nodes),
            remaining=len(self.old_nodes()),
        )

    def plan_batch(self, remaining: int, ready: int, total: int) -> BatchPlan:
        raise NotImplementedError

    async def execute_batch(self, plan: BatchPlan, batch: BatchRecord) -> None:
        raise NotImplementedError

    async def run(self) -> None:
        while old := self.old_nodes():
            self.checkpoint()
            live = self.op.live_nodes()
            ready = sum(1 for n in live if n.health == "Ready")
            plan = self.plan_batch(len(old), ready, len(live))
            batch = BatchRecord(index=len(self.op.batches), size=plan.size, started_at=self.clock.now())
            self.op.batches.append(batch)
            log.info(
                "batch_started",
                pool=self.pool.pool_id,
                operation_id=self.op.operation_id,
                batch=batch.index,
                size=plan.size,
                remaining=len(old),
            )
            await self.execute_batch(plan, batch)

    # --- node state helpers ---

    def old_nodes(self) -> list[Node]:
        old = [n for n in self.op.live_nodes() if n.version != self.op.target_version]
        return sorted(old, key=_readiness_order)

    def _set_health(self, name: str, health: NodeHealth) -> None:
        if name in self.op.nodes:
            self.op.nodes[name].health = health

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self.op)

    def checkpoint(self) -> None:
        if self.abort_event.is_set():
            raise AbortRequested(self.op.operation_id)

    def advance(self, phase: OperationPhase) -> None:
        self.checkpoint()
        previous = self.op.phase
        self.op.transition(phase, self.clock.now())
        self._changed()
        log.info(
            "operation_phase_changed",
            pool=self.pool.pool_id,
            operation_id=self.op.operation_id,
            previous=previous,
            phase=phase,
        )

    def _complete_batch(self, batch: BatchRecord) -> None:
        batch.status = "Complete"
        batch.finished_at = self.clock.now()
        log.info("batch_completed", pool=self.pool.pool_id, operation_id=self.op.operation_id, batch=batch.index)
        self.advance("BatchComplete")

    # --- node lifecycle ---

    async def wait_ready(self, node: Node) -> None:
        """Poll ``node`` until it is Ready.

        Raises:
            NodeUnhealthyError: If the node reports Unhealthy or disappears.
            HealthCheckTimeout: If it is not Ready within the health check timeout.
        """
        deadline = self.clock.now().timestamp() + self.settings.health_check_timeout_seconds
        while True:
            health = await self.provisioner.get_node_health(self.pool, node.name)
            self._set_health(node.name, health)
            if health == "Ready":
                return
            if health in ("Unhealthy", "Terminated"):
                msg = f"Node {node.name} reported {health} while waiting for Ready"
                raise NodeUnhealthyError(msg, node=node.name)
            if self.clock.now().timestamp() >= deadline:
                msg = f"Node {node.name} not Ready after {self.settings.health_check_timeout_seconds}s"
                raise HealthCheckTimeout(msg, node=node.name)
            await self.clock.sleep(self.settings.poll_interval_seconds)

    async def remove_node(self, name: str) -> None:
        await self.provisioner.terminate_node(self.pool, name)
        self._set_health(name, "Terminated")
        self._changed()

    async def provision_node(self, color: NodeColor | None, batch: BatchRecord) -> Node:
        """Create one node at the target version and wait for it, retrying up to the retry limit."""
        attempt = 0
        error: UpgradeError
        while True:
            final = attempt == self.settings.retry_limit
            try:
                node = await self.provisioner.create_node(self.pool, self.op.target_version, color)
            except ProvisionError as e:
                if final:
                    raise
                error = e
            else:
                self.op.nodes[node.name] = node
                batch.new_nodes.append(node.name)
                self._changed()
                try:
                    await self.wait_ready(node)
                    return node
                except (HealthCheckTimeout, NodeUnhealthyError) as e:
                    batch.status = "Unhealthy"
                    await self.remove_node(node.name)
                    if final:
                        raise e
                    error = e

            attempt += 1
            batch.retries += 1
            log.warning(
                "node_provision_retry",
                pool=self.pool.pool_id,
                operation_id=self.op.operation_id,
                batch=batch.index,
                attempt=attempt,
                error=str(error),
            )

    async def provision_batch(self, count: int, color: NodeColor | None, batch: BatchRecord) -> list[Node]:
        """Create ``count`` nodes concurrently; returns only once every one of them has settled."""
        results = await asyncio.gather(
            *(self.provision_node(color, batch) for _ in range(count)),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]
        return [r for r in results if isinstance(r, Node)]

    async def _retire_one(self, name: str, batch: BatchRecord) -> None:
        self._set_health(name, "Draining")
        await self.provisioner.drain_node(self.pool, name)
        await self.remove_node(name)
        batch.replaced_nodes.append(name)

    async def retire(self, nodes: list[Node], batch: BatchRecord) -> None:
        """Drain and terminate ``nodes`` concurrently; drains in flight always run to completion."""
        results = await asyncio.gather(*(self._retire_one(n.name, batch) for n in nodes), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise errors[0]

    async def rollback_current_batch(self) -> None:
        """Remove new nodes of the unfinished batch that did not replace an old node."""
        if not self.op.batches:
            return
        batch = self.op.batches[-1]
        if batch.status == "Complete":
            return

        live_new = [
            self.op.nodes[name]
            for name in batch.new_nodes
            if name in self.op.nodes and self.op.nodes[name].health != "Terminated"
        ]
        excess = len(live_new) - len(batch.replaced_nodes)
        victims = sorted(live_new, key=_readiness_order)[: max(0, excess)]
        results = await asyncio.gather(*(self.remove_node(n.name) for n in victims), return_exceptions=True)
        for node, result in zip(victims, results, strict=True):
            if isinstance(result, BaseException):
                log.error(
                    "batch_rollback_node_failed",
                    pool=self.pool.pool_id,
                    operation_id=self.op.operation_id,
                    node=node.name,
                    error=str(result),
                )

        if len(batch.replaced_nodes) >= batch.size and excess <= 0:
            batch.status = "Complete"
        elif victims:
            batch.status = "RolledBack"
        batch.finished_at = self.clock.now()
        self._changed()
        log.info(
            "batch_rolled_back",
            pool=self.pool.pool_id,
            operation_id=self.op.operation_id,
            batch=batch.index,
            removed=[n.name for n in victims],
        )


class SurgeExecutor(StrategyExecutor):
    """Adds up to ``max_surge`` new nodes, then drains as many old ones."""

    def plan_batch(self, remaining: int, ready: int, total: int) -> BatchPlan:
        return plan_surge_batch(self.pool, remaining, ready, total)

    async def execute_batch(self, plan: BatchPlan, batch: BatchRecord) -> None:
        self.advance("BatchInProgress")
        if plan.drain_first:
            # Drain and replacement form one step; an abort waits for both.
            await self.retire(self.old_nodes()[: plan.size], batch)
            await self.provision_batch(plan.size, None, batch)
        else:
            await self.provision_batch(plan.size, None, batch)
            self.checkpoint()
            await self.retire(self.old_nodes()[: plan.size], batch)
        self._complete_batch(batch)


class BlueGreenExecutor(StrategyExecutor):
    """Stands up a full green batch, soaks it, then retires the same number of blue nodes."""

    async def plan(self) -> None:
        await super().plan()
        for node in self.op.live_nodes():
            node.color = "Blue" if node.version != self.op.target_version else "Green"
        self._changed()

    def plan_batch(self, remaining: int, ready: int, total: int) -> BatchPlan:
        return plan_blue_green_batch(self.pool, remaining, ready, total)

    async def execute_batch(self, plan: BatchPlan, batch: BatchRecord) -> None:
        self.advance("BatchInProgress")
        green = await self.provision_batch(plan.size, "Green", batch)

        self.advance("Soaking")
        batch.status = "Soaking"
        await self.router.serve_colors(self.pool, ["Blue", "Green"])
        await self.soak(green)

        blue = self.old_nodes()[: plan.size]
        if len(self.old_nodes()) == len(blue):
            await self.router.serve_colors(self.pool, ["Green"])
        await self.retire(blue, batch)
        self._complete_batch(batch)

    async def soak(self, green: list[Node]) -> None:
        """Hold for the soak duration, health-checking every green node each poll interval.

        Raises:
            NodeUnhealthyError: If any green node stops being Ready before the soak ends.
        """
        soak = self.pool.soak_duration_seconds
        start = self.clock.now()
        log.info("soak_started", pool=self.pool.pool_id, operation_id=self.op.operation_id, seconds=soak)
        while True:
            self.checkpoint()
            for node in green:
                health = await self.provisioner.get_node_health(self.pool, node.name)
                self._set_health(node.name, health)
                if health != "Ready":
                    msg = f"Green node {node.name} reported {health} during soak"
                    raise NodeUnhealthyError(msg, node=node.name)
            elapsed = (self.clock.now() - start).total_seconds()
            if elapsed >= soak:
                break
            await self.clock.sleep(min(self.settings.poll_interval_seconds, soak - elapsed))
        log.info("soak_completed", pool=self.pool.pool_id, operation_id=self.op.operation_id)

    async def rollback_current_batch(self) -> None:
        await super().rollback_current_batch()
        if self.old_nodes():
            await self.router.serve_colors(self.pool, ["Blue"])


def executor_for(pool: NodePool) -> type[StrategyExecutor]:
    return BlueGreenExecutor if pool.strategy == "BlueGreen" else SurgeExecutor
