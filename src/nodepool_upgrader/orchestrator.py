"""Upgrade orchestrator: one in-flight operation per pool, driven as an asyncio task."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass

import structlog

from nodepool_upgrader.clients.provisioner import NodeProvisioner
from nodepool_upgrader.clients.traffic import LoggingTrafficRouter, TrafficRouter
from nodepool_upgrader.clock import Clock, SystemClock
from nodepool_upgrader.config import OrchestratorSettings
from nodepool_upgrader.errors import ConflictError, OperationNotFoundError, PoolNotFoundError
from nodepool_upgrader.models import NodePool, OperationError, UpgradeOperation
from nodepool_upgrader.store import OperationStore
from nodepool_upgrader.strategies import AbortRequested, StrategyExecutor, executor_for
from nodepool_upgrader.validation import normalize_version, validate_target_version

log = structlog.get_logger()


@dataclass
class _InFlight:
    operation: UpgradeOperation
    task: asyncio.Task[None]
    abort_event: asyncio.Event


class UpgradeOrchestrator:
    """Rolls node pools to new versions without breaking their availability limits.

    Args:
        pools: Pools by ``pool_id``. Their ``current_version`` is updated when an
            upgrade completes.
        provisioner: One provisioner for every pool, or a mapping of cluster id
            to provisioner.
        settings: Timeouts and retry limits.
        router: Traffic router for blue-green cut-overs.
        clock: Time source for soak periods and deadlines.
        store: Operation archive; a fresh in-memory store when omitted.
    """

    def __init__(
        self,
        pools: Mapping[str, NodePool],
        provisioner: NodeProvisioner | Mapping[str, NodeProvisioner],
        settings: OrchestratorSettings,
        router: TrafficRouter | None = None,
        clock: Clock | None = None,
        store: OperationStore | None = None,
    ) -> None:
        self._pools = dict(pools)
        self._provisioner = provisioner
        self._settings = settings
        self._router = router or LoggingTrafficRouter()
        self._clock = clock or SystemClock()
        self._store = store or OperationStore()
        self._active: dict[str, _InFlight] = {}
        self._store.recover_interrupted(self._clock.now())

    # --- pools ---

    def list_pools(self) -> list[NodePool]:
        return [self._pools[pid] for pid in sorted(self._pools)]

    def get_pool(self, pool_id: str) -> NodePool:
        if pool_id not in self._pools:
            valid = ", ".join(sorted(self._pools))
            msg = f"Unknown node pool '{pool_id}'. Valid pools: {valid}"
            raise PoolNotFoundError(msg)
        return self._pools[pool_id]

    def is_in_flight(self, pool_id: str) -> bool:
        return pool_id in self._active

    # --- operations ---

    async def start_upgrade(self, pool_id: str, target_version: str) -> UpgradeOperation:
        """Create an upgrade operation for ``pool_id`` and start driving it.

        Returns:
            A snapshot of the new operation in phase Planning.

        Raises:
            PoolNotFoundError: If the pool is not configured.
            ConflictError: If an operation is already in flight for the pool.
            ValueError: If the target version is malformed or already current.
        """
        pool = self.get_pool(pool_id)
        if pool_id in self._active:
            running = self._active[pool_id].operation
            msg = (
                f"Upgrade {running.operation_id} to {running.target_version} is already "
                f"in flight for {pool_id} (phase {running.phase})"
            )
            raise ConflictError(msg)
        validate_target_version(pool.current_version, target_version)
        provisioner = self._provisioner_for(pool)

        operation = UpgradeOperation(
            pool_id=pool_id,
            strategy=pool.strategy,
            source_version=pool.current_version,
            target_version=normalize_version(target_version),
            started_at=self._clock.now(),
        )
        pool.target_version = operation.target_version
        abort_event = asyncio.Event()
        executor = executor_for(pool)(
            pool,
            operation,
            provisioner,
            self._router,
            self._settings,
            self._clock,
            abort_event,
            on_change=self._store.save,
        )
        task = asyncio.create_task(self._drive(executor), name=f"upgrade:{pool_id}")
        self._active[pool_id] = _InFlight(operation, task, abort_event)
        self._store.save(operation)
        log.info(
            "upgrade_started",
            pool=pool_id,
            operation_id=operation.operation_id,
            strategy=operation.strategy,
            source_version=operation.source_version,
            target_version=operation.target_version,
        )
        return operation.model_copy(deep=True)

    async def abort_upgrade(self, pool_id: str) -> UpgradeOperation:
        """Request cancellation of the in-flight operation for ``pool_id``.

        Node work already in flight finishes before the operation reaches Aborted.

        Raises:
            OperationNotFoundError: If no operation is in flight for the pool.
        """
        inflight = self._active.get(pool_id)
        if inflight is None:
            msg = f"No upgrade in flight for {pool_id}"
            raise OperationNotFoundError(msg)
        operation = inflight.operation
        if operation.phase != "Aborting":
            operation.transition("Aborting", self._clock.now())
            self._store.save(operation)
            log.info("upgrade_abort_requested", pool=pool_id, operation_id=operation.operation_id)
        inflight.abort_event.set()
        return operation.model_copy(deep=True)

    def get_operation_status(self, pool_id: str) -> UpgradeOperation:
        """Return the in-flight operation for ``pool_id``, or the most recent finished one.

        Raises:
            OperationNotFoundError: If the pool has never been upgraded.
        """
        inflight = self._active.get(pool_id)
        if inflight is not None:
            return inflight.operation.model_copy(deep=True)
        latest = self._store.latest(pool_id)
        if latest is None:
            msg = f"No upgrade operation recorded for {pool_id}"
            raise OperationNotFoundError(msg)
        return latest

    def get_history(self, pool_id: str) -> list[UpgradeOperation]:
        return self._store.history(pool_id)

    async def wait_for_completion(self, pool_id: str) -> UpgradeOperation:
        """Wait for the in-flight operation (if any) and return the terminal snapshot."""
        inflight = self._active.get(pool_id)
        if inflight is not None:
            await asyncio.shield(inflight.task)
        return self.get_operation_status(pool_id)

    # --- execution ---

    def _provisioner_for(self, pool: NodePool) -> NodeProvisioner:
        if isinstance(self._provisioner, Mapping):
            try:
                return self._provisioner[pool.cluster_id]
            except KeyError:
                msg = f"No provisioner configured for cluster {pool.cluster_id}"
                raise PoolNotFoundError(msg) from None
        return self._provisioner

    async def _drive(self, executor: StrategyExecutor) -> None:
        pool = executor.pool
        operation = executor.op
        bound = log.bind(pool=pool.pool_id, operation_id=operation.operation_id)
        try:
            await executor.plan()
            await executor.run()
            executor.advance("Completed")
            pool.current_version = operation.target_version
            pool.target_version = None
            bound.info("upgrade_completed", batches=len(operation.batches))
        except AbortRequested:
            await self._rollback(executor)
            operation.transition("Aborted", self._clock.now())
            pool.target_version = None
            bound.warning("upgrade_aborted", batches=len(operation.batches))
        except asyncio.CancelledError:
            operation.error = OperationError(kind="Cancelled", message="Upgrade task was cancelled")
            operation.transition("Failed", self._clock.now())
            pool.target_version = None
            bound.error("upgrade_cancelled", batches=len(operation.batches))
            raise
        except Exception as e:
            # Failures are scoped to the operation; completed batches stay in place.
            operation.error = OperationError(
                kind=type(e).__name__,
                message=str(e),
                node=getattr(e, "node", None),
            )
            bound.error("upgrade_failed", error_kind=operation.error.kind, error=str(e), node=operation.error.node)
            await self._rollback(executor)
            operation.transition("Failed", self._clock.now())
            pool.target_version = None
        finally:
            self._active.pop(pool.pool_id, None)
            self._store.save(operation)

    async def _rollback(self, executor: StrategyExecutor) -> None:
        try:
            await executor.rollback_current_batch()
        except Exception as e:
            log.error(
                "batch_rollback_failed",
                pool=executor.pool.pool_id,
                operation_id=executor.op.operation_id,
                error=str(e),
            )
