"""Batch sizing and availability arithmetic shared by both upgrade strategies."""

from __future__ import annotations

import math
from dataclasses import dataclass

from nodepool_upgrader.errors import AvailabilityViolation
from nodepool_upgrader.models import NodePool


@dataclass(frozen=True)
class BatchPlan:
    """Size and worst-case footprint of the next batch."""

    size: int
    drain_first: bool
    in_flight_unavailable: int
    peak_unavailable: int
    peak_total: int


def unavailable_count(desired_count: int, ready_count: int) -> int:
    """Nodes the pool is short of its desired Ready capacity."""
    return max(0, desired_count - ready_count)


def shared_batch_size(desired_count: int, batch_percentage: int, in_flight_unavailable: int) -> int:
    """``ceil(desired * pct / 100)`` clamped to ``[1, desired - in_flight_unavailable]``."""
    size = math.ceil(desired_count * batch_percentage / 100)
    upper = desired_count - in_flight_unavailable
    return max(1, min(size, upper))


def plan_surge_batch(pool: NodePool, remaining: int, ready_count: int, total_count: int) -> BatchPlan:
    """Plan the next surge batch.

    With ``max_surge > 0`` new nodes are added before old ones are drained, so the
    batch never lowers Ready capacity. With ``max_surge == 0`` old nodes are drained
    first and the batch is bounded by the unavailability budget instead.

    Raises:
        AvailabilityViolation: If the batch would breach ``max_unavailable`` or
            grow the pool past ``desired_count + max_surge``.
    """
    in_flight = unavailable_count(pool.desired_count, ready_count)
    shared = shared_batch_size(pool.desired_count, pool.batch_percentage, in_flight)

    if pool.max_surge > 0:
        size = min(pool.max_surge, shared, remaining)
        plan = BatchPlan(
            size=size,
            drain_first=False,
            in_flight_unavailable=in_flight,
            peak_unavailable=in_flight,
            peak_total=total_count + size,
        )
    else:
        budget = pool.max_unavailable - in_flight
        if budget < 1:
            msg = (
                f"Pool {pool.pool_id} has max_surge=0 and {in_flight} unavailable node(s) against "
                f"max_unavailable={pool.max_unavailable}; no node can be drained without breaching it"
            )
            raise AvailabilityViolation(msg)
        size = min(budget, shared, remaining)
        plan = BatchPlan(
            size=size,
            drain_first=True,
            in_flight_unavailable=in_flight,
            peak_unavailable=in_flight + size,
            peak_total=total_count,
        )

    _check_plan(pool, plan, surge_cap=True)
    return plan


def plan_blue_green_batch(pool: NodePool, remaining: int, ready_count: int, total_count: int) -> BatchPlan:
    """Plan the next green batch; blue nodes stay in service until the batch has soaked."""
    in_flight = unavailable_count(pool.desired_count, ready_count)
    size = min(shared_batch_size(pool.desired_count, pool.batch_percentage, in_flight), remaining)
    plan = BatchPlan(
        size=size,
        drain_first=False,
        in_flight_unavailable=in_flight,
        peak_unavailable=in_flight,
        peak_total=total_count + size,
    )
    _check_plan(pool, plan, surge_cap=False)
    return plan


def _check_plan(pool: NodePool, plan: BatchPlan, *, surge_cap: bool) -> None:
    # A create-first batch adds capacity before removing any, so it may start from a
    # pool already short of Ready nodes as long as it does not deepen the shortfall.
    allowed = pool.max_unavailable
    if not plan.drain_first:
        allowed = max(allowed, plan.in_flight_unavailable)
    if plan.peak_unavailable > allowed:
        msg = (
            f"Batch of {plan.size} on {pool.pool_id} would leave {plan.peak_unavailable} node(s) "
            f"unavailable, above max_unavailable={pool.max_unavailable}"
        )
        raise AvailabilityViolation(msg)
    if surge_cap and plan.peak_total > pool.desired_count + pool.max_surge:
        msg = (
            f"Batch of {plan.size} on {pool.pool_id} would grow the pool to {plan.peak_total} node(s), "
            f"above desired_count + max_surge = {pool.desired_count + pool.max_surge}"
        )
        raise AvailabilityViolation(msg)
