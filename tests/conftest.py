"""Shared test fixtures for all test modules."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from nodepool_upgrader.clients.simulated import SimulatedProvisioner
from nodepool_upgrader.clients.traffic import LoggingTrafficRouter
from nodepool_upgrader.config import CLUSTER_MAP, POOL_MAP, ClusterConfig, OrchestratorSettings
from nodepool_upgrader.models import NodePool

TEST_SUBSCRIPTION_ID = "00000000-1111-2222-3333-444444444444"


class ManualClock:
    """Clock whose sleeps advance virtual time instantly."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        self.slept: list[float] = []

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self._now += timedelta(seconds=max(0.0, seconds))
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def cluster_map() -> Iterator[dict[str, ClusterConfig]]:
    """Populate the module-level cluster globals with two test clusters, restoring them afterwards."""
    saved_clusters = dict(CLUSTER_MAP)
    saved_pools = dict(POOL_MAP)

    CLUSTER_MAP.clear()
    for cluster_id, env, region in (("prod-eastus", "prod", "eastus"), ("dev-westus2", "dev", "westus2")):
        CLUSTER_MAP[cluster_id] = ClusterConfig(
            cluster_id=cluster_id,
            environment=env,
            region=region,
            subscription_id=TEST_SUBSCRIPTION_ID,
            resource_group=f"rg-aks-{cluster_id}",
            aks_cluster_name=f"aks-{cluster_id}",
            kubeconfig_context=f"aks-{cluster_id}",
        )
    POOL_MAP.clear()

    yield CLUSTER_MAP

    CLUSTER_MAP.clear()
    CLUSTER_MAP.update(saved_clusters)
    POOL_MAP.clear()
    POOL_MAP.update(saved_pools)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> OrchestratorSettings:
    """Fast, deterministic settings: 10s polls, 60s health timeout, two retries."""
    return OrchestratorSettings(
        health_check_timeout_seconds=60,
        poll_interval_seconds=10,
        retry_limit=2,
        drain_timeout_seconds=60,
        state_dir=None,
        provisioner="simulated",
    )


@pytest.fixture
def provisioner() -> SimulatedProvisioner:
    return SimulatedProvisioner()


@pytest.fixture
def router() -> LoggingTrafficRouter:
    return LoggingTrafficRouter()


@pytest.fixture
def surge_pool() -> NodePool:
    return NodePool(
        name="userpool",
        cluster_id="prod-eastus",
        desired_count=3,
        current_version="1.29.8",
        strategy="Surge",
        max_surge=1,
        max_unavailable=0,
    )


@pytest.fixture
def blue_green_pool() -> NodePool:
    return NodePool(
        name="gpupool",
        cluster_id="prod-eastus",
        desired_count=3,
        current_version="1.29.8",
        strategy="BlueGreen",
        max_surge=0,
        max_unavailable=0,
        batch_percentage=100,
        soak_duration_seconds=300,
    )
