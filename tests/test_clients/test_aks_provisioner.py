"""Tests for AksNodeProvisioner: companion pools, node registration, drains and removal."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock, call

import pytest

from nodepool_upgrader.clients.aks_provisioner import AksNodeProvisioner, companion_pool_name
from nodepool_upgrader.config import CLUSTER_MAP, OrchestratorSettings
from nodepool_upgrader.errors import DrainError, ProvisionError
from nodepool_upgrader.models import NodePool

if TYPE_CHECKING:
    from conftest import ManualClock


def _raw_node(name: str, pool: str = "userpool", version: str = "v1.29.8", ready: str = "True") -> dict[str, Any]:
    return {"name": name, "pool": pool, "version": version, "unschedulable": False, "conditions": {"Ready": ready}}


@pytest.fixture
def aks_provisioner(
    settings: OrchestratorSettings,
    clock: ManualClock,
    mock_aks_client: MagicMock,
    mock_core_client: MagicMock,
) -> AksNodeProvisioner:
    return AksNodeProvisioner(
        CLUSTER_MAP["prod-eastus"],
        settings,
        clock=clock,
        aks_client=mock_aks_client,
        core_client=mock_core_client,
    )


class TestCompanionPoolName:
    def test_appends_suffix(self) -> None:
        assert companion_pool_name("userpool") == "userpooln"

    def test_stays_within_aks_limit(self) -> None:
        assert companion_pool_name("abcdefghijkl") == "abcdefghijkn"
        assert len(companion_pool_name("abcdefghijkl")) == 12


class TestListNodes:
    async def test_surge_pool_nodes_have_no_color(
        self, aks_provisioner: AksNodeProvisioner, mock_core_client: MagicMock, surge_pool: NodePool
    ) -> None:
        mock_core_client.get_pool_nodes.return_value = [
            _raw_node("aks-userpool-00000001"),
            _raw_node("aks-userpooln-00000000", pool="userpooln", version="v1.30.0", ready="False"),
        ]
        nodes = await aks_provisioner.list_nodes(surge_pool)

        mock_core_client.get_pool_nodes.assert_awaited_once_with(["userpool", "userpooln"])
        summary = [(n.version, n.health, n.color) for n in nodes]
        assert summary == [("1.29.8", "Ready", None), ("1.30.0", "Pending", None)]
        assert all(n.pool == "prod-eastus/userpool" for n in nodes)

    async def test_blue_green_pool_nodes_are_colored(
        self, aks_provisioner: AksNodeProvisioner, mock_core_client: MagicMock, blue_green_pool: NodePool
    ) -> None:
        mock_core_client.get_pool_nodes.return_value = [
            _raw_node("aks-gpupool-00000001", pool="gpupool"),
            _raw_node("aks-gpupooln-00000000", pool="gpupooln", version="v1.30.0"),
        ]
        nodes = await aks_provisioner.list_nodes(blue_green_pool)
        assert [n.color for n in nodes] == ["Blue", "Green"]


class TestCreateNode:
    async def test_creates_companion_pool_when_missing(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
        clock: ManualClock,
    ) -> None:
        new = _raw_node("aks-userpooln-00000000", pool="userpooln", version="v1.30.0", ready="False")
        mock_aks_client.get_node_pool_state.side_effect = [{"count": 3, "target_version": "1.29.8"}, None]
        mock_core_client.get_pool_nodes.side_effect = [[], [], [new]]

        node = await aks_provisioner.create_node(surge_pool, "1.30.0", None)

        mock_aks_client.create_companion_pool.assert_awaited_once_with("userpool", "userpooln", "1.30.0", count=1)
        mock_aks_client.scale_node_pool.assert_not_awaited()
        assert node.name == "aks-userpooln-00000000"
        assert node.health == "Pending"
        assert node.version == "1.30.0"
        assert clock.slept == [10]

    async def test_scales_pool_already_on_target_version(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        mock_core_client: MagicMock,
        blue_green_pool: NodePool,
    ) -> None:
        existing = _raw_node("aks-gpupooln-00000000", pool="gpupooln", version="v1.30.0")
        new = _raw_node("aks-gpupooln-00000001", pool="gpupooln", version="v1.30.0", ready="False")
        mock_aks_client.get_node_pool_state.side_effect = [
            {"count": 3, "target_version": "1.29.8"},
            {"count": 1, "target_version": "1.30.0"},
        ]
        mock_core_client.get_pool_nodes.side_effect = [[existing], [existing, new]]

        node = await aks_provisioner.create_node(blue_green_pool, "1.30.0", "Green")

        mock_aks_client.scale_node_pool.assert_awaited_once_with("gpupooln", 2)
        mock_aks_client.set_node_pool_version.assert_not_awaited()
        assert node.name == "aks-gpupooln-00000001"
        assert node.color == "Green"

    async def test_empty_source_pool_is_moved_to_new_version(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        new = _raw_node("aks-userpool-00000007", version="v1.31.0", ready="False")
        mock_aks_client.get_node_pool_state.side_effect = [
            {"count": 0, "target_version": "1.29.8"},
            {"count": 3, "target_version": "1.30.0"},
        ]
        mock_core_client.get_pool_nodes.side_effect = [[], [new]]

        node = await aks_provisioner.create_node(surge_pool, "1.31.0", None)

        mock_aks_client.set_node_pool_version.assert_awaited_once_with("userpool", "1.31.0")
        mock_aks_client.scale_node_pool.assert_awaited_once_with("userpool", 1)
        mock_aks_client.create_companion_pool.assert_not_awaited()
        assert node.name == "aks-userpool-00000007"

    async def test_both_pools_occupied_on_other_versions(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        mock_aks_client.get_node_pool_state.side_effect = [
            {"count": 1, "target_version": "1.29.8"},
            {"count": 2, "target_version": "1.31.1"},
        ]
        with pytest.raises(ProvisionError, match="Neither userpool nor userpooln can take a node at 1.30.0"):
            await aks_provisioner.create_node(surge_pool, "1.30.0", None)
        mock_aks_client.scale_node_pool.assert_not_awaited()
        mock_aks_client.set_node_pool_version.assert_not_awaited()

    async def test_azure_errors_become_provision_errors(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        mock_aks_client.create_companion_pool.side_effect = Exception("QuotaExceeded")
        with pytest.raises(ProvisionError, match="QuotaExceeded"):
            await aks_provisioner.create_node(surge_pool, "1.30.0", None)

    async def test_registration_timeout(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
        clock: ManualClock,
    ) -> None:
        mock_core_client.get_pool_nodes.return_value = []
        with pytest.raises(ProvisionError, match="No new node registered in userpooln"):
            await aks_provisioner.create_node(surge_pool, "1.30.0", None)
        assert sum(clock.slept) == 60


def _wire_agent_pools(aks: MagicMock, core: MagicMock, pools: dict[str, dict[str, Any]]) -> None:
    """Back the mocked clients with in-memory agent pools so node counts and versions track each call."""
    serial = iter(range(100))

    def add_nodes(name: str, count: int) -> None:
        pool = pools[name]
        while len(pool["nodes"]) < count:
            node_name = f"aks-{name}-{next(serial):08d}"
            pool["nodes"].append(_raw_node(node_name, pool=name, version=f"v{pool['target_version']}"))
        pool["count"] = count

    async def get_node_pool_state(name: str) -> dict[str, Any] | None:
        pool = pools.get(name)
        return None if pool is None else {"count": pool["count"], "target_version": pool["target_version"]}

    async def create_companion_pool(source: str, name: str, version: str, count: int) -> None:
        pools[name] = {"count": 0, "target_version": version, "nodes": []}
        add_nodes(name, count)

    async def set_node_pool_version(name: str, version: str) -> None:
        pools[name]["target_version"] = version

    async def delete_machines(name: str, machines: list[str]) -> None:
        pool = pools[name]
        pool["nodes"] = [n for n in pool["nodes"] if n["name"] not in machines]
        pool["count"] = len(pool["nodes"])

    async def get_pool_nodes(names: list[str]) -> list[dict[str, Any]]:
        return [n for name in names if name in pools for n in pools[name]["nodes"]]

    async def get_node(node_name: str) -> dict[str, Any] | None:
        return next((n for p in pools.values() for n in p["nodes"] if n["name"] == node_name), None)

    aks.get_node_pool_state.side_effect = get_node_pool_state
    aks.create_companion_pool.side_effect = create_companion_pool
    aks.scale_node_pool.side_effect = add_nodes
    aks.set_node_pool_version.side_effect = set_node_pool_version
    aks.delete_machines.side_effect = delete_machines
    core.get_pool_nodes.side_effect = get_pool_nodes
    core.get_node.side_effect = get_node


class TestSuccessiveUpgrades:
    async def test_pool_can_be_upgraded_twice(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        pools: dict[str, dict[str, Any]] = {
            "userpool": {
                "count": 3,
                "target_version": "1.29.8",
                "nodes": [_raw_node(f"aks-userpool-old{i}") for i in range(3)],
            }
        }
        _wire_agent_pools(mock_aks_client, mock_core_client, pools)

        for version, expected_pool in (("1.30.0", "userpooln"), ("1.31.0", "userpool")):
            for old in await aks_provisioner.list_nodes(surge_pool):
                await aks_provisioner.create_node(surge_pool, version, None)
                await aks_provisioner.terminate_node(surge_pool, old.name)

            nodes = await aks_provisioner.list_nodes(surge_pool)
            assert [n.version for n in nodes] == [version] * 3
            assert pools[expected_pool]["count"] == 3
            assert pools[expected_pool]["target_version"] == version

        assert pools["userpooln"]["count"] == 0
        mock_aks_client.create_companion_pool.assert_awaited_once()
        mock_aks_client.set_node_pool_version.assert_awaited_once_with("userpool", "1.31.0")


class TestGetNodeHealth:
    async def test_missing_node_is_terminated(
        self, aks_provisioner: AksNodeProvisioner, mock_core_client: MagicMock, surge_pool: NodePool
    ) -> None:
        mock_core_client.get_node.return_value = None
        assert await aks_provisioner.get_node_health(surge_pool, "gone") == "Terminated"

    async def test_ready_node(
        self, aks_provisioner: AksNodeProvisioner, mock_core_client: MagicMock, surge_pool: NodePool
    ) -> None:
        mock_core_client.get_node.return_value = _raw_node("aks-userpooln-00000000", pool="userpooln")
        assert await aks_provisioner.get_node_health(surge_pool, "aks-userpooln-00000000") == "Ready"


class TestDrainNode:
    async def test_cordons_and_evicts_until_empty(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        pod = {"name": "web-1", "namespace": "default"}
        mock_core_client.get_evictable_pods.side_effect = [[pod], [pod], []]

        await aks_provisioner.drain_node(surge_pool, "aks-userpool-00000001")

        mock_core_client.cordon_node.assert_awaited_once_with("aks-userpool-00000001")
        assert mock_core_client.evict_pod.await_args_list == [call("web-1", "default"), call("web-1", "default")]

    async def test_timeout_raises_drain_error(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        mock_core_client.get_evictable_pods.return_value = [{"name": "db-0", "namespace": "data"}]
        mock_core_client.evict_pod.return_value = False

        with pytest.raises(DrainError, match="still has 1 pod") as exc_info:
            await aks_provisioner.drain_node(surge_pool, "aks-userpool-00000001")
        assert exc_info.value.node == "aks-userpool-00000001"

    async def test_api_errors_become_drain_errors(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        mock_core_client.cordon_node.side_effect = Exception("Forbidden")
        with pytest.raises(DrainError, match="Forbidden"):
            await aks_provisioner.drain_node(surge_pool, "aks-userpool-00000001")


class TestTerminateNode:
    async def test_deletes_machine_from_its_agent_pool(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        mock_core_client.get_node.return_value = _raw_node("aks-userpool-00000001")
        await aks_provisioner.terminate_node(surge_pool, "aks-userpool-00000001")
        mock_aks_client.delete_machines.assert_awaited_once_with("userpool", ["aks-userpool-00000001"])

    async def test_already_gone(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        await aks_provisioner.terminate_node(surge_pool, "gone")
        mock_aks_client.delete_machines.assert_not_awaited()

    async def test_errors_become_provision_errors(
        self,
        aks_provisioner: AksNodeProvisioner,
        mock_aks_client: MagicMock,
        mock_core_client: MagicMock,
        surge_pool: NodePool,
    ) -> None:
        mock_core_client.get_node.return_value = _raw_node("aks-userpool-00000001")
        mock_aks_client.delete_machines.side_effect = Exception("Conflict")
        with pytest.raises(ProvisionError, match="Conflict") as exc_info:
            await aks_provisioner.terminate_node(surge_pool, "aks-userpool-00000001")
        assert exc_info.value.node == "aks-userpool-00000001"
