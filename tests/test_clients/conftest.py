"""Client-specific test fixtures: mocked AKS/Kubernetes wrappers."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture
def mock_aks_client() -> MagicMock:
    aks = MagicMock()
    aks.get_node_pool_state = AsyncMock(return_value=None)
    aks.create_companion_pool = AsyncMock()
    aks.scale_node_pool = AsyncMock()
    aks.set_node_pool_version = AsyncMock()
    aks.delete_machines = AsyncMock()
    return aks


@pytest.fixture
def mock_core_client() -> MagicMock:
    core = MagicMock()
    core.get_pool_nodes = AsyncMock(return_value=[])
    core.get_node = AsyncMock(return_value=None)
    core.cordon_node = AsyncMock()
    core.get_evictable_pods = AsyncMock(return_value=[])
    core.evict_pod = AsyncMock(return_value=True)
    return core
