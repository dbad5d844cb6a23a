"""Tests for server.py: FastMCP initialization and tool registration."""

from __future__ import annotations

from nodepool_upgrader.server import mcp


class TestServerInitialization:
    def test_server_name(self) -> None:
        assert mcp.name == "Node Pool Upgrade Orchestrator"

    def test_all_tools_registered(self) -> None:
        tool_names = {tool.name for tool in mcp._tool_manager.list_tools()}
        expected = {
            "list_node_pools",
            "start_node_pool_upgrade",
            "abort_node_pool_upgrade",
            "get_upgrade_operation_status",
        }
        assert tool_names == expected

    def test_each_tool_has_docstring(self) -> None:
        for tool in mcp._tool_manager.list_tools():
            assert tool.description, f"Tool '{tool.name}' has no description"
