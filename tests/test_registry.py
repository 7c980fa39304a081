"""Tests for registry module."""

from __future__ import annotations

from conftest import make_tool
from mcp_proxy.registry import ToolRegistry


class TestToolRegistry:
    """Tests for ToolRegistry."""

    def test_build_and_lookup(self):
        """Test tools are registered under backend-prefixed names."""
        registry = ToolRegistry()
        registry.build("kubernetes", [make_tool("get_pods")])

        entry = registry.lookup("kubernetes_get_pods")
        assert entry is not None
        assert entry.original_name == "get_pods"
        assert entry.backend_id == "kubernetes"
        assert registry.lookup("get_pods") is None

    def test_same_tool_name_on_two_backends(self):
        """Test identical tool names on different backends do not collide."""
        registry = ToolRegistry()
        registry.build("github", [make_tool("search")])
        registry.build("gitlab", [make_tool("search")])

        assert len(registry) == 2
        assert "github_search" in registry
        assert "gitlab_search" in registry

    def test_list_decorates_descriptions(self):
        """Test listed tools carry profile and backend in the description."""
        registry = ToolRegistry()
        registry.build("kubernetes", [make_tool("get_pods", "List pods")])

        [tool] = registry.list("developer")
        assert tool["name"] == "kubernetes_get_pods"
        assert tool["description"] == "[developer/kubernetes] List pods"
        assert tool["inputSchema"] == {"type": "object", "properties": {}}

    def test_list_does_not_change_lookup(self):
        """Test decoration is display-only."""
        registry = ToolRegistry()
        registry.build("kubernetes", [make_tool("get_pods", "List pods")])
        registry.list("developer")

        entry = registry.lookup("kubernetes_get_pods")
        assert entry is not None
        assert entry.description == "List pods"

    def test_list_empty_description(self):
        """Test tools without a description still get the prefix."""
        registry = ToolRegistry()
        registry.build("b", [{"name": "t"}])
        assert registry.list("p")[0]["description"] == "[p/b] "

    def test_list_order_is_registration_order(self):
        """Test listing is reproducible."""
        registry = ToolRegistry()
        registry.build("b", [make_tool("z"), make_tool("a")])
        registry.build("a", [make_tool("m")])

        assert [t["name"] for t in registry.list("p")] == ["b_z", "b_a", "a_m"]
        assert registry.backend_ids() == ["b", "a"]
        assert registry.count_for("b") == 2

    def test_clear(self):
        """Test clear drops every entry."""
        registry = ToolRegistry()
        registry.build("kubernetes", [make_tool("get_pods")])
        registry.clear()

        assert len(registry) == 0
        assert registry.list("p") == []
