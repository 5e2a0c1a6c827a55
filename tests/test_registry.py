import json
from unittest.mock import MagicMock

import pytest

from plan_healer.permissions import InMemoryPermissionStore, JsonFilePermissionStore
from plan_healer.registry import LocalCatalog, ToolRegistry


def _catalog():
    catalog = LocalCatalog()
    catalog.add(
        "search_files",
        lambda args: {"results": [{"path": "notes.md"}], "query": args["query"]},
        "Search files",
        {"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
    )
    catalog.add("echo", lambda args: args.get("message", ""), "Echo", {"properties": {"message": {"type": "string"}}})
    return catalog


def _remote(tools=None):
    remote = MagicMock()
    remote.list_tools.return_value = tools if tools is not None else [
        {"name": "forecast", "description": "Weather", "inputSchema": {"type": "None"}, "server": "weather"},
    ]
    return remote

# ---------------------------------------------------------------------------
# Namespace merge
# ---------------------------------------------------------------------------

def test_catalog_merges_local_then_remote():
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore(), _remote())
    names = [d.name for d in registry.catalog()]
    assert names == ["search_files", "echo", "forecast"]

    forecast = registry.find("forecast")
    assert forecast.is_remote
    assert forecast.server_id == "weather"
    assert forecast.input_schema.type == "object"

def test_name_collision_keeps_first_registration(caplog):
    remote = _remote([
        {"name": "echo", "description": "remote echo", "inputSchema": {}, "server": "srv"},
    ])
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore(), remote)

    echoes = [d for d in registry.catalog() if d.name == "echo"]
    assert len(echoes) == 1
    assert echoes[0].source.kind == "built-in"
    assert "Duplicate tool name 'echo'" in caplog.text

def test_duplicate_local_registration_keeps_first():
    catalog = LocalCatalog()
    catalog.add("a", lambda args: "first")
    catalog.add("a", lambda args: "second")
    assert catalog.call("a", {}) == "first"

def test_remote_listing_failure_is_contained():
    remote = MagicMock()
    remote.list_tools.side_effect = ConnectionError("server down")
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore(), remote)
    assert registry.available_names() == ["search_files", "echo"]

def test_catalog_reflects_remote_changes_without_refresh():
    remote = _remote([])
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore(), remote)
    assert registry.find("forecast") is None

    remote.list_tools.return_value = [{"name": "forecast", "inputSchema": {}, "server": "weather"}]
    assert registry.find("forecast") is not None

# ---------------------------------------------------------------------------
# Permission gating
# ---------------------------------------------------------------------------

def test_disabled_tool_is_hidden_and_rejected_immediately():
    store = InMemoryPermissionStore()
    registry = ToolRegistry(_catalog(), store)
    assert "search_files" in registry.available_names()

    store.set_enabled("search_files", False)
    assert "search_files" not in registry.available_names()
    assert registry.get("search_files") is None
    assert registry.is_disabled("search_files")

    result = registry.execute("search_files", {"query": "todo"})
    assert result.success is False
    assert "disabled" in result.error

    store.set_enabled("search_files", True)
    assert registry.execute("search_files", {"query": "todo"}).success is True

def test_disabled_server_hides_its_tools():
    store = InMemoryPermissionStore()
    registry = ToolRegistry(_catalog(), store, _remote())
    store.set_server_enabled("weather", False)
    assert "forecast" not in registry.available_names()

def test_remote_tool_permission_is_scoped_by_server():
    store = InMemoryPermissionStore()
    registry = ToolRegistry(_catalog(), store, _remote())
    store.set_enabled("forecast", False, server_id="weather")
    assert "forecast" not in registry.available_names()
    # Same name without the server scope is a different key.
    assert store.is_enabled("forecast")

def test_requires_confirmation_is_read_live():
    store = InMemoryPermissionStore()
    registry = ToolRegistry(_catalog(), store)
    assert registry.requires_confirmation("echo") is False
    store.set_confirmation_required("echo", True)
    assert registry.requires_confirmation("echo") is True

def test_json_file_store_rereads_on_every_query(tmp_path):
    path = tmp_path / "permissions.json"
    store = JsonFilePermissionStore(path)
    registry = ToolRegistry(_catalog(), store, _remote())
    assert "echo" in registry.available_names()

    path.write_text(json.dumps({
        "tools": {"echo": {"enabled": False}, "search_files": {"requireConfirmation": True}},
        "servers": {"weather": {"enabled": True, "tools": {"forecast": {"enabled": False}}}},
    }))
    assert registry.available_names() == ["search_files"]
    assert registry.requires_confirmation("search_files") is True

def test_json_file_store_tolerates_garbage(tmp_path):
    path = tmp_path / "permissions.json"
    path.write_text("{not json")
    store = JsonFilePermissionStore(path)
    assert store.is_enabled("anything") is True
    assert store.is_server_enabled("srv") is True

# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def test_execute_unknown_tool():
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore())
    result = registry.execute("nope", {})
    assert result.success is False
    assert result.error == "Tool not found: nope"

def test_execute_converts_exceptions():
    catalog = LocalCatalog()
    catalog.add("boom", MagicMock(side_effect=RuntimeError("kaboom")))
    registry = ToolRegistry(catalog, InMemoryPermissionStore())
    result = registry.execute("boom", {})
    assert result.success is False
    assert result.error == "kaboom"
    assert result.source == "built-in"

def test_execute_result_level_failure():
    catalog = LocalCatalog()
    catalog.add("soft_fail", lambda args: {"success": False, "error": "quota exceeded"})
    registry = ToolRegistry(catalog, InMemoryPermissionStore())
    result = registry.execute("soft_fail", {})
    assert result.success is False
    assert result.error == "quota exceeded"

def test_execute_remote_is_error_marker_joins_text():
    remote = _remote()
    remote.call_tool.return_value = {
        "isError": True,
        "content": [{"type": "text", "text": "bad city"}, {"type": "text", "text": "try again"}],
    }
    registry = ToolRegistry(LocalCatalog(), InMemoryPermissionStore(), remote)
    result = registry.execute("forecast", {"city": "x"})
    assert result.success is False
    assert result.error == "bad city, try again"
    remote.call_tool.assert_called_once_with("forecast", {"city": "x"})

def test_execute_success_reports_source_and_timing():
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore())
    result = registry.execute("search_files", {"query": "todo"})
    assert result.success is True
    assert result.result["query"] == "todo"
    assert result.source == "built-in"
    assert result.execution_time_ms >= 0

# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def test_stats_and_openai_export():
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore(), _remote())
    assert registry.stats() == {"total": 3, "built_in": 2, "remote": 1, "remote_by_server": {"weather": 1}}

    exported = registry.to_openai_tools()
    assert exported[0]["type"] == "function"
    assert exported[0]["function"]["name"] == "search_files"
    assert exported[0]["function"]["parameters"]["required"] == ["query"]

@pytest.mark.parametrize("name", ["search_files", "forecast"])
def test_get_returns_enabled_descriptor(name):
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore(), _remote())
    assert registry.get(name).name == name

def test_polymorphic_for_each_schema_does_not_break_dispatch():
    catalog = _catalog()
    catalog.add(
        "for_each",
        lambda args: [],
        "Loop",
        {"type": "object", "properties": {"items": {"type": "array"}, "mode": "any"}, "required": ["items", 7]},
    )
    registry = ToolRegistry(catalog, InMemoryPermissionStore())

    assert registry.execute("echo", {"message": "hi"}).result == "hi"
    schema = registry.find("for_each").input_schema
    assert schema.properties == {"items": {"type": "array"}}
    assert schema.required == ["items"]

def test_malformed_remote_descriptor_is_skipped(caplog):
    remote = _remote([
        {"name": "broken", "description": {"text": "not a string"}, "server": "s1"},
        {"name": "forecast", "description": "Weather", "server": "weather"},
    ])
    registry = ToolRegistry(_catalog(), InMemoryPermissionStore(), remote)

    assert [d.name for d in registry.catalog()] == ["search_files", "echo", "forecast"]
    assert "broken" in caplog.text
