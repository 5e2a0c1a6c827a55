# registry.py
# Unified tool registry.
#
# Two independent catalogs, the in-process LocalCatalog and an opaque remote
# tool source, are merged into one namespace. The merged view is rebuilt on
# every call and permissions are read live from the injected store, so a
# toggle or a remote catalog change is visible on the very next lookup.
#
# execute() is the single dispatch boundary: every outcome, including a tool
# that raises, comes back as a DispatchResult. Nothing escapes it.

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from pydantic import ValidationError

from plan_healer.models import BuiltInSource, DispatchResult, RemoteSource, ToolDescriptor
from plan_healer.permissions import PermissionStore
from plan_healer.schema import to_tool_schema

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Any]


# ---------------------------------------------------------------------------
# Tool sources
# ---------------------------------------------------------------------------


@dataclass
class LocalTool:
    name: str
    handler: ToolHandler
    description: str = ""
    input_schema: Any = None
    output_schema: dict[str, Any] | None = None
    category: str | None = None


@dataclass
class LocalCatalog:
    """In-process tools, registered by name. Registration order is kept."""

    tools: dict[str, LocalTool] = field(default_factory=dict)

    def register(self, tool: LocalTool) -> None:
        if tool.name in self.tools:
            logger.warning("Local tool %r registered twice; keeping the first", tool.name)
            return
        self.tools[tool.name] = tool

    def add(self, name: str, handler: ToolHandler, description: str = "", input_schema: Any = None, **extra: Any) -> None:
        self.register(LocalTool(name=name, handler=handler, description=description, input_schema=input_schema, **extra))

    def __contains__(self, name: str) -> bool:
        return name in self.tools

    def __iter__(self):
        return iter(self.tools.values())

    def call(self, name: str, args: dict[str, Any]) -> Any:
        return self.tools[name].handler(args)


class RemoteToolSource(Protocol):
    """
    Opaque server-backed catalog.

    list_tools() returns raw descriptors shaped like
    {"name", "description", "inputSchema", "outputSchema"?, "server"}.
    Schemas from this side are frequently malformed; the registry normalizes them.
    """

    def list_tools(self) -> list[dict[str, Any]]: ...

    def call_tool(self, name: str, args: dict[str, Any]) -> Any: ...


# ---------------------------------------------------------------------------
# Result inspection
# ---------------------------------------------------------------------------


def _result_failure(result: Any) -> tuple[bool, str | None]:
    """
    Detect result-level failure: the call returned, but the payload says it failed.

    Returns (failed, message).
    """
    if not isinstance(result, dict):
        return False, None

    if "success" in result and result["success"] is False:
        error = result.get("error")
        return True, str(error) if error else "Tool reported failure"

    if result.get("isError"):
        if result.get("error"):
            return True, str(result["error"])
        content = result.get("content") or []
        texts = [c.get("text") for c in content if isinstance(c, dict) and c.get("text")]
        return True, ", ".join(texts) if texts else "Remote tool reported an error"

    return False, None


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """
    Single source of truth for what tools exist, whether they are enabled,
    and how to call them.

    Example:
        registry = ToolRegistry(local=catalog, permissions=store, remote=server)
        result = registry.execute("search_files", {"query": "todo"})
    """

    def __init__(
        self,
        local: LocalCatalog,
        permissions: PermissionStore,
        remote: RemoteToolSource | None = None,
    ) -> None:
        self._local = local
        self._permissions = permissions
        self._remote = remote

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def _remote_descriptors(self) -> list[dict[str, Any]]:
        if self._remote is None:
            return []
        try:
            return list(self._remote.list_tools())
        except Exception as exc:
            logger.warning("Failed to list remote tools: %s", exc)
            return []

    def catalog(self) -> list[ToolDescriptor]:
        """Every known tool, enabled or not. First registration wins on name collisions."""
        merged: dict[str, ToolDescriptor] = {}

        for tool in self._local:
            merged[tool.name] = ToolDescriptor(
                name=tool.name,
                description=tool.description,
                input_schema=to_tool_schema(tool.input_schema, tool.name),
                output_schema=tool.output_schema,
                source=BuiltInSource(),
                category=tool.category,
            )

        for raw in self._remote_descriptors():
            name = raw.get("name")
            if not name:
                logger.warning("Skipping remote tool without a name: %r", raw)
                continue
            server_id = str(raw.get("server") or raw.get("server_id") or "default")
            if name in merged:
                logger.warning(
                    "Duplicate tool name %r from server %r dropped; %s registration kept",
                    name, server_id, merged[name].source.kind,
                )
                continue
            try:
                merged[name] = ToolDescriptor(
                    name=name,
                    description=raw.get("description") or "No description available",
                    input_schema=to_tool_schema(raw.get("inputSchema", raw.get("input_schema")), name),
                    output_schema=raw.get("outputSchema"),
                    source=RemoteSource(server_id=server_id),
                    category=raw.get("category"),
                )
            except ValidationError as exc:
                logger.warning("Skipping malformed remote tool %r from server %r: %s", name, server_id, exc)

        return list(merged.values())

    def _enabled(self, descriptor: ToolDescriptor) -> bool:
        if descriptor.is_remote:
            server_id = descriptor.server_id
            return self._permissions.is_server_enabled(server_id) and self._permissions.is_enabled(
                descriptor.name, server_id
            )
        return self._permissions.is_enabled(descriptor.name)

    def find(self, name: str) -> ToolDescriptor | None:
        """Look a tool up regardless of permissions."""
        for descriptor in self.catalog():
            if descriptor.name == name:
                return descriptor
        return None

    def list_available(self) -> list[ToolDescriptor]:
        """Tools the user currently allows. Permissions are queried fresh per tool."""
        return [d for d in self.catalog() if self._enabled(d)]

    def available_names(self) -> list[str]:
        return [d.name for d in self.list_available()]

    def get(self, name: str) -> ToolDescriptor | None:
        """An available (enabled) tool by name, or None."""
        descriptor = self.find(name)
        if descriptor is None or not self._enabled(descriptor):
            return None
        return descriptor

    def is_disabled(self, name: str) -> bool:
        """True when the tool exists but permissions block it."""
        descriptor = self.find(name)
        return descriptor is not None and not self._enabled(descriptor)

    def requires_confirmation(self, name: str) -> bool:
        descriptor = self.find(name)
        if descriptor is None:
            return False
        return self._permissions.is_confirmation_required(descriptor.name, descriptor.server_id)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def execute(self, name: str, args: dict[str, Any]) -> DispatchResult:
        """
        Dispatch a call. Local tools resolve before remote ones.

        Call-level failures (the tool raised) and result-level failures (the
        payload carries success=False or isError) both surface as
        success=False with an error message.
        """
        started = time.perf_counter()

        def elapsed() -> float:
            return (time.perf_counter() - started) * 1000

        descriptor = self.find(name)
        if descriptor is None:
            return DispatchResult(
                success=False, tool_name=name, error=f"Tool not found: {name}", execution_time_ms=elapsed()
            )

        source = descriptor.source.kind
        if not self._enabled(descriptor):
            logger.debug("Tool %s execution blocked by permissions", name)
            return DispatchResult(
                success=False,
                tool_name=name,
                error=f'Tool "{name}" is disabled by user settings',
                execution_time_ms=elapsed(),
                source=source,
            )

        try:
            if descriptor.is_remote:
                logger.debug("Executing remote tool %s on server %s", name, descriptor.server_id)
                result = self._remote.call_tool(name, args)
            else:
                logger.debug("Executing built-in tool %s", name)
                result = self._local.call(name, args)
        except Exception as exc:
            logger.error("Tool %s raised: %s", name, exc)
            return DispatchResult(
                success=False,
                tool_name=name,
                error=str(exc) or type(exc).__name__,
                execution_time_ms=elapsed(),
                source=source,
            )

        failed, message = _result_failure(result)
        return DispatchResult(
            success=not failed,
            tool_name=name,
            result=result,
            error=message,
            execution_time_ms=elapsed(),
            source=source,
        )

    # ------------------------------------------------------------------
    # Reporting / export
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        available = self.list_available()
        by_server: dict[str, int] = {}
        for descriptor in available:
            if descriptor.is_remote:
                by_server[descriptor.server_id] = by_server.get(descriptor.server_id, 0) + 1
        remote = sum(by_server.values())
        return {
            "total": len(available),
            "built_in": len(available) - remote,
            "remote": remote,
            "remote_by_server": by_server,
        }

    def to_openai_tools(self) -> list[dict[str, Any]]:
        """Available tools in OpenAI function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": d.name,
                    "description": d.description,
                    "parameters": d.input_schema.model_dump(),
                },
            }
            for d in self.list_available()
        ]
