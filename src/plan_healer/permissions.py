# permissions.py
# Read-only permission capability consumed by the registry.
#
# Contract: every query reflects the current persisted state. Implementations
# must not cache. A toggle made by the user takes effect on the very next
# list_available() or execute() call.

import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class PermissionStore(Protocol):
    """Live view of tool permissions. Unknown tools default to enabled."""

    def is_enabled(self, tool_name: str, server_id: str | None = None) -> bool: ...

    def is_confirmation_required(self, tool_name: str, server_id: str | None = None) -> bool: ...

    def is_server_enabled(self, server_id: str) -> bool: ...


def _key(tool_name: str, server_id: str | None) -> str:
    return f"{server_id}/{tool_name}" if server_id else tool_name


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryPermissionStore:
    """Dict-backed store. The owner mutates it; the registry only reads."""

    def __init__(self) -> None:
        self._enabled: dict[str, bool] = {}
        self._confirm: dict[str, bool] = {}
        self._servers: dict[str, bool] = {}

    def set_enabled(self, tool_name: str, enabled: bool, server_id: str | None = None) -> None:
        self._enabled[_key(tool_name, server_id)] = enabled

    def set_confirmation_required(self, tool_name: str, required: bool, server_id: str | None = None) -> None:
        self._confirm[_key(tool_name, server_id)] = required

    def set_server_enabled(self, server_id: str, enabled: bool) -> None:
        self._servers[server_id] = enabled

    def is_enabled(self, tool_name: str, server_id: str | None = None) -> bool:
        return self._enabled.get(_key(tool_name, server_id), True) is not False

    def is_confirmation_required(self, tool_name: str, server_id: str | None = None) -> bool:
        return self._confirm.get(_key(tool_name, server_id), False) is True

    def is_server_enabled(self, server_id: str) -> bool:
        return self._servers.get(server_id, True) is not False


# ---------------------------------------------------------------------------
# JSON file store
# ---------------------------------------------------------------------------


class JsonFilePermissionStore:
    """
    Permissions persisted in a JSON file, re-read on every query.

    Layout:
        {
          "tools":   {"file_write": {"enabled": false, "requireConfirmation": true}},
          "servers": {"weather": {"enabled": true,
                                  "tools": {"forecast": {"enabled": false}}}}
        }
    A missing or unreadable file means "everything enabled, nothing confirmed".
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def _load(self) -> dict[str, Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Permission file %s unreadable (%s); defaulting to enabled", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _entry(self, tool_name: str, server_id: str | None) -> dict[str, Any]:
        data = self._load()
        if server_id:
            server = data.get("servers", {}).get(server_id, {})
            entry = server.get("tools", {}).get(tool_name, {})
        else:
            entry = data.get("tools", {}).get(tool_name, {})
        return entry if isinstance(entry, dict) else {}

    def is_enabled(self, tool_name: str, server_id: str | None = None) -> bool:
        return self._entry(tool_name, server_id).get("enabled", True) is not False

    def is_confirmation_required(self, tool_name: str, server_id: str | None = None) -> bool:
        return self._entry(tool_name, server_id).get("requireConfirmation", False) is True

    def is_server_enabled(self, server_id: str) -> bool:
        server = self._load().get("servers", {}).get(server_id, {})
        return not isinstance(server, dict) or server.get("enabled", True) is not False
