"""Connection vault - resolves vault ids to database connection details."""

from typing import Any, Dict, Mapping, Optional, Protocol

from core.logging import get_logger

logger = get_logger(__name__)


class ConnectionVault(Protocol):
    async def get_connection(self, org_id: str, vault_id: str) -> Optional[Dict[str, Any]]:
        """Return ``{"connectionString": ..., "database": ...}`` or None."""
        ...


class StaticConnectionVault:
    """Vault backed by a mapping of vault id to connection details.

    Entries may be shared (``{vault_id: {...}}``) or scoped to an
    organization (``{org_id: {vault_id: {...}}}``); org-scoped entries win.
    A bare string value is taken as the connection string.
    """

    def __init__(self, connections: Optional[Mapping[str, Any]] = None):
        self._connections: Dict[str, Any] = dict(connections or {})

    def add(self, vault_id: str, connection_string: str, database: Optional[str] = None,
            org_id: Optional[str] = None) -> None:
        entry = {"connectionString": connection_string, "database": database}
        if org_id:
            self._connections.setdefault(org_id, {})[vault_id] = entry
        else:
            self._connections[vault_id] = entry

    async def get_connection(self, org_id: str, vault_id: str) -> Optional[Dict[str, Any]]:
        scoped = self._connections.get(org_id)
        entry = None
        if isinstance(scoped, dict) and "connectionString" not in scoped:
            entry = scoped.get(vault_id)
        if entry is None:
            entry = self._connections.get(vault_id)
        if entry is None:
            logger.debug("Vault entry not found", org_id=org_id, vault_id=vault_id)
            return None
        if isinstance(entry, str):
            return {"connectionString": entry, "database": None}
        return {
            "connectionString": entry.get("connectionString") or entry.get("connection_string"),
            "database": entry.get("database"),
        }
