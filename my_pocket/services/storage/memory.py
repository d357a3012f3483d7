"""In-memory local cache, for tests and throwaway sessions."""

import copy
from typing import Any, Optional

from my_pocket.services.storage.interface import LocalCacheStore


class InMemoryCacheStore(LocalCacheStore):
    """Dict-backed cache. Values are deep-copied in and out."""

    def __init__(self):
        self._rows: dict[tuple[str, str, str], dict[str, Any]] = {}

    def get(self, workspace_id: str, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        value = self._rows.get((workspace_id, entity_type, entity_id))
        return copy.deepcopy(value) if value is not None else None

    def put(self, workspace_id: str, entity_type: str, entity_id: str, value: dict[str, Any]) -> None:
        self._rows[(workspace_id, entity_type, entity_id)] = copy.deepcopy(value)

    def delete(self, workspace_id: str, entity_type: str, entity_id: str) -> bool:
        return self._rows.pop((workspace_id, entity_type, entity_id), None) is not None

    def scan(self, workspace_id: str, entity_type: str) -> list[tuple[str, dict[str, Any]]]:
        return [
            (key[2], copy.deepcopy(value))
            for key, value in sorted(self._rows.items())
            if key[0] == workspace_id and key[1] == entity_type
        ]

    def workspace_ids(self) -> list[str]:
        return sorted({key[0] for key in self._rows})

    def purge_workspace(self, workspace_id: str) -> int:
        keys = [key for key in self._rows if key[0] == workspace_id]
        for key in keys:
            del self._rows[key]
        return len(keys)
