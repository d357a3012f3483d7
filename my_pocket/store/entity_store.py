"""
Entity Store

The single in-process owner of ledger entities, indexed by
``(entity_type, workspace_id, entity_id)``.

DESIGN DECISION: The store holds typed pydantic models and does no I/O.
The sync coordinator writes every change through to the local cache and
rebuilds the store from it on start, so the store is always a mirror of
what is durable locally.
"""

from collections import defaultdict
from typing import Optional

from my_pocket.models.ledger import (
    Cartao,
    Compra,
    Despesa,
    EntityRef,
    EntityType,
    LedgerEntity,
    Month,
    RecurringTemplate,
    Workspace,
)


class EntityStore:
    """In-memory typed entity index."""

    def __init__(self):
        self._entities: dict[tuple[EntityType, str], dict[str, LedgerEntity]] = defaultdict(dict)

    # -------------------------------------------------------------------------
    # Generic access
    # -------------------------------------------------------------------------

    def get(self, entity_type: EntityType, workspace_id: str, entity_id: str) -> Optional[LedgerEntity]:
        return self._entities.get((entity_type, workspace_id), {}).get(entity_id)

    def get_ref(self, ref: EntityRef) -> Optional[LedgerEntity]:
        return self.get(ref.entity_type, ref.workspace_id, ref.entity_id)

    def has(self, ref: EntityRef) -> bool:
        return self.get_ref(ref) is not None

    def put(self, entity: LedgerEntity) -> LedgerEntity:
        self._entities[(entity.entity_type, entity.workspace_id)][entity.id] = entity
        return entity

    def remove(self, ref: EntityRef) -> Optional[LedgerEntity]:
        bucket = self._entities.get((ref.entity_type, ref.workspace_id))
        if bucket is None:
            return None
        return bucket.pop(ref.entity_id, None)

    def list_entities(self, entity_type: EntityType, workspace_id: str) -> list[LedgerEntity]:
        """Entities of one type in one workspace, oldest first."""
        bucket = self._entities.get((entity_type, workspace_id), {})
        return sorted(bucket.values(), key=lambda entity: (entity.created_at, entity.id))

    # -------------------------------------------------------------------------
    # Typed helpers
    # -------------------------------------------------------------------------

    def workspace(self, workspace_id: str) -> Optional[Workspace]:
        return self.get(EntityType.WORKSPACE, workspace_id, workspace_id)

    def workspaces(self) -> list[Workspace]:
        found = [
            entity
            for (entity_type, _), bucket in self._entities.items()
            if entity_type == EntityType.WORKSPACE
            for entity in bucket.values()
        ]
        return sorted(found, key=lambda workspace: (workspace.created_at, workspace.id))

    def month(self, workspace_id: str, month_id: str) -> Optional[Month]:
        return self.get(EntityType.MONTH, workspace_id, month_id)

    def months(self, workspace_id: str) -> list[Month]:
        """Months of a workspace in calendar order."""
        bucket = self._entities.get((EntityType.MONTH, workspace_id), {})
        return [bucket[month_id] for month_id in sorted(bucket)]

    def despesas(self, workspace_id: str, month_id: Optional[str] = None) -> list[Despesa]:
        return [
            despesa for despesa in self.list_entities(EntityType.DESPESA, workspace_id)
            if month_id is None or despesa.month_id == month_id
        ]

    def cartoes(self, workspace_id: str) -> list[Cartao]:
        return self.list_entities(EntityType.CARTAO, workspace_id)

    def compras(self, workspace_id: str, cartao_id: Optional[str] = None) -> list[Compra]:
        return [
            compra for compra in self.list_entities(EntityType.COMPRA, workspace_id)
            if cartao_id is None or compra.cartao_id == cartao_id
        ]

    def templates(self, workspace_id: str) -> list[RecurringTemplate]:
        return self.list_entities(EntityType.TEMPLATE, workspace_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def purge_workspace(self, workspace_id: str) -> list[LedgerEntity]:
        """Drop every entity scoped to a workspace, the workspace included."""
        removed: list[LedgerEntity] = []
        for key in [key for key in self._entities if key[1] == workspace_id]:
            removed.extend(self._entities.pop(key).values())
        return removed

    def clear(self) -> None:
        self._entities.clear()
