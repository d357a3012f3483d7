"""In-process entity store."""

from my_pocket.store.entity_store import EntityStore

__all__ = ["EntityStore"]
