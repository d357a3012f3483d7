"""
Push Queue

The durable, ordered list of local writes waiting for remote confirmation,
one queue per workspace.

DESIGN DECISION: The queue lives in the local cache under the reserved
``outbox`` namespace, keyed by a zero-padded sequence number, so a scan
returns mutations in the order they were made and a restart resumes
exactly where the previous session stopped.

CRITICAL: Only the head of the queue is ever pushed. Later mutations for
the same entity were made on top of the head's result, so when the head
is accepted their ``base_version`` is moved forward (``rebase``), and when
the head ends in a conflict or a rejection they are dropped.
"""

from typing import Optional

from my_pocket.models.ledger import EntityRef
from my_pocket.models.sync import PendingMutation
from my_pocket.services.storage.interface import OUTBOX_NAMESPACE, LocalCacheStore


SEQUENCE_WIDTH = 12


def sequence_key(sequence: int) -> str:
    return str(sequence).zfill(SEQUENCE_WIDTH)


class PushQueue:
    """Ordered, write-through queue of PendingMutations for one workspace."""

    def __init__(self, cache: LocalCacheStore, workspace_id: str):
        self._cache = cache
        self._workspace_id = workspace_id
        self._items: list[PendingMutation] = []
        self._next_sequence = 1
        self.reload()

    @property
    def workspace_id(self) -> str:
        return self._workspace_id

    def reload(self) -> None:
        """Re-read the queue from the cache."""
        self._items = [
            PendingMutation.model_validate(value)
            for _, value in self._cache.scan(self._workspace_id, OUTBOX_NAMESPACE)
        ]
        self._items.sort(key=lambda mutation: mutation.sequence)
        last = self._items[-1].sequence if self._items else 0
        self._next_sequence = max(self._next_sequence, last + 1)

    def _save(self, mutation: PendingMutation) -> None:
        self._cache.put(
            self._workspace_id,
            OUTBOX_NAMESPACE,
            sequence_key(mutation.sequence),
            mutation.model_dump(mode="json"),
        )

    def _delete(self, mutation: PendingMutation) -> None:
        self._cache.delete(self._workspace_id, OUTBOX_NAMESPACE, sequence_key(mutation.sequence))

    # -------------------------------------------------------------------------
    # Queue operations
    # -------------------------------------------------------------------------

    def enqueue(self, mutation: PendingMutation) -> PendingMutation:
        """Assign the next sequence number, persist, and append."""
        queued = mutation.model_copy(update={"sequence": self._next_sequence})
        self._next_sequence += 1
        self._save(queued)
        self._items.append(queued)
        return queued

    def peek(self) -> Optional[PendingMutation]:
        return self._items[0] if self._items else None

    def get(self, mutation_id: str) -> Optional[PendingMutation]:
        for mutation in self._items:
            if mutation.mutation_id == mutation_id:
                return mutation
        return None

    def pending(self) -> list[PendingMutation]:
        return list(self._items)

    def remove(self, mutation_id: str) -> bool:
        mutation = self.get(mutation_id)
        if mutation is None:
            return False
        self._items.remove(mutation)
        self._delete(mutation)
        return True

    def drop_for_ref(self, ref: EntityRef) -> list[PendingMutation]:
        """Remove every queued mutation for ``ref``; returns what was removed."""
        dropped = [mutation for mutation in self._items if mutation.ref == ref]
        for mutation in dropped:
            self._items.remove(mutation)
            self._delete(mutation)
        return dropped

    def rebase(self, ref: EntityRef, from_version: int, to_version: int) -> int:
        """
        Move queued mutations for ``ref`` based on ``from_version`` onto
        ``to_version``. Returns how many were rebased.
        """
        rebased = 0
        for index, mutation in enumerate(self._items):
            if mutation.ref == ref and mutation.base_version == from_version:
                updated = mutation.model_copy(update={"base_version": to_version})
                self._items[index] = updated
                self._save(updated)
                rebased += 1
        return rebased

    def has_pending(self, ref: EntityRef) -> bool:
        return any(mutation.ref == ref for mutation in self._items)

    def pending_refs(self) -> set[EntityRef]:
        return {mutation.ref for mutation in self._items}

    def clear(self) -> None:
        for mutation in self._items:
            self._delete(mutation)
        self._items = []

    def __len__(self) -> int:
        return len(self._items)
