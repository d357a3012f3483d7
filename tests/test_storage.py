"""
Tests for the local cache implementations and the push queue built on them.
"""

import pytest

from my_pocket.models.ledger import EntityRef, EntityType
from my_pocket.models.sync import MutationOp, PendingMutation
from my_pocket.services.storage import (
    OUTBOX_NAMESPACE,
    InMemoryCacheStore,
    SQLiteCacheStore,
)
from my_pocket.sync import PushQueue
from my_pocket.sync.outbox import sequence_key


@pytest.fixture(params=["memory", "sqlite"])
def cache(request, tmp_path):
    if request.param == "memory":
        store = InMemoryCacheStore()
    else:
        store = SQLiteCacheStore(str(tmp_path / "cache" / "my_pocket.db"))
    yield store
    store.close()


def ref(entity_id: str = "d1", entity_type: EntityType = EntityType.DESPESA) -> EntityRef:
    return EntityRef(workspace_id="w1", entity_type=entity_type, entity_id=entity_id)


def mutation(entity_id: str = "d1", base_version: int = 0, op: MutationOp = MutationOp.UPSERT) -> PendingMutation:
    return PendingMutation(
        op=op,
        ref=ref(entity_id),
        payload={"id": entity_id} if op == MutationOp.UPSERT else None,
        base_version=base_version,
        actor_id="ana",
    )


class TestLocalCache:
    """Both cache implementations behave the same."""

    def test_put_get_delete(self, cache):
        cache.put("w1", "despesa", "d1", {"nome": "Luz", "valor": "80.00"})
        assert cache.get("w1", "despesa", "d1") == {"nome": "Luz", "valor": "80.00"}
        assert cache.delete("w1", "despesa", "d1") is True
        assert cache.delete("w1", "despesa", "d1") is False
        assert cache.get("w1", "despesa", "d1") is None

    def test_put_replaces(self, cache):
        cache.put("w1", "month", "2025-10", {"saldo_inicial": "100"})
        cache.put("w1", "month", "2025-10", {"saldo_inicial": "200"})
        assert cache.get("w1", "month", "2025-10") == {"saldo_inicial": "200"}

    def test_scan_is_scoped_and_ordered_by_id(self, cache):
        cache.put("w1", "month", "2025-12", {"n": 3})
        cache.put("w1", "month", "2025-02", {"n": 1})
        cache.put("w1", "despesa", "d1", {"n": 0})
        cache.put("w2", "month", "2025-05", {"n": 9})
        assert cache.scan("w1", "month") == [("2025-02", {"n": 1}), ("2025-12", {"n": 3})]

    def test_returned_values_are_copies(self, cache):
        cache.put("w1", "despesa", "d1", {"tags": ["a"]})
        value = cache.get("w1", "despesa", "d1")
        value["tags"].append("b")
        assert cache.get("w1", "despesa", "d1") == {"tags": ["a"]}

    def test_purge_workspace(self, cache):
        cache.put("w1", "month", "2025-10", {})
        cache.put("w1", OUTBOX_NAMESPACE, sequence_key(1), {})
        cache.put("w2", "month", "2025-10", {})

        assert cache.purge_workspace("w1") == 2
        assert cache.workspace_ids() == ["w2"]


class TestSQLitePersistence:
    """The SQLite cache survives reopening."""

    def test_rows_survive_reopen(self, tmp_path):
        path = str(tmp_path / "my_pocket.db")
        first = SQLiteCacheStore(path)
        first.put("w1", "cartao", "c1", {"nome": "Nubank"})
        first.close()

        second = SQLiteCacheStore(path)
        assert second.get("w1", "cartao", "c1") == {"nome": "Nubank"}
        second.close()


class TestPushQueue:
    """Tests for the ordered push queue."""

    def test_fifo_order_with_sequences(self, cache):
        queue = PushQueue(cache, "w1")
        first = queue.enqueue(mutation("d1"))
        second = queue.enqueue(mutation("d2"))

        assert (first.sequence, second.sequence) == (1, 2)
        assert queue.peek() == first
        assert len(queue) == 2

    def test_survives_reload(self, cache):
        """A new queue over the same cache resumes in the same order."""
        queue = PushQueue(cache, "w1")
        queued = [queue.enqueue(mutation(f"d{index}")) for index in range(1, 13)]

        resumed = PushQueue(cache, "w1")

        assert [m.mutation_id for m in resumed.pending()] == [m.mutation_id for m in queued]
        assert resumed.enqueue(mutation("d13")).sequence == 13

    def test_remove(self, cache):
        queue = PushQueue(cache, "w1")
        head = queue.enqueue(mutation("d1"))
        queue.enqueue(mutation("d2"))

        assert queue.remove(head.mutation_id) is True
        assert queue.remove(head.mutation_id) is False
        assert [m.ref.entity_id for m in PushQueue(cache, "w1").pending()] == ["d2"]

    def test_sequences_are_not_reused_after_removal(self, cache):
        queue = PushQueue(cache, "w1")
        head = queue.enqueue(mutation("d1"))
        queue.remove(head.mutation_id)
        assert queue.enqueue(mutation("d2")).sequence == 2

    def test_rebase_moves_later_writes_forward(self, cache):
        queue = PushQueue(cache, "w1")
        queue.enqueue(mutation("d1", base_version=0))
        queue.enqueue(mutation("d1", base_version=0))
        queue.enqueue(mutation("d2", base_version=0))

        assert queue.rebase(ref("d1"), 0, 1) == 2

        bases = {(m.ref.entity_id, m.base_version) for m in PushQueue(cache, "w1").pending()}
        assert bases == {("d1", 1), ("d2", 0)}

    def test_drop_for_ref(self, cache):
        queue = PushQueue(cache, "w1")
        queue.enqueue(mutation("d1"))
        queue.enqueue(mutation("d2"))
        queue.enqueue(mutation("d1", op=MutationOp.DELETE))

        dropped = queue.drop_for_ref(ref("d1"))

        assert len(dropped) == 2
        assert queue.has_pending(ref("d2"))
        assert not queue.has_pending(ref("d1"))
        assert queue.pending_refs() == {ref("d2")}

    def test_queues_are_per_workspace(self, cache):
        PushQueue(cache, "w1").enqueue(mutation("d1"))
        assert len(PushQueue(cache, "w2")) == 0

    def test_clear(self, cache):
        queue = PushQueue(cache, "w1")
        queue.enqueue(mutation("d1"))
        queue.clear()
        assert len(PushQueue(cache, "w1")) == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
