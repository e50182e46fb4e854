"""Tests for FactStore."""

import numpy as np
import pytest

from recollect.errors import NotFoundError, ProviderUnavailableError, ValidationError
from recollect.memory import Fact, FactStore, Scope, SQLiteVectorIndex


class TestFactStoreInsert:
    """Tests for saving facts."""

    def test_insert_returns_with_id(self, store: FactStore):
        saved = store.insert(Fact(content="User prefers TypeScript", category="preferences"))
        assert saved.id is not None
        assert saved.content == "User prefers TypeScript"
        assert saved.category == "preferences"

    def test_insert_then_get(self, store: FactStore, clock):
        """A stored fact reads back unchanged with default confidence 1.0."""
        saved = store.insert(Fact(content="User lives in Lisbon", category="personal"))
        loaded = store.get(saved.id)

        assert loaded == saved
        assert loaded.confidence == 1.0
        assert loaded.created_at == loaded.updated_at
        assert loaded.created_at.startswith("2026-03-01T12:00:00")

    def test_insert_stores_embedding(self, store: FactStore, embedder):
        saved = store.insert(Fact(content="User likes tea"))
        vector = store.get_embedding(saved.id)
        assert vector is not None
        assert vector.shape == (embedder.dimension,)

    def test_insert_normalizes_content_and_category(self, store: FactStore):
        saved = store.insert(Fact(content="  User likes tea  ", category=" Interests "))
        assert saved.content == "User likes tea"
        assert saved.category == "interests"

    def test_insert_keeps_scope_and_source(self, store: FactStore):
        saved = store.insert(
            Fact(content="Uses Postgres", project_id="p1", source_conversation_id="c1")
        )
        loaded = store.get(saved.id)
        assert loaded.project_id == "p1"
        assert loaded.source_conversation_id == "c1"

    def test_insert_rejects_empty_content(self, store: FactStore):
        with pytest.raises(ValidationError):
            store.insert(Fact(content="   "))
        assert store.get_all() == []

    @pytest.mark.parametrize("confidence", [-0.5, 1.5])
    def test_insert_rejects_bad_confidence(self, store: FactStore, confidence):
        with pytest.raises(ValidationError):
            store.insert(Fact(content="User likes tea", confidence=confidence))
        assert store.get_all() == []

    def test_insert_many_single_embedding_call(self, store: FactStore, embedder):
        saved = store.insert_many([Fact(content="User likes tea"), Fact(content="User owns a cat")])
        assert [f.content for f in saved] == ["User likes tea", "User owns a cat"]
        assert len(embedder.calls) == 1

    def test_insert_many_is_atomic(self, db, embedder, clock):
        """A failure while writing vectors leaves no fact behind."""

        class FailingIndex(SQLiteVectorIndex):
            def __init__(self, db):
                super().__init__(db)
                self.added = 0

            def add(self, fact_id, vector):
                self.added += 1
                if self.added == 2:
                    raise RuntimeError("disk full")
                super().add(fact_id, vector)

        store = FactStore(db, embedder, index=FailingIndex(db), clock=clock)
        with pytest.raises(RuntimeError):
            store.insert_many([Fact(content="one fact"), Fact(content="two facts")])

        assert store.get_all() == []

    def test_insert_fails_when_provider_down(self, store: FactStore, embedder):
        embedder.fail = True
        with pytest.raises(ProviderUnavailableError):
            store.insert(Fact(content="User likes tea"))
        assert store.get_all() == []


class TestFactStoreUpdate:
    """Tests for editing facts."""

    def test_update_content_recomputes_embedding(self, store: FactStore):
        saved = store.insert(Fact(content="User likes tea"))
        before = store.get_embedding(saved.id)

        store.update(saved.id, content="User likes green tea")

        after = store.get_embedding(saved.id)
        assert not np.array_equal(before, after)
        assert store.get(saved.id).content == "User likes green tea"

    def test_update_without_content_keeps_embedding(self, store: FactStore, embedder):
        saved = store.insert(Fact(content="User likes tea"))
        before = store.get_embedding(saved.id)
        calls = len(embedder.calls)

        store.update(saved.id, category="interests", confidence=0.4)

        assert len(embedder.calls) == calls
        np.testing.assert_array_equal(store.get_embedding(saved.id), before)

    def test_update_same_content_keeps_embedding(self, store: FactStore, embedder):
        saved = store.insert(Fact(content="User likes tea"))
        calls = len(embedder.calls)
        store.update(saved.id, content="User likes tea")
        assert len(embedder.calls) == calls

    def test_update_refreshes_updated_at(self, store: FactStore, clock):
        saved = store.insert(Fact(content="User likes tea"))
        clock.advance(days=1)

        updated = store.update(saved.id, confidence=0.5)

        assert updated.confidence == 0.5
        assert updated.created_at == saved.created_at
        assert updated.updated_at > saved.updated_at
        assert store.get(saved.id) == updated

    def test_update_missing_raises(self, store: FactStore):
        with pytest.raises(NotFoundError):
            store.update(999, content="anything")

    def test_update_rejects_bad_confidence(self, store: FactStore):
        saved = store.insert(Fact(content="User likes tea"))
        with pytest.raises(ValidationError):
            store.update(saved.id, confidence=2.0)
        assert store.get(saved.id).confidence == 1.0


class TestFactStoreDelete:
    """Tests for deleting facts."""

    def test_delete_is_idempotent(self, store: FactStore):
        saved = store.insert(Fact(content="User likes tea"))
        assert store.delete(saved.id) is True
        assert store.delete(saved.id) is False
        assert store.get(saved.id) is None
        assert store.get_embedding(saved.id) is None

    def test_delete_all(self, store: FactStore):
        store.insert(Fact(content="User likes tea"))
        store.insert(Fact(content="Uses Postgres", project_id="p1"))

        assert store.delete_all() == 2
        assert store.get_all() == []
        vectors = store.db.connection().execute("SELECT COUNT(*) FROM fact_vectors").fetchone()[0]
        assert vectors == 0

    def test_delete_all_in_global_scope_keeps_projects(self, store: FactStore):
        store.insert(Fact(content="User likes tea"))
        kept = store.insert(Fact(content="Uses Postgres", project_id="p1"))

        assert store.delete_all(Scope.global_scope()) == 1
        assert [f.id for f in store.get_all()] == [kept.id]
        assert store.get_embedding(kept.id) is not None


class TestFactStoreQuery:
    """Tests for listing and searching facts."""

    def test_get_all_most_recently_updated_first(self, store: FactStore, clock):
        first = store.insert(Fact(content="User likes tea"))
        clock.advance(minutes=1)
        second = store.insert(Fact(content="User owns a cat"))
        clock.advance(minutes=1)
        store.update(first.id, confidence=0.9)

        assert [f.id for f in store.get_all()] == [first.id, second.id]

    def test_get_all_scope(self, store: FactStore):
        global_fact = store.insert(Fact(content="User likes tea"))
        own = store.insert(Fact(content="Uses Postgres", project_id="p1"))
        store.insert(Fact(content="Uses MySQL", project_id="p2"))

        ids = {f.id for f in store.get_all(Scope.for_project("p1"))}
        assert ids == {global_fact.id, own.id}
        assert len(store.get_all(Scope.everything())) == 3

    def test_get_all_filters_category_and_text(self, store: FactStore):
        store.insert(Fact(content="User likes Tea", category="preferences"))
        store.insert(Fact(content="User likes hiking", category="interests"))

        assert [f.content for f in store.get_all(category="Interests")] == ["User likes hiking"]
        assert [f.content for f in store.get_all(text="tea")] == ["User likes Tea"]

    def test_nearest_returns_scored_facts(self, store: FactStore, embedder):
        react = store.insert(Fact(content="User loves React development"))
        store.insert(Fact(content="User enjoys hiking in mountains"))

        results = store.nearest(embedder.embed("React"), Scope.everything(), 2)

        assert results[0].fact == react
        assert results[0].similarity == pytest.approx(0.5)
        assert results[1].similarity == pytest.approx(0.0)


class TestFactStoreStats:
    """Tests for aggregate statistics."""

    def test_empty(self, store: FactStore):
        stats = store.stats()
        assert stats.total_facts == 0
        assert stats.category_counts == {}
        assert stats.latest_update is None

    def test_category_counts_sum_to_total(self, store: FactStore):
        store.insert(Fact(content="User likes tea", category="preferences"))
        store.insert(Fact(content="User prefers vim", category="preferences"))
        store.insert(Fact(content="User is a nurse", category="professional", confidence=0.5))

        stats = store.stats()

        assert stats.total_facts == 3
        assert stats.category_counts == {"preferences": 2, "professional": 1}
        assert sum(stats.category_counts.values()) == stats.total_facts
        assert stats.average_confidence == pytest.approx(2.5 / 3)

    def test_recent_facts(self, store: FactStore, clock):
        store.insert(Fact(content="User likes tea"))
        clock.advance(days=10)
        latest = store.insert(Fact(content="User owns a cat"))

        stats = store.stats()

        assert stats.recent_fact_count == 1
        assert stats.latest_update == latest.updated_at

    def test_stats_scope(self, store: FactStore):
        store.insert(Fact(content="User likes tea"))
        store.insert(Fact(content="Uses Postgres", project_id="p1"))
        assert store.stats(Scope.global_scope()).total_facts == 1


class TestFactStoreReembed:
    """Tests for re-embedding after a model change."""

    def test_reembed_all(self, db, store: FactStore, clock):
        first = store.insert(Fact(content="User likes tea"))
        store.insert(Fact(content="User owns a cat"))
        old = store.get_embedding(first.id)

        replacement = type(store.embedder)(model_name="other-model")
        replacement.embed("zebra giraffe")  # shift the vocabulary
        migrated = FactStore(db, replacement, clock=clock)

        assert migrated.reembed_all(batch_size=1) == 2
        assert not np.array_equal(migrated.get_embedding(first.id), old)
