"""SQLite storage for memory facts and their embeddings."""

from __future__ import annotations

import logging
import sqlite3
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

import numpy as np

from ..errors import NotFoundError, ProviderUnavailableError
from .database import MemoryDatabase
from .embeddings import EmbeddingProvider, as_vector
from .models import (
    Fact,
    FactStats,
    Scope,
    ScoredFact,
    format_timestamp,
    parse_timestamp,
    utcnow,
    validate_category,
    validate_confidence,
    validate_content,
)
from .vector_index import SQLiteVectorIndex, VectorIndex

logger = logging.getLogger(__name__)

FACT_COLUMNS = (
    "id, content, category, confidence, source_conversation_id, "
    "project_id, created_at, updated_at"
)


class FactStore:
    """Persistent storage for facts with a parallel vector index.

    Every fact row has exactly one vector. Embeddings are computed before
    the write transaction opens, and the row and its vector are committed
    (or rolled back) together.
    """

    def __init__(
        self,
        db: MemoryDatabase,
        embedder: EmbeddingProvider,
        index: VectorIndex | None = None,
        clock: Callable[[], datetime] = utcnow,
        recent_days: int = 7,
    ) -> None:
        """Initialize the store.

        Args:
            db: The shared database handle.
            embedder: Provider used to embed fact content.
            index: Vector index; defaults to one stored in the same database.
            clock: Returns the current time, injectable for tests.
            recent_days: Window used by stats() for recent facts.
        """
        self.db = db
        self.embedder = embedder
        self.index = index or SQLiteVectorIndex(db)
        self.clock = clock
        self.recent_days = recent_days

    def _now(self) -> str:
        return format_timestamp(self.clock())

    def _embed(self, text: str) -> np.ndarray:
        vector = self.embedder.embed(text)
        return as_vector(vector, self.embedder.dimension)

    def embed_texts(self, texts: list[str]) -> list[np.ndarray]:
        vectors = self.embedder.embed_batch(texts)
        if len(vectors) != len(texts):
            raise ProviderUnavailableError(
                f"Provider returned {len(vectors)} embeddings for {len(texts)} texts"
            )
        return [as_vector(v, self.embedder.dimension) for v in vectors]

    def insert(self, fact: Fact, embedding: np.ndarray | None = None) -> Fact:
        """Save a new fact and its embedding.

        Args:
            fact: The fact to save; id and timestamps are assigned here.
            embedding: Precomputed vector for the content, if available.

        Returns:
            The fact with its assigned id and timestamps.
        """
        embeddings = [embedding] if embedding is not None else None
        return self.insert_many([fact], embeddings)[0]

    def insert_many(
        self, facts: list[Fact], embeddings: list[np.ndarray] | None = None
    ) -> list[Fact]:
        """Save several facts in one transaction.

        Either every fact is written with its vector, or none is.

        Args:
            facts: The facts to save.
            embeddings: Precomputed vectors, parallel to ``facts``. When
                omitted they are computed with a single batch call.

        Returns:
            The saved facts, in input order.
        """
        if not facts:
            return []

        cleaned = [
            (
                validate_content(f.content),
                validate_category(f.category),
                validate_confidence(f.confidence),
                f,
            )
            for f in facts
        ]

        if embeddings is None:
            vectors = self.embed_texts([content for content, *_ in cleaned])
        else:
            if len(embeddings) != len(facts):
                raise ValueError("embeddings must be parallel to facts")
            vectors = [as_vector(v, self.embedder.dimension) for v in embeddings]

        now = self._now()
        saved: list[Fact] = []
        with self.db.transaction() as conn:
            for (content, category, confidence, fact), vector in zip(cleaned, vectors):
                cursor = conn.execute(
                    """
                    INSERT INTO facts (
                        content, category, confidence, source_conversation_id,
                        project_id, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        content,
                        category,
                        confidence,
                        fact.source_conversation_id,
                        fact.project_id,
                        now,
                        now,
                    ),
                )
                fact_id = cursor.lastrowid
                self.index.add(fact_id, vector)
                saved.append(
                    Fact(
                        id=fact_id,
                        content=content,
                        category=category,
                        confidence=confidence,
                        source_conversation_id=fact.source_conversation_id,
                        project_id=fact.project_id,
                        created_at=now,
                        updated_at=now,
                    )
                )

        logger.debug("Inserted %d fact(s)", len(saved))
        return saved

    def get(self, fact_id: int) -> Fact | None:
        """Get a fact by id, or None if it doesn't exist."""
        row = self.db.connection().execute(
            f"SELECT {FACT_COLUMNS} FROM facts WHERE id = ?", (fact_id,)
        ).fetchone()
        return self._row_to_fact(row) if row else None

    def get_many(self, fact_ids: list[int]) -> dict[int, Fact]:
        if not fact_ids:
            return {}
        placeholders = ",".join("?" * len(fact_ids))
        cursor = self.db.connection().execute(
            f"SELECT {FACT_COLUMNS} FROM facts WHERE id IN ({placeholders})",
            tuple(fact_ids),
        )
        return {row["id"]: self._row_to_fact(row) for row in cursor.fetchall()}

    def update(
        self,
        fact_id: int,
        content: str | None = None,
        category: str | None = None,
        confidence: float | None = None,
    ) -> Fact:
        """Edit a fact.

        The embedding is recomputed only when the content actually changes;
        ``updated_at`` is refreshed on every call.

        Raises:
            NotFoundError: If no fact has this id.
        """
        current = self.get(fact_id)
        if current is None:
            raise NotFoundError(f"Fact {fact_id} not found")

        new_content = validate_content(content) if content is not None else current.content
        new_category = validate_category(category) if category is not None else current.category
        new_confidence = (
            validate_confidence(confidence) if confidence is not None else current.confidence
        )

        vector = None
        if new_content != current.content:
            vector = self._embed(new_content)

        now = self._now()
        with self.db.transaction() as conn:
            conn.execute(
                """
                UPDATE facts
                SET content = ?, category = ?, confidence = ?, updated_at = ?
                WHERE id = ?
                """,
                (new_content, new_category, new_confidence, now, fact_id),
            )
            if vector is not None:
                self.index.replace(fact_id, vector)

        return Fact(
            id=fact_id,
            content=new_content,
            category=new_category,
            confidence=new_confidence,
            source_conversation_id=current.source_conversation_id,
            project_id=current.project_id,
            created_at=current.created_at,
            updated_at=now,
        )

    def delete(self, fact_id: int) -> bool:
        """Delete a fact and its vector.

        Returns:
            True if a fact was deleted, False if it was already gone.
        """
        with self.db.transaction() as conn:
            self.index.remove(fact_id)
            cursor = conn.execute("DELETE FROM facts WHERE id = ?", (fact_id,))
        return cursor.rowcount > 0

    def delete_all(self, scope: Scope | None = None) -> int:
        """Delete every fact visible in ``scope`` (all facts by default).

        Returns:
            Number of facts deleted.
        """
        scope = scope or Scope.everything()
        where, params = scope.sql_filter()
        with self.db.transaction() as conn:
            if scope.all_projects:
                self.index.clear()
            else:
                ids = [
                    row["id"]
                    for row in conn.execute(
                        f"SELECT id FROM facts WHERE {where}", params
                    ).fetchall()
                ]
                for fact_id in ids:
                    self.index.remove(fact_id)
            cursor = conn.execute(f"DELETE FROM facts WHERE {where}", params)
        return cursor.rowcount

    def get_all(
        self,
        scope: Scope | None = None,
        category: str | None = None,
        text: str | None = None,
    ) -> list[Fact]:
        """Get facts visible in ``scope``, most recently updated first.

        Args:
            scope: Visibility filter; all facts when None.
            category: Only facts with this category.
            text: Only facts whose content contains this text (case-insensitive).
        """
        scope = scope or Scope.everything()
        where, params = scope.sql_filter()
        clauses = [where]
        args: list[object] = list(params)

        if category:
            clauses.append("category = ?")
            args.append(validate_category(category))
        if text:
            clauses.append("instr(lower(content), lower(?)) > 0")
            args.append(text)

        cursor = self.db.connection().execute(
            f"""
            SELECT {FACT_COLUMNS} FROM facts
            WHERE {' AND '.join(clauses)}
            ORDER BY updated_at DESC, id DESC
            """,
            tuple(args),
        )
        return [self._row_to_fact(row) for row in cursor.fetchall()]

    def nearest(
        self, query_embedding: np.ndarray, scope: Scope, limit: int
    ) -> list[ScoredFact]:
        """Find the facts most similar to a query vector.

        Returns:
            Up to ``limit`` facts with their cosine similarity, best first.
        """
        pairs = self.index.nearest(query_embedding, scope, limit)
        facts = self.get_many([fact_id for fact_id, _ in pairs])
        return [
            ScoredFact(fact=facts[fact_id], similarity=similarity)
            for fact_id, similarity in pairs
            if fact_id in facts
        ]

    def get_embedding(self, fact_id: int) -> np.ndarray | None:
        return self.index.get(fact_id)

    def stats(self, scope: Scope | None = None, now: datetime | None = None) -> FactStats:
        """Aggregate statistics over the facts visible in ``scope``."""
        scope = scope or Scope.everything()
        where, params = scope.sql_filter()
        rows = self.db.connection().execute(
            f"SELECT category, confidence, created_at, updated_at FROM facts WHERE {where}",
            params,
        ).fetchall()

        if not rows:
            return FactStats(total_facts=0)

        cutoff = (now or self.clock()) - timedelta(days=self.recent_days)
        counts = Counter(row["category"] for row in rows)
        recent = sum(1 for row in rows if parse_timestamp(row["created_at"]) >= cutoff)
        latest = max(rows, key=lambda row: parse_timestamp(row["updated_at"]))

        return FactStats(
            total_facts=len(rows),
            category_counts=dict(counts),
            average_confidence=sum(row["confidence"] for row in rows) / len(rows),
            recent_fact_count=recent,
            latest_update=latest["updated_at"],
        )

    def reembed_all(self, batch_size: int = 64) -> int:
        """Recompute every stored embedding with the current provider.

        This is the migration to run after switching embedding models or
        dimensions. Each batch is embedded first and then written in its
        own transaction.

        Returns:
            Number of facts re-embedded.
        """
        rows = self.db.connection().execute(
            "SELECT id, content FROM facts ORDER BY id"
        ).fetchall()

        total = 0
        for start in range(0, len(rows), batch_size):
            batch = rows[start : start + batch_size]
            vectors = self.embed_texts([row["content"] for row in batch])
            with self.db.transaction():
                for row, vector in zip(batch, vectors):
                    self.index.replace(row["id"], vector)
            total += len(batch)

        logger.info("Re-embedded %d fact(s) with %s", total, self.embedder.model_name)
        return total

    def _row_to_fact(self, row: sqlite3.Row) -> Fact:
        """Convert a database row to a Fact."""
        return Fact(
            id=row["id"],
            content=row["content"],
            category=row["category"],
            confidence=row["confidence"],
            source_conversation_id=row["source_conversation_id"],
            project_id=row["project_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
