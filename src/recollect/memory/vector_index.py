"""Vector index keyed 1:1 by fact id."""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from .database import MemoryDatabase
from .embeddings import as_vector
from .models import Scope


def cosine_similarities(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of each row in ``matrix`` against ``query``.

    Rows or queries with zero norm score 0.
    """
    query_norm = float(np.linalg.norm(query))
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / denom, 0.0)
    return sims.astype(np.float32)


class VectorIndex(ABC):
    """Nearest-neighbor index over fact embeddings.

    Writes take part in the caller's open transaction; the fact store is
    responsible for committing row and vector together.
    """

    @abstractmethod
    def add(self, fact_id: int, vector: np.ndarray) -> None:
        """Store the vector for a new fact."""
        ...

    @abstractmethod
    def replace(self, fact_id: int, vector: np.ndarray) -> None:
        """Overwrite the vector of an existing fact."""
        ...

    @abstractmethod
    def remove(self, fact_id: int) -> None:
        """Drop the vector of a fact, if any."""
        ...

    @abstractmethod
    def get(self, fact_id: int) -> np.ndarray | None:
        """Return the stored vector, or None."""
        ...

    @abstractmethod
    def clear(self) -> None:
        """Drop every vector."""
        ...

    @abstractmethod
    def nearest(
        self, vector: np.ndarray, scope: Scope, k: int
    ) -> list[tuple[int, float]]:
        """Return up to k (fact_id, similarity) pairs, most similar first."""
        ...


class SQLiteVectorIndex(VectorIndex):
    """Brute-force cosine search over float32 BLOBs in ``fact_vectors``."""

    def __init__(self, db: MemoryDatabase) -> None:
        self.db = db

    def add(self, fact_id: int, vector: np.ndarray) -> None:
        vec = as_vector(vector)
        self.db.connection().execute(
            "INSERT INTO fact_vectors (fact_id, dimension, embedding) VALUES (?, ?, ?)",
            (fact_id, int(vec.shape[0]), vec.tobytes()),
        )

    def replace(self, fact_id: int, vector: np.ndarray) -> None:
        vec = as_vector(vector)
        self.db.connection().execute(
            """
            INSERT INTO fact_vectors (fact_id, dimension, embedding)
            VALUES (?, ?, ?)
            ON CONFLICT(fact_id) DO UPDATE SET
                dimension = excluded.dimension,
                embedding = excluded.embedding
            """,
            (fact_id, int(vec.shape[0]), vec.tobytes()),
        )

    def remove(self, fact_id: int) -> None:
        self.db.connection().execute(
            "DELETE FROM fact_vectors WHERE fact_id = ?", (fact_id,)
        )

    def get(self, fact_id: int) -> np.ndarray | None:
        row = self.db.connection().execute(
            "SELECT embedding FROM fact_vectors WHERE fact_id = ?", (fact_id,)
        ).fetchone()
        if row is None:
            return None
        return np.frombuffer(row["embedding"], dtype=np.float32).copy()

    def clear(self) -> None:
        self.db.connection().execute("DELETE FROM fact_vectors")

    def nearest(
        self, vector: np.ndarray, scope: Scope, k: int
    ) -> list[tuple[int, float]]:
        if k <= 0:
            return []

        query = as_vector(vector)
        where, params = scope.sql_filter("f.project_id")
        cursor = self.db.connection().execute(
            f"""
            SELECT v.fact_id, v.embedding
            FROM fact_vectors v
            JOIN facts f ON f.id = v.fact_id
            WHERE {where} AND v.dimension = ?
            ORDER BY v.fact_id
            """,
            (*params, int(query.shape[0])),
        )
        rows = cursor.fetchall()
        if not rows:
            return []

        ids = [row["fact_id"] for row in rows]
        matrix = np.vstack(
            [np.frombuffer(row["embedding"], dtype=np.float32) for row in rows]
        )
        sims = cosine_similarities(matrix, query)

        # Stable sort keeps lower ids first on ties
        order = np.argsort(-sims, kind="stable")[:k]
        return [(ids[i], float(sims[i])) for i in order]
