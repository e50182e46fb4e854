"""Shared fixtures for memory tests."""

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

from recollect.errors import ProviderUnavailableError
from recollect.memory import ConversationLog, FactStore, MemoryDatabase

WORD_RE = re.compile(r"\w+")


class VocabularyEmbedder:
    """Deterministic bag-of-words embedder.

    Each new lowercase word gets the next free dimension, so similarity is
    exactly the cosine of word counts with no collisions.
    """

    def __init__(self, dimension: int = 384, model_name: str = "test-vocabulary") -> None:
        self._dimension = dimension
        self._model_name = model_name
        self.vocabulary: dict[str, int] = {}
        self.calls: list[list[str]] = []
        self.fail = False

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_name(self) -> str:
        return self._model_name

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for word in WORD_RE.findall(text.lower()):
            index = self.vocabulary.setdefault(word, len(self.vocabulary))
            vector[index] += 1.0
        return vector

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        if self.fail:
            raise ProviderUnavailableError("embedding provider is down")
        self.calls.append(list(texts))
        return [self._vector(text) for text in texts]


class FakeClock:
    """Settable clock for time-dependent tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def embedder() -> VocabularyEmbedder:
    return VocabularyEmbedder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path) -> MemoryDatabase:
    """Create an initialized database in a temporary directory."""
    db = MemoryDatabase(tmp_path / "memory.db")
    db.init_db()
    yield db
    db.close()


@pytest.fixture
def store(db: MemoryDatabase, embedder: VocabularyEmbedder, clock: FakeClock) -> FactStore:
    return FactStore(db, embedder, clock=clock)


@pytest.fixture
def conversations(db: MemoryDatabase, clock: FakeClock) -> ConversationLog:
    return ConversationLog(db, clock=clock)
