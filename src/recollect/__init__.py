"""Recollect: long-term user memory for chat assistants."""

from .config import MemoryConfig, RankingConfig, load_config
from .errors import (
    MalformedExtractionError,
    NotFoundError,
    ProviderUnavailableError,
    RecollectError,
    StorageError,
    ValidationError,
)
from .memory import Fact, MemoryManager, Scope, ScoredFact

__all__ = [
    "Fact",
    "MalformedExtractionError",
    "MemoryConfig",
    "MemoryManager",
    "NotFoundError",
    "ProviderUnavailableError",
    "RankingConfig",
    "RecollectError",
    "Scope",
    "ScoredFact",
    "StorageError",
    "ValidationError",
    "load_config",
]

__version__ = "0.1.0"
