"""Memory module for persistent, searchable user facts."""

from .conversations import ConversationLog
from .database import MemoryDatabase
from .embeddings import EmbeddingProvider, SentenceTransformerProvider
from .extractor import ExtractionPlan, ExtractionResult, FactExtractor
from .manager import MemoryManager
from .models import Conversation, Fact, FactStats, Message, Scope, ScoredFact
from .ranker import ContextRanker
from .store import FactStore
from .vector_index import SQLiteVectorIndex, VectorIndex
from .worker import ExtractionQueue

__all__ = [
    "ContextRanker",
    "Conversation",
    "ConversationLog",
    "EmbeddingProvider",
    "ExtractionPlan",
    "ExtractionQueue",
    "ExtractionResult",
    "Fact",
    "FactExtractor",
    "FactStats",
    "FactStore",
    "MemoryDatabase",
    "MemoryManager",
    "Message",
    "SQLiteVectorIndex",
    "Scope",
    "ScoredFact",
    "SentenceTransformerProvider",
    "VectorIndex",
]
