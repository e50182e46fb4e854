"""Memory manager: the single entry point for the memory system."""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

import numpy as np

from ..config import MemoryConfig
from ..errors import NotFoundError, StorageError
from ..llm_client import GroqLLMClient, LLMClient
from ..logging import JSONLLogger
from .conversations import ConversationLog
from .database import MemoryDatabase
from .embeddings import EmbeddingProvider, SentenceTransformerProvider
from .extractor import FactExtractor
from .models import (
    DEFAULT_CATEGORY,
    Fact,
    FactStats,
    Message,
    Scope,
    ScoredFact,
    utcnow,
    validate_confidence,
    validate_content,
    validate_role,
)
from .ranker import ContextRanker, query_from_messages
from .store import FactStore
from .worker import ExtractionQueue

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    """Re-raise database failures as StorageError."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error("Memory storage failed during %s: %s", operation, e)
        raise StorageError(f"{operation} failed: {e}") from e


class MemoryManager:
    """Orchestrates memory operations: facts, conversations and context.

    This is the main interface for the memory system. The caller owns the
    database handle and closes it through close() (or ``async with``).
    Extraction runs on a background queue and context building degrades
    to an empty string, so neither can interrupt a chat turn.
    """

    def __init__(
        self,
        db: MemoryDatabase,
        embedder: EmbeddingProvider,
        llm: LLMClient | None = None,
        config: MemoryConfig | None = None,
        event_log: JSONLLogger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the manager with its collaborators.

        Args:
            db: Open database handle; init_db() is applied here.
            embedder: Provider for fact and query embeddings.
            llm: Reasoning function for extraction. Without it, messages
                are recorded but never extracted.
            config: Tunables; defaults if None.
            event_log: Optional JSONL logger for memory events.
            clock: Current-time source, injectable for tests.
        """
        self.config = config or MemoryConfig()
        self.db = db
        self.db.init_db()
        self.event_log = event_log
        self.clock = clock

        self.store = FactStore(db, embedder, clock=clock, recent_days=self.config.recent_days)
        self.conversations = ConversationLog(db, clock=clock)
        self.ranker = ContextRanker(self.config.ranking)

        self.extractor: FactExtractor | None = None
        self.queue: ExtractionQueue | None = None
        if llm is not None:
            self.extractor = FactExtractor(
                self.store,
                llm,
                duplicate_threshold=self.config.duplicate_threshold,
                reinforce_step=self.config.reinforce_step,
            )
            self.queue = ExtractionQueue(
                self.conversations,
                self.extractor,
                window=self.config.extraction_window,
                event_log=event_log,
            )

    @classmethod
    def from_config(
        cls,
        config: MemoryConfig | None = None,
        llm: LLMClient | None = None,
        embedder: EmbeddingProvider | None = None,
        event_log: JSONLLogger | None = None,
    ) -> MemoryManager:
        """Assemble a manager from configuration.

        The Groq client is created from GROQ_API_KEY when ``llm`` is not
        given; without a key, extraction is disabled.
        """
        config = config or MemoryConfig()
        if llm is None:
            if os.getenv("GROQ_API_KEY"):
                llm = GroqLLMClient(model=config.llm_model)
            else:
                logger.info("GROQ_API_KEY not set, fact extraction disabled")

        return cls(
            MemoryDatabase(config.db_path),
            embedder or SentenceTransformerProvider(config.embedding_model),
            llm=llm,
            config=config,
            event_log=event_log or JSONLLogger(log_dir=config.log_dir),
        )

    # Fact operations

    async def add_fact(
        self,
        content: str,
        category: str = DEFAULT_CATEGORY,
        confidence: float = 1.0,
        project_id: str | None = None,
        source_conversation_id: str | None = None,
    ) -> Fact:
        """Save a fact entered by the user.

        Raises:
            ValidationError: Empty content or confidence outside [0, 1].
            ProviderUnavailableError: The embedding provider is down.
            StorageError: The database write failed.
        """
        fact = Fact(
            content=validate_content(content),
            category=category,
            confidence=validate_confidence(confidence),
            project_id=project_id,
            source_conversation_id=source_conversation_id,
        )
        with _storage_errors("add_fact"):
            saved = self.store.insert(fact)
        self._log_change("add", fact_id=saved.id)
        return saved

    async def update_fact(
        self,
        fact_id: int,
        content: str | None = None,
        category: str | None = None,
        confidence: float | None = None,
    ) -> Fact:
        """Edit a fact's content, category or confidence.

        Raises:
            NotFoundError: No fact has this id.
            ValidationError: Invalid content or confidence.
        """
        if content is not None:
            content = validate_content(content)
        if confidence is not None:
            confidence = validate_confidence(confidence)

        with _storage_errors("update_fact"):
            updated = self.store.update(
                fact_id, content=content, category=category, confidence=confidence
            )
        self._log_change("update", fact_id=fact_id)
        return updated

    async def delete_fact(self, fact_id: int) -> bool:
        """Delete a fact. Deleting a missing fact is not an error.

        Returns:
            True if a fact was deleted.
        """
        with _storage_errors("delete_fact"):
            deleted = self.store.delete(fact_id)
        if deleted:
            self._log_change("delete", fact_id=fact_id)
        return deleted

    async def get_fact(self, fact_id: int) -> Fact:
        """Get a fact by id.

        Raises:
            NotFoundError: No fact has this id.
        """
        with _storage_errors("get_fact"):
            fact = self.store.get(fact_id)
        if fact is None:
            raise NotFoundError(f"Fact {fact_id} not found")
        return fact

    async def list_facts(
        self,
        scope: Scope | None = None,
        category: str | None = None,
        text: str | None = None,
    ) -> list[Fact]:
        """List facts for the management view, most recently updated first."""
        with _storage_errors("list_facts"):
            return self.store.get_all(scope or Scope.everything(), category=category, text=text)

    async def search_facts(
        self, query: str, scope: Scope | None = None, limit: int = 10
    ) -> list[ScoredFact]:
        """Semantic search over facts.

        Returns:
            Up to ``limit`` facts at least ``search_min_similarity``
            similar to the query, best first.
        """
        if not query or not query.strip():
            return []

        vector = await self._embed_query(query.strip())
        with _storage_errors("search_facts"):
            candidates = self.store.nearest(vector, scope or Scope.everything(), limit)
        return [c for c in candidates if c.similarity >= self.config.search_min_similarity]

    async def get_stats(self, scope: Scope | None = None) -> FactStats:
        """Aggregate statistics for the dashboard view."""
        with _storage_errors("get_stats"):
            return self.store.stats(scope or Scope.everything())

    async def clear_all(self, scope: Scope | None = None) -> int:
        """Delete every fact in ``scope`` (everything by default).

        Returns:
            Number of facts deleted.
        """
        with _storage_errors("clear_all"):
            count = self.store.delete_all(scope or Scope.everything())
        self._log_change("clear", count=count)
        return count

    async def reembed_all(self) -> int:
        """Recompute every stored embedding with the current provider."""
        with _storage_errors("reembed_all"):
            count = self.store.reembed_all()
        self._log_change("reembed", count=count)
        return count

    # Conversation recording

    async def record_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        project_id: str | None = None,
    ) -> Message:
        """Record a conversation turn and schedule extraction when due.

        Extraction runs in the background once the conversation has
        ``extraction_threshold`` unprocessed messages; this call never waits
        for it and never fails because of it.

        Raises:
            ValidationError: Unknown role.
            StorageError: The message could not be saved.
        """
        validate_role(role)
        with _storage_errors("record_message"):
            self.conversations.ensure_conversation(conversation_id, project_id=project_id)
            message = self.conversations.append_message(conversation_id, role, content)

        try:
            self._maybe_extract(conversation_id)
        except Exception as e:
            logger.warning("Could not schedule extraction for %s: %s", conversation_id, e)

        return message

    def _maybe_extract(self, conversation_id: str) -> bool:
        """Queue extraction if the unprocessed count reached the threshold."""
        if self.queue is None:
            return False
        pending = self.conversations.unprocessed_count(conversation_id)
        if pending < self.config.extraction_threshold:
            return False
        return self.queue.submit(conversation_id)

    # Context building

    async def _embed_query(self, text: str) -> np.ndarray:
        # Model encodes run off the event loop
        vectors = await asyncio.to_thread(self.store.embed_texts, [text])
        return vectors[0]

    async def build_context(
        self,
        query_text: str,
        scope: Scope | None = None,
        limit: int | None = None,
    ) -> str:
        """Build the memory block to inject before an outbound model call.

        Returns:
            The rendered block, or "" when nothing is relevant or memory
            is unavailable.
        """
        if not query_text or not query_text.strip():
            return ""

        scope = scope or Scope.global_scope()
        limit = self.config.context_limit if limit is None else limit
        pool = max(self.config.candidate_pool_size, limit)
        started = time.monotonic()
        candidates: list[ScoredFact] = []

        try:
            vector = await self._embed_query(query_text.strip())
            candidates = self.store.nearest(vector, scope, pool)
            ranked = self.ranker.rank(candidates, limit, now=self.clock())
            context = self.ranker.render(ranked)
        except Exception as e:
            logger.warning("Error building memory context: %s", e)
            self._log_context(scope, len(candidates), 0, started, error=str(e))
            return ""

        self._log_context(scope, len(candidates), len(ranked), started)
        return context

    async def build_context_for_messages(
        self,
        messages: list[Message] | list[dict[str, Any]],
        scope: Scope | None = None,
        limit: int | None = None,
    ) -> str:
        """Build context using the last few user messages as the query."""
        return await self.build_context(query_from_messages(messages), scope, limit)

    # Lifecycle

    def start(self) -> None:
        """Start the extraction worker; needs a running event loop."""
        if self.queue is not None:
            self.queue.start()

    async def drain(self) -> None:
        """Wait for queued extraction jobs to finish."""
        if self.queue is not None:
            await self.queue.join()

    async def close(self) -> None:
        """Stop the worker and close the database."""
        if self.queue is not None:
            await self.queue.stop()
        self.db.close()

    async def __aenter__(self) -> MemoryManager:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def _log_change(self, action: str, fact_id: int | None = None, count: int | None = None) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.log_fact_change(action, fact_id=fact_id, count=count)
        except OSError as e:
            logger.warning("Cannot write memory event: %s", e)

    def _log_context(
        self,
        scope: Scope,
        candidates: int,
        selected: int,
        started: float,
        error: str | None = None,
    ) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.log_context_build(
                project_id=scope.project_id,
                candidates=candidates,
                selected=selected,
                duration_ms=(time.monotonic() - started) * 1000,
                error=error,
            )
        except OSError as e:
            logger.warning("Cannot write memory event: %s", e)
