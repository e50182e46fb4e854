"""Fact extraction from conversations using an LLM."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from ..errors import MalformedExtractionError, ProviderUnavailableError, RecollectError
from ..llm_client import LLMClient
from .models import Conversation, Fact, Message, Scope, validate_category
from .store import FactStore
from .vector_index import cosine_similarities

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_THRESHOLD = 0.92
DEFAULT_REINFORCE_STEP = 0.1

EXTRACTION_PROMPT = """You are a fact extraction assistant. Extract key factual information about the user from this conversation.

Return ONLY a valid JSON array:
[
  {"content": "<fact about the user, in third person>", "category": "<category>"},
  ...
]

Categories:
- personal (relationships, family, pets, location)
- preferences (technologies, approaches, styles)
- professional (job, skills, projects)
- interests (hobbies, topics)

Rules:
- Each fact must be atomic: one statement per item
- Only stable facts, not temporary states like "is tired"
- Do not repeat the same fact twice
- Do not extract questions or hypotheses as facts
- If there are no new facts, return []

Conversation:
"""


@dataclass
class ExtractionResult:
    """Outcome of one extraction run.

    Attributes:
        inserted: Facts newly written to the store.
        duplicates: Candidates skipped as near-duplicates.
        reinforced: Ids of existing facts whose confidence was raised.
        rejected: Candidates dropped for being empty or malformed.
    """

    inserted: list[Fact] = field(default_factory=list)
    duplicates: int = 0
    reinforced: list[int] = field(default_factory=list)
    rejected: int = 0


@dataclass
class ExtractionPlan:
    """Writes decided by an extraction run, not yet applied.

    Attributes:
        facts: New facts to insert.
        vectors: Embeddings parallel to ``facts``.
        reinforce: Existing facts to reinforce, by id.
        result: Counters gathered while deciding.
    """

    facts: list[Fact] = field(default_factory=list)
    vectors: list[np.ndarray] = field(default_factory=list)
    reinforce: dict[int, Fact] = field(default_factory=dict)
    result: ExtractionResult = field(default_factory=ExtractionResult)


class FactExtractor:
    """Extracts facts from conversation messages and stores them."""

    def __init__(
        self,
        store: FactStore,
        llm: LLMClient,
        duplicate_threshold: float = DEFAULT_DUPLICATE_THRESHOLD,
        reinforce_step: float = DEFAULT_REINFORCE_STEP,
    ) -> None:
        """Initialize the extractor.

        Args:
            store: Fact store receiving extracted facts.
            llm: Reasoning function used to read the conversation.
            duplicate_threshold: Cosine similarity at or above which a
                candidate counts as an existing fact.
            reinforce_step: Confidence added to an existing fact when it is
                mentioned again. 0 disables reinforcement.
        """
        self.store = store
        self.llm = llm
        self.duplicate_threshold = duplicate_threshold
        self.reinforce_step = reinforce_step

    async def extract(
        self, messages: list[Message], conversation: Conversation
    ) -> ExtractionResult:
        """Extract facts from a window of messages and store the new ones.

        Args:
            messages: The messages to analyze, oldest first.
            conversation: The conversation they belong to.

        Returns:
            What was inserted, skipped and reinforced.

        Raises:
            ProviderUnavailableError: The LLM or embedding provider failed.
            MalformedExtractionError: The LLM response could not be parsed.
        """
        plan = await self.prepare(messages, conversation)
        return self.apply(plan)

    async def prepare(
        self, messages: list[Message], conversation: Conversation
    ) -> ExtractionPlan:
        """Ask the LLM for facts and decide what to write, without writing.

        Candidate embeddings are computed in a worker thread so the event
        loop stays free while the model encodes.
        """
        plan = ExtractionPlan()
        result = plan.result
        if not messages:
            return plan

        conversation_text = self._format_conversation(messages)
        if not conversation_text:
            return plan

        try:
            response = await self.llm.complete(EXTRACTION_PROMPT + conversation_text)
        except RecollectError:
            raise
        except Exception as e:
            raise ProviderUnavailableError(f"Reasoning function failed: {e}") from e

        candidates, result.rejected = self._parse_response(response)
        if not candidates:
            return plan

        vectors = await asyncio.to_thread(
            self.store.embed_texts, [c.content for c in candidates]
        )
        scope = Scope.for_project(conversation.project_id)

        for candidate, vector in zip(candidates, vectors):
            nearest = self.store.nearest(vector, scope, 1)
            if nearest and nearest[0].similarity >= self.duplicate_threshold:
                result.duplicates += 1
                existing = nearest[0].fact
                if existing.id is not None:
                    plan.reinforce.setdefault(existing.id, existing)
                logger.debug("Skipping duplicate fact: %s", candidate.content)
                continue

            if plan.vectors:
                sims = cosine_similarities(np.vstack(plan.vectors), vector)
                if float(sims.max()) >= self.duplicate_threshold:
                    result.duplicates += 1
                    continue

            plan.facts.append(
                Fact(
                    content=candidate.content,
                    category=candidate.category,
                    confidence=1.0,
                    source_conversation_id=conversation.id,
                )
            )
            plan.vectors.append(vector)

        return plan

    def apply(self, plan: ExtractionPlan) -> ExtractionResult:
        """Write a plan's inserts and reinforcements in one transaction.

        Callers may wrap this in their own transaction to commit more
        writes together with it.
        """
        result = plan.result
        with self.store.db.transaction():
            result.inserted = self.store.insert_many(plan.facts, plan.vectors)

            if self.reinforce_step > 0:
                for fact_id, existing in plan.reinforce.items():
                    confidence = min(1.0, existing.confidence + self.reinforce_step)
                    self.store.update(fact_id, confidence=confidence)
                    result.reinforced.append(fact_id)

        return result
    def _format_conversation(self, messages: list[Message]) -> str:
        """Format messages into a readable conversation string."""
        lines = []
        for msg in messages:
            if msg.role == "user":
                lines.append(f"User: {msg.content}")
            elif msg.role == "assistant":
                lines.append(f"Assistant: {msg.content}")
            # Skip system messages
        return "\n".join(lines)

    def _parse_response(self, content: str) -> tuple[list[Fact], int]:
        """Parse LLM response into candidate facts.

        Args:
            content: The raw LLM response.

        Returns:
            Valid candidates and the number of items rejected.

        Raises:
            MalformedExtractionError: If the response is not a JSON list
                of facts (bare or under a "facts" key).
        """
        json_str = content.strip()
        if json_str.startswith("```"):
            # The LLM might wrap it in a markdown code block
            json_str = "\n".join(
                line for line in json_str.split("\n") if not line.startswith("```")
            )

        try:
            data: Any = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise MalformedExtractionError(
                f"Failed to parse extraction response: {e}"
            ) from e

        if isinstance(data, dict) and "facts" in data:
            data = data["facts"]
        if not isinstance(data, list):
            raise MalformedExtractionError(
                f"Expected a list of facts, got {type(data).__name__}"
            )

        facts: list[Fact] = []
        rejected = 0
        for item in data:
            text = item.get("content") if isinstance(item, dict) else None
            if not isinstance(text, str) or not text.strip():
                logger.warning("Skipping invalid fact item: %s", item)
                rejected += 1
                continue
            facts.append(
                Fact(
                    content=text.strip(),
                    category=validate_category(item.get("category")),
                )
            )

        return facts, rejected
