"""Ranking of candidate facts and rendering of the memory context block."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..config import RankingConfig
from .models import Message, ScoredFact, parse_timestamp, utcnow

CONTEXT_HEADER = "USER MEMORY CONTEXT:"
CONTEXT_INTRO = (
    "The following information about the user may be relevant to this conversation:"
)
CONTEXT_FOOTER = (
    "Use this information appropriately to provide more personalized "
    "and contextual responses."
)

SECONDS_PER_DAY = 86400.0


class ContextRanker:
    """Scores facts by similarity, confidence and recency.

    The composite score is

        similarity * confidence_factor * recency_factor

    where each factor is a weighted blend between 1.0 and its signal, so a
    weight of 0 turns a signal off and recency alone can never shrink a
    score below ``1 - recency_weight`` of its value.
    """

    def __init__(self, config: RankingConfig | None = None) -> None:
        self.config = config or RankingConfig()

    def recency(self, candidate: ScoredFact, now: datetime) -> float:
        """Exponential decay in [0, 1] with the configured half-life."""
        stamp = candidate.fact.updated_at or candidate.fact.created_at
        if not stamp:
            return 1.0
        age_days = max(0.0, (now - parse_timestamp(stamp)).total_seconds() / SECONDS_PER_DAY)
        return 0.5 ** (age_days / self.config.recency_half_life_days)

    def score(self, candidate: ScoredFact, now: datetime) -> float:
        cfg = self.config
        confidence_factor = (1 - cfg.confidence_weight) + cfg.confidence_weight * candidate.fact.confidence
        recency_factor = (1 - cfg.recency_weight) + cfg.recency_weight * self.recency(candidate, now)
        return candidate.similarity * confidence_factor * recency_factor

    def rank(
        self,
        candidates: list[ScoredFact],
        limit: int,
        now: datetime | None = None,
    ) -> list[ScoredFact]:
        """Score, filter and order candidates.

        Args:
            candidates: Facts with their similarity to the query.
            limit: Maximum number of facts returned.
            now: Reference time for recency; current time if None.

        Returns:
            At most ``limit`` facts clearing both relevance floors, best first.
        """
        if limit <= 0:
            return []

        now = now or utcnow()
        ranked: list[ScoredFact] = []
        for candidate in candidates:
            if candidate.similarity < self.config.min_similarity:
                continue
            candidate.score = self.score(candidate, now)
            if candidate.score < self.config.min_score:
                continue
            ranked.append(candidate)

        ranked.sort(key=lambda c: (-(c.score or 0.0), c.fact.id or 0))
        return ranked[:limit]

    def render(self, ranked: list[ScoredFact]) -> str:
        """Render ranked facts as a delimited block, or "" if there are none."""
        if not ranked:
            return ""

        lines = [CONTEXT_HEADER, CONTEXT_INTRO, ""]
        for index, item in enumerate(ranked, start=1):
            fact = item.fact
            lines.append(
                f"{index}. {fact.content} ({fact.category}, confidence: {fact.confidence:.1f})"
            )
        lines.append("")
        lines.append(CONTEXT_FOOTER)
        return "\n".join(lines)


def query_from_messages(
    messages: list[Message] | list[dict[str, Any]], turns: int = 3
) -> str:
    """Join the last few user messages into a search query."""
    user_texts = []
    for msg in messages:
        role = msg.role if isinstance(msg, Message) else msg.get("role")
        content = msg.content if isinstance(msg, Message) else msg.get("content", "")
        if role == "user" and content:
            user_texts.append(str(content))
    return " ".join(user_texts[-turns:]).strip()
