"""Data models for the memory system."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..errors import ValidationError

DEFAULT_CATEGORY = "general"
MESSAGE_ROLES = ("user", "assistant", "system")


@dataclass(frozen=True)
class Fact:
    """A short factual statement about the user.

    Attributes:
        content: The statement itself, one atomic fact.
        category: Tag such as 'personal', 'preferences', 'professional'
            or 'interests'. The vocabulary is open.
        confidence: How sure we are about the fact, in [0.0, 1.0].
        id: Database ID, None for new facts.
        source_conversation_id: Conversation the fact was extracted from.
        project_id: Project scope, None for global facts.
        created_at: ISO timestamp when created.
        updated_at: ISO timestamp when last edited.
    """

    content: str
    category: str = DEFAULT_CATEGORY
    confidence: float = 1.0
    id: int | None = None
    source_conversation_id: str | None = None
    project_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Conversation:
    """Metadata for a conversation whose messages feed extraction."""

    id: str
    title: str
    project_id: str | None = None
    message_count: int = 0
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class Message:
    """A single recorded conversation turn."""

    id: int
    conversation_id: str
    role: str
    content: str
    timestamp: str
    processed_for_facts: bool = False


@dataclass(frozen=True)
class Scope:
    """Visibility boundary for fact queries.

    A fact is visible when it is global or belongs to ``project_id``.
    ``all_projects`` lifts the filter entirely (management views).
    """

    project_id: str | None = None
    all_projects: bool = False

    @classmethod
    def global_scope(cls) -> Scope:
        return cls()

    @classmethod
    def for_project(cls, project_id: str | None) -> Scope:
        return cls(project_id=project_id)

    @classmethod
    def everything(cls) -> Scope:
        return cls(all_projects=True)

    def sql_filter(self, column: str = "project_id") -> tuple[str, tuple[Any, ...]]:
        """Return a WHERE fragment and its parameters for this scope."""
        if self.all_projects:
            return "1 = 1", ()
        if self.project_id is None:
            return f"{column} IS NULL", ()
        return f"({column} IS NULL OR {column} = ?)", (self.project_id,)


@dataclass
class ScoredFact:
    """A fact paired with its similarity to a query.

    ``score`` is the composite ranking score, set by the ranker.
    """

    fact: Fact
    similarity: float
    score: float | None = None


@dataclass(frozen=True)
class FactStats:
    """Aggregate numbers for the statistics view."""

    total_facts: int
    category_counts: dict[str, int] = field(default_factory=dict)
    average_confidence: float = 0.0
    recent_fact_count: int = 0
    latest_update: str | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp, treating naive values as UTC.

    SQLite's ``datetime('now')`` format ("2026-01-01 10:00:00") is accepted.
    """
    moment = datetime.fromisoformat(value.replace(" ", "T", 1))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def validate_content(content: str) -> str:
    """Return stripped content, rejecting empty statements."""
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Fact content cannot be empty")
    return content.strip()


def validate_confidence(confidence: float) -> float:
    """Reject confidence values outside [0.0, 1.0]."""
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValidationError(f"Confidence must be a number, got {confidence!r}")
    if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        raise ValidationError(
            f"Confidence must be between 0.0 and 1.0, got {confidence}"
        )
    return float(confidence)


def validate_category(category: str | None) -> str:
    if category is None or not str(category).strip():
        return DEFAULT_CATEGORY
    return str(category).strip().lower()


def validate_role(role: str) -> str:
    if role not in MESSAGE_ROLES:
        raise ValidationError(
            f"Role must be one of {', '.join(MESSAGE_ROLES)}, got {role!r}"
        )
    return role
