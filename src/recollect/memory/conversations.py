"""Append-only log of conversation messages awaiting fact extraction."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime

from ..errors import NotFoundError
from .database import MemoryDatabase
from .models import Conversation, Message, format_timestamp, utcnow, validate_role


class ConversationLog:
    """Persists conversations and their messages.

    Messages are split into processed and unprocessed partitions by the
    ``processed_for_facts`` flag. This class knows nothing about facts.
    """

    def __init__(
        self,
        db: MemoryDatabase,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.clock = clock

    def ensure_conversation(
        self,
        conversation_id: str,
        project_id: str | None = None,
        title: str | None = None,
    ) -> Conversation:
        """Return the conversation, creating it if it doesn't exist.

        An existing conversation is returned unchanged.
        """
        existing = self.get_conversation(conversation_id)
        if existing is not None:
            return existing

        now = format_timestamp(self.clock())
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO conversations (id, project_id, title, message_count, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    conversation_id,
                    project_id,
                    title or f"Conversation {conversation_id}",
                    now,
                    now,
                ),
            )
        conversation = self.get_conversation(conversation_id)
        assert conversation is not None
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self.db.connection().execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            title=row["title"],
            project_id=row["project_id"],
            message_count=row["message_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def append_message(self, conversation_id: str, role: str, content: str) -> Message:
        """Record a message and bump the conversation's message count.

        Raises:
            NotFoundError: If the conversation doesn't exist.
            ValidationError: If the role is not user, assistant or system.
        """
        validate_role(role)
        if self.get_conversation(conversation_id) is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        now = format_timestamp(self.clock())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (conversation_id, role, content, timestamp, processed_for_facts)
                VALUES (?, ?, ?, ?, 0)
                """,
                (conversation_id, role, content, now),
            )
            conn.execute(
                """
                UPDATE conversations
                SET message_count = message_count + 1, updated_at = ?
                WHERE id = ?
                """,
                (now, conversation_id),
            )

        return Message(
            id=cursor.lastrowid,
            conversation_id=conversation_id,
            role=role,
            content=content,
            timestamp=now,
            processed_for_facts=False,
        )

    def get_messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation in chronological order."""
        cursor = self.db.connection().execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id",
            (conversation_id,),
        )
        return [self._row_to_message(row) for row in cursor.fetchall()]

    def unprocessed_messages(
        self, conversation_id: str, limit: int | None = None
    ) -> list[Message]:
        """Messages not yet considered for extraction, oldest first.

        Args:
            conversation_id: The conversation to read.
            limit: If given, only the most recent ``limit`` messages.
        """
        query = """
            SELECT * FROM messages
            WHERE conversation_id = ? AND processed_for_facts = 0
            ORDER BY id DESC
        """
        params: tuple[object, ...] = (conversation_id,)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)

        rows = self.db.connection().execute(query, params).fetchall()
        return [self._row_to_message(row) for row in reversed(rows)]

    def unprocessed_count(self, conversation_id: str) -> int:
        row = self.db.connection().execute(
            """
            SELECT COUNT(*) AS pending FROM messages
            WHERE conversation_id = ? AND processed_for_facts = 0
            """,
            (conversation_id,),
        ).fetchone()
        return row["pending"]

    def mark_processed(self, message_ids: list[int]) -> int:
        """Flag messages as considered by the extractor.

        Returns:
            Number of messages whose flag changed.
        """
        if not message_ids:
            return 0
        placeholders = ",".join("?" * len(message_ids))
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE messages SET processed_for_facts = 1
                WHERE id IN ({placeholders}) AND processed_for_facts = 0
                """,
                tuple(message_ids),
            )
        return cursor.rowcount

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            timestamp=row["timestamp"],
            processed_for_facts=bool(row["processed_for_facts"]),
        )
