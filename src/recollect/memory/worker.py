"""Background queue that runs fact extraction off the chat path."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING

from .conversations import ConversationLog
from .extractor import ExtractionResult, FactExtractor

if TYPE_CHECKING:
    from ..logging import JSONLLogger

logger = logging.getLogger(__name__)


class ExtractionQueue:
    """Runs extraction jobs one at a time on a background task.

    A conversation has at most one job queued or running. Submitting it
    again while in flight is a no-op, and messages stay unprocessed until
    a job for them succeeds.
    """

    def __init__(
        self,
        conversations: ConversationLog,
        extractor: FactExtractor,
        window: int = 6,
        event_log: JSONLLogger | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            conversations: Log providing unprocessed messages.
            extractor: Extractor run for each job.
            window: Most recent unprocessed messages sent to the extractor.
            event_log: Optional JSONL logger for extraction events.
        """
        self.conversations = conversations
        self.extractor = extractor
        self.window = window
        self.event_log = event_log
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._in_flight: set[str] = set()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_in_flight(self, conversation_id: str) -> bool:
        """Check if a job for the conversation is queued or running."""
        return conversation_id in self._in_flight

    def start(self) -> None:
        """Start the worker task on the running event loop."""
        if not self.is_running:
            self._task = asyncio.create_task(self._worker(), name="fact-extraction")

    def submit(self, conversation_id: str) -> bool:
        """Queue an extraction job for a conversation.

        Returns:
            True if queued, False if one is already in flight.
        """
        if conversation_id in self._in_flight:
            logger.debug("Extraction already in flight for %s", conversation_id)
            return False

        self._in_flight.add(conversation_id)
        self._queue.put_nowait(conversation_id)
        self.start()
        return True

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker task. Queued jobs are dropped."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._in_flight.clear()

    async def _worker(self) -> None:
        while True:
            conversation_id = await self._queue.get()
            try:
                await self.run_job(conversation_id)
            finally:
                self._in_flight.discard(conversation_id)
                self._queue.task_done()

    async def run_job(self, conversation_id: str) -> ExtractionResult | None:
        """Extract facts from a conversation's unprocessed messages.

        Messages are marked processed only when extraction succeeds, even
        if no facts came out of it. Failures are logged, never raised.

        Returns:
            The extraction result, or None if the job failed.
        """
        started = time.monotonic()
        pending: list = []
        try:
            conversation = self.conversations.get_conversation(conversation_id)
            if conversation is None:
                logger.warning("Extraction skipped, unknown conversation %s", conversation_id)
                return None

            pending = self.conversations.unprocessed_messages(conversation_id)
            if not pending:
                return ExtractionResult()

            window = pending[-self.window :]
            plan = await self.extractor.prepare(window, conversation)

            # Facts, reinforcements and the processed flags commit together
            with self.conversations.db.transaction():
                result = self.extractor.apply(plan)
                # Older messages outside the window are consumed as well
                self.conversations.mark_processed([m.id for m in pending])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Fact extraction failed for %s: %s", conversation_id, e)
            self._log(conversation_id, False, len(pending), started, error=str(e))
            return None

        logger.info(
            "Extracted %d fact(s) from %d message(s) in %s",
            len(result.inserted),
            len(pending),
            conversation_id,
        )
        self._log(conversation_id, True, len(pending), started, result=result)
        return result

    def _log(
        self,
        conversation_id: str,
        success: bool,
        messages: int,
        started: float,
        result: ExtractionResult | None = None,
        error: str | None = None,
    ) -> None:
        if self.event_log is None:
            return
        try:
            self.event_log.log_extraction(
                conversation_id,
                success,
                messages=messages,
                inserted=len(result.inserted) if result else 0,
                duplicates=result.duplicates if result else 0,
                duration_ms=(time.monotonic() - started) * 1000,
                error=error,
            )
        except OSError as e:
            logger.warning("Cannot write extraction event: %s", e)
