"""Tests for the background extraction queue."""

import asyncio
import json
import sqlite3
import time
from unittest.mock import AsyncMock, Mock, patch

import pytest

from recollect.errors import MalformedExtractionError
from recollect.memory import (
    ConversationLog,
    ExtractionPlan,
    ExtractionQueue,
    ExtractionResult,
    Fact,
    FactExtractor,
    FactStore,
)


@pytest.fixture
def extractor() -> Mock:
    extractor = Mock()
    extractor.prepare = AsyncMock(return_value=ExtractionPlan())
    extractor.apply = Mock(
        return_value=ExtractionResult(inserted=[Fact(content="User loves React", id=1)])
    )
    return extractor


@pytest.fixture
def log(conversations: ConversationLog) -> ConversationLog:
    conversations.ensure_conversation("c1")
    for i in range(8):
        conversations.append_message("c1", "user", f"msg {i}")
    return conversations


def real_extractor(store: FactStore, payload: list[dict]) -> FactExtractor:
    llm = AsyncMock()
    llm.complete.return_value = json.dumps(payload)
    return FactExtractor(store, llm)


class TestRunJob:
    """Tests for a single extraction job."""

    @pytest.mark.asyncio
    async def test_success_marks_messages_processed(self, log, extractor):
        queue = ExtractionQueue(log, extractor, window=6)

        result = await queue.run_job("c1")

        assert len(result.inserted) == 1
        assert log.unprocessed_count("c1") == 0

    @pytest.mark.asyncio
    async def test_only_window_sent_to_extractor(self, log, extractor):
        queue = ExtractionQueue(log, extractor, window=6)

        await queue.run_job("c1")

        messages, conversation = extractor.prepare.call_args.args
        assert [m.content for m in messages] == [f"msg {i}" for i in range(2, 8)]
        assert conversation.id == "c1"

    @pytest.mark.asyncio
    async def test_failure_leaves_messages_unprocessed(self, log, extractor):
        extractor.prepare.side_effect = MalformedExtractionError("not json")
        queue = ExtractionQueue(log, extractor)

        assert await queue.run_job("c1") is None
        assert log.unprocessed_count("c1") == 8
        extractor.apply.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_pending_messages(self, log, extractor):
        log.mark_processed([m.id for m in log.unprocessed_messages("c1")])
        queue = ExtractionQueue(log, extractor)

        result = await queue.run_job("c1")

        assert result.inserted == []
        extractor.prepare.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, conversations, extractor):
        queue = ExtractionQueue(conversations, extractor)
        assert await queue.run_job("missing") is None
        extractor.prepare.assert_not_called()

    @pytest.mark.asyncio
    async def test_events_logged(self, log, extractor):
        event_log = Mock()
        queue = ExtractionQueue(log, extractor, event_log=event_log)

        await queue.run_job("c1")

        args, kwargs = event_log.log_extraction.call_args
        assert args == ("c1", True)
        assert kwargs["messages"] == 8
        assert kwargs["inserted"] == 1

    @pytest.mark.asyncio
    async def test_failure_event_logged(self, log, extractor):
        extractor.prepare.side_effect = MalformedExtractionError("not json")
        event_log = Mock()
        queue = ExtractionQueue(log, extractor, event_log=event_log)

        await queue.run_job("c1")

        args, kwargs = event_log.log_extraction.call_args
        assert args == ("c1", False)
        assert "not json" in kwargs["error"]


class TestRunJobAtomicity:
    """Facts and processed flags are written together or not at all."""

    @pytest.mark.asyncio
    async def test_mark_processed_failure_writes_no_facts(self, store: FactStore, log):
        extractor = real_extractor(store, [{"content": "User loves React"}])
        queue = ExtractionQueue(log, extractor)

        with patch.object(
            log, "mark_processed", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            assert await queue.run_job("c1") is None

        assert store.get_all() == []
        assert store.get_embedding(1) is None
        assert log.unprocessed_count("c1") == 8

    @pytest.mark.asyncio
    async def test_failed_run_does_not_reinforce(self, store: FactStore, log):
        existing = store.insert(Fact(content="User prefers TypeScript", confidence=0.5))
        extractor = real_extractor(
            store,
            [{"content": "User prefers TypeScript"}, {"content": "User loves React"}],
        )
        queue = ExtractionQueue(log, extractor)

        with patch.object(
            log, "mark_processed", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            await queue.run_job("c1")

        assert store.get(existing.id).confidence == 0.5
        assert [f.content for f in store.get_all()] == ["User prefers TypeScript"]

    @pytest.mark.asyncio
    async def test_retry_after_failure_reinforces_once(self, store: FactStore, log):
        existing = store.insert(Fact(content="User prefers TypeScript", confidence=0.5))
        extractor = real_extractor(store, [{"content": "User prefers TypeScript"}])
        queue = ExtractionQueue(log, extractor)

        with patch.object(
            log, "mark_processed", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            await queue.run_job("c1")
        result = await queue.run_job("c1")

        assert result.reinforced == [existing.id]
        assert store.get(existing.id).confidence == pytest.approx(0.6)
        assert log.unprocessed_count("c1") == 0


class SlowEmbedder:
    """Embedder that blocks its thread like a real model encode."""

    dimension = 3
    model_name = "slow"

    def __init__(self, delay: float) -> None:
        self.delay = delay

    def embed(self, text: str):
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]):
        time.sleep(self.delay)
        return [[1.0, float(i), 0.0] for i, _ in enumerate(texts)]


class TestEventLoopResponsiveness:
    """Extraction must leave the event loop free for chat turns."""

    @pytest.mark.asyncio
    async def test_embedding_does_not_stall_loop(self, db, log, clock):
        store = FactStore(db, SlowEmbedder(delay=0.5), clock=clock)
        extractor = real_extractor(store, [{"content": "User loves React"}])
        queue = ExtractionQueue(log, extractor)

        queue.submit("c1")
        started = time.monotonic()
        # The worker starts and reaches the embedding call during this sleep
        await asyncio.sleep(0.05)
        stall = time.monotonic() - started

        await queue.join()
        await queue.stop()

        assert stall < 0.3
        assert log.unprocessed_count("c1") == 0
        assert len(store.get_all()) == 1


class TestQueue:
    """Tests for scheduling jobs on the worker task."""

    @pytest.mark.asyncio
    async def test_submit_runs_job(self, log, extractor):
        queue = ExtractionQueue(log, extractor)

        assert queue.submit("c1") is True
        await queue.join()

        extractor.prepare.assert_called_once()
        assert log.unprocessed_count("c1") == 0
        assert not queue.is_in_flight("c1")
        await queue.stop()

    @pytest.mark.asyncio
    async def test_submit_while_in_flight_is_ignored(self, log, extractor):
        release = asyncio.Event()

        async def slow_prepare(messages, conversation):
            await release.wait()
            return ExtractionPlan()

        extractor.prepare.side_effect = slow_prepare
        queue = ExtractionQueue(log, extractor)

        assert queue.submit("c1") is True
        assert queue.submit("c1") is False
        assert queue.is_in_flight("c1")

        release.set()
        await queue.join()

        assert extractor.prepare.call_count == 1
        await queue.stop()

    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_worker(self, log, conversations, extractor):
        conversations.ensure_conversation("c2")
        conversations.append_message("c2", "user", "hello")
        extractor.prepare.side_effect = [RuntimeError("boom"), ExtractionPlan()]
        queue = ExtractionQueue(log, extractor)

        queue.submit("c1")
        queue.submit("c2")
        await queue.join()

        assert log.unprocessed_count("c1") == 8
        assert log.unprocessed_count("c2") == 0
        assert queue.is_running
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop(self, log, extractor):
        queue = ExtractionQueue(log, extractor)
        queue.start()
        assert queue.is_running

        await queue.stop()

        assert not queue.is_running
        assert not queue.is_in_flight("c1")
