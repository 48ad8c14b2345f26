"""Tests for the debounced auto-save."""

import asyncio

import pytest

from ssp_workflow.models import Document, EntryBranch, Stage
from ssp_workflow.utils.storage import MemoryBackend, PersistenceStore, StorageError
from ssp_workflow.workflow.autosave import AutoSaveScheduler

from conftest import SlowBackend

DELAY = 0.05


class CountingStore(PersistenceStore):
    """Store recording every document it is asked to save."""

    def __init__(self, **kwargs):
        super().__init__(MemoryBackend(), **kwargs)
        self.saved = []

    async def save(self, document):
        self.saved.append(document)
        return await super().save(document)


class FailingStore(PersistenceStore):
    def __init__(self):
        super().__init__(MemoryBackend())

    async def save(self, document):
        raise StorageError("disk unplugged")


def at_stage(name: str) -> Document:
    return Document(
        stage=Stage.CATALOGUE_DECISION,
        entry_branch=EntryBranch.FRESH,
        system_info={"system_name": name},
    )


class TestAutoSaveScheduler:
    """Tests for AutoSaveScheduler."""

    @pytest.mark.asyncio
    async def test_burst_produces_one_write_with_latest_state(self):
        """Test that two arms inside the window write once, with the later state."""
        store = CountingStore()
        scheduler = AutoSaveScheduler(store, delay=DELAY)

        scheduler.arm(at_stage("first"))
        await asyncio.sleep(DELAY / 2)
        scheduler.arm(at_stage("second"))
        await asyncio.sleep(DELAY * 3)

        assert len(store.saved) == 1
        assert store.saved[0].system_info.system_name == "second"
        assert not scheduler.pending

    @pytest.mark.asyncio
    async def test_bound_source_read_at_fire_time(self):
        store = CountingStore()
        current = {"document": at_stage("before")}
        scheduler = AutoSaveScheduler(store, delay=DELAY, source=lambda: current["document"])

        scheduler.arm()
        current["document"] = at_stage("after")
        await asyncio.sleep(DELAY * 3)

        assert [d.system_info.system_name for d in store.saved] == ["after"]

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_write(self):
        store = CountingStore()
        scheduler = AutoSaveScheduler(store, delay=DELAY)

        scheduler.arm(at_stage("draft"))
        assert scheduler.pending
        scheduler.cancel()
        await asyncio.sleep(DELAY * 3)

        assert store.saved == []

    @pytest.mark.asyncio
    async def test_flush_writes_immediately(self):
        store = CountingStore()
        results = []
        scheduler = AutoSaveScheduler(store, delay=10, on_saved=results.append)

        scheduler.arm(at_stage("pending"))
        result = await scheduler.flush()

        assert result.saved
        assert results == [result]
        assert len(store.saved) == 1
        assert not scheduler.pending

    @pytest.mark.asyncio
    async def test_flush_without_pending_write(self):
        store = CountingStore()
        scheduler = AutoSaveScheduler(store, delay=DELAY)
        assert await scheduler.flush() is None
        assert store.saved == []

    @pytest.mark.asyncio
    async def test_skipped_save_still_reported(self):
        store = CountingStore(max_snapshot_bytes=10)
        results = []
        scheduler = AutoSaveScheduler(store, delay=DELAY, on_saved=results.append)

        scheduler.arm(at_stage("big"))
        await asyncio.sleep(DELAY * 3)

        assert len(results) == 1
        assert results[0].reason == "too-large"

    @pytest.mark.asyncio
    async def test_storage_error_does_not_escape(self):
        results = []
        scheduler = AutoSaveScheduler(FailingStore(), delay=10, on_saved=results.append)

        scheduler.arm(at_stage("doc"))

        assert await scheduler.flush() is None
        assert results == []


class TestWriteInProgress:
    """Tests for a timer-started write that is still running."""

    @pytest.fixture
    def store(self):
        return PersistenceStore(SlowBackend(write_delay=DELAY))

    @pytest.mark.asyncio
    async def test_flush_waits_for_running_write(self, store):
        scheduler = AutoSaveScheduler(store, delay=0.01)

        scheduler.arm(at_stage("draft"))
        await asyncio.sleep(0.03)
        assert scheduler.writing
        assert not scheduler.pending

        result = await scheduler.flush()

        assert result.saved
        assert not scheduler.writing
        assert (await store.load()).document.system_info.system_name == "draft"

    @pytest.mark.asyncio
    async def test_settle_drops_rearm_and_waits(self, store):
        scheduler = AutoSaveScheduler(store, delay=0.01)

        scheduler.arm(at_stage("first"))
        await asyncio.sleep(0.03)
        scheduler.arm(at_stage("second"))

        result = await scheduler.settle()
        await asyncio.sleep(DELAY * 4)

        assert result.saved
        assert not scheduler.pending
        assert not scheduler.writing
        assert (await store.load()).document.system_info.system_name == "first"
