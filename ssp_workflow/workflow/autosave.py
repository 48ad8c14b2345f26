"""Debounced auto-save of the workflow document."""

import asyncio
import logging
from typing import Optional, Callable

from ssp_workflow.models.document import Document
from ssp_workflow.models.persistence import SaveResult
from ssp_workflow.utils.storage import PersistenceStore, StorageError

logger = logging.getLogger(__name__)

AUTOSAVE_DELAY_SECONDS = 2.0


class AutoSaveScheduler:
    """Trailing-edge debounce in front of PersistenceStore.save.

    Each call to arm() restarts the quiet window, so a burst of edits results
    in a single write once the burst ends. The document written is the one
    current when the timer fires, read through the bound source when there
    is one.
    """

    def __init__(
        self,
        store: PersistenceStore,
        delay: float = AUTOSAVE_DELAY_SECONDS,
        source: Optional[Callable[[], Document]] = None,
        on_saved: Optional[Callable[[SaveResult], None]] = None,
    ):
        self.store = store
        self.delay = delay
        self.on_saved = on_saved
        self._source = source
        self._latest: Optional[Document] = None
        self._task: Optional[asyncio.Task] = None
        # The write started by the timer, kept until it completes
        self._inflight: Optional[asyncio.Task] = None

    def bind(self, source: Callable[[], Document]) -> None:
        """Read the document to save from source at fire time."""
        self._source = source

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def writing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def arm(self, document: Optional[Document] = None) -> None:
        """Restart the quiet window."""
        if document is not None:
            self._latest = document
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._fire_later())

    def cancel(self) -> None:
        """Drop any pending write. A write already started still completes."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def settle(self) -> Optional[SaveResult]:
        """Drop any pending write and wait for the one in progress."""
        self.cancel()
        return await self._wait_inflight()

    async def flush(self) -> Optional[SaveResult]:
        """Write immediately if a save is pending, after any write in progress."""
        if not self.pending:
            return await self._wait_inflight()
        self.cancel()
        await self._wait_inflight()
        return await self._write()

    async def _wait_inflight(self) -> Optional[SaveResult]:
        inflight = self._inflight
        if inflight is None:
            return None
        return await asyncio.shield(inflight)

    def _write_done(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.delay)
        await self._wait_inflight()
        # Detach before writing so a re-arm during the write schedules a new one
        self._task = None
        self._inflight = asyncio.get_running_loop().create_task(self._write())
        self._inflight.add_done_callback(self._write_done)

    def _current(self) -> Optional[Document]:
        if self._source is not None:
            return self._source()
        return self._latest

    async def _write(self) -> Optional[SaveResult]:
        document = self._current()
        if document is None:
            return None
        try:
            result = await self.store.save(document)
        except StorageError as e:
            logger.error("Auto-save failed: %s", e)
            return None
        if result.skipped:
            logger.warning("Auto-save skipped (%s); in-memory state is unchanged", result.reason)
        if self.on_saved is not None:
            self.on_saved(result)
        return result
