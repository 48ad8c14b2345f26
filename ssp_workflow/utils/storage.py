"""Local persistence for in-progress SSP work."""

import os
import json
import uuid
import errno
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Any, List, Union, Callable
from datetime import datetime, timezone

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from ssp_workflow.models.document import Document
from ssp_workflow.models.evidence import GatewayConfig
from ssp_workflow.models.persistence import (
    SCHEMA_VERSION,
    PersistedSnapshot,
    SaveHistoryRecord,
    SaveResult,
)

logger = logging.getLogger(__name__)

STORAGE_KEYS = {
    "SSP_DATA": "ssp_data",
    "AUTO_SAVE_TIMESTAMP": "ssp_autosave_time",
    "SSP_HISTORY": "ssp_history",
    "API_GATEWAYS": "apiGateways",
}

MAX_SNAPSHOT_BYTES = 4 * 1024 * 1024
SAVE_HISTORY_LIMIT = 10


class StorageError(Exception):
    """Raised when the key-value backend fails."""


class StorageQuotaExceededError(StorageError):
    """Raised when a write would exceed the backend's capacity."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_bytes(size: int) -> str:
    """Format a byte count as a human readable string."""
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB"]
    index = 0
    value = float(size)
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


class KeyValueBackend(ABC):
    """Durable string key-value storage."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value or None."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""


class MemoryBackend(KeyValueBackend):
    """In-process backend with an optional capacity limit."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes
        self._values: Dict[str, str] = {}

    def _used_bytes(self, excluding: str) -> int:
        return sum(
            len(v.encode("utf-8")) for k, v in self._values.items() if k != excluding
        )

    async def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            if self._used_bytes(key) + len(value.encode("utf-8")) > self.quota_bytes:
                raise StorageQuotaExceededError(f"Storage quota exceeded writing {key}")
        self._values[key] = value

    async def remove(self, key: str) -> None:
        self._values.pop(key, None)


class FileBackend(KeyValueBackend):
    """Backend storing one file per key in a directory."""

    def __init__(self, storage_dir: str = "./data/local_state", quota_bytes: Optional[int] = None):
        """Initialize file backend."""
        self.storage_dir = Path(storage_dir)
        self.quota_bytes = quota_bytes
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.storage_dir / f"{key}.json"

    def _used_bytes(self, excluding: str) -> int:
        total = 0
        for item in self.storage_dir.glob("*.json"):
            if item.name != f"{excluding}.json":
                total += item.stat().st_size
        return total

    async def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    async def set(self, key: str, value: str) -> None:
        encoded = value.encode("utf-8")
        if self.quota_bytes is not None:
            if self._used_bytes(key) + len(encoded) > self.quota_bytes:
                raise StorageQuotaExceededError(f"Storage quota exceeded writing {key}")

        # Write to a temp file and rename so readers never see a partial value
        target = self._path(key)
        tmp_path = target.with_name(f"{target.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}")
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(encoded)
            await aiofiles.os.replace(tmp_path, target)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            if e.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
                raise StorageQuotaExceededError(f"No space left writing {key}") from e
            raise StorageError(f"Failed to write {key}: {e}") from e

    async def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            if path.exists():
                await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"Failed to remove {key}: {e}") from e


class SaveHistoryLedger:
    """Bounded newest-first record of successful saves."""

    def __init__(
        self,
        backend: KeyValueBackend,
        limit: int = SAVE_HISTORY_LIMIT,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.backend = backend
        self.limit = limit
        self.clock = clock

    async def entries(self) -> List[SaveHistoryRecord]:
        """Get save history, newest first."""
        try:
            raw = await self.backend.get(STORAGE_KEYS["SSP_HISTORY"])
        except StorageError as e:
            logger.warning("Ignoring unreadable save history: %s", e)
            return []
        if not raw:
            return []
        try:
            items = json.loads(raw)
            if not isinstance(items, list):
                raise ValueError("history is not a list")
            return [SaveHistoryRecord.model_validate(item) for item in items]
        except (ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable save history: %s", e)
            return []

    async def record(self, document: Document) -> SaveHistoryRecord:
        """Prepend a record for the given document and trim the ring."""
        record = SaveHistoryRecord(
            timestamp=self.clock(),
            system_name=document.system_name,
            control_count=len(document.controls),
        )
        history = [record] + await self.entries()
        history = history[: self.limit]
        await self.backend.set(
            STORAGE_KEYS["SSP_HISTORY"],
            json.dumps([item.to_wire() for item in history]),
        )
        return record


class PersistenceStore:
    """Saves, restores and clears the workbench document."""

    def __init__(
        self,
        backend: KeyValueBackend,
        max_snapshot_bytes: int = MAX_SNAPSHOT_BYTES,
        history_limit: int = SAVE_HISTORY_LIMIT,
        clear_retry_attempts: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize persistence store.

        Args:
            backend: Key-value storage to write to
            max_snapshot_bytes: Snapshots larger than this are not written
            history_limit: Number of save history records to keep
            clear_retry_attempts: Attempts made to remove each key on clear
            clock: Source of the current UTC time
        """
        self.backend = backend
        self.max_snapshot_bytes = max_snapshot_bytes
        self.clear_retry_attempts = max(1, clear_retry_attempts)
        self.clock = clock
        self.history = SaveHistoryLedger(backend, limit=history_limit, clock=clock)

    async def save(self, document: Document) -> SaveResult:
        """Persist a snapshot of the document.

        Oversized snapshots and quota failures are reported as a skipped
        save; the in-memory document is unaffected.
        """
        now = self.clock()
        snapshot = PersistedSnapshot(
            document=document, last_modified=now, schema_version=SCHEMA_VERSION
        )
        payload = snapshot.model_dump_json(by_alias=True)
        size = len(payload.encode("utf-8"))

        if size > self.max_snapshot_bytes:
            logger.warning(
                "Snapshot too large for local storage (%s). Skipping save.", format_bytes(size)
            )
            return SaveResult(saved=False, reason="too-large", size_bytes=size)

        try:
            await self.backend.set(STORAGE_KEYS["SSP_DATA"], payload)
            await self.backend.set(STORAGE_KEYS["AUTO_SAVE_TIMESTAMP"], now.isoformat())
        except StorageQuotaExceededError as e:
            logger.warning("Storage quota exceeded, skipping save: %s", e)
            return SaveResult(saved=False, reason="quota-exceeded", size_bytes=size)

        try:
            await self.history.record(document)
        except StorageError as e:
            logger.error("Error saving to history: %s", e)

        logger.info(
            "Saved %s (%d controls, %s)",
            document.system_name,
            len(document.controls),
            format_bytes(size),
        )
        return SaveResult(saved=True, size_bytes=size, saved_at=now)

    async def load(self) -> Optional[PersistedSnapshot]:
        """Load the last saved snapshot, or None if absent or unreadable."""
        raw = await self._read(STORAGE_KEYS["SSP_DATA"])
        if raw is None:
            return None
        try:
            snapshot = PersistedSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Ignoring unreadable saved snapshot: %s", e.errors()[:1])
            return None
        if snapshot.schema_version != SCHEMA_VERSION:
            logger.warning(
                "Ignoring snapshot with unsupported schema version %s", snapshot.schema_version
            )
            return None
        return snapshot

    async def clear(self) -> bool:
        """Remove the saved snapshot and its timestamp."""
        # The timestamp goes first: has_saved_data() keys off the snapshot
        for key in (STORAGE_KEYS["AUTO_SAVE_TIMESTAMP"], STORAGE_KEYS["SSP_DATA"]):
            await self._remove_with_retry(key)
        logger.info("Cleared saved SSP data")
        return True

    async def _remove_with_retry(self, key: str) -> None:
        for attempt in range(1, self.clear_retry_attempts + 1):
            try:
                await self.backend.remove(key)
                return
            except StorageError as e:
                if attempt == self.clear_retry_attempts:
                    raise
                logger.warning("Retrying removal of %s (attempt %d): %s", key, attempt, e)

    async def _read(self, key: str) -> Optional[str]:
        """Read a key, treating an unreadable value as absent."""
        try:
            return await self.backend.get(key)
        except StorageError as e:
            logger.warning("Ignoring unreadable %s: %s", key, e)
            return None

    async def has_saved_data(self) -> bool:
        """Check if saved data exists."""
        try:
            return await self.backend.get(STORAGE_KEYS["SSP_DATA"]) is not None
        except StorageError:
            # Present but unreadable
            return True

    async def last_save_time(self) -> Optional[datetime]:
        """Get the last save timestamp, if a snapshot exists."""
        if not await self.has_saved_data():
            return None
        raw = await self._read(STORAGE_KEYS["AUTO_SAVE_TIMESTAMP"])
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    async def history_entries(self) -> List[SaveHistoryRecord]:
        """Get save history, newest first."""
        return await self.history.entries()

    async def storage_size(self) -> int:
        """Size in bytes of the saved snapshot."""
        raw = await self._read(STORAGE_KEYS["SSP_DATA"])
        return len(raw.encode("utf-8")) if raw else 0

    async def export_backup(self) -> Optional[str]:
        """Export the saved snapshot as pretty-printed JSON."""
        snapshot = await self.load()
        if snapshot is None:
            return None
        return json.dumps(snapshot.to_wire(), indent=2)

    async def import_backup(self, data: Union[str, bytes, Dict[str, Any]]) -> SaveResult:
        """Import a backup produced by export_backup (or a bare document) and save it."""
        try:
            parsed = json.loads(data) if isinstance(data, (str, bytes)) else data
            if not isinstance(parsed, dict):
                raise ValueError("backup must be a JSON object")
            if "document" in parsed:
                document = PersistedSnapshot.model_validate(parsed).document
            else:
                document = Document.model_validate(parsed)
        except (ValueError, ValidationError) as e:
            logger.error("Error importing backup: %s", e)
            return SaveResult(saved=False, reason="invalid")
        return await self.save(document)

    async def load_gateway_config(self) -> GatewayConfig:
        """Load the configured API gateways."""
        raw = await self._read(STORAGE_KEYS["API_GATEWAYS"])
        if not raw:
            return GatewayConfig()
        try:
            return GatewayConfig.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Error parsing API gateway configuration: %s", e.errors()[:1])
            return GatewayConfig()

    async def save_gateway_config(self, config: GatewayConfig) -> None:
        """Store the API gateway configuration."""
        await self.backend.set(STORAGE_KEYS["API_GATEWAYS"], config.model_dump_json())
