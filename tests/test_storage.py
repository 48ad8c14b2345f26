"""Tests for the persistence store and save history."""

import json
from datetime import datetime, timezone, timedelta

import pytest

from ssp_workflow.models import Control, Document, EntryBranch, GatewayConfig, Stage
from ssp_workflow.models.persistence import SCHEMA_VERSION
from ssp_workflow.utils.storage import (
    STORAGE_KEYS,
    FileBackend,
    MemoryBackend,
    PersistenceStore,
    StorageError,
    format_bytes,
)


class FakeClock:
    """Clock advancing one minute per call."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(minutes=1)
        return self.now


def editing_document(name: str = "Payroll", controls: int = 2) -> Document:
    return Document(
        stage=Stage.CONTROL_EDITING,
        entry_branch=EntryBranch.FRESH,
        catalogue_ref="https://example.org/cat.json",
        catalogue={"uuid": "cat-1"},
        controls=[Control(id=f"ac-{i}", status="effective") for i in range(1, controls + 1)],
        system_info={"system_name": name},
    )


class FlakyBackend(MemoryBackend):
    """Memory backend whose removals fail a set number of times."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def remove(self, key: str) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("device busy")
        await super().remove(key)


class TestFormatBytes:
    """Tests for format_bytes."""

    def test_units(self):
        assert format_bytes(0) == "0 Bytes"
        assert format_bytes(512) == "512 Bytes"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(1024 * 1024) == "1 MB"


class TestPersistenceStore:
    """Tests for PersistenceStore."""

    @pytest.fixture
    def backend(self):
        return MemoryBackend()

    @pytest.fixture
    def store(self, backend):
        return PersistenceStore(backend, history_limit=3, clock=FakeClock())

    @pytest.mark.asyncio
    async def test_save_then_load_restores_stage(self, store):
        """Test that a restored document resumes at the saved stage."""
        document = editing_document()
        result = await store.save(document)

        assert result.saved
        snapshot = await store.load()
        assert snapshot is not None
        assert snapshot.schema_version == SCHEMA_VERSION
        assert snapshot.document.stage == Stage.CONTROL_EDITING
        assert snapshot.document.to_wire() == document.to_wire()

    @pytest.mark.asyncio
    async def test_load_without_data(self, store):
        assert await store.load() is None
        assert not await store.has_saved_data()
        assert await store.last_save_time() is None

    @pytest.mark.asyncio
    async def test_oversized_snapshot_is_skipped(self, backend):
        store = PersistenceStore(backend, max_snapshot_bytes=100)

        result = await store.save(editing_document())

        assert result.skipped
        assert result.reason == "too-large"
        assert result.size_bytes > 100
        assert await backend.get(STORAGE_KEYS["SSP_DATA"]) is None

    @pytest.mark.asyncio
    async def test_oversized_save_keeps_previous_snapshot(self, backend):
        store = PersistenceStore(backend, max_snapshot_bytes=2000)
        await store.save(editing_document(controls=1))

        result = await store.save(editing_document(controls=40))

        assert result.reason == "too-large"
        assert await store.has_saved_data()
        assert len((await store.load()).document.controls) == 1

    @pytest.mark.asyncio
    async def test_quota_exceeded_is_skipped(self):
        store = PersistenceStore(MemoryBackend(quota_bytes=50))

        result = await store.save(editing_document())

        assert result.skipped
        assert result.reason == "quota-exceeded"
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_loads_as_none(self, backend, store):
        await backend.set(STORAGE_KEYS["SSP_DATA"], "{not json")
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_unknown_schema_version_rejected(self, backend, store):
        await store.save(editing_document())
        raw = json.loads(await backend.get(STORAGE_KEYS["SSP_DATA"]))
        raw["schemaVersion"] = "0.9"
        await backend.set(STORAGE_KEYS["SSP_DATA"], json.dumps(raw))

        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_last_save_time_follows_clock(self, store):
        result = await store.save(editing_document())
        assert await store.last_save_time() == result.saved_at

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, store):
        await store.save(editing_document())

        assert await store.clear()
        assert not await store.has_saved_data()
        assert await store.last_save_time() is None
        assert await store.storage_size() == 0

    @pytest.mark.asyncio
    async def test_clear_retries_transient_failures(self):
        store = PersistenceStore(FlakyBackend(failures=2), clear_retry_attempts=3)
        await store.save(editing_document())

        assert await store.clear()
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_clear_gives_up_after_attempts(self):
        store = PersistenceStore(FlakyBackend(failures=10), clear_retry_attempts=2)
        await store.save(editing_document())

        with pytest.raises(StorageError):
            await store.clear()

    @pytest.mark.asyncio
    async def test_storage_size(self, store):
        result = await store.save(editing_document())
        assert await store.storage_size() == result.size_bytes


class TestSaveHistory:
    """Tests for the save history ledger."""

    @pytest.fixture
    def store(self):
        return PersistenceStore(MemoryBackend(), history_limit=3, clock=FakeClock())

    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_capped(self, store):
        for count in range(1, 6):
            await store.save(editing_document(name=f"System {count}", controls=count))

        entries = await store.history_entries()

        assert len(entries) == 3
        assert [e.system_name for e in entries] == ["System 5", "System 4", "System 3"]
        assert [e.control_count for e in entries] == [5, 4, 3]
        assert entries[0].timestamp > entries[1].timestamp > entries[2].timestamp

    @pytest.mark.asyncio
    async def test_skipped_save_is_not_recorded(self):
        store = PersistenceStore(MemoryBackend(), max_snapshot_bytes=10)
        await store.save(editing_document())
        assert await store.history_entries() == []

    @pytest.mark.asyncio
    async def test_unnamed_system(self, store):
        await store.save(editing_document(name=""))
        entries = await store.history_entries()
        assert entries[0].system_name == "Unnamed System"

    @pytest.mark.asyncio
    async def test_corrupt_history_reads_empty(self):
        backend = MemoryBackend()
        await backend.set(STORAGE_KEYS["SSP_HISTORY"], '{"oops": true}')
        store = PersistenceStore(backend)

        assert await store.history_entries() == []
        await store.save(editing_document())
        assert len(await store.history_entries()) == 1


class TestBackup:
    """Tests for backup export and import."""

    @pytest.mark.asyncio
    async def test_export_then_import_into_new_store(self):
        source = PersistenceStore(MemoryBackend())
        document = editing_document()
        await source.save(document)
        backup = await source.export_backup()

        target = PersistenceStore(MemoryBackend())
        result = await target.import_backup(backup)

        assert result.saved
        snapshot = await target.load()
        assert snapshot.document.to_wire() == document.to_wire()

    @pytest.mark.asyncio
    async def test_export_without_data(self):
        assert await PersistenceStore(MemoryBackend()).export_backup() is None

    @pytest.mark.asyncio
    async def test_import_bare_document(self):
        store = PersistenceStore(MemoryBackend())
        result = await store.import_backup(editing_document().to_wire())
        assert result.saved
        assert (await store.load()).document.stage == Stage.CONTROL_EDITING

    @pytest.mark.asyncio
    async def test_import_invalid(self):
        store = PersistenceStore(MemoryBackend())

        result = await store.import_backup("not a backup")

        assert result.skipped
        assert result.reason == "invalid"
        assert not await store.has_saved_data()


class TestGatewaySettings:
    """Tests for stored gateway settings."""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = PersistenceStore(MemoryBackend())
        config = GatewayConfig.model_validate(
            {"azure": {"enabled": True, "url": "https://apim.example.net/proxy"}}
        )

        await store.save_gateway_config(config)

        loaded = await store.load_gateway_config()
        assert loaded.azure.usable
        assert not loaded.aws.enabled

    @pytest.mark.asyncio
    async def test_missing_or_corrupt_is_disabled(self):
        backend = MemoryBackend()
        store = PersistenceStore(backend)
        assert not (await store.load_gateway_config()).aws.enabled

        await backend.set(STORAGE_KEYS["API_GATEWAYS"], "[1, 2")
        loaded = await store.load_gateway_config()
        assert not loaded.aws.enabled
        assert not loaded.azure.enabled


class TestFileBackend:
    """Tests for the file-backed store."""

    @pytest.mark.asyncio
    async def test_set_get_remove(self, tmp_path):
        backend = FileBackend(str(tmp_path / "state"))

        await backend.set("ssp_data", '{"a": 1}')
        assert await backend.get("ssp_data") == '{"a": 1}'

        await backend.remove("ssp_data")
        assert await backend.get("ssp_data") is None
        await backend.remove("ssp_data")

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path):
        backend = FileBackend(str(tmp_path))
        store = PersistenceStore(backend)

        await store.save(editing_document())

        names = sorted(p.name for p in tmp_path.iterdir())
        assert names == ["ssp_autosave_time.json", "ssp_data.json", "ssp_history.json"]

    @pytest.mark.asyncio
    async def test_quota(self, tmp_path):
        store = PersistenceStore(FileBackend(str(tmp_path), quota_bytes=64))
        result = await store.save(editing_document())
        assert result.reason == "quota-exceeded"

    @pytest.mark.asyncio
    async def test_undecodable_value_is_storage_error(self, tmp_path):
        backend = FileBackend(str(tmp_path))
        (tmp_path / "ssp_data.json").write_bytes(b"\xff\xfe")

        with pytest.raises(StorageError):
            await backend.get("ssp_data")

    @pytest.mark.asyncio
    async def test_undecodable_snapshot_loads_as_none(self, tmp_path):
        store = PersistenceStore(FileBackend(str(tmp_path)))
        (tmp_path / "ssp_data.json").write_bytes(b'{"document": "\xff\xfe broken')

        assert await store.load() is None
        assert await store.export_backup() is None
        assert await store.last_save_time() is None
        assert await store.storage_size() == 0

    @pytest.mark.asyncio
    async def test_undecodable_history_does_not_fail_save(self, tmp_path):
        store = PersistenceStore(FileBackend(str(tmp_path)))
        (tmp_path / "ssp_history.json").write_bytes(b"[\xff]")

        result = await store.save(editing_document())

        assert result.saved
        entries = await store.history_entries()
        assert [e.system_name for e in entries] == ["Payroll"]
