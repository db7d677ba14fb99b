"""Tests for result persistence and the generation service"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from gen_worker import metrics
from gen_worker.config import PollSettings
from gen_worker.pipeline.errors import PersistenceError
from gen_worker.pipeline.generation_router import GenerationRouter
from gen_worker.pipeline.models import (
    Capability,
    GenerationJob,
    GenerationMode,
    GenerationResult,
    GenerationStatus,
)
from gen_worker.pipeline.orchestrator import GenerationService
from gen_worker.pipeline.poller import CompletionPoller
from gen_worker.pipeline.storage import (
    MediaStore,
    MemoryMediaStore,
    ResultPersistenceHook,
    SupabaseMediaStore,
    media_row,
    output_key,
)

from conftest import SECURE_URL, FakeAdapter, RecordingSleep, completed, failed, make_factory, make_flags, pending, processing


def make_job(run_id="run-1", **changes):
    fields = dict(
        run_id=run_id,
        user_id="user-1",
        capability=Capability.RESTORE,
        mode=GenerationMode.RESTORE,
        preset_id="crystal_clear",
        prompt="Increase clarity",
        source_url=SECURE_URL,
        group="restore",
        option_key="enhance_details",
    )
    fields.update(changes)
    return GenerationJob(**fields)


def make_result(status=GenerationStatus.COMPLETED, run_id="run-1"):
    return GenerationResult(
        run_id=run_id,
        status=status,
        output_url="https://out.example.com/r.png" if status == GenerationStatus.COMPLETED else None,
        provider="fake-new",
    )


class BrokenStore(MediaStore):
    async def save(self, job, result):
        raise PersistenceError("database unreachable")


class TestMediaRow:
    def test_row_fields(self):
        row = media_row(make_job(), make_result())
        assert row["run_id"] == "run-1"
        assert row["mode"] == "restore"
        assert row["group"] == "restore"
        assert row["option_key"] == "enhance_details"
        assert row["output_url"] == "https://out.example.com/r.png"
        assert row["provider"] == "fake-new"

    def test_output_key(self):
        assert output_key(make_job()) == "generations/user-1/run-1.png"
        assert output_key(make_job(user_id=None)) == "generations/anonymous/run-1.png"


class TestSupabaseStore:
    def _client(self, data):
        client = MagicMock()
        client.table.return_value.insert.return_value.execute.return_value = MagicMock(data=data)
        return client

    def test_inserts_row(self):
        client = self._client([{"id": 1}])
        store = SupabaseMediaStore(client=client, table="media_assets")

        row = asyncio.run(store.save(make_job(), make_result()))
        assert row == {"id": 1}
        client.table.assert_called_with("media_assets")
        inserted = client.table.return_value.insert.call_args[0][0]
        assert inserted["run_id"] == "run-1"

    def test_empty_insert_is_error(self):
        store = SupabaseMediaStore(client=self._client([]))
        with pytest.raises(PersistenceError, match="no row"):
            asyncio.run(store.save(make_job(), make_result()))

    def test_mirror_url_is_stored(self):
        client = self._client([{"id": 1}])
        mirror = MagicMock()
        mirror.mirror = AsyncMock(return_value="https://assets.example.com/generations/user-1/run-1.png")
        store = SupabaseMediaStore(client=client, mirror=mirror)

        asyncio.run(store.save(make_job(), make_result()))
        inserted = client.table.return_value.insert.call_args[0][0]
        assert inserted["output_url"] == "https://assets.example.com/generations/user-1/run-1.png"

    def test_mirror_failure_keeps_provider_url(self):
        client = self._client([{"id": 1}])
        mirror = MagicMock()
        mirror.mirror = AsyncMock(side_effect=RuntimeError("r2 down"))
        store = SupabaseMediaStore(client=client, mirror=mirror)

        asyncio.run(store.save(make_job(), make_result()))
        inserted = client.table.return_value.insert.call_args[0][0]
        assert inserted["output_url"] == "https://out.example.com/r.png"


class TestPersistenceHook:
    def test_saves_completed_results(self):
        store = MemoryMediaStore()
        hook = ResultPersistenceHook(store)
        assert asyncio.run(hook.on_completed(make_job(), make_result())) is True
        assert len(store.rows) == 1
        assert metrics.get_counter("persist.ok") == 1

    def test_ignores_non_completed(self):
        store = MemoryMediaStore()
        hook = ResultPersistenceHook(store)
        assert asyncio.run(hook.on_completed(make_job(), make_result(GenerationStatus.FAILED))) is False
        assert store.rows == []

    def test_failure_never_raises(self):
        hook = ResultPersistenceHook(BrokenStore())
        assert asyncio.run(hook.on_completed(make_job(), make_result())) is False
        assert metrics.get_counter("persist.failed") == 1
        errors = metrics.get_snapshot()["recent_errors"]
        assert errors[-1]["stage"] == "persist"
        assert errors[-1]["run_id"] == "run-1"

    def test_listeners_notified_even_on_failure(self):
        seen = []
        hook = ResultPersistenceHook(BrokenStore(), listeners=[lambda job, result, row: seen.append(row)])
        asyncio.run(hook.on_completed(make_job(), make_result()))
        assert seen == [None]


class TestGenerationService:
    def _service(self, new, legacy, store, sleep=None):
        factory = make_factory(new, legacy)
        return GenerationService(
            GenerationRouter(factory, make_flags(True)),
            CompletionPoller(factory, PollSettings(), sleep=sleep or RecordingSleep()),
            ResultPersistenceHook(store),
        )

    def test_sync_completion_is_persisted(self, new_adapter, legacy_adapter, media_store):
        service = self._service(new_adapter, legacy_adapter, media_store)
        result = asyncio.run(service.run(make_job()))
        assert result.status == GenerationStatus.COMPLETED
        assert result.persisted is True
        assert media_store.rows[0]["run_id"] == "run-1"
        assert service.get_result("run-1") == result

    def test_pending_is_polled_then_persisted(self, legacy_adapter, media_store):
        new = FakeAdapter(
            "fake-new",
            submit_responses=[pending("m::r1")],
            status_responses=[processing(), completed("https://out.example.com/polled.png")],
        )
        service = self._service(new, legacy_adapter, media_store)

        result = asyncio.run(service.run(make_job()))
        assert result.status == GenerationStatus.COMPLETED
        assert result.output_url == "https://out.example.com/polled.png"
        assert result.persisted is True
        assert result.attempts == 3  # one submit + two status queries
        assert media_store.rows[0]["output_url"] == "https://out.example.com/polled.png"

    def test_persistence_failure_keeps_result(self, new_adapter, legacy_adapter):
        service = self._service(new_adapter, legacy_adapter, BrokenStore())
        result = asyncio.run(service.run(make_job()))
        assert result.status == GenerationStatus.COMPLETED
        assert result.output_url == "https://out.example.com/result.png"
        assert result.persisted is False

    def test_failed_result_is_not_persisted(self, new_adapter, legacy_adapter, media_store):
        new_adapter.submit_responses = [failed()]
        legacy_adapter.submit_responses = [failed("legacy down")]
        service = self._service(new_adapter, legacy_adapter, media_store)

        result = asyncio.run(service.run(make_job()))
        assert result.status == GenerationStatus.FAILED
        assert media_store.rows == []
