"""Tests for the generation pipeline router"""

import asyncio

import pytest

from gen_worker import metrics
from gen_worker.pipeline.generation_router import GenerationRouter
from gen_worker.pipeline.models import (
    Backend,
    Capability,
    GenerationJob,
    GenerationMode,
    GenerationStatus,
    ProviderResponse,
)

from conftest import SECURE_URL, FakeAdapter, completed, failed, make_factory, make_flags, pending, provider_error


def make_job(capability=Capability.PRESET):
    return GenerationJob(
        run_id="run-1",
        user_id="user-1",
        capability=capability,
        mode=GenerationMode.I2I,
        preset_id="vivid_pop",
        prompt="Boost saturation",
        params={"strength": 0.18},
        source_url=SECURE_URL,
    )


def dispatch(router, job=None):
    return asyncio.run(router.dispatch(job or make_job()))


class TestFlagRouting:
    def test_flag_on_uses_new_backend(self, new_adapter, legacy_adapter):
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(True))
        result = dispatch(router)
        assert result.status == GenerationStatus.COMPLETED
        assert result.backend == Backend.NEW
        assert result.used_fallback is False
        assert len(new_adapter.submitted) == 1
        assert legacy_adapter.submitted == []

    def test_flag_off_uses_legacy(self, new_adapter, legacy_adapter):
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(False))
        result = dispatch(router)
        assert result.backend == Backend.LEGACY
        assert result.output_url == "https://out.example.com/legacy.png"
        assert new_adapter.submitted == []

    def test_flags_are_per_capability(self, new_adapter, legacy_adapter):
        flags = make_flags(False)
        flags.set(Capability.STORY, True)
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), flags)

        assert dispatch(router, make_job(Capability.STORY)).backend == Backend.NEW
        assert dispatch(router, make_job(Capability.RESTORE)).backend == Backend.LEGACY


class TestFallback:
    def test_new_backend_exception_calls_legacy_exactly_once(self, new_adapter, legacy_adapter):
        new_adapter.submit_responses = [provider_error()]
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(True))

        job = make_job()
        result = dispatch(router, job)
        assert len(legacy_adapter.submitted) == 1
        assert legacy_adapter.submitted[0] is job
        assert result.status == GenerationStatus.COMPLETED
        assert result.used_fallback is True
        assert result.backend == Backend.LEGACY
        assert metrics.get_counter("dispatch.fallback") == 1

    def test_unexpected_exception_also_falls_back(self, new_adapter, legacy_adapter):
        new_adapter.submit_responses = [RuntimeError("bad json")]
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(True))
        assert dispatch(router).used_fallback is True

    def test_new_backend_failed_status_falls_back(self, new_adapter, legacy_adapter):
        new_adapter.submit_responses = [failed("nsfw filter")]
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(True))
        result = dispatch(router)
        assert result.status == GenerationStatus.COMPLETED
        assert result.used_fallback is True

    def test_completed_without_url_falls_back(self, new_adapter, legacy_adapter):
        new_adapter.submit_responses = [ProviderResponse(status=GenerationStatus.COMPLETED)]
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(True))
        assert dispatch(router).used_fallback is True

    def test_legacy_failure_is_terminal(self, new_adapter, legacy_adapter):
        new_adapter.submit_responses = [provider_error()]
        legacy_adapter.submit_responses = [provider_error("fake-legacy", "quota exceeded")]
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(True))

        result = dispatch(router)
        assert result.status == GenerationStatus.FAILED
        assert "quota exceeded" in result.error
        assert result.used_fallback is True
        assert len(new_adapter.submitted) == 1
        assert len(legacy_adapter.submitted) == 1
        assert metrics.get_counter("dispatch.failed") == 1

    def test_legacy_only_failure_is_not_a_fallback(self, new_adapter, legacy_adapter):
        legacy_adapter.submit_responses = [failed("legacy down")]
        router = GenerationRouter(make_factory(new_adapter, legacy_adapter), make_flags(False))
        result = dispatch(router)
        assert result.status == GenerationStatus.FAILED
        assert result.error == "legacy down"
        assert result.used_fallback is False


class TestNormalization:
    def test_pending_carries_handle(self, legacy_adapter):
        new = FakeAdapter("fake-new", submit_responses=[pending("fal-ai/x::req-9")])
        router = GenerationRouter(make_factory(new, legacy_adapter), make_flags(True))

        result = dispatch(router, make_job(Capability.TIME_MACHINE))
        assert result.status == GenerationStatus.PENDING
        assert result.is_terminal is False
        assert result.handle.task_id == "fal-ai/x::req-9"
        assert result.handle.capability == Capability.TIME_MACHINE
        assert result.handle.backend == Backend.NEW
        assert result.handle.provider == "fake-new"

    def test_pending_without_task_id_falls_back(self, legacy_adapter):
        new = FakeAdapter("fake-new", submit_responses=[ProviderResponse(status=GenerationStatus.PENDING)])
        router = GenerationRouter(make_factory(new, legacy_adapter), make_flags(True))
        assert dispatch(router).used_fallback is True

    @pytest.mark.parametrize("response", [completed(), pending(), failed()])
    def test_result_shape_is_common(self, response, legacy_adapter):
        new = FakeAdapter("fake-new", submit_responses=[response])
        router = GenerationRouter(make_factory(new, legacy_adapter), make_flags(True))
        result = dispatch(router)
        assert result.run_id == "run-1"
        assert result.provider in ("fake-new", "fake-legacy")
        assert result.attempts == 1
