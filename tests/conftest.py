"""Shared fakes and fixtures for the generation worker tests"""

import asyncio
import random
from datetime import datetime, timezone

import pytest

from gen_worker import metrics
from gen_worker.config import PollSettings, QuotaSettings
from gen_worker.flags import FeatureFlags
from gen_worker.pipeline.errors import ProviderError
from gen_worker.pipeline.generation_router import GenerationRouter
from gen_worker.pipeline.models import Backend, Capability, GenerationStatus, ProviderResponse
from gen_worker.pipeline.orchestrator import GenerationService, SessionRegistry
from gen_worker.pipeline.poller import CompletionPoller
from gen_worker.pipeline.resolver import PresetResolver
from gen_worker.pipeline.storage import MemoryMediaStore, ResultPersistenceHook
from gen_worker.presets import load_presets
from gen_worker.provider_factory import ProviderFactory
from gen_worker.quota import QuotaEngine
from gen_worker.quota_store import MemoryQuotaStore

# Wednesday, mid-day UTC: far from the daily and weekly boundaries
START = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc).timestamp()

SECURE_URL = "https://cdn.example.com/x.jpg"


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeAdapter:
    """
    Scriptable provider adapter.

    submit_responses / status_responses are consumed in order; an Exception
    instance in the list is raised instead of returned. The last entry
    repeats once the list runs out.
    """

    def __init__(self, name, submit_responses=None, status_responses=None):
        self.name = name
        self.submit_responses = list(submit_responses or [])
        self.status_responses = list(status_responses or [])
        self.submitted = []
        self.status_calls = 0

    @staticmethod
    def _next(items):
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def submit(self, job):
        self.submitted.append(job)
        return self._next(self.submit_responses)

    async def get_status(self, handle):
        self.status_calls += 1
        return self._next(self.status_responses)


def completed(url="https://out.example.com/result.png"):
    return ProviderResponse(status=GenerationStatus.COMPLETED, output_url=url)


def pending(task_id="task-1"):
    return ProviderResponse(status=GenerationStatus.PENDING, task_id=task_id)


def processing(task_id="task-1"):
    return ProviderResponse(status=GenerationStatus.PROCESSING, task_id=task_id)


def failed(error="boom"):
    return ProviderResponse(status=GenerationStatus.FAILED, error=error)


def provider_error(name="fake", message="503 upstream"):
    return ProviderError(name, message, status_code=503)


def make_factory(new, legacy):
    table = {}
    for cap in Capability:
        table[(cap, Backend.NEW)] = new
        table[(cap, Backend.LEGACY)] = legacy
    return ProviderFactory(table)


def make_flags(new_backend: bool):
    return FeatureFlags(defaults={cap.value: new_backend for cap in Capability})


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quota_settings():
    return QuotaSettings(
        generation_cost=2,
        cooldown_seconds=30,
        daily_limit=30,
        weekly_limit=150,
        global_capacity=1000,
        reset_hour=0,
        timezone="UTC",
        max_users_per_device=3,
        max_requests_per_ip=5,
        ip_window_seconds=3600,
    )


@pytest.fixture
def store(clock):
    return MemoryQuotaStore(clock=clock)


@pytest.fixture
def quota(store, quota_settings, clock):
    return QuotaEngine(store, quota_settings, clock=clock)


@pytest.fixture
def resolver():
    return PresetResolver(load_presets(), rng=random.Random(7))


@pytest.fixture
def new_adapter():
    return FakeAdapter("fake-new", submit_responses=[completed()])


@pytest.fixture
def legacy_adapter():
    return FakeAdapter("fake-legacy", submit_responses=[completed("https://out.example.com/legacy.png")])


@pytest.fixture
def media_store():
    return MemoryMediaStore()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def service(new_adapter, legacy_adapter, media_store, sleeper):
    factory = make_factory(new_adapter, legacy_adapter)
    return GenerationService(
        GenerationRouter(factory, make_flags(True)),
        CompletionPoller(factory, PollSettings(), sleep=sleeper),
        ResultPersistenceHook(media_store),
    )


@pytest.fixture
def registry(resolver, quota, service):
    return SessionRegistry(resolver, quota, service)
