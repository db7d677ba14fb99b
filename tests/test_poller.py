"""Tests for the completion poller"""

import time
import asyncio

import pytest

from gen_worker import metrics
from gen_worker.config import PollSettings
from gen_worker.pipeline.errors import ProviderError
from gen_worker.pipeline.models import Backend, Capability, GenerationStatus, ProviderHandle
from gen_worker.pipeline.poller import CompletionPoller

from conftest import FakeAdapter, RecordingSleep, completed, failed, make_factory, processing

HANDLE = ProviderHandle(provider="fake-new", task_id="model::req-1", capability=Capability.PRESET, backend=Backend.NEW)


def make_poller(status_responses, settings=None, sleep=None):
    new = FakeAdapter("fake-new", status_responses=status_responses)
    legacy = FakeAdapter("fake-legacy")
    poller = CompletionPoller(make_factory(new, legacy), settings or PollSettings(), sleep=sleep or RecordingSleep())
    return poller, new


class TestSchedule:
    def test_completes_on_third_attempt(self):
        sleep = RecordingSleep()
        poller, adapter = make_poller([processing(), processing(), completed("https://out.example.com/3.png")], sleep=sleep)

        result = asyncio.run(poller.poll_for_completion(HANDLE, max_attempts=10, run_id="run-1"))
        assert result.status == GenerationStatus.COMPLETED
        assert result.output_url == "https://out.example.com/3.png"
        assert adapter.status_calls == 3
        assert sleep.delays == [2.0, 3.0]
        assert result.attempts == 3
        assert metrics.get_counter("poll.completed") == 1

    def test_backoff_capped_at_max_delay(self):
        poller, _ = make_poller([processing()])
        assert poller.delays(8) == [2.0, 3.0, 4.5, 6.75, 10.0, 10.0, 10.0]

    def test_failed_stops_immediately(self):
        sleep = RecordingSleep()
        poller, adapter = make_poller([processing(), failed("content policy")], sleep=sleep)

        result = asyncio.run(poller.poll_for_completion(HANDLE, max_attempts=10))
        assert result.status == GenerationStatus.FAILED
        assert result.error == "content policy"
        assert adapter.status_calls == 2
        assert sleep.delays == [2.0]

    def test_completed_without_output_is_failed(self):
        poller, _ = make_poller([completed(url=None)])
        result = asyncio.run(poller.poll_for_completion(HANDLE))
        assert result.status == GenerationStatus.FAILED


class TestTransientErrors:
    def test_status_error_counts_as_attempt(self):
        sleep = RecordingSleep()
        poller, adapter = make_poller(
            [ProviderError("fake-new", "502"), processing(), completed()],
            sleep=sleep,
        )
        result = asyncio.run(poller.poll_for_completion(HANDLE, max_attempts=5))
        assert result.status == GenerationStatus.COMPLETED
        assert adapter.status_calls == 3
        assert sleep.delays == [2.0, 3.0]

    def test_errors_until_exhausted_is_timeout_not_failed(self):
        poller, adapter = make_poller([ProviderError("fake-new", "502")])
        result = asyncio.run(poller.poll_for_completion(HANDLE, max_attempts=3))
        assert result.status == GenerationStatus.TIMEOUT
        assert adapter.status_calls == 3
        assert metrics.get_counter("poll.exhausted") == 1


class TestTimeouts:
    def test_exhausted_attempts(self):
        sleep = RecordingSleep()
        poller, adapter = make_poller([processing()], sleep=sleep)

        result = asyncio.run(poller.poll_for_completion(HANDLE, max_attempts=4))
        assert result.status == GenerationStatus.TIMEOUT
        assert "4 attempts" in result.error
        assert adapter.status_calls == 4
        assert len(sleep.delays) == 3

    def test_zero_attempts_is_respected(self):
        poller, adapter = make_poller([processing()])
        result = asyncio.run(poller.poll_for_completion(HANDLE, max_attempts=0))
        assert result.status == GenerationStatus.TIMEOUT
        assert "0 attempts" in result.error
        assert adapter.status_calls == 0

    def test_wall_clock_timeout_is_distinct_from_failed(self):
        settings = PollSettings(initial_delay=0.01, multiplier=1.0, max_delay=0.01, timeout_seconds=0.1, max_attempts=1000)
        poller, adapter = make_poller([processing()], settings=settings, sleep=asyncio.sleep)

        result = asyncio.run(poller.poll_for_completion(HANDLE))
        assert result.status == GenerationStatus.TIMEOUT
        assert result.status != GenerationStatus.FAILED
        assert result.is_terminal is True
        assert 0 < adapter.status_calls < 1000
        assert metrics.get_counter("poll.timeout") == 1
        assert metrics.get_counter("poll.failed") == 0

    def test_timeout_keeps_handle(self):
        settings = PollSettings(initial_delay=0.01, multiplier=1.0, max_delay=0.01, timeout_seconds=0.05, max_attempts=1000)
        poller, _ = make_poller([processing()], settings=settings, sleep=asyncio.sleep)
        result = asyncio.run(poller.poll_for_completion(HANDLE))
        assert result.handle == HANDLE


class TestCancellation:
    def test_cancel_before_start(self):
        poller, adapter = make_poller([processing()])

        async def run():
            cancel = asyncio.Event()
            cancel.set()
            return await poller.poll_for_completion(HANDLE, cancel=cancel)

        result = asyncio.run(run())
        assert result.status == GenerationStatus.FAILED
        assert result.error == "cancelled"
        assert adapter.status_calls == 0

    def test_cancel_mid_poll(self):
        cancel_holder = {}

        class CancellingSleep(RecordingSleep):
            async def __call__(self, delay):
                await super().__call__(delay)
                if len(self.delays) == 2:
                    cancel_holder["event"].set()

        poller, adapter = make_poller([processing()], sleep=CancellingSleep())

        async def run():
            cancel_holder["event"] = asyncio.Event()
            return await poller.poll_for_completion(HANDLE, max_attempts=10, cancel=cancel_holder["event"])

        result = asyncio.run(run())
        assert result.error == "cancelled"
        assert adapter.status_calls == 2
        assert metrics.get_counter("poll.cancelled") == 1

    def test_cancel_wakes_backoff_sleep(self):
        settings = PollSettings(initial_delay=5.0, multiplier=1.0, max_delay=5.0, timeout_seconds=30.0, max_attempts=3)
        poller, adapter = make_poller([processing()], settings=settings, sleep=asyncio.sleep)

        async def run():
            cancel = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, cancel.set)
            start = time.monotonic()
            result = await poller.poll_for_completion(HANDLE, cancel=cancel)
            return result, time.monotonic() - start

        result, elapsed = asyncio.run(run())
        assert result.status == GenerationStatus.FAILED
        assert result.error == "cancelled"
        assert adapter.status_calls == 1
        assert elapsed < 2.0
