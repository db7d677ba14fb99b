"""
Completion Poller: drives a pending provider handle to a terminal result.

Schedule (defaults from PollSettings):
  query → sleep 2s → query → sleep 3s → query → sleep 4.5s ... capped at 10s
up to max_attempts queries, all inside a 30s wall-clock budget. Whichever
limit runs out first ends the poll as TIMEOUT, which is kept distinct from a
provider-reported FAILED: the remote job may still finish out-of-band.

A status query that raises counts as a spent attempt, not a failed job.
"""

import time
import asyncio
import logging
from typing import Optional

from .. import metrics
from ..config import PollSettings
from ..provider_factory import ProviderFactory
from .models import GenerationResult, GenerationStatus, ProviderHandle

logger = logging.getLogger(__name__)


class CompletionPoller:
    def __init__(self, factory: ProviderFactory, settings: Optional[PollSettings] = None, sleep=asyncio.sleep):
        self.factory = factory
        self.settings = settings or PollSettings()
        self._sleep = sleep

    def delays(self, max_attempts: int) -> list[float]:
        """The sleeps between `max_attempts` queries."""
        out, delay = [], self.settings.initial_delay
        for _ in range(max(max_attempts - 1, 0)):
            out.append(delay)
            delay = min(delay * self.settings.multiplier, self.settings.max_delay)
        return out

    async def poll_for_completion(
        self,
        handle: ProviderHandle,
        max_attempts: Optional[int] = None,
        cancel: Optional[asyncio.Event] = None,
        run_id: str = "",
    ) -> GenerationResult:
        if max_attempts is None:
            max_attempts = self.settings.max_attempts
        run_id = run_id or handle.task_id
        result = GenerationResult(
            run_id=run_id,
            status=GenerationStatus.PROCESSING,
            handle=handle,
            provider=handle.provider,
            backend=handle.backend,
        )
        progress = {"attempts": 0}
        start = time.time()

        try:
            final = await asyncio.wait_for(
                self._poll_loop(result, handle, max_attempts, cancel, progress),
                timeout=self.settings.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"[{run_id}] Poll timed out after {self.settings.timeout_seconds:.0f}s "
                f"({progress['attempts']} attempts), task {handle.task_id} may still finish remotely"
            )
            metrics.inc_counter("poll.timeout")
            final = result.transition(
                GenerationStatus.TIMEOUT,
                attempts=progress["attempts"],
                error=f"Timed out after {self.settings.timeout_seconds:.0f}s",
            )

        metrics.record_latency("poll", (time.time() - start) * 1000)
        return final

    async def _poll_loop(self, result, handle, max_attempts, cancel, progress) -> GenerationResult:
        adapter = self.factory.get_provider(handle.capability, handle.backend)
        run_id = result.run_id
        delay = self.settings.initial_delay

        for attempt in range(1, max_attempts + 1):
            if cancel is not None and cancel.is_set():
                return self._cancelled(result, progress)

            progress["attempts"] = attempt
            try:
                response = await adapter.get_status(handle)
            except Exception as e:
                logger.warning(f"[{run_id}] Status query {attempt}/{max_attempts} failed: {e}")
                response = None

            if response is not None:
                if response.status == GenerationStatus.COMPLETED:
                    if response.output_url:
                        logger.info(f"[{run_id}] Completed after {attempt} status queries")
                        metrics.inc_counter("poll.completed")
                        return result.transition(
                            GenerationStatus.COMPLETED,
                            output_url=response.output_url,
                            attempts=attempt,
                        )
                    logger.error(f"[{run_id}] {handle.provider} reported completion without output")
                    metrics.inc_counter("poll.failed")
                    return result.transition(
                        GenerationStatus.FAILED,
                        error="Completed without output",
                        attempts=attempt,
                    )

                if response.status == GenerationStatus.FAILED:
                    logger.error(f"[{run_id}] {handle.provider} reported failure: {response.error}")
                    metrics.inc_counter("poll.failed")
                    metrics.record_error("poll", "ProviderFailure", response.error or "", run_id)
                    return result.transition(
                        GenerationStatus.FAILED,
                        error=response.error or "Provider reported failure",
                        attempts=attempt,
                    )

            if attempt == max_attempts:
                break

            await self._wait(delay, cancel)
            delay = min(delay * self.settings.multiplier, self.settings.max_delay)

        if cancel is not None and cancel.is_set():
            return self._cancelled(result, progress)

        logger.warning(f"[{run_id}] Poll exhausted {max_attempts} attempts without a terminal status")
        metrics.inc_counter("poll.exhausted")
        return result.transition(
            GenerationStatus.TIMEOUT,
            error=f"No terminal status after {max_attempts} attempts",
            attempts=max_attempts,
        )

    async def _wait(self, delay: float, cancel: Optional[asyncio.Event]):
        """Sleep between attempts, waking early if the cancel event is set."""
        if cancel is None:
            await self._sleep(delay)
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()

    @staticmethod
    def _cancelled(result, progress) -> GenerationResult:
        logger.info(f"[{result.run_id}] Poll cancelled after {progress['attempts']} attempts")
        metrics.inc_counter("poll.cancelled")
        return result.transition(
            GenerationStatus.FAILED,
            error="cancelled",
            attempts=progress["attempts"],
        )
