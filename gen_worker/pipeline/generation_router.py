"""
Generation Pipeline Router.

Per capability, a feature flag picks the "new" or "legacy" backend. When the
new backend raises or answers with a failure, the same job is sent to the
legacy backend once (one hop, no persistent flag flip). A legacy failure is
terminal and comes back as a FAILED result carrying the underlying error.

Whatever the adapter answered, the caller gets a GenerationResult:
  completed → output_url set
  pending / processing → handle set (the poller takes over)
  failed → error set
"""

import time
import logging
from typing import Optional

from .. import metrics
from ..flags import FeatureFlags
from ..provider_factory import ProviderFactory
from .errors import ProviderError
from .models import (
    Backend,
    GenerationJob,
    GenerationResult,
    GenerationStatus,
    ProviderHandle,
    ProviderResponse,
)

logger = logging.getLogger(__name__)


class GenerationRouter:
    def __init__(self, factory: ProviderFactory, flags: FeatureFlags):
        self.factory = factory
        self.flags = flags

    async def dispatch(self, job: GenerationJob) -> GenerationResult:
        fell_back = False
        if self.flags.use_new_backend(job.capability):
            result, error = await self._try_backend(job, Backend.NEW)
            if result is not None:
                return result

            logger.warning(f"[{job.run_id}] New backend failed for {job.capability.value} ({error}), falling back to legacy")
            metrics.inc_counter("dispatch.fallback")
            fell_back = True
            result, error = await self._try_backend(job, Backend.LEGACY, used_fallback=True)
        else:
            result, error = await self._try_backend(job, Backend.LEGACY)

        if result is not None:
            return result

        logger.error(f"[{job.run_id}] Legacy backend failed for {job.capability.value}: {error}")
        metrics.inc_counter("dispatch.failed")
        metrics.record_error("dispatch", "ProviderError", error or "", job.run_id)
        provider = self.factory.get_provider(job.capability, Backend.LEGACY).name
        return GenerationResult(
            run_id=job.run_id,
            status=GenerationStatus.PENDING,
            attempts=1,
        ).transition(
            GenerationStatus.FAILED,
            error=error,
            provider=provider,
            backend=Backend.LEGACY,
            used_fallback=fell_back,
        )

    async def _try_backend(self, job: GenerationJob, backend: Backend, used_fallback: bool = False):
        """
        One adapter call. Returns (result, None) on a usable answer, or
        (None, error message) when this backend failed.
        """
        adapter = self.factory.get_provider(job.capability, backend)
        metrics.inc_counter(f"dispatch.{backend.value}")
        start = time.time()
        try:
            response = await adapter.submit(job)
        except ProviderError as e:
            return None, str(e)
        except Exception as e:
            logger.error(f"[{job.run_id}] {adapter.name} raised unexpectedly: {e}", exc_info=True)
            return None, f"{adapter.name}: {e}"
        finally:
            metrics.record_latency(f"submit.{adapter.name}", (time.time() - start) * 1000)

        return self._normalize(job, adapter.name, backend, response, used_fallback)

    @staticmethod
    def _normalize(
        job: GenerationJob,
        provider: str,
        backend: Backend,
        response: ProviderResponse,
        used_fallback: bool,
    ):
        status = response.status
        base = GenerationResult(
            run_id=job.run_id,
            status=GenerationStatus.PENDING,
            provider=provider,
            backend=backend,
            used_fallback=used_fallback,
            attempts=1,
        )

        if status == GenerationStatus.COMPLETED:
            if not response.output_url:
                return None, f"{provider}: completed without an output URL"
            logger.info(f"[{job.run_id}] {provider} completed synchronously")
            return base.transition(GenerationStatus.COMPLETED, output_url=response.output_url), None

        if status in (GenerationStatus.PENDING, GenerationStatus.PROCESSING):
            if not response.task_id:
                return None, f"{provider}: {status.value} without a task id"
            handle = ProviderHandle(
                provider=provider,
                task_id=response.task_id,
                capability=job.capability,
                backend=backend,
            )
            logger.info(f"[{job.run_id}] {provider} accepted job, task={response.task_id}")
            return base.transition(status, handle=handle), None

        error: Optional[str] = response.error or f"{provider} returned {status.value}"
        return None, error
