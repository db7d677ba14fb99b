"""
fal.ai queue adapter (the "new" backend).

fal.ai queue protocol:
  POST /{model}                               → { request_id, ... }
  GET  /{model}/requests/{request_id}/status  → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /{model}/requests/{request_id}         → result payload

Submissions come back pending; the completion poller drives them. The
provider task id carries the model path so status calls can be routed
without extra state: "{model}::{request_id}".
"""

import logging

from .adapters import ProviderAdapter
from .config import FAL_API_BASE, FAL_API_KEY, FAL_DEFAULT_MODEL
from .pipeline.errors import ProviderError
from .pipeline.models import GenerationJob, GenerationStatus, ProviderHandle, ProviderResponse

logger = logging.getLogger(__name__)

TASK_SEPARATOR = "::"

_STATUS_MAP = {
    "IN_QUEUE": GenerationStatus.PENDING,
    "IN_PROGRESS": GenerationStatus.PROCESSING,
    "COMPLETED": GenerationStatus.COMPLETED,
    "FAILED": GenerationStatus.FAILED,
    "ERROR": GenerationStatus.FAILED,
}


def _first_image_url(payload: dict):
    images = payload.get("images") or []
    if images and isinstance(images[0], dict):
        return images[0].get("url")
    image = payload.get("image")
    if isinstance(image, dict):
        return image.get("url")
    return None


class FalAdapter(ProviderAdapter):
    name = "fal"

    def __init__(self, api_key: str = FAL_API_KEY, base_url: str = FAL_API_BASE, default_model: str = FAL_DEFAULT_MODEL, client=None):
        super().__init__(api_key, base_url, client)
        self.default_model = default_model

    def _headers(self) -> dict:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, job: GenerationJob) -> ProviderResponse:
        body = self.build_input(job)
        model = body.pop("model", None) or self.default_model
        body.setdefault("num_images", 1)

        logger.info(f"[{job.run_id}] fal submit to {model} (source={'yes' if job.source_url else 'no'})")
        data = await self._request_with_backoff("POST", f"{self.base_url}/{model}", json=body)

        request_id = data.get("request_id")
        if not request_id:
            # Some endpoints answer synchronously with the result itself
            url = _first_image_url(data)
            if url:
                return ProviderResponse(status=GenerationStatus.COMPLETED, output_url=url, raw=data)
            raise ProviderError(self.name, f"no request_id in response: {str(data)[:200]}")

        logger.info(f"[{job.run_id}] fal queued: request_id={request_id}")
        return ProviderResponse(
            status=GenerationStatus.PENDING,
            task_id=f"{model}{TASK_SEPARATOR}{request_id}",
            raw=data,
        )

    async def get_status(self, handle: ProviderHandle) -> ProviderResponse:
        model, _, request_id = handle.task_id.partition(TASK_SEPARATOR)
        if not request_id:
            raise ProviderError(self.name, f"malformed task id: {handle.task_id}")

        base = f"{self.base_url}/{model}/requests/{request_id}"
        data = self._json_or_raise(await self._request("GET", f"{base}/status"))
        raw_status = str(data.get("status", "")).upper()
        status = _STATUS_MAP.get(raw_status, GenerationStatus.PROCESSING)

        if status == GenerationStatus.FAILED:
            return ProviderResponse(status=status, task_id=handle.task_id, error=str(data.get("error") or "Unknown error"), raw=data)

        if status == GenerationStatus.COMPLETED:
            result = self._json_or_raise(await self._request("GET", base))
            url = _first_image_url(result)
            if not url:
                return ProviderResponse(
                    status=GenerationStatus.FAILED,
                    task_id=handle.task_id,
                    error="Completed but no image URL in result",
                    raw=result,
                )
            return ProviderResponse(status=status, task_id=handle.task_id, output_url=url, raw=result)

        return ProviderResponse(status=status, task_id=handle.task_id, raw=data)
