"""
AIML API adapter (the "legacy" backend).

Synchronous image generation: one POST returns the output URL directly, so
results come back completed (or failed) and never need polling.
"""

import logging

from .adapters import ProviderAdapter
from .config import AIML_API_BASE, AIML_API_KEY, AIML_DEFAULT_MODEL
from .pipeline.errors import ProviderError
from .pipeline.models import GenerationJob, GenerationStatus, ProviderHandle, ProviderResponse

logger = logging.getLogger(__name__)


def _extract_url(result: dict):
    """AIML has answered with several shapes over time; accept all of them."""
    for key in ("images", "data"):
        items = result.get(key)
        if isinstance(items, list) and items and isinstance(items[0], dict) and items[0].get("url"):
            return items[0]["url"]
    return result.get("result_url") or result.get("output_url") or result.get("image_url")


class AimlAdapter(ProviderAdapter):
    name = "aiml"

    def __init__(self, api_key: str = AIML_API_KEY, base_url: str = AIML_API_BASE, default_model: str = AIML_DEFAULT_MODEL, client=None):
        super().__init__(api_key, base_url, client)
        self.default_model = default_model

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, job: GenerationJob) -> ProviderResponse:
        body = self.build_input(job)
        body["model"] = body.get("model") or self.default_model
        body.setdefault("num_images", 1)

        logger.info(f"[{job.run_id}] AIML request: model={body['model']}, mode={job.mode.value}")
        result = await self._request_with_backoff("POST", f"{self.base_url}/images/generations", json=body)

        url = _extract_url(result)
        if not url:
            error = result.get("error") or "No image URL returned from generation"
            logger.error(f"[{job.run_id}] AIML response without output: {str(result)[:300]}")
            return ProviderResponse(status=GenerationStatus.FAILED, error=str(error), raw=result)
        return ProviderResponse(status=GenerationStatus.COMPLETED, output_url=url, raw=result)

    async def get_status(self, handle: ProviderHandle) -> ProviderResponse:
        raise ProviderError(self.name, "synchronous backend has no status endpoint")
