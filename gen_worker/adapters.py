"""
Provider adapter base.

Every backend exposes the same two calls:
  submit(job)        → ProviderResponse (completed / pending / failed)
  get_status(handle) → ProviderResponse for a previously submitted task

Submissions retry 429 / 5xx with exponential backoff + jitter before giving
up with ProviderError. Status queries are NOT retried here: the completion
poller owns that schedule.
"""

import random
import asyncio
import logging
from typing import Optional

import httpx

from .config import PROVIDER_TIMEOUT_SECONDS
from .pipeline.errors import ProviderError
from .pipeline.models import GenerationJob, ProviderHandle, ProviderResponse

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0       # seconds, doubles each retry: 1, 2, 4
JITTER_MAX = 0.5
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class ProviderAdapter:
    name = "provider"

    def __init__(self, api_key: str, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = client

    def _headers(self) -> dict:
        raise NotImplementedError

    async def submit(self, job: GenerationJob) -> ProviderResponse:
        raise NotImplementedError

    async def get_status(self, handle: ProviderHandle) -> ProviderResponse:
        raise NotImplementedError

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, headers=self._headers(), **kwargs)
        async with httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_SECONDS) as client:
            return await client.request(method, url, headers=self._headers(), **kwargs)

    async def _request_with_backoff(self, method: str, url: str, **kwargs) -> dict:
        """
        Make an HTTP request, retrying retryable statuses and transport errors.

        Uses: BASE_DELAY * 2^attempt + random jitter, honouring Retry-After.
        """
        if not self.api_key:
            raise ProviderError(self.name, "API key not set")

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._request(method, url, **kwargs)
            except httpx.HTTPError as e:
                if attempt >= MAX_RETRIES:
                    raise ProviderError(self.name, f"request failed: {e}") from e
                delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"{self.name} request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e}, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < MAX_RETRIES:
                retry_after = response.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    delay = int(retry_after)
                else:
                    delay = BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"{self.name} {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1}, "
                    f"retrying in {delay:.1f}s (url={url})"
                )
                await asyncio.sleep(delay)
                continue

            return self._json_or_raise(response)

        raise ProviderError(self.name, f"request to {url} failed after {MAX_RETRIES + 1} attempts")

    def _json_or_raise(self, response: httpx.Response) -> dict:
        if response.status_code >= 400:
            raise ProviderError(self.name, response.text[:300], status_code=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"invalid JSON response: {response.text[:200]}") from e

    @staticmethod
    def build_input(job: GenerationJob) -> dict:
        """The provider-agnostic part of a request body."""
        body = {"prompt": job.prompt, **job.params}
        if job.source_url:
            body["image_url"] = job.source_url
        return body
