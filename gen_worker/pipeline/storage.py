"""
Result persistence.

Completed generations are recorded as rows in the Supabase `media_assets`
table. When MIRROR_OUTPUTS_TO_R2 is set, the provider's output is first
copied into our R2 bucket under:
  generations/{user_id}/{run_id}.png
so the stored URL does not depend on the provider's CDN retention.

ResultPersistenceHook wraps a store and is best-effort: it logs and counts
failures but never raises into the poller or the kick runner.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Optional

import httpx

from .. import metrics
from ..config import (
    MEDIA_TABLE,
    R2_ACCESS_KEY_ID,
    R2_ACCOUNT_ID,
    R2_BUCKET_NAME,
    R2_PUBLIC_URL,
    R2_SECRET_ACCESS_KEY,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_URL,
)
from .errors import PersistenceError
from .models import GenerationJob, GenerationResult, GenerationStatus

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def output_key(job: GenerationJob) -> str:
    """R2 key for a generation output."""
    return f"generations/{job.user_id or 'anonymous'}/{job.run_id}.png"


def media_row(job: GenerationJob, result: GenerationResult, output_url: Optional[str] = None) -> dict:
    return {
        "run_id": job.run_id,
        "user_id": job.user_id,
        "preset_id": job.preset_id,
        "mode": job.mode.value,
        "group": job.group,
        "option_key": job.option_key,
        "parent_id": job.parent_id,
        "source_url": job.source_url,
        "output_url": output_url or result.output_url,
        "provider": result.provider,
        "created_at": _now_iso(),
    }


# ── R2 mirror ────────────────────────────────────────────────────────────────

class R2Mirror:
    """Copies a provider output URL into our own bucket."""

    def __init__(self, s3_client=None, bucket: str = R2_BUCKET_NAME, public_url: str = R2_PUBLIC_URL):
        self._s3 = s3_client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/")

    def _client(self):
        if self._s3 is None:
            import boto3
            from botocore.config import Config as BotoConfig

            self._s3 = boto3.client(
                "s3",
                endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
                aws_access_key_id=R2_ACCESS_KEY_ID,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    async def download(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=30) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content

    async def mirror(self, job: GenerationJob, url: str) -> str:
        data = await self.download(url)
        key = output_key(job)
        self._client().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType="image/png",
        )
        public_url = f"{self.public_url}/{key}"
        logger.info(f"[{job.run_id}] Mirrored output to R2: {public_url}")
        return public_url


# ── Media stores ─────────────────────────────────────────────────────────────

class MediaStore:
    async def save(self, job: GenerationJob, result: GenerationResult) -> dict:
        raise NotImplementedError


class MemoryMediaStore(MediaStore):
    """Keeps rows in-process. Used when Supabase is not configured."""

    def __init__(self):
        self._lock = threading.Lock()
        self.rows: List[dict] = []

    async def save(self, job, result):
        row = media_row(job, result)
        with self._lock:
            self.rows.append(row)
        return row


class SupabaseMediaStore(MediaStore):
    def __init__(self, client=None, table: str = MEDIA_TABLE, mirror: Optional[R2Mirror] = None):
        self._client = client
        self.table = table
        self.mirror = mirror

    def _get_client(self):
        """Lazy-init Supabase client using the service role key."""
        if self._client is None:
            from supabase import create_client

            if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
                raise PersistenceError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            self._client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
        return self._client

    async def save(self, job, result):
        output_url = result.output_url
        if self.mirror is not None and output_url:
            try:
                output_url = await self.mirror.mirror(job, output_url)
            except Exception as e:
                # The provider URL is still valid, store that instead
                logger.warning(f"[{job.run_id}] R2 mirror failed, keeping provider URL: {e}")

        row = media_row(job, result, output_url)
        try:
            resp = self._get_client().table(self.table).insert(row).execute()
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"insert into {self.table} failed: {e}") from e

        data = getattr(resp, "data", None)
        if not data:
            raise PersistenceError(f"insert into {self.table} returned no row")
        return data[0]


# ── Hook ─────────────────────────────────────────────────────────────────────

class ResultPersistenceHook:
    """
    Best-effort save of a completed result, then notify listeners.

    Returns True when the row was written. A failure is logged, counted and
    recorded in the recent-error log; the caller keeps its result either way.
    """

    def __init__(self, store: MediaStore, listeners: Optional[List[Callable]] = None):
        self.store = store
        self.listeners = list(listeners or [])

    def add_listener(self, listener: Callable[[GenerationJob, GenerationResult, Optional[dict]], None]):
        self.listeners.append(listener)

    async def on_completed(self, job: GenerationJob, result: GenerationResult) -> bool:
        if result.status != GenerationStatus.COMPLETED:
            return False

        row = None
        try:
            row = await self.store.save(job, result)
            metrics.inc_counter("persist.ok")
            logger.info(f"[{job.run_id}] Saved output for {job.preset_id}")
        except Exception as e:
            metrics.inc_counter("persist.failed")
            metrics.record_error("persist", type(e).__name__, str(e), job.run_id)
            logger.error(f"[{job.run_id}] Persisting output failed (result still delivered): {e}", exc_info=True)

        for listener in self.listeners:
            try:
                listener(job, result, row)
            except Exception as e:
                logger.warning(f"[{job.run_id}] Completion listener failed: {e}")

        return row is not None
