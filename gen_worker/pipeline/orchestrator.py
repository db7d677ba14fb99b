"""
GenerationService + per-user sessions.

GenerationService.run(job) is the strictly sequential path for one run_id:
  router.dispatch → (pending) poller.poll_for_completion → persistence hook

A GenerationSession pairs one user's IntentQueue with its KickRunner and
the upload hooks that feed the source readiness gate. SessionRegistry hands
out sessions that all share the same quota engine, resolver and service.

Usage:
    service = GenerationService(router, poller, persistence)
    registry = SessionRegistry(resolver, quota, service)

    session = registry.get_or_create(user_id)
    await session.submit_intent(PresetIntent(preset_id="cinematic_glow"))  # → needs_source
    await session.complete_upload("https://cdn.example.com/x.jpg")        # → dispatched
"""

import time
import asyncio
import logging
import threading
from collections import OrderedDict
from typing import Optional

from ..quota import QuotaEngine
from .generation_router import GenerationRouter
from .intent_queue import IntentQueue
from .kick_runner import KickRunner
from .models import GenerationJob, GenerationResult, GenerationStatus, KickOutcome, KickStatus, SessionState
from .poller import CompletionPoller
from .resolver import PresetResolver
from .storage import ResultPersistenceHook

logger = logging.getLogger(__name__)

MAX_TRACKED_RESULTS = 500


class GenerationService:
    def __init__(self, router: GenerationRouter, poller: CompletionPoller, persistence: ResultPersistenceHook):
        self.router = router
        self.poller = poller
        self.persistence = persistence
        self._results: "OrderedDict[str, GenerationResult]" = OrderedDict()
        self._lock = threading.Lock()

    def get_result(self, run_id: str) -> Optional[GenerationResult]:
        with self._lock:
            return self._results.get(run_id)

    def _track(self, result: GenerationResult):
        with self._lock:
            self._results[result.run_id] = result
            self._results.move_to_end(result.run_id)
            while len(self._results) > MAX_TRACKED_RESULTS:
                self._results.popitem(last=False)

    async def run(self, job: GenerationJob, cancel: Optional[asyncio.Event] = None) -> GenerationResult:
        logger.info(f"[{job.run_id}] Dispatching {job.capability.value}/{job.preset_id} ({job.mode.value})")
        result = await self.router.dispatch(job)
        self._track(result)

        if not result.is_terminal:
            polled = await self.poller.poll_for_completion(result.handle, cancel=cancel, run_id=job.run_id)
            result = polled.model_copy(update={
                "used_fallback": result.used_fallback,
                "attempts": result.attempts + polled.attempts,
            })
            self._track(result)

        if result.status == GenerationStatus.COMPLETED:
            saved = await self.persistence.on_completed(job, result)
            result = result.model_copy(update={"persisted": saved})
            self._track(result)

        logger.info(
            f"[{job.run_id}] Finished: {result.status.value}"
            f"{' (fallback)' if result.used_fallback else ''}"
            f"{f' error={result.error}' if result.error else ''}"
        )
        return result


class GenerationSession:
    def __init__(
        self,
        user_id: str,
        resolver: PresetResolver,
        quota: QuotaEngine,
        service: GenerationService,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        clock=time.time,
    ):
        self.user_id = user_id
        self.queue = IntentQueue()
        self._clock = clock
        self.last_active = clock()
        self.runner = KickRunner(
            user_id, self.queue, resolver, quota, service,
            device_id=device_id, ip_address=ip_address,
        )
        self.last_outcome: Optional[KickOutcome] = None

    # ── Intents ──────────────────────────────────────────────────────────

    def touch(self):
        self.last_active = self._clock()

    def is_idle(self) -> bool:
        """Nothing queued, uploading or running."""
        snap = self.queue.snapshot()
        return snap.pending_intent is None and not snap.uploading and not snap.generating

    async def submit_intent(self, intent) -> KickOutcome:
        self.touch()
        self.queue.set_intent(intent)
        return await self.kick()

    def cancel_intent(self) -> bool:
        self.touch()
        return self.queue.clear_intent()

    async def kick(self) -> KickOutcome:
        self.touch()
        outcome = await self.runner.run_if_ready()
        self.touch()
        if outcome.status not in (KickStatus.BUSY, KickStatus.IDLE):
            self.last_outcome = outcome
        return outcome

    # ── Upload hooks ─────────────────────────────────────────────────────

    def begin_upload(self):
        self.touch()
        self.queue.set_uploading(True)

    async def complete_upload(self, url: Optional[str]) -> KickOutcome:
        """Store the durable URL and retry whatever was waiting on it."""
        self.touch()
        self.queue.set_source_url(url)
        self.queue.set_uploading(False)
        return await self.kick()

    def fail_upload(self):
        self.touch()
        self.queue.set_uploading(False)

    def clear_source(self):
        self.touch()
        self.queue.set_source_url(None)

    def state(self) -> SessionState:
        snap = self.queue.snapshot()
        return SessionState(
            user_id=self.user_id,
            source_url=snap.source_url,
            source_ready=snap.source_ready,
            pending_intent=snap.pending_intent,
            uploading=snap.uploading,
            generating=snap.generating,
            last_outcome=self.last_outcome,
        )


class SessionRegistry:
    def __init__(self, resolver: PresetResolver, quota: QuotaEngine, service: GenerationService, clock=time.time):
        self.resolver = resolver
        self._clock = clock
        self.quota = quota
        self.service = service
        self._sessions: dict[str, GenerationSession] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[GenerationSession]:
        with self._lock:
            return self._sessions.get(user_id)

    def get_or_create(self, user_id: str, device_id: Optional[str] = None, ip_address: Optional[str] = None) -> GenerationSession:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = GenerationSession(
                    user_id, self.resolver, self.quota, self.service,
                    device_id=device_id, ip_address=ip_address, clock=self._clock,
                )
                self._sessions[user_id] = session
                logger.info(f"Created session for user {user_id}")
            return session

    def remove(self, user_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(user_id, None) is not None

    def evict_idle(self, max_idle_seconds: float) -> int:
        """Drop idle sessions untouched for max_idle_seconds. Returns how many went."""
        cutoff = self._clock() - max_idle_seconds
        with self._lock:
            stale = [
                user_id for user_id, session in self._sessions.items()
                if session.last_active < cutoff and session.is_idle()
            ]
            for user_id in stale:
                del self._sessions[user_id]
        if stale:
            logger.info(f"Evicted {len(stale)} idle session(s)")
        return len(stale)

    def __len__(self):
        with self._lock:
            return len(self._sessions)
