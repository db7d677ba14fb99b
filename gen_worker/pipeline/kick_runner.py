"""
Kick Runner: single-flight dispatcher for a session's pending intent.

    Idle → Checking → (source ready?) → Dispatching → Idle

run_if_ready() is safe to call as often as you like. A call made while a
run is in flight returns BUSY without doing anything; whoever makes the
source ready (an upload completing) is expected to call it again.

The pending intent is cleared after every attempt except one: when the
intent needs a source and the source is not a durable https URL, the
intent stays queued and the caller gets "Pick a photo/video first".
"""

import uuid
import logging
from typing import Optional

from .. import metrics
from ..option_maps import RESTORE_GROUP, TIME_MACHINE_GROUP
from ..presets import clamp_strength
from ..quota import QuotaEngine
from .errors import ConfigurationError, QuotaStorageError, SourceNotReadyError
from .intent_queue import IntentQueue
from .models import (
    INTENT_CAPABILITY,
    GenerationJob,
    GenerationMode,
    GenerationStatus,
    KickOutcome,
    KickStatus,
    PresetDefinition,
)
from .resolver import PresetResolver

logger = logging.getLogger(__name__)

STORY_GROUP = "story"


class _Step:
    """One resolved unit: the preset plus where it came from."""

    __slots__ = ("preset", "group", "option_key")

    def __init__(self, preset: PresetDefinition, group: Optional[str] = None, option_key: Optional[str] = None):
        self.preset = preset
        self.group = group
        self.option_key = option_key


class KickRunner:
    def __init__(
        self,
        user_id: str,
        queue: IntentQueue,
        resolver: PresetResolver,
        quota: QuotaEngine,
        service,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ):
        self.user_id = user_id
        self.queue = queue
        self.resolver = resolver
        self.quota = quota
        self.service = service
        self.device_id = device_id
        self.ip_address = ip_address

    async def run_if_ready(self) -> KickOutcome:
        if self.queue.pending_intent is None:
            return KickOutcome(status=KickStatus.IDLE)

        if not self.queue.try_acquire_busy():
            logger.debug(f"Kick for user {self.user_id} ignored, a run is already in flight")
            return KickOutcome(status=KickStatus.BUSY)

        intent = None
        try:
            intent = self.queue.pending_intent
            if intent is None:
                return KickOutcome(status=KickStatus.IDLE)
            outcome = await self._run(intent)
        except Exception as e:
            logger.error(f"Kick failed for user {self.user_id}: {e}", exc_info=True)
            metrics.record_error("kick", type(e).__name__, str(e))
            if intent is not None:
                self.queue.clear_intent(expected=intent)
            outcome = KickOutcome(status=KickStatus.ERROR, message="Generation failed")
        finally:
            self.queue.release_busy()

        metrics.inc_counter(f"kick.{outcome.status.value}")
        return outcome

    async def _run(self, intent) -> KickOutcome:
        try:
            steps = self._resolve(intent)
        except ConfigurationError as e:
            logger.error(f"Configuration error for {intent.kind} intent: {e}")
            metrics.record_error("resolve", type(e).__name__, str(e))
            self.queue.clear_intent(expected=intent)
            return KickOutcome(status=KickStatus.UNAVAILABLE, message=ConfigurationError.user_message)

        source_url = self.queue.source_url
        if any(step.preset.requires_source for step in steps) and not self.queue.source_ready:
            err = SourceNotReadyError(source_url)
            logger.info(f"User {self.user_id} has a {intent.kind} intent on hold, keeping it queued: {err}")
            return KickOutcome(status=KickStatus.NEEDS_SOURCE, message=err.user_message)

        unit_cost = self.quota.settings.generation_cost
        decision = self.quota.can_generate(self.user_id, unit_cost * len(steps))
        if not decision.allowed:
            metrics.inc_counter("quota.denied")
            self.queue.clear_intent(expected=intent)
            return KickOutcome(status=KickStatus.QUOTA_DENIED, message=decision.reason, quota=decision)

        jobs = self._build_jobs(intent, steps, source_url)
        results = []
        try:
            for job in jobs:
                result = await self.service.run(job)
                results.append(result)
                if result.status == GenerationStatus.COMPLETED:
                    self._charge(unit_cost, job.run_id)
        finally:
            self.queue.clear_intent(expected=intent)

        failed = [r for r in results if r.status != GenerationStatus.COMPLETED]
        message = None
        if failed:
            message = failed[0].error or "Generation failed"
        return KickOutcome(status=KickStatus.DISPATCHED, message=message, results=results, quota=decision)

    def _charge(self, cost: int, run_id: str):
        """Bill one completed job. The output already exists, so a storage error is logged, not raised."""
        try:
            self.quota.record_generation(self.user_id, cost, device_id=self.device_id, ip_address=self.ip_address)
        except QuotaStorageError as e:
            logger.error(f"[{run_id}] Could not charge user {self.user_id} for a completed generation: {e}")
            metrics.record_error("quota", type(e).__name__, str(e), run_id)

    # ── Resolution ───────────────────────────────────────────────────────

    def _resolve(self, intent) -> list:
        if intent.kind == "preset":
            return [_Step(self.resolver.resolve(intent.preset_id))]
        if intent.kind == "time_machine":
            return [_Step(self.resolver.resolve_option(TIME_MACHINE_GROUP, intent.option_key), TIME_MACHINE_GROUP, intent.option_key)]
        if intent.kind == "restore":
            return [_Step(self.resolver.resolve_option(RESTORE_GROUP, intent.option_key), RESTORE_GROUP, intent.option_key)]
        if intent.kind == "story":
            return [
                _Step(preset, STORY_GROUP, beat.label)
                for beat, preset in self.resolver.resolve_story(intent.theme)
            ]
        raise ConfigurationError(f"Unsupported intent kind: {intent.kind}")

    def _build_jobs(self, intent, steps: list, source_url: Optional[str]) -> list[GenerationJob]:
        capability = INTENT_CAPABILITY[intent.kind]
        parent_id = str(uuid.uuid4()) if intent.kind == "story" else None

        jobs = []
        for step in steps:
            preset = step.preset
            params = {"strength": clamp_strength(preset)}
            if preset.negative_prompt:
                params["negative_prompt"] = preset.negative_prompt
            if preset.provider_model_hint:
                params["model"] = preset.provider_model_hint

            jobs.append(GenerationJob(
                run_id=str(uuid.uuid4()),
                user_id=self.user_id,
                capability=capability,
                mode=GenerationMode.STORY if parent_id else preset.mode,
                preset_id=preset.id,
                prompt=preset.prompt,
                params=params,
                source_url=source_url if preset.requires_source else None,
                parent_id=parent_id,
                group=step.group,
                option_key=step.option_key,
            ))

        logger.info(
            f"Built {len(jobs)} job(s) for user {self.user_id}: {intent.kind} "
            f"→ {[j.preset_id for j in jobs]}"
        )
        return jobs
