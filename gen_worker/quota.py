"""
Quota & rate-limit engine.

Per user:
  1. Cooldown between admitted generations (fixed window, seconds)
  2. Daily and weekly usage ceilings, reset lazily on read at the
     configured boundary in the reference timezone
Globally:
  3. A pool of issuable work units; once spent, everyone is denied
Advisory:
  4. Device / IP fan-out heuristics

Over-quota is never an exception: every check returns a QuotaDecision.
Only storage failures raise (QuotaStorageError from the store).
"""

import time
import logging
import threading
import weakref
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from .config import QuotaSettings
from .pipeline.models import AbuseCheck, QuotaDecision, QuotaRecord
from .quota_store import QuotaStore

logger = logging.getLogger(__name__)


class _UserLock:
    """threading.Lock wrapper that can be weakly referenced."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc):
        self._lock.release()


class QuotaEngine:
    def __init__(self, store: QuotaStore, settings: Optional[QuotaSettings] = None, clock=time.time):
        self.store = store
        self.settings = settings or QuotaSettings()
        self._clock = clock
        self._tz = ZoneInfo(self.settings.timezone)
        self._capacity = self.settings.global_capacity
        self._locks_guard = threading.Lock()
        # entries vanish once no caller holds the lock
        self._user_locks: "weakref.WeakValueDictionary[str, _UserLock]" = weakref.WeakValueDictionary()

    # ── Locking ──────────────────────────────────────────────────────────

    def _lock_for(self, user_id: str) -> _UserLock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = self._user_locks[user_id] = _UserLock()
            return lock

    # ── Reset boundaries ─────────────────────────────────────────────────

    def _daily_boundary(self, now: float) -> float:
        local = datetime.fromtimestamp(now, self._tz)
        boundary = local.replace(hour=self.settings.reset_hour, minute=0, second=0, microsecond=0)
        if boundary > local:
            boundary -= timedelta(days=1)
        return boundary.timestamp()

    def _weekly_boundary(self, now: float) -> float:
        daily = datetime.fromtimestamp(self._daily_boundary(now), self._tz)
        return (daily - timedelta(days=daily.weekday())).timestamp()

    def _load(self, user_id: str, now: float) -> QuotaRecord:
        """Fetch (or create) the record and apply any reset that is due."""
        record = self.store.get_record(user_id)
        if record is None:
            tier = self.settings.default_tier
            record = QuotaRecord(
                user_id=user_id,
                tier=tier,
                daily_limit=self.settings.tier_limits[tier],
                weekly_limit=self.settings.weekly_limit,
                last_reset=now,
                last_weekly_reset=now,
            )
            self.store.save_record(record)
            return record

        changed = False
        if record.last_reset < self._daily_boundary(now):
            record.daily_usage = 0
            record.last_reset = now
            changed = True
        if record.last_weekly_reset < self._weekly_boundary(now):
            record.weekly_usage = 0
            record.last_weekly_reset = now
            changed = True
        if changed:
            logger.info(f"Quota reset for user {user_id} (daily={record.daily_usage}, weekly={record.weekly_usage})")
            self.store.save_record(record)
        return record

    def _cooldown_remaining(self, user_id: str, now: float) -> int:
        last = self.store.get_last_generation(user_id)
        if last is None:
            return 0
        left = self.settings.cooldown_seconds - (now - last)
        return max(0, int(left + 0.999))

    # ── Public API ───────────────────────────────────────────────────────

    def can_generate(self, user_id: str, cost: Optional[int] = None) -> QuotaDecision:
        """
        Admission check. An allowed decision stamps the cooldown, so a
        second call inside the window is denied.
        """
        cost = self.settings.generation_cost if cost is None else cost
        with self._lock_for(user_id):
            now = self._clock()
            record = self._load(user_id, now)
            remaining = record.daily_limit - record.daily_usage

            retry_after = self._cooldown_remaining(user_id, now)
            if retry_after > 0:
                return self._deny(
                    user_id,
                    f"Rate limited. Please wait {retry_after} seconds between generations.",
                    remaining, retry_after,
                )

            if record.daily_usage + cost > record.daily_limit:
                return self._deny(user_id, f"Daily limit reached. You have {remaining} credits remaining.", remaining)

            weekly_remaining = record.weekly_limit - record.weekly_usage
            if record.weekly_usage + cost > record.weekly_limit:
                return self._deny(
                    user_id, f"Weekly limit reached. You have {weekly_remaining} credits remaining.", weekly_remaining
                )

            if self.store.global_used() + cost > self._capacity:
                return self._deny(user_id, "Service temporarily unavailable due to high demand.", remaining)

            self.store.set_last_generation(user_id, now)
            return QuotaDecision(allowed=True, remaining=min(remaining, weekly_remaining) - cost)

    def _deny(self, user_id: str, reason: str, remaining: int, retry_after: int = 0) -> QuotaDecision:
        logger.warning(f"Quota denied for user {user_id}: {reason}")
        return QuotaDecision(allowed=False, reason=reason, remaining=max(0, remaining), retry_after=retry_after)

    def record_generation(
        self,
        user_id: str,
        cost: Optional[int] = None,
        device_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> QuotaRecord:
        """Charge a successful generation to the user and the global pool."""
        cost = self.settings.generation_cost if cost is None else cost
        with self._lock_for(user_id):
            now = self._clock()
            record = self._load(user_id, now)
            record.daily_usage += cost
            record.weekly_usage += cost
            record.total_usage += cost
            self.store.save_record(record)
            self.store.set_last_generation(user_id, now)
            used = self.store.incr_global(cost)

        if device_id:
            self.store.add_device_user(device_id, user_id)
        if ip_address:
            self.store.incr_ip(ip_address, self.settings.ip_window_seconds)

        logger.info(
            f"Recorded generation for user {user_id}: cost={cost}, "
            f"daily={record.daily_usage}/{record.daily_limit}, global_used={used}"
        )
        return record

    def is_rate_limited(self, user_id: str) -> bool:
        return self._cooldown_remaining(user_id, self._clock()) > 0

    def check_abuse(self, device_id: str, ip_address: str) -> AbuseCheck:
        """Advisory only; callers decide whether to enforce it."""
        if self.store.device_user_count(device_id) > self.settings.max_users_per_device:
            logger.warning(f"Abuse signal: device {device_id} shared by too many accounts")
            return AbuseCheck(is_abuse=True, reason="Too many accounts from same device")
        if self.store.ip_count(ip_address) > self.settings.max_requests_per_ip:
            logger.warning(f"Abuse signal: too many requests from IP {ip_address}")
            return AbuseCheck(is_abuse=True, reason="Too many requests from same IP")
        return AbuseCheck(is_abuse=False)

    def get_usage(self, user_id: str) -> QuotaRecord:
        with self._lock_for(user_id):
            return self._load(user_id, self._clock())

    def add_bonus(self, user_id: str, amount: int) -> QuotaRecord:
        """Raise a user's daily ceiling (engagement / referral rewards)."""
        with self._lock_for(user_id):
            record = self._load(user_id, self._clock())
            record.daily_limit += amount
            self.store.save_record(record)
        logger.info(f"Added {amount} bonus credits for user {user_id} (limit={record.daily_limit})")
        return record

    def set_tier(self, user_id: str, tier: str) -> QuotaRecord:
        """Move a user to another tier. The daily ceiling becomes that tier's limit, dropping any bonus."""
        if tier not in self.settings.tier_limits:
            raise ValueError(f"Unknown tier: {tier}. Available: {sorted(self.settings.tier_limits)}")
        with self._lock_for(user_id):
            record = self._load(user_id, self._clock())
            record.tier = tier
            record.daily_limit = self.settings.tier_limits[tier]
            self.store.save_record(record)
        logger.info(f"User {user_id} moved to tier {tier} (daily limit={record.daily_limit})")
        return record

    def sweep(self) -> int:
        """Apply due resets to every known record. Returns how many were touched."""
        touched = 0
        for user_id in self.store.user_ids():
            with self._lock_for(user_id):
                now = self._clock()
                before = self.store.get_record(user_id)
                after = self._load(user_id, now)
                if before is not None and (before.last_reset, before.last_weekly_reset) != (
                    after.last_reset, after.last_weekly_reset
                ):
                    touched += 1
        if touched:
            logger.info(f"Quota sweep reset {touched} record(s)")
        return touched

    # ── Global pool ──────────────────────────────────────────────────────

    def service_stats(self) -> dict:
        used = self.store.global_used()
        return {
            "total": self._capacity,
            "used": used,
            "remaining": max(0, self._capacity - used),
            "usage_percentage": round(used / self._capacity * 100, 4) if self._capacity else 100.0,
        }

    def emergency_disable(self) -> None:
        self._capacity = 0
        logger.warning("Quota engine emergency disabled: global capacity set to 0")

    def emergency_restore(self, capacity: Optional[int] = None) -> None:
        self._capacity = self.settings.global_capacity if capacity is None else capacity
        logger.info(f"Quota engine restored with capacity {self._capacity}")
