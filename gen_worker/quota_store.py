"""
Quota storage backends.

MemoryQuotaStore keeps everything in-process behind a lock (state is lost on
restart). RedisQuotaStore shares counters across workers:

Keys:
  quota:user:{user_id}      QuotaRecord fields (Redis hash)
  quota:last:{user_id}      timestamp of the last admitted generation
  quota:device:{device_id}  user ids seen on a device (Redis set)
  quota:ip:{ip}             requests from an IP in the current window (TTL)
  quota:global_used         work units issued across all users
  quota:users               every user id with a record (Redis set)
"""

import time
import logging
import threading
from typing import Dict, List, Optional, Set

from .pipeline.errors import QuotaStorageError
from .pipeline.models import QuotaRecord

logger = logging.getLogger(__name__)

USER_PREFIX = "quota:user:"
LAST_PREFIX = "quota:last:"
DEVICE_PREFIX = "quota:device:"
IP_PREFIX = "quota:ip:"
GLOBAL_USED_KEY = "quota:global_used"
USERS_KEY = "quota:users"

_RECORD_INT_FIELDS = ("daily_usage", "daily_limit", "weekly_usage", "weekly_limit", "total_usage")
_RECORD_FLOAT_FIELDS = ("last_reset", "last_weekly_reset")


class QuotaStore:
    """Interface every quota backend implements."""

    def get_record(self, user_id: str) -> Optional[QuotaRecord]:
        raise NotImplementedError

    def save_record(self, record: QuotaRecord) -> None:
        raise NotImplementedError

    def user_ids(self) -> List[str]:
        raise NotImplementedError

    def get_last_generation(self, user_id: str) -> Optional[float]:
        raise NotImplementedError

    def set_last_generation(self, user_id: str, ts: float) -> None:
        raise NotImplementedError

    def add_device_user(self, device_id: str, user_id: str) -> int:
        raise NotImplementedError

    def device_user_count(self, device_id: str) -> int:
        raise NotImplementedError

    def incr_ip(self, ip_address: str, window_seconds: int) -> int:
        raise NotImplementedError

    def ip_count(self, ip_address: str) -> int:
        raise NotImplementedError

    def global_used(self) -> int:
        raise NotImplementedError

    def incr_global(self, amount: int) -> int:
        raise NotImplementedError


# ── In-memory ─────────────────────────────────────────────────────────────────

class MemoryQuotaStore(QuotaStore):
    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, QuotaRecord] = {}
        self._last: Dict[str, float] = {}
        self._devices: Dict[str, Set[str]] = {}
        self._ips: Dict[str, List[float]] = {}  # ip → [timestamp, ...]
        self._ip_windows: Dict[str, int] = {}
        self._global_used = 0

    def get_record(self, user_id):
        with self._lock:
            record = self._records.get(user_id)
            return record.model_copy() if record else None

    def save_record(self, record):
        with self._lock:
            self._records[record.user_id] = record.model_copy()

    def user_ids(self):
        with self._lock:
            return list(self._records)

    def get_last_generation(self, user_id):
        with self._lock:
            return self._last.get(user_id)

    def set_last_generation(self, user_id, ts):
        with self._lock:
            self._last[user_id] = ts

    def add_device_user(self, device_id, user_id):
        with self._lock:
            users = self._devices.setdefault(device_id, set())
            users.add(user_id)
            return len(users)

    def device_user_count(self, device_id):
        with self._lock:
            return len(self._devices.get(device_id, ()))

    def incr_ip(self, ip_address, window_seconds):
        now = self._clock()
        with self._lock:
            self._ip_windows[ip_address] = window_seconds
            stamps = [ts for ts in self._ips.get(ip_address, []) if ts > now - window_seconds]
            stamps.append(now)
            self._ips[ip_address] = stamps
            return len(stamps)

    def ip_count(self, ip_address):
        now = self._clock()
        with self._lock:
            window = self._ip_windows.get(ip_address, 0)
            stamps = [ts for ts in self._ips.get(ip_address, []) if ts > now - window]
            self._ips[ip_address] = stamps
            return len(stamps)

    def global_used(self):
        with self._lock:
            return self._global_used

    def incr_global(self, amount):
        with self._lock:
            self._global_used += amount
            return self._global_used

    def cleanup_expired(self, cooldown_seconds: int) -> None:
        """Drop stale rate-limit stamps and empty IP windows to bound memory."""
        now = self._clock()
        with self._lock:
            for user_id in [u for u, ts in self._last.items() if now - ts > cooldown_seconds]:
                del self._last[user_id]
            for ip in list(self._ips):
                window = self._ip_windows.get(ip, 0)
                self._ips[ip] = [ts for ts in self._ips[ip] if ts > now - window]
                if not self._ips[ip]:
                    del self._ips[ip]
                    self._ip_windows.pop(ip, None)


# ── Redis ─────────────────────────────────────────────────────────────────────

def _decode(value):
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisQuotaStore(QuotaStore):
    def __init__(self, redis_client):
        self._redis = redis_client

    def _call(self, op: str, fn):
        import redis

        try:
            return fn()
        except redis.RedisError as e:
            logger.error(f"Quota storage error during {op}: {e}")
            raise QuotaStorageError(f"{op} failed: {e}") from e

    def get_record(self, user_id):
        data = self._call("get_record", lambda: self._redis.hgetall(f"{USER_PREFIX}{user_id}"))
        if not data:
            return None
        fields = {_decode(k): _decode(v) for k, v in data.items()}
        values = {"user_id": user_id, "tier": fields.get("tier") or "registered"}
        for name in _RECORD_INT_FIELDS:
            values[name] = int(fields.get(name, 0))
        for name in _RECORD_FLOAT_FIELDS:
            values[name] = float(fields.get(name, 0))
        return QuotaRecord(**values)

    def save_record(self, record):
        mapping = {name: str(getattr(record, name)) for name in _RECORD_INT_FIELDS + _RECORD_FLOAT_FIELDS}
        mapping["tier"] = record.tier

        def _save():
            pipe = self._redis.pipeline(transaction=True)
            pipe.hset(f"{USER_PREFIX}{record.user_id}", mapping=mapping)
            pipe.sadd(USERS_KEY, record.user_id)
            pipe.execute()

        self._call("save_record", _save)

    def user_ids(self):
        members = self._call("user_ids", lambda: self._redis.smembers(USERS_KEY))
        return [_decode(m) for m in members]

    def get_last_generation(self, user_id):
        value = self._call("get_last_generation", lambda: self._redis.get(f"{LAST_PREFIX}{user_id}"))
        return float(_decode(value)) if value is not None else None

    def set_last_generation(self, user_id, ts):
        self._call("set_last_generation", lambda: self._redis.set(f"{LAST_PREFIX}{user_id}", str(ts)))

    def add_device_user(self, device_id, user_id):
        def _add():
            pipe = self._redis.pipeline(transaction=True)
            pipe.sadd(f"{DEVICE_PREFIX}{device_id}", user_id)
            pipe.scard(f"{DEVICE_PREFIX}{device_id}")
            return pipe.execute()[1]

        return int(self._call("add_device_user", _add))

    def device_user_count(self, device_id):
        return int(self._call("device_user_count", lambda: self._redis.scard(f"{DEVICE_PREFIX}{device_id}")))

    def incr_ip(self, ip_address, window_seconds):
        key = f"{IP_PREFIX}{ip_address}"

        def _incr():
            pipe = self._redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            return pipe.execute()[0]

        return int(self._call("incr_ip", _incr))

    def ip_count(self, ip_address):
        value = self._call("ip_count", lambda: self._redis.get(f"{IP_PREFIX}{ip_address}"))
        return int(_decode(value)) if value is not None else 0

    def global_used(self):
        value = self._call("global_used", lambda: self._redis.get(GLOBAL_USED_KEY))
        return int(_decode(value)) if value is not None else 0

    def incr_global(self, amount):
        return int(self._call("incr_global", lambda: self._redis.incrby(GLOBAL_USED_KEY, amount)))
