"""
Per-capability "use the new backend" switches.

Defaults come from FLAG_NEW_BACKEND_<CAPABILITY> env vars; if Redis is
available the hash `flags:new_backend` overlays them. refresh() re-reads
both without a restart.
"""

import logging
import threading
from typing import Callable, Dict, Optional

from .config import new_backend_flag_defaults
from .pipeline.models import Capability

logger = logging.getLogger(__name__)

REDIS_FLAGS_KEY = "flags:new_backend"

_TRUTHY = ("1", "true", "yes", "on")


def redis_flag_source(redis_client) -> Callable[[], Dict[str, bool]]:
    """Build a loader that reads overrides from the Redis flags hash."""
    def _load() -> Dict[str, bool]:
        raw = redis_client.hgetall(REDIS_FLAGS_KEY) or {}
        out = {}
        for k, v in raw.items():
            key = k.decode("utf-8") if isinstance(k, bytes) else k
            val = v.decode("utf-8") if isinstance(v, bytes) else v
            out[key] = str(val).strip().lower() in _TRUTHY
        return out
    return _load


class FeatureFlags:
    def __init__(
        self,
        defaults: Optional[Dict[str, bool]] = None,
        source: Optional[Callable[[], Dict[str, bool]]] = None,
    ):
        self._defaults = new_backend_flag_defaults() if defaults is None else dict(defaults)
        self._source = source
        self._lock = threading.Lock()
        self._flags: Dict[Capability, bool] = {}
        self.refresh(strict=False)

    @staticmethod
    def _parse(values: Dict[str, bool], strict: bool = True) -> Dict[Capability, bool]:
        parsed = {}
        for key, enabled in values.items():
            try:
                cap = Capability(key)
            except ValueError:
                if strict:
                    raise ValueError(f"Unknown capability flag: {key}. Available: {[c.value for c in Capability]}")
                logger.error(f"Ignoring unknown capability flag from source: {key}")
                continue
            parsed[cap] = bool(enabled)
        return parsed

    def refresh(self, strict: bool = True) -> Dict[str, bool]:
        """
        Rebuild the flag map from defaults + source. Keeps the old map if the
        source fails. With strict=False (first load) unknown keys from the
        source are dropped instead of rejected.
        """
        flags = {cap: False for cap in Capability}
        flags.update(self._parse(self._defaults))
        if self._source is not None:
            try:
                overrides = self._source()
            except Exception as e:
                with self._lock:
                    loaded = bool(self._flags)
                if loaded:
                    logger.error(f"Feature flag source failed, keeping current flags: {e}")
                    return self.snapshot()
                logger.error(f"Feature flag source failed, using env defaults: {e}")
                overrides = {}
            flags.update(self._parse(overrides, strict=strict))
        with self._lock:
            self._flags = flags
        logger.info(f"Feature flags loaded: {self.snapshot()}")
        return self.snapshot()

    def use_new_backend(self, capability: Capability) -> bool:
        with self._lock:
            return self._flags.get(capability, False)

    def set(self, capability: Capability, enabled: bool) -> None:
        with self._lock:
            self._flags[capability] = enabled

    def snapshot(self) -> Dict[str, bool]:
        with self._lock:
            return {cap.value: enabled for cap, enabled in self._flags.items()}
