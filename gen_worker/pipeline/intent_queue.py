"""
Intent Queue + Source Readiness Gate.

One pending intent per session (a new intent overwrites the old one), the
durable URL of the last uploaded source, and the uploading / generating
busy flags. All of it sits behind one lock so the kick runner can check and
claim the busy flag atomically.

Observers registered with subscribe() are called with a SessionSnapshot
after every state change (outside the lock).
"""

import logging
import threading
from typing import Callable, List, Optional

from pydantic import BaseModel

from .models import Intent

logger = logging.getLogger(__name__)

SECURE_SCHEME = "https://"


def is_ready(url: Optional[str]) -> bool:
    """Only absolute https URLs are usable; blob:/data:/file: previews never are."""
    return url is not None and url.startswith(SECURE_SCHEME)


class SessionSnapshot(BaseModel):
    source_url: Optional[str] = None
    pending_intent: Optional[Intent] = None
    uploading: bool = False
    generating: bool = False

    @property
    def source_ready(self) -> bool:
        return is_ready(self.source_url)


class IntentQueue:
    def __init__(self):
        self._lock = threading.Lock()
        self._intent = None
        self._source_url: Optional[str] = None
        self._uploading = False
        self._generating = False
        self._observers: List[Callable[[SessionSnapshot], None]] = []

    # ── Observation ──────────────────────────────────────────────────────

    def subscribe(self, observer: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        """Register an observer; returns a function that unregisters it."""
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe():
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def _snapshot_locked(self) -> SessionSnapshot:
        return SessionSnapshot(
            source_url=self._source_url,
            pending_intent=self._intent,
            uploading=self._uploading,
            generating=self._generating,
        )

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def _notify(self, snapshot: SessionSnapshot):
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(snapshot)
            except Exception as e:
                logger.warning(f"Intent queue observer failed: {e}", exc_info=True)

    # ── Intent slot ──────────────────────────────────────────────────────

    @property
    def pending_intent(self):
        with self._lock:
            return self._intent

    def set_intent(self, intent) -> None:
        with self._lock:
            if self._intent is not None:
                logger.info(f"Intent {self._intent.kind} replaced by {intent.kind}")
            self._intent = intent
            snap = self._snapshot_locked()
        self._notify(snap)

    def clear_intent(self, expected=None) -> bool:
        """
        Empty the slot. With `expected`, only clear if the slot still holds
        that exact intent (a newer one set mid-dispatch survives).
        """
        with self._lock:
            if self._intent is None:
                return False
            if expected is not None and self._intent is not expected:
                return False
            self._intent = None
            snap = self._snapshot_locked()
        self._notify(snap)
        return True

    # ── Source ───────────────────────────────────────────────────────────

    @property
    def source_url(self) -> Optional[str]:
        with self._lock:
            return self._source_url

    @property
    def source_ready(self) -> bool:
        return is_ready(self.source_url)

    def set_source_url(self, url: Optional[str]) -> None:
        with self._lock:
            self._source_url = url
            snap = self._snapshot_locked()
        if url is not None and not is_ready(url):
            logger.info(f"Source set to a non-durable reference ({url[:16]}...), dispatch will wait")
        self._notify(snap)

    # ── Busy flags ───────────────────────────────────────────────────────

    @property
    def uploading(self) -> bool:
        with self._lock:
            return self._uploading

    def set_uploading(self, value: bool) -> None:
        with self._lock:
            self._uploading = value
            snap = self._snapshot_locked()
        self._notify(snap)

    @property
    def generating(self) -> bool:
        with self._lock:
            return self._generating

    def try_acquire_busy(self) -> bool:
        """Claim the generating flag. False if another run already holds it."""
        with self._lock:
            if self._generating:
                return False
            self._generating = True
            snap = self._snapshot_locked()
        self._notify(snap)
        return True

    def release_busy(self) -> None:
        with self._lock:
            self._generating = False
            snap = self._snapshot_locked()
        self._notify(snap)
