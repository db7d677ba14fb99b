"""
FastAPI routes for the generation worker.

Session Endpoints:
  GET    /sessions/{user_id}          Session state (404 if never seen)
  PUT    /sessions/{user_id}/source   Upload finished: set durable URL, kick
  DELETE /sessions/{user_id}/source   Forget the source
  PUT    /sessions/{user_id}/intent   Queue an intent (overwrites), kick
  DELETE /sessions/{user_id}/intent   Drop the pending intent
  POST   /sessions/{user_id}/kick     Retry the pending intent
  DELETE /sessions/{user_id}          End the session

Quota Endpoints:
  GET    /quota/{user_id}             Usage + cooldown state
  PUT    /quota/{user_id}/tier        Move a user to another tier
  POST   /quota/abuse-check           Device / IP fan-out signal

Flag Endpoints:
  POST   /flags/refresh               Reload per-capability backend flags

Services live on app.state (built in main.lifespan) and are reached through
the dependency helpers below.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..flags import FeatureFlags
from ..quota import QuotaEngine
from .errors import QuotaStorageError
from .models import (
    AbuseCheck,
    AbuseCheckRequest,
    IntentRequest,
    KickOutcome,
    SessionState,
    SourceRequest,
    TierRequest,
)
from .orchestrator import GenerationSession, SessionRegistry

logger = logging.getLogger(__name__)


# ── Dependencies ─────────────────────────────────────────────────────────────

def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_quota(request: Request) -> QuotaEngine:
    return request.app.state.quota


def get_flags(request: Request) -> FeatureFlags:
    return request.app.state.flags


def _session_for_write(user_id: str, request: Request, registry: SessionRegistry) -> GenerationSession:
    return registry.get_or_create(
        user_id,
        device_id=request.headers.get("X-Device-Id"),
        ip_address=request.client.host if request.client else None,
    )


def _session_or_404(user_id: str, registry: SessionRegistry) -> GenerationSession:
    session = registry.get(user_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for user {user_id}")
    return session


# ═════════════════════════════════════════════════════════════════════════════
# Sessions Router
# ═════════════════════════════════════════════════════════════════════════════

sessions_router = APIRouter(prefix="/sessions", tags=["sessions"])


@sessions_router.get("/{user_id}", response_model=SessionState)
def get_session(user_id: str, registry: SessionRegistry = Depends(get_registry)):
    return _session_or_404(user_id, registry).state()


@sessions_router.put("/{user_id}/source", response_model=KickOutcome)
async def set_source(user_id: str, body: SourceRequest, request: Request, registry: SessionRegistry = Depends(get_registry)):
    """Called by the upload collaborator once the file has a durable URL."""
    session = _session_for_write(user_id, request, registry)
    return await session.complete_upload(body.url)


@sessions_router.delete("/{user_id}/source", response_model=SessionState)
def clear_source(user_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _session_or_404(user_id, registry)
    session.clear_source()
    return session.state()


@sessions_router.put("/{user_id}/intent", response_model=KickOutcome)
async def set_intent(user_id: str, body: IntentRequest, request: Request, registry: SessionRegistry = Depends(get_registry)):
    session = _session_for_write(user_id, request, registry)
    return await session.submit_intent(body.intent)


@sessions_router.delete("/{user_id}/intent", response_model=SessionState)
def clear_intent(user_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = _session_or_404(user_id, registry)
    session.cancel_intent()
    return session.state()


@sessions_router.post("/{user_id}/kick", response_model=KickOutcome)
async def kick(user_id: str, registry: SessionRegistry = Depends(get_registry)):
    return await _session_or_404(user_id, registry).kick()


@sessions_router.delete("/{user_id}")
def end_session(user_id: str, registry: SessionRegistry = Depends(get_registry)):
    if not registry.remove(user_id):
        raise HTTPException(status_code=404, detail=f"No session for user {user_id}")
    return {"status": "removed", "user_id": user_id}


# ═════════════════════════════════════════════════════════════════════════════
# Quota Router
# ═════════════════════════════════════════════════════════════════════════════

quota_router = APIRouter(prefix="/quota", tags=["quota"])


@quota_router.post("/abuse-check", response_model=AbuseCheck)
def abuse_check(body: AbuseCheckRequest, quota: QuotaEngine = Depends(get_quota)):
    try:
        return quota.check_abuse(body.device_id, body.ip_address)
    except QuotaStorageError as e:
        logger.error(f"Abuse check failed: {e}")
        raise HTTPException(status_code=503, detail="Quota storage unavailable")


@quota_router.get("/{user_id}")
def get_quota_usage(user_id: str, quota: QuotaEngine = Depends(get_quota)):
    try:
        record = quota.get_usage(user_id)
        rate_limited = quota.is_rate_limited(user_id)
    except QuotaStorageError as e:
        logger.error(f"Quota lookup failed for user {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Quota storage unavailable")

    return {
        **record.model_dump(),
        "daily_remaining": max(0, record.daily_limit - record.daily_usage),
        "weekly_remaining": max(0, record.weekly_limit - record.weekly_usage),
        "rate_limited": rate_limited,
    }


@quota_router.put("/{user_id}/tier")
def set_tier(user_id: str, body: TierRequest, quota: QuotaEngine = Depends(get_quota)):
    try:
        return quota.set_tier(user_id, body.tier)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except QuotaStorageError as e:
        logger.error(f"Tier update failed for user {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Quota storage unavailable")


# ═════════════════════════════════════════════════════════════════════════════
# Flags Router
# ═════════════════════════════════════════════════════════════════════════════

flags_router = APIRouter(prefix="/flags", tags=["flags"])


@flags_router.post("/refresh")
def refresh_flags(flags: FeatureFlags = Depends(get_flags)):
    try:
        return {"status": "ok", "flags": flags.refresh()}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
