import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .config import (
    AIML_API_KEY,
    ENVIRONMENT,
    FAL_API_KEY,
    MIRROR_OUTPUTS_TO_R2,
    REDIS_URL,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_URL,
    SESSION_IDLE_SECONDS,
    SWEEP_INTERVAL_SECONDS,
    WORKER_SECRET,
    PollSettings,
    QuotaSettings,
)
from .flags import FeatureFlags, redis_flag_source
from .pipeline.generation_router import GenerationRouter
from .pipeline.orchestrator import GenerationService, SessionRegistry
from .pipeline.poller import CompletionPoller
from .pipeline.resolver import PresetResolver
from .pipeline.routes import flags_router, quota_router, sessions_router
from .pipeline.storage import MemoryMediaStore, R2Mirror, ResultPersistenceHook, SupabaseMediaStore
from .presets import load_presets
from .provider_factory import ProviderFactory
from .quota import QuotaEngine
from .quota_store import MemoryQuotaStore, RedisQuotaStore

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# ── Redis ────────────────────────────────────────────────────────────────────

def get_redis(url: str = REDIS_URL):
    """Connect to Redis. Returns None if Redis is not configured or unreachable."""
    if not url:
        return None
    import redis

    client = redis.from_url(url, decode_responses=False)
    try:
        client.ping()
        logger.info(f"Redis connected: {url[:30]}...")
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}, falling back to in-process quota storage")
        return None
    return client


# ── Service wiring ───────────────────────────────────────────────────────────

def build_services(
    redis_client=None,
    factory: Optional[ProviderFactory] = None,
    flags: Optional[FeatureFlags] = None,
    media_store=None,
    quota_settings: Optional[QuotaSettings] = None,
    poll_settings: Optional[PollSettings] = None,
    resolver: Optional[PresetResolver] = None,
) -> dict:
    """Construct every service once; routes reach them through app.state."""
    store = RedisQuotaStore(redis_client) if redis_client is not None else MemoryQuotaStore()
    quota = QuotaEngine(store, quota_settings or QuotaSettings())

    if flags is None:
        source = redis_flag_source(redis_client) if redis_client is not None else None
        flags = FeatureFlags(source=source)

    resolver = resolver or PresetResolver(load_presets())
    resolver.validate_mappings()

    if media_store is None:
        if SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY:
            media_store = SupabaseMediaStore(mirror=R2Mirror() if MIRROR_OUTPUTS_TO_R2 else None)
        else:
            logger.warning("Supabase not configured, generation results are kept in memory only")
            media_store = MemoryMediaStore()

    factory = factory or ProviderFactory()
    service = GenerationService(
        GenerationRouter(factory, flags),
        CompletionPoller(factory, poll_settings or PollSettings()),
        ResultPersistenceHook(media_store),
    )
    return {
        "quota": quota,
        "flags": flags,
        "resolver": resolver,
        "service": service,
        "registry": SessionRegistry(resolver, quota, service),
        "redis": redis_client,
    }


def sweep_once(quota: QuotaEngine, registry: Optional[SessionRegistry] = None, idle_seconds: int = SESSION_IDLE_SECONDS):
    """Apply due quota resets, drop stale in-memory entries and evict idle sessions."""
    quota.sweep()
    if isinstance(quota.store, MemoryQuotaStore):
        quota.store.cleanup_expired(quota.settings.cooldown_seconds)
    if registry is not None and idle_seconds > 0:
        registry.evict_idle(idle_seconds)
        metrics.set_gauge("active_sessions", len(registry))


async def _sweep_loop(quota: QuotaEngine, interval: int, registry: Optional[SessionRegistry] = None):
    while True:
        await asyncio.sleep(interval)
        try:
            sweep_once(quota, registry)
        except Exception as e:
            logger.error(f"Sweep failed: {e}", exc_info=True)


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(services: Optional[dict] = None, secret: str = WORKER_SECRET, environment: str = ENVIRONMENT) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Worker starting up...")
        metrics.set_gauge("start_time", time.time())
        if not hasattr(app.state, "registry"):
            for name, value in build_services(redis_client=get_redis()).items():
                setattr(app.state, name, value)

        sweeper = None
        if SWEEP_INTERVAL_SECONDS > 0:
            sweeper = asyncio.create_task(_sweep_loop(app.state.quota, SWEEP_INTERVAL_SECONDS, app.state.registry))
        yield
        if sweeper is not None:
            sweeper.cancel()
        logger.info("Worker shutting down...")

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(WorkerAuthMiddleware, secret=secret, environment=environment)
    if services is not None:
        for name, value in services.items():
            setattr(app.state, name, value)

    app.include_router(sessions_router)
    app.include_router(quota_router)
    app.include_router(flags_router)

    @app.get("/health")
    def health_check():
        """Verify worker is running and which collaborators are configured."""
        state = app.state
        report = state.resolver.validate_mappings() if hasattr(state, "resolver") else None
        return {
            "status": "ok",
            "environment": environment,
            "redis_connected": getattr(state, "redis", None) is not None,
            "supabase_url_set": bool(SUPABASE_URL),
            "fal_api_key_set": bool(FAL_API_KEY),
            "aiml_api_key_set": bool(AIML_API_KEY),
            "flags": state.flags.snapshot() if hasattr(state, "flags") else {},
            "capacity": state.quota.service_stats() if hasattr(state, "quota") else {},
            "unavailable_options": (
                {group: sorted(keys) for group, keys in report.unavailable.items()} if report else {}
            ),
            "story_disabled": report.story_disabled if report else False,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        if hasattr(app.state, "registry"):
            metrics.set_gauge("active_sessions", len(app.state.registry))
        return metrics.get_snapshot()

    return app


app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("gen_worker.main:app", host="0.0.0.0", port=port, reload=True)
