"""
Runtime configuration for the generation worker.

Values are read from the environment once at import time (after loading
`.env`). The pydantic settings objects below are built from these module
constants so services can also be constructed with explicit overrides.
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ── Environment ──────────────────────────────────────────────────────────────
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")

# ── Storage backends ─────────────────────────────────────────────────────────
REDIS_URL = os.environ.get("REDIS_URL", "")
SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
MEDIA_TABLE = os.environ.get("MEDIA_TABLE", "media_assets")

R2_PUBLIC_URL = os.environ.get("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.environ.get("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.environ.get("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.environ.get("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.environ.get("R2_BUCKET_NAME", "assets")
MIRROR_OUTPUTS_TO_R2 = _env_bool("MIRROR_OUTPUTS_TO_R2")

# ── Providers ────────────────────────────────────────────────────────────────
FAL_API_KEY = os.environ.get("FAL_API_KEY", "")
FAL_API_BASE = os.environ.get("FAL_API_BASE", "https://queue.fal.run")
FAL_DEFAULT_MODEL = os.environ.get("FAL_DEFAULT_MODEL", "fal-ai/flux/dev/image-to-image")

AIML_API_KEY = os.environ.get("AIML_API_KEY", "")
AIML_API_BASE = os.environ.get("AIML_API_BASE", "https://api.aimlapi.com/v1")
AIML_DEFAULT_MODEL = os.environ.get("AIML_DEFAULT_MODEL", "flux/dev/image-to-image")

PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "60"))

# ── Quota ────────────────────────────────────────────────────────────────────
GENERATION_COST = int(os.environ.get("GENERATION_COST", "2"))
COOLDOWN_SECONDS = int(os.environ.get("QUOTA_COOLDOWN_SECONDS", "30"))
DAILY_LIMIT = int(os.environ.get("QUOTA_DAILY_LIMIT", "30"))
WEEKLY_LIMIT = int(os.environ.get("QUOTA_WEEKLY_LIMIT", "150"))
GLOBAL_CAPACITY = int(os.environ.get("QUOTA_GLOBAL_CAPACITY", "250000000"))
RESET_HOUR = int(os.environ.get("QUOTA_RESET_HOUR", "0"))
QUOTA_TIMEZONE = os.environ.get("QUOTA_TIMEZONE", "UTC")
MAX_USERS_PER_DEVICE = int(os.environ.get("ABUSE_MAX_USERS_PER_DEVICE", "3"))
MAX_REQUESTS_PER_IP = int(os.environ.get("ABUSE_MAX_REQUESTS_PER_IP", "100"))
IP_WINDOW_SECONDS = int(os.environ.get("ABUSE_IP_WINDOW_SECONDS", "86400"))
SWEEP_INTERVAL_SECONDS = int(os.environ.get("QUOTA_SWEEP_INTERVAL_SECONDS", "3600"))
SESSION_IDLE_SECONDS = int(os.environ.get("SESSION_IDLE_SECONDS", "1800"))

# Daily ceiling per user tier; the default tier uses DAILY_LIMIT
DEFAULT_TIER = os.environ.get("QUOTA_DEFAULT_TIER", "registered")
TIER_DAILY_LIMITS = {
    "verified": int(os.environ.get("QUOTA_DAILY_LIMIT_VERIFIED", "60")),
    "contributor": int(os.environ.get("QUOTA_DAILY_LIMIT_CONTRIBUTOR", "120")),
}

# ── Polling ──────────────────────────────────────────────────────────────────
POLL_INITIAL_DELAY = float(os.environ.get("POLL_INITIAL_DELAY", "2.0"))
POLL_MULTIPLIER = float(os.environ.get("POLL_MULTIPLIER", "1.5"))
POLL_MAX_DELAY = float(os.environ.get("POLL_MAX_DELAY", "10.0"))
POLL_TIMEOUT_SECONDS = float(os.environ.get("POLL_TIMEOUT_SECONDS", "30.0"))
POLL_MAX_ATTEMPTS = int(os.environ.get("POLL_MAX_ATTEMPTS", "20"))


class QuotaSettings(BaseModel):
    """Tunables for the quota & rate-limit engine."""

    generation_cost: int = GENERATION_COST
    cooldown_seconds: int = COOLDOWN_SECONDS
    daily_limit: int = DAILY_LIMIT
    weekly_limit: int = WEEKLY_LIMIT
    global_capacity: int = GLOBAL_CAPACITY
    reset_hour: int = Field(default=RESET_HOUR, ge=0, le=23)
    timezone: str = QUOTA_TIMEZONE
    max_users_per_device: int = MAX_USERS_PER_DEVICE
    max_requests_per_ip: int = MAX_REQUESTS_PER_IP
    ip_window_seconds: int = IP_WINDOW_SECONDS
    default_tier: str = DEFAULT_TIER
    tier_limits: dict[str, int] = Field(default_factory=lambda: dict(TIER_DAILY_LIMITS))

    @model_validator(mode="after")
    def fill_default_tier_limit(self):
        self.tier_limits.setdefault(self.default_tier, self.daily_limit)
        return self


class PollSettings(BaseModel):
    """Backoff schedule and wall-clock budget for the completion poller."""

    initial_delay: float = POLL_INITIAL_DELAY
    multiplier: float = POLL_MULTIPLIER
    max_delay: float = POLL_MAX_DELAY
    timeout_seconds: float = POLL_TIMEOUT_SECONDS
    max_attempts: int = POLL_MAX_ATTEMPTS


def new_backend_flag_defaults() -> dict[str, bool]:
    """Per-capability "use new backend" defaults from FLAG_NEW_BACKEND_<CAP>."""
    from .pipeline.models import Capability

    return {
        cap.value: _env_bool(f"FLAG_NEW_BACKEND_{cap.value.upper()}")
        for cap in Capability
    }
