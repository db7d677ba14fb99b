"""
Pydantic models and enums for the generation pipeline.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidTransitionError


# ── Capabilities & Modes ─────────────────────────────────────────────────────

class Capability(str, Enum):
    PRESET = "preset"
    TIME_MACHINE = "time_machine"
    RESTORE = "restore"
    STORY = "story"


class GenerationMode(str, Enum):
    I2I = "i2i"
    T2I = "t2i"
    RESTORE = "restore"
    STORY = "story"


class Backend(str, Enum):
    NEW = "new"
    LEGACY = "legacy"


# ── Presets ──────────────────────────────────────────────────────────────────

class PresetDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    prompt: str
    negative_prompt: Optional[str] = None
    strength: float = Field(default=0.16, ge=0.0, le=1.0)
    provider_model_hint: Optional[str] = None
    mode: GenerationMode = GenerationMode.I2I
    requires_source: bool = True


class OptionMapping(BaseModel):
    """optionKey → preset id, with optional field overrides."""
    model_config = ConfigDict(frozen=True)

    use: str
    overrides: dict[str, Any] = Field(default_factory=dict)


class StoryBeat(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    use: str
    overrides: dict[str, Any] = Field(default_factory=dict)


# ── Intents ──────────────────────────────────────────────────────────────────

class PresetIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["preset"] = "preset"
    preset_id: str


class TimeMachineIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["time_machine"] = "time_machine"
    option_key: str


class RestoreIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["restore"] = "restore"
    option_key: str


class StoryIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["story"] = "story"
    theme: str


Intent = Annotated[
    Union[PresetIntent, TimeMachineIntent, RestoreIntent, StoryIntent],
    Field(discriminator="kind"),
]

INTENT_CAPABILITY = {
    "preset": Capability.PRESET,
    "time_machine": Capability.TIME_MACHINE,
    "restore": Capability.RESTORE,
    "story": Capability.STORY,
}


# ── Jobs ─────────────────────────────────────────────────────────────────────

class GenerationJob(BaseModel):
    """A fully resolved unit of work. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    user_id: Optional[str] = None
    capability: Capability
    mode: GenerationMode
    preset_id: str
    prompt: str
    params: dict[str, Any] = Field(default_factory=dict)
    source_url: Optional[str] = None
    parent_id: Optional[str] = None
    group: Optional[str] = None
    option_key: Optional[str] = None


class ProviderHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    task_id: str
    capability: Capability
    backend: Backend


# ── Results ──────────────────────────────────────────────────────────────────

class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in (
            GenerationStatus.COMPLETED,
            GenerationStatus.FAILED,
            GenerationStatus.TIMEOUT,
        )


_STATUS_RANK = {
    GenerationStatus.PENDING: 0,
    GenerationStatus.PROCESSING: 1,
    GenerationStatus.COMPLETED: 2,
    GenerationStatus.FAILED: 2,
    GenerationStatus.TIMEOUT: 2,
}


class GenerationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    status: GenerationStatus
    handle: Optional[ProviderHandle] = None
    output_url: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None
    backend: Optional[Backend] = None
    used_fallback: bool = False
    attempts: int = 0
    persisted: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: GenerationStatus, **changes) -> "GenerationResult":
        """
        Return a copy moved to `status`.

        pending → processing → completed | failed | timeout. Staying in
        processing is allowed (attempt counters move on); anything that
        leaves a terminal state or goes backwards raises.
        """
        if self.is_terminal:
            raise InvalidTransitionError(
                f"[{self.run_id}] result is terminal ({self.status.value}), cannot move to {status.value}"
            )
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise InvalidTransitionError(
                f"[{self.run_id}] cannot move back from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status, **changes})


class ProviderResponse(BaseModel):
    """What an adapter hands back, before the router normalizes it."""

    status: GenerationStatus
    output_url: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


# ── Quota ────────────────────────────────────────────────────────────────────

class QuotaRecord(BaseModel):
    user_id: str
    tier: str = "registered"
    daily_usage: int = 0
    daily_limit: int
    weekly_usage: int = 0
    weekly_limit: int
    total_usage: int = 0
    last_reset: float
    last_weekly_reset: float


class QuotaDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    remaining: int = 0
    retry_after: int = 0


class AbuseCheck(BaseModel):
    is_abuse: bool
    reason: Optional[str] = None


# ── Kick outcomes ────────────────────────────────────────────────────────────

class KickStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    NEEDS_SOURCE = "needs_source"
    UNAVAILABLE = "unavailable"
    QUOTA_DENIED = "quota_denied"
    DISPATCHED = "dispatched"
    ERROR = "error"


class KickOutcome(BaseModel):
    status: KickStatus
    message: Optional[str] = None
    results: list[GenerationResult] = Field(default_factory=list)
    quota: Optional[QuotaDecision] = None

    @property
    def run_ids(self) -> list[str]:
        return [r.run_id for r in self.results]


# ── API Request / Response Models ────────────────────────────────────────────

class SourceRequest(BaseModel):
    url: Optional[str] = None


class IntentRequest(BaseModel):
    intent: Intent


class AbuseCheckRequest(BaseModel):
    device_id: str
    ip_address: str


class TierRequest(BaseModel):
    tier: str


class SessionState(BaseModel):
    user_id: str
    source_url: Optional[str] = None
    source_ready: bool = False
    pending_intent: Optional[Intent] = None
    uploading: bool = False
    generating: bool = False
    last_outcome: Optional[KickOutcome] = None
