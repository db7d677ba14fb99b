"""
Exception taxonomy for the generation pipeline.

Business outcomes (quota denial, missing source, unavailable option) travel
as return values; these exceptions are for the internal seams and are caught
at the kick runner, the persistence hook, or the HTTP layer.
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for every pipeline error."""


# ── Configuration ────────────────────────────────────────────────────────────

class ConfigurationError(GenerationError):
    user_message = "This style is temporarily unavailable"


class UnknownPresetError(ConfigurationError):
    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(f"Unknown preset: {preset_id}")


class MissingMappingError(ConfigurationError):
    def __init__(self, group: str, key: str, detail: str = "no mapping configured"):
        self.group = group
        self.key = key
        super().__init__(f"Missing mapping {group}/{key}: {detail}")


# ── Validation ───────────────────────────────────────────────────────────────

class SourceNotReadyError(GenerationError):
    user_message = "Pick a photo/video first"

    def __init__(self, source_url: Optional[str]):
        self.source_url = source_url
        super().__init__(f"Source is not a secure URL: {source_url!r}")


# ── Providers ────────────────────────────────────────────────────────────────

class ProviderError(GenerationError):
    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        prefix = f"{provider} {status_code}" if status_code else provider
        super().__init__(f"{prefix}: {message}")


# ── Storage ──────────────────────────────────────────────────────────────────

class PersistenceError(GenerationError):
    pass


class QuotaStorageError(GenerationError):
    pass


# ── State machine ────────────────────────────────────────────────────────────

class InvalidTransitionError(GenerationError):
    pass
