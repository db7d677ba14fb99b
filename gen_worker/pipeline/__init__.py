"""
Generation request orchestration.

  Intent Queue → Kick Runner → Preset Resolver → Pipeline Router
      → (pending) Completion Poller → Result Persistence Hook

Only the models and the error taxonomy are re-exported here; the service
modules import the provider and quota layers, so import them directly
(e.g. `from gen_worker.pipeline.orchestrator import GenerationService`).
"""

from .errors import (
    ConfigurationError,
    GenerationError,
    MissingMappingError,
    ProviderError,
    SourceNotReadyError,
    UnknownPresetError,
)
from .models import Capability, GenerationMode, GenerationStatus, KickStatus

__all__ = [
    "Capability",
    "ConfigurationError",
    "GenerationError",
    "GenerationMode",
    "GenerationStatus",
    "KickStatus",
    "MissingMappingError",
    "ProviderError",
    "SourceNotReadyError",
    "UnknownPresetError",
]
