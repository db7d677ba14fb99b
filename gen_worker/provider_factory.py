from typing import Dict, Optional, Tuple

from .adapters import ProviderAdapter
from .aiml import AimlAdapter
from .fal import FalAdapter
from .pipeline.models import Backend, Capability


class ProviderFactory:
    """
    Lookup table: (capability, backend) → adapter.

    Every capability must have both a new and a legacy adapter; the router
    relies on legacy always being there for the fallback hop.
    """

    def __init__(self, adapters: Optional[Dict[Tuple[Capability, Backend], ProviderAdapter]] = None):
        self._adapters = adapters if adapters is not None else self.default_table()
        missing = [
            (cap.value, backend.value)
            for cap in Capability
            for backend in Backend
            if (cap, backend) not in self._adapters
        ]
        if missing:
            raise ValueError(f"Provider table incomplete, missing: {missing}")

    @staticmethod
    def default_table() -> Dict[Tuple[Capability, Backend], ProviderAdapter]:
        fal = FalAdapter()
        aiml = AimlAdapter()
        table = {}
        for cap in Capability:
            table[(cap, Backend.NEW)] = fal
            table[(cap, Backend.LEGACY)] = aiml
        return table

    def get_provider(self, capability: Capability, backend: Backend) -> ProviderAdapter:
        return self._adapters[(capability, backend)]
