"""
Looper registry: one synchronizer per monitored looper.
"""
import logging
from typing import Callable, Dict, List, Optional

from config import get_settings
from models.schemas import Looper
from services.remote_data_provider import RemoteDataProvider
from services.sync_service import RemoteDataSynchronizer

logger = logging.getLogger(__name__)


class LooperNotFoundError(KeyError):
    """No looper with the requested id is configured."""


class LooperService:
    """A looper paired with the synchronizer tracking its remote data."""

    def __init__(self, looper: Looper, synchronizer: RemoteDataSynchronizer):
        self.looper = looper
        self.synchronizer = synchronizer

    def __eq__(self, other):
        return isinstance(other, LooperService) and other.looper.id == self.looper.id

    def __hash__(self):
        return hash(self.looper.id)


class LooperRegistry:
    """Holds the LooperService of every configured looper."""

    def __init__(
        self,
        loopers: List[Looper],
        provider_factory: Callable[[Looper], RemoteDataProvider],
        synchronizer_factory: Optional[Callable[[RemoteDataProvider, Looper], RemoteDataSynchronizer]] = None
    ):
        synchronizer_factory = synchronizer_factory or (
            lambda provider, looper: RemoteDataSynchronizer.from_settings(provider, looper.id)
        )
        self._services: Dict[str, LooperService] = {}
        for looper in loopers:
            synchronizer = synchronizer_factory(provider_factory(looper), looper)
            self._services[looper.id] = LooperService(looper, synchronizer)

    @classmethod
    def from_settings(cls, provider_factory: Callable[[Looper], RemoteDataProvider]) -> "LooperRegistry":
        """Build the registry from the LOOPERS setting."""
        settings = get_settings()
        loopers = [Looper(**config) for config in settings.looper_configs]
        logger.info(f"Configured {len(loopers)} looper(s)")
        return cls(loopers, provider_factory)

    def loopers(self) -> List[Looper]:
        return [service.looper for service in self._services.values()]

    def get(self, looper_id: str) -> LooperService:
        try:
            return self._services[looper_id]
        except KeyError:
            raise LooperNotFoundError(looper_id) from None

    def find_looper(self, looper_id: Optional[str]) -> Optional[Looper]:
        if looper_id is None or looper_id not in self._services:
            return None
        return self._services[looper_id].looper

    def start_all(self, interval: float) -> None:
        for service in self._services.values():
            service.synchronizer.start_periodic_sync(interval)

    async def stop_all(self) -> None:
        for service in self._services.values():
            await service.synchronizer.stop()


# Singleton registry
_registry: Optional[LooperRegistry] = None


def get_looper_registry() -> LooperRegistry:
    """Get or create the global looper registry backed by Nightscout."""
    global _registry
    if _registry is None:
        from services.nightscout_service import NightscoutService
        _registry = LooperRegistry.from_settings(NightscoutService.for_looper)
    return _registry


def set_looper_registry(registry: Optional[LooperRegistry]) -> None:
    """Replace the global registry (used by tests)."""
    global _registry
    _registry = registry
