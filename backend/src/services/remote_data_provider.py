"""
Remote data provider interface.

The synchronizer only talks to this interface; the Nightscout adapter in
`services.nightscout_service` is the production implementation.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import List, Optional

from models.schemas import (
    BasalEntry, BolusEntry, CarbEntry, DeviceStatusSnapshot, GlucoseReading,
    OverridePreset, ProfileSnapshot, RemoteCommand
)


class ProviderError(Exception):
    """A provider request failed (transport error, timeout or bad response)."""


class CommandError(ProviderError):
    """A remote command could not be submitted."""


class RemoteDataProvider(ABC):
    """Abstract source of one looper's remote treatment data."""

    # ---- Feeds ----

    @abstractmethod
    async def fetch_glucose(self) -> List[GlucoseReading]:
        """Recent CGM readings, in any order."""

    @abstractmethod
    async def fetch_carb_entries(self) -> List[CarbEntry]:
        ...

    @abstractmethod
    async def fetch_bolus_entries(self) -> List[BolusEntry]:
        ...

    @abstractmethod
    async def fetch_basal_entries(self) -> List[BasalEntry]:
        ...

    @abstractmethod
    async def fetch_override_presets(self) -> List[OverridePreset]:
        ...

    @abstractmethod
    async def fetch_latest_device_status(self) -> Optional[DeviceStatusSnapshot]:
        ...

    @abstractmethod
    async def fetch_recent_commands(self) -> List[RemoteCommand]:
        ...

    @abstractmethod
    async def fetch_current_profile(self) -> Optional[ProfileSnapshot]:
        ...

    # ---- Commands ----

    async def check_auth(self) -> None:
        """Raise ProviderError if the credentials are rejected."""

    @abstractmethod
    async def deliver_bolus(self, amount_in_units: float) -> None:
        ...

    @abstractmethod
    async def deliver_carbs(
        self,
        amount_in_grams: float,
        absorption_time: timedelta,
        consumed_date: datetime
    ) -> None:
        ...

    @abstractmethod
    async def start_override(self, override_name: str, duration: Optional[timedelta]) -> None:
        ...

    @abstractmethod
    async def cancel_override(self) -> None:
        ...

    @abstractmethod
    async def activate_autobolus(self, activate: bool) -> None:
        ...

    @abstractmethod
    async def activate_closed_loop(self, activate: bool) -> None:
        ...

    @abstractmethod
    async def delete_all_commands(self) -> None:
        ...
