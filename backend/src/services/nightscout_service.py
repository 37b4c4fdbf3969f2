"""
Nightscout Provider for Caregiver Sync
Fetches a looper's entries, treatments, device status and profile from its
Nightscout site and forwards remote commands.
"""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from config import get_settings
from models.schemas import (
    BasalEntry, BolusEntry, CarbEntry, COBStatus, DeviceStatusSnapshot,
    GlucoseReading, GlucoseUnit, IOBStatus, Looper, LoopPrediction, LoopStatus,
    OverridePreset, OverrideStatus, ProfileSnapshot, RemoteAction,
    RemoteActionType, RemoteCommand, RemoteCommandState, RemoteCommandStatus,
    ScheduleItem, TemporaryScheduleOverride, TherapyProfile, TrendDirection
)
from services.remote_data_provider import CommandError, ProviderError, RemoteDataProvider

logger = logging.getLogger(__name__)

NOTIFICATIONS_PATH = "/api/v2/notifications/loop"
COMMANDS_PATH = "/api/v1/remotecommands"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse Nightscout epoch milliseconds or ISO-8601 strings to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _seconds(value: Any) -> Optional[timedelta]:
    """Nightscout durations in seconds; 0 or missing means indefinite."""
    if not value:
        return None
    return timedelta(seconds=float(value))


def _schedule(items: Optional[List[dict]]) -> tuple:
    schedule = []
    for item in items or []:
        if item.get('timeAsSeconds') is not None:
            offset = float(item['timeAsSeconds'])
        else:
            hours, minutes = str(item.get('time', '00:00')).split(':')[:2]
            offset = int(hours) * 3600 + int(minutes) * 60
        schedule.append(ScheduleItem(offset=offset, value=float(item['value'])))
    return tuple(sorted(schedule, key=lambda scheduleItem: scheduleItem.offset))


def _override_fields(entry: dict) -> dict:
    target_range = entry.get('targetRange') or [None, None]
    return {
        "name": entry.get('name', ''),
        "symbol": entry.get('symbol'),
        "duration": _seconds(entry.get('duration')),
        "targetLow": target_range[0],
        "targetHigh": target_range[1],
        "insulinNeedsScaleFactor": entry.get('insulinNeedsScaleFactor'),
    }


class NightscoutService(RemoteDataProvider):
    """RemoteDataProvider backed by a Nightscout site."""

    def __init__(
        self,
        base_url: str,
        api_secret: str,
        lookback_hours: int = 24,
        max_count: int = 1000,
        timeout: float = 30.0
    ):
        """
        Initialize Nightscout service.

        Args:
            base_url: Nightscout URL (e.g., https://example.herokuapp.com)
            api_secret: Plain text API secret (will be SHA1 hashed)
            lookback_hours: How far back treatments and entries are fetched
            max_count: Maximum documents per request
            timeout: HTTP timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        # Hash the API secret using SHA1 (Nightscout style)
        self.api_secret_hash = hashlib.sha1(api_secret.encode('utf-8')).hexdigest()
        self.headers = {"API-SECRET": self.api_secret_hash}
        self.lookback_hours = lookback_hours
        self.max_count = max_count
        self.timeout = timeout

    @classmethod
    def for_looper(cls, looper: Looper) -> "NightscoutService":
        """Create service for a configured looper using application settings."""
        settings = get_settings()
        return cls(
            looper.url,
            looper.apiSecret,
            lookback_hours=settings.nightscout_lookback_hours,
            max_count=settings.nightscout_max_count,
            timeout=settings.fetch_timeout_seconds
        )

    # ==================== Transport ====================

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=self.headers, **kwargs)
                response.raise_for_status()
                if not response.content:
                    return None
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {method} {path}")
            raise ProviderError(f"HTTP {e.response.status_code} for {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Transport error for {method} {path}: {e}")
            raise ProviderError(f"Request to {path} failed: {e}") from e

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    def _since(self) -> datetime:
        return datetime.now(timezone.utc) - timedelta(hours=self.lookback_hours)

    async def _fetch_treatments(self, event_type: str) -> List[dict]:
        params = {
            "count": self.max_count,
            "find[eventType]": event_type,
            "find[created_at][$gte]": self._since().isoformat(),
        }
        return await self._get("/api/v1/treatments.json", params) or []

    async def check_auth(self) -> None:
        """Raise ProviderError if the site rejects the API secret."""
        await self._get("/api/v1/verifyauth")

    # ==================== Feeds ====================

    async def fetch_glucose(self) -> List[GlucoseReading]:
        since_ms = int(self._since().timestamp() * 1000)
        entries = await self._get(
            "/api/v1/entries.json",
            {"count": self.max_count, "find[date][$gte]": since_ms}
        ) or []

        readings = []
        for entry in entries:
            try:
                reading = self._parse_glucose_entry(entry)
                if reading:
                    readings.append(reading)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse glucose entry: {e}")
        logger.info(f"Fetched {len(readings)} glucose readings from Nightscout")
        return readings

    async def fetch_carb_entries(self) -> List[CarbEntry]:
        entries = []
        for entry in await self._fetch_treatments("Carb Correction"):
            carbs = entry.get('carbs')
            timestamp = parse_datetime(entry.get('created_at') or entry.get('mills'))
            if carbs is None or timestamp is None:
                continue
            entries.append(CarbEntry(
                id=entry.get('_id', str(entry.get('mills', ''))),
                timestamp=timestamp,
                amount=float(carbs),
                foodType=entry.get('foodType'),
                absorptionMinutes=entry.get('absorptionTime'),
                notes=entry.get('notes')
            ))
        return entries

    async def fetch_bolus_entries(self) -> List[BolusEntry]:
        entries = []
        for entry in await self._fetch_treatments("Correction Bolus"):
            insulin = entry.get('insulin')
            timestamp = parse_datetime(entry.get('created_at') or entry.get('mills'))
            if insulin is None or timestamp is None:
                continue
            entries.append(BolusEntry(
                id=entry.get('_id', str(entry.get('mills', ''))),
                timestamp=timestamp,
                amount=float(insulin),
                programmed=entry.get('programmed'),
                automatic=bool(entry.get('automatic', False)),
                notes=entry.get('notes')
            ))
        return entries

    async def fetch_basal_entries(self) -> List[BasalEntry]:
        entries = []
        for entry in await self._fetch_treatments("Temp Basal"):
            rate = entry.get('absolute', entry.get('rate'))
            timestamp = parse_datetime(entry.get('created_at') or entry.get('mills'))
            if rate is None or timestamp is None:
                continue
            entries.append(BasalEntry(
                id=entry.get('_id', str(entry.get('mills', ''))),
                timestamp=timestamp,
                rate=float(rate),
                durationMinutes=float(entry.get('duration', 0)),
                amount=entry.get('amount')
            ))
        return entries

    async def fetch_override_presets(self) -> List[OverridePreset]:
        profiles = await self._get("/api/v1/profile.json", {"count": 1}) or []
        if not profiles:
            return []
        loop_settings = profiles[0].get('loopSettings') or {}
        return [OverridePreset(**_override_fields(preset)) for preset in loop_settings.get('overridePresets') or []]

    async def fetch_latest_device_status(self) -> Optional[DeviceStatusSnapshot]:
        statuses = await self._get("/api/v1/devicestatus.json", {"count": 1}) or []
        if not statuses:
            return None
        return self._parse_device_status(statuses[0])

    async def fetch_recent_commands(self) -> List[RemoteCommand]:
        documents = await self._get(COMMANDS_PATH, {"count": 50}) or []
        commands = []
        for document in documents:
            try:
                commands.append(self._parse_remote_command(document))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse remote command: {e}")
        return commands

    async def fetch_current_profile(self) -> Optional[ProfileSnapshot]:
        profiles = await self._get("/api/v1/profile.json", {"count": 1}) or []
        if not profiles:
            return None
        return self._parse_profile(profiles[0])

    # ==================== Parsing ====================

    def _parse_glucose_entry(self, entry: dict) -> Optional[GlucoseReading]:
        """Parse a raw Nightscout entry into a GlucoseReading."""
        entry_type = entry.get('type', 'sgv')
        value = entry.get('sgv') if entry_type != 'mbg' else entry.get('mbg')
        if value is None:
            return None

        timestamp = parse_datetime(entry.get('date') or entry.get('dateString'))
        if timestamp is None:
            return None

        trend = None
        if entry.get('direction'):
            try:
                trend = TrendDirection(entry['direction'])
            except ValueError:
                trend = None

        return GlucoseReading(
            syncIdentifier=entry.get('_id') or str(int(timestamp.timestamp())),
            timestamp=timestamp,
            value=float(value),
            unit=GlucoseUnit.MG_DL,
            trend=trend,
            trendRate=entry.get('trendRate'),
            isDisplayOnly=entry_type == 'cal',
            isCalibration=entry_type == 'cal',
            wasUserEntered=entry_type == 'mbg'
        )

    def _parse_device_status(self, document: dict) -> DeviceStatusSnapshot:
        loop_status = None
        loop = document.get('loop')
        if loop:
            iob = loop.get('iob')
            cob = loop.get('cob')
            predicted = loop.get('predicted')
            loop_status = LoopStatus(
                name=loop.get('name', 'Loop'),
                timestamp=parse_datetime(loop.get('timestamp') or document.get('created_at')),
                iob=IOBStatus(
                    timestamp=parse_datetime(iob['timestamp']),
                    iob=iob.get('iob'),
                    basalIob=iob.get('basaliob')
                ) if iob else None,
                cob=COBStatus(
                    timestamp=parse_datetime(cob['timestamp']),
                    cob=cob.get('cob', 0.0)
                ) if cob else None,
                predicted=LoopPrediction(
                    startDate=parse_datetime(predicted['startDate']),
                    values=tuple(predicted.get('values', []))
                ) if predicted else None,
                recommendedBolus=loop.get('recommendedBolus'),
                failureReason=loop.get('failureReason')
            )

        override_status = None
        override = document.get('override')
        if override:
            override_status = OverrideStatus(
                timestamp=parse_datetime(override.get('timestamp') or document.get('created_at')),
                active=bool(override.get('active', False)),
                name=override.get('name'),
                duration=_seconds(override.get('duration')),
                multiplier=override.get('multiplier')
            )

        return DeviceStatusSnapshot(
            id=document.get('_id'),
            device=document.get('device'),
            timestamp=parse_datetime(document.get('created_at') or document.get('mills')),
            loopStatus=loop_status,
            overrideStatus=override_status
        )

    def _parse_profile(self, document: dict) -> ProfileSnapshot:
        store = {}
        for name, profile in (document.get('store') or {}).items():
            store[name] = TherapyProfile(
                timezone=profile.get('timezone'),
                units=GlucoseUnit(profile.get('units') or GlucoseUnit.MG_DL.value),
                dia=profile.get('dia'),
                basal=_schedule(profile.get('basal')),
                carbratio=_schedule(profile.get('carbratio')),
                sensitivity=_schedule(profile.get('sens')),
                targetLow=_schedule(profile.get('target_low')),
                targetHigh=_schedule(profile.get('target_high'))
            )

        settings = document.get('loopSettings') or document.get('settings') or {}
        schedule_override = None
        if settings.get('scheduleOverride'):
            raw_override = settings['scheduleOverride']
            schedule_override = TemporaryScheduleOverride(
                timestamp=parse_datetime(raw_override.get('timestamp')),
                **_override_fields(raw_override)
            )

        return ProfileSnapshot(
            id=document.get('_id'),
            timestamp=parse_datetime(document.get('startDate') or document.get('created_at') or document.get('mills')),
            defaultProfile=document.get('defaultProfile', 'Default'),
            store=store,
            scheduleOverride=schedule_override
        )

    def _parse_remote_command(self, document: dict) -> RemoteCommand:
        raw_action = document['action']
        action = RemoteAction(
            type=RemoteActionType(raw_action['type']),
            amount=raw_action.get('amount'),
            absorptionTime=_seconds(raw_action.get('absorptionTime')),
            startDate=parse_datetime(raw_action.get('startDate')),
            overrideName=raw_action.get('overrideName'),
            duration=_seconds(raw_action.get('duration')),
            active=raw_action.get('active'),
            remoteAddress=raw_action.get('remoteAddress')
        )
        raw_status = document.get('status') or {}
        status = RemoteCommandStatus(
            state=RemoteCommandState(raw_status.get('state', RemoteCommandState.PENDING.value)),
            message=raw_status.get('message', '')
        )
        return RemoteCommand(
            id=document['_id'],
            action=action,
            status=status,
            createdDate=parse_datetime(document.get('createdDate') or document.get('created_at'))
        )

    # ==================== Commands ====================

    async def _send(self, method: str, path: str, payload: Optional[dict] = None) -> None:
        try:
            await self._request(method, path, json=payload)
        except ProviderError as e:
            raise CommandError(str(e)) from e
        logger.info(f"Remote command sent: {method} {path}")

    async def _send_notification(self, payload: dict) -> None:
        await self._send("POST", NOTIFICATIONS_PATH, payload)

    async def _send_command(self, action: dict) -> None:
        payload = {
            "action": action,
            "status": {"state": RemoteCommandState.PENDING.value, "message": ""},
            "createdDate": datetime.now(timezone.utc).isoformat(),
        }
        await self._send("POST", COMMANDS_PATH, payload)

    async def deliver_bolus(self, amount_in_units: float) -> None:
        await self._send_notification({"eventType": "Remote Bolus Entry", "remoteBolus": amount_in_units})

    async def deliver_carbs(
        self,
        amount_in_grams: float,
        absorption_time: timedelta,
        consumed_date: datetime
    ) -> None:
        await self._send_notification({
            "eventType": "Remote Carbs Entry",
            "remoteCarbs": amount_in_grams,
            "remoteAbsorption": absorption_time.total_seconds() / 3600,
            "created_at": consumed_date.isoformat(),
        })

    async def start_override(self, override_name: str, duration: Optional[timedelta]) -> None:
        payload = {"eventType": "Temporary Override", "reason": override_name}
        if duration is not None:
            payload["duration"] = duration.total_seconds() / 60
        await self._send_notification(payload)

    async def cancel_override(self) -> None:
        await self._send_notification({"eventType": "Temporary Override Cancel"})

    async def activate_autobolus(self, activate: bool) -> None:
        await self._send_command({"type": RemoteActionType.AUTOBOLUS.value, "active": activate})

    async def activate_closed_loop(self, activate: bool) -> None:
        await self._send_command({"type": RemoteActionType.CLOSED_LOOP.value, "active": activate})

    async def delete_all_commands(self) -> None:
        await self._send("DELETE", COMMANDS_PATH)
