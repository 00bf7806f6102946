"""
Fleetmatics Integration Service
Keeps an authenticated session against the Fleetmatics API for one organization
and mirrors vehicle positions into technician vehicles and location history.

Nothing here raises to the caller: failures are logged and come back as
False / None / [] so a broken integration never takes the API down.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from ..config import FLEETMATICS_DEFAULT_SYNC_MINUTES
from ..database import SessionLocal
from ..domain.fleetmatics.repository import FleetmaticsRepository
from ..domain.fleetmatics.schemas import FleetmaticsLocation, FleetmaticsVehicle
from ..models import TechnicianVehicle
from ..models_fleetmatics import FleetmaticsConfig, FleetmaticsLocationHistory
from ..security_utils import decrypt_token, encrypt_token
from ..shared.datetime_utils import utcnow
from .fleetmatics_client import FleetmaticsAPIError, FleetmaticsClient, TokenGrant

logger = logging.getLogger(__name__)

# Tokens this close to expiry are treated as expired
TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)

T = TypeVar("T")


class SyncState(str, Enum):
    UNINITIALIZED = "uninitialized"
    DISABLED = "disabled"  # no config or no credentials
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    TOKEN_EXPIRING = "token_expiring"
    REFRESHING = "refreshing"
    STOPPED = "stopped"


@dataclass
class SyncSummary:
    synced_vehicles: int
    synced_locations: int
    timestamp: datetime
    errors: list[str] = field(default_factory=list)


class FleetmaticsService:
    def __init__(
        self,
        organization_id: int,
        repository: FleetmaticsRepository,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.organization_id = organization_id
        self.repository = repository
        self._transport = transport
        self._clock = clock

        self.state = SyncState.UNINITIALIZED
        self.config: Optional[FleetmaticsConfig] = None
        self.client: Optional[FleetmaticsClient] = None
        self.last_sync: Optional[SyncSummary] = None

        self._api_secret: Optional[str] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._token_type = "Bearer"
        self._token_expires_at: Optional[datetime] = None

        self._sync_task: Optional[asyncio.Task] = None
        self._pass_tasks: set[asyncio.Task] = set()
        self._sync_in_flight = False
        self._token_lock = asyncio.Lock()

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def sync_frequency_minutes(self) -> int:
        if self.config and self.config.sync_frequency_minutes:
            return self.config.sync_frequency_minutes
        return FLEETMATICS_DEFAULT_SYNC_MINUTES

    @property
    def is_syncing(self) -> bool:
        return self._sync_task is not None and not self._sync_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """
        Load the organization's config and obtain a usable token.
        Returns False only when the integration is not configured; a token
        failure is retried on the next authenticated call.
        """
        try:
            config = await asyncio.to_thread(
                self.repository.get_config_by_organization_id, self.organization_id
            )

            if not config:
                logger.info(f"ℹ️ No Fleetmatics configuration found for organization {self.organization_id}")
                self.state = SyncState.DISABLED
                return False

            api_secret = decrypt_token(config.api_secret)
            if not config.api_key or not api_secret:
                logger.warning(
                    f"⚠️ Fleetmatics credentials incomplete for organization {self.organization_id}"
                )
                self.state = SyncState.DISABLED
                return False

            self.config = config
            self._api_secret = api_secret
            self._access_token = decrypt_token(config.access_token)
            self._refresh_token = decrypt_token(config.refresh_token)
            self._token_type = config.token_type or "Bearer"
            self._token_expires_at = config.token_expiry_time

            if self.client:
                await self.client.aclose()
            self.client = FleetmaticsClient(config.base_url, transport=self._transport)

            if not self._access_token:
                has_token = await self.authenticate()
            elif self.is_token_expired():
                has_token = await self._renew_token()
            else:
                has_token = True
                self.state = SyncState.ACTIVE

            if not has_token:
                logger.warning(
                    f"⚠️ Fleetmatics token unavailable for organization {self.organization_id}, will retry"
                )

            if config.is_active:
                self.start_sync()
            elif self.is_syncing:
                self.stop_sync()

            return True
        except Exception as e:
            logger.error(f"❌ Error initializing Fleetmatics service: {str(e)}")
            self.state = SyncState.UNINITIALIZED
            return False

    def start_sync(self, interval_seconds: Optional[float] = None) -> None:
        """Run one sync now, then every sync_frequency_minutes (or interval_seconds)"""
        if self.is_syncing:
            self._sync_task.cancel()

        if interval_seconds is None:
            interval_seconds = self.sync_frequency_minutes * 60
        self._sync_task = asyncio.get_running_loop().create_task(self._sync_loop(interval_seconds))
        logger.info(
            f"🔄 Fleetmatics sync started for organization {self.organization_id} "
            f"with {interval_seconds:g} second interval"
        )

    def stop_sync(self) -> None:
        """Stop the interval; a pass already running is left to finish"""
        if self._sync_task:
            self._sync_task.cancel()
            self._sync_task = None
            logger.info(f"Fleetmatics sync stopped for organization {self.organization_id}")
        self.state = SyncState.STOPPED

    async def close(self) -> None:
        """Stop syncing, wait for running passes and release the HTTP client"""
        self.stop_sync()
        if self._pass_tasks:
            await asyncio.gather(*list(self._pass_tasks), return_exceptions=True)
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _sync_loop(self, interval_seconds: float) -> None:
        while True:
            self._spawn_sync_pass()
            await asyncio.sleep(interval_seconds)

    def _spawn_sync_pass(self) -> None:
        task = asyncio.get_running_loop().create_task(self.sync_vehicle_locations())
        self._pass_tasks.add(task)
        task.add_done_callback(self._pass_tasks.discard)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def is_token_expired(self, now: Optional[datetime] = None) -> bool:
        if not self._token_expires_at:
            return True
        now = now or self._clock()
        return self._token_expires_at - now < TOKEN_EXPIRY_BUFFER

    async def _store_grant(self, grant: TokenGrant) -> None:
        expires_at = self._clock() + timedelta(seconds=grant.expires_in)
        refresh_token = grant.refresh_token or self._refresh_token

        await asyncio.to_thread(
            self.repository.update_config,
            self.config.id,
            access_token=encrypt_token(grant.access_token),
            refresh_token=encrypt_token(refresh_token),
            token_type=grant.token_type,
            token_expiry_time=expires_at,
        )

        self._access_token = grant.access_token
        self._refresh_token = refresh_token
        self._token_type = grant.token_type
        self._token_expires_at = expires_at

    async def authenticate(self) -> bool:
        """Client-credentials grant with the stored API key/secret"""
        if not self.config or not self.client:
            return False

        self.state = SyncState.AUTHENTICATING
        try:
            grant = await self.client.request_token(self.config.api_key, self._api_secret)
            await self._store_grant(grant)
            self.state = SyncState.ACTIVE
            logger.info(f"✅ Authenticated with Fleetmatics for organization {self.organization_id}")
            return True
        except Exception as e:
            logger.error(f"❌ Error authenticating with Fleetmatics API: {str(e)}")
            self.state = SyncState.UNINITIALIZED
            return False

    async def refresh_access_token(self) -> bool:
        if not self.config or not self.client or not self._refresh_token:
            return False

        self.state = SyncState.REFRESHING
        try:
            grant = await self.client.refresh_token(self._refresh_token)
            await self._store_grant(grant)
            self.state = SyncState.ACTIVE
            logger.info(f"✅ Fleetmatics token refreshed for organization {self.organization_id}")
            return True
        except Exception as e:
            logger.error(f"❌ Error refreshing Fleetmatics token: {str(e)}")
            self.state = SyncState.TOKEN_EXPIRING
            return False

    async def _renew_token(self) -> bool:
        """Refresh, falling back to a full re-authentication"""
        self.state = SyncState.TOKEN_EXPIRING
        if await self.refresh_access_token():
            return True
        logger.info("🔄 Fleetmatics token refresh unavailable, re-authenticating...")
        return await self.authenticate()

    async def ensure_access_token(self) -> Optional[str]:
        """A bearer token valid for at least the expiry buffer, or None"""
        if not self.client:
            return None
        if self._access_token and not self.is_token_expired():
            return self._access_token

        async with self._token_lock:
            # Renewed by another caller while this one waited
            if self._access_token and not self.is_token_expired():
                return self._access_token
            if await self._renew_token():
                return self._access_token
        return None

    async def _authorized(self, fetch: Callable[[str, str], Awaitable[T]]) -> Optional[T]:
        """Run an API call with a valid token; one re-authentication on 401"""
        token = await self.ensure_access_token()
        if not token:
            logger.error("❌ Failed to authenticate with Fleetmatics API")
            return None

        try:
            return await fetch(token, self._token_type)
        except FleetmaticsAPIError as e:
            if e.status_code != 401:
                raise
            logger.warning("⚠️ Fleetmatics rejected the access token, re-authenticating")
            async with self._token_lock:
                # Skipped when a concurrent caller already replaced the rejected token
                if self._access_token == token and not await self.authenticate():
                    raise
            return await fetch(self._access_token, self._token_type)

    # ------------------------------------------------------------------
    # External data
    # ------------------------------------------------------------------

    async def get_vehicles(self) -> list[FleetmaticsVehicle]:
        if not self.client:
            logger.info("ℹ️ Fleetmatics not configured - no vehicles")
            return []
        try:
            return await self._authorized(self.client.list_vehicles) or []
        except Exception as e:
            logger.error(f"❌ Error getting vehicles from Fleetmatics: {str(e)}")
            return []

    async def get_vehicle_location(self, fleetmatics_vehicle_id: str) -> Optional[FleetmaticsLocation]:
        if not self.client:
            return None
        try:
            return await self._authorized(
                lambda token, token_type: self.client.vehicle_location(
                    token, fleetmatics_vehicle_id, token_type
                )
            )
        except Exception as e:
            logger.error(f"❌ Error getting location for Fleetmatics vehicle {fleetmatics_vehicle_id}: {str(e)}")
            return None

    async def get_all_vehicle_locations(self) -> list[FleetmaticsLocation]:
        if not self.client:
            return []
        try:
            return await self._authorized(self.client.all_locations) or []
        except Exception as e:
            logger.error(f"❌ Error getting vehicle locations from Fleetmatics: {str(e)}")
            return []

    async def test_connection(self) -> bool:
        """Fresh authentication plus a non-empty vehicle list"""
        if not self.client:
            return False
        try:
            if not await self.authenticate():
                return False
            vehicles = await self.get_vehicles()
            return len(vehicles) > 0
        except Exception as e:
            logger.error(f"❌ Error testing Fleetmatics connection: {str(e)}")
            return False

    # ------------------------------------------------------------------
    # Persistence of positions
    # ------------------------------------------------------------------

    async def _update_position(self, vehicle_id: int, location: FleetmaticsLocation) -> None:
        await asyncio.to_thread(
            self.repository.update_technician_vehicle,
            vehicle_id,
            last_known_latitude=location.latitude,
            last_known_longitude=location.longitude,
            last_location_update=location.event_time,
        )

    async def _append_history(self, vehicle_id: int, location: FleetmaticsLocation) -> None:
        await asyncio.to_thread(
            self.repository.create_location_history,
            vehicle_id,
            latitude=location.latitude,
            longitude=location.longitude,
            event_time=location.event_time,
            address=location.address,
            speed=location.speed,
            heading=location.heading,
            ignition_status=location.ignition_status,
            odometer=location.odometer,
            fleetmatics_event_id=location.event_id,
            event_type="position",
        )

    async def _store_location(self, vehicle_id: int, location: FleetmaticsLocation) -> None:
        await asyncio.gather(
            self._update_position(vehicle_id, location),
            self._append_history(vehicle_id, location),
        )

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    async def sync_vehicle_locations(self) -> bool:
        """
        One sync pass: pull all current locations and write them to the
        mapped vehicles. False when nothing was synced or a pass is running.
        """
        if self._sync_in_flight:
            logger.warning(
                f"⚠️ Fleetmatics sync already running for organization {self.organization_id} - skipping"
            )
            return False

        self._sync_in_flight = True
        try:
            return await self._run_sync()
        except Exception as e:
            logger.error(f"❌ Error synchronizing vehicle locations: {str(e)}")
            return False
        finally:
            self._sync_in_flight = False

    async def _run_sync(self) -> bool:
        vehicles = await asyncio.to_thread(self.repository.get_mapped_vehicles, self.organization_id)
        if not vehicles:
            logger.info("ℹ️ No vehicles mapped to Fleetmatics - skipping sync")
            return False

        locations = await self.get_all_vehicle_locations()
        if not locations:
            logger.warning("⚠️ Fleetmatics returned no vehicle locations - nothing to sync")
            return False

        by_external_id = {location.vehicle_id: location for location in locations}
        matched = [
            (vehicle, by_external_id[vehicle.fleetmatics_vehicle_id])
            for vehicle in vehicles
            if vehicle.fleetmatics_vehicle_id in by_external_id
        ]

        results = await asyncio.gather(
            *(self._store_location(vehicle.id, location) for vehicle, location in matched),
            return_exceptions=True,
        )
        errors = [
            f"Vehicle {vehicle.id}: {result}"
            for (vehicle, _), result in zip(matched, results)
            if isinstance(result, Exception)
        ]
        for error in errors:
            logger.error(f"❌ Failed to store Fleetmatics location - {error}")

        synced = len(matched) - len(errors)
        now = self._clock()
        if self.config:
            await asyncio.to_thread(self.repository.update_config, self.config.id, last_sync_time=now)
            self.config.last_sync_time = now

        self.last_sync = SyncSummary(
            synced_vehicles=synced, synced_locations=synced, timestamp=now, errors=errors
        )
        logger.info(
            f"✅ Synchronized {synced} of {len(vehicles)} mapped vehicles with Fleetmatics "
            f"for organization {self.organization_id}"
        )
        return True

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    async def map_vehicle(
        self, technician_vehicle_id: int, fleetmatics_vehicle_id: str
    ) -> Optional[TechnicianVehicle]:
        """Link a technician vehicle to a Fleetmatics vehicle and store its current position"""
        try:
            vehicle = await asyncio.to_thread(
                self.repository.get_technician_vehicle,
                technician_vehicle_id, organization_id=self.organization_id
            )
            if not vehicle:
                logger.warning(f"⚠️ Technician vehicle {technician_vehicle_id} not found")
                return None

            external_vehicles = await self.get_vehicles()
            if not any(v.vehicle_id == fleetmatics_vehicle_id for v in external_vehicles):
                logger.warning(f"⚠️ Fleetmatics vehicle {fleetmatics_vehicle_id} not found - not mapping")
                return None

            updated = await asyncio.to_thread(
                self.repository.update_technician_vehicle,
                technician_vehicle_id, fleetmatics_vehicle_id=fleetmatics_vehicle_id
            )

            location = await self.get_vehicle_location(fleetmatics_vehicle_id)
            if location:
                await self._store_location(technician_vehicle_id, location)
                updated = await asyncio.to_thread(
                    self.repository.get_technician_vehicle, technician_vehicle_id
                )

            logger.info(
                f"✅ Mapped technician vehicle {technician_vehicle_id} to Fleetmatics vehicle {fleetmatics_vehicle_id}"
            )
            return updated
        except Exception as e:
            logger.error(f"❌ Error mapping vehicle: {str(e)}")
            return None

    async def unmap_vehicle(self, technician_vehicle_id: int) -> Optional[TechnicianVehicle]:
        """Clear the mapping; location history is kept"""
        try:
            vehicle = await asyncio.to_thread(
                self.repository.get_technician_vehicle,
                technician_vehicle_id, organization_id=self.organization_id
            )
            if not vehicle:
                return None

            updated = await asyncio.to_thread(
                self.repository.update_technician_vehicle,
                technician_vehicle_id, fleetmatics_vehicle_id=None, gps_device_id=None
            )
            logger.info(f"✅ Unmapped technician vehicle {technician_vehicle_id} from Fleetmatics")
            return updated
        except Exception as e:
            logger.error(f"❌ Error unmapping vehicle: {str(e)}")
            return None

    # ------------------------------------------------------------------
    # Stored locations
    # ------------------------------------------------------------------

    async def get_latest_vehicle_locations(self) -> list[tuple[TechnicianVehicle, Optional[datetime]]]:
        """Mapped vehicles with the time of their latest known position"""
        try:
            vehicles = await asyncio.to_thread(self.repository.get_mapped_vehicles, self.organization_id)
            result = []
            for vehicle in vehicles:
                latest = await asyncio.to_thread(
                    self.repository.get_latest_location_by_vehicle_id, vehicle.id
                )
                last_update = latest.event_time if latest else vehicle.last_location_update
                result.append((vehicle, last_update))
            return result
        except Exception as e:
            logger.error(f"❌ Error getting latest vehicle locations: {str(e)}")
            return []

    async def get_vehicle_location_history(
        self, technician_vehicle_id: int, start_time: datetime, end_time: datetime
    ) -> list[FleetmaticsLocationHistory]:
        """Stored history for the range, backfilled from the API when none is stored"""
        try:
            vehicle = await asyncio.to_thread(
                self.repository.get_technician_vehicle,
                technician_vehicle_id, organization_id=self.organization_id
            )
            if not vehicle or not vehicle.fleetmatics_vehicle_id:
                logger.warning(f"⚠️ Vehicle {technician_vehicle_id} not mapped to a Fleetmatics vehicle")
                return []

            history = await asyncio.to_thread(
                self.repository.get_location_history, technician_vehicle_id, start_time, end_time
            )
            if history or not self.client:
                return history

            external_id = vehicle.fleetmatics_vehicle_id
            fetched = await self._authorized(
                lambda token, token_type: self.client.vehicle_history(
                    token, external_id, start_time, end_time, token_type
                )
            )
            for location in fetched or []:
                await self._append_history(technician_vehicle_id, location)

            return await asyncio.to_thread(
                self.repository.get_location_history, technician_vehicle_id, start_time, end_time
            )
        except Exception as e:
            logger.error(f"❌ Error getting vehicle location history: {str(e)}")
            return []


class FleetmaticsSyncManager:
    """
    Owns one FleetmaticsService per organization for the life of the app.
    Started from the FastAPI lifespan and stopped on shutdown.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.repository = FleetmaticsRepository(session_factory)
        self._transport = transport
        self._services: dict[int, FleetmaticsService] = {}

    async def start(self) -> None:
        """Initialize every active configuration (which starts its sync loop)"""
        try:
            configs = await asyncio.to_thread(self.repository.list_active_configs)
        except Exception as e:
            logger.error(f"❌ Could not load Fleetmatics configurations: {str(e)}")
            return

        for config in configs:
            await self.get(config.organization_id)
        logger.info(f"✅ Fleetmatics sync manager started ({len(configs)} active organizations)")

    async def get(self, organization_id: int) -> FleetmaticsService:
        service = self._services.get(organization_id)
        if service is None:
            service = FleetmaticsService(organization_id, self.repository, transport=self._transport)
            self._services[organization_id] = service
            await service.initialize()
        elif service.client is None:
            # Not configured last time; the config may exist now
            await service.initialize()
        return service

    async def reload(self, organization_id: int) -> FleetmaticsService:
        """Rebuild the organization's service after its configuration changed"""
        previous = self._services.pop(organization_id, None)
        if previous:
            await previous.close()
        return await self.get(organization_id)

    async def stop(self) -> None:
        for service in list(self._services.values()):
            await service.close()
        self._services.clear()
        logger.info("Fleetmatics sync manager stopped")
