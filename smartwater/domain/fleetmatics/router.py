"""Fleetmatics router - configuration, vehicle mapping, locations and sync endpoints"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ...auth import get_current_admin, get_current_organization_user
from ...config import FLEETMATICS_DEFAULT_BASE_URL, FLEETMATICS_DEFAULT_SYNC_MINUTES
from ...models import TechnicianVehicle, User
from ...models_fleetmatics import FleetmaticsConfig, FleetmaticsLocationHistory
from ...security_utils import encrypt_token, mask_secret
from ...services.fleetmatics_service import FleetmaticsSyncManager, SyncState
from ...shared.datetime_utils import utcnow
from ...shared.geo import validate_coordinates
from .schemas import (
    FleetmaticsConfigCreate,
    FleetmaticsConfigResponse,
    FleetmaticsConfigUpdate,
    LocationHistoryResponse,
    MapVehicleRequest,
    SyncResponse,
    TechnicianVehicleResponse,
    to_naive_utc,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fleetmatics", tags=["Fleetmatics"])
vehicles_router = APIRouter(prefix="/api/technician-vehicles", tags=["Fleetmatics"])

NOT_CONFIGURED = "Fleetmatics is not configured for this organization"


def get_fleetmatics_manager(request: Request) -> FleetmaticsSyncManager:
    """Dependency injection for the app-owned FleetmaticsSyncManager"""
    return request.app.state.fleetmatics


def _config_response(config: FleetmaticsConfig) -> FleetmaticsConfigResponse:
    return FleetmaticsConfigResponse(
        id=config.id,
        organizationId=config.organization_id,
        apiKey=mask_secret(config.api_key),
        apiSecret=mask_secret(config.api_secret),
        accountId=config.account_id,
        baseUrl=config.base_url,
        accessToken=mask_secret(config.access_token),
        refreshToken=mask_secret(config.refresh_token),
        tokenExpiryTime=config.token_expiry_time,
        lastSyncTime=config.last_sync_time,
        isActive=bool(config.is_active),
        syncFrequencyMinutes=config.sync_frequency_minutes or FLEETMATICS_DEFAULT_SYNC_MINUTES,
        createdAt=config.created_at,
        updatedAt=config.updated_at,
    )


def _vehicle_response(
    vehicle: TechnicianVehicle,
    last_update: Optional[datetime] = None,
    distance_miles: Optional[float] = None,
) -> TechnicianVehicleResponse:
    return TechnicianVehicleResponse(
        id=vehicle.id,
        technicianId=vehicle.technician_id,
        name=vehicle.name,
        type=vehicle.type,
        status=vehicle.status,
        make=vehicle.make,
        model=vehicle.model,
        year=vehicle.year,
        licensePlate=vehicle.license_plate,
        vin=vehicle.vin,
        fleetmaticsVehicleId=vehicle.fleetmatics_vehicle_id,
        gpsDeviceId=vehicle.gps_device_id,
        lastKnownLatitude=vehicle.last_known_latitude,
        lastKnownLongitude=vehicle.last_known_longitude,
        lastLocationUpdate=vehicle.last_location_update,
        lastUpdate=last_update,
        distanceMiles=round(distance_miles, 2) if distance_miles is not None else None,
    )


def _history_response(row: FleetmaticsLocationHistory) -> LocationHistoryResponse:
    return LocationHistoryResponse(
        id=row.id,
        vehicleId=row.vehicle_id,
        latitude=row.latitude,
        longitude=row.longitude,
        eventTime=row.event_time,
        address=row.address,
        speed=row.speed,
        heading=row.heading,
        ignitionStatus=row.ignition_status,
        odometer=row.odometer,
        fleetmaticsEventId=row.fleetmatics_event_id,
        eventType=row.event_type,
    )


# ============================================================================
# CONFIGURATION
# ============================================================================


@router.get("/config", response_model=FleetmaticsConfigResponse)
async def get_config(
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Get the organization's Fleetmatics configuration (secrets masked)"""
    config = manager.repository.get_config_by_organization_id(current_user.organization_id)
    if not config:
        raise HTTPException(status_code=404, detail="Fleetmatics configuration not found")
    return _config_response(config)


@router.post("/config", response_model=FleetmaticsConfigResponse, status_code=201)
async def create_config(
    data: FleetmaticsConfigCreate,
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Create the organization's Fleetmatics configuration"""
    organization_id = current_user.organization_id
    if manager.repository.get_config_by_organization_id(organization_id):
        raise HTTPException(status_code=400, detail="Configuration already exists for this organization")

    config = manager.repository.create_config(
        organization_id,
        api_key=data.apiKey,
        api_secret=encrypt_token(data.apiSecret),
        account_id=data.accountId,
        base_url=data.baseUrl or FLEETMATICS_DEFAULT_BASE_URL,
        is_active=data.isActive,
        sync_frequency_minutes=data.syncFrequencyMinutes or FLEETMATICS_DEFAULT_SYNC_MINUTES,
    )
    logger.info(f"✅ Fleetmatics configuration created for organization {organization_id}")

    await manager.reload(organization_id)
    return _config_response(manager.repository.get_config(config.id) or config)


@router.patch("/config/{config_id}", response_model=FleetmaticsConfigResponse)
async def update_config(
    config_id: int,
    data: FleetmaticsConfigUpdate,
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Update allowed configuration fields and restart the organization's sync"""
    existing = manager.repository.get_config(config_id)
    if not existing or existing.organization_id != current_user.organization_id:
        raise HTTPException(status_code=404, detail="Configuration not found or access denied")

    updates = {}
    if data.apiKey is not None:
        updates["api_key"] = data.apiKey
    if data.apiSecret is not None:
        updates["api_secret"] = encrypt_token(data.apiSecret)
    if data.accountId is not None:
        updates["account_id"] = data.accountId
    if data.baseUrl is not None:
        updates["base_url"] = data.baseUrl
    if data.isActive is not None:
        updates["is_active"] = data.isActive
    if data.syncFrequencyMinutes is not None:
        updates["sync_frequency_minutes"] = data.syncFrequencyMinutes

    # Tokens issued for the old credentials or host are dropped
    if {"api_key", "api_secret", "base_url"} & updates.keys():
        updates.update(access_token=None, refresh_token=None, token_expiry_time=None)

    manager.repository.update_config(config_id, **updates)
    await manager.reload(current_user.organization_id)

    return _config_response(manager.repository.get_config(config_id))


@router.get("/test-connection")
async def test_connection(
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Authenticate and list vehicles against the Fleetmatics API"""
    service = await manager.get(current_user.organization_id)
    if service.state == SyncState.DISABLED:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "message": "Failed to initialize Fleetmatics service. Check configuration.",
            },
        )

    connected = await service.test_connection()
    return {
        "success": connected,
        "message": "Successfully connected to Fleetmatics API"
        if connected
        else "Failed to connect to Fleetmatics API. Check your credentials and try again.",
    }


# ============================================================================
# VEHICLES AND MAPPING
# ============================================================================


@router.get("/vehicles")
async def get_fleetmatics_vehicles(
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """List vehicles known to Fleetmatics"""
    service = await manager.get(current_user.organization_id)
    if service.state == SyncState.DISABLED:
        raise HTTPException(status_code=400, detail=NOT_CONFIGURED)

    vehicles = await service.get_vehicles()
    return [vehicle.model_dump(by_alias=True) for vehicle in vehicles]


@router.post("/map-vehicle", response_model=TechnicianVehicleResponse)
async def map_vehicle(
    data: MapVehicleRequest,
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Link a technician vehicle to a Fleetmatics vehicle"""
    organization_id = current_user.organization_id
    service = await manager.get(organization_id)
    if service.state == SyncState.DISABLED:
        raise HTTPException(status_code=400, detail=NOT_CONFIGURED)

    vehicle = manager.repository.get_technician_vehicle(data.technicianVehicleId, organization_id)
    if not vehicle:
        raise HTTPException(status_code=404, detail="Technician vehicle not found")

    updated = await service.map_vehicle(data.technicianVehicleId, data.fleetmaticsVehicleId)
    if not updated:
        raise HTTPException(
            status_code=400, detail="Fleetmatics vehicle not found or could not be mapped"
        )
    return _vehicle_response(updated)


@router.post("/unmap-vehicle/{vehicle_id}", response_model=TechnicianVehicleResponse)
async def unmap_vehicle(
    vehicle_id: int,
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Remove a vehicle's Fleetmatics link (history is kept)"""
    organization_id = current_user.organization_id
    vehicle = manager.repository.get_technician_vehicle(vehicle_id, organization_id)
    if not vehicle:
        raise HTTPException(status_code=404, detail="Technician vehicle not found")

    service = await manager.get(organization_id)
    updated = await service.unmap_vehicle(vehicle_id)
    if not updated:
        raise HTTPException(status_code=500, detail="Failed to unmap vehicle")
    return _vehicle_response(updated)


@vehicles_router.get("", response_model=list[TechnicianVehicleResponse])
async def get_technician_vehicles(
    current_user: User = Depends(get_current_organization_user),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """All technician vehicles of the organization"""
    vehicles = manager.repository.get_technician_vehicles(current_user.organization_id)
    return [_vehicle_response(v) for v in vehicles]


# ============================================================================
# LOCATIONS
# ============================================================================


@router.get("/locations", response_model=list[TechnicianVehicleResponse])
async def get_latest_locations(
    current_user: User = Depends(get_current_organization_user),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Latest known position of every mapped vehicle"""
    service = await manager.get(current_user.organization_id)
    positions = await service.get_latest_vehicle_locations()
    return [_vehicle_response(vehicle, last_update=last_update) for vehicle, last_update in positions]


@router.get("/history/{vehicle_id}", response_model=list[LocationHistoryResponse])
async def get_location_history(
    vehicle_id: int,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: User = Depends(get_current_organization_user),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Location history for a vehicle, defaulting to the last 24 hours"""
    end_time = to_naive_utc(end_date) or utcnow()
    start_time = to_naive_utc(start_date) or end_time - timedelta(hours=24)
    if start_time > end_time:
        raise HTTPException(status_code=400, detail="startDate must be before endDate")

    organization_id = current_user.organization_id
    vehicle = manager.repository.get_technician_vehicle(vehicle_id, organization_id)
    if not vehicle or not vehicle.fleetmatics_vehicle_id:
        raise HTTPException(status_code=404, detail="Vehicle not found or not mapped to Fleetmatics")

    service = await manager.get(organization_id)
    history = await service.get_vehicle_location_history(vehicle_id, start_time, end_time)
    return [_history_response(row) for row in history]


@router.get("/vehicles-in-area")
async def get_vehicles_in_area(
    latitude: float = Query(...),
    longitude: float = Query(...),
    radius: float = Query(..., description="Radius in miles"),
    current_user: User = Depends(get_current_organization_user),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Located vehicles within a radius of a point, nearest first"""
    if not validate_coordinates(latitude, longitude) or not radius > 0:
        raise HTTPException(status_code=400, detail="Invalid coordinates or radius")

    in_area = manager.repository.get_vehicles_in_area(
        current_user.organization_id, latitude, longitude, radius
    )
    return {
        "vehicles": [
            _vehicle_response(vehicle, distance_miles=distance).model_dump() for vehicle, distance in in_area
        ],
        "center": {"latitude": latitude, "longitude": longitude},
        "radiusMiles": radius,
    }


# ============================================================================
# SYNC
# ============================================================================


@router.post("/sync", response_model=SyncResponse)
async def trigger_sync(
    current_user: User = Depends(get_current_admin),
    manager: FleetmaticsSyncManager = Depends(get_fleetmatics_manager),
):
    """Run one synchronization pass now"""
    service = await manager.get(current_user.organization_id)
    if service.state == SyncState.DISABLED:
        raise HTTPException(status_code=400, detail=NOT_CONFIGURED)

    success = await service.sync_vehicle_locations()
    summary = service.last_sync if success else None

    return SyncResponse(
        success=success,
        message="Synchronization completed successfully"
        if success
        else "Synchronization failed or no vehicles to sync",
        syncedVehicles=summary.synced_vehicles if summary else 0,
        syncedLocations=summary.synced_locations if summary else 0,
        timestamp=summary.timestamp if summary else None,
        errors=summary.errors if summary else [],
    )
