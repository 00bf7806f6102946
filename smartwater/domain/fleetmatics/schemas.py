"""Fleetmatics domain schemas - external payloads and API request/response models"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ============================================================================
# EXTERNAL API PAYLOADS
# ============================================================================


class FleetmaticsVehicle(BaseModel):
    """A vehicle as reported by the Fleetmatics API"""

    model_config = ConfigDict(populate_by_name=True)

    vehicle_id: str = Field(alias="vehicleId")
    name: Optional[str] = None
    registration: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = None
    status: Optional[str] = None

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def coerce_vehicle_id(cls, v):
        return str(v) if v is not None else v


class FleetmaticsLocation(BaseModel):
    """A position fix as reported by the Fleetmatics API"""

    model_config = ConfigDict(populate_by_name=True)

    vehicle_id: str = Field(alias="vehicleId")
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    event_time: datetime = Field(alias="eventTime")
    address: Optional[str] = None
    ignition_status: Optional[str] = Field(default=None, alias="ignitionStatus")
    odometer: Optional[float] = None
    event_id: Optional[str] = Field(default=None, alias="eventId")

    @field_validator("vehicle_id", "event_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return str(v) if v is not None else v

    @field_validator("event_time")
    @classmethod
    def normalize_event_time(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


# ============================================================================
# REQUEST SCHEMAS
# ============================================================================


class FleetmaticsConfigCreate(BaseModel):
    """Schema for creating an organization's Fleetmatics configuration"""

    apiKey: str
    apiSecret: str
    accountId: Optional[str] = None
    baseUrl: Optional[str] = None
    isActive: bool = False
    syncFrequencyMinutes: Optional[int] = None

    @field_validator("apiKey", "apiSecret")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("API credentials are required")
        return v.strip()

    @field_validator("syncFrequencyMinutes")
    @classmethod
    def validate_frequency(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("syncFrequencyMinutes must be at least 1")
        return v


class FleetmaticsConfigUpdate(BaseModel):
    """Schema for updating a Fleetmatics configuration; omitted fields are untouched"""

    apiKey: Optional[str] = None
    apiSecret: Optional[str] = None
    accountId: Optional[str] = None
    baseUrl: Optional[str] = None
    isActive: Optional[bool] = None
    syncFrequencyMinutes: Optional[int] = None

    @field_validator("syncFrequencyMinutes")
    @classmethod
    def validate_frequency(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("syncFrequencyMinutes must be at least 1")
        return v


class MapVehicleRequest(BaseModel):
    technicianVehicleId: int
    fleetmaticsVehicleId: str

    @field_validator("fleetmaticsVehicleId", mode="before")
    @classmethod
    def validate_external_id(cls, v):
        if v is None or str(v).strip() == "":
            raise ValueError("fleetmaticsVehicleId is required")
        return str(v).strip()


# ============================================================================
# RESPONSE SCHEMAS
# ============================================================================


class FleetmaticsConfigResponse(BaseModel):
    """Configuration with secrets masked"""

    id: int
    organizationId: int
    apiKey: Optional[str]
    apiSecret: Optional[str]
    accountId: Optional[str]
    baseUrl: str
    accessToken: Optional[str]
    refreshToken: Optional[str]
    tokenExpiryTime: Optional[datetime]
    lastSyncTime: Optional[datetime]
    isActive: bool
    syncFrequencyMinutes: int
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class TechnicianVehicleResponse(BaseModel):
    id: int
    technicianId: int
    name: str
    type: Optional[str] = None
    status: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    licensePlate: Optional[str] = None
    vin: Optional[str] = None
    fleetmaticsVehicleId: Optional[str] = None
    gpsDeviceId: Optional[str] = None
    lastKnownLatitude: Optional[float] = None
    lastKnownLongitude: Optional[float] = None
    lastLocationUpdate: Optional[datetime] = None
    lastUpdate: Optional[datetime] = None
    distanceMiles: Optional[float] = None


class LocationHistoryResponse(BaseModel):
    id: int
    vehicleId: int
    latitude: float
    longitude: float
    eventTime: datetime
    address: Optional[str] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    ignitionStatus: Optional[str] = None
    odometer: Optional[float] = None
    fleetmaticsEventId: Optional[str] = None
    eventType: Optional[str] = None


class SyncResponse(BaseModel):
    success: bool
    message: str
    syncedVehicles: int = 0
    syncedLocations: int = 0
    timestamp: Optional[datetime] = None
    errors: list[str] = []
