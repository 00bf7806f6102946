"""
Fleetmatics Integration Models
Per-organization OAuth credentials and the GPS location history time series
"""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class FleetmaticsConfig(Base):
    __tablename__ = "fleetmatics_configs"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, unique=True)

    # API credentials
    api_key = Column(String(255), nullable=False)
    api_secret = Column(Text, nullable=True)  # Encrypted
    account_id = Column(String(255), nullable=True)
    base_url = Column(String(500), nullable=False)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_type = Column(String(50), default="Bearer")
    token_expiry_time = Column(DateTime, nullable=True)

    # Sync settings
    last_sync_time = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=False)
    sync_frequency_minutes = Column(Integer, default=15)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class FleetmaticsLocationHistory(Base):
    """Append-only; rows survive unmapping of the vehicle"""

    __tablename__ = "fleetmatics_location_history"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("technician_vehicles.id"), nullable=False, index=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    event_time = Column(DateTime, nullable=False, index=True)
    address = Column(String(500), nullable=True)
    speed = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    ignition_status = Column(String(20), nullable=True)
    odometer = Column(Float, nullable=True)
    fleetmatics_event_id = Column(String(100), nullable=True)
    event_type = Column(String(50), default="position")
    created_at = Column(DateTime, server_default=func.now())

    vehicle = relationship("TechnicianVehicle")
