from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

ADMIN_ROLES = ("admin", "system_admin")


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    users = relationship("User", back_populates="organization")
    technicians = relationship("Technician", back_populates="organization")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    firebase_uid = Column(String(255), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True, index=True)
    role = Column(String(50), default="client", nullable=False)  # admin, system_admin, manager, technician, client
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    organization = relationship("Organization", back_populates="users")

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


class Technician(Base):
    __tablename__ = "technicians"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    name = Column(String(255), nullable=False)
    active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())

    organization = relationship("Organization", back_populates="technicians")
    vehicles = relationship("TechnicianVehicle", back_populates="technician")


class TechnicianVehicle(Base):
    __tablename__ = "technician_vehicles"

    id = Column(Integer, primary_key=True, index=True)
    technician_id = Column(Integer, ForeignKey("technicians.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(50), default="truck")
    status = Column(String(50), default="active")
    make = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    year = Column(Integer, nullable=True)
    license_plate = Column(String(50), nullable=True)
    vin = Column(String(50), nullable=True)
    notes = Column(Text, nullable=True)

    # External GPS mapping - a vehicle maps to at most one Fleetmatics vehicle
    fleetmatics_vehicle_id = Column(String(100), nullable=True, index=True)
    gps_device_id = Column(String(100), nullable=True)

    # Last known position, written by the sync loop
    last_known_latitude = Column(Float, nullable=True)
    last_known_longitude = Column(Float, nullable=True)
    last_location_update = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    technician = relationship("Technician", back_populates="vehicles")
