"""Fleetmatics repository - Database operations for GPS configs, vehicles and history"""

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from ...database import SessionLocal
from ...models import Technician, TechnicianVehicle
from ...models_fleetmatics import FleetmaticsConfig, FleetmaticsLocationHistory
from ...shared.geo import haversine_miles


class FleetmaticsRepository:
    """
    Storage for the Fleetmatics integration.

    The sync loop outlives any request, so every call opens and closes its own
    session. Returned rows are detached with their columns loaded.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _vehicles_for_org(db: Session, organization_id: int):
        return (
            db.query(TechnicianVehicle)
            .join(Technician, TechnicianVehicle.technician_id == Technician.id)
            .filter(Technician.organization_id == organization_id)
        )

    # Config
    def get_config_by_organization_id(self, organization_id: int) -> Optional[FleetmaticsConfig]:
        with self._session() as db:
            return (
                db.query(FleetmaticsConfig)
                .filter(FleetmaticsConfig.organization_id == organization_id)
                .first()
            )

    def get_config(self, config_id: int) -> Optional[FleetmaticsConfig]:
        with self._session() as db:
            return db.query(FleetmaticsConfig).filter(FleetmaticsConfig.id == config_id).first()

    def list_active_configs(self) -> list[FleetmaticsConfig]:
        with self._session() as db:
            return db.query(FleetmaticsConfig).filter(FleetmaticsConfig.is_active.is_(True)).all()

    def create_config(self, organization_id: int, **config_data) -> FleetmaticsConfig:
        with self._session() as db:
            config = FleetmaticsConfig(organization_id=organization_id, **config_data)
            db.add(config)
            db.commit()
            db.refresh(config)
            return config

    def update_config(self, config_id: int, **updates) -> Optional[FleetmaticsConfig]:
        """Apply updates as given; None values clear the column"""
        with self._session() as db:
            config = db.query(FleetmaticsConfig).filter(FleetmaticsConfig.id == config_id).first()
            if not config:
                return None
            for key, value in updates.items():
                if hasattr(config, key):
                    setattr(config, key, value)
            db.commit()
            db.refresh(config)
            return config

    # Technician vehicles
    def get_technician_vehicle(
        self, vehicle_id: int, organization_id: Optional[int] = None
    ) -> Optional[TechnicianVehicle]:
        with self._session() as db:
            if organization_id is None:
                query = db.query(TechnicianVehicle)
            else:
                query = self._vehicles_for_org(db, organization_id)
            return query.filter(TechnicianVehicle.id == vehicle_id).first()

    def get_technician_vehicles(self, organization_id: int) -> list[TechnicianVehicle]:
        with self._session() as db:
            return self._vehicles_for_org(db, organization_id).order_by(TechnicianVehicle.name).all()

    def get_mapped_vehicles(self, organization_id: int) -> list[TechnicianVehicle]:
        """Vehicles of the organization linked to a Fleetmatics vehicle"""
        with self._session() as db:
            return (
                self._vehicles_for_org(db, organization_id)
                .filter(TechnicianVehicle.fleetmatics_vehicle_id.isnot(None))
                .filter(TechnicianVehicle.fleetmatics_vehicle_id != "")
                .all()
            )

    def update_technician_vehicle(self, vehicle_id: int, **updates) -> Optional[TechnicianVehicle]:
        """Apply updates as given; None values clear the column"""
        with self._session() as db:
            vehicle = db.query(TechnicianVehicle).filter(TechnicianVehicle.id == vehicle_id).first()
            if not vehicle:
                return None
            for key, value in updates.items():
                if hasattr(vehicle, key):
                    setattr(vehicle, key, value)
            db.commit()
            db.refresh(vehicle)
            return vehicle

    def get_vehicles_in_area(
        self, organization_id: int, latitude: float, longitude: float, radius_miles: float
    ) -> list[tuple[TechnicianVehicle, float]]:
        """Located vehicles within radius, nearest first, with their distance in miles"""
        with self._session() as db:
            vehicles = (
                self._vehicles_for_org(db, organization_id)
                .filter(TechnicianVehicle.last_known_latitude.isnot(None))
                .filter(TechnicianVehicle.last_known_longitude.isnot(None))
                .all()
            )

        in_area = []
        for vehicle in vehicles:
            distance = haversine_miles(
                latitude, longitude, vehicle.last_known_latitude, vehicle.last_known_longitude
            )
            if distance <= radius_miles:
                in_area.append((vehicle, distance))
        in_area.sort(key=lambda item: item[1])
        return in_area

    # Location history
    def create_location_history(self, vehicle_id: int, **location_data) -> FleetmaticsLocationHistory:
        with self._session() as db:
            row = FleetmaticsLocationHistory(vehicle_id=vehicle_id, **location_data)
            db.add(row)
            db.commit()
            db.refresh(row)
            return row

    def get_location_history(
        self, vehicle_id: int, start_time: datetime, end_time: datetime
    ) -> list[FleetmaticsLocationHistory]:
        with self._session() as db:
            return (
                db.query(FleetmaticsLocationHistory)
                .filter(
                    FleetmaticsLocationHistory.vehicle_id == vehicle_id,
                    FleetmaticsLocationHistory.event_time >= start_time,
                    FleetmaticsLocationHistory.event_time <= end_time,
                )
                .order_by(FleetmaticsLocationHistory.event_time.asc())
                .all()
            )

    def get_latest_location_by_vehicle_id(self, vehicle_id: int) -> Optional[FleetmaticsLocationHistory]:
        with self._session() as db:
            return (
                db.query(FleetmaticsLocationHistory)
                .filter(FleetmaticsLocationHistory.vehicle_id == vehicle_id)
                .order_by(FleetmaticsLocationHistory.event_time.desc())
                .first()
            )
