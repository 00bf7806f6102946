import os

# Configure before the application modules read the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FLEETMATICS_AUTOSTART"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("EMAIL_PROVIDER", "")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from smartwater import models_fleetmatics  # noqa: E402, F401
from smartwater.database import Base  # noqa: E402
from smartwater.domain.fleetmatics.repository import FleetmaticsRepository  # noqa: E402
from smartwater.models import Organization, Technician, TechnicianVehicle, User  # noqa: E402
from smartwater.models_fleetmatics import FleetmaticsConfig  # noqa: E402
from smartwater.security_utils import encrypt_token  # noqa: E402
from smartwater.services.fleetmatics_service import FleetmaticsService  # noqa: E402

from .fakes import FLEET_BASE_URL, FakeFleetmatics  # noqa: E402


@pytest.fixture
def session_factory(tmp_path):
    # File database: repository calls run in worker threads, each on its own connection
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fleet.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def org(session_factory):
    """Two organizations; the first has a technician, two vehicles and a Fleetmatics config"""
    db = session_factory()
    try:
        organization = Organization(name="Desert Pools")
        other = Organization(name="Coastal Pools")
        db.add_all([organization, other])
        db.flush()

        technician = Technician(organization_id=organization.id, name="Dana Reyes")
        other_technician = Technician(organization_id=other.id, name="Sam Ortiz")
        db.add_all([technician, other_technician])
        db.flush()

        truck = TechnicianVehicle(technician_id=technician.id, name="Truck 1", make="Ford")
        van = TechnicianVehicle(technician_id=technician.id, name="Van 2", make="Ram")
        foreign = TechnicianVehicle(technician_id=other_technician.id, name="Other Truck")
        db.add_all([truck, van, foreign])
        db.flush()

        config = FleetmaticsConfig(
            organization_id=organization.id,
            api_key="key-1",
            api_secret=encrypt_token("secret-1"),
            base_url=FLEET_BASE_URL,
            is_active=False,
            sync_frequency_minutes=15,
        )
        db.add(config)
        db.commit()

        return {
            "organization_id": organization.id,
            "other_organization_id": other.id,
            "technician_id": technician.id,
            "truck_id": truck.id,
            "van_id": van.id,
            "foreign_vehicle_id": foreign.id,
            "config_id": config.id,
        }
    finally:
        db.close()


@pytest.fixture
def fake():
    return FakeFleetmatics()


@pytest.fixture
def repository(session_factory):
    return FleetmaticsRepository(session_factory)


@pytest.fixture
def make_service(repository, org, fake):
    def _make(organization_id=None, transport=None, clock=None):
        kwargs = {"transport": transport or fake.transport}
        if clock:
            kwargs["clock"] = clock
        return FleetmaticsService(organization_id or org["organization_id"], repository, **kwargs)

    return _make


@pytest.fixture
def set_mapping(session_factory):
    def _set(vehicle_id, fleetmatics_vehicle_id):
        db = session_factory()
        try:
            vehicle = db.query(TechnicianVehicle).filter(TechnicianVehicle.id == vehicle_id).first()
            vehicle.fleetmatics_vehicle_id = fleetmatics_vehicle_id
            db.commit()
        finally:
            db.close()

    return _set


@pytest.fixture
def admin_user(org):
    return User(
        id=1,
        firebase_uid="admin-uid",
        email="admin@desertpools.test",
        full_name="Pat Admin",
        organization_id=org["organization_id"],
        role="admin",
    )
