"""
Vehicle mapping, unmapping and stored-location reads
"""

from datetime import datetime, timedelta

from smartwater.models_fleetmatics import FleetmaticsLocationHistory

from .fakes import run


def _history_count(session_factory, vehicle_id):
    db = session_factory()
    try:
        return (
            db.query(FleetmaticsLocationHistory)
            .filter(FleetmaticsLocationHistory.vehicle_id == vehicle_id)
            .count()
        )
    finally:
        db.close()


async def _with_service(service, action):
    try:
        await service.initialize()
        return await action(service)
    finally:
        await service.close()


class TestMapVehicle:
    def test_unknown_external_vehicle_is_rejected_without_writes(
        self, make_service, repository, session_factory, org
    ):
        result = run(_with_service(make_service(), lambda s: s.map_vehicle(org["truck_id"], "FM-404")))

        assert result is None
        truck = repository.get_technician_vehicle(org["truck_id"])
        assert truck.fleetmatics_vehicle_id is None
        assert _history_count(session_factory, org["truck_id"]) == 0

    def test_mapping_stores_current_position(self, make_service, session_factory, org):
        mapped = run(_with_service(make_service(), lambda s: s.map_vehicle(org["truck_id"], "FM-1")))

        assert mapped.fleetmatics_vehicle_id == "FM-1"
        assert mapped.last_known_latitude == 33.4484
        assert mapped.last_location_update == datetime(2026, 10, 17, 12, 0, 0)
        assert _history_count(session_factory, org["truck_id"]) == 1

    def test_numeric_external_ids_match_as_strings(self, make_service, org):
        mapped = run(_with_service(make_service(), lambda s: s.map_vehicle(org["van_id"], "3")))

        assert mapped.fleetmatics_vehicle_id == "3"
        assert mapped.last_known_latitude == 33.5

    def test_mapping_without_reported_position_keeps_location_empty(
        self, make_service, session_factory, org
    ):
        mapped = run(_with_service(make_service(), lambda s: s.map_vehicle(org["van_id"], "FM-2")))

        assert mapped.fleetmatics_vehicle_id == "FM-2"
        assert mapped.last_known_latitude is None
        assert _history_count(session_factory, org["van_id"]) == 0

    def test_vehicle_of_another_organization_cannot_be_mapped(self, make_service, repository, org):
        result = run(
            _with_service(make_service(), lambda s: s.map_vehicle(org["foreign_vehicle_id"], "FM-1"))
        )

        assert result is None
        assert repository.get_technician_vehicle(org["foreign_vehicle_id"]).fleetmatics_vehicle_id is None


class TestUnmapVehicle:
    def test_unmap_clears_link_and_keeps_history(self, make_service, session_factory, org):
        async def map_then_unmap(service):
            await service.map_vehicle(org["truck_id"], "FM-1")
            return await service.unmap_vehicle(org["truck_id"])

        unmapped = run(_with_service(make_service(), map_then_unmap))

        assert unmapped.fleetmatics_vehicle_id is None
        assert unmapped.gps_device_id is None
        assert _history_count(session_factory, org["truck_id"]) == 1

    def test_unmap_unknown_vehicle_returns_none(self, make_service):
        assert run(_with_service(make_service(), lambda s: s.unmap_vehicle(999))) is None


class TestStoredLocations:
    def test_latest_locations_only_include_mapped_vehicles(self, make_service, org):
        async def map_and_read(service):
            await service.map_vehicle(org["truck_id"], "FM-1")
            return await service.get_latest_vehicle_locations()

        positions = run(_with_service(make_service(), map_and_read))

        assert [(vehicle.id, last_update) for vehicle, last_update in positions] == [
            (org["truck_id"], datetime(2026, 10, 17, 12, 0, 0))
        ]

    def test_history_reads_stored_rows_in_range(self, make_service, fake, org):
        start = datetime(2026, 10, 17, 0, 0, 0)
        end = start + timedelta(days=1)

        async def map_and_read(service):
            await service.map_vehicle(org["truck_id"], "FM-1")
            return await service.get_vehicle_location_history(org["truck_id"], start, end)

        history = run(_with_service(make_service(), map_and_read))

        assert [row.fleetmatics_event_id for row in history] == ["evt-1"]
        assert fake.count("/fleet/vehicles/FM-1/history") == 0

    def test_history_backfills_from_api_when_nothing_stored(self, make_service, fake, set_mapping, org):
        set_mapping(org["van_id"], "FM-2")
        fake.history["FM-2"] = [
            {"latitude": 33.1, "longitude": -111.9, "eventTime": "2026-10-17T08:00:00Z", "eventId": "h-1"},
            {"latitude": 33.2, "longitude": -111.8, "eventTime": "2026-10-17T07:00:00Z", "eventId": "h-0"},
        ]
        start = datetime(2026, 10, 17, 0, 0, 0)
        end = start + timedelta(days=1)

        history = run(
            _with_service(
                make_service(), lambda s: s.get_vehicle_location_history(org["van_id"], start, end)
            )
        )

        assert [row.fleetmatics_event_id for row in history] == ["h-0", "h-1"]
        assert fake.count("/fleet/vehicles/FM-2/history") == 1

    def test_history_of_unmapped_vehicle_is_empty(self, make_service, org):
        start = datetime(2026, 10, 17, 0, 0, 0)
        history = run(
            _with_service(
                make_service(),
                lambda s: s.get_vehicle_location_history(org["truck_id"], start, start + timedelta(days=1)),
            )
        )
        assert history == []
