"""
Fleetmatics REST client: request shapes, envelopes and error mapping
"""

import json
from datetime import datetime

import httpx
import pytest

from smartwater.services.fleetmatics_client import FleetmaticsAPIError, FleetmaticsClient

from .fakes import FLEET_BASE_URL, run


def _client(handler):
    return FleetmaticsClient(FLEET_BASE_URL, transport=httpx.MockTransport(handler))


async def _call(client, action):
    try:
        return await action(client)
    finally:
        await client.aclose()


def test_client_credentials_grant_body():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": 1800})

    grant = run(_call(_client(handler), lambda c: c.request_token("key", "secret")))

    assert seen["path"] == "/v1/auth/token"
    assert seen["body"] == {"apiKey": "key", "apiSecret": "secret", "grant_type": "client_credentials"}
    assert (grant.access_token, grant.refresh_token, grant.expires_in, grant.token_type) == (
        "a",
        "r",
        1800,
        "Bearer",
    )


def test_refresh_grant_body():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"access_token": "b"})

    grant = run(_call(_client(handler), lambda c: c.refresh_token("r-1")))

    assert seen["body"] == {"refresh_token": "r-1", "grant_type": "refresh_token"}
    assert grant.refresh_token is None
    assert grant.expires_in == 3600


def test_token_response_without_access_token_raises():
    handler = lambda request: httpx.Response(200, json={"error": "nope"})  # noqa: E731

    with pytest.raises(FleetmaticsAPIError):
        run(_call(_client(handler), lambda c: c.request_token("key", "secret")))


def test_error_status_raises_with_code():
    handler = lambda request: httpx.Response(503, text="maintenance")  # noqa: E731

    with pytest.raises(FleetmaticsAPIError) as exc_info:
        run(_call(_client(handler), lambda c: c.list_vehicles("t")))

    assert exc_info.value.status_code == 503
    assert exc_info.value.message == "maintenance"


@pytest.mark.parametrize(
    "payload",
    [
        [{"vehicleId": "A"}],
        {"vehicles": [{"vehicleId": "A"}]},
        {"data": [{"vehicleId": "A"}]},
    ],
)
def test_vehicle_list_envelopes(payload):
    handler = lambda request: httpx.Response(200, json=payload)  # noqa: E731

    vehicles = run(_call(_client(handler), lambda c: c.list_vehicles("t")))

    assert [v.vehicle_id for v in vehicles] == ["A"]


def test_bearer_header_uses_token_type():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"locations": []})

    run(_call(_client(handler), lambda c: c.all_locations("tok", token_type="Bearer")))

    assert seen["auth"] == "Bearer tok"


def test_location_event_time_normalized_to_naive_utc():
    payload = {"location": {"latitude": 1.5, "longitude": 2.5, "eventTime": "2026-10-17T05:00:00-07:00"}}
    handler = lambda request: httpx.Response(200, json=payload)  # noqa: E731

    location = run(_call(_client(handler), lambda c: c.vehicle_location("t", "FM-9")))

    assert location.vehicle_id == "FM-9"
    assert location.event_time == datetime(2026, 10, 17, 12, 0, 0)


def test_history_sends_iso_range():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"history": []})

    start = datetime(2026, 10, 16, 12, 0, 0)
    end = datetime(2026, 10, 17, 12, 0, 0)
    run(_call(_client(handler), lambda c: c.vehicle_history("t", "FM-1", start, end)))

    assert seen["params"] == {
        "start_time": "2026-10-16T12:00:00+00:00",
        "end_time": "2026-10-17T12:00:00+00:00",
    }


def test_malformed_location_row_is_skipped():
    payload = {
        "locations": [
            {"vehicleId": "FM-1", "latitude": 33.4, "longitude": -112.0, "eventTime": "2026-10-17T12:00:00Z"},
            {"vehicleId": "FM-2", "latitude": None, "longitude": None, "eventTime": "2026-10-17T12:00:00Z"},
            {"vehicleId": "FM-3", "latitude": 33.5, "longitude": -112.1},
        ]
    }
    handler = lambda request: httpx.Response(200, json=payload)  # noqa: E731

    locations = run(_call(_client(handler), lambda c: c.all_locations("t")))

    assert [loc.vehicle_id for loc in locations] == ["FM-1"]


def test_malformed_vehicle_row_is_skipped():
    payload = {"vehicles": [{"vehicleId": "A"}, {"name": "no id"}, {"vehicleId": "B"}]}
    handler = lambda request: httpx.Response(200, json=payload)  # noqa: E731

    vehicles = run(_call(_client(handler), lambda c: c.list_vehicles("t")))

    assert [v.vehicle_id for v in vehicles] == ["A", "B"]


def test_history_rows_default_to_requested_vehicle():
    payload = {
        "history": [
            {"latitude": 1.0, "longitude": 2.0, "eventTime": "2026-10-17T10:00:00Z"},
            {"latitude": "north", "longitude": 2.0, "eventTime": "2026-10-17T11:00:00Z"},
        ]
    }
    handler = lambda request: httpx.Response(200, json=payload)  # noqa: E731
    start = datetime(2026, 10, 17, 0, 0, 0)

    history = run(_call(_client(handler), lambda c: c.vehicle_history("t", "FM-7", start, start)))

    assert [(loc.vehicle_id, loc.latitude) for loc in history] == [("FM-7", 1.0)]
