"""
Fleetmatics API Client
Thin async wrapper over the Fleetmatics REST endpoints.
Raises on failure; FleetmaticsService decides what a failure means.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..config import FLEETMATICS_HTTP_TIMEOUT
from ..domain.fleetmatics.schemas import FleetmaticsLocation, FleetmaticsVehicle

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

TOKEN_PATH = "/auth/token"  # noqa: S105 - endpoint path
VEHICLES_PATH = "/fleet/vehicles"
LOCATIONS_PATH = "/fleet/vehicles/locations"


class FleetmaticsAPIError(Exception):
    """Non-2xx response from the Fleetmatics API"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Fleetmatics API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    token_type: str = "Bearer"


def _isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _extract_list(payload: Any, *keys: str) -> list:
    """Accept a bare list or a {"<key>": [...]} envelope"""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def _parse_rows(model: type[T], rows: list, defaults: Optional[dict] = None) -> list[T]:
    """Validate rows one by one; malformed rows are logged and skipped"""
    parsed = []
    for row in rows:
        if isinstance(row, dict) and defaults:
            row = {**defaults, **row}
        try:
            parsed.append(model.model_validate(row))
        except ValidationError as e:
            row_id = row.get("vehicleId") if isinstance(row, dict) else None
            logger.warning(
                f"⚠️ Skipping malformed Fleetmatics {model.__name__} row (vehicle {row_id}): "
                f"{e.error_count()} validation errors"
            )
    return parsed


class FleetmaticsClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = FLEETMATICS_HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        token_type: str = "Bearer",
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        headers = {"Authorization": f"{token_type} {token}"} if token else None
        response = await self._http.request(method, path, json=json, params=params, headers=headers)

        if response.status_code >= 400:
            raise FleetmaticsAPIError(response.status_code, response.text[:500])

        if not response.content:
            return None
        return response.json()

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_grant(payload: Any) -> TokenGrant:
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise FleetmaticsAPIError(200, "No access token in token response")
        return TokenGrant(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_in=int(payload.get("expires_in") or 3600),
            token_type=payload.get("token_type") or "Bearer",
        )

    async def request_token(self, api_key: str, api_secret: str) -> TokenGrant:
        """Client-credentials grant"""
        payload = await self._send(
            "POST",
            TOKEN_PATH,
            json={"apiKey": api_key, "apiSecret": api_secret, "grant_type": "client_credentials"},
        )
        return self._parse_grant(payload)

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Refresh-token grant"""
        payload = await self._send(
            "POST",
            TOKEN_PATH,
            json={"refresh_token": refresh_token, "grant_type": "refresh_token"},
        )
        return self._parse_grant(payload)

    # ------------------------------------------------------------------
    # Fleet endpoints
    # ------------------------------------------------------------------

    async def list_vehicles(self, token: str, token_type: str = "Bearer") -> list[FleetmaticsVehicle]:
        payload = await self._send("GET", VEHICLES_PATH, token=token, token_type=token_type)
        return _parse_rows(FleetmaticsVehicle, _extract_list(payload, "vehicles", "data"))

    async def vehicle_location(
        self, token: str, vehicle_id: str, token_type: str = "Bearer"
    ) -> Optional[FleetmaticsLocation]:
        payload = await self._send(
            "GET", f"{VEHICLES_PATH}/{vehicle_id}/location", token=token, token_type=token_type
        )
        if isinstance(payload, dict) and isinstance(payload.get("location"), dict):
            payload = payload["location"]
        if not payload:
            return None
        if isinstance(payload, dict):
            payload.setdefault("vehicleId", vehicle_id)
        return FleetmaticsLocation.model_validate(payload)

    async def all_locations(self, token: str, token_type: str = "Bearer") -> list[FleetmaticsLocation]:
        payload = await self._send("GET", LOCATIONS_PATH, token=token, token_type=token_type)
        return _parse_rows(FleetmaticsLocation, _extract_list(payload, "locations", "data"))

    async def vehicle_history(
        self,
        token: str,
        vehicle_id: str,
        start_time: datetime,
        end_time: datetime,
        token_type: str = "Bearer",
    ) -> list[FleetmaticsLocation]:
        payload = await self._send(
            "GET",
            f"{VEHICLES_PATH}/{vehicle_id}/history",
            token=token,
            token_type=token_type,
            params={"start_time": _isoformat(start_time), "end_time": _isoformat(end_time)},
        )
        return _parse_rows(
            FleetmaticsLocation,
            _extract_list(payload, "history", "locations", "data"),
            defaults={"vehicleId": vehicle_id},
        )
