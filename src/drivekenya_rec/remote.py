"""
DataAccess backed by the DriveKenya REST API.

Lets the engine run next to (rather than inside) the main backend: every
contract operation maps to one HTTP call. Transport errors are retried with
backoff; any other failure surfaces as DataAccessError.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from .config import API_BASE_URL, HTTP_TIMEOUT, MAX_HTTP_RETRIES, MAX_SEARCHES_CONSIDERED
from .data_access import (
    CandidateItem,
    DataAccess,
    DataAccessError,
    PeerCoBooking,
    PeerItemAggregate,
    SearchRecord,
    UserAggregates,
)
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)


def _unwrap(payload: Any, key: str) -> Any:
    """Accept both bare payloads and the backend's ``{"success": true, key: ...}`` envelope."""
    if isinstance(payload, dict) and key in payload:
        return payload[key]
    return payload


class HttpDataAccess(DataAccess):
    """Async REST client; use as an async context manager or pass a client in."""

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        client: httpx.AsyncClient | None = None,
        timeout: float = HTTP_TIMEOUT,
        token: str | None = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.token = token
        self.client = client
        self._owns_client = client is None

    async def __aenter__(self):
        if self.client is None:
            headers = {"User-Agent": "drivekenya-rec/1.0"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None
        return False

    def _url(self, path: str) -> str:
        # An injected client may not carry base_url
        if self.client is not None and str(self.client.base_url):
            return path
        return f"{self.base_url}{path}"

    @async_retry_with_backoff(max_retries=MAX_HTTP_RETRIES, initial_delay=0.5, exceptions=(httpx.TransportError,))
    async def _request(self, method: str, path: str, allow_404: bool = False, **kwargs) -> Any:
        if self.client is None:
            raise RuntimeError("HttpDataAccess must be used as an async context manager or given a client")

        resp = await self.client.request(method, self._url(path), **kwargs)
        if allow_404 and resp.status_code == 404:
            return None
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DataAccessError(f"{method} {path} returned HTTP {resp.status_code}") from exc

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise DataAccessError(f"{method} {path} returned invalid JSON") from exc

    async def get_user_aggregates(self, user_id: Any) -> UserAggregates:
        payload = await self._request("GET", f"/users/{user_id}/aggregates", allow_404=True)
        if payload is None:
            logger.debug(f"User {user_id} not found remotely; using empty aggregates")
        return UserAggregates.from_row(user_id, _unwrap(payload, 'aggregates'))

    async def get_user_recent_searches(
        self, user_id: Any, max_results: int = MAX_SEARCHES_CONSIDERED
    ) -> list[SearchRecord]:
        payload = await self._request("GET", f"/users/{user_id}/searches", params={"limit": max_results})
        return [SearchRecord.from_row(r) for r in (_unwrap(payload, 'searches') or [])][:max_results]

    async def get_available_candidates(
        self,
        location_hint: str | None,
        date_range: tuple[date, date] | None = None,
    ) -> list[CandidateItem]:
        params = {}
        if location_hint:
            params["location"] = location_hint
        if date_range:
            params["pickup_date"] = date_range[0].isoformat()
            params["return_date"] = date_range[1].isoformat()
        payload = await self._request("GET", "/cars/available", params=params)
        return [CandidateItem.from_row(r) for r in (_unwrap(payload, 'cars') or [])]

    async def get_peer_co_bookings(self, user_id: Any) -> list[PeerCoBooking]:
        payload = await self._request("GET", f"/users/{user_id}/co-bookings")
        return [PeerCoBooking.from_row(r) for r in (_unwrap(payload, 'peers') or [])]

    async def get_peer_item_aggregates(
        self, peer_user_ids: list[Any], car_ids: list[Any]
    ) -> list[PeerItemAggregate]:
        if not peer_user_ids or not car_ids:
            return []
        payload = await self._request(
            "POST",
            "/recommendations/peer-aggregates",
            json={"peer_user_ids": list(peer_user_ids), "car_ids": list(car_ids)},
        )
        return [PeerItemAggregate.from_row(r) for r in (_unwrap(payload, 'aggregates') or [])]

    async def record_feedback(self, user_id: Any, car_id: Any, feedback: float) -> None:
        await self._request(
            "POST",
            "/recommendations/feedback",
            json={"userId": user_id, "carId": car_id, "feedback": feedback},
        )
