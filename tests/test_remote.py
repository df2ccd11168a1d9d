import json
from datetime import date

import httpx
import pytest

from drivekenya_rec.data_access import DataAccessError
from drivekenya_rec.recommender import HybridRecommender
from drivekenya_rec.remote import HttpDataAccess
from drivekenya_rec.weights import BlendWeights

BASE_URL = "http://api.test/api"

CARS = [
    {'id': 1, 'make': 'Toyota', 'model': 'Prado', 'category': 'suv', 'price_per_hour': '150.00',
     'rating': 4.8, 'booking_count': 12, 'location': 'Nairobi', 'location_match': 1},
    {'id': 2, 'make': 'Mazda', 'model': 'Demio', 'category': 'economy', 'price_per_hour': 40,
     'rating': None, 'booking_count': 0, 'location': 'Mombasa', 'location_match': 0},
]


def _api_handler(seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        path = request.url.path
        if path == "/api/users/1/aggregates":
            return httpx.Response(200, json={
                "success": True,
                "aggregates": {"age": 30, "total_bookings": 2, "preferred_categories": "suv,economy"},
            })
        if path == "/api/users/404/aggregates":
            return httpx.Response(404, json={"success": False})
        if path == "/api/users/1/searches":
            return httpx.Response(200, json={"searches": [
                {"category": "suv", "location": "Nairobi", "created_at": "2025-05-03T09:00:00"},
            ]})
        if path == "/api/cars/available":
            return httpx.Response(200, json={"success": True, "cars": CARS})
        if path == "/api/users/1/co-bookings":
            return httpx.Response(200, json={"peers": [{"user_id": 7, "common_cars": 3}]})
        if path == "/api/recommendations/peer-aggregates":
            return httpx.Response(200, json={"aggregates": [{"car_id": 1, "booking_count": 4, "avg_rating": 4.5}]})
        if path == "/api/recommendations/feedback":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(500, json={"error": "unexpected"})
    return handler


@pytest.mark.asyncio
async def test_reads_map_to_endpoints_and_unwrap_envelopes():
    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_api_handler(seen)), base_url=BASE_URL) as client:
        data = HttpDataAccess(BASE_URL, client=client)

        agg = await data.get_user_aggregates(1)
        searches = await data.get_user_recent_searches(1, max_results=5)
        cars = await data.get_available_candidates('Nairobi', (date(2025, 7, 1), date(2025, 7, 3)))
        peers = await data.get_peer_co_bookings(1)
        aggregates = await data.get_peer_item_aggregates([7], [1, 2])

    assert agg.total_bookings == 2
    assert agg.preferred_categories == ['suv', 'economy']
    assert searches[0].location == 'Nairobi'
    assert [c.id for c in cars] == [1, 2]
    assert cars[0].price_per_hour == 150.0
    assert cars[0].location_match is True
    assert [(p.user_id, p.common_cars) for p in peers] == [(7, 3)]
    assert aggregates[0].avg_rating == 4.5

    search_request = seen[1]
    assert search_request.url.params["limit"] == "5"
    cars_request = seen[2]
    assert cars_request.url.params["location"] == "Nairobi"
    assert cars_request.url.params["pickup_date"] == "2025-07-01"
    assert cars_request.url.params["return_date"] == "2025-07-03"
    assert json.loads(seen[4].content) == {"peer_user_ids": [7], "car_ids": [1, 2]}


@pytest.mark.asyncio
async def test_unknown_user_is_empty_aggregates():
    async with httpx.AsyncClient(transport=httpx.MockTransport(_api_handler()), base_url=BASE_URL) as client:
        agg = await HttpDataAccess(BASE_URL, client=client).get_user_aggregates(404)
    assert agg.total_bookings == 0


@pytest.mark.asyncio
async def test_client_without_base_url_gets_full_urls():
    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_api_handler(seen))) as client:
        cars = await HttpDataAccess(BASE_URL, client=client).get_available_candidates(None)

    assert len(cars) == 2
    assert str(seen[0].url) == f"{BASE_URL}/cars/available"


@pytest.mark.asyncio
async def test_server_error_raises_data_access_error():
    def handler(request):
        return httpx.Response(503, text="maintenance")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL) as client:
        with pytest.raises(DataAccessError):
            await HttpDataAccess(BASE_URL, client=client).get_peer_co_bookings(1)


@pytest.mark.asyncio
async def test_invalid_json_raises_data_access_error():
    def handler(request):
        return httpx.Response(200, text="<html>not json</html>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL) as client:
        with pytest.raises(DataAccessError):
            await HttpDataAccess(BASE_URL, client=client).get_available_candidates(None)


@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    attempts = {"count": 0}

    def handler(request):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"peers": []})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL) as client:
        peers = await HttpDataAccess(BASE_URL, client=client).get_peer_co_bookings(1)

    assert peers == []
    assert attempts["count"] == 2


@pytest.mark.asyncio
async def test_peer_aggregates_skip_request_when_nothing_to_ask():
    def handler(request):
        raise AssertionError("no request expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL) as client:
        assert await HttpDataAccess(BASE_URL, client=client).get_peer_item_aggregates([], [1]) == []


@pytest.mark.asyncio
async def test_record_feedback_posts_payload():
    seen = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_api_handler(seen)), base_url=BASE_URL) as client:
        await HttpDataAccess(BASE_URL, client=client).record_feedback(1, 2, -1)

    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"userId": 1, "carId": 2, "feedback": -1}


@pytest.mark.asyncio
async def test_requires_client():
    with pytest.raises(RuntimeError):
        await HttpDataAccess(BASE_URL).get_peer_co_bookings(1)


@pytest.mark.asyncio
async def test_context_manager_builds_client(monkeypatch):
    original_async_client = httpx.AsyncClient
    transport = httpx.MockTransport(_api_handler())
    monkeypatch.setattr(httpx, "AsyncClient", lambda **kwargs: original_async_client(transport=transport, **kwargs))

    async with HttpDataAccess(BASE_URL, token="secret") as data:
        assert data.client.headers["Authorization"] == "Bearer secret"
        cars = await data.get_available_candidates(None)

    assert len(cars) == 2
    assert data.client is None


@pytest.mark.asyncio
async def test_engine_over_http():
    async with httpx.AsyncClient(transport=httpx.MockTransport(_api_handler()), base_url=BASE_URL) as client:
        data = HttpDataAccess(BASE_URL, client=client)
        results = await HybridRecommender(weights=BlendWeights()).recommend(1, {'location': 'Nairobi'}, data)

    assert [r.car.id for r in results][0] == 1
    assert len(results) == 2
    assert results[0].components['collaborative'] == pytest.approx(min(4 / 10 * 4.5 / 5, 1.0))
    assert results[1].components['collaborative'] == pytest.approx(0.3)
