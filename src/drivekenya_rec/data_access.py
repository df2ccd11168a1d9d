"""
Data-access contract consumed by the recommendation engine.

The engine never talks to storage directly. Everything it needs per request
(user aggregates, recent searches, available cars, co-booking peers and their
booking aggregates) comes through a DataAccess implementation. Records are
plain dataclasses with explicit optional fields; ``from_row`` constructors
accept the loosely-typed mappings that databases and JSON APIs hand back.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from statistics import mean
from typing import Any, Mapping

from .config import (
    AVAILABLE_STATUS,
    BLOCKING_BOOKING_STATUSES,
    MAX_PEERS,
    MAX_SEARCHES_CONSIDERED,
    MIN_COMMON_CARS,
)
from .utils import parse_date, utcnow_naive

logger = logging.getLogger(__name__)


class DataAccessError(RuntimeError):
    """Raised when a data source cannot satisfy a contract operation."""


def _float_or_none(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _flag(value: Any) -> bool:
    """Truthiness for 0/1 columns and JSON values; "0", "false", "no" are False."""
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off", "null", "none")
    return bool(value)


def _split_categories(value: Any) -> list[str]:
    """Accept a GROUP_CONCAT string or a list; drop blanks, keep order."""
    if not value:
        return []
    if isinstance(value, str):
        items = value.split(',')
    else:
        items = list(value)
    return [str(item).strip() for item in items if item and str(item).strip()]


@dataclass
class UserAggregates:
    """Booking/review statistics for a single user."""
    user_id: Any
    age: float | None = None
    total_bookings: int = 0
    avg_spending: float | None = None
    avg_duration: float | None = None
    preferred_categories: list[str] = field(default_factory=list)
    given_rating: float | None = None
    received_rating: float | None = None
    preferred_location: str | None = None

    @classmethod
    def from_row(cls, user_id: Any, row: Mapping[str, Any] | None) -> "UserAggregates":
        if not row:
            return cls(user_id=user_id)
        data = dict(row)
        return cls(
            user_id=user_id,
            age=_float_or_none(data.get('age')),
            total_bookings=int(data.get('total_bookings') or 0),
            avg_spending=_float_or_none(data.get('avg_spending')),
            avg_duration=_float_or_none(data.get('avg_duration')),
            preferred_categories=_split_categories(data.get('preferred_categories')),
            given_rating=_float_or_none(data.get('given_rating')),
            received_rating=_float_or_none(data.get('received_rating')),
            preferred_location=data.get('preferred_location') or None,
        )


@dataclass
class SearchRecord:
    """One past search: what the user asked for and when."""
    category: str | None = None
    price_range: str | None = None
    location: str | None = None
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SearchRecord":
        data = dict(row)
        created_at = data.get('created_at')
        return cls(
            category=data.get('category') or None,
            price_range=data.get('price_range') or None,
            location=data.get('location') or None,
            created_at=created_at.isoformat() if isinstance(created_at, datetime) else created_at,
        )


@dataclass
class CandidateItem:
    """A rentable car with its embedded rating/booking aggregates."""
    id: Any
    make: str | None = None
    model: str | None = None
    category: str | None = None
    price_per_hour: float | None = None
    fuel_efficiency: float | None = None
    rating: float | None = None
    review_count: int = 0
    booking_count: int | None = None
    availability_score: float | None = None
    location: str | None = None
    location_match: bool = False
    has_promotion: bool = False
    created_at: str | datetime | None = None
    status: str = AVAILABLE_STATUS

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CandidateItem":
        data = dict(row)
        booking_count = data.get('booking_count')
        return cls(
            id=data['id'],
            make=data.get('make'),
            model=data.get('model'),
            category=data.get('category'),
            price_per_hour=_float_or_none(data.get('price_per_hour')),
            fuel_efficiency=_float_or_none(data.get('fuel_efficiency')),
            rating=_float_or_none(data.get('rating')),
            review_count=int(data.get('review_count') or 0),
            booking_count=int(booking_count) if booking_count is not None else None,
            availability_score=_float_or_none(data.get('availability_score')),
            location=data.get('location'),
            location_match=_flag(data.get('location_match')),
            has_promotion=_flag(data.get('has_promotion')),
            created_at=data.get('created_at'),
            status=data.get('status') or AVAILABLE_STATUS,
        )

    @property
    def title(self) -> str:
        name = " ".join(part for part in (self.make, self.model) if part)
        return name or f"Car {self.id}"

    def to_dict(self) -> dict[str, Any]:
        created_at = self.created_at
        return {
            'id': self.id,
            'make': self.make,
            'model': self.model,
            'category': self.category,
            'price_per_hour': self.price_per_hour,
            'fuel_efficiency': self.fuel_efficiency,
            'rating': self.rating,
            'review_count': self.review_count,
            'booking_count': self.booking_count,
            'availability_score': self.availability_score,
            'location': self.location,
            'location_match': self.location_match,
            'has_promotion': self.has_promotion,
            'created_at': created_at.isoformat() if isinstance(created_at, datetime) else created_at,
        }


@dataclass
class PeerCoBooking:
    """Another user and how many distinct cars both of you have booked."""
    user_id: Any
    common_cars: int

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PeerCoBooking":
        data = dict(row)
        return cls(user_id=data['user_id'], common_cars=int(data.get('common_cars') or 0))


@dataclass
class PeerItemAggregate:
    """How often peers booked a car and how they rated it."""
    car_id: Any
    booking_count: int
    avg_rating: float | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PeerItemAggregate":
        data = dict(row)
        return cls(
            car_id=data['car_id'],
            booking_count=int(data.get('booking_count') or 0),
            avg_rating=_float_or_none(data.get('avg_rating')),
        )


@dataclass
class RecommendationContext:
    """Situational options for a recommendation request."""
    pickup_date: date | None = None
    return_date: date | None = None
    location: str | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "RecommendationContext":
        payload = payload or {}
        return cls(
            pickup_date=parse_date(payload.get('pickup_date')),
            return_date=parse_date(payload.get('return_date')),
            location=payload.get('location') or None,
        )

    @property
    def date_range(self) -> tuple[date, date] | None:
        """The requested rental window, only when both ends are known."""
        if self.pickup_date and self.return_date:
            return self.pickup_date, self.return_date
        return None


def overlaps(existing_start: date, existing_end: date, requested_start: date, requested_end: date) -> bool:
    """Closed-interval overlap between an existing reservation and a request."""
    return existing_start <= requested_end and existing_end >= requested_start


class DataAccess(ABC):
    """Everything the engine reads (and the one write callers close the loop with)."""

    @abstractmethod
    async def get_user_aggregates(self, user_id: Any) -> UserAggregates:
        ...

    @abstractmethod
    async def get_user_recent_searches(
        self, user_id: Any, max_results: int = MAX_SEARCHES_CONSIDERED
    ) -> list[SearchRecord]:
        """Most recent searches first."""
        ...

    @abstractmethod
    async def get_available_candidates(
        self,
        location_hint: str | None,
        date_range: tuple[date, date] | None = None,
    ) -> list[CandidateItem]:
        ...

    @abstractmethod
    async def get_peer_co_bookings(self, user_id: Any) -> list[PeerCoBooking]:
        """Peers sharing at least MIN_COMMON_CARS cars, most overlap first."""
        ...

    @abstractmethod
    async def get_peer_item_aggregates(
        self, peer_user_ids: list[Any], car_ids: list[Any]
    ) -> list[PeerItemAggregate]:
        ...

    @abstractmethod
    async def record_feedback(self, user_id: Any, car_id: Any, feedback: float) -> None:
        ...


class InMemoryDataAccess(DataAccess):
    """
    DataAccess over plain lists of row dicts.

    Useful for tests, fixtures and offline evaluation. Co-booking overlap is
    computed from a binary sparse user x car matrix built once at construction.
    """

    def __init__(
        self,
        users: list[dict] | None = None,
        cars: list[dict] | None = None,
        bookings: list[dict] | None = None,
        reviews: list[dict] | None = None,
        searches: list[dict] | None = None,
    ):
        self.users = {u['id']: u for u in (users or [])}
        self.cars = list(cars or [])
        self.bookings = list(bookings or [])
        self.reviews = list(reviews or [])
        self.searches = list(searches or [])
        self.feedback: list[dict] = []

        self._cars_by_id = {c['id']: c for c in self.cars}
        self._user_index: dict[Any, int] = {}
        self._booking_matrix = None
        self._build_booking_matrix()

    def _build_booking_matrix(self) -> None:
        """Binary users x cars matrix: 1 where the user booked the car at least once."""
        from scipy.sparse import csr_matrix
        import numpy as np

        car_index: dict[Any, int] = {}
        pairs = set()
        for booking in self.bookings:
            user_idx = self._user_index.setdefault(booking['user_id'], len(self._user_index))
            car_idx = car_index.setdefault(booking['car_id'], len(car_index))
            pairs.add((user_idx, car_idx))

        shape = (len(self._user_index), len(car_index))
        if pairs:
            rows = [p[0] for p in pairs]
            cols = [p[1] for p in pairs]
            self._booking_matrix = csr_matrix(
                (np.ones(len(pairs), dtype=np.float32), (rows, cols)),
                shape=shape,
                dtype=np.float32,
            )
        else:
            self._booking_matrix = csr_matrix(shape, dtype=np.float32)
        logger.debug(
            f"Built booking matrix: {len(self._user_index)} users x {len(car_index)} cars, "
            f"{len(pairs)} distinct bookings"
        )

    def _user_bookings(self, user_id: Any) -> list[dict]:
        return [b for b in self.bookings if b['user_id'] == user_id]

    async def get_user_aggregates(self, user_id: Any) -> UserAggregates:
        user = self.users.get(user_id)
        if user is None:
            return UserAggregates(user_id=user_id)

        bookings = self._user_bookings(user_id)
        booking_ids = {b.get('id') for b in bookings}

        spending = [b['total_cost'] for b in bookings if b.get('total_cost') is not None]
        durations = []
        for b in bookings:
            start, end = parse_date(b.get('pickup_date')), parse_date(b.get('return_date'))
            if start and end:
                durations.append((end - start).days)

        categories: list[str] = []
        for b in bookings:
            category = self._cars_by_id.get(b['car_id'], {}).get('category')
            if category and category not in categories:
                categories.append(category)

        given = [r['rating'] for r in self.reviews if r.get('user_id') == user_id and r.get('rating') is not None]
        received = [
            r['rating'] for r in self.reviews
            if r.get('booking_id') in booking_ids and r.get('booking_id') is not None and r.get('rating') is not None
        ]

        return UserAggregates(
            user_id=user_id,
            age=_float_or_none(user.get('age')),
            total_bookings=len(bookings),
            avg_spending=mean(spending) if spending else None,
            avg_duration=mean(durations) if durations else None,
            preferred_categories=categories,
            given_rating=mean(given) if given else None,
            received_rating=mean(received) if received else None,
            preferred_location=user.get('preferred_location'),
        )

    async def get_user_recent_searches(
        self, user_id: Any, max_results: int = MAX_SEARCHES_CONSIDERED
    ) -> list[SearchRecord]:
        rows = [s for s in self.searches if s.get('user_id') == user_id]
        rows.sort(key=lambda s: s.get('created_at') or '', reverse=True)
        return [SearchRecord.from_row(s) for s in rows[:max_results]]

    def _is_reserved(self, car_id: Any, date_range: tuple[date, date]) -> bool:
        requested_start, requested_end = date_range
        for b in self.bookings:
            if b['car_id'] != car_id or b.get('status') not in BLOCKING_BOOKING_STATUSES:
                continue
            start, end = parse_date(b.get('pickup_date')), parse_date(b.get('return_date'))
            if start and end and overlaps(start, end, requested_start, requested_end):
                return True
        return False

    async def get_available_candidates(
        self,
        location_hint: str | None,
        date_range: tuple[date, date] | None = None,
    ) -> list[CandidateItem]:
        ratings = defaultdict(list)
        for r in self.reviews:
            if r.get('rating') is not None:
                ratings[r.get('car_id')].append(r['rating'])
        booking_counts = defaultdict(int)
        for b in self.bookings:
            booking_counts[b['car_id']] += 1

        candidates = []
        for car in self.cars:
            if car.get('status', AVAILABLE_STATUS) != AVAILABLE_STATUS:
                continue
            if date_range and self._is_reserved(car['id'], date_range):
                continue
            car_ratings = ratings.get(car['id'], [])
            row = dict(car)
            row.update(
                rating=mean(car_ratings) if car_ratings else None,
                review_count=len(car_ratings),
                booking_count=booking_counts.get(car['id'], 0),
                location_match=bool(location_hint) and car.get('location') == location_hint,
            )
            candidates.append(CandidateItem.from_row(row))
        return candidates

    async def get_peer_co_bookings(self, user_id: Any) -> list[PeerCoBooking]:
        import numpy as np

        target_idx = self._user_index.get(user_id)
        if target_idx is None:
            return []

        target_row = self._booking_matrix[target_idx]
        overlap = np.asarray((self._booking_matrix @ target_row.T).toarray()).ravel()

        user_ids = list(self._user_index.keys())
        peers = [
            PeerCoBooking(user_id=user_ids[idx], common_cars=int(overlap[idx]))
            for idx in range(len(user_ids))
            if idx != target_idx and overlap[idx] >= MIN_COMMON_CARS
        ]
        peers.sort(key=lambda p: -p.common_cars)
        return peers[:MAX_PEERS]

    async def get_peer_item_aggregates(
        self, peer_user_ids: list[Any], car_ids: list[Any]
    ) -> list[PeerItemAggregate]:
        peer_set = set(peer_user_ids)
        wanted = set(car_ids)
        ratings_by_booking = {
            r['booking_id']: r['rating']
            for r in self.reviews
            if r.get('booking_id') is not None and r.get('rating') is not None
        }

        counts: dict[Any, int] = {}
        ratings: dict[Any, list[float]] = defaultdict(list)
        for b in self.bookings:
            if b['user_id'] not in peer_set or b['car_id'] not in wanted:
                continue
            counts[b['car_id']] = counts.get(b['car_id'], 0) + 1
            rating = ratings_by_booking.get(b.get('id'))
            if rating is not None:
                ratings[b['car_id']].append(rating)

        return [
            PeerItemAggregate(
                car_id=car_id,
                booking_count=count,
                avg_rating=mean(ratings[car_id]) if ratings.get(car_id) else None,
            )
            for car_id, count in counts.items()
        ]

    async def record_feedback(self, user_id: Any, car_id: Any, feedback: float) -> None:
        self.feedback.append({
            'user_id': user_id,
            'car_id': car_id,
            'feedback': feedback,
            'created_at': utcnow_naive().isoformat(),
        })
