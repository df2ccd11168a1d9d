import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Any

from .data_access import SearchRecord, UserAggregates
from .config import (
    BOOKED_CATEGORY_WEIGHT,
    DEFAULT_PRICE_RANGE,
    MAX_SEARCHES_CONSIDERED,
    MAX_SEARCHES_KEPT,
    SEARCH_WEIGHT,
)

logger = logging.getLogger(__name__)


@dataclass
class UserPreferences:
    """Frequency tables mined from searches and booking history."""
    categories: dict[str, int] = field(default_factory=dict)
    locations: dict[str, int] = field(default_factory=dict)
    price_range: tuple[float, float] = DEFAULT_PRICE_RANGE


@dataclass
class UserProfile:
    """Aggregated user attributes derived from their rental history."""
    user_id: Any = None
    age: float | None = None
    total_bookings: int = 0
    avg_spending: float | None = None
    avg_duration: float | None = None
    given_rating: float | None = None
    received_rating: float | None = None
    preferred_location: str | None = None
    preferences: UserPreferences = field(default_factory=UserPreferences)
    searches: list[SearchRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _accumulate_counts(values: list[str | None], weight: int, counts: dict) -> None:
    """Add ``weight`` to each non-empty value's count."""
    for value in values:
        if value:
            counts[value] += weight


def calculate_preferences(
    aggregates: UserAggregates,
    searches: list[SearchRecord],
) -> UserPreferences:
    """
    Mine category/location preferences.

    Each search counts +1 towards its category and location; every category
    present in the booking history counts +2, since a booking is a stronger
    signal than a search.
    """
    categories: dict[str, int] = defaultdict(int)
    locations: dict[str, int] = defaultdict(int)

    _accumulate_counts([s.category for s in searches], SEARCH_WEIGHT, categories)
    _accumulate_counts([s.location for s in searches], SEARCH_WEIGHT, locations)
    _accumulate_counts(aggregates.preferred_categories, BOOKED_CATEGORY_WEIGHT, categories)

    return UserPreferences(
        categories=dict(categories),
        locations=dict(locations),
        price_range=DEFAULT_PRICE_RANGE,
    )


def build_profile(
    aggregates: UserAggregates,
    searches: list[SearchRecord] | None = None,
) -> UserProfile:
    """
    Build a UserProfile from aggregate statistics and recent searches.

    Args:
        aggregates: Booking/review statistics for the user
        searches: Recent searches, newest first. Only the first
            MAX_SEARCHES_CONSIDERED are mined and MAX_SEARCHES_KEPT kept.

    Missing data degrades to empty tables and None fields; this never raises.
    """
    recent = list(searches or [])[:MAX_SEARCHES_CONSIDERED]
    preferences = calculate_preferences(aggregates, recent)

    profile = UserProfile(
        user_id=aggregates.user_id,
        age=aggregates.age,
        total_bookings=aggregates.total_bookings,
        avg_spending=aggregates.avg_spending,
        avg_duration=aggregates.avg_duration,
        given_rating=aggregates.given_rating,
        received_rating=aggregates.received_rating,
        preferred_location=aggregates.preferred_location,
        preferences=preferences,
        searches=recent[:MAX_SEARCHES_KEPT],
    )
    logger.debug(
        f"Built profile for user {aggregates.user_id}: {profile.total_bookings} bookings, "
        f"{len(preferences.categories)} categories, {len(preferences.locations)} locations"
    )
    return profile


def user_preferred_location(profile: UserProfile, requested: str | None = None) -> str | None:
    """Requested location, else the user's stored preference."""
    if requested:
        return requested
    if profile.preferred_location:
        return profile.preferred_location
    return None
