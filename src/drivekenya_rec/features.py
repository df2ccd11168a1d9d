"""
Feature normalization and vector construction for content-based scoring.

Every normalizer maps a raw (possibly missing) field into [0, 1]. A missing
value is ``None``; it is replaced by the documented default instead of
raising, so loosely-populated rows still produce a full vector.
"""

import logging

import numpy as np

from .data_access import CandidateItem
from .profile import UserProfile
from .config import (
    AGE_DIVISOR,
    AVAILABILITY_DIVISOR,
    CATEGORY_SCORES,
    DEFAULT_AGE,
    DEFAULT_AVAILABILITY,
    DEFAULT_CATEGORY_SCORE,
    DEFAULT_DURATION_DAYS,
    DEFAULT_EFFICIENCY,
    DEFAULT_PREFERENCE_SCORE,
    DEFAULT_PRICE,
    DEFAULT_RATING,
    DEFAULT_SPENDING,
    DEMAND_DIVISOR,
    DURATION_DIVISOR,
    EFFICIENCY_DIVISOR,
    FREQUENCY_DIVISOR,
    PREFERENCE_COUNT_DIVISOR,
    PRICE_DIVISOR,
    RATING_SCALE,
    SPENDING_DIVISOR,
)

logger = logging.getLogger(__name__)

USER_FEATURES = (
    'age_group', 'preferred_category', 'avg_trip_duration',
    'price_sensitivity', 'booking_frequency', 'location_preference',
)
CAR_FEATURES = (
    'category', 'price_per_hour', 'fuel_efficiency',
    'rating', 'availability_score', 'demand_score',
)


def _or_default(value, default):
    return default if value is None else value


def normalize_age(age: float | None) -> float:
    return min(_or_default(age, DEFAULT_AGE) / AGE_DIVISOR, 1.0)


def normalize_duration(days: float | None) -> float:
    return min(_or_default(days, DEFAULT_DURATION_DAYS) / DURATION_DIVISOR, 1.0)


def normalize_price_sensitivity(avg_spending: float | None) -> float:
    """Big spenders are less price sensitive."""
    return 1.0 - min(_or_default(avg_spending, DEFAULT_SPENDING) / SPENDING_DIVISOR, 1.0)


def normalize_frequency(total_bookings: int | None) -> float:
    return min(_or_default(total_bookings, 0) / FREQUENCY_DIVISOR, 1.0)


def preference_score(counts: dict[str, int] | None) -> float:
    """Strength of a preference table: total count / 10, or 0.5 with no signal."""
    if not counts:
        return DEFAULT_PREFERENCE_SCORE
    total = sum(counts.values())
    if total <= 0:
        return DEFAULT_PREFERENCE_SCORE
    return min(total / PREFERENCE_COUNT_DIVISOR, 1.0)


def normalize_category(category: str | None) -> float:
    if not category:
        return DEFAULT_CATEGORY_SCORE
    return CATEGORY_SCORES.get(category.strip().lower(), DEFAULT_CATEGORY_SCORE)


def normalize_price(price_per_hour: float | None) -> float:
    return min(_or_default(price_per_hour, DEFAULT_PRICE) / PRICE_DIVISOR, 1.0)


def normalize_fuel_efficiency(efficiency: float | None) -> float:
    return min(_or_default(efficiency, DEFAULT_EFFICIENCY) / EFFICIENCY_DIVISOR, 1.0)


def normalize_rating(rating: float | None) -> float:
    return _or_default(rating, DEFAULT_RATING) / RATING_SCALE


def normalize_availability(score: float | None) -> float:
    return _or_default(score, DEFAULT_AVAILABILITY) / AVAILABILITY_DIVISOR


def normalize_demand(booking_count: int | None) -> float:
    return min(_or_default(booking_count, 0) / DEMAND_DIVISOR, 1.0)


def build_user_vector(profile: UserProfile) -> np.ndarray:
    """Six-feature vector, ordered as USER_FEATURES."""
    return np.array([
        normalize_age(profile.age),
        preference_score(profile.preferences.categories),
        normalize_duration(profile.avg_duration),
        normalize_price_sensitivity(profile.avg_spending),
        normalize_frequency(profile.total_bookings),
        preference_score(profile.preferences.locations),
    ], dtype=float)


def build_car_vector(car: CandidateItem) -> np.ndarray:
    """Six-feature vector, ordered as CAR_FEATURES."""
    return np.array([
        normalize_category(car.category),
        normalize_price(car.price_per_hour),
        normalize_fuel_efficiency(car.fuel_efficiency),
        normalize_rating(car.rating),
        normalize_availability(car.availability_score),
        normalize_demand(car.booking_count),
    ], dtype=float)


def cosine_similarity(vec_a, vec_b) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 (not an error) when lengths differ or either vector has zero
    magnitude.
    """
    a = np.asarray(vec_a, dtype=float)
    b = np.asarray(vec_b, dtype=float)
    if a.shape != b.shape:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))
