"""
Configuration constants for the DriveKenya recommendation engine.

This module centralizes all magic numbers and tunable parameters.
Deployment-specific values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("DRIVEKENYA_DB", "data/drivekenya.db"))

# Remote data-access API
API_BASE_URL = os.environ.get("DRIVEKENYA_API_URL", "http://localhost:5000/api")
HTTP_TIMEOUT = _get_float_env("DRIVEKENYA_HTTP_TIMEOUT", 10.0, min_val=0.1)
MAX_HTTP_RETRIES = _get_int_env("DRIVEKENYA_HTTP_RETRIES", 3, min_val=1)

# Seconds allowed for the up-front data fetch (0 disables the timeout)
FETCH_TIMEOUT = _get_float_env("DRIVEKENYA_FETCH_TIMEOUT", 15.0, min_val=0.0)

# Optional JSON file overriding BLEND_WEIGHTS
BLEND_WEIGHTS_PATH = Path(os.environ.get("DRIVEKENYA_BLEND_WEIGHTS", "data/blend_weights.json"))

DEFAULT_LIMIT = 10

# Blend weights (sum to 1.0)
BLEND_WEIGHTS = {
    'content': 0.4,
    'collaborative': 0.3,
    'popularity': 0.2,
    'location': 0.1,
}

# Order in which scorer components are combined and reported
COMPONENT_ORDER = ('content', 'collaborative', 'popularity', 'location')

# Profile aggregation
MAX_SEARCHES_CONSIDERED = 20  # Searches mined for preferences
MAX_SEARCHES_KEPT = 5         # Searches kept on the profile for output
SEARCH_WEIGHT = 1             # Per matching search
BOOKED_CATEGORY_WEIGHT = 2    # Per category present in booking history
DEFAULT_PRICE_RANGE = (0, 10000)

# User vector normalization: (divisor, default when missing)
DEFAULT_AGE = 30
AGE_DIVISOR = 100
PREFERENCE_COUNT_DIVISOR = 10
DEFAULT_PREFERENCE_SCORE = 0.5
DURATION_DIVISOR = 14
DEFAULT_DURATION_DAYS = 1
SPENDING_DIVISOR = 1000
DEFAULT_SPENDING = 100
FREQUENCY_DIVISOR = 50

# Car vector normalization
CATEGORY_SCORES = {
    'economy': 0.2,
    'compact': 0.4,
    'standard': 0.6,
    'luxury': 0.8,
    'suv': 1.0,
}
DEFAULT_CATEGORY_SCORE = 0.5
PRICE_DIVISOR = 200
DEFAULT_PRICE = 50
EFFICIENCY_DIVISOR = 30
DEFAULT_EFFICIENCY = 10
RATING_SCALE = 5
DEFAULT_RATING = 3
AVAILABILITY_DIVISOR = 100
DEFAULT_AVAILABILITY = 50
DEMAND_DIVISOR = 100

# Collaborative filtering
MIN_COMMON_CARS = 2        # Co-bookings needed to count as a peer
MAX_PEERS = 10
COLLAB_COLD_START_SCORE = 0.5   # Every car, when the user has no peers
COLLAB_NO_PEER_BOOKING_SCORE = 0.3  # Cars none of the peers booked
COLLAB_BOOKING_DIVISOR = 10
COLLAB_DEFAULT_RATING = 3

# Popularity
POPULARITY_BOOKING_WEIGHT = 0.6
POPULARITY_RATING_WEIGHT = 0.4

# Location
LOCATION_MATCH_SCORE = 1.0
LOCATION_MISS_SCORE = 0.5

# Business rules
PROMOTION_BOOST = 1.10
NEW_CAR_BOOST = 1.05
NEW_CAR_MAX_AGE_DAYS = 30

# Booking statuses that block availability
BLOCKING_BOOKING_STATUSES = ('confirmed', 'active')
AVAILABLE_STATUS = 'available'

# Reason thresholds, checked in priority order
REASON_CONTENT_THRESHOLD = 0.7
REASON_COLLAB_THRESHOLD = 0.6
REASON_POPULARITY_THRESHOLD = 0.8
REASON_LOCATION_THRESHOLD = 0.9
REASON_RATING_THRESHOLD = 4.5

REASON_MATCHES_PREFERENCES = "Matches your preferences"
REASON_SIMILAR_USERS = "Popular with similar users"
REASON_HIGHLY_RATED = "Highly rated and frequently booked"
REASON_NEAR_LOCATION = "Near your preferred location"
REASON_EXCELLENT_REVIEWS = "Excellent customer reviews"
REASON_FALLBACK = "Recommended for you"

# Feedback analytics
FEEDBACK_WINDOW_DAYS = 30
FEEDBACK_TOP_CARS = 10
