"""
Hybrid car recommendation engine.

Four independent scorers (content, collaborative, popularity, location) each
produce one score per available car. Scores are blended with fixed weights,
adjusted by multiplicative business rules, sorted and annotated with a single
human-readable reason. All I/O happens up front through a DataAccess; the
scoring functions themselves are pure.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from .data_access import (
    CandidateItem,
    DataAccess,
    PeerCoBooking,
    PeerItemAggregate,
    RecommendationContext,
)
from .features import build_car_vector, build_user_vector, cosine_similarity
from .profile import UserProfile, build_profile, user_preferred_location
from .utils import parse_timestamp_naive, utcnow_naive
from .weights import BlendWeights, load_blend_weights
from .config import (
    COLLAB_BOOKING_DIVISOR,
    COLLAB_COLD_START_SCORE,
    COLLAB_DEFAULT_RATING,
    COLLAB_NO_PEER_BOOKING_SCORE,
    COMPONENT_ORDER,
    DEFAULT_LIMIT,
    FETCH_TIMEOUT,
    LOCATION_MATCH_SCORE,
    LOCATION_MISS_SCORE,
    MAX_PEERS,
    MAX_SEARCHES_CONSIDERED,
    MIN_COMMON_CARS,
    NEW_CAR_BOOST,
    NEW_CAR_MAX_AGE_DAYS,
    POPULARITY_BOOKING_WEIGHT,
    POPULARITY_RATING_WEIGHT,
    PROMOTION_BOOST,
    RATING_SCALE,
    REASON_COLLAB_THRESHOLD,
    REASON_CONTENT_THRESHOLD,
    REASON_EXCELLENT_REVIEWS,
    REASON_FALLBACK,
    REASON_HIGHLY_RATED,
    REASON_LOCATION_THRESHOLD,
    REASON_MATCHES_PREFERENCES,
    REASON_NEAR_LOCATION,
    REASON_POPULARITY_THRESHOLD,
    REASON_RATING_THRESHOLD,
    REASON_SIMILAR_USERS,
)

logger = logging.getLogger(__name__)


@dataclass
class ScoredCandidate:
    car: CandidateItem
    score: float
    source: str
    components: dict[str, float] = field(default_factory=dict)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'car': self.car.to_dict(),
            'score': self.score,
            'source': self.source,
            'components': dict(self.components),
            'reason': self.reason,
        }


def score_content(profile: UserProfile, cars: list[CandidateItem]) -> list[ScoredCandidate]:
    """Cosine similarity between the user's and each car's feature vector."""
    user_vector = build_user_vector(profile)
    return [
        ScoredCandidate(car=car, score=cosine_similarity(user_vector, build_car_vector(car)), source='content')
        for car in cars
    ]


def select_peers(peers: list[PeerCoBooking]) -> list[PeerCoBooking]:
    """Keep peers with enough co-bookings, most overlap first, at most MAX_PEERS."""
    qualified = [p for p in peers if p.common_cars >= MIN_COMMON_CARS]
    qualified.sort(key=lambda p: -p.common_cars)
    return qualified[:MAX_PEERS]


def score_collaborative(
    cars: list[CandidateItem],
    peers: list[PeerCoBooking],
    peer_aggregates: list[PeerItemAggregate],
) -> list[ScoredCandidate]:
    """
    Score cars by how often similar users booked them and how they rated them.

    Without qualifying peers every car gets COLLAB_COLD_START_SCORE so new users
    are not penalized. With peers, cars none of them booked still get
    COLLAB_NO_PEER_BOOKING_SCORE so they stay rankable.
    """
    if not peers:
        return [ScoredCandidate(car=car, score=COLLAB_COLD_START_SCORE, source='collaborative') for car in cars]

    by_car = {agg.car_id: agg for agg in peer_aggregates}
    results = []
    for car in cars:
        agg = by_car.get(car.id)
        if agg is None:
            score = COLLAB_NO_PEER_BOOKING_SCORE
        else:
            rating = agg.avg_rating if agg.avg_rating is not None else COLLAB_DEFAULT_RATING
            score = min((agg.booking_count / COLLAB_BOOKING_DIVISOR) * (rating / RATING_SCALE), 1.0)
        results.append(ScoredCandidate(car=car, score=score, source='collaborative'))
    return results


def score_popularity(cars: list[CandidateItem]) -> list[ScoredCandidate]:
    """Bookings and rating relative to the best in this candidate set."""
    max_bookings = max((car.booking_count or 0 for car in cars), default=0)
    max_rating = max((car.rating or 0 for car in cars), default=0)
    booking_denominator = max(max_bookings, 1)
    rating_denominator = max(max_rating, 1)

    return [
        ScoredCandidate(
            car=car,
            score=(
                POPULARITY_BOOKING_WEIGHT * ((car.booking_count or 0) / booking_denominator)
                + POPULARITY_RATING_WEIGHT * ((car.rating or 0) / rating_denominator)
            ),
            source='popularity',
        )
        for car in cars
    ]


def score_location(cars: list[CandidateItem], location: str | None) -> list[ScoredCandidate]:
    """Binary proximity: full score on a location match, half otherwise."""
    results = []
    for car in cars:
        matched = car.location_match or (bool(location) and car.location == location)
        score = LOCATION_MATCH_SCORE if matched else LOCATION_MISS_SCORE
        results.append(ScoredCandidate(car=car, score=score, source='location'))
    return results


def combine_scores(
    content: list[ScoredCandidate],
    collaborative: list[ScoredCandidate],
    popularity: list[ScoredCandidate],
    location: list[ScoredCandidate],
    weights: BlendWeights | None = None,
) -> list[ScoredCandidate]:
    """
    Weighted sum of the four scorer outputs, keyed by car id.

    The content pass defines the candidate set; other scorers only add to cars
    it produced. Raw (unweighted) component scores are kept for reasons.
    """
    weights = weights or BlendWeights()
    combined: dict[Any, ScoredCandidate] = {}

    for rec in content:
        combined[rec.car.id] = ScoredCandidate(
            car=rec.car,
            score=rec.score * weights.content,
            source='content',
            components={'content': rec.score},
        )

    for name, recs in (
        ('collaborative', collaborative),
        ('popularity', popularity),
        ('location', location),
    ):
        factor = weights.factor(name)
        for rec in recs:
            entry = combined.get(rec.car.id)
            if entry is None:
                continue
            entry.score += rec.score * factor
            entry.components[name] = rec.score

    for entry in combined.values():
        entry.source = max(
            (c for c in COMPONENT_ORDER if c in entry.components),
            key=lambda c: entry.components[c] * weights.factor(c),
        )

    return list(combined.values())


def _car_age_days(created_at, now: datetime) -> float | None:
    if not created_at:
        return None
    try:
        created = parse_timestamp_naive(created_at)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable created_at {created_at!r}; skipping new-car boost")
        return None
    return (now - created).total_seconds() / 86400


def apply_business_rules(
    recommendations: list[ScoredCandidate],
    profile: UserProfile | None = None,
    context: RecommendationContext | None = None,
    now: datetime | None = None,
) -> list[ScoredCandidate]:
    """
    Multiplicative boosts: promotions x1.10, cars younger than 30 days x1.05.

    No candidate is filtered out here; repeat-booking and price-range filters
    are deliberately not applied.
    """
    now = parse_timestamp_naive(now) if now else utcnow_naive()
    for rec in recommendations:
        if rec.car.has_promotion:
            rec.score *= PROMOTION_BOOST

        age_days = _car_age_days(rec.car.created_at, now)
        if age_days is not None and age_days < NEW_CAR_MAX_AGE_DAYS:
            rec.score *= NEW_CAR_BOOST
    return recommendations


def generate_reason(recommendation: ScoredCandidate) -> str:
    """First matching rule wins; there is always exactly one reason."""
    components = recommendation.components

    if components.get('content', 0) > REASON_CONTENT_THRESHOLD:
        return REASON_MATCHES_PREFERENCES
    if components.get('collaborative', 0) > REASON_COLLAB_THRESHOLD:
        return REASON_SIMILAR_USERS
    if components.get('popularity', 0) > REASON_POPULARITY_THRESHOLD:
        return REASON_HIGHLY_RATED
    if components.get('location', 0) > REASON_LOCATION_THRESHOLD:
        return REASON_NEAR_LOCATION
    if (recommendation.car.rating or 0) > REASON_RATING_THRESHOLD:
        return REASON_EXCELLENT_REVIEWS
    return REASON_FALLBACK


def rank(recommendations: list[ScoredCandidate], limit: int = DEFAULT_LIMIT) -> list[ScoredCandidate]:
    """Stable descending sort, truncate, attach reasons."""
    ordered = sorted(recommendations, key=lambda r: r.score, reverse=True)[:max(limit, 0)]
    for rec in ordered:
        rec.reason = generate_reason(rec)
    return ordered


class HybridRecommender:
    """
    Content + collaborative + popularity + location blend.

    Stateless between calls; a single instance can serve concurrent requests.
    """

    def __init__(self, weights: BlendWeights | None = None, fetch_timeout: float | None = FETCH_TIMEOUT):
        self.weights = weights or load_blend_weights() or BlendWeights()
        self.fetch_timeout = fetch_timeout

    async def _fetch(
        self,
        user_id: Any,
        context: RecommendationContext,
        data_access: DataAccess,
    ) -> tuple[UserProfile, list[CandidateItem], list[PeerCoBooking], list[PeerItemAggregate]]:
        """All reads for one request; the first four are independent and run concurrently."""
        aggregates, searches, cars, peers = await asyncio.gather(
            data_access.get_user_aggregates(user_id),
            data_access.get_user_recent_searches(user_id, MAX_SEARCHES_CONSIDERED),
            data_access.get_available_candidates(context.location, context.date_range),
            data_access.get_peer_co_bookings(user_id),
        )
        profile = build_profile(aggregates, searches)
        peers = select_peers(peers)

        peer_aggregates: list[PeerItemAggregate] = []
        if cars and peers:
            peer_aggregates = await data_access.get_peer_item_aggregates(
                [p.user_id for p in peers],
                [car.id for car in cars],
            )
        return profile, cars, peers, peer_aggregates

    def score_candidates(
        self,
        profile: UserProfile,
        cars: list[CandidateItem],
        peers: list[PeerCoBooking],
        peer_aggregates: list[PeerItemAggregate],
        context: RecommendationContext | None = None,
        now: datetime | None = None,
    ) -> list[ScoredCandidate]:
        """Run every scorer, blend and boost. Pure; returns unsorted results."""
        context = context or RecommendationContext()
        if not cars:
            return []

        location = user_preferred_location(profile, context.location)
        combined = combine_scores(
            score_content(profile, cars),
            score_collaborative(cars, peers, peer_aggregates),
            score_popularity(cars),
            score_location(cars, location),
            self.weights,
        )
        return apply_business_rules(combined, profile, context, now=now)

    async def recommend(
        self,
        user_id: Any,
        context: RecommendationContext | Mapping[str, Any] | None,
        data_access: DataAccess,
        limit: int = DEFAULT_LIMIT,
        now: datetime | None = None,
    ) -> list[ScoredCandidate]:
        """
        Ranked recommendations for a user.

        Never raises: data-access failures, fetch timeouts and malformed input
        are logged and turned into an empty list.
        """
        try:
            if not isinstance(context, RecommendationContext):
                context = RecommendationContext.from_dict(context)

            fetch = self._fetch(user_id, context, data_access)
            if self.fetch_timeout:
                profile, cars, peers, peer_aggregates = await asyncio.wait_for(fetch, self.fetch_timeout)
            else:
                profile, cars, peers, peer_aggregates = await fetch

            if not cars:
                logger.debug(f"No available cars for user {user_id}; nothing to recommend")
                return []

            logger.debug(f"Scoring {len(cars)} cars for user {user_id} with {len(peers)} peers")
            scored = self.score_candidates(profile, cars, peers, peer_aggregates, context, now=now)
            results = rank(scored, limit)
            logger.debug(f"Returning {len(results)} recommendations for user {user_id}")
            return results

        except asyncio.TimeoutError:
            logger.warning(f"Timed out fetching recommendation data for user {user_id}")
            return []
        except Exception as e:
            logger.error(f"Recommendation generation failed for user {user_id}: {type(e).__name__}: {e}")
            return []


_default_recommender: HybridRecommender | None = None


def get_default_recommender() -> HybridRecommender:
    global _default_recommender
    if _default_recommender is None:
        _default_recommender = HybridRecommender()
    return _default_recommender


async def get_recommendations(
    user_id: Any,
    context: RecommendationContext | Mapping[str, Any] | None,
    data_access: DataAccess,
    limit: int = DEFAULT_LIMIT,
) -> list[ScoredCandidate]:
    """Recommendations from the shared default engine."""
    return await get_default_recommender().recommend(user_id, context, data_access, limit=limit)
