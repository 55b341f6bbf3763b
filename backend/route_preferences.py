"""Familiarity scoring for segments and whole routes.

A segment's preference score is a multiplier >= 1.0: 1.0 for roads the rider
has never been on, up to 1.5 for roads ridden more than ten times. The
rider's ``familiarity_strength`` scales the bonus, and segments not ridden
for longer than ``familiarity_decay_days`` fade back toward neutral.

A route's score is the length-weighted mean of its segments' scores, with a
confidence label describing how much of the route is backed by history.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from geo import Coordinate
from models import (
    CandidateRoute,
    Confidence,
    PreferenceRow,
    RoadSegment,
    RoutePreferenceScore,
    RouteRecommendation,
    ScoredRoute,
    UserRoadPreferences,
)
from road_segments import ExtractionConfig, extract_segments
from segment_store import SegmentStore, StoreError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scoring rules
# ---------------------------------------------------------------------------

NEUTRAL_SCORE: float = 1.0
MAX_BASE_SCORE: float = 1.5
# Decay never takes away more than half of the familiarity bonus.
MIN_DECAY_FACTOR: float = 0.5

# Route confidence thresholds, as a fraction of route length on known roads.
HIGH_CONFIDENCE_RATIO: float = 0.7
MEDIUM_CONFIDENCE_RATIO: float = 0.4

# Score gap to the runner-up above which a route is clearly recommended.
STRONG_RECOMMENDATION_GAP: float = 0.2
SLIGHT_RECOMMENDATION_GAP: float = 0.1

_SECONDS_PER_DAY = 86_400


class RouteScoringConfig(BaseModel):
    """Per-call route scoring settings."""

    unknown_segment_score: float = Field(default=NEUTRAL_SCORE, ge=0)
    """Score given to segments the rider has never ridden."""

    high_ratio: float = Field(default=HIGH_CONFIDENCE_RATIO, ge=0, le=1)
    medium_ratio: float = Field(default=MEDIUM_CONFIDENCE_RATIO, ge=0, le=1)


# ---------------------------------------------------------------------------
# Segment scoring
# ---------------------------------------------------------------------------


def _base_score(ride_count: int) -> float:
    """Non-linear ride-count curve, 1.1 for one ride up to 1.5 for 11+."""
    if ride_count == 1:
        return 1.1
    if ride_count <= 3:
        return 1.2 + (ride_count - 1) * 0.05
    if ride_count <= 5:
        return 1.3 + (ride_count - 3) * 0.025
    if ride_count <= 10:
        return 1.35 + (ride_count - 5) * 0.03
    return MAX_BASE_SCORE


def calculate_preference_score(
    ride_count: int,
    last_ridden_at: datetime | None,
    prefs: UserRoadPreferences | None = None,
    *,
    now: datetime | None = None,
) -> float:
    """Returns the familiarity multiplier for one segment.

    Args:
        ride_count: How many times the rider has ridden the segment.
        last_ridden_at: When it was last ridden. Naive datetimes are UTC.
        prefs: The rider's settings; defaults if omitted.
        now: Reference time for decay, ``datetime.now(timezone.utc)`` if
            omitted.

    Returns:
        1.0 for unridden segments, otherwise a value in (1.0, 1.5].
    """
    if ride_count <= 0:
        return NEUTRAL_SCORE

    prefs = prefs or UserRoadPreferences()
    strength = prefs.familiarity_strength / 100
    score = NEUTRAL_SCORE + (_base_score(ride_count) - NEUTRAL_SCORE) * strength

    decay_days = prefs.familiarity_decay_days
    if decay_days > 0 and last_ridden_at is not None:
        now = now or datetime.now(timezone.utc)
        if last_ridden_at.tzinfo is None:
            last_ridden_at = last_ridden_at.replace(tzinfo=timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        elapsed_days = (now - last_ridden_at).total_seconds() / _SECONDS_PER_DAY
        if elapsed_days > decay_days:
            decay = max(MIN_DECAY_FACTOR, 1.0 - (elapsed_days - decay_days) / decay_days)
            score = NEUTRAL_SCORE + (score - NEUTRAL_SCORE) * decay

    return score


def get_confidence_level(ride_count: int) -> Confidence:
    """Display label for how well the rider knows a single segment."""
    if ride_count >= 5:
        return "high"
    if ride_count >= 2:
        return "medium"
    if ride_count == 1:
        return "low"
    return "unknown"


def familiarity_label(ride_count: int) -> str:
    if ride_count >= 10:
        return "Very Familiar"
    if ride_count >= 5:
        return "Familiar"
    if ride_count >= 3:
        return "Known"
    if ride_count >= 2:
        return "Somewhat Known"
    if ride_count == 1:
        return "Ridden Once"
    return "New"


def describe_preference_score(score: float) -> str:
    if score >= 1.4:
        return "Highly Preferred"
    if score >= 1.2:
        return "Preferred"
    if score >= 1.1:
        return "Somewhat Preferred"
    if score <= 0.9:
        return "Less Preferred"
    return "Neutral"


# ---------------------------------------------------------------------------
# Route scoring
# ---------------------------------------------------------------------------


def _route_confidence(familiar_ratio: float, config: RouteScoringConfig) -> Confidence:
    if familiar_ratio >= config.high_ratio:
        return "high"
    if familiar_ratio >= config.medium_ratio:
        return "medium"
    if familiar_ratio > 0:
        return "low"
    return "unknown"


def aggregate_route_score(
    segments: Sequence[RoadSegment],
    preferences: Mapping[str, PreferenceRow],
    config: RouteScoringConfig | None = None,
) -> RoutePreferenceScore:
    """Combines per-segment preference rows into one route score.

    Args:
        segments: The route's segments, as extracted.
        preferences: Stored preference rows keyed by segment hash.
        config: Scoring settings; defaults to ``RouteScoringConfig()``.
    """
    config = config or RouteScoringConfig()
    if not segments:
        return RoutePreferenceScore()

    total_score = 0.0
    familiar_km = 0.0
    unknown_km = 0.0
    familiar_count = 0

    for segment in segments:
        segment_km = segment.length_m / 1000
        pref = preferences.get(segment.segment_hash)
        if pref is not None and pref.ride_count > 0:
            total_score += pref.preference_score * segment_km
            familiar_km += segment_km
            familiar_count += 1
        else:
            total_score += config.unknown_segment_score * segment_km
            unknown_km += segment_km

    total_km = familiar_km + unknown_km
    overall = total_score / total_km if total_km > 0 else NEUTRAL_SCORE
    familiar_ratio = familiar_km / total_km if total_km > 0 else 0.0

    return RoutePreferenceScore(
        overall_score=round(overall, 2),
        familiar_segments=familiar_count,
        unknown_segments=len(segments) - familiar_count,
        total_segments=len(segments),
        familiar_km=round(familiar_km, 1),
        unknown_km=round(unknown_km, 1),
        familiar_ratio=round(familiar_ratio * 100),
        confidence=_route_confidence(familiar_ratio, config),
    )


async def score_route(
    track: str | Sequence[Coordinate],
    user_id: str,
    store: SegmentStore,
    *,
    extraction: ExtractionConfig | None = None,
    scoring: RouteScoringConfig | None = None,
) -> RoutePreferenceScore:
    """Scores a candidate route against the rider's segment history.

    Nothing is persisted. A route too short to yield a segment gets the
    neutral score. If the preference lookup fails, every segment is counted
    as unknown, the score is neutral, and ``error`` carries the reason.
    """
    segments = extract_segments(track, extraction)
    if not segments:
        return RoutePreferenceScore()

    hashes = list(dict.fromkeys(s.segment_hash for s in segments))
    try:
        rows = await store.get_segment_preferences(user_id, hashes)
    except StoreError as exc:
        logger.warning("Preference lookup failed for user %s: %s", user_id, exc)
        unknown_km = sum(s.length_m for s in segments) / 1000
        return RoutePreferenceScore(
            unknown_segments=len(segments),
            total_segments=len(segments),
            unknown_km=round(unknown_km, 1),
            error=str(exc),
        )

    score = aggregate_route_score(
        segments, {row.segment_hash: row for row in rows}, scoring
    )
    logger.info(
        "Scored route for user %s: %.2f (%s, %d/%d familiar segments)",
        user_id,
        score.overall_score,
        score.confidence,
        score.familiar_segments,
        score.total_segments,
    )
    return score


async def score_multiple_routes(
    routes: Iterable[CandidateRoute],
    user_id: str,
    store: SegmentStore,
    *,
    extraction: ExtractionConfig | None = None,
    scoring: RouteScoringConfig | None = None,
) -> list[ScoredRoute]:
    """Scores each route and returns them best first.

    Routes without a polyline are skipped. Ties keep their input order.
    """
    scored: list[ScoredRoute] = []
    for route in routes:
        if not route.polyline:
            continue
        score = await score_route(
            route.polyline, user_id, store, extraction=extraction, scoring=scoring
        )
        scored.append(ScoredRoute(id=route.id, name=route.name, **score.model_dump()))

    scored.sort(key=lambda r: r.overall_score, reverse=True)
    return scored


def recommend_route(scored_routes: Sequence[ScoredRoute]) -> RouteRecommendation:
    """Picks the best of ``scored_routes`` (already sorted) and explains why."""
    if not scored_routes:
        return RouteRecommendation(reason="No routes to compare")

    best = scored_routes[0]
    if len(scored_routes) == 1:
        if best.familiar_ratio > 50:
            reason = f"{best.familiar_ratio}% of this route follows roads you've ridden before"
        else:
            reason = "This route includes mostly new roads for you to explore"
        return RouteRecommendation(recommended=best, reason=reason)

    second = scored_routes[1]
    gap = best.overall_score - second.overall_score
    if gap > STRONG_RECOMMENDATION_GAP:
        reason = (
            f"Strongly recommended - {best.familiar_ratio}% familiar roads vs "
            f"{second.familiar_ratio}% for the alternative"
        )
    elif gap > SLIGHT_RECOMMENDATION_GAP:
        reason = "Slightly preferred - more familiar roads than alternatives"
    else:
        reason = "Similar familiarity to alternatives - choose based on other factors"
    return RouteRecommendation(recommended=best, reason=reason)
