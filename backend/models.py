"""Pydantic models for the road segment familiarity backend.

Covers the values that cross a module or store boundary: extracted road
segments, the typed rows the segment store returns, scoring and loop results,
and the request/response bodies of the HTTP endpoints.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Confidence = Literal["unknown", "low", "medium", "high"]
Quadrant = Literal["north", "east", "south", "west"]


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------


class RoadSegment(BaseModel):
    """A stretch of road cut from one track.

    Two segments with the same ``segment_hash`` are the same physical stretch
    of road, whichever track produced them and whichever way it was ridden.
    """

    model_config = ConfigDict(frozen=True)

    start_lat: float
    start_lng: float
    end_lat: float
    end_lng: float
    segment_hash: str
    length_m: int
    """Along-track length in whole metres (not the straight-line distance)."""

    bearing: int
    """Initial bearing from start to end, whole degrees in [0, 360)."""

    point_count: int
    start_distance_m: float = 0.0
    """Along-track distance from the start of the track to this segment."""

    @property
    def start(self) -> tuple[float, float]:
        return self.start_lat, self.start_lng

    @property
    def end(self) -> tuple[float, float]:
        return self.end_lat, self.end_lng


class ActivityRecord(BaseModel):
    """An activity as returned by the activity source."""

    id: str
    user_id: str
    polyline: str | None = None
    start_date: datetime | None = None
    moving_time_s: float | None = None
    distance_m: float | None = None
    segments_extracted_at: datetime | None = None


class ActivityContext(BaseModel):
    """Context stored alongside every segment extracted from one activity."""

    user_id: str
    activity_id: str | None = None
    activity_date: datetime | None = None
    moving_time_s: float | None = None
    distance_m: float | None = None

    @property
    def avg_speed_ms(self) -> float | None:
        if (self.moving_time_s or 0) > 0 and (self.distance_m or 0) > 0:
            return self.distance_m / self.moving_time_s
        return None


class ExtractionResult(BaseModel):
    extracted: int = 0
    stored: int = 0
    errors: list[str] = Field(default_factory=list)


class BatchExtractionResult(BaseModel):
    processed: int = 0
    segments_stored: int = 0
    remaining: int = 0
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Store rows
# ---------------------------------------------------------------------------


class UserRoadPreferences(BaseModel):
    """Per-user tuning of how strongly ride history biases routing."""

    familiarity_strength: int = Field(default=50, ge=0, le=100)
    """0 ignores ride history entirely, 100 applies the full ride-count curve."""

    explore_mode: bool = False
    min_rides_for_familiar: int = Field(default=2, ge=1)
    recency_weight: int = Field(default=30, ge=0, le=100)
    familiarity_decay_days: int = Field(default=180, ge=0)
    """Days without a ride before familiarity starts fading. 0 disables decay."""


class UserRoadPreferencesUpdate(BaseModel):
    """Partial update of ``UserRoadPreferences``; unset fields are left alone."""

    familiarity_strength: int | None = Field(default=None, ge=0, le=100)
    explore_mode: bool | None = None
    min_rides_for_familiar: int | None = Field(default=None, ge=1)
    recency_weight: int | None = Field(default=None, ge=0, le=100)
    familiarity_decay_days: int | None = Field(default=None, ge=0)


class PreferenceRow(BaseModel):
    """A stored segment's preference data, as returned by a batch lookup."""

    segment_hash: str
    ride_count: int
    preference_score: float
    last_ridden_at: datetime | None = None


class SegmentRow(BaseModel):
    """A stored segment returned by a bounding-box query."""

    id: str
    segment_hash: str
    start_lat: float
    start_lng: float
    end_lat: float
    end_lng: float
    ride_count: int
    last_ridden_at: datetime | None = None
    road_name: str | None = None
    road_type: str | None = None


class SegmentStats(BaseModel):
    total_segments: int = 0
    total_rides: int = 0
    unique_km: float = 0.0
    most_ridden_segment_hash: str | None = None
    most_ridden_count: int = 0
    segments_by_ride_count: dict[str, int] = Field(default_factory=dict)
    recent_new_segments: int = 0


# ---------------------------------------------------------------------------
# Route scoring
# ---------------------------------------------------------------------------


class RoutePreferenceScore(BaseModel):
    """How much of a candidate route follows roads the rider already knows."""

    overall_score: float = 1.0
    familiar_segments: int = 0
    unknown_segments: int = 0
    total_segments: int = 0
    familiar_km: float = 0.0
    unknown_km: float = 0.0
    familiar_ratio: int = 0
    """Percentage (0-100) of route length on known segments."""

    confidence: Confidence = "unknown"
    error: str | None = None
    """Set when the preference lookup failed; the score is then neutral."""


class CandidateRoute(BaseModel):
    id: str | None = None
    name: str | None = None
    polyline: str | None = None


class ScoredRoute(RoutePreferenceScore):
    id: str | None = None
    name: str | None = None


class RouteRecommendation(BaseModel):
    recommended: ScoredRoute | None = None
    reason: str


# ---------------------------------------------------------------------------
# Loop waypoints
# ---------------------------------------------------------------------------


class Waypoint(BaseModel):
    lat: float
    lng: float


class SelectedSegment(BaseModel):
    """A familiar segment picked to anchor one part of a loop."""

    id: str
    segment_hash: str
    start_lat: float
    start_lng: float
    end_lat: float
    end_lng: float
    mid_lat: float
    mid_lng: float
    ride_count: int
    distance_from_start_m: float
    bearing_from_start: float
    quadrant: Quadrant
    road_name: str | None = None


class LoopWaypointsResult(BaseModel):
    waypoints: list[Waypoint] = Field(default_factory=list)
    segments: list[SelectedSegment] = Field(default_factory=list)
    total_familiar_segments: int = 0
    fallback_to_random: bool = False
    error: str | None = None


# ---------------------------------------------------------------------------
# HTTP request / response bodies
# ---------------------------------------------------------------------------


class ExtractActivityRequest(BaseModel):
    activity_id: str


class ExtractActivityResponse(ExtractionResult):
    success: bool


class ExtractAllRequest(BaseModel):
    limit: int = 50
    force: bool = False
    """Re-process activities that already had their segments extracted."""

    months: int | None = None
    """Only process activities from the last N months."""


class ExtractAllResponse(BaseModel):
    success: bool
    activities_processed: int
    segments_stored: int
    remaining: int
    errors: list[str] = Field(default_factory=list)
    message: str


class SegmentStatsResponse(BaseModel):
    stats: SegmentStats
    unprocessed_activities: int


class FamiliarSegmentsResponse(BaseModel):
    segments: list[SegmentRow]
    count: int


class LineStringGeometry(BaseModel):
    type: Literal["LineString"] = "LineString"
    coordinates: list[tuple[float, float]]
    """GeoJSON ``[lng, lat]`` positions."""


class SegmentFeatureProperties(BaseModel):
    id: str
    ride_count: int
    last_ridden: datetime | None = None
    road_name: str | None = None
    road_type: str | None = None
    color: str
    """Map line colour for the segment's ride-count bucket."""

    opacity: float


class SegmentFeature(BaseModel):
    type: Literal["Feature"] = "Feature"
    geometry: LineStringGeometry
    properties: SegmentFeatureProperties


class FeatureCollectionMetadata(BaseModel):
    total_segments: int
    returned: int
    truncated: bool
    """True when more segments matched than ``limit`` allowed."""


class SegmentFeatureCollection(BaseModel):
    """The rider's segments in a box, as a GeoJSON FeatureCollection."""

    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: list[SegmentFeature] = Field(default_factory=list)
    metadata: FeatureCollectionMetadata


class ScoreRouteRequest(BaseModel):
    polyline: str | None = None
    coordinates: list[tuple[float, float]] | None = None
    """Alternative to ``polyline``: raw ``[lat, lng]`` pairs."""


class ScoreRoutesRequest(BaseModel):
    routes: list[CandidateRoute]


class ScoreRoutesResponse(BaseModel):
    routes: list[ScoredRoute]
    best_route: ScoredRoute | None = None
    recommendation: RouteRecommendation


class LoopWaypointsRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    distance_km: float = Field(gt=0)
    """Target total loop distance in kilometres."""

    min_ride_count: int = Field(default=2, ge=1)
    explore_mode: bool = False
