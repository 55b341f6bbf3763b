"""Road segment familiarity backend service.

Exposes endpoints for segment extraction from recorded activities, route
familiarity scoring, rider road preferences, familiar-road loop waypoints,
and a GeoJSON map of ridden segments.

Authentication happens upstream; the acting rider arrives in the
``X-User-Id`` header. Stores are injected through FastAPI dependencies and
default to the in-memory implementations.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query

import loop_waypoints
import road_segments
import route_preferences
import segment_map
from memory_store import InMemoryActivitySource, InMemorySegmentStore
from models import (
    ExtractActivityRequest,
    ExtractActivityResponse,
    ExtractAllRequest,
    ExtractAllResponse,
    FamiliarSegmentsResponse,
    LoopWaypointsRequest,
    LoopWaypointsResult,
    RoutePreferenceScore,
    ScoreRouteRequest,
    ScoreRoutesRequest,
    ScoreRoutesResponse,
    SegmentFeatureCollection,
    SegmentStatsResponse,
    UserRoadPreferences,
    UserRoadPreferencesUpdate,
)
from segment_store import ActivitySource, SegmentStore

logging.basicConfig(level=logging.INFO)

# Months are approximated as 30 days for the extract-all date filter.
DAYS_PER_MONTH = 30
# Error strings returned from a batch are capped to keep responses small.
MAX_REPORTED_ERRORS = 10

app = FastAPI(
    title="Road Familiarity Backend",
    description="Road segment extraction and familiarity-aware route scoring.",
    version="0.1.0",
)

_segment_store = InMemorySegmentStore()
_activity_source = InMemoryActivitySource()


def get_segment_store() -> SegmentStore:
    return _segment_store


def get_activity_source() -> ActivitySource:
    return _activity_source


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Returns the authenticated rider id set by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


UserId = Annotated[str, Depends(get_user_id)]
Store = Annotated[SegmentStore, Depends(get_segment_store)]
Activities = Annotated[ActivitySource, Depends(get_activity_source)]


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint used to verify the service is live."""
    return {"status": "ok"}


@app.post("/segments/extract-activity", response_model=ExtractActivityResponse)
async def extract_activity(
    request: ExtractActivityRequest,
    user_id: UserId,
    store: Store,
    activities: Activities,
) -> ExtractActivityResponse:
    """Extracts and stores the road segments of one activity.

    Store failures do not fail the request; they are listed in ``errors``
    and ``success`` is false.

    Raises:
        HTTPException 502: If the pipeline fails unexpectedly.
    """
    try:
        result = await road_segments.extract_and_store_activity_segments(
            user_id, request.activity_id, store, activities
        )
    except Exception as exc:  # noqa: BLE001
        logging.exception("extract_activity failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to extract segments. Please try again.",
        ) from exc
    return ExtractActivityResponse(success=not result.errors, **result.model_dump())


@app.post("/segments/extract-all", response_model=ExtractAllResponse)
async def extract_all(
    request: ExtractAllRequest,
    user_id: UserId,
    store: Store,
    activities: Activities,
) -> ExtractAllResponse:
    """Processes one checkpointed batch of the rider's activities.

    Call again while ``remaining`` is non-zero to work through the backlog.

    Args:
        request: ``limit`` (clamped to 100), ``force`` to re-process
            already-extracted activities, and optional ``months`` to only
            look at recent activities.

    Raises:
        HTTPException 502: If the pipeline fails unexpectedly.
    """
    after_date = None
    if request.months and request.months > 0:
        after_date = datetime.now(timezone.utc) - timedelta(
            days=DAYS_PER_MONTH * request.months
        )

    logging.info(
        "Extracting segments for user %s (limit: %d, force: %s)",
        user_id,
        request.limit,
        request.force,
    )
    try:
        result = await road_segments.extract_segments_for_user_batch(
            user_id,
            store,
            activities,
            limit=request.limit,
            include_processed=request.force,
            after_date=after_date,
        )
    except Exception as exc:  # noqa: BLE001
        logging.exception("extract_all failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to extract segments. Please try again.",
        ) from exc

    summary = f"Processed {result.processed} activities ({result.segments_stored} segments)."
    if result.remaining > 0:
        message = f"{summary} {result.remaining} more remaining."
    else:
        message = f"{summary} All done!"

    return ExtractAllResponse(
        success=not result.errors or result.processed > 0,
        activities_processed=result.processed,
        segments_stored=result.segments_stored,
        remaining=result.remaining,
        errors=result.errors[:MAX_REPORTED_ERRORS],
        message=message,
    )


@app.get("/segments/stats", response_model=SegmentStatsResponse)
async def segment_stats(
    user_id: UserId, store: Store, activities: Activities
) -> SegmentStatsResponse:
    """Returns the rider's segment statistics and extraction backlog."""
    try:
        stats = await store.get_user_segment_stats(user_id)
        unprocessed = await activities.count_unprocessed(user_id)
    except Exception as exc:  # noqa: BLE001
        logging.exception("segment_stats failed")
        raise HTTPException(
            status_code=502, detail="Failed to fetch segment statistics."
        ) from exc
    return SegmentStatsResponse(stats=stats, unprocessed_activities=unprocessed)


@app.get("/segments/familiar", response_model=FamiliarSegmentsResponse)
async def familiar_segments(
    user_id: UserId,
    store: Store,
    min_lat: Annotated[float, Query()],
    max_lat: Annotated[float, Query()],
    min_lng: Annotated[float, Query()],
    max_lng: Annotated[float, Query()],
    min_ride_count: Annotated[int, Query(ge=1)] = 1,
) -> FamiliarSegmentsResponse:
    """Returns the rider's segments inside a bounding box.

    All four bounds are required; FastAPI answers 422 when one is missing.
    """
    try:
        rows = await store.get_user_segments_in_bbox(
            user_id, min_lat, max_lat, min_lng, max_lng, min_ride_count
        )
    except Exception as exc:  # noqa: BLE001
        logging.exception("familiar_segments failed")
        raise HTTPException(status_code=502, detail="Failed to fetch segments.") from exc
    return FamiliarSegmentsResponse(segments=rows, count=len(rows))


@app.get("/segments/geojson", response_model=SegmentFeatureCollection)
async def segments_geojson(
    user_id: UserId,
    store: Store,
    min_lat: Annotated[float, Query()],
    max_lat: Annotated[float, Query()],
    min_lng: Annotated[float, Query()],
    max_lng: Annotated[float, Query()],
    min_ride_count: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1)] = segment_map.DEFAULT_FEATURE_LIMIT,
) -> SegmentFeatureCollection:
    """Returns the rider's segments in a box as a GeoJSON FeatureCollection.

    Features are styled by ride count and capped at ``limit``; the metadata
    reports how many matched and whether the list was truncated.
    """
    try:
        rows = await store.get_user_segments_in_bbox(
            user_id, min_lat, max_lat, min_lng, max_lng, min_ride_count
        )
    except Exception as exc:  # noqa: BLE001
        logging.exception("segments_geojson failed")
        raise HTTPException(status_code=502, detail="Failed to fetch segments.") from exc
    return segment_map.segments_to_feature_collection(rows, limit)


@app.post("/routes/score", response_model=RoutePreferenceScore)
async def score_route(
    request: ScoreRouteRequest, user_id: UserId, store: Store
) -> RoutePreferenceScore:
    """Scores one route against the rider's segment history.

    Raises:
        HTTPException 400: If neither ``polyline`` nor ``coordinates`` is given.
        HTTPException 502: If scoring fails unexpectedly.
    """
    track = request.polyline or request.coordinates
    if not track:
        raise HTTPException(status_code=400, detail="polyline or coordinates required.")
    try:
        return await route_preferences.score_route(track, user_id, store)
    except Exception as exc:  # noqa: BLE001
        logging.exception("score_route failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to score the route. Please try again.",
        ) from exc


@app.post("/routes/score-many", response_model=ScoreRoutesResponse)
async def score_routes(
    request: ScoreRoutesRequest, user_id: UserId, store: Store
) -> ScoreRoutesResponse:
    """Scores several candidate routes and ranks them, most familiar first.

    Raises:
        HTTPException 400: If ``routes`` is empty.
        HTTPException 502: If scoring fails unexpectedly.
    """
    if not request.routes:
        raise HTTPException(status_code=400, detail="routes array required.")
    try:
        ranked = await route_preferences.score_multiple_routes(
            request.routes, user_id, store
        )
    except Exception as exc:  # noqa: BLE001
        logging.exception("score_routes failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to score the routes. Please try again.",
        ) from exc
    return ScoreRoutesResponse(
        routes=ranked,
        best_route=ranked[0] if ranked else None,
        recommendation=route_preferences.recommend_route(ranked),
    )


@app.get("/preferences", response_model=UserRoadPreferences)
async def get_preferences(user_id: UserId, store: Store) -> UserRoadPreferences:
    """Returns the rider's road preference settings (defaults if unset)."""
    try:
        return await store.get_user_preferences(user_id)
    except Exception as exc:  # noqa: BLE001
        logging.exception("get_preferences failed")
        raise HTTPException(status_code=502, detail="Failed to fetch preferences.") from exc


@app.put("/preferences", response_model=UserRoadPreferences)
async def update_preferences(
    request: UserRoadPreferencesUpdate, user_id: UserId, store: Store
) -> UserRoadPreferences:
    """Applies a partial update to the rider's road preference settings.

    Raises:
        HTTPException 400: If the body sets no field.
    """
    if not request.model_dump(exclude_none=True):
        raise HTTPException(status_code=400, detail="No preference updates provided.")
    try:
        return await store.upsert_user_preferences(user_id, request)
    except Exception as exc:  # noqa: BLE001
        logging.exception("update_preferences failed")
        raise HTTPException(status_code=502, detail="Failed to update preferences.") from exc


@app.post("/loops/waypoints", response_model=LoopWaypointsResult)
async def loop_waypoints_endpoint(
    request: LoopWaypointsRequest, user_id: UserId, store: Store
) -> LoopWaypointsResult:
    """Selects familiar-road waypoints for a loop of ``distance_km``.

    When ``fallback_to_random`` is true the caller should generate the loop
    without history.

    Raises:
        HTTPException 502: If waypoint selection fails unexpectedly.
    """
    try:
        return await loop_waypoints.get_loop_waypoints(
            user_id,
            (request.lat, request.lng),
            request.distance_km,
            store,
            min_ride_count=request.min_ride_count,
            explore_mode=request.explore_mode,
        )
    except Exception as exc:  # noqa: BLE001
        logging.exception("loop_waypoints failed")
        raise HTTPException(
            status_code=502,
            detail="Failed to select loop waypoints. Please try again.",
        ) from exc
