"""Familiar-road waypoint selection for loop routes.

Picks a handful of segments the rider already knows, spread around the start
point, and turns them into an ordered waypoint list the routing engine can
thread a loop through:
  1.  Query familiar segments inside a box around the start.
  2.  Bucket them into N/E/S/W quadrants by bearing from the start.
  3.  In each quadrant prefer segments about a quarter of the loop distance
      away, breaking near-ties by ride count.
  4.  Order the picks clockwise and emit start/mid/end waypoints for each,
      dropping any waypoint too close to one already kept.

When the rider has no familiar segments nearby the result says so with
``fallback_to_random`` rather than raising; the caller then generates a
loop without history.
"""

import logging
from functools import cmp_to_key

from geo import Coordinate, bearing_deg, bounding_box, distance_m, midpoint
from models import (
    LoopWaypointsResult,
    Quadrant,
    SegmentRow,
    SelectedSegment,
    Waypoint,
)
from segment_store import SegmentStore, StoreError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Selection rules
# ---------------------------------------------------------------------------

# Familiar segments picked per quadrant; explore mode keeps just one so most
# of the loop is left to new roads.
SEGMENTS_PER_QUADRANT: int = 2
EXPLORE_SEGMENTS_PER_QUADRANT: int = 1
# Candidates whose distance-from-ideal differs by less than this are treated
# as equally well placed, and ride count decides.
DISTANCE_TIE_M: float = 1000
# Waypoints closer than this to an earlier waypoint are dropped.
WAYPOINT_DEDUP_M: float = 100
DEFAULT_MIN_RIDE_COUNT: int = 2

# Quadrant bounds as [start, end) bearings. North wraps through 0.
_QUADRANTS: tuple[tuple[Quadrant, float, float], ...] = (
    ("north", 315.0, 45.0),
    ("east", 45.0, 135.0),
    ("south", 135.0, 225.0),
    ("west", 225.0, 315.0),
)


def quadrant_for_bearing(bearing: float) -> Quadrant:
    """Returns the compass quadrant a bearing (degrees) falls into."""
    bearing %= 360
    for name, start, end in _QUADRANTS:
        if start < end:
            if start <= bearing < end:
                return name
        elif bearing >= start or bearing < end:
            return name
    raise AssertionError(f"bearing {bearing} matched no quadrant")


def _to_candidate(row: SegmentRow, start: Coordinate) -> SelectedSegment:
    mid = midpoint((row.start_lat, row.start_lng), (row.end_lat, row.end_lng))
    bearing = bearing_deg(start, mid)
    return SelectedSegment(
        id=row.id,
        segment_hash=row.segment_hash,
        start_lat=row.start_lat,
        start_lng=row.start_lng,
        end_lat=row.end_lat,
        end_lng=row.end_lng,
        mid_lat=mid[0],
        mid_lng=mid[1],
        ride_count=row.ride_count,
        distance_from_start_m=distance_m(start, mid),
        bearing_from_start=bearing,
        quadrant=quadrant_for_bearing(bearing),
        road_name=row.road_name,
    )


def _rank_quadrant(
    candidates: list[SelectedSegment], ideal_distance_m: float
) -> list[SelectedSegment]:
    """Sorts one quadrant's candidates, best placed first."""

    def compare(a: SelectedSegment, b: SelectedSegment) -> int:
        diff_a = abs(a.distance_from_start_m - ideal_distance_m)
        diff_b = abs(b.distance_from_start_m - ideal_distance_m)
        if abs(diff_a - diff_b) < DISTANCE_TIE_M:
            return b.ride_count - a.ride_count
        return -1 if diff_a < diff_b else 1

    return sorted(candidates, key=cmp_to_key(compare))


def select_loop_segments(
    rows: list[SegmentRow],
    start: Coordinate,
    target_distance_km: float,
    *,
    explore_mode: bool = False,
) -> list[SelectedSegment]:
    """Picks the anchor segments for a loop, ordered clockwise from north."""
    ideal_distance_m = target_distance_km * 1000 / 4
    per_quadrant = EXPLORE_SEGMENTS_PER_QUADRANT if explore_mode else SEGMENTS_PER_QUADRANT

    by_quadrant: dict[Quadrant, list[SelectedSegment]] = {
        name: [] for name, _, _ in _QUADRANTS
    }
    for row in rows:
        candidate = _to_candidate(row, start)
        by_quadrant[candidate.quadrant].append(candidate)

    selected: list[SelectedSegment] = []
    for candidates in by_quadrant.values():
        selected.extend(_rank_quadrant(candidates, ideal_distance_m)[:per_quadrant])

    selected.sort(key=lambda s: s.bearing_from_start)
    return selected


def build_waypoints(
    segments: list[SelectedSegment], min_spacing_m: float = WAYPOINT_DEDUP_M
) -> list[Waypoint]:
    """Emits start, midpoint and end of each segment, skipping near-duplicates.

    Scans in emission order; a point within ``min_spacing_m`` of any point
    already kept is dropped.
    """
    kept: list[Coordinate] = []
    for s in segments:
        for point in (
            (s.start_lat, s.start_lng),
            (s.mid_lat, s.mid_lng),
            (s.end_lat, s.end_lng),
        ):
            if all(distance_m(point, k) >= min_spacing_m for k in kept):
                kept.append(point)
    return [Waypoint(lat=lat, lng=lng) for lat, lng in kept]


async def get_loop_waypoints(
    user_id: str,
    start: Coordinate,
    target_distance_km: float,
    store: SegmentStore,
    *,
    min_ride_count: int = DEFAULT_MIN_RIDE_COUNT,
    explore_mode: bool = False,
) -> LoopWaypointsResult:
    """Selects waypoints that steer a loop onto roads the rider knows.

    Args:
        user_id: The rider.
        start: Loop start (and end) as ``(lat, lng)``.
        target_distance_km: Desired total loop length.
        store: Segment store to query.
        min_ride_count: Rides needed before a segment counts as familiar.
        explore_mode: Anchor fewer familiar segments, leaving more room for
            new roads.

    Returns:
        A ``LoopWaypointsResult``. ``fallback_to_random`` is set when no
        familiar segments were found or the store could not be queried.
    """
    min_lat, max_lat, min_lng, max_lng = bounding_box(start, target_distance_km / 2)
    try:
        rows = await store.get_user_segments_in_bbox(
            user_id, min_lat, max_lat, min_lng, max_lng, min_ride_count
        )
    except StoreError as exc:
        logger.warning("Familiar segment query failed for user %s: %s", user_id, exc)
        return LoopWaypointsResult(fallback_to_random=True, error=str(exc))

    if not rows:
        logger.info(
            "No familiar segments within %.1fkm of start for user %s; "
            "falling back to random loop",
            target_distance_km / 2,
            user_id,
        )
        return LoopWaypointsResult(fallback_to_random=True)

    selected = select_loop_segments(
        rows, start, target_distance_km, explore_mode=explore_mode
    )
    waypoints = build_waypoints(selected)
    logger.info(
        "Loop waypoints for user %s: %d segments from %d familiar, %d waypoints",
        user_id,
        len(selected),
        len(rows),
        len(waypoints),
    )
    return LoopWaypointsResult(
        waypoints=waypoints,
        segments=selected,
        total_familiar_segments=len(rows),
    )
