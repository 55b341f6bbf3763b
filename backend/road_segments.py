"""Road segment extraction pipeline.

Turns a recorded GPS track into a list of road segments that can be counted
across rides:
  1.  Decode the encoded polyline (or take the coordinates as given).
  2.  Simplify the track with Douglas-Peucker to strip GPS jitter.
  3.  Walk the simplified track, cutting a segment roughly every
      ``target_length_m`` metres.
  4.  Give each segment a hash built from its rounded endpoints, sorted so the
      same road ridden in either direction gets the same hash.

The persisted flows at the bottom feed those segments into a ``SegmentStore``
one upsert at a time, collecting failures instead of raising them.
"""

import hashlib
import logging
import math
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from geo import Coordinate, bearing_deg, destination_point, distance_m
from models import (
    ActivityContext,
    ActivityRecord,
    BatchExtractionResult,
    ExtractionResult,
    RoadSegment,
)
from polyline import DEFAULT_PRECISION, PolylineDecodeError, decode_polyline
from segment_store import ActivitySource, SegmentStore, StoreError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Extraction rules
# ---------------------------------------------------------------------------

# -- Segment length (metres) ------------------------------------------------
MIN_SEGMENT_LENGTH_M: float = 50      # never store anything shorter
TARGET_SEGMENT_LENGTH_M: float = 200  # cut a segment once this is reached
MAX_SEGMENT_LENGTH_M: float = 500     # split inside long edges beyond this

# -- Hashing -----------------------------------------------------------------
# 8 decimal places is ~1mm, enough to absorb float noise but keep real
# endpoints distinct.
COORD_PRECISION: int = 8
# 16 hex chars = 64 bits of the SHA-256 digest.
SEGMENT_HASH_LENGTH: int = 16
# Below this magnitude coordinates are printed in exponent form.
_PLAIN_NOTATION_MIN: float = 1e-6

# -- Simplification ----------------------------------------------------------
SIMPLIFICATION_TOLERANCE: float = 0.0001  # degrees, ~11m at the equator

# -- Batch processing --------------------------------------------------------
DEFAULT_BATCH_LIMIT: int = 50
MAX_BATCH_LIMIT: int = 100


class ExtractionConfig(BaseModel):
    """Per-call extraction settings. Defaults are the constants above."""

    min_length_m: float = Field(default=MIN_SEGMENT_LENGTH_M, ge=0)
    target_length_m: float = Field(default=TARGET_SEGMENT_LENGTH_M, gt=0)
    max_length_m: float | None = MAX_SEGMENT_LENGTH_M
    """Hard ceiling on segment length. ``None`` lets segments grow until the
    next simplified point past the target, however far away it is."""

    simplification_tolerance: float = Field(default=SIMPLIFICATION_TOLERANCE, ge=0)
    coord_precision: int = Field(default=COORD_PRECISION, ge=0, le=12)
    polyline_precision: int = Field(default=DEFAULT_PRECISION, ge=1)

    @model_validator(mode="after")
    def _check_lengths(self) -> "ExtractionConfig":
        if self.min_length_m > self.target_length_m:
            raise ValueError("min_length_m must not exceed target_length_m.")
        if self.max_length_m is not None and self.max_length_m < self.target_length_m:
            raise ValueError("max_length_m must not be below target_length_m.")
        return self


# ---------------------------------------------------------------------------
# Segment hashing
# ---------------------------------------------------------------------------


def round_coord(value: float, precision: int = COORD_PRECISION) -> float:
    """Rounds a coordinate for hashing, halves toward +infinity.

    Negative zero becomes zero.
    """
    multiplier = 10 ** precision
    return math.floor(value * multiplier + 0.5) / multiplier + 0.0


def format_coord(value: float) -> str:
    """Formats a rounded coordinate the way ECMAScript prints numbers.

    Integral values have no fractional part (``"51"``), values down to 1e-6
    use plain decimals (``"0.00005"``) and smaller ones use a bare exponent
    (``"1e-7"``). Segment hashes stored by existing clients depend on it.
    """
    if value == int(value):
        return str(int(value))
    text = repr(value)
    if "e" not in text:
        return text
    if abs(value) >= _PLAIN_NOTATION_MIN:
        return format(Decimal(text), "f")
    mantissa, exponent = text.split("e")
    return f"{mantissa}e{int(exponent)}"


def segment_hash(
    start: Coordinate, end: Coordinate, precision: int = COORD_PRECISION
) -> str:
    """Returns the direction-independent hash of a segment.

    Both endpoints are rounded and formatted as ``"lat,lng"``; the two strings
    are sorted before hashing so ``segment_hash(a, b) == segment_hash(b, a)``.
    """
    keys = sorted(
        f"{format_coord(round_coord(lat, precision))},"
        f"{format_coord(round_coord(lng, precision))}"
        for lat, lng in (start, end)
    )
    digest = hashlib.sha256("|".join(keys).encode("utf-8")).hexdigest()
    return digest[:SEGMENT_HASH_LENGTH]


# ---------------------------------------------------------------------------
# Track simplification
# ---------------------------------------------------------------------------


def _perpendicular_distance(
    point: Coordinate, line_start: Coordinate, line_end: Coordinate
) -> float:
    """Distance in degrees from ``point`` to the chord, clamped to the chord."""
    dx = line_end[1] - line_start[1]
    dy = line_end[0] - line_start[0]
    length_sq = dx * dx + dy * dy

    if length_sq == 0:
        t = 0.0
    else:
        t = ((point[1] - line_start[1]) * dx + (point[0] - line_start[0]) * dy) / length_sq
        t = max(0.0, min(1.0, t))

    proj_lng = line_start[1] + t * dx
    proj_lat = line_start[0] + t * dy
    return ((point[0] - proj_lat) ** 2 + (point[1] - proj_lng) ** 2) ** 0.5


def _farthest_point(
    points: Sequence[Coordinate], first: int, last: int
) -> tuple[int, float]:
    """Returns (index, deviation) of the interior point farthest from the chord."""
    assert 0 <= first < last < len(points), (first, last)
    max_index = first
    max_distance = 0.0
    for i in range(first + 1, last):
        d = _perpendicular_distance(points[i], points[first], points[last])
        if d > max_distance:
            max_distance = d
            max_index = i
    return max_index, max_distance


def simplify_track(
    points: Sequence[Coordinate], tolerance: float = SIMPLIFICATION_TOLERANCE
) -> list[Coordinate]:
    """Reduces a track to a shape-preserving subset (Ramer-Douglas-Peucker).

    A point survives when it deviates from the chord between its enclosing
    kept points by more than ``tolerance`` degrees. The first and last points
    always survive. Ranges are processed from an explicit stack rather than by
    recursion so tracks with tens of thousands of points are fine.
    """
    if len(points) <= 2:
        return list(points)

    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    stack = [(0, len(points) - 1)]
    while stack:
        first, last = stack.pop()
        index, deviation = _farthest_point(points, first, last)
        if deviation > tolerance:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))

    return [p for p, kept in zip(points, keep) if kept]


# ---------------------------------------------------------------------------
# Segment extraction
# ---------------------------------------------------------------------------


def _make_segment(
    start: Coordinate,
    end: Coordinate,
    length: float,
    point_count: int,
    start_distance: float,
    precision: int,
) -> RoadSegment:
    return RoadSegment(
        start_lat=round_coord(start[0], precision),
        start_lng=round_coord(start[1], precision),
        end_lat=round_coord(end[0], precision),
        end_lng=round_coord(end[1], precision),
        segment_hash=segment_hash(start, end, precision),
        length_m=round(length),
        bearing=round(bearing_deg(start, end)) % 360,
        point_count=point_count,
        start_distance_m=round(start_distance, 1),
    )


def _cut_segments(
    points: Sequence[Coordinate], config: ExtractionConfig
) -> list[RoadSegment]:
    """Walks a simplified track and cuts it into segments."""
    segments: list[RoadSegment] = []
    cut = points[0]
    cut_distance = 0.0
    accumulated = 0.0
    point_count = 1
    prev = cut
    last_index = len(points) - 1

    for i in range(1, len(points)):
        current = points[i]
        edge = distance_m(prev, current)

        # Sparse tracks: an edge that would carry the segment past the ceiling
        # is cut at every target-length mark along it. accumulated <
        # target_length_m always holds here.
        if config.max_length_m is not None and accumulated + edge > config.max_length_m:
            while accumulated + edge > config.target_length_m:
                step = config.target_length_m - accumulated
                split = destination_point(prev, bearing_deg(prev, current), step / 1000)
                segments.append(
                    _make_segment(
                        cut, split, accumulated + step, point_count + 1,
                        cut_distance, config.coord_precision,
                    )
                )
                cut_distance += accumulated + step
                cut = prev = split
                accumulated = 0.0
                point_count = 1
                edge = distance_m(prev, current)

        accumulated += edge
        point_count += 1
        prev = current

        should_split = accumulated >= config.target_length_m or i == last_index
        if should_split and accumulated >= config.min_length_m:
            segments.append(
                _make_segment(
                    cut, current, accumulated, point_count,
                    cut_distance, config.coord_precision,
                )
            )
            cut_distance += accumulated
            cut = current
            accumulated = 0.0
            point_count = 1

    return segments


def extract_segments(
    track: str | Sequence[Coordinate],
    config: ExtractionConfig | None = None,
) -> list[RoadSegment]:
    """Cuts a track into road segments, in track order.

    Args:
        track: A Google-encoded polyline or a sequence of ``(lat, lng)``.
        config: Extraction settings; defaults to ``ExtractionConfig()``.

    Returns:
        The extracted segments. Empty for empty, single-point, undecodable, or
        shorter-than-minimum tracks.
    """
    config = config or ExtractionConfig()
    if isinstance(track, str):
        try:
            coords = decode_polyline(track, config.polyline_precision)
        except PolylineDecodeError as exc:
            logger.warning("Skipping undecodable track: %s", exc)
            return []
    else:
        coords = list(track)

    if len(coords) < 2:
        return []

    simplified = simplify_track(coords, config.simplification_tolerance)
    return _cut_segments(simplified, config)


def get_route_segment_hashes(
    track: str | Sequence[Coordinate], config: ExtractionConfig | None = None
) -> list[str]:
    """Returns the segment hashes of a track, in track order."""
    return [s.segment_hash for s in extract_segments(track, config)]


# ---------------------------------------------------------------------------
# Persisted flows
# ---------------------------------------------------------------------------


async def extract_and_store_segments(
    track: str | Sequence[Coordinate],
    context: ActivityContext,
    store: SegmentStore,
    config: ExtractionConfig | None = None,
) -> ExtractionResult:
    """Extracts segments from ``track`` and records one ride over each.

    Every upsert is independent: a ``StoreError`` on one segment is recorded
    in ``errors`` and the remaining segments are still stored.
    """
    config = config or ExtractionConfig()
    result = ExtractionResult()

    if isinstance(track, str):
        try:
            track = decode_polyline(track, config.polyline_precision)
        except PolylineDecodeError as exc:
            result.errors.append(f"Track could not be decoded: {exc}")
            return result

    segments = extract_segments(track, config)
    result.extracted = len(segments)
    if not segments:
        result.errors.append("No segments extracted (track too short?)")
        return result

    avg_speed_ms = context.avg_speed_ms
    activity_date = context.activity_date or datetime.now(timezone.utc)

    for segment in segments:
        time_s = (
            round(segment.length_m / avg_speed_ms)
            if avg_speed_ms and segment.length_m
            else None
        )
        try:
            await store.upsert_user_segment(
                context.user_id,
                segment,
                avg_speed_ms=avg_speed_ms,
                time_s=time_s,
                activity_date=activity_date,
            )
        except StoreError as exc:
            logger.error("Segment %s upsert failed: %s", segment.segment_hash, exc)
            result.errors.append(f"Segment {segment.segment_hash}: {exc}")
        else:
            result.stored += 1

    logger.info(
        "Stored %d/%d segments for user %s (activity %s)",
        result.stored,
        result.extracted,
        context.user_id,
        context.activity_id,
    )
    return result


async def _process_activity(
    activity: ActivityRecord,
    store: SegmentStore,
    activities: ActivitySource,
    config: ExtractionConfig | None,
) -> ExtractionResult:
    """Extracts and stores one activity's segments, then marks it processed."""
    if not activity.polyline:
        return ExtractionResult(errors=["Activity has no GPS data"])

    context = ActivityContext(
        user_id=activity.user_id,
        activity_id=activity.id,
        activity_date=activity.start_date,
        moving_time_s=activity.moving_time_s,
        distance_m=activity.distance_m,
    )
    result = await extract_and_store_segments(activity.polyline, context, store, config)

    # Marked even when nothing was extracted, otherwise short or corrupt
    # tracks would be picked up again by every batch.
    try:
        await activities.mark_processed(activity.user_id, activity.id)
    except StoreError as exc:
        result.errors.append(f"Failed to mark activity as processed: {exc}")
    return result


async def extract_and_store_activity_segments(
    user_id: str,
    activity_id: str,
    store: SegmentStore,
    activities: ActivitySource,
    config: ExtractionConfig | None = None,
) -> ExtractionResult:
    """Fetches one activity and extracts and stores its segments."""
    logger.info("Extracting segments for activity %s", activity_id)
    try:
        activity = await activities.get_activity(user_id, activity_id)
    except StoreError as exc:
        return ExtractionResult(errors=[f"Failed to fetch activity: {exc}"])
    if activity is None:
        return ExtractionResult(errors=["Activity not found"])
    return await _process_activity(activity, store, activities, config)


async def extract_segments_for_user_batch(
    user_id: str,
    store: SegmentStore,
    activities: ActivitySource,
    *,
    limit: int = DEFAULT_BATCH_LIMIT,
    include_processed: bool = False,
    after_date: datetime | None = None,
    before_date: datetime | None = None,
    config: ExtractionConfig | None = None,
) -> BatchExtractionResult:
    """Processes up to ``limit`` of the user's activities, newest first.

    The batch is checkpointed rather than exhaustive: ``remaining`` tells the
    caller how many unprocessed activities are left for a later call.

    Args:
        limit: Batch size, clamped to [1, MAX_BATCH_LIMIT].
        include_processed: Also re-process activities that were already
            extracted (ride counts are incremented again).
        after_date: Only activities that started after this moment.
        before_date: Only activities that started before this moment.
    """
    limit = max(1, min(limit, MAX_BATCH_LIMIT))
    result = BatchExtractionResult()

    try:
        batch = await activities.list_activities(
            user_id,
            limit=limit,
            include_processed=include_processed,
            after_date=after_date,
            before_date=before_date,
        )
        if not batch:
            return result
        unprocessed = await activities.count_unprocessed(user_id)
    except StoreError as exc:
        result.errors.append(f"Failed to fetch activities: {exc}")
        return result

    pending_in_batch = sum(1 for a in batch if a.segments_extracted_at is None)
    result.remaining = max(0, unprocessed - pending_in_batch)
    logger.info(
        "Batch extraction for user %s: %d activities (limit %d), %d remaining after",
        user_id,
        len(batch),
        limit,
        result.remaining,
    )

    for activity in batch:
        extracted = await _process_activity(activity, store, activities, config)
        result.processed += 1
        result.segments_stored += extracted.stored
        result.errors.extend(f"Activity {activity.id}: {e}" for e in extracted.errors)

    return result
