"""Tests for road_segments.py.

Persisted flows run against the in-memory store implementations. No network
or database access occurs during these tests.
"""

import hashlib
import math
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

import geo
import road_segments
from memory_store import InMemoryActivitySource, InMemorySegmentStore
from models import ActivityContext, ActivityRecord
from polyline import encode_polyline

# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------

_ORIGIN = (51.0, -0.1)
_RIDE_DATE = datetime(2025, 6, 1, 9, 0, tzinfo=timezone.utc)


def _straight_track(length_m, step_m=100, bearing=0.0):
    """Collinear points every ``step_m`` metres along one bearing."""
    n = int(length_m // step_m)
    points = [
        geo.destination_point(_ORIGIN, bearing, i * step_m / 1000)
        for i in range(n + 1)
    ]
    if n * step_m < length_m:
        points.append(geo.destination_point(_ORIGIN, bearing, length_m / 1000))
    return points


def _zigzag_track(legs, leg_m=150):
    """Alternating NE/SE legs: every vertex survives simplification."""
    points = [_ORIGIN]
    for i in range(legs):
        bearing = 45 if i % 2 == 0 else 135
        points.append(geo.destination_point(points[-1], bearing, leg_m / 1000))
    return points


def _path_length(points):
    return sum(geo.distance_m(a, b) for a, b in zip(points, points[1:]))


def _activity(activity_id, days_ago=1, track=None, user_id="rider-1"):
    return ActivityRecord(
        id=activity_id,
        user_id=user_id,
        polyline=encode_polyline(track if track is not None else _zigzag_track(8)),
        start_date=datetime.now(timezone.utc) - timedelta(days=days_ago),
        moving_time_s=120,
        distance_m=1200,
    )


# ---------------------------------------------------------------------------
# Unit tests: segment_hash
# ---------------------------------------------------------------------------


def test_segment_hash_is_direction_independent():
    a, b = (51.5074, -0.1278), (51.5123, -0.1301)
    assert road_segments.segment_hash(a, b) == road_segments.segment_hash(b, a)


def test_segment_hash_is_64_bit_hex():
    h = road_segments.segment_hash((51.0, -0.1), (51.001, -0.1))
    assert len(h) == 16
    int(h, 16)


def test_segment_hash_ignores_noise_below_rounding_precision():
    a, b = (51.12345678, -0.12345678), (51.12445678, -0.12245678)
    noisy_a = (a[0] + 4e-9, a[1] - 4e-9)
    assert road_segments.segment_hash(a, b) == road_segments.segment_hash(noisy_a, b)


def test_segment_hash_differs_for_different_roads():
    a, b, c = (51.0, -0.1), (51.001, -0.1), (51.002, -0.1)
    assert road_segments.segment_hash(a, b) != road_segments.segment_hash(a, c)


def test_round_coord_normalises_negative_zero():
    assert str(road_segments.round_coord(-0.000000001)) == "0.0"


def test_round_coord_rounds_halves_up():
    assert road_segments.round_coord(0.125, 2) == 0.13
    assert road_segments.round_coord(-0.125, 2) == -0.12


@pytest.mark.parametrize(
    "value, expected",
    [
        (51.0, "51"),
        (-120.0, "-120"),
        (0.0, "0"),
        (51.12345678, "51.12345678"),
        (0.00005, "0.00005"),
        (-0.000015, "-0.000015"),
        (0.000001, "0.000001"),
        (1e-07, "1e-7"),
        (-2.5e-08, "-2.5e-8"),
    ],
)
def test_format_coord_matches_javascript_number_printing(value, expected):
    assert road_segments.format_coord(value) == expected


def test_segment_hash_uses_javascript_style_keys():
    # Keys sort with "," before ".", so "51,..." comes first.
    key = "51,0.00005|51.001,0.00005"
    expected = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
    assert road_segments.segment_hash((51.001, 0.00005), (51.0, 0.00005)) == expected


# ---------------------------------------------------------------------------
# Unit tests: simplify_track
# ---------------------------------------------------------------------------


def test_simplify_keeps_endpoints():
    track = _zigzag_track(6) + _straight_track(500)
    simplified = road_segments.simplify_track(track)
    assert simplified[0] == track[0]
    assert simplified[-1] == track[-1]


def test_simplify_collapses_straight_line():
    track = _straight_track(1000, step_m=50)
    assert road_segments.simplify_track(track) == [track[0], track[-1]]


def test_simplify_keeps_sharp_corners():
    track = _zigzag_track(6)
    assert road_segments.simplify_track(track) == track


def test_simplify_short_input_is_returned_unchanged():
    assert road_segments.simplify_track([]) == []
    assert road_segments.simplify_track([_ORIGIN]) == [_ORIGIN]
    two = [_ORIGIN, (51.001, -0.1)]
    assert road_segments.simplify_track(two) == two


def test_simplify_larger_tolerance_never_keeps_more_points():
    # Gentle wiggle: small sideways offsets of varying size.
    track = [
        (51.0 + i * 0.0005, -0.1 + (0.00005 * (i % 3)) * (1 if i % 2 else -1))
        for i in range(40)
    ]
    lengths = [
        len(road_segments.simplify_track(track, tol))
        for tol in (0.0, 0.00002, 0.00005, 0.0001, 0.001)
    ]
    assert all(n <= len(track) for n in lengths)
    assert lengths == sorted(lengths, reverse=True)


def test_simplify_handles_very_long_tracks():
    track = [
        (51.0 + i * 0.00001, -0.1 + 0.001 * math.sin(i / 50))
        for i in range(20_000)
    ]
    simplified = road_segments.simplify_track(track)
    assert simplified[0] == track[0]
    assert simplified[-1] == track[-1]
    assert len(simplified) < len(track)


# ---------------------------------------------------------------------------
# Unit tests: extract_segments
# ---------------------------------------------------------------------------


def test_straight_kilometre_yields_five_target_length_segments():
    segments = road_segments.extract_segments(_straight_track(1000))
    assert len(segments) == 5
    assert all(s.length_m == 200 for s in segments)
    starts = [s.start_distance_m for s in segments]
    assert starts == sorted(starts)
    assert len(set(starts)) == 5
    assert starts[0] == 0
    assert starts[-1] == pytest.approx(800, abs=1)


def test_consecutive_segments_share_endpoints():
    segments = road_segments.extract_segments(_straight_track(1000))
    for prev, nxt in zip(segments, segments[1:]):
        assert prev.end == nxt.start


def test_unbounded_max_length_keeps_sparse_edges_whole():
    config = road_segments.ExtractionConfig(max_length_m=None)
    segments = road_segments.extract_segments(_straight_track(1000), config)
    assert len(segments) == 1
    assert segments[0].length_m == 1000


def test_zigzag_segments_cut_at_vertices():
    track = _zigzag_track(8)
    segments = road_segments.extract_segments(track)
    assert len(segments) == 4
    assert [s.length_m for s in segments] == [300, 300, 300, 300]
    assert all(s.point_count == 3 for s in segments)
    assert segments[0].start == pytest.approx(track[0])
    assert all(0 <= s.bearing < 360 for s in segments)
    assert segments[0].bearing == pytest.approx(90, abs=1)


def test_extraction_length_accounts_for_whole_track():
    track = _zigzag_track(10, leg_m=170)
    segments = road_segments.extract_segments(track)
    total = _path_length(track)
    assert sum(s.length_m for s in segments) == pytest.approx(total, abs=len(segments))


def test_track_shorter_than_minimum_yields_nothing():
    track = _straight_track(40, step_m=10)
    assert road_segments.extract_segments(track) == []


def test_sub_minimum_tail_is_dropped():
    segments = road_segments.extract_segments(_straight_track(1030, step_m=10))
    assert len(segments) == 5


def test_empty_and_single_point_tracks_yield_nothing():
    assert road_segments.extract_segments([]) == []
    assert road_segments.extract_segments([_ORIGIN]) == []
    assert road_segments.extract_segments("") == []


def test_extract_accepts_encoded_polyline():
    encoded = encode_polyline(_zigzag_track(8))
    segments = road_segments.extract_segments(encoded)
    assert len(segments) == 4
    assert all(s.length_m == pytest.approx(300, abs=3) for s in segments)


def test_undecodable_polyline_yields_nothing():
    assert road_segments.extract_segments("_p~iF~ps|") == []


def test_same_road_in_reverse_gives_same_hashes():
    track = _zigzag_track(8)
    forward = road_segments.get_route_segment_hashes(track)
    backward = road_segments.get_route_segment_hashes(list(reversed(track)))
    assert sorted(forward) == sorted(backward)


def test_config_rejects_inverted_lengths():
    with pytest.raises(ValidationError):
        road_segments.ExtractionConfig(min_length_m=300, target_length_m=200)
    with pytest.raises(ValidationError):
        road_segments.ExtractionConfig(target_length_m=200, max_length_m=100)


def test_custom_target_length():
    config = road_segments.ExtractionConfig(
        min_length_m=10, target_length_m=100, max_length_m=150
    )
    segments = road_segments.extract_segments(_straight_track(1000), config)
    assert len(segments) == 10


# ---------------------------------------------------------------------------
# Persisted flow: extract_and_store_segments
# ---------------------------------------------------------------------------


def _context(**overrides):
    values = dict(
        user_id="rider-1",
        activity_id="act-1",
        activity_date=_RIDE_DATE,
        moving_time_s=120,
        distance_m=1200,
    )
    values.update(overrides)
    return ActivityContext(**values)


@pytest.mark.asyncio
async def test_extract_and_store_records_each_segment():
    store = InMemorySegmentStore()
    result = await road_segments.extract_and_store_segments(
        _zigzag_track(8), _context(), store
    )
    assert result.extracted == 4
    assert result.stored == 4
    assert result.errors == []
    rows = list(store.segments.values())
    assert len(rows) == 4
    assert all(r.ride_count == 1 for r in rows)
    assert all(r.avg_speed_ms == pytest.approx(10.0) for r in rows)
    assert all(r.total_time_s == 30 for r in rows)


@pytest.mark.asyncio
async def test_riding_the_same_road_twice_increments_ride_count():
    store = InMemorySegmentStore()
    track = _zigzag_track(8)
    await road_segments.extract_and_store_segments(track, _context(), store)
    later = _RIDE_DATE + timedelta(days=3)
    await road_segments.extract_and_store_segments(
        list(reversed(track)), _context(activity_date=later, moving_time_s=60), store
    )
    rows = list(store.segments.values())
    assert len(rows) == 4
    assert all(r.ride_count == 2 for r in rows)
    assert all(r.last_ridden_at == later for r in rows)
    assert all(r.first_ridden_at == _RIDE_DATE for r in rows)
    # Running average of 10 m/s and 20 m/s.
    assert all(r.avg_speed_ms == pytest.approx(15.0) for r in rows)


@pytest.mark.asyncio
async def test_failed_upsert_does_not_abort_remaining_segments():
    track = _zigzag_track(8)
    bad_hash = road_segments.extract_segments(track)[1].segment_hash
    store = InMemorySegmentStore(fail_hashes={bad_hash})
    result = await road_segments.extract_and_store_segments(track, _context(), store)
    assert result.extracted == 4
    assert result.stored == 3
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Segment {bad_hash}:")


@pytest.mark.asyncio
async def test_short_track_reports_no_segments():
    store = InMemorySegmentStore()
    result = await road_segments.extract_and_store_segments(
        _straight_track(30, step_m=10), _context(), store
    )
    assert result.extracted == 0
    assert result.errors == ["No segments extracted (track too short?)"]
    assert store.segments == {}


@pytest.mark.asyncio
async def test_undecodable_track_is_reported():
    result = await road_segments.extract_and_store_segments(
        "_p~iF~ps|", _context(), InMemorySegmentStore()
    )
    assert result.stored == 0
    assert result.errors[0].startswith("Track could not be decoded")


@pytest.mark.asyncio
async def test_missing_speed_data_stores_no_time():
    store = InMemorySegmentStore()
    await road_segments.extract_and_store_segments(
        _zigzag_track(8), _context(moving_time_s=None), store
    )
    rows = list(store.segments.values())
    assert all(r.avg_speed_ms is None and r.total_time_s is None for r in rows)


# ---------------------------------------------------------------------------
# Persisted flow: single activity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_extract_activity_stores_and_marks_processed():
    store = InMemorySegmentStore()
    activities = InMemoryActivitySource([_activity("act-1")])
    result = await road_segments.extract_and_store_activity_segments(
        "rider-1", "act-1", store, activities
    )
    assert result.stored == 4
    assert result.errors == []
    assert activities.activities["act-1"].segments_extracted_at is not None


@pytest.mark.asyncio
async def test_extract_activity_not_found():
    result = await road_segments.extract_and_store_activity_segments(
        "rider-1", "missing", InMemorySegmentStore(), InMemoryActivitySource()
    )
    assert result.errors == ["Activity not found"]


@pytest.mark.asyncio
async def test_extract_activity_of_another_user_is_not_found():
    activities = InMemoryActivitySource([_activity("act-1", user_id="someone-else")])
    result = await road_segments.extract_and_store_activity_segments(
        "rider-1", "act-1", InMemorySegmentStore(), activities
    )
    assert result.errors == ["Activity not found"]


@pytest.mark.asyncio
async def test_extract_activity_without_gps():
    activity = _activity("act-1").model_copy(update={"polyline": None})
    result = await road_segments.extract_and_store_activity_segments(
        "rider-1", "act-1", InMemorySegmentStore(), InMemoryActivitySource([activity])
    )
    assert result.errors == ["Activity has no GPS data"]


@pytest.mark.asyncio
async def test_extract_activity_fetch_failure_is_reported():
    activities = InMemoryActivitySource([_activity("act-1")], fail_on={"get_activity"})
    result = await road_segments.extract_and_store_activity_segments(
        "rider-1", "act-1", InMemorySegmentStore(), activities
    )
    assert result.errors == ["Failed to fetch activity: get_activity unavailable"]


@pytest.mark.asyncio
async def test_extract_activity_mark_failure_keeps_stored_segments():
    store = InMemorySegmentStore()
    activities = InMemoryActivitySource([_activity("act-1")], fail_on={"mark_processed"})
    result = await road_segments.extract_and_store_activity_segments(
        "rider-1", "act-1", store, activities
    )
    assert result.stored == 4
    assert result.errors == [
        "Failed to mark activity as processed: mark_processed unavailable"
    ]


# ---------------------------------------------------------------------------
# Persisted flow: batches
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_batch_is_checkpointed_and_resumable():
    store = InMemorySegmentStore()
    activities = InMemoryActivitySource(
        [_activity("old", days_ago=30), _activity("mid", days_ago=10), _activity("new", days_ago=1)]
    )

    first = await road_segments.extract_segments_for_user_batch(
        "rider-1", store, activities, limit=2
    )
    assert first.processed == 2
    assert first.remaining == 1
    assert first.segments_stored == 8
    assert activities.activities["old"].segments_extracted_at is None
    assert activities.activities["new"].segments_extracted_at is not None

    second = await road_segments.extract_segments_for_user_batch(
        "rider-1", store, activities, limit=2
    )
    assert second.processed == 1
    assert second.remaining == 0

    third = await road_segments.extract_segments_for_user_batch(
        "rider-1", store, activities, limit=2
    )
    assert third.processed == 0
    assert third.errors == []
    assert all(r.ride_count == 3 for r in store.segments.values())


@pytest.mark.asyncio
async def test_batch_reprocesses_when_including_processed():
    store = InMemorySegmentStore()
    activities = InMemoryActivitySource([_activity("a")])
    await road_segments.extract_segments_for_user_batch("rider-1", store, activities)
    again = await road_segments.extract_segments_for_user_batch(
        "rider-1", store, activities, include_processed=True
    )
    assert again.processed == 1
    assert again.remaining == 0
    assert all(r.ride_count == 2 for r in store.segments.values())


@pytest.mark.asyncio
async def test_batch_filters_by_date():
    activities = InMemoryActivitySource(
        [_activity("old", days_ago=90), _activity("new", days_ago=2)]
    )
    result = await road_segments.extract_segments_for_user_batch(
        "rider-1",
        InMemorySegmentStore(),
        activities,
        after_date=datetime.now(timezone.utc) - timedelta(days=30),
    )
    assert result.processed == 1
    assert activities.activities["old"].segments_extracted_at is None


@pytest.mark.asyncio
async def test_batch_prefixes_errors_with_activity_id():
    activities = InMemoryActivitySource(
        [_activity("good"), _activity("short", track=_straight_track(20, step_m=10))]
    )
    result = await road_segments.extract_segments_for_user_batch(
        "rider-1", InMemorySegmentStore(), activities
    )
    assert result.processed == 2
    assert result.segments_stored == 4
    assert result.errors == ["Activity short: No segments extracted (track too short?)"]


@pytest.mark.asyncio
async def test_batch_listing_failure_is_reported():
    activities = InMemoryActivitySource([_activity("a")], fail_on={"list_activities"})
    result = await road_segments.extract_segments_for_user_batch(
        "rider-1", InMemorySegmentStore(), activities
    )
    assert result.processed == 0
    assert result.errors == ["Failed to fetch activities: list_activities unavailable"]


@pytest.mark.asyncio
@pytest.mark.parametrize("requested, expected", [(1000, 100), (0, 1), (-5, 1), (20, 20)])
async def test_batch_limit_is_clamped(requested, expected):
    seen = {}

    class _RecordingSource(InMemoryActivitySource):
        async def list_activities(self, user_id, *, limit, **kwargs):
            seen["limit"] = limit
            return await super().list_activities(user_id, limit=limit, **kwargs)

    await road_segments.extract_segments_for_user_batch(
        "rider-1", InMemorySegmentStore(), _RecordingSource(), limit=requested
    )
    assert seen["limit"] == expected
