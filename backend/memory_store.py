"""In-process implementations of ``SegmentStore`` and ``ActivitySource``.

Used as the default backing store of the HTTP service and by the test suite.
The upsert arithmetic mirrors the production database function: ride count
+1, first/last ridden dates widened, running average speed, min/max speed and
accumulated time.
"""

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from models import (
    ActivityRecord,
    PreferenceRow,
    RoadSegment,
    SegmentRow,
    SegmentStats,
    UserRoadPreferences,
    UserRoadPreferencesUpdate,
)
from route_preferences import calculate_preference_score
from segment_store import StoreError

# Segments first ridden within this window count as "recent" in stats.
RECENT_SEGMENT_WINDOW = timedelta(days=30)


class StoredSegment(BaseModel):
    """One user's aggregate for one segment."""

    id: str
    segment_hash: str
    start_lat: float
    start_lng: float
    end_lat: float
    end_lng: float
    segment_length_m: int
    bearing: int
    ride_count: int = 0
    first_ridden_at: datetime | None = None
    last_ridden_at: datetime | None = None
    avg_speed_ms: float | None = None
    min_speed_ms: float | None = None
    max_speed_ms: float | None = None
    total_time_s: int | None = None
    road_name: str | None = None
    road_type: str | None = None


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _in_box(lat: float, lng: float, box: tuple[float, float, float, float]) -> bool:
    min_lat, max_lat, min_lng, max_lng = box
    return min_lat <= lat <= max_lat and min_lng <= lng <= max_lng


class InMemorySegmentStore:
    """Dict-backed ``SegmentStore``.

    ``fail_on`` holds method names that should raise ``StoreError``;
    ``fail_hashes`` makes ``upsert_user_segment`` fail for specific segments.
    """

    def __init__(
        self,
        *,
        fail_on: Iterable[str] = (),
        fail_hashes: Iterable[str] = (),
    ):
        self.segments: dict[tuple[str, str], StoredSegment] = {}
        self.preferences: dict[str, UserRoadPreferences] = {}
        self.fail_on = set(fail_on)
        self.fail_hashes = set(fail_hashes)

    def _check(self, method: str) -> None:
        if method in self.fail_on:
            raise StoreError(f"{method} unavailable")

    def _user_segments(self, user_id: str) -> list[StoredSegment]:
        return [s for (uid, _), s in self.segments.items() if uid == user_id]

    async def upsert_user_segment(
        self,
        user_id: str,
        segment: RoadSegment,
        *,
        avg_speed_ms: float | None = None,
        time_s: int | None = None,
        activity_date: datetime | None = None,
    ) -> None:
        self._check("upsert_user_segment")
        if segment.segment_hash in self.fail_hashes:
            raise StoreError(f"write rejected for {segment.segment_hash}")

        activity_date = _utc(activity_date) or datetime.now(timezone.utc)
        key = (user_id, segment.segment_hash)
        row = self.segments.get(key)
        if row is None:
            self.segments[key] = StoredSegment(
                id=str(uuid.uuid4()),
                segment_hash=segment.segment_hash,
                start_lat=segment.start_lat,
                start_lng=segment.start_lng,
                end_lat=segment.end_lat,
                end_lng=segment.end_lng,
                segment_length_m=segment.length_m,
                bearing=segment.bearing,
                ride_count=1,
                first_ridden_at=activity_date,
                last_ridden_at=activity_date,
                avg_speed_ms=avg_speed_ms,
                min_speed_ms=avg_speed_ms,
                max_speed_ms=avg_speed_ms,
                total_time_s=time_s,
            )
            return

        if avg_speed_ms is not None:
            row.avg_speed_ms = (
                (row.avg_speed_ms or 0) * row.ride_count + avg_speed_ms
            ) / (row.ride_count + 1)
            row.min_speed_ms = min(row.min_speed_ms if row.min_speed_ms is not None else avg_speed_ms, avg_speed_ms)
            row.max_speed_ms = max(row.max_speed_ms if row.max_speed_ms is not None else avg_speed_ms, avg_speed_ms)
        if time_s is not None:
            row.total_time_s = (row.total_time_s or 0) + time_s
        row.ride_count += 1
        row.first_ridden_at = min(row.first_ridden_at or activity_date, activity_date)
        row.last_ridden_at = max(row.last_ridden_at or activity_date, activity_date)

    async def get_segment_preferences(
        self, user_id: str, segment_hashes: Sequence[str]
    ) -> list[PreferenceRow]:
        self._check("get_segment_preferences")
        prefs = self.preferences.get(user_id, UserRoadPreferences())
        rows = []
        for segment_hash in dict.fromkeys(segment_hashes):
            stored = self.segments.get((user_id, segment_hash))
            if stored is None:
                continue
            rows.append(
                PreferenceRow(
                    segment_hash=segment_hash,
                    ride_count=stored.ride_count,
                    preference_score=calculate_preference_score(
                        stored.ride_count, stored.last_ridden_at, prefs
                    ),
                    last_ridden_at=stored.last_ridden_at,
                )
            )
        return rows

    async def get_user_segments_in_bbox(
        self,
        user_id: str,
        min_lat: float,
        max_lat: float,
        min_lng: float,
        max_lng: float,
        min_ride_count: int = 1,
    ) -> list[SegmentRow]:
        self._check("get_user_segments_in_bbox")
        box = (min_lat, max_lat, min_lng, max_lng)
        matches = [
            s for s in self._user_segments(user_id)
            if s.ride_count >= min_ride_count
            and (_in_box(s.start_lat, s.start_lng, box) or _in_box(s.end_lat, s.end_lng, box))
        ]
        matches.sort(key=lambda s: s.ride_count, reverse=True)
        return [
            SegmentRow(
                id=s.id,
                segment_hash=s.segment_hash,
                start_lat=s.start_lat,
                start_lng=s.start_lng,
                end_lat=s.end_lat,
                end_lng=s.end_lng,
                ride_count=s.ride_count,
                last_ridden_at=s.last_ridden_at,
                road_name=s.road_name,
                road_type=s.road_type,
            )
            for s in matches
        ]

    async def get_user_segment_stats(self, user_id: str) -> SegmentStats:
        self._check("get_user_segment_stats")
        rows = self._user_segments(user_id)
        if not rows:
            return SegmentStats()

        most_ridden = max(rows, key=lambda s: s.ride_count)
        recent_cutoff = datetime.now(timezone.utc) - RECENT_SEGMENT_WINDOW
        return SegmentStats(
            total_segments=len(rows),
            total_rides=sum(s.ride_count for s in rows),
            unique_km=sum(s.segment_length_m for s in rows) / 1000,
            most_ridden_segment_hash=most_ridden.segment_hash,
            most_ridden_count=most_ridden.ride_count,
            segments_by_ride_count={
                "1_ride": sum(1 for s in rows if s.ride_count == 1),
                "2_3_rides": sum(1 for s in rows if 2 <= s.ride_count <= 3),
                "4_10_rides": sum(1 for s in rows if 4 <= s.ride_count <= 10),
                "10_plus_rides": sum(1 for s in rows if s.ride_count > 10),
            },
            recent_new_segments=sum(
                1 for s in rows
                if s.first_ridden_at is not None and s.first_ridden_at > recent_cutoff
            ),
        )

    async def get_user_preferences(self, user_id: str) -> UserRoadPreferences:
        self._check("get_user_preferences")
        return self.preferences.get(user_id, UserRoadPreferences())

    async def upsert_user_preferences(
        self, user_id: str, update: UserRoadPreferencesUpdate
    ) -> UserRoadPreferences:
        self._check("upsert_user_preferences")
        current = self.preferences.get(user_id, UserRoadPreferences())
        merged = current.model_copy(update=update.model_dump(exclude_none=True))
        self.preferences[user_id] = merged
        return merged


class InMemoryActivitySource:
    """List-backed ``ActivitySource``."""

    def __init__(
        self,
        activities: Iterable[ActivityRecord] = (),
        *,
        fail_on: Iterable[str] = (),
    ):
        self.activities: dict[str, ActivityRecord] = {a.id: a for a in activities}
        self.fail_on = set(fail_on)

    def _check(self, method: str) -> None:
        if method in self.fail_on:
            raise StoreError(f"{method} unavailable")

    def add(self, activity: ActivityRecord) -> None:
        self.activities[activity.id] = activity

    async def get_activity(
        self, user_id: str, activity_id: str
    ) -> ActivityRecord | None:
        self._check("get_activity")
        activity = self.activities.get(activity_id)
        if activity is None or activity.user_id != user_id:
            return None
        return activity

    async def list_activities(
        self,
        user_id: str,
        *,
        limit: int,
        include_processed: bool = False,
        after_date: datetime | None = None,
        before_date: datetime | None = None,
    ) -> list[ActivityRecord]:
        self._check("list_activities")
        after_date = _utc(after_date)
        before_date = _utc(before_date)
        matches = []
        for a in self.activities.values():
            if a.user_id != user_id or not a.polyline:
                continue
            if not include_processed and a.segments_extracted_at is not None:
                continue
            started = _utc(a.start_date)
            if after_date and (started is None or started <= after_date):
                continue
            if before_date and (started is None or started >= before_date):
                continue
            matches.append(a)

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        matches.sort(key=lambda a: _utc(a.start_date) or oldest, reverse=True)
        return matches[:limit]

    async def count_unprocessed(self, user_id: str) -> int:
        self._check("count_unprocessed")
        return sum(
            1 for a in self.activities.values()
            if a.user_id == user_id and a.polyline and a.segments_extracted_at is None
        )

    async def mark_processed(self, user_id: str, activity_id: str) -> None:
        self._check("mark_processed")
        activity = self.activities.get(activity_id)
        if activity is None or activity.user_id != user_id:
            raise StoreError(f"activity {activity_id} not found")
        self.activities[activity_id] = activity.model_copy(
            update={"segments_extracted_at": datetime.now(timezone.utc)}
        )
