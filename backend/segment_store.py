"""Interfaces to the persistence collaborators of the segment pipeline.

The engine never talks to a database directly. It is handed a
``SegmentStore`` (ride aggregates and preferences) and an ``ActivitySource``
(recorded activities and their tracks). Implementations signal failure by
raising ``StoreError``; the engine turns those into per-item error strings so
one bad row never aborts a batch.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from models import (
    ActivityRecord,
    PreferenceRow,
    RoadSegment,
    SegmentRow,
    SegmentStats,
    UserRoadPreferences,
    UserRoadPreferencesUpdate,
)


class StoreError(Exception):
    """Raised by store implementations when a read or write fails."""


class SegmentStore(Protocol):
    """Interface for the per-user road segment store."""

    async def upsert_user_segment(
        self,
        user_id: str,
        segment: RoadSegment,
        *,
        avg_speed_ms: float | None = None,
        time_s: int | None = None,
        activity_date: datetime | None = None,
    ) -> None:
        """Records one ride over ``segment``, creating the row if needed.

        Must increment atomically: upserting the same segment twice counts two
        rides and never loses an update.
        """
        ...

    async def get_segment_preferences(
        self, user_id: str, segment_hashes: Sequence[str]
    ) -> list[PreferenceRow]:
        """Batch lookup; hashes the user has never ridden are simply absent."""
        ...

    async def get_user_segments_in_bbox(
        self,
        user_id: str,
        min_lat: float,
        max_lat: float,
        min_lng: float,
        max_lng: float,
        min_ride_count: int = 1,
    ) -> list[SegmentRow]:
        """Segments with either endpoint inside the box and enough rides."""
        ...

    async def get_user_segment_stats(self, user_id: str) -> SegmentStats:
        ...

    async def get_user_preferences(self, user_id: str) -> UserRoadPreferences:
        """Returns the user's settings, or the defaults if none are stored."""
        ...

    async def upsert_user_preferences(
        self, user_id: str, update: UserRoadPreferencesUpdate
    ) -> UserRoadPreferences:
        ...


class ActivitySource(Protocol):
    """Interface for the store of recorded activities."""

    async def get_activity(
        self, user_id: str, activity_id: str
    ) -> ActivityRecord | None:
        ...

    async def list_activities(
        self,
        user_id: str,
        *,
        limit: int,
        include_processed: bool = False,
        after_date: datetime | None = None,
        before_date: datetime | None = None,
    ) -> list[ActivityRecord]:
        """Activities that have a track, newest first."""
        ...

    async def count_unprocessed(self, user_id: str) -> int:
        """Number of activities with a track whose segments were never extracted."""
        ...

    async def mark_processed(self, user_id: str, activity_id: str) -> None:
        ...
