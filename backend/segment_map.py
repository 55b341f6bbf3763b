"""GeoJSON rendering of a rider's familiar segments.

Each segment becomes a two-point LineString coloured by how often it has been
ridden, from grey (once) to green (ten or more times).
"""

import logging
from collections.abc import Sequence

from models import (
    FeatureCollectionMetadata,
    LineStringGeometry,
    SegmentFeature,
    SegmentFeatureCollection,
    SegmentFeatureProperties,
    SegmentRow,
)

logger = logging.getLogger(__name__)

DEFAULT_FEATURE_LIMIT: int = 1000

# (minimum rides, colour, opacity), most ridden first.
_RIDE_COUNT_STYLES: tuple[tuple[int, str, float], ...] = (
    (10, "#22c55e", 0.9),  # green
    (5, "#84cc16", 0.8),   # lime
    (3, "#eab308", 0.7),   # yellow
    (2, "#f97316", 0.6),   # orange
)
_RIDDEN_ONCE_STYLE: tuple[str, float] = ("#6b7280", 0.5)  # grey


def _style(ride_count: int) -> tuple[str, float]:
    for min_rides, color, opacity in _RIDE_COUNT_STYLES:
        if ride_count >= min_rides:
            return color, opacity
    return _RIDDEN_ONCE_STYLE


def segment_color(ride_count: int) -> str:
    """Hex line colour for a segment ridden ``ride_count`` times."""
    return _style(ride_count)[0]


def segment_opacity(ride_count: int) -> float:
    """Line opacity for a segment ridden ``ride_count`` times."""
    return _style(ride_count)[1]


def segments_to_feature_collection(
    rows: Sequence[SegmentRow], limit: int = DEFAULT_FEATURE_LIMIT
) -> SegmentFeatureCollection:
    """Converts bounding-box rows into a GeoJSON FeatureCollection.

    Args:
        rows: Segments as returned by ``SegmentStore.get_user_segments_in_bbox``
            (most ridden first).
        limit: Maximum number of features to include.

    Returns:
        The collection, with ``metadata.truncated`` set when rows were cut.
    """
    features = [
        SegmentFeature(
            geometry=LineStringGeometry(
                coordinates=[(row.start_lng, row.start_lat), (row.end_lng, row.end_lat)]
            ),
            properties=SegmentFeatureProperties(
                id=row.id,
                ride_count=row.ride_count,
                last_ridden=row.last_ridden_at,
                road_name=row.road_name,
                road_type=row.road_type,
                color=segment_color(row.ride_count),
                opacity=segment_opacity(row.ride_count),
            ),
        )
        for row in rows[:limit]
    ]
    if len(rows) > limit:
        logger.info("Segment map truncated to %d of %d segments", limit, len(rows))
    return SegmentFeatureCollection(
        features=features,
        metadata=FeatureCollectionMetadata(
            total_segments=len(rows),
            returned=len(features),
            truncated=len(rows) > limit,
        ),
    )
