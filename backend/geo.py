"""Spherical geometry helpers shared by the segment pipeline.

Coordinates are plain ``(lat, lng)`` tuples in degrees (WGS84). Everything
here is pure math with no state.
"""

import math

# Mean Earth radius used by every great-circle calculation in the backend.
EARTH_RADIUS_M: float = 6_371_000.0
# Rough size of one degree of latitude, used for bounding boxes.
KM_PER_DEGREE_LAT: float = 111.0
# Floor for cos(lat) when sizing longitude spans, so boxes stay finite near
# the poles.
_MIN_COS_LAT: float = 1e-6

Coordinate = tuple[float, float]


def distance_m(p1: Coordinate, p2: Coordinate) -> float:
    """Returns the haversine great-circle distance in metres between two points."""
    lat1, lng1 = p1
    lat2, lng2 = p2
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = lat2_r - lat1_r
    dlng = math.radians(lng2 - lng1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bearing_deg(p1: Coordinate, p2: Coordinate) -> float:
    """Returns the initial bearing in degrees [0, 360) from ``p1`` to ``p2``.

    The result is meaningless when the two points coincide.
    """
    lat1, lat2 = math.radians(p1[0]), math.radians(p2[0])
    dlng = math.radians(p2[1] - p1[1])
    x = math.sin(dlng) * math.cos(lat2)
    y = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlng)
    return (math.degrees(math.atan2(x, y)) + 360) % 360


def destination_point(
    origin: Coordinate, bearing: float, distance_km: float
) -> Coordinate:
    """Projects a point ``distance_km`` away from ``origin`` along ``bearing``.

    Args:
        origin: Starting ``(lat, lng)``.
        bearing: Initial bearing in degrees, clockwise from north.
        distance_km: Distance to travel along the great circle.

    Returns:
        The destination ``(lat, lng)`` with longitude normalised to
        [-180, 180).
    """
    lat1 = math.radians(origin[0])
    lng1 = math.radians(origin[1])
    theta = math.radians(bearing)
    delta = distance_km * 1000 / EARTH_RADIUS_M

    lat2 = math.asin(
        math.sin(lat1) * math.cos(delta)
        + math.cos(lat1) * math.sin(delta) * math.cos(theta)
    )
    lng2 = lng1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(lat1),
        math.cos(delta) - math.sin(lat1) * math.sin(lat2),
    )
    lng_deg = (math.degrees(lng2) + 540) % 360 - 180
    return math.degrees(lat2), lng_deg


def midpoint(p1: Coordinate, p2: Coordinate) -> Coordinate:
    """Returns the arithmetic midpoint of two nearby coordinates."""
    return (p1[0] + p2[0]) / 2, (p1[1] + p2[1]) / 2


def bounding_box(
    center: Coordinate, radius_km: float
) -> tuple[float, float, float, float]:
    """Returns ``(min_lat, max_lat, min_lng, max_lng)`` enclosing a circle.

    One degree of latitude is taken as 111 km; longitude spans are widened by
    ``1 / cos(lat)``.
    """
    lat, lng = center
    lat_delta = radius_km / KM_PER_DEGREE_LAT
    cos_lat = max(abs(math.cos(math.radians(lat))), _MIN_COS_LAT)
    lng_delta = radius_km / (KM_PER_DEGREE_LAT * cos_lat)
    return lat - lat_delta, lat + lat_delta, lng - lng_delta, lng + lng_delta
