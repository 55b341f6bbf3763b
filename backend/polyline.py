"""Google encoded polyline codec.

Implements the standard Google polyline encoding algorithm.
See: https://developers.google.com/maps/documentation/utilities/polylinealgorithm

Activity tracks arrive from third-party providers, so the decoder treats its
input as untrusted: a truncated or corrupted string raises
``PolylineDecodeError`` instead of an ``IndexError`` from deep inside the loop.
"""

from collections.abc import Iterable, Iterator

from geo import Coordinate

# Default number of decimal places (1e5 scale) used by Google and Strava.
DEFAULT_PRECISION: int = 5

# Every encoded character is a 5-bit chunk offset by 63, with 0x20 as the
# continuation flag, so valid characters lie in '?' .. '~'.
_CHAR_OFFSET = 63
_CHUNK_MASK = 0x1F
_CONTINUATION = 0x20
_MAX_CHUNK = 0x3F


class PolylineDecodeError(ValueError):
    """Raised when an encoded polyline is truncated or contains bad characters."""


def _read_value(encoded: str, index: int) -> tuple[int, int]:
    """Reads one zig-zag varint starting at ``index``.

    Returns:
        Tuple of (signed delta, index of the next unread character).
    """
    shift = 0
    value = 0
    while True:
        if index >= len(encoded):
            raise PolylineDecodeError(
                f"Polyline truncated inside a value at offset {index}."
            )
        b = ord(encoded[index]) - _CHAR_OFFSET
        if b < 0 or b > _MAX_CHUNK:
            raise PolylineDecodeError(
                f"Invalid polyline character {encoded[index]!r} at offset {index}."
            )
        index += 1
        value |= (b & _CHUNK_MASK) << shift
        shift += 5
        if b < _CONTINUATION:
            break
    delta = ~(value >> 1) if (value & 1) else (value >> 1)
    return delta, index


def iter_polyline(
    encoded: str, precision: int = DEFAULT_PRECISION
) -> Iterator[Coordinate]:
    """Lazily decodes an encoded polyline, yielding ``(lat, lng)`` tuples.

    Points already yielded stay valid even if a later part of the string turns
    out to be malformed; the error is raised when that part is reached.
    """
    factor = 10 ** precision
    index = 0
    lat = 0
    lng = 0

    while index < len(encoded):
        dlat, index = _read_value(encoded, index)
        if index >= len(encoded):
            raise PolylineDecodeError("Polyline ends with a latitude but no longitude.")
        dlng, index = _read_value(encoded, index)
        lat += dlat
        lng += dlng
        yield lat / factor, lng / factor


def decode_polyline(
    encoded: str, precision: int = DEFAULT_PRECISION
) -> list[Coordinate]:
    """Decodes a Google-encoded polyline string to a list of (lat, lng) points.

    Args:
        encoded: The encoded path. An empty string decodes to an empty list.
        precision: Decimal places used by the encoder (5 for Google/Strava,
            6 for polyline6).

    Raises:
        PolylineDecodeError: If the string is truncated or malformed.
    """
    if not encoded:
        return []
    return list(iter_polyline(encoded, precision))


def encode_polyline(
    coordinates: Iterable[Coordinate], precision: int = DEFAULT_PRECISION
) -> str:
    """Encodes a sequence of (lat, lng) tuples into a Google-encoded polyline."""
    factor = 10 ** precision
    encoded: list[str] = []
    prev_lat = 0
    prev_lng = 0

    for lat, lng in coordinates:
        lat_i = round(lat * factor)
        lng_i = round(lng * factor)

        for delta in (lat_i - prev_lat, lng_i - prev_lng):
            value = ~(delta << 1) if delta < 0 else (delta << 1)
            while value >= _CONTINUATION:
                encoded.append(chr((_CONTINUATION | (value & _CHUNK_MASK)) + _CHAR_OFFSET))
                value >>= 5
            encoded.append(chr(value + _CHAR_OFFSET))

        prev_lat = lat_i
        prev_lng = lng_i

    return "".join(encoded)
