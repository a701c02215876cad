"""
Geospatial helpers.

Positions are stored in a SortedSet whose score is a 52-bit interleaved
geohash (26 bits per axis). Decoding returns the centre of the geohash
cell, so positions read back carry a sub-metre quantization error.
"""

import math
from typing import Dict, List, Optional, Tuple

from ..exceptions import CommandError
from .datatypes import SortedSet

GEO_STEP = 26
GEO_LONG_MIN = -180.0
GEO_LONG_MAX = 180.0
GEO_LAT_MIN = -85.05112878
GEO_LAT_MAX = 85.05112878

EARTH_RADIUS_IN_METERS = 6372797.560856

UNITS: Dict[str, float] = {
    "m": 1.0,
    "km": 1000.0,
    "ft": 0.3048,
    "mi": 1609.34,
}


def unit_factor(unit: str) -> float:
    """Metres per unit.

    Raises:
        CommandError: Unknown unit
    """
    try:
        return UNITS[unit.lower()]
    except KeyError:
        raise CommandError("unsupported unit provided. please use M, KM, FT, MI")


def validate(longitude: float, latitude: float) -> None:
    if not (GEO_LONG_MIN <= longitude <= GEO_LONG_MAX
            and GEO_LAT_MIN <= latitude <= GEO_LAT_MAX):
        raise CommandError(
            f"invalid longitude,latitude pair {longitude:f},{latitude:f}"
        )


def _interleave(x: int, y: int) -> int:
    # x takes the even bits, y the odd bits
    result = 0
    for bit in range(GEO_STEP):
        result |= ((x >> bit) & 1) << (2 * bit)
        result |= ((y >> bit) & 1) << (2 * bit + 1)
    return result


def _deinterleave(bits: int) -> Tuple[int, int]:
    x = y = 0
    for bit in range(GEO_STEP):
        x |= ((bits >> (2 * bit)) & 1) << bit
        y |= ((bits >> (2 * bit + 1)) & 1) << bit
    return x, y


def encode(longitude: float, latitude: float) -> int:
    """Encode a position into a 52-bit geohash integer."""
    validate(longitude, latitude)
    cells = 1 << GEO_STEP
    lat_offset = (latitude - GEO_LAT_MIN) / (GEO_LAT_MAX - GEO_LAT_MIN)
    long_offset = (longitude - GEO_LONG_MIN) / (GEO_LONG_MAX - GEO_LONG_MIN)
    lat_cell = min(int(lat_offset * cells), cells - 1)
    long_cell = min(int(long_offset * cells), cells - 1)
    return _interleave(lat_cell, long_cell)


def decode(bits: int) -> Tuple[float, float]:
    """Decode a geohash integer into the (longitude, latitude) cell centre."""
    lat_cell, long_cell = _deinterleave(int(bits))
    cells = 1 << GEO_STEP
    lat_scale = GEO_LAT_MAX - GEO_LAT_MIN
    long_scale = GEO_LONG_MAX - GEO_LONG_MIN

    lat_min = GEO_LAT_MIN + (lat_cell / cells) * lat_scale
    lat_max = GEO_LAT_MIN + ((lat_cell + 1) / cells) * lat_scale
    long_min = GEO_LONG_MIN + (long_cell / cells) * long_scale
    long_max = GEO_LONG_MIN + ((long_cell + 1) / cells) * long_scale

    longitude = max(GEO_LONG_MIN, min(GEO_LONG_MAX, (long_min + long_max) / 2))
    latitude = max(GEO_LAT_MIN, min(GEO_LAT_MAX, (lat_min + lat_max) / 2))
    return longitude, latitude


def distance(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance in metres (haversine formula)."""
    lat1r = math.radians(lat1)
    lat2r = math.radians(lat2)
    u = math.sin((lat2r - lat1r) / 2)
    v = math.sin(math.radians(lon2 - lon1) / 2)
    return 2.0 * EARTH_RADIUS_IN_METERS * math.asin(
        math.sqrt(u * u + math.cos(lat1r) * math.cos(lat2r) * v * v)
    )


def position(zset: SortedSet, member: bytes) -> Optional[Tuple[float, float]]:
    score = zset.score(member)
    if score is None:
        return None
    return decode(int(score))


def search(
        zset: SortedSet,
        longitude: float,
        latitude: float,
        radius_m: float,
) -> List[Tuple[bytes, float, Tuple[float, float]]]:
    """
    Members within radius_m metres of a point.

    Returns:
        (member, distance_in_metres, (longitude, latitude)) tuples in
        member insertion order
    """
    found = []
    for member, score in zset.items():
        lon, lat = decode(int(score))
        dist = distance(longitude, latitude, lon, lat)
        if dist <= radius_m:
            found.append((member, dist, (lon, lat)))
    return found
