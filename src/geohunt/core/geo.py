from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Literal

"""
Geospatial helpers.

Pure, stateless functions on a spherical Earth. Everything the engine knows about
distance, direction and the local AR frame goes through this module so the rest
of the code never does trigonometry on raw degrees.
"""

EARTH_RADIUS_M = 6_371_000.0

CardinalLabel = Literal["N", "NE", "E", "SE", "S", "SW", "W", "NW"]
ProximityZone = Literal["collectible", "near", "medium", "far", "out_of_range"]
AccuracyLevel = Literal["none", "low", "medium", "high"]

_CARDINALS: tuple[CardinalLabel, ...] = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")
_CARDINALS_FULL: dict[str, str] = {
    "N": "North",
    "NE": "Northeast",
    "E": "East",
    "SE": "Southeast",
    "S": "South",
    "SW": "Southwest",
    "W": "West",
    "NW": "Northwest",
}


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lon: float


@dataclass(frozen=True)
class EastNorth:
    """Offset in meters on the local tangent plane (x=east, y=north)."""

    east: float
    north: float

    @property
    def range_m(self) -> float:
        return math.hypot(self.east, self.north)


def _wrap_lon(lon: float) -> float:
    """Normalize a longitude (or longitude delta) into [-180, 180)."""
    return (lon + 180.0) % 360.0 - 180.0


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Compute great-circle distance in meters between two points."""
    lat1 = math.radians(a.lat)
    lat2 = math.radians(b.lat)
    dlat = lat2 - lat1
    dlon = math.radians(b.lon - a.lon)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, h)))


def initial_bearing_deg(origin: GeoPoint, target: GeoPoint) -> float:
    """Forward azimuth from `origin` to `target` in [0, 360); 0 is north, 90 is east."""
    lat1 = math.radians(origin.lat)
    lat2 = math.radians(target.lat)
    dlon = math.radians(target.lon - origin.lon)

    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    bearing = math.degrees(math.atan2(y, x)) % 360.0
    # Float modulo of a tiny negative angle rounds up to exactly 360.0.
    if bearing >= 360.0:
        bearing = 0.0
    return bearing


def relative_bearing_deg(target_bearing: float, heading: float) -> float:
    """Signed turn from `heading` to `target_bearing`, in (-180, 180]; positive is clockwise."""
    rel = (target_bearing - heading) % 360.0
    if rel > 180.0:
        rel -= 360.0
    return rel


def to_local_east_north(origin: GeoPoint, point: GeoPoint) -> EastNorth:
    """Project `point` onto the tangent plane at `origin` (equirectangular, meters).

    Accurate to well under a meter at AR engagement ranges; degrades slowly with
    distance and is usable out to tens of kilometers.
    """
    lat0 = math.radians(origin.lat)
    cos_lat0 = math.cos(lat0)
    if abs(cos_lat0) < 1e-12:
        raise ValueError("local east/north frame is undefined at the poles")
    dlat = math.radians(point.lat - origin.lat)
    dlon = math.radians(_wrap_lon(point.lon - origin.lon))
    return EastNorth(east=EARTH_RADIUS_M * dlon * cos_lat0, north=EARTH_RADIUS_M * dlat)


def from_local_east_north(origin: GeoPoint, offset: EastNorth) -> GeoPoint:
    """Inverse of `to_local_east_north`."""
    lat0 = math.radians(origin.lat)
    cos_lat0 = math.cos(lat0)
    if abs(cos_lat0) < 1e-12:
        raise ValueError("local east/north frame is undefined at the poles")
    lat = origin.lat + math.degrees(offset.north / EARTH_RADIUS_M)
    lon = origin.lon + math.degrees(offset.east / (EARTH_RADIUS_M * cos_lat0))
    return GeoPoint(lat=lat, lon=_wrap_lon(lon) if not -180.0 <= lon <= 180.0 else lon)


def offset_point(origin: GeoPoint, *, north_m: float = 0.0, east_m: float = 0.0) -> GeoPoint:
    """Return the point `north_m`/`east_m` meters away from `origin` on the local plane."""
    return from_local_east_north(origin, EastNorth(east=east_m, north=north_m))


def cardinal_direction(bearing: float) -> CardinalLabel:
    """Map a bearing to one of 8 compass labels (45 degree sectors centered on each label)."""
    normalized = bearing % 360.0
    return _CARDINALS[int((normalized + 22.5) // 45.0) % 8]


def cardinal_direction_full(bearing: float) -> str:
    return _CARDINALS_FULL[cardinal_direction(bearing)]


def proximity_zone(distance_m: float) -> ProximityZone:
    """Coarse "hot/cold" bucket used for HUD hints and haptics."""
    if distance_m <= 5.0:
        return "collectible"
    if distance_m <= 15.0:
        return "near"
    if distance_m <= 30.0:
        return "medium"
    if distance_m <= 50.0:
        return "far"
    return "out_of_range"


def accuracy_level(accuracy_m: float | None) -> AccuracyLevel:
    if accuracy_m is None or accuracy_m <= 0:
        return "none"
    if accuracy_m <= 10.0:
        return "high"
    if accuracy_m <= 50.0:
        return "medium"
    return "low"
