from math import radians, sin, cos, atan2, sqrt, isfinite

from errors import InvalidInput
from schemas import GeoPoint, GeoFenceResult

EARTH_RADIUS_METERS = 6371000.0


def validate_point(point: GeoPoint, label: str = "point") -> None:
    if point is None:
        raise InvalidInput(f"{label} is required")
    lat, lon = point.latitude, point.longitude
    if not (isfinite(lat) and isfinite(lon)):
        raise InvalidInput(f"{label} coordinates must be finite")
    if not -90.0 <= lat <= 90.0:
        raise InvalidInput(f"{label} latitude {lat} out of range [-90, 90]")
    if not -180.0 <= lon <= 180.0:
        raise InvalidInput(f"{label} longitude {lon} out of range [-180, 180]")


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    dLat = radians(lat2 - lat1)
    dLon = radians(lon2 - lon1)
    a = sin(dLat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dLon / 2) ** 2
    # float error can push a a hair past 1 for antipodal points
    a = min(1.0, a)
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def evaluate(anchor: GeoPoint, point: GeoPoint, radius_meters: float) -> GeoFenceResult:
    """Distance from ``anchor`` to ``point`` and whether it lies inside the fence."""
    validate_point(anchor, "anchor")
    validate_point(point, "point")
    distance = haversine(anchor.latitude, anchor.longitude, point.latitude, point.longitude)
    return GeoFenceResult(distanceMeters=distance, allowed=distance <= radius_meters)
