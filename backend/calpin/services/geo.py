import math
from typing import Optional, Tuple

EARTH_RADIUS_MILES = 3958.8


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in miles."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(a)))


def distance_and_duration(
    origin: Optional[Tuple[float, float]],
    latitude: float,
    longitude: float,
    minutes_per_mile: int = 15,
    placeholder: Tuple[str, str] = ("0.5mi", "5min"),
) -> Tuple[str, str]:
    """Display strings like ("1.2mi", "18min"); placeholders without an origin."""
    if origin is None:
        return placeholder
    miles = haversine_miles(origin[0], origin[1], latitude, longitude)
    return f"{miles:.1f}mi", f"{math.ceil(miles * minutes_per_mile)}min"
