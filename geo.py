import math
from typing import Optional

from schemas import GeoPoint

EARTH_RADIUS_KM = 6371


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in km, rounded to one decimal."""
    d_lat = math.radians(b.lat - a.lat)
    d_lng = math.radians(b.lng - a.lng)
    h = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) * math.sin(d_lng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return round(EARTH_RADIUS_KM * c, 1)


class HaversineDistance:
    """Distance collaborator; only used to rank matches."""

    def distance(self, a: Optional[GeoPoint], b: Optional[GeoPoint]) -> Optional[float]:
        if a is None or b is None:
            return None
        return haversine_km(a, b)
