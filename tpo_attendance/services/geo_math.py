"""Great-circle distance and geofence helpers."""
import math
from dataclasses import dataclass, asdict
from typing import Dict

class GeoMath:
    """Haversine distance on a spherical Earth."""

    EARTH_RADIUS_METERS = 6371000

    @staticmethod
    def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """Calculate distance between two GPS points in meters."""
        R = GeoMath.EARTH_RADIUS_METERS

        lat1_rad = math.radians(lat1)
        lat2_rad = math.radians(lat2)
        delta_lat = math.radians(lat2 - lat1)
        delta_lon = math.radians(lon2 - lon1)

        a = (math.sin(delta_lat / 2) ** 2 +
             math.cos(lat1_rad) * math.cos(lat2_rad) *
             math.sin(delta_lon / 2) ** 2)
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

        return R * c

@dataclass(frozen=True)
class Geofence:
    """A center coordinate plus an acceptance radius."""
    latitude: float
    longitude: float
    radius_meters: float

    def distance_from(self, latitude: float, longitude: float) -> float:
        return GeoMath.distance_meters(latitude, longitude, self.latitude, self.longitude)

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.distance_from(latitude, longitude) <= self.radius_meters

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_config(cls, value) -> 'Geofence':
        """Build from a dict with lat/lng/radius keys or a (lat, lng, radius) tuple."""
        if value is None or isinstance(value, Geofence):
            return value
        if isinstance(value, dict):
            return cls(
                float(value.get('latitude', value.get('lat'))),
                float(value.get('longitude', value.get('lng'))),
                float(value.get('radius_meters', value.get('radius')))
            )
        lat, lng, radius = value
        return cls(float(lat), float(lng), float(radius))
