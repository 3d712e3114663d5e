"""
Geofence Verifier

Turns a self-reported check-in location into a presence decision for an event.
Pure functions only: no I/O, no clock, no configuration lookups beyond defaults.
"""

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

MEAN_EARTH_RADIUS_KM = 6371.0
DEFAULT_RADIUS_KM = 0.2

_COORDINATE_PAIR = re.compile(
    r"^\s*\(?\s*(-?\d{1,3}(?:\.\d+)?)\s*[,;\s]\s*(-?\d{1,3}(?:\.\d+)?)\s*\)?\s*$"
)


class PresenceDecision(Enum):
    PRESENT = "present"
    ABSENT = "absent"
    NOT_APPLICABLE = "not_applicable"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.latitude)
            and math.isfinite(self.longitude)
            and -90.0 <= self.latitude <= 90.0
            and -180.0 <= self.longitude <= 180.0
        )


@dataclass(frozen=True)
class GeofenceResult:
    decision: PresenceDecision
    distance_km: Optional[float] = None
    radius_km: float = DEFAULT_RADIUS_KM

    @property
    def is_present(self) -> bool:
        """Attendance may proceed (inside the fence, or no fence at all)"""
        return self.decision in (PresenceDecision.PRESENT, PresenceDecision.NOT_APPLICABLE)


def haversine_km(
    origin: Coordinates,
    destination: Coordinates,
    earth_radius_km: float = MEAN_EARTH_RADIUS_KM,
) -> float:
    """Great-circle distance between two points in kilometres"""
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(destination.latitude)
    d_lat = lat2 - lat1
    d_lng = math.radians(destination.longitude - origin.longitude)

    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    # Clamp rounding noise so asin stays in its domain
    a = min(1.0, max(0.0, a))
    return 2 * earth_radius_km * math.asin(math.sqrt(a))


def classify_distance(distance_km: float, radius_km: float = DEFAULT_RADIUS_KM) -> PresenceDecision:
    """Inclusive threshold: a check-in exactly on the fence counts as present"""
    return PresenceDecision.PRESENT if distance_km <= radius_km else PresenceDecision.ABSENT


def verify_presence(
    user_location: Coordinates,
    anchor: Optional[Coordinates],
    radius_km: float = DEFAULT_RADIUS_KM,
    earth_radius_km: float = MEAN_EARTH_RADIUS_KM,
) -> GeofenceResult:
    """Decide whether a user at user_location is attending an event anchored at anchor"""
    if anchor is None:
        return GeofenceResult(PresenceDecision.NOT_APPLICABLE, None, radius_km)

    distance = haversine_km(anchor, user_location, earth_radius_km)
    return GeofenceResult(classify_distance(distance, radius_km), distance, radius_km)


def parse_coordinate_pair(raw: str) -> Optional[Tuple[float, float]]:
    """
    Read "lat, lng" (also "lat lng", "(lat, lng)") from free text.

    Returns None for anything that is not a pair of in-range numbers so the
    caller can treat the text as a plain location description.
    """
    if not raw:
        return None
    match = _COORDINATE_PAIR.match(raw)
    if not match:
        return None
    coordinates = Coordinates(float(match.group(1)), float(match.group(2)))
    if not coordinates.is_valid():
        return None
    return coordinates.latitude, coordinates.longitude
