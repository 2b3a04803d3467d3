import math
from typing import List, Optional

from barbermatch.models import NearbyBarber
from barbermatch.services.clock import Clock, to_iso
from barbermatch.services.errors import NotFoundError, ValidationError
from barbermatch.services.store import MarketplaceStore

EARTH_RADIUS_METERS = 6371000.0


def validate_coordinates(latitude: float, longitude: float) -> None:
    if latitude is None or longitude is None:
        raise ValidationError("Location requires latitude and longitude")
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise ValidationError("Location coordinates must be finite numbers")
    if not -90.0 <= latitude <= 90.0:
        raise ValidationError("Latitude must be between -90 and 90")
    if not -180.0 <= longitude <= 180.0:
        raise ValidationError("Longitude must be between -180 and 180")


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


class GeoMatchFinder:
    """Candidate barbers for a request location, nearest first."""

    def __init__(self, store: MarketplaceStore, clock: Clock, default_radius_meters: int = 5000):
        self._store = store
        self._clock = clock
        self.default_radius_meters = default_radius_meters

    def update_location(
        self,
        barber_id: str,
        latitude: float,
        longitude: float,
        *,
        display_name: str = "",
        is_available: bool = True,
        rating: float = 0.0,
    ) -> None:
        if not barber_id.strip():
            raise ValidationError("barber_id is required")
        validate_coordinates(latitude, longitude)
        with self._store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO barber_locations (barber_id, display_name, latitude, longitude, is_available, rating, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(barber_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    is_available = excluded.is_available,
                    rating = excluded.rating,
                    updated_at = excluded.updated_at
                """,
                (
                    barber_id.strip(),
                    display_name.strip(),
                    latitude,
                    longitude,
                    1 if is_available else 0,
                    rating,
                    to_iso(self._clock.now()),
                ),
            )

    def location_of(self, barber_id: str) -> tuple[float, float]:
        with self._store.reader() as conn:
            row = conn.execute(
                "SELECT latitude, longitude FROM barber_locations WHERE barber_id = ?",
                (barber_id,),
            ).fetchone()
        if not row:
            raise NotFoundError("Barber location not found")
        return float(row["latitude"]), float(row["longitude"])

    def find_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_meters: Optional[int] = None,
        *,
        exclude_user_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[NearbyBarber]:
        validate_coordinates(latitude, longitude)
        radius = self.default_radius_meters if radius_meters is None else radius_meters
        if radius <= 0:
            raise ValidationError("Radius must be positive")

        # Bounding box prefilter; the exact cut is the haversine distance below.
        lat_delta = math.degrees(radius / EARTH_RADIUS_METERS)
        cos_lat = max(math.cos(math.radians(latitude)), 1e-6)
        lng_delta = min(180.0, math.degrees(radius / (EARTH_RADIUS_METERS * cos_lat)))
        with self._store.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM barber_locations
                WHERE is_available = 1
                  AND latitude BETWEEN ? AND ?
                """,
                (latitude - lat_delta, latitude + lat_delta),
            ).fetchall()

        candidates: List[NearbyBarber] = []
        for row in rows:
            if exclude_user_id and row["barber_id"] == exclude_user_id:
                continue
            if lng_delta < 180.0 and abs(float(row["longitude"]) - longitude) > lng_delta:
                # Rows across the antimeridian fall through to the exact check.
                if abs(float(row["longitude"]) - longitude) < 360.0 - lng_delta:
                    continue
            distance = haversine_meters(latitude, longitude, float(row["latitude"]), float(row["longitude"]))
            if distance > radius:
                continue
            candidates.append(
                NearbyBarber(
                    barber_id=row["barber_id"],
                    display_name=row["display_name"] or "",
                    latitude=float(row["latitude"]),
                    longitude=float(row["longitude"]),
                    rating=float(row["rating"] or 0.0),
                    distance_meters=round(distance, 1),
                )
            )
        candidates.sort(key=lambda item: (item.distance_meters, -item.rating, item.barber_id))
        return candidates[:limit]
