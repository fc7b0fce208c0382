"""
Geometry helpers for signal scoring. No PostGIS.

Coordinates inside route geometries follow GeoJSON order: [lon, lat].
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

EARTH_RADIUS_KM = 6371.0

CORRIDOR_MIN_KM = 0.1
CORRIDOR_MAX_KM = 500.0
CORRIDOR_DEFAULT_KM = 5.0


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass(frozen=True)
class Route:
    coords: List[Tuple[float, float]]  # [(lon, lat), ...]
    corridor_km: float


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    d_lat = math.radians(b.lat - a.lat)
    d_lon = math.radians(b.lon - a.lon)
    la1 = math.radians(a.lat)
    la2 = math.radians(b.lat)
    h = math.sin(d_lat / 2) ** 2 + math.cos(la1) * math.cos(la2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def _wrap_lon(d: float) -> float:
    return (d + 180.0) % 360.0 - 180.0


def _closest_on_segment(p: GeoPoint, a: GeoPoint, b: GeoPoint) -> GeoPoint:
    # local equirectangular plane centred on p; fine at corridor scales
    kx = math.cos(math.radians(p.lat))
    ax, ay = _wrap_lon(a.lon - p.lon) * kx, a.lat - p.lat
    bx, by = _wrap_lon(b.lon - p.lon) * kx, b.lat - p.lat

    dx, dy = bx - ax, by - ay
    seg_len2 = dx * dx + dy * dy
    if seg_len2 == 0.0:
        return a
    t = max(0.0, min(1.0, -(ax * dx + ay * dy) / seg_len2))
    return GeoPoint(lat=a.lat + t * (b.lat - a.lat), lon=a.lon + t * _wrap_lon(b.lon - a.lon))


def point_to_polyline_distance_km(
    point: GeoPoint,
    coords: Sequence[Sequence[float]],
) -> Tuple[float, int]:
    """
    Minimum distance (km) from point to the polyline, and the index of the
    nearest segment. A single vertex counts as segment 0; no vertices -> (inf, -1).
    """
    verts = [GeoPoint(lat=float(c[1]), lon=float(c[0])) for c in coords]
    if not verts:
        return math.inf, -1
    if len(verts) == 1:
        return haversine_km(point, verts[0]), 0

    best_km = math.inf
    best_idx = -1
    for i in range(len(verts) - 1):
        q = _closest_on_segment(point, verts[i], verts[i + 1])
        km = haversine_km(point, q)
        if km < best_km:
            best_km = km
            best_idx = i
    return best_km, best_idx


# ---------------------------------------------------------------------------
# Metadata parsing
# ---------------------------------------------------------------------------


def _num(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _first_num(obj: dict, *keys: str) -> Optional[float]:
    for k in keys:
        if k in obj:
            return _num(obj[k])
    return None


def geo_from_metadata(meta: Any) -> Optional[GeoPoint]:
    """
    Reads a point from geo / location / raw.geo / raw.location / raw / the top level
    (webhook payloads put coordinates in different places). First valid one wins.
    """
    if not isinstance(meta, dict):
        return None
    raw = meta.get("raw") if isinstance(meta.get("raw"), dict) else {}
    candidates = (meta.get("geo"), meta.get("location"), raw.get("geo"), raw.get("location"), raw, meta)

    for g in candidates:
        if not isinstance(g, dict):
            continue
        lat = _first_num(g, "lat", "latitude")
        lon = _first_num(g, "lon", "lng", "longitude")
        if lat is None or lon is None:
            continue
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            continue
        return GeoPoint(lat=lat, lon=lon)
    return None


def route_from_metadata(meta: Any) -> Optional[Route]:
    if not isinstance(meta, dict):
        return None
    geom = meta.get("routeGeometry")
    if not isinstance(geom, dict) or geom.get("type") != "LineString":
        return None

    coords: List[Tuple[float, float]] = []
    for c in geom.get("coordinates") or []:
        if not isinstance(c, (list, tuple)) or len(c) < 2:
            continue
        lon, lat = _num(c[0]), _num(c[1])
        if lon is None or lat is None:
            continue
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            continue
        coords.append((lon, lat))
    if len(coords) < 2:
        return None

    corridor = _num(meta.get("corridorKm"))
    if corridor is None:
        corridor = CORRIDOR_DEFAULT_KM
    corridor = max(CORRIDOR_MIN_KM, min(CORRIDOR_MAX_KM, corridor))
    return Route(coords=coords, corridor_km=corridor)
