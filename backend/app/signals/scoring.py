from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from app.signals.geo import (
    GeoPoint,
    Route,
    geo_from_metadata,
    haversine_km,
    point_to_polyline_distance_km,
    route_from_metadata,
)

ROUTE_ENTITY_TYPE = "ROUTE"
TRUSTED_SOURCE_DOMAIN = "cisa.gov"

# (tag(s), reason label, points); evaluated in this order
TAG_POINTS: Tuple[Tuple[Tuple[str, ...], str, int], ...] = (
    (("critical",), "tag=critical", 30),
    (("high",), "tag=high", 20),
    (("medium",), "tag=medium", 10),
    (("cisa",), "tag=cisa", 10),
    (("ransomware",), "tag=ransomware", 15),
    (("exploitation", "exploited"), "tag=exploitation", 20),
)


@dataclass(frozen=True)
class SignalInputs:
    fetched_at: Optional[datetime]
    source_type: Optional[str]
    source_uri: Optional[str]
    tags: Tuple[str, ...] = ()
    facility_distance_km: Optional[float] = None
    route_distance_km: Optional[float] = None
    route_corridor_km: Optional[float] = None
    linked_entity_count: int = 0


@dataclass(frozen=True)
class SignalScore:
    score: int
    severity: int
    reasons: List[str] = field(default_factory=list)


def clamp(n: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, n))


def severity_from_score(score: float) -> int:
    s = clamp(score, 0, 100)
    if s >= 80:
        return 5
    if s >= 60:
        return 4
    if s >= 40:
        return 3
    if s >= 20:
        return 2
    return 1


# ---------------------------------------------------------------------------
# Factors: each returns (points, [reasons]); none can subtract
# ---------------------------------------------------------------------------


def score_recency(fetched_at: Optional[datetime], now: datetime) -> Tuple[int, List[str]]:
    if fetched_at is None:
        return 0, ["recency=unknown (+0)"]
    if fetched_at.tzinfo is None:
        fetched_at = fetched_at.replace(tzinfo=timezone.utc)
    hours = (now - fetched_at).total_seconds() / 3600.0
    if hours <= 6:
        return 30, ["recency<=6h (+30)"]
    if hours <= 24:
        return 20, ["recency<=24h (+20)"]
    if hours <= 72:
        return 10, ["recency<=72h (+10)"]
    return 0, ["recency>72h (+0)"]


def is_trusted_source_host(source_uri: Optional[str]) -> bool:
    if not source_uri:
        return False
    try:
        host = (urlsplit(source_uri.strip()).hostname or "").lower()
    except ValueError:
        return False
    return host == TRUSTED_SOURCE_DOMAIN or host.endswith("." + TRUSTED_SOURCE_DOMAIN)


def score_source(source_type: Optional[str], source_uri: Optional[str]) -> Tuple[int, List[str]]:
    s = (source_type or "").strip().lower()
    points = 0
    reasons: List[str] = []

    if s == "webhook":
        points += 15
        reasons.append("source=webhook (+15)")
    elif s in ("manual", "rss"):
        points += 10
        reasons.append(f"source={s} (+10)")

    if is_trusted_source_host(source_uri):
        points += 10
        reasons.append(f"source_host={TRUSTED_SOURCE_DOMAIN} (+10)")

    return points, reasons


def score_tags(tags: Iterable[str]) -> Tuple[int, List[str]]:
    t = {str(x).strip().lower() for x in tags or () if str(x).strip()}
    points = 0
    reasons: List[str] = []
    for names, label, pts in TAG_POINTS:
        if any(n in t for n in names):
            points += pts
            reasons.append(f"{label} (+{pts})")
    return points, reasons


def score_facility_distance(distance_km: Optional[float]) -> Tuple[int, List[str]]:
    if distance_km is None or not math.isfinite(distance_km):
        return 0, []
    if distance_km <= 50:
        return 20, ["geo_proximity<=50km (+20)"]
    if distance_km <= 200:
        return 10, ["geo_proximity<=200km (+10)"]
    return 0, ["geo_proximity>200km (+0)"]


def score_route_corridor(
    distance_km: Optional[float],
    corridor_km: Optional[float],
) -> Tuple[int, List[str]]:
    if distance_km is None or corridor_km is None or not math.isfinite(distance_km):
        return 0, []
    if distance_km <= corridor_km:
        return 20, [f"route_corridor<={corridor_km:g}km (+20)"]
    if distance_km <= 4 * corridor_km:
        return 10, [f"route_corridor<={4 * corridor_km:g}km (+10)"]
    return 0, [f"route_corridor>{4 * corridor_km:g}km (+0)"]


def score_linked_entities(count: int) -> Tuple[int, List[str]]:
    if count > 0:
        return 10, [f"linked_entities={count} (+10)"]
    return 0, []


def score_signal(inputs: SignalInputs, *, now: Optional[datetime] = None) -> SignalScore:
    """
    Additive rule table -> clamped 0..100 score, 1..5 severity, ordered reasons.
    """
    now = now or datetime.now(timezone.utc)
    total = 0
    reasons: List[str] = []

    for points, why in (
        score_recency(inputs.fetched_at, now),
        score_source(inputs.source_type, inputs.source_uri),
        score_tags(inputs.tags),
        score_facility_distance(inputs.facility_distance_km),
        score_route_corridor(inputs.route_distance_km, inputs.route_corridor_km),
        score_linked_entities(inputs.linked_entity_count),
    ):
        total += points
        reasons.extend(why)

    score = int(clamp(total, 0, 100))
    return SignalScore(score=score, severity=severity_from_score(score), reasons=reasons)


# ---------------------------------------------------------------------------
# Geo context from linked entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeoContext:
    facility_distance_km: Optional[float] = None
    route_distance_km: Optional[float] = None
    route_corridor_km: Optional[float] = None
    route_entity_id: Optional[str] = None
    route_segment_index: Optional[int] = None


def geo_context(point: Optional[GeoPoint], entities: Iterable) -> GeoContext:
    """
    Nearest linked facility (haversine) and nearest linked route (polyline distance,
    with that route's own corridor width). Entities need .id, .type, .metadata_json.
    """
    if point is None:
        return GeoContext()

    best_facility: Optional[float] = None
    best_route: Optional[Tuple[float, int, Route, str]] = None

    for ent in entities:
        meta = ent.metadata_json or {}
        if (ent.type or "").upper() == ROUTE_ENTITY_TYPE:
            route = route_from_metadata(meta)
            if route is None:
                continue
            km, idx = point_to_polyline_distance_km(point, route.coords)
            if best_route is None or km < best_route[0]:
                best_route = (km, idx, route, ent.id)
            continue

        g = geo_from_metadata(meta)
        if g is None:
            continue
        km = haversine_km(point, g)
        if best_facility is None or km < best_facility:
            best_facility = km

    if best_route is None:
        return GeoContext(facility_distance_km=best_facility)

    km, idx, route, entity_id = best_route
    return GeoContext(
        facility_distance_km=best_facility,
        route_distance_km=km,
        route_corridor_km=route.corridor_km,
        route_entity_id=entity_id,
        route_segment_index=idx,
    )
