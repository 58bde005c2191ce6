"""Great-circle helpers and DBSCAN geographic clustering."""

from __future__ import annotations

import math

from pydantic import BaseModel, Field

from discovery.models.experience import Experience
from discovery.models.patterns import GeographicCluster

EARTH_RADIUS_KM = 6371.0088


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def location_cell(lat: float, lng: float, size_deg: float = 1.0) -> str:
    """Coarse grid cell label, e.g. "48:11" for 1-degree cells."""
    return f"{int(lat // size_deg)}:{int(lng // size_deg)}"


def spherical_centroid(points: list[tuple[float, float]]) -> tuple[float, float]:
    """Mean of unit vectors, so clusters spanning the antimeridian stay correct."""
    x = y = z = 0.0
    for lat, lng in points:
        phi, lmb = math.radians(lat), math.radians(lng)
        x += math.cos(phi) * math.cos(lmb)
        y += math.cos(phi) * math.sin(lmb)
        z += math.sin(phi)
    n = len(points)
    x, y, z = x / n, y / n, z / n
    lng = math.degrees(math.atan2(y, x))
    lat = math.degrees(math.atan2(z, math.hypot(x, y)))
    return lat, lng


class GeographicParams(BaseModel):
    epsilon_km: float = Field(default=50.0, gt=0.0, le=5000.0)
    min_points: int = Field(default=3, ge=2, le=1000)
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def dbscan(points: list[tuple[float, float]], epsilon_km: float, min_points: int) -> list[int]:
    """Label each point with a cluster index, or -1 for noise.

    A point is core when at least ``min_points`` points (itself included)
    lie within ``epsilon_km``. Labels are assigned in input order, so equal
    inputs give equal labels.
    """
    n = len(points)
    neighbors = [
        [j for j in range(n) if haversine_km(*points[i], *points[j]) <= epsilon_km]
        for i in range(n)
    ]
    UNSEEN, NOISE = -2, -1
    labels = [UNSEEN] * n
    cluster = -1
    for i in range(n):
        if labels[i] != UNSEEN:
            continue
        if len(neighbors[i]) < min_points:
            labels[i] = NOISE
            continue
        cluster += 1
        labels[i] = cluster
        queue = [j for j in neighbors[i] if j != i]
        while queue:
            j = queue.pop(0)
            if labels[j] == NOISE:
                labels[j] = cluster  # border point
            if labels[j] != UNSEEN:
                continue
            labels[j] = cluster
            if len(neighbors[j]) >= min_points:
                queue.extend(neighbors[j])
    return labels


def detect_geographic_clusters(
    experiences: list[Experience], params: GeographicParams
) -> list[GeographicCluster]:
    located = [e for e in experiences if e.has_location]
    distinct = {(round(e.latitude, 6), round(e.longitude, 6)) for e in located}
    if len(distinct) < params.min_points:
        return []

    points = [(e.latitude, e.longitude) for e in located]
    labels = dbscan(points, params.epsilon_km, params.min_points)

    members: dict[int, list[int]] = {}
    for idx, label in enumerate(labels):
        if label >= 0:
            members.setdefault(label, []).append(idx)

    clusters: list[GeographicCluster] = []
    for idxs in members.values():
        cluster_points = [points[i] for i in idxs]
        c_lat, c_lng = spherical_centroid(cluster_points)
        radius = max(haversine_km(c_lat, c_lng, lat, lng) for lat, lng in cluster_points)
        share = len(idxs) / len(points)
        compactness = 1.0 - min(radius / params.epsilon_km, 1.0)
        confidence = round(0.5 * share + 0.5 * compactness, 4)
        if confidence < params.min_confidence:
            continue
        clusters.append(GeographicCluster(
            cluster_id=0,
            centroid_lat=round(c_lat, 6),
            centroid_lng=round(c_lng, 6),
            member_count=len(idxs),
            radius_km=round(radius, 3),
            confidence=confidence,
            experience_ids=[located[i].id for i in idxs],
        ))

    clusters.sort(key=lambda c: (-c.member_count, c.centroid_lat, c.centroid_lng))
    for cluster_id, cluster in enumerate(clusters):
        cluster.cluster_id = cluster_id
    return clusters
