"""Straight-line distance helpers used as a proxy for road travel."""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from scheduler.domain.models import Coordinates


EARTH_RADIUS_KM = 6371.0

# Assumed hop length when either end of a leg has no coordinates.
FALLBACK_HOP_KM = 10.0


def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    lat1, lat2 = math.radians(origin.lat), math.radians(destination.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(destination.lng - origin.lng)
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def hop_km(origin: Optional[Coordinates], destination: Optional[Coordinates]) -> float:
    """Distance for one leg, falling back to FALLBACK_HOP_KM for unknown points."""
    if origin is None or destination is None:
        return FALLBACK_HOP_KM
    return haversine_km(origin, destination)


def distance_matrix_km(points: Sequence[Optional[Coordinates]]) -> np.ndarray:
    """Pairwise leg distances; rows/cols with missing coordinates use the fallback."""
    size = len(points)
    matrix = np.zeros((size, size), dtype=float)
    if size == 0:
        return matrix

    known = np.array([point is not None for point in points])
    lat = np.radians([point.lat if point is not None else 0.0 for point in points])
    lng = np.radians([point.lng if point is not None else 0.0 for point in points])

    d_lat = lat[:, None] - lat[None, :]
    d_lng = lng[:, None] - lng[None, :]
    a = (
        np.sin(d_lat / 2) ** 2
        + np.cos(lat)[:, None] * np.cos(lat)[None, :] * np.sin(d_lng / 2) ** 2
    )
    matrix = EARTH_RADIUS_KM * 2 * np.arctan2(np.sqrt(a), np.sqrt(np.clip(1 - a, 0.0, None)))

    unknown_pair = ~(known[:, None] & known[None, :])
    matrix[unknown_pair] = FALLBACK_HOP_KM
    np.fill_diagonal(matrix, 0.0)
    return matrix


def calculate_bearing(origin: Coordinates, destination: Coordinates) -> float:
    """Initial compass bearing in degrees, 0-360."""
    lat1, lat2 = math.radians(origin.lat), math.radians(destination.lat)
    d_lng = math.radians(destination.lng - origin.lng)
    y = math.sin(d_lng) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def bearing_difference(first: float, second: float) -> float:
    diff = abs(first - second)
    return 360.0 - diff if diff > 180.0 else diff


def estimate_driving_minutes(distance_km: float) -> int:
    """Urban trips are slower; longer trips average higher road speeds."""
    if distance_km <= 0:
        return 0
    if distance_km <= 10:
        speed_kmh = 30.0
    elif distance_km <= 50:
        speed_kmh = 40.0
    else:
        speed_kmh = 50.0
    return int(math.ceil(distance_km / speed_kmh * 60))


def normalize_postcode(postcode: str) -> str:
    return "".join(postcode.split()).upper()


def postcode_district(postcode: str) -> str:
    """Outward code of a UK postcode (everything but the 3-char inward code)."""
    cleaned = normalize_postcode(postcode)
    if len(cleaned) >= 5:
        return cleaned[:-3]
    return cleaned


def postcode_matches_prefix(postcode: str, prefix: str) -> bool:
    cleaned_prefix = normalize_postcode(prefix)
    return bool(cleaned_prefix) and normalize_postcode(postcode).startswith(cleaned_prefix)
