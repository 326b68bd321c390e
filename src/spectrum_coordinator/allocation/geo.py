"""
Geo - Great-circle distances and spread-maximizing node selection.
"""

import numpy as np
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from ..control.node_registry import GeoPosition

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088


def haversine_km(
    lat_a: np.ndarray,
    lon_a: np.ndarray,
    lat_b: np.ndarray,
    lon_b: np.ndarray,
) -> np.ndarray:
    """
    Vectorized great-circle distance.

    Inputs broadcast against each other (degrees); output is in km.
    """
    lat_a, lon_a, lat_b, lon_b = (np.deg2rad(np.asarray(x, dtype=np.float64))
                                  for x in (lat_a, lon_a, lat_b, lon_b))
    dlat = lat_b - lat_a
    dlon = lon_b - lon_a
    h = np.sin(dlat / 2) ** 2 + np.cos(lat_a) * np.cos(lat_b) * np.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * np.arcsin(np.sqrt(np.clip(h, 0.0, 1.0)))


def distance_km(a: GeoPosition, b: GeoPosition) -> float:
    return float(haversine_km(a.lat_deg, a.lon_deg, b.lat_deg, b.lon_deg))


def pairwise_km(positions: Sequence[GeoPosition]) -> np.ndarray:
    """Symmetric (n, n) distance matrix."""
    lat = np.array([p.lat_deg for p in positions], dtype=np.float64)
    lon = np.array([p.lon_deg for p in positions], dtype=np.float64)
    return haversine_km(lat[:, None], lon[:, None], lat[None, :], lon[None, :])


def baselines(positions: Dict[str, GeoPosition]) -> List[Tuple[str, str, float]]:
    """
    All baseline distances between node pairs.

    Returns:
        List of (node_a, node_b, distance_km) tuples, sorted by node id
    """
    names = sorted(positions)
    if len(names) < 2:
        return []
    matrix = pairwise_km([positions[n] for n in names])
    result = []
    for i, name_a in enumerate(names):
        for j in range(i + 1, len(names)):
            result.append((name_a, names[j], float(matrix[i, j])))
    return result


def pick_farthest(
    candidates: Dict[str, GeoPosition],
    anchors: Sequence[GeoPosition],
    min_separation_km: float = 0.0,
) -> Optional[str]:
    """
    Choose the candidate that spreads the selection out the most.

    With anchors, the winner maximizes its minimum distance to every anchor.
    Without anchors, the winner is an endpoint of the farthest candidate
    pair (a lone candidate wins outright). Candidates closer than
    min_separation_km to any anchor are ineligible. Ties go to the lower id.

    Returns:
        Node id, or None if no candidate is eligible
    """
    names = sorted(candidates)
    if not names:
        return None

    lat = np.array([candidates[n].lat_deg for n in names], dtype=np.float64)
    lon = np.array([candidates[n].lon_deg for n in names], dtype=np.float64)

    if anchors:
        a_lat = np.array([a.lat_deg for a in anchors], dtype=np.float64)
        a_lon = np.array([a.lon_deg for a in anchors], dtype=np.float64)
        dist = haversine_km(lat[:, None], lon[:, None], a_lat[None, :], a_lon[None, :])
        score = dist.min(axis=1)
        eligible = score >= min_separation_km
    else:
        dist = haversine_km(lat[:, None], lon[:, None], lat[None, :], lon[None, :])
        score = dist.max(axis=1)
        eligible = np.ones(len(names), dtype=bool)

    if not eligible.any():
        return None

    score = np.where(eligible, score, -np.inf)
    # argmax returns the first maximum, which is the lowest id since names are sorted
    best = int(np.argmax(score))
    logger.debug(f"Geo pick: {names[best]} (score {score[best]:.1f} km)")
    return names[best]
