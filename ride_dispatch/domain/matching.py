"""
Spatial Prefilter for Proximity Matching
========================================

1. **Spatial Binning** -- every driver position is mapped to an H3
   hexagon (resolution 7 by default, ~1.4 km edge) and the cell is
   stored next to the coordinates.
2. **Covering Disk**   -- for a pickup point and a radius, take the
   ``grid_disk`` of rings around the pickup cell large enough to contain
   the whole circle.  Drivers outside those cells cannot be in range.
3. **Exact Filter**    -- survivors are checked with Haversine against
   the radius, so the prefilter only has to be conservative, not exact.

Ring count
----------
Each ring moves the disk boundary outward by at least one hexagon edge,
and the pickup may sit anywhere inside its own cell, so

  k = ceil(radius / edge) + 1

always covers the circle.

Complexity
----------
* Covering disk: O(k^2) cells  (3k^2 + 3k + 1)
* Exact filter:  O(m) for m drivers inside the disk
"""

from __future__ import annotations

import math

import h3

from .distance import distance_km
from .entities import Candidate, Coordinates


def cell_for(point: Coordinates, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(point.lat, point.lng, resolution)


def rings_for_radius(radius_km: float, resolution: int = 7) -> int:
    edge_km = h3.average_hexagon_edge_length(resolution, unit="km")
    return math.ceil(radius_km / edge_km) + 1


def covering_cells(
    center: Coordinates, radius_km: float, resolution: int = 7
) -> set[str]:
    """H3 cells whose union contains the circle of ``radius_km``."""
    origin = cell_for(center, resolution)
    return set(h3.grid_disk(origin, rings_for_radius(radius_km, resolution)))


def nearest_first(
    center: Coordinates,
    drivers: list[tuple[int, Coordinates]],
    radius_km: float | None = None,
) -> list[Candidate]:
    """
    Rank ``(driver_id, position)`` pairs by distance to ``center``.

    With a ``radius_km`` drivers further away are dropped; ``None`` keeps
    everyone.  Ties keep input order.
    """
    ranked: list[Candidate] = []
    for driver_id, position in drivers:
        d = distance_km(position, center)
        if radius_km is not None and d > radius_km:
            continue
        ranked.append(Candidate(driver_id=driver_id, distance_km=d))
    ranked.sort(key=lambda c: c.distance_km)
    return ranked
