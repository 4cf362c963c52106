from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from geoanalyst_monitor.models import TileRecord


@dataclass(frozen=True, slots=True)
class Extent:
    """Axis-aligned lon/lat rectangle. No antimeridian handling."""

    south: float
    north: float
    west: float
    east: float

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south

    @property
    def is_degenerate(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def as_leaflet_bounds(self) -> list[list[float]]:
        return [[self.south, self.west], [self.north, self.east]]

    def fingerprint(self) -> str:
        return f"{self.south:.9f},{self.north:.9f},{self.west:.9f},{self.east:.9f}"


def compute_extent(corners: Sequence[Sequence[float]]) -> Extent:
    """Bounding rectangle of ``[lon, lat]`` corner points.

    Fewer than two distinct points produce a degenerate extent rather than an
    error; callers decide whether to render it.
    """

    if not corners:
        raise ValueError("At least one corner is required to compute an extent.")

    lons = [float(point[0]) for point in corners]
    lats = [float(point[1]) for point in corners]
    return Extent(south=min(lats), north=max(lats), west=min(lons), east=max(lons))


def union_extent(tiles: Iterable[TileRecord]) -> Extent | None:
    corners = [point for tile in tiles for point in tile.bounds_corners]
    if not corners:
        return None
    return compute_extent(corners)
