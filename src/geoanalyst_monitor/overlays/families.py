from __future__ import annotations

import hashlib
from typing import Any

from shapely.geometry import MultiPolygon, Polygon, mapping

from geoanalyst_monitor.geometry.bounds import Extent
from geoanalyst_monitor.models import DetectionPolygon, OverlayFamily, TileRecord
from geoanalyst_monitor.overlays.reconciler import OverlayReconciler
from geoanalyst_monitor.overlays.surface import RenderSurface


BLOCK_STYLE = {"color": "#ef4444", "weight": 2, "fillColor": "#fca5a5"}


def _md5(s: str) -> str:
    return hashlib.md5(s.encode()).hexdigest()[:12]


def _data_url(payload: str) -> str:
    return f"data:image/png;base64,{payload}"


def imagery_tooltip(tile: TileRecord) -> str:
    captured = tile.captured_at.isoformat() if tile.captured_at else "unknown"
    return (
        f"Tile {tile.index}<br/>"
        f"Bands: {', '.join(tile.bands) or 'RGB'}<br/>"
        f"Cloud: {tile.cloud_coverage_percent:g}%<br/>"
        f"Time: {captured}"
    )


def heatmap_tooltip(tile: TileRecord) -> str:
    if not tile.mining_detected:
        return f"Tile {tile.index}<br/>No mining detected"
    return (
        f"Tile {tile.index}<br/>MINING DETECTED<br/>"
        f"Coverage: {tile.mining_percentage:.1f}%<br/>"
        f"Confidence: {tile.confidence * 100:.1f}%<br/>"
        f"Blocks: {tile.detection_count}"
    )


def imagery_content(tile: TileRecord) -> dict[str, Any]:
    return {"url": _data_url(tile.base_image or ""), "tooltip": imagery_tooltip(tile)}


def heatmap_content(tile: TileRecord) -> dict[str, Any]:
    return {"url": _data_url(tile.probability_map or ""), "tooltip": heatmap_tooltip(tile)}


def detection_geometry(detection: DetectionPolygon) -> Polygon | MultiPolygon:
    rings = detection.ring_coordinates
    if detection.geometry_type == "MultiPolygon":
        return MultiPolygon([Polygon(ring) for ring in rings])
    return Polygon(rings[0], rings[1:])


def polygon_content(tile: TileRecord) -> dict[str, Any]:
    """GeoJSON FeatureCollection of a tile's mine blocks with popup fields."""

    features = []
    for detection in tile.detections:
        features.append(
            {
                "type": "Feature",
                "geometry": mapping(detection_geometry(detection)),
                "properties": {
                    "name": detection.name,
                    "area_ha": round(detection.area_hectares, 4),
                    "confidence_pct": round(detection.average_confidence * 100, 1),
                    "tile_id": tile.id,
                    "is_merged": detection.is_merged,
                },
            }
        )
    return {"type": "FeatureCollection", "features": features, "style": dict(BLOCK_STYLE)}


_CONTENT_BUILDERS = {
    OverlayFamily.imagery: imagery_content,
    OverlayFamily.heatmap: heatmap_content,
    OverlayFamily.polygon: polygon_content,
}

_PREDICATES = {
    OverlayFamily.imagery: lambda tile: tile.has_base_image,
    OverlayFamily.heatmap: lambda tile: tile.has_probability_map,
    OverlayFamily.polygon: lambda tile: tile.has_detections,
}


def _content_key(family: OverlayFamily):
    if family is OverlayFamily.imagery:
        return lambda tile: _md5(f"{tile.base_image}|{imagery_tooltip(tile)}")
    if family is OverlayFamily.heatmap:
        return lambda tile: _md5(f"{tile.probability_map}|{heatmap_tooltip(tile)}")
    return lambda tile: _md5(
        "|".join(detection.model_dump_json() for detection in tile.detections)
    )


def build_reconciler(family: OverlayFamily, surface: RenderSurface) -> OverlayReconciler:
    build_content = _CONTENT_BUILDERS[family]

    def render(tile: TileRecord, extent: Extent, opacity: float) -> Any:
        return surface.add_overlay(family.value, extent, build_content(tile), opacity)

    def update(handle: Any, tile: TileRecord, extent: Extent, opacity: float) -> None:
        surface.update_overlay(handle, extent, build_content(tile), opacity)

    return OverlayReconciler(
        family,
        predicate=_PREDICATES[family],
        render=render,
        update=update,
        dispose=surface.remove_overlay,
        content_key=_content_key(family),
    )


def build_reconcilers(surface: RenderSurface) -> dict[OverlayFamily, OverlayReconciler]:
    return {family: build_reconciler(family, surface) for family in OverlayFamily}
