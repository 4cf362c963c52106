"""Normalization boundary between raw analysis payloads and canonical models.

The analysis service reports the same field under several spellings
(``mining_detected`` / ``miningDetected``, ``id`` / ``tile_id`` ...). Every
fallback lookup lives here so the rest of the package only sees
:class:`TileRecord` and :class:`JobSnapshot`.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping

from loguru import logger
from shapely.geometry import MultiPolygon, Polygon, shape

from geoanalyst_monitor.models import (
    TERMINAL_STATUSES,
    AnalysisStatus,
    Coordinate,
    DetectionPolygon,
    JobSnapshot,
    TileRecord,
)


_STATUS_ALIASES: dict[str, AnalysisStatus] = {
    "initializing": AnalysisStatus.initializing,
    "initialization": AnalysisStatus.initializing,
    "pending": AnalysisStatus.initializing,
    "queued": AnalysisStatus.initializing,
    "processing": AnalysisStatus.initializing,
    "running": AnalysisStatus.initializing,
    "validating": AnalysisStatus.validating,
    "fetching": AnalysisStatus.fetching,
    "loading_model": AnalysisStatus.loading_model,
    "inferring": AnalysisStatus.inferring,
    "completed": AnalysisStatus.completed,
    "failed": AnalysisStatus.failed,
    "cancelled": AnalysisStatus.cancelled,
    "canceled": AnalysisStatus.cancelled,
}

# ``current_step`` keys reported by the analysis service while a job runs.
_STEP_ALIASES: dict[str, AnalysisStatus] = {
    "initialization": AnalysisStatus.initializing,
    "initializing": AnalysisStatus.initializing,
    "validating": AnalysisStatus.validating,
    "connecting": AnalysisStatus.fetching,
    "requesting": AnalysisStatus.fetching,
    "preprocessing": AnalysisStatus.fetching,
    "fetching": AnalysisStatus.fetching,
    "processing": AnalysisStatus.loading_model,
    "loading_model": AnalysisStatus.loading_model,
    "ml_inference_tiles": AnalysisStatus.inferring,
    "inferring": AnalysisStatus.inferring,
    "completed": AnalysisStatus.completed,
}


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return number


def _as_int(value: Any, default: int = 0) -> int:
    return int(_as_float(value, float(default)))


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    number = _as_float(value, math.nan)
    return None if math.isnan(number) else int(number)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    number = _as_float(value, math.nan)
    return None if math.isnan(number) else number


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _parse_corner(point: Any) -> Coordinate | None:
    if not isinstance(point, (list, tuple)) or len(point) < 2:
        return None
    lon = _as_float(point[0], math.nan)
    lat = _as_float(point[1], math.nan)
    if math.isnan(lon) or math.isnan(lat):
        return None
    return (lon, lat)


def _parse_corners(value: Any) -> list[Coordinate]:
    if not isinstance(value, (list, tuple)):
        return []
    corners: list[Coordinate] = []
    for point in value:
        parsed = _parse_corner(point)
        if parsed is not None:
            corners.append(parsed)
    return corners


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _polygon_rings(polygon: Polygon) -> list[list[Coordinate]]:
    rings = [polygon.exterior, *polygon.interiors]
    return [[(float(x), float(y)) for x, y, *_ in ring.coords] for ring in rings]


def normalize_detection(feature: Any, position: int = 0) -> DetectionPolygon:
    """Convert one GeoJSON mine-block feature. Raises ``ValueError`` when unusable."""

    if not isinstance(feature, Mapping):
        raise ValueError("Detection must be a GeoJSON feature object.")

    geometry = feature.get("geometry")
    if not isinstance(geometry, Mapping):
        raise ValueError("Detection has no geometry.")

    geom_type = str(geometry.get("type") or "Polygon")
    if geom_type not in {"Polygon", "MultiPolygon"}:
        raise ValueError(f"Unsupported detection geometry '{geom_type}'.")

    coordinates = geometry.get("coordinates")
    if not coordinates:
        raise ValueError("Detection geometry has no rings.")

    try:
        geom = shape({"type": geom_type, "coordinates": coordinates})
    except Exception as exc:
        raise ValueError(f"Malformed detection rings: {exc}") from exc
    if geom.is_empty:
        raise ValueError("Detection geometry is empty.")

    if isinstance(geom, MultiPolygon):
        # One exterior ring per part; holes of multipart blocks are dropped.
        rings = [_polygon_rings(part)[0] for part in geom.geoms if not part.is_empty]
    else:
        rings = _polygon_rings(geom)

    properties = feature.get("properties")
    if not isinstance(properties, Mapping):
        properties = {}

    name = _first(properties, "name")
    return DetectionPolygon(
        ring_coordinates=rings,
        geometry_type=geom_type,
        name=str(name) if name is not None else f"Block {position + 1}",
        area_square_meters=max(
            0.0, _as_float(_first(properties, "area_m2", "areaSquareMeters", "area_square_meters"))
        ),
        average_confidence=_clamp(
            _as_float(_first(properties, "avg_confidence", "averageConfidence", "confidence")),
            0.0,
            1.0,
        ),
        is_merged=_as_bool(_first(properties, "is_merged", "isMerged")),
    )


def _normalize_detections(value: Any, tile_id: str) -> list[DetectionPolygon]:
    if not isinstance(value, (list, tuple)):
        return []
    detections: list[DetectionPolygon] = []
    for position, feature in enumerate(value):
        try:
            detections.append(normalize_detection(feature, position))
        except ValueError as exc:
            logger.warning(f"Skipping detection {position} of tile {tile_id}: {exc}")
    return detections


def normalize_tile(raw: Any, position: int = 0) -> TileRecord:
    """Map a heterogeneous tile payload to a :class:`TileRecord`.

    Missing or malformed fields fall back to zero values; only individual
    detection polygons are ever dropped.
    """

    if not isinstance(raw, Mapping):
        logger.warning(f"Tile payload at position {position} is not an object; using defaults.")
        raw = {}

    index = _as_int(_first(raw, "index", "tile_index"), position)
    raw_id = _first(raw, "id", "tile_id", "tileId")
    tile_id = str(raw_id) if raw_id is not None else f"tile-{index}"

    base_image = _first(raw, "image_base64", "imageBase64", "base_image", "baseImage")
    probability_map = _first(
        raw,
        "probability_map_base64",
        "probabilityMapBase64",
        "probability_map",
        "probabilityMap",
    )
    detections = _normalize_detections(
        _first(raw, "mine_blocks", "mineBlocks", "detections"),
        tile_id,
    )

    bands_value = _first(raw, "bands", "bands_used", "bandsUsed")
    bands = [str(item) for item in bands_value] if isinstance(bands_value, (list, tuple)) else []

    return TileRecord(
        id=tile_id,
        index=index,
        bounds_corners=_parse_corners(
            _first(raw, "bounds", "bounds_corners", "boundsCorners", "corners")
        ),
        base_image=str(base_image) if base_image is not None else None,
        probability_map=str(probability_map) if probability_map is not None else None,
        detections=detections,
        mining_detected=any(
            _as_bool(raw.get(key)) for key in ("miningDetected", "mining_detected")
        ),
        mining_percentage=_clamp(
            _as_float(_first(raw, "miningPercentage", "mining_percentage")), 0.0, 100.0
        ),
        confidence=_clamp(_as_float(_first(raw, "confidence", "avg_confidence")), 0.0, 1.0),
        cloud_coverage_percent=max(
            0.0,
            _as_float(_first(raw, "cloudCoverage", "cloud_coverage", "cloud_coverage_percent")),
        ),
        captured_at=_parse_timestamp(_first(raw, "timestamp", "captured_at", "capturedAt")),
        bands=bands,
        detection_count=max(
            0, _as_int(_first(raw, "num_mine_blocks", "numMineBlocks"), len(detections))
        ),
    )


def _resolve_status(status_text: str, step_text: str) -> AnalysisStatus:
    status = _STATUS_ALIASES.get(status_text)
    if status in TERMINAL_STATUSES:
        return status
    step = _STEP_ALIASES.get(step_text)
    if step is not None:
        return step
    return status or AnalysisStatus.initializing


def _error_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = _first(value, "message", "detail")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def normalize_snapshot(payload: Any) -> JobSnapshot:
    if not isinstance(payload, Mapping):
        raise ValueError("Analysis status payload must be a JSON object.")

    status_text = str(payload.get("status") or "").strip().lower()
    step_text = str(_first(payload, "current_step", "currentStep") or "").strip().lower()

    raw_tiles = payload.get("tiles")
    tiles: list[TileRecord] = []
    if isinstance(raw_tiles, (list, tuple)):
        for position, raw_tile in enumerate(raw_tiles):
            try:
                tiles.append(normalize_tile(raw_tile, position))
            except ValueError as exc:
                logger.warning(f"Skipping malformed tile at position {position}: {exc}")

    progress = _as_float(_first(payload, "progress", "progress_percent", "progressPercent"))
    return JobSnapshot(
        status=_resolve_status(status_text, step_text),
        progress_percent=int(round(_clamp(progress, 0.0, 100.0))),
        message=str(_first(payload, "message") or ""),
        current_step=step_text,
        total_tiles=_optional_int(_first(payload, "total_tiles", "totalTiles")),
        tiles_fetched=_optional_int(_first(payload, "tiles_fetched", "tilesFetched")),
        area_km2=_optional_float(_first(payload, "area_km2", "areaKm2")),
        tiles=tiles,
        error_message=_error_text(_first(payload, "error", "error_message", "errorMessage")),
    )
