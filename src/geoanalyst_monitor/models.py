from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


Coordinate = tuple[float, float]


class AnalysisStatus(str, Enum):
    initializing = "initializing"
    validating = "validating"
    fetching = "fetching"
    loading_model = "loading_model"
    inferring = "inferring"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = {
    AnalysisStatus.completed,
    AnalysisStatus.failed,
    AnalysisStatus.cancelled,
}


class PollerState(str, Enum):
    idle = "idle"
    polling = "polling"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class OverlayFamily(str, Enum):
    imagery = "imagery"
    heatmap = "heatmap"
    polygon = "polygon"


class DetectionPolygon(BaseModel):
    """One detected mine block, scoped to the tile that reported it."""

    model_config = ConfigDict(frozen=True)

    ring_coordinates: list[list[Coordinate]]
    geometry_type: Literal["Polygon", "MultiPolygon"] = "Polygon"
    name: str = ""
    area_square_meters: float = 0.0
    average_confidence: float = 0.0
    is_merged: bool = False

    @property
    def area_hectares(self) -> float:
        return self.area_square_meters / 10_000.0


class TileRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    index: int = 0
    bounds_corners: list[Coordinate] = Field(default_factory=list)
    base_image: str | None = None
    probability_map: str | None = None
    detections: list[DetectionPolygon] = Field(default_factory=list)
    mining_detected: bool = False
    mining_percentage: float = Field(default=0.0, ge=0, le=100)
    confidence: float = Field(default=0.0, ge=0, le=1)
    cloud_coverage_percent: float = 0.0
    captured_at: datetime | None = None
    bands: list[str] = Field(default_factory=list)
    detection_count: int = 0

    @property
    def has_base_image(self) -> bool:
        return bool(self.base_image)

    @property
    def has_probability_map(self) -> bool:
        return bool(self.probability_map)

    @property
    def has_detections(self) -> bool:
        return bool(self.detections)


class JobSnapshot(BaseModel):
    """One immutable poll response, already normalized."""

    model_config = ConfigDict(frozen=True)

    status: AnalysisStatus = AnalysisStatus.initializing
    progress_percent: int = Field(default=0, ge=0, le=100)
    message: str = ""
    current_step: str = ""
    total_tiles: int | None = None
    tiles_fetched: int | None = None
    area_km2: float | None = None
    tiles: list[TileRecord] = Field(default_factory=list)
    error_message: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == AnalysisStatus.completed or self.progress_percent >= 100

    @property
    def is_failed(self) -> bool:
        return self.status == AnalysisStatus.failed or bool(self.error_message)
