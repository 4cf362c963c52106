from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from geoanalyst_monitor.models import AnalysisStatus, TileRecord


@dataclass(frozen=True, slots=True)
class AnalysisStep:
    label: str
    status: AnalysisStatus
    progress_range: tuple[int, int]


ANALYSIS_STEPS: tuple[AnalysisStep, ...] = (
    AnalysisStep("Validating AOI", AnalysisStatus.validating, (0, 15)),
    AnalysisStep("Fetching Satellite Tiles", AnalysisStatus.fetching, (15, 65)),
    AnalysisStep("Loading ML Model", AnalysisStatus.loading_model, (65, 80)),
    AnalysisStep("Running Inference", AnalysisStatus.inferring, (80, 95)),
    AnalysisStep("Generating Results", AnalysisStatus.completed, (95, 100)),
)


def step_index(status: AnalysisStatus) -> int:
    for index, step in enumerate(ANALYSIS_STEPS):
        if step.status == status:
            return index
    return -1


def step_states(current_index: int) -> list[dict[str, str]]:
    states = []
    for index, step in enumerate(ANALYSIS_STEPS):
        if index < current_index:
            state = "completed"
        elif index == current_index:
            state = "active"
        else:
            state = "pending"
        states.append({"label": step.label, "state": state})
    return states


def format_elapsed(seconds: int) -> str:
    total = max(0, int(seconds))
    return f"{total // 60}:{total % 60:02d}"


def format_duration(seconds: float | str | None) -> str:
    if seconds is None or seconds == "":
        return "N/A"
    try:
        total = float(seconds)
    except (TypeError, ValueError):
        return "N/A"
    if total < 0:
        return "N/A"
    if total == 0:
        return "0s"

    hours = int(total // 3600)
    minutes = int((total % 3600) // 60)
    secs = round(total % 60, 2)

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{int(secs)}s" if secs == int(secs) else f"{secs:.2f}s")
    return " ".join(parts)


def summarize_tiles(tiles: Iterable[TileRecord]) -> dict[str, Any]:
    items = list(tiles)
    return {
        "total": len(items),
        "with_images": len([tile for tile in items if tile.has_base_image]),
        "with_heatmaps": len([tile for tile in items if tile.has_probability_map]),
        "with_detections": len([tile for tile in items if tile.mining_detected]),
    }
