from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from anyio.from_thread import BlockingPortal, start_blocking_portal

from geoanalyst_monitor.geometry.bounds import Extent
from geoanalyst_monitor.models import TileRecord
from geoanalyst_monitor.normalizer import normalize_tile
from geoanalyst_monitor.overlays.surface import LayerStoreSurface
from geoanalyst_monitor.settings import Settings


class ScriptedSource:
    """Status source replaying scripted payloads; the last entry repeats."""

    def __init__(self, responses: list[Any], *, stop_error: Exception | None = None):
        self._responses = list(responses)
        self._lock = threading.Lock()
        self.stop_error = stop_error
        self.fetch_calls = 0
        self.stop_calls = 0

    def fetch_status(self, analysis_id: str) -> dict[str, Any]:
        with self._lock:
            self.fetch_calls += 1
            if len(self._responses) > 1:
                item = self._responses.pop(0)
            else:
                item = self._responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def stop_analysis(self, analysis_id: str) -> dict[str, Any]:
        with self._lock:
            self.stop_calls += 1
        if self.stop_error is not None:
            raise self.stop_error
        return {"success": True, "message": "Analysis stopped"}


class GatedSource(ScriptedSource):
    """First fetch blocks until ``gate`` is set, later fetches return at once."""

    def __init__(self, slow_payload: dict[str, Any], fast_payload: dict[str, Any]):
        super().__init__([fast_payload])
        self.gate = threading.Event()
        self._slow_payload = slow_payload
        self._first = True

    def fetch_status(self, analysis_id: str) -> dict[str, Any]:
        with self._lock:
            first = self._first
            self._first = False
            self.fetch_calls += 1
        if first:
            self.gate.wait(timeout=5)
            return self._slow_payload
        return self._responses[0]


class RecordingSurface(LayerStoreSurface):
    """LayerStoreSurface that logs every call and can fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, str]] = []
        self.fail_add_for: set[str] = set()
        self.fail_update = False
        self.fail_remove = False

    def add_overlay(self, kind: str, extent: Extent, content: Any, opacity: float) -> str:
        tooltip = str(content.get("tooltip", "")) if isinstance(content, dict) else ""
        if any(marker in tooltip for marker in self.fail_add_for):
            self.calls.append(("add_failed", kind))
            raise RuntimeError("surface refused overlay")
        self.calls.append(("add", kind))
        return super().add_overlay(kind, extent, content, opacity)

    def update_overlay(self, handle: str, extent: Extent, content: Any, opacity: float) -> None:
        self.calls.append(("update", handle))
        if self.fail_update:
            raise RuntimeError("surface refused update")
        super().update_overlay(handle, extent, content, opacity)

    def remove_overlay(self, handle: str) -> None:
        self.calls.append(("remove", handle))
        if self.fail_remove:
            raise RuntimeError("surface refused removal")
        super().remove_overlay(handle)

    def count(self, action: str) -> int:
        return len([call for call in self.calls if call[0] == action])


def square(lon: float, lat: float, size: float = 1.0) -> list[list[float]]:
    return [[lon, lat], [lon + size, lat], [lon + size, lat + size], [lon, lat + size]]


def mine_block(lon: float, lat: float, *, size: float = 0.1, name: str | None = "Block A") -> dict:
    ring = square(lon, lat, size)
    properties: dict[str, Any] = {"area_m2": 25000.0, "avg_confidence": 0.82, "is_merged": False}
    if name is not None:
        properties["name"] = name
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [ring + [ring[0]]]},
        "properties": properties,
    }


def raw_tile(
    tile_id: str | None,
    *,
    index: int = 0,
    lon: float = 10.0,
    lat: float = 20.0,
    image: str | None = "aW1hZ2U=",
    heatmap: str | None = None,
    blocks: list[dict] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"index": index, "bounds": square(lon, lat)}
    if tile_id is not None:
        payload["tile_id"] = tile_id
    if image is not None:
        payload["image_base64"] = image
    if heatmap is not None:
        payload["probability_map_base64"] = heatmap
    if blocks is not None:
        payload["mine_blocks"] = blocks
    payload.update(extra)
    return payload


def tile(tile_id: str | None, **kwargs: Any) -> TileRecord:
    return normalize_tile(raw_tile(tile_id, **kwargs), kwargs.get("index", 0))


def status_payload(
    progress: int,
    *,
    status: str = "processing",
    tiles: list | None = None,
    **extra: Any,
) -> dict:
    payload: dict[str, Any] = {
        "status": status,
        "progress": progress,
        "message": f"progress {progress}",
        "current_step": extra.pop("current_step", "preprocessing"),
        "tiles": tiles or [],
    }
    payload.update(extra)
    return payload


def wait_until(
    condition: Callable[[], bool],
    timeout: float = 5.0,
    message: str = "condition",
) -> None:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return
        time.sleep(0.01)
    raise TimeoutError(f"{message} not met within {timeout}s")


@pytest.fixture
def portal() -> Iterator[BlockingPortal]:
    with start_blocking_portal() as running:
        yield running


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        geoanalyst_service_url="http://analysis.test/api/python",
        geoanalyst_api_key=None,
        geoanalyst_poll_interval_seconds=0.02,
        geoanalyst_initial_poll_delay_seconds=0.0,
        geoanalyst_completion_delay_seconds=0.0,
        geoanalyst_elapsed_tick_seconds=0.01,
    )


@pytest.fixture
def surface() -> RecordingSurface:
    return RecordingSurface()
