from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from geoanalyst_monitor.geometry.bounds import Extent


class RenderSurface(Protocol):
    def add_overlay(self, kind: str, extent: Extent, content: Any, opacity: float) -> Any:
        ...

    def update_overlay(self, handle: Any, extent: Extent, content: Any, opacity: float) -> None:
        ...

    def remove_overlay(self, handle: Any) -> None:
        ...


@dataclass(slots=True)
class Layer:
    handle: str
    kind: str
    extent: Extent
    content: Any
    opacity: float
    revision: int = 0


class LayerStoreSurface:
    """In-memory layer table handed to a Leaflet front-end as plain JSON.

    The browser component owns drawing; this side only tracks which image
    overlays and polygon groups exist, where, and at what opacity.
    """

    def __init__(self) -> None:
        self._layers: dict[str, Layer] = {}

    def add_overlay(self, kind: str, extent: Extent, content: Any, opacity: float) -> str:
        handle = uuid.uuid4().hex
        self._layers[handle] = Layer(
            handle=handle,
            kind=kind,
            extent=extent,
            content=content,
            opacity=float(opacity),
        )
        return handle

    def update_overlay(self, handle: str, extent: Extent, content: Any, opacity: float) -> None:
        layer = self._layers.get(handle)
        if layer is None:
            raise KeyError(f"Unknown overlay handle '{handle}'.")
        layer.extent = extent
        layer.content = content
        layer.opacity = float(opacity)
        layer.revision += 1

    def remove_overlay(self, handle: str) -> None:
        if self._layers.pop(handle, None) is None:
            raise KeyError(f"Unknown overlay handle '{handle}'.")

    def __len__(self) -> int:
        return len(self._layers)

    def __contains__(self, handle: object) -> bool:
        return handle in self._layers

    def layers(self, kind: str | None = None) -> list[Layer]:
        return [layer for layer in self._layers.values() if kind is None or layer.kind == kind]

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for layer in self._layers.values():
            counts[layer.kind] = counts.get(layer.kind, 0) + 1
        return counts

    def to_payload(self) -> list[dict[str, Any]]:
        return [
            {
                "handle": layer.handle,
                "kind": layer.kind,
                "bounds": layer.extent.as_leaflet_bounds(),
                "opacity": layer.opacity,
                "revision": layer.revision,
                "content": layer.content,
            }
            for layer in self._layers.values()
        ]
