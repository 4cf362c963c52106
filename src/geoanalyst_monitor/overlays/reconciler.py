from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from geoanalyst_monitor.geometry.bounds import Extent, compute_extent
from geoanalyst_monitor.models import OverlayFamily, TileRecord


PresencePredicate = Callable[[TileRecord], bool]
RenderFn = Callable[[TileRecord, Extent, float], Any]
UpdateFn = Callable[[Any, TileRecord, Extent, float], None]
DisposeFn = Callable[[Any], None]
ContentKeyFn = Callable[[TileRecord], str]


@dataclass(slots=True)
class OverlayEntry:
    key: str
    handle: Any
    last_opacity: float
    last_content_hash: str


@dataclass(slots=True)
class ReconcileReport:
    created: int = 0
    updated: int = 0
    disposed: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.disposed)


class OverlayReconciler:
    """Keeps one overlay family's render handles in step with a tile list.

    Every handle in the store was created by ``render`` and is released
    through ``dispose`` exactly once before its entry is dropped.
    """

    def __init__(
        self,
        family: OverlayFamily,
        *,
        predicate: PresencePredicate,
        render: RenderFn,
        update: UpdateFn,
        dispose: DisposeFn,
        content_key: ContentKeyFn,
    ):
        self.family = family
        self._predicate = predicate
        self._render = render
        self._update = update
        self._dispose = dispose
        self._content_key = content_key
        self._entries: dict[str, OverlayEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        return list(self._entries)

    def entry(self, key: str) -> OverlayEntry | None:
        return self._entries.get(key)

    def reconcile(
        self,
        tiles: Iterable[TileRecord],
        *,
        visible: bool,
        opacity: float,
    ) -> ReconcileReport:
        report = ReconcileReport()
        if not visible:
            report.disposed = self._dispose_keys(list(self._entries))
            return report

        # Later records win when an id repeats within one pass.
        latest: dict[str, TileRecord] = {}
        for tile in tiles:
            if self._predicate(tile):
                latest[tile.id] = tile

        renderable: dict[str, tuple[TileRecord, Extent]] = {}
        for tile_id, tile in latest.items():
            if not tile.bounds_corners:
                logger.warning(f"[{self.family.value}] tile {tile_id} has no bounds; skipping")
                report.skipped += 1
                continue
            extent = compute_extent(tile.bounds_corners)
            if extent.is_degenerate:
                logger.warning(
                    f"[{self.family.value}] tile {tile_id} has degenerate bounds "
                    f"{extent.as_leaflet_bounds()}; skipping"
                )
                report.skipped += 1
                continue
            renderable[tile_id] = (tile, extent)

        for tile_id, (tile, extent) in renderable.items():
            content_hash = f"{extent.fingerprint()}|{self._content_key(tile)}"
            existing = self._entries.get(tile_id)
            if existing is None:
                try:
                    handle = self._render(tile, extent, opacity)
                except Exception:
                    logger.exception(f"[{self.family.value}] failed to render tile {tile_id}")
                    report.failed += 1
                    continue
                self._entries[tile_id] = OverlayEntry(
                    key=tile_id,
                    handle=handle,
                    last_opacity=opacity,
                    last_content_hash=content_hash,
                )
                report.created += 1
                continue

            if existing.last_content_hash == content_hash and existing.last_opacity == opacity:
                continue
            try:
                self._update(existing.handle, tile, extent, opacity)
            except Exception:
                logger.exception(f"[{self.family.value}] failed to update tile {tile_id}")
                report.failed += 1
                continue
            existing.last_opacity = opacity
            existing.last_content_hash = content_hash
            report.updated += 1

        stale = [key for key in self._entries if key not in renderable]
        report.disposed = self._dispose_keys(stale)

        if report.changed or report.failed:
            logger.debug(
                f"[{self.family.value}] reconciled: created={report.created} "
                f"updated={report.updated} disposed={report.disposed} "
                f"skipped={report.skipped} failed={report.failed}"
            )
        return report

    def release(self) -> int:
        return self._dispose_keys(list(self._entries))

    def _dispose_keys(self, keys: list[str]) -> int:
        disposed = 0
        for key in keys:
            entry = self._entries.pop(key, None)
            if entry is None:
                continue
            try:
                self._dispose(entry.handle)
            except Exception:
                logger.exception(f"[{self.family.value}] failed to dispose overlay for tile {key}")
            disposed += 1
        return disposed
