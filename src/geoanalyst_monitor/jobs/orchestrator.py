from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import anyio
from loguru import logger

from geoanalyst_monitor.geometry.bounds import Extent, union_extent
from geoanalyst_monitor.jobs.poller import (
    JobStatusPoller,
    PollerRegistry,
    StatusSource,
    default_registry,
)
from geoanalyst_monitor.jobs.steps import format_elapsed, step_index, step_states, summarize_tiles
from geoanalyst_monitor.models import JobSnapshot, OverlayFamily, PollerState
from geoanalyst_monitor.overlays.families import build_reconcilers
from geoanalyst_monitor.overlays.reconciler import ReconcileReport
from geoanalyst_monitor.overlays.surface import RenderSurface
from geoanalyst_monitor.settings import Settings, get_settings


# Heatmaps and mine blocks only exist once the model stage has started, which
# the analysis service reports as 80% progress. Kept fixed rather than
# configurable; a server-side "results available" flag would be the better
# signal if the service ever exposes one.
RESULTS_PROGRESS_THRESHOLD = 80
PROGRESS_GATED_FAMILIES = {OverlayFamily.heatmap, OverlayFamily.polygon}


@dataclass(slots=True)
class LayerControl:
    visible: bool = True
    opacity: float = 1.0


@dataclass(slots=True)
class MonitorOutcome:
    analysis_id: str
    state: PollerState
    snapshot: JobSnapshot | None
    error_message: str | None
    elapsed_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis_id": self.analysis_id,
            "state": self.state.value,
            "progress": self.snapshot.progress_percent if self.snapshot else 0,
            "tiles": len(self.snapshot.tiles) if self.snapshot else 0,
            "error": self.error_message,
            "elapsed_seconds": self.elapsed_seconds,
        }


class ProgressOrchestrator:
    """Drives one analysis: polling, overlay reconciliation and caller events."""

    def __init__(
        self,
        source: StatusSource,
        surface: RenderSurface,
        *,
        settings: Settings | None = None,
        registry: PollerRegistry | None = None,
        on_progress: Callable[[int, str], None] | None = None,
        on_complete: Callable[[JobSnapshot], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        self.settings = settings or get_settings()
        self.source = source
        self.surface = surface
        self.registry = registry if registry is not None else default_registry
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error

        self.reconcilers = build_reconcilers(surface)
        opacities = self.settings.default_opacities
        self.controls = {
            family: LayerControl(visible=True, opacity=opacities[family.value])
            for family in OverlayFamily
        }

        self.analysis_id: str | None = None
        self.snapshot: JobSnapshot | None = None
        self.fit_extent: Extent | None = None
        self.elapsed_seconds = 0
        self.current_step_index = -1

        self._poller: JobStatusPoller | None = None
        self._active = False
        self._cancelling = False

    @property
    def elapsed_display(self) -> str:
        return format_elapsed(self.elapsed_seconds)

    @property
    def state(self) -> PollerState:
        return self._poller.state if self._poller else PollerState.idle

    def step_states(self) -> list[dict[str, str]]:
        return step_states(self.current_step_index)

    def tile_stats(self) -> dict[str, Any]:
        return summarize_tiles(self.snapshot.tiles if self.snapshot else [])

    def is_family_visible(self, family: OverlayFamily) -> bool:
        if not self.controls[family].visible:
            return False
        if family in PROGRESS_GATED_FAMILIES:
            return (
                self.snapshot is not None
                and self.snapshot.progress_percent >= RESULTS_PROGRESS_THRESHOLD
            )
        return True

    def set_visibility(self, family: OverlayFamily, visible: bool) -> None:
        self.controls[family].visible = bool(visible)
        if self._active:
            self._reconcile(family)

    def set_opacity(self, family: OverlayFamily, opacity: float) -> None:
        self.controls[family].opacity = max(0.0, min(1.0, float(opacity)))
        if self._active:
            self._reconcile(family)

    def apply_snapshot(self, snapshot: JobSnapshot) -> None:
        self.snapshot = snapshot
        index = step_index(snapshot.status)
        if index >= 0:
            self.current_step_index = index

        extent = union_extent(snapshot.tiles)
        if extent is not None:
            self.fit_extent = extent

        for family in OverlayFamily:
            self._reconcile(family)
        if self.on_progress:
            self.on_progress(snapshot.progress_percent, snapshot.message)

    async def run(self, analysis_id: str) -> MonitorOutcome:
        if self._active:
            raise RuntimeError(
                f"Orchestrator is already monitoring analysis '{self.analysis_id}'."
            )
        self.snapshot = None
        self.fit_extent = None
        self.elapsed_seconds = 0
        self.current_step_index = -1

        poller = JobStatusPoller(
            self.source,
            interval_seconds=self.settings.geoanalyst_poll_interval_seconds,
            initial_delay_seconds=self.settings.geoanalyst_initial_poll_delay_seconds,
            on_snapshot=self.apply_snapshot,
        )
        self.analysis_id = analysis_id
        self._poller = poller
        self.registry.replace(analysis_id, poller)
        self._active = True

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._tick_elapsed, poller)
                state = await poller.run(analysis_id)
                tg.cancel_scope.cancel()
        except BaseException:
            # Host cancellation or a raising callback: overlays must not outlive the run.
            if poller.state is PollerState.polling:
                poller.stop()
            self.release()
            raise
        finally:
            self.registry.release(analysis_id, poller)

        return await self._finish(poller, state)

    async def cancel(self) -> bool:
        if self._cancelling or self._poller is None:
            return False
        self._cancelling = True
        try:
            return await self._poller.cancel()
        finally:
            self._cancelling = False

    def release(self) -> None:
        self._active = False
        for reconciler in self.reconcilers.values():
            reconciler.release()

    async def _tick_elapsed(self, poller: JobStatusPoller) -> None:
        tick = self.settings.geoanalyst_elapsed_tick_seconds
        while poller.state in {PollerState.idle, PollerState.polling}:
            await anyio.sleep(tick)
            if poller.state is PollerState.polling:
                self.elapsed_seconds += 1

    async def _finish(self, poller: JobStatusPoller, state: PollerState) -> MonitorOutcome:
        outcome = MonitorOutcome(
            analysis_id=self.analysis_id or "",
            state=state,
            snapshot=poller.last_snapshot,
            error_message=poller.error_message,
            elapsed_seconds=self.elapsed_seconds,
        )

        if state is PollerState.completed:
            # Let the final render pass settle before handing results over.
            await anyio.sleep(self.settings.geoanalyst_completion_delay_seconds)
            logger.info(f"Analysis {outcome.analysis_id} completed in {self.elapsed_display}")
            if self.on_complete and poller.last_snapshot is not None:
                self.on_complete(poller.last_snapshot)
            self.release()
        elif state is PollerState.failed:
            self.release()
            logger.warning(f"Analysis {outcome.analysis_id} failed: {outcome.error_message}")
            if self.on_error:
                self.on_error(outcome.error_message or "Analysis failed")
        else:
            self.release()
            logger.info(f"Analysis {outcome.analysis_id} ended in state {state.value}")
        return outcome

    def _reconcile(self, family: OverlayFamily) -> ReconcileReport:
        tiles = self.snapshot.tiles if self.snapshot else []
        return self.reconcilers[family].reconcile(
            tiles,
            visible=self.is_family_visible(family),
            opacity=self.controls[family].opacity,
        )
