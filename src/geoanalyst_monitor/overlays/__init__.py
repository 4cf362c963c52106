from geoanalyst_monitor.overlays.families import build_reconciler, build_reconcilers
from geoanalyst_monitor.overlays.reconciler import OverlayEntry, OverlayReconciler, ReconcileReport
from geoanalyst_monitor.overlays.surface import LayerStoreSurface, RenderSurface

__all__ = [
    "LayerStoreSurface",
    "OverlayEntry",
    "OverlayReconciler",
    "ReconcileReport",
    "RenderSurface",
    "build_reconciler",
    "build_reconcilers",
]
