from geoanalyst_monitor.jobs.orchestrator import (
    RESULTS_PROGRESS_THRESHOLD,
    LayerControl,
    MonitorOutcome,
    ProgressOrchestrator,
)
from geoanalyst_monitor.jobs.poller import InvalidTransition, JobStatusPoller, PollerRegistry

__all__ = [
    "RESULTS_PROGRESS_THRESHOLD",
    "InvalidTransition",
    "JobStatusPoller",
    "LayerControl",
    "MonitorOutcome",
    "PollerRegistry",
    "ProgressOrchestrator",
]
