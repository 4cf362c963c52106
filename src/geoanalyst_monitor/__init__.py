"""Real-time progress monitoring for satellite mining-detection analyses."""

from geoanalyst_monitor.client import AnalysisApiClient
from geoanalyst_monitor.jobs.orchestrator import ProgressOrchestrator

__all__ = ["AnalysisApiClient", "ProgressOrchestrator"]
