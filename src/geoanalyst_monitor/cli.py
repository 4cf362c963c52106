from __future__ import annotations

import argparse
import json
import signal
import sys
from typing import Any

import anyio
from loguru import logger

from geoanalyst_monitor.client import AnalysisApiClient
from geoanalyst_monitor.jobs.orchestrator import ProgressOrchestrator
from geoanalyst_monitor.jobs.steps import format_duration
from geoanalyst_monitor.logging_config import configure_logging
from geoanalyst_monitor.models import JobSnapshot, PollerState
from geoanalyst_monitor.overlays.surface import LayerStoreSurface
from geoanalyst_monitor.settings import Settings, get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="GeoAnalyst analysis monitor")
    parser.add_argument("--service-url", default=None)
    parser.add_argument("--api-key", default=None)
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--log-json", action="store_true")

    commands = parser.add_subparsers(dest="command", required=True)

    watch = commands.add_parser("watch", help="Follow an analysis until it finishes.")
    watch.add_argument("analysis_id")
    watch.add_argument("--poll-interval", type=float, default=None)
    watch.add_argument(
        "--layers",
        action="store_true",
        help="Print the final overlay layer payload with the outcome.",
    )

    stop = commands.add_parser("stop", help="Ask the service to stop an analysis.")
    stop.add_argument("analysis_id")
    return parser


def _settings_for(args: argparse.Namespace) -> Settings:
    updates: dict[str, Any] = {}
    if args.service_url:
        updates["geoanalyst_service_url"] = args.service_url
    if args.api_key:
        updates["geoanalyst_api_key"] = args.api_key
    if args.log_level:
        updates["geoanalyst_log_level"] = args.log_level
    if args.log_json:
        updates["geoanalyst_log_json"] = True
    if getattr(args, "poll_interval", None):
        updates["geoanalyst_poll_interval_seconds"] = max(0.5, args.poll_interval)
    return get_settings().model_copy(update=updates)


async def _cancel_on_signal(orchestrator: ProgressOrchestrator) -> None:
    try:
        with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
            async for signum in signals:
                logger.info(f"Received signal {signum}; cancelling analysis")
                await orchestrator.cancel()
                return
    except NotImplementedError:
        # Signal receivers are unavailable on some platforms.
        return


async def watch(args: argparse.Namespace, settings: Settings) -> int:
    surface = LayerStoreSurface()
    final_layers: list[dict[str, Any]] = []

    def on_progress(percent: int, message: str) -> None:
        print(
            json.dumps(
                {
                    "analysis_id": args.analysis_id,
                    "progress": percent,
                    "message": message,
                    "elapsed": orchestrator.elapsed_display,
                    "layers": surface.counts(),
                }
            ),
            flush=True,
        )

    def on_complete(snapshot: JobSnapshot) -> None:
        final_layers.extend(surface.to_payload())

    with AnalysisApiClient(
        service_url=settings.service_url,
        api_key=settings.geoanalyst_api_key,
        timeout=settings.geoanalyst_request_timeout_seconds,
    ) as client:
        orchestrator = ProgressOrchestrator(
            client,
            surface,
            settings=settings,
            on_progress=on_progress,
            on_complete=on_complete,
        )
        async with anyio.create_task_group() as tg:
            tg.start_soon(_cancel_on_signal, orchestrator)
            outcome = await orchestrator.run(args.analysis_id)
            tg.cancel_scope.cancel()

    summary = outcome.to_dict()
    summary["duration"] = format_duration(outcome.elapsed_seconds)
    summary["tile_stats"] = orchestrator.tile_stats()
    if args.layers:
        summary["layers"] = final_layers
    else:
        summary["layer_count"] = len(final_layers)
    print(json.dumps(summary))
    return 0 if outcome.state is PollerState.completed else 1


def stop(args: argparse.Namespace, settings: Settings) -> int:
    with AnalysisApiClient(
        service_url=settings.service_url,
        api_key=settings.geoanalyst_api_key,
        timeout=settings.geoanalyst_request_timeout_seconds,
    ) as client:
        payload = client.stop_analysis(args.analysis_id)
    print(json.dumps({"analysis_id": args.analysis_id, "response": payload}))
    return 0


def run(args: argparse.Namespace) -> int:
    settings = _settings_for(args)
    configure_logging(level=settings.geoanalyst_log_level, json_logs=settings.geoanalyst_log_json)
    if args.command == "watch":
        return anyio.run(watch, args, settings)
    return stop(args, settings)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    try:
        code = run(args)
    except Exception as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
