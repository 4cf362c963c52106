from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

import anyio
from loguru import logger

from geoanalyst_monitor.client import AnalysisApiError, AuthenticationExpired
from geoanalyst_monitor.models import JobSnapshot, PollerState
from geoanalyst_monitor.normalizer import normalize_snapshot


FINAL_POLLER_STATES = {PollerState.completed, PollerState.failed, PollerState.cancelled}

_ALLOWED_TRANSITIONS: dict[PollerState, set[PollerState]] = {
    PollerState.idle: {PollerState.polling},
    PollerState.polling: FINAL_POLLER_STATES,
}

DEFAULT_FAILURE_MESSAGE = "Analysis failed"
DEFAULT_TRANSPORT_MESSAGE = "Failed to fetch analysis status"


class StatusSource(Protocol):
    def fetch_status(self, analysis_id: str) -> dict[str, Any]:
        ...

    def stop_analysis(self, analysis_id: str) -> dict[str, Any]:
        ...


class InvalidTransition(RuntimeError):
    pass


class JobStatusPoller:
    """Fixed-interval poller for one analysis with an explicit lifecycle.

    Polls are spawned on every tick without waiting for the previous request,
    so responses may arrive out of order. Each request carries a sequence
    number and the epoch it was issued in; a response older than the last
    applied one, or issued before a cancel/stop, is dropped on arrival.
    """

    def __init__(
        self,
        source: StatusSource,
        *,
        interval_seconds: float = 5.0,
        initial_delay_seconds: float = 0.5,
        on_snapshot: Callable[[JobSnapshot], None] | None = None,
        on_complete: Callable[[JobSnapshot], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        on_state_change: Callable[[PollerState], None] | None = None,
    ):
        self._source = source
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.initial_delay_seconds = max(0.0, float(initial_delay_seconds))
        self.on_snapshot = on_snapshot
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_state_change = on_state_change

        self.analysis_id: str | None = None
        self.last_snapshot: JobSnapshot | None = None
        self.error_message: str | None = None

        self._state = PollerState.idle
        self._epoch = 0
        self._next_seq = 0
        self._applied_seq = -1
        self._cancelling = False
        self._cancel_scope: anyio.CancelScope | None = None
        self._finished: anyio.Event | None = None

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._state is PollerState.polling and not self._cancelling

    def start(self, analysis_id: str) -> None:
        self.analysis_id = analysis_id
        self._transition(PollerState.polling)

    async def run(self, analysis_id: str) -> PollerState:
        self._finished = anyio.Event()
        self.start(analysis_id)
        async with anyio.create_task_group() as tg:
            self._cancel_scope = tg.cancel_scope
            tg.start_soon(self._first_poll)
            while self.is_polling:
                await anyio.sleep(self.interval_seconds)
                if self.is_polling:
                    tg.start_soon(self.poll_once)
        self._cancel_scope = None

        # A cancel issued from another task may still be waiting on the stop call.
        if self._state is PollerState.polling:
            await self._finished.wait()
        return self._state

    async def poll_once(self) -> JobSnapshot | None:
        if not self.is_polling or self.analysis_id is None:
            return None

        analysis_id = self.analysis_id
        epoch = self._epoch
        seq = self._next_seq
        self._next_seq += 1

        try:
            payload = await anyio.to_thread.run_sync(
                self._source.fetch_status,
                analysis_id,
                abandon_on_cancel=True,
            )
            snapshot = normalize_snapshot(payload)
        except AuthenticationExpired:
            logger.info(f"Session expired while polling {analysis_id}; retrying on next tick")
            return None
        except Exception as exc:
            if self._is_stale(epoch, seq):
                logger.debug(f"Dropping failed poll #{seq} for {analysis_id}: {exc}")
                return None
            logger.error(f"Polling {analysis_id} failed: {exc}")
            self._fail(self._describe(exc))
            return None

        if self._is_stale(epoch, seq):
            logger.debug(f"Discarding stale response #{seq} for {analysis_id}")
            return None

        self._applied_seq = seq
        self.last_snapshot = snapshot
        if self.on_snapshot:
            self.on_snapshot(snapshot)

        if snapshot.is_complete:
            self._transition(PollerState.completed)
            if self.on_complete:
                self.on_complete(snapshot)
        elif snapshot.is_failed:
            self._fail(snapshot.error_message or DEFAULT_FAILURE_MESSAGE)
        return snapshot

    async def cancel(self) -> bool:
        """Request a remote stop and always end in ``cancelled`` locally."""

        if not self.is_polling:
            return False

        self._cancelling = True
        self._epoch += 1
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()

        analysis_id = self.analysis_id
        try:
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(self._source.stop_analysis, analysis_id)
        except Exception as exc:
            logger.warning(f"Remote stop for {analysis_id} failed: {exc}; cancelling locally")
        finally:
            if self._state is PollerState.polling:
                self._transition(PollerState.cancelled)
        return True

    def stop(self) -> None:
        """Stop polling locally without notifying the analysis service."""

        if self._state is not PollerState.polling:
            return
        self._epoch += 1
        self._transition(PollerState.cancelled)

    async def _first_poll(self) -> None:
        await anyio.sleep(self.initial_delay_seconds)
        await self.poll_once()

    def _is_stale(self, epoch: int, seq: int) -> bool:
        return (
            epoch != self._epoch
            or not self.is_polling
            or seq < self._applied_seq
        )

    def _fail(self, message: str) -> None:
        self.error_message = message
        self._transition(PollerState.failed)
        if self.on_error:
            self.on_error(message)

    @staticmethod
    def _describe(exc: Exception) -> str:
        if isinstance(exc, AnalysisApiError):
            return exc.message or DEFAULT_TRANSPORT_MESSAGE
        return str(exc) or DEFAULT_TRANSPORT_MESSAGE

    def _transition(self, target: PollerState) -> None:
        if target not in _ALLOWED_TRANSITIONS.get(self._state, set()):
            raise InvalidTransition(
                f"Cannot move poller from '{self._state.value}' to '{target.value}'."
            )
        previous = self._state
        self._state = target
        logger.info(f"Poller {self.analysis_id}: {previous.value} -> {target.value}")

        if target in FINAL_POLLER_STATES:
            if self._cancel_scope is not None:
                self._cancel_scope.cancel()
            if self._finished is not None:
                self._finished.set()
        if self.on_state_change:
            self.on_state_change(target)


class PollerRegistry:
    """At most one live poller per analysis id."""

    def __init__(self) -> None:
        self._pollers: dict[str, JobStatusPoller] = {}

    def get(self, analysis_id: str) -> JobStatusPoller | None:
        return self._pollers.get(analysis_id)

    def replace(self, analysis_id: str, poller: JobStatusPoller) -> None:
        existing = self._pollers.get(analysis_id)
        if existing is not None and existing is not poller:
            if existing.state is PollerState.polling:
                logger.info(f"Stopping existing poller for {analysis_id}")
                existing.stop()
        self._pollers[analysis_id] = poller

    def release(self, analysis_id: str, poller: JobStatusPoller) -> None:
        if self._pollers.get(analysis_id) is poller:
            del self._pollers[analysis_id]


# Shared by every orchestrator that is not handed its own registry.
default_registry = PollerRegistry()
