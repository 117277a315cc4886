"""Retry and re-check scheduling around the layered detector."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Sequence, Union

from .detector import ConnectionState, DetectionStatus, FailureMode, LayeredDetector
from .system_log import SystemLog
from .tasks import ScheduledTask

ConnectionListener = Callable[[ConnectionState], Union[None, Awaitable[None]]]


class SchedulerState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    BLOCKED = "blocked"
    PAUSED = "paused"
    STOPPED = "stopped"


class ReconnectionScheduler:
    """Drive detection cycles with bounded retries and fixed backoff.

    At most one cycle is in flight. Manual refreshes join a running cycle
    instead of starting another one; timer wake-ups during a cycle are
    dropped. After :meth:`teardown` nothing is mutated or published.
    """

    def __init__(
        self,
        detector: LayeredDetector,
        *,
        endpoints: Sequence[str] = ("/status", "/health"),
        rounds: int = 2,
        initial_delay: float = 2.0,
        endpoint_delay: float = 1.5,
        round_delay: float = 5.0,
        health_check_interval: float = 20.0,
        backoff_interval: float = 45.0,
        slow_backoff_after: int = 10,
        slow_backoff_interval: float = 90.0,
        system_log: SystemLog | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if rounds < 1:
            raise ValueError("rounds must be at least 1")
        if not endpoints:
            raise ValueError("At least one endpoint is required")
        self._detector = detector
        self._endpoints = tuple(endpoints)
        self._rounds = int(rounds)
        self._initial_delay = float(initial_delay)
        self._endpoint_delay = float(endpoint_delay)
        self._round_delay = float(round_delay)
        self._health_check_interval = float(health_check_interval)
        self._backoff_interval = float(backoff_interval)
        self._slow_backoff_after = int(slow_backoff_after)
        self._slow_backoff_interval = float(slow_backoff_interval)
        self._system_log = system_log
        self._logger = logger or logging.getLogger(__name__)
        self._listeners: list[ConnectionListener] = []
        self._status = SchedulerState.IDLE
        self._timer: ScheduledTask | None = None
        self._cycle: asyncio.Task[bool] | None = None
        self._consecutive_failures = 0
        self._cycles_started = 0
        self._started = False
        self._was_connected = False
        self._inactive = False
        self._paused = False
        detector.set_state_listener(self._on_detector_state)

    # ------------------------------ properties -----------------------------
    @property
    def status(self) -> SchedulerState:
        return self._status

    @property
    def state(self) -> ConnectionState:
        return self._detector.state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def cycles_started(self) -> int:
        return self._cycles_started

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def in_flight(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    @property
    def next_check_in(self) -> float | None:
        """Delay of the pending timer, if one is armed."""

        if self._timer is None or self._timer.done():
            return None
        return self._timer.delay

    # ------------------------------ operations -----------------------------
    def start(self) -> None:
        """Arm the first cycle after the initial delay."""

        if self._inactive:
            raise RuntimeError("Scheduler has been torn down")
        if self._started:
            return
        self._started = True
        self._journal("scheduler_started", "Connectivity monitoring started")
        self._arm(self._initial_delay)

    async def refresh(self) -> bool:
        """Run a cycle now, or join the one in flight; return whether connected."""

        if self._inactive:
            return False
        self._consecutive_failures = 0
        task = self._cycle
        if task is None or task.done():
            task = self._launch("manual refresh")
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return False
            raise

    def report_command_failure(self) -> None:
        """Re-probe after a control command failed."""

        if self._inactive or self.in_flight:
            return
        self._journal("command_failure", "Control command failed; re-checking the device")
        self._launch("command failure")

    def notify_permissions_changed(self) -> None:
        """Re-read the permission gate, resuming cycles when it now passes."""

        if self._inactive or self.in_flight or self._status is not SchedulerState.BLOCKED:
            return
        if self._permissions_granted():
            self._journal("permissions_granted", "Network permissions granted")
            self._launch("permissions granted")

    def pause(self) -> None:
        """Stop periodic checks; a cycle already in flight is allowed to finish."""

        if self._inactive or self._paused:
            return
        self._paused = True
        self._cancel_timer()
        if not self.in_flight:
            self._status = SchedulerState.PAUSED
        self._journal("scheduler_paused", "Connectivity monitoring paused")

    def resume(self) -> None:
        """Re-arm periodic checks after :meth:`pause`, starting after the initial delay."""

        if self._inactive or not self._paused:
            return
        self._paused = False
        if self._status is SchedulerState.PAUSED:
            self._status = SchedulerState.IDLE
        self._journal("scheduler_resumed", "Connectivity monitoring resumed")
        if not self.in_flight:
            self._arm(self._initial_delay)

    def subscribe(self, listener: ConnectionListener) -> Callable[[], None]:
        """Register *listener* for every published connection state."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def teardown(self) -> None:
        """Stop all activity; pending timers and the current cycle are cancelled."""

        if self._inactive:
            return
        self._inactive = True
        self._cancel_timer()
        if self._cycle is not None and not self._cycle.done():
            self._cycle.cancel()
        self._listeners.clear()
        self._status = SchedulerState.STOPPED
        self._journal("scheduler_stopped", "Connectivity monitoring stopped", force=True)

    async def aclose(self) -> None:
        """Tear down and wait for the cancelled cycle to unwind."""

        cycle = self._cycle
        self.teardown()
        if cycle is not None:
            try:
                await cycle
            except asyncio.CancelledError:
                pass
            except Exception:
                self._logger.exception("Detection cycle failed during teardown")

    # ----------------------------- implementation --------------------------
    def _arm(self, delay: float) -> None:
        self._cancel_timer()
        if self._paused:
            return
        self._timer = ScheduledTask(delay, self._on_timer, name="connectivity-timer")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if self._inactive or self._paused or self.in_flight:
            return
        if self._status is SchedulerState.BLOCKED and not self._permissions_granted():
            self._arm(self._backoff_interval)
            return
        self._launch("timer")

    def _permissions_granted(self) -> bool:
        try:
            return self._detector.has_permissions()
        except Exception:
            self._logger.exception("Permission check failed")
            return False

    def _launch(self, reason: str) -> asyncio.Task[bool]:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_cycle(reason), name="connectivity-cycle")
        self._cycle = task
        self._status = SchedulerState.PROBING
        return task

    async def _run_cycle(self, reason: str) -> bool:
        self._cancel_timer()
        self._cycles_started += 1
        self._logger.debug("Starting detection cycle (%s)", reason)
        connected = blocked = False
        try:
            connected, blocked = await self._run_rounds()
        except Exception:
            self._logger.exception("Detection cycle failed")
        finally:
            self._settle(connected=connected, blocked=blocked)
        return connected

    async def _run_rounds(self) -> tuple[bool, bool]:
        for round_index in range(self._rounds):
            if round_index:
                await asyncio.sleep(self._round_delay)
            for endpoint_index, endpoint in enumerate(self._endpoints):
                if endpoint_index:
                    await asyncio.sleep(self._endpoint_delay)
                if self._inactive:
                    return False, False
                state = await self._detector.detect(endpoint)
                if self._inactive:
                    return False, False
                if state.failure is FailureMode.PERMISSION_DENIED:
                    return False, True
                if state.detection_status is DetectionStatus.CONNECTED:
                    return True, False
                if state.failure is FailureMode.WRONG_NETWORK:
                    break
        return False, False

    def _settle(self, *, connected: bool, blocked: bool) -> None:
        if self._inactive:
            return
        was_connected, self._was_connected = self._was_connected, connected
        if blocked:
            self._status = SchedulerState.BLOCKED
            self._journal("blocked", "Detection blocked until network permissions are granted")
            delay = self._backoff_interval
        elif connected:
            if not was_connected:
                self._journal("connected", "Device connected", metadata=self._metadata())
            self._consecutive_failures = 0
            self._status = SchedulerState.CONNECTED
            delay = self._health_check_interval
        else:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self._slow_backoff_after:
                delay = self._slow_backoff_interval
            else:
                delay = self._backoff_interval
            self._status = SchedulerState.BACKOFF
            self._journal(
                "backoff",
                f"Device not available; retrying in {delay:g}s",
                metadata={**self._metadata(), "failures": self._consecutive_failures},
            )
        if self._paused:
            self._status = SchedulerState.PAUSED
            return
        self._arm(delay)

    def _metadata(self) -> dict[str, object | None]:
        state = self._detector.state
        return {
            "quality": state.connection_quality.value,
            "failure": state.failure.value if state.failure is not None else None,
            "error_kind": state.error_kind.value if state.error_kind is not None else None,
            "latency_ms": round(state.latency_ms, 1) if state.latency_ms is not None else None,
        }

    async def _on_detector_state(self, state: ConnectionState) -> None:
        if self._inactive:
            return
        for listener in list(self._listeners):
            try:
                result = listener(state)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                self._logger.exception("Connection listener failed")

    def _journal(
        self,
        event: str,
        message: str,
        *,
        metadata: dict[str, object | None] | None = None,
        force: bool = False,
    ) -> None:
        if self._system_log is None or (self._inactive and not force):
            return
        self._system_log.record("connectivity", event, message, metadata=metadata)


__all__ = ["ConnectionListener", "ReconnectionScheduler", "SchedulerState"]
