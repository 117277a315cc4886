"""Session lifecycle with an auditable event log and a live duration."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Protocol, Union

from .errors import NoActiveSession, SessionAlreadyActive, SessionRequired, SessionStateError
from .system_log import SystemLog

logger = logging.getLogger(__name__)

SESSION_STARTED = "Session Started"
SESSION_ENDED = "Session Ended"


@dataclass(frozen=True, slots=True)
class SessionEvent:
    """One timestamped entry of a session log."""

    timestamp: float
    kind: str
    title: str
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "kind": self.kind,
            "title": self.title,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class SessionData:
    """Snapshot of a session; the final snapshot never changes."""

    session_id: str
    start_time: float
    end_time: float | None = None
    duration: float = 0.0
    events: tuple[SessionEvent, ...] = field(default_factory=tuple)
    mode: str = "offline"

    @property
    def active(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "session_id": self.session_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": round(self.duration, 3),
            "events": [event.to_dict() for event in self.events],
            "mode": self.mode,
        }


class SessionExporter(Protocol):
    def export_session(self, session: SessionData) -> Union[None, Awaitable[Any]]:
        ...


SessionListener = Callable[[SessionData], Union[None, Awaitable[None]]]


class SessionManager:
    """Own the idle/active session state machine.

    Listeners registered with :meth:`subscribe` receive a fresh snapshot on
    every tick of the duration counter. Ended sessions are handed to the
    exporter in the background; a failing export is logged and leaves the
    session closed.
    """

    def __init__(
        self,
        *,
        exporter: SessionExporter | None = None,
        connectivity: Callable[[], bool] | None = None,
        tick_interval: float = 1.0,
        history_size: int = 20,
        system_log: SystemLog | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self._exporter = exporter
        self._connectivity = connectivity
        self._tick_interval = float(tick_interval)
        self._history: Deque[SessionData] = deque(maxlen=max(1, int(history_size)))
        self._system_log = system_log
        self._clock = clock
        self._listeners: list[SessionListener] = []
        self._force_unsubscribe: Callable[[], None] | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._exports: set[asyncio.Task[None]] = set()
        self._session_id: str | None = None
        self._start_time = 0.0
        self._start_mono = 0.0
        self._mode = "offline"
        self._events: list[SessionEvent] = []
        self._last: SessionData | None = None
        self._torn_down = False

    # ------------------------------ properties -----------------------------
    @property
    def session_active(self) -> bool:
        return self._session_id is not None

    @property
    def session_data(self) -> SessionData | None:
        """Live snapshot while active, else the last completed session."""

        if self._session_id is None:
            return self._last
        return self._snapshot()

    @property
    def history(self) -> list[SessionData]:
        return list(self._history)

    # ------------------------------ operations -----------------------------
    def start_session(self) -> SessionData:
        self._ensure_usable()
        if self._session_id is not None:
            raise SessionAlreadyActive("A session is already active")
        online = False
        if self._connectivity is not None:
            try:
                online = bool(self._connectivity())
            except Exception:
                logger.exception("Connectivity provider failed; starting offline")
        loop = asyncio.get_running_loop()
        self._session_id = uuid.uuid4().hex
        self._start_time = time.time()
        self._start_mono = self._clock()
        self._mode = "online" if online else "offline"
        self._events = []
        self._append(SESSION_STARTED, kind="session", detail=f"Mode: {self._mode}")
        self._ticker = loop.create_task(self._tick(), name="session-ticker")
        self._journal("session_started", "Session started", mode=self._mode)
        return self._snapshot()

    def end_session(self) -> SessionData:
        self._ensure_usable()
        if self._session_id is None:
            raise NoActiveSession("No session is active")
        exporter = self._exporter
        loop = asyncio.get_running_loop() if exporter is not None else None
        self._stop_ticker()
        self._append(SESSION_ENDED, kind="session")
        final = self._snapshot(end_time=time.time())
        self._session_id = None
        self._events = []
        self._last = final
        self._history.append(final)
        self._journal(
            "session_ended",
            "Session ended",
            duration=round(final.duration, 1),
            events=len(final.events),
        )
        if exporter is not None and loop is not None:
            task = loop.create_task(self._export(exporter, final), name="session-export")
            self._exports.add(task)
            task.add_done_callback(self._exports.discard)
        return final

    def add_session_alert(self, kind: str, title: str, detail: str = "") -> bool:
        """Append an event to the active session; returns ``False`` when idle."""

        self._ensure_usable()
        if self._session_id is None:
            logger.debug("Dropping session alert %r while idle", title)
            return False
        self._append(title, kind=kind, detail=detail)
        return True

    def require_session(self) -> None:
        if self._session_id is None:
            raise SessionRequired("An active session is required")

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def register_force_update_callback(self, callback: Callable[[], Any] | None) -> None:
        """Install the single legacy refresh callback, replacing any previous one."""

        if self._force_unsubscribe is not None:
            self._force_unsubscribe()
            self._force_unsubscribe = None
        if callback is None:
            return

        def _forward(_data: SessionData) -> Any:
            return callback()

        self._force_unsubscribe = self.subscribe(_forward)

    async def wait_for_exports(self) -> None:
        if self._exports:
            await asyncio.gather(*list(self._exports), return_exceptions=True)

    def teardown(self) -> None:
        """End an active session, then refuse further changes."""

        if self._torn_down:
            return
        if self._session_id is not None:
            self.end_session()
        self._stop_ticker()
        self._listeners.clear()
        self._force_unsubscribe = None
        self._torn_down = True

    async def aclose(self) -> None:
        self.teardown()
        await self.wait_for_exports()

    # ----------------------------- implementation --------------------------
    def _ensure_usable(self) -> None:
        if self._torn_down:
            raise SessionStateError("Session manager has been torn down")

    def _append(self, title: str, *, kind: str, detail: str = "") -> None:
        self._events.append(
            SessionEvent(timestamp=time.time(), kind=kind, title=title, detail=detail)
        )

    def _snapshot(self, *, end_time: float | None = None) -> SessionData:
        if self._session_id is None:
            raise NoActiveSession("No session is active")
        return SessionData(
            session_id=self._session_id,
            start_time=self._start_time,
            end_time=end_time,
            duration=max(0.0, self._clock() - self._start_mono),
            events=tuple(self._events),
            mode=self._mode,
        )

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            if self._torn_down or self._session_id is None:
                return
            snapshot = self._snapshot()
            for listener in list(self._listeners):
                try:
                    result = listener(snapshot)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception:
                    logger.exception("Session listener failed")

    async def _export(self, exporter: SessionExporter, session: SessionData) -> None:
        try:
            result = exporter.export_session(session)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            logger.exception("Session export failed for %s", session.session_id)
            self._journal(
                "export_failed",
                "Session export failed",
                session_id=session.session_id,
                error=str(exc),
            )

    def _journal(self, event: str, message: str, **metadata: object) -> None:
        if self._system_log is None:
            return
        self._system_log.record("session", event, message, metadata=metadata)


__all__ = [
    "NoActiveSession",
    "SESSION_ENDED",
    "SESSION_STARTED",
    "SessionAlreadyActive",
    "SessionData",
    "SessionEvent",
    "SessionExporter",
    "SessionListener",
    "SessionManager",
    "SessionRequired",
    "SessionStateError",
]
