"""Direction, brake and speed commands sent to the device."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping

from .detector import ConnectionQuality
from .errors import NoActiveSession
from .probe import JsonPayload, Payload, ProbeResult, TransportProber
from .scheduler import ReconnectionScheduler
from .session import SessionData, SessionManager

logger = logging.getLogger(__name__)

DIRECTIONS = ("none", "forward", "reverse")
BRAKES = ("none", "pull", "push")
EMERGENCY_TIMEOUT_S = 3.0
STATUS_TIMEOUT_S = 5.0
RESET_TIMEOUT_S = 10.0


def _normalise_choice(value: object, allowed: tuple[str, ...], name: str) -> str:
    text = value.strip().lower() if isinstance(value, str) else ""
    if text not in allowed:
        raise ValueError(f"{name} must be one of: {', '.join(allowed)}")
    return text


def _normalise_speed(value: object) -> int:
    if isinstance(value, bool):
        raise ValueError("Speed must be an integer between 0 and 100")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("Speed must be an integer between 0 and 100")
        value = int(value)
    if not isinstance(value, int):
        try:
            value = int(str(value).strip())
        except ValueError as exc:
            raise ValueError("Speed must be an integer between 0 and 100") from exc
    if not 0 <= value <= 100:
        raise ValueError("Speed must be an integer between 0 and 100")
    return value


def parse_device_status(payload: Payload | None) -> dict[str, object]:
    """Return the control fields reported in a ``/status`` answer.

    Unknown or malformed values are skipped so a partial answer still
    updates the fields it carries.
    """

    if not isinstance(payload, JsonPayload) or not isinstance(payload.value, dict):
        return {}
    values = payload.value
    updates: dict[str, object] = {}
    for name, allowed in (("direction", DIRECTIONS), ("brake", BRAKES)):
        if values.get(name) is None:
            continue
        try:
            updates[name] = _normalise_choice(values[name], allowed, name)
        except ValueError:
            logger.debug("Ignoring device %s value %r", name, values[name])
    if values.get("speed") is not None:
        try:
            updates["speed"] = _normalise_speed(values["speed"])
        except ValueError:
            logger.debug("Ignoring device speed value %r", values["speed"])
    return updates


@dataclass(slots=True)
class DeviceControlState:
    direction: str = "none"
    brake: str = "none"
    speed: int = 0
    session_active: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "direction": self.direction,
            "brake": self.brake,
            "speed": self.speed,
            "session_active": self.session_active,
        }


class DeviceController:
    """Apply control changes locally and forward them to the device.

    Commands go out one at a time. Any failed command asks the scheduler to
    re-check the device. While a session started here is active and the
    device is connected, the device's own ``/status`` is polled so local
    state follows changes made on the device.
    """

    def __init__(
        self,
        prober: TransportProber,
        scheduler: ReconnectionScheduler,
        session: SessionManager,
        *,
        command_timeout: float | None = None,
        status_interval: float = 10.0,
    ) -> None:
        if status_interval <= 0:
            raise ValueError("status_interval must be positive")
        self._prober = prober
        self._scheduler = scheduler
        self._session = session
        self._command_timeout = command_timeout
        self._status_interval = float(status_interval)
        self._direction = "none"
        self._brake = "none"
        self._speed = 0
        self._lock = asyncio.Lock()
        self._status_task: asyncio.Task[None] | None = None

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> DeviceControlState:
        return DeviceControlState(
            direction=self._direction,
            brake=self._brake,
            speed=self._speed,
            session_active=self._session.session_active,
        )

    @property
    def is_connected(self) -> bool:
        return self._scheduler.state.is_connected

    @property
    def connection_quality(self) -> ConnectionQuality:
        return self._scheduler.state.connection_quality

    # ------------------------------ operations -----------------------------
    async def apply(
        self,
        direction: str | None = None,
        brake: str | None = None,
        speed: object | None = None,
    ) -> DeviceControlState:
        """Validate, record and dispatch the requested changes."""

        self._session.require_session()
        updates: list[tuple[str, object]] = []
        if direction is not None:
            updates.append(("direction", _normalise_choice(direction, DIRECTIONS, "Direction")))
        if brake is not None:
            updates.append(("brake", _normalise_choice(brake, BRAKES, "Brake")))
        if speed is not None:
            updates.append(("speed", _normalise_speed(speed)))
        if not updates:
            return self.state

        online = self.is_connected
        mode = "online" if online else "offline"
        for field_name, value in updates:
            previous = getattr(self, f"_{field_name}")
            setattr(self, f"_{field_name}", value)
            if previous != value:
                self._log(
                    "control",
                    f"{field_name.capitalize()} changed",
                    f"{previous} -> {value} ({mode})",
                )

        if not online:
            self._log("warning", "Offline mode", "Changes kept locally; device not connected")
            return self.state

        failed = False
        async with self._lock:
            for field_name, value in updates:
                path, params = self._command(field_name, value)
                result = await self._send(path, params, self._command_timeout)
                if result.ok:
                    self._log("command", f"{field_name.capitalize()} sent", _describe(params))
                else:
                    failed = True
                    self._log(
                        "error",
                        f"{field_name.capitalize()} command failed",
                        _failure(result),
                    )
        if failed:
            self._scheduler.report_command_failure()
        return self.state

    async def emergency_stop(self) -> DeviceControlState:
        """Halt the motor; the brake position is left as it is."""

        self._speed = 0
        self._direction = "none"
        self._log("emergency", "Emergency stop", f"Brake preserved ({self._brake})")
        if not self.is_connected:
            self._log("emergency", "Local stop applied", "Device not connected")
            return self.state
        failed = False
        async with self._lock:
            for path, params in (("/speed", {"value": 0}), ("/direction", {"state": "none"})):
                result = await self._send(path, params, EMERGENCY_TIMEOUT_S)
                failed = failed or not result.ok
        if failed:
            self._log("emergency", "Emergency commands failed", "Local stop applied")
            self._scheduler.report_command_failure()
        else:
            self._log("emergency", "Emergency commands sent", "Speed 0, direction none")
        return self.state

    async def sync_status(self) -> bool:
        """Adopt the direction, brake and speed the device reports.

        Returns ``True`` when the device answered with usable values.
        """

        if not self.is_connected:
            return False
        async with self._lock:
            result = await self._send("/status", None, STATUS_TIMEOUT_S)
        if not result.ok:
            return False
        updates = parse_device_status(result.payload)
        for field_name, value in updates.items():
            setattr(self, f"_{field_name}", value)
        return bool(updates)

    async def start_session(self) -> SessionData:
        """Open a session and announce it to the device when connected."""

        started = self._session.start_session()
        if self.is_connected:
            async with self._lock:
                result = await self._send("/startSession", None, self._command_timeout)
            if result.ok:
                self._log("system", "Device session started", "Device acknowledged the session")
                await self.sync_status()
            else:
                self._log("error", "Device session start failed", _failure(result))
                self._scheduler.report_command_failure()
        self._start_status_sync()
        return self._session.session_data or started

    async def end_session(self) -> SessionData:
        """Close the session on the device and locally, then reset the controls."""

        if not self._session.session_active:
            raise NoActiveSession("No session is active")
        self._stop_status_sync()
        if (self._direction, self._brake, self._speed) != ("none", "none", 0):
            self._log("safety", "Controls reset", "Direction none, brake none, speed 0")
        if self.is_connected:
            async with self._lock:
                result = await self._send("/endSession", None, self._command_timeout)
            if result.ok:
                self._log("system", "Device session ended", "Session data saved on the device")
            else:
                self._log("warning", "Device session end failed", "Session saved locally only")
                self._scheduler.report_command_failure()
        final = self._session.end_session()
        self.reset_controls()
        return final

    async def reset_device(self) -> DeviceControlState:
        """Restart the device; an open session is ended and the brake is kept."""

        brake = self._brake
        if self._session.session_active:
            self._log("emergency", "Device reset", f"Brake preserved ({brake})")
            await self.end_session()
        self._direction = "none"
        self._speed = 0
        self._brake = brake
        if self.is_connected:
            async with self._lock:
                result = await self._send("/reset", None, RESET_TIMEOUT_S)
            # the device drops the connection while restarting
            logger.info("Reset sent to device (answered: %s); brake kept at %s", result.ok, brake)
        return self.state

    def reset_controls(self) -> None:
        self._stop_status_sync()
        self._direction = "none"
        self._brake = "none"
        self._speed = 0

    async def aclose(self) -> None:
        task = self._status_task
        self._stop_status_sync()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ----------------------------- implementation --------------------------
    @staticmethod
    def _command(field_name: str, value: object) -> tuple[str, dict[str, object]]:
        if field_name == "direction":
            return "/direction", {"state": value}
        if field_name == "brake":
            return "/brake", {"action": value, "state": "off" if value == "none" else "on"}
        return "/speed", {"value": value}

    async def _send(
        self, path: str, params: Mapping[str, object] | None, timeout: float | None
    ) -> ProbeResult:
        result = await self._prober.probe(path, timeout=timeout, params=params)
        if not result.ok:
            logger.warning("Device command %s failed: %s", path, result.error)
        return result

    def _start_status_sync(self) -> None:
        self._stop_status_sync()
        loop = asyncio.get_running_loop()
        self._status_task = loop.create_task(self._status_loop(), name="device-status-sync")

    def _stop_status_sync(self) -> None:
        if self._status_task is not None:
            self._status_task.cancel()
            self._status_task = None

    async def _status_loop(self) -> None:
        while self._session.session_active:
            await asyncio.sleep(self._status_interval)
            if not self._session.session_active:
                return
            try:
                await self.sync_status()
            except Exception:
                logger.exception("Device status sync failed")

    def _log(self, kind: str, title: str, detail: str = "") -> None:
        if self._session.session_active:
            self._session.add_session_alert(kind, title, detail)


def _describe(params: Mapping[str, object]) -> str:
    return ", ".join(f"{key}={value}" for key, value in params.items())


def _failure(result: ProbeResult) -> str:
    return result.error or (result.error_kind.value if result.error_kind else "")


__all__ = [
    "BRAKES",
    "DIRECTIONS",
    "DeviceControlState",
    "DeviceController",
    "parse_device_status",
]
