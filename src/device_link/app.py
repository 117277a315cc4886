"""FastAPI application exposing the device link to a presentation layer."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .config import ConfigManager
from .diagnostics import collect_diagnostics
from .errors import SessionStateError
from .link import DeviceLink
from .system_log import SystemLog
from .version import APP_VERSION


class AlertPayload(BaseModel):
    title: str
    kind: str = "info"
    detail: str = ""


class ControlPayload(BaseModel):
    direction: str | None = None
    brake: str | None = None
    # validated by the controller so bad values map to 400
    speed: Any = None


def _env_overrides(logger: logging.Logger) -> dict[str, dict[str, object]]:
    overrides: dict[str, dict[str, object]] = {}
    host = os.getenv("DEVICE_LINK_HOST")
    if host:
        overrides.setdefault("device", {})["host"] = host
    ssid = os.getenv("DEVICE_LINK_SSID")
    if ssid:
        overrides.setdefault("device", {})["expected_ssid"] = ssid
    timeout = os.getenv("DEVICE_LINK_PROBE_TIMEOUT")
    if timeout:
        try:
            overrides.setdefault("probe", {})["timeout_s"] = float(timeout)
        except ValueError:
            logger.warning("Invalid DEVICE_LINK_PROBE_TIMEOUT value %r; ignoring", timeout)
    return overrides


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    link: DeviceLink | None = None,
) -> FastAPI:
    app = FastAPI(title="Device Link", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    overrides = _env_overrides(logger)
    if overrides:
        try:
            config_manager.apply_overrides(overrides)
        except ValueError as exc:
            logger.warning("Ignoring invalid environment overrides: %s", exc)

    if link is None:
        link = DeviceLink(
            config_manager.get_settings(),
            system_log=SystemLog(config_path.with_name("device_link_log.jsonl")),
        )
    device_link = link

    def _conflict(exc: SessionStateError) -> HTTPException:
        return HTTPException(status_code=409, detail=str(exc))

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        await device_link.init()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await device_link.teardown()

    @app.get("/api/connection")
    async def get_connection() -> dict[str, object | None]:
        return device_link.connection_state.to_dict()

    @app.post("/api/connection/refresh")
    async def refresh_connection() -> dict[str, object]:
        connected = await device_link.refresh_connection()
        return {"connected": connected, "state": device_link.connection_state.to_dict()}

    def _monitoring() -> dict[str, object]:
        scheduler = device_link.scheduler
        return {
            "paused": scheduler.paused,
            "status": scheduler.status.value,
            "next_check_in": scheduler.next_check_in,
        }

    @app.post("/api/connection/pause")
    async def pause_monitoring() -> dict[str, object]:
        device_link.pause_monitoring()
        return _monitoring()

    @app.post("/api/connection/resume")
    async def resume_monitoring() -> dict[str, object]:
        device_link.resume_monitoring()
        return _monitoring()

    @app.get("/api/session")
    async def get_session() -> dict[str, object]:
        data = device_link.session_data
        return {
            "active": device_link.session_active,
            "session": data.to_dict() if data is not None else None,
        }

    @app.post("/api/session/start")
    async def start_session() -> dict[str, object | None]:
        try:
            data = await device_link.controller.start_session()
        except SessionStateError as exc:
            raise _conflict(exc) from exc
        return data.to_dict()

    @app.post("/api/session/end")
    async def end_session() -> dict[str, object | None]:
        try:
            data = await device_link.controller.end_session()
        except SessionStateError as exc:
            raise _conflict(exc) from exc
        return data.to_dict()

    @app.post("/api/session/alerts")
    async def add_alert(payload: AlertPayload) -> dict[str, bool]:
        try:
            recorded = device_link.add_session_alert(payload.kind, payload.title, payload.detail)
        except SessionStateError as exc:
            raise _conflict(exc) from exc
        return {"recorded": recorded}

    @app.get("/api/sessions")
    async def list_sessions() -> dict[str, object]:
        history = device_link.session.history
        return {"sessions": [item.to_dict() for item in reversed(history)]}

    @app.get("/api/control")
    async def get_control() -> dict[str, object]:
        return device_link.controller.state.to_dict()

    @app.post("/api/control")
    async def apply_control(payload: ControlPayload) -> dict[str, object]:
        try:
            state = await device_link.controller.apply(
                direction=payload.direction,
                brake=payload.brake,
                speed=payload.speed,
            )
        except SessionStateError as exc:
            raise _conflict(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return state.to_dict()

    @app.post("/api/control/emergency-stop")
    async def emergency_stop() -> dict[str, object]:
        state = await device_link.controller.emergency_stop()
        return state.to_dict()

    @app.post("/api/control/reset")
    async def reset_device() -> dict[str, object]:
        state = await device_link.controller.reset_device()
        return state.to_dict()

    @app.post("/api/control/sync")
    async def sync_status() -> dict[str, object]:
        synced = await device_link.controller.sync_status()
        return {"synced": synced, "state": device_link.controller.state.to_dict()}

    @app.get("/api/diagnostics")
    async def get_diagnostics() -> dict[str, object]:
        try:
            return collect_diagnostics(device_link)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Diagnostics collection failed")
            raise HTTPException(status_code=500, detail="Unable to collect diagnostics") from exc

    @app.get("/api/log")
    async def get_log(limit: int = 100, category: str | None = None) -> dict[str, object]:
        journal = device_link.system_log
        if journal is None:
            return {"entries": []}
        entries = await run_in_threadpool(journal.tail, limit, category=category)
        return {"entries": [entry.to_dict() for entry in reversed(entries)]}

    @app.get("/api/config")
    async def get_config() -> dict[str, object]:
        return device_link.settings.to_dict()

    return app


__all__ = ["create_app"]
