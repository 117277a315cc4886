"""The owned core object tying detection, scheduling and sessions together."""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from .config import DEFAULT_SETTINGS, DeviceLinkSettings
from .control import DeviceController
from .detector import ConnectionState, LayeredDetector
from .export import SessionFileExporter
from .network import (
    NetworkInfoProvider,
    NMCLINetworkInfoProvider,
    PermissionGate,
    StaticPermissionGate,
)
from .probe import ProbeHistory, TransportProber
from .scheduler import ConnectionListener, ReconnectionScheduler
from .session import SessionData, SessionExporter, SessionListener, SessionManager
from .system_log import SystemLog

logger = logging.getLogger(__name__)

_DEFAULT = object()


class DeviceLink:
    """Build and own every collaborator for one device.

    Nothing runs until :meth:`init` is awaited on a running loop, and
    :meth:`teardown` stops timers, ends an open session and closes the HTTP
    client.
    """

    def __init__(
        self,
        settings: DeviceLinkSettings = DEFAULT_SETTINGS,
        *,
        network: NetworkInfoProvider | None = None,
        permissions: PermissionGate | None = None,
        exporter: SessionExporter | None | object = _DEFAULT,
        system_log: SystemLog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._system_log = system_log
        self._permissions = permissions or StaticPermissionGate(True)
        self._prober = TransportProber(
            settings.device.base_url,
            timeout=settings.probe.timeout_s,
            history=ProbeHistory(settings.probe.history_size),
            transport=transport,
        )
        self._detector = LayeredDetector(
            self._prober,
            network or NMCLINetworkInfoProvider(),
            self._permissions,
            expected_ssid=settings.device.expected_ssid,
            ssid_prefix=settings.device.ssid_prefix,
            transport_endpoint=settings.probe.transport_endpoint,
            application_endpoint=settings.probe.application_endpoints[0],
            high_latency_ms=settings.probe.high_latency_ms,
        )
        timing = settings.scheduler
        self._scheduler = ReconnectionScheduler(
            self._detector,
            endpoints=settings.probe.application_endpoints,
            rounds=timing.rounds,
            initial_delay=timing.initial_delay_s,
            endpoint_delay=timing.endpoint_delay_s,
            round_delay=timing.round_delay_s,
            health_check_interval=timing.health_check_interval_s,
            backoff_interval=timing.backoff_interval_s,
            slow_backoff_after=timing.slow_backoff_after,
            slow_backoff_interval=timing.slow_backoff_interval_s,
            system_log=system_log,
        )
        if exporter is _DEFAULT:
            exporter = SessionFileExporter(settings.session.export_dir)
        self._session = SessionManager(
            exporter=exporter,  # type: ignore[arg-type]
            connectivity=lambda: self.is_connected,
            tick_interval=settings.session.tick_interval_s,
            history_size=settings.session.history_size,
            system_log=system_log,
        )
        self._controller = DeviceController(
            self._prober,
            self._scheduler,
            self._session,
            status_interval=settings.session.status_sync_interval_s,
        )
        self._initialised = False
        self._closed = False

    # ------------------------------ properties -----------------------------
    @property
    def settings(self) -> DeviceLinkSettings:
        return self._settings

    @property
    def prober(self) -> TransportProber:
        return self._prober

    @property
    def detector(self) -> LayeredDetector:
        return self._detector

    @property
    def scheduler(self) -> ReconnectionScheduler:
        return self._scheduler

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def controller(self) -> DeviceController:
        return self._controller

    @property
    def permissions(self) -> PermissionGate:
        return self._permissions

    @property
    def system_log(self) -> SystemLog | None:
        return self._system_log

    @property
    def connection_state(self) -> ConnectionState:
        return self._detector.state

    @property
    def is_connected(self) -> bool:
        return self._detector.state.is_connected

    @property
    def session_data(self) -> SessionData | None:
        return self._session.session_data

    @property
    def session_active(self) -> bool:
        return self._session.session_active

    # ------------------------------ lifecycle ------------------------------
    async def init(self) -> None:
        """Start connectivity monitoring."""

        if self._closed:
            raise RuntimeError("DeviceLink has been torn down")
        if self._initialised:
            return
        self._initialised = True
        self._scheduler.start()
        logger.info("Monitoring device at %s", self._settings.device.base_url)
        if self._system_log is not None:
            self._system_log.record(
                "system",
                "link_started",
                f"Monitoring {self._settings.device.base_url}",
                metadata={"ssid": self._settings.device.expected_ssid},
            )

    async def teardown(self) -> None:
        """Stop monitoring, end any open session and release the HTTP client."""

        if self._closed:
            return
        self._closed = True
        await self._controller.aclose()
        await self._session.aclose()
        await self._scheduler.aclose()
        await self._prober.aclose()
        if self._system_log is not None:
            self._system_log.record("system", "link_stopped", "Device link stopped")

    # ------------------------------ operations -----------------------------
    def start_session(self) -> SessionData:
        return self._session.start_session()

    def end_session(self) -> SessionData:
        final = self._session.end_session()
        self._controller.reset_controls()
        return final

    def add_session_alert(self, kind: str, title: str, detail: str = "") -> bool:
        return self._session.add_session_alert(kind, title, detail)

    async def refresh_connection(self) -> bool:
        return await self._scheduler.refresh()

    def register_force_update_callback(self, callback: Callable[[], Any] | None) -> None:
        self._session.register_force_update_callback(callback)

    def subscribe_session(self, listener: SessionListener) -> Callable[[], None]:
        return self._session.subscribe(listener)

    def subscribe_connection(self, listener: ConnectionListener) -> Callable[[], None]:
        return self._scheduler.subscribe(listener)

    def notify_permissions_changed(self) -> None:
        self._scheduler.notify_permissions_changed()

    def pause_monitoring(self) -> None:
        """Suspend periodic checks, e.g. while the host app is in the background."""

        self._scheduler.pause()

    def resume_monitoring(self) -> None:
        self._scheduler.resume()


__all__ = ["DeviceLink"]
