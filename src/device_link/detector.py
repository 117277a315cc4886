"""Layered reachability detection for the device."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from .errors import ErrorKind
from .network import NetworkInfo, NetworkInfoError, NetworkInfoProvider, PermissionGate
from .probe import JsonPayload, Payload, ProbeResult, TextPayload, TransportProber

logger = logging.getLogger(__name__)

READY_KEYS = frozenset(
    {"status", "state", "ready", "direction", "brake", "speed", "sessionActive", "device"}
)
READY_TOKENS = ("pong", "ok", "ready", "device", "status")


class ConnectionQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    NONE = "none"


class DetectionStatus(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class FailureMode(str, Enum):
    WRONG_NETWORK = "wrong_network"
    UNREACHABLE = "unreachable"
    NOT_READY = "not_ready"
    PERMISSION_DENIED = "permission_denied"


@dataclass(frozen=True, slots=True)
class ConnectionState:
    """Atomic result of one detection cycle."""

    is_link_ok: bool = False
    is_reachable: bool = False
    is_responding: bool = False
    connection_quality: ConnectionQuality = ConnectionQuality.NONE
    detection_status: DetectionStatus = DetectionStatus.IDLE
    failure: FailureMode | None = None
    error_kind: ErrorKind | None = None
    detail: str | None = None
    latency_ms: float | None = None
    network_info: NetworkInfo | None = None
    endpoint: str | None = None
    checked_at: float | None = None
    last_successful_connection: float | None = None
    connection_attempts: int = 0

    @property
    def is_connected(self) -> bool:
        return self.detection_status is DetectionStatus.CONNECTED

    def to_dict(self) -> dict[str, object | None]:
        return {
            "is_link_ok": self.is_link_ok,
            "is_reachable": self.is_reachable,
            "is_responding": self.is_responding,
            "connection_quality": self.connection_quality.value,
            "detection_status": self.detection_status.value,
            "failure": self.failure.value if self.failure is not None else None,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "detail": self.detail,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "network_info": self.network_info.to_dict() if self.network_info else None,
            "endpoint": self.endpoint,
            "checked_at": self.checked_at,
            "last_successful_connection": self.last_successful_connection,
            "connection_attempts": self.connection_attempts,
        }


StateListener = Callable[[ConnectionState], Union[None, Awaitable[None]]]


def is_ready_payload(payload: Payload | None) -> bool:
    """Return ``True`` when *payload* looks like the device's status answer."""

    if isinstance(payload, JsonPayload):
        value: Any = payload.value
        if isinstance(value, dict):
            return any(key in value for key in READY_KEYS)
        if isinstance(value, str):
            return _has_token(value)
        return False
    if isinstance(payload, TextPayload):
        return _has_token(payload.text)
    return False


def _has_token(text: str) -> bool:
    lowered = text.lower()
    return any(token in lowered for token in READY_TOKENS)


class LayeredDetector:
    """Check link, transport and application layers in order.

    Each layer runs only when the previous one passed. The outcome of a cycle
    is published as a single immutable :class:`ConnectionState`.
    """

    def __init__(
        self,
        prober: TransportProber,
        network: NetworkInfoProvider,
        permissions: PermissionGate,
        *,
        expected_ssid: str,
        ssid_prefix: str | None = None,
        transport_endpoint: str = "/ping",
        application_endpoint: str = "/status",
        high_latency_ms: float = 2000.0,
        on_state: StateListener | None = None,
    ) -> None:
        self._prober = prober
        self._network = network
        self._permissions = permissions
        self._expected_ssid = expected_ssid
        self._ssid_prefix = ssid_prefix
        self._transport_endpoint = transport_endpoint
        self._application_endpoint = application_endpoint
        self._high_latency_ms = high_latency_ms
        self._on_state = on_state
        self._state = ConnectionState()
        self._attempts = 0
        self._last_success: float | None = None

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection_attempts(self) -> int:
        return self._attempts

    @property
    def last_successful_connection(self) -> float | None:
        return self._last_success

    def set_state_listener(self, listener: StateListener | None) -> None:
        self._on_state = listener

    # ------------------------------ operations -----------------------------
    def has_permissions(self) -> bool:
        return bool(self._permissions.has_required_permissions())

    async def detect(self, application_endpoint: str | None = None) -> ConnectionState:
        """Run one detection cycle and return the published snapshot."""

        self._attempts += 1
        await self._publish(
            replace(
                self._state,
                detection_status=DetectionStatus.CHECKING,
                connection_attempts=self._attempts,
            )
        )
        endpoint = application_endpoint or self._application_endpoint
        try:
            if self.has_permissions():
                state = await self._run_layers(endpoint)
            else:
                state = self._finish(
                    detection_status=DetectionStatus.ERROR,
                    failure=FailureMode.PERMISSION_DENIED,
                    error_kind=ErrorKind.PERMISSION_DENIED,
                    detail="Network permissions have not been granted",
                )
        except Exception as exc:
            logger.exception("Detection cycle failed unexpectedly")
            state = self._finish(
                detection_status=DetectionStatus.ERROR,
                endpoint=endpoint,
                detail=str(exc) or exc.__class__.__name__,
            )
        await self._publish(state)
        return state

    # ----------------------------- implementation --------------------------
    async def _run_layers(self, endpoint: str) -> ConnectionState:
        loop = asyncio.get_running_loop()
        try:
            info: NetworkInfo | None = await loop.run_in_executor(
                None, self._network.get_network_info
            )
        except NetworkInfoError as exc:
            logger.warning("Unable to read network information: %s", exc)
            return self._finish(
                detection_status=DetectionStatus.DISCONNECTED,
                failure=FailureMode.WRONG_NETWORK,
                detail=str(exc),
            )
        if not self._link_ok(info):
            return self._finish(
                detection_status=DetectionStatus.DISCONNECTED,
                failure=FailureMode.WRONG_NETWORK,
                network_info=info,
                detail=self._link_detail(info),
            )

        transport = await self._prober.probe(self._transport_endpoint)
        if not transport.ok:
            return self._finish(
                is_link_ok=True,
                connection_quality=ConnectionQuality.POOR,
                detection_status=DetectionStatus.DISCONNECTED,
                failure=FailureMode.UNREACHABLE,
                error_kind=transport.error_kind,
                detail=transport.error,
                latency_ms=transport.latency_ms,
                network_info=info,
                endpoint=self._transport_endpoint,
            )

        application = await self._prober.probe(endpoint)
        latency = max(transport.latency_ms, application.latency_ms)
        responding, error_kind, detail = self._application_outcome(application)
        if not responding or latency > self._high_latency_ms:
            quality = ConnectionQuality.GOOD
        else:
            quality = ConnectionQuality.EXCELLENT
        return self._finish(
            is_link_ok=True,
            is_reachable=True,
            is_responding=responding,
            connection_quality=quality,
            detection_status=(
                DetectionStatus.CONNECTED if responding else DetectionStatus.DISCONNECTED
            ),
            failure=None if responding else FailureMode.NOT_READY,
            error_kind=error_kind,
            detail=detail,
            latency_ms=latency,
            network_info=info,
            endpoint=endpoint,
        )

    def _link_ok(self, info: NetworkInfo | None) -> bool:
        if info is None or not info.is_wifi_enabled or not info.ip_address:
            return False
        ssid = info.ssid or ""
        if ssid == self._expected_ssid:
            return True
        return bool(self._ssid_prefix) and ssid.startswith(self._ssid_prefix)

    def _link_detail(self, info: NetworkInfo | None) -> str:
        if info is None or not info.is_wifi_enabled:
            return "Wi-Fi is disabled"
        if not info.ip_address:
            return "No IP address assigned"
        return f"Connected to {info.ssid or 'an unknown network'} instead of {self._expected_ssid}"

    @staticmethod
    def _application_outcome(
        result: ProbeResult,
    ) -> tuple[bool, ErrorKind | None, str | None]:
        if not result.ok:
            return False, result.error_kind, result.error
        if is_ready_payload(result.payload):
            return True, None, None
        return False, ErrorKind.MALFORMED_RESPONSE, "Unrecognised status response"

    def _finish(self, **fields: Any) -> ConnectionState:
        now = time.time()
        if fields.get("detection_status") is DetectionStatus.CONNECTED:
            self._last_success = now
        return ConnectionState(
            checked_at=now,
            last_successful_connection=self._last_success,
            connection_attempts=self._attempts,
            **fields,
        )

    async def _publish(self, state: ConnectionState) -> None:
        self._state = state
        if self._on_state is None:
            return
        try:
            result = self._on_state(state)
            if asyncio.iscoroutine(result):
                await result
        except Exception:  # pragma: no cover - listener faults are logged only
            logger.exception("Connection state listener failed")


__all__ = [
    "ConnectionQuality",
    "ConnectionState",
    "DetectionStatus",
    "FailureMode",
    "LayeredDetector",
    "READY_KEYS",
    "READY_TOKENS",
    "is_ready_payload",
]
