"""Configuration management for the device link core."""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Sequence

DEFAULT_DEVICE_HOST = "192.168.4.1"
DEFAULT_DEVICE_PORT = 80
DEFAULT_EXPECTED_SSID = "AEROSPIN CONTROL"
DEFAULT_SSID_PREFIX = "AEROSPIN"


def _coerce_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be numeric")
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(result):
        raise ValueError(f"{name} must be a finite value")
    return result


def _coerce_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _normalise_endpoint(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Endpoints must be non-empty strings")
    text = value.strip()
    if not text.startswith("/"):
        text = "/" + text
    return text


@dataclass(frozen=True, slots=True)
class DeviceSettings:
    """Where the device lives and which network it hosts."""

    host: str = DEFAULT_DEVICE_HOST
    port: int = DEFAULT_DEVICE_PORT
    expected_ssid: str = DEFAULT_EXPECTED_SSID
    ssid_prefix: str | None = DEFAULT_SSID_PREFIX

    def __post_init__(self) -> None:
        host = self.host.strip() if isinstance(self.host, str) else ""
        if not host:
            raise ValueError("Device host must be a non-empty string")
        port = _coerce_int(self.port, "Device port")
        if port < 1 or port > 65535:
            raise ValueError("Device port must be between 1 and 65535")
        ssid = self.expected_ssid.strip() if isinstance(self.expected_ssid, str) else ""
        if not ssid:
            raise ValueError("Expected SSID must be a non-empty string")
        prefix = self.ssid_prefix.strip() if isinstance(self.ssid_prefix, str) else ""
        object.__setattr__(self, "host", host)
        object.__setattr__(self, "port", port)
        object.__setattr__(self, "expected_ssid", ssid)
        object.__setattr__(self, "ssid_prefix", prefix or None)

    @property
    def base_url(self) -> str:
        if self.port == 80:
            return f"http://{self.host}"
        return f"http://{self.host}:{self.port}"

    def to_dict(self) -> dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "expected_ssid": self.expected_ssid,
            "ssid_prefix": self.ssid_prefix,
        }


@dataclass(frozen=True, slots=True)
class ProbeSettings:
    """Timeouts and endpoints used when probing the device."""

    timeout_s: float = 30.0
    transport_endpoint: str = "/ping"
    application_endpoints: tuple[str, ...] = ("/status", "/health")
    high_latency_ms: float = 2000.0
    history_size: int = 50

    def __post_init__(self) -> None:
        timeout = _coerce_float(self.timeout_s, "Probe timeout")
        if timeout <= 0:
            raise ValueError("Probe timeout must be positive")
        threshold = _coerce_float(self.high_latency_ms, "High latency threshold")
        if threshold <= 0:
            raise ValueError("High latency threshold must be positive")
        history = _coerce_int(self.history_size, "Probe history size")
        if history < 1:
            raise ValueError("Probe history size must be at least 1")
        if isinstance(self.application_endpoints, str):
            raise ValueError("Application endpoints must be a sequence of paths")
        endpoints = tuple(_normalise_endpoint(item) for item in self.application_endpoints)
        if not endpoints:
            raise ValueError("At least one application endpoint is required")
        object.__setattr__(self, "timeout_s", timeout)
        object.__setattr__(self, "transport_endpoint", _normalise_endpoint(self.transport_endpoint))
        object.__setattr__(self, "application_endpoints", endpoints)
        object.__setattr__(self, "high_latency_ms", threshold)
        object.__setattr__(self, "history_size", history)

    def to_dict(self) -> dict[str, object]:
        return {
            "timeout_s": self.timeout_s,
            "transport_endpoint": self.transport_endpoint,
            "application_endpoints": list(self.application_endpoints),
            "high_latency_ms": self.high_latency_ms,
            "history_size": self.history_size,
        }


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    """Retry rounds, delays and re-check intervals for the scheduler."""

    rounds: int = 2
    initial_delay_s: float = 2.0
    endpoint_delay_s: float = 1.5
    round_delay_s: float = 5.0
    health_check_interval_s: float = 20.0
    backoff_interval_s: float = 45.0
    slow_backoff_after: int = 10
    slow_backoff_interval_s: float = 90.0

    def __post_init__(self) -> None:
        rounds = _coerce_int(self.rounds, "Retry rounds")
        if rounds < 1:
            raise ValueError("Retry rounds must be at least 1")
        slow_after = _coerce_int(self.slow_backoff_after, "Slow backoff threshold")
        if slow_after < 1:
            raise ValueError("Slow backoff threshold must be at least 1")
        object.__setattr__(self, "rounds", rounds)
        object.__setattr__(self, "slow_backoff_after", slow_after)
        for name in (
            "initial_delay_s",
            "endpoint_delay_s",
            "round_delay_s",
            "health_check_interval_s",
            "backoff_interval_s",
            "slow_backoff_interval_s",
        ):
            value = _coerce_float(getattr(self, name), name.replace("_", " "))
            if value < 0:
                raise ValueError(f"{name} must not be negative")
            object.__setattr__(self, name, value)
        if self.slow_backoff_interval_s < self.backoff_interval_s:
            raise ValueError("Slow backoff interval must not be shorter than the backoff interval")

    def to_dict(self) -> dict[str, object]:
        return {
            "rounds": self.rounds,
            "initial_delay_s": self.initial_delay_s,
            "endpoint_delay_s": self.endpoint_delay_s,
            "round_delay_s": self.round_delay_s,
            "health_check_interval_s": self.health_check_interval_s,
            "backoff_interval_s": self.backoff_interval_s,
            "slow_backoff_after": self.slow_backoff_after,
            "slow_backoff_interval_s": self.slow_backoff_interval_s,
        }


@dataclass(frozen=True, slots=True)
class SessionSettings:
    """Ticker cadence and retention for logged sessions."""

    tick_interval_s: float = 1.0
    history_size: int = 20
    export_dir: str = "data/sessions"
    status_sync_interval_s: float = 10.0

    def __post_init__(self) -> None:
        tick = _coerce_float(self.tick_interval_s, "Tick interval")
        if tick <= 0:
            raise ValueError("Tick interval must be positive")
        status_sync = _coerce_float(self.status_sync_interval_s, "Status sync interval")
        if status_sync <= 0:
            raise ValueError("Status sync interval must be positive")
        history = _coerce_int(self.history_size, "Session history size")
        if history < 1:
            raise ValueError("Session history size must be at least 1")
        export_dir = self.export_dir.strip() if isinstance(self.export_dir, str) else ""
        if not export_dir:
            raise ValueError("Export directory must be a non-empty path")
        object.__setattr__(self, "tick_interval_s", tick)
        object.__setattr__(self, "history_size", history)
        object.__setattr__(self, "export_dir", export_dir)
        object.__setattr__(self, "status_sync_interval_s", status_sync)

    def to_dict(self) -> dict[str, object]:
        return {
            "tick_interval_s": self.tick_interval_s,
            "history_size": self.history_size,
            "export_dir": self.export_dir,
            "status_sync_interval_s": self.status_sync_interval_s,
        }


@dataclass(frozen=True, slots=True)
class DeviceLinkSettings:
    """Complete configuration for one device link."""

    device: DeviceSettings = DeviceSettings()
    probe: ProbeSettings = ProbeSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    session: SessionSettings = SessionSettings()

    def to_dict(self) -> dict[str, object]:
        return {
            "device": self.device.to_dict(),
            "probe": self.probe.to_dict(),
            "scheduler": self.scheduler.to_dict(),
            "session": self.session.to_dict(),
        }


DEFAULT_SETTINGS = DeviceLinkSettings()


def _section_kwargs(value: Any, section: str, allowed: Sequence[str]) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"{section} settings must be provided as a mapping")
    return {key: value[key] for key in allowed if key in value}


def _parse_device(value: Any, *, default: DeviceSettings) -> DeviceSettings:
    if isinstance(value, DeviceSettings):
        return value
    overrides = _section_kwargs(value, "Device", ("host", "port", "expected_ssid", "ssid_prefix"))
    return replace(default, **overrides) if overrides else default


def _parse_probe(value: Any, *, default: ProbeSettings) -> ProbeSettings:
    if isinstance(value, ProbeSettings):
        return value
    overrides = _section_kwargs(
        value,
        "Probe",
        (
            "timeout_s",
            "transport_endpoint",
            "application_endpoints",
            "high_latency_ms",
            "history_size",
        ),
    )
    endpoints = overrides.get("application_endpoints")
    if endpoints is not None:
        if isinstance(endpoints, str) or not isinstance(endpoints, Sequence):
            raise ValueError("Application endpoints must be a list of paths")
        overrides["application_endpoints"] = tuple(endpoints)
    return replace(default, **overrides) if overrides else default


def _parse_scheduler(value: Any, *, default: SchedulerSettings) -> SchedulerSettings:
    if isinstance(value, SchedulerSettings):
        return value
    overrides = _section_kwargs(value, "Scheduler", SchedulerSettings.__slots__)
    return replace(default, **overrides) if overrides else default


def _parse_session(value: Any, *, default: SessionSettings) -> SessionSettings:
    if isinstance(value, SessionSettings):
        return value
    overrides = _section_kwargs(
        value,
        "Session",
        ("tick_interval_s", "history_size", "export_dir", "status_sync_interval_s"),
    )
    return replace(default, **overrides) if overrides else default


def parse_settings(
    payload: Mapping[str, Any] | None,
    *,
    default: DeviceLinkSettings = DEFAULT_SETTINGS,
) -> DeviceLinkSettings:
    """Return settings built from *payload*, falling back to *default*."""

    if payload is None:
        return default
    if not isinstance(payload, Mapping):
        raise ValueError("Configuration must be a mapping")
    return DeviceLinkSettings(
        device=_parse_device(payload.get("device"), default=default.device),
        probe=_parse_probe(payload.get("probe"), default=default.probe),
        scheduler=_parse_scheduler(payload.get("scheduler"), default=default.scheduler),
        session=_parse_session(payload.get("session"), default=default.session),
    )


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        self._settings = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> DeviceLinkSettings:
        if not self._path.exists():
            return DEFAULT_SETTINGS
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            return parse_settings(payload)
        except (OSError, ValueError, TypeError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = self._settings.to_dict()
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def get_settings(self) -> DeviceLinkSettings:
        with self._lock:
            return self._settings

    def update(self, data: Mapping[str, Any]) -> DeviceLinkSettings:
        """Merge *data* into the stored settings and persist the result."""

        with self._lock:
            settings = parse_settings(data, default=self._settings)
            self._settings = settings
            self._save()
        return settings

    def apply_overrides(self, data: Mapping[str, Any]) -> DeviceLinkSettings:
        """Merge *data* for this process only, without touching the file."""

        with self._lock:
            self._settings = parse_settings(data, default=self._settings)
            return self._settings


__all__ = [
    "ConfigManager",
    "DEFAULT_SETTINGS",
    "DeviceLinkSettings",
    "DeviceSettings",
    "ProbeSettings",
    "SchedulerSettings",
    "SessionSettings",
    "parse_settings",
]
