"""Host network information and permission collaborators."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Sequence

logger = logging.getLogger(__name__)


class NetworkInfoError(RuntimeError):
    """Raised when the host network state cannot be read."""


@dataclass(frozen=True, slots=True)
class NetworkInfo:
    """Snapshot of the host's Wi-Fi link."""

    ssid: str | None
    ip_address: str | None
    is_wifi_enabled: bool
    is_internet_reachable: bool | None = None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "ssid": self.ssid,
            "ip_address": self.ip_address,
            "is_wifi_enabled": self.is_wifi_enabled,
            "is_internet_reachable": self.is_internet_reachable,
        }


class NetworkInfoProvider:
    """Abstract source of :class:`NetworkInfo` snapshots."""

    def get_network_info(self) -> NetworkInfo:  # pragma: no cover - interface only
        raise NotImplementedError


class StaticNetworkInfoProvider(NetworkInfoProvider):
    """Return a fixed snapshot; replace it with :meth:`set_info`."""

    def __init__(self, info: NetworkInfo) -> None:
        self._info = info
        self.calls = 0

    def set_info(self, info: NetworkInfo) -> None:
        self._info = info

    def get_network_info(self) -> NetworkInfo:
        self.calls += 1
        return self._info


class NMCLINetworkInfoProvider(NetworkInfoProvider):
    """Read the Wi-Fi link state from NetworkManager via nmcli."""

    def __init__(self, interface: str | None = None, *, timeout: float = 10.0) -> None:
        self._preferred_interface = interface
        self._timeout = timeout
        self._detected_interface: str | None = None

    # ------------------------------- helpers -------------------------------
    def _run(self, args: Sequence[str]) -> str:
        try:
            completed = subprocess.run(
                list(args),
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:  # pragma: no cover - environment specific
            raise NetworkInfoError("nmcli command unavailable") from exc
        except subprocess.TimeoutExpired as exc:  # pragma: no cover - environment specific
            raise NetworkInfoError("nmcli command timed out") from exc
        except subprocess.CalledProcessError as exc:
            error_output = exc.stderr.strip() or exc.stdout.strip() or str(exc)
            raise NetworkInfoError(error_output) from exc
        return completed.stdout

    def _interface(self) -> str:
        if self._preferred_interface:
            return self._preferred_interface
        if self._detected_interface:
            return self._detected_interface
        output = self._run(["nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"])
        for line in output.splitlines():
            parts = line.split(":")
            if len(parts) < 3:
                continue
            device, dev_type, state = (part.strip() for part in parts[:3])
            if dev_type == "wifi" and state != "unavailable":
                self._detected_interface = device
                return device
        raise NetworkInfoError("No Wi-Fi interface detected")

    @staticmethod
    def _unescape(value: str) -> str:
        return value.replace("\\\\", "\\").replace("\\:", ":")

    def _wifi_enabled(self) -> bool:
        output = self._run(["nmcli", "radio", "wifi"])
        return output.strip().lower() == "enabled"

    def _active_ssid(self, interface: str) -> str | None:
        output = self._run(
            ["nmcli", "-t", "-f", "IN-USE,SSID", "device", "wifi", "list", "ifname", interface]
        )
        for line in output.splitlines():
            in_use, _, ssid = line.partition(":")
            if in_use.strip() in {"*", "yes"}:
                return self._unescape(ssid).strip() or None
        return None

    def _internet_reachable(self) -> bool | None:
        try:
            output = self._run(["nmcli", "networking", "connectivity", "check"])
        except NetworkInfoError as exc:
            logger.debug("Connectivity check unavailable: %s", exc)
            return None
        return output.strip().lower() == "full"

    # ---------------------------- interface impl ---------------------------
    def get_network_info(self) -> NetworkInfo:
        if not self._wifi_enabled():
            return NetworkInfo(ssid=None, ip_address=None, is_wifi_enabled=False)
        interface = self._interface()
        output = self._run(
            ["nmcli", "-t", "-f", "GENERAL.CONNECTION,IP4.ADDRESS", "device", "show", interface]
        )
        details: dict[str, str] = {}
        for line in output.splitlines():
            if ":" not in line:
                continue
            key, value = line.split(":", 1)
            details[key.strip()] = value.strip()
        ip_raw = details.get("IP4.ADDRESS[1]") or details.get("IP4.ADDRESS")
        ip_address = ip_raw.split("/")[0].strip() if ip_raw else None
        ssid = self._active_ssid(interface) or details.get("GENERAL.CONNECTION") or None
        return NetworkInfo(
            ssid=ssid,
            ip_address=ip_address or None,
            is_wifi_enabled=True,
            is_internet_reachable=self._internet_reachable(),
        )


class PermissionGate:
    """Reports whether the host may inspect the network."""

    def has_required_permissions(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError


class StaticPermissionGate(PermissionGate):
    def __init__(self, granted: bool = True) -> None:
        self._granted = granted

    def set_granted(self, granted: bool) -> None:
        self._granted = granted

    def has_required_permissions(self) -> bool:
        return self._granted


__all__ = [
    "NMCLINetworkInfoProvider",
    "NetworkInfo",
    "NetworkInfoError",
    "NetworkInfoProvider",
    "PermissionGate",
    "StaticNetworkInfoProvider",
    "StaticPermissionGate",
]
