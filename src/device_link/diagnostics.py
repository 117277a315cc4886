"""Connectivity diagnostics for the API and the command line."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections import Counter
from typing import TYPE_CHECKING, Iterable, Sequence

import numpy as np

from .config import DEFAULT_SETTINGS, parse_settings
from .detector import ConnectionState, FailureMode
from .errors import ErrorKind
from .network import NetworkInfo, StaticNetworkInfoProvider
from .probe import ProbeResult
from .version import APP_VERSION

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .link import DeviceLink

WRONG_NETWORK_HINT = (
    "Join the device's Wi-Fi network ({ssid}) from the system settings, then refresh."
)
UNREACHABLE_HINT = (
    "The device network is joined but {host} does not answer. Check that the device is "
    "powered on and within range."
)
NOT_READY_HINT = (
    "The device answers but its status endpoint did not confirm it is ready. Wait for the "
    "device to finish booting and refresh."
)
PERMISSION_HINT = (
    "Grant the application permission to read the Wi-Fi network name, then refresh."
)
TIMEOUT_HINT = (
    "Probes are timing out. Move closer to the device or raise the probe timeout."
)
HTTP_ERROR_HINT = (
    "The device returned HTTP errors. Restart the device if the problem persists."
)
MALFORMED_HINT = (
    "The device replied with an unexpected status payload. Confirm the firmware version "
    "matches this client."
)
HIGH_LATENCY_HINT = (
    "Responses are slow (p95 {p95:.0f} ms). Interference or distance may be degrading the link."
)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the diagnostics CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m device_link.diagnostics",
        description="Run one device detection cycle and report the outcome",
    )
    parser.add_argument(
        "--host",
        default=None,
        help=f"Device address (default: {DEFAULT_SETTINGS.device.host})",
    )
    parser.add_argument("--ssid", help="Expected Wi-Fi network name", default=None)
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Probe timeout in seconds.",
    )
    parser.add_argument(
        "--skip-link-check",
        action="store_true",
        help="Assume the host is already on the device network.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    return parser


def _percentile(values: np.ndarray, q: float) -> float:
    return float(np.percentile(values, q))


def summarise_history(results: Iterable[ProbeResult]) -> dict[str, object]:
    """Aggregate probe results into counts and latency statistics."""

    items = list(results)
    successes = [result for result in items if result.ok]
    failures: Counter[str] = Counter(
        result.error_kind.value for result in items if not result.ok and result.error_kind
    )
    endpoints: dict[str, dict[str, int]] = {}
    for result in items:
        bucket = endpoints.setdefault(result.endpoint, {"attempts": 0, "successes": 0})
        bucket["attempts"] += 1
        if result.ok:
            bucket["successes"] += 1

    latency: dict[str, float] | None = None
    if successes:
        samples = np.array([result.latency_ms for result in successes], dtype=float)
        latency = {
            "mean_ms": round(float(samples.mean()), 2),
            "p50_ms": round(_percentile(samples, 50), 2),
            "p95_ms": round(_percentile(samples, 95), 2),
            "max_ms": round(float(samples.max()), 2),
        }

    last_error: dict[str, object | None] | None = None
    for result in reversed(items):
        if not result.ok:
            last_error = {
                "endpoint": result.endpoint,
                "error_kind": result.error_kind.value if result.error_kind else None,
                "error": result.error,
                "timestamp": result.timestamp,
            }
            break

    attempts = len(items)
    return {
        "attempts": attempts,
        "successes": len(successes),
        "success_rate": round(len(successes) / attempts, 3) if attempts else None,
        "failures": dict(failures),
        "endpoints": endpoints,
        "latency": latency,
        "last_error": last_error,
    }


def build_recommendations(
    summary: dict[str, object],
    state: ConnectionState,
    *,
    host: str = DEFAULT_SETTINGS.device.host,
    expected_ssid: str = DEFAULT_SETTINGS.device.expected_ssid,
    high_latency_ms: float = DEFAULT_SETTINGS.probe.high_latency_ms,
) -> list[str]:
    """Return guidance for the user based on *state* and probe history."""

    hints: list[str] = []
    if state.failure is FailureMode.PERMISSION_DENIED:
        return [PERMISSION_HINT]
    if state.failure is FailureMode.WRONG_NETWORK:
        hints.append(WRONG_NETWORK_HINT.format(ssid=expected_ssid))
    elif state.failure is FailureMode.UNREACHABLE:
        hints.append(UNREACHABLE_HINT.format(host=host))
    elif state.failure is FailureMode.NOT_READY:
        hints.append(NOT_READY_HINT)

    failures = summary.get("failures")
    if isinstance(failures, dict):
        if failures.get(ErrorKind.TIMEOUT.value):
            hints.append(TIMEOUT_HINT)
        if failures.get(ErrorKind.HTTP_ERROR.value):
            hints.append(HTTP_ERROR_HINT)
    if state.error_kind is ErrorKind.MALFORMED_RESPONSE:
        hints.append(MALFORMED_HINT)

    latency = summary.get("latency")
    if isinstance(latency, dict):
        p95 = latency.get("p95_ms")
        if isinstance(p95, (int, float)) and p95 > high_latency_ms:
            hints.append(HIGH_LATENCY_HINT.format(p95=p95))
    return hints


def collect_diagnostics(link: "DeviceLink") -> dict[str, object]:
    """Collect diagnostics payload used by both the CLI and API."""

    settings = link.settings
    state = link.connection_state
    summary = summarise_history(link.prober.history)
    scheduler = link.scheduler
    return {
        "version": APP_VERSION,
        "device": {
            "base_url": settings.device.base_url,
            "expected_ssid": settings.device.expected_ssid,
            "ssid_prefix": settings.device.ssid_prefix,
        },
        "connection": state.to_dict(),
        "scheduler": {
            "status": scheduler.status.value,
            "consecutive_failures": scheduler.consecutive_failures,
            "cycles_started": scheduler.cycles_started,
            "next_check_in": scheduler.next_check_in,
        },
        "probes": summary,
        "recommendations": build_recommendations(
            summary,
            state,
            host=settings.device.host,
            expected_ssid=settings.device.expected_ssid,
            high_latency_ms=settings.probe.high_latency_ms,
        ),
        "session": {
            "active": link.session_active,
            "completed": len(link.session.history),
        },
    }


async def _diagnose_once(link: "DeviceLink") -> dict[str, object]:
    try:
        await link.detector.detect()
        return collect_diagnostics(link)
    finally:
        await link.teardown()


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the diagnostics CLI with *argv* arguments."""

    from .link import DeviceLink

    parser = build_parser()
    args = parser.parse_args(argv)

    overrides: dict[str, dict[str, object]] = {"device": {}, "probe": {}}
    if args.host:
        overrides["device"]["host"] = args.host
    if args.ssid:
        overrides["device"]["expected_ssid"] = args.ssid
    if args.timeout is not None:
        overrides["probe"]["timeout_s"] = args.timeout
    try:
        settings = parse_settings(overrides)
    except ValueError as exc:
        parser.error(str(exc))

    network = None
    if args.skip_link_check:
        network = StaticNetworkInfoProvider(
            NetworkInfo(
                ssid=settings.device.expected_ssid,
                ip_address="assumed",
                is_wifi_enabled=True,
            )
        )
    link = DeviceLink(settings, network=network, exporter=None)
    payload = asyncio.run(_diagnose_once(link))

    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return 0 if link.connection_state.is_connected else 1

    connection = payload["connection"]
    probes = payload["probes"]
    if not isinstance(connection, dict) or not isinstance(probes, dict):
        raise RuntimeError("Diagnostics payload is missing connection or probe data")
    print(f"Device link diagnostics (version {APP_VERSION})")
    print(f"Device: {settings.device.base_url} on {settings.device.expected_ssid}")
    print(
        f"Status: {connection['detection_status']} "
        f"(quality {connection['connection_quality']})"
    )
    print(
        f" - Link: {'OK' if connection['is_link_ok'] else 'FAIL'}"
        f"  Transport: {'OK' if connection['is_reachable'] else 'FAIL'}"
        f"  Application: {'OK' if connection['is_responding'] else 'FAIL'}"
    )
    if connection.get("detail"):
        print(f" - Detail: {connection['detail']}")
    latency = probes.get("latency")
    if isinstance(latency, dict):
        print(
            f" - Latency: mean {latency['mean_ms']:.1f} ms, "
            f"p95 {latency['p95_ms']:.1f} ms, max {latency['max_ms']:.1f} ms"
        )
    recommendations = payload.get("recommendations") or []
    if recommendations:
        print("Recommendations:")
        for hint in recommendations:
            print(f" * {hint}")
    return 0 if link.connection_state.is_connected else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m device_link.diagnostics`."""

    return run(argv)


__all__ = [
    "build_parser",
    "build_recommendations",
    "collect_diagnostics",
    "summarise_history",
    "run",
    "main",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
