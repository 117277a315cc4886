from __future__ import annotations

import json

import httpx
import pytest

pytest.importorskip("numpy")

import device_link.diagnostics as diagnostics
import device_link.link as link_module
from device_link.detector import ConnectionState, DetectionStatus, FailureMode
from device_link.errors import ErrorKind
from device_link.probe import ProbeResult


def _result(ok: bool, latency: float, kind: ErrorKind | None = None, endpoint: str = "/ping"):
    return ProbeResult(
        ok=ok,
        endpoint=endpoint,
        latency_ms=latency,
        status_code=200 if ok else None,
        error_kind=kind,
        error=kind.value if kind else None,
    )


def test_summarise_history_counts_and_latency() -> None:
    results = [
        _result(True, 10.0),
        _result(True, 20.0, endpoint="/status"),
        _result(False, 30000.0, ErrorKind.TIMEOUT),
        _result(True, 30.0),
        _result(False, 5.0, ErrorKind.NETWORK_FAILURE, endpoint="/status"),
    ]

    summary = diagnostics.summarise_history(results)

    assert summary["attempts"] == 5
    assert summary["successes"] == 3
    assert summary["success_rate"] == 0.6
    assert summary["failures"] == {"TIMEOUT": 1, "NETWORK_FAILURE": 1}
    assert summary["endpoints"] == {
        "/ping": {"attempts": 3, "successes": 2},
        "/status": {"attempts": 2, "successes": 1},
    }
    assert summary["latency"] == {
        "mean_ms": 20.0,
        "p50_ms": 20.0,
        "p95_ms": 29.0,
        "max_ms": 30.0,
    }
    assert summary["last_error"]["error_kind"] == "NETWORK_FAILURE"


def test_summarise_empty_history() -> None:
    summary = diagnostics.summarise_history([])

    assert summary["attempts"] == 0
    assert summary["success_rate"] is None
    assert summary["latency"] is None
    assert summary["last_error"] is None


def test_recommendations_follow_failure_mode() -> None:
    summary = diagnostics.summarise_history([_result(False, 30000.0, ErrorKind.TIMEOUT)])
    state = ConnectionState(
        is_link_ok=True,
        detection_status=DetectionStatus.DISCONNECTED,
        failure=FailureMode.UNREACHABLE,
        error_kind=ErrorKind.TIMEOUT,
    )

    hints = diagnostics.build_recommendations(summary, state, host="192.168.4.1")

    assert hints[0] == diagnostics.UNREACHABLE_HINT.format(host="192.168.4.1")
    assert diagnostics.TIMEOUT_HINT in hints


def test_permission_denied_gives_single_hint() -> None:
    state = ConnectionState(
        detection_status=DetectionStatus.ERROR,
        failure=FailureMode.PERMISSION_DENIED,
    )

    assert diagnostics.build_recommendations({}, state) == [diagnostics.PERMISSION_HINT]


def test_slow_responses_are_flagged() -> None:
    summary = diagnostics.summarise_history([_result(True, 2500.0), _result(True, 2600.0)])
    state = ConnectionState(detection_status=DetectionStatus.CONNECTED)

    hints = diagnostics.build_recommendations(summary, state, high_latency_ms=2000.0)

    assert len(hints) == 1
    assert hints[0].startswith("Responses are slow")


def _patch_link(monkeypatch: pytest.MonkeyPatch, handler) -> None:
    original = link_module.DeviceLink

    def _factory(settings, **kwargs):
        return original(settings, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(link_module, "DeviceLink", _factory)


def test_cli_json_reports_connected_device(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/ping":
            return httpx.Response(200, text="pong")
        return httpx.Response(200, json={"status": "ready"})

    _patch_link(monkeypatch, handler)

    exit_code = diagnostics.run(["--skip-link-check", "--json", "--host", "10.1.1.1"])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert payload["version"] == diagnostics.APP_VERSION
    assert payload["device"]["base_url"] == "http://10.1.1.1"
    assert payload["connection"]["detection_status"] == "connected"
    assert payload["probes"]["attempts"] == 2
    assert payload["recommendations"] == []


def test_cli_text_output_for_unreachable_device(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    _patch_link(monkeypatch, handler)

    exit_code = diagnostics.run(["--skip-link-check", "--timeout", "1"])

    output = capsys.readouterr().out
    assert exit_code == 1
    assert "Status: disconnected (quality poor)" in output
    assert "Link: OK  Transport: FAIL" in output
    assert "Recommendations:" in output
