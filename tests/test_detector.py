import asyncio

import pytest

from device_link.detector import (
    ConnectionQuality,
    ConnectionState,
    DetectionStatus,
    FailureMode,
    LayeredDetector,
    is_ready_payload,
)
from device_link.errors import ErrorKind
from device_link.network import (
    NetworkInfo,
    NetworkInfoError,
    StaticNetworkInfoProvider,
    StaticPermissionGate,
)
from device_link.probe import JsonPayload, ProbeResult, TextPayload

ON_DEVICE_NETWORK = NetworkInfo(
    ssid="AEROSPIN CONTROL", ip_address="192.168.4.2", is_wifi_enabled=True
)


def ok(endpoint: str, payload=None, latency_ms: float = 25.0) -> ProbeResult:
    return ProbeResult(
        ok=True,
        endpoint=endpoint,
        latency_ms=latency_ms,
        status_code=200,
        payload=payload,
    )


def failed(endpoint: str, kind: ErrorKind, latency_ms: float = 25.0) -> ProbeResult:
    return ProbeResult(
        ok=False,
        endpoint=endpoint,
        latency_ms=latency_ms,
        error_kind=kind,
        error=kind.value.lower(),
    )


class ScriptedProber:
    """Answer probes from a per-endpoint table and remember the calls."""

    def __init__(self, answers: dict[str, ProbeResult]) -> None:
        self.answers = answers
        self.calls: list[str] = []

    async def probe(self, endpoint, timeout=None, params=None):
        self.calls.append(endpoint)
        return self.answers[endpoint]


class ExplodingNetwork:
    def get_network_info(self) -> NetworkInfo:
        raise NetworkInfoError("nmcli command unavailable")


def _detector(prober, info=ON_DEVICE_NETWORK, granted=True, **kwargs) -> LayeredDetector:
    network = info if not isinstance(info, NetworkInfo) else StaticNetworkInfoProvider(info)
    return LayeredDetector(
        prober,
        network,
        StaticPermissionGate(granted),
        expected_ssid="AEROSPIN CONTROL",
        ssid_prefix="AEROSPIN",
        **kwargs,
    )


def _detect(detector: LayeredDetector, endpoint: str | None = None) -> ConnectionState:
    return asyncio.run(detector.detect(endpoint))


def test_ready_status_payload_is_connected() -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong")),
            "/status": ok("/status", JsonPayload({"status": "ready"})),
        }
    )

    state = _detect(_detector(prober))

    assert state.is_link_ok and state.is_reachable and state.is_responding
    assert state.connection_quality in {ConnectionQuality.GOOD, ConnectionQuality.EXCELLENT}
    assert state.detection_status is DetectionStatus.CONNECTED
    assert state.failure is None
    assert state.last_successful_connection is not None
    assert prober.calls == ["/ping", "/status"]


@pytest.mark.parametrize(
    "info",
    [
        NetworkInfo(ssid="HomeWiFi", ip_address="10.0.0.4", is_wifi_enabled=True),
        NetworkInfo(ssid="AEROSPIN CONTROL", ip_address=None, is_wifi_enabled=True),
        NetworkInfo(ssid=None, ip_address=None, is_wifi_enabled=False),
    ],
)
def test_link_failure_forces_quality_none_and_skips_probes(info: NetworkInfo) -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong")),
            "/status": ok("/status", JsonPayload({"status": "ready"})),
        }
    )

    state = _detect(_detector(prober, info))

    assert state.is_link_ok is False
    assert state.connection_quality is ConnectionQuality.NONE
    assert state.detection_status is DetectionStatus.DISCONNECTED
    assert state.failure is FailureMode.WRONG_NETWORK
    assert prober.calls == []


def test_ssid_prefix_match_passes_link_layer() -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong")),
            "/status": ok("/status", JsonPayload({"speed": 0})),
        }
    )
    info = NetworkInfo(ssid="AEROSPIN-2", ip_address="192.168.4.3", is_wifi_enabled=True)

    state = _detect(_detector(prober, info))

    assert state.is_link_ok is True
    assert state.is_connected


def test_provider_error_counts_as_link_failure() -> None:
    prober = ScriptedProber({})

    state = _detect(_detector(prober, ExplodingNetwork()))

    assert state.connection_quality is ConnectionQuality.NONE
    assert state.failure is FailureMode.WRONG_NETWORK
    assert "nmcli" in (state.detail or "")


def test_device_powered_off_is_poor_and_disconnected() -> None:
    prober = ScriptedProber({"/ping": failed("/ping", ErrorKind.TIMEOUT, latency_ms=30000)})

    state = _detect(_detector(prober))

    assert state.is_link_ok is True
    assert state.is_reachable is False
    assert state.connection_quality is ConnectionQuality.POOR
    assert state.detection_status is DetectionStatus.DISCONNECTED
    assert state.failure is FailureMode.UNREACHABLE
    assert state.error_kind is ErrorKind.TIMEOUT
    assert prober.calls == ["/ping"]


def test_unrecognised_status_body_is_malformed() -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong")),
            "/status": ok("/status", JsonPayload({"uptime": 12})),
        }
    )

    state = _detect(_detector(prober))

    assert state.is_reachable is True
    assert state.is_responding is False
    assert state.connection_quality is ConnectionQuality.GOOD
    assert state.detection_status is DetectionStatus.DISCONNECTED
    assert state.failure is FailureMode.NOT_READY
    assert state.error_kind is ErrorKind.MALFORMED_RESPONSE


def test_application_http_error_is_not_ready() -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong")),
            "/health": failed("/health", ErrorKind.HTTP_ERROR),
        }
    )

    state = _detect(_detector(prober), "/health")

    assert state.endpoint == "/health"
    assert state.failure is FailureMode.NOT_READY
    assert state.error_kind is ErrorKind.HTTP_ERROR
    assert prober.calls == ["/ping", "/health"]


def test_high_latency_downgrades_to_good() -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong"), latency_ms=2500),
            "/status": ok("/status", JsonPayload({"ready": True})),
        }
    )

    state = _detect(_detector(prober, high_latency_ms=2000))

    assert state.is_connected
    assert state.connection_quality is ConnectionQuality.GOOD
    assert state.latency_ms == 2500


def test_fast_answers_are_excellent() -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong"), latency_ms=40),
            "/status": ok("/status", TextPayload("Device READY")),
        }
    )

    state = _detect(_detector(prober))

    assert state.connection_quality is ConnectionQuality.EXCELLENT


def test_permission_denied_blocks_all_layers() -> None:
    prober = ScriptedProber({})
    network = StaticNetworkInfoProvider(ON_DEVICE_NETWORK)
    detector = LayeredDetector(
        prober,
        network,
        StaticPermissionGate(False),
        expected_ssid="AEROSPIN CONTROL",
    )

    state = _detect(detector)

    assert state.detection_status is DetectionStatus.ERROR
    assert state.failure is FailureMode.PERMISSION_DENIED
    assert state.error_kind is ErrorKind.PERMISSION_DENIED
    assert state.connection_quality is ConnectionQuality.NONE
    assert network.calls == 0
    assert prober.calls == []


def test_each_cycle_publishes_checking_then_a_final_status() -> None:
    prober = ScriptedProber(
        {
            "/ping": ok("/ping", TextPayload("pong")),
            "/status": ok("/status", JsonPayload({"status": "ready"})),
        }
    )
    published: list[DetectionStatus] = []
    detector = _detector(prober, on_state=lambda state: published.append(state.detection_status))

    async def _run() -> None:
        await detector.detect()
        await detector.detect()

    asyncio.run(_run())

    assert published == [
        DetectionStatus.CHECKING,
        DetectionStatus.CONNECTED,
        DetectionStatus.CHECKING,
        DetectionStatus.CONNECTED,
    ]
    assert detector.connection_attempts == 2
    assert len(prober.calls) == 4


def test_initial_state_is_idle() -> None:
    detector = _detector(ScriptedProber({}))

    assert detector.state.detection_status is DetectionStatus.IDLE
    assert detector.state.connection_quality is ConnectionQuality.NONE


def test_unexpected_fault_is_reported_as_error() -> None:
    class BrokenProber:
        async def probe(self, endpoint, timeout=None, params=None):
            raise RuntimeError("boom")

    state = _detect(_detector(BrokenProber()))

    assert state.detection_status is DetectionStatus.ERROR
    assert state.connection_quality is ConnectionQuality.NONE
    assert state.detail == "boom"


def test_permission_service_fault_is_reported_as_error() -> None:
    class UnavailableGate:
        def has_required_permissions(self) -> bool:
            raise OSError("permission service unavailable")

    prober = ScriptedProber({})
    published: list[DetectionStatus] = []
    detector = LayeredDetector(
        prober,
        StaticNetworkInfoProvider(ON_DEVICE_NETWORK),
        UnavailableGate(),
        expected_ssid="AEROSPIN CONTROL",
        on_state=lambda state: published.append(state.detection_status),
    )

    state = _detect(detector)

    assert state.detection_status is DetectionStatus.ERROR
    assert state.detail == "permission service unavailable"
    assert published == [DetectionStatus.CHECKING, DetectionStatus.ERROR]
    assert prober.calls == []


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        (JsonPayload({"sessionActive": False}), True),
        (JsonPayload({"device": "aerospin"}), True),
        (JsonPayload(["status"]), False),
        (JsonPayload("ready"), True),
        (TextPayload("PONG"), True),
        (TextPayload("<html>captive portal</html>"), False),
        (None, False),
    ],
)
def test_ready_payload_recognition(payload, expected: bool) -> None:
    assert is_ready_payload(payload) is expected
