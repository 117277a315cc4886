import pytest

from device_link.network import NetworkInfoError, NMCLINetworkInfoProvider


def _fake_nmcli(outputs: dict[tuple[str, ...], str], commands: list[list[str]]):
    def fake_run(args: list[str]) -> str:
        commands.append(list(args))
        key = tuple(args)
        if key not in outputs:
            raise NetworkInfoError(f"unexpected command: {' '.join(args)}")
        return outputs[key]

    return fake_run


def test_reads_ssid_and_address_from_nmcli(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = NMCLINetworkInfoProvider()
    commands: list[list[str]] = []
    outputs = {
        ("nmcli", "radio", "wifi"): "enabled\n",
        ("nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"): (
            "eth0:ethernet:unavailable\nwlan0:wifi:connected\n"
        ),
        (
            "nmcli",
            "-t",
            "-f",
            "GENERAL.CONNECTION,IP4.ADDRESS",
            "device",
            "show",
            "wlan0",
        ): "GENERAL.CONNECTION:AEROSPIN CONTROL\nIP4.ADDRESS[1]:192.168.4.2/24\n",
        (
            "nmcli",
            "-t",
            "-f",
            "IN-USE,SSID",
            "device",
            "wifi",
            "list",
            "ifname",
            "wlan0",
        ): ":Neighbour\\:Net\n*:AEROSPIN CONTROL\n",
        ("nmcli", "networking", "connectivity", "check"): "none\n",
    }
    monkeypatch.setattr(provider, "_run", _fake_nmcli(outputs, commands))

    info = provider.get_network_info()

    assert info.ssid == "AEROSPIN CONTROL"
    assert info.ip_address == "192.168.4.2"
    assert info.is_wifi_enabled is True
    assert info.is_internet_reachable is False


def test_disabled_radio_short_circuits(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = NMCLINetworkInfoProvider(interface="wlan0")
    commands: list[list[str]] = []
    outputs = {("nmcli", "radio", "wifi"): "disabled\n"}
    monkeypatch.setattr(provider, "_run", _fake_nmcli(outputs, commands))

    info = provider.get_network_info()

    assert info.is_wifi_enabled is False
    assert info.ssid is None
    assert commands == [["nmcli", "radio", "wifi"]]


def test_missing_wifi_interface_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = NMCLINetworkInfoProvider()
    outputs = {
        ("nmcli", "radio", "wifi"): "enabled\n",
        ("nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"): "eth0:ethernet:connected\n",
    }
    monkeypatch.setattr(provider, "_run", _fake_nmcli(outputs, []))

    with pytest.raises(NetworkInfoError, match="No Wi-Fi interface"):
        provider.get_network_info()


def test_falls_back_to_connection_name_and_unknown_reachability(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    provider = NMCLINetworkInfoProvider(interface="wlan1")
    outputs = {
        ("nmcli", "radio", "wifi"): "enabled\n",
        (
            "nmcli",
            "-t",
            "-f",
            "GENERAL.CONNECTION,IP4.ADDRESS",
            "device",
            "show",
            "wlan1",
        ): "GENERAL.CONNECTION:AEROSPIN CONTROL\nIP4.ADDRESS[1]:\n",
        (
            "nmcli",
            "-t",
            "-f",
            "IN-USE,SSID",
            "device",
            "wifi",
            "list",
            "ifname",
            "wlan1",
        ): "",
    }
    monkeypatch.setattr(provider, "_run", _fake_nmcli(outputs, []))

    info = provider.get_network_info()

    assert info.ssid == "AEROSPIN CONTROL"
    assert info.ip_address is None
    assert info.is_internet_reachable is None
