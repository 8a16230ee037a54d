from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence

import pytest
from bleak.exc import BleakBluetoothNotAvailableError, BleakBluetoothNotAvailableReason, BleakError

from shuntlog.ble_source import (
    BleAcquisition,
    CharacteristicNotFoundError,
    find_notify_characteristic,
    matches_filter,
    peripheral_name,
)
from shuntlog.config import (
    NOTIFY_CHARACTERISTIC_UUID,
    PERIPHERAL_NAME_MATCH_FILTER,
    AnalogModelConfig,
    BleSettings,
)
from shuntlog.records import RecordParser
from shuntlog.session import AcquisitionSession
from shuntlog.sink import OutputSink


def _characteristic(uuid: str = NOTIFY_CHARACTERISTIC_UUID, properties: Sequence[str] = ("notify",)):
    return SimpleNamespace(uuid=uuid, properties=list(properties))


def _services(*characteristics):
    return [SimpleNamespace(characteristics=list(characteristics))]


class FakeClient:
    def __init__(self, device, disconnected_callback, *, payloads, services, fail_connect):
        self.device = device
        self._disconnected_callback = disconnected_callback
        self._payloads = payloads
        self.services = services
        self._fail_connect = fail_connect
        self.is_connected = False
        self.connected = False
        self.disconnected = False

    async def connect(self) -> None:
        if self._fail_connect:
            raise BleakError("connection refused")
        self.is_connected = True
        self.connected = True

    async def start_notify(self, characteristic, callback) -> None:
        for payload in self._payloads:
            callback(characteristic, bytearray(payload))
        self._disconnected_callback(self)

    async def disconnect(self) -> None:
        self.is_connected = False
        self.disconnected = True


class FakeBle:
    def __init__(
        self,
        devices: Dict[Optional[str], List[SimpleNamespace]],
        *,
        payloads: Sequence[bytes] = (),
        services=None,
        fail_connect: Sequence[str] = (),
        scan_errors: Optional[Dict[Optional[str], Exception]] = None,
    ):
        self.devices = devices
        self.payloads = payloads
        self.services = services if services is not None else _services(_characteristic())
        self.fail_connect = set(fail_connect)
        self.scan_errors = scan_errors or {}
        self.scans: List[Optional[str]] = []
        self.clients: List[FakeClient] = []

    async def scanner(self, adapter, timeout):
        self.scans.append(adapter)
        if adapter in self.scan_errors:
            raise self.scan_errors[adapter]
        return {
            device.address: (device, SimpleNamespace(local_name=device.name))
            for device in self.devices.get(adapter, [])
        }

    def client_factory(self, device, disconnected_callback=None):
        client = FakeClient(
            device,
            disconnected_callback,
            payloads=self.payloads,
            services=self.services,
            fail_connect=device.address in self.fail_connect,
        )
        self.clients.append(client)
        return client


def _device(name: Optional[str], address: str) -> SimpleNamespace:
    return SimpleNamespace(name=name, address=address)


def _acquisition(fake: FakeBle, echoed: List[str], adapters=(None,), enable_4ch=False) -> BleAcquisition:
    session = AcquisitionSession(
        RecordParser(AnalogModelConfig(enable_4ch=enable_4ch)),
        OutputSink(verbose=True, echo=echoed.append),
    )
    settings = BleSettings(adapters=list(adapters), scan_seconds=0.0)
    return BleAcquisition(settings, session, scanner=fake.scanner, client_factory=fake.client_factory)


def test_matches_filter_is_substring() -> None:
    assert matches_filter("M5Atom-MCP3424 BLE Sender #2", PERIPHERAL_NAME_MATCH_FILTER)
    assert not matches_filter("Other Device", PERIPHERAL_NAME_MATCH_FILTER)


def test_peripheral_name_falls_back() -> None:
    assert peripheral_name(_device(None, "AA"), SimpleNamespace(local_name=None)) == "Unknown Peripheral"
    assert peripheral_name(_device("dev", "AA"), SimpleNamespace(local_name=None)) == "dev"


def test_find_notify_characteristic_requires_notify_flag() -> None:
    read_only = _characteristic(properties=("read",))
    with pytest.raises(CharacteristicNotFoundError):
        find_notify_characteristic(_services(read_only), NOTIFY_CHARACTERISTIC_UUID)
    wanted = _characteristic(uuid=NOTIFY_CHARACTERISTIC_UUID.upper())
    assert find_notify_characteristic(_services(read_only, wanted), NOTIFY_CHARACTERISTIC_UUID) is wanted


def test_non_matching_peripheral_is_never_connected() -> None:
    fake = FakeBle(
        {None: [_device("Other Device", "AA"), _device(PERIPHERAL_NAME_MATCH_FILTER, "BB")]},
        payloads=[b"tag, 1000", b"tag, 2000"],
    )
    echoed: List[str] = []
    assert asyncio.run(_acquisition(fake, echoed).run()) is True
    assert [client.device.address for client in fake.clients] == ["BB"]
    assert fake.clients[0].disconnected
    assert [line.split(", ")[1] for line in echoed] == ["1000", "2000"]


def test_only_other_devices_ends_without_connecting() -> None:
    fake = FakeBle({None: [_device("Other Device", "AA")]})
    assert asyncio.run(_acquisition(fake, []).run()) is False
    assert fake.clients == []


def test_connect_failure_skips_to_next_peripheral() -> None:
    fake = FakeBle(
        {None: [_device(PERIPHERAL_NAME_MATCH_FILTER, "AA"), _device(PERIPHERAL_NAME_MATCH_FILTER, "BB")]},
        payloads=[b"tag, 10"],
        fail_connect=["AA"],
    )
    echoed: List[str] = []
    assert asyncio.run(_acquisition(fake, echoed).run()) is True
    assert [client.connected for client in fake.clients] == [False, True]
    assert len(echoed) == 1


def test_one_session_ends_the_scan() -> None:
    fake = FakeBle(
        {
            "hci0": [_device(PERIPHERAL_NAME_MATCH_FILTER, "AA")],
            "hci1": [_device(PERIPHERAL_NAME_MATCH_FILTER, "BB")],
        },
    )
    asyncio.run(_acquisition(fake, [], adapters=("hci0", "hci1")).run())
    assert fake.scans == ["hci0"]
    assert len(fake.clients) == 1


def test_no_adapters_or_peripherals() -> None:
    fake = FakeBle({})
    assert asyncio.run(_acquisition(fake, [], adapters=()).run()) is False
    assert fake.scans == []
    assert asyncio.run(_acquisition(fake, []).run()) is False
    assert fake.scans == [None]


def test_missing_characteristic_is_fatal_and_disconnects() -> None:
    fake = FakeBle(
        {None: [_device(PERIPHERAL_NAME_MATCH_FILTER, "AA")]},
        services=_services(_characteristic(uuid="00002a19-0000-1000-8000-00805f9b34fb")),
    )
    with pytest.raises(CharacteristicNotFoundError):
        asyncio.run(_acquisition(fake, []).run())
    assert fake.clients[0].disconnected


def test_invalid_utf8_payload_is_fatal() -> None:
    fake = FakeBle({None: [_device(PERIPHERAL_NAME_MATCH_FILTER, "AA")]}, payloads=[b"tag, \xff"])
    with pytest.raises(UnicodeDecodeError):
        asyncio.run(_acquisition(fake, []).run())


def test_four_channel_notifications() -> None:
    fake = FakeBle(
        {None: [_device(PERIPHERAL_NAME_MATCH_FILTER, "AA")]},
        payloads=[b"tag, 500, 600, 700, 800", b"tag", b"tag, 1, 2, 3, 4"],
    )
    echoed: List[str] = []
    asyncio.run(_acquisition(fake, echoed, enable_4ch=True).run())
    assert [len(line.split(", ")) for line in echoed] == [6, 6]


def test_missing_bluetooth_adapter_ends_the_run() -> None:
    missing = BleakBluetoothNotAvailableError(
        "No Bluetooth adapters found.", BleakBluetoothNotAvailableReason.NO_BLUETOOTH
    )
    fake = FakeBle(
        {"hci1": [_device(PERIPHERAL_NAME_MATCH_FILTER, "BB")]},
        scan_errors={"hci0": missing},
    )
    assert asyncio.run(_acquisition(fake, [], adapters=("hci0", "hci1")).run()) is False
    assert fake.scans == ["hci0"]
    assert fake.clients == []


def test_failed_scan_moves_to_next_adapter() -> None:
    fake = FakeBle(
        {"hci1": [_device(PERIPHERAL_NAME_MATCH_FILTER, "BB")]},
        payloads=[b"tag, 10"],
        scan_errors={"hci0": BleakError("adapter 'hci0' not found")},
    )
    echoed: List[str] = []
    assert asyncio.run(_acquisition(fake, echoed, adapters=("hci0", "hci1")).run()) is True
    assert fake.scans == ["hci0", "hci1"]
    assert len(echoed) == 1
