from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakBluetoothNotAvailableError, BleakError

from .config import BleSettings
from .session import AcquisitionSession

logger = logging.getLogger(__name__)

UNKNOWN_PERIPHERAL = "Unknown Peripheral"

Discovered = Dict[str, Tuple[Any, Any]]
Scanner = Callable[..., Awaitable[Discovered]]
ClientFactory = Callable[..., Any]


class CharacteristicNotFoundError(LookupError):
    pass


def peripheral_name(device: Any, adv: Any) -> str:
    return getattr(adv, "local_name", None) or getattr(device, "name", None) or UNKNOWN_PERIPHERAL


def matches_filter(name: str, name_filter: str) -> bool:
    return name_filter in name


def find_notify_characteristic(services: Iterable[Any], uuid: str) -> Any:
    wanted = uuid.lower()
    for service in services:
        for characteristic in service.characteristics:
            if characteristic.uuid.lower() == wanted and "notify" in characteristic.properties:
                return characteristic
    raise CharacteristicNotFoundError(f"Notify characteristic {uuid} is not found")


class NotificationStream:
    """
    Bridges bleak's notify/disconnect callbacks into an async iterator of
    text records, one per notification, in arrival order. The stream ends
    when the peripheral disconnects.
    """

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()
        self.received = 0

    def on_notify(self, _sender: Any, data: bytearray) -> None:
        self.received += 1
        self._queue.put_nowait(bytes(data))

    def on_disconnect(self, _client: Any) -> None:
        logger.warning("Peripheral disconnected")
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            payload = await self._queue.get()
            if payload is None:
                return
            yield payload.decode("utf-8")


async def _discover(adapter: Optional[str], timeout: float) -> Discovered:
    kwargs: Dict[str, Any] = {"timeout": timeout, "return_adv": True}
    if adapter is not None:
        kwargs["adapter"] = adapter
    return await BleakScanner.discover(**kwargs)


class BleAcquisition:
    """
    One-shot BLE session: scan each adapter, connect to the first peripheral
    whose name contains the filter, stream its notifications into the
    session, then disconnect. There is no reconnect.
    """

    def __init__(
        self,
        settings: BleSettings,
        session: AcquisitionSession,
        scanner: Scanner = _discover,
        client_factory: ClientFactory = BleakClient,
    ):
        self.settings = settings
        self.session = session
        self._scanner = scanner
        self._client_factory = client_factory

    async def run(self) -> bool:
        """Return True once a matching peripheral has been handled."""
        if not self.settings.adapters:
            logger.error("No BLE adapters found.")
            return False
        for adapter in self.settings.adapters:
            logger.info("Scanning on %s for %.1fs...", adapter or "default adapter", self.settings.scan_seconds)
            try:
                discovered = await self._scanner(adapter, self.settings.scan_seconds)
            except BleakBluetoothNotAvailableError as exc:
                logger.error("No BLE adapters found. (%s)", exc)
                return False
            except BleakError as exc:
                logger.error("Scan on %s failed, skipping adapter: %s", adapter or "default adapter", exc)
                continue
            if not discovered:
                logger.warning("BLE peripheral devices were not found.")
                continue
            for device, adv in discovered.values():
                name = peripheral_name(device, adv)
                if not matches_filter(name, self.settings.name_filter):
                    logger.info("Skipping peripheral: %r (%s)", name, getattr(device, "address", "?"))
                    continue
                logger.info("Found matching peripheral %r", name)
                stream = NotificationStream()
                client = self._client_factory(device, disconnected_callback=stream.on_disconnect)
                try:
                    await client.connect()
                except (BleakError, asyncio.TimeoutError, OSError) as exc:
                    logger.error("Error connecting to peripheral, skipping: %s", exc)
                    continue
                await self._stream(client, stream, name)
                return True
        return False

    async def _stream(self, client: Any, stream: NotificationStream, name: str) -> None:
        logger.info("Now connected (%s) to peripheral %r.", client.is_connected, name)
        if not client.is_connected:
            return
        try:
            characteristic = find_notify_characteristic(client.services, self.settings.notify_uuid)
            logger.info("Subscribing to characteristic %s", characteristic.uuid)
            await client.start_notify(characteristic, stream.on_notify)
            await self.session.run_async(stream)
        finally:
            logger.info("Disconnecting from peripheral %r", name)
            await client.disconnect()
