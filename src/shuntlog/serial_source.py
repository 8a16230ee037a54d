from __future__ import annotations

import logging
from typing import Iterator, List, Optional

import serial  # type: ignore[import]
from serial.tools import list_ports as serial_list_ports  # type: ignore[import]

from .config import SerialSettings

logger = logging.getLogger(__name__)


class SerialReadTimeout(TimeoutError):
    pass


def list_ports() -> List[str]:
    return [port.device for port in serial_list_ports.comports()]


class SerialRecordSource:
    """
    Line-delimited records from a UART. Iteration never ends on its own: a
    read that times out before a full line arrives raises
    :class:`SerialReadTimeout`.
    """

    def __init__(self, settings: SerialSettings):
        if not settings.port:
            raise ValueError("A serial interface is required")
        self.settings = settings
        self._serial_handle = None
        self._lines = 0

    def open(self) -> "SerialRecordSource":
        self._serial_handle = serial.Serial(
            port=self.settings.port,
            baudrate=self.settings.baudrate,
            timeout=self.settings.timeout,
        )
        logger.info("Opened %s at %d baud", self.settings.port, self.settings.baudrate)
        return self

    def close(self) -> None:
        if self._serial_handle is not None:
            self._serial_handle.close()
            self._serial_handle = None

    def __enter__(self) -> "SerialRecordSource":
        return self.open()

    def __exit__(self, *_exc) -> None:
        self.close()

    def __iter__(self) -> Iterator[str]:
        while True:
            yield self.readline()

    def readline(self) -> str:
        if self._serial_handle is None:
            raise RuntimeError(f"Serial port {self.settings.port} is not open")
        raw: Optional[bytes] = self._serial_handle.readline()
        if not raw:
            raise SerialReadTimeout(
                f"No data from {self.settings.port} within {self.settings.timeout:.3f}s"
            )
        if not raw.endswith(b"\n"):
            raise SerialReadTimeout(
                f"Partial line from {self.settings.port} after {self.settings.timeout:.3f}s: {raw!r}"
            )
        self._lines += 1
        return raw.decode("utf-8")

    @property
    def lines_read(self) -> int:
        return self._lines
