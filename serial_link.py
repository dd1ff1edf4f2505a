"""Exclusive, timeout-bounded access to the printer's serial line.

A single pyserial handle is opened at start-up and shared by every printer
session through :meth:`SerialLink.clone`. Access is guarded by a lock that is
acquired without blocking: when another caller holds the line, the operation
fails immediately with :class:`DeviceBusyError` instead of queueing behind it.
A printer session reserves the line (:meth:`SerialLink.reserve`) from its
first write until it is committed or closed, so two sessions never interleave.
Callers that need ordered output must serialize themselves (see
``PrintService.process_queue``).
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

import serial

from config import Settings
from errors import DeviceBusyError, DeviceIOError, DeviceTimeoutError

logger = logging.getLogger(__name__)

# Default timeout in seconds for read/write operations
DEFAULT_TIMEOUT_SECONDS = 10.0

# Real-time status byte answered by MockPort: online, paper adequate
MOCK_STATUS_BYTE = 0x12


class MockPort:
    """In-memory stand-in for a pyserial handle, used without hardware."""

    def __init__(self, status_byte: int = MOCK_STATUS_BYTE) -> None:
        self.written = bytearray()
        self.status_byte = status_byte
        self.flushes = 0
        self._pending_reply = 0

    def write(self, data: bytes) -> int:
        self.written.extend(data)
        # Every DLE EOT n query gets one status byte back
        self._pending_reply += bytes(data).count(b"\x10\x04")
        return len(data)

    def readinto(self, buffer: bytearray) -> int:
        if not self._pending_reply or not buffer:
            return 0
        self._pending_reply -= 1
        buffer[0] = self.status_byte
        return 1

    def flush(self) -> None:
        self.flushes += 1


class SerialLink:
    """Shared serial line with fail-fast exclusive access."""

    def __init__(self, path: str, port: Any, lock: threading.Lock | None = None) -> None:
        self._path = path
        self._port = port
        self._lock = lock if lock is not None else threading.Lock()
        self._reserved = False

    @classmethod
    def open(
        cls,
        path: str,
        baud_rate: int = 9600,
        timeout: float | None = None,
    ) -> "SerialLink":
        """Open the serial device with the same timeout for reads and writes."""
        real_timeout = DEFAULT_TIMEOUT_SECONDS if timeout is None else timeout
        try:
            port = serial.Serial(
                port=path,
                baudrate=baud_rate,
                timeout=real_timeout,
                write_timeout=real_timeout,
            )
        except (serial.SerialException, ValueError) as e:
            raise DeviceIOError(f"Could not open serial port {path}: {e}") from e
        logger.info("Opened %s at %d baud (timeout %.1fs)", path, baud_rate, real_timeout)
        return cls(path, port)

    @property
    def name(self) -> str:
        return f"Serial port ({self._path})"

    def clone(self) -> "SerialLink":
        """Return a link sharing this one's handle and lock (never the reservation)."""
        return SerialLink(self._path, self._port, self._lock)

    @property
    def reserved(self) -> bool:
        return self._reserved

    def reserve(self) -> None:
        """Hold the line until release(); other links fail with DeviceBusyError.

        Reads, writes and flushes through this link then run under the
        reservation, so a multi-step session cannot be interleaved.
        """
        if self._reserved:
            return
        if not self._lock.acquire(blocking=False):
            logger.warning("%s busy, reservation rejected", self.name)
            raise DeviceBusyError(f"{self.name} is busy, reservation rejected")
        self._reserved = True

    def release(self) -> None:
        if self._reserved:
            self._reserved = False
            self._lock.release()

    @contextmanager
    def _exclusive(self, operation: str) -> Iterator[Any]:
        if self._reserved:
            yield self._port
            return
        if not self._lock.acquire(blocking=False):
            logger.warning("%s busy, %s rejected", self.name, operation)
            raise DeviceBusyError(f"{self.name} is busy, {operation} rejected")
        try:
            yield self._port
        finally:
            self._lock.release()

    def write(self, data: bytes) -> None:
        """Write all of data or raise."""
        with self._exclusive("write") as port:
            try:
                port.write(data)
            except serial.SerialTimeoutException as e:
                raise DeviceTimeoutError(f"{self.name}: write timed out") from e
            except (serial.SerialException, OSError) as e:
                raise DeviceIOError(f"{self.name}: write failed: {e}") from e
        logger.debug("%s: wrote %d bytes", self.name, len(data))

    def read(self, buffer: bytearray) -> int:
        """Read into buffer until it is full or the read timeout expires.

        Returns the number of bytes received; zero means the timeout expired.
        """
        with self._exclusive("read") as port:
            try:
                return port.readinto(buffer)
            except (serial.SerialException, OSError) as e:
                raise DeviceIOError(f"{self.name}: read failed: {e}") from e

    def flush(self) -> None:
        with self._exclusive("flush") as port:
            try:
                port.flush()
            except serial.SerialTimeoutException as e:
                raise DeviceTimeoutError(f"{self.name}: flush timed out") from e
            except (serial.SerialException, OSError) as e:
                raise DeviceIOError(f"{self.name}: flush failed: {e}") from e


def open_link(settings: Settings) -> SerialLink:
    """Open the configured device, or an in-memory link when MOCK_PRINTER is set."""
    if settings.mock_printer:
        logger.info("MOCK_PRINTER enabled, printing to memory")
        return SerialLink("mock", MockPort())
    return SerialLink.open(settings.serial_port, settings.baudrate, settings.serial_timeout)
