"""Tests for SerialLink exclusive access and error mapping."""

import threading
from unittest.mock import MagicMock, patch

import pytest
import serial

from config import Settings
from errors import DeviceBusyError, DeviceIOError, DeviceTimeoutError
from serial_link import DEFAULT_TIMEOUT_SECONDS, MockPort, SerialLink, open_link


class FakePort:
    """pyserial-like handle whose write can be held open by a gate."""

    def __init__(self, incoming: bytes = b"") -> None:
        self.written = bytearray()
        self.incoming = bytearray(incoming)
        self.flushes = 0
        self.gate: threading.Event | None = None
        self.entered = threading.Event()

    def write(self, data: bytes) -> int:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        self.written.extend(data)
        return len(data)

    def readinto(self, buffer: bytearray) -> int:
        n = min(len(buffer), len(self.incoming))
        buffer[:n] = self.incoming[:n]
        del self.incoming[:n]
        return n

    def flush(self) -> None:
        self.flushes += 1


@pytest.fixture
def port():
    return FakePort()


@pytest.fixture
def link(port):
    return SerialLink("/dev/ttyTEST", port)


def _hold_link(link: SerialLink, port: FakePort) -> tuple[threading.Thread, threading.Event, list]:
    """Start a write in a thread and keep it in flight until the gate is set."""
    gate = threading.Event()
    port.gate = gate
    errors: list[Exception] = []

    def writer() -> None:
        try:
            link.write(b"first")
        except Exception as e:  # pragma: no cover - reported through the list
            errors.append(e)

    thread = threading.Thread(target=writer)
    thread.start()
    assert port.entered.wait(5)
    return thread, gate, errors


class TestOpen:
    def test_open_applies_timeout_to_both_directions(self):
        with patch("serial_link.serial.Serial") as serial_cls:
            link = SerialLink.open("/dev/ttyUSB0", 9600, 5.0)
        serial_cls.assert_called_once_with(
            port="/dev/ttyUSB0", baudrate=9600, timeout=5.0, write_timeout=5.0
        )
        assert link.name == "Serial port (/dev/ttyUSB0)"

    def test_open_defaults_timeout(self):
        with patch("serial_link.serial.Serial") as serial_cls:
            SerialLink.open("/dev/ttyUSB0")
        kwargs = serial_cls.call_args.kwargs
        assert kwargs["timeout"] == DEFAULT_TIMEOUT_SECONDS
        assert kwargs["write_timeout"] == DEFAULT_TIMEOUT_SECONDS

    def test_open_failure_raises_io_error(self):
        with patch(
            "serial_link.serial.Serial", side_effect=serial.SerialException("no such device")
        ):
            with pytest.raises(DeviceIOError, match="no such device") as exc_info:
                SerialLink.open("/dev/missing", 9600)
        assert exc_info.value.kind == "io"


class TestExclusiveAccess:
    def test_concurrent_write_one_succeeds_other_busy(self, link, port):
        thread, gate, errors = _hold_link(link, port)
        try:
            with pytest.raises(DeviceBusyError) as exc_info:
                link.clone().write(b"second")
        finally:
            gate.set()
            thread.join(5)

        assert not thread.is_alive()
        assert errors == []
        assert bytes(port.written) == b"first"
        assert exc_info.value.kind == "busy"

    def test_read_and_flush_are_rejected_while_writing(self, link, port):
        thread, gate, _ = _hold_link(link, port)
        try:
            with pytest.raises(DeviceBusyError):
                link.read(bytearray(4))
            with pytest.raises(DeviceBusyError):
                link.flush()
        finally:
            gate.set()
            thread.join(5)
        assert port.flushes == 0

    def test_link_is_usable_again_after_contention(self, link, port):
        thread, gate, _ = _hold_link(link, port)
        with pytest.raises(DeviceBusyError):
            link.write(b"x")
        gate.set()
        thread.join(5)

        port.gate = None
        link.write(b"again")
        assert bytes(port.written) == b"firstagain"

    def test_clone_shares_handle(self, link, port):
        clone = link.clone()
        clone.write(b"abc")
        assert bytes(port.written) == b"abc"
        assert clone.name == link.name

    def test_reservation_blocks_other_links_until_released(self, link, port):
        owner, other = link.clone(), link.clone()
        owner.reserve()
        owner.write(b"one")
        owner.write(b"two")

        with pytest.raises(DeviceBusyError):
            other.write(b"intruder")
        with pytest.raises(DeviceBusyError):
            other.reserve()

        owner.release()
        other.write(b"three")
        assert bytes(port.written) == b"onetwothree"

    def test_reserve_is_idempotent_and_release_is_safe_twice(self, link):
        link.reserve()
        link.reserve()
        assert link.reserved
        link.release()
        link.release()
        assert not link.reserved
        assert not link.clone().reserved


class TestOperations:
    def test_read_returns_received_count(self):
        link = SerialLink("/dev/ttyTEST", FakePort(incoming=b"\x12"))
        buf = bytearray(4)
        assert link.read(buf) == 1
        assert buf[0] == 0x12

    def test_read_timeout_returns_zero(self, link):
        assert link.read(bytearray(1)) == 0

    def test_flush(self, link, port):
        link.flush()
        assert port.flushes == 1

    def test_write_timeout_raises_timeout_error(self):
        port = MagicMock()
        port.write.side_effect = serial.SerialTimeoutException("Write timeout")
        link = SerialLink("/dev/ttyTEST", port)

        with pytest.raises(DeviceTimeoutError) as exc_info:
            link.write(b"data")
        assert isinstance(exc_info.value, DeviceIOError)
        assert exc_info.value.kind == "io"

    def test_io_failure_raises_io_error_and_releases_lock(self):
        port = MagicMock()
        port.write.side_effect = [serial.SerialException("device disconnected"), 4]
        link = SerialLink("/dev/ttyTEST", port)

        with pytest.raises(DeviceIOError, match="device disconnected"):
            link.write(b"data")
        link.write(b"data")

    def test_read_failure_raises_io_error(self):
        port = MagicMock()
        port.readinto.side_effect = OSError("read error")
        link = SerialLink("/dev/ttyTEST", port)

        with pytest.raises(DeviceIOError):
            link.read(bytearray(1))


class TestOpenLink:
    def test_mock_printer_uses_memory_port(self):
        settings = Settings(bot_token="t", admin_id=1, mock_printer=True)
        link = open_link(settings)
        link.write(b"hello")
        assert link.name == "Serial port (mock)"

    def test_real_printer_opens_configured_device(self):
        settings = Settings(
            bot_token="t", admin_id=1, serial_port="/dev/ttyS1", baudrate=19200, serial_timeout=2.0
        )
        with patch("serial_link.serial.Serial") as serial_cls:
            open_link(settings)
        serial_cls.assert_called_once_with(
            port="/dev/ttyS1", baudrate=19200, timeout=2.0, write_timeout=2.0
        )


class TestMockPort:
    def test_answers_status_queries(self):
        port = MockPort(status_byte=0x12)
        port.write(b"\x10\x04\x01")
        buf = bytearray(1)
        assert port.readinto(buf) == 1
        assert buf[0] == 0x12
        assert port.readinto(buf) == 0

    def test_records_written_bytes(self):
        port = MockPort()
        port.write(b"abc")
        port.flush()
        assert bytes(port.written) == b"abc"
        assert port.flushes == 1
