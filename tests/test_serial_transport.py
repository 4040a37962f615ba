"""Tests for the pyserial-backed transport."""

import time
from unittest.mock import MagicMock

import pytest
import serial

from emc_flasher.protocol.frame import CMD_DATA, HeaderVariant, decode_frame, encode_frame
from emc_flasher.protocol.serial_transport import SerialTransport, open_serial
from emc_flasher.protocol.transport import NO_DATA, ConnectError, TransportIOError


def make_port(is_open=True, waiting=0):
    ser = MagicMock()
    ser.port = "COM3"
    ser.is_open = is_open
    ser.in_waiting = waiting
    return ser


class TestSerialTransport:
    def test_read_returns_nothing_when_idle(self):
        ser = make_port(waiting=0)
        transport = SerialTransport(ser)
        assert transport.read(4) == b""
        assert transport.read_byte() == NO_DATA
        ser.read.assert_not_called()

    def test_read_available(self):
        ser = make_port(waiting=3)
        ser.read.return_value = b"\x45"
        transport = SerialTransport(ser)
        assert transport.bytes_to_read == 3
        assert transport.read_byte() == 0x45
        ser.read.assert_called_once_with(1)

    def test_bytes_to_read_closed(self):
        assert SerialTransport(make_port(is_open=False, waiting=5)).bytes_to_read == 0

    def test_write_flushes(self):
        ser = make_port()
        ser.write.return_value = 3
        SerialTransport(ser).write(b"abc")
        ser.write.assert_called_once_with(b"abc")
        ser.flush.assert_called_once()

    def test_write_error_closes_port(self):
        ser = make_port()
        ser.write.side_effect = serial.SerialException("device unplugged")
        transport = SerialTransport(ser)
        with pytest.raises(TransportIOError):
            transport.write(b"abc")
        ser.close.assert_called_once()

    def test_incomplete_write(self):
        ser = make_port()
        ser.write.return_value = 1
        with pytest.raises(TransportIOError):
            SerialTransport(ser).write(b"abc")

    def test_write_when_closed(self):
        ser = make_port(is_open=False)
        with pytest.raises(TransportIOError):
            SerialTransport(ser).write(b"abc")
        ser.write.assert_not_called()

    def test_open_flushes_buffers(self):
        ser = make_port(is_open=False)
        SerialTransport(ser).open()
        ser.open.assert_called_once()
        ser.reset_input_buffer.assert_called_once()
        ser.reset_output_buffer.assert_called_once()

    def test_context_manager_closes(self):
        ser = make_port()
        with SerialTransport(ser) as transport:
            assert transport.is_open
        ser.close.assert_called_once()

    def test_str(self):
        assert str(SerialTransport(make_port())) == "Serial(COM3)"


class TestOpenSerial:
    def test_configures_8n1(self):
        ser = make_port(is_open=False)
        transport = open_serial("COM5", 57600, timeout=1.5, device=ser)
        assert isinstance(transport, SerialTransport)
        assert ser.port == "COM5"
        assert ser.baudrate == 57600
        assert ser.bytesize == serial.EIGHTBITS
        assert ser.parity == serial.PARITY_NONE
        assert ser.stopbits == serial.STOPBITS_ONE
        assert ser.timeout == 1.5
        assert ser.dtr is True
        assert ser.rts is False
        ser.open.assert_called_once()

    def test_open_failure(self):
        ser = make_port(is_open=False)
        ser.open.side_effect = serial.SerialException("could not open port COM9")
        with pytest.raises(ConnectError):
            open_serial("COM9", device=ser)


class TestLoopbackPort:
    """Real pyserial loop:// device."""

    def test_partial_frame_respects_decode_deadline(self):
        port = serial.serial_for_url("loop://", timeout=2.0)
        transport = SerialTransport(port)
        try:
            truncated = encode_frame(HeaderVariant.EMC, CMD_DATA, bytes(range(20)))[:10]
            transport.write(truncated)
            start = time.monotonic()
            assert decode_frame(transport, HeaderVariant.EMC, 200) is None
            assert time.monotonic() - start < 0.5
        finally:
            transport.close()

    def test_read_returns_only_waiting_bytes(self):
        port = serial.serial_for_url("loop://", timeout=2.0)
        transport = SerialTransport(port)
        try:
            transport.write(b"\x01\x02\x03")
            assert wait_for(lambda: transport.bytes_to_read == 3)
            start = time.monotonic()
            assert transport.read(64) == b"\x01\x02\x03"
            assert time.monotonic() - start < 0.5
        finally:
            transport.close()


def wait_for(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False
