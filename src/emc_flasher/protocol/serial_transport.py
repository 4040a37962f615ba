"""
Serial EMC Transport

Wraps an already-configured pyserial device. Baud rate, parity and stop
bits are chosen by whoever creates the ``serial.Serial`` instance;
open_serial() provides the settings used by the cabinet controllers.
"""

import logging
from typing import Optional

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from .transport import EmcTransport, ConnectError, TransportIOError, NO_DATA

logger = logging.getLogger(__name__)

DEFAULT_BAUDRATE = 115200
DEFAULT_TIMEOUT = 2.0


class SerialTransport(EmcTransport):
    """
    EMC transport over an RS-232 device.

    Reads check ``in_waiting`` before touching the device so the sender's
    polling loop never blocks on an empty line.
    """

    def __init__(self, ser: "serial.Serial"):
        if ser is None:
            raise ValueError("serial device is required")
        self.ser = ser

    @property
    def is_open(self) -> bool:
        return bool(self.ser.is_open)

    @property
    def bytes_to_read(self) -> int:
        if not self.ser.is_open:
            return 0
        try:
            return self.ser.in_waiting
        except serial.SerialException:
            return 0

    def open(self) -> None:
        if not self.ser.is_open:
            self.ser.open()
            logger.debug(f"Opened {self.ser.port}")
        self.discard_in_buffer()
        self.discard_out_buffer()

    def close(self) -> None:
        try:
            if self.ser.is_open:
                self.ser.close()
                logger.debug(f"Closed {self.ser.port}")
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Ignoring error while closing {self.ser.port}: {e}")

    def discard_in_buffer(self) -> None:
        try:
            self.ser.reset_input_buffer()
        except (serial.SerialException, OSError):
            pass

    def discard_out_buffer(self) -> None:
        try:
            self.ser.reset_output_buffer()
        except (serial.SerialException, OSError):
            pass

    def read(self, count: int) -> bytes:
        available = self.bytes_to_read
        if count <= 0 or available <= 0:
            return b""
        try:
            # Never ask for more than is waiting; ser.read blocks for the rest
            return self.ser.read(min(count, available))
        except serial.SerialTimeoutException:
            return b""
        except serial.SerialException as e:
            logger.debug(f"Read error on {self.ser.port}: {e}")
            return b""

    def read_byte(self) -> int:
        data = self.read(1)
        if not data:
            return NO_DATA
        return data[0]

    def write(self, data: bytes) -> None:
        if not self.ser.is_open:
            raise TransportIOError(f"{self} is not open")
        try:
            written = self.ser.write(data)
            self.ser.flush()
        except (serial.SerialException, OSError) as e:
            self.close()
            raise TransportIOError(f"Write error on {self}: {e}")
        if written is not None and written != len(data):
            self.close()
            raise TransportIOError(
                f"Incomplete write on {self}: sent {written}/{len(data)} bytes"
            )

    def __str__(self) -> str:
        return f"Serial({self.ser.port})"


def open_serial(
    port: str,
    baudrate: int = DEFAULT_BAUDRATE,
    timeout: float = DEFAULT_TIMEOUT,
    device: Optional["serial.Serial"] = None,
) -> SerialTransport:
    """
    Open a serial device configured for the cabinet controller.

    Args:
        port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
        baudrate: Baud rate (default 115200)
        timeout: Read/write timeout in seconds (default 2.0)
        device: Pre-built ``serial.Serial`` to configure instead of a new one

    Returns:
        SerialTransport instance (already open)

    Raises:
        ConnectError: If the port cannot be opened
    """
    ser = device if device is not None else serial.Serial()
    ser.port = port
    ser.baudrate = baudrate
    ser.bytesize = serial.EIGHTBITS
    ser.parity = serial.PARITY_NONE
    ser.stopbits = serial.STOPBITS_ONE
    ser.timeout = timeout
    ser.write_timeout = timeout
    ser.xonxoff = False
    ser.rtscts = False
    ser.dtr = True
    ser.rts = False

    transport = SerialTransport(ser)
    try:
        transport.open()
    except (serial.SerialException, OSError) as e:
        raise ConnectError(f"Cannot open port {port}: {e}")

    logger.debug(f"Opened {port} at {baudrate} bps (timeout={timeout}s)")
    return transport
