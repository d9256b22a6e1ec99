"""
Byte-stream transport layer.

The protocol engine only talks to the `Transport` interface: a byte stream
with two control lines (reset and bootstrap) and a settable baud rate.
`SerialTransport` implements it over pyserial for USB-UART bridges and the
chips' native USB-JTAG-serial port.

Control line mapping on standard ESP boards:
    RTS -> EN (reset),   asserted = chip held in reset
    DTR -> GPIO0/9 (bootstrap), asserted = boot into ROM download mode
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from ..errors import FlasherError, TransportClosed

logger = logging.getLogger(__name__)


class Transport(ABC):
    """
    Transport contract used by the protocol engine.

    Implementations must make read() return early with whatever arrived
    (possibly b"") once `timeout` seconds have passed, and must raise
    TransportClosed from read()/write() once the transport is closed.
    """

    def __init__(self) -> None:
        self.on_disconnect: Optional[Callable[[], None]] = None
        self._disconnect_lock = threading.Lock()
        self._disconnect_fired = False

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    def read(self, size: int, timeout: float) -> bytes:
        ...

    @abstractmethod
    def set_control_lines(self, reset: bool, bootstrap: bool, reset_first: bool = False) -> None:
        """Drive both lines; `reset_first` changes the reset line before bootstrap."""

    @abstractmethod
    def set_baud_rate(self, baud: int) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def reset_input_buffer(self) -> None:
        """Discard any buffered input. Optional for implementations."""

    def _notify_disconnect(self) -> None:
        """Fire the disconnect notification at most once."""
        with self._disconnect_lock:
            if self._disconnect_fired:
                return
            self._disconnect_fired = True
        logger.debug("Transport disconnected")
        if self.on_disconnect:
            self.on_disconnect()


class SerialTransport(Transport):
    """
    pyserial implementation of the transport contract.

    Example:
        transport = SerialTransport("/dev/ttyUSB0")
        transport.open()
        transport.write(frame)
        data = transport.read(256, timeout=0.1)
        transport.close()
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        write_timeout: float = 10.0,
    ):
        """
        Initialize transport.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            baudrate: Initial baud rate (ROM bootloader default 115200)
            write_timeout: Serial write timeout in seconds
        """
        super().__init__()
        self.port = port
        self.baudrate = baudrate
        self.write_timeout = write_timeout
        self.ser: Optional[serial.Serial] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return bool(self.ser and self.ser.is_open and not self._closing)

    def open(self) -> None:
        """
        Open the serial port without toggling the control lines.

        Raises:
            TransportClosed: If the port cannot be opened
        """
        try:
            ser = serial.Serial()
            ser.port = self.port
            ser.baudrate = self.baudrate
            ser.timeout = 0.1
            ser.write_timeout = self.write_timeout
            # Set lines before open so the chip is not reset by the open itself
            ser.dtr = False
            ser.rts = False
            ser.open()
            self.ser = ser
            self._closing = False
            logger.debug(f"Opened {self.port} at {self.baudrate} bps")
        except serial.SerialException as e:
            raise TransportClosed(f"Cannot open port {self.port}: {e}")

    def close(self) -> None:
        """Close the port; a read blocked in another thread fails with TransportClosed."""
        self._closing = True
        if self.ser and self.ser.is_open:
            try:
                self.ser.cancel_read()
            except (AttributeError, serial.SerialException) as e:
                logger.debug(f"cancel_read not available on {self.port}: {e}")
            self.ser.close()
            logger.debug(f"Closed {self.port}")
        self._notify_disconnect()

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise TransportClosed("Serial port not open")
        return self.ser

    def _lost(self, exc: Exception) -> TransportClosed:
        logger.debug(f"Serial error on {self.port}: {exc}")
        self._closing = True
        self._notify_disconnect()
        return TransportClosed(f"Serial port {self.port} disconnected: {exc}")

    def write(self, data: bytes) -> None:
        ser = self._require_open()
        try:
            written = ser.write(data)
            ser.flush()
        except serial.SerialException as e:
            raise self._lost(e)
        if written is not None and written != len(data):
            raise TransportClosed(f"Incomplete write: sent {written}/{len(data)} bytes")

    def read(self, size: int, timeout: float) -> bytes:
        ser = self._require_open()
        try:
            if ser.timeout != timeout:
                ser.timeout = timeout
            waiting = ser.in_waiting
            data = ser.read(max(1, min(size, waiting)) if waiting else 1)
        except (serial.SerialException, OSError) as e:
            raise self._lost(e)
        if self._closing:
            raise TransportClosed("Serial port closed during read")
        return data

    def set_control_lines(self, reset: bool, bootstrap: bool, reset_first: bool = False) -> None:
        ser = self._require_open()
        try:
            if reset_first:
                ser.rts = reset
                ser.dtr = bootstrap
                # usbser.sys only propagates DTR together with an RTS update
                ser.rts = reset
            else:
                ser.dtr = bootstrap
                ser.rts = reset
                ser.dtr = ser.dtr
        except serial.SerialException as e:
            raise self._lost(e)

    def set_baud_rate(self, baud: int) -> None:
        ser = self._require_open()
        try:
            ser.baudrate = baud
        except (serial.SerialException, ValueError) as e:
            raise FlasherError(f"Failed to set baud rate {baud}: {e}")
        self.baudrate = baud
        logger.debug(f"Baud rate set to {baud}")

    def reset_input_buffer(self) -> None:
        ser = self._require_open()
        try:
            ser.reset_input_buffer()
        except serial.SerialException as e:
            raise self._lost(e)


def open_serial(port: str, baudrate: int = 115200) -> SerialTransport:
    """
    Open a serial transport.

    Args:
        port: Serial port name
        baudrate: Baud rate (default 115200)

    Returns:
        SerialTransport instance (already open)
    """
    transport = SerialTransport(port, baudrate)
    transport.open()
    return transport
