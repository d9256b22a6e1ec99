"""
ESP Serial Flasher - serial bootloader client for ESP32-C3/C6/S2/S3 chips

SLIP-framed command protocol, bootloader handshake, chip identification,
flasher stub upload and block-oriented flash writes.
"""

__version__ = "0.1.0"

from esp_serial_flasher.config import LoaderConfig
from esp_serial_flasher.core.session import Session, SessionState
from esp_serial_flasher.models.chips import ChipIdentity
from esp_serial_flasher.protocol.transport import Transport, SerialTransport, open_serial

__all__ = [
    "LoaderConfig",
    "Session",
    "SessionState",
    "ChipIdentity",
    "Transport",
    "SerialTransport",
    "open_serial",
    "__version__",
]
