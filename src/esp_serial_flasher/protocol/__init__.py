"""Serial bootloader protocol layer - framing, commands, handshake, stub and flash."""

from .slip import SlipDecoder
from .frames import Frame, Response, Direction, checksum, encode_request, decode_frame
from .dialect import Dialect, DialectKind, ROM_DIALECT, STUB_DIALECT
from .transport import Transport, SerialTransport, open_serial
from .command import CommandTransport
from .handshake import HandshakeController, HandshakeState, hard_reset
from .identify import identify_chip, read_chip_magic
from .stub_loader import StubLoader, STUB_GREETING
from .flash_writer import FlashWriter

__all__ = [
    # Framing
    "SlipDecoder",
    "Frame",
    "Response",
    "Direction",
    "checksum",
    "encode_request",
    "decode_frame",
    # Dialects
    "Dialect",
    "DialectKind",
    "ROM_DIALECT",
    "STUB_DIALECT",
    # Transport
    "Transport",
    "SerialTransport",
    "open_serial",
    "CommandTransport",
    # Session building blocks
    "HandshakeController",
    "HandshakeState",
    "hard_reset",
    "identify_chip",
    "read_chip_magic",
    "StubLoader",
    "STUB_GREETING",
    "FlashWriter",
]
