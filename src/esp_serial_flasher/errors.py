"""
Exception taxonomy for the flashing protocol engine.

Every failure the engine reports derives from FlasherError so callers can
catch the whole family in one place, while the subclasses keep enough detail
(device error code, failing block, unknown magic value) to act on.
"""

from typing import Optional


# Error codes reported in the second status byte by the ROM bootloader
ROM_ERROR_CODES = {
    0x05: "received message is invalid",
    0x06: "failed to act on received message",
    0x07: "invalid CRC in message",
    0x08: "flash write error",
    0x09: "flash read error",
    0x0A: "flash read length error",
    0x0B: "deflate error",
}

# Error codes reported by the flasher stub
STUB_ERROR_CODES = {
    0xC0: "bad data length",
    0xC1: "bad data checksum",
    0xC2: "bad blocksize",
    0xC3: "invalid command",
    0xC4: "SPI operation failed",
    0xC5: "SPI unlock failed",
    0xC6: "not in flash mode",
    0xC7: "inflate error",
    0xC8: "not enough data",
    0xC9: "too much data",
    0xFF: "command not implemented",
}


def describe_error_code(code: int) -> str:
    """Return a human-readable description for a device error code."""
    if code in ROM_ERROR_CODES:
        return ROM_ERROR_CODES[code]
    if code in STUB_ERROR_CODES:
        return STUB_ERROR_CODES[code]
    return "unknown error"


class FlasherError(Exception):
    """Base exception for all flasher errors"""
    pass


class ProtocolError(FlasherError):
    """Malformed data on the wire"""
    pass


class FramingError(ProtocolError):
    """Invalid SLIP framing or a frame whose length field does not match"""
    pass


class CommandTimeout(FlasherError):
    """No matching response arrived within the attempt budget"""

    def __init__(self, opcode: int, attempts: int):
        self.opcode = opcode
        self.attempts = attempts
        super().__init__(
            f"No response to command 0x{opcode:02X} after {attempts} attempt(s)"
        )


class DeviceError(FlasherError):
    """The device explicitly rejected a command"""

    def __init__(self, code: int, opcode: Optional[int] = None, status: bytes = b""):
        self.code = code
        self.opcode = opcode
        self.status = status
        where = f" for command 0x{opcode:02X}" if opcode is not None else ""
        super().__init__(
            f"Device error 0x{code:02X}{where}: {describe_error_code(code)}"
        )


class SyncFailed(FlasherError):
    """Bootloader did not answer SYNC"""
    pass


class UnsupportedChipError(FlasherError):
    """Chip magic value is not in the chip table"""

    def __init__(self, magic: int):
        self.magic = magic
        super().__init__(f"Unsupported chip (magic value 0x{magic:08X})")


class StubUploadFailed(FlasherError):
    """Stub upload or start-up did not complete"""
    pass


class StubRequiredError(FlasherError):
    """Operation is only available once the flasher stub is running"""
    pass


class FlashWriteFailed(FlasherError):
    """Flash write aborted part-way through"""

    def __init__(self, block_index: int, reason: str = ""):
        self.block_index = block_index
        detail = f": {reason}" if reason else ""
        super().__init__(f"Flash write failed at block {block_index}{detail}")


class TransportClosed(FlasherError):
    """Transport was closed or disconnected during an operation"""
    pass


class OperationInProgress(FlasherError):
    """Another operation is already using the transport"""
    pass
