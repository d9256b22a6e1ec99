"""
Command/response frame model for the ESP serial bootloader.

Frame layout (after SLIP decoding):
    [ direction | opcode | length (u16 LE) | checksum/value (u32 LE) | payload ]

direction is 0 for requests and 1 for responses. In requests the 32-bit field
is the data checksum (only used by MEM_DATA/FLASH_DATA); in responses it
carries the command's result value, e.g. the register contents for READ_REG.
The last 2 (stub) or 4 (ROM) bytes of a response payload are status bytes.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum

from ..errors import FramingError

HEADER = struct.Struct("<BBHI")
HEADER_SIZE = HEADER.size

CHECKSUM_SEED = 0xEF
MAX_PAYLOAD = 0xFFFF

# Commands with a dedicated high-level operation
SYNC = 0x08
READ_REG = 0x0A
WRITE_REG = 0x09
MEM_BEGIN = 0x05
MEM_END = 0x06
MEM_DATA = 0x07
FLASH_BEGIN = 0x02
FLASH_DATA = 0x03
FLASH_END = 0x04

# Reserved for future operations (ROM and stub)
SPI_SET_PARAMS = 0x0B
SPI_ATTACH = 0x0D
READ_FLASH_SLOW = 0x0E
CHANGE_BAUDRATE = 0x0F
FLASH_DEFL_BEGIN = 0x10
FLASH_DEFL_DATA = 0x11
FLASH_DEFL_END = 0x12
SPI_FLASH_MD5 = 0x13
GET_SECURITY_INFO = 0x14

# Stub-only commands
ERASE_FLASH = 0xD0
ERASE_REGION = 0xD1
READ_FLASH = 0xD2
RUN_USER_CODE = 0xD3

SYNC_PAYLOAD = b"\x07\x07\x12\x20" + 32 * b"\x55"

COMMAND_NAMES = {
    SYNC: "SYNC",
    READ_REG: "READ_REG",
    WRITE_REG: "WRITE_REG",
    MEM_BEGIN: "MEM_BEGIN",
    MEM_END: "MEM_END",
    MEM_DATA: "MEM_DATA",
    FLASH_BEGIN: "FLASH_BEGIN",
    FLASH_DATA: "FLASH_DATA",
    FLASH_END: "FLASH_END",
    CHANGE_BAUDRATE: "CHANGE_BAUDRATE",
    READ_FLASH: "READ_FLASH",
}


class Direction(IntEnum):
    """Frame direction byte."""
    REQUEST = 0
    RESPONSE = 1


@dataclass(frozen=True)
class Frame:
    """A decoded frame. For responses `checksum` holds the result value."""
    direction: Direction
    opcode: int
    payload: bytes
    checksum: int = 0

    @property
    def value(self) -> int:
        return self.checksum


@dataclass(frozen=True)
class Response:
    """
    A response split into its parts.

    Attributes:
        opcode: Echoed command opcode
        value: 32-bit result value from the header
        data: Payload bytes preceding the status trailer
        status: Status trailer (first byte 0 on success, second byte error code)
    """
    opcode: int
    value: int
    data: bytes
    status: bytes

    @property
    def ok(self) -> bool:
        return self.status[0] == 0

    @property
    def error_code(self) -> int:
        return self.status[1] if len(self.status) > 1 else 0


def command_name(opcode: int) -> str:
    return COMMAND_NAMES.get(opcode, f"0x{opcode:02X}")


def checksum(data: bytes, seed: int = CHECKSUM_SEED) -> int:
    """
    Calculate the data checksum used by MEM_DATA and FLASH_DATA.

    Every byte is XORed into the seed; the result always fits in one byte.
    """
    state = seed
    for byte in data:
        state ^= byte
    return state


def encode_frame(frame: Frame) -> bytes:
    """Serialize a frame to header + payload (before SLIP encoding)."""
    if len(frame.payload) > MAX_PAYLOAD:
        raise ValueError(f"Payload too large: {len(frame.payload)} bytes (max {MAX_PAYLOAD})")
    header = HEADER.pack(int(frame.direction), frame.opcode, len(frame.payload), frame.checksum)
    return header + frame.payload


def encode_request(opcode: int, payload: bytes = b"", checksum_value: int = 0) -> bytes:
    """Serialize a request frame."""
    return encode_frame(Frame(Direction.REQUEST, opcode, payload, checksum_value))


def decode_frame(raw: bytes) -> Frame:
    """
    Parse a SLIP-decoded frame.

    Raises:
        FramingError: Short header, unknown direction or length mismatch
    """
    if len(raw) < HEADER_SIZE:
        raise FramingError(f"Frame too short ({len(raw)} bytes): {raw.hex()}")

    direction, opcode, length, value = HEADER.unpack(raw[:HEADER_SIZE])
    if direction not in (Direction.REQUEST, Direction.RESPONSE):
        raise FramingError(f"Invalid direction byte 0x{direction:02X}")

    payload = raw[HEADER_SIZE:]
    if len(payload) != length:
        raise FramingError(
            f"Length mismatch for opcode 0x{opcode:02X}: "
            f"header says {length}, got {len(payload)}"
        )
    return Frame(Direction(direction), opcode, payload, value)


def parse_response(frame: Frame, status_len: int) -> Response:
    """
    Split a response frame into data and status trailer.

    Replies shorter than the dialect's trailer are accepted as long as the
    two mandatory status bytes are present.

    Raises:
        FramingError: Fewer than two status bytes
    """
    payload = frame.payload
    if len(payload) < 2:
        raise FramingError(
            f"Response to 0x{frame.opcode:02X} has only {len(payload)} status byte(s)"
        )
    split = max(0, len(payload) - status_len)
    return Response(
        opcode=frame.opcode,
        value=frame.value,
        data=payload[:split],
        status=payload[split:],
    )


# Payload builders

def begin_payload(size: int, blocks: int, block_size: int, offset: int) -> bytes:
    """MEM_BEGIN / FLASH_BEGIN parameters."""
    return struct.pack("<IIII", size, blocks, block_size, offset)


def data_payload(block: bytes, seq: int) -> bytes:
    """MEM_DATA / FLASH_DATA parameters followed by the block."""
    return struct.pack("<IIII", len(block), seq, 0, 0) + block


def mem_end_payload(entry: int, execute: bool = True) -> bytes:
    """MEM_END: execute flag is 0 to jump to `entry`, 1 to stay in the loader."""
    return struct.pack("<II", 0 if execute else 1, entry)


def flash_end_payload(reboot: bool = False) -> bytes:
    """FLASH_END: 0 reboots into the application, 1 stays in the loader."""
    return struct.pack("<I", int(not reboot))


def read_reg_payload(address: int) -> bytes:
    return struct.pack("<I", address)


def write_reg_payload(address: int, value: int, mask: int = 0xFFFFFFFF, delay_us: int = 0) -> bytes:
    return struct.pack("<IIII", address, value, mask, delay_us)


def iter_blocks(data: bytes, block_size: int, fill: int):
    """
    Yield (index, block) pairs, the last block padded to block_size with `fill`.
    """
    for index, offset in enumerate(range(0, len(data), block_size)):
        block = data[offset:offset + block_size]
        if len(block) < block_size:
            block = block + bytes([fill]) * (block_size - len(block))
        yield index, block
