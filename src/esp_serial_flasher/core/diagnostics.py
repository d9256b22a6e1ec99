"""
Auxiliary operations built on the command transport.

Register and MAC reads work in either dialect. Flash reads (and therefore
the blank check) need the flasher stub: the ROM of the supported chips has no
flash read command.
"""

import hashlib
import logging
import struct
import time
from typing import Callable, Optional

from ..errors import (
    CommandTimeout,
    FlasherError,
    OperationInProgress,
    ProtocolError,
    StubRequiredError,
    TransportClosed,
)
from ..models.chips import CHIP_DETECT_MAGIC_REG_ADDR, ChipConfig
from ..protocol import frames
from ..protocol.command import CommandTransport

logger = logging.getLogger(__name__)

FLASH_SECTOR_SIZE = 0x1000
READ_FLASH_PACKETS_IN_FLIGHT = 64
BLANK_CHECK_BLOCK_SIZE = 0x1000

BlankCheckCallback = Callable[[int, int, int, int, int, int], None]


def read_reg(commands: CommandTransport, address: int) -> int:
    """Read a 32-bit register or memory word."""
    response = commands.send(frames.READ_REG, frames.read_reg_payload(address))
    return response.value


def write_reg(
    commands: CommandTransport,
    address: int,
    value: int,
    mask: int = 0xFFFFFFFF,
    delay_us: int = 0,
) -> None:
    """Write a 32-bit register or memory word."""
    commands.send(frames.WRITE_REG, frames.write_reg_payload(address, value, mask, delay_us))


def format_mac(mac_low: int, mac_high: int) -> str:
    """
    Format the base MAC from its two eFuse words.

    The low word holds the last four octets, the high word holds the first
    two octets in its lower 16 bits.
    """
    octets = struct.pack(">II", mac_high, mac_low)[2:]
    return ":".join(f"{b:02x}" for b in octets)


def read_mac(commands: CommandTransport, chip: ChipConfig) -> str:
    """Read the factory base MAC address as 'aa:bb:cc:dd:ee:ff'."""
    mac_low = read_reg(commands, chip.mac_efuse_reg)
    mac_high = read_reg(commands, chip.mac_efuse_reg + 4)
    return format_mac(mac_low, mac_high)


def test_reliability(
    commands: CommandTransport,
    callback: Optional[Callable[[float], None]] = None,
    iterations: int = 100,
    time_budget: Optional[float] = None,
    address: int = CHIP_DETECT_MAGIC_REG_ADDR,
) -> bool:
    """
    Probe link reliability by reading the same register repeatedly.

    Stops after `iterations` reads or once `time_budget` seconds have passed,
    whichever comes first.

    Args:
        commands: Command transport
        callback: Called with percent complete (0-100) after each read
        iterations: Maximum number of reads
        time_budget: Optional time limit in seconds
        address: Register to read

    Returns:
        True if every read succeeded and all values matched
    """
    if iterations < 1:
        raise ValueError("iterations must be >= 1")

    start = time.monotonic()
    expected: Optional[int] = None
    for i in range(iterations):
        try:
            value = read_reg(commands, address)
        except (TransportClosed, OperationInProgress):
            raise
        except FlasherError as e:
            logger.warning(f"Reliability probe: read {i + 1} failed: {e}")
            return False

        if expected is None:
            expected = value
        elif value != expected:
            logger.warning(
                f"Reliability probe: read {i + 1} returned 0x{value:08X}, expected 0x{expected:08X}"
            )
            return False

        elapsed = time.monotonic() - start
        fraction = (i + 1) / iterations
        if time_budget:
            fraction = max(fraction, elapsed / time_budget)
        if callback:
            callback(min(100.0, fraction * 100.0))
        if time_budget and elapsed >= time_budget:
            break

    logger.info("Reliability probe passed")
    return True


def read_flash(commands: CommandTransport, offset: int, length: int) -> bytes:
    """
    Read flash contents through the stub.

    Protocol:
        READ_FLASH(offset, length, sector size, packets in flight)
        <- one raw frame per sector, each acknowledged with the running byte count
        <- 16-byte MD5 digest of everything sent

    Raises:
        StubRequiredError: Stub is not running
        CommandTimeout: Data stopped arriving
        ProtocolError: Short packet, overrun or digest mismatch
    """
    if not commands.dialect.is_stub:
        raise StubRequiredError("Reading flash requires the flasher stub")

    commands.send(
        frames.READ_FLASH,
        struct.pack("<IIII", offset, length, FLASH_SECTOR_SIZE, READ_FLASH_PACKETS_IN_FLIGHT),
    )

    data = bytearray()
    while len(data) < length:
        packet = commands.read_frame(commands.config.timeout)
        if packet is None:
            raise CommandTimeout(frames.READ_FLASH, 1)
        data.extend(packet)
        if len(data) < length and len(packet) < FLASH_SECTOR_SIZE:
            raise ProtocolError(
                f"Corrupt data, expected 0x{FLASH_SECTOR_SIZE:x} bytes but received 0x{len(packet):x} bytes"
            )
        commands.write_frame(struct.pack("<I", len(data)))

    if len(data) > length:
        raise ProtocolError("Read more than expected")

    digest = commands.read_frame(commands.config.timeout)
    if digest is None:
        raise CommandTimeout(frames.READ_FLASH, 1)
    if len(digest) != 16:
        raise ProtocolError(f"Expected digest, got: {digest.hex()}")
    if hashlib.md5(data).digest() != digest:
        raise ProtocolError(
            f"Digest mismatch: expected {digest.hex()}, got {hashlib.md5(data).hexdigest()}"
        )
    return bytes(data)


def blank_check(
    commands: CommandTransport,
    callback: Optional[BlankCheckCallback],
    start: int,
    end: int,
    block_size: int = BLANK_CHECK_BLOCK_SIZE,
) -> int:
    """
    Count erased (0xFF) bytes in [start, end).

    After each block callback(block_address, start, end, block_size,
    erased_in_block, total_erased) is called.

    Returns:
        Total number of erased bytes
    """
    if end <= start:
        raise ValueError(f"Empty range 0x{start:X}-0x{end:X}")
    if block_size <= 0:
        raise ValueError("block_size must be positive")

    total = 0
    for address in range(start, end, block_size):
        size = min(block_size, end - address)
        block = read_flash(commands, address, size)
        erased = block.count(0xFF)
        total += erased
        if callback:
            callback(address, start, end, block_size, erased, total)
        logger.debug(f"Blank check 0x{address:08X}: {erased}/{size} erased")

    logger.info(f"Blank check 0x{start:08X}-0x{end:08X}: {total}/{end - start} bytes erased")
    return total


def change_baud(commands: CommandTransport, baud: int, current_baud: int) -> None:
    """
    Switch both ends of the link to a new baud rate.

    The stub takes the new and the old rate, the ROM only the new one.
    """
    second_arg = current_baud if commands.dialect.is_stub else 0
    commands.send(frames.CHANGE_BAUDRATE, struct.pack("<II", baud, second_arg))
    commands.transport.set_baud_rate(baud)
    # Discard whatever was sent during the switch
    time.sleep(0.05)
    commands.flush_input()
