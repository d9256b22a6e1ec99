"""
Flash writer.

Streams an image to SPI flash as fixed-size, checksummed, sequence-numbered
FLASH_DATA blocks. The ROM erases the whole region while handling FLASH_BEGIN,
so that command gets a timeout scaled by the write size.
"""

import logging
import struct
from typing import Callable, Optional

from . import frames
from .command import CommandTransport
from ..errors import FlashWriteFailed, FlasherError, OperationInProgress, TransportClosed

logger = logging.getLogger(__name__)

FLASH_FILL = 0xFF

ProgressCallback = Callable[[int, int], None]


def block_count(length: int, block_size: int) -> int:
    """Number of blocks needed for `length` bytes (ceil division)."""
    return (length + block_size - 1) // block_size


class FlashWriter:
    """
    Writes data to flash through the current dialect.

    Example:
        writer = FlashWriter(commands, rom_encrypted_word=True)
        writer.write(0x10000, firmware, on_progress=lambda done, total: print(done, total))
    """

    def __init__(
        self,
        commands: CommandTransport,
        rom_encrypted_word: bool = False,
        block_size: Optional[int] = None,
    ):
        self.commands = commands
        self.config = commands.config
        self.rom_encrypted_word = rom_encrypted_word
        self._block_size = block_size

    @property
    def block_size(self) -> int:
        """Explicit block size if given, otherwise the current dialect's."""
        return self._block_size or self.commands.dialect.block_size

    def begin(self, address: int, size: int) -> int:
        """
        Send FLASH_BEGIN (the device erases the region here).

        Returns:
            Number of blocks to write
        """
        blocks = block_count(size, self.block_size)
        payload = frames.begin_payload(size, blocks, self.block_size, address)
        if self.rom_encrypted_word and not self.commands.dialect.is_stub:
            payload += struct.pack("<I", 0)

        timeout = self.config.timeout_per_mb(self.config.erase_timeout_per_mb, size)
        logger.debug(
            f"FLASH_BEGIN size={size} blocks={blocks} block_size=0x{self.block_size:X} "
            f"addr=0x{address:08X} timeout={timeout:.1f}s"
        )
        self.commands.send(frames.FLASH_BEGIN, payload, timeout=timeout)
        return blocks

    def write_block(self, block: bytes, seq: int) -> None:
        self.commands.send(
            frames.FLASH_DATA,
            frames.data_payload(block, seq),
            frames.checksum(block),
        )

    def finish(self, reboot: bool = False) -> None:
        """Send FLASH_END; reboot=True restarts into the application."""
        self.commands.send(frames.FLASH_END, frames.flash_end_payload(reboot))

    def write(
        self,
        address: int,
        data: bytes,
        on_progress: Optional[ProgressCallback] = None,
        reboot: bool = False,
    ) -> int:
        """
        Write `data` to flash at `address`.

        Args:
            address: Flash offset
            data: Image bytes
            on_progress: Called once per acknowledged block with
                (real bytes written so far, total bytes)
            reboot: Reboot into the application after the write

        Returns:
            Number of blocks written

        Raises:
            FlashWriteFailed: Begin, a block or the end command failed;
                block_index is -1 for FLASH_BEGIN and the block count for FLASH_END
            TransportClosed: Transport closed during the write
            OperationInProgress: Another command is in flight
        """
        total = len(data)
        if total == 0:
            logger.info("Nothing to write")
            return 0

        try:
            blocks = self.begin(address, total)
        except (TransportClosed, OperationInProgress):
            raise
        except FlasherError as e:
            raise FlashWriteFailed(-1, f"FLASH_BEGIN failed: {e}") from e

        logger.info(f"Writing {total} bytes at 0x{address:08X} in {blocks} blocks...")
        written = 0
        for seq, block in frames.iter_blocks(data, self.block_size, fill=FLASH_FILL):
            try:
                self.write_block(block, seq)
            except (TransportClosed, OperationInProgress):
                raise
            except FlasherError as e:
                raise FlashWriteFailed(seq, str(e)) from e

            written = min(written + self.block_size, total)
            if on_progress:
                on_progress(written, total)
            logger.debug(f"Block {seq + 1}/{blocks} acknowledged ({written}/{total} bytes)")

        try:
            self.finish(reboot)
        except (TransportClosed, OperationInProgress):
            raise
        except FlasherError as e:
            raise FlashWriteFailed(blocks, f"FLASH_END failed: {e}") from e

        logger.info(f"Wrote {total} bytes at 0x{address:08X}")
        return blocks
