"""
Flasher stub upload.

Protocol sequence (ROM dialect):
1. For each segment (code, then data):
   MEM_BEGIN(size, block count, block size, load address)
   MEM_DATA(len, seq, 0, 0 + block) per block, checksum of the block
2. MEM_END(execute, entry address)
3. Stub announces itself with a raw "OHAI" frame

Only after both the MEM_END acknowledgement and the greeting does the session
switch to the stub dialect.
"""

import logging
import time
from typing import Callable, Optional

from . import frames
from .command import CommandTransport
from .dialect import STUB_DIALECT
from ..errors import FlasherError, OperationInProgress, StubUploadFailed, TransportClosed
from ..models.stubs import StubImage

logger = logging.getLogger(__name__)

STUB_GREETING = b"OHAI"


class StubLoader:
    """
    Uploads a StubImage into RAM and starts it.

    Example:
        loader = StubLoader(commands)
        loader.run(image)   # raises StubUploadFailed on any problem
    """

    def __init__(
        self,
        commands: CommandTransport,
        block_size: Optional[int] = None,
        log_cb: Optional[Callable[[str], None]] = None,
    ):
        self.commands = commands
        self.config = commands.config
        self.block_size = block_size or self.config.ram_block_size
        self.log_cb = log_cb

    def _log(self, message: str) -> None:
        logger.info(message)
        if self.log_cb:
            self.log_cb(message)

    def run(self, image: StubImage) -> None:
        """
        Upload and start the stub.

        Raises:
            StubUploadFailed: Any timeout, device error or missing greeting;
                the original error is chained as __cause__
        """
        try:
            self._log("Uploading stub...")
            for load_addr, segment in image.segments():
                self.upload_segment(load_addr, segment)
            self._log("Running stub...")
            self.execute(image.entry_addr)
            self.wait_for_greeting()
        except (StubUploadFailed, TransportClosed, OperationInProgress):
            raise
        except FlasherError as e:
            raise StubUploadFailed(f"Stub upload failed: {e}") from e

        self.commands.set_dialect(STUB_DIALECT)
        self._log("Stub running")

    def upload_segment(self, load_addr: int, segment: bytes) -> None:
        """Write one segment to RAM with MEM_BEGIN + MEM_DATA blocks."""
        block_count = (len(segment) + self.block_size - 1) // self.block_size
        logger.debug(
            f"MEM_BEGIN size={len(segment)} blocks={block_count} "
            f"block_size=0x{self.block_size:X} addr=0x{load_addr:08X}"
        )
        self.commands.send(
            frames.MEM_BEGIN,
            frames.begin_payload(len(segment), block_count, self.block_size, load_addr),
        )
        for seq, block in frames.iter_blocks(segment, self.block_size, fill=0x00):
            self.commands.send(
                frames.MEM_DATA,
                frames.data_payload(block, seq),
                frames.checksum(block),
            )

    def execute(self, entry_addr: int) -> None:
        """Send MEM_END asking the ROM to jump to the stub's entry point."""
        self.commands.send(
            frames.MEM_END,
            frames.mem_end_payload(entry_addr, execute=True),
            timeout=max(self.config.mem_end_timeout, 0.01),
        )

    def wait_for_greeting(self) -> None:
        """Wait for the stub's greeting; other frames in between are ignored."""
        deadline = time.monotonic() + self.config.stub_start_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            frame = self.commands.read_frame(remaining)
            if frame is None:
                break
            if frame == STUB_GREETING:
                return
            logger.debug(f"Ignoring frame while waiting for stub: {frame[:16].hex()}")
        raise StubUploadFailed("Failed to start stub: no greeting received")
