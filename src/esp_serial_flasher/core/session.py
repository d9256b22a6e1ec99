"""
Flashing session.

A Session owns one Transport for its lifetime and composes the protocol
components in order: handshake, chip identification, optional stub upload,
then flash writes and auxiliary operations. Only one high-level operation may
run at a time; a second call fails fast with OperationInProgress.

Session state only moves forward. The chip is recorded once, after a
successful identification, and the stub flag is only set after the stub has
confirmed it is running. Closing the transport (or losing it) moves the
session to DISCONNECTED for good; reconnecting means creating a new Session.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from . import diagnostics
from ..config import LoaderConfig
from ..errors import (
    FlasherError,
    OperationInProgress,
    StubUploadFailed,
    TransportClosed,
    UnsupportedChipError,
)
from ..models.chips import ChipConfig, ChipIdentity
from ..models.stubs import StubImage, StubImageError, load_stub_image
from ..protocol.command import CommandTransport
from ..protocol.dialect import Dialect, ROM_DIALECT, STUB_DIALECT
from ..protocol.flash_writer import FlashWriter, ProgressCallback
from ..protocol.handshake import HandshakeController, hard_reset
from ..protocol.identify import identify_chip
from ..protocol.stub_loader import StubLoader
from ..protocol.transport import Transport, open_serial

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]


class SessionState(Enum):
    """Session lifecycle."""
    OPEN = "open"
    SYNCED = "synced"
    DISCONNECTED = "disconnected"


@dataclass
class SessionInfo:
    """
    What the session has confirmed about the device.

    Mutated only through set_chip(), mark_unsupported() and mark_stub_loaded().
    """
    chip: ChipIdentity = ChipIdentity.UNKNOWN
    chip_config: Optional[ChipConfig] = None
    unsupported_magic: Optional[int] = None
    stub_loaded: bool = False
    dialect: Dialect = field(default=ROM_DIALECT)
    baud: int = 115200

    @property
    def block_size(self) -> int:
        return self.dialect.block_size

    def set_chip(self, config: ChipConfig) -> None:
        if self.chip_config is not None and self.chip_config is not config:
            raise ValueError(f"Chip already identified as {self.chip.value}")
        self.chip_config = config
        self.chip = config.identity

    def mark_unsupported(self, magic: int) -> None:
        self.unsupported_magic = magic

    @property
    def identified(self) -> bool:
        """Identification finished, with a known chip or a confirmed unknown one."""
        return self.chip_config is not None or self.unsupported_magic is not None

    def mark_stub_loaded(self) -> None:
        self.stub_loaded = True
        self.dialect = STUB_DIALECT


class Session:
    """
    Caller-facing flashing session.

    Example:
        transport = open_serial("/dev/ttyUSB0")
        session = Session(transport)
        session.sync()
        session.load_stub()
        session.write_flash(0x10000, firmware, on_progress=print)
        session.close()
    """

    def __init__(self, transport: Transport, config: Optional[LoaderConfig] = None):
        self.transport = transport
        self.config = config or LoaderConfig()
        self.commands = CommandTransport(transport, self.config)
        self.handshake = HandshakeController(self.commands, self.config)

        # Assignable sinks
        self.log_cb: Optional[LogCallback] = None
        self.error_cb: Optional[LogCallback] = None
        self.on_disconnect: Optional[Callable[[], None]] = None

        self._info = SessionInfo(baud=self.config.baud)
        self._op_lock = threading.Lock()
        self._disconnect_lock = threading.Lock()
        self._state = SessionState.OPEN if transport.is_open else SessionState.DISCONNECTED
        transport.on_disconnect = self._handle_disconnect

    @classmethod
    def open(cls, port: str, config: Optional[LoaderConfig] = None) -> "Session":
        """Open a serial port and start a session on it."""
        config = config or LoaderConfig()
        return cls(open_serial(port, config.baud), config)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def chip(self) -> ChipIdentity:
        return self._info.chip

    @property
    def chip_config(self) -> Optional[ChipConfig]:
        return self._info.chip_config

    @property
    def stub_loaded(self) -> bool:
        return self._info.stub_loaded

    @property
    def dialect(self) -> Dialect:
        return self._info.dialect

    @property
    def block_size(self) -> int:
        return self._info.block_size

    @property
    def baud(self) -> int:
        return self._info.baud

    @property
    def busy(self) -> bool:
        return self._op_lock.locked()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _log(self, message: str) -> None:
        logger.info(message)
        if self.log_cb:
            self.log_cb(message)

    def _error(self, message: str) -> None:
        logger.error(message)
        if self.error_cb:
            self.error_cb(message)

    def _handle_disconnect(self) -> None:
        with self._disconnect_lock:
            if self._state is SessionState.DISCONNECTED:
                return
            self._state = SessionState.DISCONNECTED
        self._log("Transport disconnected")
        if self.on_disconnect:
            self.on_disconnect()

    @contextmanager
    def _operation(self, name: str, require_sync: bool = True):
        """Run one high-level operation under the session guard."""
        if self._state is SessionState.DISCONNECTED:
            raise TransportClosed(f"Cannot {name}: session is disconnected")
        if not self._op_lock.acquire(blocking=False):
            raise OperationInProgress(f"Cannot {name}: another operation is running")
        try:
            if require_sync and self._state is not SessionState.SYNCED:
                raise FlasherError(f"Cannot {name}: not synced with the bootloader")
            yield
        except FlasherError as e:
            self._error(f"{name} failed: {e}")
            raise
        finally:
            self._op_lock.release()

    def _require_chip(self, name: str) -> ChipConfig:
        if self._info.chip_config is None:
            raise FlasherError(f"Cannot {name}: chip was not identified")
        return self._info.chip_config

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def sync(self) -> ChipIdentity:
        """
        Enter the bootloader, synchronize and identify the chip.

        Calling it again on a synced session only repeats an identification
        that did not finish (e.g. the magic register read timed out).

        Returns:
            The detected ChipIdentity

        Raises:
            SyncFailed: Bootloader did not answer
            CommandTimeout: Chip identification got no answer
            UnsupportedChipError: Unknown magic value; the session stays
                synced for raw register reads
        """
        with self._operation("sync", require_sync=False):
            if self._state is SessionState.SYNCED:
                if self._info.identified:
                    return self._info.chip
                self._log("Retrying chip identification...")
            else:
                self._log("Connecting...")
                self.handshake.connect()
                self._state = SessionState.SYNCED

            try:
                chip = identify_chip(self.commands)
            except UnsupportedChipError as e:
                self._info.mark_unsupported(e.magic)
                raise
            self._info.set_chip(chip)
            self._log(f"Chip is {chip.name}")

            if self.handshake.sync_value == 0 and not self._info.stub_loaded:
                # A previous session left the stub running
                self.commands.set_dialect(STUB_DIALECT)
                self._info.mark_stub_loaded()
                self._log("Stub flasher already running")
            return chip.identity

    connect = sync

    def load_stub(self, image: Optional[StubImage] = None) -> bool:
        """
        Upload and start the flasher stub.

        Args:
            image: Stub image to use (default: bundled image for the chip)

        Returns:
            True if the stub is running, False if the upload failed; the
            session keeps using the ROM dialect in that case
        """
        with self._operation("load stub"):
            if self._info.stub_loaded:
                return True
            chip = self._require_chip("load stub")
            try:
                if image is None:
                    image = load_stub_image(chip, self.config.stub_dir)
                StubLoader(self.commands, log_cb=self.log_cb).run(image)
            except (StubUploadFailed, StubImageError) as e:
                self._error(str(e))
                return False

            self._info.mark_stub_loaded()
            return True

    def write_flash(
        self,
        address: int,
        data: bytes,
        on_progress: Optional[ProgressCallback] = None,
        reboot: bool = False,
    ) -> int:
        """
        Write an image to flash.

        Args:
            address: Flash offset
            data: Image bytes
            on_progress: Called with (bytes_written, total) once per block
            reboot: Leave the bootloader and run the application afterwards

        Returns:
            Number of blocks written

        Raises:
            FlashWriteFailed: Write aborted; flash content is partial
        """
        with self._operation("write flash"):
            chip = self._require_chip("write flash")
            writer = FlashWriter(self.commands, rom_encrypted_word=chip.rom_flash_begin_encrypted_word)
            self._log(f"Writing {len(data)} bytes at 0x{address:08X}...")
            blocks = writer.write(address, data, on_progress=on_progress, reboot=reboot)
            self._log(f"Wrote {len(data)} bytes in {blocks} blocks")
            return blocks

    def read_reg(self, address: int) -> int:
        """Read a 32-bit register."""
        with self._operation("read register"):
            return diagnostics.read_reg(self.commands, address)

    def write_reg(self, address: int, value: int, mask: int = 0xFFFFFFFF) -> None:
        """Write a 32-bit register."""
        with self._operation("write register"):
            diagnostics.write_reg(self.commands, address, value, mask)

    def read_mac(self) -> str:
        """Read the base MAC address ('aa:bb:cc:dd:ee:ff')."""
        with self._operation("read MAC"):
            chip = self._require_chip("read MAC")
            return diagnostics.read_mac(self.commands, chip)

    def test_reliability(
        self,
        callback: Optional[Callable[[float], None]] = None,
        iterations: int = 100,
        time_budget: Optional[float] = None,
    ) -> bool:
        """Repeatedly read the chip-detect register; True if all reads agree."""
        with self._operation("test reliability"):
            return diagnostics.test_reliability(
                self.commands, callback, iterations=iterations, time_budget=time_budget
            )

    def blank_check(
        self,
        callback: Optional[diagnostics.BlankCheckCallback],
        start: int,
        end: int,
        block_size: int = diagnostics.BLANK_CHECK_BLOCK_SIZE,
    ) -> int:
        """
        Count erased bytes in [start, end).

        Raises:
            StubRequiredError: Stub is not running
        """
        with self._operation("blank check"):
            return diagnostics.blank_check(self.commands, callback, start, end, block_size)

    def change_baud(self, baud: int) -> None:
        """Switch the link to a new baud rate."""
        with self._operation("change baud rate"):
            diagnostics.change_baud(self.commands, baud, self._info.baud)
            self._info.baud = baud
            self._log(f"Changed baud rate to {baud}")

    def hard_reset(self) -> None:
        """Restart the chip into its application."""
        with self._operation("hard reset", require_sync=False):
            self._log("Hard resetting via RTS pin...")
            hard_reset(self.transport)

    def close(self) -> None:
        """Close the transport; the disconnect notification fires once."""
        if self.transport.is_open:
            self.transport.close()
        self._handle_disconnect()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
