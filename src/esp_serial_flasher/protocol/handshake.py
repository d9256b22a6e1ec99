"""
Bootloader entry and SYNC handshake.

State machine:
    IDLE -> ENTERING_BOOTLOADER -> SYNCING -> SYNCED
                                          +-> FAILED

Entering the bootloader drives the two control lines so the chip comes out of
reset with its bootstrap pin held low. If the chip was already put into
download mode by hand the sequence does no harm. Syncing repeats the SYNC
command until one clean response arrives; the ROM answers a single SYNC with
several acknowledgements, the extras are drained and thrown away.
"""

import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional

from . import frames
from .command import CommandTransport
from ..errors import CommandTimeout, DeviceError, ProtocolError, SyncFailed
from .transport import Transport
from ..config import LoaderConfig

logger = logging.getLogger(__name__)


class HandshakeState(Enum):
    """Handshake progress."""
    IDLE = "idle"
    ENTERING_BOOTLOADER = "entering_bootloader"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


def classic_reset(transport: Transport, delay: float) -> None:
    """
    Reset sequence for boards with the usual two-transistor auto-reset circuit.

    Protocol:
        1. Assert reset (EN low), release bootstrap
        2. Release reset while asserting bootstrap (GPIO0 low)
        3. Hold for `delay`, then release bootstrap
    """
    transport.set_control_lines(reset=True, bootstrap=False)
    time.sleep(0.1)
    transport.set_control_lines(reset=False, bootstrap=True)
    time.sleep(delay)
    transport.set_control_lines(reset=False, bootstrap=False)


def usb_jtag_reset(transport: Transport, delay: float) -> None:
    """Reset sequence for the built-in USB-JTAG-serial peripheral (C3, C6, S3)."""
    transport.set_control_lines(reset=False, bootstrap=False)
    time.sleep(0.1)
    transport.set_control_lines(reset=False, bootstrap=True)
    time.sleep(0.1)
    # Reset before releasing bootstrap so the lines pass through (1,1), never (0,0)
    transport.set_control_lines(reset=True, bootstrap=False, reset_first=True)
    time.sleep(max(delay, 0.1))
    transport.set_control_lines(reset=False, bootstrap=False)


def no_reset(transport: Transport, delay: float) -> None:
    """Chip is expected to be in download mode already."""


RESET_SEQUENCES: Dict[str, Callable[[Transport, float], None]] = {
    "classic": classic_reset,
    "usb_jtag": usb_jtag_reset,
    "none": no_reset,
}


def hard_reset(transport: Transport) -> None:
    """Pulse the reset line to restart the chip into its application."""
    transport.set_control_lines(reset=True, bootstrap=False)
    time.sleep(0.1)
    transport.set_control_lines(reset=False, bootstrap=False)


class HandshakeController:
    """
    Drives the chip into its ROM bootloader and synchronizes with it.

    Example:
        handshake = HandshakeController(commands, config)
        handshake.connect()
        assert handshake.state is HandshakeState.SYNCED
    """

    def __init__(self, commands: CommandTransport, config: Optional[LoaderConfig] = None):
        self.commands = commands
        self.config = config or commands.config
        self.state = HandshakeState.IDLE
        self.sync_count = 0
        self.sync_value: Optional[int] = None

    def enter_bootloader(self) -> None:
        """Run the configured reset sequence."""
        self.state = HandshakeState.ENTERING_BOOTLOADER
        strategy = self.config.reset_strategy
        logger.debug(f"Entering bootloader using '{strategy}' reset")
        RESET_SEQUENCES[strategy](self.commands.transport, self.config.reset_delay)

    def connect(self) -> int:
        """
        Enter the bootloader and sync, retrying both a bounded number of times.

        Returns:
            The value field of the SYNC response (nonzero from the ROM,
            zero if a flasher stub is already running)

        Raises:
            SyncFailed: No clean SYNC response after all attempts
            TransportClosed: Transport closed during the handshake
        """
        last_error: Optional[Exception] = None
        self.sync_count = 0

        for attempt in range(1, self.config.connect_attempts + 1):
            self.enter_bootloader()
            last_error = self._sync_attempts()
            if last_error is None:
                self.state = HandshakeState.SYNCED
                logger.info(f"Synced with bootloader (connect attempt {attempt})")
                return self.sync_value
            logger.debug(f"Connect attempt {attempt}/{self.config.connect_attempts} failed: {last_error}")

        self.state = HandshakeState.FAILED
        raise SyncFailed(
            f"Failed to sync with bootloader after {self.sync_count} SYNC attempts: {last_error}"
        )

    def _sync_attempts(self) -> Optional[Exception]:
        self.state = HandshakeState.SYNCING
        last_error: Optional[Exception] = None
        for _ in range(self.config.sync_attempts):
            try:
                self.sync()
                return None
            except (CommandTimeout, ProtocolError, DeviceError) as e:
                last_error = e
                time.sleep(self.config.sync_retry_delay)
        return last_error

    def sync(self) -> None:
        """Send one SYNC and drain the extra acknowledgements."""
        self.commands.flush_input()
        self.sync_count += 1
        response = self.commands.send(
            frames.SYNC,
            frames.SYNC_PAYLOAD,
            timeout=self.config.sync_timeout,
            attempts=1,
        )
        self.sync_value = response.value
        drained = self._drain_acknowledgements()
        logger.debug(f"SYNC answered (value=0x{response.value:08X}), discarded {drained} extra frames")

    def _drain_acknowledgements(self) -> int:
        drained = 0
        while drained < self.config.sync_discard_limit:
            if self.commands.read_frame(self.config.sync_timeout) is None:
                break
            drained += 1
        return drained
