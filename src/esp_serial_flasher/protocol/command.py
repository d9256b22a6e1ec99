"""
Command transport: one request, one correlated response.

This is the only component that touches the byte stream. It SLIP-frames
requests, reassembles response frames from whatever the transport delivers,
skips unsolicited frames (the ROM answers a single SYNC with a burst of
acknowledgements) and retries on timeout. A nonzero status is a definitive
answer from the device and is never retried.
"""

import logging
import threading
import time
from collections import deque
from typing import Deque, Optional

from . import frames, slip
from .dialect import Dialect, ROM_DIALECT
from ..errors import CommandTimeout, DeviceError, OperationInProgress
from .transport import Transport
from ..config import LoaderConfig

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class CommandTransport:
    """
    Request/response layer over a Transport.

    Example:
        commands = CommandTransport(transport, LoaderConfig())
        response = commands.send(frames.READ_REG, frames.read_reg_payload(0x40001000))
        print(hex(response.value))
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[LoaderConfig] = None,
        dialect: Dialect = ROM_DIALECT,
    ):
        self.transport = transport
        self.config = config or LoaderConfig()
        self.dialect = dialect
        self._decoder = slip.SlipDecoder()
        self._pending: Deque[bytes] = deque()
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def set_dialect(self, dialect: Dialect) -> None:
        logger.debug(f"Switching to {dialect.kind.value} dialect")
        self.dialect = dialect

    def flush_input(self) -> None:
        """Drop buffered input and any partially decoded frame."""
        self.transport.reset_input_buffer()
        self._decoder.reset()
        self._pending.clear()

    def write_frame(self, payload: bytes) -> None:
        """SLIP-encode and send a raw frame."""
        data = slip.encode(payload)
        logger.debug(f">>> {data[:64].hex()}" + ("..." if len(data) > 64 else ""))
        self.transport.write(data)

    def read_frame(self, timeout: float) -> Optional[bytes]:
        """
        Return the next complete frame, or None if none arrives in time.

        Raises:
            FramingError: Invalid escape sequence on the wire
            TransportClosed: Transport closed while waiting
        """
        deadline = time.monotonic() + timeout
        while not self._pending:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            chunk = self.transport.read(READ_CHUNK, remaining)
            if chunk:
                logger.debug(f"<<< {chunk[:64].hex()}" + ("..." if len(chunk) > 64 else ""))
                self._pending.extend(self._decoder.feed(chunk))
        return self._pending.popleft()

    def send(
        self,
        opcode: int,
        payload: bytes = b"",
        checksum: int = 0,
        timeout: Optional[float] = None,
        attempts: Optional[int] = None,
    ) -> frames.Response:
        """
        Send a command and wait for its response.

        Args:
            opcode: Command opcode
            payload: Command payload
            checksum: Data checksum (write-type commands only)
            timeout: Per-attempt timeout (default config.timeout)
            attempts: Number of sends before giving up (default config.command_attempts)

        Returns:
            The matching Response

        Raises:
            OperationInProgress: Another send is in flight
            CommandTimeout: No matching response within the attempt budget
            DeviceError: Device reported a nonzero status
            FramingError: Malformed frame received
            TransportClosed: Transport closed during the exchange
        """
        if not self._busy.acquire(blocking=False):
            raise OperationInProgress(
                f"Cannot send {frames.command_name(opcode)}: another command is in flight"
            )
        try:
            return self._send_locked(opcode, payload, checksum, timeout, attempts)
        finally:
            self._busy.release()

    def _send_locked(
        self,
        opcode: int,
        payload: bytes,
        checksum: int,
        timeout: Optional[float],
        attempts: Optional[int],
    ) -> frames.Response:
        timeout = min(timeout if timeout is not None else self.config.timeout, self.config.max_timeout)
        attempts = attempts if attempts is not None else self.config.command_attempts
        request = frames.encode_request(opcode, payload, checksum)
        name = frames.command_name(opcode)

        for attempt in range(1, attempts + 1):
            logger.debug(
                f"command {name} len={len(payload)} chk=0x{checksum:02X} "
                f"timeout={timeout:.3f} attempt {attempt}/{attempts}"
            )
            self.write_frame(request)
            response = self._await_response(opcode, timeout)
            if response is None:
                if attempt < attempts:
                    logger.warning(f"No response to {name} (attempt {attempt}/{attempts}), retrying...")
                continue

            if not response.ok:
                raise DeviceError(response.error_code, opcode, response.status)
            return response

        raise CommandTimeout(opcode, attempts)

    def _await_response(self, opcode: int, timeout: float) -> Optional[frames.Response]:
        deadline = time.monotonic() + timeout
        discarded = 0
        while discarded <= self.config.discard_limit:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            raw = self.read_frame(remaining)
            if raw is None:
                return None

            if len(raw) < frames.HEADER_SIZE:
                logger.debug(f"Skipping short frame: {raw.hex()}")
                discarded += 1
                continue

            frame = frames.decode_frame(raw)
            if frame.direction != frames.Direction.RESPONSE or frame.opcode != opcode:
                logger.debug(
                    f"Skipping unsolicited frame (dir={int(frame.direction)}, "
                    f"op={frames.command_name(frame.opcode)})"
                )
                discarded += 1
                continue

            return frames.parse_response(frame, self.dialect.status_len)

        logger.debug(f"Gave up after discarding {discarded} unrelated frames")
        return None
