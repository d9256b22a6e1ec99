"""
SLIP framing for the ESP serial bootloader.

Frames are delimited by 0xC0 on both ends. Inside a frame 0xC0 is sent as
0xDB 0xDC and 0xDB as 0xDB 0xDD.
"""

import logging
from typing import List, Optional

from ..errors import FramingError

logger = logging.getLogger(__name__)

END = 0xC0
ESC = 0xDB
ESC_END = 0xDC
ESC_ESC = 0xDD


def encode(payload: bytes) -> bytes:
    """
    Wrap a payload in a SLIP frame.

    Args:
        payload: Raw bytes to frame

    Returns:
        Delimited, escaped frame
    """
    escaped = payload.replace(b"\xdb", b"\xdb\xdd").replace(b"\xc0", b"\xdb\xdc")
    return b"\xc0" + escaped + b"\xc0"


def decode(framed: bytes) -> bytes:
    """
    Unwrap a single complete SLIP frame.

    Args:
        framed: Frame including both delimiters

    Returns:
        The original payload

    Raises:
        FramingError: Missing delimiters, stray delimiter or bad escape
    """
    if len(framed) < 2 or framed[0] != END or framed[-1] != END:
        raise FramingError(f"Frame is not delimited by 0xC0: {framed[:16].hex()}")

    out = bytearray()
    in_escape = False
    for byte in framed[1:-1]:
        if in_escape:
            in_escape = False
            if byte == ESC_END:
                out.append(END)
            elif byte == ESC_ESC:
                out.append(ESC)
            else:
                raise FramingError(f"Invalid SLIP escape (0xdb, 0x{byte:02x})")
        elif byte == ESC:
            in_escape = True
        elif byte == END:
            raise FramingError("Unexpected 0xC0 inside frame")
        else:
            out.append(byte)

    if in_escape:
        raise FramingError("Frame ends in the middle of an escape sequence")
    return bytes(out)


class SlipDecoder:
    """
    Incremental SLIP decoder.

    Bytes arrive from the serial port in arbitrary chunks; feed() returns
    every frame completed by the chunk. Anything received outside a frame
    (ROM boot messages, line noise) is dropped.
    """

    def __init__(self) -> None:
        self._packet: Optional[bytearray] = None
        self._in_escape = False
        self._noise = bytearray()

    def reset(self) -> None:
        self._packet = None
        self._in_escape = False
        self._noise.clear()

    @property
    def in_frame(self) -> bool:
        return self._packet is not None

    def feed(self, data: bytes) -> List[bytes]:
        """
        Consume received bytes.

        Returns:
            Payloads of all frames completed by this chunk (empty frames skipped)

        Raises:
            FramingError: On an invalid escape sequence; decoder state is reset
        """
        frames: List[bytes] = []
        for byte in data:
            if self._packet is None:
                if byte == END:
                    self._flush_noise()
                    self._packet = bytearray()
                else:
                    self._noise.append(byte)
            elif self._in_escape:
                self._in_escape = False
                if byte == ESC_END:
                    self._packet.append(END)
                elif byte == ESC_ESC:
                    self._packet.append(ESC)
                else:
                    self.reset()
                    raise FramingError(f"Invalid SLIP escape (0xdb, 0x{byte:02x})")
            elif byte == ESC:
                self._in_escape = True
            elif byte == END:
                if self._packet:
                    frames.append(bytes(self._packet))
                    self._packet = None
                # Back-to-back delimiters: stay in frame, the second one opens it
            else:
                self._packet.append(byte)
        return frames

    def _flush_noise(self) -> None:
        if self._noise:
            logger.debug(f"Discarded {len(self._noise)} bytes outside frame: {bytes(self._noise[:64]).hex()}")
            self._noise.clear()
