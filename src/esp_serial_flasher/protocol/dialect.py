"""
Protocol dialects.

The ROM bootloader and the flasher stub speak the same command set but differ
in framing details: the stub accepts much larger flash blocks and ends every
response with a 2-byte status trailer where the ROM uses 4 bytes.
"""

from dataclasses import dataclass
from enum import Enum


class DialectKind(Enum):
    """Which program on the chip is answering commands."""
    ROM = "rom"
    STUB = "stub"


@dataclass(frozen=True)
class Dialect:
    """Framing parameters of one dialect."""
    kind: DialectKind
    block_size: int
    status_len: int

    @property
    def is_stub(self) -> bool:
        return self.kind is DialectKind.STUB


ROM_DIALECT = Dialect(DialectKind.ROM, block_size=0x400, status_len=4)
STUB_DIALECT = Dialect(DialectKind.STUB, block_size=0x4000, status_len=2)
