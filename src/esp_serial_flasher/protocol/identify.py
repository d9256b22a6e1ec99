"""Chip identification by magic register value."""

import logging

from . import frames
from .command import CommandTransport
from ..models.chips import CHIP_DETECT_MAGIC_REG_ADDR, ChipConfig, lookup_magic

logger = logging.getLogger(__name__)


def read_chip_magic(commands: CommandTransport) -> int:
    """Read the chip-detect magic register."""
    response = commands.send(frames.READ_REG, frames.read_reg_payload(CHIP_DETECT_MAGIC_REG_ADDR))
    return response.value


def identify_chip(commands: CommandTransport) -> ChipConfig:
    """
    Identify the connected chip.

    Raises:
        UnsupportedChipError: Magic value not in the chip table
    """
    magic = read_chip_magic(commands)
    logger.debug(f"Chip magic value 0x{magic:08X}")
    chip = lookup_magic(magic)
    logger.info(f"Detected {chip.name}")
    return chip
