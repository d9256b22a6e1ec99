"""
Chip registry and flasher stub images.

Adding a chip means adding a row to the chip table and its stub image.
"""

from .chips import (
    ChipConfig,
    ChipIdentity,
    CHIP_DETECT_MAGIC_REG_ADDR,
    CHIP_TABLE_VERSION,
    list_chips,
    lookup_magic,
    get_chip,
)
from .stubs import StubImage, StubImageError, load_stub_image, stub_path

__all__ = [
    "ChipConfig",
    "ChipIdentity",
    "CHIP_DETECT_MAGIC_REG_ADDR",
    "CHIP_TABLE_VERSION",
    "list_chips",
    "lookup_magic",
    "get_chip",
    "StubImage",
    "StubImageError",
    "load_stub_image",
    "stub_path",
]
