"""
Chip registry for supported ESP targets.

Provides a single source of truth for:
- Chip identities and their detection magic values
- Per-chip register addresses (eFuse MAC words)
- Which flasher stub image belongs to which chip

Adding a chip is a new ChipConfig row in CHIP_TABLE; no protocol code changes.

Usage:
    from esp_serial_flasher.models import lookup_magic, get_chip, list_chips

    config = lookup_magic(0x00000009)     # -> ESP32-S3 row
    config = get_chip("ESP32-C3")
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple, Union

from ..errors import UnsupportedChipError

# Register whose value identifies the chip family (shared by all supported chips)
CHIP_DETECT_MAGIC_REG_ADDR = 0x40001000

# Table format version, bumped whenever rows change meaning
CHIP_TABLE_VERSION = 1


class ChipIdentity(Enum):
    """Supported chip families."""
    C3 = "ESP32-C3"
    C6 = "ESP32-C6"
    S2 = "ESP32-S2"
    S3 = "ESP32-S3"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ChipConfig:
    """
    Static description of one chip family.

    Attributes:
        identity: Enumerated chip identity
        magic_values: Values read from CHIP_DETECT_MAGIC_REG_ADDR for this chip
        efuse_base: eFuse controller base address (BLOCK0 read registers)
        mac_efuse_offset: Offset of the MAC low word from efuse_base
        stub_name: Stub image file stem under the stubs directory
        rom_flash_begin_encrypted_word: ROM FLASH_BEGIN takes an extra 'encrypted' word
    """
    identity: ChipIdentity
    magic_values: Tuple[int, ...]
    efuse_base: int
    mac_efuse_offset: int = 0x044
    stub_name: str = ""
    rom_flash_begin_encrypted_word: bool = True

    @property
    def name(self) -> str:
        return self.identity.value

    @property
    def mac_efuse_reg(self) -> int:
        """Register holding the low 32 bits of the base MAC; the high 16 bits follow at +4."""
        return self.efuse_base + self.mac_efuse_offset


CHIP_TABLE: List[ChipConfig] = [
    ChipConfig(
        identity=ChipIdentity.S2,
        magic_values=(0x000007C6,),
        efuse_base=0x3F41A000,
        stub_name="esp32s2",
    ),
    ChipConfig(
        identity=ChipIdentity.S3,
        magic_values=(0x00000009,),
        efuse_base=0x60007000,
        stub_name="esp32s3",
    ),
    ChipConfig(
        identity=ChipIdentity.C3,
        magic_values=(0x6921506F, 0x1B31506F, 0x4881606F, 0x4361606F),
        efuse_base=0x60008800,
        stub_name="esp32c3",
    ),
    ChipConfig(
        identity=ChipIdentity.C6,
        magic_values=(0x2CE0806F,),
        efuse_base=0x600B0800,
        stub_name="esp32c6",
    ),
]

_MAGIC_INDEX: Dict[int, ChipConfig] = {
    magic: config for config in CHIP_TABLE for magic in config.magic_values
}


def list_chips() -> List[ChipConfig]:
    """Return all supported chip rows."""
    return list(CHIP_TABLE)


def lookup_magic(magic: int) -> ChipConfig:
    """
    Map a chip-detect magic value to its chip row.

    Raises:
        UnsupportedChipError: Value not in the table
    """
    try:
        return _MAGIC_INDEX[magic]
    except KeyError:
        raise UnsupportedChipError(magic) from None


def get_chip(identity: Union[ChipIdentity, str]) -> ChipConfig:
    """
    Get a chip row by identity or by name ("ESP32-S3", "esp32s3", "S3").

    Raises:
        ValueError: Unknown chip
    """
    if isinstance(identity, ChipIdentity):
        for config in CHIP_TABLE:
            if config.identity is identity:
                return config
        raise ValueError(f"No chip configuration for {identity.value}")

    wanted = identity.strip().lower().replace("-", "").replace("_", "")
    for config in CHIP_TABLE:
        candidates = {
            config.name.lower().replace("-", ""),
            config.stub_name,
            config.identity.name.lower(),
        }
        if wanted in candidates:
            return config
    raise ValueError(
        f"Unknown chip '{identity}'. Supported: {', '.join(c.name for c in CHIP_TABLE)}"
    )
