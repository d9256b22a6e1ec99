"""Tests for the chip table and identification."""

import pytest

from esp_serial_flasher.errors import UnsupportedChipError
from esp_serial_flasher.models.chips import (
    ChipIdentity,
    get_chip,
    list_chips,
    lookup_magic,
)
from esp_serial_flasher.protocol.command import CommandTransport
from esp_serial_flasher.protocol.identify import identify_chip

from conftest import FakeDevice, MAGIC_REG


@pytest.mark.parametrize(
    "magic, identity",
    [
        (0x000007C6, ChipIdentity.S2),
        (0x00000009, ChipIdentity.S3),
        (0x6921506F, ChipIdentity.C3),
        (0x1B31506F, ChipIdentity.C3),
        (0x4881606F, ChipIdentity.C3),
        (0x4361606F, ChipIdentity.C3),
        (0x2CE0806F, ChipIdentity.C6),
    ],
)
def test_lookup_magic(magic: int, identity: ChipIdentity) -> None:
    assert lookup_magic(magic).identity is identity


def test_unknown_magic_raises() -> None:
    with pytest.raises(UnsupportedChipError) as exc_info:
        lookup_magic(0x00F01D83)
    assert exc_info.value.magic == 0x00F01D83


def test_table_has_one_row_per_chip() -> None:
    identities = [chip.identity for chip in list_chips()]
    assert sorted(i.value for i in identities) == ["ESP32-C3", "ESP32-C6", "ESP32-S2", "ESP32-S3"]


def test_get_chip_by_name() -> None:
    assert get_chip("ESP32-S3").identity is ChipIdentity.S3
    assert get_chip(ChipIdentity.C6).stub_name == "esp32c6"
    with pytest.raises(ValueError):
        get_chip("ESP8266")


def test_mac_efuse_register() -> None:
    assert get_chip(ChipIdentity.C3).mac_efuse_reg == 0x60008844
    assert get_chip(ChipIdentity.S2).mac_efuse_reg == 0x3F41A044


def test_identify_chip_reads_magic_register(config) -> None:
    device = FakeDevice(registers={MAGIC_REG: 0x00000009})
    chip = identify_chip(CommandTransport(device, config))
    assert chip.identity is ChipIdentity.S3


def test_identify_unknown_chip(config) -> None:
    device = FakeDevice(registers={MAGIC_REG: 0x12345678})
    with pytest.raises(UnsupportedChipError):
        identify_chip(CommandTransport(device, config))
