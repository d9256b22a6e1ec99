"""Tests for stub upload and the dialect switch."""

import json
import struct
import base64

import pytest

from esp_serial_flasher.errors import CommandTimeout, DeviceError, StubUploadFailed
from esp_serial_flasher.models.chips import ChipIdentity, get_chip, list_chips
from esp_serial_flasher.models.stubs import StubImage, StubImageError, load_stub_image
from esp_serial_flasher.protocol import frames
from esp_serial_flasher.protocol.command import CommandTransport
from esp_serial_flasher.protocol.dialect import ROM_DIALECT, STUB_DIALECT
from esp_serial_flasher.protocol.stub_loader import StubLoader

from conftest import FakeDevice


def test_upload_and_start(config, stub_image) -> None:
    device = FakeDevice()
    commands = CommandTransport(device, config)
    StubLoader(commands).run(stub_image)

    assert commands.dialect is STUB_DIALECT
    assert device.opcodes() == [
        frames.MEM_BEGIN, frames.MEM_DATA, frames.MEM_DATA,
        frames.MEM_BEGIN, frames.MEM_DATA,
        frames.MEM_END,
    ]
    mem_end_payload = device.commands[-1][1]
    assert mem_end_payload == struct.pack("<II", 0, stub_image.entry_addr)


def test_segments_are_zero_padded(config, stub_image) -> None:
    device = FakeDevice()
    StubLoader(CommandTransport(device, config)).run(stub_image)

    block = config.ram_block_size
    tail = stub_image.text[block:]
    assert device.ram[stub_image.text_load_addr] == stub_image.text[:block]
    assert device.ram[stub_image.text_load_addr + block] == tail + bytes(block - len(tail))
    assert device.ram[stub_image.data_load_addr] == b"\x01\x02\x03" + bytes(block - 3)


def test_mem_begin_parameters(config, stub_image) -> None:
    device = FakeDevice()
    StubLoader(CommandTransport(device, config)).run(stub_image)
    begin = struct.unpack("<IIII", device.commands[0][1])
    assert begin == (len(stub_image.text), 2, config.ram_block_size, stub_image.text_load_addr)


def test_missing_greeting_fails(config, stub_image) -> None:
    device = FakeDevice(greeting=False)
    commands = CommandTransport(device, config)
    with pytest.raises(StubUploadFailed):
        StubLoader(commands).run(stub_image)
    assert commands.dialect is ROM_DIALECT


def test_device_error_is_chained(config, stub_image) -> None:
    device = FakeDevice()
    device.errors[frames.MEM_DATA] = 0x07
    commands = CommandTransport(device, config)
    with pytest.raises(StubUploadFailed) as exc_info:
        StubLoader(commands).run(stub_image)
    assert isinstance(exc_info.value.__cause__, DeviceError)
    assert commands.dialect is ROM_DIALECT


def test_unacknowledged_mem_end_fails(config, stub_image) -> None:
    device = FakeDevice()
    device.drop[frames.MEM_END] = 10
    commands = CommandTransport(device, config)
    with pytest.raises(StubUploadFailed) as exc_info:
        StubLoader(commands).run(stub_image)
    assert isinstance(exc_info.value.__cause__, CommandTimeout)


def test_frames_before_greeting_are_ignored(config, stub_image) -> None:
    class ChattyDevice(FakeDevice):
        def _op_06(self, payload: bytes, chk: int) -> None:
            self._respond(frames.MEM_END)
            self.queue_raw(b"\x00\x00")
            self.queue_raw(b"OHAI")
            self.stub_running = True

    commands = CommandTransport(ChattyDevice(), config)
    StubLoader(commands).run(stub_image)
    assert commands.dialect is STUB_DIALECT



def test_greeting_wait_is_bounded_by_one_deadline(config) -> None:
    """A line that keeps producing other frames cannot hold the wait open."""
    class NoisyDevice(FakeDevice):
        def read(self, size: int, timeout: float) -> bytes:
            if not self._rx:
                self.queue_raw(b"\x00\x00")
            return super().read(size, timeout)

    commands = CommandTransport(NoisyDevice(greeting=False), config)
    with pytest.raises(StubUploadFailed):
        StubLoader(commands).wait_for_greeting()
    assert commands.dialect is ROM_DIALECT


class TestStubImages:
    """Loading stub JSON images."""

    def test_load_from_directory(self, tmp_path) -> None:
        chip = get_chip(ChipIdentity.C3)
        (tmp_path / "stub_flasher_esp32c3.json").write_text(json.dumps({
            "entry": 0x40380400,
            "text": base64.b64encode(b"\x13\x00\x00\x00").decode(),
            "text_start": 0x40380000,
            "data": base64.b64encode(b"\xaa").decode(),
            "data_start": 0x3FC80000,
        }))
        image = load_stub_image(chip, tmp_path)
        assert image.entry_addr == 0x40380400
        assert image.segments() == [(0x40380000, b"\x13\x00\x00\x00"), (0x3FC80000, b"\xaa")]

    @pytest.mark.parametrize("chip", list_chips(), ids=lambda chip: chip.stub_name)
    def test_bundled_image_for_every_chip(self, chip) -> None:
        image = load_stub_image(chip)
        assert len(image.text) > 0
        assert len(image.text) % 4 == 0
        assert image.data
        assert image.text_load_addr <= image.entry_addr < image.text_load_addr + len(image.text)

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(StubImageError):
            load_stub_image(get_chip(ChipIdentity.S3), tmp_path)

    def test_malformed_image(self) -> None:
        with pytest.raises(StubImageError):
            StubImage.from_dict({"text": "AAAA"})

    def test_empty_data_segment_skipped(self) -> None:
        image = StubImage.from_dict({"entry": 1, "text": "AAAA", "text_start": 16})
        assert image.segments() == [(16, b"\x00\x00\x00")]
