"""Tests for the command transport: correlation, retries and the in-flight guard."""

import struct

import pytest

from esp_serial_flasher.errors import (
    CommandTimeout,
    DeviceError,
    FramingError,
    OperationInProgress,
    TransportClosed,
)
from esp_serial_flasher.protocol import frames
from esp_serial_flasher.protocol.command import CommandTransport
from esp_serial_flasher.protocol.dialect import STUB_DIALECT

from conftest import MAGIC_REG, C3_MAGIC, FakeDevice


def read_magic(commands: CommandTransport) -> int:
    return commands.send(frames.READ_REG, frames.read_reg_payload(MAGIC_REG)).value


def test_read_reg_returns_value(device, config) -> None:
    commands = CommandTransport(device, config)
    assert read_magic(commands) == C3_MAGIC
    assert device.opcodes() == [frames.READ_REG]


def test_unsolicited_frames_are_skipped(device, config) -> None:
    """Leftover SYNC acknowledgements do not satisfy a READ_REG."""
    commands = CommandTransport(device, config)
    for _ in range(3):
        device.queue_raw(struct.pack("<BBHI", 1, frames.SYNC, 4, 0) + bytes(4))
    device.queue_raw(b"\x01\x02")
    assert read_magic(commands) == C3_MAGIC


def test_noise_before_response_is_ignored(device, config) -> None:
    device.noise = b"rst:0x1 (POWERON),boot:0xd (SPI_FAST_FLASH_BOOT)\r\n"
    commands = CommandTransport(device, config)
    assert read_magic(commands) == C3_MAGIC


def test_timeout_is_retried(device, config) -> None:
    """A dropped response is retried within the attempt budget."""
    device.drop[frames.READ_REG] = 1
    commands = CommandTransport(device, config)
    assert read_magic(commands) == C3_MAGIC
    assert device.count(frames.READ_REG) == 2


def test_timeout_after_all_attempts(device, config) -> None:
    device.drop[frames.READ_REG] = 10
    commands = CommandTransport(device, config)
    with pytest.raises(CommandTimeout) as exc_info:
        read_magic(commands)
    assert exc_info.value.attempts == config.command_attempts
    assert device.count(frames.READ_REG) == config.command_attempts


def test_device_error_is_not_retried(device, config) -> None:
    device.errors[frames.FLASH_BEGIN] = 0x06
    commands = CommandTransport(device, config)
    with pytest.raises(DeviceError) as exc_info:
        commands.send(frames.FLASH_BEGIN, frames.begin_payload(4, 1, 0x400, 0))
    assert exc_info.value.code == 0x06
    assert "failed to act" in str(exc_info.value)
    assert device.count(frames.FLASH_BEGIN) == 1


def test_length_mismatch_surfaces_as_framing_error(device, config) -> None:
    commands = CommandTransport(device, config)
    device.on_command = lambda op: device.queue_raw(struct.pack("<BBHI", 1, op, 20, 0) + bytes(4))
    with pytest.raises(FramingError):
        read_magic(commands)


def test_stub_dialect_uses_two_byte_status(device, config) -> None:
    device.stub_running = True
    commands = CommandTransport(device, config, dialect=STUB_DIALECT)
    response = commands.send(frames.READ_REG, frames.read_reg_payload(MAGIC_REG))
    assert response.status == b"\x00\x00"
    assert response.data == b""


def test_reentrant_send_raises_operation_in_progress(device, config) -> None:
    """A send issued while another is waiting fails fast."""
    commands = CommandTransport(device, config)
    nested = []

    def reenter(opcode: int) -> None:
        if opcode == frames.READ_REG and not nested:
            with pytest.raises(OperationInProgress):
                commands.send(frames.SYNC, frames.SYNC_PAYLOAD)
            nested.append(opcode)

    device.on_command = reenter
    assert read_magic(commands) == C3_MAGIC
    assert nested == [frames.READ_REG]
    assert not commands.busy


def test_close_during_command_raises_transport_closed(config) -> None:
    device = FakeDevice()
    notified = []
    device.on_disconnect = lambda: notified.append(True)
    device.on_command = lambda op: device.close()
    commands = CommandTransport(device, config)

    with pytest.raises(TransportClosed):
        read_magic(commands)
    assert notified == [True]
