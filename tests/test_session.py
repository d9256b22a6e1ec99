"""Tests for the flashing session: state progression, guards and disconnects."""

import pytest

from esp_serial_flasher.core.session import Session, SessionState
from esp_serial_flasher.errors import (
    CommandTimeout,
    FlasherError,
    OperationInProgress,
    StubRequiredError,
    TransportClosed,
    UnsupportedChipError,
)
from esp_serial_flasher.models.chips import ChipIdentity
from esp_serial_flasher.protocol import frames
from esp_serial_flasher.protocol.dialect import ROM_DIALECT, STUB_DIALECT

from conftest import C3_MAC_REG, MAGIC_REG, FakeDevice


def synced_session(device: FakeDevice, config) -> Session:
    session = Session(device, config)
    session.sync()
    return session


class TestSync:
    """Handshake and identification through the session."""

    def test_sync_identifies_chip(self, device, config) -> None:
        session = Session(device, config)
        assert session.state is SessionState.OPEN
        assert session.chip is ChipIdentity.UNKNOWN

        assert session.sync() is ChipIdentity.C3
        assert session.state is SessionState.SYNCED
        assert session.chip is ChipIdentity.C3
        assert not session.stub_loaded
        assert session.dialect is ROM_DIALECT
        assert session.block_size == 0x400

    def test_unsupported_chip_keeps_raw_operations(self, config) -> None:
        device = FakeDevice(registers={MAGIC_REG: 0xCAFE0000})
        session = Session(device, config)
        with pytest.raises(UnsupportedChipError):
            session.sync()

        assert session.state is SessionState.SYNCED
        assert session.chip is ChipIdentity.UNKNOWN
        assert session.read_reg(MAGIC_REG) == 0xCAFE0000
        with pytest.raises(FlasherError):
            session.write_flash(0x0, b"\x00")
        with pytest.raises(FlasherError):
            session.read_mac()

    def test_sync_retries_unfinished_identification(self, config) -> None:
        device = FakeDevice()
        device.drop[frames.READ_REG] = config.command_attempts
        session = Session(device, config)
        with pytest.raises(CommandTimeout):
            session.sync()
        assert session.state is SessionState.SYNCED
        assert session.chip is ChipIdentity.UNKNOWN

        assert session.sync() is ChipIdentity.C3
        assert session.chip_config is not None
        assert session.read_mac()
        # Only identification is repeated, not the handshake
        assert device.count(frames.SYNC) == 1

    def test_unsupported_chip_is_not_identified_twice(self, config) -> None:
        device = FakeDevice(registers={MAGIC_REG: 0xCAFE0000})
        session = Session(device, config)
        with pytest.raises(UnsupportedChipError):
            session.sync()
        reads = device.count(frames.READ_REG)

        assert session.sync() is ChipIdentity.UNKNOWN
        assert device.count(frames.READ_REG) == reads

    def test_operations_require_sync(self, device, config) -> None:
        session = Session(device, config)
        with pytest.raises(FlasherError):
            session.read_reg(MAGIC_REG)
        assert device.commands == []

    def test_running_stub_detected_on_sync(self, config) -> None:
        device = FakeDevice(stub_running=True)
        session = synced_session(device, config)
        assert session.stub_loaded
        assert session.dialect is STUB_DIALECT

    def test_log_sink_receives_messages(self, device, config) -> None:
        session = Session(device, config)
        messages = []
        session.log_cb = messages.append
        session.sync()
        assert any("ESP32-C3" in message for message in messages)


class TestStub:
    """Stub loading outcome."""

    def test_load_stub(self, device, config, stub_image) -> None:
        session = synced_session(device, config)
        assert session.load_stub(stub_image)
        assert session.stub_loaded
        assert session.block_size == 0x4000
        assert session.load_stub(stub_image)
        assert device.count(frames.MEM_END) == 1

    def test_failed_stub_is_not_fatal(self, config, stub_image) -> None:
        device = FakeDevice(greeting=False)
        session = synced_session(device, config)
        errors = []
        session.error_cb = errors.append

        assert not session.load_stub(stub_image)
        assert not session.stub_loaded
        assert session.dialect is ROM_DIALECT
        assert errors
        assert session.read_reg(MAGIC_REG) is not None

    def test_load_bundled_stub(self, device, config) -> None:
        session = synced_session(device, config)
        assert session.load_stub()
        assert session.dialect is STUB_DIALECT
        assert device.count(frames.MEM_BEGIN) == 2

    def test_missing_stub_image(self, device, config, tmp_path) -> None:
        session = synced_session(device, config.with_overrides(stub_dir=tmp_path))
        assert not session.load_stub()
        assert device.count(frames.MEM_BEGIN) == 0


class TestOperations:
    """Flash writes and auxiliary operations through the session."""

    def test_write_flash_rom(self, device, config) -> None:
        session = synced_session(device, config)
        progress = []
        blocks = session.write_flash(0x1000, b"\xaa" * 0x500, on_progress=lambda done, total: progress.append(done))
        assert blocks == 2
        assert progress == [0x400, 0x500]
        assert device.flash_begin == (0x500, 2, 0x400, 0x1000, 0)
        assert bytes(device.flash[0x1000:0x1500]) == b"\xaa" * 0x500

    def test_write_flash_stub(self, device, config, stub_image) -> None:
        session = synced_session(device, config)
        session.load_stub(stub_image)
        session.write_flash(0x0, b"\x55" * 0x5000)
        assert device.flash_begin == (0x5000, 2, 0x4000, 0x0)

    def test_read_mac(self, config) -> None:
        device = FakeDevice(registers={C3_MAC_REG: 0x33445566, C3_MAC_REG + 4: 0x1122})
        assert synced_session(device, config).read_mac() == "11:22:33:44:55:66"

    def test_blank_check_requires_stub(self, device, config) -> None:
        session = synced_session(device, config)
        with pytest.raises(StubRequiredError):
            session.blank_check(None, 0x0, 0x1000)

    def test_blank_check_with_stub(self, device, config, stub_image) -> None:
        session = synced_session(device, config)
        session.load_stub(stub_image)
        device.flash[0x10] = 0x00
        assert session.blank_check(None, 0x0, 0x1000) == 0x1000 - 1

    def test_reliability(self, device, config) -> None:
        assert synced_session(device, config).test_reliability(None, iterations=3)

    def test_change_baud(self, device, config, stub_image) -> None:
        session = synced_session(device, config)
        session.load_stub(stub_image)
        session.change_baud(921600)
        assert session.baud == 921600
        assert device.baud_rates == [921600]


class TestGuards:
    """One operation at a time; disconnects are final."""

    def test_reentrant_call_from_progress_callback(self, device, config) -> None:
        session = synced_session(device, config)
        rejected = []

        def on_progress(done: int, total: int) -> None:
            try:
                session.read_reg(MAGIC_REG)
            except OperationInProgress:
                rejected.append(done)

        session.write_flash(0x0, bytes(0x800), on_progress=on_progress)
        assert rejected == [0x400, 0x800]
        assert not session.busy

    def test_disconnect_during_operation(self, device, config) -> None:
        session = synced_session(device, config)
        notified = []
        session.on_disconnect = lambda: notified.append(True)
        device.on_command = lambda opcode: device.close()

        with pytest.raises(TransportClosed):
            session.read_reg(MAGIC_REG)
        assert session.state is SessionState.DISCONNECTED

        session.close()
        assert notified == [True]
        with pytest.raises(TransportClosed):
            session.read_reg(MAGIC_REG)

    def test_close_fires_disconnect_once(self, device, config) -> None:
        session = Session(device, config)
        notified = []
        session.on_disconnect = lambda: notified.append(True)
        session.close()
        session.close()
        assert notified == [True]
        assert not device.is_open

    def test_context_manager_closes(self, device, config) -> None:
        with Session(device, config) as session:
            session.sync()
        assert session.state is SessionState.DISCONNECTED
