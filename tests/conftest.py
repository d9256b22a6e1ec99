"""Shared fixtures: a simulated ESP serial bootloader behind the Transport contract."""

import hashlib
import struct
import time
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from esp_serial_flasher.config import LoaderConfig
from esp_serial_flasher.errors import TransportClosed
from esp_serial_flasher.models.stubs import StubImage
from esp_serial_flasher.protocol.transport import Transport

MAGIC_REG = 0x40001000
C3_MAGIC = 0x6921506F
C3_MAC_REG = 0x60008800 + 0x44
ROM_SYNC_VALUE = 0x20120707

FLASH_SIZE = 0x40000


def slip_frame(payload: bytes) -> bytes:
    return b"\xc0" + payload.replace(b"\xdb", b"\xdb\xdd").replace(b"\xc0", b"\xdb\xdc") + b"\xc0"


def xor_checksum(data: bytes) -> int:
    state = 0xEF
    for byte in data:
        state ^= byte
    return state


class FakeDevice(Transport):
    """
    In-memory ESP bootloader.

    Answers requests written by the host by queuing SLIP frames for the next
    read(). Switches to the 2-byte status trailer once the stub is started.

    Attributes:
        registers: Register values returned by READ_REG
        sync_acks: Responses sent for each SYNC (0 = never answer SYNC)
        greeting: Send "OHAI" after MEM_END
        errors: opcode -> error code to reject that command with
        drop: opcode -> number of requests to ignore before answering
        on_command: Hook called with each received opcode before answering
        commands: (opcode, payload, checksum) of every request received
        control_lines: (reset, bootstrap) history
    """

    def __init__(
        self,
        registers: Optional[Dict[int, int]] = None,
        sync_acks: int = 4,
        greeting: bool = True,
        stub_running: bool = False,
    ):
        super().__init__()
        self.registers: Dict[int, int] = {MAGIC_REG: C3_MAGIC}
        if registers:
            self.registers.update(registers)
        self.sync_acks = sync_acks
        self.greeting = greeting
        self.stub_running = stub_running
        self.errors: Dict[int, int] = {}
        self.drop: Dict[int, int] = {}
        self.on_command: Optional[Callable[[int], None]] = None
        self.noise = b""

        self.commands: List[Tuple[int, bytes, int]] = []
        self.control_lines: List[Tuple[bool, bool]] = []
        self.baud_rates: List[int] = []
        self.flash = bytearray(b"\xff" * FLASH_SIZE)
        self.ram: Dict[int, bytes] = {}
        self.flash_begin: Optional[Tuple[int, ...]] = None
        self.flash_end: Optional[int] = None

        self._open = True
        self._rx = bytearray()
        self._host_buf = bytearray()
        self._mem_addr = 0
        self._mem_block = 0
        self._flash_offset = 0
        self._flash_block = 0

    # Transport contract

    @property
    def is_open(self) -> bool:
        return self._open

    def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportClosed("write on closed fake device")
        self._host_buf.extend(data)
        for raw in self._take_frames():
            self._handle(raw)

    def read(self, size: int, timeout: float) -> bytes:
        if not self._open:
            raise TransportClosed("read on closed fake device")
        if not self._rx:
            time.sleep(min(timeout, 0.001))
            return b""
        chunk = bytes(self._rx[:size])
        del self._rx[:size]
        return chunk

    def set_control_lines(self, reset: bool, bootstrap: bool, reset_first: bool = False) -> None:
        self.control_lines.append((reset, bootstrap))

    def set_baud_rate(self, baud: int) -> None:
        self.baud_rates.append(baud)

    def reset_input_buffer(self) -> None:
        self._rx.clear()

    def close(self) -> None:
        self._open = False
        self._notify_disconnect()

    # Helpers for tests

    def opcodes(self) -> List[int]:
        return [op for op, _, _ in self.commands]

    def count(self, opcode: int) -> int:
        return self.opcodes().count(opcode)

    def queue_raw(self, payload: bytes) -> None:
        """Queue an unsolicited frame for the host."""
        self._rx.extend(slip_frame(payload))

    # Device side

    def _take_frames(self) -> List[bytes]:
        frames = []
        while True:
            start = self._host_buf.find(b"\xc0")
            if start < 0:
                return frames
            end = self._host_buf.find(b"\xc0", start + 1)
            if end < 0:
                return frames
            body = bytes(self._host_buf[start + 1:end])
            del self._host_buf[:end + 1]
            if body:
                frames.append(body.replace(b"\xdb\xdc", b"\xc0").replace(b"\xdb\xdd", b"\xdb"))

    def _respond(self, opcode: int, value: int = 0, data: bytes = b"", error: int = 0) -> None:
        status_len = 2 if self.stub_running else 4
        status = bytes([1 if error else 0, error]) + bytes(status_len - 2)
        body = data + status
        self._rx.extend(self.noise)
        self.queue_raw(struct.pack("<BBHI", 1, opcode, len(body), value) + body)

    def _handle(self, raw: bytes) -> None:
        if len(raw) < 8:
            # Flash read acknowledgement
            return
        direction, opcode, length, chk = struct.unpack("<BBHI", raw[:8])
        payload = raw[8:]
        assert direction == 0
        assert length == len(payload)
        self.commands.append((opcode, payload, chk))

        if self.on_command:
            self.on_command(opcode)
        if not self._open:
            return
        if self.drop.get(opcode, 0) > 0:
            self.drop[opcode] -= 1
            return
        if opcode in self.errors:
            self._respond(opcode, error=self.errors[opcode])
            return

        handler = getattr(self, f"_op_{opcode:02x}", None)
        if handler is None:
            self._respond(opcode, error=0x05)
        else:
            handler(payload, chk)

    def _op_08(self, payload: bytes, chk: int) -> None:  # SYNC
        value = 0 if self.stub_running else ROM_SYNC_VALUE
        for _ in range(self.sync_acks):
            self._respond(0x08, value=value)

    def _op_0a(self, payload: bytes, chk: int) -> None:  # READ_REG
        (address,) = struct.unpack("<I", payload)
        self._respond(0x0A, value=self.registers.get(address, 0))

    def _op_09(self, payload: bytes, chk: int) -> None:  # WRITE_REG
        address, value, mask, _ = struct.unpack("<IIII", payload)
        old = self.registers.get(address, 0)
        self.registers[address] = (old & ~mask) | (value & mask)
        self._respond(0x09)

    def _op_05(self, payload: bytes, chk: int) -> None:  # MEM_BEGIN
        _, _, self._mem_block, self._mem_addr = struct.unpack("<IIII", payload)
        self._respond(0x05)

    def _op_07(self, payload: bytes, chk: int) -> None:  # MEM_DATA
        size, seq = struct.unpack("<II", payload[:8])
        block = payload[16:]
        if len(block) != size or xor_checksum(block) != chk:
            self._respond(0x07, error=0x07)
            return
        self.ram[self._mem_addr + seq * self._mem_block] = block
        self._respond(0x07)

    def _op_06(self, payload: bytes, chk: int) -> None:  # MEM_END
        self._respond(0x06)
        if self.greeting:
            self.queue_raw(b"OHAI")
            self.stub_running = True

    def _op_02(self, payload: bytes, chk: int) -> None:  # FLASH_BEGIN
        self.flash_begin = struct.unpack(f"<{len(payload) // 4}I", payload)
        self._flash_block = self.flash_begin[2]
        self._flash_offset = self.flash_begin[3]
        self._respond(0x02)

    def _op_03(self, payload: bytes, chk: int) -> None:  # FLASH_DATA
        size, seq = struct.unpack("<II", payload[:8])
        block = payload[16:]
        if len(block) != size or xor_checksum(block) != chk:
            self._respond(0x03, error=0x07)
            return
        start = self._flash_offset + seq * self._flash_block
        end = min(start + len(block), FLASH_SIZE)
        self.flash[start:end] = block[:end - start]
        self._respond(0x03)

    def _op_04(self, payload: bytes, chk: int) -> None:  # FLASH_END
        (self.flash_end,) = struct.unpack("<I", payload)
        self._respond(0x04)

    def _op_0f(self, payload: bytes, chk: int) -> None:  # CHANGE_BAUDRATE
        self._respond(0x0F)

    def _op_d2(self, payload: bytes, chk: int) -> None:  # READ_FLASH (stub only)
        if not self.stub_running:
            self._respond(0xD2, error=0x05)
            return
        offset, length, sector, _ = struct.unpack("<IIII", payload)
        self._respond(0xD2)
        data = bytes(self.flash[offset:offset + length])
        for pos in range(0, len(data), sector):
            self.queue_raw(data[pos:pos + sector])
        self.queue_raw(hashlib.md5(data).digest())


@pytest.fixture
def config() -> LoaderConfig:
    """Loader configuration with timeouts shrunk for the simulated device."""
    return LoaderConfig(
        timeout=0.05,
        command_attempts=2,
        sync_timeout=0.02,
        sync_attempts=3,
        connect_attempts=2,
        sync_retry_delay=0.0,
        reset_strategy="none",
        reset_delay=0.0,
        mem_end_timeout=0.05,
        stub_start_timeout=0.05,
        erase_timeout_per_mb=0.05,
        max_timeout=1.0,
    )


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def stub_image() -> StubImage:
    """Small stub: text spans two RAM blocks, data fits in one."""
    return StubImage(
        text_load_addr=0x40380000,
        text=bytes(range(256)) * 30,
        data_load_addr=0x3FC80000,
        data=b"\x01\x02\x03",
        entry_addr=0x40380400,
    )
