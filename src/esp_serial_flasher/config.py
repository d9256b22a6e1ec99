"""
Loader configuration.

All protocol tunables live in one dataclass so front ends can override them
without touching the engine. Defaults follow the values documented for
esptool; tests shrink the timeouts to keep simulated sessions fast.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

ROM_BAUD = 115200

# Reset strategies understood by the handshake controller
RESET_STRATEGIES = ("classic", "usb_jtag", "none")


@dataclass
class LoaderConfig:
    """
    Tunables for a flashing session.

    Attributes:
        timeout: Per-attempt timeout for ordinary commands (seconds)
        command_attempts: Sends per command before CommandTimeout
        discard_limit: Unrelated frames skipped while waiting for one response
        sync_timeout: Per-attempt timeout for SYNC
        sync_attempts: SYNC tries after each bootloader entry
        connect_attempts: Bootloader entry (reset) cycles before SyncFailed
        sync_retry_delay: Pause between SYNC tries
        sync_discard_limit: Extra SYNC acknowledgements drained after a good one
        reset_strategy: "classic", "usb_jtag" or "none"
        reset_delay: Time the bootstrap line is held across reset release
        mem_end_timeout: Timeout for MEM_END (the ROM may never answer it)
        stub_start_timeout: Wait for the stub's greeting frame
        erase_timeout_per_mb: FLASH_BEGIN timeout scaling (ROM erases up front)
        max_timeout: Upper bound for any single command
        ram_block_size: MEM_DATA block size for stub upload
        baud: Initial baud rate
        stub_dir: Directory holding stub JSON images (None = bundled)
    """
    timeout: float = 3.0
    command_attempts: int = 3
    discard_limit: int = 100
    sync_timeout: float = 0.1
    sync_attempts: int = 5
    connect_attempts: int = 7
    sync_retry_delay: float = 0.05
    sync_discard_limit: int = 7
    reset_strategy: str = "classic"
    reset_delay: float = 0.05
    mem_end_timeout: float = 0.2
    stub_start_timeout: float = 3.0
    erase_timeout_per_mb: float = 30.0
    max_timeout: float = 240.0
    ram_block_size: int = 0x1800
    baud: int = ROM_BAUD
    stub_dir: Optional[Path] = field(default=None)

    def __post_init__(self) -> None:
        if self.reset_strategy not in RESET_STRATEGIES:
            raise ValueError(
                f"Unknown reset strategy '{self.reset_strategy}'. "
                f"Use one of: {', '.join(RESET_STRATEGIES)}"
            )
        if self.command_attempts < 1:
            raise ValueError("command_attempts must be >= 1")
        if self.sync_attempts < 1 or self.connect_attempts < 1:
            raise ValueError("sync_attempts and connect_attempts must be >= 1")

    def timeout_per_mb(self, seconds_per_mb: float, size_bytes: int) -> float:
        """Scale a size-dependent timeout, never going below the default."""
        result = seconds_per_mb * (size_bytes / 1e6)
        return min(max(result, self.timeout), self.max_timeout)

    def with_overrides(self, **kwargs) -> "LoaderConfig":
        """Return a copy with selected fields replaced."""
        return replace(self, **kwargs)
