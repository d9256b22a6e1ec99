"""
Workflow outcomes.

Each workflow in core.actions returns a FlashResult instead of raising, so
front ends only render it. Fields that a workflow does not produce stay None.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .messages import WarningCode
from ..models.chips import ChipIdentity


@dataclass(frozen=True)
class FlashRegion:
    """Half-open flash address range [start, start + length)."""
    start: int
    length: int

    @property
    def end(self) -> int:
        return self.start + self.length

    def __str__(self) -> str:
        return f"0x{self.start:08X}-0x{self.end:08X}"


@dataclass(frozen=True)
class ImageDigest:
    """Digests of an image, as printed next to a flash write."""
    sha256: str
    md5: str

    @classmethod
    def of(cls, data: bytes) -> "ImageDigest":
        return cls(hashlib.sha256(data).hexdigest(), hashlib.md5(data).hexdigest())


@dataclass
class FlashResult:
    """
    Outcome of one workflow against one device.

    Attributes:
        operation: Workflow name ("write_flash", "read_mac", ...)
        ok: False once any error was recorded
        chip: Identified chip; UNKNOWN if sync failed or the chip is unsupported
        unsupported_magic: Magic value read from an unsupported chip
        stub: Whether the flasher stub was running for the operation
        region: Flash range written or checked
        digest: Digests of the written image
        blocks: FLASH_DATA blocks written
        erased: 0xFF bytes counted by a blank check
        mac: Base MAC address
        register: (address, value) of a register read
        reliable: Verdict of the link reliability check
        warnings: Non-fatal problems
        errors: Fatal problems, each with a stable code in error_codes
        error_codes: WarningCode per entry in errors
        logs: Log lines captured while the workflow ran
    """
    operation: str
    ok: bool = True
    chip: ChipIdentity = ChipIdentity.UNKNOWN
    unsupported_magic: Optional[int] = None
    stub: bool = False
    region: Optional[FlashRegion] = None
    digest: Optional[ImageDigest] = None
    blocks: Optional[int] = None
    erased: Optional[int] = None
    mac: Optional[str] = None
    register: Optional[Tuple[int, int]] = None
    reliable: Optional[bool] = None
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error_codes: List[WarningCode] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def blank(self) -> Optional[bool]:
        """True if a blank check found the whole region erased."""
        if self.erased is None or self.region is None:
            return None
        return self.erased == self.region.length

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str, code: WarningCode = WarningCode.W_UNKNOWN) -> None:
        """Record a fatal problem; the result is failed from here on."""
        self.errors.append(message)
        self.error_codes.append(code)
        self.ok = False

    def to_summary(self) -> str:
        """Multi-line report for the CLI."""
        lines = [f"[{'SUCCESS' if self.ok else 'FAILED'}] {self.operation}"]
        if self.chip is not ChipIdentity.UNKNOWN:
            lines.append(f"  Chip: {self.chip.value}" + (" (stub)" if self.stub else " (ROM)"))
        elif self.unsupported_magic is not None:
            lines.append(f"  Chip: unsupported, magic 0x{self.unsupported_magic:08X}")
        if self.region is not None:
            lines.append(f"  Region: {self.region} ({self.region.length:,} bytes)")
        if self.blocks is not None:
            lines.append(f"  Blocks: {self.blocks}")
        if self.digest is not None:
            lines.append(f"  SHA-256: {self.digest.sha256[:16]}...")
            lines.append(f"  MD5: {self.digest.md5}")
        if self.erased is not None and self.region is not None:
            lines.append(f"  Erased: {self.erased:,} / {self.region.length:,} bytes")
        for warn in self.warnings:
            lines.append(f"  Warning: {warn}")
        for code, err in zip(self.error_codes, self.errors):
            lines.append(f"  Error [{code.value}]: {err}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready form; addresses and magic values as hex strings."""
        data: Dict[str, Any] = {
            "ok": self.ok,
            "operation": self.operation,
            "chip": self.chip.value,
            "stub": self.stub,
            "warnings": list(self.warnings),
            "errors": [
                {"code": code.value, "message": err} for code, err in zip(self.error_codes, self.errors)
            ],
        }
        if self.unsupported_magic is not None:
            data["magic"] = f"0x{self.unsupported_magic:08X}"
        if self.region is not None:
            data["region"] = {"start": f"0x{self.region.start:08X}", "length": self.region.length}
        if self.digest is not None:
            data["sha256"] = self.digest.sha256
            data["md5"] = self.digest.md5
        if self.register is not None:
            address, value = self.register
            data["register"] = {"address": f"0x{address:08X}", "value": f"0x{value:08X}"}
        for name in ("blocks", "erased", "mac", "reliable"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data
