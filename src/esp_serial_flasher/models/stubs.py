"""
Flasher stub images.

A stub is a small program uploaded into the chip's RAM that replaces the ROM
command handler with a faster one. Images are stored as JSON in the format
produced by the esptool stub-flasher build:

    {
        "entry": 1077413304,
        "text": "<base64>", "text_start": 1077411840,
        "data": "<base64>", "data_start": 1070164912
    }
"""

import base64
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .chips import ChipConfig
from ..errors import FlasherError

logger = logging.getLogger(__name__)

STUBS_DIR = Path(__file__).resolve().parent.parent / "stubs"


class StubImageError(FlasherError):
    """Stub image missing or malformed."""


@dataclass(frozen=True)
class StubImage:
    """RAM-resident flasher program for one chip."""
    text_load_addr: int
    text: bytes
    data_load_addr: int
    data: bytes
    entry_addr: int

    def segments(self):
        """Code then data, as (load_address, bytes) pairs; empty segments skipped."""
        return [
            (addr, blob)
            for addr, blob in ((self.text_load_addr, self.text), (self.data_load_addr, self.data))
            if blob
        ]

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "StubImage":
        """Build an image from decoded stub JSON."""
        try:
            text = base64.b64decode(raw["text"]) if raw.get("text") else b""
            data = base64.b64decode(raw["data"]) if raw.get("data") else b""
            return cls(
                text_load_addr=int(raw.get("text_start", 0)),
                text=text,
                data_load_addr=int(raw.get("data_start", 0)),
                data=data,
                entry_addr=int(raw["entry"]),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise StubImageError(f"Malformed stub image: {e}") from e


def stub_path(chip: ChipConfig, stub_dir: Optional[Path] = None) -> Path:
    """Location of a chip's stub JSON."""
    base = Path(stub_dir) if stub_dir else STUBS_DIR
    return base / f"stub_flasher_{chip.stub_name}.json"


def load_stub_image(chip: ChipConfig, stub_dir: Optional[Path] = None) -> StubImage:
    """
    Load the stub image for a chip.

    Args:
        chip: Chip row from the registry
        stub_dir: Override directory (default: bundled stubs)

    Raises:
        StubImageError: File missing or malformed
    """
    path = stub_path(chip, stub_dir)
    if not path.is_file():
        raise StubImageError(f"No stub image for {chip.name} at {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise StubImageError(f"Cannot read stub image {path}: {e}") from e

    image = StubImage.from_dict(raw)
    logger.debug(
        f"Loaded {chip.name} stub: text {len(image.text)}B @0x{image.text_load_addr:08X}, "
        f"data {len(image.data)}B @0x{image.data_load_addr:08X}, entry 0x{image.entry_addr:08X}"
    )
    return image
