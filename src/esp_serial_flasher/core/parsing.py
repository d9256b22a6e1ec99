"""
Centralized parsing helpers for addresses, sizes and baud rates.

The CLI and any other front end must use these rather than re-implement.
"""

from typing import Optional

SIZE_SUFFIXES = {"k": 1024, "m": 1024 * 1024}


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    Parse an address value from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or empty for "not given"

    Returns:
        Parsed integer address, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            result = int(value, 16)
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid address '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )
    if result < 0:
        raise ValueError(f"Address must not be negative: '{value}'")
    return result


def parse_size(value: str) -> int:
    """
    Parse a byte count, allowing a k/M suffix ("4k", "2M") in addition to
    the address formats.

    Raises:
        ValueError: If value cannot be parsed.
    """
    text = value.strip()
    suffix = text[-1:].lower()
    if suffix in SIZE_SUFFIXES and not text.lower().startswith("0x"):
        try:
            return int(text[:-1]) * SIZE_SUFFIXES[suffix]
        except ValueError:
            raise ValueError(f"Invalid size '{value}'. Use e.g. 4096, 0x1000, 4k or 2M.")
    result = parse_address(text)
    if result is None:
        raise ValueError("Size is required")
    return result


def parse_baud(value: str) -> int:
    """
    Parse a baud rate.

    Raises:
        ValueError: If value is not a positive integer.
    """
    try:
        baud = int(value)
    except ValueError:
        raise ValueError(f"Invalid baud rate '{value}'")
    if baud <= 0:
        raise ValueError(f"Invalid baud rate '{value}'")
    return baud
