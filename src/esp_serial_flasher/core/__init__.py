"""
Core module for ESP Serial Flasher.

This module provides the single source of truth for:
- The flashing session (session.py)
- Register, MAC, reliability and blank-check operations (diagnostics.py)
- Address and size parsing (parsing.py)
- Result objects (results.py)
- Workflows used by the CLI (actions.py)
- Standardized warnings/messages (messages.py)
"""

from .parsing import parse_address, parse_size, parse_baud
from .results import FlashRegion, FlashResult, ImageDigest
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    code_for_exception,
    exception_to_warning,
    result_to_warnings,
)
from .session import Session, SessionInfo, SessionState
from .actions import (
    read_chip_info,
    read_mac,
    read_register,
    flash_image,
    probe,
    blank_check,
)

__all__ = [
    # Parsing
    "parse_address",
    "parse_size",
    "parse_baud",
    # Results
    "FlashRegion",
    "FlashResult",
    "ImageDigest",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "code_for_exception",
    "exception_to_warning",
    "result_to_warnings",
    # Session
    "Session",
    "SessionInfo",
    "SessionState",
    # Actions
    "read_chip_info",
    "read_mac",
    "read_register",
    "flash_image",
    "probe",
    "blank_check",
]
