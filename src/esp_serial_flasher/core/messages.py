"""
Standardized warning and message system.

Maps engine exceptions and result errors to structured warning items with
stable codes and remediation hints, so every front end explains failures the
same way.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any, TYPE_CHECKING

from ..errors import (
    CommandTimeout,
    DeviceError,
    FlashWriteFailed,
    FlasherError,
    FramingError,
    OperationInProgress,
    StubRequiredError,
    StubUploadFailed,
    SyncFailed,
    TransportClosed,
    UnsupportedChipError,
)

if TYPE_CHECKING:
    from .results import FlashResult


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable codes for known conditions."""
    # Connection
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_SYNC_FAILED = "W_SYNC_FAILED"
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"
    W_DISCONNECTED = "W_DISCONNECTED"
    W_BUSY = "W_BUSY"

    # Protocol
    W_FRAMING = "W_FRAMING"
    W_DEVICE_ERROR = "W_DEVICE_ERROR"

    # Chip / stub
    W_CHIP_UNSUPPORTED = "W_CHIP_UNSUPPORTED"
    W_STUB_FAILED = "W_STUB_FAILED"
    W_STUB_REQUIRED = "W_STUB_REQUIRED"

    # Flash
    W_WRITE_FAILED = "W_WRITE_FAILED"
    W_NOT_BLANK = "W_NOT_BLANK"
    W_UNRELIABLE_LINK = "W_UNRELIABLE_LINK"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Check USB connection, try 'ports' command to list available ports.",
    WarningCode.W_SYNC_FAILED:
        "Hold BOOT while pressing RESET to enter download mode, or try --reset usb_jtag.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check cable connection. Try a lower baud rate or increase timeout.",
    WarningCode.W_DISCONNECTED:
        "The port went away. Reconnect the board and start a new session.",
    WarningCode.W_BUSY:
        "Wait for the running operation to finish.",
    WarningCode.W_FRAMING:
        "Corrupted data on the line. Close other serial apps and check the cable.",
    WarningCode.W_DEVICE_ERROR:
        "The bootloader rejected the command. Check address and size alignment.",
    WarningCode.W_CHIP_UNSUPPORTED:
        "Only ESP32-C3, ESP32-C6, ESP32-S2 and ESP32-S3 are supported.",
    WarningCode.W_STUB_FAILED:
        "Continuing with the ROM loader. Check the stub image directory.",
    WarningCode.W_STUB_REQUIRED:
        "This operation needs the flasher stub. Do not pass --no-stub.",
    WarningCode.W_WRITE_FAILED:
        "Flash content is partial. Re-run the write before rebooting the chip.",
    WarningCode.W_NOT_BLANK:
        "Region contains data. Erase it before writing if that matters.",
    WarningCode.W_UNRELIABLE_LINK:
        "Reads were inconsistent. Try a shorter cable or a lower baud rate.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}


# Most specific classes first
_EXCEPTION_CODES = [
    (SyncFailed, WarningCode.W_SYNC_FAILED),
    (CommandTimeout, WarningCode.W_SERIAL_TIMEOUT),
    (TransportClosed, WarningCode.W_DISCONNECTED),
    (OperationInProgress, WarningCode.W_BUSY),
    (FramingError, WarningCode.W_FRAMING),
    (DeviceError, WarningCode.W_DEVICE_ERROR),
    (UnsupportedChipError, WarningCode.W_CHIP_UNSUPPORTED),
    (StubUploadFailed, WarningCode.W_STUB_FAILED),
    (StubRequiredError, WarningCode.W_STUB_REQUIRED),
    (FlashWriteFailed, WarningCode.W_WRITE_FAILED),
]


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def info(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.INFO, code, title, detail)

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def code_for_exception(exc: BaseException) -> WarningCode:
    """Return the stable code for an exception."""
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    return WarningCode.W_UNKNOWN


def exception_to_warning(exc: BaseException) -> WarningItem:
    """
    Convert an engine exception to an ERROR-level WarningItem.

    Args:
        exc: Exception raised by the engine

    Returns:
        WarningItem with code, the message as title and the cause as detail
    """
    detail = ""
    if isinstance(exc, FlasherError) and exc.__cause__ is not None:
        detail = f"Caused by: {exc.__cause__}"
    return WarningItem.error(code_for_exception(exc), str(exc), detail)


def result_to_warnings(result: "FlashResult") -> List[WarningItem]:
    """
    Convert a FlashResult's warnings and errors to WarningItems.

    Errors keep the code recorded with them; warnings are classified by
    their text.
    """
    items = []
    for msg in result.warnings:
        msg_lower = msg.lower()
        if "stub" in msg_lower:
            code = WarningCode.W_STUB_FAILED
        elif "erased" in msg_lower or "blank" in msg_lower:
            code = WarningCode.W_NOT_BLANK
        elif "reliab" in msg_lower:
            code = WarningCode.W_UNRELIABLE_LINK
        elif "unsupported chip" in msg_lower:
            code = WarningCode.W_CHIP_UNSUPPORTED
        else:
            code = WarningCode.W_UNKNOWN
        items.append(WarningItem.warn(code, msg))

    for code, err in zip(result.error_codes, result.errors):
        items.append(WarningItem.error(code, err))

    return items
