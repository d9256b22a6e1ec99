"""
Core workflow actions.

Each workflow opens a session on a port, runs one job end to end and returns
a FlashResult. Engine exceptions are converted into result errors so
front ends only need to render the result.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Optional

from .messages import WarningCode, code_for_exception
from .results import FlashRegion, FlashResult, ImageDigest
from .session import Session
from ..config import LoaderConfig
from ..errors import FlasherError, UnsupportedChipError
from ..protocol.flash_writer import ProgressCallback

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "esp_serial_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _record_error(result: FlashResult, exc: Exception) -> None:
    """Add an exception to a result along with its stable code."""
    result.add_error(str(exc), code_for_exception(exc))


def open_session(port: str, config: Optional[LoaderConfig] = None) -> Session:
    """Open a session on a serial port (replaced in tests)."""
    return Session.open(port, config)


def _connect(port: str, config: Optional[LoaderConfig], result: FlashResult) -> Session:
    session = open_session(port, config)
    try:
        session.sync()
    except UnsupportedChipError as e:
        result.add_warning(str(e))
        result.unsupported_magic = e.magic
    except FlasherError:
        session.close()
        raise
    result.chip = session.chip
    result.stub = session.stub_loaded
    return session


def _start_stub(session: Session, result: FlashResult) -> None:
    if not session.load_stub():
        result.add_warning("Stub upload failed, continuing with ROM loader")
    result.stub = session.stub_loaded


def read_chip_info(port: str, config: Optional[LoaderConfig] = None) -> FlashResult:
    """
    Identify the chip on `port`.

    Returns:
        FlashResult with:
            - chip: detected chip (UNKNOWN if not supported)
            - unsupported_magic: magic value of an unsupported chip
            - mac: base MAC address (supported chips only)
            - stub: whether a stub answered the sync
    """
    result = FlashResult("chip_id")
    with _capture_logs() as logs:
        session = None
        try:
            session = _connect(port, config, result)
            if session.chip_config is not None:
                result.mac = session.read_mac()
        except FlasherError as e:
            _record_error(result, e)
        finally:
            if session is not None:
                session.close()
    result.logs = logs
    return result


def read_mac(port: str, config: Optional[LoaderConfig] = None) -> FlashResult:
    """Read the base MAC address into result.mac ('aa:bb:cc:dd:ee:ff')."""
    result = FlashResult("read_mac")
    with _capture_logs() as logs:
        session = None
        try:
            session = _connect(port, config, result)
            result.mac = session.read_mac()
        except FlasherError as e:
            _record_error(result, e)
        finally:
            if session is not None:
                session.close()
    result.logs = logs
    return result


def read_register(port: str, address: int, config: Optional[LoaderConfig] = None) -> FlashResult:
    """Read one register into result.register as (address, value)."""
    result = FlashResult("read_reg")
    with _capture_logs() as logs:
        session = None
        try:
            session = _connect(port, config, result)
            result.register = (address, session.read_reg(address))
        except FlasherError as e:
            _record_error(result, e)
        finally:
            if session is not None:
                session.close()
    result.logs = logs
    return result


def flash_image(
    port: str,
    address: int,
    data: bytes,
    config: Optional[LoaderConfig] = None,
    use_stub: bool = True,
    baud: Optional[int] = None,
    reboot: bool = False,
    progress_cb: Optional[ProgressCallback] = None,
) -> FlashResult:
    """
    Write an image to flash.

    Args:
        port: Serial port path
        address: Flash offset
        data: Image bytes
        config: Loader configuration
        use_stub: Upload the flasher stub first (falls back to ROM on failure)
        baud: Switch to this baud rate after connecting
        reboot: Run the application afterwards
        progress_cb: Optional progress callback(bytes_written, total)

    Returns:
        FlashResult with:
            - ok: True if every block was acknowledged
            - region, digest: target range and image digests
            - blocks: blocks written
            - stub: whether the stub was used
    """
    result = FlashResult(
        "write_flash",
        region=FlashRegion(address, len(data)),
        digest=ImageDigest.of(data),
    )
    with _capture_logs() as logs:
        session = None
        try:
            session = _connect(port, config, result)
            if use_stub:
                _start_stub(session, result)
            if baud and baud != session.baud:
                session.change_baud(baud)
            result.blocks = session.write_flash(address, data, on_progress=progress_cb, reboot=reboot)
        except FlasherError as e:
            _record_error(result, e)
        finally:
            if session is not None:
                session.close()
    result.logs = logs
    return result


def probe(
    port: str,
    config: Optional[LoaderConfig] = None,
    iterations: int = 100,
    time_budget: Optional[float] = None,
    progress_cb: Optional[Callable[[float], None]] = None,
) -> FlashResult:
    """Run the link reliability check; result.reliable holds the verdict."""
    result = FlashResult("probe")
    with _capture_logs() as logs:
        session = None
        try:
            session = _connect(port, config, result)
            result.reliable = session.test_reliability(progress_cb, iterations=iterations, time_budget=time_budget)
            if not result.reliable:
                result.add_error("Reliability check failed: reads were not consistent", WarningCode.W_UNRELIABLE_LINK)
        except FlasherError as e:
            _record_error(result, e)
        finally:
            if session is not None:
                session.close()
    result.logs = logs
    return result


def blank_check(
    port: str,
    start: int,
    end: int,
    config: Optional[LoaderConfig] = None,
    block_size: int = 0x1000,
    progress_cb: Optional[Callable[..., None]] = None,
) -> FlashResult:
    """
    Count erased bytes in [start, end).

    Returns:
        FlashResult with region and erased; a warning is added when the
        region is not fully erased
    """
    result = FlashResult("blank_check", region=FlashRegion(start, end - start))
    with _capture_logs() as logs:
        session = None
        try:
            session = _connect(port, config, result)
            _start_stub(session, result)
            result.erased = session.blank_check(progress_cb, start, end, block_size)
            if not result.blank:
                result.add_warning(f"Region not blank: {result.erased} of {end - start} bytes erased")
        except FlasherError as e:
            _record_error(result, e)
        finally:
            if session is not None:
                session.close()
    result.logs = logs
    return result
