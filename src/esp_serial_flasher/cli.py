"""
ESP Serial Flasher CLI

Command-line front end for identifying and flashing ESP32-C3/C6/S2/S3 chips
over a serial port.
"""

import sys
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from esp_serial_flasher.config import LoaderConfig, RESET_STRATEGIES
from esp_serial_flasher.core.parsing import parse_address, parse_size, parse_baud
from esp_serial_flasher.core.results import FlashResult
from esp_serial_flasher.core.actions import (
    blank_check as core_blank_check,
    flash_image as core_flash_image,
    probe as core_probe,
    read_chip_info as core_read_chip_info,
    read_mac as core_read_mac,
    read_register as core_read_register,
)
from esp_serial_flasher.core.messages import MessageLevel, WarningItem, result_to_warnings
from esp_serial_flasher.models import list_chips

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("esp_serial_flasher")

console = Console()

app = typer.Typer(help="ESP32-C3/C6/S2/S3 serial flasher")

PORT_OPTION = typer.Option(..., "--port", "-p", help="Serial port (e.g., /dev/ttyUSB0, COM3)")
RESET_OPTION = typer.Option(
    "classic", "--reset", help=f"Bootloader entry sequence: {', '.join(RESET_STRATEGIES)}"
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Show protocol debug output")


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def finish(result: FlashResult, verbose: bool = False) -> None:
    """Print warnings and errors from a result; exit 1 if it failed."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)
    if verbose:
        for line in result.logs:
            console.print(line, style="dim")
    if not result.ok:
        sys.exit(1)


def parse_address_option(value: str, label: str) -> int:
    """Parse an address option, exiting with a message on bad input."""
    try:
        result = parse_address(value)
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)
    if result is None:
        print_error(f"{label} is required")
        sys.exit(1)
    return result


def build_config(reset: str, verbose: bool, stub_dir: Optional[str] = None) -> LoaderConfig:
    """Map common options onto a LoaderConfig."""
    if verbose:
        logger.setLevel(logging.DEBUG)
    try:
        return LoaderConfig(
            reset_strategy=reset,
            stub_dir=Path(stub_dir) if stub_dir else None,
        )
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    import serial.tools.list_ports

    ports_list = list(serial.tools.list_ports.comports())
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("HWID", style="magenta")

    for port in ports_list:
        table.add_row(port.device, port.description or "-", port.hwid or "-")

    console.print(table)


@app.command()
def chips() -> None:
    """List supported chips."""
    table = Table(title="Supported Chips")
    table.add_column("Chip", style="cyan")
    table.add_column("Magic Values", style="green")
    table.add_column("MAC eFuse", style="yellow")
    table.add_column("Stub", style="magenta")

    for chip in list_chips():
        table.add_row(
            chip.name,
            ", ".join(f"0x{magic:08X}" for magic in chip.magic_values),
            f"0x{chip.mac_efuse_reg:08X}",
            chip.stub_name,
        )

    console.print(table)


@app.command("chip-id")
def chip_id(
    port: str = PORT_OPTION,
    reset: str = RESET_OPTION,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Connect to the bootloader and identify the chip."""
    config = build_config(reset, verbose)
    if not output_json:
        print_header("Identify Chip")
        console.print(f"Port: {port}")

    result = core_read_chip_info(port, config)

    if output_json:
        console.print_json(json.dumps(result.to_dict()))
    elif result.ok:
        table = Table(title="Chip Identification")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Chip", result.chip.value)
        if result.mac:
            table.add_row("MAC", result.mac)
        if result.unsupported_magic is not None:
            table.add_row("Magic", f"0x{result.unsupported_magic:08X}")
        table.add_row("Stub running", str(result.stub))
        console.print(table)
    finish(result, verbose)


@app.command("read-mac")
def read_mac(
    port: str = PORT_OPTION,
    reset: str = RESET_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Read the factory base MAC address."""
    config = build_config(reset, verbose)
    result = core_read_mac(port, config)
    if result.ok:
        console.print(f"Chip: {result.chip.value}")
        console.print(f"MAC: {result.mac}")
    finish(result, verbose)


@app.command("read-reg")
def read_reg(
    address: str = typer.Argument(..., help="Register address: decimal, hex (0x...) or suffix (...h)"),
    port: str = PORT_OPTION,
    reset: str = RESET_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Read a 32-bit register."""
    addr = parse_address_option(address, "Address")
    config = build_config(reset, verbose)
    result = core_read_register(port, addr, config)
    if result.ok:
        _, value = result.register
        console.print(f"0x{addr:08X} = 0x{value:08X}")
    finish(result, verbose)


@app.command("write-flash")
def write_flash(
    address: str = typer.Argument(..., help="Flash offset: decimal, hex (0x...) or suffix (...h)"),
    image: str = typer.Argument(..., help="Binary image to write"),
    port: str = PORT_OPTION,
    reset: str = RESET_OPTION,
    baud: Optional[str] = typer.Option(None, "--baud", "-b", help="Baud rate to switch to after connecting"),
    no_stub: bool = typer.Option(False, "--no-stub", help="Use the ROM loader only"),
    stub_dir: Optional[str] = typer.Option(None, "--stub-dir", help="Directory with stub JSON images"),
    reboot: bool = typer.Option(False, "--reboot", help="Run the application after writing"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Write a binary image to flash."""
    print_header("Write Flash")

    addr = parse_address_option(address, "Address")
    image_path = Path(image)
    if not image_path.exists():
        print_error(f"Image file not found: {image}")
        sys.exit(1)
    data = image_path.read_bytes()
    if not data:
        print_error(f"Image file is empty: {image}")
        sys.exit(1)

    new_baud = None
    if baud:
        try:
            new_baud = parse_baud(baud)
        except ValueError as e:
            print_error(str(e))
            sys.exit(1)

    config = build_config(reset, verbose, stub_dir)

    console.print(f"Port: {port}")
    console.print(f"Image: {image_path} ({len(data):,} bytes)")
    console.print(f"Address: 0x{addr:08X}")

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task("Writing...", total=len(data))

        def on_progress(written: int, total: int) -> None:
            progress.update(task, completed=written)

        result = core_flash_image(
            port,
            addr,
            data,
            config=config,
            use_stub=not no_stub,
            baud=new_baud,
            reboot=reboot,
            progress_cb=on_progress,
        )

    if result.ok:
        console.print(result.to_summary())
        print_success(f"Wrote {len(data):,} bytes at 0x{addr:08X}")
    finish(result, verbose)


@app.command()
def probe(
    port: str = PORT_OPTION,
    reset: str = RESET_OPTION,
    iterations: int = typer.Option(100, "--iterations", "-n", help="Number of register reads"),
    seconds: Optional[float] = typer.Option(None, "--seconds", help="Stop after this many seconds"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Check link reliability with repeated register reads."""
    print_header("Link Reliability Probe")
    config = build_config(reset, verbose)

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task("Probing...", total=100)
        result = core_probe(
            port,
            config,
            iterations=iterations,
            time_budget=seconds,
            progress_cb=lambda percent: progress.update(task, completed=percent),
        )

    if result.ok:
        print_success("Link is reliable")
    finish(result, verbose)


@app.command("blank-check")
def blank_check(
    start: str = typer.Argument(..., help="Start address"),
    size: str = typer.Argument(..., help="Region size (e.g., 0x1000, 64k, 4M)"),
    port: str = PORT_OPTION,
    reset: str = RESET_OPTION,
    block_size: str = typer.Option("0x1000", "--block-size", help="Bytes read per block"),
    stub_dir: Optional[str] = typer.Option(None, "--stub-dir", help="Directory with stub JSON images"),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Count erased (0xFF) bytes in a flash region."""
    print_header("Blank Check")

    start_addr = parse_address_option(start, "Start")
    try:
        length = parse_size(size)
        block = parse_size(block_size)
    except ValueError as e:
        print_error(str(e))
        sys.exit(1)
    if length <= 0 or block <= 0:
        print_error("Size and block size must be positive")
        sys.exit(1)

    config = build_config(reset, verbose, stub_dir)
    end = start_addr + length

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task("Reading...", total=length)

        def on_block(current: int, first: int, last: int, block_len: int, erased: int, total: int) -> None:
            progress.update(task, completed=min(current + block_len, last) - first)

        result = core_blank_check(port, start_addr, end, config, block, progress_cb=on_block)

    if result.ok:
        console.print(f"Erased: {result.erased:,} / {length:,} bytes")
        if result.blank:
            print_success("Region is blank")
    finish(result, verbose)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(0)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
