"""
MCU Flasher CLI

Command-line interface for converting, inspecting and flashing firmware
images over a serial port.
"""

import sys
import json
import logging
import threading
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from mcu_flasher.core.actions import (
    convert_firmware as core_convert_firmware,
    flash_firmware_serial as core_flash_firmware,
    inspect_uf2 as core_inspect_uf2,
    prepare_image,
)
from mcu_flasher.core.messages import (
    MessageLevel,
    WarningItem,
    result_to_warnings,
)
from mcu_flasher.core.parsing import (
    parse_int as _parse_int_core,
    parse_transfer_mode as _parse_transfer_mode_core,
)
from mcu_flasher.core.results import OperationResult
from mcu_flasher.flasher import FlashEvent, FlashPhase
from mcu_flasher.hex_parser import MalformedRecord
from mcu_flasher.models import TransferMode, get_profile, list_profiles
from mcu_flasher.protocol import (
    BootloaderHandshake,
    BootloaderHandshakeFailed,
    CommandChannel,
    ConnectionState,
    PortWatcher,
    SerialTransport,
    TransportConfig,
    TransportError,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("mcu_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="MCU Flasher - serial firmware upload (raw / UF2) for microcontrollers")


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
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
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    """Print all warnings from an OperationResult using structured format."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def parse_int(value: Optional[str], label: str) -> Optional[int]:
    """Parse an integer option (decimal or hex), exiting on bad input."""
    try:
        return _parse_int_core(value, label)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))


def parse_mode(value: Optional[str]) -> Optional[TransferMode]:
    """Parse --mode, exiting on bad input."""
    try:
        return _parse_transfer_mode_core(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc))


def resolve_profile(name: str):
    try:
        return get_profile(name)
    except KeyError as exc:
        print_error(str(exc).strip("'\""))
        console.print("Use [cyan]profiles[/cyan] to list known device profiles.")
        raise typer.Exit(1)


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
    table.add_column("VID:PID", style="magenta")

    for port in ports_list:
        vid_pid = f"{port.vid:04X}:{port.pid:04X}" if port.vid is not None else "-"
        table.add_row(port.device, port.description or "-", vid_pid)

    console.print(table)


@app.command("list-devices")
def list_devices() -> None:
    """Alias for listing available serial ports."""
    ports()


@app.command()
def profiles(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List known device profiles."""
    names = list_profiles()
    if json_output:
        console.print(json.dumps([get_profile(n).to_dict() for n in names], indent=2))
        return

    table = Table(title="Device Profiles")
    table.add_column("Profile", style="cyan")
    table.add_column("Mode", style="magenta")
    table.add_column("Family ID")
    table.add_column("Load Address")
    table.add_column("Touch", style="green")
    table.add_column("Description", style="dim")

    for name in names:
        p = get_profile(name)
        table.add_row(
            p.name,
            p.mode.value,
            f"0x{p.family_id:08X}" if p.family_id is not None else "-",
            f"0x{p.load_address:08X}",
            f"{p.touch_baudrate} bps, {p.settle_delay:.1f}s" if p.uses_touch else "no",
            p.description,
        )
    console.print(table)


@app.command("parse-hex")
def parse_hex(
    hex_file: str = typer.Argument(..., help="Intel HEX file"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Write flat binary here"),
    strict: bool = typer.Option(False, "--strict", help="Verify record checksums"),
) -> None:
    """Parse an Intel HEX file into a flat binary."""
    print_header("Parse Intel HEX")

    try:
        image, warnings = prepare_image(hex_file, strict=strict)
    except FileNotFoundError as exc:
        print_error(str(exc))
        sys.exit(1)
    except MalformedRecord as exc:
        print_error(f"Malformed record: {exc}")
        sys.exit(1)

    console.print(f"  Bytes:  {len(image.data):,}")
    console.print(f"  SHA256: {image.sha256}")
    for warning in warnings:
        print_warning(warning)

    if out:
        Path(out).write_bytes(image.data)
        print_success(f"Saved {len(image.data)} bytes to {out}")


@app.command()
def convert(
    firmware: str = typer.Argument(..., help="Input .hex or .bin file"),
    out: str = typer.Option(..., "--out", "-o", help="Output .uf2 file"),
    profile: str = typer.Option("generic-uf2", "--profile", "-P", help="Device profile"),
    family_id: Optional[str] = typer.Option(None, "--family-id", help="UF2 family ID override"),
    base: Optional[str] = typer.Option(None, "--base", help="Load address override"),
    block_size: Optional[str] = typer.Option(None, "--block-size", help="Payload bytes per block (max 476)"),
    strict: bool = typer.Option(False, "--strict", help="Verify HEX checksums"),
) -> None:
    """Convert a HEX/BIN image into a UF2 file."""
    print_header("Convert to UF2")
    resolve_profile(profile)

    result = core_convert_firmware(
        firmware,
        out,
        profile=profile,
        family_id=parse_int(family_id, "family-id"),
        base_address=parse_int(base, "base"),
        data_per_block=parse_int(block_size, "block-size"),
        strict=strict,
    )
    print_warnings_from_result(result, verbose=not result.ok)
    if not result.ok:
        sys.exit(1)

    meta = result.metadata
    print_success(
        f"Wrote {meta['blocks']} blocks to {meta['output']} "
        f"(base {meta['base_address']}, family {meta['family_id'] or 'none'})"
    )


@app.command()
def inspect(
    uf2_file: str = typer.Argument(..., help="UF2 file to inspect"),
    profile: Optional[str] = typer.Option(None, "--profile", "-P", help="Check family against profile"),
    strict: bool = typer.Option(False, "--strict", help="Validate block header fields"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Decode and summarize a UF2 file."""
    result = core_inspect_uf2(uf2_file, profile=profile, strict=strict)
    if json_output:
        console.print(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return

    print_header("Inspect UF2")
    if not result.ok:
        print_warnings_from_result(result, verbose=True)
        sys.exit(1)

    table = Table(title=Path(uf2_file).name)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Blocks", str(result.metadata.get("blocks", 0)))
    table.add_row("Address range", result.metadata.get("address_range", "-"))
    table.add_row("Payload sizes", ", ".join(str(s) for s in result.metadata.get("payload_sizes", [])))
    for fam, count in result.metadata.get("families", {}).items():
        table.add_row("Family", f"{fam} ({count} blocks)")
    table.add_row("SHA256", result.hashes["sha256"])
    console.print(table)
    print_warnings_from_result(result)


@app.command()
def flash(
    firmware: str = typer.Argument(..., help="Firmware file (.hex, .bin, .uf2)"),
    port: str = typer.Option(..., "--port", "-p", help="Serial port"),
    profile: str = typer.Option("generic-uf2", "--profile", "-P", help="Device profile"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="Transfer mode: raw or uf2"),
    chunk_size: Optional[str] = typer.Option(None, "--chunk-size", help="Raw mode chunk size"),
    block_size: Optional[str] = typer.Option(None, "--block-size", help="UF2 payload bytes per block"),
    family_id: Optional[str] = typer.Option(None, "--family-id", help="UF2 family ID override"),
    base: Optional[str] = typer.Option(None, "--base", help="Load address override"),
    baud: Optional[int] = typer.Option(None, "--baud", help="Operating baud rate"),
    no_bootloader: bool = typer.Option(
        False, "--no-bootloader", help="Skip the baud-rate touch (device already in bootloader)"
    ),
    settle_delay: Optional[float] = typer.Option(
        None, "--settle-delay", help="Seconds to wait after the touch"
    ),
    strict: bool = typer.Option(False, "--strict", help="Verify HEX checksums / UF2 fields"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Plan only, no write"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show remediation hints and logs"),
) -> None:
    """Flash a firmware image to the device."""
    print_header("Flash Firmware")

    if not Path(firmware).exists():
        print_error(f"File not found: {firmware}")
        sys.exit(1)

    device = resolve_profile(profile)
    options = dict(
        profile=profile,
        mode=parse_mode(mode),
        chunk_size=parse_int(chunk_size, "chunk-size"),
        data_per_block=parse_int(block_size, "block-size"),
        family_id=parse_int(family_id, "family-id"),
        load_address=parse_int(base, "base"),
        use_bootloader=False if no_bootloader else None,
        settle_delay=settle_delay,
        baudrate=baud,
        strict=strict,
    )

    if dry_run:
        result = core_flash_firmware(port, firmware, dry_run=True, **options)
        console.print(result.to_summary())
        print_warnings_from_result(result, verbose=verbose)
        sys.exit(0 if result.ok else 1)

    cancel_event = threading.Event()
    outcome = {}

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task("Preparing...", total=100)

        def on_event(event: FlashEvent) -> None:
            if event.phase is FlashPhase.STREAMING:
                progress.update(
                    task,
                    description=f"Block {event.block_index}/{event.total_blocks}",
                    completed=event.percent,
                )
            else:
                progress.update(task, description=event.phase.value.replace("_", " ").capitalize())

        def worker() -> None:
            outcome["result"] = core_flash_firmware(
                port, firmware, on_event=on_event, cancel_event=cancel_event, **options
            )

        thread = threading.Thread(target=worker, name="flash", daemon=True)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(0.1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Cancelling after the current block...[/yellow]")
            cancel_event.set()
            thread.join()

    result = outcome["result"]
    if verbose:
        for line in result.logs:
            console.print(f"  {line}", style="dim")

    if result.ok:
        print_success(
            f"Flashed {result.bytes_len:,} bytes to {port} "
            f"({result.blocks_written} {result.mode} blocks, profile {device.name})"
        )
        print_warnings_from_result(result, verbose=verbose)
        return

    print_error(f"Flash failed: {result.reason or 'unknown error'}")
    if result.failed_block is not None:
        console.print(f"  Failed at block {result.failed_block}/{result.total_blocks}")
    print_warnings_from_result(result, verbose=True)
    sys.exit(1)


@app.command()
def reset(
    port: str = typer.Option(..., "--port", "-p", help="Serial port"),
    profile: str = typer.Option("generic-uf2", "--profile", "-P", help="Device profile"),
    settle_delay: Optional[float] = typer.Option(None, "--settle-delay", help="Seconds to wait after the touch"),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for the bootloader port"),
) -> None:
    """Touch the port to reboot the device into its bootloader."""
    print_header("Enter Bootloader")
    device = resolve_profile(profile)
    config = TransportConfig(port=port, baudrate=device.operating_baudrate)
    bl_config = device.bootloader_config(settle_delay=settle_delay)

    watcher = PortWatcher(config, timeout=bl_config.reenumeration_timeout)
    handshake = BootloaderHandshake(bl_config)
    try:
        handshake.enter_bootloader(SerialTransport(config))
    except BootloaderHandshakeFailed as exc:
        print_error(str(exc))
        sys.exit(1)
    print_success(f"Sent {bl_config.touch_baudrate} bps touch to {port}")

    if wait:
        try:
            new_port = watcher.wait_for_port()
        except TimeoutError as exc:
            print_error(str(exc))
            sys.exit(1)
        print_success(f"Bootloader available on {new_port}")


@app.command()
def monitor(
    port: str = typer.Option(..., "--port", "-p", help="Serial port"),
    baud: int = typer.Option(115200, "--baud", help="Baud rate"),
    command: Optional[List[str]] = typer.Option(
        None, "--command", "-c", help="Send command(s) and exit after --duration"
    ),
    duration: float = typer.Option(2.0, "--duration", help="Seconds to collect replies with --command"),
    line_ending: str = typer.Option("\\n", "--line-ending", help="Line terminator (escape sequences allowed)"),
) -> None:
    """Interactive command/response session with the device."""
    terminator = line_ending.encode("ascii").decode("unicode_escape")
    transport = SerialTransport(TransportConfig(port=port, baudrate=baud))
    connection = ConnectionState(transport)
    try:
        connection.open()
    except TransportError as exc:
        print_error(str(exc))
        sys.exit(1)

    def on_text(text: str) -> None:
        console.out(text, end="", highlight=False)

    def on_error(exc: Exception) -> None:
        print_warning(f"Read error: {exc}")

    channel = CommandChannel(connection, line_terminator=terminator, on_text=on_text, on_error=on_error)
    channel.start()
    try:
        if command:
            for cmd in command:
                channel.send(cmd)
            time.sleep(duration)
            return

        console.print(f"[dim]Connected to {port} at {baud} bps. Ctrl-D or Ctrl-C to quit.[/dim]")
        while connection.is_connected:
            try:
                line = input()
            except EOFError:
                break
            channel.send(line)
    except KeyboardInterrupt:
        console.print()
    except TransportError as exc:
        print_error(str(exc))
    finally:
        channel.stop()
        try:
            connection.close()
        except TransportError as exc:
            logger.warning("Error closing %s: %s", port, exc)


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
