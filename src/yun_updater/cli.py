"""
Yun Updater CLI

Command-line interface for the unattended firmware upgrade.
"""

import sys
import json
import logging
import time
from dataclasses import replace
from typing import List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler

from yun_updater.addressing import AddressAllocationError, AddressAllocator
from yun_updater.core.actions import UpdateOptions, update_board
from yun_updater.core.config import ConfigError, UpdaterConfig, load_config
from yun_updater.core.messages import MessageLevel, WarningItem, result_to_warnings
from yun_updater.core.parsing import parse_baud
from yun_updater.core.results import OperationResult
from yun_updater.devices import can_use, detailed_ports
from yun_updater.models import DEFAULT_BOARD
from yun_updater.tftp_server import FirmwareServerError, serve_firmware

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("yun_updater")

# Setup Rich console
console = Console()

app = typer.Typer(help="Arduino Yun firmware updater - unattended U-Boot/LEDE upgrade")


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
    """Print a structured warning with its remediation."""
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


def print_warnings_from_result(result: OperationResult, verbose: bool = False) -> None:
    """Print all warnings from an OperationResult using structured format."""
    for warning in result_to_warnings(result):
        print_structured_warning(warning, verbose=verbose)


def build_config(
    config_file: Optional[str],
    base_dir: Optional[str],
    max_attempts: Optional[int],
    retry_on: Optional[List[str]],
    agent_baud: Optional[str],
    tftp_port: Optional[int] = None,
) -> UpdaterConfig:
    """
    Load the config file and apply CLI overrides on top.

    Raises:
        typer.BadParameter: If an override is invalid
    """
    try:
        config = load_config(config_file)
    except ConfigError as e:
        raise typer.BadParameter(str(e))

    if max_attempts is not None and max_attempts < 1:
        raise typer.BadParameter("--max-attempts must be at least 1")

    overrides = {
        "base_dir": base_dir,
        "max_attempts": max_attempts,
        "retry_on": tuple(retry_on) if retry_on else None,
        "tftp_port": tftp_port,
    }
    if agent_baud is not None:
        try:
            baud = parse_baud(agent_baud)
        except ValueError as e:
            raise typer.BadParameter(str(e))
        overrides["serial"] = replace(config.serial, agent_baud=baud)
    return config.with_overrides(**overrides)


@app.command()
def update(
    old: bool = typer.Option(False, "--old", help="Flash really old Yun (skip boot-loader dialect detection)"),
    bl: bool = typer.Option(False, "--bl", help="Flash bootloader too (danger zone)"),
    board: str = typer.Option(DEFAULT_BOARD, "--board", "-b", help="Update to target board"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial port (default: auto-detect by USB ID)"),
    base_dir: Optional[str] = typer.Option(None, "--base-dir", "-d", help="Folder holding tftp/ and avr/"),
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="JSON file with config overrides"),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", help="Total flash attempts (default 4)"),
    retry_on: Optional[List[str]] = typer.Option(
        None,
        "--retry-on",
        help="Only retry failures whose console output contains this text (repeatable)",
    ),
    agent_baud: Optional[str] = typer.Option(None, "--agent-baud", help="Serial-bridge baud rate or preset (default, legacy)"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Print the result as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show console traffic"),
) -> None:
    """Update the board's boot-loader and firmware."""
    if verbose:
        logger.setLevel(logging.DEBUG)

    config = build_config(config_file, base_dir, max_attempts, retry_on, agent_baud)
    options = UpdateOptions(legacy=old, flash_bootloader=bl, board=board, port=port)

    if not output_json:
        print_header(f"Updating {board}")

    result = update_board(options, config)

    if output_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        if not result.ok and result.output:
            console.print(Panel(result.output.strip() or "-", title="Last console output", style="dim"))
        console.print(result.to_summary())
        print_warnings_from_result(result, verbose=verbose)
        if result.ok:
            print_success(f"All done! Enjoy your updated {board}")

    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = detailed_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("USB ID", style="magenta")
    table.add_column("Description", style="green")
    table.add_column("Updatable")

    for port in ports_list:
        table.add_row(
            port.device,
            port.usb_id,
            port.description or "-",
            "yes" if can_use(port) else "-",
        )

    console.print(table)


@app.command()
def addresses(
    exclude: Optional[str] = typer.Option(None, "--exclude", help="Server address to avoid"),
    probe_port: int = typer.Option(80, "--probe-port", help="TCP port used to probe candidates"),
    probe_timeout: float = typer.Option(2.0, "--probe-timeout", help="Seconds per probe"),
) -> None:
    """Show the server and board addresses an update would use."""
    try:
        server, device = AddressAllocator(probe_port, probe_timeout)(exclude)
    except AddressAllocationError as e:
        print_error(f"Could not get your IP address, check your network connection: {e}")
        raise typer.Exit(code=1)

    table = Table(title="Addresses")
    table.add_column("Role", style="cyan")
    table.add_column("Address", style="green")
    table.add_row("Server (TFTP)", server)
    table.add_row("Board", device)
    console.print(table)


@app.command()
def serve(
    base_dir: Optional[str] = typer.Option(None, "--base-dir", "-d", help="Folder holding tftp/"),
    tftp_port: Optional[int] = typer.Option(None, "--tftp-port", help="UDP port (default 69)"),
    config_file: Optional[str] = typer.Option(None, "--config", "-c", help="JSON file with config overrides"),
) -> None:
    """Serve the firmware folder over TFTP until interrupted."""
    config = build_config(config_file, base_dir, None, None, None, tftp_port=tftp_port)
    print_header(f"TFTP server for {config.firmware_path}")

    try:
        server = serve_firmware(config.firmware_path, port=config.tftp_port)
    except FirmwareServerError as e:
        print_error(str(e))
        raise typer.Exit(code=1)

    console.print("Press CTRL-c to stop the TFTP server.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    print_success("TFTP server stopped")


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
