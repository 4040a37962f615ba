"""
EMC Flasher CLI

Command-line front end for pinging cabinets and transferring firmware
over serial or TCP.
"""

import sys
import json
import logging
import threading
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn, DownloadColumn, TimeRemainingColumn

from emc_flasher.protocol import (
    CancelToken,
    FrameError,
    ProgressInfo,
    SenderConfig,
    encode_frame,
    parse_frame,
    to_hex,
)
from emc_flasher.core.parsing import (
    LinkSpec,
    parse_int as _parse_int_core,
    parse_link as _parse_link_core,
    parse_header_variant as _parse_header_core,
    parse_payload_hex as _parse_payload_core,
)
from emc_flasher.core.results import OperationResult
from emc_flasher.core.actions import ping_cabinet, send_firmware_file
from emc_flasher.core.messages import MessageLevel, WarningItem, result_to_warnings

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("emc_flasher")

# Setup Rich console
console = Console()

app = typer.Typer(help="EMC cabinet firmware flasher (serial / TCP)")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


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
        style, icon = "red", "❌"
    elif warning.level == MessageLevel.WARN:
        style, icon = "yellow", "⚠️"
    else:
        style, icon = "blue", "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def report_result(result: OperationResult, as_json: bool = False, verbose: bool = False) -> None:
    """Render a result and exit with the matching status code."""
    if as_json:
        payload = result.to_dict()
        if not verbose:
            payload.pop("logs", None)
        console.print_json(json.dumps(payload))
    else:
        for warning in result_to_warnings(result):
            print_structured_warning(warning, verbose=verbose)
        if result.ok:
            print_success(result.to_summary())
        elif result.cancelled:
            print_warning(result.to_summary())
        else:
            print_error(result.to_summary())

    if result.ok:
        raise typer.Exit(EXIT_OK)
    raise typer.Exit(EXIT_CANCELLED if result.cancelled else EXIT_FAILED)


def parse_int(value: Optional[str], label: str) -> Optional[int]:
    """
    CLI wrapper around core.parsing.parse_int that converts ValueError
    to typer.BadParameter for proper CLI error handling.
    """
    try:
        return _parse_int_core(value, label)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_link(
    value: str,
    connect_timeout_ms: int,
    recv_timeout_ms: int,
    send_timeout_ms: int,
) -> LinkSpec:
    try:
        link = _parse_link_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    return replace(
        link,
        connect_timeout_ms=connect_timeout_ms if connect_timeout_ms > 0 else None,
        recv_timeout_ms=recv_timeout_ms,
        send_timeout_ms=send_timeout_ms,
    )


def build_config(
    cabinet: int,
    block_size: int,
    retries: int,
    ack_timeout: int,
    ping_timeout: int,
    header: str,
    reply_header: Optional[str],
    load_address: str = "0",
) -> SenderConfig:
    """Assemble and validate a SenderConfig from CLI options."""
    try:
        config = SenderConfig(
            cabinet_address=cabinet,
            load_address=_parse_int_core(load_address, "load address") or 0,
            block_size=block_size,
            max_retries=retries,
            ack_timeout_ms=ack_timeout,
            ping_timeout_ms=ping_timeout,
            header=_parse_header_core(header),
            reply_header=_parse_header_core(reply_header) if reply_header else None,
        )
        config.validate()
    except ValueError as e:
        raise typer.BadParameter(str(e))
    return config


LINK_OPTION = typer.Option(
    ...,
    "--link",
    "-l",
    envvar="EMC_FLASHER_LINK",
    help="serial:COM3@115200 | tcp:host:port (dial) | tcp::port (listen)",
)
CABINET_OPTION = typer.Option(1, "--cabinet", "-a", envvar="EMC_FLASHER_CABINET", help="Cabinet address 1..6")
RETRIES_OPTION = typer.Option(5, "--retries", envvar="EMC_FLASHER_RETRIES", help="Retries per frame")
ACK_TIMEOUT_OPTION = typer.Option(2000, "--ack-timeout", envvar="EMC_FLASHER_ACK_TIMEOUT", help="Ack wait (ms)")
PING_TIMEOUT_OPTION = typer.Option(500, "--ping-timeout", envvar="EMC_FLASHER_PING_TIMEOUT", help="Ping wait (ms)")
CONNECT_TIMEOUT_OPTION = typer.Option(
    5000,
    "--connect-timeout",
    envvar="EMC_FLASHER_CONNECT_TIMEOUT",
    help="TCP connect / wait-for-cabinet timeout (ms, 0 = wait forever)",
)
RECV_TIMEOUT_OPTION = typer.Option(50, "--recv-timeout", help="TCP per-read wait (ms)")
SEND_TIMEOUT_OPTION = typer.Option(2000, "--send-timeout", help="Write timeout (ms)")
HEADER_OPTION = typer.Option("EMC", "--header", envvar="EMC_FLASHER_HEADER", help="Frame magic: EMC or MCE")
REPLY_HEADER_OPTION = typer.Option(None, "--reply-header", help="Magic expected on replies (default: --header)")
JSON_OPTION = typer.Option(False, "--json", help="Print the result as JSON")


@app.callback()
def main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show protocol frames"),
) -> None:
    """EMC cabinet firmware flasher."""
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    try:
        import serial.tools.list_ports
    except ImportError:
        print_error("pyserial not installed: pip install pyserial")
        raise typer.Exit(EXIT_FAILED)

    ports_list = sorted(serial.tools.list_ports.comports(), key=lambda p: p.device)
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
def ping(
    link: str = LINK_OPTION,
    cabinet: int = CABINET_OPTION,
    data: Optional[str] = typer.Option(None, "--data", help="First ping byte (default: cabinet address)"),
    retries: int = RETRIES_OPTION,
    ping_timeout: int = PING_TIMEOUT_OPTION,
    connect_timeout: int = CONNECT_TIMEOUT_OPTION,
    recv_timeout: int = RECV_TIMEOUT_OPTION,
    send_timeout: int = SEND_TIMEOUT_OPTION,
    header: str = HEADER_OPTION,
    reply_header: Optional[str] = REPLY_HEADER_OPTION,
    as_json: bool = JSON_OPTION,
) -> None:
    """Check that a cabinet answers PING."""
    link_spec = parse_link(link, connect_timeout, recv_timeout, send_timeout)
    config = build_config(cabinet, 512, retries, ping_timeout, ping_timeout, header, reply_header)
    data_val = parse_int(data, "ping data")
    if data_val is not None and not 0 <= data_val <= 0xFF:
        raise typer.BadParameter("--data must be a single byte (0..255)")

    if not as_json:
        print_header(f"Ping cabinet {cabinet} via {link_spec}")
    result = ping_cabinet(link_spec, config, data=data_val)
    report_result(result, as_json=as_json, verbose=logger.level <= logging.DEBUG)


@app.command()
def send(
    firmware: Path = typer.Argument(..., help="Firmware image (.bin)"),
    link: str = LINK_OPTION,
    cabinet: int = CABINET_OPTION,
    block_size: int = typer.Option(512, "--block-size", "-b", envvar="EMC_FLASHER_BLOCK_SIZE", help="Bytes per frame 1..512"),
    load_address: str = typer.Option("0", "--load-address", help="Flash load address (dec or 0x hex)"),
    retries: int = RETRIES_OPTION,
    ack_timeout: int = ACK_TIMEOUT_OPTION,
    ping_timeout: int = PING_TIMEOUT_OPTION,
    connect_timeout: int = CONNECT_TIMEOUT_OPTION,
    recv_timeout: int = RECV_TIMEOUT_OPTION,
    send_timeout: int = SEND_TIMEOUT_OPTION,
    header: str = HEADER_OPTION,
    reply_header: Optional[str] = REPLY_HEADER_OPTION,
    ping_first: bool = typer.Option(False, "--ping/--no-ping", help="PING the cabinet before INIT"),
    as_json: bool = JSON_OPTION,
) -> None:
    """Transfer a firmware image to a cabinet. Ctrl+C cancels cleanly."""
    if not firmware.is_file():
        print_error(f"File not found: {firmware}")
        raise typer.Exit(EXIT_FAILED)

    link_spec = parse_link(link, connect_timeout, recv_timeout, send_timeout)
    config = build_config(
        cabinet, block_size, retries, ack_timeout, ping_timeout, header, reply_header, load_address
    )
    total = firmware.stat().st_size

    if not as_json:
        print_header(f"Send {firmware.name} ({total:,} bytes) to cabinet {cabinet} via {link_spec}")

    cancel = CancelToken()
    holder = {}

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        DownloadColumn(),
        TimeRemainingColumn(),
        console=console,
        disable=as_json,
    ) as progress:
        task = progress.add_task("Sending firmware...", total=max(total, 1))

        def on_progress(info: ProgressInfo) -> None:
            progress.update(task, completed=info.sent_bytes if total else 1)

        def worker() -> None:
            holder["result"] = send_firmware_file(
                str(firmware),
                link=link_spec,
                config=config,
                cancel=cancel,
                progress_cb=on_progress,
                ping_first=ping_first,
            )

        thread = threading.Thread(target=worker, name="emc-sender", daemon=True)
        thread.start()
        try:
            while thread.is_alive():
                thread.join(0.1)
        except KeyboardInterrupt:
            print_warning("Cancelling after the current frame...")
            cancel.cancel()
            thread.join()

    report_result(holder["result"], as_json=as_json, verbose=logger.level <= logging.DEBUG)


@app.command()
def frame(
    command: str = typer.Argument(..., help="Command byte (e.g. 0x04, 0xFB, 0xFC)"),
    payload: Optional[str] = typer.Argument(None, help="Payload as hex (e.g. '01 01')"),
    header: str = HEADER_OPTION,
) -> None:
    """Encode one frame and print it as hex (bench diagnostics)."""
    cmd = parse_int(command, "command")
    if cmd is None or not 0 <= cmd <= 0xFF:
        raise typer.BadParameter("command must be a single byte (0..255)")
    try:
        data = _parse_payload_core(payload)
        raw = encode_frame(_parse_header_core(header), cmd, data)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    console.print(to_hex(raw))


@app.command()
def decode(
    raw: str = typer.Argument(..., help="Frame bytes as hex"),
    header: str = HEADER_OPTION,
) -> None:
    """Parse a captured frame and show its fields."""
    try:
        data = _parse_payload_core(raw)
        parsed = parse_frame(data, _parse_header_core(header))
    except FrameError as e:
        print_error(f"Invalid frame: {e}")
        raise typer.Exit(EXIT_FAILED)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    table = Table(title="EMC Frame")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Header", parsed.header.name)
    table.add_row("Command", f"0x{parsed.command:02X}")
    table.add_row("Length", str(len(parsed.payload)))
    table.add_row("Payload", to_hex(parsed.payload) or "-")
    table.add_row("Checksum", f"0x{parsed.checksum:02X}")
    console.print(table)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(EXIT_CANCELLED)


if __name__ == "__main__":
    main()
