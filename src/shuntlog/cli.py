"""Command line interface for the shuntlog package."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import serial  # type: ignore[import]
import typer
from bleak.exc import BleakError

from . import __version__
from .ble_source import BleAcquisition, CharacteristicNotFoundError
from .config import AcquisitionConfig, load_config
from .conversion import format_value
from .records import RecordError, RecordParser, parse_line
from .serial_source import SerialReadTimeout, SerialRecordSource, list_ports
from .session import AcquisitionSession
from .sink import OutputSink, create_log_writer

logger = logging.getLogger(__name__)

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help="Shunt current logger for MCP3424 ADC readings over UART or BLE.",
)

FATAL_ERRORS = (
    RecordError,
    UnicodeDecodeError,
    SerialReadTimeout,
    serial.SerialException,
    BleakError,
    CharacteristicNotFoundError,
    OSError,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level for diagnostics."),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level '{log_level}'", param_hint="--log-level")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _print_ports() -> None:
    typer.echo("=======================")
    typer.echo("<-i> option is required.")
    typer.echo("Available ports: ")
    for port in list_ports():
        typer.echo(f"  {port}")
    typer.echo("=======================")


@app.command()
def ports() -> None:
    """List serial ports available on this host."""

    for port in list_ports():
        typer.echo(port)


def _flag_values(**flags: Any) -> Dict[str, Any]:
    """Nest the CLI flags that were actually given under their config sections."""
    sections = {
        "mode": None,
        "skip_malformed": None,
        "port": "serial",
        "baudrate": "serial",
        "timeout": "serial",
        "scan_seconds": "ble",
        "adapters": "ble",
        "output_dir": "output",
        "verbose": "output",
    }
    values: Dict[str, Any] = {}
    for key, value in flags.items():
        if value is None or value is False or value == []:
            continue
        section = sections.get(key, "analog")
        if section is None:
            values[key] = value
        else:
            values.setdefault(section, {})[key] = value
    return values


@app.command()
def run(
    calc: Optional[float] = typer.Option(
        None, "-c", "--calc", help="[DEBUG] Only calculate ADC code to shunt current."
    ),
    ble: bool = typer.Option(False, "-B", "--ble", help="BLE mode."),
    baud: Optional[int] = typer.Option(None, "-b", "--baud", help="UART baudrate [default: 115200]."),
    interface: Optional[str] = typer.Option(
        None, "-i", "--interface", help="UART interface, e.g. COM0 or /dev/tty.usbserialxxx."
    ),
    output: Optional[Path] = typer.Option(None, "-o", "--output", help="Output file directory."),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Print results in the console."),
    adc_bit: Optional[float] = typer.Option(None, "-a", "--adc-bit", help="ADC bits [default: 12]."),
    shunt_registance: Optional[float] = typer.Option(
        None, "-s", "--shunt-registance", help="Shunt resistance [mΩ] [default: 2]."
    ),
    refference_voltage: Optional[float] = typer.Option(
        None, "--refference-voltage", help="Reference voltage [V] [default: 0.2]."
    ),
    gain_amp: Optional[float] = typer.Option(None, "--gain-amp", help="Amp gain [default: 100]."),
    upper_resistance: Optional[float] = typer.Option(
        None, "--upper-resistance", help="Upper voltage divider resistance [Ω] [default: 3300]."
    ),
    lower_resistance: Optional[float] = typer.Option(
        None, "--lower-resistance", help="Lower voltage divider resistance [Ω] [default: 5600]."
    ),
    adc_max_voltage: Optional[float] = typer.Option(
        None, "--adc-max-voltage", help="ADC full scale voltage [V] [default: 2.048]."
    ),
    is_enable_4ch: bool = typer.Option(False, "-f", "--is-enable-4ch", help="Enable ch2~4."),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="UART read timeout in seconds [default: 0.03]."
    ),
    scan_seconds: Optional[float] = typer.Option(
        None, "--scan-seconds", help="BLE discovery window in seconds [default: 2]."
    ),
    adapter: Optional[List[str]] = typer.Option(
        None, "--adapter", help="BLE adapter to scan (repeatable, e.g. hci0)."
    ),
    skip_malformed: bool = typer.Option(
        False, "--skip-malformed", help="Skip records with non-numeric ADC fields instead of aborting."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="JSON configuration file.", exists=True, readable=True
    ),
    override: Optional[List[str]] = typer.Option(
        None, "--set", help="Override config keys, e.g. --set analog.gain=50"
    ),
    plot: bool = typer.Option(False, "--plot", help="Show realtime Matplotlib dashboard."),
) -> None:
    """Acquire ADC codes over UART (default) or BLE and convert them to shunt current."""

    values = _flag_values(
        mode="ble" if ble else None,
        skip_malformed=skip_malformed,
        port=interface,
        baudrate=baud,
        timeout=timeout,
        scan_seconds=scan_seconds,
        adapters=adapter,
        output_dir=str(output) if output else None,
        verbose=verbose,
        adc_bits=adc_bit,
        shunt_resistance_milliohms=shunt_registance,
        reference_voltage=refference_voltage,
        gain=gain_amp,
        upper_resistance=upper_resistance,
        lower_resistance=lower_resistance,
        adc_full_scale_voltage=adc_max_voltage,
        enable_4ch=is_enable_4ch,
    )
    try:
        cfg = load_config(config_path, override or None, values=values)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    if calc is not None:
        formatted = parse_line(f"debug, {format_value(calc)}", cfg.analog)
        typer.echo(f"shunt current: {formatted}")
        raise typer.Exit()

    if cfg.mode == "serial" and not cfg.serial.port:
        _print_ports()
        raise typer.Exit()

    plotter = None
    if plot:
        try:
            from .plotting import LivePlotter
        except ImportError as exc:
            raise typer.BadParameter("Matplotlib is required for --plot (pip install .[plot])") from exc
        plotter = LivePlotter(channels=4 if cfg.analog.enable_4ch else 1)

    writer = create_log_writer(cfg.output.output_dir) if cfg.output.output_dir else None
    session = AcquisitionSession(
        RecordParser(cfg.analog),
        OutputSink(verbose=cfg.output.verbose, writer=writer),
        skip_malformed=cfg.skip_malformed,
    )
    if plotter is not None:
        session.register_callback(plotter.on_sample)
    try:
        _acquire(cfg, session)
    except KeyboardInterrupt:
        logger.info("Stopping acquisition (Ctrl+C)")
    except FATAL_ERRORS as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        session.close()
        if plotter is not None:
            plotter.close()
        stats = session.stats()
        logger.info(
            "Final stats: records=%d emitted=%d skipped=%d too_few_fields=%d partial=%d invalid=%d",
            stats["records"],
            stats["emitted"],
            stats["skipped"],
            stats["too_few_fields"],
            stats["partial"],
            stats["invalid"],
        )


def _acquire(cfg: AcquisitionConfig, session: AcquisitionSession) -> None:
    if cfg.mode == "ble":
        handled = asyncio.run(BleAcquisition(cfg.ble, session).run())
        if not handled:
            logger.warning("No peripheral matching %r was handled", cfg.ble.name_filter)
        return
    with SerialRecordSource(cfg.serial) as source:
        session.run(source)


def run_app() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run_app()
