from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TextIO

import typer

logger = logging.getLogger(__name__)


def format_timestamp(now: Optional[datetime] = None) -> str:
    moment = (now or datetime.now()).astimezone()
    stamp = moment.isoformat(sep=" ", timespec="microseconds")
    # "2024-01-02 03:04:05.000006 +09:00"
    return f"{stamp[:26]} {stamp[26:]}"


def log_file_name(now: Optional[datetime] = None) -> str:
    moment = (now or datetime.now()).astimezone()
    return f"current_{moment.strftime('%Y%m%d_%H%M%S_%Z')}.txt"


class LogWriter:
    """
    Append-only text log. Every line is flushed as soon as it is written;
    records arrive at sensor rate so durability wins over throughput.
    """

    def __init__(self, path: Path):
        self.path = path
        self._handle: Optional[TextIO] = path.open("w", encoding="utf-8")

    def write_line(self, line: str) -> None:
        if self._handle is None:
            raise ValueError(f"log file {self.path} is closed")
        self._handle.write(line + "\n")
        self._handle.flush()

    def close(self) -> None:
        if self._handle:
            self._handle.close()
            self._handle = None


def create_log_writer(output_dir: Path, now: Optional[datetime] = None) -> LogWriter:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / log_file_name(now)
    logger.info("Logging shunt current to %s", path)
    return LogWriter(path)


def emit(
    formatted: str,
    verbose: bool,
    writer: Optional[LogWriter],
    echo: Callable[[str], None] = typer.echo,
) -> None:
    """Echo and/or persist one formatted result with the current timestamp."""
    if verbose:
        echo(f"{format_timestamp()}, {formatted}")
    if writer is not None:
        writer.write_line(f"{format_timestamp()}, {formatted}")


class OutputSink:
    def __init__(
        self,
        verbose: bool = False,
        writer: Optional[LogWriter] = None,
        echo: Callable[[str], None] = typer.echo,
    ):
        self.verbose = verbose
        self.writer = writer
        self._echo = echo

    def emit(self, formatted: str) -> None:
        emit(formatted, self.verbose, self.writer, echo=self._echo)

    def close(self) -> None:
        if self.writer:
            self.writer.close()
