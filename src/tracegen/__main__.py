"""Command line entry point: `python -m tracegen`."""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Any, Final

import click
from rich.logging import RichHandler

from . import TracegenError
from .config import DEFAULT_CONFIG_PATH, load_tracer_config
from .generator import run
from .otel import build_pipeline

log = logging.getLogger("tracegen")

_UNITS: Final = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART: Final = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as `10ms`, `1.5s` or `1m30s`.

    A bare `0` is accepted without a unit.
    """
    if value == "0":
        return timedelta()
    pos = 0
    seconds = 0.0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        seconds += float(match[1]) * _UNITS[match[2]]
        pos = match.end()
    if pos == 0:
        raise ValueError("empty duration")
    return timedelta(seconds=seconds)


class DurationParamType(click.ParamType):
    name = "duration"

    def convert(
        self, value: Any, param: click.Parameter | None, ctx: click.Context | None
    ) -> timedelta:
        if isinstance(value, timedelta):
            return value
        try:
            return parse_duration(value)
        except ValueError as exc:
            self.fail(str(exc), param, ctx)


DURATION: Final = DurationParamType()


@click.command(context_settings={"show_default": True})
@click.option(
    "--spanCount", "-spanCount", "span_count", type=click.IntRange(min=0), default=100,
    help="Span count to produce per trace.",
)
@click.option(
    "--parallelCount", "-parallelCount", "parallel_count", type=click.IntRange(min=0), default=100,
    help="Parallel traces.",
)
@click.option(
    "--spanDuration", "-spanDuration", "span_duration", type=DURATION, default="10ms",
    help="Simulated work per span.",
)
@click.option(
    "--flushTimeout", "flush_timeout", type=DURATION, default=None,
    help="Give up on the final flush after this long.  [default: wait]",
)
@click.option(
    "--config", "config_path", type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH, help="Tracer configuration file.",
)
@click.option(
    "--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default="INFO",
)
def main(
    span_count: int,
    parallel_count: int,
    span_duration: timedelta,
    flush_timeout: timedelta | None,
    config_path: Path,
    log_level: str,
) -> None:
    """Generate synthetic traces and send them to an OTel collector."""
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )
    try:
        config = load_tracer_config(config_path)
        run(
            partial(build_pipeline, config),
            parallel_count,
            span_count,
            span_duration,
            flush_timeout=None if flush_timeout is None else flush_timeout.total_seconds(),
        )
    except TracegenError as exc:
        log.critical("%s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
