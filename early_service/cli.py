"""Command-line interface for early-service.

Provides ``serve`` to run the counter service and ``send`` to talk to a
running instance.

Usage::

    early-service serve -s /run/early.sock
    early-service serve -s /run/late.sock -c /run/early.sock -d 100
    early-service send -s /run/late.sock set_counter 42

"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated

import typer

from early_service._common import DEFAULT_TIMER_DELAY_MS, HandoffError
from early_service.handoff import request
from early_service.logging_utils import LogFormat, configure_logging
from early_service.service import ServiceConfig, run

# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved global CLI options."""

    log_format: LogFormat = LogFormat.text
    verbose: bool = False


app = typer.Typer(
    name="early-service",
    help="Example early service: a counter handed over between processes via a UNIX socket.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    ctx: typer.Context,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log output format")] = LogFormat.text,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """Configure logging."""
    ctx.obj = _CliConfig(log_format=log_format, verbose=verbose)
    configure_logging(log_format, logging.DEBUG if verbose else logging.INFO)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    timer_delay_ms: Annotated[
        int, typer.Option("--timer_delay_ms", "-d", help="Timer delay in milliseconds (0 disables the timer)")
    ] = DEFAULT_TIMER_DELAY_MS,
    server_socket_path: Annotated[
        str | None, typer.Option("--server_socket_path", "-s", help="Server UNIX domain socket path to listen on")
    ] = None,
    client_socket_path: Annotated[
        str | None, typer.Option("--client_socket_path", "-c", help="UNIX domain socket path to read current state")
    ] = None,
    survive_systemd_kill_signal: Annotated[
        bool,
        typer.Option("--survive_systemd_kill_signal", help="Set argv[0][0] to '@' when running in initrd"),
    ] = False,
) -> None:
    """Run the counter service until told to terminate."""
    config = ServiceConfig(
        timer_delay_ms=timer_delay_ms,
        server_socket_path=server_socket_path,
        client_socket_path=client_socket_path,
        survive_systemd_kill_signal=survive_systemd_kill_signal,
    )
    status = run(config)
    if status != 0:
        raise typer.Exit(status)


# ---------------------------------------------------------------------------
# send
# ---------------------------------------------------------------------------


@app.command()
def send(
    command: Annotated[list[str], typer.Argument(help="Command words, e.g. 'get_counter' or 'set_counter 5'")],
    socket_path: Annotated[str, typer.Option("--socket", "-s", help="UNIX socket of the running service")],
    timeout: Annotated[float, typer.Option("--timeout", "-t", help="Socket timeout in seconds")] = 5.0,
) -> None:
    """Send one command to a running service and print its response."""
    try:
        response = request(socket_path, " ".join(command), timeout=timeout)
    except HandoffError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    typer.echo(response, nl=not response.endswith("\n"))
