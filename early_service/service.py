# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Process lifecycle: handoff, ticker, server, event loop, teardown.

The sequence is::

    counter = fetch_and_terminate(peer) or 0     # blocking, before the loop
    asyncio.run(run_service(...))                # ticker + server until stopped

:class:`ServiceContext` owns every long-lived component; it is built in
the order counter, ticker, server and torn down in reverse.  The loop runs
until the stop event is set, which happens once a
``get_counter_and_terminate`` reply has been delivered, or on SIGTERM /
SIGINT.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from dataclasses import dataclass
from types import TracebackType

import setproctitle

from early_service._common import DEFAULT_TIMER_DELAY_MS, BindError, DispatchHook, _logger
from early_service.counter import Counter, Ticker
from early_service.handoff import fetch_and_terminate
from early_service.server import CounterServer

__all__ = [
    "ServiceConfig",
    "ServiceContext",
    "get_initial_counter",
    "mark_survive_final_kill",
    "run",
    "run_service",
]

_STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


@dataclass(frozen=True)
class ServiceConfig:
    """Resolved service options.

    Attributes:
        timer_delay_ms: Ticker interval; non-positive disables the ticker.
        server_socket_path: UNIX socket to listen on, or ``None`` to not serve.
        client_socket_path: UNIX socket of a running instance to take the
            counter over from, or ``None`` to start at 0.
        survive_systemd_kill_signal: Mark the process title with a leading
            ``@`` so systemd spares it when leaving the initrd.

    """

    timer_delay_ms: int = DEFAULT_TIMER_DELAY_MS
    server_socket_path: str | None = None
    client_socket_path: str | None = None
    survive_systemd_kill_signal: bool = False


class ServiceContext:
    """Explicit owner of the counter, ticker, server and stop event.

    Use as an async context manager; components are started on entry and
    torn down in reverse order of construction on exit.
    """

    def __init__(
        self,
        config: ServiceConfig,
        counter: Counter | None = None,
        *,
        dispatch_hook: DispatchHook | None = None,
        otel_config: object | None = None,
    ) -> None:
        """Build (but do not start) the components described by *config*.

        Args:
            config: Service options.
            counter: Shared counter; a fresh one at 0 when ``None``.
            dispatch_hook: Optional observability hook for the server.
            otel_config: Optional ``OtelConfig``.  When provided and a server
                is configured, ``instrument_server()`` is applied to it.

        Raises:
            TypeError: If *otel_config* is not an ``OtelConfig``.

        """
        self.config = config
        self.counter = counter if counter is not None else Counter()
        self.stop_event = asyncio.Event()
        self.ticker = Ticker(self.counter, config.timer_delay_ms)
        self.server: CounterServer | None = None
        if config.server_socket_path is not None:
            self.server = CounterServer(
                config.server_socket_path,
                self.counter,
                on_terminate=self.request_stop,
                dispatch_hook=dispatch_hook,
            )
        if otel_config is not None and self.server is not None:
            from early_service.otel import OtelConfig, instrument_server

            if not isinstance(otel_config, OtelConfig):
                raise TypeError(f"otel_config must be an OtelConfig instance, got {type(otel_config).__name__}")
            instrument_server(self.server, otel_config)

    def request_stop(self) -> None:
        """Ask the service to shut down."""
        self.stop_event.set()

    async def start(self) -> None:
        """Start the ticker and, when configured, the server.

        Raises:
            BindError: If the server socket cannot be bound.

        """
        self.ticker.start()
        if self.server is None:
            _logger.info("Not listening on a UNIX socket.")
            return
        try:
            await self.server.start()
        except BindError:
            await self.ticker.cancel()
            raise

    async def close(self) -> None:
        """Tear down in reverse order of construction."""
        if self.server is not None:
            await self.server.stop()
        await self.ticker.cancel()

    async def __aenter__(self) -> ServiceContext:
        """Start the components."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Tear the components down."""
        await self.close()


async def run_service(
    config: ServiceConfig,
    initial_counter: int = 0,
    *,
    dispatch_hook: DispatchHook | None = None,
    otel_config: object | None = None,
    install_signal_handlers: bool = True,
    on_ready: Callable[[ServiceContext], None] | None = None,
) -> None:
    """Run the ticker and server on the current event loop until stopped.

    Args:
        config: Service options.
        initial_counter: Starting counter value.
        dispatch_hook: Optional observability hook for the server.
        otel_config: Optional ``OtelConfig`` for OpenTelemetry instrumentation.
        install_signal_handlers: Stop on SIGTERM / SIGINT (main thread only).
        on_ready: Called with the context once everything is started.

    Raises:
        BindError: If the server socket cannot be bound.

    """
    ctx = ServiceContext(config, Counter(initial_counter), dispatch_hook=dispatch_hook, otel_config=otel_config)
    loop = asyncio.get_running_loop()
    async with ctx:
        installed: list[signal.Signals] = []
        if install_signal_handlers:
            for sig in _STOP_SIGNALS:
                loop.add_signal_handler(sig, ctx.request_stop)
                installed.append(sig)
        try:
            if on_ready is not None:
                on_ready(ctx)
            await ctx.stop_event.wait()
            _logger.info("Shutting down (counter=%d)", ctx.counter.value, extra={"counter": ctx.counter.value})
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)


def get_initial_counter(config: ServiceConfig) -> int:
    """Return the counter to start from, taking it over from a peer when configured."""
    if config.client_socket_path is None:
        return 0
    return fetch_and_terminate(config.client_socket_path)


def mark_survive_final_kill() -> None:
    """Make the process title start with ``@``.

    systemd leaves such processes alone when it kills everything left over
    from the initrd (see https://systemd.io/ROOT_STORAGE_DAEMONS/).  systemd
    v255 and later offer ``SurviveFinalKillSignal=yes`` instead.
    """
    title = setproctitle.getproctitle()
    if title.startswith("@"):
        return
    setproctitle.setproctitle("@" + title[1:])
    _logger.debug("Process title set to %r", setproctitle.getproctitle())


def run(
    config: ServiceConfig,
    *,
    dispatch_hook: DispatchHook | None = None,
    otel_config: object | None = None,
) -> int:
    """Run the whole service process and return its exit status.

    Returns:
        0 after an orderly shutdown, 1 if the server socket cannot be bound.

    """
    if config.survive_systemd_kill_signal:
        mark_survive_final_kill()
    initial = get_initial_counter(config)
    try:
        asyncio.run(run_service(config, initial, dispatch_hook=dispatch_hook, otel_config=otel_config))
    except BindError as exc:
        _logger.error("%s", exc, extra={"socket_path": exc.path})
        return 1
    return 0
