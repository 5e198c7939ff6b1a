# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry instrumentation for the counter server.

Provides ``OtelConfig`` and ``instrument_server()`` for adding a span per
dispatched command plus command counters, a duration histogram and a gauge
of the current counter value.

Requires ``pip install early-service[otel]`` (opentelemetry-api + opentelemetry-sdk).

Usage::

    from early_service.otel import OtelConfig, instrument_server

    server = CounterServer(path, counter, on_terminate=stop)
    instrument_server(server)  # uses global TracerProvider / MeterProvider

Or let the service build and instrument its own server::

    asyncio.run(run_service(config, otel_config=OtelConfig()))
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from contextvars import Token
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.metrics import (
    CallbackOptions,
    Counter,
    Histogram,
    Meter,
    MeterProvider,
    Observation,
    get_meter_provider,
)
from opentelemetry.trace import SpanKind, StatusCode, Tracer, TracerProvider, get_tracer_provider

from early_service._common import HookToken, _register_dispatch_hook
from early_service.protocol import CommandKind

if TYPE_CHECKING:
    from early_service.counter import Counter as ServiceCounter
    from early_service.protocol import Command, Reply
    from early_service.server import CounterServer

__all__ = ["OtelConfig", "instrument_server"]

_logger = logging.getLogger("early_service.otel")

_INSTRUMENTATION_NAME = "early_service"
_INSTRUMENTATION_VERSION = "0.1.0"


@dataclass(frozen=True)
class OtelConfig:
    """Configuration for OpenTelemetry instrumentation.

    Attributes:
        tracer_provider: Custom ``TracerProvider``; uses the global provider when ``None``.
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        enable_tracing: Enable span creation (default ``True``).
        enable_metrics: Enable counter/histogram/gauge recording (default ``True``).
        custom_attributes: Extra span/metric attributes merged into every dispatch.

    """

    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


def instrument_server(server: CounterServer, config: OtelConfig | None = None) -> CounterServer:
    """Attach OpenTelemetry tracing and metrics to a server.

    Must be called before ``start()``; connections accepted earlier keep
    their previous hook.

    Args:
        server: The ``CounterServer`` to instrument.
        config: Optional configuration; uses global providers and defaults when ``None``.

    Returns:
        The same *server* instance (for chaining).

    """
    if config is None:
        config = OtelConfig()
    hook = _OtelDispatchHook(config, server.path, server.counter)
    server._dispatch_hook = _register_dispatch_hook(server._dispatch_hook, hook)
    _logger.debug("Instrumented server on %s", server.path)
    return server


@dataclass
class _OtelHookToken:
    """Internal token carrying span + timing for on_dispatch_end."""

    span: trace.Span | None
    otel_token: Token[Context] | None
    start_time: float
    command: str


class _OtelDispatchHook:
    """Implements ``DispatchHook`` with OpenTelemetry spans and metrics."""

    __slots__ = ("_commands", "_config", "_counter", "_gauge", "_histogram", "_meter", "_socket_path", "_tracer")

    def __init__(self, config: OtelConfig, socket_path: str, counter: ServiceCounter) -> None:
        self._config = config
        self._socket_path = socket_path
        self._counter = counter

        tp = config.tracer_provider or get_tracer_provider()
        self._tracer: Tracer = tp.get_tracer(_INSTRUMENTATION_NAME, _INSTRUMENTATION_VERSION)

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter(_INSTRUMENTATION_NAME, _INSTRUMENTATION_VERSION)
        self._commands: Counter = self._meter.create_counter(
            "early_service.server.commands",
            unit="{command}",
            description="Number of commands dispatched",
        )
        self._histogram: Histogram = self._meter.create_histogram(
            "early_service.server.duration",
            unit="s",
            description="Time spent dispatching a command",
        )
        self._gauge = self._meter.create_observable_gauge(
            "early_service.counter.value",
            callbacks=[self._observe_counter],
            description="Current counter value",
        )

    def _observe_counter(self, options: CallbackOptions) -> Iterable[Observation]:
        if not self._config.enable_metrics:
            return []
        return [Observation(self._counter.value, {"early_service.socket_path": self._socket_path})]

    def on_dispatch_start(self, command: Command, connection_id: int) -> HookToken:
        """Start a span and record the start time."""
        start_time = time.monotonic()
        span: trace.Span | None = None
        otel_token: Token[Context] | None = None

        if self._config.enable_tracing:
            attrs: dict[str, str | int] = {
                "early_service.command": command.kind.value,
                "early_service.connection_id": connection_id,
                "early_service.socket_path": self._socket_path,
            }
            attrs.update(self._config.custom_attributes)
            span = self._tracer.start_span(
                f"early_service/{command.kind.value}", kind=SpanKind.SERVER, attributes=attrs
            )
            otel_token = otel_context.attach(trace.set_span_in_context(span))

        return _OtelHookToken(span=span, otel_token=otel_token, start_time=start_time, command=command.kind.value)

    def on_dispatch_end(self, token: HookToken, command: Command, reply: Reply | None) -> None:
        """End the span and record metrics."""
        if not isinstance(token, _OtelHookToken):
            return

        duration = time.monotonic() - token.start_time
        if reply is None:
            status = "error"
        elif command.kind == CommandKind.invalid:
            status = "invalid"
        else:
            status = "ok"

        if token.span is not None:
            if reply is None:
                token.span.set_status(StatusCode.ERROR, "dispatch failed")
            else:
                token.span.set_status(StatusCode.OK)
                token.span.set_attribute("early_service.terminate", reply.terminate)
                token.span.set_attribute("early_service.counter", self._counter.value)
            token.span.set_attribute("early_service.status", status)
            token.span.end()

        if token.otel_token is not None:
            otel_context.detach(token.otel_token)

        if self._config.enable_metrics:
            metric_attrs: dict[str, str] = {
                "early_service.command": token.command,
                "status": status,
                **self._config.custom_attributes,
            }
            self._commands.add(1, metric_attrs)
            self._histogram.record(duration, metric_attrs)
