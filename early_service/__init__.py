# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Counter service handed over between processes through a UNIX domain socket."""

import contextlib
import logging

from early_service._common import (
    READ_BUFFER_LEN,
    BindError,
    DispatchHook,
    EarlyServiceError,
    HandoffError,
)
from early_service.counter import Counter, Ticker
from early_service.handoff import fetch_and_terminate, request
from early_service.protocol import Command, CommandKind, Reply, dispatch, extract_command, parse_command
from early_service.server import Connection, ConnectionState, CounterServer
from early_service.service import ServiceConfig, ServiceContext, run, run_service

# OpenTelemetry instrumentation (optional; requires `pip install early-service[otel]`)
with contextlib.suppress(ImportError):
    from early_service.otel import OtelConfig, instrument_server

__all__ = [
    # Core
    "Counter",
    "Ticker",
    "CounterServer",
    "Connection",
    "ConnectionState",
    # Protocol
    "Command",
    "CommandKind",
    "Reply",
    "READ_BUFFER_LEN",
    "dispatch",
    "extract_command",
    "parse_command",
    # Handoff
    "fetch_and_terminate",
    "request",
    # Lifecycle
    "ServiceConfig",
    "ServiceContext",
    "run",
    "run_service",
    # Errors
    "EarlyServiceError",
    "BindError",
    "HandoffError",
    # Observability
    "DispatchHook",
]

if "OtelConfig" in dir():
    __all__ += ["OtelConfig", "instrument_server"]

# Attach NullHandler so library users don't get "No handler found" warnings.
logging.getLogger("early_service").addHandler(logging.NullHandler())
