# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Blocking client used to take over the counter from a running instance.

This runs once at boot, before the event loop exists, so plain blocking
socket calls are fine: the process has nothing else to do until it knows
its starting value.  A missing or unreachable peer is expected (there is
usually no earlier instance) and yields 0 instead of an error.
"""

from __future__ import annotations

import socket
from typing import Final

from early_service._common import HandoffError, _handoff_logger
from early_service.protocol import GET_COUNTER_AND_TERMINATE, parse_leading_int

__all__ = ["HANDOFF_READ_LEN", "fetch_and_terminate", "request"]

HANDOFF_READ_LEN: Final[int] = 99
"""Bytes accepted from the single response read."""


def request(path: str, command: str, *, timeout: float | None = None) -> str:
    """Send one command line to the server at *path* and return its response.

    The response is taken from a single read, matching the server's
    one-command / one-write contract.  No retries.

    Args:
        path: Filesystem path of the peer's UNIX socket.
        command: Command text; a trailing newline is added when missing.
        timeout: Socket timeout in seconds, or ``None`` to block indefinitely.

    Returns:
        The decoded response text, including its trailing newline.

    Raises:
        HandoffError: If connecting, writing or reading fails.

    """
    line = command if command.endswith("\n") else f"{command}\n"
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    with sock:
        sock.settimeout(timeout)
        try:
            sock.connect(path)
        except OSError as exc:
            raise HandoffError(f"Error connecting to socket {path}: {exc}") from exc
        try:
            sock.sendall(line.encode())
        except OSError as exc:
            raise HandoffError(f"Error writing to socket {path}: {exc}") from exc
        try:
            data = sock.recv(HANDOFF_READ_LEN)
        except OSError as exc:
            raise HandoffError(f"Error reading from socket {path}: {exc}") from exc
    return data.decode("ascii", errors="replace")


def fetch_and_terminate(path: str, *, timeout: float | None = None) -> int:
    """Read the counter from the instance at *path* and make it exit.

    Returns:
        The peer's counter value, or 0 when the peer cannot be reached or
        answers with something that is not an integer.

    """
    _handoff_logger.info("Reading starting position from socket %s", path, extra={"socket_path": path})
    try:
        response = request(path, GET_COUNTER_AND_TERMINATE, timeout=timeout)
    except HandoffError as exc:
        _handoff_logger.warning("%s", exc, extra={"socket_path": path})
        return 0
    value = parse_leading_int(response)
    _handoff_logger.info(
        "Took over counter value %d from %s", value, path, extra={"socket_path": path, "counter": value}
    )
    return value
