# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for early-service tests."""

from __future__ import annotations

import logging
import os
import socket
import subprocess
import sys
import tempfile
import time
import uuid
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

SpawnService = Callable[..., subprocess.Popen[bytes]]
"""Type alias for the ``spawn_service`` fixture return type."""


def _short_unix_path(prefix: str) -> str:
    """Return a fresh socket path short enough for ``sockaddr_un``.

    pytest's ``tmp_path`` can exceed the ~108 byte limit, so sockets go
    straight into the system temp directory (``/tmp`` when available).
    """
    base = "/tmp" if os.path.isdir("/tmp") else tempfile.gettempdir()
    return os.path.join(base, f"es-{prefix}-{uuid.uuid4().hex[:8]}.sock")


def _wait_for_unix(path: str, timeout: float = 5.0) -> None:
    """Poll until a server is accepting connections on *path*."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            try:
                sock.connect(path)
                return
            except OSError:
                pass
        time.sleep(0.05)
    raise TimeoutError(f"Unix socket server on {path} did not start within {timeout}s")


def _service_cmd(*args: str) -> list[str]:
    """Return the command line that launches the service with *args*."""
    return [sys.executable, "-m", "early_service", *args]


@pytest.fixture()
def socket_path() -> Iterator[str]:
    """A short socket path that is removed after the test."""
    path = _short_unix_path("t")
    yield path
    Path(path).unlink(missing_ok=True)


@pytest.fixture()
def spawn_service() -> Iterator[SpawnService]:
    """Return a factory that launches ``early-service serve`` subprocesses.

    Every launched process is terminated and its socket removed at teardown.
    """
    procs: list[subprocess.Popen[bytes]] = []
    paths: list[str] = []

    def factory(*args: str, server_socket_path: str | None = None, wait: bool = True) -> subprocess.Popen[bytes]:
        cmd = ["serve", *args]
        if server_socket_path is not None:
            cmd += ["-s", server_socket_path]
            paths.append(server_socket_path)
        proc = subprocess.Popen(_service_cmd(*cmd), stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        procs.append(proc)
        if wait and server_socket_path is not None:
            _wait_for_unix(server_socket_path)
        return proc

    yield factory

    for proc in procs:
        if proc.poll() is None:
            proc.terminate()
        proc.wait(timeout=5)
    for path in paths:
        Path(path).unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def _reset_service_logging() -> Iterator[None]:
    """Undo handlers and levels installed by ``configure_logging`` (e.g. via the CLI)."""
    logger = logging.getLogger("early_service")
    level = logger.level
    yield
    for handler in list(logger.handlers):
        if handler.get_name() == "early_service":
            logger.removeHandler(handler)
    logger.setLevel(level)
