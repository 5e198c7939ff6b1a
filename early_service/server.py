# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Non-blocking UNIX domain socket server for the counter protocol.

:class:`CounterServer` listens on a filesystem socket and runs one
:class:`Connection` per accepted client.  Everything runs on the single
asyncio event-loop thread; a connection only ever waits on its own read or
write, so the ticker and other connections keep being serviced meanwhile.

Each connection is an explicit state machine::

    AWAITING_COMMAND -> DISPATCHING -> AWAITING_FLUSH -> AWAITING_COMMAND
                                                      -> TERMINATED

``TERMINATED`` is also reached from any state on peer close or I/O error.
A ``get_counter_and_terminate`` reply is fully flushed and the socket closed
before the server's ``on_terminate`` callback fires, so the peer never
races a half-delivered answer.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import socket
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from early_service._common import (
    READ_BUFFER_LEN,
    BindError,
    DispatchHook,
    HookToken,
    _access_logger,
    _server_logger,
)
from early_service.counter import Counter
from early_service.protocol import Command, CommandKind, Reply, dispatch, extract_command, parse_command

__all__ = ["Connection", "ConnectionState", "CounterServer"]


class ConnectionState(Enum):
    """Lifecycle states of a :class:`Connection`."""

    AWAITING_COMMAND = "awaiting_command"
    DISPATCHING = "dispatching"
    AWAITING_FLUSH = "awaiting_flush"
    TERMINATED = "terminated"


class Connection:
    """Per-client read / dispatch / write loop.

    Attributes:
        connection_id: Server-unique id used in log records.
        state: Current :class:`ConnectionState`.
        terminate_at_end: Set once a ``get_counter_and_terminate`` has been
            dispatched; the loop ends after its reply is flushed.

    """

    __slots__ = ("_counter", "_dispatch_hook", "_reader", "_writer", "connection_id", "state", "terminate_at_end")

    def __init__(
        self,
        connection_id: int,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        counter: Counter,
        dispatch_hook: DispatchHook | None = None,
    ) -> None:
        """Initialize with the accepted stream pair and the shared counter."""
        self.connection_id = connection_id
        self._reader = reader
        self._writer = writer
        self._counter = counter
        self._dispatch_hook = dispatch_hook
        self.state = ConnectionState.AWAITING_COMMAND
        self.terminate_at_end = False

    async def serve(self) -> bool:
        """Run the command loop until the peer leaves, an error occurs, or termination.

        Returns:
            ``True`` when the loop ended because a termination request was
            flushed to the peer, ``False`` otherwise.

        """
        try:
            while True:
                data = await self._read()
                if not data:
                    return False
                self.state = ConnectionState.DISPATCHING
                reply = self._dispatch(extract_command(data))
                self.state = ConnectionState.AWAITING_FLUSH
                self.terminate_at_end = reply.terminate
                if not await self._flush(reply):
                    return False
                if self.terminate_at_end:
                    return True
                self.state = ConnectionState.AWAITING_COMMAND
        finally:
            self.state = ConnectionState.TERMINATED
            self._writer.close()

    async def _read(self) -> bytes:
        try:
            return await self._reader.read(READ_BUFFER_LEN)
        except OSError as exc:
            _server_logger.warning(
                "Read failed on connection %d: %s",
                self.connection_id,
                exc,
                extra={"connection_id": self.connection_id},
            )
            return b""

    def _dispatch(self, text: str) -> Reply:
        command = parse_command(text)
        hook = self._dispatch_hook
        token: HookToken = None
        if hook is not None:
            try:
                token = hook.on_dispatch_start(command, self.connection_id)
            except Exception:
                _server_logger.debug("Dispatch hook start failed", exc_info=True)
                hook = None
        try:
            reply = dispatch(command, self._counter)
        except Exception:
            self._end_hook(hook, token, command, None)
            raise
        self._end_hook(hook, token, command, reply)
        self._emit_access_log(command, reply)
        return reply

    @staticmethod
    def _end_hook(hook: DispatchHook | None, token: HookToken, command: Command, reply: Reply | None) -> None:
        if hook is None:
            return
        try:
            hook.on_dispatch_end(token, command, reply)
        except Exception:
            _server_logger.debug("Dispatch hook end failed", exc_info=True)

    def _emit_access_log(self, command: Command, reply: Reply) -> None:
        if not _access_logger.isEnabledFor(logging.INFO):
            return
        status = "invalid" if command.kind == CommandKind.invalid else "ok"
        _access_logger.info(
            "%s %s",
            command.kind.value,
            status,
            extra={
                "connection_id": self.connection_id,
                "command": command.text,
                "status": status,
                "terminate": reply.terminate,
                "counter": self._counter.value,
            },
        )

    async def _flush(self, reply: Reply) -> bool:
        """Write *reply*; on termination also close and wait until every byte is out."""
        try:
            self._writer.write(reply.payload)
            await self._writer.drain()
            if reply.terminate:
                self._writer.close()
                await self._writer.wait_closed()
        except OSError as exc:
            _server_logger.warning(
                "Write failed on connection %d: %s",
                self.connection_id,
                exc,
                extra={"connection_id": self.connection_id},
            )
            return False
        return True


class CounterServer:
    """Serve a :class:`Counter` over a UNIX domain socket.

    Usage::

        server = CounterServer("/run/early.sock", counter, on_terminate=stop_event.set)
        await server.start()
        ...
        await server.stop()

    Args:
        path: Filesystem path to listen on.  It must not exist yet.
        counter: The shared counter.
        on_terminate: Called once a ``get_counter_and_terminate`` reply has
            been delivered; normally stops the whole process.
        dispatch_hook: Optional observability hook (see
            :func:`early_service.otel.instrument_server`).

    """

    def __init__(
        self,
        path: str,
        counter: Counter,
        *,
        on_terminate: Callable[[], None],
        dispatch_hook: DispatchHook | None = None,
    ) -> None:
        """Initialize without binding; call :meth:`start` from the event loop."""
        self.path = path
        self.counter = counter
        self._on_terminate = on_terminate
        self._dispatch_hook = dispatch_hook
        self._server: asyncio.Server | None = None
        self._connections: set[Connection] = set()
        self._ids = itertools.count(1)

    @property
    def serving(self) -> bool:
        """Whether the server is accepting connections."""
        return self._server is not None and self._server.is_serving()

    @property
    def connections(self) -> frozenset[Connection]:
        """Snapshot of the live connections."""
        return frozenset(self._connections)

    async def start(self) -> None:
        """Bind the socket and begin accepting connections.

        Raises:
            BindError: If the path cannot be bound or listened on (already
                exists, permission denied, too long).  The path is never
                removed beforehand, so a live peer is not hijacked.

        """
        if self._server is not None:
            raise RuntimeError("CounterServer already started")
        sock = _bind_unix_socket(self.path)
        try:
            self._server = await asyncio.start_unix_server(self._accept, sock=sock)
        except OSError as exc:
            sock.close()
            raise BindError(self.path, str(exc)) from exc
        _server_logger.info("Listening on UNIX socket %s", self.path, extra={"socket_path": self.path})

    async def stop(self) -> None:
        """Stop accepting connections and remove the socket file.

        Open connections are left alone; they end on their own or are
        cancelled when the event loop shuts down.
        """
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        Path(self.path).unlink(missing_ok=True)
        _server_logger.info("Stopped listening on %s", self.path, extra={"socket_path": self.path})

    async def _accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = Connection(next(self._ids), reader, writer, self.counter, self._dispatch_hook)
        self._connections.add(conn)
        _server_logger.debug("Accepted connection %d", conn.connection_id, extra={"connection_id": conn.connection_id})
        try:
            terminate = await conn.serve()
        finally:
            self._connections.discard(conn)
        if terminate:
            _server_logger.info(
                "Returned counter to client on connection %d, terminating",
                conn.connection_id,
                extra={"connection_id": conn.connection_id},
            )
            self._on_terminate()


def _bind_unix_socket(path: str) -> socket.socket:
    """Create a listening non-blocking ``AF_UNIX`` stream socket at *path*."""
    try:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    except OSError as exc:
        raise BindError(path, str(exc)) from exc
    try:
        sock.bind(path)
        sock.listen()
        sock.setblocking(False)
    except (OSError, ValueError) as exc:
        sock.close()
        raise BindError(path, str(exc)) from exc
    return sock
