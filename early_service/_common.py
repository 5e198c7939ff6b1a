# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, errors, loggers and the dispatch hook protocol shared by the service."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final, Protocol

if TYPE_CHECKING:
    from early_service.protocol import Command, Reply

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

READ_BUFFER_LEN: Final[int] = 127
"""Upper bound on the bytes taken from a connection by one read."""

DEFAULT_TIMER_DELAY_MS: Final[int] = 100

_logger = logging.getLogger("early_service.service")
_server_logger = logging.getLogger("early_service.server")
_access_logger = logging.getLogger("early_service.access")
_ticker_logger = logging.getLogger("early_service.ticker")
_handoff_logger = logging.getLogger("early_service.handoff")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class EarlyServiceError(Exception):
    """Base class for errors raised by early-service."""


class BindError(EarlyServiceError):
    """Raised when the listening endpoint cannot be created.

    Attributes:
        path: The socket path that could not be bound.

    """

    def __init__(self, path: str, reason: str) -> None:
        """Initialize with the offending path and the underlying reason."""
        self.path = path
        self.reason = reason
        super().__init__(f"Error binding socket {path}: {reason}")


class HandoffError(EarlyServiceError):
    """Raised when a peer instance cannot be reached or does not answer."""


# ---------------------------------------------------------------------------
# Dispatch hook protocol
# ---------------------------------------------------------------------------

type HookToken = object
"""Opaque token returned by ``DispatchHook.on_dispatch_start``."""


class DispatchHook(Protocol):
    """Observability hook called around every dispatched command."""

    def on_dispatch_start(self, command: Command, connection_id: int) -> HookToken:
        """Start observability for a dispatch and return an opaque token."""
        ...

    def on_dispatch_end(self, token: HookToken, command: Command, reply: Reply | None) -> None:
        """Finalize observability once the reply is built (``None`` if dispatch failed)."""
        ...


class _CompositeDispatchHook:
    """Fan a dispatch out to several hooks, in registration order."""

    __slots__ = ("_hooks",)

    def __init__(self, hooks: tuple[DispatchHook, ...]) -> None:
        self._hooks = hooks

    def on_dispatch_start(self, command: Command, connection_id: int) -> HookToken:
        """Start every hook and pair each one that started with its token.

        A hook that raises is logged and left out, so it is not ended either;
        the hooks around it still run.
        """
        started: list[tuple[DispatchHook, HookToken]] = []
        for hook in self._hooks:
            try:
                started.append((hook, hook.on_dispatch_start(command, connection_id)))
            except Exception:
                _server_logger.debug("Dispatch hook %r start failed", hook, exc_info=True)
        return tuple(started)

    def on_dispatch_end(self, token: HookToken, command: Command, reply: Reply | None) -> None:
        """End every hook that started, in reverse order, each with its own token."""
        assert isinstance(token, tuple)
        for hook, sub_token in reversed(token):
            try:
                hook.on_dispatch_end(sub_token, command, reply)
            except Exception:
                _server_logger.debug("Dispatch hook %r end failed", hook, exc_info=True)


def _register_dispatch_hook(existing: DispatchHook | None, hook: DispatchHook) -> DispatchHook:
    """Return a hook that runs *existing* (if any) followed by *hook*."""
    if existing is None:
        return hook
    if isinstance(existing, _CompositeDispatchHook):
        return _CompositeDispatchHook((*existing._hooks, hook))
    return _CompositeDispatchHook((existing, hook))
