# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Line-oriented text protocol spoken over the counter socket.

Requests and responses are ASCII lines terminated by ``\\n``, one command per
read and one response per command::

    get_counter                  ->  "<counter>\\n"
    get_counter_and_terminate    ->  "<counter>\\n"   (then the server exits)
    set_counter <integer>        ->  "previous value <old>\\n"
    <anything else>              ->  "Invalid command\\n"

Nothing in this module performs I/O; :func:`extract_command` turns the bytes of
a single read into a command string, :func:`parse_command` classifies it and
:func:`dispatch` applies it to a :class:`~early_service.counter.Counter`.

Only the first line of each read is honoured.  Several commands pipelined in
one read, or one command split across reads, are not supported, and input
longer than :data:`~early_service._common.READ_BUFFER_LEN` bytes without a
newline is truncated to that length.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Final

from early_service._common import READ_BUFFER_LEN

if TYPE_CHECKING:
    from early_service.counter import Counter

__all__ = [
    "GET_COUNTER",
    "GET_COUNTER_AND_TERMINATE",
    "INVALID_COMMAND_REPLY",
    "SET_COUNTER_PREFIX",
    "Command",
    "CommandKind",
    "Reply",
    "dispatch",
    "extract_command",
    "parse_command",
    "parse_leading_int",
]

GET_COUNTER: Final[str] = "get_counter"
GET_COUNTER_AND_TERMINATE: Final[str] = "get_counter_and_terminate"
SET_COUNTER_PREFIX: Final[str] = "set_counter "
INVALID_COMMAND_REPLY: Final[bytes] = b"Invalid command\n"

_INT64_MIN: Final[int] = -(2**63)
_INT64_MAX: Final[int] = 2**63 - 1

_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)", re.ASCII)


class CommandKind(StrEnum):
    """The commands understood by the server."""

    get_counter = "get_counter"
    get_counter_and_terminate = "get_counter_and_terminate"
    set_counter = "set_counter"
    invalid = "invalid"


@dataclass(frozen=True)
class Command:
    """A classified command line.

    Attributes:
        kind: Which command was received.
        text: The command line as received, without its terminator.
        value: The parsed argument of ``set_counter``; ``None`` otherwise.

    """

    kind: CommandKind
    text: str
    value: int | None = None


@dataclass(frozen=True)
class Reply:
    """The bytes to send back and whether the server should stop afterwards."""

    payload: bytes
    terminate: bool = False


def parse_leading_int(text: str) -> int:
    """Parse the leading base-10 integer of *text*, permissively.

    Leading whitespace and a sign are accepted and parsing stops at the first
    non-digit, so ``"42abc"`` gives 42.  Text without a leading integer gives
    0.  Results outside the signed 64-bit range saturate to its bounds.
    """
    match = _LEADING_INT_RE.match(text)
    if match is None:
        return 0
    value = int(match.group(1))
    return max(_INT64_MIN, min(_INT64_MAX, value))


def extract_command(data: bytes, limit: int = READ_BUFFER_LEN) -> str:
    """Return the single command carried by one read.

    The data is bounded to *limit* bytes, then cut at the first newline (or
    NUL byte).  Anything after the terminator is discarded.  Non-ASCII bytes
    are replaced so the result can never match a valid command.
    """
    line = data[:limit]
    for terminator in (b"\n", b"\0"):
        pos = line.find(terminator)
        if pos != -1:
            line = line[:pos]
    return line.decode("ascii", errors="replace")


def parse_command(text: str) -> Command:
    """Classify a command line (case-sensitive, exact match)."""
    if text == GET_COUNTER:
        return Command(CommandKind.get_counter, text)
    if text == GET_COUNTER_AND_TERMINATE:
        return Command(CommandKind.get_counter_and_terminate, text)
    if text.startswith(SET_COUNTER_PREFIX):
        return Command(CommandKind.set_counter, text, parse_leading_int(text[len(SET_COUNTER_PREFIX) :]))
    return Command(CommandKind.invalid, text)


def dispatch(command: Command, counter: Counter) -> Reply:
    """Apply *command* to *counter* and build the reply."""
    if command.kind == CommandKind.get_counter:
        return Reply(f"{counter.value}\n".encode())
    if command.kind == CommandKind.get_counter_and_terminate:
        return Reply(f"{counter.value}\n".encode(), terminate=True)
    if command.kind == CommandKind.set_counter:
        assert command.value is not None
        previous = counter.replace(command.value)
        return Reply(f"previous value {previous}\n".encode())
    return Reply(INVALID_COMMAND_REPLY)
