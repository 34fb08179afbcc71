"""
Transport selection and unix-domain socket factory.

Every multiplexer owns one directory holding its socket files:

    <dir>/recv.sock      receive endpoint (bound once)
    <dir>/send_1.sock    sender for the first registered tag
    <dir>/send_2.sock    sender for the second registered tag
    ...

Senders bind to a named path before connecting. That name is the peer
address the receiver sees, which is how inbound data is attributed to a tag.

Transport kinds:
    - unixgram: message oriented. The kernel delivers each write atomically
      and in order, so cross-tag order is exact. Payloads above the platform
      limit fail or truncate.
    - unix: connection oriented byte stream. No size limit, no message
      boundaries, one accepted connection per tag.
    - unixpacket: connection oriented with message boundaries.
"""

from __future__ import annotations

import contextlib
import logging
import socket
import sys
import tempfile
from enum import Enum
from pathlib import Path
from typing import Final

from . import config

logger = logging.getLogger(__name__)

READ_DEADLINE: Final[float] = 0.1
"""Seconds a single socket read (or accept) blocks before giving up."""

INITIAL_BACKOFF: Final[float] = 0.001
"""First sleep of the fan-in poll loop. Doubles up to READ_DEADLINE."""

RECEIVE_SOCKET_NAME: Final[str] = "recv.sock"
"""File name of the receive endpoint inside the multiplexer directory."""

# Message-oriented sockets truncate a message that does not fit the buffer.
#
# There is no portable way to size the buffer per message without peeking,
# so it starts at the platform maximum and grows to each sender's send
# buffer on registration. The kernel refuses larger messages with EMSGSIZE.
# macOS caps unix datagrams at 2048 bytes.
DATAGRAM_BUFFER_SIZE: Final[int] = 65536
"""Receive buffer for datagram and seqpacket transports."""

DARWIN_DATAGRAM_BUFFER_SIZE: Final[int] = 2048
"""Receive buffer for datagram transports on macOS."""

# Byte streams never truncate, a long write just spans several reads.
#
# A modest buffer keeps each read short, so a write on one tag does not
# hide a later write on another tag for long.
DEFAULT_STREAM_BUFFER_SIZE: Final[int] = 128
"""Receive buffer for the byte-stream transport."""


class Transport(str, Enum):
    """Unix-domain socket transport, named after the Go network names."""

    DATAGRAM = "unixgram"
    STREAM = "unix"
    SEQPACKET = "unixpacket"

    @property
    def socket_type(self) -> int:
        """The socket type constant for this transport."""
        if self is Transport.DATAGRAM:
            return socket.SOCK_DGRAM
        if self is Transport.STREAM:
            return socket.SOCK_STREAM
        return socket.SOCK_SEQPACKET

    @property
    def is_connection_oriented(self) -> bool:
        """True if every sender needs its own accepted connection."""
        return self is not Transport.DATAGRAM

    @property
    def preserves_boundaries(self) -> bool:
        """True if each write arrives as one message, truncated to the read buffer."""
        return self is not Transport.STREAM


def default_transport() -> Transport:
    """
    Pick the transport for this platform.

    Datagrams give exact cross-tag ordering, but outside Linux the message
    size limit is small enough that a child process writing a large buffer
    to stdout fails with "message too long" (or "broken pipe" further down
    a process tree). Byte streams are the safe choice there.

    The IOMUX_TRANSPORT environment variable overrides the choice.
    """
    if config.IOMUX_TRANSPORT is not None:
        return Transport(config.IOMUX_TRANSPORT)
    if sys.platform.startswith("linux"):
        return Transport.DATAGRAM
    return Transport.STREAM


def datagram_buffer_size() -> int:
    """Largest datagram payload the platform delivers."""
    if sys.platform == "darwin":
        return DARWIN_DATAGRAM_BUFFER_SIZE
    return DATAGRAM_BUFFER_SIZE


def make_directory(directory: Path | None = None) -> tuple[Path, bool]:
    """
    Return the socket directory, creating an ephemeral one if needed.

    Returns:
        The directory and whether it was created here (and must be removed).
    """
    if directory is not None:
        directory.mkdir(parents=True, exist_ok=True)
        return directory, False
    return Path(tempfile.mkdtemp(prefix="mux", dir=config.IOMUX_TMPDIR)), True


def receive_path(directory: Path) -> Path:
    """Path of the receive endpoint."""
    return directory / RECEIVE_SOCKET_NAME


def send_path(directory: Path, number: int) -> Path:
    """Path of the n-th sender, numbered from 1."""
    return directory / f"send_{number}.sock"


def bind_receiver(transport: Transport, path: Path) -> socket.socket:
    """
    Bind the receive endpoint.

    For datagrams this is the one socket every sender writes to. For
    connection transports it is the listening socket; the connections
    that carry data come from accepting.

    The returned socket is non-blocking.

    Raises:
        OSError: If the socket cannot be created, bound or listened on.
    """
    sock = socket.socket(socket.AF_UNIX, transport.socket_type)
    try:
        sock.setblocking(False)
        sock.bind(str(path))
        if transport.is_connection_oriented:
            sock.listen()
        else:
            # The receiver never writes.
            #
            # Linux refuses shutdown on an unconnected datagram socket,
            # which leaves it exactly as usable.
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_WR)
    except OSError:
        sock.close()
        raise
    logger.debug("Bound %s receiver at %s", transport.value, path)
    return sock


def bind_sender(transport: Transport, path: Path) -> socket.socket:
    """
    Create a non-blocking sender socket bound to its own path.

    Raises:
        OSError: If the socket cannot be created or bound.
    """
    sock = socket.socket(socket.AF_UNIX, transport.socket_type)
    try:
        sock.setblocking(False)
        sock.bind(str(path))
    except OSError:
        sock.close()
        raise
    return sock
