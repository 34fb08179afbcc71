"""
Tag registry: one dedicated sender connection per tag.

Registering a tag binds a sender socket at the next numbered path and
connects it to the receive endpoint. The caller gets a writable file over
the sender's descriptor, ready to hand to a child process.

For connection-oriented transports the receive side must accept while the
sender dials. Both steps run concurrently and are joined: running them one
after the other can stall, since accept waits for a dialer and a dialer may
wait for accept once the listen backlog is full.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
from pathlib import Path
from typing import BinaryIO, Generic, Hashable, TypeVar

from .reader import FanInReader
from .transport import Transport, bind_sender, send_path

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


class TagRegistry(Generic[T]):
    """
    Maps each tag to its sender connection and each sender address to its tag.

    The address index is built at registration time, so attributing an
    inbound datagram is a single dictionary lookup.
    """

    def __init__(
        self,
        transport: Transport,
        directory: Path,
        receiver: socket.socket,
        receiver_path: Path,
        reader: FanInReader[T],
        buffer_size: int,
        accept_deadline: float,
    ) -> None:
        self.transport = transport
        self.directory = directory
        self.reader = reader
        self._receiver = receiver
        self._receiver_path = receiver_path
        self._buffer_size = buffer_size
        self._accept_deadline = accept_deadline

        self._senders: dict[T, socket.socket] = {}
        self._handles: dict[T, BinaryIO] = {}
        self._tags_by_address: dict[str, T] = {}
        self._accepted: list[socket.socket] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._senders)

    def __contains__(self, tag: object) -> bool:
        return tag in self._senders

    @property
    def paths(self) -> list[Path]:
        """Socket files created for senders, in registration order."""
        return [Path(address) for address in self._tags_by_address]

    def resolve(self, address: str) -> T | None:
        """Tag of the sender bound at `address`, if any."""
        return self._tags_by_address.get(address)

    async def register(self, tag: T) -> BinaryIO:
        """
        Return the writable handle for `tag`, connecting it on first use.

        Raises:
            OSError: If binding, dialing or accepting fails.
            TimeoutError: If no connection was accepted within the deadline.
        """
        async with self._lock:
            if tag not in self._handles:
                await self._connect(tag)
            return self._handles[tag]

    def close(self) -> None:
        """Close every handle and socket owned by the registry."""
        for handle in self._handles.values():
            handle.close()
        for sock in [*self._senders.values(), *self._accepted]:
            sock.close()
        for path in self.paths:
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    async def _connect(self, tag: T) -> None:
        path = send_path(self.directory, len(self._senders) + 1)
        sender = bind_sender(self.transport, path)

        accepted, dialed = await asyncio.gather(
            self._accept(), self._dial(sender), return_exceptions=True
        )
        if isinstance(accepted, BaseException) or isinstance(dialed, BaseException):
            sender.close()
            if isinstance(accepted, socket.socket):
                accepted.close()
            with contextlib.suppress(FileNotFoundError):
                path.unlink()
            raise accepted if isinstance(accepted, BaseException) else dialed

        # The sender is never read back through its own connection.
        #
        # Shutting down the read half also lets the remote writer see a
        # clean EOF when the multiplexer goes away.
        with contextlib.suppress(OSError):
            sender.shutdown(socket.SHUT_RD)

        # The handle shares the file description with the socket, and so
        # shares O_NONBLOCK. Writers (child processes in particular) expect
        # a blocking descriptor.
        sender.setblocking(True)

        address = str(path)
        self._senders[tag] = sender
        self._tags_by_address[address] = tag
        self._handles[tag] = open(os.dup(sender.fileno()), "wb", buffering=0)

        # The kernel accepts any message that fits the sender's send buffer,
        # and a read smaller than the message truncates it without error.
        buffer_size = self._buffer_size
        if self.transport.preserves_boundaries:
            buffer_size = max(buffer_size, sender.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF))

        if accepted is not None:
            self._accepted.append(accepted)
            self.reader.add_endpoint(accepted, buffer_size, tag=tag)
        else:
            self.reader.reserve(buffer_size)
        logger.debug("Registered tag %r at %s", tag, address)

    async def _accept(self) -> socket.socket | None:
        """Accept the receive end of a new sender, if the transport has one."""
        if not self.transport.is_connection_oriented:
            return None

        loop = asyncio.get_running_loop()
        conn, _ = await asyncio.wait_for(
            loop.sock_accept(self._receiver), self._accept_deadline
        )
        conn.setblocking(False)
        # The receive end never writes.
        with contextlib.suppress(OSError):
            conn.shutdown(socket.SHUT_WR)
        return conn

    async def _dial(self, sender: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        await loop.sock_connect(sender, str(self._receiver_path))
