"""
Fan-in reader over the receive connections.

A datagram multiplexer has exactly one receive socket, and every sender
writes to it. A connection-oriented multiplexer has one accepted connection
per tag. In both cases `read` returns the next chunk from whichever
connection has data, together with the tag it resolves to.

Polling model
-------------

Each connection is read with a short deadline. With several connections,
every call to `read` arms one worker task per idle connection. A worker
performs a single bounded read and reports the outcome to a shared queue:

    Idle -> Reading -> Idle                  data (or error) reported
    Idle -> Reading -> Idle                  deadline hit, scope not set
    Idle -> Reading -> Idle [EOF for scope]  deadline hit, scope set

While the queue is empty the reader waits on it with a doubling backoff
(1 ms up to the read deadline), re-arming idle connections and checking
whether the scope has drained between waits.

The completion queue binds to the event loop that first waits on it, so a
multiplexer is read from a single loop.

End of stream
-------------

Cancelling a scope does not abort reads in flight. A scope is drained only
once every connection has independently timed out after the scope was set.
A quiet writer and a finished writer look the same for one deadline; after
cancellation there is nothing left to wait for.

End-of-stream flags are kept per (scope, connection), so two scopes used on
the same multiplexer never see each other's state.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, Hashable, TypeVar

from .exceptions import MuxEndOfStream, MuxNoConnectionsError
from .transport import INITIAL_BACKOFF, READ_DEADLINE, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)


@dataclass(slots=True)
class Endpoint(Generic[T]):
    """A receive connection and its read state."""

    index: int
    """Position in the reader's endpoint list. Stable for the reader's lifetime."""

    sock: socket.socket
    """Non-blocking receive socket."""

    buffer_size: int
    """Bytes requested per read."""

    tag: T | None = None
    """Owning tag for accepted connections. None on the shared datagram socket."""

    busy: bool = False
    """True while a read is in flight. At most one read per connection."""


@dataclass(slots=True)
class _Completion(Generic[T]):
    """Outcome of one worker read."""

    endpoint: Endpoint[T]
    scope: asyncio.Event
    data: bytes = b""
    tag: T | None = None
    eof: bool = False
    error: OSError | None = None


@dataclass(slots=True)
class FanInReader(Generic[T]):
    """
    Concurrent reader over all receive connections of a multiplexer.

    Not safe for concurrent `read` calls. Endpoints are append-only.
    """

    transport: Transport
    """Transport of every endpoint."""

    resolve: Callable[[str], T | None]
    """Maps a datagram sender address to its tag."""

    read_deadline: float = READ_DEADLINE
    """Seconds a single read blocks before yielding."""

    endpoints: list[Endpoint[T]] = field(default_factory=list)
    """Receive connections, in registration order."""

    _completions: asyncio.Queue[_Completion[T]] = field(default_factory=asyncio.Queue)
    """Shared queue every worker reports to."""

    _eof: dict[asyncio.Event, set[int]] = field(default_factory=dict)
    """Endpoint indices that reached end-of-stream, per active scope."""

    _tasks: set[asyncio.Task[None]] = field(default_factory=set)
    """Workers still running."""

    def add_endpoint(self, sock: socket.socket, buffer_size: int, tag: T | None = None) -> None:
        """Start reading from another receive connection."""
        self.endpoints.append(
            Endpoint(index=len(self.endpoints), sock=sock, buffer_size=buffer_size, tag=tag)
        )

    def reserve(self, buffer_size: int) -> None:
        """Grow every endpoint's read buffer to at least `buffer_size` bytes."""
        for endpoint in self.endpoints:
            endpoint.buffer_size = max(endpoint.buffer_size, buffer_size)

    async def read(self, scope: asyncio.Event) -> tuple[bytes, T | None]:
        """
        Read the next chunk from any connection.

        Blocks until a chunk is available or the scope has drained.

        Args:
            scope: Cancellation scope. Set it to end the session.

        Returns:
            The chunk and the tag it resolves to.

        Raises:
            MuxNoConnectionsError: If no connection exists yet.
            MuxEndOfStream: Once every connection has drained for the scope.
            OSError: Any transport error other than a read deadline.
        """
        if not self.endpoints:
            raise MuxNoConnectionsError()

        if len(self.endpoints) == 1:
            return await self._read_single(scope, self.endpoints[0])

        finished = self._eof.setdefault(scope, set())
        try:
            return await self._poll(scope, finished)
        except BaseException:
            # Drained and failed scopes keep no bookkeeping.
            self._eof.pop(scope, None)
            raise

    def cancel(self) -> None:
        """Cancel running workers without waiting for them."""
        for task in list(self._tasks):
            if not task.done():
                task.cancel()

    async def _poll(self, scope: asyncio.Event, finished: set[int]) -> tuple[bytes, T | None]:
        """Wait for the next completion across all endpoints."""
        delay = INITIAL_BACKOFF
        while True:
            self._arm(scope, finished)

            drained = len(finished) == len(self.endpoints)
            if drained and scope.is_set() and self._completions.empty():
                logger.debug("Scope drained %d connections", len(self.endpoints))
                raise MuxEndOfStream()

            # Wake as soon as a worker reports, or after the backoff delay
            # to re-arm workers and re-check the scope.
            try:
                completion = await asyncio.wait_for(self._completions.get(), delay)
            except TimeoutError:
                delay = min(delay * 2, self.read_deadline)
                continue

            if completion.error is not None:
                raise completion.error
            if completion.eof:
                # The worker may have been armed by another scope.
                states = self._eof.get(completion.scope)
                if states is not None:
                    states.add(completion.endpoint.index)
                continue
            return completion.data, completion.tag

    def _arm(self, scope: asyncio.Event, finished: set[int]) -> None:
        """Start a worker on every idle connection not yet drained for the scope."""
        for endpoint in self.endpoints:
            if endpoint.busy or endpoint.index in finished:
                continue
            endpoint.busy = True
            task = asyncio.create_task(self._worker(scope, endpoint))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _worker(self, scope: asyncio.Event, endpoint: Endpoint[T]) -> None:
        """Perform one bounded read and report it."""
        try:
            try:
                result = await self._read_once(endpoint)
            except TimeoutError:
                if scope.is_set():
                    self._completions.put_nowait(_Completion(endpoint, scope, eof=True))
                return
            except OSError as e:
                self._completions.put_nowait(_Completion(endpoint, scope, error=e))
                return

            if result is None:
                self._completions.put_nowait(_Completion(endpoint, scope, eof=True))
            else:
                data, tag = result
                self._completions.put_nowait(_Completion(endpoint, scope, data=data, tag=tag))
        finally:
            endpoint.busy = False

    async def _read_single(
        self, scope: asyncio.Event, endpoint: Endpoint[T]
    ) -> tuple[bytes, T | None]:
        """Read directly from the only connection."""
        endpoint.busy = True
        try:
            while True:
                try:
                    result = await self._read_once(endpoint)
                except TimeoutError:
                    if scope.is_set():
                        raise MuxEndOfStream() from None
                    continue
                if result is None:
                    raise MuxEndOfStream()
                return result
        finally:
            endpoint.busy = False

    async def _read_once(self, endpoint: Endpoint[T]) -> tuple[bytes, T | None] | None:
        """
        One read bounded by the read deadline.

        Returns:
            The chunk and its tag, or None if the peer closed a connection.

        Raises:
            TimeoutError: If nothing arrived before the deadline.
        """
        loop = asyncio.get_running_loop()

        if self.transport is Transport.DATAGRAM:
            # Every sender shares this socket, so the tag comes from the
            # sender address carried by each datagram.
            data, address = await asyncio.wait_for(
                loop.sock_recvfrom(endpoint.sock, endpoint.buffer_size),
                self.read_deadline,
            )
            return data, self.resolve(address) if address else None

        data = await asyncio.wait_for(
            loop.sock_recv(endpoint.sock, endpoint.buffer_size),
            self.read_deadline,
        )
        if not data:
            return None
        return data, endpoint.tag
