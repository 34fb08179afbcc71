"""
The multiplexer: one receive end, many tagged send ends.

Typical use is capturing a child process's stdout and stderr in the order
they were written:

    mux = Mux[str]()
    stdout = await mux.tag("out")
    stderr = await mux.tag("err")
    proc = await asyncio.create_subprocess_exec(*cmd, stdout=stdout, stderr=stderr)
    chunks, returncode = await mux.read_while(proc.wait)
    mux.close()

Sessions
--------

A session reads until a cancellation scope (an `asyncio.Event`) is set and
every connection has drained. `read_until` takes the scope from the caller;
`read_while` creates one and sets it when the given operation completes.
Consecutive chunks with the same tag are merged into one entry.

The `read_lines_*` variants additionally run line reassembly on
connection-oriented transports, where writes can be split across reads.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import socket
from collections.abc import Awaitable, Callable
from enum import Enum, auto
from pathlib import Path
from types import TracebackType
from typing import Any, BinaryIO, Generic, Hashable, Self, TypeVar

from .exceptions import MuxClosedError, MuxEndOfStream, MuxNoConnectionsError, MuxOperationError
from .reader import FanInReader
from .reassembly import reassemble
from .registry import TagRegistry
from .transport import (
    Transport,
    bind_receiver,
    default_transport,
    make_directory,
    receive_path,
)
from .types import MuxOptions, TaggedData

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Hashable)
R = TypeVar("R")


class _InitState(Enum):
    """Lifecycle of the receive endpoint."""

    UNINITIALIZED = auto()
    INITIALIZING = auto()
    READY = auto()
    FAILED = auto()


class Mux(Generic[T]):
    """
    Multiplexes tagged writers over unix-domain sockets into one reader.

    The receive endpoint is created on the first `tag` call (or eagerly by
    `Mux.open`). All sockets and the socket directory belong to the
    multiplexer and are released by `close`.

    `read` and its session variants must not run concurrently with each
    other or with `close`.
    """

    def __init__(self, options: MuxOptions | None = None) -> None:
        self.options = options if options is not None else MuxOptions()
        self.transport: Transport = self.options.transport or default_transport()

        self._state = _InitState.UNINITIALIZED
        self._init_lock = asyncio.Lock()
        self._closed = False

        self._directory: Path | None = None
        self._owns_directory = False
        self._receiver_path: Path | None = None
        self._receiver: socket.socket | None = None
        self._reader: FanInReader[T] | None = None
        self._registry: TagRegistry[T] | None = None

    @classmethod
    def open(cls, options: MuxOptions | None = None) -> Self:
        """
        Create a multiplexer with its receive endpoint already bound.

        Raises:
            OSError: If the directory or receive socket cannot be created.
        """
        mux = cls(options)
        mux._start()
        return mux

    @classmethod
    def unix(cls, **kwargs: Any) -> Self:
        """Create a multiplexer on the byte-stream transport."""
        return cls(MuxOptions(transport=Transport.STREAM, **kwargs))

    @classmethod
    def unixgram(cls, **kwargs: Any) -> Self:
        """Create a multiplexer on the datagram transport."""
        return cls(MuxOptions(transport=Transport.DATAGRAM, **kwargs))

    @classmethod
    def unixpacket(cls, **kwargs: Any) -> Self:
        """Create a multiplexer on the sequenced-packet transport."""
        return cls(MuxOptions(transport=Transport.SEQPACKET, **kwargs))

    @property
    def closed(self) -> bool:
        """True once `close` has been called."""
        return self._closed

    @property
    def directory(self) -> Path | None:
        """Directory holding the socket files, once started."""
        return self._directory

    async def tag(self, tag: T) -> BinaryIO:
        """
        Return a writable file whose data is read back tagged with `tag`.

        The same handle is returned for every call with the same tag. Writes
        go straight to the socket (the file is unbuffered), so the handle
        can also be given to a child process as stdout or stderr.

        A failure while connecting leaves the receive side inconsistent, so
        it closes the multiplexer before re-raising.

        Raises:
            MuxClosedError: If the multiplexer is closed.
            OSError: If the sockets cannot be created or connected.
        """
        self._check_open()
        try:
            registry = await self._ensure_started()
            return await registry.register(tag)
        except OSError:
            if not self._closed:
                self.close()
            raise

    async def read(self, scope: asyncio.Event) -> tuple[bytes, T | None]:
        """
        Read one chunk, blocking until data arrives or the scope drains.

        Args:
            scope: Cancellation scope for this session.

        Returns:
            The chunk and its tag.

        Raises:
            MuxClosedError: If the multiplexer is closed.
            MuxNoConnectionsError: If no tag has been registered.
            MuxEndOfStream: When the scope is set and all data was read.
        """
        self._check_open()
        if self._reader is None:
            raise MuxNoConnectionsError()
        return await self._reader.read(scope)

    async def read_until(self, scope: asyncio.Event) -> list[TaggedData[T]]:
        """
        Read until the scope drains.

        Consecutive chunks with the same tag are merged. On any error other
        than end-of-stream the chunks read so far are discarded.
        """
        self._check_open()
        entries: list[tuple[T | None, bytearray]] = []
        while True:
            try:
                data, tag = await self.read(scope)
            except MuxEndOfStream:
                return [TaggedData(tag=t, data=bytes(buf)) for t, buf in entries]
            if entries and entries[-1][0] == tag:
                entries[-1][1].extend(data)
            else:
                entries.append((tag, bytearray(data)))

    async def read_while(
        self, operation: Callable[[], Awaitable[R]]
    ) -> tuple[list[TaggedData[T]], R]:
        """
        Read while `operation` runs.

        The session ends once the operation has completed and every
        connection has drained.

        Returns:
            The chunks and the operation's return value.

        Raises:
            MuxOperationError: If the operation raised. The chunks are kept
                on the exception, the original exception is its cause.
        """
        return await self._session(operation, self.read_until)

    async def read_lines_until(self, scope: asyncio.Event) -> list[TaggedData[T]]:
        """`read_until`, with fragments re-joined into lines on stream transports."""
        return self._reassemble(await self.read_until(scope))

    async def read_lines_while(
        self, operation: Callable[[], Awaitable[R]]
    ) -> tuple[list[TaggedData[T]], R]:
        """`read_while`, with fragments re-joined into lines on stream transports."""
        return await self._session(operation, self.read_lines_until)

    def close(self) -> None:
        """
        Close every socket and handle and remove the socket files.

        Reads in flight are cancelled, not awaited.

        Raises:
            MuxClosedError: If already closed.
        """
        if self._closed:
            raise MuxClosedError()
        self._closed = True

        if self._reader is not None:
            self._reader.cancel()
        if self._registry is not None:
            self._registry.close()
        if self._receiver is not None:
            self._receiver.close()

        if self._directory is not None:
            if self._owns_directory:
                shutil.rmtree(self._directory, ignore_errors=True)
            elif self._receiver_path is not None:
                with contextlib.suppress(FileNotFoundError):
                    self._receiver_path.unlink()
        logger.debug("Closed %s mux at %s", self.transport.value, self._directory)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self._closed:
            self.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self._closed:
            self.close()

    def _check_open(self) -> None:
        if self._closed:
            raise MuxClosedError()

    async def _ensure_started(self) -> TagRegistry[T]:
        """Bind the receive endpoint once, however many callers race here."""
        if self._state is not _InitState.READY:
            async with self._init_lock:
                if self._state is _InitState.FAILED:
                    raise MuxClosedError()
                if self._state is not _InitState.READY:
                    self._start()
        if self._registry is None:
            raise MuxClosedError()
        return self._registry

    def _start(self) -> None:
        """
        Create the socket directory and bind the receive endpoint.

        Nothing is left behind on failure.
        """
        self._state = _InitState.INITIALIZING
        try:
            directory, owned = make_directory(self.options.directory)
        except OSError:
            self._state = _InitState.FAILED
            raise

        path = receive_path(directory)
        try:
            receiver = bind_receiver(self.transport, path)
        except OSError:
            self._state = _InitState.FAILED
            if owned:
                shutil.rmtree(directory, ignore_errors=True)
            raise

        self._directory = directory
        self._owns_directory = owned
        self._receiver_path = path
        self._receiver = receiver

        buffer_size = self.options.buffer_size(self.transport)
        self._reader = FanInReader(
            transport=self.transport,
            resolve=self._resolve,
            read_deadline=self.options.read_deadline,
        )
        self._registry = TagRegistry(
            transport=self.transport,
            directory=directory,
            receiver=receiver,
            receiver_path=path,
            reader=self._reader,
            buffer_size=buffer_size,
            accept_deadline=self.options.read_deadline,
        )
        if not self.transport.is_connection_oriented:
            # Every sender writes to the one receive socket.
            self._reader.add_endpoint(receiver, buffer_size)
        self._state = _InitState.READY

    def _resolve(self, address: str) -> T | None:
        if self._registry is None:
            return None
        return self._registry.resolve(address)

    def _reassemble(self, chunks: list[TaggedData[T]]) -> list[TaggedData[T]]:
        # Datagrams arrive whole and in order, there is nothing to repair.
        if not self.transport.is_connection_oriented:
            return chunks
        return reassemble(chunks)

    async def _session(
        self,
        operation: Callable[[], Awaitable[R]],
        read: Callable[[asyncio.Event], Awaitable[list[TaggedData[T]]]],
    ) -> tuple[list[TaggedData[T]], R]:
        self._check_open()
        scope = asyncio.Event()

        async def run() -> R:
            try:
                return await operation()
            finally:
                scope.set()

        task = asyncio.create_task(run())
        try:
            chunks = await read(scope)
        except BaseException:
            task.cancel()
            raise

        try:
            result = await task
        except Exception as e:
            raise MuxOperationError(chunks, e) from e
        return chunks, result
