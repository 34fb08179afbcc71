"""
iomux: ordered capture of several writers over unix-domain sockets.

Each writer is identified by a tag and gets a plain writable file, backed
by its own socket, that can be handed to a child process. The reader sees
one sequence of tagged chunks in the order the writers produced them:
exactly on the datagram transport, approximately on byte streams.

Components:
    - transport: transport selection and socket factory
    - registry: tag to sender connection mapping
    - reader: concurrent fan-in over the receive connections
    - reassembly: line re-joining for byte-stream sessions
    - mux: sessions and the public `Mux` class
"""

from .exceptions import (
    MuxClosedError,
    MuxEndOfStream,
    MuxError,
    MuxNoConnectionsError,
    MuxOperationError,
)
from .mux import Mux
from .reassembly import reassemble
from .transport import READ_DEADLINE, Transport, default_transport
from .types import MuxOptions, TaggedData

__all__ = [
    # Multiplexer
    "Mux",
    "MuxOptions",
    "TaggedData",
    # Transport
    "Transport",
    "default_transport",
    "READ_DEADLINE",
    # Reassembly
    "reassemble",
    # Errors
    "MuxError",
    "MuxClosedError",
    "MuxNoConnectionsError",
    "MuxEndOfStream",
    "MuxOperationError",
]
