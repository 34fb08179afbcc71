"""Data model shared by the multiplexer modules."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Hashable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .transport import DEFAULT_STREAM_BUFFER_SIZE, READ_DEADLINE, Transport, datagram_buffer_size

T = TypeVar("T", bound=Hashable)
"""Caller-supplied tag type. Any hashable value works."""


@dataclass(slots=True)
class TaggedData(Generic[T]):
    """
    Bytes attributed to one tag.

    Session operations coalesce consecutive chunks with the same tag into a
    single entry, so `data` may span several underlying reads.
    """

    tag: T
    """Tag of the writer that produced the data."""

    data: bytes
    """Payload, in the order it was received."""


class MuxOptions(BaseModel):
    """
    Per-instance multiplexer settings.

    Every field has a working default. Unset fields fall back to the
    platform and environment defaults when the multiplexer starts.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, validate_default=True)

    transport: Transport | None = None
    """Socket transport. None selects the platform (or IOMUX_TRANSPORT) default."""

    directory: Path | None = None
    """Directory for the socket files. None creates an ephemeral one."""

    read_deadline: float = Field(default=READ_DEADLINE, gt=0)
    """Seconds a single read blocks before yielding to the poll loop."""

    datagram_buffer_size: int = Field(default_factory=datagram_buffer_size, gt=0)
    """Receive buffer for message-oriented transports. Larger messages truncate."""

    stream_buffer_size: int = Field(default=DEFAULT_STREAM_BUFFER_SIZE, gt=0)
    """Receive buffer for byte-stream transports."""

    def buffer_size(self, transport: Transport) -> int:
        """Receive buffer size for the given transport."""
        if transport is Transport.STREAM:
            return self.stream_buffer_size
        return self.datagram_buffer_size
