"""Test helpers for iomux tests."""

from __future__ import annotations

import errno
from typing import BinaryIO, Hashable

import pytest

from iomux import Mux, MuxOptions, Transport

TRANSPORTS = [Transport.STREAM, Transport.DATAGRAM, Transport.SEQPACKET]
"""Every transport: stream, datagram, then sequenced packets."""

_UNSUPPORTED = {errno.EPROTONOSUPPORT, errno.ESOCKTNOSUPPORT, errno.EOPNOTSUPP, errno.EPROTOTYPE}


def make_mux(transport: Transport, **kwargs: object) -> Mux:
    """Create a lazily started multiplexer on `transport`."""
    return Mux(MuxOptions(transport=transport, **kwargs))


async def tag_or_skip(mux: Mux, tag: Hashable) -> BinaryIO:
    """Register `tag`, skipping the test if the platform lacks the transport."""
    try:
        return await mux.tag(tag)
    except OSError as e:
        if e.errno in _UNSUPPORTED:
            pytest.skip(f"{mux.transport.value} not supported: {e}")
        raise
