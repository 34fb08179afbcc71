"""Shared fixtures for iomux tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from iomux import Mux, Transport
from tests.iomux.helpers import TRANSPORTS, make_mux


@pytest.fixture(params=TRANSPORTS, ids=lambda t: t.value)
def transport(request: pytest.FixtureRequest) -> Transport:
    """Each transport in turn."""
    return request.param


@pytest.fixture
def mux(transport: Transport) -> Iterator[Mux]:
    """Multiplexer on the parametrized transport, closed after the test."""
    m = make_mux(transport)
    yield m
    if not m.closed:
        m.close()
