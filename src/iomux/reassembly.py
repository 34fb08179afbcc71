"""
Line reassembly for byte-stream sessions.

Byte streams carry no message boundaries, and the stream read buffer is
small on purpose. One write can arrive as several reads, and fragments of
writes on different tags can interleave:

    a: "hello wo"   b: "error\\n"   a: "rld\\n"

Reassembly holds back a tag's fragments until a line ends (or the tag's
data ends), then emits them as one chunk at the position of the fragment
that completed the line:

    b: "error\\n"   a: "hello world\\n"

Per-tag byte order is always preserved. Cross-tag order is only as good as
the newline heuristic; payloads without line terminators are released at
the tag's last chunk.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Hashable, TypeVar

from .types import TaggedData

T = TypeVar("T", bound=Hashable)

LINE_TERMINATOR = b"\n"
"""Byte that completes a line."""


def reassemble(chunks: Sequence[TaggedData[T]]) -> list[TaggedData[T]]:
    """
    Re-join fragments split by the transport into whole lines.

    Args:
        chunks: A completed session, in receipt order.

    Returns:
        New chunks. The input entries are not modified.
    """
    # Locate the last chunk of every tag.
    #
    # That chunk flushes whatever is still pending for its tag, so no
    # fragment is left behind once the walk below reaches the end.
    last_index: dict[T, int] = {}
    for i in range(len(chunks) - 1, -1, -1):
        last_index.setdefault(chunks[i].tag, i)

    pending: dict[T, bytearray] = {}
    lines: list[TaggedData[T]] = []
    for i, chunk in enumerate(chunks):
        if last_index[chunk.tag] == i or chunk.data.endswith(LINE_TERMINATOR):
            head = pending.pop(chunk.tag, bytearray())
            lines.append(TaggedData(tag=chunk.tag, data=bytes(head + chunk.data)))
        else:
            pending.setdefault(chunk.tag, bytearray()).extend(chunk.data)
    return lines
