"""
Global configuration for iomux.

Environment-driven defaults that apply to every multiplexer in the process.
Per-instance settings go through `iomux.types.MuxOptions`.
"""

import os

_SUPPORTED_TRANSPORTS: list[str] = ["unix", "unixgram", "unixpacket"]

IOMUX_TRANSPORT: str | None = os.environ.get("IOMUX_TRANSPORT", "").lower() or None
"""Transport overriding the platform default ('unix', 'unixgram' or 'unixpacket')."""

if IOMUX_TRANSPORT is not None and IOMUX_TRANSPORT not in _SUPPORTED_TRANSPORTS:
    raise ValueError(
        f"Invalid IOMUX_TRANSPORT environment variable: '{IOMUX_TRANSPORT}'. "
        f"Supported values: {_SUPPORTED_TRANSPORTS}"
    )

IOMUX_TMPDIR: str | None = os.environ.get("IOMUX_TMPDIR") or None
"""Parent directory for ephemeral socket directories. Defaults to the system temp dir."""
