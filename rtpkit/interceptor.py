"""Packet buffer pooling and an RTP payload size limiter."""

from __future__ import annotations

import threading
from typing import Any, Callable

MAX_PAYLOAD_SIZE = 1200

RTPWriter = Callable[..., int]


class PacketPool:
    """Reusable byte buffers grouped by fixed sizes."""

    def __init__(self, *args: int) -> None:
        self._sizes = sorted(set(args))
        self._free: dict[int, list[bytearray]] = {size: [] for size in self._sizes}
        self._lock = threading.Lock()

    def get(self, size: int) -> bytearray:
        """Return a buffer at least ``size`` bytes long."""
        for pool_size in self._sizes:
            if pool_size >= size:
                with self._lock:
                    free = self._free[pool_size]
                    if free:
                        return free.pop()
                return bytearray(pool_size)
        return bytearray(size)

    def release(self, buffer: bytearray) -> None:
        """Return a buffer to its pool; buffers of other sizes are discarded."""
        free = self._free.get(len(buffer))
        if free is not None:
            with self._lock:
                free.append(buffer)


class PayloadSizeTooLargeError(ValueError):
    """Raised when an RTP payload exceeds the packetization limit."""

    def __init__(self) -> None:
        super().__init__(
            f"packetization payload size should not greater than {MAX_PAYLOAD_SIZE} bytes"
        )


class LimitSizeInterceptor:
    """Rejects outgoing RTP packets whose payload is too large."""

    def bind_local_stream(self, stream: Any, writer: RTPWriter) -> RTPWriter:
        """Wrap ``writer`` so that oversized payloads raise an error."""

        def write(header: Any, payload: bytes, attributes: Any = None) -> int:
            if len(payload) > MAX_PAYLOAD_SIZE:
                raise PayloadSizeTooLargeError()
            return writer(header, payload, attributes)

        return write