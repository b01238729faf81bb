"""Core media data types shared across the package."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

NTP_EPOCH_OFFSET = 2_208_988_800
"""Seconds between the NTP epoch (1900) and the Unix epoch (1970)."""

_NANOS_PER_SECOND = 1_000_000_000


def _check_unsigned(name: str, value: int, bits: int) -> None:
    if not 0 <= value < (1 << bits):
        raise ValueError(f"{name} must fit in {bits} unsigned bits, got {value}")


@dataclass
class RtpPacket:
    """An RTP packet: the header fields the package uses plus the payload."""

    sequence_number: int = 0
    timestamp: int = 0
    marker: bool = False
    payload_type: int = 0
    ssrc: int = 0
    payload: bytes = b""

    def __post_init__(self) -> None:
        _check_unsigned("sequence_number", self.sequence_number, 16)
        _check_unsigned("timestamp", self.timestamp, 32)
        _check_unsigned("payload_type", self.payload_type, 7)
        _check_unsigned("ssrc", self.ssrc, 32)
        self.payload = bytes(self.payload)


@dataclass
class Sample:
    """A media frame assembled from RTP payloads; duration is in nanoseconds."""

    data: bytes = b""
    duration: int = 0


@dataclass
class SenderReport:
    """The parts of an RTCP sender report used for synchronisation."""

    ssrc: int
    ntp_time: int
    rtp_time: int
    packet_count: int = 0
    octet_count: int = 0

    def __post_init__(self) -> None:
        _check_unsigned("ssrc", self.ssrc, 32)
        _check_unsigned("ntp_time", self.ntp_time, 64)
        _check_unsigned("rtp_time", self.rtp_time, 32)
        _check_unsigned("packet_count", self.packet_count, 32)
        _check_unsigned("octet_count", self.octet_count, 32)


@runtime_checkable
class Depacketizer(Protocol):
    """Extracts codec data from RTP payloads and detects frame boundaries."""

    def unmarshal(self, payload: bytes) -> bytes:
        """Return the codec data carried by ``payload``."""

    def is_partition_head(self, payload: bytes) -> bool:
        """Return True if ``payload`` starts a new frame."""

    def is_partition_tail(self, marker: bool, payload: bytes) -> bool:
        """Return True if the packet ends a frame."""


def ntp_to_unix_ns(ntp_time: int) -> int:
    """Convert a 64-bit NTP timestamp to nanoseconds since the Unix epoch."""
    _check_unsigned("ntp_time", ntp_time, 64)
    seconds = ntp_time >> 32
    fraction = ntp_time & 0xFFFFFFFF
    nanos = (fraction * _NANOS_PER_SECOND) >> 32
    return (seconds - NTP_EPOCH_OFFSET) * _NANOS_PER_SECOND + nanos