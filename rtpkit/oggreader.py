"""Reader for Ogg/Opus streams returning one Opus packet at a time."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator

_BEGINNING_OF_STREAM = 0x02
_PAGE_SIGNATURE = b"OggS"
_ID_PAGE_SIGNATURE = b"OpusHead"
_PAGE_HEADER = struct.Struct("<4sBBQIIIB")
_ID_PAGE = struct.Struct("<8sBBHIHB")
_CHECKSUM_START = 22
_CHECKSUM_END = 26

_MAX_FRAME_DURATION = 120_000_000
_FRAME_DURATIONS = (
    # SILK-only
    10_000_000, 20_000_000, 40_000_000, 60_000_000,
    10_000_000, 20_000_000, 40_000_000, 60_000_000,
    10_000_000, 20_000_000, 40_000_000, 60_000_000,
    # Hybrid
    10_000_000, 20_000_000,
    10_000_000, 20_000_000,
    # CELT-only
    2_500_000, 5_000_000, 10_000_000, 20_000_000,
    2_500_000, 5_000_000, 10_000_000, 20_000_000,
    2_500_000, 5_000_000, 10_000_000, 20_000_000,
    2_500_000, 5_000_000, 10_000_000, 20_000_000,
)


class OggError(Exception):
    """Raised when an Ogg stream is malformed."""


class InvalidPacketError(ValueError):
    """Raised when an Opus packet cannot be parsed."""

    def __init__(self, message: str = "invalid opus packet") -> None:
        super().__init__(message)


def _generate_checksum_table() -> tuple[int, ...]:
    poly = 0x04C11DB7
    table = []
    for i in range(256):
        r = i << 24
        for _ in range(8):
            r = (r << 1) ^ poly if r & 0x80000000 else r << 1
            r &= 0xFFFFFFFF
        table.append(r)
    return tuple(table)


_CHECKSUM_TABLE = _generate_checksum_table()


def _ogg_crc(data: bytes) -> int:
    crc = 0
    for byte in data:
        crc = ((crc << 8) & 0xFFFFFFFF) ^ _CHECKSUM_TABLE[((crc >> 24) ^ byte) & 0xFF]
    return crc


@dataclass(frozen=True)
class OggHeader:
    """Metadata from the Opus identification page."""

    channel_map: int
    channels: int
    output_gain: int
    pre_skip: int
    sample_rate: int
    version: int


@dataclass
class OggPage:
    """One page of an Ogg stream."""

    granule_position: int
    signature: bytes
    version: int
    header_type: int
    serial: int
    index: int
    segments_table: bytes = b""
    payload: bytes = field(default=b"", repr=False)


class OggReader:
    """Reads Opus packets from an Ogg stream, splitting pages into packets."""

    def __init__(self, stream: BinaryIO, do_checksum: bool = True) -> None:
        if stream is None:
            raise OggError("stream is nil")
        self._stream = stream
        self._do_checksum = do_checksum
        self._page: OggPage | None = None
        self._segment = 0
        self._offset = 0
        self.header = self._read_headers()
        # the comment page carries nothing the reader needs
        try:
            self._read_page()
        except (OggError, EOFError):
            pass

    def _read_exact(self, size: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < size:
            chunk = self._stream.read(size - len(buffer))
            if not chunk:
                break
            buffer += chunk
        if size and not buffer:
            raise EOFError("end of ogg stream")
        if len(buffer) < size:
            raise OggError("unexpected end of ogg stream")
        return bytes(buffer)

    def _read_headers(self) -> OggHeader:
        page = self._read_page()
        if page.signature != _PAGE_SIGNATURE:
            raise OggError("bad header signature")
        if page.header_type != _BEGINNING_OF_STREAM:
            raise OggError("wrong header, expected beginning of stream")
        if len(page.payload) != _ID_PAGE.size:
            raise OggError(f"payload for id page must be {_ID_PAGE.size} bytes")
        signature, version, channels, pre_skip, sample_rate, output_gain, channel_map = (
            _ID_PAGE.unpack(page.payload)
        )
        if signature != _ID_PAGE_SIGNATURE:
            raise OggError("bad payload signature")
        return OggHeader(
            channel_map=channel_map,
            channels=channels,
            output_gain=output_gain,
            pre_skip=pre_skip,
            sample_rate=sample_rate,
            version=version,
        )

    def _read_page(self) -> OggPage:
        raw_header = self._read_exact(_PAGE_HEADER.size)
        signature, version, header_type, granule, serial, index, checksum, count = (
            _PAGE_HEADER.unpack(raw_header)
        )
        segments_table = self._read_exact(count)
        payload = self._read_exact(sum(segments_table))

        if self._do_checksum:
            covered = (
                raw_header[:_CHECKSUM_START]
                + bytes(_CHECKSUM_END - _CHECKSUM_START)
                + raw_header[_CHECKSUM_END:]
                + segments_table
                + payload
            )
            if _ogg_crc(covered) != checksum:
                raise OggError("expected and actual checksum do not match")

        return OggPage(
            granule_position=granule,
            signature=signature,
            version=version,
            header_type=header_type,
            serial=serial,
            index=index,
            segments_table=segments_table,
            payload=payload,
        )

    def read_packet(self) -> bytes:
        """Return the next Opus packet; raise EOFError at the end of the stream."""
        page = self._page
        if page is None:
            page = self._read_page()
            self._page = page
            self._offset = 0
            self._segment = 0

        if not page.segments_table:
            self._page = None
            raise OggError("page has no segments")

        size = 0
        while True:
            segment_size = page.segments_table[self._segment]
            size += segment_size
            self._segment += 1
            if self._segment == len(page.segments_table):
                self._page = None
                break
            if segment_size != 255:
                break

        packet = page.payload[self._offset:self._offset + size]
        self._offset += size
        return packet

    def __iter__(self) -> Iterator[bytes]:
        while True:
            try:
                yield self.read_packet()
            except EOFError:
                return


def parse_packet_duration(data: bytes) -> int:
    """Return the duration in nanoseconds of an Opus packet (RFC 6716, 3.1)."""
    if len(data) < 1:
        raise InvalidPacketError()
    toc = data[0]
    code = toc & 3
    if code == 0:
        frames = 1
    elif code in (1, 2):
        frames = 2
    else:
        if len(data) < 2:
            raise InvalidPacketError()
        frames = data[1] & 63

    duration = frames * _FRAME_DURATIONS[toc >> 3]
    if duration > _MAX_FRAME_DURATION:
        raise InvalidPacketError()
    return duration