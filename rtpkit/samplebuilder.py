"""Builds media samples from RTP packets, reordering them as they arrive.

The builder keeps a circular array of buffered packets. ``head == tail``
means the builder is empty, so one slot is always free.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from rtpkit.media import Depacketizer, RtpPacket, Sample

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_NANOS_PER_SECOND = 1_000_000_000


@dataclass(eq=False)
class _Entry:
    start: bool
    end: bool
    packet: RtpPacket


class SampleBuilder:
    """Buffers RTP packets and produces complete media frames.

    ``max_late`` is the longest delay, in sequence numbers, the builder waits
    before dropping a frame. The buffer holds twice as many packets to allow
    for delays between pushing and popping.
    """

    def __init__(
        self,
        max_late: int,
        depacketizer: Depacketizer,
        sample_rate: int,
        packet_release_handler: Callable[[RtpPacket], None] | None = None,
        packet_dropped_handler: Callable[[], None] | None = None,
    ) -> None:
        max_late = min(max(max_late, 2), 0x7FFF)
        self._packets: list[_Entry | None] = [None] * (2 * max_late + 1)
        self._head = 0
        self._tail = 0
        self._max_late = max_late
        self._depacketizer = depacketizer
        self._sample_rate = sample_rate
        self._release_handler = packet_release_handler
        self._dropped_handler = packet_dropped_handler

        # sequence number of the last popped or dropped packet
        self._last_seqno_valid = False
        self._last_seqno = 0
        # timestamp of the last popped sample
        self._last_timestamp_valid = False
        self._last_timestamp = 0

    # -- circular buffer helpers -------------------------------------------

    def _length(self) -> int:
        if self._tail <= self._head:
            return self._head - self._tail
        return self._head + len(self._packets) - self._tail

    def _cap(self) -> int:
        return len(self._packets) - 1

    def _inc(self, n: int) -> int:
        return n + 1 if n < len(self._packets) - 1 else 0

    def _dec(self, n: int) -> int:
        return n - 1 if n > 0 else len(self._packets) - 1

    def _is_start(self, p: RtpPacket) -> bool:
        return not p.payload or self._depacketizer.is_partition_head(p.payload)

    def _is_end(self, p: RtpPacket) -> bool:
        return not p.payload or self._depacketizer.is_partition_tail(p.marker, p.payload)

    def check(self) -> None:
        """Verify the builder's internal invariants; raise RuntimeError if broken."""
        if self._head == self._tail:
            return
        packets = self._packets
        tail_entry = packets[self._tail]
        if tail_entry is None:
            raise RuntimeError("tail is missing")
        last_index = self._dec(self._head)
        if packets[last_index] is None:
            raise RuntimeError("head is missing")
        if self._last_seqno_valid:
            diff = (tail_entry.packet.sequence_number - self._last_seqno) & _MASK16
            if diff == 0 or diff & 0x8000:
                raise RuntimeError("lastSeqno is after tail")

        tail_seqno = tail_entry.packet.sequence_number
        n = len(packets)
        for i in range(self._length()):
            index = (self._tail + i) % n
            entry = packets[index]
            if entry is None:
                continue
            if entry.packet.sequence_number != (tail_seqno + i) & _MASK16:
                raise RuntimeError("wrong seqno")
            ts = entry.packet.timestamp
            if index != self._tail and not entry.start:
                prev = packets[self._dec(index)]
                if prev is not None and prev.packet.timestamp != ts:
                    raise RuntimeError("start is not set")
            if index != last_index and not entry.end:
                nxt = packets[self._inc(index)]
                if nxt is not None and nxt.packet.timestamp != ts:
                    raise RuntimeError("end is not set")

        i = self._head
        while i != self._tail:
            if packets[i] is not None:
                raise RuntimeError("packet is set")
            i = self._inc(i)

    # -- releasing and dropping --------------------------------------------

    def _release(self, release_packet: bool) -> bool:
        if self._head == self._tail:
            return False
        entry = self._packets[self._tail]
        self._last_seqno_valid = True
        self._last_seqno = entry.packet.sequence_number
        if release_packet and self._release_handler is not None:
            self._release_handler(entry.packet)
        self._packets[self._tail] = None
        self._tail = self._inc(self._tail)
        while self._tail != self._head and self._packets[self._tail] is None:
            self._tail = self._inc(self._tail)
        if self._tail == self._head:
            self._head = 0
            self._tail = 0
        return True

    def _release_all(self) -> None:
        while self._tail != self._head:
            self._release(True)

    def _drop(self) -> tuple[bool, int]:
        """Drop the oldest frame, even if incomplete."""
        if self._tail == self._head:
            return False, 0
        if self._dropped_handler is not None:
            self._dropped_handler()
        ts = self._packets[self._tail].packet.timestamp
        self._release(True)
        while self._tail != self._head:
            entry = self._packets[self._tail]
            if entry.start or entry.packet.timestamp != ts:
                break
            self._release(True)
        if not self._last_timestamp_valid:
            self._last_timestamp = ts
            self._last_timestamp_valid = True
        return True, ts

    # -- pushing -----------------------------------------------------------

    def push(self, packet: RtpPacket) -> None:
        """Add a packet to the buffer; the packet is retained, not copied."""
        seqno = packet.sequence_number
        if self._last_seqno_valid:
            behind = (self._last_seqno - seqno) & _MASK16
            if behind & 0x8000 == 0:
                # late packet
                if behind > self._max_late:
                    self._last_seqno_valid = False
                else:
                    return
            else:
                last = (seqno - self._max_late) & _MASK16
                if (last - self._last_seqno) & _MASK16 & 0x8000 == 0:
                    if self._head != self._tail:
                        tail_seqno = (
                            self._packets[self._tail].packet.sequence_number - 1
                        ) & _MASK16
                        if (last - tail_seqno) & _MASK16 & 0x8000 == 0:
                            last = tail_seqno
                    self._last_seqno = last

        packets = self._packets
        if self._head == self._tail:
            packets[0] = _Entry(self._is_start(packet), self._is_end(packet), packet)
            self._tail = 0
            self._head = 1
            return

        ts = packet.timestamp
        last = self._dec(self._head)
        last_seqno = packets[last].packet.sequence_number

        if seqno == (last_seqno + 1) & _MASK16:
            # sequential
            if self._tail == self._inc(self._head):
                # buffer is full
                self._drop()
            if self._tail != self._head:
                prev = packets[last]
                start = prev.end or prev.packet.timestamp != ts or self._is_start(packet)
                if start:
                    prev.end = True
            else:
                # the drop emptied the buffer
                start = self._is_start(packet)
            packets[self._head] = _Entry(start, self._is_end(packet), packet)
            self._head = self._inc(self._head)
            return

        if (seqno - last_seqno) & _MASK16 & 0x8000 == 0:
            # packet in the future
            count = (seqno - last_seqno - 1) & _MASK16
            if count >= self._cap():
                self._release_all()
                self.push(packet)
                return
            while (self._length() + count + 1) & _MASK16 >= self._cap():
                dropped, _ = self._drop()
                if not dropped:
                    return
            index = ((self._head + count) & _MASK16) % len(packets)
            packets[index] = _Entry(self._is_start(packet), self._is_end(packet), packet)
            self._head = self._inc(index)
            return

        # packet in the past
        count = (last_seqno - seqno + 1) & _MASK16
        if count >= self._cap():
            return
        if self._head >= count:
            index = self._head - count
        else:
            index = self._head + len(packets) - count

        if self._tail < self._head:
            # contiguous
            if index < self._tail or index > self._head:
                self._tail = index
        elif self._tail > index > self._head:
            self._tail = index

        if packets[index] is not None:
            # duplicate
            if self._release_handler is not None:
                self._release_handler(packet)
            return

        start = self._is_start(packet)
        if index != self._tail:
            prev = packets[self._dec(index)]
            if prev is not None:
                if prev.packet.timestamp != ts:
                    start = True
                if not start:
                    start = prev.end
                else:
                    prev.end = True
        end = self._is_end(packet)
        nxt = packets[self._inc(index)]
        if nxt is not None:
            if nxt.packet.timestamp != ts:
                end = True
            if not end:
                end = nxt.start
            else:
                nxt.start = True

        packets[index] = _Entry(start, end, packet)

    # -- popping -----------------------------------------------------------

    def _pop_rtp_packets(self, force: bool) -> tuple[list[RtpPacket] | None, int]:
        packets = self._packets
        while True:
            if self._tail == self._head:
                return None, 0

            tail_entry = packets[self._tail]
            if not tail_entry.start:
                diff = (
                    packets[self._dec(self._head)].packet.sequence_number
                    - tail_entry.packet.sequence_number
                ) & _MASK16
                if force or diff > self._max_late:
                    self._drop()
                    continue
                return None, 0

            seqno = tail_entry.packet.sequence_number
            if (
                not force
                and self._last_seqno_valid
                and (self._last_seqno + 1) & _MASK16 != seqno
            ):
                # packet loss before tail
                return None, 0

            ts = tail_entry.packet.timestamp
            last = self._tail
            missing = False
            while last != self._head:
                entry = packets[last]
                if entry is None:
                    missing = True
                    break
                if entry.end:
                    break
                last = self._inc(last)
            if missing:
                if force:
                    self._drop()
                    continue
                return None, 0

            if last == self._head:
                return None, 0

            if last < self._tail:
                count = len(packets) + last - self._tail + 1
            else:
                count = last - self._tail + 1
            result = []
            for _ in range(count):
                result.append(packets[self._tail].packet)
                self._release(False)
            return result, ts

    def _pop_sample(self, force: bool) -> tuple[Sample | None, int]:
        packets, ts = self._pop_rtp_packets(force)
        if packets is None:
            return None, 0

        data = bytearray()
        failed = False
        for p in packets:
            if not failed:
                try:
                    data += self._depacketizer.unmarshal(p.payload)
                except Exception:
                    failed = True
            if self._release_handler is not None:
                self._release_handler(p)
        if failed:
            return None, 0

        samples = (ts - self._last_timestamp) & _MASK32 if self._last_timestamp_valid else 0
        self._last_timestamp_valid = True
        self._last_timestamp = ts
        duration = int(samples / self._sample_rate * _NANOS_PER_SECOND)
        return Sample(data=bytes(data), duration=duration), ts

    def pop_with_timestamp(self) -> tuple[Sample | None, int]:
        """Return a complete sample and its RTP timestamp, or (None, 0)."""
        return self._pop_sample(False)

    def pop(self) -> Sample | None:
        """Return a complete sample, or None if none is ready yet."""
        sample, _ = self.pop_with_timestamp()
        return sample

    def force_pop_with_timestamp(self) -> tuple[Sample | None, int]:
        """Like pop_with_timestamp, but skip past missing packets."""
        return self._pop_sample(True)

    def pop_packets(self) -> list[RtpPacket]:
        """Return the packets of the next complete frame, or an empty list.

        The release handler is not called for these packets.
        """
        packets, _ = self._pop_rtp_packets(False)
        return packets or []

    def force_pop_packets(self) -> list[RtpPacket]:
        """Like pop_packets, but drop incomplete frames in the way."""
        packets, _ = self._pop_rtp_packets(True)
        return packets or []