"""Jitter buffer that reorders RTP packets and releases complete samples."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from rtpkit.media import Depacketizer, RtpPacket

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_NANOS_PER_SECOND = 1_000_000_000
_RESET_RANGE = 3000


def _before16(a: int, b: int) -> bool:
    return ((b - a) & _MASK16) & 0x8000 == 0


def _before32(a: int, b: int) -> bool:
    return ((b - a) & _MASK32) & 0x80000000 == 0


def _outside_range(a: int, b: int) -> bool:
    return (a - b) & _MASK16 > _RESET_RANGE and (b - a) & _MASK16 > _RESET_RANGE


def _late_ticks(max_latency: int, clock_rate: int) -> int:
    return int(max_latency / _NANOS_PER_SECOND * clock_rate) & _MASK32


@dataclass(eq=False)
class _Node:
    packet: RtpPacket
    start: bool
    end: bool
    padding: bool
    reset: bool = False
    prev: Optional["_Node"] = None
    next: Optional["_Node"] = None

    @property
    def sn(self) -> int:
        return self.packet.sequence_number

    @property
    def ts(self) -> int:
        return self.packet.timestamp


class JitterBuffer:
    """Buffers RTP packets, reorders them and releases complete samples.

    ``max_latency`` is in nanoseconds: how long a sample may wait for
    missing packets before it is dropped.
    """

    def __init__(
        self,
        depacketizer: Depacketizer,
        clock_rate: int,
        max_latency: int,
        on_packet_dropped: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._depacketizer = depacketizer
        self._clock_rate = clock_rate
        self._max_late = _late_ticks(max_latency, clock_rate)
        self._on_packet_dropped = on_packet_dropped
        self._logger = logger or logging.getLogger(__name__)
        self._packets_dropped = 0
        self._packets_total = 0

        self._lock = threading.Lock()
        self._initialized = False
        self._prev_sn = 0
        self._head: _Node | None = None
        self._tail: _Node | None = None
        self._max_sample_size = 0
        self._min_ts = 0

    def update_max_latency(self, max_latency: int) -> None:
        """Change the maximum latency (nanoseconds)."""
        with self._lock:
            max_late = _late_ticks(max_latency, self._clock_rate)
            self._min_ts = (self._min_ts + self._max_late - max_late) & _MASK32
            self._max_late = max_late

    def _notify_dropped(self) -> None:
        if self._on_packet_dropped is not None:
            self._on_packet_dropped()

    def push(self, pkt: RtpPacket) -> None:
        """Add a packet to the buffer."""
        with self._lock:
            self._push(pkt)

    def _push(self, pkt: RtpPacket) -> None:
        self._packets_total += 1
        if not pkt.payload:
            # padding at the beginning of the stream is dropped
            if not self._initialized:
                return
            start = end = padding = True
        else:
            start = self._depacketizer.is_partition_head(pkt.payload)
            end = self._depacketizer.is_partition_tail(pkt.marker, pkt.payload)
            padding = False

        p = _Node(packet=pkt, start=start, end=end, padding=padding)
        sn = pkt.sequence_number
        ts = pkt.timestamp

        before_prev = _before16(sn, self._prev_sn)
        outside_prev_range = _outside_range(sn, self._prev_sn)

        if not self._initialized:
            if p.start and (self._head is None or _before16(sn, self._head.sn)):
                # initialize on the first start packet
                self._initialized = True
                self._prev_sn = (sn - 1) & _MASK16
                self._min_ts = (ts - self._max_late) & _MASK32
                p.reset = True
        elif before_prev and not outside_prev_range:
            # too late: an earlier packet was already released
            if not p.padding:
                self._packets_dropped += 1
                self._logger.debug("late packet dropped, sequence number %d", sn)
                self._notify_dropped()
            return

        if self._tail is None:
            if not p.reset:
                p.reset = p.start and outside_prev_range
            self._min_ts = (ts - self._max_late) & _MASK32
            self._head = p
            self._tail = p
            return

        head, tail = self._head, self._tail
        before_head = _before16(sn, head.sn)
        before_tail = _before16(sn, tail.sn)
        outside_head_range = _outside_range(sn, head.sn)
        outside_tail_range = _outside_range(sn, tail.sn)

        if not before_tail and not outside_tail_range:
            # append within range
            self._min_ts = (self._min_ts + ts - tail.ts) & _MASK32
            if sn == (tail.sn + 1) & _MASK16:
                self._grow_sample_size((ts - tail.ts) & _MASK32)
            self._append(p)
        elif outside_head_range and outside_tail_range:
            # append after a sequence number reset
            p.reset = p.start
            self._min_ts = (self._min_ts + self._max_sample_size) & _MASK32
            self._append(p)
        elif before_head and not outside_head_range:
            # prepend within range
            p.reset = p.start and outside_prev_range
            head.prev = p
            p.next = head
            self._head = p
        elif outside_tail_range:
            # insert within head range
            c = tail.prev
            while c is not None:
                if _before16(sn, c.sn) or _outside_range(sn, c.sn):
                    c = c.prev
                    continue
                if sn == (c.sn + 1) & _MASK16:
                    self._grow_sample_size((ts - c.ts) & _MASK32)
                self._insert_after(c, p)
                break
        else:
            # insert within tail range
            c = tail.prev
            while c is not None:
                outside_c_range = _outside_range(sn, c.sn)
                if _before16(sn, c.sn) and not outside_c_range:
                    c = c.prev
                    continue
                if p.start and outside_c_range:
                    p.reset = True
                elif sn == (c.sn + 1) & _MASK16:
                    self._grow_sample_size((ts - c.ts) & _MASK32)
                self._insert_after(c, p)
                break

    def _grow_sample_size(self, size: int) -> None:
        if size > self._max_sample_size:
            self._max_sample_size = size

    def _append(self, p: _Node) -> None:
        p.prev = self._tail
        self._tail.next = p
        self._tail = p

    @staticmethod
    def _insert_after(c: _Node, p: _Node) -> None:
        c.next.prev = p
        p.next = c.next
        p.prev = c
        c.next = p

    def pop(self, force: bool = False) -> list[RtpPacket]:
        """Return the packets of the next complete samples.

        With ``force`` every buffered packet is returned and the buffer emptied.
        """
        with self._lock:
            if force:
                return self._force_pop()
            return [pkt for sample in self._pop_samples() for pkt in sample]

    def pop_samples(self, force: bool = False) -> list[list[RtpPacket]]:
        """Return the next complete samples, each as a list of packets.

        With ``force`` the buffer is emptied and complete samples returned.
        """
        with self._lock:
            if force:
                return self._force_pop_samples()
            return self._pop_samples()

    def packet_loss(self) -> float:
        """Fraction of pushed packets that were dropped (NaN before any push)."""
        with self._lock:
            if self._packets_total == 0:
                return math.nan
            return self._packets_dropped / self._packets_total

    def _nodes(self):
        c = self._head
        while c is not None:
            nxt = c.next
            yield c
            c = nxt

    def _force_pop(self) -> list[RtpPacket]:
        packets = [node.packet for node in self._nodes()]
        self._head = None
        self._tail = None
        return packets

    def _force_pop_samples(self) -> list[list[RtpPacket]]:
        samples: list[list[RtpPacket]] = []
        sample: list[RtpPacket] = []
        for node in self._nodes():
            if node.start and sample:
                samples.append(sample)
                sample = []
            sample.append(node.packet)
            if node.end:
                samples.append(sample)
                sample = []
        self._head = None
        self._tail = None
        return samples

    def _pop_samples(self) -> list[list[RtpPacket]]:
        if not self._initialized:
            return []

        self._drop()
        if self._head is None or not self._head.start:
            return []

        end = self._get_end()
        if end is None:
            return []

        samples: list[list[RtpPacket]] = []
        sample: list[RtpPacket] = []
        c = self._head
        while True:
            nxt = c.next
            if not c.padding:
                sample.append(c.packet)
            if nxt is not None:
                if _outside_range(nxt.sn, c.sn):
                    # account for the sequence number reset
                    self._min_ts = (
                        self._min_ts + nxt.ts - c.ts - self._max_sample_size
                    ) & _MASK32
                nxt.prev = None
            if c.end:
                samples.append(sample)
                sample = []
            if c is end:
                self._prev_sn = c.sn
                self._head = nxt
                if nxt is None:
                    self._tail = None
                return samples
            c = nxt

    def _get_end(self) -> _Node | None:
        prev_sn = self._prev_sn
        prev_complete = True
        end = None
        for c in self._nodes():
            # sequence number must be next, or a reset about to time out
            if c.sn != (prev_sn + 1) & _MASK16 and (
                not prev_complete
                or not c.reset
                or not _before32((c.ts - self._max_sample_size) & _MASK32, self._min_ts)
            ):
                break
            prev_complete = False
            if c.end:
                end = c
                prev_complete = True
            prev_sn = c.sn
        return end

    def _drop(self) -> None:
        head = self._head
        if head is None:
            return

        dropped = False
        mss = self._max_sample_size

        if head.sn != (self._prev_sn + 1) & _MASK16 and (
            (head.start and _before32((head.ts - mss) & _MASK32, self._min_ts))
            or (not head.start and _before32(head.ts, self._min_ts))
        ):
            # missing packets would now be too old even if they arrived;
            # on a sequence number reset it is unknown whether any were lost
            if not head.reset:
                self._packets_dropped += 1
                dropped = True

            while (
                self._head is not None
                and not self._head.start
                and _before32((self._head.ts - mss) & _MASK32, self._min_ts)
            ):
                dropped = True
                self._packets_dropped += 1
                self._prev_sn = (self._head.sn - 1) & _MASK16
                self._drop_head()

            if self._head is not None:
                self._prev_sn = (self._head.sn - 1) & _MASK16

        c = self._head
        while c is not None:
            if (c.start and _before32(self._min_ts, c.ts)) or (
                not c.start and not _before32(c.ts, self._min_ts)
            ):
                break

            # drop every packet of this sample
            dropped = True
            ts = c.ts
            while True:
                self._packets_dropped += 1
                self._drop_head()
                c = self._head
                if c is None or c.ts != ts:
                    break

        if dropped:
            self._logger.debug("packets dropped from jitter buffer")
            self._notify_dropped()

    def _drop_head(self) -> None:
        c = self._head
        self._prev_sn = c.sn
        self._head = c.next
        if self._head is None:
            self._tail = None
        else:
            self._head.prev = None
            if _outside_range(self._head.sn, c.sn):
                self._min_ts = (
                    self._min_ts + self._head.ts - c.ts - self._max_sample_size
                ) & _MASK32