"""Presentation timestamps for one RTP track, kept in step with its peers."""

from __future__ import annotations

import dataclasses
import enum
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from rtpkit.media import RtpPacket, SenderReport, ntp_to_unix_ns

if TYPE_CHECKING:
    from rtpkit.synchronizer import Synchronizer

_log = logging.getLogger(__name__)

_EWMA_WEIGHT = 0.9
MAX_DRIFT = 15_000_000
"""Largest correction, in nanoseconds, applied for one sender report."""
MAX_TS_DIFF = 60_000_000_000
"""How far, in nanoseconds, a PTS may run ahead of wall time before a reset."""
MAX_SN_DROPOUT = 3000
"""Largest sequence number skip that is not treated as a stream reset."""

_UINT32_HALF = 1 << 31
_UINT32_OVERFLOW = 1 << 32
_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_MASK64 = (1 << 64) - 1


class TrackKind(enum.Enum):
    """Media kind of a track."""

    AUDIO = "audio"
    VIDEO = "video"


class TrackRemote(Protocol):
    """The properties of a remote track the synchronizer relies on."""

    @property
    def id(self) -> str: ...

    @property
    def kind(self) -> TrackKind: ...

    @property
    def ssrc(self) -> int: ...

    @property
    def clock_rate(self) -> int: ...


class BackwardsPTSError(Exception):
    """Raised when a packet would move the presentation timestamp backwards."""

    def __init__(self) -> None:
        super().__init__("backwards pts")


class EndOfStream(EOFError):
    """Raised for packets past the end of a drained stream."""


def _round(value: float) -> float:
    """Round half away from zero."""
    return math.copysign(math.floor(abs(value) + 0.5), value)


@dataclass(frozen=True)
class _RtpConverter:
    n: int
    d: int

    @classmethod
    def for_clock_rate(cls, clock_rate: int) -> "_RtpConverter":
        n = 1_000_000_000
        d = clock_rate
        for i in (10, 3, 2):
            while n % i == 0 and d % i == 0:
                n //= i
                d //= i
        return cls(n, d)

    def to_duration(self, rtp_duration: int) -> int:
        # unsigned 64-bit arithmetic, reinterpreted as a signed duration
        value = (((rtp_duration & _MASK64) * self.n) & _MASK64) // self.d
        if value >= 1 << 63:
            value -= 1 << 64
        return value


@dataclass
class TrackStats:
    """Running statistics for a track; durations are in nanoseconds."""

    avg_sample_duration: float = 0.0
    avg_drift: float = 0.0
    max_drift: int = 0

    def _update_drift(self, drift: int) -> None:
        drift = abs(drift)
        self.avg_drift = _EWMA_WEIGHT * self.avg_drift + (1 - _EWMA_WEIGHT) * drift
        if drift > self.max_drift:
            self.max_drift = drift

    def _update_sample_duration(self, duration: int) -> None:
        if duration > 1:
            self.avg_sample_duration = (
                _EWMA_WEIGHT * self.avg_sample_duration + (1 - _EWMA_WEIGHT) * duration
            )


class TrackSynchronizer:
    """Turns RTP timestamps of one track into presentation timestamps (ns)."""

    def __init__(self, synchronizer: "Synchronizer", track: TrackRemote) -> None:
        self._lock = threading.Lock()
        self._sync: Synchronizer | None = synchronizer
        self.track = track
        self.stats = TrackStats()
        self._converter = _RtpConverter.for_clock_rate(track.clock_rate)

        self._last_sr = 0

        self._started_at = 0
        self._first_ts = 0
        self._max_pts = 0

        self._backwards = 0
        self._last_packet: int | None = None
        self._last_sn = 0
        self._last_ts = 0
        self._last_pts = 0
        self._last_valid = False
        self._inserted = 0

        self._sn_offset = 0
        self._pts_offset = 0

        if track.kind == TrackKind.AUDIO:
            # opus packets default to 20ms
            self.stats.avg_sample_duration = track.clock_rate / 50
        else:
            # 30 fps for video
            self.stats.avg_sample_duration = track.clock_rate / 30

    def initialize(self, pkt: RtpPacket) -> None:
        """Start timing from the first received packet."""
        if self._sync is None:
            raise RuntimeError("track was removed from its synchronizer")
        now = time.time_ns()
        started_at = self._sync._get_or_set_started_at(now)
        with self._lock:
            self._started_at = started_at
            self._first_ts = pkt.timestamp
            self._pts_offset = now - started_at

    def get_pts(self, pkt: RtpPacket) -> int:
        """Return the packet's PTS, resetting offsets where the stream jumped.

        Packets are expected in order. Raises BackwardsPTSError or EndOfStream.
        """
        with self._lock:
            ts, pts, valid = self._adjust(pkt)
            if pts < self._last_pts:
                if self._backwards == 0:
                    _log.warning(
                        "backwards pts: timestamp %d, sequence number %d, pts %d, "
                        "last pts %d, last timestamp %d, last sn %d",
                        pkt.timestamp, pkt.sequence_number, pts,
                        self._last_pts, self._last_ts, self._last_sn,
                    )
                self._backwards += 1
                raise BackwardsPTSError()
            if self._backwards > 0:
                _log.debug("%d packets dropped: backwards pts", self._backwards)
                self._backwards = 0

            # a new frame between two valid packets updates the frame duration
            if (
                valid
                and self._last_valid
                and pkt.sequence_number == (self._last_sn + 1) & _MASK16
            ):
                self.stats._update_sample_duration(ts - self._last_ts)

            if self._max_pts > 0 and (pts > self._max_pts or not valid):
                raise EndOfStream("end of stream")

            self._last_packet = time.time_ns()
            self._last_ts = ts
            self._last_sn = pkt.sequence_number
            self._last_pts = pts
            self._last_valid = valid
            self._inserted = 0
            return pts

    def _adjust(self, pkt: RtpPacket) -> tuple[int, int, bool]:
        if self._last_packet is None:
            ts = pkt.timestamp
            while ts < self._first_ts - _UINT32_HALF:
                ts += _UINT32_OVERFLOW
            return ts, self._elapsed(ts) + self._pts_offset, True

        pkt.sequence_number = (pkt.sequence_number + self._sn_offset) & _MASK16
        sn = pkt.sequence_number
        if (
            self._last_ts != 0
            and (sn - self._last_sn) & _MASK16 > MAX_SN_DROPOUT
            and (self._last_sn - sn) & _MASK16 > MAX_SN_DROPOUT
        ):
            self._sn_offset = (self._sn_offset + self._last_sn + 1 - sn) & _MASK16
            pkt.sequence_number = (self._last_sn + 1) & _MASK16
            _log.debug(
                "resetting track synchronizer: SN gap, last SN %d, SN %d",
                self._last_sn, pkt.sequence_number,
            )
            ts, pts = self._reset_rtp(pkt)
            return ts, pts, False

        ts = pkt.timestamp
        while ts < self._last_ts - _UINT32_HALF:
            ts += _UINT32_OVERFLOW

        if ts == self._last_ts:
            return ts, self._last_pts, self._last_valid

        pts = self._elapsed(ts) + self._pts_offset
        expected = time.time_ns() - (self._started_at + self._pts_offset)
        if pts > expected + MAX_TS_DIFF:
            _log.debug(
                "resetting track synchronizer: pts out of bounds, pts %d, expected %d",
                pts, expected,
            )
            ts, pts = self._reset_rtp(pkt)
            return ts, pts, False

        return ts, pts, True

    def _elapsed(self, ts: int) -> int:
        return self._converter.to_duration(ts - self._first_ts)

    def _reset_rtp(self, pkt: RtpPacket) -> tuple[int, int]:
        frames = (time.time_ns() - self._last_packet) // self._frame_duration()
        duration = self._frame_duration_rtp() * frames
        ts = self._last_ts + duration
        pts = self._last_pts + self._converter.to_duration(duration)
        self._first_ts += pkt.timestamp - ts
        return ts, pts

    def insert_frame(self, pkt: RtpPacket) -> int:
        """Fill in ``pkt`` as an injected frame and return its PTS."""
        with self._lock:
            return self._insert_frame_before(pkt, None)

    def insert_frame_before(self, pkt: RtpPacket, next_pkt: RtpPacket | None) -> int | None:
        """Insert a frame only if it fits a whole frame duration before ``next_pkt``.

        Returns the inserted frame's PTS, or None if it does not fit.
        """
        with self._lock:
            return self._insert_frame_before(pkt, next_pkt)

    def _insert_frame_before(self, pkt: RtpPacket, next_pkt: RtpPacket | None) -> int | None:
        self._inserted += 1
        self._sn_offset = (self._sn_offset + 1) & _MASK16
        self._last_valid = False

        frame_rtp = self._frame_duration_rtp()
        ts = self._last_ts + self._inserted * frame_rtp
        if next_pkt is not None:
            next_ts, _, _ = self._adjust(next_pkt)
            if ts + frame_rtp > next_ts:
                return None

        pkt.sequence_number = (self._last_sn + self._inserted) & _MASK16
        pkt.timestamp = ts & _MASK32
        return self._last_pts + self._converter.to_duration(frame_rtp * self._inserted)

    def get_frame_duration(self) -> int:
        """Return the rounded frame duration in nanoseconds."""
        with self._lock:
            return self._frame_duration()

    def _frame_duration(self) -> int:
        clock_rate = self.track.clock_rate
        if self.track.kind == TrackKind.AUDIO:
            # round opus packets to 2.5ms
            step = clock_rate / 400
            return int(_round(self.stats.avg_sample_duration / step)) * 2_500_000
        # round video to 1/3000th of a second
        step = clock_rate / 3000
        return int(_round(_round(self.stats.avg_sample_duration / step) * 1e6 / 3))

    def _frame_duration_rtp(self) -> int:
        clock_rate = self.track.clock_rate
        if self.track.kind == TrackKind.AUDIO:
            step = clock_rate / 400
        else:
            step = clock_rate / 3000
        return int(_round(self.stats.avg_sample_duration / step) * step)

    def get_track_stats(self) -> TrackStats:
        """Return a copy of the track statistics."""
        return dataclasses.replace(self.stats)

    # -- used by the synchronizer ------------------------------------------

    def _detach(self) -> None:
        self._sync = None

    def _get_pts_offset(self) -> int:
        with self._lock:
            return self._pts_offset

    def _shift_pts_offset(self, diff: int) -> None:
        with self._lock:
            self._pts_offset += diff

    def _set_max_pts(self, max_pts: int) -> None:
        with self._lock:
            self._max_pts = max_pts

    def _get_sender_report_pts(self, pkt: SenderReport) -> int:
        with self._lock:
            return self._sender_report_pts(pkt)

    def _sender_report_pts(self, pkt: SenderReport) -> int:
        ts = pkt.rtp_time
        while ts < self._last_ts - _UINT32_OVERFLOW // 2:
            ts += _UINT32_OVERFLOW
        return self._elapsed(ts) + self._pts_offset

    def _on_sender_report(self, pkt: SenderReport, ntp_start: int) -> None:
        with self._lock:
            # every sender report arrives twice
            if pkt.rtp_time == self._last_sr:
                return
            pts = self._sender_report_pts(pkt)
            calculated_start = ntp_to_unix_ns(pkt.ntp_time) - pts
            drift = calculated_start - ntp_start
            self.stats._update_drift(drift)
            drift = max(-MAX_DRIFT, min(MAX_DRIFT, drift))
            self._pts_offset += drift
            self._last_sr = pkt.rtp_time