"""Audio/video synchronisation across the tracks of several participants."""

from __future__ import annotations

import threading
import time
from typing import Callable

from rtpkit.media import SenderReport, ntp_to_unix_ns
from rtpkit.track import TrackRemote, TrackSynchronizer

_MASK32 = 0xFFFFFFFF


class _ParticipantSynchronizer:
    """Aligns the tracks of one participant using sender reports."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.ntp_start: int | None = None
        self.tracks: dict[int, TrackSynchronizer] = {}
        self.sender_reports: dict[int, SenderReport] = {}

    def on_sender_report(self, pkt: SenderReport) -> None:
        with self.lock:
            if self.ntp_start is None:
                self.sender_reports[pkt.ssrc] = pkt
                if len(self.sender_reports) == len(self.tracks):
                    self._synchronize_tracks()
                return
            track = self.tracks.get(pkt.ssrc)
            if track is not None:
                track._on_sender_report(pkt, self.ntp_start)

    def _synchronize_tracks(self) -> None:
        estimated: dict[int, int] = {}
        for ssrc, pkt in self.sender_reports.items():
            track = self.tracks.get(ssrc)
            if track is None:
                continue
            pts = track._get_sender_report_pts(pkt)
            estimated[ssrc] = ntp_to_unix_ns(pkt.ntp_time) - pts
        if not estimated:
            return

        # every track is synchronised to the earliest start
        earliest = min(estimated.values())
        self.ntp_start = earliest
        for ssrc, started_at in estimated.items():
            diff = started_at - earliest
            if diff:
                self.tracks[ssrc]._shift_pts_offset(diff)

    def max_offset(self) -> int:
        with self.lock:
            return max(
                (track._get_pts_offset() for track in self.tracks.values()), default=0
            )

    def drain(self, max_pts: int) -> None:
        with self.lock:
            for track in self.tracks.values():
                track._set_max_pts(max_pts)


class Synchronizer:
    """Shared by all audio and video writers to keep their timestamps aligned."""

    def __init__(self, on_started: Callable[[], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._started_at = 0
        self._ended_at = 0
        self._on_started = on_started
        self._by_identity: dict[str, _ParticipantSynchronizer] = {}
        self._by_ssrc: dict[int, _ParticipantSynchronizer] = {}
        self._ssrc_by_id: dict[str, int] = {}

    def add_track(self, track: TrackRemote, identity: str) -> TrackSynchronizer:
        """Register a track of participant ``identity`` and return its synchronizer."""
        synchronizer = TrackSynchronizer(self, track)
        ssrc = track.ssrc & _MASK32
        with self._lock:
            participant = self._by_identity.get(identity)
            if participant is None:
                participant = _ParticipantSynchronizer()
                self._by_identity[identity] = participant
            self._ssrc_by_id[track.id] = ssrc
            self._by_ssrc[ssrc] = participant
        with participant.lock:
            participant.tracks[ssrc] = synchronizer
        return synchronizer

    def remove_track(self, track_id: str) -> None:
        """Forget the track with the given id."""
        with self._lock:
            ssrc = self._ssrc_by_id.pop(track_id, 0)
            participant = self._by_ssrc.pop(ssrc, None)
        if participant is None:
            return
        with participant.lock:
            synchronizer = participant.tracks.pop(ssrc, None)
            if synchronizer is not None:
                synchronizer._detach()
            participant.sender_reports.pop(ssrc, None)

    def get_started_at(self) -> int:
        """Return the start time in Unix nanoseconds, or 0 before the first packet."""
        with self._lock:
            return self._started_at

    def _get_or_set_started_at(self, now: int) -> int:
        with self._lock:
            first = self._started_at == 0
            if first:
                self._started_at = now
            started_at = self._started_at
        if first and self._on_started is not None:
            self._on_started()
        return started_at

    def on_rtcp(self, packet: object) -> None:
        """Synchronise tracks using RTCP sender reports; other packets are ignored."""
        if not isinstance(packet, SenderReport):
            return
        with self._lock:
            participant = self._by_ssrc.get(packet.ssrc)
            ended_at = self._ended_at
        if ended_at != 0 or participant is None:
            return
        participant.on_sender_report(packet)

    def end(self) -> None:
        """Stop all tracks at the earliest time every one of them can end."""
        end_time = time.time_ns()
        with self._lock:
            max_offset = max(
                (p.max_offset() for p in self._by_identity.values()), default=0
            )
            max_offset = max(max_offset, 0)
            self._ended_at = end_time + max_offset
            max_pts = self._ended_at - self._started_at
            for participant in self._by_identity.values():
                participant.drain(max_pts)

    def get_ended_at(self) -> int:
        """Return the end time in Unix nanoseconds, or 0 before end() was called."""
        with self._lock:
            return self._ended_at