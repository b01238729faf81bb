from dataclasses import dataclass

import pytest

from rtpkit.media import RtpPacket
from rtpkit.synchronizer import Synchronizer
from rtpkit.track import BackwardsPTSError, TrackKind, TrackSynchronizer

AUDIO_CLOCK = 48000
VIDEO_CLOCK = 90000
FIRST_TS = 1000


@dataclass
class FakeTrack:
    id: str
    kind: TrackKind
    ssrc: int
    clock_rate: int


def make_audio() -> TrackSynchronizer:
    track = FakeTrack("audio_1", TrackKind.AUDIO, 1234, AUDIO_CLOCK)
    ts = TrackSynchronizer(Synchronizer(), track)
    ts.initialize(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    return ts


def audio_frame_rtp() -> int:
    return AUDIO_CLOCK // 50


def test_default_audio_frame_duration_is_20ms():
    ts = make_audio()
    assert ts.get_frame_duration() == 20_000_000


def test_default_video_frame_duration_is_30fps():
    track = FakeTrack("video_1", TrackKind.VIDEO, 99, VIDEO_CLOCK)
    ts = TrackSynchronizer(Synchronizer(), track)
    assert ts.get_frame_duration() == 33_333_333


def test_first_packet_pts_is_zero_and_same_timestamp_repeats():
    ts = make_audio()
    first = ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    second = ts.get_pts(RtpPacket(sequence_number=11, timestamp=FIRST_TS))
    assert first == 0
    assert second == first


def test_next_frame_advances_by_frame_duration():
    ts = make_audio()
    ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    pts = ts.get_pts(
        RtpPacket(sequence_number=11, timestamp=FIRST_TS + audio_frame_rtp())
    )
    assert pts == ts.get_frame_duration()


def test_backwards_pts_raises():
    ts = make_audio()
    ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS + audio_frame_rtp()))
    with pytest.raises(BackwardsPTSError):
        ts.get_pts(RtpPacket(sequence_number=11, timestamp=FIRST_TS))


def test_insert_frame_fills_packet_and_advances_pts():
    ts = make_audio()
    ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    frame = ts.get_frame_duration()

    blank = RtpPacket()
    pts = ts.insert_frame(blank)
    assert blank.sequence_number == 11
    assert blank.timestamp == FIRST_TS + audio_frame_rtp()
    assert pts == frame

    blank2 = RtpPacket()
    pts2 = ts.insert_frame(blank2)
    assert blank2.sequence_number == 12
    assert blank2.timestamp == FIRST_TS + 2 * audio_frame_rtp()
    assert pts2 == 2 * frame


def test_insert_frame_before_rejects_frame_that_does_not_fit():
    ts = make_audio()
    ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    too_close = RtpPacket(sequence_number=11, timestamp=FIRST_TS + audio_frame_rtp())
    assert ts.insert_frame_before(RtpPacket(), too_close) is None


def test_insert_frame_before_accepts_frame_with_room():
    ts = make_audio()
    ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    far = RtpPacket(sequence_number=11, timestamp=FIRST_TS + 5 * audio_frame_rtp())
    blank = RtpPacket()
    pts = ts.insert_frame_before(blank, far)
    assert pts == ts.get_frame_duration()
    assert blank.timestamp == FIRST_TS + audio_frame_rtp()


def test_track_stats_is_a_copy():
    ts = make_audio()
    stats = ts.get_track_stats()
    stats.avg_sample_duration = 0.0
    assert ts.get_track_stats().avg_sample_duration == AUDIO_CLOCK / 50


def test_sample_duration_moves_towards_observed_frames():
    ts = make_audio()
    ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    ts.get_pts(
        RtpPacket(sequence_number=11, timestamp=FIRST_TS + 2 * audio_frame_rtp())
    )
    avg = ts.get_track_stats().avg_sample_duration
    assert audio_frame_rtp() < avg < 2 * audio_frame_rtp()


def test_sequence_number_jump_resets_timing():
    ts = make_audio()
    ts.get_pts(RtpPacket(sequence_number=10, timestamp=FIRST_TS))
    jumped = RtpPacket(sequence_number=5010, timestamp=FIRST_TS + audio_frame_rtp())
    pts = ts.get_pts(jumped)
    assert pts == 0
    assert jumped.sequence_number == 11

    following = RtpPacket(
        sequence_number=5011, timestamp=FIRST_TS + 2 * audio_frame_rtp()
    )
    assert ts.get_pts(following) == ts.get_frame_duration()
    assert following.sequence_number == 12