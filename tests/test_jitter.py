import math

from rtpkit.jitter import JitterBuffer
from rtpkit.media import RtpPacket

HEADER_BYTES = b"\xaa\xaa"
DEFAULT_PACKET_SIZE = 200
SECOND = 1_000_000_000
M32 = 0xFFFFFFFF


class _TestDepacketizer:
    def unmarshal(self, payload):
        return payload

    def is_partition_head(self, payload):
        return payload[: len(HEADER_BYTES)] == HEADER_BYTES

    def is_partition_tail(self, marker, payload):
        return marker


def packet(sn, ts):
    return RtpPacket(sequence_number=sn, timestamp=ts, payload=bytes(DEFAULT_PACKET_SIZE))


def head_packet(sn, ts):
    payload = HEADER_BYTES + bytes(DEFAULT_PACKET_SIZE - len(HEADER_BYTES))
    return RtpPacket(sequence_number=sn, timestamp=ts, payload=payload)


def tail_packet(sn, ts):
    return RtpPacket(
        sequence_number=sn, timestamp=ts, marker=True, payload=bytes(DEFAULT_PACKET_SIZE)
    )


def test_jitter_buffer():
    dropped = [0]

    def on_dropped():
        dropped[0] += 1

    b = JitterBuffer(_TestDepacketizer(), 30, SECOND, on_dropped)

    # out of order
    b.push(tail_packet(5, 31))
    assert len(b.pop(False)) == 0

    b.push(packet(3, 31))
    b.push(head_packet(6, 32))
    b.push(head_packet(1, 31))
    assert len(b.pop(False)) == 0

    b.push(packet(2, 31))
    b.push(packet(4, 31))

    pkts = b.pop(False)
    assert len(pkts) == 5
    assert [p.sequence_number for p in pkts] == [1, 2, 3, 4, 5]

    # push and pop (not empty)
    b.push(tail_packet(7, 32))
    assert len(b.pop(False)) == 2

    # push and pop (empty)
    b.push(head_packet(8, 33))
    b.push(tail_packet(9, 33))
    assert len(b.pop(False)) == 2

    # sequence number jump
    ts = 34
    for i in range(5000, 5058, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
        assert len(b.pop(False)) == 0

    b.push(head_packet(5058, ts))
    b.push(tail_packet(5059, ts))
    assert len(b.pop(False)) == 60

    # sequence number wrap
    for i in range(65478, 65536, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
    assert len(b.pop(False)) == 0

    b.push(head_packet(0, ts))
    b.push(tail_packet(1, ts))
    ts += 1
    assert len(b.pop(False)) == 60
    assert dropped[0] == 0

    # dropped packets
    b.push(head_packet(2, ts))
    ts += 31
    b.push(head_packet(64, ts))
    b.push(tail_packet(65, ts))
    ts += 1

    assert len(b.pop(False)) == 0
    # packet 2 dropped
    assert dropped[0] == 1

    for i in range(66, 122, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
        # still waiting on packets 3-63
        assert len(b.pop(False)) == 0

    b.push(head_packet(122, ts))
    b.push(tail_packet(123, ts))

    assert len(b.pop(False)) == 60
    # packets 3-63 lost
    assert dropped[0] == 2

    # timestamp wrap
    ts = 4294967280
    for i in range(15000, 15058, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts = (ts + 1) & M32
        assert len(b.pop(False)) == 0
    b.push(head_packet(15058, ts))
    b.push(tail_packet(15059, ts))
    ts = (ts + 1) & M32
    assert len(b.pop(False)) == 60

    # sequence number and timestamp jumps with drops
    b.push(tail_packet(15061, ts))
    b.push(head_packet(4000, 20000))
    b.push(tail_packet(4001, 20000))
    b.push(head_packet(15060, ts))
    b.push(head_packet(15062, (ts + 1) & M32))
    b.push(tail_packet(4003, 20001))

    assert len(b.pop(False)) == 2

    ts = 20002
    for i in range(4004, 4062, 2):
        b.push(head_packet(i, ts))
        b.push(tail_packet(i + 1, ts))
        ts += 1
        assert len(b.pop(False)) == 0

    b.push(head_packet(4062, ts))
    b.push(tail_packet(4063, ts))
    ts += 1

    assert len(b.pop(False)) == 2
    # packet 15062 dropped
    assert dropped[0] == 3

    b.push(head_packet(4064, ts))
    b.push(tail_packet(4065, ts))
    ts += 1

    # packet 4002 lost, 4003 dropped
    assert len(b.pop(False)) == 62
    assert dropped[0] == 4

    # samples
    b.push(head_packet(4066, ts))
    b.push(tail_packet(4067, ts))
    ts += 1
    b.push(head_packet(4068, ts))
    b.push(tail_packet(4069, ts))
    ts += 1

    samples = b.pop_samples(False)
    assert len(samples) == 2
    assert [[p.sequence_number for p in s] for s in samples] == [[4066, 4067], [4068, 4069]]


def test_force_pop_returns_incomplete_packets():
    b = JitterBuffer(_TestDepacketizer(), 30, SECOND)
    b.push(head_packet(1, 10))
    b.push(tail_packet(3, 10))
    assert b.pop(False) == []
    forced = b.pop(True)
    assert [p.sequence_number for p in forced] == [1, 3]
    assert b.pop(True) == []


def test_force_pop_samples_drops_trailing_incomplete_sample():
    b = JitterBuffer(_TestDepacketizer(), 30, SECOND)
    b.push(head_packet(1, 10))
    b.push(tail_packet(2, 10))
    b.push(head_packet(3, 11))
    b.push(packet(4, 11))
    samples = b.pop_samples(True)
    assert [[p.sequence_number for p in s] for s in samples] == [[1, 2]]
    assert b.pop(True) == []


def test_padding_before_start_is_ignored():
    b = JitterBuffer(_TestDepacketizer(), 30, SECOND)
    b.push(RtpPacket(sequence_number=1, timestamp=10, payload=b""))
    assert b.pop(True) == []
    assert b.packet_loss() == 0.0


def test_packet_loss_without_packets_is_nan():
    b = JitterBuffer(_TestDepacketizer(), 30, SECOND)
    assert math.isnan(b.packet_loss())
    b.push(head_packet(1, 10))
    assert b.packet_loss() == 0.0


def test_late_packet_is_dropped_and_reported():
    calls = []
    b = JitterBuffer(_TestDepacketizer(), 30, SECOND, lambda: calls.append(1))
    b.push(head_packet(1, 10))
    b.push(tail_packet(2, 10))
    assert [p.sequence_number for p in b.pop(False)] == [1, 2]

    b.push(tail_packet(2, 10))
    assert len(calls) == 1
    assert b.packet_loss() == 1 / 3
    assert b.pop(True) == []