# rtpkit

Building blocks for handling real-time media carried over RTP. The package has
no runtime dependencies.

- `rtpkit.media`: plain data types (`RtpPacket`, `Sample`, `SenderReport`), the
  `Depacketizer` protocol and `ntp_to_unix_ns`, which turns a 64-bit NTP
  timestamp into nanoseconds since the Unix epoch.
- `rtpkit.oggreader`: `OggReader` reads Opus packets one at a time from an Ogg
  stream (verifying page checksums if asked to); `parse_packet_duration` gives
  the duration of an Opus packet, in nanoseconds, from its TOC byte.
- `rtpkit.jitter`: `JitterBuffer` reorders incoming packets and releases
  complete samples once they are whole, dropping samples that waited too long.
- `rtpkit.samplebuilder`: `SampleBuilder` assembles `Sample` objects from RTP
  packets in a fixed-size window, with optional handlers for released and
  dropped packets.
- `rtpkit.track` and `rtpkit.synchronizer`: `TrackSynchronizer` and
  `Synchronizer` turn RTP timestamps into presentation timestamps and keep the
  tracks of one participant in step using RTCP sender reports.
- `rtpkit.interceptor`: `PacketPool` hands out reusable byte buffers by size;
  `LimitSizeInterceptor` wraps a writer so payloads over 1200 bytes raise
  `PayloadSizeTooLargeError`.
- `rtpkit.region`: `RegionURLProvider` fetches region URLs for a cloud host
  over HTTPS and hands them out best first; `parse_cloud_url` and `is_cloud`
  recognise cloud hostnames.

All durations and timestamps produced by the package are integers in
nanoseconds.

## Installation

```
pip install rtpkit
```

## Depacketizers

`JitterBuffer` and `SampleBuilder` need an object with the methods of
`rtpkit.media.Depacketizer`:

```python
class PassThrough:
    def unmarshal(self, payload):
        return payload

    def is_partition_head(self, payload):
        return True

    def is_partition_tail(self, marker, payload):
        return marker
```

## Reading Opus packets from an Ogg file

```python
from rtpkit.oggreader import OggReader, parse_packet_duration

with open("audio.ogg", "rb") as fp:
    reader = OggReader(fp, True)
    print(reader.header.channels, reader.header.sample_rate)
    for packet in reader:
        duration_ns = parse_packet_duration(packet)
```

Malformed streams raise `OggError`; `read_packet` raises `EOFError` at the end
of the stream, which iteration turns into a normal stop.

## Reordering packets

```python
from rtpkit.jitter import JitterBuffer

# 90 kHz clock, wait up to 500 ms for missing packets
buffer = JitterBuffer(PassThrough(), 90000, 500_000_000, None, None)
for pkt in incoming_packets:
    buffer.push(pkt)
    for sample in buffer.pop_samples(False):
        handle(sample)

leftover = buffer.pop(True)
print(buffer.packet_loss())
```

## Building samples

```python
from rtpkit.samplebuilder import SampleBuilder

builder = SampleBuilder(10, PassThrough(), 90000, None, None)
builder.push(pkt)
sample, rtp_timestamp = builder.pop_with_timestamp()
```

`pop` and `pop_with_timestamp` return `None` while the oldest frame is
incomplete; the `force_` variants skip past missing packets.

## Synchronizing tracks

```python
from rtpkit.synchronizer import Synchronizer

sync = Synchronizer(None)
track_sync = sync.add_track(remote_track, "participant-identity")
track_sync.initialize(first_packet)
pts = track_sync.get_pts(packet)
sync.on_rtcp(sender_report)
sync.end()
```

`remote_track` is any object with the `id`, `kind` (`TrackKind`), `ssrc` and
`clock_rate` attributes of `rtpkit.track.TrackRemote`. `get_pts` raises
`BackwardsPTSError` for packets that would go back in time and `EndOfStream`
once the synchronizer has ended and the track is past its end.

## What the package does not do

It does not send or receive media: there is no network transport, peer
connection or signalling, and no parsing of RTP or RTCP packets from raw bytes.
Callers build `RtpPacket` and `SenderReport` objects themselves.

## Running the tests

```
pip install -e ".[test]"
pytest
```