"""RTP media helpers: jitter buffering, sample building, Ogg/Opus reading, A/V sync and region URLs."""

__version__ = "0.1.0"

__all__ = [
    "interceptor",
    "jitter",
    "media",
    "oggreader",
    "region",
    "samplebuilder",
    "synchronizer",
    "track",
]