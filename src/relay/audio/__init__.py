"""
Audio domain package.

This centralizes:
- staged file lifetimes (per-message scratch files under the upload root)
- the codec bridge used to normalize inbound audio and encode synthesized results
"""

from __future__ import annotations

from src.relay.audio.codec import AmrProfile, AudioCodec, FfmpegCodec, build_codec
from src.relay.audio.staging import StagingArea, StagingSession

__all__ = [
    "AmrProfile",
    "AudioCodec",
    "FfmpegCodec",
    "build_codec",
    "StagingArea",
    "StagingSession",
]
