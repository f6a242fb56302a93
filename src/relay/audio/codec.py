"""
Speech codec bridge.

One method per transform, so the relay never shells out directly:
- normalize_for_recognition: any inbound container -> AMR-WB mono 16 kHz (what STT accepts)
- encode_result: synthesized MP3 -> AMR-WB (what chat clients download)

NOTE:
- The input file is deleted on success only; on failure it is left in place and
  the owning StagingSession decides what happens to it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol

from src.relay.config.settings import settings
from src.relay.errors import ConversionError, TransportError
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


class AudioCodec(Protocol):
    async def normalize_for_recognition(self, src_path: Path, dst_path: Path) -> None: ...

    async def encode_result(self, src_path: Path, dst_path: Path) -> None: ...


@dataclass(frozen=True)
class AmrProfile:
    codec: str = "amr_wb"
    channels: int = 1
    sample_rate: int = 16000
    bitrate: int = 23850

    def ffmpeg_args(self) -> List[str]:
        return [
            "-acodec",
            self.codec,
            "-ac",
            str(self.channels),
            "-ar",
            str(self.sample_rate),
            "-ab",
            str(self.bitrate),
        ]


class FfmpegCodec:
    def __init__(self, *, binary: str = "ffmpeg", profile: AmrProfile = AmrProfile(), timeout_s: float = 60.0) -> None:
        self.binary = binary
        self.profile = profile
        self.timeout_s = timeout_s

    async def normalize_for_recognition(self, src_path: Path, dst_path: Path) -> None:
        await self._convert(src_path, dst_path)

    async def encode_result(self, src_path: Path, dst_path: Path) -> None:
        await self._convert(src_path, dst_path)

    async def _convert(self, src_path: Path, dst_path: Path) -> None:
        args = [self.binary, "-y", "-i", str(src_path), *self.profile.ffmpeg_args(), str(dst_path)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TransportError(f"cannot launch {self.binary}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ConversionError(f"{self.binary} timed out after {self.timeout_s}s | src={src_path.name}") from exc

        if proc.returncode != 0:
            err = (stderr or b"").decode("utf-8", errors="replace")[-500:]
            logger.error(
                "Audio conversion failed | src=%s | dst=%s | exit=%s",
                src_path.name,
                dst_path.name,
                proc.returncode,
            )
            raise ConversionError(f"{self.binary} failed (exit={proc.returncode}): {err}")

        try:
            src_path.unlink()
        except OSError as exc:
            logger.warning("Failed to remove converted input | path=%s", src_path, exc_info=exc)

        logger.debug("Audio converted | src=%s | dst=%s", src_path.name, dst_path.name)


def build_codec() -> FfmpegCodec:
    return FfmpegCodec(
        binary=settings.ffmpeg_binary,
        profile=AmrProfile(
            codec=settings.audio_codec,
            channels=settings.audio_channels,
            sample_rate=settings.audio_sample_rate,
            bitrate=settings.audio_bitrate,
        ),
        timeout_s=settings.ffmpeg_timeout_s,
    )
