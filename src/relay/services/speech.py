"""
Speech provider adapters (speech-to-text, text-to-speech).

Both read the access token from the CredentialStore at call time, so a refresh
is picked up by the next request without restarting anything.

STT: POST raw AMR bytes, Content-Type "audio/amr;rate=16000", query lan/cuid/token
     -> {"err_no": 0, "err_msg": "success.", "result": ["..."]}
TTS: GET tex/lan/cuid/ctp/tok -> audio body with Content-Type audio/mp3,
     or a JSON error body with Content-Type application/json
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from src.relay.audio.codec import AudioCodec
from src.relay.config.settings import settings
from src.relay.credentials.store import CredentialStore
from src.relay.errors import NoResultError, UnexpectedContentType, UpstreamError
from src.relay.infra.http import http_request
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

AUDIO_CONTENT_TYPES = frozenset({"audio/mp3", "audio/mpeg"})


class SpeechToText:
    def __init__(
        self,
        *,
        url: str,
        credentials: CredentialStore,
        cuid: str,
        sample_rate: int = 16000,
        default_lang: str = "zh",
        timeout_s: float = 30.0,
    ) -> None:
        self.url = url
        self.credentials = credentials
        self.cuid = cuid
        self.sample_rate = sample_rate
        self.default_lang = default_lang
        self.timeout_s = timeout_s

    def recognize(self, audio_path: Path, lang: str = "") -> str:
        """Transcribe an AMR file (blocking)."""
        data = Path(audio_path).read_bytes()
        resp = http_request(
            self.url,
            method="POST",
            params={
                "lan": lang or self.default_lang,
                "cuid": self.cuid,
                "token": self.credentials.current_token(),
            },
            data=data,
            headers={"Content-Type": f"audio/amr;rate={self.sample_rate}"},
            timeout=self.timeout_s,
            service="stt",
        )
        payload = resp.json(service="stt")
        if not isinstance(payload, dict):
            raise UpstreamError(f"unexpected response shape: {resp.text(200)!r}", service="stt")

        err_no = payload.get("err_no", 0)
        if err_no not in (0, "0", None, ""):
            logger.error(
                "Speech recognition rejected | err_no=%s | err_msg=%s | bytes=%s",
                err_no,
                payload.get("err_msg"),
                len(data),
            )
            code = int(err_no) if str(err_no).lstrip("-").isdigit() else None
            raise UpstreamError(str(payload.get("err_msg") or "recognition failed"), code=code, service="stt")

        results = [r for r in (payload.get("result") or []) if isinstance(r, str) and r.strip()]
        if not results:
            raise NoResultError("speech recognition returned no text", service="stt")

        logger.info("Speech recognized | lang=%s | bytes=%s | chars=%s", lang or self.default_lang, len(data), len(results[0]))
        return results[0]


class TextToSpeech:
    def __init__(
        self,
        *,
        url: str,
        credentials: CredentialStore,
        codec: AudioCodec,
        cuid: str,
        default_lang: str = "zh",
        timeout_s: float = 30.0,
    ) -> None:
        self.url = url
        self.credentials = credentials
        self.codec = codec
        self.cuid = cuid
        self.default_lang = default_lang
        self.timeout_s = timeout_s

    def fetch_speech(self, text: str, lang: str = "") -> bytes:
        """Request synthesized MP3 audio for `text` (blocking)."""
        resp = http_request(
            self.url,
            params={
                "tex": text,
                "lan": lang or self.default_lang,
                "cuid": self.cuid,
                "ctp": 1,
                "tok": self.credentials.current_token(),
            },
            timeout=self.timeout_s,
            service="tts",
        )
        if resp.content_type not in AUDIO_CONTENT_TYPES:
            logger.error("Speech synthesis failed | content_type=%s | body=%s", resp.content_type, resp.text(200))
            raise UnexpectedContentType("audio/mp3", resp.content_type, resp.text(200))
        if not resp.body:
            raise NoResultError("empty audio body", service="tts")
        return resp.body

    async def synthesize(self, text: str, lang: str, mp3_path: Path, out_path: Path) -> Path:
        """
        Synthesize `text`, stage the MP3 at `mp3_path` and encode it into `out_path`.

        The intermediate MP3 is removed by the codec once the encode succeeds.
        """
        audio = await asyncio.to_thread(self.fetch_speech, text, lang)
        await asyncio.to_thread(Path(mp3_path).write_bytes, audio)
        await self.codec.encode_result(Path(mp3_path), Path(out_path))
        logger.info("Speech synthesized | lang=%s | chars=%s | mp3_bytes=%s | out=%s", lang, len(text), len(audio), Path(out_path).name)
        return Path(out_path)


def build_speech_to_text(credentials: CredentialStore) -> SpeechToText:
    return SpeechToText(
        url=settings.stt_url,
        credentials=credentials,
        cuid=settings.speech_cuid,
        sample_rate=settings.audio_sample_rate,
        default_lang=settings.speech_default_lang,
        timeout_s=settings.http_timeout_s,
    )


def build_text_to_speech(credentials: CredentialStore, codec: AudioCodec) -> TextToSpeech:
    return TextToSpeech(
        url=settings.tts_url,
        credentials=credentials,
        codec=codec,
        cuid=settings.speech_cuid,
        default_lang=settings.speech_default_lang,
        timeout_s=settings.http_timeout_s,
    )
