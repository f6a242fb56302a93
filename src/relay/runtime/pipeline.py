"""
Translation pipeline (shared by the relay worker and the HTTP /translate route).

Text catalog:
    FromText --translate--> ToText --tts--> result .amr -> ToAudioUrl

Audio catalog:
    FromAudio (base64) -> staged file --normalize--> .amr --stt--> FromText
    --translate--> ToText --tts--> result .amr -> ToAudioUrl, FromAudio cleared

Every step is sequential; any exception aborts the run and the staging session
removes whatever was created so far.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import time

from src.relay.audio.codec import AudioCodec, build_codec
from src.relay.audio.staging import StagingArea, StagingSession
from src.relay.config.settings import settings
from src.relay.contracts.chat_envelope import Catalog, ChatEnvelope
from src.relay.credentials.store import CredentialStore
from src.relay.errors import PayloadError
from src.relay.logging.logger import setup_logger
from src.relay.services.speech import SpeechToText, TextToSpeech, build_speech_to_text, build_text_to_speech
from src.relay.services.translator import TextTranslator, build_translator

logger = setup_logger(__name__)

RESULT_EXT = "amr"


def decode_audio(data: str) -> bytes:
    try:
        audio = base64.b64decode(data.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PayloadError(f"FromAudio is not valid base64: {exc}") from exc
    if not audio:
        raise PayloadError("FromAudio decodes to zero bytes")
    return audio


class TranslationPipeline:
    def __init__(
        self,
        *,
        translator: TextTranslator,
        speech_to_text: SpeechToText,
        text_to_speech: TextToSpeech,
        codec: AudioCodec,
        staging: StagingArea,
    ) -> None:
        self.translator = translator
        self.speech_to_text = speech_to_text
        self.text_to_speech = text_to_speech
        self.codec = codec
        self.staging = staging

    async def run(self, envelope: ChatEnvelope) -> ChatEnvelope:
        """
        Process one envelope and return the translated copy (input is not mutated).
        """
        result = envelope.model_copy()
        t_start = time.perf_counter()

        with self.staging.session(result.from_user, result.to_user, result.timestamp) as scratch:
            if result.catalog is Catalog.TEXT:
                await self._run_text(result, scratch)
            else:
                await self._run_audio(result, scratch)
        # Outbound envelopes never carry the inbound audio.
        result.from_audio = ""

        logger.info(
            "Pipeline done | %s | audio_url=%s | total_s=%.3f",
            result.describe(),
            result.to_audio_url,
            time.perf_counter() - t_start,
        )
        return result

    async def _translate(self, envelope: ChatEnvelope) -> None:
        envelope.to_text = await asyncio.to_thread(
            self.translator.translate,
            envelope.from_lang,
            envelope.to_lang,
            envelope.from_text,
        )

    async def _synthesize(self, envelope: ChatEnvelope, scratch: StagingSession) -> None:
        mp3_path = scratch.path("mp3", "result")
        out_path = scratch.path(RESULT_EXT, "result")
        await self.text_to_speech.synthesize(envelope.to_text, envelope.to_lang, mp3_path, out_path)
        envelope.to_audio_url = scratch.keep(out_path)

    async def _run_text(self, envelope: ChatEnvelope, scratch: StagingSession) -> None:
        await self._translate(envelope)
        await self._synthesize(envelope, scratch)

    async def _run_audio(self, envelope: ChatEnvelope, scratch: StagingSession) -> None:
        audio = decode_audio(envelope.from_audio)

        raw_path = scratch.path(RESULT_EXT, "cvtbef")
        normalized_path = scratch.path(RESULT_EXT)
        await asyncio.to_thread(raw_path.write_bytes, audio)
        await self.codec.normalize_for_recognition(raw_path, normalized_path)

        envelope.from_text = await asyncio.to_thread(
            self.speech_to_text.recognize,
            normalized_path,
            envelope.from_lang,
        )
        await self._translate(envelope)
        await self._synthesize(envelope, scratch)


def build_pipeline(credentials: CredentialStore) -> TranslationPipeline:
    codec = build_codec()
    return TranslationPipeline(
        translator=build_translator(),
        speech_to_text=build_speech_to_text(credentials),
        text_to_speech=build_text_to_speech(credentials, codec),
        codec=codec,
        staging=StagingArea(
            settings.upload_root_dir,
            download_prefix=settings.download_prefix,
            keep_on_failure=settings.staging_keep_on_failure,
        ),
    )
