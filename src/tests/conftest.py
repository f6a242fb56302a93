"""Shared fixtures.

Nothing here talks to Redis, the provider APIs or ffmpeg:
- HTTP is replaced by monkeypatching `http_request` in the calling module
- ffmpeg is replaced by FakeCodec (copies bytes, deletes the input like the real one)
- Redis is replaced by FakeRedis (records xadd/xack calls)
"""

from __future__ import annotations

import json
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from src.relay.audio.staging import StagingArea
from src.relay.credentials.store import Credential, CredentialStore
from src.relay.errors import ConversionError
from src.relay.infra.http import HttpResponse
from src.relay.runtime.pipeline import TranslationPipeline
from src.relay.services import speech as speech_module
from src.relay.services import translator as translator_module
from src.relay.services.speech import SpeechToText, TextToSpeech
from src.relay.services.translator import TextTranslator

FAKE_MP3 = b"ID3\x03\x00\x00\x00fake-mp3-frames"
FAKE_AMR = b"#!AMR-WB\nfake-amr-frames"


def json_response(payload: Any, status: int = 200) -> HttpResponse:
    return HttpResponse(
        status=status,
        body=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
        headers={"content-type": "application/json"},
    )


def audio_response(body: bytes = FAKE_MP3, content_type: str = "audio/mp3") -> HttpResponse:
    return HttpResponse(status=200, body=body, headers={"content-type": content_type})


class FakeCodec:
    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.fail_on = fail_on
        self.calls: List[Tuple[str, Path, Path]] = []

    async def normalize_for_recognition(self, src_path: Path, dst_path: Path) -> None:
        await self._convert("normalize", src_path, dst_path)

    async def encode_result(self, src_path: Path, dst_path: Path) -> None:
        await self._convert("encode", src_path, dst_path)

    async def _convert(self, kind: str, src_path: Path, dst_path: Path) -> None:
        self.calls.append((kind, src_path, dst_path))
        if self.fail_on == kind:
            raise ConversionError(f"ffmpeg failed (exit=1): {kind}")
        shutil.copyfile(src_path, dst_path)
        src_path.unlink()


class FakeRedis:
    def __init__(self, fail_xadd_on: Optional[str] = None, fail_xack: bool = False) -> None:
        self.streams: Dict[str, List[Dict[str, Any]]] = {}
        self.acks: List[Tuple[str, str, Any]] = []
        self.groups: List[Tuple[str, str]] = []
        self.fail_xadd_on = fail_xadd_on
        self.fail_xack = fail_xack
        self.autoclaims: List[Dict[str, Any]] = []

    async def xadd(self, name: str, fields: Dict[str, Any]) -> bytes:
        if name == self.fail_xadd_on:
            raise ConnectionError(f"xadd to {name} failed")
        entries = self.streams.setdefault(name, [])
        entries.append(dict(fields))
        return f"{len(entries)}-0".encode()

    async def xack(self, stream: str, group: str, message_id: Any) -> int:
        if self.fail_xack:
            raise ConnectionError("xack failed")
        self.acks.append((stream, group, message_id))
        return 1

    async def xautoclaim(self, name: str, groupname: str, consumername: str, min_idle_time: int, start_id: str = "0-0", count: Optional[int] = None) -> list:
        self.autoclaims.append({"name": name, "min_idle_time": min_idle_time, "start_id": start_id, "count": count})
        return [b"0-0", [], []]

    async def xgroup_create(self, name: str, groupname: str, id: str = "$", mkstream: bool = False) -> bool:
        self.groups.append((name, groupname))
        return True


class FakeRedisClient:
    def __init__(self, redis: FakeRedis) -> None:
        self.redis = redis

    async def get_client(self) -> FakeRedis:
        return self.redis


class TranslateStub:
    """Replacement for translator.http_request; answers with canned segments."""

    def __init__(self, segments: Optional[List[str]] = None, payload: Optional[dict] = None) -> None:
        self.segments = ["Hello"] if segments is None else segments
        self.payload = payload
        self.calls: List[dict] = []

    def __call__(self, url: str, **kwargs: Any) -> HttpResponse:
        self.calls.append(kwargs)
        if self.payload is not None:
            return json_response(self.payload)
        q = kwargs["params"]["q"]
        return json_response(
            {
                "from": kwargs["params"]["from"],
                "to": kwargs["params"]["to"],
                "trans_result": [{"src": q, "dst": d} for d in self.segments],
            }
        )


class SpeechStub:
    """Replacement for speech.http_request; routes STT (POST) and TTS (GET)."""

    def __init__(self, transcript: str = "你好", tts_response: Optional[HttpResponse] = None) -> None:
        self.transcript = transcript
        self.tts_response = tts_response or audio_response()
        self.calls: List[Tuple[str, dict]] = []

    def __call__(self, url: str, **kwargs: Any) -> HttpResponse:
        self.calls.append((kwargs.get("method", "GET"), kwargs))
        if kwargs.get("method") == "POST":
            return json_response({"err_no": 0, "err_msg": "success.", "result": [self.transcript]})
        return self.tts_response


@pytest.fixture
def credentials(tmp_path) -> CredentialStore:
    store = CredentialStore(
        token_url="https://auth.example.test/token",
        client_id="client",
        client_secret="secret",
        cache_path=str(tmp_path / "token" / "token"),
        refresh_interval_s=3600,
        retry_initial_s=0,
        retry_max_s=0,
        max_attempts=2,
    )
    store._set(Credential(value="tok-123", fetched_at=datetime.now(timezone.utc), validity_window=timedelta(days=20)))
    return store


@pytest.fixture
def upload_root(tmp_path) -> Path:
    return tmp_path / "upload"


@pytest.fixture
def codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def translate_stub(monkeypatch) -> TranslateStub:
    stub = TranslateStub()
    monkeypatch.setattr(translator_module, "http_request", stub)
    return stub


@pytest.fixture
def speech_stub(monkeypatch) -> SpeechStub:
    stub = SpeechStub()
    monkeypatch.setattr(speech_module, "http_request", stub)
    return stub


@pytest.fixture
def make_pipeline(credentials, upload_root) -> Callable[..., TranslationPipeline]:
    def _make(codec: Optional[FakeCodec] = None, keep_on_failure: bool = False) -> TranslationPipeline:
        codec = codec or FakeCodec()
        return TranslationPipeline(
            translator=TextTranslator(url="https://fanyi.example.test/translate", app_id="app", secret="s3cret"),
            speech_to_text=SpeechToText(url="https://vop.example.test/server_api", credentials=credentials, cuid="TranslateChat"),
            text_to_speech=TextToSpeech(
                url="https://tsn.example.test/text2audio",
                credentials=credentials,
                codec=codec,
                cuid="TranslateChat",
            ),
            codec=codec,
            staging=StagingArea(str(upload_root), keep_on_failure=keep_on_failure),
        )

    return _make
