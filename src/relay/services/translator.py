"""
Text translation client (signed GET).

Request:  q, from, to, appid, salt, sign   where sign = md5(appid + q + salt + secret)
Response: {"from": "zh", "to": "en", "trans_result": [{"src": "...", "dst": "..."}]}
Error:    {"error_code": "54001", "error_msg": "Invalid Sign"}

This is blocking. Call it via asyncio.to_thread(...) from async code.
"""

from __future__ import annotations

import hashlib
import secrets

from src.relay.config.settings import settings
from src.relay.errors import NoResultError, UpstreamError
from src.relay.infra.http import http_request
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

SERVICE = "translate"


def sign_request(app_id: str, query: str, salt: str, secret: str) -> str:
    return hashlib.md5(f"{app_id}{query}{salt}{secret}".encode("utf-8")).hexdigest()


class TextTranslator:
    def __init__(self, *, url: str, app_id: str, secret: str, timeout_s: float = 30.0) -> None:
        self.url = url
        self.app_id = app_id
        self.secret = secret
        self.timeout_s = timeout_s

    def translate(self, from_lang: str, to_lang: str, text: str) -> str:
        salt = str(secrets.randbelow(10**10))
        params = {
            "q": text,
            "from": from_lang or "auto",
            "to": to_lang,
            "appid": self.app_id,
            "salt": salt,
            "sign": sign_request(self.app_id, text, salt, self.secret),
        }

        resp = http_request(self.url, params=params, timeout=self.timeout_s, service=SERVICE)
        payload = resp.json(service=SERVICE)
        if not isinstance(payload, dict):
            raise UpstreamError(f"unexpected response shape: {resp.text(200)!r}", service=SERVICE)

        if payload.get("error_code") not in (None, "", "52000", 52000):
            code = payload.get("error_code")
            raise UpstreamError(
                str(payload.get("error_msg") or "translation failed"),
                code=int(code) if str(code).isdigit() else None,
                service=SERVICE,
            )

        segments = payload.get("trans_result") or []
        if not isinstance(segments, list):
            raise UpstreamError("trans_result is not a list", service=SERVICE)

        translated = [str(seg.get("dst") or "") for seg in segments if isinstance(seg, dict)]
        translated = [t for t in translated if t]
        if not translated:
            logger.warning("Translation returned no result | from=%s | to=%s | chars=%s", from_lang, to_lang, len(text))
            raise NoResultError("no result from translate server", service=SERVICE)

        result = "\n".join(translated)
        logger.info(
            "Text translated | from=%s | to=%s | segments=%s | chars_in=%s | chars_out=%s",
            payload.get("from", from_lang),
            payload.get("to", to_lang),
            len(translated),
            len(text),
            len(result),
        )
        return result


def build_translator() -> TextTranslator:
    return TextTranslator(
        url=settings.translate_url,
        app_id=settings.translate_app_id,
        secret=settings.translate_secret,
        timeout_s=settings.http_timeout_s,
    )
