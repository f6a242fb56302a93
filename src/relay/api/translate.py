"""
Synchronous translation endpoint.

Runs the same TranslationPipeline as the relay worker, for clients that want the
translated envelope in the HTTP response instead of on the outbound stream.

Response envelope (what the chat clients already parse):
    {"Data": <envelope or null>, "Code": 0 | -1, "Description": "OK" | "<error>"}
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.relay.contracts.chat_envelope import parse_envelope
from src.relay.errors import PayloadError, RelayError
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

router = APIRouter()


def _response(data: Optional[Any], description: str, code: int, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"Data": data, "Code": code, "Description": description},
    )


@router.post("/translate")
async def translate(request: Request) -> JSONResponse:
    body = await request.body()
    try:
        envelope = parse_envelope(body)
    except PayloadError as exc:
        logger.warning("Invalid translate request | error=%s", exc)
        return _response(None, str(exc), -1, status_code=400)

    pipeline = request.app.state.pipeline
    logger.info("Translate request | %s", envelope.describe())
    try:
        translated = await pipeline.run(envelope)
    except PayloadError as exc:
        logger.warning("Invalid translate request | %s | error=%s", envelope.describe(), exc)
        return _response(None, str(exc), -1, status_code=400)
    except RelayError as exc:
        logger.error("Translate failed | %s | error_type=%s", envelope.describe(), type(exc).__name__, exc_info=exc)
        return _response(None, str(exc), -1, status_code=502)

    return _response(translated.to_wire_dict(), "OK", 0)


@router.get("/health")
def health(request: Request) -> dict:
    credentials = request.app.state.credentials
    return {
        "status": "degraded" if credentials.degraded or not credentials.ready else "ok",
        "credential_ready": credentials.ready,
        "credential_degraded": credentials.degraded,
    }
