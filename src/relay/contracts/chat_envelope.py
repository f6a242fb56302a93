"""
ChatEnvelope contract.

This is the JSON document carried as the payload of the MQTT PUBLISH packets that
flow through the translate streams. Wire keys follow what the chat producers emit
(`Catalog`, `Time`, `FromUser`, ...); Python code uses the snake_case names.

`Time` is produced as a decimal string; we keep it as an int internally and
re-emit it as a string so outbound frames keep the inbound shape.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from src.relay.errors import PayloadError


class Catalog(str, Enum):
    TEXT = "text"
    AUDIO = "audio"


class ChatEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    catalog: Catalog = Field(alias="Catalog")
    timestamp: int = Field(default=0, alias="Time")
    from_user: str = Field(default="", alias="FromUser")
    to_user: str = Field(default="", alias="ToUser")

    from_lang: str = Field(default="", alias="FromLang")
    to_lang: str = Field(default="", alias="ToLang")

    from_text: str = Field(default="", alias="FromText")
    from_audio: str = Field(default="", alias="FromAudio")  # base64 audio

    to_text: str = Field(default="", alias="ToText")
    to_audio_url: str = Field(default="", alias="ToAudioUrl")  # relative download path

    @field_validator("catalog", mode="before")
    @classmethod
    def _normalize_catalog(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        if value is None:
            return 0
        if isinstance(value, str):
            value = value.strip()
            return int(value) if value else 0
        return value

    @field_validator(
        "from_user",
        "to_user",
        "from_lang",
        "to_lang",
        "from_text",
        "from_audio",
        "to_text",
        "to_audio_url",
        mode="before",
    )
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: int) -> str:
        return str(value)

    def to_wire(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def to_wire_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def describe(self) -> str:
        """Identifying fields for log lines (never includes text or audio)."""
        return (
            f"catalog={self.catalog.value} | from_user={self.from_user or '-'} | "
            f"to_user={self.to_user or '-'} | langs={self.from_lang or '?'}->{self.to_lang or '?'} | "
            f"time={self.timestamp}"
        )


def parse_envelope(payload: bytes | str) -> ChatEnvelope:
    """
    Parse a packet payload into a ChatEnvelope.

    Raises PayloadError for anything that is not a usable envelope, including
    envelopes that lack the input their catalog needs.
    """
    try:
        envelope = ChatEnvelope.model_validate_json(payload)
    except (ValidationError, ValueError) as exc:
        raise PayloadError(f"invalid chat envelope: {exc}") from exc

    if envelope.catalog is Catalog.TEXT and not envelope.from_text.strip():
        raise PayloadError("text envelope without FromText")
    if envelope.catalog is Catalog.AUDIO and not envelope.from_audio.strip():
        raise PayloadError("audio envelope without FromAudio")
    return envelope
