"""
Envelope codec (MQTT 3.1.1 PUBLISH <-> ChatEnvelope).

Responsibilities:
- Decode raw channel bytes into a PUBLISH packet and its chat envelope
- Re-encode a processed envelope into the same wire shape (topic/QoS/flags preserved)

NOTE:
- Packet framing is delegated to amqtt; this module only validates that the
  frame is complete and is a PUBLISH before handing the payload to the contract.
- Truncated frames are rejected BEFORE amqtt reads the payload, because its
  payload reader loops until it has `remaining_length` bytes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from amqtt.adapters import BufferReader
from amqtt.mqtt.packet import PUBLISH, MQTTFixedHeader
from amqtt.mqtt.publish import PublishPacket

from src.relay.contracts.chat_envelope import ChatEnvelope, parse_envelope
from src.relay.errors import DecodeError, UnexpectedPacketType


@dataclass(frozen=True)
class PacketMeta:
    topic: str
    qos: int = 0
    packet_id: Optional[int] = None
    retain: bool = False
    dup: bool = False


async def decode_packet(raw: bytes) -> Tuple[PacketMeta, bytes]:
    """
    Decode a PUBLISH frame and return (meta, payload bytes).

    Raises:
        UnexpectedPacketType: frame is valid MQTT but not PUBLISH
        DecodeError: anything else that is not one complete PUBLISH frame
    """
    if not raw:
        raise DecodeError("empty channel payload")

    reader = BufferReader(bytes(raw))
    try:
        fixed_header = await MQTTFixedHeader.from_stream(reader)
    except Exception as exc:
        raise DecodeError(f"malformed packet header: {exc}") from exc

    if fixed_header is None:
        raise DecodeError("malformed packet header")

    if fixed_header.packet_type != PUBLISH:
        raise UnexpectedPacketType(f"expected PUBLISH packet, got type={fixed_header.packet_type}")

    expected_len = len(fixed_header.to_bytes()) + fixed_header.remaining_length
    if len(raw) != expected_len:
        raise DecodeError(f"packet length mismatch | declared={expected_len} | actual={len(raw)}")

    try:
        packet = await PublishPacket.from_stream(reader, fixed_header=fixed_header)
    except Exception as exc:
        raise DecodeError(f"malformed PUBLISH packet: {exc}") from exc

    # Re-encoding must reproduce the frame exactly (catches topic lengths that
    # overrun the declared remaining length).
    if len(packet.to_bytes()) != len(raw):
        raise DecodeError("inconsistent PUBLISH packet lengths")

    meta = PacketMeta(
        topic=packet.topic_name,
        qos=packet.qos or 0,
        packet_id=packet.packet_id,
        retain=bool(packet.retain_flag),
        dup=bool(packet.dup_flag),
    )
    return meta, bytes(packet.data or b"")


async def decode(raw: bytes) -> Tuple[PacketMeta, ChatEnvelope]:
    """Decode channel bytes into (packet meta, envelope). PayloadError on a bad body."""
    meta, payload = await decode_packet(raw)
    return meta, parse_envelope(payload)


def encode_payload(
    topic: str,
    payload: bytes,
    *,
    qos: int = 0,
    packet_id: Optional[int] = None,
    retain: bool = False,
    dup: bool = False,
) -> bytes:
    if qos and packet_id is None:
        raise ValueError("packet_id is required for QoS > 0")
    packet = PublishPacket.build(topic, payload, packet_id if qos else None, dup, qos, retain)
    return bytes(packet.to_bytes())


def encode(
    topic: str,
    envelope: ChatEnvelope,
    *,
    qos: int = 0,
    packet_id: Optional[int] = None,
    retain: bool = False,
    dup: bool = False,
) -> bytes:
    return encode_payload(
        topic,
        envelope.to_wire(),
        qos=qos,
        packet_id=packet_id,
        retain=retain,
        dup=dup,
    )


def reencode(meta: PacketMeta, envelope: ChatEnvelope) -> bytes:
    """Encode a processed envelope with the inbound packet's topic and flags."""
    return encode(
        meta.topic,
        envelope,
        qos=meta.qos,
        packet_id=meta.packet_id,
        retain=meta.retain,
        dup=meta.dup,
    )
