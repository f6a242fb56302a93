"""
Manual end-to-end check for the relay.

Builds a chat envelope, wraps it in an MQTT PUBLISH frame on the conversation
topic, appends it to the inbound stream and (optionally) waits for the
translated frame to show up on the outbound stream.

Usage:
  python3 -m src.relay.tools.send_envelope --text "你好,很高兴见到你"
  python3 -m src.relay.tools.send_envelope --audio ./test.amr --from-lang zh --to-lang en --wait

Optional:
  --from-user 8618100805249 --to-user 18358183215
  --qos 1 --timeout-s 60
  --redis-host localhost --redis-port 6379 --redis-db 0
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import sys
import time
from pathlib import Path
from typing import Optional

from src.relay.config.settings import settings
from src.relay.contracts.chat_envelope import Catalog, ChatEnvelope
from src.relay.errors import RelayError
from src.relay.infra import envelope_codec
from src.relay.infra.redis.client import RedisClient
from src.relay.infra.redis.stream_publisher import RedisStreamPublisher


def build_envelope(args: argparse.Namespace) -> ChatEnvelope:
    common = dict(
        timestamp=int(time.time()),
        from_user=args.from_user,
        to_user=args.to_user,
        from_lang=args.from_lang,
        to_lang=args.to_lang,
    )
    if args.audio:
        audio = Path(args.audio).read_bytes()
        return ChatEnvelope(catalog=Catalog.AUDIO, from_audio=base64.b64encode(audio).decode("ascii"), **common)
    return ChatEnvelope(catalog=Catalog.TEXT, from_text=args.text, **common)


def conversation_topic(from_user: str, to_user: str) -> str:
    return f"/{from_user or 'anonymous'}/{to_user or 'anonymous'}/messages"


async def _wait_for_outbound(client, *, stream: str, topic: str, since_id: str, timeout_s: float) -> Optional[ChatEnvelope]:
    deadline = time.monotonic() + timeout_s
    last_id = since_id
    field = settings.redis_packet_field.encode("utf-8")
    while time.monotonic() < deadline:
        block_ms = int(max(0.1, min(2.0, deadline - time.monotonic())) * 1000)
        response = await client.xread({stream: last_id}, count=50, block=block_ms)
        for _, entries in response or []:
            for entry_id, fields in entries:
                last_id = entry_id
                raw = fields.get(field)
                if raw is None:
                    continue
                try:
                    meta, envelope = await envelope_codec.decode(raw)
                except RelayError as exc:
                    print(f"skipping undecodable outbound entry {entry_id!r}: {exc}", file=sys.stderr)
                    continue
                if meta.topic == topic:
                    return envelope
    return None


async def main(args: argparse.Namespace) -> int:
    envelope = build_envelope(args)
    topic = conversation_topic(args.from_user, args.to_user)
    packet = envelope_codec.encode(topic, envelope, qos=args.qos, packet_id=1 if args.qos else None)

    redis_client = RedisClient(host=args.redis_host, port=args.redis_port, db=args.redis_db)
    client = await redis_client.get_client()
    try:
        # Remember where the outbound stream ends so we only look at new entries.
        tail = await client.xrevrange(args.outbound_stream, count=1)
        since_id = tail[0][0] if tail else "0-0"

        publisher = RedisStreamPublisher(redis_client, args.inbound_stream)
        stream_id = await publisher.publish_packet(packet)
        print(f"published | stream={args.inbound_stream} | id={stream_id} | topic={topic} | bytes={len(packet)}")

        if not args.wait:
            return 0

        result = await _wait_for_outbound(
            client,
            stream=args.outbound_stream,
            topic=topic,
            since_id=since_id,
            timeout_s=args.timeout_s,
        )
        if result is None:
            print(f"no translated message on {args.outbound_stream} within {args.timeout_s}s", file=sys.stderr)
            return 1

        print(json.dumps(result.to_wire_dict(), ensure_ascii=False, indent=2))
        return 0
    finally:
        await redis_client.close()


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Publish a chat envelope to the translate relay")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--text", help="Text to translate (text catalog)")
    src.add_argument("--audio", help="Audio file to translate (audio catalog)")
    p.add_argument("--from-user", default="")
    p.add_argument("--to-user", default="")
    p.add_argument("--from-lang", default="zh")
    p.add_argument("--to-lang", default="en")
    p.add_argument("--qos", type=int, choices=(0, 1, 2), default=0)
    p.add_argument("--wait", action="store_true", help="Wait for the translated message")
    p.add_argument("--timeout-s", type=float, default=60.0)
    p.add_argument("--inbound-stream", default=settings.redis_stream_inbound)
    p.add_argument("--outbound-stream", default=settings.redis_stream_outbound)
    p.add_argument("--redis-host", default=settings.redis_host)
    p.add_argument("--redis-port", type=int, default=settings.redis_port)
    p.add_argument("--redis-db", type=int, default=settings.redis_db)
    return p.parse_args(argv)


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main(parse_args())))
