"""
Redis Stream relay worker (execution runtime).

Responsibilities:
- Consume inbound MQTT PUBLISH frames from a Redis Stream using a consumer group
- Decode the chat envelope and run the translation pipeline for it
- Re-encode the result (same topic/QoS/flags) and publish it to the outbound stream
- ACK inbound messages only after the outbound publish succeeds

Outcome per message:
- acked:    translated and republished
- rejected: malformed frame or envelope; copied to the rejected stream and ACKed (never retried)
- failed:   pipeline or publish error; NOT ACKed, stays pending for redelivery

Redelivery: before reading new entries the worker claims one pending entry that
has been idle for `reclaim_idle_ms` (XAUTOCLAIM) and processes it again.

One entry is read and processed to completion at a time; scale out by running
more consumers in the group.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict, Optional

from src.relay.config.settings import settings
from src.relay.credentials.store import CredentialStore, build_credential_store
from src.relay.errors import DecodeError, is_rejection
from src.relay.infra import envelope_codec
from src.relay.infra.redis.client import RedisClient
from src.relay.infra.redis.stream_publisher import RedisStreamPublisher
from src.relay.logging.logger import setup_logger
from src.relay.runtime.pipeline import TranslationPipeline, build_pipeline

logger = setup_logger(__name__)


class MessageOutcome(str, Enum):
    ACKED = "acked"
    REJECTED = "rejected"
    FAILED = "failed"


def _as_str(value: Any) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, (bytes, bytearray)) else str(value)


def _field(fields: Dict[Any, Any], name: str) -> Optional[bytes]:
    value = fields.get(name.encode("utf-8"), fields.get(name))
    if value is None:
        return None
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


class RelayWorker:
    """
    Consumes translate requests from Redis Streams and republishes translated envelopes.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        pipeline: TranslationPipeline,
        *,
        stream_name: str,
        group_name: str,
        consumer_name: str,
        outbound_publisher: RedisStreamPublisher,
        rejected_publisher: RedisStreamPublisher,
        packet_field: str = "packet",
        block_ms: int = 5000,
        reclaim_idle_ms: int = 60000,
    ) -> None:
        self.redis_client = redis_client
        self.pipeline = pipeline
        self.stream_name = stream_name
        self.group_name = group_name
        self.consumer_name = consumer_name
        self.outbound_publisher = outbound_publisher
        self.rejected_publisher = rejected_publisher
        self.packet_field = packet_field
        self.block_ms = block_ms
        self.reclaim_idle_ms = reclaim_idle_ms
        self._reclaim_cursor = "0-0"

    async def start(self) -> None:
        """
        Start the worker consume loop (runs forever).
        """
        client = await self.redis_client.get_client()
        await self._ensure_consumer_group(client)

        logger.info(
            "Relay worker started | stream=%s | group=%s | consumer=%s | outbound=%s",
            self.stream_name,
            self.group_name,
            self.consumer_name,
            self.outbound_publisher.stream_name,
        )

        while True:
            try:
                await self._consume_once(client)
            except Exception as exc:
                logger.error("Worker loop error", exc_info=exc)
                await asyncio.sleep(1)

    async def _ensure_consumer_group(self, client) -> None:
        """
        Ensure consumer group exists.
        """
        try:
            await client.xgroup_create(
                name=self.stream_name,
                groupname=self.group_name,
                id="0-0",
                mkstream=True,
            )
            logger.info(
                "Redis consumer group created | stream=%s | group=%s",
                self.stream_name,
                self.group_name,
            )
        except Exception as exc:
            if "BUSYGROUP" in str(exc):
                logger.debug(
                    "Redis consumer group already exists | stream=%s | group=%s",
                    self.stream_name,
                    self.group_name,
                )
            else:
                raise

    async def _reclaim_once(self, client) -> bool:
        """
        Claim one idle pending entry (a previously failed message) and process it again.

        Returns True if an entry was claimed.
        """
        response = await client.xautoclaim(
            self.stream_name,
            self.group_name,
            self.consumer_name,
            min_idle_time=self.reclaim_idle_ms,
            start_id=self._reclaim_cursor,
            count=1,
        )
        if not response:
            return False

        next_id, messages = response[0], response[1]
        # "0-0" means the scan wrapped around the pending list.
        self._reclaim_cursor = _as_str(next_id) or "0-0"

        claimed = False
        for message_id, fields in messages or []:
            claimed = True
            if fields is None:
                # Entry was trimmed from the stream while pending; nothing left to retry.
                logger.warning("Dropping pending entry deleted from stream | id=%s", message_id)
                if message_id is not None:
                    await client.xack(self.stream_name, self.group_name, message_id)
                continue
            logger.info("Redelivering pending message | id=%s", _as_str(message_id))
            await self.process_message(client, message_id, fields)
        return claimed

    async def _consume_once(self, client) -> None:
        """
        Retry one idle pending entry if there is one, otherwise read one new entry.
        Either way the entry is processed to completion.
        """
        if await self._reclaim_once(client):
            return

        response = await client.xreadgroup(
            groupname=self.group_name,
            consumername=self.consumer_name,
            streams={self.stream_name: ">"},
            count=1,
            block=self.block_ms,
        )

        if not response:
            return

        for _, messages in response:
            for message_id, fields in messages:
                await self.process_message(client, message_id, fields)

    async def process_message(self, client, message_id: Any, fields: Dict[Any, Any]) -> MessageOutcome:
        """
        Decode, translate, republish and ACK a single inbound entry.
        """
        t_total_start = time.perf_counter()
        stream_id = _as_str(message_id)
        raw = _field(fields, self.packet_field)

        # Step 1 + 2: frame and envelope
        try:
            if raw is None:
                raise DecodeError(f"stream entry has no {self.packet_field!r} field")
            meta, envelope = await envelope_codec.decode(raw)
        except Exception as exc:
            if not is_rejection(exc):
                logger.error("Unexpected decode failure | id=%s", stream_id, exc_info=exc)
                return MessageOutcome.FAILED
            return await self._reject(client, message_id, raw, exc)

        logger.info("Processing message | id=%s | topic=%s | %s", stream_id, meta.topic, envelope.describe())

        # Step 3: pipeline
        t_pipe_start = time.perf_counter()
        try:
            translated = await self.pipeline.run(envelope)
        except Exception as exc:
            if is_rejection(exc):
                return await self._reject(client, message_id, raw, exc)
            logger.error(
                "Failed to translate message | id=%s | topic=%s | %s | error_type=%s",
                stream_id,
                meta.topic,
                envelope.describe(),
                type(exc).__name__,
                exc_info=exc,
            )
            # DO NOT ACK on failure. Message stays pending.
            return MessageOutcome.FAILED
        t_pipe_end = time.perf_counter()

        # Step 4: encode + republish, then ACK
        try:
            packet = envelope_codec.reencode(meta, translated)
            t_pub_start = time.perf_counter()
            outbound_id = await self.outbound_publisher.publish_packet(packet)
            t_pub_end = time.perf_counter()
        except Exception as exc:
            logger.error(
                "Failed to publish translated message | id=%s | topic=%s | outbound=%s",
                stream_id,
                meta.topic,
                self.outbound_publisher.stream_name,
                exc_info=exc,
            )
            return MessageOutcome.FAILED

        logger.info(
            "Outbound published | id=%s | outbound_stream_id=%s | topic=%s | audio_url=%s",
            stream_id,
            outbound_id,
            meta.topic,
            translated.to_audio_url,
        )

        try:
            await client.xack(self.stream_name, self.group_name, message_id)
        except Exception as exc:
            # Already republished; redelivery would duplicate the outbound message.
            logger.error("Failed to ACK message | id=%s", stream_id, exc_info=exc)
            return MessageOutcome.FAILED

        logger.info(
            "Message acknowledged | id=%s | timings: pipeline=%.3f s | publish=%.3f s | total=%.3f s",
            stream_id,
            (t_pipe_end - t_pipe_start),
            (t_pub_end - t_pub_start),
            (time.perf_counter() - t_total_start),
        )
        return MessageOutcome.ACKED

    async def _reject(self, client, message_id: Any, raw: Optional[bytes], exc: BaseException) -> MessageOutcome:
        """
        Park a malformed entry on the rejected stream and ACK it so it is never retried.

        Returns REJECTED once parked and ACKed; FAILED if either step fails (entry stays pending).
        """
        stream_id = _as_str(message_id)
        logger.warning(
            "Rejecting message | id=%s | error_type=%s | error=%s | bytes=%s",
            stream_id,
            type(exc).__name__,
            exc,
            len(raw) if raw is not None else 0,
        )
        try:
            await self.rejected_publisher.publish_packet(
                raw or b"",
                extra={
                    "source_id": stream_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc)[:1000],
                },
            )
        except Exception as pub_exc:
            logger.error("Failed to park rejected message; leaving it pending | id=%s", stream_id, exc_info=pub_exc)
            return MessageOutcome.FAILED

        try:
            await client.xack(self.stream_name, self.group_name, message_id)
        except Exception as ack_exc:
            # Already parked; redelivery would park it a second time.
            logger.error("Failed to ACK rejected message | id=%s", stream_id, exc_info=ack_exc)
            return MessageOutcome.FAILED
        return MessageOutcome.REJECTED


def build_worker(redis_client: RedisClient, pipeline: TranslationPipeline) -> RelayWorker:
    return RelayWorker(
        redis_client=redis_client,
        pipeline=pipeline,
        stream_name=settings.redis_stream_inbound,
        group_name=settings.redis_consumer_group,
        consumer_name=settings.redis_consumer_name,
        outbound_publisher=RedisStreamPublisher(redis_client, settings.redis_stream_outbound),
        rejected_publisher=RedisStreamPublisher(redis_client, settings.redis_stream_rejected),
        packet_field=settings.redis_packet_field,
        block_ms=settings.worker_block_ms,
        reclaim_idle_ms=settings.worker_reclaim_idle_ms,
    )


async def _wait_for_credentials(credentials: CredentialStore, refresh_task: asyncio.Task) -> None:
    ready = asyncio.create_task(credentials.wait_ready(settings.credential_ready_timeout_s))
    done, _ = await asyncio.wait({ready, refresh_task}, return_when=asyncio.FIRST_COMPLETED)
    if refresh_task in done:
        ready.cancel()
        # Fatal refresh failure: surface it before consuming anything.
        refresh_task.result()
    elif not ready.result():
        logger.warning(
            "No credential after %.0fs; consuming anyway (speech steps will fail until refresh succeeds)",
            settings.credential_ready_timeout_s,
        )


async def run_worker() -> None:
    """
    Script entrypoint for running the relay worker process.
    Runs the credential refresh loop and the consume loop side by side.
    """
    credentials = build_credential_store()
    credentials.load_persisted()
    refresh_task = asyncio.create_task(credentials.run_refresh_loop(), name="credential-refresh")

    await _wait_for_credentials(credentials, refresh_task)

    redis_client = RedisClient()
    worker = build_worker(redis_client, build_pipeline(credentials))

    try:
        await asyncio.gather(refresh_task, worker.start())
    finally:
        await redis_client.close()


if __name__ == "__main__":
    asyncio.run(run_worker())
